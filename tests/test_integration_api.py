"""Integration tests for the HTTP API over the in-memory runtime.

Covers the OTP login flow, token refresh and logout, and the order and
wallet endpoints end to end.
"""

import pytest
from fastapi.testclient import TestClient

from shopcore import app as app_module
from shopcore.service.runtime import get_runtime

PHONE = "9876543210"
INTERNAL_SECRET = "internal-test-secret"


@pytest.fixture
def sender(sender):
    runtime = get_runtime()
    runtime.sessions.sender = sender
    runtime.settings = runtime.settings.model_copy(update={"internal_secret": INTERNAL_SECRET})
    return sender


@pytest.fixture
def client(sender):
    return TestClient(app_module.app)


def _login(client, sender, phone=PHONE):
    sent = client.post("/v1/auth/send-otp", json={"phone": phone})
    assert sent.status_code == 200
    session_id = sent.json()["data"]["session_id"]
    verified = client.post(
        "/v1/auth/verify-otp",
        json={"phone": phone, "code": sender.last_code, "session_id": session_id},
    )
    assert verified.status_code == 200
    return verified.json()["data"]


def _auth(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


def _credit(client, account_id, amount, transaction_id="txn-1", secret=INTERNAL_SECRET):
    return client.post(
        "/v1/wallet/credit",
        json={"account_id": account_id, "amount": amount, "transaction_id": transaction_id},
        headers={"X-Internal-Secret": secret},
    )


def _order_body(tokens=30, quantity=2):
    return {
        "items": [
            {
                "product_id": "sku-1",
                "product_name": "Team jersey",
                "quantity": quantity,
                "price": 499.0,
                "token_price": tokens,
            }
        ],
        "notes": "leave at door",
    }


class TestAuthFlow:
    def test_send_otp_response_shape(self, client, sender):
        response = client.post("/v1/auth/send-otp", json={"phone": "+91 98765 43210"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["expires_in"] == 600
        assert body["data"]["session_id"]
        assert response.headers["X-Request-ID"]
        assert sender.sent[0][0] == PHONE

    def test_send_otp_invalid_phone(self, client):
        response = client.post("/v1/auth/send-otp", json={"phone": "12345"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_send_otp_cooldown(self, client):
        client.post("/v1/auth/send-otp", json={"phone": PHONE})
        response = client.post("/v1/auth/send-otp", json={"phone": PHONE})

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0

    def test_verify_otp_creates_account(self, client, sender):
        data = _login(client, sender)

        assert data["is_new_account"] is True
        assert data["token_type"] == "bearer"
        assert data["account"]["phone"] == PHONE
        assert data["account"]["token_balance"] == 0

    def test_verify_otp_wrong_code(self, client, sender):
        sent = client.post("/v1/auth/send-otp", json={"phone": PHONE}).json()["data"]
        wrong = "000000" if sender.last_code != "000000" else "111111"

        response = client.post(
            "/v1/auth/verify-otp",
            json={"phone": PHONE, "code": wrong, "session_id": sent["session_id"]},
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"verified": False}

    def test_me_and_profile(self, client, sender):
        tokens = _login(client, sender)

        me = client.get("/v1/auth/me", headers=_auth(tokens))
        assert me.status_code == 200
        assert me.json()["data"]["phone"] == PHONE

        updated = client.patch(
            "/v1/auth/profile",
            json={"first_name": "Asha", "email": "Asha@Example.com"},
            headers=_auth(tokens),
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["email"] == "asha@example.com"

    def test_missing_bearer_rejected(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_refresh_and_validate(self, client, sender):
        tokens = _login(client, sender)

        refreshed = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]}
        )
        assert refreshed.status_code == 200
        new_access = refreshed.json()["data"]["access_token"]

        validated = client.post("/v1/auth/validate-token", json={"token": new_access})
        assert validated.json()["data"]["valid"] is True
        assert validated.json()["data"]["shop_enabled"] is True

    def test_refresh_rejects_access_token(self, client, sender):
        tokens = _login(client, sender)

        response = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": tokens["access_token"]}
        )
        assert response.status_code == 401

    def test_logout_revokes_tokens(self, client, sender):
        tokens = _login(client, sender)

        assert client.post("/v1/auth/logout", headers=_auth(tokens)).status_code == 200

        assert client.get("/v1/auth/me", headers=_auth(tokens)).status_code == 401
        refreshed = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]}
        )
        assert refreshed.status_code == 401
        validated = client.post("/v1/auth/validate-token", json={"token": tokens["access_token"]})
        assert validated.json()["data"] == {"valid": False, "reason": "revoked"}


class TestShopAccess:
    def test_account_without_shop_module_forbidden(self, client, sender):
        tokens = _login(client, sender)
        runtime = get_runtime()
        account_id = tokens["account"]["id"]
        runtime.store.update_account(account_id, modules=["fantasy"])
        # A fresh token carries the new module list
        access = runtime.codec.issue_access_token(
            runtime.sessions.access_claims(runtime.store.get_account(account_id))
        )

        response = client.get(
            "/v1/wallet/balance", headers={"Authorization": f"Bearer {access.token}"}
        )
        assert response.status_code == 403
        # Account endpoints stay reachable
        me = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {access.token}"})
        assert me.status_code == 200


class TestWallet:
    def test_credit_requires_internal_secret(self, client, sender):
        tokens = _login(client, sender)

        response = _credit(client, tokens["account"]["id"], 100, secret="wrong")
        assert response.status_code == 401

    def test_credit_is_idempotent(self, client, sender):
        tokens = _login(client, sender)
        account_id = tokens["account"]["id"]

        first = _credit(client, account_id, 100)
        second = _credit(client, account_id, 100)

        assert first.json()["data"]["applied"] is True
        assert second.json()["data"]["applied"] is False
        balance = client.get("/v1/wallet/balance", headers=_auth(tokens))
        assert balance.json()["data"]["token_balance"] == 100

    def test_credit_by_phone(self, client, sender):
        _login(client, sender)

        response = client.post(
            "/v1/wallet/credit",
            json={"phone": PHONE, "amount": 25, "transaction_id": "txn-phone"},
            headers={"X-Internal-Secret": INTERNAL_SECRET},
        )
        assert response.status_code == 200
        assert response.json()["data"]["balance_after"] == 25

    def test_credit_unknown_phone(self, client):
        response = client.post(
            "/v1/wallet/credit",
            json={"phone": "9123456789", "amount": 25, "transaction_id": "txn-missing"},
            headers={"X-Internal-Secret": INTERNAL_SECRET},
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestOrders:
    def test_place_list_get_cancel(self, client, sender):
        tokens = _login(client, sender)
        _credit(client, tokens["account"]["id"], 100)

        placed = client.post("/v1/orders/place", json=_order_body(tokens=30), headers=_auth(tokens))
        assert placed.status_code == 201
        data = placed.json()["data"]
        assert data["ledger_delta"] == -60
        assert data["balance_after"] == 40
        assert data["order"]["order_number"].startswith("ORD-")
        order_id = data["order"]["id"]

        listed = client.get("/v1/orders", headers=_auth(tokens))
        assert [o["id"] for o in listed.json()["data"]["items"]] == [order_id]

        fetched = client.get(f"/v1/orders/{order_id}", headers=_auth(tokens))
        assert fetched.json()["data"]["total_tokens"] == 60

        cancelled = client.post(
            f"/v1/orders/{order_id}/cancel", json={"reason": "changed mind"}, headers=_auth(tokens)
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["refund"] == 60
        assert cancelled.json()["data"]["balance_after"] == 100

        again = client.post(f"/v1/orders/{order_id}/cancel", headers=_auth(tokens))
        assert again.status_code == 400

    def test_insufficient_balance(self, client, sender):
        tokens = _login(client, sender)
        _credit(client, tokens["account"]["id"], 10)

        response = client.post("/v1/orders/place", json=_order_body(tokens=30), headers=_auth(tokens))

        assert response.status_code == 400
        assert response.json()["error"]["details"]["shortfall"] == 50

    def test_invalid_items(self, client, sender):
        tokens = _login(client, sender)
        body = _order_body()
        body["items"][0]["quantity"] = 0

        response = client.post("/v1/orders/place", json=body, headers=_auth(tokens))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_check_balance_and_validate(self, client, sender):
        tokens = _login(client, sender)
        _credit(client, tokens["account"]["id"], 50)

        check = client.get("/v1/orders/check-balance/80", headers=_auth(tokens))
        assert check.json()["data"] == {
            "sufficient": False,
            "current_balance": 50,
            "required": 80,
            "shortfall": 30,
        }

        validated = client.post(
            "/v1/orders/validate", json={"items": _order_body(tokens=20)["items"]}, headers=_auth(tokens)
        )
        data = validated.json()["data"]
        assert data["valid"] is True
        assert data["total_tokens"] == 40
        assert data["total_amount"] == 998.0

    def test_foreign_order_forbidden(self, client, sender):
        owner = _login(client, sender)
        _credit(client, owner["account"]["id"], 100)
        order_id = client.post(
            "/v1/orders/place", json=_order_body(tokens=10), headers=_auth(owner)
        ).json()["data"]["order"]["id"]

        intruder = _login(client, sender, phone="9123456789")
        response = client.get(f"/v1/orders/{order_id}", headers=_auth(intruder))
        assert response.status_code == 403


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["checks"]["database"]["status"] == "healthy"
    assert response.json()["checks"]["redis"]["status"] == "not_configured"
