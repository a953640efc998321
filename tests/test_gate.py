"""Tests for per-request bearer authorization."""

from datetime import timedelta

import pytest

from shopcore.service.errors import (
    AuthenticationError,
    ForbiddenError,
    TokenExpiredError,
    TokenInvalidError,
)
from shopcore.service.gate import AccessGate, extract_bearer
from shopcore.service.revocation import RevocationRegistry
from shopcore.service.tokens import TokenCodec
from shopcore.storage.memory import MemoryStore


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def codec(clock):
    return TokenCodec(
        "gate-test-secret",
        issuer="shopcore",
        audience="shop-clients",
        access_ttl=timedelta(minutes=15),
        clock=clock,
    )


@pytest.fixture
def revocation(codec, clock):
    return RevocationRegistry(codec, clock=clock)


@pytest.fixture
def gate(codec, revocation, memory_store):
    return AccessGate(codec, revocation, memory_store, required_module="shop", retry_attempts=1)


@pytest.fixture
def account(memory_store):
    return memory_store.create_account(
        "9876543210", modules=["shop"], module_flags={"shop": True}
    )


def _bearer(codec, account, **overrides):
    claims = {"sub": account.id, "modules": list(account.modules), "shop_enabled": True}
    claims.update(overrides)
    return f"Bearer {codec.issue_access_token(claims).token}"


class TestExtractBearer:
    @pytest.mark.parametrize("header", [None, "", "Token abc", "Bearer", "Bearer   "])
    def test_rejects_missing_or_malformed(self, header):
        with pytest.raises(AuthenticationError):
            extract_bearer(header)

    def test_accepts_case_insensitive_scheme(self):
        assert extract_bearer("bearer abc.def.ghi") == "abc.def.ghi"


class TestAuthorize:
    async def test_valid_token_yields_context(self, gate, codec, account):
        context = await gate.authorize(_bearer(codec, account))

        assert context.account.id == account.id
        assert context.claims["sub"] == account.id

    async def test_expired_token(self, gate, codec, account, clock):
        header = _bearer(codec, account)
        clock.advance(16 * 60)

        with pytest.raises(TokenExpiredError):
            await gate.authorize(header)

    async def test_refresh_token_not_accepted(self, gate, codec, account):
        refresh = codec.issue_refresh_token(account.id)

        with pytest.raises(TokenInvalidError):
            await gate.authorize(f"Bearer {refresh.token}")

    async def test_revoked_token(self, gate, codec, account, revocation):
        header = _bearer(codec, account)
        await revocation.revoke(header.split(" ", 1)[1])

        with pytest.raises(AuthenticationError):
            await gate.authorize(header)

    async def test_revoked_token_stays_rejected_inside_leeway(
        self, gate, codec, account, revocation, clock
    ):
        header = _bearer(codec, account)
        await revocation.revoke(header.split(" ", 1)[1])
        clock.advance(15 * 60 + 10)

        with pytest.raises(AuthenticationError):
            await gate.authorize(header)

    async def test_missing_module_forbidden(self, gate, codec, account):
        with pytest.raises(ForbiddenError):
            await gate.authorize(_bearer(codec, account, modules=["fantasy"]))

    async def test_disabled_module_flag_forbidden(self, gate, codec, account):
        with pytest.raises(ForbiddenError):
            await gate.authorize(_bearer(codec, account, shop_enabled=False))

    async def test_module_check_can_be_skipped(self, gate, codec, account):
        context = await gate.authorize(
            _bearer(codec, account, modules=["fantasy"]), require_module=False
        )
        assert context.account.id == account.id

    async def test_deleted_account(self, gate, codec, account):
        header = f"Bearer {codec.issue_access_token({'sub': 'ghost', 'modules': ['shop']}).token}"

        with pytest.raises(TokenInvalidError):
            await gate.authorize(header)

    async def test_blocked_account(self, gate, codec, account, memory_store):
        memory_store.update_account(account.id, status="blocked")

        with pytest.raises(ForbiddenError):
            await gate.authorize(_bearer(codec, account))
