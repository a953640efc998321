from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query

from shopcore.api.schemas import (
    AccountResponse,
    AuthResponse,
    BalanceCheckResponse,
    CancelOrderRequest,
    CancelOrderResponse,
    Envelope,
    OrderItemOut,
    OrderListResponse,
    OrderResponse,
    PlaceOrderRequest,
    PlaceOrderResponse,
    ProfileUpdateRequest,
    RefreshTokenRequest,
    RefreshTokenResponse,
    SendOtpRequest,
    SendOtpResponse,
    ValidateOrderRequest,
    ValidateOrderResponse,
    ValidateTokenRequest,
    VerifyOtpRequest,
    WalletBalanceResponse,
    WalletCreditRequest,
    WalletCreditResponse,
)
from shopcore.logging import get_logger
from shopcore.service.gate import AccessContext
from shopcore.service.ledger import BalanceCheck
from shopcore.service.runtime import get_runtime
from shopcore.service.session import normalize_phone
from shopcore.storage.models import Account, Order

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(**account.public_view())


def _order_response(order: Order) -> OrderResponse:
    return OrderResponse(
        id=order.id,
        order_number=order.order_number,
        status=order.status,
        items=[
            OrderItemOut(
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                unit_token_price=item.unit_token_price,
            )
            for item in order.items
        ],
        total_amount=order.total_amount,
        total_tokens=order.total_tokens,
        shipping_address_id=order.shipping_address_id,
        notes=order.notes,
        cancel_reason=order.cancel_reason,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


def _balance_response(check: BalanceCheck) -> BalanceCheckResponse:
    return BalanceCheckResponse(
        sufficient=check.sufficient,
        current_balance=check.current_balance,
        required=check.required,
        shortfall=check.shortfall,
    )


async def get_access(authorization: Optional[str] = Header(None)) -> AccessContext:
    """Bearer auth for shop endpoints: requires the shop module."""
    runtime = get_runtime()
    return await runtime.gate.authorize(authorization)


async def get_account_access(authorization: Optional[str] = Header(None)) -> AccessContext:
    """Bearer auth for account endpoints that work without the shop module."""
    runtime = get_runtime()
    return await runtime.gate.authorize(authorization, require_module=False)


# -- auth -----------------------------------------------------------------


@router.post("/auth/send-otp", response_model=Envelope, tags=["auth"])
async def send_otp(body: SendOtpRequest):
    runtime = get_runtime()
    issued = await runtime.sessions.send(body.phone)
    return Envelope(
        status="ok",
        data=SendOtpResponse(
            session_id=issued.challenge_id,
            expires_in=issued.ttl_seconds,
            expires_at=datetime.fromtimestamp(issued.expires_at, timezone.utc),
        ),
    )


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyOtpRequest):
    runtime = get_runtime()
    result = await runtime.sessions.login(
        body.phone, body.code, body.session_id, device_id=body.device_id
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=result.tokens.access.token,
            refresh_token=result.tokens.refresh.token,
            token_type=result.tokens.token_type,
            access_expires_at=result.tokens.access.expires_at,
            refresh_expires_at=result.tokens.refresh.expires_at,
            account=_account_response(result.account),
            is_new_account=result.is_new_account,
        ),
    )


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: RefreshTokenRequest):
    runtime = get_runtime()
    access = await runtime.sessions.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=RefreshTokenResponse(access_token=access.token, expires_at=access.expires_at),
    )


@router.post("/auth/validate-token", response_model=Envelope, tags=["auth"])
async def validate_token(body: ValidateTokenRequest):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.sessions.validate_token(body.token))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(access: AccessContext = Depends(get_account_access)):
    runtime = get_runtime()
    await runtime.sessions.logout(access.token, access.account)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(access: AccessContext = Depends(get_account_access)):
    return Envelope(status="ok", data=_account_response(access.account))


@router.patch("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest, access: AccessContext = Depends(get_account_access)
):
    runtime = get_runtime()
    account = await runtime.sessions.update_profile(
        access.account, **body.model_dump(exclude_none=True)
    )
    return Envelope(status="ok", data=_account_response(account))


# -- orders ---------------------------------------------------------------


@router.post("/orders/place", response_model=Envelope, status_code=201, tags=["orders"])
async def place_order(body: PlaceOrderRequest, access: AccessContext = Depends(get_access)):
    runtime = get_runtime()
    placed = await runtime.ledger.place_order(
        access.account.id,
        [item.model_dump() for item in body.items],
        shipping_address_id=body.shipping_address_id,
        notes=body.notes,
    )
    return Envelope(
        status="ok",
        data=PlaceOrderResponse(
            order=_order_response(placed.order),
            ledger_delta=placed.ledger_delta,
            balance_after=placed.balance_after,
        ),
    )


@router.get("/orders", response_model=Envelope, tags=["orders"])
async def list_orders(
    status: Optional[str] = Query(None, max_length=32),
    limit: int = Query(20, ge=1, le=100),
    skip: int = Query(0, ge=0),
    access: AccessContext = Depends(get_access),
):
    runtime = get_runtime()
    orders = await runtime.ledger.list_orders(
        access.account.id, status=status, limit=limit, skip=skip
    )
    return Envelope(
        status="ok",
        data=OrderListResponse(
            items=[_order_response(o) for o in orders], limit=limit, skip=skip
        ),
    )


@router.get("/orders/check-balance/{tokens}", response_model=Envelope, tags=["orders"])
async def check_balance(
    tokens: int = Path(..., ge=0), access: AccessContext = Depends(get_access)
):
    runtime = get_runtime()
    check = await runtime.ledger.check_balance(access.account.id, tokens)
    return Envelope(status="ok", data=_balance_response(check))


@router.post("/orders/validate", response_model=Envelope, tags=["orders"])
async def validate_order(
    body: ValidateOrderRequest, access: AccessContext = Depends(get_access)
):
    runtime = get_runtime()
    validated = runtime.ledger.validate_items([item.model_dump() for item in body.items])
    check = await runtime.ledger.check_balance(access.account.id, validated.total_tokens)
    return Envelope(
        status="ok",
        data=ValidateOrderResponse(
            valid=check.sufficient,
            total_amount=validated.total_amount,
            total_tokens=validated.total_tokens,
            balance=_balance_response(check),
        ),
    )


@router.get("/orders/{order_id}", response_model=Envelope, tags=["orders"])
async def get_order(
    order_id: str = Path(..., max_length=64), access: AccessContext = Depends(get_access)
):
    runtime = get_runtime()
    order = await runtime.ledger.get_order(order_id, access.account.id)
    return Envelope(status="ok", data=_order_response(order))


@router.post("/orders/{order_id}/cancel", response_model=Envelope, tags=["orders"])
async def cancel_order(
    body: Optional[CancelOrderRequest] = None,
    order_id: str = Path(..., max_length=64),
    access: AccessContext = Depends(get_access),
):
    runtime = get_runtime()
    cancelled = await runtime.ledger.cancel_order(
        order_id, access.account.id, reason=body.reason if body else None
    )
    return Envelope(
        status="ok",
        data=CancelOrderResponse(
            order=_order_response(cancelled.order),
            refund=cancelled.refund,
            balance_after=cancelled.balance_after,
        ),
    )


# -- wallet ---------------------------------------------------------------


@router.get("/wallet/balance", response_model=Envelope, tags=["wallet"])
async def wallet_balance(access: AccessContext = Depends(get_access)):
    return Envelope(
        status="ok",
        data=WalletBalanceResponse(
            account_id=access.account.id, token_balance=access.account.token_balance
        ),
    )


@router.post("/wallet/credit", response_model=Envelope, tags=["wallet"])
async def wallet_credit(
    body: WalletCreditRequest,
    x_internal_secret: Optional[str] = Header(None, alias="X-Internal-Secret"),
):
    runtime = get_runtime()
    expected = runtime.settings.internal_secret
    if not expected:
        raise _http_error("forbidden", "wallet credits are disabled", status_code=403)
    if not x_internal_secret or not hmac.compare_digest(
        x_internal_secret.encode(), expected.encode()
    ):
        logger.warning("wallet_credit_unauthorized")
        raise _http_error("unauthorized", "invalid internal secret", status_code=401)

    if body.account_id:
        account_id = body.account_id
    else:
        account = await runtime.ledger.get_account_by_phone(normalize_phone(body.phone))
        account_id = account.id
    result = await runtime.ledger.credit(
        account_id, body.amount, transaction_id=body.transaction_id
    )
    return Envelope(
        status="ok",
        data=WalletCreditResponse(
            account_id=account_id,
            amount=result.entry.delta,
            transaction_id=body.transaction_id,
            balance_after=result.entry.balance_after,
            applied=result.applied,
        ),
    )
