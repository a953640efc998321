from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_ORDER_ITEMS = 100

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "upstream_error",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# -- auth -----------------------------------------------------------------


class SendOtpRequest(BaseModel):
    phone: str = Field(..., max_length=20)


class SendOtpResponse(BaseModel):
    session_id: str
    expires_in: int
    expires_at: datetime


class VerifyOtpRequest(BaseModel):
    phone: str = Field(..., max_length=20)
    code: str = Field(..., min_length=4, max_length=8)
    session_id: Optional[str] = Field(default=None, max_length=64)
    device_id: Optional[str] = Field(default=None, max_length=128)


class AccountResponse(BaseModel):
    id: str
    phone: str
    status: str
    modules: List[str]
    module_flags: Dict[str, bool] = Field(default_factory=dict)
    token_balance: int
    external_ref: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime
    last_login_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: int
    refresh_expires_at: int
    account: AccountResponse
    is_new_account: bool = False


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class RefreshTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: int


class ValidateTokenRequest(BaseModel):
    token: str = Field(..., max_length=4096)


class ProfileUpdateRequest(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=80)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=80)
    email: Optional[str] = Field(default=None, max_length=254)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip().lower()
        local, sep, domain = normalized.partition("@")
        if not sep or not local or "." not in domain:
            raise ValueError("invalid email address")
        return normalized

    @model_validator(mode="after")
    def _require_one_field(self):
        if self.first_name is None and self.last_name is None and self.email is None:
            raise ValueError("provide at least one of first_name, last_name, email")
        return self


# -- orders ---------------------------------------------------------------


class OrderItemIn(BaseModel):
    # Range checks live in the ledger so the API and service agree on messages
    product_id: Optional[str] = Field(default=None, max_length=128)
    product_name: Optional[str] = Field(default=None, max_length=256)
    quantity: int
    price: float
    token_price: Optional[int] = None


class PlaceOrderRequest(BaseModel):
    items: List[OrderItemIn] = Field(..., max_length=MAX_ORDER_ITEMS)
    shipping_address_id: Optional[str] = Field(default=None, max_length=128)
    notes: Optional[str] = Field(default=None, max_length=1000)


class ValidateOrderRequest(BaseModel):
    items: List[OrderItemIn] = Field(..., max_length=MAX_ORDER_ITEMS)


class OrderItemOut(BaseModel):
    product_id: str
    product_name: Optional[str] = None
    quantity: int
    unit_price: float
    unit_token_price: int


class OrderResponse(BaseModel):
    id: str
    order_number: str
    status: str
    items: List[OrderItemOut]
    total_amount: float
    total_tokens: int
    shipping_address_id: Optional[str] = None
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PlaceOrderResponse(BaseModel):
    order: OrderResponse
    ledger_delta: int
    balance_after: int


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class CancelOrderResponse(BaseModel):
    order: OrderResponse
    refund: int
    balance_after: Optional[int] = None


class OrderListResponse(BaseModel):
    items: List[OrderResponse]
    limit: int
    skip: int


class BalanceCheckResponse(BaseModel):
    sufficient: bool
    current_balance: int
    required: int
    shortfall: int


class ValidateOrderResponse(BaseModel):
    valid: bool
    total_amount: float
    total_tokens: int
    balance: BalanceCheckResponse


# -- wallet ---------------------------------------------------------------


class WalletBalanceResponse(BaseModel):
    account_id: str
    token_balance: int


class WalletCreditRequest(BaseModel):
    account_id: Optional[str] = Field(default=None, max_length=64)
    phone: Optional[str] = Field(default=None, max_length=20)
    amount: int = Field(..., gt=0)
    transaction_id: str = Field(..., min_length=1, max_length=128)

    @model_validator(mode="after")
    def _require_target(self):
        if not self.account_id and not self.phone:
            raise ValueError("account_id or phone is required")
        return self


class WalletCreditResponse(BaseModel):
    account_id: str
    amount: int
    transaction_id: str
    balance_after: int
    applied: bool
