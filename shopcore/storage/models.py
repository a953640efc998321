from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

ACCOUNT_ACTIVE = "active"
ACCOUNT_BLOCKED = "blocked"

ORDER_STATUSES = (
    "pending",
    "confirmed",
    "processing",
    "shipped",
    "delivered",
    "cancelled",
    "refunded",
)
NON_CANCELLABLE_STATUSES = frozenset({"delivered", "shipped", "cancelled", "refunded"})

LEDGER_REASONS = ("order_debit", "order_refund", "cancel_refund", "credit")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    phone: str
    status: str = ACCOUNT_ACTIVE
    modules: List[str] = field(default_factory=lambda: ["shop"])
    module_flags: Dict[str, bool] = field(default_factory=dict)
    token_balance: int = 0
    external_ref: Optional[str] = None
    # Digest of the single refresh token currently honoured for this account
    refresh_token_hash: Optional[str] = None
    refresh_token_expires_at: Optional[datetime] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    device_id: Optional[str] = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def is_blocked(self) -> bool:
        return self.status == ACCOUNT_BLOCKED

    def module_enabled(self, module: str) -> bool:
        return module in self.modules and self.module_flags.get(module, True)

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "phone": self.phone,
            "status": self.status,
            "modules": list(self.modules),
            "module_flags": dict(self.module_flags),
            "token_balance": self.token_balance,
            "external_ref": self.external_ref,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "created_at": self.created_at,
            "last_login_at": self.last_login_at,
        }


@dataclass
class OrderItem:
    product_id: str
    quantity: int
    unit_price: float
    unit_token_price: int = 0
    product_name: Optional[str] = None

    @property
    def line_amount(self) -> float:
        return round(self.unit_price * self.quantity, 2)

    @property
    def line_tokens(self) -> int:
        return self.unit_token_price * self.quantity


@dataclass
class Order:
    id: str
    order_number: str
    account_id: str
    items: List[OrderItem]
    total_amount: float
    total_tokens: int
    status: str = "pending"
    shipping_address_id: Optional[str] = None
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LedgerEntry:
    """One applied balance mutation; ``id`` doubles as the mutation's idempotency key."""

    id: str
    account_id: str
    delta: int
    reason: str
    reference: Optional[str]
    balance_after: int
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new_id(cls) -> str:
        return str(uuid.uuid4())


@dataclass
class OtpChallenge:
    id: str
    phone: str
    code_hash: str
    created_at: float
    expires_at: float
    correlation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OtpChallenge":
        return cls(
            id=data["id"],
            phone=data["phone"],
            code_hash=data["code_hash"],
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            correlation_id=data.get("correlation_id"),
        )
