from __future__ import annotations

import asyncio
import secrets
import string
import uuid
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from shopcore.logging import get_logger
from shopcore.service.errors import (
    CompensationFailedError,
    ConflictError,
    ForbiddenError,
    InsufficientBalanceError,
    NotCancellableError,
    NotFoundError,
    ServerError,
    ServiceError,
    UpstreamError,
    ValidationError,
)
from shopcore.service.retry import call_upstream
from shopcore.storage.errors import ConstraintViolation
from shopcore.storage.models import (
    NON_CANCELLABLE_STATUSES,
    ORDER_STATUSES,
    Account,
    LedgerEntry,
    Order,
    OrderItem,
    utcnow,
)
from shopcore.storage.repositories import AccountRepository, OrderRepository

logger = get_logger(__name__)

_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits

MAX_ITEM_QUANTITY = 10_000
MAX_UNIT_PRICE = 10_000_000.0
# Column limits: NUMERIC(12, 2) for amounts, INTEGER for tokens
MAX_ORDER_AMOUNT = 9_999_999_999.99
MAX_ORDER_TOKENS = 2_147_483_647


def generate_order_number(now: Optional[datetime] = None) -> str:
    stamp = (now or utcnow()).strftime("%Y%m%d")
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(6))
    return f"ORD-{stamp}-{suffix}"


@dataclass(frozen=True)
class ValidatedOrder:
    items: List[OrderItem]
    total_amount: float
    total_tokens: int


@dataclass(frozen=True)
class BalanceCheck:
    sufficient: bool
    current_balance: int
    required: int
    shortfall: int


@dataclass(frozen=True)
class PlacedOrder:
    order: Order
    ledger_delta: int
    balance_after: int


@dataclass(frozen=True)
class CancelledOrder:
    order: Order
    refund: int
    balance_after: Optional[int]


@dataclass(frozen=True)
class CreditResult:
    entry: LedgerEntry
    applied: bool


def _as_number(value: Any, field: str, index: int) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(
            f"item {index}: {field} must be a number", detail={"index": index, "field": field}
        )
    return value


class LedgerService:
    """Token balance ledger and the order saga built on it.

    Balance changes go through a compare-and-swap on the account version,
    serialized per account inside this process. Every change carries a
    ledger entry id that makes replaying it after a timeout harmless.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        orders: OrderRepository,
        *,
        cas_retries: int = 5,
        retry_attempts: int = 3,
    ) -> None:
        self.accounts = accounts
        self.orders = orders
        self.cas_retries = max(1, cas_retries)
        self.retry_attempts = retry_attempts
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _account_lock(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    async def _call(self, fn, *args, **kwargs):
        return await call_upstream(fn, *args, attempts=self.retry_attempts, **kwargs)

    # -- validation -------------------------------------------------------

    def validate_items(self, items: Sequence[Mapping[str, Any]]) -> ValidatedOrder:
        if not items:
            raise ValidationError("order must contain at least one item", detail={"field": "items"})
        validated: List[OrderItem] = []
        for index, raw in enumerate(items):
            product_id = raw.get("product_id")
            if not product_id or not str(product_id).strip():
                raise ValidationError(
                    f"item {index}: product_id is required",
                    detail={"index": index, "field": "product_id"},
                )
            quantity = raw.get("quantity")
            if (
                isinstance(quantity, bool)
                or not isinstance(quantity, int)
                or not 1 <= quantity <= MAX_ITEM_QUANTITY
            ):
                raise ValidationError(
                    f"item {index}: quantity must be a whole number between 1 and {MAX_ITEM_QUANTITY}",
                    detail={"index": index, "field": "quantity"},
                )
            price = _as_number(raw.get("price"), "price", index)
            if not 0 <= price <= MAX_UNIT_PRICE:
                raise ValidationError(
                    f"item {index}: price must be between 0 and {MAX_UNIT_PRICE:.0f}",
                    detail={"index": index, "field": "price"},
                )
            token_price = raw.get("token_price")
            if token_price is None:
                token_price = 0
            elif isinstance(token_price, bool) or not isinstance(token_price, int) or token_price < 0:
                raise ValidationError(
                    f"item {index}: token_price must be a non-negative whole number",
                    detail={"index": index, "field": "token_price"},
                )
            validated.append(
                OrderItem(
                    product_id=str(product_id),
                    quantity=quantity,
                    unit_price=float(price),
                    unit_token_price=token_price,
                    product_name=raw.get("product_name"),
                )
            )
        total_amount = round(sum(item.line_amount for item in validated), 2)
        total_tokens = sum(item.line_tokens for item in validated)
        if total_amount > MAX_ORDER_AMOUNT or total_tokens > MAX_ORDER_TOKENS:
            raise ValidationError(
                "order total exceeds the allowed maximum",
                detail={"total_amount": total_amount, "total_tokens": total_tokens},
            )
        return ValidatedOrder(items=validated, total_amount=total_amount, total_tokens=total_tokens)

    # -- balance ----------------------------------------------------------

    async def _get_account(self, account_id: str) -> Account:
        account = await self._call(self.accounts.get_account, account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account

    async def get_account_by_phone(self, phone: str) -> Account:
        account = await self._call(self.accounts.get_account_by_phone, phone)
        if account is None:
            raise NotFoundError("account not found")
        return account

    async def check_balance(self, account_id: str, required: int) -> BalanceCheck:
        if required < 0:
            raise ValidationError("required tokens cannot be negative")
        account = await self._get_account(account_id)
        shortfall = max(0, required - account.token_balance)
        return BalanceCheck(
            sufficient=shortfall == 0,
            current_balance=account.token_balance,
            required=required,
            shortfall=shortfall,
        )

    async def _apply_delta(
        self,
        account_id: str,
        delta: int,
        *,
        reason: str,
        reference: Optional[str],
        entry_id: Optional[str] = None,
    ) -> Tuple[Account, LedgerEntry]:
        entry_id = entry_id or LedgerEntry.new_id()
        async with self._account_lock(account_id):
            for attempt in range(1, self.cas_retries + 1):
                account = await self._get_account(account_id)
                if account.token_balance + delta < 0:
                    shortfall = -(account.token_balance + delta)
                    raise InsufficientBalanceError(
                        "insufficient token balance",
                        detail={
                            "current_balance": account.token_balance,
                            "required": -delta,
                            "shortfall": shortfall,
                        },
                    )
                try:
                    result = await self._call(
                        self.accounts.apply_balance_delta,
                        account_id,
                        delta,
                        expected_version=account.version,
                        entry_id=entry_id,
                        reason=reason,
                        reference=reference,
                    )
                except ConstraintViolation as exc:
                    if exc.detail.get("field") == "token_balance":
                        # Lost a race with a writer outside this process
                        continue
                    raise
                if result is not None:
                    updated, entry = result
                    if delta < 0:
                        event = "balance_deducted"
                    elif reason == "credit":
                        event = "balance_credited"
                    else:
                        event = "balance_refunded"
                    logger.info(
                        event,
                        account_id=account_id,
                        delta=delta,
                        reason=reason,
                        reference=reference,
                        balance_after=entry.balance_after,
                    )
                    return updated, entry
                logger.debug(
                    "ledger_cas_conflict",
                    account_id=account_id,
                    attempt=attempt,
                    expected_version=account.version,
                )
        raise ConflictError(
            "balance changed concurrently, please retry", detail={"account_id": account_id}
        )

    async def deduct(
        self,
        account_id: str,
        amount: int,
        *,
        reference: Optional[str] = None,
        entry_id: Optional[str] = None,
    ) -> Tuple[Account, LedgerEntry]:
        """Remove ``amount`` tokens, re-checking sufficiency under the account lock."""
        if amount <= 0:
            raise ValidationError("deduction must be positive")
        return await self._apply_delta(
            account_id, -amount, reason="order_debit", reference=reference, entry_id=entry_id
        )

    async def refund(
        self,
        account_id: str,
        amount: int,
        *,
        reference: Optional[str] = None,
        reason: str = "order_refund",
    ) -> Tuple[Account, LedgerEntry]:
        """Return ``amount`` tokens against a fresh read of the balance."""
        if amount <= 0:
            raise ValidationError("refund must be positive")
        return await self._apply_delta(account_id, amount, reason=reason, reference=reference)

    async def credit(self, account_id: str, amount: int, *, transaction_id: str) -> CreditResult:
        """Top up a balance once per ``transaction_id``."""
        if amount <= 0:
            raise ValidationError("credit amount must be positive", detail={"field": "amount"})
        if not transaction_id:
            raise ValidationError("transaction_id is required", detail={"field": "transaction_id"})
        existing = await self._call(self.accounts.find_ledger_entry, "credit", transaction_id)
        if existing is not None:
            return self._duplicate_credit(existing, account_id)
        try:
            _, entry = await self._apply_delta(
                account_id, amount, reason="credit", reference=transaction_id
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") != "reference":
                raise
            existing = await self._call(self.accounts.find_ledger_entry, "credit", transaction_id)
            if existing is None:
                raise
            return self._duplicate_credit(existing, account_id)
        return CreditResult(entry=entry, applied=True)

    @staticmethod
    def _duplicate_credit(existing: LedgerEntry, account_id: str) -> CreditResult:
        if existing.account_id != account_id:
            raise ConflictError(
                "transaction_id already used for another account",
                detail={"transaction_id": existing.reference},
            )
        logger.info("credit_duplicate_ignored", account_id=account_id, reference=existing.reference)
        return CreditResult(entry=existing, applied=False)

    # -- order saga -------------------------------------------------------

    async def place_order(
        self,
        account_id: str,
        items: Sequence[Mapping[str, Any]],
        *,
        shipping_address_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> PlacedOrder:
        """Validate, deduct tokens, create the order; refund if creation fails."""
        validated = self.validate_items(items)
        required = validated.total_tokens
        check = await self.check_balance(account_id, required)
        if not check.sufficient:
            raise InsufficientBalanceError(
                "insufficient token balance",
                detail={
                    "current_balance": check.current_balance,
                    "required": check.required,
                    "shortfall": check.shortfall,
                },
            )

        order = Order(
            id=str(uuid.uuid4()),
            order_number=generate_order_number(),
            account_id=account_id,
            items=validated.items,
            total_amount=validated.total_amount,
            total_tokens=required,
            shipping_address_id=shipping_address_id,
            notes=notes,
        )
        balance_after = check.current_balance
        debit_entry_id = LedgerEntry.new_id()
        if required > 0:
            try:
                _, entry = await self.deduct(
                    account_id, required, reference=order.order_number, entry_id=debit_entry_id
                )
            except UpstreamError as exc:
                await self._resolve_unknown_debit(
                    account_id, required, order.order_number, debit_entry_id, exc
                )
                raise
            balance_after = entry.balance_after

        try:
            created = await self._create_order(order)
        except Exception as exc:
            logger.error(
                "order_create_failed",
                account_id=account_id,
                order_number=order.order_number,
                tokens=required,
                error_type=type(exc).__name__,
            )
            if required > 0:
                await self._compensate(account_id, required, order.order_number)
            if isinstance(exc, ServiceError):
                raise
            raise ServerError(
                "order could not be created", detail={"order_number": order.order_number}
            ) from exc

        logger.info(
            "order_placed",
            account_id=account_id,
            order_id=created.id,
            order_number=created.order_number,
            tokens=required,
            total_amount=created.total_amount,
        )
        return PlacedOrder(order=created, ledger_delta=-required, balance_after=balance_after)

    async def _create_order(self, order: Order) -> Order:
        try:
            return await self._call(self.orders.create_order, order)
        except ConstraintViolation:
            # A replay after a lost response hits our own row
            existing = await self._call(self.orders.get_order, order.id)
            if existing is not None and existing.order_number == order.order_number:
                return existing
            raise

    async def _resolve_unknown_debit(
        self,
        account_id: str,
        amount: int,
        order_number: str,
        entry_id: str,
        cause: Exception,
    ) -> None:
        """After a failed debit, refund only if the store shows it was applied."""
        try:
            entry = await self._call(self.accounts.get_ledger_entry, entry_id)
        except UpstreamError:
            logger.critical(
                "ledger_outcome_unknown",
                alert=True,
                reconciliation_required=True,
                account_id=account_id,
                amount=amount,
                order_number=order_number,
                entry_id=entry_id,
                error=str(cause),
            )
            return
        if entry is not None:
            await self._compensate(account_id, amount, order_number)

    async def _compensate(self, account_id: str, amount: int, order_number: str) -> None:
        try:
            await self.refund(account_id, amount, reference=order_number, reason="order_refund")
        except ServiceError as exc:
            logger.critical(
                "compensation_failed",
                alert=True,
                reconciliation_required=True,
                account_id=account_id,
                amount=amount,
                order_number=order_number,
                error_type=type(exc).__name__,
                error=exc.message,
            )
            raise CompensationFailedError(
                "order failed and the token refund could not be applied; flagged for reconciliation",
                detail={"order_number": order_number, "amount": amount},
            ) from exc
        logger.info(
            "compensation_applied", account_id=account_id, amount=amount, order_number=order_number
        )

    # -- order queries and cancellation ----------------------------------

    async def get_order(self, order_id: str, account_id: str) -> Order:
        order = await self._call(self.orders.get_order, order_id)
        if order is None:
            raise NotFoundError("order not found", detail={"order_id": order_id})
        if order.account_id != account_id:
            raise ForbiddenError("order belongs to another account")
        return order

    async def list_orders(
        self,
        account_id: str,
        *,
        status: Optional[str] = None,
        limit: int = 20,
        skip: int = 0,
    ) -> List[Order]:
        if status is not None and status not in ORDER_STATUSES:
            raise ValidationError("unknown order status", detail={"status": status})
        limit = min(max(1, limit), 100)
        return await self._call(
            self.orders.list_orders, account_id, status=status, limit=limit, offset=max(0, skip)
        )

    async def cancel_order(
        self, order_id: str, account_id: str, *, reason: Optional[str] = None
    ) -> CancelledOrder:
        order = await self.get_order(order_id, account_id)
        if order.status in NON_CANCELLABLE_STATUSES:
            raise NotCancellableError(
                f"order cannot be cancelled once {order.status}",
                detail={"status": order.status},
            )
        try:
            # Not replayed: a lost success would read back as a concurrent cancel
            updated = await call_upstream(
                self.orders.update_order_status,
                order.id,
                expected_status=order.status,
                new_status="cancelled",
                cancel_reason=reason or "cancelled by customer",
            )
        except UpstreamError:
            logger.critical(
                "cancel_outcome_unknown",
                alert=True,
                reconciliation_required=True,
                account_id=account_id,
                order_number=order.order_number,
                amount=order.total_tokens,
            )
            raise
        if updated is None:
            # Another request moved the order first; only that request refunds
            raise NotCancellableError(
                "order status changed, reload and try again", detail={"order_id": order.id}
            )

        balance_after: Optional[int] = None
        if order.total_tokens > 0:
            try:
                _, entry = await self.refund(
                    account_id,
                    order.total_tokens,
                    reference=order.order_number,
                    reason="cancel_refund",
                )
            except ServiceError as exc:
                logger.critical(
                    "compensation_failed",
                    alert=True,
                    reconciliation_required=True,
                    account_id=account_id,
                    amount=order.total_tokens,
                    order_number=order.order_number,
                    error_type=type(exc).__name__,
                    error=exc.message,
                )
                raise CompensationFailedError(
                    "order cancelled but the token refund could not be applied; flagged for reconciliation",
                    detail={"order_number": order.order_number, "amount": order.total_tokens},
                ) from exc
            balance_after = entry.balance_after

        logger.info(
            "order_cancelled",
            account_id=account_id,
            order_number=order.order_number,
            refund=order.total_tokens,
        )
        return CancelledOrder(order=updated, refund=order.total_tokens, balance_after=balance_after)
