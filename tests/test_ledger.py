"""Tests for the token ledger and the order placement saga."""

import asyncio
import re

import pytest

from shopcore.service.errors import (
    CompensationFailedError,
    ConflictError,
    ForbiddenError,
    InsufficientBalanceError,
    NotCancellableError,
    NotFoundError,
    ServerError,
    UpstreamError,
    ValidationError,
)
from shopcore.service.ledger import LedgerService, generate_order_number
from shopcore.storage.errors import StoreUnavailable
from shopcore.storage.memory import MemoryStore


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def ledger(memory_store):
    return LedgerService(memory_store, memory_store, cas_retries=3, retry_attempts=1)


@pytest.fixture
def account(memory_store):
    return memory_store.create_account("9876543210", modules=["shop"], token_balance=100)


def _items(tokens=30, quantity=2, price=99.5):
    return [
        {
            "product_id": "sku-1",
            "product_name": "Team jersey",
            "quantity": quantity,
            "price": price,
            "token_price": tokens,
        }
    ]


class FailingOrders:
    """Order repository whose writes never reach the store."""

    def __init__(self, backing: MemoryStore):
        self.backing = backing

    def create_order(self, order):
        raise StoreUnavailable("connection reset")

    def get_order(self, order_id):
        return self.backing.get_order(order_id)


class BrokenOrders(FailingOrders):
    """Order repository whose writes fail with an unexpected error."""

    def create_order(self, order):
        raise RuntimeError("numeric field overflow")


class FlakyRefundAccounts:
    """Account repository that accepts debits and drops every refund."""

    def __init__(self, backing: MemoryStore):
        self.backing = backing

    def get_account(self, account_id):
        return self.backing.get_account(account_id)

    def apply_balance_delta(self, account_id, delta, **kwargs):
        if delta > 0:
            raise StoreUnavailable("connection reset")
        return self.backing.apply_balance_delta(account_id, delta, **kwargs)

    def get_ledger_entry(self, entry_id):
        return self.backing.get_ledger_entry(entry_id)


class TestValidation:
    def test_totals(self, ledger):
        validated = ledger.validate_items(
            _items(tokens=30, quantity=2, price=99.5)
            + [{"product_id": "sku-2", "quantity": 1, "price": 10}]
        )
        assert validated.total_tokens == 60
        assert validated.total_amount == 209.0
        assert validated.items[1].unit_token_price == 0

    @pytest.mark.parametrize(
        "item, field",
        [
            ({"quantity": 1, "price": 1}, "product_id"),
            ({"product_id": "a", "quantity": 0, "price": 1}, "quantity"),
            ({"product_id": "a", "quantity": 1.5, "price": 1}, "quantity"),
            ({"product_id": "a", "quantity": 1, "price": -1}, "price"),
            ({"product_id": "a", "quantity": 1, "price": "free"}, "price"),
            ({"product_id": "a", "quantity": 1, "price": 1e11}, "price"),
            ({"product_id": "a", "quantity": 1, "price": float("nan")}, "price"),
            ({"product_id": "a", "quantity": 10_001, "price": 1}, "quantity"),
            ({"product_id": "a", "quantity": 1, "price": 1, "token_price": -5}, "token_price"),
        ],
    )
    def test_rejects_bad_items(self, ledger, item, field):
        with pytest.raises(ValidationError) as exc_info:
            ledger.validate_items([item])
        assert exc_info.value.detail["field"] == field

    def test_rejects_total_above_limit(self, ledger):
        items = [
            {"product_id": f"sku-{n}", "quantity": 10_000, "price": 9_000_000} for n in range(2)
        ]
        with pytest.raises(ValidationError) as exc_info:
            ledger.validate_items(items)
        assert "total_amount" in exc_info.value.detail

    def test_rejects_empty_order(self, ledger):
        with pytest.raises(ValidationError):
            ledger.validate_items([])

    def test_order_number_format(self):
        assert re.match(r"^ORD-\d{8}-[A-Z0-9]{6}$", generate_order_number())


class TestBalance:
    async def test_check_balance(self, ledger, account):
        ok = await ledger.check_balance(account.id, 60)
        assert ok.sufficient is True
        assert ok.shortfall == 0

        short = await ledger.check_balance(account.id, 130)
        assert short.sufficient is False
        assert short.shortfall == 30

    async def test_deduct_never_goes_negative(self, ledger, account):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            await ledger.deduct(account.id, 101)
        assert exc_info.value.detail == {"current_balance": 100, "required": 101, "shortfall": 1}

    async def test_concurrent_deductions_serialize(self, ledger, account, memory_store):
        results = await asyncio.gather(
            *(ledger.deduct(account.id, 30) for _ in range(4)), return_exceptions=True
        )

        failures = [r for r in results if isinstance(r, InsufficientBalanceError)]
        assert len(failures) == 1
        assert memory_store.get_account(account.id).token_balance == 10

    async def test_cas_conflict_exhausts_retries(self, account, memory_store):
        class StaleAccounts:
            def get_account(self, account_id):
                return memory_store.get_account(account_id)

            def apply_balance_delta(self, *args, **kwargs):
                return None

        ledger = LedgerService(StaleAccounts(), memory_store, cas_retries=3, retry_attempts=1)
        with pytest.raises(ConflictError):
            await ledger.deduct(account.id, 10)

    async def test_replayed_entry_applies_once(self, ledger, account, memory_store):
        await ledger.deduct(account.id, 10, entry_id="entry-1")
        await ledger.deduct(account.id, 10, entry_id="entry-1")

        assert memory_store.get_account(account.id).token_balance == 90

    async def test_unknown_account(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.check_balance("missing", 1)


class TestCredit:
    async def test_credit_is_idempotent(self, ledger, account, memory_store):
        first = await ledger.credit(account.id, 50, transaction_id="txn-1")
        second = await ledger.credit(account.id, 50, transaction_id="txn-1")

        assert first.applied is True
        assert second.applied is False
        assert second.entry.id == first.entry.id
        assert memory_store.get_account(account.id).token_balance == 150

    async def test_transaction_id_bound_to_account(self, ledger, account, memory_store):
        other = memory_store.create_account("9123456789", modules=["shop"])
        await ledger.credit(account.id, 50, transaction_id="txn-1")

        with pytest.raises(ConflictError):
            await ledger.credit(other.id, 50, transaction_id="txn-1")

    async def test_credit_must_be_positive(self, ledger, account):
        with pytest.raises(ValidationError):
            await ledger.credit(account.id, 0, transaction_id="txn-1")

    async def test_get_account_by_phone(self, ledger, account):
        assert (await ledger.get_account_by_phone("9876543210")).id == account.id
        with pytest.raises(NotFoundError):
            await ledger.get_account_by_phone("9123456789")

    async def test_phone_lookup_wraps_store_outage(self, memory_store):
        class DownAccounts:
            def get_account_by_phone(self, phone):
                raise StoreUnavailable("connection reset")

        ledger = LedgerService(DownAccounts(), memory_store, cas_retries=3, retry_attempts=1)
        with pytest.raises(UpstreamError):
            await ledger.get_account_by_phone("9876543210")


class TestPlaceOrder:
    async def test_place_order_deducts_tokens(self, ledger, account, memory_store):
        placed = await ledger.place_order(account.id, _items(tokens=30), notes="gift")

        assert placed.ledger_delta == -60
        assert placed.balance_after == 40
        assert placed.order.status == "pending"
        assert placed.order.total_tokens == 60
        assert memory_store.get_order(placed.order.id) is not None
        assert memory_store.get_account(account.id).token_balance == 40

    async def test_zero_token_order_skips_ledger(self, ledger, account, memory_store):
        placed = await ledger.place_order(account.id, _items(tokens=0))

        assert placed.ledger_delta == 0
        assert memory_store.list_ledger_entries(account.id) == []

    async def test_insufficient_balance_rejected_before_debit(self, ledger, account, memory_store):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            await ledger.place_order(account.id, _items(tokens=60))
        assert exc_info.value.detail["shortfall"] == 20
        assert memory_store.get_account(account.id).token_balance == 100
        assert memory_store.orders == {}

    async def test_failed_create_refunds_tokens(self, account, memory_store):
        ledger = LedgerService(
            memory_store, FailingOrders(memory_store), cas_retries=3, retry_attempts=1
        )

        with pytest.raises(UpstreamError):
            await ledger.place_order(account.id, _items(tokens=30))

        assert memory_store.get_account(account.id).token_balance == 100
        reasons = [e.reason for e in memory_store.list_ledger_entries(account.id)]
        assert reasons == ["order_debit", "order_refund"]

    async def test_unexpected_create_error_refunds_tokens(self, account, memory_store):
        ledger = LedgerService(
            memory_store, BrokenOrders(memory_store), cas_retries=3, retry_attempts=1
        )

        with pytest.raises(ServerError) as exc_info:
            await ledger.place_order(account.id, _items(tokens=30))

        assert exc_info.value.status_code == 500
        assert memory_store.get_account(account.id).token_balance == 100
        reasons = [e.reason for e in memory_store.list_ledger_entries(account.id)]
        assert reasons == ["order_debit", "order_refund"]

    async def test_failed_refund_raises_compensation_error(self, account, memory_store):
        ledger = LedgerService(
            FlakyRefundAccounts(memory_store),
            FailingOrders(memory_store),
            cas_retries=3,
            retry_attempts=1,
        )

        with pytest.raises(CompensationFailedError) as exc_info:
            await ledger.place_order(account.id, _items(tokens=30))
        assert exc_info.value.status_code == 500
        assert exc_info.value.detail["amount"] == 60
        assert memory_store.get_account(account.id).token_balance == 40


class TestOrders:
    async def test_get_order_checks_ownership(self, ledger, account, memory_store):
        placed = await ledger.place_order(account.id, _items(tokens=10))
        other = memory_store.create_account("9123456789", modules=["shop"])

        assert (await ledger.get_order(placed.order.id, account.id)).id == placed.order.id
        with pytest.raises(ForbiddenError):
            await ledger.get_order(placed.order.id, other.id)
        with pytest.raises(NotFoundError):
            await ledger.get_order("missing", account.id)

    async def test_list_orders_filters_status(self, ledger, account):
        first = await ledger.place_order(account.id, _items(tokens=0))
        await ledger.place_order(account.id, _items(tokens=0))
        await ledger.cancel_order(first.order.id, account.id)

        pending = await ledger.list_orders(account.id, status="pending")
        cancelled = await ledger.list_orders(account.id, status="cancelled")
        assert len(pending) == 1
        assert [o.id for o in cancelled] == [first.order.id]

        with pytest.raises(ValidationError):
            await ledger.list_orders(account.id, status="lost")

    async def test_cancel_refunds_tokens(self, ledger, account, memory_store):
        placed = await ledger.place_order(account.id, _items(tokens=30))

        cancelled = await ledger.cancel_order(placed.order.id, account.id, reason="changed mind")

        assert cancelled.order.status == "cancelled"
        assert cancelled.order.cancel_reason == "changed mind"
        assert cancelled.refund == 60
        assert cancelled.balance_after == 100
        assert memory_store.get_account(account.id).token_balance == 100

    async def test_cancel_twice_refunds_once(self, ledger, account, memory_store):
        placed = await ledger.place_order(account.id, _items(tokens=30))
        await ledger.cancel_order(placed.order.id, account.id)

        with pytest.raises(NotCancellableError):
            await ledger.cancel_order(placed.order.id, account.id)
        assert memory_store.get_account(account.id).token_balance == 100

    @pytest.mark.parametrize("status", ["shipped", "delivered", "refunded"])
    async def test_cannot_cancel_after_dispatch(self, ledger, account, memory_store, status):
        placed = await ledger.place_order(account.id, _items(tokens=30))
        memory_store.update_order_status(
            placed.order.id, expected_status="pending", new_status=status
        )

        with pytest.raises(NotCancellableError) as exc_info:
            await ledger.cancel_order(placed.order.id, account.id)
        assert exc_info.value.status_code == 400
        assert memory_store.get_account(account.id).token_balance == 40

    async def test_cannot_cancel_foreign_order(self, ledger, account, memory_store):
        placed = await ledger.place_order(account.id, _items(tokens=30))
        other = memory_store.create_account("9123456789", modules=["shop"])

        with pytest.raises(ForbiddenError):
            await ledger.cancel_order(placed.order.id, other.id)
