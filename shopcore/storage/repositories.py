from __future__ import annotations

from typing import Any, List, Optional, Protocol, Sequence, Tuple

from shopcore.storage.models import Account, LedgerEntry, Order


class AccountRepository(Protocol):
    """Account persistence used by the session manager, ledger and access gate.

    Implementations raise ``ConstraintViolation`` for uniqueness failures and
    ``StoreUnavailable`` when the backing store cannot be reached.
    """

    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def get_account_by_phone(self, phone: str) -> Optional[Account]:
        ...

    def create_account(
        self,
        phone: str,
        *,
        modules: Sequence[str],
        module_flags: Optional[dict] = None,
        external_ref: Optional[str] = None,
    ) -> Account:
        ...

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        ...

    def apply_balance_delta(
        self,
        account_id: str,
        delta: int,
        *,
        expected_version: int,
        entry_id: str,
        reason: str,
        reference: Optional[str] = None,
    ) -> Optional[Tuple[Account, LedgerEntry]]:
        """Compare-and-swap the balance.

        Returns ``None`` when ``expected_version`` is stale. Replaying an
        ``entry_id`` that was already applied returns the original result.
        """
        ...

    def get_ledger_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        ...

    def find_ledger_entry(self, reason: str, reference: str) -> Optional[LedgerEntry]:
        ...


class OrderRepository(Protocol):
    def create_order(self, order: Order) -> Order:
        ...

    def get_order(self, order_id: str) -> Optional[Order]:
        ...

    def list_orders(
        self,
        account_id: str,
        *,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Order]:
        ...

    def update_order_status(
        self,
        order_id: str,
        *,
        expected_status: str,
        new_status: str,
        cancel_reason: Optional[str] = None,
    ) -> Optional[Order]:
        """Transition status only if it still equals ``expected_status``."""
        ...


__all__ = ["AccountRepository", "OrderRepository"]
