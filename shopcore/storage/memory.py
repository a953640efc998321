from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from shopcore.logging import get_logger
from shopcore.storage.errors import ConstraintViolation
from shopcore.storage.models import Account, LedgerEntry, Order, utcnow

_UPDATABLE_ACCOUNT_FIELDS = frozenset(
    {
        "status",
        "modules",
        "module_flags",
        "external_ref",
        "refresh_token_hash",
        "refresh_token_expires_at",
        "first_name",
        "last_name",
        "email",
        "device_id",
        "last_login_at",
    }
)


class MemoryStore:
    """In-process record store for tests and local development.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.orders: Dict[str, Order] = {}
        self.ledger: Dict[str, LedgerEntry] = {}
        self._phone_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    # -- accounts ---------------------------------------------------------

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_phone(self, phone: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._phone_index.get(phone)
            if not account_id:
                return None
            return copy.deepcopy(self.accounts[account_id])

    def create_account(
        self,
        phone: str,
        *,
        modules: Sequence[str],
        module_flags: Optional[dict] = None,
        external_ref: Optional[str] = None,
        token_balance: int = 0,
    ) -> Account:
        with self._data_lock:
            if phone in self._phone_index:
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            account = Account(
                id=str(uuid.uuid4()),
                phone=phone,
                modules=list(modules),
                module_flags=dict(module_flags or {}),
                external_ref=external_ref,
                token_balance=token_balance,
            )
            self.accounts[account.id] = account
            self._phone_index[phone] = account.id
            return copy.deepcopy(account)

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - _UPDATABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"cannot update account fields: {sorted(unknown)}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            updated = replace(account, **fields, updated_at=utcnow())
            self.accounts[account_id] = updated
            return copy.deepcopy(updated)

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
        with self._data_lock:
            existing = self.ledger.get(entry_id)
            if existing is not None:
                return copy.deepcopy(self.accounts[account_id]), copy.deepcopy(existing)
            account = self.accounts.get(account_id)
            if account is None:
                return None
            if account.version != expected_version:
                return None
            new_balance = account.token_balance + delta
            if new_balance < 0:
                raise ConstraintViolation(
                    "balance cannot go negative", {"field": "token_balance"}
                )
            if reason == "credit" and reference and self._find_entry(reason, reference):
                raise ConstraintViolation(
                    "credit already applied", {"field": "reference", "reference": reference}
                )
            updated = replace(
                account,
                token_balance=new_balance,
                version=account.version + 1,
                updated_at=utcnow(),
            )
            entry = LedgerEntry(
                id=entry_id,
                account_id=account_id,
                delta=delta,
                reason=reason,
                reference=reference,
                balance_after=new_balance,
            )
            self.accounts[account_id] = updated
            self.ledger[entry_id] = entry
            return copy.deepcopy(updated), copy.deepcopy(entry)

    def get_ledger_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        with self._data_lock:
            entry = self.ledger.get(entry_id)
            return copy.deepcopy(entry) if entry else None

    def find_ledger_entry(self, reason: str, reference: str) -> Optional[LedgerEntry]:
        with self._data_lock:
            entry = self._find_entry(reason, reference)
            return copy.deepcopy(entry) if entry else None

    def _find_entry(self, reason: str, reference: str) -> Optional[LedgerEntry]:
        for entry in self.ledger.values():
            if entry.reason == reason and entry.reference == reference:
                return entry
        return None

    def list_ledger_entries(self, account_id: str) -> List[LedgerEntry]:
        with self._data_lock:
            entries = [e for e in self.ledger.values() if e.account_id == account_id]
            return copy.deepcopy(sorted(entries, key=lambda e: e.created_at))

    # -- orders -----------------------------------------------------------

    def create_order(self, order: Order) -> Order:
        with self._data_lock:
            if order.id in self.orders:
                raise ConstraintViolation("order already exists", {"field": "id"})
            if any(o.order_number == order.order_number for o in self.orders.values()):
                raise ConstraintViolation(
                    "order number already exists", {"field": "order_number"}
                )
            self.orders[order.id] = copy.deepcopy(order)
            return copy.deepcopy(order)

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._data_lock:
            order = self.orders.get(order_id)
            return copy.deepcopy(order) if order else None

    def list_orders(
        self,
        account_id: str,
        *,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Order]:
        with self._data_lock:
            matches = [
                o
                for o in self.orders.values()
                if o.account_id == account_id and (status is None or o.status == status)
            ]
            matches.sort(key=lambda o: o.created_at, reverse=True)
            return copy.deepcopy(matches[offset : offset + limit])

    def update_order_status(
        self,
        order_id: str,
        *,
        expected_status: str,
        new_status: str,
        cancel_reason: Optional[str] = None,
    ) -> Optional[Order]:
        with self._data_lock:
            order = self.orders.get(order_id)
            if order is None or order.status != expected_status:
                return None
            updated = replace(
                order,
                status=new_status,
                cancel_reason=cancel_reason if cancel_reason is not None else order.cancel_reason,
                updated_at=utcnow(),
            )
            self.orders[order_id] = updated
            return copy.deepcopy(updated)

    def verify_connection(self) -> None:
        return None
