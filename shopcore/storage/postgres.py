from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from shopcore.logging import get_logger
from shopcore.storage.errors import ConstraintViolation, StoreError, StoreUnavailable
from shopcore.storage.models import Account, LedgerEntry, Order, OrderItem

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        phone TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL DEFAULT 'active',
        modules JSONB NOT NULL DEFAULT '[]',
        module_flags JSONB NOT NULL DEFAULT '{}',
        token_balance INTEGER NOT NULL DEFAULT 0 CHECK (token_balance >= 0),
        external_ref TEXT,
        refresh_token_hash TEXT,
        refresh_token_expires_at TIMESTAMPTZ,
        first_name TEXT,
        last_name TEXT,
        email TEXT,
        device_id TEXT,
        version INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shop_order (
        id UUID PRIMARY KEY,
        order_number TEXT NOT NULL UNIQUE,
        account_id UUID NOT NULL REFERENCES account(id),
        items JSONB NOT NULL,
        total_amount NUMERIC(12, 2) NOT NULL,
        total_tokens INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        shipping_address_id TEXT,
        notes TEXT,
        cancel_reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS shop_order_account_idx ON shop_order (account_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS ledger_entry (
        id TEXT PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id),
        delta INTEGER NOT NULL,
        reason TEXT NOT NULL,
        reference TEXT,
        balance_after INTEGER NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ledger_entry_credit_ref
        ON ledger_entry (reference) WHERE reason = 'credit'
    """,
)

_UPDATABLE_ACCOUNT_FIELDS = (
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
)
_JSON_ACCOUNT_FIELDS = frozenset({"modules", "module_flags"})


def _is_uuid(value: Any) -> bool:
    # Ids arrive from tokens and URLs; a malformed one is simply not found
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed account, order and ledger records."""

    def __init__(
        self,
        dsn: str,
        *,
        connect_timeout: int = 5,
        statement_timeout_ms: int = 5000,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool_timeout = float(connect_timeout)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": connect_timeout,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection(timeout=self.pool_timeout) as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StoreUnavailable("record store connection timed out") from exc
        except psycopg.OperationalError as exc:
            # Connection loss and statement_timeout cancellation both land here
            self.logger.error("postgres_operational_error", error=str(exc))
            raise StoreUnavailable("record store unavailable") from exc
        except errors.UniqueViolation:
            # Callers map these to ConstraintViolation
            raise
        except psycopg.Error as exc:
            self.logger.error("postgres_error", error_type=type(exc).__name__, error=str(exc))
            raise StoreError(
                "record store rejected the statement", {"error_type": type(exc).__name__}
            ) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            phone=row["phone"],
            status=row.get("status", "active"),
            modules=list(row.get("modules") or []),
            module_flags=dict(row.get("module_flags") or {}),
            token_balance=int(row.get("token_balance", 0)),
            external_ref=row.get("external_ref"),
            refresh_token_hash=row.get("refresh_token_hash"),
            refresh_token_expires_at=row.get("refresh_token_expires_at"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            email=row.get("email"),
            device_id=row.get("device_id"),
            version=int(row.get("version", 0)),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _entry_from_row(row: Dict[str, Any]) -> LedgerEntry:
        return LedgerEntry(
            id=row["id"],
            account_id=str(row["account_id"]),
            delta=int(row["delta"]),
            reason=row["reason"],
            reference=row.get("reference"),
            balance_after=int(row["balance_after"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _order_from_row(row: Dict[str, Any]) -> Order:
        return Order(
            id=str(row["id"]),
            order_number=row["order_number"],
            account_id=str(row["account_id"]),
            items=[OrderItem(**item) for item in (row.get("items") or [])],
            total_amount=float(row["total_amount"]),
            total_tokens=int(row["total_tokens"]),
            status=row["status"],
            shipping_address_id=row.get("shipping_address_id"),
            notes=row.get("notes"),
            cancel_reason=row.get("cancel_reason"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # -- accounts ---------------------------------------------------------

    def get_account(self, account_id: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_phone(self, phone: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE phone = %s", (phone,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def create_account(
        self,
        phone: str,
        *,
        modules: Sequence[str],
        module_flags: Optional[dict] = None,
        external_ref: Optional[str] = None,
        token_balance: int = 0,
    ) -> Account:
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, phone, modules, module_flags, external_ref, token_balance)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        phone,
                        json.dumps(list(modules)),
                        json.dumps(dict(module_flags or {})),
                        external_ref,
                        token_balance,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("phone already exists", {"field": "phone"})
        return self._account_from_row(row)

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - set(_UPDATABLE_ACCOUNT_FIELDS)
        if unknown:
            raise ValueError(f"cannot update account fields: {sorted(unknown)}")
        if not fields:
            return self.get_account(account_id)
        assignments = []
        params: List[Any] = []
        for name in _UPDATABLE_ACCOUNT_FIELDS:
            if name not in fields:
                continue
            value = fields[name]
            assignments.append(f"{name} = %s")
            params.append(json.dumps(value) if name in _JSON_ACCOUNT_FIELDS else value)
        params.append(account_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE account SET {', '.join(assignments)}, updated_at = now() "
                "WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return self._account_from_row(row) if row else None

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
        with self._connect() as conn:
            existing = conn.execute(
                "SELECT * FROM ledger_entry WHERE id = %s", (entry_id,)
            ).fetchone()
            if existing:
                row = conn.execute(
                    "SELECT * FROM account WHERE id = %s", (account_id,)
                ).fetchone()
                return self._account_from_row(row), self._entry_from_row(existing)
            row = conn.execute(
                """
                UPDATE account
                SET token_balance = token_balance + %s, version = version + 1, updated_at = now()
                WHERE id = %s AND version = %s AND token_balance + %s >= 0
                RETURNING *
                """,
                (delta, account_id, expected_version, delta),
            ).fetchone()
            if row is None:
                current = conn.execute(
                    "SELECT version FROM account WHERE id = %s", (account_id,)
                ).fetchone()
                if current is None or current["version"] != expected_version:
                    return None
                raise ConstraintViolation(
                    "balance cannot go negative", {"field": "token_balance"}
                )
            try:
                entry_row = conn.execute(
                    """
                    INSERT INTO ledger_entry (id, account_id, delta, reason, reference, balance_after)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (entry_id, account_id, delta, reason, reference, row["token_balance"]),
                ).fetchone()
            except errors.UniqueViolation:
                # Raising inside the connection block rolls the balance update back too
                raise ConstraintViolation(
                    "credit already applied", {"field": "reference", "reference": reference}
                )
        return self._account_from_row(row), self._entry_from_row(entry_row)

    def get_ledger_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM ledger_entry WHERE id = %s", (entry_id,)
            ).fetchone()
        return self._entry_from_row(row) if row else None

    def find_ledger_entry(self, reason: str, reference: str) -> Optional[LedgerEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM ledger_entry WHERE reason = %s AND reference = %s "
                "ORDER BY created_at LIMIT 1",
                (reason, reference),
            ).fetchone()
        return self._entry_from_row(row) if row else None

    # -- orders -----------------------------------------------------------

    def create_order(self, order: Order) -> Order:
        payload = order.to_dict()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO shop_order (
                        id, order_number, account_id, items, total_amount, total_tokens,
                        status, shipping_address_id, notes
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        order.id,
                        order.order_number,
                        order.account_id,
                        json.dumps(payload["items"]),
                        order.total_amount,
                        order.total_tokens,
                        order.status,
                        order.shipping_address_id,
                        order.notes,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("order already exists", {"field": "order_number"})
        return self._order_from_row(row)

    def get_order(self, order_id: str) -> Optional[Order]:
        if not _is_uuid(order_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM shop_order WHERE id = %s", (order_id,)
            ).fetchone()
        return self._order_from_row(row) if row else None

    def list_orders(
        self,
        account_id: str,
        *,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Order]:
        with self._connect() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM shop_order WHERE account_id = %s AND status = %s "
                    "ORDER BY created_at DESC LIMIT %s OFFSET %s",
                    (account_id, status, limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM shop_order WHERE account_id = %s "
                    "ORDER BY created_at DESC LIMIT %s OFFSET %s",
                    (account_id, limit, offset),
                ).fetchall()
        return [self._order_from_row(row) for row in rows]

    def update_order_status(
        self,
        order_id: str,
        *,
        expected_status: str,
        new_status: str,
        cancel_reason: Optional[str] = None,
    ) -> Optional[Order]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE shop_order
                SET status = %s, cancel_reason = COALESCE(%s, cancel_reason), updated_at = now()
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (new_status, cancel_reason, order_id, expected_status),
            ).fetchone()
        return self._order_from_row(row) if row else None
