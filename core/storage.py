"""
In-memory datastore shared by every service.

Rows are plain dicts keyed by primary key, one dict per table. Every read
returns a copy so callers never alias stored state, and every single-row
write is atomic. Nothing spans rows: multi-step operations are sequences of
independent writes. `update(..., when=...)` is the conditional write used for
status transitions; it returns None when the row is missing or no longer
matches, which callers treat as "already handled".
"""
import copy
import threading
from collections.abc import Collection
from typing import Any, Callable, Hashable, Optional
from uuid import UUID

from .errors import StoreError

Row = dict[str, Any]

TABLES = (
    "users",
    "user_devices",
    "transactions",
    "ledger_entries",
    "user_balances",
    "referrals",
    "webhook_idempotency",
    "audit_logs",
    "admin_controls",
)


def _matches(row: Row, when: dict[str, Any]) -> bool:
    for field_name, expected in when.items():
        actual = row.get(field_name)
        if isinstance(expected, Collection) and not isinstance(expected, str):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class InMemoryStorage:
    def __init__(self):
        self.users: dict[UUID, Row] = {}
        self.user_devices: dict[tuple[UUID, str], Row] = {}
        self.transactions: dict[UUID, Row] = {}
        self.ledger_entries: dict[UUID, Row] = {}
        self.user_balances: dict[UUID, Row] = {}
        self.referrals: dict[UUID, Row] = {}
        self.webhook_idempotency: dict[str, Row] = {}
        self.audit_logs: dict[UUID, Row] = {}
        self.admin_controls: dict[str, Row] = {}
        self.reference_index: dict[str, UUID] = {}
        self.email_index: dict[str, UUID] = {}
        self._lock = threading.RLock()

    def _table(self, name: str) -> dict:
        if name not in TABLES:
            raise StoreError(f"Unknown table: {name}")
        return getattr(self, name)

    def get(self, table: str, key: Hashable) -> Optional[Row]:
        with self._lock:
            row = self._table(table).get(key)
            return copy.deepcopy(row) if row is not None else None

    def select(
        self,
        table: str,
        predicate: Optional[Callable[[Row], bool]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        with self._lock:
            rows = [r for r in self._table(table).values() if predicate is None or predicate(r)]
            if order_by:
                rows.sort(key=lambda r: r[order_by], reverse=descending)
            if limit is not None:
                rows = rows[:limit]
            return copy.deepcopy(rows)

    def insert(self, table: str, key: Hashable, row: Row) -> Row:
        with self._lock:
            rows = self._table(table)
            if key in rows:
                raise StoreError(f"Duplicate key in {table}: {key}")
            rows[key] = copy.deepcopy(row)
            return copy.deepcopy(row)

    def upsert(self, table: str, key: Hashable, row: Row) -> Row:
        with self._lock:
            rows = self._table(table)
            merged = {**rows.get(key, {}), **copy.deepcopy(row)}
            rows[key] = merged
            return copy.deepcopy(merged)

    def update(
        self,
        table: str,
        key: Hashable,
        updates: Row,
        when: Optional[dict[str, Any]] = None,
    ) -> Optional[Row]:
        with self._lock:
            rows = self._table(table)
            row = rows.get(key)
            if row is None or (when and not _matches(row, when)):
                return None
            row.update(copy.deepcopy(updates))
            return copy.deepcopy(row)

    def delete(self, table: str, key: Hashable) -> bool:
        with self._lock:
            return self._table(table).pop(key, None) is not None

    def insert_transaction(self, row: Row) -> Row:
        with self._lock:
            reference = row["reference"]
            if reference in self.reference_index:
                raise StoreError(f"Duplicate transaction reference: {reference}")
            inserted = self.insert("transactions", row["id"], row)
            self.reference_index[reference] = row["id"]
            return inserted

    def find_transaction(self, reference: str, status: Optional[str] = None) -> Optional[Row]:
        with self._lock:
            transaction_id = self.reference_index.get(reference)
            if transaction_id is None:
                return None
            row = self.get("transactions", transaction_id)
            if row is None or (status is not None and row["status"] != status):
                return None
            return row

    def insert_user(self, row: Row) -> Row:
        with self._lock:
            email = row["email"].lower()
            if email in self.email_index:
                raise StoreError(f"User with email {row['email']} already exists")
            inserted = self.insert("users", row["id"], row)
            self.email_index[email] = row["id"]
            return inserted

    def find_user_by_email(self, email: str) -> Optional[Row]:
        with self._lock:
            user_id = self.email_index.get(email.lower())
            return self.get("users", user_id) if user_id is not None else None
