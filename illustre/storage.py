"""SQLite-backed persistence helpers for the portal."""

from __future__ import annotations

import logging
import pickle
import sqlite3
import threading
from typing import Callable, Generic, Iterator, List, Optional, Tuple, TypeVar

from .domain import (
    AuditLogEntry,
    CustomOption,
    EmailMessage,
    Notification,
    OnboardingStep,
    Order,
    Organization,
    Product,
    ProductTemplate,
    Profile,
    Revision,
    RoleAssignment,
)
from .repository import DuplicateRecordError, RecordNotFoundError

T = TypeVar("T")

logger = logging.getLogger(__name__)


class SQLiteRepository(Generic[T]):
    """Pickled records of one aggregate in a two-column SQLite table.

    Every read unpickles a fresh copy, so changes only persist through
    ``add`` or ``upsert``. The lock is shared by all repositories of a
    ``PortalDatabase`` because they share one connection.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        table: str,
        lock: Optional[threading.RLock] = None,
        *,
        entity: str = "record",
    ) -> None:
        self.entity = entity
        self._connection = connection
        self._table = table
        self._lock = lock or threading.RLock()
        self._write(
            f"CREATE TABLE IF NOT EXISTS {table} ("  # nosec - static table names
            "id TEXT PRIMARY KEY, payload BLOB NOT NULL)"
        )

    def _query(self, sql: str, params: Tuple = ()) -> List[Tuple]:
        with self._lock:
            return self._connection.execute(sql, params).fetchall()

    def _write(self, sql: str, params: Tuple = ()) -> int:
        with self._lock:
            cursor = self._connection.execute(sql, params)
            self._connection.commit()
            return cursor.rowcount

    def __contains__(self, record_id: object) -> bool:
        if not isinstance(record_id, str):
            return False
        return bool(self._query(f"SELECT 1 FROM {self._table} WHERE id = ?", (record_id,)))

    def __len__(self) -> int:
        return int(self._query(f"SELECT COUNT(*) FROM {self._table}")[0][0])

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())

    def add(self, record_id: str, record: T) -> None:
        try:
            self._write(
                f"INSERT INTO {self._table} (id, payload) VALUES (?, ?)",
                (record_id, pickle.dumps(record)),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateRecordError(
                f"{self.entity.capitalize()} {record_id!r} already exists"
            ) from exc

    def upsert(self, record_id: str, record: T) -> None:
        self._write(
            f"INSERT INTO {self._table} (id, payload) VALUES (?, ?) "
            "ON CONFLICT(id) DO UPDATE SET payload = excluded.payload",
            (record_id, pickle.dumps(record)),
        )

    def get(self, record_id: str) -> T:
        rows = self._query(f"SELECT payload FROM {self._table} WHERE id = ?", (record_id,))
        if not rows:
            raise RecordNotFoundError(self.entity, record_id)
        return pickle.loads(rows[0][0])

    def remove(self, record_id: str) -> None:
        if not self._write(f"DELETE FROM {self._table} WHERE id = ?", (record_id,)):
            raise RecordNotFoundError(self.entity, record_id)

    def list(self) -> List[T]:
        rows = self._query(f"SELECT payload FROM {self._table} ORDER BY rowid")
        return [pickle.loads(row[0]) for row in rows]

    def filter(self, predicate: Callable[[T], bool]) -> List[T]:
        return [record for record in self.list() if predicate(record)]

    def first(self, predicate: Callable[[T], bool]) -> Optional[T]:
        return next((record for record in self.list() if predicate(record)), None)


class PortalDatabase:
    """All portal repositories over one SQLite connection."""

    def __init__(self, path: str) -> None:
        self._connection = sqlite3.connect(path, check_same_thread=False)
        self._lock = threading.RLock()
        self.organizations: SQLiteRepository[Organization] = self._repository(
            "organizations", "organization"
        )
        self.profiles: SQLiteRepository[Profile] = self._repository("profiles", "profile")
        self.role_assignments: SQLiteRepository[RoleAssignment] = self._repository(
            "user_roles", "role assignment"
        )
        self.templates: SQLiteRepository[ProductTemplate] = self._repository(
            "product_templates", "template"
        )
        self.custom_options: SQLiteRepository[CustomOption] = self._repository(
            "custom_options", "option"
        )
        self.orders: SQLiteRepository[Order] = self._repository("orders", "order")
        self.products: SQLiteRepository[Product] = self._repository("products", "product")
        self.onboarding_steps: SQLiteRepository[OnboardingStep] = self._repository(
            "onboarding_steps", "onboarding step"
        )
        self.revisions: SQLiteRepository[Revision] = self._repository("revisions", "revision")
        self.notifications: SQLiteRepository[Notification] = self._repository(
            "notifications", "notification"
        )
        self.audit_logs: SQLiteRepository[AuditLogEntry] = self._repository(
            "audit_logs", "audit entry"
        )
        self.emails: SQLiteRepository[EmailMessage] = self._repository(
            "email_outbox", "email"
        )
        logger.info("Opened portal database at %s", path)

    def _repository(self, table: str, entity: str) -> SQLiteRepository:
        return SQLiteRepository(self._connection, table, self._lock, entity=entity)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._connection

    def close(self) -> None:
        self._connection.close()

    def __enter__(self) -> "PortalDatabase":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = ["SQLiteRepository", "PortalDatabase"]
