"""Dictionary-backed repositories for the portal aggregates."""

from __future__ import annotations

from typing import Callable, Dict, Generic, Iterator, List, Optional, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class RepositoryError(RuntimeError):
    """Base exception for repository errors."""


class DuplicateRecordError(RepositoryError):
    """Raised when a record id or unique value is already taken."""


class RecordNotFoundError(RepositoryError):
    """Raised when a requested record is missing.

    ``entity`` names the aggregate ("order", "product", ...) so API errors
    read naturally.
    """

    def __init__(self, entity: str, record_id: str, message: Optional[str] = None) -> None:
        self.entity = entity
        self.record_id = record_id
        super().__init__(message or f"{entity.capitalize()} {record_id!r} not found")


class InMemoryRepository(Generic[T]):
    """Records of one aggregate keyed by id.

    Records are returned as live objects; callers validate before mutating and
    call ``upsert`` afterwards so the SQLite repository behaves the same way.
    """

    def __init__(self, entity: str = "record") -> None:
        self.entity = entity
        self._records: Dict[str, T] = {}

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._records.values()))

    def add(self, record_id: str, record: T) -> None:
        if record_id in self._records:
            raise DuplicateRecordError(f"{self.entity.capitalize()} {record_id!r} already exists")
        self._records[record_id] = record

    def upsert(self, record_id: str, record: T) -> None:
        self._records[record_id] = record

    def get(self, record_id: str) -> T:
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFoundError(self.entity, record_id)
        return record

    def remove(self, record_id: str) -> None:
        if self._records.pop(record_id, None) is None:
            raise RecordNotFoundError(self.entity, record_id)

    def list(self) -> List[T]:
        return list(self._records.values())

    def filter(self, predicate: Callable[[T], bool]) -> List[T]:
        return [record for record in self._records.values() if predicate(record)]

    def first(self, predicate: Callable[[T], bool]) -> Optional[T]:
        return next((record for record in self._records.values() if predicate(record)), None)


def in_memory_default(repository: Optional[R], entity: str) -> R:
    """Return ``repository``, or a fresh in-memory one when none was injected."""
    if repository is not None:
        return repository
    return InMemoryRepository(entity)  # type: ignore[return-value]


__all__ = [
    "InMemoryRepository",
    "in_memory_default",
    "RepositoryError",
    "DuplicateRecordError",
    "RecordNotFoundError",
]
