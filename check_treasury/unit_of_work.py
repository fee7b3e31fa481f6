"""
Unit of Work

One unit of work per external request. It is passed explicitly through every
call of a transition: reads go through it (seeing the request's own staged
writes first), writes are staged on it, and leases taken through it are held
until it commits or rolls back. Commit hands every staged write to the
storage backend in a single atomic batch.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple
import uuid

from .storage import StorageInterface, StagedWrite, StaleRecordError, matches_filters
from .locking import LockManager
from .errors import Conflict, TreasuryError, wrap_unexpected
from .logging_config import get_correlation_id, get_logger


RecordKey = Tuple[str, str]


class UnitOfWorkClosed(RuntimeError):
    """The unit of work was already committed or rolled back"""


class UnitOfWork:
    """Transaction boundary for a single treasury operation"""

    def __init__(
        self,
        storage: StorageInterface,
        lock_manager: LockManager,
        operation: str = "operation",
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        lock_timeout: Optional[float] = None
    ):
        self.id = str(uuid.uuid4())
        self.storage = storage
        self.lock_manager = lock_manager
        self.operation = operation
        self.user_id = user_id
        self.correlation_id = correlation_id or get_correlation_id()
        self.lock_timeout = lock_timeout
        self.logger = get_logger("treasury.unit_of_work")

        self._staged: Dict[RecordKey, Optional[Dict[str, Any]]] = {}
        self._read_versions: Dict[RecordKey, int] = {}
        self._after_commit: List[Callable[[], None]] = []
        self._closed = False

    # Leases

    def lock(self, resource: str, key: str) -> None:
        """Take an exclusive lease held until commit/rollback"""
        self._ensure_open()
        self.lock_manager.acquire(self.id, resource, key, self.lock_timeout)

    def lock_many(self, leases: List[Tuple[str, str]]) -> None:
        self._ensure_open()
        self.lock_manager.acquire_many(self.id, leases, self.lock_timeout)

    # Reads

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record, preferring this unit's own staged version"""
        self._ensure_open()
        key = (table, record_id)
        if key in self._staged:
            staged = self._staged[key]
            return dict(staged) if staged is not None else None

        data = self.storage.load(table, record_id)
        if key not in self._read_versions:
            self._read_versions[key] = int(data.get("version") or 0) if data else 0
        return data

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Query committed records with this unit's staged changes overlaid"""
        self._ensure_open()
        results = []
        for record in self.storage.find(table, filters):
            key = (table, record["id"])
            if key in self._staged:
                continue
            results.append(record)
        for (staged_table, _), data in self._staged.items():
            if staged_table == table and data is not None and matches_filters(data, filters):
                results.append(dict(data))
        return results

    # Writes

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._ensure_open()
        self._staged[(table, record_id)] = dict(data)

    def delete(self, table: str, record_id: str) -> None:
        self._ensure_open()
        self._staged[(table, record_id)] = None

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once the batch is durable; failures are only logged"""
        self._after_commit.append(callback)

    @property
    def pending_writes(self) -> int:
        return len(self._staged)

    # Completion

    def commit(self) -> None:
        self._ensure_open()
        try:
            self.storage.apply_batch(self._build_batch())
        except StaleRecordError as e:
            self.rollback()
            raise Conflict(
                message="The record was changed by another operation",
                code="STALE_RECORD",
                tips=["Reload the record and retry the operation"],
                details={"table": e.table, "id": e.record_id},
            ) from e
        except Exception:
            self.rollback()
            raise

        self._close()
        for callback in self._after_commit:
            try:
                callback()
            except Exception as e:
                self.logger.warning(
                    f"Post-commit hook failed for {self.operation}: {e}",
                    exc_info=True,
                    extra={"correlation_id": self.correlation_id},
                )

    def rollback(self) -> None:
        if self._closed:
            return
        self._staged.clear()
        self._after_commit.clear()
        self._close()

    def _build_batch(self) -> List[StagedWrite]:
        writes = []
        for (table, record_id), data in self._staged.items():
            versioned = (data is not None and "version" in data) or (
                data is None and self._read_versions.get((table, record_id), 0) > 0
            )
            expected = None
            if versioned:
                expected = self._read_versions.get((table, record_id), 0)
            writes.append(StagedWrite(table, record_id, data, expected))
        return writes

    def _close(self) -> None:
        self._closed = True
        self.lock_manager.release_all(self.id)

    def _ensure_open(self) -> None:
        if self._closed:
            raise UnitOfWorkClosed(f"Unit of work {self.id} is already closed")

    def __enter__(self) -> 'UnitOfWork':
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.commit()
            return False

        self.rollback()
        if isinstance(exc, TreasuryError) or not isinstance(exc, Exception):
            return False
        raise wrap_unexpected(exc, self.operation, self.logger, unit_of_work=self.id) from exc


class UnitOfWorkFactory:
    """Builds units of work bound to one storage backend and lock manager"""

    def __init__(self, storage: StorageInterface, lock_manager: LockManager,
                 lock_timeout: Optional[float] = None):
        self.storage = storage
        self.lock_manager = lock_manager
        self.lock_timeout = lock_timeout

    def __call__(self, operation: str = "operation", user_id: Optional[str] = None,
                 correlation_id: Optional[str] = None) -> UnitOfWork:
        return UnitOfWork(
            self.storage,
            self.lock_manager,
            operation=operation,
            user_id=user_id,
            correlation_id=correlation_id,
            lock_timeout=self.lock_timeout,
        )
