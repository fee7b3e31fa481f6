"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Units of work never write record by record: they stage their changes and hand
them to ``apply_batch``, which applies the whole set atomically and refuses it
when a versioned record changed since it was read.
"""

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    # Per-subclass conversion hints for from_dict
    _enum_fields: ClassVar[Dict[str, Type[Enum]]] = {}
    _date_fields: ClassVar[Tuple[str, ...]] = ()
    _decimal_fields: ClassVar[Tuple[str, ...]] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, Enum):
                result[key] = value.value
            elif isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, date):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        for key, enum_type in cls._enum_fields.items():
            if data.get(key) is not None and not isinstance(data[key], enum_type):
                data[key] = enum_type(data[key])
        for key in cls._date_fields:
            if isinstance(data.get(key), str):
                data[key] = date.fromisoformat(data[key])
        for key in cls._decimal_fields:
            if data.get(key) is not None and not isinstance(data[key], Decimal):
                data[key] = Decimal(str(data[key]))
        return cls(**data)


class StaleRecordError(Exception):
    """A staged write found its record changed since it was read"""

    def __init__(self, table: str, record_id: str, expected: int, actual: int):
        super().__init__(
            f"{table}/{record_id}: expected version {expected}, found {actual}"
        )
        self.table = table
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


@dataclass
class StagedWrite:
    """
    One change inside a batch.

    ``data`` of None means delete. ``expected_version`` of None skips the
    version check (append-only rows); 0 means the record must not exist yet.
    """
    table: str
    record_id: str
    data: Optional[Dict[str, Any]]
    expected_version: Optional[int] = None

    @property
    def is_delete(self) -> bool:
        return self.data is None


def _current_version(record: Optional[Dict[str, Any]]) -> int:
    if record is None:
        return 0
    return int(record.get("version") or 0)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def apply_batch(self, writes: List[StagedWrite]) -> None:
        """Apply all writes atomically, or none if a version check fails"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


def matches_filters(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """Exact-match filter used by all backends and by the unit of work overlay"""
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # JSON round trip keeps callers from mutating stored state
        return json.loads(json.dumps(data, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return self._copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                self._copy(record) for record in self._table(table).values()
                if matches_filters(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def apply_batch(self, writes: List[StagedWrite]) -> None:
        with self._lock:
            for write in writes:
                if write.expected_version is None:
                    continue
                actual = _current_version(self._table(write.table).get(write.record_id))
                if actual != write.expected_version:
                    raise StaleRecordError(write.table, write.record_id,
                                           write.expected_version, actual)
            for write in writes:
                if write.is_delete:
                    self._table(write.table).pop(write.record_id, None)
                else:
                    self._table(write.table)[write.record_id] = self._copy(write.data)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        with self._lock:
            if table in self._known_tables:
                return
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            if not self._in_transaction:
                self._connection.commit()
            self._known_tables.add(table)

    def _write(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._connection.execute(f"""
            INSERT OR REPLACE INTO {table} (id, data, version, created_at, updated_at)
            VALUES (?, ?, ?,
                COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                ?)
        """, (record_id, json.dumps(data, default=str), _current_version(data),
              record_id, now, now))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._write(table, record_id, data)
            if not self._in_transaction:
                self._connection.commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            if not self._in_transaction:
                self._connection.commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if matches_filters(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            if not self._in_transaction:
                self._connection.commit()

    def apply_batch(self, writes: List[StagedWrite]) -> None:
        with self._lock:
            for table in {write.table for write in writes}:
                self._ensure_table(table)
            self.begin_transaction()
            try:
                for write in writes:
                    if write.expected_version is None:
                        continue
                    row = self._connection.execute(
                        f"SELECT version FROM {write.table} WHERE id = ?", (write.record_id,)
                    ).fetchone()
                    actual = int(row['version']) if row else 0
                    if actual != write.expected_version:
                        raise StaleRecordError(write.table, write.record_id,
                                               write.expected_version, actual)
                for write in writes:
                    if write.is_delete:
                        self._connection.execute(
                            f"DELETE FROM {write.table} WHERE id = ?", (write.record_id,)
                        )
                    else:
                        self._write(write.table, write.record_id, write.data)
                self.commit()
            except Exception:
                self.rollback()
                raise

    def begin_transaction(self) -> None:
        with self._lock:
            if not self._in_transaction:
                # isolation_level='DEFERRED' opens the transaction on first write
                self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` selects InMemoryStorage, ``sqlite:///path`` a SQLite file and
    ``sqlite://`` (no path) an in-memory SQLite database.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
