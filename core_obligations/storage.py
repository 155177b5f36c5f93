"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). All monetary values stored as Decimal
strings. Backends honor the transactional contract the engine relies on:
nestable transactions, exclusive per-record locks held until the enclosing
transaction ends, bulk insert and delete, and uniqueness constraints.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Iterable, Sequence, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import ConflictError


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


class _TransactionState(threading.local):
    """Per-thread transaction bookkeeping"""

    def __init__(self):
        self.depth = 0
        self.rollback_only = False
        self.held_locks: List[threading.RLock] = []
        self.locked_keys: set = set()
        self.undo: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._tx = _TransactionState()
        self._row_locks: Dict[Tuple[str, str], threading.RLock] = {}
        self._row_locks_guard = threading.Lock()
        self._unique_constraints: Dict[str, List[Tuple[str, ...]]] = {}

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
    def close(self) -> None:
        """Close storage connection"""
        pass

    def save_many(self, table: str, records: Sequence[Tuple[str, Dict[str, Any]]]) -> None:
        """Insert several records at once (default: one save per record)"""
        with self.atomic():
            for record_id, data in records:
                self.save(table, record_id, data)

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete every record matching filters, returning how many were removed"""
        removed = 0
        with self.atomic():
            for record in self.find(table, filters):
                if self.delete(table, record['id']):
                    removed += 1
        return removed

    def register_unique(self, table: str, fields: Iterable[str]) -> None:
        """Declare that the combination of fields is unique within table"""
        key = tuple(fields)
        constraints = self._unique_constraints.setdefault(table, [])
        if key not in constraints:
            constraints.append(key)

    # Transactions

    @property
    def in_transaction(self) -> bool:
        return self._tx.depth > 0

    def begin_transaction(self) -> None:
        """Start a transaction, or join the one already open on this thread"""
        if self._tx.depth == 0:
            self._begin()
            self._tx.rollback_only = False
        self._tx.depth += 1

    def commit(self) -> None:
        """Commit current transaction (only the outermost level writes)"""
        if self._tx.depth == 0:
            return
        self._tx.depth -= 1
        if self._tx.depth > 0:
            return
        if self._tx.rollback_only:
            self._finish(commit=False)
            raise RuntimeError("Transaction was marked rollback-only by a nested scope")
        self._finish(commit=True)

    def rollback(self) -> None:
        """Rollback current transaction (nested levels mark it rollback-only)"""
        if self._tx.depth == 0:
            return
        self._tx.depth -= 1
        if self._tx.depth > 0:
            self._tx.rollback_only = True
            return
        self._finish(commit=False)

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()

    def lock_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """
        Take an exclusive lock on a record and return its current data.

        The lock is held until the enclosing transaction commits or rolls
        back; re-locking the same record in the same transaction is a no-op.
        """
        if not self.in_transaction:
            raise RuntimeError("lock_for_update requires an open transaction")
        key = (table, record_id)
        if key not in self._tx.locked_keys:
            with self._row_locks_guard:
                lock = self._row_locks.setdefault(key, threading.RLock())
            lock.acquire()
            self._tx.held_locks.append(lock)
            self._tx.locked_keys.add(key)
        return self.load(table, record_id)

    def _finish(self, commit: bool) -> None:
        try:
            if commit:
                self._commit()
            else:
                self._rollback()
        finally:
            self._tx.undo = []
            self._tx.rollback_only = False
            held = self._tx.held_locks
            self._tx.held_locks = []
            self._tx.locked_keys = set()
            for lock in reversed(held):
                lock.release()

    def _begin(self) -> None:
        """Backend hook: open a transaction"""
        pass

    def _commit(self) -> None:
        """Backend hook: make the transaction durable"""
        pass

    def _rollback(self) -> None:
        """Backend hook: discard the transaction"""
        pass


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _remember(self, table: str, record_id: str) -> None:
        """Record the prior state of a row so rollback can restore it"""
        if self.in_transaction:
            previous = self._data[table].get(record_id)
            self._tx.undo.append((table, record_id, previous))

    def _check_unique(self, table: str, rows: Sequence[Tuple[str, Dict[str, Any]]]) -> None:
        constraints = self._unique_constraints.get(table)
        if not constraints:
            return
        batch_ids = {record_id for record_id, _ in rows}
        for fields in constraints:
            taken = {
                tuple(record.get(f) for f in fields): record_id
                for record_id, record in self._data[table].items()
                if record_id not in batch_ids
            }
            for record_id, data in rows:
                key = tuple(data.get(f) for f in fields)
                owner = taken.get(key)
                if owner is not None and owner != record_id:
                    raise ConflictError(
                        f"Duplicate {', '.join(fields)} in {table}",
                        details={"table": table, "fields": list(fields), "values": list(key)}
                    )
                taken[key] = record_id

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            copy = self._copy(data)
            self._check_unique(table, [(record_id, copy)])
            self._remember(table, record_id)
            self._data[table][record_id] = copy

    def save_many(self, table: str, records: Sequence[Tuple[str, Dict[str, Any]]]) -> None:
        """Insert several records, all or none"""
        with self._lock:
            self._ensure_table(table)
            rows = [(record_id, self._copy(data)) for record_id, data in records]
            self._check_unique(table, rows)
            for record_id, copy in rows:
                self._remember(table, record_id)
                self._data[table][record_id] = copy

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete every record matching filters"""
        with self._lock:
            self._ensure_table(table)
            doomed = [
                record_id for record_id, record in self._data[table].items()
                if self._matches(record, filters)
            ]
            for record_id in doomed:
                self._remember(table, record_id)
                del self._data[table][record_id]
            return len(doomed)

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    @staticmethod
    def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        for key, value in filters.items():
            if key not in record or record[key] != value:
                return False
        return True

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                self._copy(record) for record in self._data[table].values()
                if self._matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            for record_id in list(self._data[table]):
                self._remember(table, record_id)
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def _rollback(self) -> None:
        with self._lock:
            for table, record_id, previous in reversed(self._tx.undo):
                if previous is None:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = previous


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    Records are JSON documents. SQLite allows a single writer, so an open
    transaction holds the connection until it ends (BEGIN IMMEDIATE).
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            for fields in self._unique_constraints.get(table, []):
                self._create_unique_index(table, fields)
            self._tables.add(table)

    def _create_unique_index(self, table: str, fields: Tuple[str, ...]) -> None:
        columns = ", ".join(f"json_extract(data, '$.{f}')" for f in fields)
        self._connection.execute(f"""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_{'_'.join(fields)}
            ON {table}({columns})
        """)

    def register_unique(self, table: str, fields: Iterable[str]) -> None:
        """Declare a uniqueness constraint backed by a unique expression index"""
        fields = tuple(fields)
        super().register_unique(table, fields)
        with self._lock:
            if table in self._tables:
                self._create_unique_index(table, fields)

    @staticmethod
    def _where(filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
        if not filters:
            return "", []
        conditions = []
        params = []
        for key, value in filters.items():
            conditions.append(f"json_extract(data, '$.{key}') IS ?")
            params.append(value)
        return "WHERE " + " AND ".join(conditions), params

    def _upsert(self, table: str, rows: Sequence[Tuple[str, Dict[str, Any]]]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        params = [
            (record_id, json.dumps(data, default=str), now, now)
            for record_id, data in rows
        ]
        try:
            self._connection.executemany(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, params)
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Unique constraint violated in {table}: {e}",
                                details={"table": table}) from e

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)
            self._upsert(table, [(record_id, data)])

    def save_many(self, table: str, records: Sequence[Tuple[str, Dict[str, Any]]]) -> None:
        """Insert several records in one executemany round trip"""
        with self._lock:
            self._ensure_table(table)
            with self.atomic():
                self._upsert(table, list(records))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete every record matching filters in one statement"""
        with self._lock:
            self._ensure_table(table)
            where, params = self._where(filters)
            cursor = self._connection.execute(f"DELETE FROM {table} {where}", params)
            return cursor.rowcount

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters on top-level JSON keys"""
        with self._lock:
            self._ensure_table(table)
            where, params = self._where(filters)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} {where} ORDER BY created_at
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def _begin(self) -> None:
        # Held until _commit/_rollback so other threads wait for the writer slot
        self._lock.acquire()
        try:
            self._connection.execute("BEGIN IMMEDIATE")
        except Exception:
            self._lock.release()
            raise

    def _commit(self) -> None:
        try:
            self._connection.execute("COMMIT")
        finally:
            self._lock.release()

    def _rollback(self) -> None:
        try:
            self._connection.execute("ROLLBACK")
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL

    Supported forms: ``memory://``, ``sqlite://`` (in-memory SQLite) and
    ``sqlite:///path/to/file.db``.
    """
    if database_url in ("memory", "memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database url: {database_url}")
