"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Both backends support ``atomic()``: every write made inside the block becomes
visible together on commit, or not at all on rollback. Side effects that must
only happen for committed state (audit entries, notifications) are deferred
with ``on_commit()``.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union, get_type_hints
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import functools
import sqlite3
import json
import threading
import typing
from dataclasses import dataclass, fields
from pathlib import Path
from contextlib import contextmanager

from .exceptions import StorageUnavailableError


def encode_value(value: Any) -> Any:
    """Convert a value to its JSON storage form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def decode_value(value: Any, hint: Any) -> Any:
    """Convert a stored JSON value back to the annotated type"""
    if value is None:
        return None
    origin = typing.get_origin(hint)
    if origin is Union:
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        if len(args) == 1:
            return decode_value(value, args[0])
        return value
    if hint is Decimal:
        return Decimal(str(value))
    if hint is datetime:
        return datetime.fromisoformat(value) if isinstance(value, str) else value
    if hint is date:
        return date.fromisoformat(value) if isinstance(value, str) else value
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(value)
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: encode_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary, restoring Decimal/date/enum fields"""
        hints = get_type_hints(cls)
        known = {f.name for f in fields(cls)}
        kwargs = {
            key: decode_value(value, hints.get(key))
            for key, value in data.items()
            if key in known
        }
        return cls(**kwargs)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._commit_hooks = threading.local()

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

    def begin_transaction(self) -> None:
        """Start a transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    def _hook_state(self) -> threading.local:
        state = self._commit_hooks
        if not hasattr(state, "depth"):
            state.depth = 0
            state.callbacks = []
        return state

    def on_commit(self, callback: Callable[[], Any]) -> None:
        """
        Run ``callback`` once the current outermost ``atomic()`` block commits

        Outside a transaction the callback runs immediately. Callbacks
        registered inside a block that rolls back are discarded.
        """
        state = self._hook_state()
        if state.depth == 0:
            callback()
        else:
            state.callbacks.append(callback)

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        state = self._hook_state()
        registered = len(state.callbacks)
        state.depth += 1
        self.begin_transaction()
        try:
            yield
            self.commit()
        except BaseException:
            state.depth -= 1
            del state.callbacks[registered:]
            self.rollback()
            raise
        state.depth -= 1
        if state.depth == 0:
            callbacks, state.callbacks = state.callbacks, []
            for callback in callbacks:
                callback()


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(data, default=str))


_DELETED = object()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Writes inside a transaction are buffered per thread and only reach the
    shared tables on commit, so concurrent readers never see a half-applied
    state transition.
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._tx = threading.local()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _pending(self) -> Optional[Dict[tuple, Any]]:
        if getattr(self._tx, "depth", 0) > 0:
            return self._tx.pending
        return None

    def _table_view(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's uncommitted writes"""
        with self._lock:
            self._ensure_table(table)
            view = dict(self._data[table])
        pending = self._pending()
        if pending:
            for (pending_table, record_id), data in pending.items():
                if pending_table != table:
                    continue
                if data is _DELETED:
                    view.pop(record_id, None)
                else:
                    view[record_id] = data
        return view

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        # Deep copy to prevent external mutation
        copied = _copy(data)
        pending = self._pending()
        if pending is not None:
            pending[(table, record_id)] = copied
            return
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = copied

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._table_view(table).get(record_id)
        if record is not None:
            return _copy(record)
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [_copy(record) for record in self._table_view(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        pending = self._pending()
        if pending is not None:
            existed = record_id in self._table_view(table)
            pending[(table, record_id)] = _DELETED
            return existed
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._table_view(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            _copy(record) for record in self._table_view(table).values()
            if _matches(record, filters)
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._table_view(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Start (or nest into) this thread's transaction"""
        depth = getattr(self._tx, "depth", 0)
        if depth == 0:
            self._tx.pending = {}
        self._tx.depth = depth + 1

    def commit(self) -> None:
        """Apply buffered writes once the outermost transaction commits"""
        depth = getattr(self._tx, "depth", 0)
        if depth == 0:
            return
        self._tx.depth = depth - 1
        if self._tx.depth > 0:
            return
        pending = self._tx.pending
        self._tx.pending = {}
        with self._lock:
            for (table, record_id), data in pending.items():
                self._ensure_table(table)
                if data is _DELETED:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = data

    def rollback(self) -> None:
        """Discard every buffered write of this thread's transaction"""
        self._tx.depth = 0
        self._tx.pending = {}


def _translate_errors(method):
    """Surface SQLite availability failures as retryable storage errors"""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except sqlite3.OperationalError as e:
            raise StorageUnavailableError(f"SQLite storage unavailable: {e}") from e
    return wrapper


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    A transaction holds the connection lock from begin to commit/rollback, so
    writes from other threads wait instead of joining the open transaction.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        # Set isolation_level to 'DEFERRED' to enable manual transaction control
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @property
    def _in_transaction(self) -> bool:
        return self._tx_depth > 0

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
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
        if not self._in_transaction:
            self._connection.commit()
        self._tables.add(table)

    @_translate_errors
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

            # Only commit if not in transaction
            if not self._in_transaction:
                self._connection.commit()

    @_translate_errors
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

    @_translate_errors
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    @_translate_errors
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))

            if not self._in_transaction:
                self._connection.commit()
            return cursor.rowcount > 0

    @_translate_errors
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    @_translate_errors
    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    @_translate_errors
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

            if not self._in_transaction:
                self._connection.commit()

    def begin_transaction(self) -> None:
        """Start a database transaction, holding the connection lock"""
        self._lock.acquire()
        self._tx_depth += 1

    @_translate_errors
    def commit(self) -> None:
        """Commit current transaction"""
        if self._tx_depth == 0:
            return
        try:
            if self._tx_depth == 1:
                self._connection.commit()
        finally:
            self._tx_depth -= 1
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._tx_depth == 0:
            return
        try:
            if self._tx_depth == 1 and self._connection is not None:
                self._connection.rollback()
                # Tables created inside the transaction are gone too
                self._tables.clear()
        finally:
            self._tx_depth -= 1
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
