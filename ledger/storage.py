"""Storage port for the ledger and its backends.

A backend exposes named counter cells and named keyed maps. Each region is
addressed independently, so adding a map never touches existing ones. Keys
are unsigned 64-bit integers and values are JSON-compatible dicts; ``iterate``
always yields entries in ascending key order.
"""

import json
import re
import sqlite3
import threading
from abc import ABC, abstractmethod
from typing import Iterator, Optional

from .config import Settings, get_settings
from .errors import StorageError
from .logging import get_logger
from .models import U64_MAX

log = get_logger(__name__)

# SQLite integers are signed 64-bit; shifting by 2**63 keeps u64 order intact.
_SQL_OFFSET = 2**63

_REGION_NAME = re.compile(r"^[a-z][a-z0-9_]*$")


class CounterCell(ABC):
    @abstractmethod
    def get(self) -> int:
        ...

    @abstractmethod
    def set(self, value: int) -> None:
        ...


class KeyedMap(ABC):
    @abstractmethod
    def get(self, key: int) -> Optional[dict]:
        ...

    @abstractmethod
    def insert(self, key: int, value: dict) -> Optional[dict]:
        """Store ``value`` under ``key``; return the value it replaced, if any."""
        ...

    @abstractmethod
    def remove(self, key: int) -> Optional[dict]:
        ...

    @abstractmethod
    def iterate(self) -> Iterator[tuple[int, dict]]:
        ...

    @abstractmethod
    def __len__(self) -> int:
        ...

    def values(self) -> Iterator[dict]:
        for _, value in self.iterate():
            yield value


class LedgerStorage(ABC):
    @abstractmethod
    def counter(self, name: str) -> CounterCell:
        ...

    @abstractmethod
    def map(self, name: str) -> KeyedMap:
        ...

    @property
    def users(self) -> KeyedMap:
        return self.map("users")

    @property
    def transactions(self) -> KeyedMap:
        return self.map("transactions")

    def close(self) -> None:
        pass


def _check_region(name: str) -> str:
    if not _REGION_NAME.match(name):
        raise StorageError(f"Invalid region name: {name!r}")
    return name


def _check_key(key: int) -> int:
    if not 0 <= key <= U64_MAX:
        raise StorageError(f"Key out of u64 range: {key}")
    return key


class _MemoryCounter(CounterCell):
    def __init__(self):
        self._value = 0

    def get(self) -> int:
        return self._value

    def set(self, value: int) -> None:
        self._value = _check_key(value)


class _MemoryMap(KeyedMap):
    def __init__(self):
        self._data: dict[int, dict] = {}

    def get(self, key: int) -> Optional[dict]:
        value = self._data.get(key)
        return dict(value) if value is not None else None

    def insert(self, key: int, value: dict) -> Optional[dict]:
        previous = self._data.get(_check_key(key))
        self._data[key] = dict(value)
        return previous

    def remove(self, key: int) -> Optional[dict]:
        return self._data.pop(key, None)

    def iterate(self) -> Iterator[tuple[int, dict]]:
        for key in sorted(self._data):
            yield key, dict(self._data[key])

    def __len__(self) -> int:
        return len(self._data)


class InMemoryStorage(LedgerStorage):
    """Process-local backend; everything is lost when the process exits."""

    def __init__(self):
        self._counters: dict[str, _MemoryCounter] = {}
        self._maps: dict[str, _MemoryMap] = {}

    def counter(self, name: str) -> CounterCell:
        return self._counters.setdefault(_check_region(name), _MemoryCounter())

    def map(self, name: str) -> KeyedMap:
        return self._maps.setdefault(_check_region(name), _MemoryMap())


class _SQLiteCounter(CounterCell):
    def __init__(self, storage: "SQLiteStorage", name: str):
        self._storage = storage
        self._name = name

    def get(self) -> int:
        row = self._storage._fetchone("SELECT value FROM counters WHERE name=?", (self._name,))
        return row[0] + _SQL_OFFSET if row else 0

    def set(self, value: int) -> None:
        self._storage._execute(
            "INSERT INTO counters(name, value) VALUES(?, ?) "
            "ON CONFLICT(name) DO UPDATE SET value=excluded.value",
            (self._name, _check_key(value) - _SQL_OFFSET),
        )


class _SQLiteMap(KeyedMap):
    def __init__(self, storage: "SQLiteStorage", table: str):
        self._storage = storage
        self._table = table

    def get(self, key: int) -> Optional[dict]:
        if not 0 <= key <= U64_MAX:
            return None
        row = self._storage._fetchone(
            f"SELECT record FROM {self._table} WHERE key=?", (key - _SQL_OFFSET,)
        )
        return json.loads(row[0]) if row else None

    def insert(self, key: int, value: dict) -> Optional[dict]:
        with self._storage._lock:
            previous = self.get(key)
            self._storage._execute(
                f"INSERT INTO {self._table}(key, record) VALUES(?, ?) "
                "ON CONFLICT(key) DO UPDATE SET record=excluded.record",
                (_check_key(key) - _SQL_OFFSET, json.dumps(value, separators=(",", ":"))),
            )
            return previous

    def remove(self, key: int) -> Optional[dict]:
        with self._storage._lock:
            previous = self.get(key)
            if previous is not None:
                self._storage._execute(
                    f"DELETE FROM {self._table} WHERE key=?", (key - _SQL_OFFSET,)
                )
            return previous

    def iterate(self) -> Iterator[tuple[int, dict]]:
        rows = self._storage._fetchall(f"SELECT key, record FROM {self._table} ORDER BY key")
        for key, record in rows:
            yield key + _SQL_OFFSET, json.loads(record)

    def __len__(self) -> int:
        return self._storage._fetchone(f"SELECT COUNT(1) FROM {self._table}")[0]


class SQLiteStorage(LedgerStorage):
    """
    Durable single-file backend. One table per map region plus a ``counters``
    table. Each write is committed on its own (autocommit); callers that need
    multi-record atomicity restore records themselves.
    """

    def __init__(self, path: str = "ledger.db"):
        self._path = path
        self._lock = threading.RLock()
        self._maps: dict[str, _SQLiteMap] = {}
        try:
            self._conn = sqlite3.connect(
                path,
                timeout=30.0,
                isolation_level=None,
                check_same_thread=False,
            )
            self._conn.execute("PRAGMA busy_timeout=30000")
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS counters (name TEXT PRIMARY KEY, value INTEGER NOT NULL)"
            )
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open ledger database {path}: {e}") from e
        log.info("storage_opened", backend="sqlite", path=path)

    def counter(self, name: str) -> CounterCell:
        return _SQLiteCounter(self, _check_region(name))

    def map(self, name: str) -> KeyedMap:
        table = _check_region(name)
        with self._lock:
            if table not in self._maps:
                self._execute(
                    f"CREATE TABLE IF NOT EXISTS {table} (key INTEGER PRIMARY KEY, record TEXT NOT NULL)"
                )
                self._maps[table] = _SQLiteMap(self, table)
            return self._maps[table]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> None:
        with self._lock:
            try:
                self._conn.execute(sql, params)
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    def _fetchone(self, sql: str, params: tuple = ()):
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchone()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    def _fetchall(self, sql: str, params: tuple = ()) -> list:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e


def open_storage(settings: Optional[Settings] = None) -> LedgerStorage:
    settings = settings or get_settings()
    if settings.storage_backend == "sqlite":
        return SQLiteStorage(settings.sqlite_path)
    log.info("storage_opened", backend="memory")
    return InMemoryStorage()
