"""Durable key/value storage on top of SQLite.

Every record the autopilot keeps (agents, chat configs, scheduled actions,
knowledge, loader progress, ...) lives as one JSON document under a namespaced
key in the ``kv_store`` table.  Readers never see an exception: an absent,
unreadable or invalid record degrades to the manager's default value.
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from textwrap import dedent
from typing import Any, Generic, TypeVar

from pydantic import TypeAdapter

log = logging.getLogger(__name__)

STORAGE_KEYS = {
    "agents": "parrot-autopilot-agents",
    "chat_configs": "parrot-autopilot-chat-configs",
    "activity": "parrot-autopilot-activity",
    "scheduled": "parrot-autopilot-scheduled",
    "handoffs": "parrot-autopilot-handoffs",
    "processed_messages": "parrot-autopilot-processed-messages",
    "knowledge": "parrot-chat-knowledge",
    "history_progress": "parrot-history-load-progress",
    "thread_context": "parrot-thread-context",
    "ai_chat_history": "parrot-ai-chat-history",
}


class ThreadSafeConnection:
    """Thin wrapper around :class:`sqlite3.Connection` that serialises access
    with a :class:`threading.Lock`.

    The executor, the history loader and CLI commands may share one instance;
    :meth:`transaction` holds the lock across a whole read-modify-write so two
    writers of the same key cannot lose each other's update.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def execute(self, sql: str, parameters: Any = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, parameters)

    def executescript(self, sql_script: str) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.executescript(sql_script)

    def commit(self) -> None:
        with self._lock:
            self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Acquire lock, yield raw connection, commit on success / rollback on error.

        Yields:
            The raw sqlite3.Connection object.  Callers must use it directly;
            calling :meth:`execute` on the wrapper inside the block deadlocks.

        Raises:
            Any exception raised within the context will trigger a rollback.
        """
        self._lock.acquire()
        try:
            yield self._conn
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


DbConnection = sqlite3.Connection | ThreadSafeConnection


def init_db(db_path: Path) -> ThreadSafeConnection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    raw = sqlite3.connect(str(db_path), check_same_thread=False)
    raw.row_factory = sqlite3.Row
    db = ThreadSafeConnection(raw)

    db.executescript(
        dedent("""\
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
    """)
    )

    db.commit()
    return db


@contextmanager
def _locked(db: DbConnection) -> Iterator[sqlite3.Connection]:
    if isinstance(db, ThreadSafeConnection):
        with db.transaction() as conn:
            yield conn
    else:
        with db:
            yield db


T = TypeVar("T")
V = TypeVar("V")


class StorageManager(Generic[T]):
    """Load/save one JSON document under *key*.

    Usage::

        agents = StorageManager(db, STORAGE_KEYS["agents"], [], TypeAdapter(list[Agent]))
        current = agents.load()
        agents.update(lambda items: [*items, new_agent])

    With ``db=None`` the manager behaves as if nothing was ever stored: loads
    return the default and saves report ``False``.
    """

    def __init__(
        self,
        db: DbConnection | None,
        key: str,
        default: T,
        adapter: TypeAdapter[Any] | None = None,
        debug_name: str | None = None,
    ) -> None:
        self._db = db
        self.key = key
        self._default = default
        self._adapter = adapter
        self._debug_name = debug_name

    @property
    def name(self) -> str:
        return self._debug_name or self.key

    def _default_copy(self) -> T:
        return copy.deepcopy(self._default)

    def _decode(self, raw: str) -> T:
        value = json.loads(raw)
        if self._adapter is not None:
            value = self._adapter.validate_python(value)
        return value

    def _encode(self, value: T) -> str:
        if self._adapter is not None:
            return self._adapter.dump_json(value).decode()
        return json.dumps(value)

    def _read(self, conn: DbConnection) -> T:
        row = conn.execute(
            "SELECT value FROM kv_store WHERE key = ?", (self.key,)
        ).fetchone()
        if row is None:
            return self._default_copy()
        return self._decode(row[0])

    def _read_or_default(self, conn: DbConnection) -> T:
        try:
            return self._read(conn)
        except (sqlite3.Error, ValueError):
            # ValueError covers both bad JSON and pydantic validation errors.
            log.exception("Failed to load %s from storage", self.name)
            return self._default_copy()

    def _write(self, conn: sqlite3.Connection, value: T) -> None:
        now = datetime.now(timezone.utc).isoformat()
        conn.execute(
            dedent("""\
            INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
        """),
            (self.key, self._encode(value), now),
        )

    def load(self) -> T:
        if self._db is None:
            return self._default_copy()
        return self._read_or_default(self._db)

    def save(self, value: T) -> bool:
        if self._db is None:
            return False
        try:
            with _locked(self._db) as conn:
                self._write(conn, value)
        except sqlite3.Error:
            log.exception("Failed to save %s to storage", self.name)
            return False
        return True

    def update(self, updater: Callable[[T], T]) -> T:
        """Apply *updater* to the stored value and persist the result.

        The read, the call and the write happen inside one locked transaction.
        Exceptions raised by *updater* roll the transaction back and propagate.
        """
        if self._db is None:
            return updater(self._default_copy())
        try:
            with _locked(self._db) as conn:
                updated = updater(self._read_or_default(conn))
                self._write(conn, updated)
        except sqlite3.Error:
            log.exception("Failed to save %s to storage", self.name)
        return updated

    def clear(self) -> None:
        if self._db is None:
            return
        try:
            with _locked(self._db) as conn:
                conn.execute("DELETE FROM kv_store WHERE key = ?", (self.key,))
        except sqlite3.Error:
            log.exception("Failed to clear %s from storage", self.name)

    def exists(self) -> bool:
        if self._db is None:
            return False
        try:
            row = self._db.execute(
                "SELECT 1 FROM kv_store WHERE key = ?", (self.key,)
            ).fetchone()
        except sqlite3.Error:
            log.exception("Failed to query %s in storage", self.name)
            return False
        return row is not None


class SetStorageManager(Generic[T]):
    """Insertion-ordered set persisted as a JSON list.

    When *max_items* is given, adding beyond it evicts the oldest members.
    """

    def __init__(
        self,
        db: DbConnection | None,
        key: str,
        debug_name: str | None = None,
        max_items: int | None = None,
    ) -> None:
        self._manager: StorageManager[list[T]] = StorageManager(
            db, key, [], debug_name=debug_name
        )
        self._max_items = max_items

    def load(self) -> set[T]:
        return set(self._manager.load())

    def save(self, items: set[T]) -> bool:
        return self._manager.save(list(items))

    def add(self, item: T) -> set[T]:
        def _add(items: list[T]) -> list[T]:
            updated = [i for i in items if i != item] + [item]
            if self._max_items is not None:
                updated = updated[-self._max_items :]
            return updated

        return set(self._manager.update(_add))

    def delete(self, item: T) -> set[T]:
        return set(self._manager.update(lambda items: [i for i in items if i != item]))

    def has(self, item: T) -> bool:
        return item in self._manager.load()

    def clear(self) -> None:
        self._manager.clear()


class MapStorageManager(Generic[V]):
    """A ``str -> V`` mapping persisted as one JSON object."""

    def __init__(
        self,
        db: DbConnection | None,
        key: str,
        value_type: type[V] | None = None,
        debug_name: str | None = None,
    ) -> None:
        adapter = TypeAdapter(dict[str, value_type]) if value_type is not None else None
        self._manager: StorageManager[dict[str, V]] = StorageManager(
            db, key, {}, adapter, debug_name
        )

    def load(self) -> dict[str, V]:
        return self._manager.load()

    def save(self, record: dict[str, V]) -> bool:
        return self._manager.save(record)

    def get(self, key: str) -> V | None:
        return self.load().get(key)

    def set(self, key: str, value: V) -> dict[str, V]:
        return self._manager.update(lambda current: {**current, key: value})

    def delete(self, key: str) -> dict[str, V]:
        def _delete(current: dict[str, V]) -> dict[str, V]:
            current.pop(key, None)
            return current

        return self._manager.update(_delete)

    def merge(self, new_data: dict[str, V]) -> dict[str, V]:
        return self._manager.update(lambda current: {**current, **new_data})

    def update_entry(self, key: str, updater: Callable[[V | None], V | None]) -> V | None:
        """Atomically replace the entry for *key*; returning ``None`` removes it."""
        result: dict[str, V | None] = {}

        def _update(current: dict[str, V]) -> dict[str, V]:
            value = updater(current.get(key))
            result["value"] = value
            if value is None:
                current.pop(key, None)
            else:
                current[key] = value
            return current

        self._manager.update(_update)
        return result.get("value")

    def has(self, key: str) -> bool:
        return key in self.load()

    def clear(self) -> None:
        self._manager.clear()


class TimestampedStorageManager(StorageManager[T]):
    """:class:`StorageManager` that also exposes when the record was last written."""

    def get_timestamp(self) -> datetime | None:
        if self._db is None:
            return None
        try:
            row = self._db.execute(
                "SELECT updated_at FROM kv_store WHERE key = ?", (self.key,)
            ).fetchone()
        except sqlite3.Error:
            log.exception("Failed to read timestamp of %s", self.name)
            return None
        return datetime.fromisoformat(row[0]) if row else None

    def is_stale(self, max_age: timedelta) -> bool:
        timestamp = self.get_timestamp()
        if timestamp is None:
            return True
        return datetime.now(timezone.utc) - timestamp > max_age
