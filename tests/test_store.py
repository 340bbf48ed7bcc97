"""Tests for the key/value storage managers."""

from __future__ import annotations

import sqlite3
import threading
from datetime import timedelta
from pathlib import Path

import pytest
from pydantic import TypeAdapter

from parrot_autopilot.models import Agent
from parrot_autopilot.store import (
    MapStorageManager,
    SetStorageManager,
    StorageManager,
    ThreadSafeConnection,
    TimestampedStorageManager,
    init_db,
)


@pytest.fixture
def db(tmp_path: Path) -> ThreadSafeConnection:
    return init_db(tmp_path / "test.db")


def _agent(agent_id: str) -> Agent:
    return Agent(
        id=agent_id,
        name=agent_id,
        goal="g",
        system_prompt="p",
        created_at="2025-01-01T00:00:00+00:00",
        updated_at="2025-01-01T00:00:00+00:00",
    )


def test_init_db_creates_kv_table(tmp_path: Path) -> None:
    db = init_db(tmp_path / "sub" / "test.db")
    cursor = db.execute("SELECT name FROM sqlite_master WHERE type='table'")
    assert "kv_store" in [row[0] for row in cursor.fetchall()]


def test_load_returns_default_when_absent(db: ThreadSafeConnection) -> None:
    manager = StorageManager(db, "k", {"a": 1})
    assert manager.load() == {"a": 1}
    assert not manager.exists()


def test_default_is_not_shared_between_loads(db: ThreadSafeConnection) -> None:
    manager: StorageManager[list[int]] = StorageManager(db, "k", [])
    manager.load().append(1)
    assert manager.load() == []


def test_save_and_load_roundtrip_with_adapter(db: ThreadSafeConnection) -> None:
    manager = StorageManager(db, "agents", [], TypeAdapter(list[Agent]))
    assert manager.save([_agent("a1")])

    loaded = manager.load()
    assert isinstance(loaded[0], Agent)
    assert loaded[0].id == "a1"
    assert manager.exists()


def test_corrupt_record_degrades_to_default(db: ThreadSafeConnection) -> None:
    db.execute(
        "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
        ("k", "{not json", "2025-01-01T00:00:00+00:00"),
    )
    db.commit()

    assert StorageManager(db, "k", []).load() == []


def test_invalid_record_degrades_to_default(db: ThreadSafeConnection) -> None:
    StorageManager(db, "agents", []).save([{"id": "missing fields"}])
    manager = StorageManager(db, "agents", [], TypeAdapter(list[Agent]))
    assert manager.load() == []


def test_no_db_means_nothing_persists() -> None:
    manager: StorageManager[list[int]] = StorageManager(None, "k", [])
    assert manager.save([1]) is False
    assert manager.load() == []
    assert manager.update(lambda items: [*items, 2]) == [2]
    assert manager.exists() is False


def test_update_is_read_modify_write(db: ThreadSafeConnection) -> None:
    manager: StorageManager[list[int]] = StorageManager(db, "k", [])
    manager.update(lambda items: [*items, 1])
    manager.update(lambda items: [*items, 2])
    assert manager.load() == [1, 2]


def test_update_exception_leaves_value_unchanged(db: ThreadSafeConnection) -> None:
    manager: StorageManager[list[int]] = StorageManager(db, "k", [])
    manager.save([1])

    def _boom(items: list[int]) -> list[int]:
        raise ValueError("nope")

    with pytest.raises(ValueError):
        manager.update(_boom)
    assert manager.load() == [1]


def test_concurrent_updates_are_not_lost(db: ThreadSafeConnection) -> None:
    manager: StorageManager[list[int]] = StorageManager(db, "k", [])

    def _worker(n: int) -> None:
        for i in range(20):
            manager.update(lambda items: [*items, n * 100 + i])

    threads = [threading.Thread(target=_worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(manager.load()) == 80


def test_clear_removes_record(db: ThreadSafeConnection) -> None:
    manager = StorageManager(db, "k", 0)
    manager.save(5)
    manager.clear()
    assert manager.load() == 0
    assert not manager.exists()


def test_plain_sqlite_connection_is_supported(tmp_path: Path) -> None:
    conn = sqlite3.connect(tmp_path / "raw.db")
    conn.execute(
        "CREATE TABLE kv_store (key TEXT PRIMARY KEY, value TEXT NOT NULL, updated_at TEXT NOT NULL)"
    )
    manager = StorageManager(conn, "k", [])
    manager.update(lambda items: [*items, "x"])
    assert manager.load() == ["x"]


class TestSetStorageManager:
    def test_add_has_delete(self, db: ThreadSafeConnection) -> None:
        ids: SetStorageManager[str] = SetStorageManager(db, "ids")
        ids.add("a")
        ids.add("b")
        assert ids.has("a")
        assert ids.load() == {"a", "b"}

        ids.delete("a")
        assert not ids.has("a")

    def test_max_items_evicts_oldest(self, db: ThreadSafeConnection) -> None:
        ids: SetStorageManager[str] = SetStorageManager(db, "ids", max_items=3)
        for item in ["a", "b", "c", "d"]:
            ids.add(item)
        assert ids.load() == {"b", "c", "d"}

    def test_readding_refreshes_position(self, db: ThreadSafeConnection) -> None:
        ids: SetStorageManager[str] = SetStorageManager(db, "ids", max_items=2)
        ids.add("a")
        ids.add("b")
        ids.add("a")
        ids.add("c")
        assert ids.load() == {"a", "c"}


class TestMapStorageManager:
    def test_set_get_delete(self, db: ThreadSafeConnection) -> None:
        agents = MapStorageManager(db, "agents", Agent)
        agents.set("a1", _agent("a1"))

        assert agents.has("a1")
        got = agents.get("a1")
        assert isinstance(got, Agent)
        assert got.name == "a1"

        agents.delete("a1")
        assert agents.get("a1") is None

    def test_merge_overwrites_keys(self, db: ThreadSafeConnection) -> None:
        counts: MapStorageManager[int] = MapStorageManager(db, "counts")
        counts.save({"a": 1, "b": 2})
        counts.merge({"b": 3, "c": 4})
        assert counts.load() == {"a": 1, "b": 3, "c": 4}

    def test_update_entry_none_removes(self, db: ThreadSafeConnection) -> None:
        counts: MapStorageManager[int] = MapStorageManager(db, "counts")
        assert counts.update_entry("a", lambda v: (v or 0) + 1) == 1
        assert counts.update_entry("a", lambda v: (v or 0) + 1) == 2
        assert counts.update_entry("a", lambda v: None) is None
        assert not counts.has("a")


def test_timestamped_manager_staleness(db: ThreadSafeConnection) -> None:
    manager = TimestampedStorageManager(db, "k", [])
    assert manager.get_timestamp() is None
    assert manager.is_stale(timedelta(minutes=5))

    manager.save([1])
    assert manager.get_timestamp() is not None
    assert not manager.is_stale(timedelta(minutes=5))
