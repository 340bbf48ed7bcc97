"""Tests for the scheduled action queue."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from parrot_autopilot import actions
from parrot_autopilot.events import AutopilotEvent, autopilot_events
from parrot_autopilot.models import ScheduledAction
from parrot_autopilot.store import ThreadSafeConnection, init_db

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db(tmp_path: Path) -> ThreadSafeConnection:
    return init_db(tmp_path / "test.db")


def _add(
    db: ThreadSafeConnection, chat_id: str = "chat-1", offset: int = 0, text: str = "hi"
) -> ScheduledAction:
    return actions.add_action(
        db,
        chat_id=chat_id,
        agent_id="agent-1",
        action_type="send-message",
        scheduled_for=(NOW + timedelta(seconds=offset)).isoformat(),
        message_text=text,
    )


def test_parse_timestamp_accepts_z_suffix() -> None:
    parsed = actions.parse_timestamp("2025-06-01T12:00:00Z")
    assert parsed == NOW


def test_parse_timestamp_assumes_utc_for_naive() -> None:
    assert actions.parse_timestamp("2025-06-01T12:00:00") == NOW


def test_add_action_persists_and_emits(db: ThreadSafeConnection) -> None:
    received: list[AutopilotEvent] = []
    autopilot_events.on("action-scheduled", received.append)

    action = _add(db)

    assert action.status == "pending"
    assert action.attempts == 0
    assert actions.get_action(db, action.id) == action
    assert received[0].data["action_id"] == action.id


def test_get_due_action_returns_earliest_due(db: ThreadSafeConnection) -> None:
    later = _add(db, offset=-10, text="later")
    earliest = _add(db, offset=-60, text="earliest")
    _add(db, offset=60, text="future")

    assert actions.get_due_action(db, NOW) == earliest
    actions.mark_completed(db, earliest)
    assert actions.get_due_action(db, NOW) == actions.get_action(db, later.id)


def test_get_due_action_none_when_nothing_due(db: ThreadSafeConnection) -> None:
    _add(db, offset=60)
    assert actions.get_due_action(db, NOW) is None


def test_update_action_ignores_unknown_fields(db: ThreadSafeConnection) -> None:
    action = _add(db)
    updated = actions.update_action(db, action.id, message_text="bye", chat_id="other")
    assert updated is not None
    assert updated.message_text == "bye"
    assert updated.chat_id == "chat-1"


def test_cancel_only_touches_pending(db: ThreadSafeConnection) -> None:
    done = _add(db)
    actions.mark_completed(db, done)
    pending = _add(db)

    actions.cancel_action(db, done.id)
    actions.cancel_action(db, pending.id)

    assert actions.get_action(db, done.id).status == "completed"  # type: ignore[union-attr]
    assert actions.get_action(db, pending.id).status == "cancelled"  # type: ignore[union-attr]


def test_cancel_all_for_chat(db: ThreadSafeConnection) -> None:
    _add(db, "chat-1")
    _add(db, "chat-1")
    other = _add(db, "chat-2")

    assert actions.cancel_all_for_chat(db, "chat-1") == 2
    assert actions.get_pending_for_chat(db, "chat-1") == []
    assert actions.get_pending_for_chat(db, "chat-2") == [other]
    assert len(actions.get_actions_for_chat(db, "chat-1")) == 2


def test_mark_failed_with_retry_goes_back_to_pending(db: ThreadSafeConnection) -> None:
    received: list[AutopilotEvent] = []
    autopilot_events.on("action-failed", received.append)
    action = _add(db)
    retry_at = (NOW + timedelta(minutes=1)).isoformat()

    updated = actions.mark_failed(db, action, "timeout", retry_at=retry_at)

    assert updated is not None
    assert updated.status == "pending"
    assert updated.attempts == 1
    assert updated.last_error == "timeout"
    assert updated.scheduled_for == retry_at
    assert received[0].data["error"] == "timeout"


def test_mark_failed_without_retry_stays_failed(db: ThreadSafeConnection) -> None:
    action = _add(db)
    updated = actions.mark_failed(db, action, "boom")
    assert updated is not None
    assert updated.status == "failed"
    assert actions.get_due_action(db, NOW + timedelta(days=1)) is None


def test_cleanup_keeps_pending_and_recent_failures(db: ThreadSafeConnection) -> None:
    pending = _add(db)
    completed = _add(db)
    actions.mark_completed(db, completed)
    cancelled = _add(db)
    actions.cancel_action(db, cancelled.id)
    failed = _add(db)
    actions.mark_failed(db, failed, "boom")

    removed = actions.cleanup_terminal(db, datetime.now(timezone.utc))

    assert removed == 2
    assert {a.id for a in actions.list_actions(db)} == {pending.id, failed.id}


def test_cleanup_drops_old_failures(db: ThreadSafeConnection) -> None:
    failed = _add(db)
    actions.mark_failed(db, failed, "boom")

    removed = actions.cleanup_terminal(db, datetime.now(timezone.utc) + timedelta(hours=25))

    assert removed == 1
    assert actions.list_actions(db) == []


def test_approve_action_reschedules_soon(db: ThreadSafeConnection) -> None:
    action = actions.add_action(
        db,
        chat_id="chat-1",
        agent_id="agent-1",
        action_type="send-message",
        scheduled_for=(datetime.now(timezone.utc) + timedelta(hours=24)).isoformat(),
        message_text="draft",
    )

    approved = actions.approve_action(db, action.id)

    assert approved is not None
    delay = actions.parse_timestamp(approved.scheduled_for) - datetime.now(timezone.utc)
    assert timedelta(0) < delay <= timedelta(seconds=5)


def test_approve_action_ignores_non_pending(db: ThreadSafeConnection) -> None:
    action = _add(db)
    actions.cancel_action(db, action.id)
    assert actions.approve_action(db, action.id) is None
    assert actions.approve_action(db, "missing") is None


def test_delete_action(db: ThreadSafeConnection) -> None:
    action = _add(db)
    actions.delete_action(db, action.id)
    assert actions.get_action(db, action.id) is None
