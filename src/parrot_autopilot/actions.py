"""Durable queue of deferred automated actions.

The queue records outcomes only; deciding whether a failed action is tried
again is up to the executor (see :mod:`parrot_autopilot.engine`).
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from pydantic import TypeAdapter

from parrot_autopilot.events import (
    emit_action_completed,
    emit_action_executing,
    emit_action_failed,
    emit_action_scheduled,
)
from parrot_autopilot.models import ActionType, ScheduledAction
from parrot_autopilot.store import STORAGE_KEYS, DbConnection, StorageManager

log = logging.getLogger(__name__)

FAILED_RETENTION = timedelta(hours=24)
APPROVAL_SEND_DELAY = 5

_actions_adapter = TypeAdapter(list[ScheduledAction])

_UPDATABLE_FIELDS = {
    "scheduled_for",
    "status",
    "attempts",
    "message_text",
    "message_id",
    "last_error",
}


def _actions(db: DbConnection | None) -> StorageManager[list[ScheduledAction]]:
    return StorageManager(
        db, STORAGE_KEYS["scheduled"], [], _actions_adapter, "scheduledActions"
    )


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def list_actions(db: DbConnection | None) -> list[ScheduledAction]:
    return _actions(db).load()


def get_action(db: DbConnection | None, action_id: str) -> ScheduledAction | None:
    return next((a for a in list_actions(db) if a.id == action_id), None)


def add_action(
    db: DbConnection | None,
    *,
    chat_id: str,
    agent_id: str,
    action_type: ActionType,
    scheduled_for: str,
    message_text: str | None = None,
    message_id: str | None = None,
) -> ScheduledAction:
    action = ScheduledAction(
        id=uuid.uuid4().hex[:12],
        chat_id=chat_id,
        agent_id=agent_id,
        type=action_type,
        scheduled_for=scheduled_for,
        message_text=message_text,
        message_id=message_id,
        created_at=datetime.now(timezone.utc).isoformat(),
    )
    _actions(db).update(lambda actions: [*actions, action])
    emit_action_scheduled(chat_id, action.id, scheduled_for)
    return action


def update_action(
    db: DbConnection | None, action_id: str, **updates: object
) -> ScheduledAction | None:
    changes = {k: v for k, v in updates.items() if k in _UPDATABLE_FIELDS}
    if not changes:
        return get_action(db, action_id)

    actions = _actions(db).update(
        lambda items: [
            ScheduledAction.model_validate({**a.model_dump(), **changes})
            if a.id == action_id
            else a
            for a in items
        ]
    )
    return next((a for a in actions if a.id == action_id), None)


def delete_action(db: DbConnection | None, action_id: str) -> None:
    _actions(db).update(lambda items: [a for a in items if a.id != action_id])


def get_due_action(
    db: DbConnection | None, now: datetime | None = None
) -> ScheduledAction | None:
    """Return the pending action with the earliest ``scheduled_for`` that is due."""
    if now is None:
        now = datetime.now(timezone.utc)
    due = [
        a
        for a in list_actions(db)
        if a.status == "pending" and parse_timestamp(a.scheduled_for) <= now
    ]
    if not due:
        return None
    return min(due, key=lambda a: parse_timestamp(a.scheduled_for))


def get_pending_for_chat(db: DbConnection | None, chat_id: str) -> list[ScheduledAction]:
    return [a for a in list_actions(db) if a.chat_id == chat_id and a.status == "pending"]


def get_actions_for_chat(db: DbConnection | None, chat_id: str) -> list[ScheduledAction]:
    return [a for a in list_actions(db) if a.chat_id == chat_id]


def cancel_action(db: DbConnection | None, action_id: str) -> None:
    _actions(db).update(
        lambda items: [
            a.model_copy(update={"status": "cancelled"})
            if a.id == action_id and a.status == "pending"
            else a
            for a in items
        ]
    )


def cancel_all_for_chat(db: DbConnection | None, chat_id: str) -> int:
    """Cancel every pending action of *chat_id*; returns how many were cancelled."""
    cancelled = 0

    def _cancel(items: list[ScheduledAction]) -> list[ScheduledAction]:
        nonlocal cancelled
        result = []
        for a in items:
            if a.chat_id == chat_id and a.status == "pending":
                a = a.model_copy(update={"status": "cancelled"})
                cancelled += 1
            result.append(a)
        return result

    _actions(db).update(_cancel)
    if cancelled:
        log.info("Cancelled %d pending action(s) for chat %s", cancelled, chat_id)
    return cancelled


def cleanup_terminal(db: DbConnection | None, now: datetime | None = None) -> int:
    """Drop finished actions, keeping failures younger than 24 hours.

    Returns the number of actions removed.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    cutoff = now - FAILED_RETENTION
    removed = 0

    def _keep(a: ScheduledAction) -> bool:
        if a.status in ("pending", "executing"):
            return True
        return a.status == "failed" and parse_timestamp(a.created_at) > cutoff

    def _cleanup(items: list[ScheduledAction]) -> list[ScheduledAction]:
        nonlocal removed
        kept = [a for a in items if _keep(a)]
        removed = len(items) - len(kept)
        return kept

    _actions(db).update(_cleanup)
    return removed


def mark_executing(db: DbConnection | None, action: ScheduledAction) -> None:
    update_action(db, action.id, status="executing")
    emit_action_executing(action.chat_id, action.id)


def mark_completed(db: DbConnection | None, action: ScheduledAction) -> None:
    update_action(db, action.id, status="completed")
    emit_action_completed(action.chat_id, action.id)


def mark_failed(
    db: DbConnection | None,
    action: ScheduledAction,
    error: str,
    *,
    retry_at: str | None = None,
) -> ScheduledAction | None:
    """Record a failed attempt.

    With *retry_at* the action goes back to ``pending`` for that time, otherwise
    it stays ``failed``.
    """
    changes: dict[str, object] = {
        "attempts": action.attempts + 1,
        "last_error": error,
        "status": "failed",
    }
    if retry_at is not None:
        changes.update(status="pending", scheduled_for=retry_at)
    updated = update_action(db, action.id, **changes)
    emit_action_failed(action.chat_id, action.id, error)
    return updated


def approve_action(
    db: DbConnection | None, action_id: str, delay: float = APPROVAL_SEND_DELAY
) -> ScheduledAction | None:
    """Release a draft awaiting manual approval to be sent *delay* seconds from now.

    Returns ``None`` when there is no such pending action.
    """
    action = get_action(db, action_id)
    if action is None or action.status != "pending":
        return None
    send_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
    log.info("Approved action %s for chat %s", action_id, action.chat_id)
    return update_action(db, action_id, scheduled_for=send_at.isoformat())
