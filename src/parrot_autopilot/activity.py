"""Append-only audit trail of what the autopilot did, capped in size."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import TypeAdapter

from parrot_autopilot.events import emit_activity_added
from parrot_autopilot.models import ActivityEntry, ActivityType
from parrot_autopilot.store import STORAGE_KEYS, DbConnection, TimestampedStorageManager

MAX_ACTIVITY_ENTRIES = 500

_activity_adapter = TypeAdapter(list[ActivityEntry])


def activity_log(db: DbConnection | None) -> TimestampedStorageManager[list[ActivityEntry]]:
    return TimestampedStorageManager(
        db, STORAGE_KEYS["activity"], [], _activity_adapter, "autopilotActivity"
    )


def add_activity(
    db: DbConnection | None,
    chat_id: str,
    agent_id: str,
    activity_type: ActivityType,
    *,
    message: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> ActivityEntry:
    entry = ActivityEntry(
        id=uuid.uuid4().hex[:12],
        chat_id=chat_id,
        agent_id=agent_id,
        type=activity_type,
        timestamp=datetime.now(timezone.utc).isoformat(),
        message=message,
        metadata=metadata,
    )
    activity_log(db).update(lambda entries: [*entries, entry][-MAX_ACTIVITY_ENTRIES:])
    emit_activity_added(chat_id, activity_type)
    return entry


def load_activity(db: DbConnection | None) -> list[ActivityEntry]:
    return activity_log(db).load()


def get_activity_for_chat(db: DbConnection | None, chat_id: str) -> list[ActivityEntry]:
    return [e for e in load_activity(db) if e.chat_id == chat_id]


def clear_activity(db: DbConnection | None) -> None:
    activity_log(db).clear()
