"""Recent per-chat transcript and assistant conversation used as prompt context."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Literal, cast

from parrot_autopilot.actions import parse_timestamp
from parrot_autopilot.models import AiChatMessage, Message, ThreadContext
from parrot_autopilot.store import STORAGE_KEYS, DbConnection, MapStorageManager

log = logging.getLogger(__name__)

MAX_THREAD_CONTEXT_MESSAGES = 100
MAX_AI_CHAT_MESSAGES = 50
AI_CHAT_SUMMARY_MESSAGES = 10


def message_time(message: Message) -> datetime:
    """Sort key for *message*; unreadable timestamps sort before everything else."""
    try:
        return parse_timestamp(message.timestamp)
    except ValueError:
        log.warning("Message %s has an unreadable timestamp %r", message.id, message.timestamp)
        return datetime.min.replace(tzinfo=timezone.utc)


def _thread_contexts(db: DbConnection | None) -> MapStorageManager[ThreadContext]:
    return MapStorageManager(db, STORAGE_KEYS["thread_context"], ThreadContext, "threadContext")


def _ai_chats(db: DbConnection | None) -> MapStorageManager[list[AiChatMessage]]:
    return MapStorageManager(
        db, STORAGE_KEYS["ai_chat_history"], list[AiChatMessage], "aiChatHistory"
    )


def get_thread_context(db: DbConnection | None, chat_id: str) -> ThreadContext | None:
    return _thread_contexts(db).get(chat_id)


def update_thread_context_with_new_messages(
    db: DbConnection | None,
    chat_id: str,
    sender_name: str,
    new_messages: list[Message],
) -> ThreadContext:
    """Add messages not seen before and keep the latest 100 in time order."""

    def _update(existing: ThreadContext | None) -> ThreadContext:
        messages = list(existing.messages) if existing else []
        known = {m.id for m in messages}
        for message in new_messages:
            if message.id not in known:
                known.add(message.id)
                messages.append(message)
        messages.sort(key=message_time)
        return ThreadContext(
            chat_id=chat_id,
            sender_name=sender_name,
            messages=messages[-MAX_THREAD_CONTEXT_MESSAGES:],
            last_updated=datetime.now(timezone.utc).isoformat(),
        )

    return cast(ThreadContext, _thread_contexts(db).update_entry(chat_id, _update))


def format_thread_context_for_prompt(context: ThreadContext | None) -> str:
    if context is None or not context.messages:
        return ""
    return "\n".join(
        f"{'Me' if m.is_from_me else m.sender_name}: {m.text}" for m in context.messages
    )


def get_ai_chat_for_thread(db: DbConnection | None, chat_id: str) -> list[AiChatMessage]:
    return _ai_chats(db).get(chat_id) or []


def append_ai_chat_message(
    db: DbConnection | None,
    chat_id: str,
    role: Literal["user", "assistant"],
    content: str,
) -> AiChatMessage:
    message = AiChatMessage(id=uuid.uuid4().hex[:12], role=role, content=content)
    _ai_chats(db).update_entry(
        chat_id, lambda existing: [*(existing or []), message][-MAX_AI_CHAT_MESSAGES:]
    )
    return message


def format_ai_chat_summary_for_prompt(messages: list[AiChatMessage]) -> str:
    return "\n".join(
        f"{'User asked' if m.role == 'user' else 'AI responded'}: {m.content}"
        for m in messages[-AI_CHAT_SUMMARY_MESSAGES:]
    )
