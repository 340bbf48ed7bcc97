"""Background job that walks the full history of automated chats.

Each chat's history is fetched in batches, newest first, and every batch is
run through knowledge extraction.  Progress lives in the store, so a pass
that is cancelled or a process that is restarted picks up after the last
completed batch.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone

from parrot_autopilot.activity import add_activity
from parrot_autopilot.events import AutopilotEvent, autopilot_events
from parrot_autopilot.models import (
    ActivityType,
    ChatAutomationConfig,
    HistoryLoadProgress,
    Message,
)
from parrot_autopilot.pipeline import ContextPipeline
from parrot_autopilot.providers import ChatProvider
from parrot_autopilot.registry import get_active_automations, get_config, list_configs
from parrot_autopilot.store import STORAGE_KEYS, DbConnection, MapStorageManager
from parrot_autopilot.threads import get_thread_context, message_time

log = logging.getLogger(__name__)

BATCH_SIZE = 200
BATCH_DELAY = 8.0
ERROR_BACKOFF = 15.0
MIN_LINE_LENGTH = 5
DEFAULT_SENDER_NAME = "Contact"


def _progress_store(db: DbConnection | None) -> MapStorageManager[HistoryLoadProgress]:
    return MapStorageManager(
        db, STORAGE_KEYS["history_progress"], HistoryLoadProgress, "historyLoadProgress"
    )


def get_history_progress(db: DbConnection | None, chat_id: str) -> HistoryLoadProgress | None:
    return _progress_store(db).get(chat_id)


def save_history_progress(db: DbConnection | None, progress: HistoryLoadProgress) -> None:
    _progress_store(db).set(progress.chat_id, progress)


def reset_history_progress(db: DbConnection | None, chat_id: str) -> None:
    _progress_store(db).delete(chat_id)


AutomationState = tuple[bool, str, str]


def _automation_state(config: ChatAutomationConfig | None) -> AutomationState | None:
    if config is None:
        return None
    return config.enabled, config.status, config.agent_id


def format_messages_for_extraction(messages: list[Message]) -> str:
    """Chronological ``sender: text`` transcript without trivially short lines."""
    lines = (
        f"{'Me' if m.is_from_me else m.sender_name}: {m.text}"
        for m in sorted(messages, key=message_time)
    )
    return "\n".join(line for line in lines if len(line.strip()) >= MIN_LINE_LENGTH)


class HistoryLoader:
    """Walks active chats one at a time; at most one pass runs at any moment."""

    def __init__(
        self,
        db: DbConnection | None,
        chat_provider: ChatProvider,
        pipeline: ContextPipeline,
        *,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY,
        error_backoff: float = ERROR_BACKOFF,
    ) -> None:
        self._db = db
        self._chat_provider = chat_provider
        self._pipeline = pipeline
        self._batch_size = batch_size
        self._batch_delay = batch_delay
        self._error_backoff = error_backoff
        self.config_version = 0
        self._task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._seen: dict[str, AutomationState | None] = {}

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    def _log(
        self, chat_id: str, agent_id: str, activity_type: ActivityType, **metadata: object
    ) -> None:
        add_activity(self._db, chat_id, agent_id, activity_type, metadata=metadata)

    def _complete(self, progress: HistoryLoadProgress, agent_id: str) -> HistoryLoadProgress:
        progress = progress.model_copy(
            update={
                "is_complete": True,
                "last_processed_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        save_history_progress(self._db, progress)
        self._log(
            progress.chat_id,
            agent_id,
            "history-complete",
            messages_processed=progress.total_messages_processed,
        )
        log.info(
            "History of chat %s fully processed: %d messages in %d batches",
            progress.chat_id,
            progress.total_messages_processed,
            progress.total_batches_processed,
        )
        return progress

    async def _extract(
        self, chat_id: str, agent_id: str, sender_name: str, messages: list[Message]
    ) -> None:
        contact_name = next((m.sender_name for m in messages if not m.is_from_me), sender_name)
        try:
            transcript = format_messages_for_extraction(messages)
            if not transcript:
                return
            await self._pipeline.extract_knowledge(chat_id, contact_name or sender_name, transcript)
        except Exception:
            # The batch still counts as processed.
            log.exception("Knowledge extraction failed for a batch of chat %s", chat_id)
            return
        self._log(chat_id, agent_id, "knowledge-updated", batch_size=len(messages))

    async def process_chat(
        self, chat_id: str, agent_id: str, sender_name: str = DEFAULT_SENDER_NAME
    ) -> HistoryLoadProgress:
        """Load the rest of *chat_id*'s history; returns the final progress.

        Cancellation is honoured at every await.  Progress is written only
        after a batch is fully handled, so a cancelled run leaves the record
        as it was after the last completed batch.
        """
        progress = get_history_progress(self._db, chat_id) or HistoryLoadProgress(
            chat_id=chat_id, last_processed_at=datetime.now(timezone.utc).isoformat()
        )
        if progress.is_complete:
            log.debug("History of chat %s already fully processed", chat_id)
            return progress

        log.debug(
            "Loading history of chat %s from offset %d",
            chat_id,
            progress.total_messages_processed,
        )
        self._log(
            chat_id,
            agent_id,
            "history-loading",
            messages_processed=progress.total_messages_processed,
        )

        while True:
            try:
                messages = await self._chat_provider.fetch_message_batch(
                    chat_id, progress.total_messages_processed, self._batch_size
                )
            except Exception:
                log.exception(
                    "Fetching history of chat %s failed, retrying in %ss",
                    chat_id,
                    self._error_backoff,
                )
                await asyncio.sleep(self._error_backoff)
                continue

            if not messages:
                return self._complete(progress, agent_id)

            await self._extract(chat_id, agent_id, sender_name, messages)

            progress = progress.model_copy(
                update={
                    "oldest_loaded_message_id": messages[-1].id,
                    "total_messages_processed": progress.total_messages_processed
                    + len(messages),
                    "total_batches_processed": progress.total_batches_processed + 1,
                    "last_processed_at": datetime.now(timezone.utc).isoformat(),
                }
            )
            save_history_progress(self._db, progress)
            log.debug(
                "Chat %s: batch %d done, %d messages total",
                chat_id,
                progress.total_batches_processed,
                progress.total_messages_processed,
            )
            self._log(
                chat_id,
                agent_id,
                "history-loading",
                messages_processed=progress.total_messages_processed,
            )

            if len(messages) < self._batch_size:
                return self._complete(progress, agent_id)

            await asyncio.sleep(self._batch_delay)

    async def run_pass(self) -> None:
        """Process every active automation, one chat after the other."""
        configs = get_active_automations(self._db)
        if not configs:
            log.debug("No active automations, nothing to load")
            return
        log.debug("Loading history for %d active automation(s)", len(configs))
        for config in configs:
            context = get_thread_context(self._db, config.chat_id)
            sender_name = context.sender_name if context else DEFAULT_SENDER_NAME
            try:
                await self.process_chat(config.chat_id, config.agent_id, sender_name)
            except Exception:
                log.exception("Loading history of chat %s failed", config.chat_id)

    async def _run_after(self, previous: asyncio.Task[None] | None) -> None:
        if previous is not None:
            # asyncio.wait does not re-raise the previous pass's cancellation.
            await asyncio.wait([previous])
        await self.run_pass()

    def trigger(self) -> asyncio.Task[None]:
        """Cancel the in-flight pass, if any, and start a fresh one.

        Must be called from the event loop thread.
        """
        self.config_version += 1
        previous = self._task
        if previous is not None and not previous.done():
            log.debug("Cancelling history pass for config version %d", self.config_version)
            previous.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._task = loop.create_task(self._run_after(previous))
        return self._task

    def _on_config_changed(self, event: AutopilotEvent) -> None:
        if event.chat_id is not None:
            state = _automation_state(get_config(self._db, event.chat_id))
            previous = self._seen.get(event.chat_id)
            self._seen[event.chat_id] = state
            if state == previous:
                # Counters and timestamps only; the set of chats to load is unchanged.
                return
        self.trigger()

    def start(self) -> asyncio.Task[None]:
        """Re-run whenever a chat is enabled, disabled, changes status or agent.

        Also starts a pass now.
        """
        self._loop = asyncio.get_running_loop()
        self._seen = {c.chat_id: _automation_state(c) for c in list_configs(self._db)}
        if self._unsubscribe is None:
            self._unsubscribe = autopilot_events.on("config-changed", self._on_config_changed)
        return self.trigger()

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])
