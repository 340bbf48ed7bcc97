"""Tests for the background history loader."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from parrot_autopilot import registry
from parrot_autopilot.activity import get_activity_for_chat
from parrot_autopilot.errors import ExtractionError
from parrot_autopilot.loader import (
    HistoryLoader,
    format_messages_for_extraction,
    get_history_progress,
    reset_history_progress,
)
from parrot_autopilot.models import Message
from parrot_autopilot.providers import ChatProviderBase
from parrot_autopilot.store import ThreadSafeConnection, init_db


def _msg(n: int, text: str | None = None, is_from_me: bool = False) -> Message:
    return Message(
        id=f"m{n}",
        text=text if text is not None else f"message number {n}",
        timestamp=f"2025-06-01T{n // 3600:02d}:{n // 60 % 60:02d}:{n % 60:02d}+00:00",
        sender_name="Alice",
        is_from_me=is_from_me,
    )


@dataclass
class FakeChatProvider(ChatProviderBase):
    """Serves newest-first history and can fail the first few fetches."""

    history: dict[str, list[Message]] = field(default_factory=dict)
    failures: int = 0
    fetches: list[tuple[str, int, int]] = field(default_factory=list)

    async def fetch_message_batch(self, chat_id: str, offset: int, limit: int) -> list[Message]:
        self.fetches.append((chat_id, offset, limit))
        if self.failures:
            self.failures -= 1
            raise ConnectionError("network down")
        newest_first = list(reversed(self.history.get(chat_id, [])))
        return newest_first[offset : offset + limit]


@pytest.fixture
def db(tmp_path: Path) -> ThreadSafeConnection:
    return init_db(tmp_path / "test.db")


def _loader(
    db: ThreadSafeConnection, provider: FakeChatProvider, pipeline: AsyncMock | None = None
) -> tuple[HistoryLoader, AsyncMock]:
    pipeline = pipeline or AsyncMock()
    loader = HistoryLoader(
        db, provider, pipeline, batch_size=3, batch_delay=0, error_backoff=0
    )
    return loader, pipeline


def test_format_messages_for_extraction_sorts_and_filters() -> None:
    anonymous = Message(id="m4", text="hi", timestamp="2025-06-01T00:00:04+00:00")
    text = format_messages_for_extraction(
        [_msg(3, "Bye now"), _msg(1, "Hello there"), _msg(2, "ok", is_from_me=True), anonymous]
    )
    assert text == "Alice: Hello there\nMe: ok\nAlice: Bye now"


def test_process_chat_walks_history_in_batches(db: ThreadSafeConnection) -> None:
    provider = FakeChatProvider(history={"chat-1": [_msg(n) for n in range(7)]})
    loader, pipeline = _loader(db, provider)

    progress = asyncio.run(loader.process_chat("chat-1", "agent-1", "Alice"))

    assert progress.is_complete
    assert progress.total_messages_processed == 7
    assert progress.total_batches_processed == 3
    assert progress.oldest_loaded_message_id == "m0"
    assert [offset for _, offset, _ in provider.fetches] == [0, 3, 6]
    assert pipeline.extract_knowledge.await_count == 3
    assert get_history_progress(db, "chat-1") == progress

    types = [e.type for e in get_activity_for_chat(db, "chat-1")]
    assert types[-1] == "history-complete"
    assert "knowledge-updated" in types


def test_exact_multiple_finishes_on_empty_batch(db: ThreadSafeConnection) -> None:
    provider = FakeChatProvider(history={"chat-1": [_msg(n) for n in range(6)]})
    loader, _ = _loader(db, provider)

    progress = asyncio.run(loader.process_chat("chat-1", "agent-1"))

    assert progress.is_complete
    assert progress.total_batches_processed == 2
    assert [offset for _, offset, _ in provider.fetches] == [0, 3, 6]


def test_completed_chat_is_skipped(db: ThreadSafeConnection) -> None:
    provider = FakeChatProvider(history={"chat-1": [_msg(1)]})
    loader, _ = _loader(db, provider)
    asyncio.run(loader.process_chat("chat-1", "agent-1"))
    provider.fetches.clear()

    asyncio.run(loader.process_chat("chat-1", "agent-1"))

    assert provider.fetches == []

    reset_history_progress(db, "chat-1")
    asyncio.run(loader.process_chat("chat-1", "agent-1"))
    assert provider.fetches == [("chat-1", 0, 3)]


def test_fetch_errors_are_retried_after_backoff(db: ThreadSafeConnection) -> None:
    provider = FakeChatProvider(history={"chat-1": [_msg(1)]}, failures=2)
    loader, _ = _loader(db, provider)

    progress = asyncio.run(loader.process_chat("chat-1", "agent-1"))

    assert progress.is_complete
    assert len(provider.fetches) == 3


def test_extraction_failure_still_counts_batch(db: ThreadSafeConnection) -> None:
    provider = FakeChatProvider(history={"chat-1": [_msg(n) for n in range(2)]})
    pipeline = AsyncMock()
    pipeline.extract_knowledge.side_effect = ExtractionError("garbage")
    loader, _ = _loader(db, provider, pipeline)

    progress = asyncio.run(loader.process_chat("chat-1", "agent-1"))

    assert progress.is_complete
    assert progress.total_messages_processed == 2


def test_run_pass_covers_active_automations_only(db: ThreadSafeConnection) -> None:
    provider = FakeChatProvider(
        history={"chat-1": [_msg(1)], "chat-2": [_msg(2)], "chat-3": [_msg(3)]}
    )
    registry.enable_automation(db, "chat-1", "agent-1")
    registry.enable_automation(db, "chat-2", "agent-1")
    registry.pause_automation(db, "chat-2")
    loader, _ = _loader(db, provider)

    asyncio.run(loader.run_pass())

    assert [chat_id for chat_id, _, _ in provider.fetches] == ["chat-1"]


@pytest.mark.asyncio
async def test_cancelled_pass_resumes_after_last_batch(db: ThreadSafeConnection) -> None:
    provider = FakeChatProvider(history={"chat-1": [_msg(n) for n in range(7)]})
    loader = HistoryLoader(db, provider, AsyncMock(), batch_size=3, batch_delay=60, error_backoff=0)
    registry.enable_automation(db, "chat-1", "agent-1")

    task = loader.trigger()
    # Let the first batch finish; the loader is then throttling for 60s.
    for _ in range(20):
        await asyncio.sleep(0)
        progress = get_history_progress(db, "chat-1")
        if progress and progress.total_batches_processed == 1:
            break
    task.cancel()
    await asyncio.wait([task])

    progress = get_history_progress(db, "chat-1")
    assert progress is not None
    assert progress.total_messages_processed == 3
    assert not progress.is_complete

    fast = HistoryLoader(db, provider, AsyncMock(), batch_size=3, batch_delay=0, error_backoff=0)
    await fast.run_pass()

    progress = get_history_progress(db, "chat-1")
    assert progress is not None
    assert progress.is_complete
    assert progress.total_messages_processed == 7


@pytest.mark.asyncio
async def test_config_change_restarts_pass(db: ThreadSafeConnection) -> None:
    provider = FakeChatProvider(history={"chat-1": [_msg(n) for n in range(2)]})
    loader, _ = _loader(db, provider)

    first = loader.start()
    await asyncio.wait([first])
    assert provider.fetches == []

    registry.enable_automation(db, "chat-1", "agent-1")
    assert loader.config_version == 2
    second = loader.task
    assert second is not None and second is not first
    await asyncio.wait([second])

    progress = get_history_progress(db, "chat-1")
    assert progress is not None
    assert progress.is_complete

    await loader.stop()
    registry.pause_automation(db, "chat-1")
    assert loader.config_version == 2


@pytest.mark.asyncio
async def test_trigger_cancels_inflight_pass(db: ThreadSafeConnection) -> None:
    provider = FakeChatProvider(history={"chat-1": [_msg(n) for n in range(7)]})
    loader = HistoryLoader(db, provider, AsyncMock(), batch_size=3, batch_delay=60, error_backoff=0)
    registry.enable_automation(db, "chat-1", "agent-1")

    first = loader.trigger()
    await asyncio.sleep(0)
    second = loader.trigger()
    await asyncio.sleep(0)

    assert first.cancelled() or first.done()
    assert not second.done()
    await loader.stop()
    assert second.done()


@pytest.mark.asyncio
async def test_bookkeeping_updates_do_not_restart_pass(db: ThreadSafeConnection) -> None:
    provider = FakeChatProvider(history={"chat-1": [_msg(n) for n in range(7)]})
    loader = HistoryLoader(db, provider, AsyncMock(), batch_size=3, batch_delay=60, error_backoff=0)
    registry.enable_automation(db, "chat-1", "agent-1")

    task = loader.start()
    for _ in range(20):
        await asyncio.sleep(0)
        progress = get_history_progress(db, "chat-1")
        if progress and progress.total_batches_processed == 1:
            break

    for _ in range(3):
        registry.record_message_handled(db, "chat-1")
    registry.record_failure(db, "chat-1", "send failed")
    await asyncio.sleep(0)

    assert loader.config_version == 1
    assert loader.task is task
    assert not task.done()
    assert [offset for _, offset, _ in provider.fetches] == [0]

    registry.pause_automation(db, "chat-1")
    assert loader.config_version == 2
    assert loader.task is not task

    await loader.stop()


def test_unreadable_timestamp_does_not_stop_loading(db: ThreadSafeConnection) -> None:
    odd = Message(
        id="m9", text="sent from an old client", timestamp="1717200000000", sender_name="Alice"
    )
    provider = FakeChatProvider(history={"chat-1": [_msg(1, "Hello there"), odd]})
    loader, pipeline = _loader(db, provider)

    progress = asyncio.run(loader.process_chat("chat-1", "agent-1"))

    assert progress.is_complete
    assert progress.total_messages_processed == 2
    transcript = pipeline.extract_knowledge.await_args.args[2]
    assert transcript == "Alice: sent from an old client\nAlice: Hello there"
