"""Turns incoming messages into scheduled replies and executes due actions."""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta, timezone

from parrot_autopilot import actions, registry
from parrot_autopilot.activity import add_activity
from parrot_autopilot.agents import get_agent
from parrot_autopilot.config import Settings
from parrot_autopilot.errors import AutopilotError
from parrot_autopilot.models import (
    Agent,
    ChatAutomationConfig,
    HandoffSummary,
    Message,
    ScheduledAction,
)
from parrot_autopilot.pacing import (
    calculate_multi_message_delay,
    calculate_read_receipt_delay,
    calculate_reply_delay,
    calculate_typing_duration,
    effective_response_rate,
    is_within_activity_hours,
    should_suggest_closing,
)
from parrot_autopilot.pipeline import ContextPipeline, DraftRequest, SummaryRequest
from parrot_autopilot.providers import ChatProvider
from parrot_autopilot.store import STORAGE_KEYS, DbConnection, SetStorageManager
from parrot_autopilot.threads import (
    get_thread_context,
    message_time,
    update_thread_context_with_new_messages,
)

log = logging.getLogger(__name__)

PENDING_APPROVAL_DELAY = 24 * 60 * 60
APPROVAL_MULTI_MESSAGE_DELAY = 5
MAX_PROCESSED_MESSAGES = 100


class AutopilotEngine:
    def __init__(
        self,
        db: DbConnection | None,
        pipeline: ContextPipeline,
        chat_provider: ChatProvider,
        settings: Settings,
    ) -> None:
        self._db = db
        self._pipeline = pipeline
        self._chat_provider = chat_provider
        self._settings = settings
        self._processed: SetStorageManager[str] = SetStorageManager(
            db,
            STORAGE_KEYS["processed_messages"],
            "processedMessages",
            max_items=MAX_PROCESSED_MESSAGES,
        )

    # -- scheduling ---------------------------------------------------------

    def _schedule_messages(
        self,
        chat_id: str,
        agent_id: str,
        texts: list[str],
        initial_delay: float,
        delay_between: float,
        message_id: str | None = None,
    ) -> list[ScheduledAction]:
        now = datetime.now(timezone.utc)
        scheduled = []
        delay = initial_delay
        for text in texts:
            scheduled.append(
                actions.add_action(
                    self._db,
                    chat_id=chat_id,
                    agent_id=agent_id,
                    action_type="send-message",
                    scheduled_for=(now + timedelta(seconds=delay)).isoformat(),
                    message_text=text,
                    message_id=message_id,
                )
            )
            delay += delay_between
        return scheduled

    def _schedule_presence(
        self,
        agent: Agent,
        chat_id: str,
        first_send_delay: float,
        text: str,
        message_id: str | None,
    ) -> list[ScheduledAction]:
        """Read receipt and typing indicator that precede a self-driving reply."""
        behavior = agent.behavior
        now = datetime.now(timezone.utc)
        scheduled = []
        if behavior.read_receipt_enabled and message_id:
            delay = min(calculate_read_receipt_delay(behavior), first_send_delay)
            scheduled.append(
                actions.add_action(
                    self._db,
                    chat_id=chat_id,
                    agent_id=agent.id,
                    action_type="send-read-receipt",
                    scheduled_for=(now + timedelta(seconds=delay)).isoformat(),
                    message_id=message_id,
                )
            )
        if behavior.typing_indicator_enabled:
            typing = calculate_typing_duration(text, behavior.typing_speed_wpm)
            delay = max(0.0, first_send_delay - typing)
            scheduled.append(
                actions.add_action(
                    self._db,
                    chat_id=chat_id,
                    agent_id=agent.id,
                    action_type="typing-indicator",
                    scheduled_for=(now + timedelta(seconds=delay)).isoformat(),
                )
            )
        return scheduled

    def _active_config(self, chat_id: str) -> ChatAutomationConfig | None:
        config = registry.get_config(self._db, chat_id)
        if config is None or not config.enabled or config.status != "active":
            log.debug("Automation not active for chat %s, skipping", chat_id)
            return None
        return config

    def _load_agent(self, config: ChatAutomationConfig) -> Agent | None:
        agent = get_agent(self._db, config.agent_id)
        if agent is None:
            log.warning("Agent %s of chat %s not found", config.agent_id, config.chat_id)
            registry.record_failure(
                self._db,
                config.chat_id,
                "Agent not found",
                max_consecutive_failures=self._settings.max_consecutive_failures,
            )
        return agent

    # -- incoming messages --------------------------------------------------

    async def handle_incoming_message(
        self, chat_id: str, message: Message, *, force: bool = False
    ) -> list[ScheduledAction]:
        """Draft and schedule a reply to *message*; returns the scheduled actions.

        With *force* the message is handled even when it was seen before or
        arrives outside the agent's activity hours.
        """
        if not force and self._processed.has(message.id):
            log.debug("Message %s already processed, skipping", message.id)
            return []
        self._processed.add(message.id)

        config = self._active_config(chat_id)
        if config is None:
            return []

        if registry.is_self_driving_expired(config):
            registry.expire_self_driving(self._db, chat_id)
            return []

        agent = self._load_agent(config)
        if agent is None:
            return []

        if not force and not is_within_activity_hours(agent.behavior):
            log.debug("Outside activity hours of agent %s, skipping", agent.id)
            return []

        update_thread_context_with_new_messages(
            self._db, chat_id, message.sender_name, [message]
        )
        add_activity(self._db, chat_id, agent.id, "message-received", message=message.text)

        rate, reduction = effective_response_rate(agent.behavior, config.messages_handled)
        if reduction > 0:
            add_activity(
                self._db,
                chat_id,
                agent.id,
                "fatigue-reduced",
                metadata={
                    "reduction": reduction,
                    "effective_response_rate": rate,
                    "messages_handled": config.messages_handled,
                },
            )
        roll = random.random() * 100
        if roll > rate:
            log.debug("Skipping message of chat %s (roll %.1f > rate %d)", chat_id, roll, rate)
            add_activity(
                self._db,
                chat_id,
                agent.id,
                "skipped-busy",
                message=message.text,
                metadata={"response_roll": roll, "effective_response_rate": rate},
            )
            return []

        behavior = agent.behavior
        emoji_only = (
            behavior.emoji_only_response_enabled
            and random.random() * 100 < behavior.emoji_only_response_chance
        )
        last_activity = (
            actions.parse_timestamp(config.last_activity_at) if config.last_activity_at else None
        )

        try:
            response = await self._pipeline.execute(
                DraftRequest(
                    chat_id=chat_id,
                    sender_name=message.sender_name,
                    agent_id=agent.id,
                    original_message=message.text,
                    detect_goal_completion=True,
                    emoji_only_response=emoji_only,
                    suggest_closing=should_suggest_closing(behavior, last_activity),
                    messages_in_conversation=config.messages_handled,
                )
            )
        except AutopilotError as exc:
            log.warning("Drafting a reply for chat %s failed: %s", chat_id, exc)
            registry.record_failure(
                self._db,
                chat_id,
                str(exc),
                max_consecutive_failures=self._settings.max_consecutive_failures,
            )
            return []

        add_activity(self._db, chat_id, agent.id, "draft-generated", message=response.text)

        analysis = response.goal_analysis
        if (
            analysis is not None
            and analysis.is_goal_achieved
            and analysis.confidence >= self._settings.goal_confidence_threshold
        ):
            behavior_on_goal = (
                config.goal_completion_behavior_override or agent.goal_completion_behavior
            )
            if behavior_on_goal == "handoff":
                await self.generate_handoff_summary(chat_id, agent, message.sender_name)
            registry.apply_goal_completion(self._db, chat_id, agent, analysis.reasoning)
            if behavior_on_goal != "maintenance":
                return []

        texts = response.suggested_messages or [response.text]
        if config.mode == "manual-approval":
            return self._schedule_messages(
                chat_id,
                agent.id,
                texts,
                PENDING_APPROVAL_DELAY,
                APPROVAL_MULTI_MESSAGE_DELAY,
                message.id,
            )

        reply_delay = calculate_reply_delay(
            behavior,
            message_time(message),
            actions.parse_timestamp(config.created_at),
        )
        scheduled = self._schedule_presence(agent, chat_id, reply_delay, texts[0], message.id)
        scheduled += self._schedule_messages(
            chat_id,
            agent.id,
            texts,
            reply_delay,
            calculate_multi_message_delay(behavior),
            message.id,
        )
        log.info("Scheduled %d message(s) for chat %s in %.0fs", len(texts), chat_id, reply_delay)
        return scheduled

    async def generate_proactive_message(self, chat_id: str) -> list[ScheduledAction]:
        """Draft a message that opens or revives the conversation."""
        config = self._active_config(chat_id)
        if config is None:
            return []
        agent = self._load_agent(config)
        if agent is None:
            return []

        context = get_thread_context(self._db, chat_id)
        sender_name = context.sender_name if context else "Contact"
        try:
            response = await self._pipeline.execute(
                DraftRequest(
                    chat_id=chat_id, sender_name=sender_name, agent_id=agent.id, proactive=True
                )
            )
        except AutopilotError as exc:
            log.warning("Drafting a proactive message for chat %s failed: %s", chat_id, exc)
            registry.record_failure(
                self._db,
                chat_id,
                str(exc),
                max_consecutive_failures=self._settings.max_consecutive_failures,
            )
            return []

        add_activity(self._db, chat_id, agent.id, "draft-generated", message=response.text)
        texts = response.suggested_messages or [response.text]
        if config.mode == "manual-approval":
            return self._schedule_messages(
                chat_id, agent.id, texts, PENDING_APPROVAL_DELAY, APPROVAL_MULTI_MESSAGE_DELAY
            )
        return self._schedule_messages(
            chat_id,
            agent.id,
            texts,
            random.uniform(3, 8),
            calculate_multi_message_delay(agent.behavior),
        )

    async def generate_handoff_summary(
        self, chat_id: str, agent: Agent, sender_name: str
    ) -> HandoffSummary | None:
        try:
            response = await self._pipeline.execute(
                SummaryRequest(chat_id=chat_id, sender_name=sender_name, agent_id=agent.id)
            )
        except AutopilotError:
            log.exception("Failed to generate handoff summary for chat %s", chat_id)
            return None

        summary = HandoffSummary(
            chat_id=chat_id,
            agent_id=agent.id,
            generated_at=datetime.now(timezone.utc).isoformat(),
            summary=response.summary or response.text,
            key_points=response.key_points,
            suggested_next_steps=response.suggested_next_steps,
            goal_status=response.goal_status or "unclear",
        )
        registry.save_handoff_summary(self._db, summary)
        add_activity(
            self._db,
            chat_id,
            agent.id,
            "handoff-triggered",
            message=summary.summary,
        )
        return summary

    # -- action execution ---------------------------------------------------

    async def execute_action(self, action: ScheduledAction) -> None:
        if action.type == "send-message":
            if action.message_text:
                await self._chat_provider.send_message(action.chat_id, action.message_text)
        elif action.type == "typing-indicator":
            await self._chat_provider.send_typing_indicator(action.chat_id)
        elif action.type == "send-read-receipt":
            if action.message_id:
                await self._chat_provider.send_read_receipt(action.chat_id, action.message_id)

    def _on_completed(self, action: ScheduledAction) -> None:
        if action.type != "send-message":
            return
        add_activity(
            self._db, action.chat_id, action.agent_id, "message-sent", message=action.message_text
        )
        if registry.get_config(self._db, action.chat_id) is not None:
            registry.record_message_handled(self._db, action.chat_id)

    def _on_failed(self, action: ScheduledAction, error: str, now: datetime) -> None:
        attempts = action.attempts + 1
        if attempts < self._settings.max_action_attempts:
            retry_at = now + timedelta(seconds=self._settings.action_retry_delay)
            actions.mark_failed(self._db, action, error, retry_at=retry_at.isoformat())
            add_activity(
                self._db,
                action.chat_id,
                action.agent_id,
                "action-retried",
                message=error,
                metadata={"action_id": action.id, "attempts": attempts},
            )
            return

        actions.mark_failed(self._db, action, error)
        log.warning("Giving up on action %s after %d attempts", action.id, attempts)
        if registry.get_config(self._db, action.chat_id) is not None:
            registry.record_failure(
                self._db,
                action.chat_id,
                error,
                max_consecutive_failures=self._settings.max_consecutive_failures,
            )

    async def process_next_action(self, now: datetime | None = None) -> ScheduledAction | None:
        """Execute the earliest due action, if any, and return it."""
        now = now or datetime.now(timezone.utc)
        action = actions.get_due_action(self._db, now)
        if action is None:
            return None

        log.debug("Executing %s action %s for chat %s", action.type, action.id, action.chat_id)
        actions.mark_executing(self._db, action)
        try:
            await self.execute_action(action)
        except Exception as exc:
            log.exception("Action %s for chat %s failed", action.id, action.chat_id)
            self._on_failed(action, str(exc), now)
        else:
            actions.mark_completed(self._db, action)
            self._on_completed(action)
        return action

    async def run_executor(self, stop: asyncio.Event | None = None) -> None:
        """Poll for due actions until *stop* is set; periodically drop stale ones."""
        log.info("Action executor started")
        last_cleanup: datetime | None = None
        cleanup_every = timedelta(seconds=self._settings.cleanup_interval)

        while stop is None or not stop.is_set():
            now = datetime.now(timezone.utc)
            if last_cleanup is None or now - last_cleanup >= cleanup_every:
                removed = actions.cleanup_terminal(self._db, now)
                if removed:
                    log.info("Removed %d finished action(s)", removed)
                last_cleanup = now

            while await self.process_next_action() is not None:
                pass

            await asyncio.sleep(self._settings.executor_poll_interval)
