"""Timing heuristics that make automated replies look like a person typed them.

All durations are in seconds.
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from parrot_autopilot.models import AgentBehaviorSettings

MIN_REPLY_DELAY = 5.0
RECENT_MESSAGE_WINDOW = timedelta(minutes=5)
NEW_CONVERSATION_WINDOW = timedelta(minutes=30)
MAX_FATIGUE_REDUCTION = 50
MIN_FATIGUED_RESPONSE_RATE = 30


def calculate_reply_delay(
    behavior: AgentBehaviorSettings,
    last_message_time: datetime | None = None,
    conversation_start_time: datetime | None = None,
    now: datetime | None = None,
) -> float:
    """Random delay in the configured range, shortened for lively conversations.

    With ``reply_delay_context_aware`` a message younger than five minutes
    gets 30% of the delay, otherwise a conversation younger than thirty
    minutes gets 60%.  Never below five seconds.
    """
    delay = random.uniform(behavior.reply_delay_min, behavior.reply_delay_max)

    if behavior.reply_delay_context_aware and last_message_time is not None:
        now = now or datetime.now(timezone.utc)
        if now - last_message_time < RECENT_MESSAGE_WINDOW:
            delay *= 0.3
        elif (
            conversation_start_time is not None
            and now - conversation_start_time < NEW_CONVERSATION_WINDOW
        ):
            delay *= 0.6

    return max(MIN_REPLY_DELAY, delay)


def calculate_typing_duration(text: str, typing_speed_wpm: int) -> float:
    seconds = len(text.split()) / typing_speed_wpm * 60
    variance = seconds * 0.2
    return max(1.0, min(30.0, seconds + random.uniform(-variance, variance)))


def calculate_read_receipt_delay(behavior: AgentBehaviorSettings) -> float:
    if not behavior.read_receipt_enabled:
        return 0.0
    return random.uniform(behavior.read_receipt_delay_min, behavior.read_receipt_delay_max)


def calculate_multi_message_delay(behavior: AgentBehaviorSettings) -> float:
    if not behavior.multi_message_enabled:
        return 0.0
    return random.uniform(behavior.multi_message_delay_min, behavior.multi_message_delay_max)


def is_within_activity_hours(
    behavior: AgentBehaviorSettings, now: datetime | None = None
) -> bool:
    """Whether the agent may act now; ranges like 22-6 wrap past midnight.

    An unknown timezone never blocks activity.
    """
    if not behavior.activity_hours_enabled:
        return True
    try:
        tz = ZoneInfo(behavior.activity_hours_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return True

    hour = (now or datetime.now(timezone.utc)).astimezone(tz).hour
    start, end = behavior.activity_hours_start, behavior.activity_hours_end
    if start <= end:
        return start <= hour < end
    return hour >= start or hour < end


def effective_response_rate(
    behavior: AgentBehaviorSettings, messages_handled: int
) -> tuple[int, int]:
    """Return ``(response_rate, fatigue_reduction)`` for a conversation.

    Past ``fatigue_trigger_messages`` handled messages every further message
    lowers the rate by ``fatigue_response_reduction`` points, at most 50 points
    and never below 30%.
    """
    rate = behavior.response_rate
    if not behavior.conversation_fatigue_enabled or messages_handled < behavior.fatigue_trigger_messages:
        return rate, 0
    extra = messages_handled - behavior.fatigue_trigger_messages
    reduction = min(extra * behavior.fatigue_response_reduction, MAX_FATIGUE_REDUCTION)
    return max(MIN_FATIGUED_RESPONSE_RATE, rate - reduction), reduction


def should_suggest_closing(
    behavior: AgentBehaviorSettings,
    last_activity_at: datetime | None,
    now: datetime | None = None,
) -> bool:
    if not behavior.conversation_closing_enabled or last_activity_at is None:
        return False
    idle = (now or datetime.now(timezone.utc)) - last_activity_at
    return idle > timedelta(minutes=behavior.closing_trigger_idle_minutes)
