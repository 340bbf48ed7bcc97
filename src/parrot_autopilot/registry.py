"""Per-chat automation configs and the status state machine that drives them.

Status edges::

    inactive -> active <-> paused
    active -> goal-completed | error
    error -> active
    any -> inactive

Every transition stamps ``updated_at`` and emits ``config-changed``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, cast

from parrot_autopilot import actions
from parrot_autopilot.activity import add_activity
from parrot_autopilot.errors import AutomationNotFoundError, InvalidTransitionError
from parrot_autopilot.events import emit_config_changed
from parrot_autopilot.models import (
    Agent,
    AutomationMode,
    AutomationStatus,
    ChatAutomationConfig,
    GoalCompletionBehavior,
    HandoffSummary,
)
from parrot_autopilot.store import STORAGE_KEYS, DbConnection, MapStorageManager

log = logging.getLogger(__name__)

_ALLOWED: dict[AutomationStatus, set[AutomationStatus]] = {
    "inactive": {"active", "inactive"},
    "active": {"paused", "goal-completed", "error", "inactive"},
    "paused": {"active", "inactive"},
    "goal-completed": {"inactive"},
    "error": {"active", "inactive"},
}


def _configs(db: DbConnection | None) -> MapStorageManager[ChatAutomationConfig]:
    return MapStorageManager(
        db, STORAGE_KEYS["chat_configs"], ChatAutomationConfig, "chatAutopilotConfigs"
    )


def _handoffs(db: DbConnection | None) -> MapStorageManager[HandoffSummary]:
    return MapStorageManager(db, STORAGE_KEYS["handoffs"], HandoffSummary, "handoffSummaries")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: AutomationStatus, target: AutomationStatus) -> bool:
    return target in _ALLOWED[current]


def _modify(
    db: DbConnection | None,
    chat_id: str,
    change: Callable[[ChatAutomationConfig], dict[str, Any]],
) -> ChatAutomationConfig:
    """Atomically apply *change* to the config of *chat_id*.

    *change* returns the fields to update; a ``status`` among them is checked
    against the allowed edges before anything is written.
    """

    def _apply(config: ChatAutomationConfig | None) -> ChatAutomationConfig:
        if config is None:
            raise AutomationNotFoundError(chat_id)
        updates = change(config)
        target = updates.get("status")
        if target is not None and not can_transition(config.status, target):
            raise InvalidTransitionError(chat_id, config.status, target)
        updates["updated_at"] = _now().isoformat()
        return config.model_copy(update=updates)

    updated = cast(ChatAutomationConfig, _configs(db).update_entry(chat_id, _apply))
    emit_config_changed(chat_id)
    return updated


def get_config(db: DbConnection | None, chat_id: str) -> ChatAutomationConfig | None:
    return _configs(db).get(chat_id)


def list_configs(db: DbConnection | None) -> list[ChatAutomationConfig]:
    return list(_configs(db).load().values())


def get_active_automations(db: DbConnection | None) -> list[ChatAutomationConfig]:
    return [c for c in list_configs(db) if c.enabled and c.status == "active"]


def _self_driving_window(
    mode: AutomationMode, duration_minutes: int | None, now: datetime
) -> dict[str, Any]:
    if mode != "self-driving":
        return {
            "self_driving_duration_minutes": None,
            "self_driving_started_at": None,
            "self_driving_expires_at": None,
        }
    expires_at = (
        (now + timedelta(minutes=duration_minutes)).isoformat() if duration_minutes else None
    )
    return {
        "self_driving_duration_minutes": duration_minutes,
        "self_driving_started_at": now.isoformat(),
        "self_driving_expires_at": expires_at,
    }


def enable_automation(
    db: DbConnection | None,
    chat_id: str,
    agent_id: str,
    mode: AutomationMode = "manual-approval",
    duration_minutes: int | None = None,
) -> ChatAutomationConfig:
    """Activate automation for *chat_id*, creating the config on first use.

    Counters start from zero on every activation.  Only a missing or
    ``inactive`` config can be enabled.
    """
    now = _now()

    def _enable(config: ChatAutomationConfig | None) -> ChatAutomationConfig:
        if config is not None and config.status != "inactive":
            raise InvalidTransitionError(chat_id, config.status, "active")
        return ChatAutomationConfig(
            chat_id=chat_id,
            enabled=True,
            agent_id=agent_id,
            mode=mode,
            status="active",
            goal_completion_behavior_override=(
                config.goal_completion_behavior_override if config else None
            ),
            created_at=config.created_at if config else now.isoformat(),
            updated_at=now.isoformat(),
            **_self_driving_window(mode, duration_minutes, now),
        )

    enabled = cast(ChatAutomationConfig, _configs(db).update_entry(chat_id, _enable))
    log.info("Enabled %s automation for chat %s with agent %s", mode, chat_id, agent_id)
    emit_config_changed(chat_id)
    return enabled


def disable_automation(db: DbConnection | None, chat_id: str) -> ChatAutomationConfig:
    """Soft-disable: the config stays, pending actions are cancelled."""
    actions.cancel_all_for_chat(db, chat_id)
    config = _modify(db, chat_id, lambda _: {"enabled": False, "status": "inactive"})
    log.info("Disabled automation for chat %s", chat_id)
    return config


def pause_automation(db: DbConnection | None, chat_id: str) -> ChatAutomationConfig:
    config = _modify(db, chat_id, lambda _: {"status": "paused"})
    add_activity(db, chat_id, config.agent_id, "paused", message="Autopilot paused")
    return config


def is_self_driving_expired(
    config: ChatAutomationConfig, now: datetime | None = None
) -> bool:
    if config.mode != "self-driving" or not config.self_driving_expires_at:
        return False
    return (now or _now()) > actions.parse_timestamp(config.self_driving_expires_at)


def resume_automation(db: DbConnection | None, chat_id: str) -> ChatAutomationConfig:
    def _resume(config: ChatAutomationConfig) -> dict[str, Any]:
        if is_self_driving_expired(config):
            raise InvalidTransitionError(chat_id, config.status, "active")
        return {"status": "active"}

    config = _modify(db, chat_id, _resume)
    add_activity(db, chat_id, config.agent_id, "resumed", message="Autopilot resumed")
    return config


def set_mode(
    db: DbConnection | None,
    chat_id: str,
    mode: AutomationMode,
    duration_minutes: int | None = None,
) -> ChatAutomationConfig:
    config = _modify(
        db,
        chat_id,
        lambda _: {"mode": mode, **_self_driving_window(mode, duration_minutes, _now())},
    )
    add_activity(
        db,
        chat_id,
        config.agent_id,
        "mode-changed",
        message=f"Mode changed to {mode}",
        metadata={"mode": mode},
    )
    return config


def set_self_driving_duration(
    db: DbConnection | None, chat_id: str, minutes: int
) -> ChatAutomationConfig:
    """Restart the self-driving window with a new length; no-op in manual mode."""

    def _extend(config: ChatAutomationConfig) -> dict[str, Any]:
        if config.mode != "self-driving":
            return {}
        return _self_driving_window("self-driving", minutes, _now())

    return _modify(db, chat_id, _extend)


def set_agent(db: DbConnection | None, chat_id: str, agent_id: str) -> ChatAutomationConfig:
    return _modify(db, chat_id, lambda _: {"agent_id": agent_id})


def set_goal_completion_override(
    db: DbConnection | None, chat_id: str, behavior: GoalCompletionBehavior | None
) -> ChatAutomationConfig:
    return _modify(db, chat_id, lambda _: {"goal_completion_behavior_override": behavior})


def record_message_handled(db: DbConnection | None, chat_id: str) -> ChatAutomationConfig:
    """Count a successful turn; this also clears the consecutive failure count."""
    return _modify(
        db,
        chat_id,
        lambda config: {
            "messages_handled": config.messages_handled + 1,
            "error_count": 0,
            "goal_detected": False,
            "last_activity_at": _now().isoformat(),
        },
    )


def record_failure(
    db: DbConnection | None,
    chat_id: str,
    error: str,
    *,
    max_consecutive_failures: int = 3,
) -> ChatAutomationConfig:
    """Record a failed turn and move an active chat to ``error`` at the threshold."""

    def _fail(config: ChatAutomationConfig) -> dict[str, Any]:
        error_count = config.error_count + 1
        updates: dict[str, Any] = {"error_count": error_count, "last_error": error}
        if config.status == "active" and error_count >= max_consecutive_failures:
            updates["status"] = "error"
        return updates

    config = _modify(db, chat_id, _fail)
    add_activity(
        db,
        chat_id,
        config.agent_id,
        "error",
        message=error,
        metadata={"error_count": config.error_count},
    )
    if config.status == "error":
        log.warning(
            "Automation for chat %s stopped after %d consecutive failures",
            chat_id,
            config.error_count,
        )
    return config


def retry_automation(db: DbConnection | None, chat_id: str) -> ChatAutomationConfig:
    return _modify(
        db, chat_id, lambda _: {"status": "active", "error_count": 0, "last_error": None}
    )


def apply_goal_completion(
    db: DbConnection | None,
    chat_id: str,
    agent: Agent,
    reasoning: str | None = None,
) -> ChatAutomationConfig:
    """Transition a chat whose goal was reported achieved.

    The chat's override wins over the agent's ``goal_completion_behavior``:

    * ``auto-disable``: ``goal-completed`` then ``inactive`` (``enabled=False``)
    * ``maintenance``: stays ``active`` with ``goal_detected`` set until the next turn
    * ``handoff``: ``goal-completed`` until the user clears it
    """
    config = get_config(db, chat_id)
    if config is None:
        raise AutomationNotFoundError(chat_id)
    behavior = config.goal_completion_behavior_override or agent.goal_completion_behavior

    add_activity(
        db,
        chat_id,
        agent.id,
        "goal-detected",
        message=reasoning or "Goal achieved",
        metadata={"behavior": behavior},
    )

    if behavior == "maintenance":
        return _modify(db, chat_id, lambda _: {"goal_detected": True})

    completed = _modify(db, chat_id, lambda _: {"status": "goal-completed", "goal_detected": True})
    if behavior == "handoff":
        return completed

    actions.cancel_all_for_chat(db, chat_id)
    disabled = _modify(db, chat_id, lambda _: {"status": "inactive", "enabled": False})
    add_activity(
        db,
        chat_id,
        agent.id,
        "mode-changed",
        message="Autopilot disabled after goal completion",
    )
    return disabled


def clear_goal_completed(db: DbConnection | None, chat_id: str) -> ChatAutomationConfig:
    return _modify(db, chat_id, lambda _: {"status": "inactive", "goal_detected": False})


def expire_self_driving(db: DbConnection | None, chat_id: str) -> ChatAutomationConfig:
    config = _modify(db, chat_id, lambda _: {"status": "paused"})
    add_activity(
        db,
        chat_id,
        config.agent_id,
        "time-expired",
        message="Self-driving time limit reached",
    )
    return config


def delete_config(db: DbConnection | None, chat_id: str) -> None:
    actions.cancel_all_for_chat(db, chat_id)
    _configs(db).delete(chat_id)
    emit_config_changed(chat_id)


def get_handoff_summary(db: DbConnection | None, chat_id: str) -> HandoffSummary | None:
    return _handoffs(db).get(chat_id)


def save_handoff_summary(db: DbConnection | None, summary: HandoffSummary) -> None:
    _handoffs(db).set(summary.chat_id, summary)


def delete_handoff_summary(db: DbConnection | None, chat_id: str) -> None:
    _handoffs(db).delete(chat_id)
