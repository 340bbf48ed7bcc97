"""In-process publish/subscribe for autopilot lifecycle events.

Delivery is synchronous and best effort.  Nothing here is durable: observers
that need the truth re-read the store after being notified.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

log = logging.getLogger(__name__)

EventType = Literal[
    "activity-added",
    "action-scheduled",
    "action-executing",
    "action-completed",
    "action-failed",
    "config-changed",
]


@dataclass(frozen=True)
class AutopilotEvent:
    type: EventType
    chat_id: str | None = None
    data: Any = None
    timestamp: float = 0.0


EventCallback = Callable[[AutopilotEvent], None]


class AutopilotEventBus:
    def __init__(self) -> None:
        self._listeners: dict[str, list[EventCallback]] = {}
        self._global_listeners: list[EventCallback] = []

    def on(self, event_type: EventType, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to one event type; returns the unsubscribe function."""
        self._listeners.setdefault(event_type, []).append(callback)

        def _unsubscribe() -> None:
            listeners = self._listeners.get(event_type, [])
            if callback in listeners:
                listeners.remove(callback)

        return _unsubscribe

    def on_any(self, callback: EventCallback) -> Callable[[], None]:
        self._global_listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._global_listeners:
                self._global_listeners.remove(callback)

        return _unsubscribe

    def emit(
        self, event_type: EventType, chat_id: str | None = None, data: Any = None
    ) -> AutopilotEvent:
        event = AutopilotEvent(
            type=event_type, chat_id=chat_id, data=data, timestamp=time.time()
        )
        # Snapshot the lists so handlers may unsubscribe while being notified.
        for callback in [*self._listeners.get(event_type, []), *self._global_listeners]:
            self._deliver(callback, event)
        return event

    @staticmethod
    def _deliver(callback: EventCallback, event: AutopilotEvent) -> None:
        try:
            callback(event)
        except Exception:
            log.exception(
                "Event handler %r failed for %s (chat %s)",
                callback,
                event.type,
                event.chat_id,
            )

    def clear(self) -> None:
        self._listeners.clear()
        self._global_listeners.clear()


autopilot_events = AutopilotEventBus()


def emit_activity_added(chat_id: str, activity_type: str) -> None:
    autopilot_events.emit("activity-added", chat_id, {"activity_type": activity_type})


def emit_action_scheduled(chat_id: str, action_id: str, scheduled_for: str) -> None:
    autopilot_events.emit(
        "action-scheduled",
        chat_id,
        {"action_id": action_id, "scheduled_for": scheduled_for},
    )


def emit_action_executing(chat_id: str, action_id: str) -> None:
    autopilot_events.emit("action-executing", chat_id, {"action_id": action_id})


def emit_action_completed(chat_id: str, action_id: str) -> None:
    autopilot_events.emit("action-completed", chat_id, {"action_id": action_id})


def emit_action_failed(chat_id: str, action_id: str, error: str) -> None:
    autopilot_events.emit(
        "action-failed", chat_id, {"action_id": action_id, "error": error}
    )


def emit_config_changed(chat_id: str) -> None:
    autopilot_events.emit("config-changed", chat_id)
