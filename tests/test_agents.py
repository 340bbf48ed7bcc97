"""Tests for agents, templates and the activity log."""

from __future__ import annotations

from pathlib import Path

import pytest

from parrot_autopilot.activity import (
    MAX_ACTIVITY_ENTRIES,
    activity_log,
    add_activity,
    clear_activity,
    get_activity_for_chat,
    load_activity,
)
from parrot_autopilot.agents import (
    AGENT_TEMPLATES,
    DEFAULT_OBSERVER_AGENT_ID,
    create_agent,
    create_agent_from_template,
    delete_agent,
    ensure_default_observer_agent,
    get_agent,
    get_template,
    load_agents,
    update_agent,
)
from parrot_autopilot.events import AutopilotEvent, autopilot_events
from parrot_autopilot.models import AgentBehaviorSettings
from parrot_autopilot.store import ThreadSafeConnection, init_db


@pytest.fixture
def db(tmp_path: Path) -> ThreadSafeConnection:
    return init_db(tmp_path / "test.db")


def test_agent_crud(db: ThreadSafeConnection) -> None:
    agent = create_agent(
        db,
        name="Helper",
        goal="Help",
        system_prompt="Be helpful",
        behavior=AgentBehaviorSettings(response_rate=50),
    )

    assert len(agent.id) == 12
    assert get_agent(db, agent.id) == agent

    updated = update_agent(db, agent.id, name="Renamed", id="hijack")
    assert updated is not None
    assert updated.name == "Renamed"
    assert updated.id == agent.id
    assert updated.behavior.response_rate == 50

    delete_agent(db, agent.id)
    assert load_agents(db) == []


def test_update_missing_agent_returns_none(db: ThreadSafeConnection) -> None:
    assert update_agent(db, "missing", name="x") is None


def test_templates_have_unique_ids() -> None:
    ids = [t.id for t in AGENT_TEMPLATES]
    assert len(ids) == len(set(ids))
    assert get_template("meeting-scheduler") is not None
    assert get_template("nope") is None


def test_create_agent_from_template(db: ThreadSafeConnection) -> None:
    template = AGENT_TEMPLATES[0]
    agent = create_agent_from_template(db, template.id)

    assert agent.name == template.name
    assert agent.goal == template.goal
    assert agent.goal_completion_behavior == template.goal_completion_behavior
    for key, value in template.behavior.items():
        assert getattr(agent.behavior, key) == value


def test_create_agent_from_unknown_template(db: ThreadSafeConnection) -> None:
    with pytest.raises(KeyError):
        create_agent_from_template(db, "nope")


def test_default_observer_agent_is_created_once(db: ThreadSafeConnection) -> None:
    assert ensure_default_observer_agent(db) == DEFAULT_OBSERVER_AGENT_ID
    assert ensure_default_observer_agent(db) == DEFAULT_OBSERVER_AGENT_ID
    assert [a.id for a in load_agents(db)] == [DEFAULT_OBSERVER_AGENT_ID]


class TestActivityLog:
    def test_add_and_filter(self, db: ThreadSafeConnection) -> None:
        received: list[AutopilotEvent] = []
        autopilot_events.on("activity-added", received.append)

        add_activity(db, "chat-1", "a", "paused", message="Paused")
        add_activity(db, "chat-2", "a", "error", metadata={"error_count": 1})

        assert [e.type for e in load_activity(db)] == ["paused", "error"]
        entries = get_activity_for_chat(db, "chat-2")
        assert len(entries) == 1
        assert entries[0].metadata == {"error_count": 1}
        assert [e.data["activity_type"] for e in received] == ["paused", "error"]

    def test_log_is_capped(self, db: ThreadSafeConnection) -> None:
        log = activity_log(db)
        entries = [
            add_activity(None, "chat-1", "a", "message-sent", message=str(i))
            for i in range(MAX_ACTIVITY_ENTRIES + 5)
        ]
        log.save(entries)

        add_activity(db, "chat-1", "a", "message-sent", message="last")
        stored = load_activity(db)

        assert len(stored) == MAX_ACTIVITY_ENTRIES
        assert stored[-1].message == "last"
        assert stored[0].message == "6"

    def test_clear(self, db: ThreadSafeConnection) -> None:
        add_activity(db, "chat-1", "a", "paused")
        clear_activity(db)
        assert load_activity(db) == []
