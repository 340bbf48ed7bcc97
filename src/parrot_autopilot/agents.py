"""Agent personas and the built-in template catalog."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from textwrap import dedent
from typing import Any

from pydantic import TypeAdapter

from parrot_autopilot.models import Agent, AgentBehaviorSettings, GoalCompletionBehavior
from parrot_autopilot.store import STORAGE_KEYS, DbConnection, StorageManager

DEFAULT_OBSERVER_AGENT_ID = "default-observer"

_agents_adapter = TypeAdapter(list[Agent])


def _agents(db: DbConnection | None) -> StorageManager[list[Agent]]:
    return StorageManager(db, STORAGE_KEYS["agents"], [], _agents_adapter, "autopilotAgents")


@dataclass(frozen=True)
class AgentTemplate:
    id: str
    name: str
    description: str
    category: str
    goal: str
    system_prompt: str
    goal_completion_behavior: GoalCompletionBehavior
    behavior: dict[str, Any] = field(default_factory=dict)


AGENT_TEMPLATES: list[AgentTemplate] = [
    AgentTemplate(
        id="meeting-scheduler",
        name="Meeting Scheduler",
        description="Schedules calls and meetings with leads",
        category="sales",
        goal="Schedule a meeting or call",
        system_prompt=dedent("""\
            You are a friendly and professional assistant helping to schedule meetings.
            Suggest specific date/time options, offer alternatives when they don't fit,
            confirm the timezone if unclear and summarize the agreed details.
            Keep messages concise and match the tone of the person you're talking to."""),
        goal_completion_behavior="handoff",
        behavior={"reply_delay_min": 45, "reply_delay_max": 180, "response_rate": 100},
    ),
    AgentTemplate(
        id="lead-qualifier",
        name="Lead Qualifier",
        description="Qualifies leads by gathering key information",
        category="sales",
        goal="Qualify the lead by understanding their needs, timeline, and budget",
        system_prompt=dedent("""\
            You are gathering information to better serve a potential customer.
            Ask open-ended questions about their main challenge, timeline, decision
            process and budget range. Have a conversation, don't interrogate."""),
        goal_completion_behavior="handoff",
        behavior={
            "reply_delay_min": 60,
            "reply_delay_max": 300,
            "response_rate": 95,
            "emoji_only_response_enabled": True,
            "emoji_only_response_chance": 5,
        },
    ),
    AgentTemplate(
        id="follow-up",
        name="Follow-up Agent",
        description="Follows up on previous conversations",
        category="sales",
        goal="Re-engage the contact and move the conversation forward",
        system_prompt=dedent("""\
            You are following up on a previous conversation. Reference what was
            discussed before, be genuinely helpful rather than salesy and accept
            gracefully if they're not interested."""),
        goal_completion_behavior="maintenance",
        behavior={
            "reply_delay_min": 120,
            "reply_delay_max": 600,
            "response_rate": 90,
            "conversation_fatigue_enabled": True,
            "fatigue_trigger_messages": 10,
        },
    ),
    AgentTemplate(
        id="support-helper",
        name="Support Helper",
        description="Answers questions and resolves issues",
        category="support",
        goal="Resolve the customer's issue or answer their question",
        system_prompt=dedent("""\
            You are a friendly and knowledgeable support assistant. Acknowledge
            frustrations, ask clarifying questions and give clear step-by-step
            solutions. If you can't solve it, explain what happens next."""),
        goal_completion_behavior="auto-disable",
        behavior={
            "reply_delay_min": 30,
            "reply_delay_max": 120,
            "reply_delay_context_aware": True,
            "response_rate": 100,
        },
    ),
]


def get_template(template_id: str) -> AgentTemplate | None:
    return next((t for t in AGENT_TEMPLATES if t.id == template_id), None)


def load_agents(db: DbConnection | None) -> list[Agent]:
    return _agents(db).load()


def get_agent(db: DbConnection | None, agent_id: str) -> Agent | None:
    return next((a for a in load_agents(db) if a.id == agent_id), None)


def create_agent(
    db: DbConnection | None,
    *,
    name: str,
    goal: str,
    system_prompt: str,
    description: str = "",
    behavior: AgentBehaviorSettings | None = None,
    goal_completion_behavior: GoalCompletionBehavior = "maintenance",
    agent_id: str | None = None,
) -> Agent:
    now = datetime.now(timezone.utc).isoformat()
    agent = Agent(
        id=agent_id or uuid.uuid4().hex[:12],
        name=name,
        description=description,
        goal=goal,
        system_prompt=system_prompt,
        behavior=behavior or AgentBehaviorSettings(),
        goal_completion_behavior=goal_completion_behavior,
        created_at=now,
        updated_at=now,
    )
    _agents(db).update(lambda agents: [*agents, agent])
    return agent


def create_agent_from_template(
    db: DbConnection | None, template_id: str, *, name: str | None = None
) -> Agent:
    template = get_template(template_id)
    if template is None:
        raise KeyError(f"Unknown agent template: {template_id!r}")
    return create_agent(
        db,
        name=name or template.name,
        description=template.description,
        goal=template.goal,
        system_prompt=template.system_prompt,
        behavior=AgentBehaviorSettings(**template.behavior),
        goal_completion_behavior=template.goal_completion_behavior,
    )


def ensure_default_observer_agent(db: DbConnection | None) -> str:
    """Create the passive "Observer" agent used for knowledge-only automation."""
    if get_agent(db, DEFAULT_OBSERVER_AGENT_ID) is None:
        create_agent(
            db,
            agent_id=DEFAULT_OBSERVER_AGENT_ID,
            name="Observer",
            description="Default agent that reads conversations and builds knowledge",
            goal="Observe and learn from conversations",
            system_prompt=(
                "You are an observer agent. Your role is to read and understand conversations."
            ),
            goal_completion_behavior="maintenance",
        )
    return DEFAULT_OBSERVER_AGENT_ID


def update_agent(db: DbConnection | None, agent_id: str, **updates: object) -> Agent | None:
    now = datetime.now(timezone.utc).isoformat()
    allowed = {
        "name",
        "description",
        "goal",
        "system_prompt",
        "behavior",
        "goal_completion_behavior",
    }
    changes = {k: v for k, v in updates.items() if k in allowed}
    changes["updated_at"] = now

    agents = _agents(db).update(
        lambda items: [
            Agent.model_validate({**a.model_dump(), **changes}) if a.id == agent_id else a
            for a in items
        ]
    )
    return next((a for a in agents if a.id == agent_id), None)


def delete_agent(db: DbConnection | None, agent_id: str) -> None:
    # Configs referencing the agent are left alone; a dangling agent id is a
    # tolerated state that the pipeline reports as a configuration error.
    _agents(db).update(lambda items: [a for a in items if a.id != agent_id])
