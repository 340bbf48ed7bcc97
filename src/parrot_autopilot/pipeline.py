"""The single path from an AI feature to the AI provider.

Callers describe *what* they want with a typed request; the pipeline loads
the shared, per-chat and per-agent context, builds the provider request for
that intent, classifies failures and normalizes the response.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, Field, ValidationError

from parrot_autopilot.agents import get_agent
from parrot_autopilot.config import Settings
from parrot_autopilot.errors import ConfigurationError, ExtractionError, TransportError
from parrot_autopilot.knowledge import (
    KnowledgeMetadata,
    format_for_prompt,
    get_chat_knowledge,
    merge_facts,
)
from parrot_autopilot.models import Agent, ChatFact, FactCategory, FactSource, GoalStatus
from parrot_autopilot.providers import AiProvider
from parrot_autopilot.store import DbConnection
from parrot_autopilot.threads import (
    format_ai_chat_summary_for_prompt,
    format_thread_context_for_prompt,
    get_ai_chat_for_thread,
    get_thread_context,
)

log = logging.getLogger(__name__)

Intent = Literal[
    "draft-reply",
    "draft-proactive",
    "interactive-chat",
    "conversation-summary",
    "knowledge-extract",
]

MAX_EXTRACTED_TOPICS = 5
_CONFIGURATION_STATUSES = {400, 401, 403}


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass(kw_only=True)
class _Request:
    chat_id: str
    sender_name: str
    agent_id: str | None = None
    # Replaces the persisted (size-capped) transcript when given.
    raw_thread_context: str | None = None


@dataclass(kw_only=True)
class DraftRequest(_Request):
    original_message: str = ""
    proactive: bool = False
    detect_goal_completion: bool = False
    emoji_only_response: bool = False
    suggest_closing: bool = False
    messages_in_conversation: int = 0

    @property
    def intent(self) -> Intent:
        return "draft-proactive" if self.proactive else "draft-reply"


@dataclass(kw_only=True)
class ChatRequest(_Request):
    intent: ClassVar[Intent] = "interactive-chat"
    user_message: str
    chat_history: list[dict[str, str]] = field(default_factory=list)


@dataclass(kw_only=True)
class SummaryRequest(_Request):
    intent: ClassVar[Intent] = "conversation-summary"


@dataclass(kw_only=True)
class KnowledgeExtractRequest(_Request):
    intent: ClassVar[Intent] = "knowledge-extract"


PipelineRequest = DraftRequest | ChatRequest | SummaryRequest | KnowledgeExtractRequest


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class GoalAnalysis(BaseModel):
    """Model-reported goal progress, passed through as-is."""

    is_goal_achieved: bool = False
    confidence: int = 0
    reasoning: str = ""


class ExtractedFact(BaseModel):
    category: FactCategory
    content: str
    confidence: int = Field(ge=50, le=100)
    source: FactSource

    def to_chat_fact(self) -> ChatFact:
        return ChatFact(
            category=self.category,
            content=self.content,
            confidence=self.confidence,
            source=self.source,
        )


class PipelineResponse(BaseModel):
    text: str = ""
    # drafts
    suggested_messages: list[str] | None = None
    is_emoji_only: bool = False
    goal_analysis: GoalAnalysis | None = None
    # summaries
    summary: str | None = None
    key_points: list[str] = []
    suggested_next_steps: list[str] = []
    goal_status: GoalStatus | None = None
    # knowledge extraction
    extracted_facts: list[ExtractedFact] = []
    conversation_tone: str | None = None
    primary_language: str | None = None
    topic_history: list[str] | None = None
    relationship_type: str | None = None


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


@dataclass
class SharedContext:
    provider: str
    model: str
    tone: dict[str, int]
    writing_samples: list[str]


@dataclass
class ChatContext:
    thread_context: str
    ai_chat_summary: str
    knowledge_context: str


# ---------------------------------------------------------------------------
# Request builders
# ---------------------------------------------------------------------------

RouteAndBody = tuple[str, dict[str, Any]]


def _build_draft(
    request: DraftRequest, shared: SharedContext, chat: ChatContext, agent: Agent | None
) -> RouteAndBody:
    return "draft", {
        "original_message": request.original_message,
        "sender_name": request.sender_name,
        "tone": shared.tone,
        "writing_samples": shared.writing_samples,
        "thread_context": chat.thread_context,
        "ai_chat_summary": chat.ai_chat_summary,
        "knowledge_context": chat.knowledge_context or None,
        "agent_system_prompt": agent.system_prompt if agent else None,
        "agent_goal": agent.goal if agent else None,
        "detect_goal_completion": request.detect_goal_completion,
        "emoji_only_response": request.emoji_only_response,
        "suggest_closing": request.suggest_closing,
        "messages_in_conversation": request.messages_in_conversation,
        "model": shared.model,
    }


def _build_chat(
    request: ChatRequest, shared: SharedContext, chat: ChatContext, agent: Agent | None
) -> RouteAndBody:
    return "chat", {
        "thread_context": chat.thread_context,
        "sender_name": request.sender_name,
        "chat_history": request.chat_history,
        "user_message": request.user_message,
        "knowledge_context": chat.knowledge_context or None,
        "model": shared.model,
    }


def _build_summary(
    request: SummaryRequest, shared: SharedContext, chat: ChatContext, agent: Agent | None
) -> RouteAndBody:
    return "conversation-summary", {
        "thread_context": chat.thread_context,
        "agent_goal": agent.goal if agent else "",
        "sender_name": request.sender_name,
        "model": shared.model,
    }


def _build_knowledge_extract(
    request: KnowledgeExtractRequest,
    shared: SharedContext,
    chat: ChatContext,
    agent: Agent | None,
) -> RouteAndBody:
    return "knowledge-extract", {
        "thread_context": chat.thread_context,
        "sender_name": request.sender_name,
        "existing_knowledge": chat.knowledge_context or None,
        "model": shared.model,
    }


_BUILDERS: dict[Intent, Callable[..., RouteAndBody]] = {
    "draft-reply": _build_draft,
    "draft-proactive": _build_draft,
    "interactive-chat": _build_chat,
    "conversation-summary": _build_summary,
    "knowledge-extract": _build_knowledge_extract,
}


# ---------------------------------------------------------------------------
# Response parsers
# ---------------------------------------------------------------------------


def _require_mapping(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise TransportError(f"Invalid {what} response: missing data")
    return data


def _parse_draft(data: Any) -> PipelineResponse:
    data = _require_mapping(data, "draft")
    goal_analysis = data.get("goal_analysis")
    try:
        analysis = GoalAnalysis.model_validate(goal_analysis) if goal_analysis else None
    except ValidationError:
        log.warning("Ignoring malformed goal analysis: %r", goal_analysis)
        analysis = None
    return PipelineResponse(
        text=data.get("suggested_reply") or "",
        suggested_messages=data.get("suggested_messages") or None,
        is_emoji_only=bool(data.get("is_emoji_only")),
        goal_analysis=analysis,
    )


def _parse_chat(data: Any) -> PipelineResponse:
    data = _require_mapping(data, "chat")
    return PipelineResponse(text=data.get("response") or "")


def _parse_summary(data: Any) -> PipelineResponse:
    data = _require_mapping(data, "summary")
    goal_status = data.get("goal_status")
    return PipelineResponse(
        text=data.get("summary") or "",
        summary=data.get("summary"),
        key_points=data.get("key_points") or [],
        suggested_next_steps=data.get("suggested_next_steps") or [],
        goal_status=goal_status if goal_status in ("achieved", "in-progress") else "unclear",
    )


def _parse_knowledge(data: Any) -> PipelineResponse:
    if not isinstance(data, dict) or not isinstance(data.get("facts", []), list):
        raise ExtractionError(f"Unusable knowledge extraction output: {data!r:.200}")

    facts = []
    for raw in data.get("facts", []):
        try:
            facts.append(ExtractedFact.model_validate(raw))
        except ValidationError:
            log.debug("Dropping invalid extracted fact %r", raw)

    topics = data.get("topic_history")
    return PipelineResponse(
        extracted_facts=facts,
        conversation_tone=data.get("conversation_tone") or None,
        primary_language=data.get("primary_language") or None,
        topic_history=topics[:MAX_EXTRACTED_TOPICS] if isinstance(topics, list) else None,
        relationship_type=data.get("relationship_type") or None,
    )


_PARSERS: dict[Intent, Callable[[Any], PipelineResponse]] = {
    "draft-reply": _parse_draft,
    "draft-proactive": _parse_draft,
    "interactive-chat": _parse_chat,
    "conversation-summary": _parse_summary,
    "knowledge-extract": _parse_knowledge,
}


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class ContextPipeline:
    def __init__(self, db: DbConnection | None, provider: AiProvider, settings: Settings) -> None:
        self._db = db
        self._provider = provider
        self._settings = settings

    def _load_shared_context(self) -> SharedContext:
        return SharedContext(
            provider=self._settings.ai_provider,
            model=self._settings.model,
            tone={
                "brief_detailed": self._settings.tone_brief_detailed,
                "formal_casual": self._settings.tone_formal_casual,
            },
            writing_samples=list(self._settings.writing_samples),
        )

    def _load_chat_context(self, chat_id: str) -> ChatContext:
        return ChatContext(
            thread_context=format_thread_context_for_prompt(get_thread_context(self._db, chat_id)),
            ai_chat_summary=format_ai_chat_summary_for_prompt(
                get_ai_chat_for_thread(self._db, chat_id)
            ),
            knowledge_context=format_for_prompt(get_chat_knowledge(self._db, chat_id)),
        )

    def _load_agent(self, agent_id: str | None) -> Agent | None:
        if agent_id is None:
            return None
        agent = get_agent(self._db, agent_id)
        if agent is None:
            raise ConfigurationError(f"Agent {agent_id!r} not found")
        return agent

    async def execute(self, request: PipelineRequest) -> PipelineResponse:
        shared = self._load_shared_context()
        chat = self._load_chat_context(request.chat_id)
        if request.raw_thread_context:
            chat = dataclasses.replace(chat, thread_context=request.raw_thread_context)
        agent = self._load_agent(request.agent_id)

        route, body = _BUILDERS[request.intent](request, shared, chat, agent)
        log.debug(
            "Executing %s for chat %s via %s (agent: %s, thread context: %s)",
            request.intent,
            request.chat_id,
            route,
            agent.id if agent else None,
            bool(chat.thread_context),
        )

        try:
            result = await self._provider.complete(route, body)
        except OSError as exc:
            # ConnectionError and TimeoutError are OSError subclasses.
            raise TransportError(f"AI provider unreachable: {exc}") from exc

        if result.get("error"):
            status = result.get("status")
            message = str(result["error"])
            if status in _CONFIGURATION_STATUSES:
                raise ConfigurationError(message)
            raise TransportError(message, status)

        return _PARSERS[request.intent](result.get("data"))

    async def extract_knowledge(
        self,
        chat_id: str,
        sender_name: str,
        raw_text: str,
        *,
        agent_id: str | None = None,
    ) -> PipelineResponse:
        """Extract facts from *raw_text* and merge them into the chat's knowledge."""
        response = await self.execute(
            KnowledgeExtractRequest(
                chat_id=chat_id,
                sender_name=sender_name,
                agent_id=agent_id,
                raw_thread_context=raw_text,
            )
        )
        metadata: KnowledgeMetadata = {
            "conversation_tone": response.conversation_tone,
            "primary_language": response.primary_language,
            "relationship_type": response.relationship_type,
            "topic_history": response.topic_history,
        }
        if response.extracted_facts or any(metadata.values()):
            merge_facts(
                self._db,
                chat_id,
                [f.to_chat_fact() for f in response.extracted_facts],
                metadata,
                confidence_boost=self._settings.confidence_boost,
                max_facts=self._settings.max_facts_per_chat,
            )
        return response
