from typing import Any, Literal

from pydantic import BaseModel, Field

GoalCompletionBehavior = Literal["auto-disable", "maintenance", "handoff"]
AutomationMode = Literal["manual-approval", "self-driving"]
AutomationStatus = Literal["inactive", "active", "paused", "goal-completed", "error"]
ActionType = Literal["send-message", "send-read-receipt", "typing-indicator"]
ActionStatus = Literal["pending", "executing", "completed", "cancelled", "failed"]
ActivityType = Literal[
    "draft-generated",
    "message-sent",
    "goal-detected",
    "mode-changed",
    "error",
    "paused",
    "resumed",
    "handoff-triggered",
    "time-expired",
    "history-loading",
    "history-complete",
    "knowledge-updated",
    "fatigue-reduced",
    "action-retried",
    "message-received",
    "skipped-busy",
]
FactCategory = Literal[
    "preference",
    "schedule",
    "relationship",
    "topic",
    "sentiment",
    "communication",
    "personal",
    "professional",
]
FactSource = Literal["observed", "stated", "inferred"]
GoalStatus = Literal["achieved", "in-progress", "unclear"]


class AgentBehaviorSettings(BaseModel):
    """Pacing knobs that make automated replies look human."""

    reply_delay_min: int = 30  # seconds
    reply_delay_max: int = 300
    reply_delay_context_aware: bool = True
    response_rate: int = 100  # percent of incoming messages answered

    activity_hours_enabled: bool = False
    activity_hours_start: int = 9
    activity_hours_end: int = 22
    activity_hours_timezone: str = "UTC"

    typing_indicator_enabled: bool = False
    typing_speed_wpm: int = 40

    read_receipt_enabled: bool = False
    read_receipt_delay_min: int = 5
    read_receipt_delay_max: int = 60

    multi_message_enabled: bool = True
    multi_message_delay_min: int = 3
    multi_message_delay_max: int = 15

    emoji_only_response_enabled: bool = False
    emoji_only_response_chance: int = 10

    conversation_fatigue_enabled: bool = False
    fatigue_trigger_messages: int = 15
    fatigue_response_reduction: int = 5

    conversation_closing_enabled: bool = False
    closing_trigger_idle_minutes: int = 30


class Agent(BaseModel):
    id: str
    name: str
    description: str = ""
    goal: str
    system_prompt: str
    behavior: AgentBehaviorSettings = Field(default_factory=AgentBehaviorSettings)
    goal_completion_behavior: GoalCompletionBehavior = "maintenance"
    created_at: str
    updated_at: str


class ChatAutomationConfig(BaseModel):
    chat_id: str
    enabled: bool = True
    agent_id: str
    mode: AutomationMode = "manual-approval"
    status: AutomationStatus = "inactive"
    self_driving_duration_minutes: int | None = None
    self_driving_started_at: str | None = None
    self_driving_expires_at: str | None = None
    goal_completion_behavior_override: GoalCompletionBehavior | None = None
    goal_detected: bool = False
    messages_handled: int = 0
    error_count: int = 0
    last_error: str | None = None
    last_activity_at: str | None = None
    created_at: str
    updated_at: str


class ScheduledAction(BaseModel):
    id: str
    chat_id: str
    agent_id: str
    type: ActionType
    scheduled_for: str
    status: ActionStatus = "pending"
    attempts: int = 0
    message_text: str | None = None
    message_id: str | None = None
    last_error: str | None = None
    created_at: str


class ActivityEntry(BaseModel):
    id: str
    chat_id: str
    agent_id: str
    type: ActivityType
    timestamp: str
    message: str | None = None
    metadata: dict[str, Any] | None = None


class ChatFact(BaseModel):
    category: FactCategory
    content: str
    confidence: int = Field(ge=0, le=100)
    source: FactSource = "inferred"
    about: str = "contact"
    first_observed: str | None = None
    last_observed: str | None = None
    mentions: int = 1


class ChatKnowledge(BaseModel):
    chat_id: str
    facts: list[ChatFact] = []
    conversation_tone: str | None = None
    primary_language: str | None = None
    relationship_type: str | None = None
    topic_history: list[str] = []
    created_at: str
    updated_at: str


class HistoryLoadProgress(BaseModel):
    chat_id: str
    oldest_loaded_message_id: str | None = None
    total_messages_processed: int = 0
    total_batches_processed: int = 0
    is_complete: bool = False
    last_processed_at: str


class HandoffSummary(BaseModel):
    chat_id: str
    agent_id: str
    generated_at: str
    summary: str
    key_points: list[str] = []
    suggested_next_steps: list[str] = []
    goal_status: GoalStatus = "unclear"


class Message(BaseModel):
    """A chat message as returned by the chat provider."""

    id: str
    text: str = ""
    timestamp: str
    sender_name: str = ""
    is_from_me: bool = False


class ThreadContext(BaseModel):
    chat_id: str
    sender_name: str
    messages: list[Message] = []
    last_updated: str


class AiChatMessage(BaseModel):
    id: str
    role: Literal["user", "assistant"]
    content: str
