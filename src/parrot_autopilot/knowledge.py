"""Per-chat facts learned from conversation history."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TypedDict, cast

from parrot_autopilot.models import ChatFact, ChatKnowledge
from parrot_autopilot.store import STORAGE_KEYS, DbConnection, MapStorageManager

MAX_FACTS_PER_CHAT = 50
MAX_TOPIC_HISTORY = 20
DEFAULT_CONFIDENCE_BOOST = 5


class KnowledgeMetadata(TypedDict, total=False):
    conversation_tone: str | None
    primary_language: str | None
    relationship_type: str | None
    topic_history: list[str] | None


def _knowledge(db: DbConnection | None) -> MapStorageManager[ChatKnowledge]:
    return MapStorageManager(db, STORAGE_KEYS["knowledge"], ChatKnowledge, "chatKnowledge")


def normalize_fact_key(category: str, content: str) -> tuple[str, str]:
    """Identity of a fact for deduplication: trimmed, case-folded category and content."""
    return category.strip().lower(), content.strip().lower()


def get_chat_knowledge(db: DbConnection | None, chat_id: str) -> ChatKnowledge | None:
    return _knowledge(db).get(chat_id)


def save_chat_knowledge(db: DbConnection | None, knowledge: ChatKnowledge) -> None:
    _knowledge(db).set(knowledge.chat_id, knowledge)


def merge_facts(
    db: DbConnection | None,
    chat_id: str,
    new_facts: list[ChatFact],
    metadata: KnowledgeMetadata | None = None,
    *,
    confidence_boost: int = DEFAULT_CONFIDENCE_BOOST,
    max_facts: int = MAX_FACTS_PER_CHAT,
) -> ChatKnowledge:
    """Merge *new_facts* into the stored knowledge for *chat_id*.

    A fact already known under the same :func:`normalize_fact_key` gets its
    confidence raised to ``min(100, max(old, new) + confidence_boost)`` and its
    mention count bumped; unknown facts are appended.  If the chat ends up with
    more than *max_facts* facts, only the most confident ones are kept.
    """
    now = datetime.now(timezone.utc).isoformat()

    def _merge(existing: ChatKnowledge | None) -> ChatKnowledge:
        knowledge = existing or ChatKnowledge(chat_id=chat_id, created_at=now, updated_at=now)
        facts = list(knowledge.facts)
        index = {normalize_fact_key(f.category, f.content): i for i, f in enumerate(facts)}

        for new_fact in new_facts:
            key = normalize_fact_key(new_fact.category, new_fact.content)
            if key in index:
                old = facts[index[key]]
                facts[index[key]] = old.model_copy(
                    update={
                        "confidence": min(
                            100, max(old.confidence, new_fact.confidence) + confidence_boost
                        ),
                        "mentions": old.mentions + 1,
                        "last_observed": now,
                    }
                )
            else:
                index[key] = len(facts)
                facts.append(
                    new_fact.model_copy(
                        update={"first_observed": now, "last_observed": now, "mentions": 1}
                    )
                )

        if len(facts) > max_facts:
            # Stable sort: among equal confidence the earlier fact survives.
            facts.sort(key=lambda f: f.confidence, reverse=True)
            facts = facts[:max_facts]

        update: dict[str, object] = {"facts": facts, "updated_at": now}
        if metadata:
            for field in ("conversation_tone", "primary_language", "relationship_type"):
                if metadata.get(field):
                    update[field] = metadata[field]
            topics = metadata.get("topic_history")
            if topics:
                merged = list(dict.fromkeys([*knowledge.topic_history, *topics]))
                update["topic_history"] = merged[-MAX_TOPIC_HISTORY:]

        return knowledge.model_copy(update=update)

    return cast(ChatKnowledge, _knowledge(db).update_entry(chat_id, _merge))


def format_for_prompt(knowledge: ChatKnowledge | None) -> str:
    """Render *knowledge* as a category-grouped text block for AI prompts."""
    if knowledge is None or not knowledge.facts:
        return ""

    lines: list[str] = []
    if knowledge.conversation_tone:
        lines.append(f"Conversation tone: {knowledge.conversation_tone}")
    if knowledge.primary_language:
        lines.append(f"Primary language: {knowledge.primary_language}")
    if knowledge.relationship_type:
        lines.append(f"Relationship: {knowledge.relationship_type}")

    by_category: dict[str, list[ChatFact]] = {}
    for fact in knowledge.facts:
        by_category.setdefault(fact.category, []).append(fact)

    for category, facts in by_category.items():
        lines.append(f"\n{category.capitalize()}:")
        for fact in sorted(facts, key=lambda f: f.confidence, reverse=True):
            lines.append(f"- {fact.content} (confidence: {fact.confidence}%)")

    if knowledge.topic_history:
        lines.append(f"\nRecent topics: {', '.join(knowledge.topic_history[-5:])}")

    return "\n".join(lines)
