"""Boundaries to the outside world: the AI completion service and the chat network.

Both are consumed through small protocols.  :class:`ClaudeAiProvider` is the
default AI provider; the chat provider always comes from a plugin (see
:func:`parrot_autopilot.plugins.resolve_chat_provider`).
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from textwrap import dedent
from typing import Any, Protocol, runtime_checkable

from claude_agent_sdk import (
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ClaudeSDKError,
    CLINotFoundError,
)

from parrot_autopilot.config import Settings
from parrot_autopilot.errors import ConfigurationError
from parrot_autopilot.models import Message
from parrot_autopilot.sdk_consume import collect_text

# The SDK logs every CLI subprocess spawn at INFO.
logging.getLogger("claude_agent_sdk._internal.transport.subprocess_cli").setLevel(
    logging.WARNING
)

log = logging.getLogger(__name__)

ProviderResult = dict[str, Any]


@runtime_checkable
class AiProvider(Protocol):
    async def complete(self, route: str, body: dict[str, Any]) -> ProviderResult:
        """Run one completion.

        Returns ``{"data": ...}`` on success or ``{"error": str, "status": int}``.
        Raising :class:`ConnectionError`, :class:`OSError` or
        :class:`TimeoutError` is also allowed for transport failures.
        """
        ...


@runtime_checkable
class ChatProvider(Protocol):
    async def fetch_message_batch(self, chat_id: str, offset: int, limit: int) -> list[Message]:
        """Return up to *limit* messages, newest first, skipping *offset*.

        A batch shorter than *limit* means the start of history was reached.
        """
        ...

    async def send_message(self, chat_id: str, text: str) -> None: ...

    async def send_typing_indicator(self, chat_id: str) -> None: ...

    async def send_read_receipt(self, chat_id: str, message_id: str) -> None: ...


class ChatProviderBase:
    """Chat provider whose networks support neither typing indicators nor read receipts."""

    async def fetch_message_batch(self, chat_id: str, offset: int, limit: int) -> list[Message]:
        raise NotImplementedError

    async def send_message(self, chat_id: str, text: str) -> None:
        raise NotImplementedError

    async def send_typing_indicator(self, chat_id: str) -> None:
        pass

    async def send_read_receipt(self, chat_id: str, message_id: str) -> None:
        pass


# ---------------------------------------------------------------------------
# Prompt construction
# ---------------------------------------------------------------------------

_GOAL_ANALYSIS_RE = re.compile(r"<goal_analysis>\s*(\{.*?\})\s*</goal_analysis>", re.DOTALL)
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+")


def tone_instruction(brief_detailed: int, formal_casual: int) -> str:
    if brief_detailed < 30:
        length = "Keep responses very brief."
    elif brief_detailed < 70:
        length = "Use moderate length."
    else:
        length = "Provide detailed responses."
    if formal_casual < 30:
        style = "Use formal language."
    elif formal_casual < 70:
        style = "Use a balanced tone."
    else:
        style = "Use casual, relaxed language."
    return f"{length} {style}"


def _writing_style_section(samples: list[str]) -> str:
    if not samples:
        return ""
    examples = "\n".join(f'- "{s}"' for s in samples[:5])
    return (
        "\n<user_writing_style>\nMimic this user's writing style:\n"
        f"User's writing examples:\n{examples}\n</user_writing_style>"
    )


def _draft_prompts(body: dict[str, Any]) -> tuple[str, str]:
    tone = body.get("tone") or {}
    parts = [
        "You are an AI acting as a human in a conversation. "
        "Your responses should be completely natural and human-like.",
    ]
    if body.get("agent_system_prompt"):
        parts.append(body["agent_system_prompt"])
    parts.append(
        tone_instruction(tone.get("brief_detailed", 50), tone.get("formal_casual", 50))
        + _writing_style_section(body.get("writing_samples") or [])
    )
    if body.get("thread_context"):
        parts.append(f"Conversation history:\n<conversation>\n{body['thread_context']}\n</conversation>")
    if body.get("ai_chat_summary"):
        parts.append(
            "Recent AI assistant discussion about this conversation:\n"
            f"<ai_discussion>\n{body['ai_chat_summary']}\n</ai_discussion>"
        )
    if body.get("knowledge_context"):
        parts.append(f"What you know about this contact:\n<knowledge>\n{body['knowledge_context']}\n</knowledge>")
    parts.append(
        dedent("""\
        CRITICAL RULES:
        1. Reply in the SAME LANGUAGE as the incoming message
        2. Sound exactly like a real human, using the user's writing style if provided
        3. Work towards your goal naturally without being pushy or obvious
        4. Don't introduce yourself as AI or mention being automated
        5. Provide ONLY the reply text (and goal analysis if requested)""")
    )
    if body.get("emoji_only_response"):
        parts.append("Respond with a single fitting emoji and nothing else.")
    if body.get("suggest_closing"):
        parts.append(
            f"The conversation has run for {body.get('messages_in_conversation', 0)} "
            "messages. Start wrapping it up politely."
        )
    if body.get("detect_goal_completion") and body.get("agent_goal"):
        parts.append(
            dedent(f"""\
            <goal_detection>
            Your goal for this conversation: "{body['agent_goal']}"

            After your reply, judge whether this goal is achieved and append:

            <goal_analysis>
            {{"is_goal_achieved": true/false, "confidence": 0-100, "reasoning": "brief explanation"}}
            </goal_analysis>
            </goal_detection>""")
        )

    if body.get("original_message"):
        user_prompt = (
            f'Message from {body.get("sender_name", "")}:\n"{body["original_message"]}"\n\n'
            "Generate a natural reply that works towards your goal:"
        )
    else:
        user_prompt = (
            f"Write a message to {body.get('sender_name', '')} that moves the "
            "conversation towards your goal:"
        )
    return "\n\n".join(parts), user_prompt


def _chat_prompts(body: dict[str, Any]) -> tuple[str, str]:
    system_prompt = (
        "You are a helpful assistant helping the user manage their messages and draft replies.\n\n"
        "You have access to the following conversation context from a chat with "
        f"{body.get('sender_name', '')}:\n\n"
        f"<conversation_context>\n{body.get('thread_context', '')}\n</conversation_context>"
    )
    if body.get("knowledge_context"):
        system_prompt += f"\n\nKnown facts about this contact:\n{body['knowledge_context']}"
    system_prompt += "\n\nBe helpful, concise, and friendly in your responses."

    history = "\n".join(
        f"{'User' if m['role'] == 'user' else 'Assistant'}: {m['content']}"
        for m in body.get("chat_history") or []
    )
    user_prompt = body.get("user_message", "")
    if history:
        user_prompt = f"Earlier in this discussion:\n{history}\n\n{user_prompt}"
    return system_prompt, user_prompt


def _summary_prompts(body: dict[str, Any]) -> tuple[str, str]:
    system_prompt = dedent(f"""\
        You are a helpful assistant that summarizes conversations for handoff to a human.

        The conversation was managed by an AI autopilot with this goal: "{body.get("agent_goal", "")}"

        Respond in JSON format:
        {{
          "summary": "2-3 sentence summary of the conversation",
          "key_points": ["point 1", "point 2"],
          "suggested_next_steps": ["step 1", "step 2"],
          "goal_status": "achieved" | "in-progress" | "unclear"
        }}

        Be concise and actionable.""")
    user_prompt = (
        f"Conversation with {body.get('sender_name', '')}:\n\n"
        f"{body.get('thread_context', '')}\n\nProvide a handoff summary:"
    )
    return system_prompt, user_prompt


def _knowledge_prompts(body: dict[str, Any]) -> tuple[str, str]:
    existing = ""
    if body.get("existing_knowledge"):
        existing = (
            "\n\nAlready known facts (DO NOT repeat these, only extract NEW information):\n"
            + body["existing_knowledge"]
        )
    system_prompt = (
        "You are a knowledge extraction assistant. Analyze conversation history and "
        "extract structured facts about the people and topics discussed."
        + existing
        + dedent("""

        Categories: preference, schedule, relationship, topic, sentiment,
        communication, personal, professional.
        Sources: "stated" (explicitly said), "observed" (clear from behavior),
        "inferred" (reasonable conclusion).

        Respond in JSON format:
        {
          "facts": [
            {"category": "preference", "content": "Prefers morning meetings", "confidence": 85, "source": "stated"}
          ],
          "conversation_tone": "casual and friendly",
          "primary_language": "English",
          "topic_history": ["project deadline", "weekend plans"],
          "relationship_type": "colleague"
        }

        Only extract facts with confidence >= 50. Quality over quantity.""")
    )
    user_prompt = (
        f"Conversation with {body.get('sender_name', '')}:\n\n"
        f"{body.get('thread_context', '')}\n\nExtract knowledge from this conversation:"
    )
    return system_prompt, user_prompt


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _json_object(text: str) -> dict[str, Any] | None:
    match = _JSON_OBJECT_RE.search(text)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def split_into_messages(text: str, avg_words: float | None) -> list[str] | None:
    """Split a reply that is much longer than the user's usual message.

    Returns two or three chunks of whole sentences, or ``None`` when the
    reply should go out as one message.
    """
    if not avg_words or len(text.split()) <= avg_words * 2:
        return None
    sentences = _SENTENCE_RE.findall(text)
    if len(sentences) < 2:
        return None
    count = min(3, -(-len(sentences) // 2))
    per_message = -(-len(sentences) // count)
    chunks = [
        " ".join(s.strip() for s in sentences[i : i + per_message])
        for i in range(0, len(sentences), per_message)
    ]
    return chunks if len(chunks) > 1 else None


def _parse_draft(text: str, body: dict[str, Any]) -> dict[str, Any]:
    reply = text.strip()
    goal_analysis = None
    if body.get("detect_goal_completion"):
        match = _GOAL_ANALYSIS_RE.search(text)
        if match:
            try:
                goal_analysis = json.loads(match.group(1))
                reply = _GOAL_ANALYSIS_RE.sub("", text).strip()
            except json.JSONDecodeError:
                log.warning("Could not parse goal analysis from draft response")
    samples = body.get("writing_samples") or []
    avg_words = sum(len(s.split()) for s in samples) / len(samples) if samples else None
    return {
        "suggested_reply": reply,
        "suggested_messages": split_into_messages(reply, avg_words),
        "is_emoji_only": bool(body.get("emoji_only_response")),
        "goal_analysis": goal_analysis,
    }


def _parse_chat(text: str, body: dict[str, Any]) -> dict[str, Any]:
    return {"response": text.strip()}


def _parse_summary(text: str, body: dict[str, Any]) -> dict[str, Any]:
    parsed = _json_object(text)
    if (
        parsed is None
        or not parsed.get("summary")
        or not isinstance(parsed.get("key_points"), list)
        or not isinstance(parsed.get("suggested_next_steps"), list)
    ):
        log.warning("Unusable summary response, falling back to a generic summary")
        return {
            "summary": "Unable to generate detailed summary. Please review the conversation history.",
            "key_points": ["Review conversation history manually"],
            "suggested_next_steps": ["Continue the conversation based on context"],
            "goal_status": "unclear",
        }
    if parsed.get("goal_status") not in ("achieved", "in-progress", "unclear"):
        parsed["goal_status"] = "unclear"
    return parsed


def _parse_knowledge(text: str, body: dict[str, Any]) -> dict[str, Any] | None:
    # None reaches the pipeline as unusable extraction output.
    return _json_object(text)


_ROUTES: dict[str, tuple[Callable[..., tuple[str, str]], Callable[..., Any]]] = {
    "draft": (_draft_prompts, _parse_draft),
    "chat": (_chat_prompts, _parse_chat),
    "conversation-summary": (_summary_prompts, _parse_summary),
    "knowledge-extract": (_knowledge_prompts, _parse_knowledge),
}


class ClaudeAiProvider:
    """AI provider backed by the Claude Agent SDK, one tool-less turn per call."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def _options(self, system_prompt: str, model: str | None) -> ClaudeAgentOptions:
        env = {}
        if self._settings.anthropic_api_key:
            env["ANTHROPIC_API_KEY"] = self._settings.anthropic_api_key
        return ClaudeAgentOptions(
            system_prompt=system_prompt,
            model=model or self._settings.model,
            max_turns=1,
            allowed_tools=[],
            env=env,
            cli_path=self._settings.cli_path,
        )

    async def complete(self, route: str, body: dict[str, Any]) -> ProviderResult:
        if route not in _ROUTES:
            return {"error": f"Unknown route {route!r}", "status": 400}
        build_prompts, parse = _ROUTES[route]
        system_prompt, user_prompt = build_prompts(body)

        try:
            async with ClaudeSDKClient(self._options(system_prompt, body.get("model"))) as client:
                await client.query(user_prompt)
                text, result = await collect_text(client)
        except CLINotFoundError as exc:
            return {"error": str(exc), "status": 400}
        except ClaudeSDKError as exc:
            log.warning("Claude completion for %s failed: %s", route, exc)
            return {"error": str(exc), "status": 503}

        if result is not None and result.is_error:
            return {"error": result.result or "Completion failed", "status": 500}
        return {"data": parse(text, body)}


def make_ai_provider(settings: Settings) -> AiProvider:
    if settings.ai_provider != "anthropic":
        raise ConfigurationError(f"Unsupported AI provider: {settings.ai_provider!r}")
    return ClaudeAiProvider(settings)
