"""Reading a one-shot completion out of ``ClaudeSDKClient.receive_response()``."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from claude_agent_sdk import AssistantMessage, ClaudeSDKClient, ResultMessage, TextBlock


async def consume_sdk_response(
    client: ClaudeSDKClient,
    *,
    on_text: Callable[[str], Awaitable[None]] | None = None,
) -> ResultMessage | None:
    """Forward every non-empty ``TextBlock`` of *client*'s response to *on_text*.

    When the stream carried no text at all, ``ResultMessage.result`` is
    forwarded instead so a completion is never silently empty.  Returns the
    final ``ResultMessage``, or ``None`` when the stream had none.
    """
    had_text = False
    final_result: ResultMessage | None = None

    async for message in client.receive_response():
        if isinstance(message, AssistantMessage):
            for block in message.content:
                if isinstance(block, TextBlock) and block.text:
                    had_text = True
                    if on_text is not None:
                        await on_text(block.text)
        elif isinstance(message, ResultMessage):
            final_result = message
            if not had_text and message.result and on_text is not None:
                await on_text(message.result)

    return final_result


async def collect_text(client: ClaudeSDKClient) -> tuple[str, ResultMessage | None]:
    """Return the concatenated response text and the final result message."""
    parts: list[str] = []

    async def _on_text(text: str) -> None:
        parts.append(text)

    result = await consume_sdk_response(client, on_text=_on_text)
    return "".join(parts), result
