"""Intent resolution: one model call per turn.

:class:`IntentResolver` sends the system prompt, the conversation history
and the tool schemas to the model and turns the answer into either a
direct text reply or an ordered list of decoded invocations.

An unidentified user may only rename themselves.  If the model asks for
any other operation on their behalf, the whole turn is answered with the
self-identify prompt and nothing is executed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from ledgerbot.agent.llm_client import ChatMessage, LLMClient, LLMResponse
from ledgerbot.agent.prompts import UNKNOWN_USER_REPLY, build_system_prompt
from ledgerbot.ledger.time_range import local_now
from ledgerbot.tools.registry import (
    InvalidInvocation,
    Invocation,
    ToolName,
    ToolRegistry,
)

logger = logging.getLogger(__name__)


class ResolutionError(Exception):
    """The model call timed out, failed, or returned nothing usable.

    Attributes:
        response: The model response, when one was received.
    """

    def __init__(self, message: str, response: LLMResponse | None = None) -> None:
        super().__init__(message)
        self.response = response


@dataclass
class Resolution:
    """Outcome of :meth:`IntentResolver.resolve`.

    Exactly one of ``reply`` and ``invocations`` is meaningful: a non-empty
    ``reply`` is sent as-is and nothing is executed.
    """

    reply: str | None = None
    invocations: list[Invocation | InvalidInvocation] = field(default_factory=list)
    response: LLMResponse | None = None
    gated: bool = False


def _format_llm_response_for_log(response: LLMResponse, max_content_len: int = 300) -> str:
    """Format an LLM response for human-readable logging (no raw JSON)."""
    parts: list[str] = []
    if response.content and response.content.strip():
        text = response.content.strip()
        if len(text) > max_content_len:
            text = text[:max_content_len] + "..."
        parts.append(f"content: {text!r}")
    for tc in response.tool_calls:
        parts.append(f"tool {tc.name}({tc.arguments})")
    return " | ".join(parts) if parts else "(empty)"


class IntentResolver:
    """Maps a turn to a reply or to typed tool invocations.

    Args:
        llm_client: The LLM client to use for chat completions.
        registry: Tool registry supplying schemas and argument decoding.
        timeout: Upper bound in seconds for the model call.
        bot_name: Name the assistant uses for itself in the prompt.
        clock: Returns the current time; used for the year in the prompt.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        registry: ToolRegistry,
        *,
        timeout: float = 30.0,
        bot_name: str = "LedgerBot",
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self._llm = llm_client
        self._registry = registry
        self._timeout = timeout
        self._bot_name = bot_name
        self._clock = clock

    def build_messages(
        self,
        text: str,
        history: list[ChatMessage],
        user_name: str | None,
    ) -> list[ChatMessage]:
        """System prompt followed by *history*, or by *text* alone when there is none."""
        system = ChatMessage(
            role="system",
            content=build_system_prompt(
                user_name,
                self._clock().year,
                bot_name=self._bot_name,
            ),
        )
        turns = list(history) or [ChatMessage(role="user", content=text)]
        return [system, *turns]

    async def resolve(
        self,
        text: str,
        history: list[ChatMessage],
        user_name: str | None,
    ) -> Resolution:
        """Run one model call for the turn.

        Args:
            text: The current message, mention placeholders removed.
            history: Prior turns, oldest first, ending with the current one.
                May be empty.
            user_name: The sender's display name, ``None`` if unknown.

        Raises:
            ResolutionError: On timeout, transport failure, or an empty
                model response.
        """
        messages = self.build_messages(text, history, user_name)
        tools = self._registry.get_tools_for_llm()

        logger.info(
            "LLM request: user=%s turns=%d message=%s",
            user_name or "<unknown>",
            len(messages) - 1,
            text if len(text) <= 200 else text[:200] + "...",
        )

        try:
            response = await asyncio.wait_for(
                self._llm.chat(messages=messages, tools=tools),
                timeout=self._timeout,
            )
        except TimeoutError as exc:
            raise ResolutionError(f"model call timed out after {self._timeout:g}s") from exc
        except Exception as exc:
            raise ResolutionError(f"model call failed: {exc}") from exc

        logger.info("LLM response: %s", _format_llm_response_for_log(response))

        if response.is_empty:
            raise ResolutionError("model returned an empty response", response)

        if not response.tool_calls:
            return Resolution(reply=response.content, response=response)

        if not user_name and any(
            tc.name != ToolName.RENAME_USER.value for tc in response.tool_calls
        ):
            logger.info(
                "Unidentified user requested %s; asking for a name",
                [tc.name for tc in response.tool_calls],
            )
            return Resolution(reply=UNKNOWN_USER_REPLY, response=response, gated=True)

        invocations = [self._registry.decode(tc) for tc in response.tool_calls]
        for item in invocations:
            if isinstance(item, InvalidInvocation):
                logger.warning("Rejected tool call %s: %s", item.name, item.error)
        return Resolution(invocations=invocations, response=response)
