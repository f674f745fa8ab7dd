"""Provider-neutral LLM client for function-calling chat completions.

Defines a protocol-based interface for LLM communication with three
concrete implementations, one per supported provider:

- :class:`OpenAILLMClient`: OpenAI or any OpenAI-compatible endpoint
- :class:`AnthropicLLMClient`: Anthropic Messages API
- :class:`OllamaLLMClient`: local Ollama server

:func:`create_llm_client` picks one from :class:`~ledgerbot.config.Settings`.
Tool schemas are always supplied in OpenAI function-calling format and
converted per provider.  Tool call arguments are passed through undecoded
when the provider returns them as a JSON string; decoding happens in the
tool registry so a malformed payload only invalidates that one call.
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

import anthropic
import ollama
import openai
from pydantic import BaseModel, Field

from ledgerbot.config import Settings

logger = logging.getLogger(__name__)


# ── Data models ───────────────────────────────────────────────────────────────


class ToolCall(BaseModel):
    """A single tool call requested by the LLM."""

    id: str = ""
    name: str
    arguments: dict[str, Any] | str = Field(default_factory=dict)


class LLMResponse(BaseModel):
    """Structured response from an LLM call."""

    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    input_tokens: int | None = None
    output_tokens: int | None = None
    latency_ms: int | None = None
    provider: str = ""
    model: str = ""

    @property
    def is_empty(self) -> bool:
        """True when the model produced neither text nor tool calls."""
        return not self.content.strip() and not self.tool_calls


# ── Message types ─────────────────────────────────────────────────────────────


class ChatMessage(BaseModel):
    """A single message in a chat conversation."""

    role: str  # "system", "user", "assistant"
    content: str = ""


# ── Tool schema type (matches OpenAI function-calling format) ─────────────────

ToolSchema = dict[str, Any]
"""JSON-serializable tool schema in OpenAI function-calling format:

    {
        "type": "function",
        "function": {
            "name": "...",
            "description": "...",
            "parameters": { ... JSON Schema ... }
        }
    }
"""


# ── Protocol ──────────────────────────────────────────────────────────────────


@runtime_checkable
class LLMClient(Protocol):
    """Abstract interface for LLM communication."""

    async def chat(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSchema] | None = None,
    ) -> LLMResponse:
        """Send a chat completion request to the LLM.

        Args:
            messages: Conversation as a list of chat messages, oldest first.
            tools: Optional list of tool schemas the LLM may call.

        Returns:
            Structured LLM response with content and/or tool calls.
        """
        ...


# ── OpenAI implementation ─────────────────────────────────────────────────────


class OpenAILLMClient:
    """LLM client wrapping the OpenAI SDK.

    ``base_url`` points the SDK at an OpenAI-compatible gateway when set.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._model = model
        self._client = openai.AsyncOpenAI(
            api_key=api_key or None,
            base_url=base_url or None,
            timeout=timeout,
            max_retries=0,
        )

    async def chat(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSchema] | None = None,
    ) -> LLMResponse:
        """Send a request to the OpenAI chat completions API."""
        api_messages = [{"role": msg.role, "content": msg.content} for msg in messages]

        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": api_messages,
        }
        if tools:
            kwargs["tools"] = tools  # OpenAI format is the canonical format

        start = time.monotonic()
        response = await self._client.chat.completions.create(**kwargs)
        latency_ms = int((time.monotonic() - start) * 1000)

        if not response.choices:
            return LLMResponse(latency_ms=latency_ms, provider="openai", model=self._model)

        message = response.choices[0].message
        tool_calls: list[ToolCall] = []
        for tc in message.tool_calls or []:
            tool_calls.append(
                ToolCall(
                    id=tc.id,
                    name=tc.function.name,
                    arguments=tc.function.arguments or {},
                )
            )

        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            input_tokens=response.usage.prompt_tokens if response.usage else None,
            output_tokens=response.usage.completion_tokens if response.usage else None,
            latency_ms=latency_ms,
            provider="openai",
            model=self._model,
        )


# ── Anthropic implementation ──────────────────────────────────────────────────


class AnthropicLLMClient:
    """LLM client wrapping the Anthropic Messages API."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        timeout: float | None = None,
        max_tokens: int = 2048,
    ) -> None:
        self._model = model
        self._max_tokens = max_tokens
        self._client = anthropic.AsyncAnthropic(
            api_key=api_key or None,
            timeout=timeout,
            max_retries=0,
        )

    async def chat(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSchema] | None = None,
    ) -> LLMResponse:
        """Send a request to the Anthropic API."""
        # Separate system message from conversation.
        system_text = ""
        api_messages: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == "system":
                system_text = msg.content
            else:
                api_messages.append({"role": msg.role, "content": msg.content})

        anthropic_tools = _tools_to_anthropic(tools) if tools else []

        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "messages": api_messages,
        }
        if system_text:
            kwargs["system"] = system_text
        if anthropic_tools:
            kwargs["tools"] = anthropic_tools

        start = time.monotonic()
        response = await self._client.messages.create(**kwargs)
        latency_ms = int((time.monotonic() - start) * 1000)

        content = ""
        tool_calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                content += block.text
            elif block.type == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block.id,
                        name=block.name,
                        arguments=block.input if isinstance(block.input, dict) else {},
                    )
                )

        return LLMResponse(
            content=content,
            tool_calls=tool_calls,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            latency_ms=latency_ms,
            provider="anthropic",
            model=self._model,
        )


# ── Ollama implementation ─────────────────────────────────────────────────────


class OllamaLLMClient:
    """LLM client wrapping the Ollama async API."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout: float | None = None,
    ) -> None:
        self._model = model
        self._client = ollama.AsyncClient(host=base_url, timeout=timeout)

    async def chat(
        self,
        messages: list[ChatMessage],
        tools: list[ToolSchema] | None = None,
    ) -> LLMResponse:
        """Send a chat request to the Ollama server."""
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": _messages_to_ollama(messages),
        }
        if tools:
            # Ollama accepts the OpenAI tool format unchanged.
            kwargs["tools"] = tools

        start = time.monotonic()
        response = await self._client.chat(**kwargs)
        latency_ms = int((time.monotonic() - start) * 1000)

        message = response.get("message") or {}
        content = message.get("content") or ""
        raw_tool_calls = message.get("tool_calls") or []

        tool_calls: list[ToolCall] = []
        for i, tc in enumerate(raw_tool_calls):
            func = tc.get("function") or {}
            arguments = func.get("arguments") or {}
            tool_calls.append(
                ToolCall(
                    id=f"call_{i}",
                    name=func.get("name") or "",
                    arguments=arguments if isinstance(arguments, str) else dict(arguments),
                )
            )

        return LLMResponse(
            content=content,
            tool_calls=tool_calls,
            input_tokens=response.get("prompt_eval_count"),
            output_tokens=response.get("eval_count"),
            latency_ms=latency_ms,
            provider="ollama",
            model=self._model,
        )


# ── Factory ───────────────────────────────────────────────────────────────────


def create_llm_client(settings: Settings) -> LLMClient:
    """Build the client for ``settings.llm_provider``.

    Raises:
        ValueError: If the provider name is not supported.
    """
    provider = settings.llm_provider.strip().lower()
    timeout = settings.llm_timeout_seconds

    if provider == "openai":
        return OpenAILLMClient(
            api_key=settings.openai_api_key,
            model=settings.llm_model,
            base_url=settings.llm_base_url,
            timeout=timeout,
        )
    if provider == "anthropic":
        return AnthropicLLMClient(
            api_key=settings.anthropic_api_key,
            model=settings.llm_model,
            timeout=timeout,
        )
    if provider == "ollama":
        return OllamaLLMClient(
            base_url=settings.ollama_base_url,
            model=settings.llm_model,
            timeout=timeout,
        )
    raise ValueError(f"Unknown LLM provider: {settings.llm_provider}")


# ── Format conversion helpers ─────────────────────────────────────────────────


def _messages_to_ollama(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Convert ChatMessage list to Ollama's message format."""
    return [{"role": msg.role, "content": msg.content} for msg in messages]


def _tools_to_anthropic(tools: list[ToolSchema] | None) -> list[dict[str, Any]]:
    """Convert OpenAI-format tool schemas to Anthropic's tool format.

    OpenAI format::

        {"type": "function", "function": {"name": ..., "description": ..., "parameters": ...}}

    Anthropic format::

        {"name": ..., "description": ..., "input_schema": ...}
    """
    if not tools:
        return []

    result: list[dict[str, Any]] = []
    for tool in tools:
        func = tool.get("function", {})
        result.append(
            {
                "name": func.get("name", ""),
                "description": func.get("description", ""),
                "input_schema": func.get("parameters", {}),
            }
        )
    return result


def estimate_cost_usd(
    provider: str,
    model: str,
    input_tokens: int | None,
    output_tokens: int | None,
) -> Decimal | None:
    """Rough cost estimate for paid API calls.

    Pricing per 1M tokens; ``None`` for models without a known price.
    """
    if provider == "ollama":
        return Decimal("0")

    in_t = input_tokens or 0
    out_t = output_tokens or 0
    name = model.lower()

    if "haiku" in name:
        return Decimal(str(in_t * 0.25 / 1_000_000 + out_t * 1.25 / 1_000_000))

    if "gpt-4o-mini" in name:
        return Decimal(str(in_t * 0.15 / 1_000_000 + out_t * 0.60 / 1_000_000))

    return None
