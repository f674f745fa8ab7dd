"""Lightweight tool registry for LLM function-calling.

Tools are Python async functions with typed arguments that the LLM can
invoke.  The registry stores :class:`ToolDef` descriptors and provides
methods to:

- Register tools via the :func:`tool` decorator
- Export tool schemas in OpenAI function-calling format (used by all providers)
- Decode a raw :class:`~ledgerbot.agent.llm_client.ToolCall` into a typed
  :class:`Invocation` (or an :class:`InvalidInvocation` when it cannot be)
- Dispatch a decoded invocation to its handler

The set of tools is closed (:class:`ToolName`); a call naming anything else
never reaches a handler.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import datetime, tzinfo
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ValidationError

from ledgerbot.agent.llm_client import ToolCall
from ledgerbot.ledger.repository import LedgerRepository
from ledgerbot.ledger.time_range import local_now
from ledgerbot.ledger.users import UserIdentityStore

logger = logging.getLogger(__name__)

UNKNOWN_OPERATION = "未知操作"


class ToolName(StrEnum):
    """Operations the model may request."""

    RECORD_TRANSACTION = "record_transaction"
    UPDATE_TRANSACTION = "update_transaction"
    DELETE_TRANSACTION = "delete_transaction"
    QUERY_TRANSACTIONS = "query_transactions"
    RENAME_USER = "rename_user"


@dataclass
class ToolContext:
    """Per-turn state handed to every tool handler."""

    sender_id: str
    user_name: str | None
    utterance: str
    ledger: LedgerRepository
    identities: UserIdentityStore
    tz: tzinfo | None = None

    def now(self) -> datetime:
        return local_now(self.tz)


# Type alias for an async tool handler function.
ToolHandler = Callable[[Any, ToolContext], Coroutine[Any, Any, dict[str, Any]]]


@dataclass
class ToolDef:
    """Definition of a single tool callable by the LLM.

    Attributes:
        name: Unique tool name (used in LLM function-calling).
        description: Human-readable description shown to the LLM.
        parameters_schema: JSON Schema dict describing the tool's parameters.
        args_model: Pydantic model the raw arguments are decoded into.
        handler: Async function that executes the tool logic.
    """

    name: ToolName
    description: str
    parameters_schema: dict[str, Any]
    args_model: type[BaseModel]
    handler: ToolHandler


@dataclass(frozen=True)
class Invocation:
    """A tool call whose arguments decoded cleanly."""

    call_id: str
    name: ToolName
    args: BaseModel


@dataclass(frozen=True)
class InvalidInvocation:
    """A tool call that was rejected while decoding."""

    call_id: str
    name: str
    error: str


class ToolRegistry:
    """Registry of tools available to the LLM agent.

    Usage::

        registry = ToolRegistry()

        @registry.tool(
            name=ToolName.DELETE_TRANSACTION,
            description="Delete a transaction by record ID.",
            parameters_schema={...},
            args_model=DeleteTransactionArgs,
        )
        async def delete_transaction(args, ctx) -> dict:
            ...

        schemas = registry.get_tools_for_llm()
        decoded = registry.decode(tool_call)
        if isinstance(decoded, Invocation):
            result = await registry.execute(decoded, ctx)
    """

    def __init__(self) -> None:
        self._tools: dict[ToolName, ToolDef] = {}

    def tool(
        self,
        *,
        name: ToolName,
        description: str,
        parameters_schema: dict[str, Any],
        args_model: type[BaseModel],
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator to register a tool function.

        Args:
            name: Unique tool name.
            description: What the tool does (shown to LLM).
            parameters_schema: JSON Schema for the tool's parameters.
            args_model: Pydantic model for decoding the arguments.

        Returns:
            The original function, unmodified.
        """

        def decorator(func: ToolHandler) -> ToolHandler:
            if name in self._tools:
                raise ValueError(f"Tool '{name}' is already registered")
            self._tools[name] = ToolDef(
                name=name,
                description=description,
                parameters_schema=parameters_schema,
                args_model=args_model,
                handler=func,
            )
            logger.debug("Registered tool: %s", name)
            return func

        return decorator

    def get_tool(self, name: str) -> ToolDef | None:
        """Look up a tool by name.

        Returns:
            The :class:`ToolDef` if found, else ``None``.
        """
        try:
            return self._tools.get(ToolName(name))
        except ValueError:
            return None

    def list_tools(self) -> list[ToolDef]:
        """Return all registered tools."""
        return list(self._tools.values())

    def get_tools_for_llm(self) -> list[dict[str, Any]]:
        """Export tool schemas in OpenAI function-calling format.

        Returns a list of dicts, each with::

            {
                "type": "function",
                "function": {
                    "name": "...",
                    "description": "...",
                    "parameters": { ... JSON Schema ... }
                }
            }

        This format is used by OpenAI, Ollama, and (after conversion)
        Anthropic.
        """
        schemas: list[dict[str, Any]] = []
        for tool_def in self._tools.values():
            schemas.append(
                {
                    "type": "function",
                    "function": {
                        "name": tool_def.name.value,
                        "description": tool_def.description,
                        "parameters": tool_def.parameters_schema,
                    },
                }
            )
        return schemas

    def decode(self, call: ToolCall) -> Invocation | InvalidInvocation:
        """Turn a raw tool call into a typed invocation.

        Never raises: unknown names, malformed JSON and schema violations
        all come back as an :class:`InvalidInvocation` carrying a short
        reason.
        """
        tool_def = self.get_tool(call.name)
        if tool_def is None:
            return InvalidInvocation(call.id, call.name, UNKNOWN_OPERATION)

        raw: Any = call.arguments
        if isinstance(raw, str):
            try:
                raw = json.loads(raw) if raw.strip() else {}
            except json.JSONDecodeError as exc:
                return InvalidInvocation(call.id, call.name, f"参数解析失败：{exc.msg}")
        if not isinstance(raw, dict):
            return InvalidInvocation(call.id, call.name, "参数解析失败：参数必须是对象")

        try:
            args = tool_def.args_model.model_validate(raw)
        except ValidationError as exc:
            return InvalidInvocation(call.id, call.name, _summarize_validation_error(exc))

        return Invocation(call_id=call.id, name=tool_def.name, args=args)

    async def execute(self, invocation: Invocation, context: ToolContext) -> dict[str, Any]:
        """Execute a decoded invocation.

        Returns:
            The tool handler's result dict.  A handler reports an expected
            failure with an ``"error"`` key instead of raising.

        Raises:
            KeyError: If the tool is not registered.
        """
        tool_def = self._tools.get(invocation.name)
        if tool_def is None:
            raise KeyError(f"Unknown tool: '{invocation.name}'")

        logger.info(
            "Executing tool: %s(%s)",
            invocation.name,
            invocation.args.model_dump(exclude_none=True),
        )
        return await tool_def.handler(invocation.args, context)


def _summarize_validation_error(exc: ValidationError) -> str:
    """First pydantic error as ``参数错误：<field>: <message>``."""
    errors = exc.errors()
    if not errors:
        return "参数错误"
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ())) or "arguments"
    return f"参数错误：{loc}: {first.get('msg', 'invalid')}"


# ── Global registry instance ──────────────────────────────────────────────────
# Tools register themselves on import via the decorator.

default_registry = ToolRegistry()
