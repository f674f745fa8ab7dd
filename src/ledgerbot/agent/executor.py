"""Operation execution and reply aggregation.

:class:`OperationExecutor` applies the invocations of one turn strictly in
the order the model emitted them.  A failing invocation never stops the
ones after it; every outcome is collected and rendered into a single reply:

- all succeeded: the confirmations, separated by a blank line
- some failed: a "partially completed" banner, then every result in order
- none was valid: a "no valid operation" reply listing the rejected calls
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ledgerbot.bot.formatters import (
    format_no_valid_operation,
    format_operation_failure,
    format_partial_reply,
)
from ledgerbot.tools.registry import (
    InvalidInvocation,
    Invocation,
    ToolContext,
    ToolRegistry,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one invocation, already rendered for the reply."""

    call_id: str
    name: str
    ok: bool
    message: str


class OperationExecutor:
    """Runs decoded invocations against the ledger and builds the reply."""

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    async def run(
        self,
        calls: list[Invocation | InvalidInvocation],
        context: ToolContext,
    ) -> list[OperationResult]:
        """Apply every call in order and return one result per call."""
        results: list[OperationResult] = []
        for call in calls:
            if isinstance(call, InvalidInvocation):
                results.append(
                    OperationResult(
                        call_id=call.call_id,
                        name=call.name,
                        ok=False,
                        message=format_operation_failure(call.name, call.error),
                    )
                )
                continue
            results.append(await self._run_one(call, context))
        return results

    async def _run_one(self, call: Invocation, context: ToolContext) -> OperationResult:
        name = call.name.value
        try:
            result = await self._registry.execute(call, context)
        except Exception as exc:
            logger.exception("Tool %s failed", name)
            return OperationResult(
                call_id=call.call_id,
                name=name,
                ok=False,
                message=format_operation_failure(name, str(exc) or type(exc).__name__),
            )

        if "error" in result:
            logger.info("Tool %s rejected: %s", name, result["error"])
            return OperationResult(
                call_id=call.call_id,
                name=name,
                ok=False,
                message=format_operation_failure(name, result["error"]),
            )

        return OperationResult(
            call_id=call.call_id,
            name=name,
            ok=True,
            message=result.get("message", ""),
        )

    @staticmethod
    def render(
        calls: list[Invocation | InvalidInvocation],
        results: list[OperationResult],
    ) -> str:
        """Combine per-call results into the turn's reply."""
        if not any(isinstance(call, Invocation) for call in calls):
            return format_no_valid_operation([r.message for r in results])

        if all(r.ok for r in results):
            return "\n\n".join(r.message for r in results)

        return format_partial_reply([r.message for r in results])

    async def execute(
        self,
        calls: list[Invocation | InvalidInvocation],
        context: ToolContext,
    ) -> str:
        """Apply *calls* in order and return the single reply for the turn."""
        results = await self.run(calls, context)
        return self.render(calls, results)
