"""Single-turn agent orchestrator.

Glues the :class:`~ledgerbot.agent.resolver.IntentResolver` and the
:class:`~ledgerbot.agent.executor.OperationExecutor` together:

    history → resolve (one model call) → execute 0..N operations → reply

:meth:`Orchestrator.handle_message` never raises; every turn ends with an
:class:`OrchestratorResult` that the bot layer sends back and logs.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from datetime import tzinfo

from ledgerbot.agent.executor import OperationExecutor, OperationResult
from ledgerbot.agent.llm_client import ChatMessage, LLMResponse
from ledgerbot.agent.prompts import RESOLUTION_ERROR_REPLY
from ledgerbot.agent.resolver import IntentResolver, ResolutionError
from ledgerbot.ledger.repository import LedgerRepository
from ledgerbot.ledger.users import UserIdentityStore
from ledgerbot.tools.registry import ToolContext

logger = logging.getLogger(__name__)

SYSTEM_ERROR_REPLY = "系统错误，请稍后再试"


# ── Result dataclass ──────────────────────────────────────────────────────────


@dataclass
class OrchestratorResult:
    """Value object returned by the orchestrator to the bot handler layer."""

    #: Text to send as the reply.
    reply_text: str

    #: The LLM response(s) generated during this turn (for logging).
    llm_responses: list[LLMResponse] = field(default_factory=list)

    #: Per-operation outcomes, in execution order.
    results: list[OperationResult] = field(default_factory=list)

    #: Set when the turn failed; short label for the failure site.
    failure_source: str | None = None

    #: Formatted traceback accompanying ``failure_source``.
    traceback: str | None = None


# ── Orchestrator ──────────────────────────────────────────────────────────────


class Orchestrator:
    """Runs one conversational turn end to end.

    Args:
        resolver: Turns the conversation into invocations or a reply.
        executor: Applies invocations and renders the reply.
        ledger: Transaction storage handed to the tools.
        identities: Display-name storage handed to the tools.
        tz: Time zone for record timestamps and query windows.
    """

    def __init__(
        self,
        resolver: IntentResolver,
        executor: OperationExecutor,
        ledger: LedgerRepository,
        identities: UserIdentityStore,
        tz: tzinfo | None = None,
    ) -> None:
        self._resolver = resolver
        self._executor = executor
        self._ledger = ledger
        self._identities = identities
        self._tz = tz

    async def handle_message(
        self,
        *,
        sender_id: str,
        text: str,
        history: list[ChatMessage],
        user_name: str | None,
    ) -> OrchestratorResult:
        """Process one inbound message.

        Args:
            sender_id: Chat platform ID of the sender.
            text: The message text with bot mentions removed.
            history: Conversation turns, oldest first.
            user_name: Sender's display name, ``None`` if not yet known.

        Returns:
            An :class:`OrchestratorResult` for the bot handler to send.
        """
        try:
            resolution = await self._resolver.resolve(text, history, user_name)
        except ResolutionError as exc:
            logger.warning("Resolution failed for %s: %s", sender_id, exc)
            return OrchestratorResult(
                reply_text=RESOLUTION_ERROR_REPLY,
                llm_responses=[exc.response] if exc.response is not None else [],
                failure_source="llm_resolve",
                traceback=traceback.format_exc(),
            )

        responses = [resolution.response] if resolution.response is not None else []

        if resolution.reply is not None:
            return OrchestratorResult(reply_text=resolution.reply, llm_responses=responses)

        context = ToolContext(
            sender_id=sender_id,
            user_name=user_name,
            utterance=text,
            ledger=self._ledger,
            identities=self._identities,
            tz=self._tz,
        )

        try:
            results = await self._executor.run(resolution.invocations, context)
        except Exception:
            logger.exception("Executing operations failed for %s", sender_id)
            return OrchestratorResult(
                reply_text=SYSTEM_ERROR_REPLY,
                llm_responses=responses,
                failure_source="execute",
                traceback=traceback.format_exc(),
            )

        reply = self._executor.render(resolution.invocations, results)
        logger.info(
            "Turn for %s: %d operation(s), %d failed",
            sender_id,
            len(results),
            sum(1 for r in results if not r.ok),
        )
        return OrchestratorResult(reply_text=reply, llm_responses=responses, results=results)
