"""Turn handler: from a parsed inbound message to a sent reply.

For each message that addresses the bot:

1. Fetch the reply thread (failures fall back to an empty thread).
2. Assemble the model history and check the bot is addressed.
3. Look up the sender's display name.
4. Run the turn through the orchestrator.
5. Reply to the originating message (in-thread for group chats).
6. Log LLM calls to ``llm_calls`` and turn failures to ``failure_log``.
"""

from __future__ import annotations

import logging

import aiohttp

from ledgerbot.agent.context import InboundMessage, ThreadMessage, assemble_context
from ledgerbot.agent.llm_client import estimate_cost_usd
from ledgerbot.agent.orchestrator import SYSTEM_ERROR_REPLY, Orchestrator, OrchestratorResult
from ledgerbot.bot.feishu_client import FeishuAPIError, FeishuClient
from ledgerbot.config import Settings
from ledgerbot.ledger.repository import SessionFactory, save_failure, save_llm_call
from ledgerbot.ledger.users import UserIdentityStore, UserNotFoundError

logger = logging.getLogger(__name__)


class MessageHandler:
    """Processes one inbound Feishu message end to end."""

    def __init__(
        self,
        *,
        settings: Settings,
        orchestrator: Orchestrator,
        identities: UserIdentityStore,
        feishu: FeishuClient,
        session_factory: SessionFactory,
    ) -> None:
        self._settings = settings
        self._orchestrator = orchestrator
        self._identities = identities
        self._feishu = feishu
        self._session_factory = session_factory

    async def handle(self, inbound: InboundMessage) -> None:
        thread = await self._fetch_thread(inbound)
        context = assemble_context(
            inbound,
            thread,
            bot_name=self._settings.bot_name,
            history_limit=self._settings.history_limit,
        )
        if not context.addressed:
            logger.debug("Message %s does not address the bot, skipping", inbound.message_id)
            return
        if not context.text:
            logger.debug("Message %s is empty after removing mentions", inbound.message_id)
            return

        logger.info("Processing %s from %s: %s", inbound.message_id, inbound.sender_id, context.text)

        try:
            user_name: str | None = await self._identities.get_name(inbound.sender_id)
        except UserNotFoundError:
            user_name = None
        except Exception:
            logger.exception("Identity lookup failed for %s", inbound.sender_id)
            await self._send_reply(inbound, SYSTEM_ERROR_REPLY)
            return

        result = await self._orchestrator.handle_message(
            sender_id=inbound.sender_id,
            text=context.text,
            history=context.history,
            user_name=user_name,
        )

        await self._send_reply(inbound, result.reply_text)
        await self._log_llm_responses(result)
        if result.failure_source:
            await self._log_failure(inbound, context.text, result)

    # ── Helpers ───────────────────────────────────────────────────────────

    async def _fetch_thread(self, inbound: InboundMessage) -> list[ThreadMessage]:
        if not inbound.thread_id:
            return []
        try:
            return await self._feishu.list_thread_messages(inbound.thread_id)
        except (aiohttp.ClientError, FeishuAPIError, TimeoutError) as exc:
            logger.warning("Could not fetch thread %s: %s", inbound.thread_id, exc)
            return []

    async def _send_reply(self, inbound: InboundMessage, text: str) -> None:
        in_thread = self._settings.reply_in_thread and not inbound.is_direct
        try:
            await self._feishu.reply_message(inbound.message_id, text, in_thread=in_thread)
        except Exception:
            logger.exception("Failed to send reply to %s", inbound.message_id)

    async def _log_llm_responses(self, result: OrchestratorResult) -> None:
        """Persist every LLM call made during the turn."""
        if not result.llm_responses:
            return
        async with self._session_factory() as session:
            for llm_response in result.llm_responses:
                await save_llm_call(
                    session,
                    provider=llm_response.provider,
                    model=llm_response.model,
                    input_tokens=llm_response.input_tokens,
                    output_tokens=llm_response.output_tokens,
                    latency_ms=llm_response.latency_ms,
                    tool_call_count=len(llm_response.tool_calls),
                    succeeded=not llm_response.is_empty,
                    cost_usd=estimate_cost_usd(
                        llm_response.provider,
                        llm_response.model,
                        llm_response.input_tokens,
                        llm_response.output_tokens,
                    ),
                )

    async def _log_failure(
        self,
        inbound: InboundMessage,
        text: str,
        result: OrchestratorResult,
    ) -> None:
        async with self._session_factory() as session:
            await save_failure(
                session,
                sender_id=inbound.sender_id,
                user_input=text,
                error_reply=result.reply_text,
                traceback_str=result.traceback or "",
                failure_source=result.failure_source or "unknown",
            )
