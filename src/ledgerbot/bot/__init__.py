"""Feishu bot entry point.

:func:`run_bot` wires the database, LLM client, agent and Feishu client
together and serves the webhook until interrupted.
"""

from __future__ import annotations

import asyncio
import logging

from aiohttp import web

from ledgerbot.config import Settings

logger = logging.getLogger(__name__)


async def run_bot(settings: Settings) -> None:
    """Start the webhook server.

    This is the main coroutine invoked from ``__main__.py``.  It sets up
    logging, builds every component from *settings*, and serves until
    cancelled.
    """
    # Imported here: the agent and tool modules import bot.formatters.
    from ledgerbot.agent.executor import OperationExecutor
    from ledgerbot.agent.llm_client import create_llm_client
    from ledgerbot.agent.orchestrator import Orchestrator
    from ledgerbot.agent.resolver import IntentResolver
    from ledgerbot.bot.feishu_client import FeishuClient
    from ledgerbot.bot.handlers import MessageHandler
    from ledgerbot.bot.webhook import create_app
    from ledgerbot.db.session import Database
    from ledgerbot.ledger.repository import SqlLedgerRepository
    from ledgerbot.ledger.time_range import local_now
    from ledgerbot.ledger.users import SqlUserIdentityStore
    from ledgerbot.tools import default_registry

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    tz = settings.tz
    database = Database(settings.database_url)
    ledger = SqlLedgerRepository(database.session)
    identities = SqlUserIdentityStore(database.session)

    resolver = IntentResolver(
        create_llm_client(settings),
        default_registry,
        timeout=settings.llm_timeout_seconds,
        bot_name=settings.bot_name,
        clock=lambda: local_now(tz),
    )
    orchestrator = Orchestrator(
        resolver,
        OperationExecutor(default_registry),
        ledger,
        identities,
        tz=tz,
    )
    feishu = FeishuClient(
        settings.feishu_app_id,
        settings.feishu_app_secret,
        base_url=settings.feishu_base_url,
    )
    handler = MessageHandler(
        settings=settings,
        orchestrator=orchestrator,
        identities=identities,
        feishu=feishu,
        session_factory=database.session,
    )

    runner = web.AppRunner(create_app(settings, handler))
    await runner.setup()
    site = web.TCPSite(runner, settings.server_host, settings.server_port)
    await site.start()
    logger.info(
        "LedgerBot listening on http://%s:%d (provider=%s, model=%s)",
        settings.server_host,
        settings.server_port,
        settings.llm_provider,
        settings.llm_model,
    )

    try:
        await asyncio.Event().wait()
    finally:
        logger.info("LedgerBot shutting down")
        await runner.cleanup()
        await feishu.close()
        await database.dispose()
