"""aiohttp webhook server for Feishu event subscriptions.

Routes:

- ``POST /webhook/feishu``: URL verification challenges and
  ``im.message.receive_v1`` events
- ``GET /health``: liveness probe

Feishu expects an answer within a few seconds, so each message is handed to
the :class:`~ledgerbot.bot.handlers.MessageHandler` on its own task and the
request is acknowledged immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any

from aiohttp import web

from ledgerbot.agent.context import InboundMessage, message_text
from ledgerbot.bot.feishu_client import parse_mentions
from ledgerbot.bot.handlers import MessageHandler
from ledgerbot.config import Settings

logger = logging.getLogger(__name__)

MESSAGE_RECEIVE_EVENT = "im.message.receive_v1"

# Feishu redelivers events it considers unacknowledged; remember recent IDs.
SEEN_EVENTS_MAXLEN = 1024


class EventDeduplicator:
    """Remembers the last *maxlen* event IDs."""

    def __init__(self, maxlen: int = SEEN_EVENTS_MAXLEN) -> None:
        self._order: deque[str] = deque(maxlen=maxlen)
        self._seen: set[str] = set()

    def seen(self, event_id: str) -> bool:
        """Record *event_id*; ``True`` if it was already recorded."""
        if not event_id:
            return False
        if event_id in self._seen:
            return True
        if len(self._order) == self._order.maxlen:
            self._seen.discard(self._order[0])
        self._order.append(event_id)
        self._seen.add(event_id)
        return False


def parse_message_event(event: dict[str, Any]) -> InboundMessage | None:
    """Build an :class:`InboundMessage` from an ``im.message.receive_v1`` event.

    Returns ``None`` for events without a sender, a message ID, or text.
    """
    message = event.get("message") or {}
    sender = event.get("sender") or {}
    sender_id = (sender.get("sender_id") or {}).get("open_id") or ""
    message_id = message.get("message_id") or ""
    if not sender_id or not message_id:
        return None

    text = message_text(message.get("content") or "")
    if not text:
        return None

    return InboundMessage(
        message_id=message_id,
        sender_id=sender_id,
        text=text,
        chat_type=message.get("chat_type") or "",
        chat_id=message.get("chat_id") or "",
        mentions=parse_mentions(message.get("mentions")),
        thread_id=message.get("thread_id") or None,
        root_id=message.get("root_id") or None,
    )


def _token_matches(settings: Settings, token: str | None) -> bool:
    expected = settings.feishu_verification_token
    return not expected or token == expected


async def handle_health(request: web.Request) -> web.Response:
    """GET /health: liveness probe."""
    return web.json_response({"status": "ok"})


async def handle_feishu_event(request: web.Request) -> web.Response:
    """POST /webhook/feishu: receive a Feishu event callback."""
    settings: Settings = request.app["settings"]

    try:
        payload = await request.json()
    except ValueError:
        return web.json_response({"error": "invalid JSON"}, status=400)
    if not isinstance(payload, dict):
        return web.json_response({"error": "invalid payload"}, status=400)

    if "encrypt" in payload:
        logger.warning("Received an encrypted event; disable event encryption for this app")
        return web.json_response({"error": "encrypted events are not supported"}, status=400)

    if payload.get("type") == "url_verification":
        if not _token_matches(settings, payload.get("token")):
            return web.json_response({"error": "invalid token"}, status=401)
        return web.json_response({"challenge": payload.get("challenge", "")})

    header = payload.get("header") or {}
    if not _token_matches(settings, header.get("token")):
        logger.warning("Rejected event with a bad verification token")
        return web.json_response({"error": "invalid token"}, status=401)

    if header.get("event_type") != MESSAGE_RECEIVE_EVENT:
        logger.debug("Ignoring event type %s", header.get("event_type"))
        return web.json_response({"code": 0})

    if request.app["dedup"].seen(header.get("event_id") or ""):
        logger.info("Ignoring redelivered event %s", header.get("event_id"))
        return web.json_response({"code": 0})

    inbound = parse_message_event(payload.get("event") or {})
    if inbound is None:
        logger.debug("Event carries no usable text message")
        return web.json_response({"code": 0})

    _spawn(request.app, request.app["handler"].handle(inbound), inbound.message_id)
    return web.json_response({"code": 0})


def _spawn(app: web.Application, coro: Any, label: str) -> None:
    """Run *coro* in the background, keeping a reference until it finishes."""
    tasks: set[asyncio.Task] = app["tasks"]
    task = asyncio.create_task(coro, name=f"turn-{label}")
    tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        tasks.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.error("Turn %s failed", label, exc_info=t.exception())

    task.add_done_callback(_done)


async def _drain_tasks(app: web.Application) -> None:
    tasks: set[asyncio.Task] = app["tasks"]
    if tasks:
        logger.info("Waiting for %d in-flight turn(s)", len(tasks))
        await asyncio.gather(*tasks, return_exceptions=True)


def create_app(settings: Settings, handler: MessageHandler) -> web.Application:
    """Build the aiohttp application serving the webhook."""
    app = web.Application()
    app["settings"] = settings
    app["handler"] = handler
    app["dedup"] = EventDeduplicator()
    app["tasks"] = set()

    app.router.add_post("/webhook/feishu", handle_feishu_event)
    app.router.add_get("/health", handle_health)
    app.on_shutdown.append(_drain_tasks)

    return app
