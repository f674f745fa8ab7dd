"""Minimal Feishu Open API client.

Covers the three calls the bot needs:

- tenant access token (cached until one minute before it expires)
- reply to a message, optionally inside a thread
- list the messages of a thread, oldest first

All requests go through one shared :class:`aiohttp.ClientSession`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable
from typing import Any

import aiohttp

from ledgerbot.agent.context import Mention, ThreadMessage

logger = logging.getLogger(__name__)

TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal"
MESSAGES_PATH = "/open-apis/im/v1/messages"

# Refresh the token this many seconds before Feishu says it expires.
TOKEN_EXPIRY_MARGIN = 60

THREAD_PAGE_SIZE = 50
MAX_THREAD_PAGES = 10


class FeishuAPIError(Exception):
    """Feishu answered with a non-zero ``code``."""

    def __init__(self, code: int, msg: str) -> None:
        super().__init__(f"feishu api error {code}: {msg}")
        self.code = code
        self.msg = msg


class FeishuClient:
    """Async Feishu client authenticated as the app's tenant.

    Args:
        app_id: Feishu app ID.
        app_secret: Feishu app secret.
        base_url: API base, ``https://open.feishu.cn`` or the Lark equivalent.
        timeout: Total timeout for each HTTP request, in seconds.
        session: Optional externally managed HTTP session.
        clock: Monotonic clock used for token expiry.
    """

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        *,
        base_url: str = "https://open.feishu.cn",
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._app_id = app_id
        self._app_secret = app_secret
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    # ── Auth ──────────────────────────────────────────────────────────────

    async def tenant_access_token(self) -> str:
        """Return a valid tenant access token, fetching a new one when needed."""
        async with self._token_lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token

            async with self._http().post(
                self._base_url + TOKEN_PATH,
                json={"app_id": self._app_id, "app_secret": self._app_secret},
            ) as resp:
                resp.raise_for_status()
                body = await resp.json(content_type=None)

            _check(body)
            self._token = body["tenant_access_token"]
            expire = int(body.get("expire", 0))
            self._token_expires_at = self._clock() + max(expire - TOKEN_EXPIRY_MARGIN, 0)
            logger.debug("Fetched tenant access token (expires in %ss)", expire)
            return self._token

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        token = await self.tenant_access_token()
        async with self._http().request(
            method,
            self._base_url + path,
            params=params,
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        ) as resp:
            body = await resp.json(content_type=None)
            if resp.status >= 400 and not isinstance(body, dict):
                resp.raise_for_status()
        _check(body)
        return body.get("data") or {}

    # ── Messages ──────────────────────────────────────────────────────────

    async def reply_message(self, message_id: str, text: str, *, in_thread: bool = False) -> str:
        """Reply to *message_id* with a text message.

        Returns:
            The ID of the sent reply.
        """
        data = await self._request(
            "POST",
            f"{MESSAGES_PATH}/{message_id}/reply",
            payload={
                "msg_type": "text",
                "content": json.dumps({"text": text}, ensure_ascii=False),
                "reply_in_thread": in_thread,
                "uuid": str(uuid.uuid4()),
            },
        )
        return data.get("message_id", "")

    async def list_thread_messages(self, thread_id: str) -> list[ThreadMessage]:
        """Fetch the messages of a thread, oldest first."""
        messages: list[ThreadMessage] = []
        page_token: str | None = None

        for _ in range(MAX_THREAD_PAGES):
            params: dict[str, Any] = {
                "container_id_type": "thread",
                "container_id": thread_id,
                "sort_type": "ByCreateTimeAsc",
                "page_size": THREAD_PAGE_SIZE,
            }
            if page_token:
                params["page_token"] = page_token

            data = await self._request("GET", MESSAGES_PATH, params=params)
            messages.extend(parse_thread_item(item) for item in data.get("items") or [])

            page_token = data.get("page_token")
            if not data.get("has_more") or not page_token:
                break

        return messages


def parse_mentions(raw: Any) -> list[Mention]:
    """Convert Feishu ``mentions`` entries to :class:`Mention` objects."""
    mentions: list[Mention] = []
    for item in raw or []:
        if isinstance(item, dict):
            mentions.append(Mention(key=item.get("key") or "", name=item.get("name") or ""))
    return mentions


def parse_thread_item(item: dict[str, Any]) -> ThreadMessage:
    """Convert one item of the message list API into a :class:`ThreadMessage`."""
    sender = item.get("sender") or {}
    body = item.get("body") or {}
    return ThreadMessage(
        sender_type=sender.get("sender_type") or "",
        content=body.get("content") or "",
        deleted=bool(item.get("deleted")),
        mentions=parse_mentions(item.get("mentions")),
    )


def _check(body: Any) -> None:
    if not isinstance(body, dict):
        raise FeishuAPIError(-1, "unexpected response body")
    code = body.get("code", 0)
    if code != 0:
        raise FeishuAPIError(code, body.get("msg", ""))
