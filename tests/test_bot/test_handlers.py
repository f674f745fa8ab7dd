"""Tests for the Feishu message handler.

Uses unittest.mock for the Feishu client, orchestrator and DB session,
verifying that the handler addresses the right messages, replies in the
right place, and logs LLM calls and failures.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from ledgerbot.agent.context import InboundMessage, Mention, ThreadMessage
from ledgerbot.agent.llm_client import LLMResponse, ToolCall
from ledgerbot.agent.orchestrator import SYSTEM_ERROR_REPLY, OrchestratorResult
from ledgerbot.bot.feishu_client import FeishuAPIError
from ledgerbot.bot.handlers import MessageHandler
from ledgerbot.config import Settings

BOT_MENTION = Mention(key="@_user_1", name="LedgerBot")

# ── Helpers ───────────────────────────────────────────────────────────────────


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def _direct(text: str = "午饭30元", sender_id: str = "ou_zhang") -> InboundMessage:
    return InboundMessage(message_id="om_1", sender_id=sender_id, text=text)


def _group(text: str, mentions: list[Mention] | None = None, thread_id: str | None = "omt_1") -> InboundMessage:
    return InboundMessage(
        message_id="om_2",
        sender_id="ou_zhang",
        text=text,
        chat_type="group",
        chat_id="oc_1",
        mentions=mentions or [],
        thread_id=thread_id,
    )


def _feishu(thread: list[ThreadMessage] | None = None) -> MagicMock:
    feishu = MagicMock()
    feishu.list_thread_messages = AsyncMock(return_value=thread or [])
    feishu.reply_message = AsyncMock(return_value="om_reply")
    return feishu


def _orchestrator(result: OrchestratorResult) -> MagicMock:
    orch = MagicMock()
    orch.handle_message = AsyncMock(return_value=result)
    return orch


def _session_factory():
    session = AsyncMock()

    @asynccontextmanager
    async def factory():
        yield session

    return factory


def _handler(*, orchestrator, feishu, identities, settings=None) -> MessageHandler:
    return MessageHandler(
        settings=settings or _settings(),
        orchestrator=orchestrator,
        identities=identities,
        feishu=feishu,
        session_factory=_session_factory(),
    )


def _llm_response() -> LLMResponse:
    return LLMResponse(
        tool_calls=[ToolCall(id="c1", name="record_transaction", arguments="{}")],
        input_tokens=100,
        output_tokens=20,
        latency_ms=300,
        provider="openai",
        model="gpt-4o-mini",
    )


# ── Addressing and replies ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_direct_message_is_handled_and_replied(identities) -> None:
    orch = _orchestrator(OrchestratorResult(reply_text="✅ 记账成功！"))
    feishu = _feishu()
    handler = _handler(orchestrator=orch, feishu=feishu, identities=identities)

    with patch("ledgerbot.bot.handlers.save_llm_call", new_callable=AsyncMock) as mock_log:
        await handler.handle(_direct())

    kwargs = orch.handle_message.call_args.kwargs
    assert kwargs["sender_id"] == "ou_zhang"
    assert kwargs["text"] == "午饭30元"
    assert kwargs["user_name"] == "Zhang"
    assert [m.content for m in kwargs["history"]] == ["午饭30元"]
    feishu.list_thread_messages.assert_not_called()
    feishu.reply_message.assert_awaited_once_with("om_1", "✅ 记账成功！", in_thread=False)
    mock_log.assert_not_called()


@pytest.mark.asyncio
async def test_group_message_without_mention_is_ignored(identities) -> None:
    orch = _orchestrator(OrchestratorResult(reply_text="x"))
    feishu = _feishu()
    handler = _handler(orchestrator=orch, feishu=feishu, identities=identities)

    await handler.handle(_group("午饭30元"))

    orch.handle_message.assert_not_called()
    feishu.reply_message.assert_not_called()


@pytest.mark.asyncio
async def test_mention_only_message_is_ignored(identities) -> None:
    orch = _orchestrator(OrchestratorResult(reply_text="x"))
    handler = _handler(orchestrator=orch, feishu=_feishu(), identities=identities)

    await handler.handle(_group("@_user_1 ", [BOT_MENTION]))

    orch.handle_message.assert_not_called()


@pytest.mark.asyncio
async def test_group_reply_goes_into_thread_with_history(identities) -> None:
    thread = [
        ThreadMessage("user", json.dumps({"text": "@_user_1 午饭30元"}), mentions=[BOT_MENTION]),
        ThreadMessage("app", json.dumps({"text": "✅ 记账成功！"})),
        ThreadMessage("user", json.dumps({"text": "改成35"})),
    ]
    orch = _orchestrator(OrchestratorResult(reply_text="✏️ 修改成功！"))
    feishu = _feishu(thread)
    handler = _handler(orchestrator=orch, feishu=feishu, identities=identities)

    await handler.handle(_group("改成35"))

    feishu.list_thread_messages.assert_awaited_once_with("omt_1")
    history = orch.handle_message.call_args.kwargs["history"]
    assert [(m.role, m.content) for m in history] == [
        ("user", "午饭30元"),
        ("assistant", "✅ 记账成功！"),
        ("user", "改成35"),
    ]
    feishu.reply_message.assert_awaited_once_with("om_2", "✏️ 修改成功！", in_thread=True)


@pytest.mark.asyncio
async def test_thread_replies_can_be_disabled(identities) -> None:
    orch = _orchestrator(OrchestratorResult(reply_text="ok"))
    feishu = _feishu()
    handler = _handler(
        orchestrator=orch,
        feishu=feishu,
        identities=identities,
        settings=_settings(reply_in_thread=False),
    )

    await handler.handle(_group("@_user_1 午饭30元", [BOT_MENTION], thread_id=None))

    feishu.reply_message.assert_awaited_once_with("om_2", "ok", in_thread=False)


@pytest.mark.parametrize(
    "error",
    [aiohttp.ClientConnectionError("down"), FeishuAPIError(99991663, "token invalid"), TimeoutError()],
)
@pytest.mark.asyncio
async def test_thread_fetch_failure_falls_back_to_current_message(identities, error) -> None:
    orch = _orchestrator(OrchestratorResult(reply_text="ok"))
    feishu = _feishu()
    feishu.list_thread_messages = AsyncMock(side_effect=error)
    handler = _handler(orchestrator=orch, feishu=feishu, identities=identities)

    await handler.handle(_group("@_user_1 午饭30元", [BOT_MENTION]))

    history = orch.handle_message.call_args.kwargs["history"]
    assert [m.content for m in history] == ["午饭30元"]
    feishu.reply_message.assert_awaited_once()


# ── Identity ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_unknown_sender_gets_no_name(identities) -> None:
    orch = _orchestrator(OrchestratorResult(reply_text="请告诉我您的称呼"))
    handler = _handler(orchestrator=orch, feishu=_feishu(), identities=identities)

    await handler.handle(_direct("你好", sender_id="ou_new"))

    assert orch.handle_message.call_args.kwargs["user_name"] is None


@pytest.mark.asyncio
async def test_identity_store_failure_replies_system_error() -> None:
    identities = MagicMock()
    identities.get_name = AsyncMock(side_effect=RuntimeError("db down"))
    orch = _orchestrator(OrchestratorResult(reply_text="x"))
    feishu = _feishu()
    handler = _handler(orchestrator=orch, feishu=feishu, identities=identities)

    await handler.handle(_direct())

    orch.handle_message.assert_not_called()
    feishu.reply_message.assert_awaited_once_with("om_1", SYSTEM_ERROR_REPLY, in_thread=False)


# ── Logging ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_llm_calls_are_logged(identities) -> None:
    response = _llm_response()
    orch = _orchestrator(OrchestratorResult(reply_text="ok", llm_responses=[response]))
    handler = _handler(orchestrator=orch, feishu=_feishu(), identities=identities)

    with (
        patch("ledgerbot.bot.handlers.save_llm_call", new_callable=AsyncMock) as mock_log,
        patch("ledgerbot.bot.handlers.save_failure", new_callable=AsyncMock) as mock_failure,
    ):
        await handler.handle(_direct())

    kwargs = mock_log.call_args.kwargs
    assert kwargs["provider"] == "openai"
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["tool_call_count"] == 1
    assert kwargs["succeeded"] is True
    assert kwargs["cost_usd"] is not None
    mock_failure.assert_not_called()


@pytest.mark.asyncio
async def test_failed_turn_is_logged(identities) -> None:
    result = OrchestratorResult(
        reply_text="抱歉，无法理解您的请求",
        llm_responses=[LLMResponse(provider="openai", model="gpt-4o-mini")],
        failure_source="llm_resolve",
        traceback="Traceback ...",
    )
    handler = _handler(orchestrator=_orchestrator(result), feishu=_feishu(), identities=identities)

    with (
        patch("ledgerbot.bot.handlers.save_llm_call", new_callable=AsyncMock) as mock_log,
        patch("ledgerbot.bot.handlers.save_failure", new_callable=AsyncMock) as mock_failure,
    ):
        await handler.handle(_direct())

    assert mock_log.call_args.kwargs["succeeded"] is False
    kwargs = mock_failure.call_args.kwargs
    assert kwargs["sender_id"] == "ou_zhang"
    assert kwargs["user_input"] == "午饭30元"
    assert kwargs["error_reply"] == "抱歉，无法理解您的请求"
    assert kwargs["failure_source"] == "llm_resolve"
    assert kwargs["traceback_str"] == "Traceback ..."


@pytest.mark.asyncio
async def test_send_failure_does_not_skip_logging(identities) -> None:
    orch = _orchestrator(OrchestratorResult(reply_text="ok", llm_responses=[_llm_response()]))
    feishu = _feishu()
    feishu.reply_message = AsyncMock(side_effect=aiohttp.ClientConnectionError("down"))
    handler = _handler(orchestrator=orch, feishu=feishu, identities=identities)

    with patch("ledgerbot.bot.handlers.save_llm_call", new_callable=AsyncMock) as mock_log:
        await handler.handle(_direct())

    mock_log.assert_awaited_once()
