"""Tests for intent resolution (one model call per turn)."""

from __future__ import annotations

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest

from ledgerbot.agent.llm_client import ChatMessage, LLMResponse, ToolCall
from ledgerbot.agent.prompts import UNKNOWN_USER_REPLY
from ledgerbot.agent.resolver import IntentResolver, ResolutionError
from ledgerbot.tools import default_registry
from ledgerbot.tools.registry import InvalidInvocation, Invocation, ToolName

SHANGHAI = ZoneInfo("Asia/Shanghai")


def _clock() -> datetime:
    return datetime(2025, 6, 11, 9, 0, tzinfo=SHANGHAI)


def _resolver(response=None, *, side_effect=None, timeout: float = 30.0) -> IntentResolver:
    llm = MagicMock()
    llm.chat = AsyncMock(return_value=response, side_effect=side_effect)
    return IntentResolver(llm, default_registry, timeout=timeout, clock=_clock)


def _record_call(call_id: str, description: str, amount: float, category: str) -> ToolCall:
    return ToolCall(
        id=call_id,
        name="record_transaction",
        arguments=(
            f'{{"description": "{description}", "amount": {amount}, '
            f'"type": "expense", "category": "{category}"}}'
        ),
    )


# ── Prompt assembly ───────────────────────────────────────────────────────────


def test_build_messages_without_history_uses_current_text() -> None:
    resolver = _resolver()
    messages = resolver.build_messages("午饭30元", [], "Zhang")

    assert [m.role for m in messages] == ["system", "user"]
    assert messages[1].content == "午饭30元"
    assert "Zhang" in messages[0].content
    assert "2025" in messages[0].content


def test_build_messages_keeps_history_order() -> None:
    resolver = _resolver()
    history = [
        ChatMessage(role="user", content="午饭30元"),
        ChatMessage(role="assistant", content="✅ 记账成功！"),
        ChatMessage(role="user", content="改成35"),
    ]
    messages = resolver.build_messages("改成35", history, "Zhang")
    assert [m.content for m in messages[1:]] == ["午饭30元", "✅ 记账成功！", "改成35"]


def test_unknown_user_prompt_restricts_tools() -> None:
    resolver = _resolver()
    system = resolver.build_messages("你好", [], None)[0].content
    assert "ONLY call rename_user" in system


@pytest.mark.asyncio
async def test_resolve_sends_every_tool_schema() -> None:
    resolver = _resolver(LLMResponse(content="你好！"))
    await resolver.resolve("你好", [], "Zhang")

    tools = resolver._llm.chat.call_args.kwargs["tools"]
    assert {t["function"]["name"] for t in tools} == {n.value for n in ToolName}


# ── Outcomes ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_text_reply_is_returned_verbatim() -> None:
    resolver = _resolver(LLMResponse(content="你好！我可以帮你记账。"))
    resolution = await resolver.resolve("你好", [], "Zhang")

    assert resolution.reply == "你好！我可以帮你记账。"
    assert resolution.invocations == []


@pytest.mark.asyncio
async def test_multiple_tool_calls_decoded_in_order() -> None:
    response = LLMResponse(
        tool_calls=[
            _record_call("c1", "午饭", 30, "餐饮"),
            _record_call("c2", "打车", 45, "交通"),
        ]
    )
    resolution = await _resolver(response).resolve("午饭30元，打车45元", [], "Zhang")

    assert resolution.reply is None
    assert [i.call_id for i in resolution.invocations] == ["c1", "c2"]
    assert all(isinstance(i, Invocation) for i in resolution.invocations)
    assert resolution.invocations[1].args.description == "打车"
    assert resolution.response is response


@pytest.mark.asyncio
async def test_invalid_call_does_not_hide_valid_ones() -> None:
    response = LLMResponse(
        tool_calls=[
            ToolCall(id="c1", name="transfer_money", arguments="{}"),
            ToolCall(id="c2", name="record_transaction", arguments="{not json"),
            _record_call("c3", "午饭", 30, "餐饮"),
        ]
    )
    resolution = await _resolver(response).resolve("...", [], "Zhang")

    first, second, third = resolution.invocations
    assert isinstance(first, InvalidInvocation)
    assert first.error == "未知操作"
    assert isinstance(second, InvalidInvocation)
    assert second.error.startswith("参数解析失败")
    assert isinstance(third, Invocation)


@pytest.mark.asyncio
async def test_unknown_user_may_rename() -> None:
    response = LLMResponse(
        tool_calls=[ToolCall(id="c1", name="rename_user", arguments={"name": "张三"})]
    )
    resolution = await _resolver(response).resolve("我是张三", [], None)

    assert not resolution.gated
    assert resolution.invocations[0].name == ToolName.RENAME_USER


@pytest.mark.asyncio
async def test_unknown_user_other_operations_are_gated() -> None:
    response = LLMResponse(
        tool_calls=[
            ToolCall(id="c1", name="rename_user", arguments={"name": "张三"}),
            _record_call("c2", "午饭", 30, "餐饮"),
        ]
    )
    resolution = await _resolver(response).resolve("我是张三，午饭30元", [], None)

    assert resolution.gated
    assert resolution.reply == UNKNOWN_USER_REPLY
    assert resolution.invocations == []


# ── Failures ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_empty_response_raises() -> None:
    response = LLMResponse(content="   ")
    with pytest.raises(ResolutionError) as exc_info:
        await _resolver(response).resolve("午饭30元", [], "Zhang")
    assert exc_info.value.response is response


@pytest.mark.asyncio
async def test_transport_error_raises() -> None:
    resolver = _resolver(side_effect=ConnectionError("connection reset"))
    with pytest.raises(ResolutionError, match="connection reset"):
        await resolver.resolve("午饭30元", [], "Zhang")


@pytest.mark.asyncio
async def test_timeout_raises() -> None:
    async def never_answers(**kwargs):
        await asyncio.sleep(10)

    llm = MagicMock()
    llm.chat = never_answers
    resolver = IntentResolver(llm, default_registry, timeout=0.01, clock=_clock)

    with pytest.raises(ResolutionError, match="timed out"):
        await resolver.resolve("午饭30元", [], "Zhang")
