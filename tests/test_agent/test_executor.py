"""Tests for ordered operation execution and reply aggregation."""

from __future__ import annotations

from decimal import Decimal

import pytest

from ledgerbot.agent.executor import OperationExecutor
from ledgerbot.bot.formatters import NO_VALID_OPERATION, PARTIAL_BANNER
from ledgerbot.tools import default_registry
from ledgerbot.tools.queries import QueryTransactionsArgs
from ledgerbot.tools.registry import InvalidInvocation, Invocation, ToolName
from ledgerbot.tools.transactions import DeleteTransactionArgs, RecordTransactionArgs


def _record(call_id: str, description: str, amount: str, category: str = "餐饮") -> Invocation:
    return Invocation(
        call_id=call_id,
        name=ToolName.RECORD_TRANSACTION,
        args=RecordTransactionArgs(description=description, amount=Decimal(amount), category=category),
    )


def _delete(call_id: str, record_id: str) -> Invocation:
    return Invocation(
        call_id=call_id,
        name=ToolName.DELETE_TRANSACTION,
        args=DeleteTransactionArgs(record_id=record_id),
    )


@pytest.fixture
def executor() -> OperationExecutor:
    return OperationExecutor(default_registry)


@pytest.mark.asyncio
async def test_all_succeed_joins_confirmations(executor, ledger, tool_context) -> None:
    calls = [_record("c1", "午饭", "30"), _record("c2", "打车", "45", "交通")]

    reply = await executor.execute(calls, tool_context)

    assert len(ledger.records) == 2
    blocks = reply.split("\n\n")
    assert len(blocks) == 2
    assert all(block.startswith("✅ 记账成功！") for block in blocks)
    assert "午饭" in blocks[0] and "打车" in blocks[1]
    for record_id in ledger.records:
        assert record_id in reply


@pytest.mark.asyncio
async def test_failure_does_not_stop_later_operations(executor, ledger, tool_context) -> None:
    calls = [
        _delete("c1", "recmissing"),
        _record("c2", "午饭", "30"),
    ]

    results = await executor.run(calls, tool_context)

    assert [r.ok for r in results] == [False, True]
    assert results[0].message == "❌ 删除记录失败：记录不存在：recmissing"
    assert len(ledger.records) == 1


@pytest.mark.asyncio
async def test_partial_reply_keeps_order(executor, ledger, tool_context) -> None:
    calls = [
        _record("c1", "午饭", "30"),
        _delete("c2", "recmissing"),
    ]

    reply = await executor.execute(calls, tool_context)

    assert reply.startswith(PARTIAL_BANNER)
    body = reply[len(PARTIAL_BANNER):].strip().split("\n\n")
    assert body[0].startswith("✅ 记账成功！")
    assert body[1].startswith("❌ 删除记录失败")


@pytest.mark.asyncio
async def test_earlier_success_persists_when_later_call_raises(executor, ledger, tool_context) -> None:
    ledger.fail_on.add("search")
    calls = [
        _record("c1", "午饭", "30"),
        Invocation(
            call_id="c2",
            name=ToolName.QUERY_TRANSACTIONS,
            args=QueryTransactionsArgs(time_range_type="today"),
        ),
    ]

    results = await executor.run(calls, tool_context)

    assert [r.ok for r in results] == [True, False]
    assert results[1].message == "❌ 查询失败：search unavailable"
    assert len(ledger.records) == 1


@pytest.mark.asyncio
async def test_invalid_invocations_are_reported_in_place(executor, ledger, tool_context) -> None:
    calls = [
        InvalidInvocation("c1", "transfer_money", "未知操作"),
        _record("c2", "午饭", "30"),
    ]

    reply = await executor.execute(calls, tool_context)

    assert reply.startswith(PARTIAL_BANNER)
    assert "❌ 未知操作：transfer_money" in reply
    assert len(ledger.records) == 1


@pytest.mark.asyncio
async def test_no_valid_operation(executor, ledger, tool_context) -> None:
    calls = [
        InvalidInvocation("c1", "transfer_money", "未知操作"),
        InvalidInvocation("c2", "record_transaction", "参数错误：amount: Field required"),
    ]

    reply = await executor.execute(calls, tool_context)

    assert reply.startswith(NO_VALID_OPERATION)
    assert "❌ 未知操作：transfer_money" in reply
    assert "❌ 记账失败：参数错误：amount: Field required" in reply
    assert ledger.calls == []


@pytest.mark.asyncio
async def test_validation_error_is_a_failure(executor, ledger, tool_context) -> None:
    results = await executor.run([_record("c1", "午饭", "0")], tool_context)

    assert not results[0].ok
    assert results[0].message == "❌ 记账失败：金额必须大于0"
    assert ledger.records == {}
