"""Message formatters for Feishu text replies.

Converts ledger records and query summaries into the plain-text replies
the bot sends back.  Feishu text messages have no markup, so everything
here is emoji-prefixed lines.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from ledgerbot.ledger.models import Transaction, TransactionKind
from ledgerbot.ledger.repository import SearchResult

# Short Chinese label per operation, used in failure lines.
OPERATION_LABELS: dict[str, str] = {
    "record_transaction": "记账",
    "update_transaction": "修改记录",
    "delete_transaction": "删除记录",
    "query_transactions": "查询",
    "rename_user": "设置名字",
}

PARTIAL_BANNER = "⚠️ 部分操作未能完成："
NO_VALID_OPERATION = "❌ 没有可执行的有效操作"


def format_money(amount: Decimal) -> str:
    """``¥1234.50`` style amount."""
    return f"¥{amount:.2f}"


def format_signed_amount(amount: Decimal, kind: str) -> str:
    """Expense amounts get ``-``, income ``+``."""
    sign = "+" if kind == TransactionKind.INCOME.value else "-"
    return f"{sign}{format_money(amount)}"


# ── Operation confirmations ──────────────────────────────────────────────────


def format_transaction_created(entry: Transaction) -> str:
    """Confirmation for a newly recorded transaction::

        ✅ 记账成功！
        🆔 rec3f9a1c02d4
        📋 午饭
        💰 -¥30.00
        🏷️ 餐饮
    """
    return (
        "✅ 记账成功！\n"
        f"🆔 {entry.record_id}\n"
        f"📋 {entry.description}\n"
        f"💰 {format_signed_amount(entry.amount, entry.kind)}\n"
        f"🏷️ {entry.category}"
    )


def format_transaction_updated(entry: Transaction) -> str:
    return (
        "✏️ 修改成功！\n"
        f"🆔 {entry.record_id}\n"
        f"📋 {entry.description}\n"
        f"💰 {format_signed_amount(entry.amount, entry.kind)}\n"
        f"🏷️ {entry.category}"
    )


def format_transaction_deleted(record_id: str) -> str:
    return f"🗑️ 已删除记录：{record_id}"


def format_renamed(name: str) -> str:
    return f"✅ 设置成功！从现在起，我将称呼您为：{name}"


def format_query_result(
    summary: SearchResult,
    start: datetime,
    end: datetime,
    top_n: int,
) -> str:
    """Totals for the window followed by the largest records.

    Example::

        📊 2025-06-09 至 2025-06-15 收支统计
        💵 总收入：¥0.00
        💸 总支出：¥75.00
        📈 净额：-¥75.00
        🧾 共 2 笔

        🔝 金额最高的 2 笔：
        1. 打车 -¥45.00 | 交通 | 06-10 09:12 | rec1a2b3c4d5e6f
        2. 午饭 -¥30.00 | 餐饮 | 06-10 12:03 | rec0f1e2d3c4b5a
    """
    net = summary.net
    net_text = f"+{format_money(net)}" if net >= 0 else f"-{format_money(-net)}"

    lines = [
        f"📊 {start:%Y-%m-%d} 至 {end:%Y-%m-%d} 收支统计",
        f"💵 总收入：{format_money(summary.total_income)}",
        f"💸 总支出：{format_money(summary.total_expense)}",
        f"📈 净额：{net_text}",
        f"🧾 共 {summary.count} 笔",
    ]

    if not summary.records:
        lines.append("")
        lines.append("暂无记录")
        return "\n".join(lines)

    shown = summary.records[:top_n]
    lines.append("")
    lines.append(f"🔝 金额最高的 {len(shown)} 笔：")
    for i, entry in enumerate(shown, 1):
        lines.append(
            f"{i}. {entry.description} {format_signed_amount(entry.amount, entry.kind)}"
            f" | {entry.category} | {entry.occurred_at:%m-%d %H:%M} | {entry.record_id}"
        )
    return "\n".join(lines)


# ── Failures and aggregation ─────────────────────────────────────────────────


def format_operation_failure(operation: str, cause: str) -> str:
    """One short line for a failed operation."""
    label = OPERATION_LABELS.get(operation)
    if label is None:
        return f"❌ {cause}：{operation}" if operation else f"❌ {cause}"
    return f"❌ {label}失败：{cause}"


def format_partial_reply(results: list[str]) -> str:
    return PARTIAL_BANNER + "\n\n" + "\n\n".join(results)


def format_no_valid_operation(failures: list[str]) -> str:
    if not failures:
        return NO_VALID_OPERATION
    return NO_VALID_OPERATION + "\n\n" + "\n".join(failures)
