"""Query tools for the LLM agent.

Provides the read-only ``query_transactions`` tool: income and expense
totals over a named or custom time window, plus the largest records in it.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from ledgerbot.bot.formatters import format_query_result
from ledgerbot.ledger.time_range import TimeRangeError, TimeRangeType, resolve_time_range
from ledgerbot.tools.registry import ToolContext, ToolName, default_registry

DEFAULT_TOP_N = 5
MAX_TOP_N = 50


class QueryTransactionsArgs(BaseModel):
    """Arguments of ``query_transactions``."""

    time_range_type: TimeRangeType
    start_time: str | None = None
    end_time: str | None = None
    top_n: int = Field(default=DEFAULT_TOP_N, ge=1)

    @field_validator("time_range_type", mode="before")
    @classmethod
    def _lower_range(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("top_n", mode="before")
    @classmethod
    def _default_top_n(cls, v: Any) -> Any:
        return DEFAULT_TOP_N if v is None else v


QUERY_TRANSACTIONS_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "time_range_type": {
            "type": "string",
            "enum": [t.value for t in TimeRangeType],
            "description": (
                "Time window to query. Use 'custom' together with start_time "
                "and end_time for any other period."
            ),
        },
        "start_time": {
            "type": "string",
            "description": "Custom range start, format 'YYYY-MM-DD hh:mm:ss'.",
        },
        "end_time": {
            "type": "string",
            "description": "Custom range end, format 'YYYY-MM-DD hh:mm:ss'.",
        },
        "top_n": {
            "type": "integer",
            "description": "How many of the largest records to list (default 5).",
            "default": DEFAULT_TOP_N,
        },
    },
    "required": ["time_range_type"],
}


@default_registry.tool(
    name=ToolName.QUERY_TRANSACTIONS,
    description=(
        "Summarize the current user's income and expenses over a time window "
        "and list the largest transactions by amount."
    ),
    parameters_schema=QUERY_TRANSACTIONS_SCHEMA,
    args_model=QueryTransactionsArgs,
)
async def query_transactions(args: QueryTransactionsArgs, ctx: ToolContext) -> dict:
    """Resolve the window and search the caller's records.

    Returns:
        A dict with ``start``, ``end``, totals and a formatted ``message``;
        or ``{"error"}`` when the time range cannot be resolved.
    """
    if not ctx.user_name:
        return {"error": "未知用户"}

    try:
        start, end = resolve_time_range(
            args.time_range_type,
            args.start_time,
            args.end_time,
            now=ctx.now(),
        )
    except TimeRangeError as exc:
        return {"error": f"时间范围无效：{exc}"}

    top_n = min(args.top_n, MAX_TOP_N)
    summary = await ctx.ledger.search(
        user_name=ctx.user_name,
        start=start,
        end=end,
        top_n=top_n,
    )

    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "total_income": str(summary.total_income),
        "total_expense": str(summary.total_expense),
        "net": str(summary.net),
        "count": summary.count,
        "message": format_query_result(summary, start, end, top_n),
    }
