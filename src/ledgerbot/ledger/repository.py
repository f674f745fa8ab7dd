"""Database repository for ledger operations.

Two layers:

- Module-level async functions that take an :class:`AsyncSession` and do one
  query each (the caller manages the transaction).
- :class:`SqlLedgerRepository`, the :class:`LedgerRepository` implementation
  used by the bot.  Every method runs in its own session and commits on
  return, so a record created by one invocation stays durable even if a
  later invocation in the same turn fails.

LLM call and failure logging live here as well.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerbot.ledger.models import (
    Category,
    FailureLog,
    LLMCall,
    Transaction,
    TransactionKind,
)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

# Columns that ``update`` may touch.  ``occurred_at`` is fixed at creation.
UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {"description", "amount", "kind", "category", "original_message"}
)


class RecordNotFoundError(LookupError):
    """Raised when no transaction has the requested ``record_id``."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"record not found: {record_id}")
        self.record_id = record_id


@dataclass
class SearchResult:
    """Aggregate totals over a time window plus the largest records in it."""

    records: list[Transaction] = field(default_factory=list)
    total_income: Decimal = Decimal("0")
    total_expense: Decimal = Decimal("0")
    count: int = 0

    @property
    def net(self) -> Decimal:
        return self.total_income - self.total_expense


class LedgerRepository(Protocol):
    """Storage operations the executor needs from the ledger."""

    async def create(
        self,
        *,
        description: str,
        amount: Decimal,
        kind: TransactionKind,
        category: str,
        occurred_at: datetime,
        user_name: str,
        original_message: str | None = None,
    ) -> Transaction: ...

    async def get(self, record_id: str) -> Transaction: ...

    async def update(self, record_id: str, changes: dict[str, Any]) -> Transaction: ...

    async def delete(self, record_id: str) -> None: ...

    async def list(
        self,
        *,
        user_name: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[Transaction]: ...

    async def search(
        self,
        *,
        user_name: str | None,
        start: datetime,
        end: datetime,
        top_n: int,
    ) -> SearchResult: ...


def new_record_id() -> str:
    """Generate a short, user-quotable record identifier."""
    return f"rec{uuid.uuid4().hex[:12]}"


# ── Transaction persistence ──────────────────────────────────────────────────


async def save_transaction(
    session: AsyncSession,
    *,
    description: str,
    amount: Decimal,
    kind: TransactionKind,
    category: str | None,
    occurred_at: datetime,
    user_name: str,
    original_message: str | None = None,
) -> Transaction:
    """Insert a new transaction.

    Args:
        session: Active async database session (caller manages commit).
        description: What the money was for (e.g. ``"午饭"``).
        amount: Positive monetary amount.
        kind: Expense or income.
        category: Category label; an empty value falls back to ``其他``.
        occurred_at: Server time at creation.
        user_name: Display name of the owning user.
        original_message: The utterance that produced this record.

    Returns:
        The newly created :class:`Transaction` (``id`` populated after flush).
    """
    entry = Transaction(
        record_id=new_record_id(),
        description=description,
        amount=amount,
        kind=kind.value,
        category=(category or "").strip() or Category.OTHER.value,
        occurred_at=occurred_at,
        user_name=user_name,
        original_message=original_message,
    )
    session.add(entry)
    await session.flush()
    return entry


async def get_transaction(session: AsyncSession, record_id: str) -> Transaction | None:
    """Look up a transaction by its ``record_id``."""
    stmt = select(Transaction).where(Transaction.record_id == record_id).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def update_transaction(
    session: AsyncSession,
    record_id: str,
    changes: dict[str, Any],
) -> Transaction:
    """Apply *changes* to an existing transaction.

    Only keys present in *changes* are written; everything else is left
    untouched.

    Raises:
        RecordNotFoundError: No transaction with *record_id*.
        ValueError: *changes* names a column that may not be updated.
    """
    illegal = set(changes) - UPDATABLE_FIELDS
    if illegal:
        raise ValueError(f"fields cannot be updated: {', '.join(sorted(illegal))}")

    entry = await get_transaction(session, record_id)
    if entry is None:
        raise RecordNotFoundError(record_id)

    for name, value in changes.items():
        if name == "kind" and isinstance(value, TransactionKind):
            value = value.value
        setattr(entry, name, value)

    await session.flush()
    return entry


async def delete_transaction(session: AsyncSession, record_id: str) -> None:
    """Delete a transaction by ``record_id``.

    Raises:
        RecordNotFoundError: No transaction with *record_id*.
    """
    entry = await get_transaction(session, record_id)
    if entry is None:
        raise RecordNotFoundError(record_id)
    await session.delete(entry)
    await session.flush()


# ── Query functions ──────────────────────────────────────────────────────────


def _window_filters(
    user_name: str | None,
    start: datetime | None,
    end: datetime | None,
) -> list[Any]:
    filters: list[Any] = []
    if user_name is not None:
        filters.append(Transaction.user_name == user_name)
    if start is not None:
        filters.append(Transaction.occurred_at >= start)
    if end is not None:
        filters.append(Transaction.occurred_at <= end)
    return filters


async def list_transactions(
    session: AsyncSession,
    *,
    user_name: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Transaction]:
    """Return transactions matching the filters, newest first."""
    stmt = (
        select(Transaction)
        .where(*_window_filters(user_name, start, end))
        .order_by(Transaction.occurred_at.desc())
        .offset(offset)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def search_transactions(
    session: AsyncSession,
    *,
    user_name: str | None,
    start: datetime,
    end: datetime,
    top_n: int,
) -> SearchResult:
    """Aggregate totals over ``[start, end]`` and fetch the *top_n* largest records.

    Totals cover every record in the window, not only the returned ones.
    """
    filters = _window_filters(user_name, start, end)

    totals_stmt = (
        select(
            Transaction.kind,
            func.coalesce(func.sum(Transaction.amount), 0),
            func.count(Transaction.id),
        )
        .where(*filters)
        .group_by(Transaction.kind)
    )
    totals = await session.execute(totals_stmt)

    summary = SearchResult()
    for kind, total, count in totals.all():
        amount = Decimal(str(total or 0))
        if kind == TransactionKind.INCOME.value:
            summary.total_income += amount
        else:
            summary.total_expense += amount
        summary.count += int(count)

    top_stmt = (
        select(Transaction)
        .where(*filters)
        .order_by(Transaction.amount.desc(), Transaction.occurred_at.desc())
        .limit(top_n)
    )
    top = await session.execute(top_stmt)
    summary.records = list(top.scalars().all())
    return summary


# ── Repository implementation ─────────────────────────────────────────────────


class SqlLedgerRepository:
    """:class:`LedgerRepository` backed by SQLAlchemy, one session per call."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def create(
        self,
        *,
        description: str,
        amount: Decimal,
        kind: TransactionKind,
        category: str,
        occurred_at: datetime,
        user_name: str,
        original_message: str | None = None,
    ) -> Transaction:
        async with self._session_factory() as session:
            return await save_transaction(
                session,
                description=description,
                amount=amount,
                kind=kind,
                category=category,
                occurred_at=occurred_at,
                user_name=user_name,
                original_message=original_message,
            )

    async def get(self, record_id: str) -> Transaction:
        async with self._session_factory() as session:
            entry = await get_transaction(session, record_id)
        if entry is None:
            raise RecordNotFoundError(record_id)
        return entry

    async def update(self, record_id: str, changes: dict[str, Any]) -> Transaction:
        async with self._session_factory() as session:
            return await update_transaction(session, record_id, changes)

    async def delete(self, record_id: str) -> None:
        async with self._session_factory() as session:
            await delete_transaction(session, record_id)

    async def list(
        self,
        *,
        user_name: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[Transaction]:
        async with self._session_factory() as session:
            return await list_transactions(
                session,
                user_name=user_name,
                start=start,
                end=end,
                offset=offset,
                limit=limit,
            )

    async def search(
        self,
        *,
        user_name: str | None,
        start: datetime,
        end: datetime,
        top_n: int,
    ) -> SearchResult:
        async with self._session_factory() as session:
            return await search_transactions(
                session,
                user_name=user_name,
                start=start,
                end=end,
                top_n=top_n,
            )


# ── LLM call logging ─────────────────────────────────────────────────────────


async def save_llm_call(
    session: AsyncSession,
    *,
    provider: str,
    model: str,
    input_tokens: int | None = None,
    output_tokens: int | None = None,
    latency_ms: int | None = None,
    tool_call_count: int = 0,
    succeeded: bool = True,
    cost_usd: Decimal | None = None,
) -> LLMCall:
    """Log an LLM invocation to the ``llm_calls`` table.

    Args:
        session: Active async database session (caller manages commit).
        provider: LLM provider name (e.g. ``"openai"``, ``"ollama"``).
        model: Model identifier used for the call.
        input_tokens: Number of input/prompt tokens (if available).
        output_tokens: Number of output/completion tokens (if available).
        latency_ms: Wall-clock latency of the call in milliseconds.
        tool_call_count: Number of tool calls in the response.
        succeeded: ``False`` when the response was unusable.
        cost_usd: Estimated cost in USD for paid API calls.

    Returns:
        The newly created :class:`LLMCall` instance.
    """
    llm_call = LLMCall(
        provider=provider,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        latency_ms=latency_ms,
        tool_call_count=tool_call_count,
        succeeded=succeeded,
        cost_usd=cost_usd,
    )
    session.add(llm_call)
    await session.flush()
    return llm_call


# ── Failure logging ──────────────────────────────────────────────────────────


async def save_failure(
    session: AsyncSession,
    *,
    sender_id: str,
    user_input: str,
    error_reply: str,
    traceback_str: str,
    failure_source: str,
) -> FailureLog:
    """Persist a failure record for later debugging.

    Args:
        session: Active async database session (caller manages commit).
        sender_id: Chat sender ID that triggered the failure.
        user_input: The message text that caused the failure.
        error_reply: The error message sent back to the user.
        traceback_str: Full Python traceback as a string.
        failure_source: Short label for the failure site (e.g. ``"llm_resolve"``).

    Returns:
        The newly created :class:`FailureLog` instance.
    """
    row = FailureLog(
        sender_id=sender_id,
        user_input=user_input,
        error_reply=error_reply,
        traceback=traceback_str,
        failure_source=failure_source,
    )
    session.add(row)
    await session.flush()
    return row
