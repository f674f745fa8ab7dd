"""Shared fixtures: in-memory ledger and identity store, tool contexts."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from ledgerbot.ledger.models import Transaction, TransactionKind
from ledgerbot.ledger.repository import (
    UPDATABLE_FIELDS,
    RecordNotFoundError,
    SearchResult,
    new_record_id,
)
from ledgerbot.ledger.users import UserNotFoundError, normalize_name
from ledgerbot.tools.registry import ToolContext

SHANGHAI = ZoneInfo("Asia/Shanghai")


class FakeLedger:
    """In-memory ledger repository.

    Put an operation name in ``fail_on`` to make it raise ``RuntimeError``.
    """

    def __init__(self) -> None:
        self.records: dict[str, Transaction] = {}
        self.fail_on: set[str] = set()
        self.calls: list[str] = []

    def _enter(self, op: str) -> None:
        self.calls.append(op)
        if op in self.fail_on:
            raise RuntimeError(f"{op} unavailable")

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
        self._enter("create")
        entry = Transaction(
            record_id=new_record_id(),
            description=description,
            amount=amount,
            kind=kind.value,
            category=category,
            occurred_at=occurred_at,
            user_name=user_name,
            original_message=original_message,
        )
        self.records[entry.record_id] = entry
        return entry

    async def get(self, record_id: str) -> Transaction:
        self._enter("get")
        if record_id not in self.records:
            raise RecordNotFoundError(record_id)
        return self.records[record_id]

    async def update(self, record_id: str, changes: dict[str, Any]) -> Transaction:
        self._enter("update")
        if set(changes) - UPDATABLE_FIELDS:
            raise ValueError("fields cannot be updated")
        entry = self.records.get(record_id)
        if entry is None:
            raise RecordNotFoundError(record_id)
        for name, value in changes.items():
            setattr(entry, name, value)
        return entry

    async def delete(self, record_id: str) -> None:
        self._enter("delete")
        if self.records.pop(record_id, None) is None:
            raise RecordNotFoundError(record_id)

    async def list(self, *, user_name=None, start=None, end=None, offset=0, limit=50):
        self._enter("list")
        rows = [r for r in self.records.values() if _matches(r, user_name, start, end)]
        rows.sort(key=lambda r: r.occurred_at, reverse=True)
        return rows[offset : offset + limit]

    async def search(self, *, user_name, start, end, top_n) -> SearchResult:
        self._enter("search")
        rows = [r for r in self.records.values() if _matches(r, user_name, start, end)]
        result = SearchResult(count=len(rows))
        for row in rows:
            if row.kind == TransactionKind.INCOME.value:
                result.total_income += row.amount
            else:
                result.total_expense += row.amount
        rows.sort(key=lambda r: (r.amount, r.occurred_at), reverse=True)
        result.records = rows[:top_n]
        return result

    def add(self, **fields: Any) -> Transaction:
        """Insert a record directly, bypassing ``create``."""
        entry = Transaction(record_id=fields.pop("record_id", new_record_id()), **fields)
        self.records[entry.record_id] = entry
        return entry


def _matches(row: Transaction, user_name, start, end) -> bool:
    if user_name is not None and row.user_name != user_name:
        return False
    if start is not None and row.occurred_at < start:
        return False
    if end is not None and row.occurred_at > end:
        return False
    return True


class FakeIdentityStore:
    """In-memory user identity store."""

    def __init__(self, names: dict[str, str] | None = None) -> None:
        self.names: dict[str, str] = dict(names or {})

    async def get_name(self, sender_id: str) -> str:
        if sender_id not in self.names:
            raise UserNotFoundError(sender_id)
        return self.names[sender_id]

    async def set_name(self, sender_id: str, name: str) -> str:
        cleaned = normalize_name(name)
        self.names[sender_id] = cleaned
        return cleaned


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def identities() -> FakeIdentityStore:
    return FakeIdentityStore({"ou_zhang": "Zhang"})


@pytest.fixture
def tool_context(ledger: FakeLedger, identities: FakeIdentityStore) -> ToolContext:
    return ToolContext(
        sender_id="ou_zhang",
        user_name="Zhang",
        utterance="午饭30元",
        ledger=ledger,
        identities=identities,
        tz=SHANGHAI,
    )
