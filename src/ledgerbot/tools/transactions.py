"""Transaction tools for the LLM agent.

Provides the write tools:

- ``record_transaction``: create one income or expense record
- ``update_transaction``: change selected fields of an existing record
- ``delete_transaction``: remove a record

The occurrence date of a record is always the server's current time; the
model is never asked for it.  Each handler returns a dict with a
ready-to-send ``message`` on success or an ``error`` on failure.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError

from ledgerbot.bot.formatters import (
    format_transaction_created,
    format_transaction_deleted,
    format_transaction_updated,
)
from ledgerbot.ledger.models import Category, TransactionKind
from ledgerbot.ledger.repository import RecordNotFoundError
from ledgerbot.ledger.validation import validate_new_transaction, validate_update
from ledgerbot.tools.registry import ToolContext, ToolName, default_registry

logger = logging.getLogger(__name__)

# Joins successive utterances in ``original_message`` when a record is updated.
ORIGINAL_MESSAGE_SEPARATOR = " | "

_CENT = Decimal("0.01")

CATEGORY_VALUES: list[str] = [c.value for c in Category]


def _quantize(amount: Decimal) -> Decimal:
    return amount.quantize(_CENT) if amount.is_finite() else amount


def _check_cents(amount: Decimal | None) -> Decimal | None:
    """Reject amounts with digits below one cent; they would be rounded on storage."""
    if amount is None or not amount.is_finite():
        return amount
    _, digits, exponent = amount.as_tuple()
    if -exponent > 2 and any(digits[-(-exponent - 2):]):
        raise ValueError("金额最多保留两位小数")
    return amount


# ── Argument models ──────────────────────────────────────────────────────────


class RecordTransactionArgs(BaseModel):
    """Arguments of ``record_transaction``."""

    model_config = ConfigDict(populate_by_name=True)

    description: str
    amount: Decimal
    kind: Literal["expense", "income"] = Field(default="expense", alias="type")
    category: Category = Category.OTHER
    original_message: str | None = None

    @field_validator("amount")
    @classmethod
    def _cents_only(cls, v: Decimal) -> Decimal:
        return _check_cents(v)

    @field_validator("kind", mode="before")
    @classmethod
    def _lower_kind(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("category", mode="before")
    @classmethod
    def _coerce_category(cls, v: Any) -> Category:
        return Category.coerce(v if isinstance(v, str) else None)


class UpdateTransactionArgs(BaseModel):
    """Arguments of ``update_transaction``.  ``None`` means "leave unchanged"."""

    model_config = ConfigDict(populate_by_name=True)

    record_id: str = Field(min_length=1)
    description: str | None = None
    amount: Decimal | None = None
    kind: Literal["expense", "income"] | None = Field(default=None, alias="type")
    category: Category | None = None
    original_message: str | None = None

    @field_validator("amount")
    @classmethod
    def _cents_only(cls, v: Decimal | None) -> Decimal | None:
        return _check_cents(v)

    @field_validator("record_id", mode="before")
    @classmethod
    def _strip_record_id(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("kind", mode="before")
    @classmethod
    def _lower_kind(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower() or None
        return v

    @field_validator("category", mode="before")
    @classmethod
    def _coerce_category(cls, v: Any) -> Category | None:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return Category.coerce(v if isinstance(v, str) else None)

    def changes(self) -> dict[str, Any]:
        """Supplied fields other than ``original_message``, in storage form."""
        changes: dict[str, Any] = {}
        if self.description is not None:
            changes["description"] = self.description.strip()
        if self.amount is not None:
            changes["amount"] = _quantize(self.amount)
        if self.kind is not None:
            changes["kind"] = TransactionKind.from_label(self.kind).value
        if self.category is not None:
            changes["category"] = self.category.value
        return changes


class DeleteTransactionArgs(BaseModel):
    """Arguments of ``delete_transaction``."""

    record_id: str = Field(min_length=1)

    @field_validator("record_id", mode="before")
    @classmethod
    def _strip_record_id(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


# ── JSON Schemas for LLM tool calling ────────────────────────────────────────

RECORD_TRANSACTION_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "description": {
            "type": "string",
            "description": "What the money was for, e.g. '午饭' or '工资'.",
        },
        "amount": {
            "type": "number",
            "description": "Amount as a positive number with at most two decimal places.",
            "exclusiveMinimum": 0,
        },
        "type": {
            "type": "string",
            "enum": ["expense", "income"],
            "description": "Whether money was spent or received.",
        },
        "category": {
            "type": "string",
            "enum": CATEGORY_VALUES,
            "description": "Category, chosen automatically from the list.",
        },
        "original_message": {
            "type": "string",
            "description": "The part of the user's message describing this transaction.",
        },
    },
    "required": ["description", "amount", "type", "category"],
}

UPDATE_TRANSACTION_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "record_id": {
            "type": "string",
            "description": "ID of the record to change, as shown in an earlier reply.",
        },
        "description": {"type": "string", "description": "New description."},
        "amount": {
            "type": "number",
            "description": "New amount as a positive number with at most two decimal places.",
            "exclusiveMinimum": 0,
        },
        "type": {
            "type": "string",
            "enum": ["expense", "income"],
            "description": "New transaction type.",
        },
        "category": {
            "type": "string",
            "enum": CATEGORY_VALUES,
            "description": "New category.",
        },
        "original_message": {
            "type": "string",
            "description": "The user's message requesting the change.",
        },
    },
    "required": ["record_id"],
}

DELETE_TRANSACTION_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "record_id": {
            "type": "string",
            "description": "ID of the record to delete, as shown in an earlier reply.",
        },
    },
    "required": ["record_id"],
}


# ── Handlers ─────────────────────────────────────────────────────────────────


@default_registry.tool(
    name=ToolName.RECORD_TRANSACTION,
    description=(
        "Record one income or expense transaction for the current user. "
        "Call once per transaction mentioned in the message."
    ),
    parameters_schema=RECORD_TRANSACTION_SCHEMA,
    args_model=RecordTransactionArgs,
)
async def record_transaction(args: RecordTransactionArgs, ctx: ToolContext) -> dict:
    """Create a transaction dated now.

    Returns:
        ``{"record_id", "message"}`` on success, ``{"error"}`` when the
        description is blank, the amount is not positive, or the user is
        not identified.
    """
    amount = _quantize(args.amount)
    errors = validate_new_transaction(args.description, amount)
    if errors:
        return {"error": "，".join(errors)}
    if not ctx.user_name:
        return {"error": "未知用户"}

    entry = await ctx.ledger.create(
        description=args.description.strip(),
        amount=amount,
        kind=TransactionKind.from_label(args.kind),
        category=args.category.value,
        occurred_at=ctx.now(),
        user_name=ctx.user_name,
        original_message=(args.original_message or "").strip() or ctx.utterance,
    )
    logger.info("Recorded %s for %s", entry.record_id, ctx.user_name)
    return {"record_id": entry.record_id, "message": format_transaction_created(entry)}


@default_registry.tool(
    name=ToolName.UPDATE_TRANSACTION,
    description=(
        "Change fields of an existing transaction. Only pass the fields "
        "the user wants to change."
    ),
    parameters_schema=UPDATE_TRANSACTION_SCHEMA,
    args_model=UpdateTransactionArgs,
)
async def update_transaction(args: UpdateTransactionArgs, ctx: ToolContext) -> dict:
    """Apply a partial update.

    ``original_message`` is never overwritten: the new utterance is appended
    to what the record already holds.
    """
    changes = args.changes()
    errors = validate_update(changes)
    if errors:
        return {"error": "，".join(errors)}

    current = (args.original_message or "").strip() or ctx.utterance
    previous: str | None = None
    try:
        existing = await ctx.ledger.get(args.record_id)
        previous = existing.original_message
    except (RecordNotFoundError, SQLAlchemyError):
        logger.warning("Could not load %s before update", args.record_id, exc_info=True)
    changes["original_message"] = (
        f"{previous}{ORIGINAL_MESSAGE_SEPARATOR}{current}" if previous else current
    )

    try:
        entry = await ctx.ledger.update(args.record_id, changes)
    except RecordNotFoundError:
        return {"error": f"记录不存在：{args.record_id}"}

    logger.info("Updated %s (%s)", entry.record_id, ", ".join(sorted(changes)))
    return {"record_id": entry.record_id, "message": format_transaction_updated(entry)}


@default_registry.tool(
    name=ToolName.DELETE_TRANSACTION,
    description="Delete a transaction by its record ID.",
    parameters_schema=DELETE_TRANSACTION_SCHEMA,
    args_model=DeleteTransactionArgs,
)
async def delete_transaction(args: DeleteTransactionArgs, ctx: ToolContext) -> dict:
    try:
        await ctx.ledger.delete(args.record_id)
    except RecordNotFoundError:
        return {"error": f"记录不存在：{args.record_id}"}

    logger.info("Deleted %s", args.record_id)
    return {"record_id": args.record_id, "message": format_transaction_deleted(args.record_id)}
