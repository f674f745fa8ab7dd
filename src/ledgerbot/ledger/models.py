"""SQLAlchemy ORM models for the LedgerBot database.

All tables use UUID primary keys, TIMESTAMPTZ timestamps, and DECIMAL for
monetary values.  Transactions additionally carry a short ``record_id`` that
is shown to users and used to address a record in later messages.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Integer,
    Numeric,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class TransactionKind(StrEnum):
    """Direction of money flow for a transaction."""

    EXPENSE = "Expense"
    INCOME = "Income"

    @classmethod
    def from_label(cls, label: str) -> "TransactionKind":
        """Map the model-facing ``"expense"`` / ``"income"`` label to a kind."""
        if label.strip().lower() == "income":
            return cls.INCOME
        return cls.EXPENSE


class Category(StrEnum):
    """Closed set of transaction categories (values are the stored labels)."""

    FOOD = "餐饮"
    TRANSPORT = "交通"
    SHOPPING = "购物"
    ENTERTAINMENT = "娱乐"
    MEDICAL = "医疗"
    EDUCATION = "教育"
    HOUSING = "住房"
    UTILITIES = "水电"
    COMMUNICATION = "通讯"
    CLOTHING = "服饰"
    INCOME = "收入"
    OTHER = "其他"

    @classmethod
    def coerce(cls, label: str | None) -> "Category":
        """Match a label or member name; anything else is ``OTHER``."""
        text = (label or "").strip()
        for member in cls:
            if text == member.value or text.lower() == member.name.lower():
                return member
        return cls.OTHER


class Base(DeclarativeBase):
    """Shared declarative base for all LedgerBot models."""


# ── Core tables ───────────────────────────────────────────────────────────────


class Transaction(Base):
    """A single income or expense record owned by a named user."""

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    record_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False, server_default=Category.OTHER.value)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    user_name: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    original_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "kind IN ('Expense', 'Income')",
            name="ck_transactions_kind",
        ),
    )


class UserMapping(Base):
    """Maps a chat sender ID to the display name the user chose."""

    __tablename__ = "user_mappings"

    sender_id: Mapped[str] = mapped_column(Text, primary_key=True)
    user_name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("length(trim(user_name)) > 0", name="ck_user_mappings_name_not_blank"),
    )


# ── Observability tables ──────────────────────────────────────────────────────


class LLMCall(Base):
    """Logging for every LLM invocation."""

    __tablename__ = "llm_calls"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(Text, nullable=False)
    input_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tool_call_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    succeeded: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true")
    cost_usd: Mapped[Decimal | None] = mapped_column(Numeric(8, 6), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class FailureLog(Base):
    """Persisted failure log for post-mortem debugging.

    Every turn that ends in a user-facing error reply is recorded here with
    the original input, the reply sent, the full traceback, and a short
    source label for filtering.
    """

    __tablename__ = "failure_log"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    sender_id: Mapped[str] = mapped_column(Text, nullable=False)
    user_input: Mapped[str] = mapped_column(Text, nullable=False)
    error_reply: Mapped[str] = mapped_column(Text, nullable=False)
    traceback: Mapped[str] = mapped_column(Text, nullable=False)
    failure_source: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
