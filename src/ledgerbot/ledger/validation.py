"""Transaction validation rules.

Provides :func:`validate_new_transaction` and :func:`validate_update`, which
check a proposed change before it reaches the repository.

Validation errors are returned as a list of human-readable strings (in the
bot's reply language).  An empty list means the change is valid.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


def validate_new_transaction(description: str | None, amount: Decimal | None) -> list[str]:
    """Validate the fields required to record a transaction.

    Args:
        description: What the money was for.  Must not be blank.
        amount: Monetary amount.  Must be strictly positive.

    Returns:
        A list of validation error strings.  Empty means valid.
    """
    errors: list[str] = []

    if not (description or "").strip():
        errors.append("描述不能为空")

    if amount is None or not amount.is_finite() or amount <= 0:
        errors.append("金额必须大于0")

    return errors


def validate_update(changes: dict[str, Any]) -> list[str]:
    """Validate a partial update.

    ``original_message`` alone does not count as a change: at least one of
    the other fields must be present.
    """
    errors: list[str] = []

    substantive = {k: v for k, v in changes.items() if k != "original_message"}
    if not substantive:
        errors.append("请至少提供一个要修改的字段")
        return errors

    if "description" in substantive and not (substantive["description"] or "").strip():
        errors.append("描述不能为空")

    if "amount" in substantive:
        amount = substantive["amount"]
        if amount is None or not amount.is_finite() or amount <= 0:
            errors.append("金额必须大于0")

    return errors
