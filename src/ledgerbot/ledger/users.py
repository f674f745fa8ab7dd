"""Sender ID → display name mapping.

A user is "identified" once they have told the bot what to call them.  Until
then :meth:`UserIdentityStore.get_name` raises :class:`UserNotFoundError` and
the agent only lets them rename themselves.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerbot.ledger.models import UserMapping
from ledgerbot.ledger.repository import SessionFactory

logger = logging.getLogger(__name__)


class UserNotFoundError(LookupError):
    """Raised when a sender has no display name on record."""

    def __init__(self, sender_id: str) -> None:
        super().__init__(f"no display name for sender {sender_id}")
        self.sender_id = sender_id


class InvalidNameError(ValueError):
    """Raised when a display name is empty or whitespace only."""


class UserIdentityStore(Protocol):
    """Lookup and update of user display names."""

    async def get_name(self, sender_id: str) -> str: ...

    async def set_name(self, sender_id: str, name: str) -> str: ...


def normalize_name(name: str) -> str:
    """Trim *name*, rejecting blank values.

    Raises:
        InvalidNameError: If nothing is left after trimming.
    """
    cleaned = (name or "").strip()
    if not cleaned:
        raise InvalidNameError("name must not be empty")
    return cleaned


# ── Persistence ──────────────────────────────────────────────────────────────


async def get_user_mapping(session: AsyncSession, sender_id: str) -> UserMapping | None:
    """Fetch the mapping row for *sender_id*, if any."""
    result = await session.execute(
        select(UserMapping).where(UserMapping.sender_id == sender_id)
    )
    return result.scalar_one_or_none()


async def save_user_mapping(
    session: AsyncSession,
    sender_id: str,
    user_name: str,
) -> UserMapping:
    """Insert or update the display name for *sender_id*."""
    mapping = await get_user_mapping(session, sender_id)
    if mapping is None:
        mapping = UserMapping(sender_id=sender_id, user_name=user_name)
        session.add(mapping)
    else:
        mapping.user_name = user_name
    await session.flush()
    return mapping


class SqlUserIdentityStore:
    """:class:`UserIdentityStore` backed by the ``user_mappings`` table.

    Renames are read-modify-write, so concurrent updates are serialized
    under a lock shared by every caller of this instance.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    async def get_name(self, sender_id: str) -> str:
        async with self._session_factory() as session:
            mapping = await get_user_mapping(session, sender_id)
        if mapping is None or not mapping.user_name.strip():
            raise UserNotFoundError(sender_id)
        return mapping.user_name

    async def set_name(self, sender_id: str, name: str) -> str:
        cleaned = normalize_name(name)
        async with self._lock:
            async with self._session_factory() as session:
                await save_user_mapping(session, sender_id, cleaned)
        logger.info("Sender %s is now known as %r", sender_id, cleaned)
        return cleaned
