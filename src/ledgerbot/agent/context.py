"""Conversation context assembly.

Turns the raw messages of a reply thread plus the current inbound message
into the ordered, bounded chat history the model sees, and decides whether
the bot is being addressed at all.

Everything here is pure: fetching the thread is the caller's job, and a
thread that could not be fetched is simply passed as an empty list.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from ledgerbot.agent.llm_client import ChatMessage

# Feishu marks messages sent by a bot (including this one) with this sender type.
APP_SENDER_TYPE = "app"
DIRECT_CHAT_TYPE = "p2p"
# Only these chat types require an @-mention; anything else is handled like a direct chat.
GROUP_CHAT_TYPES = frozenset({"group", "pgroup", "sgroup"})


@dataclass(frozen=True)
class Mention:
    """An @-mention: ``key`` is the placeholder embedded in the text (``@_user_1``)."""

    key: str
    name: str


@dataclass
class ThreadMessage:
    """One message of a reply thread as returned by the chat platform."""

    sender_type: str
    content: str
    deleted: bool = False
    mentions: list[Mention] = field(default_factory=list)


@dataclass
class InboundMessage:
    """The message that triggered the current turn."""

    message_id: str
    sender_id: str
    text: str
    chat_type: str = DIRECT_CHAT_TYPE
    chat_id: str = ""
    mentions: list[Mention] = field(default_factory=list)
    thread_id: str | None = None
    root_id: str | None = None

    @property
    def is_direct(self) -> bool:
        return self.chat_type == DIRECT_CHAT_TYPE

    @property
    def needs_mention(self) -> bool:
        return self.chat_type in GROUP_CHAT_TYPES


@dataclass
class AssembledContext:
    """Result of :func:`assemble_context`."""

    text: str
    history: list[ChatMessage]
    addressed: bool


def mentions_bot(mentions: list[Mention], bot_name: str) -> bool:
    return any(m.name == bot_name for m in mentions)


def strip_mentions(text: str, mentions: list[Mention], bot_name: str) -> str:
    """Remove the bot's mention placeholders from *text* and trim it."""
    for mention in mentions:
        if mention.name == bot_name and mention.key:
            text = text.replace(mention.key, "")
    return text.strip()


def message_text(content: str) -> str | None:
    """Extract ``text`` from a JSON message body, or ``None`` if there is none."""
    try:
        payload = json.loads(content)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    text = payload.get("text")
    return text if isinstance(text, str) else None


def assemble_context(
    inbound: InboundMessage,
    thread: list[ThreadMessage],
    *,
    bot_name: str,
    history_limit: int,
) -> AssembledContext:
    """Build the model history for *inbound* and decide whether to respond.

    Args:
        inbound: The current message.  ``inbound.text`` is the raw text,
            mention placeholders included.
        thread: Messages of the reply thread, oldest first; may include the
            current message.  Empty when the message is not in a thread or
            the thread could not be fetched.
        bot_name: Display name the bot is mentioned by.
        history_limit: Maximum number of turns in the returned history.

    Returns:
        An :class:`AssembledContext`.  ``history`` is oldest first, never
        empty, and its last user turn carries the stripped current text.
    """
    current_text = strip_mentions(inbound.text, inbound.mentions, bot_name)

    if not inbound.needs_mention:
        addressed = True
    else:
        addressed = mentions_bot(inbound.mentions, bot_name) or (
            bool(thread) and mentions_bot(thread[0].mentions, bot_name)
        )

    history: list[ChatMessage] = []
    for message in thread:
        if message.deleted:
            continue
        text = message_text(message.content)
        if text is None:
            continue
        text = strip_mentions(text, message.mentions, bot_name)
        if not text:
            continue
        role = "assistant" if message.sender_type == APP_SENDER_TYPE else "user"
        history.append(ChatMessage(role=role, content=text))

    limit = max(history_limit, 1)
    history = history[-limit:]

    for turn in reversed(history):
        if turn.role == "user":
            turn.content = current_text
            break
    else:
        history.append(ChatMessage(role="user", content=current_text))
        history = history[-limit:]

    return AssembledContext(text=current_text, history=history, addressed=addressed)
