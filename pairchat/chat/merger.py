# =============================================================================
# File: pairchat/chat/merger.py
# Description: Read-receipt and reaction merge functions
# =============================================================================

"""
Commutative, idempotent mutations on a Message's set-valued fields.

- read_by is a grow-only set: merging is set union.
- reactions[emoji] grows by union, shrinks only by an explicit single-user
  toggle-off; an emoji whose set becomes empty is dropped.

Every function returns the same instance when nothing changes, so callers
can detect no-ops with an identity check.
"""

from __future__ import annotations

from typing import Dict, FrozenSet

from pairchat.chat.read_models import Message


def mark_read(message: Message, user_id: str) -> Message:
    """Union user_id into read_by. Repeated calls are no-ops."""
    if user_id in message.read_by:
        return message
    return message.model_copy(update={"read_by": message.read_by | {user_id}})


def toggle_reaction(message: Message, user_id: str, emoji: str) -> Message:
    """Flip membership of user_id in reactions[emoji]."""
    reactions: Dict[str, FrozenSet[str]] = dict(message.reactions)
    users = reactions.get(emoji, frozenset())

    if user_id in users:
        users = users - {user_id}
    else:
        users = users | {user_id}

    if users:
        reactions[emoji] = users
    else:
        reactions.pop(emoji, None)

    return message.model_copy(update={"reactions": reactions})


def has_reacted(message: Message, user_id: str, emoji: str) -> bool:
    return user_id in message.reactions.get(emoji, ())


def merge_read_by(held: Message, incoming: Message) -> Message:
    """Carry every receipt known on either side onto the incoming copy."""
    if held.read_by <= incoming.read_by:
        return incoming
    return incoming.model_copy(update={"read_by": held.read_by | incoming.read_by})


def is_stale(held: Message, incoming: Message) -> bool:
    """
    True when incoming is strictly older than held.

    Revision counters win when both sides carry one; otherwise the
    wall-clock updated_at (falling back to created_at) is compared.
    Equal revisions are not stale.
    """
    if held.revision is not None and incoming.revision is not None:
        return incoming.revision < held.revision
    return incoming.last_modified < held.last_modified
