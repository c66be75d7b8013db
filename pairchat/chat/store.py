# =============================================================================
# File: pairchat/chat/store.py
# Description: Client-local ordered message cache
# =============================================================================

from __future__ import annotations

import bisect
import logging
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from pairchat.chat.exceptions import MessageNotFoundError
from pairchat.chat.read_models import Message

log = logging.getLogger("pairchat.chat.store")


class MessageStore:
    """
    Ordered cache of one conversation's messages.

    Invariants:
    - at most one live entry per id
    - tombstoned ids are remembered for the lifetime of the store, so a
      late "created" delivery cannot bring them back
    - iteration order is (created_at, id) ascending
    - hidden ids (optimistic remove pending) stay in the store but are not
      rendered

    Not thread-safe; callers serialize access (see SyncController.lock).
    """

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self._messages: Dict[str, Message] = {}
        self._order: List[Tuple[datetime, str]] = []
        self._tombstones: Set[str] = set()
        self._hidden: Set[str] = set()
        self._version = 0

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def version(self) -> int:
        """Incremented on every change"""
        return self._version

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages

    def get(self, message_id: str) -> Optional[Message]:
        return self._messages.get(message_id)

    def require(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        return message

    def is_tombstoned(self, message_id: str) -> bool:
        return message_id in self._tombstones

    def is_known(self, message_id: str) -> bool:
        """Live or tombstoned"""
        return message_id in self._messages or message_id in self._tombstones

    def is_hidden(self, message_id: str) -> bool:
        return message_id in self._hidden

    @property
    def tombstones(self) -> frozenset:
        return frozenset(self._tombstones)

    def iter_visible(self) -> Iterator[Message]:
        """
        Lazily walk visible messages in canonical order.

        Each call starts a fresh walk; the store must not be mutated while
        a walk is in progress.
        """
        for _, message_id in self._order:
            if message_id not in self._hidden:
                yield self._messages[message_id]

    def snapshot(self) -> List[Message]:
        """Visible messages in canonical order"""
        return list(self.iter_visible())

    def provisional(self) -> List[Message]:
        """Entries created locally whose send is not yet acknowledged"""
        return [m for m in self._messages.values() if m.is_provisional]

    # =========================================================================
    # Mutations
    # =========================================================================

    def insert(self, message: Message) -> bool:
        """
        Add a message unless its id is already known.

        A message that arrives already deleted is recorded as a tombstone.

        Returns:
            True if the store changed
        """
        if self.is_known(message.id):
            return False
        if message.is_deleted:
            self._tombstones.add(message.id)
            self._bump()
            return True

        self._messages[message.id] = message
        bisect.insort(self._order, message.sort_key)
        self._bump()
        return True

    def replace(self, message: Message) -> None:
        """Swap the held copy of a live message for a newer one"""
        held = self.require(message.id)
        if message.is_deleted:
            self.tombstone(message.id)
            return

        if held.sort_key != message.sort_key:
            self._unlink(held)
            bisect.insort(self._order, message.sort_key)
        self._messages[message.id] = message
        self._bump()

    def tombstone(self, message_id: str) -> bool:
        """
        Drop a live entry and remember its id as deleted.

        Returns:
            True if the store changed
        """
        if message_id in self._tombstones:
            return False

        held = self._messages.pop(message_id, None)
        if held is not None:
            self._unlink(held)
        self._hidden.discard(message_id)
        self._tombstones.add(message_id)
        self._bump()
        return True

    def discard(self, message_id: str) -> bool:
        """
        Forget a live entry without tombstoning it.

        Only for provisional entries that were never persisted.
        """
        held = self._messages.pop(message_id, None)
        if held is None:
            return False
        self._unlink(held)
        self._hidden.discard(message_id)
        self._bump()
        return True

    def rekey(self, old_id: str, message: Message) -> None:
        """Replace a provisional entry with the persisted copy under its server id"""
        self.discard(old_id)
        if message.id in self._messages:
            self.replace(message)
        else:
            self.insert(message)

    def hide(self, message_id: str) -> None:
        self.require(message_id)
        if message_id not in self._hidden:
            self._hidden.add(message_id)
            self._bump()

    def unhide(self, message_id: str) -> None:
        if message_id in self._hidden:
            self._hidden.discard(message_id)
            self._bump()

    def reset(self, messages: Iterable[Message], keep: Iterable[Message] = ()) -> None:
        """
        Replace the store wholesale with an authoritative snapshot.

        Tombstones survive the reset. Entries in keep (pending provisional
        sends) are re-added when the snapshot does not already hold them.
        Hidden ids stay hidden if the snapshot still holds them.
        """
        hidden = set(self._hidden)
        self._messages.clear()
        self._order.clear()
        self._hidden.clear()

        for message in messages:
            if message.conversation_id != self.conversation_id:
                log.warning(f"Snapshot row {message.id} belongs to {message.conversation_id}, skipped")
                continue
            self.insert(message)
        for message in keep:
            self.insert(message)

        self._hidden = {message_id for message_id in hidden if message_id in self._messages}

        self._bump()
        log.debug(f"Store for {self.conversation_id} reset with {len(self._messages)} messages")

    def clear(self) -> None:
        """Drop everything, including tombstones"""
        self._messages.clear()
        self._order.clear()
        self._hidden.clear()
        self._tombstones.clear()
        self._bump()

    # =========================================================================
    # Internals
    # =========================================================================

    def _unlink(self, message: Message) -> None:
        index = bisect.bisect_left(self._order, message.sort_key)
        if index < len(self._order) and self._order[index] == message.sort_key:
            del self._order[index]

    def _bump(self) -> None:
        self._version += 1
