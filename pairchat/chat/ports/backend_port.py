# =============================================================================
# File: pairchat/chat/ports/backend_port.py
# Description: Port interfaces for the hosted realtime backend
# Pattern: Hexagonal Architecture / Ports & Adapters
# =============================================================================

from __future__ import annotations

from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Set, runtime_checkable


@runtime_checkable
class MessageRepositoryPort(Protocol):
    """
    Port: durable message table

    Defined by: Chat Domain
    Implemented by: the hosted database client (tests: FakeMessageRepository)

    Rows are plain dicts; the Chat domain validates them into Message
    models at the boundary.
    """

    async def insert(self, row: Dict[str, Any]) -> str:
        """
        Persist a new message row.

        Args:
            row: Message row, including the client-issued id

        Returns:
            The id the row was stored under (may differ from row["id"])
        """
        ...

    async def update(self, message_id: str, fields: Dict[str, Any]) -> None:
        """
        Apply a partial update to a message row.

        Args:
            message_id: Row id
            fields: Columns to overwrite. Set-valued columns go through
                set_reaction and add_reader instead
        """
        ...

    async def set_reaction(self, message_id: str, emoji: str, user_id: str, present: bool) -> None:
        """
        Add or remove one user in the stored reactions[emoji] set.

        Applied to the row as a set operation, so concurrent reactions by
        other users are kept. Repeating the call is a no-op.
        """
        ...

    async def add_reader(self, message_id: str, user_id: str) -> None:
        """Union user_id into the stored read_by set"""
        ...

    async def query(self, conversation_id: str, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Load a conversation's messages.

        Returns:
            Rows ordered by created_at ascending, tombstoned rows excluded
        """
        ...


@runtime_checkable
class RealtimeChannelPort(Protocol):
    """
    Port: one named realtime channel

    Carries the change feed for a conversation and an ephemeral membership
    set used for typing presence. Membership of a client is retracted by
    the backend when its session disconnects.
    """

    name: str

    def events(self) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream raw change notifications (at-least-once, unordered across ids).

        Raises:
            ChannelDisconnectError: the stream dropped
        """
        ...

    async def track(self, user_id: str) -> None:
        """Join the membership set"""
        ...

    async def untrack(self) -> None:
        """Leave the membership set"""
        ...

    def on_sync(self, callback: Callable[[Set[str]], None]) -> None:
        """Full membership snapshot callback"""
        ...

    def on_join(self, callback: Callable[[str], None]) -> None:
        ...

    def on_leave(self, callback: Callable[[str], None]) -> None:
        ...

    async def close(self) -> None:
        """Unsubscribe and release the transport"""
        ...


@runtime_checkable
class RealtimeClientPort(Protocol):
    """Port: factory for realtime channels"""

    def channel(self, name: str) -> RealtimeChannelPort:
        ...


@runtime_checkable
class PresenceStorePort(Protocol):
    """
    Port: key-value store for presence records, keyed by user_id
    """

    async def upsert(self, row: Dict[str, Any]) -> None:
        """Insert or overwrite the record for row["user_id"]"""
        ...

    async def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        ...

    def watch(self, user_ids: List[str]) -> AsyncIterator[Dict[str, Any]]:
        """Stream record changes for the given users"""
        ...
