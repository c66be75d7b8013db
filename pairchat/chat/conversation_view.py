# =============================================================================
# File: pairchat/chat/conversation_view.py
# Description: One user's live view of one conversation
# =============================================================================

"""
ConversationView - the surface handed to the presentation layer

Composes SyncController, Outbox, PresenceTracker and TypingTracker for a
single SessionContext. The message channel is shared by the controller and
the typing tracker through the ChannelRegistry.

Usage:
    async with ConversationView(session, repository, realtime, presence_store) as view:
        await view.send(MessageDraft.text("hi"))
        for message in view.messages():
            ...

close() is the explicit teardown used on logout: unsubscribe, write
offline, drop in-memory state.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import FrozenSet, Iterator, List, Optional

from pairchat.chat.enums import ConnectionState
from pairchat.chat.exceptions import MessageConflictError
from pairchat.chat.outbox import Outbox
from pairchat.chat.ports.backend_port import MessageRepositoryPort, PresenceStorePort, RealtimeClientPort
from pairchat.chat.presence import PresenceTracker, TypingTracker
from pairchat.chat.read_models import Message
from pairchat.chat.sync_controller import StoreListener, SyncController
from pairchat.chat.value_objects import MessageDraft, SessionContext
from pairchat.config.presence_config import PresenceConfig
from pairchat.config.sync_config import SyncConfig
from pairchat.infra.channel_registry import ChannelRegistry

log = logging.getLogger("pairchat.chat.conversation_view")


class ConversationView:
    """Live, ordered view of a conversation plus imperative mutations"""

    def __init__(
        self,
        session: SessionContext,
        repository: MessageRepositoryPort,
        realtime: RealtimeClientPort,
        presence_store: PresenceStorePort,
        sync_config: Optional[SyncConfig] = None,
        presence_config: Optional[PresenceConfig] = None,
        registry: Optional[ChannelRegistry] = None,
    ):
        self.session = session
        self.registry = registry or ChannelRegistry(realtime)
        self.controller = SyncController(session, repository, self.registry, config=sync_config)
        self.outbox = Outbox(session, repository, self.controller)
        self.presence = PresenceTracker(session, presence_store, config=presence_config)
        self.typing = TypingTracker(session, self.registry, config=presence_config)
        self._opened = False
        self._closed = False

    async def __aenter__(self) -> 'ConversationView':
        await self.open(wait_synced=True)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self, wait_synced: bool = False, timeout: Optional[float] = None) -> None:
        """Subscribe, load the snapshot and go online"""
        if self._closed:
            raise RuntimeError("ConversationView is closed")
        if self._opened:
            return
        self._opened = True

        await self.controller.start()
        await self.typing.start()
        await self.presence.start()
        log.info(f"Opened conversation {self.session.conversation_id} for {self.session.user_id}")

        if wait_synced:
            await self.controller.wait_synced(timeout)

    async def close(self) -> None:
        """
        Tear the view down without restarting anything.

        In-flight Outbox requests are not cancelled; their results are
        ignored. Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True

        self.outbox.close()
        await self.typing.stop()
        await self.controller.stop()
        await self.presence.stop()
        self.controller.reset()
        log.info(f"Closed conversation {self.session.conversation_id} for {self.session.user_id}")

    @property
    def state(self) -> ConnectionState:
        return self.controller.state

    @property
    def is_closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Rendering
    # =========================================================================

    def messages(self) -> List[Message]:
        """Visible messages in canonical order"""
        return self.controller.snapshot()

    def iter_messages(self) -> Iterator[Message]:
        return self.controller.iter_messages()

    def add_listener(self, listener: StoreListener) -> None:
        self.controller.add_listener(listener)

    def remove_listener(self, listener: StoreListener) -> None:
        self.controller.remove_listener(listener)

    # =========================================================================
    # Mutations
    # =========================================================================

    async def send(self, draft: MessageDraft) -> Message:
        await self.presence.record_activity()
        await self.typing.stop_typing()
        return await self.outbox.send(draft)

    async def edit(self, message_id: str, content: str) -> Message:
        await self.presence.record_activity()
        return await self.outbox.edit(message_id, content)

    async def remove(self, message_id: str) -> None:
        await self.presence.record_activity()
        await self.outbox.remove(message_id)

    async def react(self, message_id: str, emoji: str) -> Message:
        await self.presence.record_activity()
        return await self.outbox.react(message_id, emoji)

    async def mark_read(self, message_id: str) -> bool:
        return await self.outbox.mark_read(message_id)

    async def mark_visible_read(self) -> int:
        """
        Add the local user's receipt to every visible message from others.

        Returns:
            Number of receipts added
        """
        user_id = self.session.user_id
        pending = [
            m.id for m in self.controller.iter_messages()
            if m.sender_id != user_id and not m.is_read_by(user_id) and not m.is_provisional
        ]
        marked = 0
        for message_id in pending:
            try:
                if await self.outbox.mark_read(message_id):
                    marked += 1
            except MessageConflictError:
                continue
        return marked

    # =========================================================================
    # Typing and presence
    # =========================================================================

    async def start_typing(self) -> None:
        await self.presence.record_activity()
        await self.typing.start_typing()

    async def stop_typing(self) -> None:
        await self.typing.stop_typing()

    @property
    def typing_users(self) -> FrozenSet[str]:
        return self.typing.typing_users

    def typing_label(self) -> str:
        return self.typing.label()

    def is_online(self, user_id: str) -> bool:
        return self.presence.is_online(user_id)

    def last_seen(self, user_id: str) -> Optional[datetime]:
        return self.presence.last_seen(user_id)

    def describe_presence(self, user_id: str) -> str:
        return self.presence.describe(user_id)
