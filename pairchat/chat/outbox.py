# =============================================================================
# File: pairchat/chat/outbox.py
# Description: Optimistic writer for local message mutations
# =============================================================================

"""
Outbox - optimistic mutations with confirm-or-rollback

Every operation follows the same three steps:
    1. under the store lock: apply the optimistic change
    2. without the lock: await the persist acknowledgment
    3. under the store lock: confirm, or roll back and raise TransientIOError

The authoritative copy delivered later through the SyncController is final.
After close(), acknowledgments still in flight are ignored.

ID Strategy:
- The message id is issued here, written on the provisional entry and sent
  as both id and client_temp_id with the insert.
- If the backend stores the row under another id, the provisional entry is
  re-keyed on acknowledgment, or collapsed by the SyncController when the
  "created" event naming client_temp_id arrives first.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Optional, Set

from pairchat.chat.enums import DeliveryStatus, OutboxOperation
from pairchat.chat.exceptions import InvalidDraftError, MessageConflictError, TransientIOError
from pairchat.chat.merger import has_reacted, mark_read, toggle_reaction
from pairchat.chat.ports.backend_port import MessageRepositoryPort
from pairchat.chat.read_models import Message
from pairchat.chat.sync_controller import SyncController
from pairchat.chat.value_objects import MessageDraft, SessionContext
from pairchat.utils.datetime_utils import utc_now
from pairchat.utils.uuid_utils import generate_message_id

log = logging.getLogger("pairchat.chat.outbox")


class Outbox:
    """Issues optimistic mutations against a SyncController's store"""

    def __init__(
        self,
        session: SessionContext,
        repository: MessageRepositoryPort,
        controller: SyncController,
    ):
        self.session = session
        self.repository = repository
        self.controller = controller
        self._in_flight: Set[str] = set()
        self._closed = False
        self._log_extra = {"user_id": session.user_id, "conversation_id": session.conversation_id}

    @property
    def store(self):
        return self.controller.store

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def close(self) -> None:
        """Discard callbacks of requests still in flight"""
        self._closed = True

    # =========================================================================
    # Send
    # =========================================================================

    async def send(self, draft: MessageDraft) -> Message:
        """
        Show a provisional message immediately and persist it.

        Returns:
            The message as held after acknowledgment

        Raises:
            TransientIOError: persist failed; the provisional entry is gone
                and the draft is attached for the caller to restore
        """
        message_id = generate_message_id()
        provisional = Message(
            id=message_id,
            conversation_id=self.session.conversation_id,
            sender_id=self.session.user_id,
            content=draft.content,
            attachment_ref=draft.attachment_ref,
            kind=draft.kind,
            created_at=utc_now(),
            reply_to_id=draft.reply_to_id,
            client_temp_id=message_id,
            delivery_status=DeliveryStatus.SENDING,
        )

        async with self.controller.lock:
            self.store.insert(provisional)
        self.controller.notify_changed()

        self._in_flight.add(message_id)
        try:
            server_id = await self.repository.insert(provisional.to_row())
        except Exception as e:
            self._in_flight.discard(message_id)
            await self._rollback_send(message_id)
            log.warning(
                f"Send {message_id} failed, provisional entry removed: {e}",
                extra={**self._log_extra, "message_id": message_id},
            )
            raise TransientIOError(OutboxOperation.SEND, message_id, e, draft=draft) from e
        self._in_flight.discard(message_id)

        if self._closed:
            return provisional

        async with self.controller.lock:
            confirmed = self._confirm_send(message_id, server_id or message_id)
        self.controller.notify_changed()
        return confirmed or provisional

    def _confirm_send(self, temp_id: str, server_id: str) -> Optional[Message]:
        held = self.store.get(temp_id)

        if held is None or not held.is_provisional:
            # Already collapsed by the "created" delivery
            return self.store.get(server_id)

        if server_id == temp_id:
            confirmed = held.model_copy(update={"delivery_status": DeliveryStatus.SENT})
            self.store.replace(confirmed)
            return confirmed

        if server_id in self.store or self.store.is_tombstoned(server_id):
            self.store.discard(temp_id)
            return self.store.get(server_id)

        confirmed = held.model_copy(update={"id": server_id, "delivery_status": DeliveryStatus.SENT})
        self.store.rekey(temp_id, confirmed)
        log.debug(f"Provisional {temp_id} re-keyed to {server_id}", extra={**self._log_extra, "message_id": server_id})
        return confirmed

    async def _rollback_send(self, message_id: str) -> None:
        if self._closed:
            return
        async with self.controller.lock:
            held = self.store.get(message_id)
            if held is not None and held.is_provisional:
                self.store.discard(message_id)
        self.controller.notify_changed()

    # =========================================================================
    # Remove
    # =========================================================================

    async def remove(self, message_id: str) -> None:
        """
        Soft-delete a message. It is hidden at once and tombstoned on
        acknowledgment; on failure it becomes visible again.
        """
        async with self.controller.lock:
            self._require_live(message_id, "delete")
            self.store.hide(message_id)
        self.controller.notify_changed()

        now = utc_now()
        fields = {"deleted_at": now.isoformat(), "deleted_by": self.session.user_id}
        try:
            await self._persist(OutboxOperation.REMOVE, message_id, self.repository.update(message_id, fields))
        except TransientIOError:
            if not self._closed:
                async with self.controller.lock:
                    self.store.unhide(message_id)
                self.controller.notify_changed()
            raise

        if self._closed:
            return
        async with self.controller.lock:
            self.store.tombstone(message_id)
        self.controller.notify_changed()

    # =========================================================================
    # Edit
    # =========================================================================

    async def edit(self, message_id: str, content: str) -> Message:
        """Replace content optimistically; revert to the prior content on failure"""
        content = content.strip()
        if not content:
            raise InvalidDraftError("Edited content cannot be empty")

        async with self.controller.lock:
            prior = self._require_live(message_id, "edit")
            edited = prior.model_copy(update={"content": content, "updated_at": utc_now()})
            self.store.replace(edited)
        self.controller.notify_changed()

        fields = {"content": content, "updated_at": edited.updated_at.isoformat()}
        try:
            await self._persist(OutboxOperation.EDIT, message_id, self.repository.update(message_id, fields))
        except TransientIOError:
            if not self._closed:
                async with self.controller.lock:
                    held = self.store.get(message_id)
                    # Only undo our own change, not a newer remote edit
                    if held is not None and held.content == edited.content:
                        self.store.replace(held.model_copy(update={
                            "content": prior.content,
                            "updated_at": prior.updated_at,
                        }))
                self.controller.notify_changed()
            raise
        return edited

    # =========================================================================
    # React
    # =========================================================================

    async def react(self, message_id: str, emoji: str) -> Message:
        """
        Toggle the local user's reaction.

        The toggle is computed against the store as it is now, so rapid
        toggles each flip the latest state. Rollback toggles again rather
        than restoring a snapshot.
        """
        user_id = self.session.user_id
        async with self.controller.lock:
            held = self._require_live(message_id, "react to")
            toggled = toggle_reaction(held, user_id, emoji)
            self.store.replace(toggled)
            present = has_reacted(toggled, user_id, emoji)
        self.controller.notify_changed()

        try:
            await self._persist(
                OutboxOperation.REACT, message_id,
                self.repository.set_reaction(message_id, emoji, user_id, present),
            )
        except TransientIOError:
            if not self._closed:
                async with self.controller.lock:
                    current = self.store.get(message_id)
                    if current is not None and has_reacted(current, user_id, emoji) == present:
                        self.store.replace(toggle_reaction(current, user_id, emoji))
                self.controller.notify_changed()
            raise
        return toggled

    # =========================================================================
    # Read receipts
    # =========================================================================

    async def mark_read(self, message_id: str, user_id: Optional[str] = None) -> bool:
        """
        Add a read receipt. Receipts only grow, so a failed persist keeps
        the local receipt and raises for the caller to retry.

        Returns:
            False if the receipt was already present
        """
        user_id = user_id or self.session.user_id
        async with self.controller.lock:
            held = self._require_live(message_id, "mark read")
            updated = mark_read(held, user_id)
            if updated is held:
                return False
            self.store.replace(updated)
        self.controller.notify_changed()

        await self._persist(OutboxOperation.MARK_READ, message_id, self.repository.add_reader(message_id, user_id))
        return True

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_live(self, message_id: str, action: str) -> Message:
        held = self.store.get(message_id)
        if held is None or self.store.is_hidden(message_id):
            log.info(f"Cannot {action} {message_id}: not present", extra={**self._log_extra, "message_id": message_id})
            raise MessageConflictError(message_id, action)
        if held.is_provisional:
            raise MessageConflictError(message_id, f"{action} unsent")
        return held

    async def _persist(self, operation: OutboxOperation, message_id: str, request: Awaitable[None]) -> None:
        key = f"{operation.value}:{message_id}"
        self._in_flight.add(key)
        try:
            await request
        except Exception as e:
            log.warning(f"{operation.value} {message_id} failed: {e}", extra={**self._log_extra, "message_id": message_id})
            raise TransientIOError(operation, message_id, e) from e
        finally:
            self._in_flight.discard(key)

