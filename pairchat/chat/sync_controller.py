# =============================================================================
# File: pairchat/chat/sync_controller.py
# Description: Deduplicating, order-correct projection of a conversation
# =============================================================================

"""
SyncController - notification stream -> MessageStore

Data flow:
    backend change feed -> parse_event() -> apply()
                                              |
                        Synced? --no--> buffer (replayed after resync)
                                              |
                                   created / mutated merge
                                              |
                                         MessageStore -> listeners

State machine:
    Disconnected -> Connecting -> Synced -> Degraded -> Resyncing -> Synced

Only Synced trusts incremental notifications. Any channel drop or stream
error moves the controller to Degraded; the snapshot is then reloaded
from the durable store and replaces the local store wholesale before
incremental mode resumes.

Every mutation path (notifications, Outbox confirmation/rollback, local
receipts and reactions) runs under the same asyncio.Lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Union

from pydantic import ValidationError

from pairchat.chat.enums import ConnectionState
from pairchat.chat.events import Created, Mutated, parse_event
from pairchat.chat.exceptions import (
    ChannelDisconnectError,
    InvalidEventError,
    InvalidStateTransitionError,
    StaleDeliveryError,
)
from pairchat.chat.merger import is_stale, merge_read_by
from pairchat.chat.ports.backend_port import MessageRepositoryPort, RealtimeChannelPort
from pairchat.chat.read_models import Message
from pairchat.chat.store import MessageStore
from pairchat.chat.value_objects import SessionContext
from pairchat.config.sync_config import SyncConfig, get_sync_config
from pairchat.infra.channel_registry import ChannelRegistry

log = logging.getLogger("pairchat.chat.sync_controller")

ChatEventT = Union[Created, Mutated]
StoreListener = Callable[[List[Message]], None]

_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.SYNCED, ConnectionState.DEGRADED, ConnectionState.DISCONNECTED},
    ConnectionState.SYNCED: {ConnectionState.DEGRADED, ConnectionState.DISCONNECTED},
    ConnectionState.DEGRADED: {ConnectionState.RESYNCING, ConnectionState.DISCONNECTED},
    ConnectionState.RESYNCING: {ConnectionState.SYNCED, ConnectionState.DEGRADED, ConnectionState.DISCONNECTED},
}


class SyncController:
    """Keeps one conversation's MessageStore consistent with the backend"""

    def __init__(
        self,
        session: SessionContext,
        repository: MessageRepositoryPort,
        registry: ChannelRegistry,
        store: Optional[MessageStore] = None,
        config: Optional[SyncConfig] = None,
    ):
        self.session = session
        self.repository = repository
        self.registry = registry
        self.config = config or get_sync_config()
        self.store = store or MessageStore(session.conversation_id)
        self.lock = asyncio.Lock()

        self._state = ConnectionState.DISCONNECTED
        self._buffer: Deque[ChatEventT] = deque(maxlen=self.config.max_buffered_events)
        self._listeners: List[StoreListener] = []
        self._channel: Optional[RealtimeChannelPort] = None
        self._run_task: Optional[asyncio.Task] = None
        self._closing = False
        self._overflowed = False
        self._synced = asyncio.Event()
        self._log_extra = {"user_id": session.user_id, "conversation_id": session.conversation_id}

        # Stats
        self.applied_count = 0
        self.duplicate_count = 0
        self.stale_count = 0
        self.tombstoned_count = 0
        self.invalid_count = 0
        self.buffered_count = 0
        self.dropped_count = 0
        self.resync_count = 0

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_synced(self) -> bool:
        return self._state == ConnectionState.SYNCED

    def _transition(self, target: ConnectionState) -> None:
        if target == self._state:
            return
        if target not in _TRANSITIONS[self._state]:
            raise InvalidStateTransitionError(self._state, target)
        log.info(f"[{self.session.conversation_id}] {self._state.value} -> {target.value}", extra=self._log_extra)
        self._state = target
        if target == ConnectionState.SYNCED:
            self._synced.set()
        else:
            self._synced.clear()

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_listener(self, listener: StoreListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StoreListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def notify_changed(self) -> None:
        """Push the current snapshot to every listener"""
        if not self._listeners:
            return
        snapshot = self.store.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                log.error(f"Store listener failed: {e}", exc_info=True)

    # =========================================================================
    # Rendering surface
    # =========================================================================

    def snapshot(self) -> List[Message]:
        """Visible messages in (created_at, id) order"""
        return self.store.snapshot()

    def iter_messages(self) -> Iterator[Message]:
        """Lazy, restartable walk over the visible messages"""
        return self.store.iter_visible()

    # =========================================================================
    # Incremental merge
    # =========================================================================

    async def handle_payload(self, payload: Dict[str, Any]) -> bool:
        """Validate a raw backend payload and apply it"""
        try:
            event = parse_event(payload, conversation_id=self.session.conversation_id)
        except InvalidEventError as e:
            self.invalid_count += 1
            log.warning(f"Dropping invalid event: {e}", extra=self._log_extra)
            return False
        return await self.apply(event)

    async def apply(self, event: ChatEventT) -> bool:
        """
        Apply a typed event, or buffer it while not Synced.

        Returns:
            True if the store changed
        """
        async with self.lock:
            if not self.is_synced:
                self._buffer_event(event)
                return False
            changed = self._apply_locked(event)

        if changed:
            self.notify_changed()
        return changed

    async def on_created(self, message: Message) -> bool:
        """Merge a "created" delivery. Idempotent."""
        async with self.lock:
            changed = self._on_created_locked(message)
        if changed:
            self.notify_changed()
        return changed

    async def on_mutated(self, message: Message) -> bool:
        """Merge a "mutated" delivery. Tombstones win; stale copies are ignored."""
        async with self.lock:
            changed = self._on_mutated_locked(message)
        if changed:
            self.notify_changed()
        return changed

    def _buffer_event(self, event: ChatEventT) -> None:
        if len(self._buffer) == self._buffer.maxlen:
            # The snapshot in progress may predate the dropped event
            self._overflowed = True
            self.dropped_count += 1
            log.warning(
                f"Resync buffer full ({self._buffer.maxlen}), dropping oldest event "
                f"for {self.session.conversation_id}",
                extra=self._log_extra,
            )
        self._buffer.append(event)
        self.buffered_count += 1

    def _apply_locked(self, event: ChatEventT) -> bool:
        if isinstance(event, Created):
            return self._on_created_locked(event.message)
        return self._on_mutated_locked(event.message)

    def _on_created_locked(self, message: Message) -> bool:
        held = self.store.get(message.id)

        # Echo of our own send under the shared id
        if held is not None and held.is_provisional:
            self.store.replace(merge_read_by(held, message))
            self.applied_count += 1
            return True

        if self.store.is_known(message.id):
            self.duplicate_count += 1
            log.debug(f"Duplicate created for {message.id} ignored")
            return False

        if self._collapse_provisional(message):
            return True

        changed = self.store.insert(message)
        if changed:
            if message.is_deleted:
                self.tombstoned_count += 1
            else:
                self.applied_count += 1
        return changed

    def _on_mutated_locked(self, message: Message) -> bool:
        if message.is_deleted:
            changed = self.store.tombstone(message.id)
            if changed:
                self.tombstoned_count += 1
                log.debug(f"Message {message.id} tombstoned")
            else:
                self.duplicate_count += 1
            return changed

        if self.store.is_tombstoned(message.id):
            self.duplicate_count += 1
            log.debug(f"Mutation for tombstoned {message.id} ignored")
            return False

        held = self.store.get(message.id)
        if held is None:
            # Delivery is unordered: the update can overtake its insert
            if self._collapse_provisional(message):
                return True
            changed = self.store.insert(message)
            if changed:
                self.applied_count += 1
            return changed

        try:
            self._check_fresh(held, message)
        except StaleDeliveryError:
            self.stale_count += 1
            log.debug(f"Stale mutation for {message.id} ignored")
            return False

        merged = merge_read_by(held, message)
        if merged == held:
            self.duplicate_count += 1
            return False

        self.store.replace(merged)
        self.applied_count += 1
        return True

    def _collapse_provisional(self, message: Message) -> bool:
        """Swap a provisional entry for the persisted copy that names it"""
        temp_id = message.client_temp_id
        if not temp_id or temp_id == message.id:
            return False
        provisional = self.store.get(temp_id)
        if provisional is None or not provisional.is_provisional:
            return False

        self.store.rekey(temp_id, message)
        self.applied_count += 1
        log.debug(f"Provisional {temp_id} collapsed into {message.id}")
        return True

    @staticmethod
    def _check_fresh(held: Message, incoming: Message) -> None:
        if is_stale(held, incoming):
            raise StaleDeliveryError(incoming.id)

    # =========================================================================
    # Full resynchronization
    # =========================================================================

    async def resync(self) -> None:
        """
        Reload the authoritative snapshot and replace the store wholesale.

        Events delivered while the snapshot loads are buffered and replayed
        afterwards through the normal idempotent path. Provisional entries
        for sends still in flight are kept. If the buffer overflowed during
        the load, the snapshot is reloaded before the controller goes Synced.
        """
        if self._state == ConnectionState.DEGRADED:
            self._transition(ConnectionState.RESYNCING)
        elif self._state not in (ConnectionState.CONNECTING, ConnectionState.RESYNCING):
            raise InvalidStateTransitionError(self._state, ConnectionState.RESYNCING)

        while True:
            self._overflowed = False
            try:
                rows = await self.repository.query(self.session.conversation_id)
            except Exception:
                if self._state != ConnectionState.DISCONNECTED:
                    self._transition(ConnectionState.DEGRADED)
                raise

            messages = self._validate_rows(rows)

            async with self.lock:
                if self._state == ConnectionState.DISCONNECTED:
                    return
                if not self._overflowed:
                    self.store.reset(messages, keep=self.store.provisional())

                    replayed = 0
                    while self._buffer:
                        self._apply_locked(self._buffer.popleft())
                        replayed += 1

                    self._transition(ConnectionState.SYNCED)
                    self.resync_count += 1
                    break

                # Everything buffered so far is covered by the next snapshot
                self._buffer.clear()

            log.warning(
                f"[{self.session.conversation_id}] Events dropped while loading, reloading snapshot",
                extra=self._log_extra,
            )

        log.info(
            f"[{self.session.conversation_id}] Resynced {len(messages)} messages, "
            f"replayed {replayed} buffered events",
            extra=self._log_extra,
        )
        self.notify_changed()

    def _validate_rows(self, rows: List[Dict[str, Any]]) -> List[Message]:
        messages = []
        for row in rows:
            try:
                messages.append(Message.model_validate(row))
            except ValidationError as e:
                self.invalid_count += 1
                log.warning(f"Skipping invalid snapshot row: {e.error_count()} error(s)")
        return messages

    def mark_degraded(self, reason: Optional[str] = None) -> None:
        """Stop trusting incremental notifications until the next resync"""
        if self._state in (ConnectionState.CONNECTING, ConnectionState.SYNCED, ConnectionState.RESYNCING):
            log.warning(f"[{self.session.conversation_id}] Channel lost: {reason or 'unknown'}", extra=self._log_extra)
            self._transition(ConnectionState.DEGRADED)

    async def force_resync(self) -> None:
        """Drop incremental trust and reload the snapshot now"""
        self.mark_degraded("forced resync")
        await self.resync()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Subscribe to the conversation channel and begin consuming"""
        if self._run_task is not None:
            return
        self._closing = False
        self._channel = await self.registry.acquire(self.session.channel_name)
        log.debug(f"Sync settings for {self.session.conversation_id}: {self.config.to_dict()}")
        self._transition(ConnectionState.CONNECTING)
        self._run_task = asyncio.create_task(self._run(), name=f"sync:{self.session.conversation_id}")

    async def wait_synced(self, timeout: Optional[float] = None) -> None:
        """Block until the controller reaches Synced"""
        await asyncio.wait_for(self._synced.wait(), timeout)

    async def stop(self) -> None:
        """Unsubscribe and stop consuming; the store is left as is"""
        self._closing = True
        if self._run_task is not None:
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                log.error(
                    f"Sync task for {self.session.conversation_id} ended with error: {e}",
                    exc_info=True, extra=self._log_extra,
                )
            self._run_task = None

        if self._channel is not None:
            self._channel = None
            await self.registry.release(self.session.channel_name)

        if self._state != ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)
        self._buffer.clear()

    async def _run(self) -> None:
        """Consume the change feed forever, resyncing after every drop"""
        delay = self.config.reconnect_initial_delay_seconds

        while not self._closing:
            stream = self._channel.events()
            loader = asyncio.create_task(self._load_until_synced())
            try:
                async for payload in stream:
                    await self.handle_payload(payload)
                    delay = self.config.reconnect_initial_delay_seconds
                if self._closing:
                    break
                raise ChannelDisconnectError(self.session.channel_name, "stream ended")
            except ChannelDisconnectError as e:
                self.mark_degraded(e.reason)
            except Exception as e:
                log.error(
                    f"Change feed for {self.session.channel_name} failed: {e}",
                    exc_info=True, extra=self._log_extra,
                )
                self.mark_degraded(str(e))
            finally:
                if not loader.done():
                    loader.cancel()
                    try:
                        await loader
                    except asyncio.CancelledError:
                        pass

            if self._closing:
                break
            log.info(f"Re-subscribing to {self.session.channel_name} in {delay:.1f}s", extra=self._log_extra)
            await asyncio.sleep(delay)
            delay = min(delay * self.config.reconnect_backoff_factor, self.config.reconnect_max_delay_seconds)

    async def _load_until_synced(self) -> None:
        delay = self.config.reconnect_initial_delay_seconds
        while not self.is_synced and not self._closing:
            try:
                await self.resync()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning(f"Snapshot load failed for {self.session.conversation_id}: {e}", extra=self._log_extra)
                await asyncio.sleep(delay)
                delay = min(delay * self.config.reconnect_backoff_factor, self.config.reconnect_max_delay_seconds)

    # =========================================================================
    # Teardown
    # =========================================================================

    def reset(self) -> None:
        """Forget all in-memory state (after stop)"""
        self.store.clear()
        self._buffer.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Delivery statistics"""
        return {
            'state': self._state.value,
            'applied_count': self.applied_count,
            'duplicate_count': self.duplicate_count,
            'stale_count': self.stale_count,
            'tombstoned_count': self.tombstoned_count,
            'invalid_count': self.invalid_count,
            'buffered_count': self.buffered_count,
            'dropped_count': self.dropped_count,
            'resync_count': self.resync_count,
            'pending_buffer': len(self._buffer),
            'message_count': len(self.store),
        }
