# =============================================================================
# File: pairchat/chat/presence.py
# Description: Online/last-seen status and typing membership
# =============================================================================

"""
Two independent mechanisms:

PresenceTracker
    Persisted PresenceRecord per user, last-writer-wins, written only by
    its owner. Online at session start and on activity; offline on explicit
    stop or after inactivity_timeout_seconds without activity, sampled every
    activity_check_interval_seconds (defaults: 120s / 30s).

TypingTracker
    Ephemeral membership on the conversation channel. Joining means
    "typing". The backend drops a member whose session disconnects; locally
    the membership is also retracted after typing_idle_timeout_seconds
    without input.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set

from pydantic import ValidationError

from pairchat.chat.ports.backend_port import PresenceStorePort, RealtimeChannelPort
from pairchat.chat.read_models import PresenceRecord
from pairchat.chat.value_objects import SessionContext
from pairchat.config.presence_config import PresenceConfig, get_presence_config
from pairchat.infra.channel_registry import ChannelRegistry
from pairchat.utils.datetime_utils import format_last_seen, utc_now

log = logging.getLogger("pairchat.chat.presence")

Clock = Callable[[], datetime]


def typing_label(names: Sequence[str]) -> str:
    """
    Render who is typing.

    Names are sorted so the label is stable regardless of join order.
    """
    names = sorted(names)
    if not names:
        return ""
    if len(names) == 1:
        return f"{names[0]} is typing..."
    if len(names) == 2:
        return f"{names[0]} and {names[1]} are typing..."
    others = len(names) - 2
    return f"{names[0]}, {names[1]} and {others} other{'s' if others > 1 else ''} are typing..."


# =============================================================================
# Online / last seen
# =============================================================================

class PresenceTracker:
    """Writes the owner's PresenceRecord and caches peers' records"""

    def __init__(
        self,
        session: SessionContext,
        presence_store: PresenceStorePort,
        config: Optional[PresenceConfig] = None,
        clock: Clock = utc_now,
    ):
        self.session = session
        self.presence_store = presence_store
        self.config = config or get_presence_config()
        self.clock = clock

        self._records: Dict[str, PresenceRecord] = {}
        self._last_activity: datetime = clock()
        self._online = False
        self._check_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._log_extra = {"user_id": session.user_id, "conversation_id": session.conversation_id}

    @property
    def online(self) -> bool:
        """Whether the owner is currently written as online"""
        return self._online

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Go online, load peers' records and start the inactivity check"""
        log.debug(f"Presence settings for {self.session.user_id}: {self.config.to_dict()}")
        self._last_activity = self.clock()
        await self._write(True)

        await self._load_peers()

        if self._check_task is None:
            self._check_task = asyncio.create_task(self._check_loop(), name=f"presence-check:{self.session.user_id}")
        if self._watch_task is None and self.session.peer_ids:
            self._watch_task = asyncio.create_task(self.watch(), name=f"presence-watch:{self.session.user_id}")

    async def stop(self) -> None:
        """Cancel background work and make a best-effort offline write"""
        tasks = [t for t in (self._check_task, self._watch_task) if t is not None]
        for task in tasks:
            task.cancel()
        for result in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(result, Exception):
                log.warning(f"Presence task ended with error: {result}")
        self._check_task = None
        self._watch_task = None

        await self._write(False)
        self._records.clear()

    # =========================================================================
    # Owner status
    # =========================================================================

    async def record_activity(self) -> None:
        """Refresh the activity clock; come back online if timed out"""
        self._last_activity = self.clock()
        if not self._online:
            await self._write(True)

    async def check_inactivity(self) -> bool:
        """
        Write offline if the owner has been idle past the threshold.

        Returns:
            True if the owner was set offline by this check
        """
        if not self._online:
            return False
        idle = (self.clock() - self._last_activity).total_seconds()
        if idle < self.config.inactivity_timeout_seconds:
            return False

        log.info(f"{self.session.user_id} idle for {idle:.0f}s, going offline", extra=self._log_extra)
        return await self._write(False)

    async def _check_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.activity_check_interval_seconds)
            try:
                await self.check_inactivity()
            except Exception as e:
                log.error(f"Inactivity check failed: {e}", exc_info=True)

    async def _write(self, online: bool) -> bool:
        record = PresenceRecord(user_id=self.session.user_id, is_online=online, last_seen=self.clock())
        try:
            await self.presence_store.upsert(record.to_row())
        except Exception as e:
            log.warning(f"Presence write ({'online' if online else 'offline'}) failed: {e}", extra=self._log_extra)
            return False
        self._online = online
        self._records[record.user_id] = record
        return True

    # =========================================================================
    # Peers
    # =========================================================================

    async def watch(self) -> None:
        """
        Consume presence changes for the conversation's peers.

        When the feed ends or fails it is re-subscribed with backoff, and
        peers' records are reloaded to pick up changes missed meanwhile.
        """
        peer_ids = list(self.session.peer_ids)
        delay = self.config.watch_retry_initial_delay_seconds
        reload = False

        while True:
            try:
                stream = self.presence_store.watch(peer_ids)
                if reload:
                    await self._load_peers()
                async for row in stream:
                    self._apply_row(row)
                    delay = self.config.watch_retry_initial_delay_seconds
                log.warning(f"Presence feed for {self.session.user_id} ended", extra=self._log_extra)
            except Exception as e:
                log.warning(f"Presence feed for {self.session.user_id} failed: {e}", extra=self._log_extra)

            log.info(f"Re-subscribing to presence in {delay:.1f}s", extra=self._log_extra)
            await asyncio.sleep(delay)
            delay = min(delay * self.config.watch_retry_backoff_factor, self.config.watch_retry_max_delay_seconds)
            reload = True

    async def _load_peers(self) -> None:
        for user_id in self.session.peer_ids:
            try:
                row = await self.presence_store.get(user_id)
            except Exception as e:
                log.warning(f"Could not load presence for {user_id}: {e}", extra=self._log_extra)
                continue
            if row:
                self._apply_row(row)

    def _apply_row(self, row: dict) -> None:
        try:
            record = PresenceRecord.model_validate(row)
        except ValidationError as e:
            log.warning(f"Ignoring invalid presence row: {e.error_count()} error(s)")
            return
        self.apply_remote(record)

    def apply_remote(self, record: PresenceRecord) -> bool:
        """Last-writer-wins by last_seen"""
        held = self._records.get(record.user_id)
        if held is not None and record.last_seen < held.last_seen:
            return False
        self._records[record.user_id] = record
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, user_id: str) -> Optional[PresenceRecord]:
        return self._records.get(user_id)

    def is_online(self, user_id: str) -> bool:
        record = self._records.get(user_id)
        return record is not None and record.is_online

    def last_seen(self, user_id: str) -> Optional[datetime]:
        record = self._records.get(user_id)
        return record.last_seen if record else None

    def describe(self, user_id: str) -> str:
        """'Online', 'Last seen 5m ago' or 'Offline' for unknown users"""
        record = self._records.get(user_id)
        if record is None:
            return "Offline"
        if record.is_online:
            return "Online"
        return f"Last seen {format_last_seen(record.last_seen, self.clock())}"


# =============================================================================
# Typing
# =============================================================================

class TypingTracker:
    """Typing membership on the conversation channel"""

    def __init__(
        self,
        session: SessionContext,
        registry: ChannelRegistry,
        config: Optional[PresenceConfig] = None,
    ):
        self.session = session
        self.registry = registry
        self.config = config or get_presence_config()

        self._channel: Optional[RealtimeChannelPort] = None
        self._members: Set[str] = set()
        self._typing = False
        self._idle_task: Optional[asyncio.Task] = None
        self._listeners: List[Callable[[FrozenSet[str]], None]] = []

    @property
    def is_typing(self) -> bool:
        return self._typing

    @property
    def typing_users(self) -> FrozenSet[str]:
        """Members currently typing, excluding the local user"""
        return frozenset(self._members - {self.session.user_id})

    def label(self) -> str:
        return typing_label([self.session.display_name(u) for u in self.typing_users])

    def add_listener(self, listener: Callable[[FrozenSet[str]], None]) -> None:
        self._listeners.append(listener)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self._channel is not None:
            return
        self._channel = await self.registry.acquire(self.session.channel_name)
        self._channel.on_sync(self._on_sync)
        self._channel.on_join(self._on_join)
        self._channel.on_leave(self._on_leave)

    async def stop(self) -> None:
        if self._channel is None:
            return
        try:
            await self.stop_typing()
        except Exception as e:
            log.warning(f"Could not retract typing on stop: {e}")
        self._channel = None
        self._members.clear()
        await self.registry.release(self.session.channel_name)

    # =========================================================================
    # Local typing
    # =========================================================================

    async def start_typing(self) -> None:
        """Announce typing; re-arms the idle timer on every call"""
        if self._channel is None:
            raise RuntimeError("TypingTracker is not started")
        if not self._typing:
            await self._channel.track(self.session.user_id)
            self._typing = True
        self._arm_idle_timer()

    async def stop_typing(self) -> None:
        self._cancel_idle_timer()
        if self._typing and self._channel is not None:
            self._typing = False
            await self._channel.untrack()

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        self._idle_task = asyncio.create_task(self._idle_stop())

    def _cancel_idle_timer(self) -> None:
        task = self._idle_task
        self._idle_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _idle_stop(self) -> None:
        await asyncio.sleep(self.config.typing_idle_timeout_seconds)
        try:
            await self.stop_typing()
        except Exception as e:
            log.warning(f"Idle typing retract failed: {e}")

    # =========================================================================
    # Membership callbacks
    # =========================================================================

    def _on_sync(self, members: Iterable[str]) -> None:
        if self._channel is None:
            return
        self._members = set(members)
        self._notify()

    def _on_join(self, user_id: str) -> None:
        if self._channel is not None and user_id not in self._members:
            self._members.add(user_id)
            self._notify()

    def _on_leave(self, user_id: str) -> None:
        if user_id in self._members:
            self._members.discard(user_id)
            self._notify()

    def _notify(self) -> None:
        users = self.typing_users
        for listener in list(self._listeners):
            try:
                listener(users)
            except Exception as e:
                log.error(f"Typing listener failed: {e}", exc_info=True)
