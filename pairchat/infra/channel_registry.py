# =============================================================================
# File: pairchat/infra/channel_registry.py
# Description: Reference-counted realtime channel sharing
# =============================================================================

"""
ChannelRegistry - one realtime channel per name, shared by subscribers

The Sync Controller and the Typing Tracker of a conversation view both
listen on the conversation channel. The first acquire opens it, the last
release closes it.
"""

import asyncio
import logging
from typing import Dict

from pairchat.chat.ports.backend_port import RealtimeChannelPort, RealtimeClientPort

log = logging.getLogger("pairchat.infra.channel_registry")


class ChannelRegistry:
    """Reference-counted channel pool over a RealtimeClientPort"""

    def __init__(self, client: RealtimeClientPort):
        if not client:
            raise ValueError("client is required")
        self.client = client
        self._channels: Dict[str, RealtimeChannelPort] = {}
        self._refcounts: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, name: str) -> RealtimeChannelPort:
        """Get the channel for name, opening it on first use"""
        async with self._lock:
            channel = self._channels.get(name)
            if channel is None:
                channel = self.client.channel(name)
                self._channels[name] = channel
                self._refcounts[name] = 0
                log.debug(f"Opened channel {name}")
            self._refcounts[name] += 1
            return channel

    async def release(self, name: str) -> None:
        """Drop one reference; the channel is closed when none remain"""
        async with self._lock:
            count = self._refcounts.get(name)
            if count is None:
                log.warning(f"Release of unknown channel {name}")
                return

            if count > 1:
                self._refcounts[name] = count - 1
                return

            channel = self._channels.pop(name)
            del self._refcounts[name]

        try:
            await channel.close()
            log.debug(f"Closed channel {name}")
        except Exception as e:
            log.warning(f"Error closing channel {name}: {e}")

    def refcount(self, name: str) -> int:
        return self._refcounts.get(name, 0)

    def is_open(self, name: str) -> bool:
        return name in self._channels
