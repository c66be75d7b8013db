# =============================================================================
# File: tests/conftest.py
# Description: Shared fixtures for the chat core tests
# =============================================================================

import pytest

from pairchat.chat.value_objects import SessionContext
from pairchat.config.presence_config import PresenceConfig
from pairchat.config.sync_config import SyncConfig
from tests.fakes.fake_backend import FakeMessageRepository, FakePresenceStore, FakeRealtimeHub

DISPLAY_NAMES = {"alice": "Alice", "bob": "Bob"}


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def hub():
    return FakeRealtimeHub()


@pytest.fixture
def repository(hub):
    return FakeMessageRepository(hub)


@pytest.fixture
def presence_store():
    return FakePresenceStore()


@pytest.fixture
def alice_session():
    return SessionContext(
        user_id="alice",
        conversation_id="c1",
        participant_ids=("alice", "bob"),
        display_names=DISPLAY_NAMES,
    )


@pytest.fixture
def bob_session():
    return SessionContext(
        user_id="bob",
        conversation_id="c1",
        participant_ids=("alice", "bob"),
        display_names=DISPLAY_NAMES,
    )


@pytest.fixture
def sync_config():
    return SyncConfig(
        reconnect_initial_delay_seconds=0.01,
        reconnect_backoff_factor=1.5,
        reconnect_max_delay_seconds=0.05,
    )


@pytest.fixture
def presence_config():
    return PresenceConfig(
        inactivity_timeout_seconds=120.0,
        activity_check_interval_seconds=60.0,
        typing_idle_timeout_seconds=10.0,
        watch_retry_initial_delay_seconds=0.01,
        watch_retry_max_delay_seconds=0.05,
    )
