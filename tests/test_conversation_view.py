# =============================================================================
# File: tests/test_conversation_view.py
# Description: Two-party scenarios over a shared in-memory backend
# =============================================================================

import asyncio

import pytest

from pairchat.chat.conversation_view import ConversationView
from pairchat.chat.enums import ConnectionState
from pairchat.chat.value_objects import MessageDraft
from tests.fakes.builders import wait_until


def make_view(session, repository, hub, presence_store, sync_config, presence_config):
    return ConversationView(
        session,
        repository,
        hub.client(session.user_id),
        presence_store,
        sync_config=sync_config,
        presence_config=presence_config,
    )


@pytest.fixture
async def alice(anyio_backend, alice_session, repository, hub, presence_store, sync_config, presence_config):
    view = make_view(alice_session, repository, hub, presence_store, sync_config, presence_config)
    await view.open(wait_synced=True, timeout=2)
    yield view
    await view.close()


@pytest.fixture
async def bob(anyio_backend, alice, bob_session, repository, hub, presence_store, sync_config, presence_config):
    view = make_view(bob_session, repository, hub, presence_store, sync_config, presence_config)
    await view.open(wait_synced=True, timeout=2)
    yield view
    await view.close()


def contents(view):
    return [m.content for m in view.messages()]


@pytest.mark.anyio
class TestConversation:

    async def test_message_reaches_peer_and_receipt_comes_back(self, alice, bob):
        sent = await alice.send(MessageDraft.text("hi bob"))

        await wait_until(lambda: contents(bob) == ["hi bob"])
        assert not alice.messages()[0].is_seen

        assert await bob.mark_visible_read() == 1
        assert await bob.mark_visible_read() == 0

        await wait_until(lambda: alice.messages()[0].is_seen)
        assert alice.messages()[0].id == sent.id

    async def test_own_messages_are_not_marked_read(self, alice, bob):
        await alice.send(MessageDraft.text("hello"))

        assert await alice.mark_visible_read() == 0

    async def test_remove_propagates_to_peer(self, alice, bob):
        sent = await alice.send(MessageDraft.text("oops"))
        await wait_until(lambda: contents(bob) == ["oops"])

        await alice.remove(sent.id)

        assert alice.messages() == []
        await wait_until(lambda: bob.messages() == [])
        assert bob.controller.store.is_tombstoned(sent.id)

    async def test_edit_and_reaction_propagate(self, alice, bob):
        sent = await alice.send(MessageDraft.text("helo"))
        await wait_until(lambda: contents(bob) == ["helo"])

        await alice.edit(sent.id, "hello")
        await wait_until(lambda: contents(bob) == ["hello"])

        await bob.react(sent.id, "❤️")
        await wait_until(lambda: alice.messages()[0].reaction_count("❤️") == 1)

    async def test_concurrent_reactions_are_both_kept(self, alice, bob, repository):
        sent = await alice.send(MessageDraft.text("vote"))
        await wait_until(lambda: contents(bob) == ["vote"])

        repository.hold_acks()
        alice_task = asyncio.create_task(alice.react(sent.id, "👍"))
        bob_task = asyncio.create_task(bob.react(sent.id, "❤️"))
        await wait_until(lambda: repository.get_call_count("set_reaction") == 2)
        repository.release_acks()
        await asyncio.gather(alice_task, bob_task)

        expected = {"👍": frozenset({"alice"}), "❤️": frozenset({"bob"})}
        await wait_until(lambda: alice.messages()[0].reactions == expected and bob.messages()[0].reactions == expected)
        assert repository.rows[sent.id]["reactions"] == {"👍": ["alice"], "❤️": ["bob"]}

    async def test_concurrent_receipts_are_both_kept(self, alice, bob, repository):
        sent = await alice.send(MessageDraft.text("seen?"))
        await wait_until(lambda: contents(bob) == ["seen?"])

        repository.hold_acks()
        tasks = [asyncio.create_task(alice.mark_read(sent.id)), asyncio.create_task(bob.mark_read(sent.id))]
        await wait_until(lambda: repository.get_call_count("add_reader") == 2)
        repository.release_acks()
        await asyncio.gather(*tasks)

        assert repository.rows[sent.id]["read_by"] == ["alice", "bob"]
        await wait_until(lambda: alice.messages()[0].read_by == {"alice", "bob"})

    async def test_conversation_order_is_shared(self, alice, bob):
        await alice.send(MessageDraft.text("one"))
        await bob.send(MessageDraft.text("two"))
        await alice.send(MessageDraft.text("three"))

        await wait_until(lambda: len(bob.messages()) == 3 and len(alice.messages()) == 3)
        assert contents(alice) == contents(bob) == ["one", "two", "three"]

    async def test_typing_is_shown_to_peer(self, alice, bob):
        await alice.start_typing()

        assert bob.typing_users == {"alice"}
        assert bob.typing_label() == "Alice is typing..."

        await alice.send(MessageDraft.text("done"))
        assert bob.typing_label() == ""

    async def test_presence_is_visible_to_peer(self, alice, bob):
        await wait_until(lambda: bob.is_online("alice") and alice.is_online("bob"))
        assert bob.describe_presence("alice") == "Online"
        assert bob.last_seen("alice") is not None

    async def test_listener_sees_incoming_messages(self, alice, bob):
        snapshots = []
        bob.add_listener(snapshots.append)

        await alice.send(MessageDraft.text("ping"))

        await wait_until(lambda: bool(snapshots) and [m.content for m in snapshots[-1]] == ["ping"])
        bob.remove_listener(snapshots.append)

    async def test_late_joiner_loads_history(
        self, alice, bob_session, repository, hub, presence_store, sync_config, presence_config
    ):
        await alice.send(MessageDraft.text("before you came"))

        async with make_view(bob_session, repository, hub, presence_store, sync_config, presence_config) as bob:
            assert contents(bob) == ["before you came"]


@pytest.mark.anyio
class TestLifecycle:

    async def test_close_tears_everything_down(self, alice, presence_store, hub):
        await alice.send(MessageDraft.text("hi"))

        await alice.close()
        await alice.close()

        assert alice.is_closed
        assert alice.state == ConnectionState.DISCONNECTED
        assert alice.messages() == []
        assert presence_store.rows["alice"]["is_online"] is False
        assert hub.subscriber_count("conversation:c1") == 0

    async def test_closed_view_cannot_reopen(self, alice):
        await alice.close()

        with pytest.raises(RuntimeError):
            await alice.open()

    async def test_reconnect_catches_up_on_missed_messages(self, alice, bob, repository, hub):
        await alice.send(MessageDraft.text("first"))
        await wait_until(lambda: contents(bob) == ["first"])

        repository.publish = False
        await alice.send(MessageDraft.text("missed"))
        repository.publish = True
        hub.disconnect("conversation:c1")

        await wait_until(lambda: bob.state == ConnectionState.SYNCED and contents(bob) == ["first", "missed"])
