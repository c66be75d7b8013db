# =============================================================================
# File: tests/test_outbox.py
# Description: Optimistic send/edit/remove/react/mark-read tests
# =============================================================================

import asyncio
import logging

import pytest

from pairchat.chat.enums import OutboxOperation
from pairchat.chat.exceptions import InvalidDraftError, MessageConflictError, TransientIOError
from pairchat.chat.merger import has_reacted
from pairchat.chat.outbox import Outbox
from pairchat.chat.sync_controller import SyncController
from pairchat.chat.value_objects import MessageDraft
from pairchat.infra.channel_registry import ChannelRegistry
from tests.fakes.builders import make_message, wait_until


@pytest.fixture
async def controller(anyio_backend, alice_session, repository, hub, sync_config):
    registry = ChannelRegistry(hub.client("alice"))
    controller = SyncController(alice_session, repository, registry, config=sync_config)
    await controller.start()
    await controller.wait_synced(timeout=2)
    yield controller
    await controller.stop()


@pytest.fixture
def outbox(alice_session, repository, controller):
    return Outbox(alice_session, repository, controller)


async def seed(controller, repository, message):
    """Make a persisted message known to both sides"""
    repository.seed(message.to_row())
    await controller.on_created(message)


def visible(controller):
    return controller.snapshot()


# =============================================================================
# Send
# =============================================================================

@pytest.mark.anyio
class TestSend:

    async def test_send_under_client_issued_id(self, outbox, controller, repository):
        sent = await outbox.send(MessageDraft.text(" hi "))

        assert not sent.is_provisional
        assert sent.content == "hi"
        assert sent.sender_id == "alice"
        row = repository.rows[sent.id]
        assert row["client_temp_id"] == sent.id
        assert "delivery_status" not in row

        await wait_until(lambda: controller.duplicate_count == 1)
        assert [m.id for m in visible(controller)] == [sent.id]

    async def test_ack_with_server_id_rekeys(self, outbox, controller, repository):
        repository.server_ids = iter(["srv-1"])

        sent = await outbox.send(MessageDraft.text("hi"))

        assert sent.id == "srv-1"
        await wait_until(lambda: controller.duplicate_count == 1)
        assert [m.id for m in visible(controller)] == ["srv-1"]

    async def test_created_before_ack_collapses_provisional(self, outbox, controller, repository):
        repository.server_ids = iter(["srv-2"])
        repository.hold_acks()

        task = asyncio.create_task(outbox.send(MessageDraft.text("hi")))
        await wait_until(lambda: "srv-2" in controller.store)

        assert [m.id for m in visible(controller)] == ["srv-2"]
        assert not controller.store.provisional()

        repository.release_acks()
        sent = await task

        assert sent.id == "srv-2"
        assert [m.id for m in visible(controller)] == ["srv-2"]

    async def test_provisional_is_visible_before_ack(self, outbox, controller, repository):
        repository.publish = False
        repository.hold_acks()
        task = asyncio.create_task(outbox.send(MessageDraft.text("hi")))

        await wait_until(lambda: bool(controller.store.provisional()))
        pending = controller.store.provisional()[0]
        assert pending.client_temp_id == pending.id
        assert outbox.in_flight == 1

        repository.release_acks()
        await task
        assert outbox.in_flight == 0

    async def test_failed_send_removes_provisional_and_returns_draft(self, outbox, controller, repository):
        repository.configure_failure("insert")
        draft = MessageDraft.text("hi")

        with pytest.raises(TransientIOError) as exc_info:
            await outbox.send(draft)

        assert exc_info.value.operation == OutboxOperation.SEND
        assert exc_info.value.draft is draft
        assert visible(controller) == []

    async def test_late_ack_after_close_is_ignored(self, outbox, controller, repository):
        repository.publish = False
        repository.hold_acks()
        task = asyncio.create_task(outbox.send(MessageDraft.text("hi")))
        await wait_until(lambda: bool(controller.store.provisional()))

        outbox.close()
        await controller.stop()
        controller.reset()
        repository.release_acks()
        sent = await task

        assert sent.is_provisional
        assert len(controller.store) == 0


# =============================================================================
# Remove
# =============================================================================

@pytest.mark.anyio
class TestRemove:

    async def test_remove_tombstones_on_ack(self, outbox, controller, repository):
        await seed(controller, repository, make_message("m1", sender_id="alice"))

        await outbox.remove("m1")

        assert controller.store.is_tombstoned("m1")
        assert visible(controller) == []
        assert repository.rows["m1"]["deleted_by"] == "alice"

    async def test_remove_is_hidden_while_in_flight(self, outbox, controller, repository):
        await seed(controller, repository, make_message("m1", sender_id="alice"))
        repository.hold_acks()

        task = asyncio.create_task(outbox.remove("m1"))
        await wait_until(lambda: controller.store.is_hidden("m1") or controller.store.is_tombstoned("m1"))
        assert visible(controller) == []

        repository.release_acks()
        await task

    async def test_failed_remove_restores_message(self, outbox, controller, repository):
        await seed(controller, repository, make_message("m1", sender_id="alice"))
        repository.configure_failure("update")

        with pytest.raises(TransientIOError):
            await outbox.remove("m1")

        assert [m.id for m in visible(controller)] == ["m1"]
        assert not controller.store.is_hidden("m1")

    async def test_remove_unknown_is_a_conflict(self, outbox):
        with pytest.raises(MessageConflictError):
            await outbox.remove("missing")


# =============================================================================
# Edit
# =============================================================================

@pytest.mark.anyio
class TestEdit:

    async def test_edit_applies_immediately(self, outbox, controller, repository):
        await seed(controller, repository, make_message("m1", sender_id="alice", content="helo"))

        edited = await outbox.edit("m1", " hello ")

        assert edited.content == "hello"
        assert edited.updated_at is not None
        assert controller.store.get("m1").content == "hello"
        assert repository.rows["m1"]["content"] == "hello"

    async def test_failed_edit_reverts(self, outbox, controller, repository):
        await seed(controller, repository, make_message("m1", sender_id="alice", content="helo"))
        repository.configure_failure("update")

        with pytest.raises(TransientIOError):
            await outbox.edit("m1", "hello")

        held = controller.store.get("m1")
        assert held.content == "helo"
        assert held.updated_at is None

    async def test_failure_log_carries_context(self, outbox, controller, repository, caplog):
        await seed(controller, repository, make_message("m1", sender_id="alice"))
        repository.configure_failure("update")

        with caplog.at_level(logging.WARNING, logger="pairchat.chat.outbox"):
            with pytest.raises(TransientIOError):
                await outbox.edit("m1", "hello")

        record = next(r for r in caplog.records if r.name == "pairchat.chat.outbox")
        assert record.conversation_id == "c1"
        assert record.user_id == "alice"
        assert record.message_id == "m1"

    async def test_empty_edit_is_rejected(self, outbox, controller, repository):
        await seed(controller, repository, make_message("m1", sender_id="alice"))

        with pytest.raises(InvalidDraftError):
            await outbox.edit("m1", "   ")
        assert not repository.was_called("update")

    async def test_edit_of_removed_message_is_a_conflict(self, outbox, controller, repository):
        await seed(controller, repository, make_message("m1", sender_id="alice"))
        await outbox.remove("m1")

        with pytest.raises(MessageConflictError):
            await outbox.edit("m1", "too late")

    async def test_edit_of_unsent_message_is_a_conflict(self, outbox, controller, repository):
        repository.publish = False
        repository.hold_acks()
        task = asyncio.create_task(outbox.send(MessageDraft.text("hi")))
        await wait_until(lambda: bool(controller.store.provisional()))
        pending = controller.store.provisional()[0]

        with pytest.raises(MessageConflictError):
            await outbox.edit(pending.id, "changed")

        repository.release_acks()
        await task


# =============================================================================
# React
# =============================================================================

@pytest.mark.anyio
class TestReact:

    async def test_react_toggles(self, outbox, controller, repository):
        await seed(controller, repository, make_message("m1"))

        reacted = await outbox.react("m1", "👍")
        assert has_reacted(reacted, "alice", "👍")
        assert repository.rows["m1"]["reactions"] == {"👍": ["alice"]}

        cleared = await outbox.react("m1", "👍")
        assert not has_reacted(cleared, "alice", "👍")
        assert repository.rows["m1"]["reactions"] == {}

    async def test_react_only_writes_own_membership(self, outbox, controller, repository):
        await seed(controller, repository, make_message("m1"))
        # Stored concurrently by the peer; not yet seen locally
        repository.rows["m1"]["reactions"] = {"❤️": ["bob"]}

        await outbox.react("m1", "👍")

        assert repository.get_calls("set_reaction")[0].args == ("m1", "👍", "alice", True)
        assert repository.rows["m1"]["reactions"] == {"❤️": ["bob"], "👍": ["alice"]}
        await wait_until(lambda: controller.store.get("m1").reaction_count("❤️") == 1)
        assert has_reacted(controller.store.get("m1"), "alice", "👍")

    async def test_rapid_toggles_settle_on_parity(self, outbox, controller, repository):
        await seed(controller, repository, make_message("m1"))

        await asyncio.gather(*(outbox.react("m1", "🎉") for _ in range(3)))

        assert has_reacted(controller.store.get("m1"), "alice", "🎉")

    async def test_failed_react_reverts(self, outbox, controller, repository):
        await seed(controller, repository, make_message("m1", reactions={"👍": ["bob"]}))
        repository.configure_failure("set_reaction")

        with pytest.raises(TransientIOError):
            await outbox.react("m1", "👍")

        assert controller.store.get("m1").reactions == {"👍": frozenset({"bob"})}


# =============================================================================
# Read receipts
# =============================================================================

@pytest.mark.anyio
class TestMarkRead:

    async def test_mark_read_once(self, outbox, controller, repository):
        await seed(controller, repository, make_message("m1"))

        assert await outbox.mark_read("m1")
        assert not await outbox.mark_read("m1")

        assert controller.store.get("m1").read_by == {"alice"}
        assert repository.get_call_count("add_reader") == 1

    async def test_failed_mark_read_keeps_receipt(self, outbox, controller, repository):
        await seed(controller, repository, make_message("m1"))
        repository.configure_failure("add_reader")

        with pytest.raises(TransientIOError):
            await outbox.mark_read("m1")

        assert controller.store.get("m1").is_read_by("alice")

    async def test_mark_read_keeps_receipts_stored_by_others(self, outbox, controller, repository):
        await seed(controller, repository, make_message("m1", sender_id="carol"))
        repository.rows["m1"]["read_by"] = ["bob"]

        await outbox.mark_read("m1")

        assert repository.rows["m1"]["read_by"] == ["alice", "bob"]
        await wait_until(lambda: controller.store.get("m1").read_by == {"alice", "bob"})
