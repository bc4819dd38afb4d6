"""Tests for gateway room handling driven directly, without a transport."""
import asyncio

import pytest

from exchange_chat.chat import ChatGateway, PresenceBroadcaster, RoomRegistry
from exchange_chat.chat.schemas import SendMessageInput


class Inbox:
    """Collects what a connection's writer puts on the wire."""

    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e["type"] == event_type]


async def flush(connection):
    """Write everything queued so far, then stop the outbox."""
    connection.outbox.close(drain=True)
    await connection.outbox.run()


def post(exchange_id, content, client_id=None):
    return SendMessageInput(exchangeId=exchange_id, content=content, clientId=client_id)


class TestJoinSnapshot:
    @pytest.mark.asyncio
    async def test_message_posted_during_join_is_delivered_once(self, gateway, store, monkeypatch):
        bob = gateway.open_connection("bob", Inbox())
        await gateway.join(bob, "ex1")
        alice_inbox = Inbox()
        alice = gateway.open_connection("alice", alice_inbox)

        list_since = store.list_since

        async def post_then_snapshot(exchange_id, cursor=None):
            # Alice is already subscribed but her snapshot is not read yet
            await gateway.send_message(bob, post("ex1", "racing"))
            return await list_since(exchange_id, cursor)

        monkeypatch.setattr(store, "list_since", post_then_snapshot)
        history = await gateway.join(alice, "ex1")
        monkeypatch.setattr(store, "list_since", list_since)

        await gateway.send_message(bob, post("ex1", "after"))
        await flush(alice)

        assert [m.content for m in history] == ["racing"]
        assert [e["type"] for e in alice_inbox.events] == ["history", "message_received"]
        assert [m["content"] for m in alice_inbox.events[0]["messages"]] == ["racing"]
        assert alice_inbox.events[1]["content"] == "after"

    @pytest.mark.asyncio
    async def test_last_leave_releases_room_state(self, gateway, store):
        alice = gateway.open_connection("alice", Inbox())
        bob = gateway.open_connection("bob", Inbox())
        await gateway.join(alice, "ex1")
        await gateway.join(bob, "ex1")
        await gateway.send_message(alice, post("ex1", "hi"))

        await gateway.disconnect(alice)
        assert gateway.registry.has_lock("ex1")

        await gateway.disconnect(bob)
        assert not gateway.registry.has_lock("ex1")
        assert "ex1" not in store._last_created
        assert [m.content for m in await store.list_since("ex1")] == ["hi"]


class TestSendCancellation:
    @pytest.mark.asyncio
    async def test_message_survives_sender_leaving_mid_append(self, gateway, store, monkeypatch):
        bob_inbox = Inbox()
        bob = gateway.open_connection("bob", bob_inbox)
        alice = gateway.open_connection("alice", Inbox())
        await gateway.join(bob, "ex1")
        await gateway.join(alice, "ex1")

        started, proceed = asyncio.Event(), asyncio.Event()
        append = store.append

        async def slow_append(*args, **kwargs):
            started.set()
            await proceed.wait()
            return await append(*args, **kwargs)

        monkeypatch.setattr(store, "append", slow_append)

        sending = asyncio.create_task(gateway.send_message(alice, post("ex1", "last words", "temp-1")))
        await started.wait()
        sending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await sending

        # The transport would now tear the connection down
        leaving = asyncio.create_task(gateway.disconnect(alice))
        proceed.set()
        await asyncio.wait_for(leaving, 1)

        assert [m.content for m in await store.list_since("ex1")] == ["last words"]
        await flush(bob)
        received = bob_inbox.of_type("message_received")
        assert [e["content"] for e in received] == ["last words"]
        assert received[0]["clientId"] == "temp-1"


class TestSlowRecipient:
    @pytest.mark.asyncio
    async def test_stalled_session_overflows_without_blocking_the_room(self, exchanges, store):
        registry = RoomRegistry(exchanges)
        gateway = ChatGateway(store, registry, PresenceBroadcaster(registry), exchanges, outbox_size=2)

        stalled = asyncio.Event()

        async def never_returns(event):
            await stalled.wait()

        dropped = []
        slow = gateway.open_connection("bob", never_returns, on_overflow=lambda: dropped.append(True))
        fast_inbox = Inbox()
        fast = gateway.open_connection("bob", fast_inbox)
        alice = gateway.open_connection("alice", Inbox())
        for connection in (slow, fast, alice):
            await gateway.join(connection, "ex1")
        writers = {c.session_id: asyncio.create_task(c.outbox.run()) for c in (slow, fast, alice)}

        for i in range(4):
            await asyncio.wait_for(gateway.send_message(alice, post("ex1", f"m{i}")), 1)

        assert dropped == [True]
        assert slow.outbox.closed and slow.outbox.overflowed

        for connection in (fast, alice):
            connection.outbox.close(drain=True)
            await writers[connection.session_id]
        assert [e["content"] for e in fast_inbox.of_type("message_received")] == ["m0", "m1", "m2", "m3"]

        writers[slow.session_id].cancel()
        with pytest.raises(asyncio.CancelledError):
            await writers[slow.session_id]
