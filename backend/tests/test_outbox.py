"""Tests for the per-session outbound buffer."""
import pytest

from exchange_chat.chat.outbox import Outbox


class Recorder:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def __call__(self, event):
        if self.fail:
            raise RuntimeError("socket gone")
        self.sent.append(event)


def message(message_id):
    return {"type": "message_received", "id": message_id}


class TestOutbox:
    @pytest.mark.asyncio
    async def test_events_are_written_in_order(self):
        send = Recorder()
        outbox = Outbox(send)
        outbox.offer(message("m1"))
        outbox.offer(message("m2"))
        outbox.close(drain=True)

        await outbox.run()

        assert send.sent == [message("m1"), message("m2")]
        assert outbox.delivered == 2

    @pytest.mark.asyncio
    async def test_release_puts_history_first_and_drops_duplicates(self):
        send = Recorder()
        outbox = Outbox(send)
        history = {"type": "history", "messages": [{"id": "m1"}]}

        outbox.hold()
        outbox.offer(message("m1"))
        outbox.offer(message("m2"))
        outbox.release(leading=[history], skip_message_ids={"m1"})
        outbox.close(drain=True)
        await outbox.run()

        assert send.sent == [history, message("m2")]

    @pytest.mark.asyncio
    async def test_overflow_closes_and_notifies(self):
        dropped = []
        outbox = Outbox(Recorder(), maxsize=2, on_overflow=lambda: dropped.append(True))

        assert outbox.offer(message("m1"))
        assert outbox.offer(message("m2"))
        assert outbox.offer(message("m3")) is False

        assert outbox.overflowed
        assert outbox.closed
        assert dropped == [True]
        assert outbox.offer(message("m4")) is False
        assert dropped == [True]

    @pytest.mark.asyncio
    async def test_close_without_drain_discards_queue(self):
        send = Recorder()
        outbox = Outbox(send)
        outbox.offer(message("m1"))
        outbox.close()

        await outbox.run()

        assert send.sent == []
        assert len(outbox) == 0

    @pytest.mark.asyncio
    async def test_send_failure_stops_writer(self):
        outbox = Outbox(Recorder(fail=True))
        outbox.offer(message("m1"))

        await outbox.run()

        assert outbox.closed
        assert outbox.delivered == 0
