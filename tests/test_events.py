"""
Tests for kmt.events.
"""

import asyncio

import pytest


def _event(name="future_wait", status=None, kind=None, **kwargs):
    from kmt.events import EventKind, OutcomeStatus, SinkEvent

    return SinkEvent(
        kind=kind or EventKind.OPERATION,
        name=name,
        status=status or OutcomeStatus.SUCCESS,
        **kwargs,
    )


class TestEventSink:
    """Fan-out and history."""

    def test_history_filters(self):
        from kmt.events import EventKind, EventSink, OutcomeStatus, SinkEvent

        sink = EventSink()
        sink.publish(_event())
        sink.publish(_event(status=OutcomeStatus.TIMEOUT, operation_id="op-1"))
        sink.publish(SinkEvent(kind=EventKind.SESSION, name="running", target="s1"))

        assert len(sink.history()) == 3
        assert len(sink.history(kind=EventKind.OPERATION)) == 2
        assert [e.operation_id for e in sink.history(status=OutcomeStatus.TIMEOUT)] == ["op-1"]
        assert len(sink.history(operation_id="op-1")) == 1

    def test_history_is_bounded(self):
        from kmt.events import EventSink

        sink = EventSink(history_size=2)
        for i in range(5):
            sink.publish(_event(name=f"e{i}"))

        assert [e.name for e in sink.history()] == ["e3", "e4"]
        sink.clear()
        assert sink.history() == []

    @pytest.mark.asyncio
    async def test_queue_subscriber_receives(self):
        from kmt.events import EventSink

        sink = EventSink()
        queue = sink.subscribe_queue()

        assert sink.publish(_event()) == 1
        event = await asyncio.wait_for(queue.get(), 1)
        assert event.name == "future_wait"

        sink.unsubscribe_queue(queue)
        assert sink.publish(_event()) == 0

    @pytest.mark.asyncio
    async def test_slow_subscriber_loses_oldest(self):
        """Publishing never blocks on a full queue."""
        from kmt.events import EventSink

        sink = EventSink(maxlen=2)
        queue = sink.subscribe_queue()
        for i in range(3):
            sink.publish(_event(name=f"e{i}"))

        assert queue.qsize() == 2
        assert queue.get_nowait().name == "e1"
        assert queue.get_nowait().name == "e2"

    @pytest.mark.asyncio
    async def test_async_iterator(self):
        from kmt.events import EventSink

        sink = EventSink()
        stream = sink.subscribe()

        async def first():
            return await anext(stream)

        pending = asyncio.ensure_future(first())
        await asyncio.sleep(0)
        assert sink.subscriber_count == 1

        sink.publish(_event(name="first"))
        event = await asyncio.wait_for(pending, 1)
        assert event.name == "first"

        await stream.aclose()
        assert sink.subscriber_count == 0


class TestSinkEvent:

    def test_to_dict(self):
        from kmt.events import OutcomeStatus

        event = _event(
            status=OutcomeStatus.FAILURE,
            target="local",
            error=RuntimeError("boom"),
            elapsed_ms=12.345,
            description="send",
        )
        data = event.to_dict()
        assert data["kind"] == "operation"
        assert data["status"] == "failure"
        assert data["target"] == "local"
        assert data["error"] == "boom"
        assert data["elapsed_ms"] == 12.3
        assert data["description"] == "send"

    def test_to_dict_without_status(self):
        from kmt.events import EventKind, SinkEvent

        data = SinkEvent(kind=EventKind.TOPIC, name="present").to_dict()
        assert "status" not in data
        assert "error" not in data
