"""
Tests for kmt.sessions.

Sender and listener lifecycles, ordering and isolation between sessions.
"""

import asyncio

import pytest


def _sender(topic, name="sender", **kwargs):
    from kmt.models import SenderConfig

    return SenderConfig(name=name, topic=topic, **kwargs)


def _listener(topic, name="listener", **kwargs):
    from kmt.models import ListenerConfig

    kwargs.setdefault("fetch_timeout_ms", 100)
    return ListenerConfig(name=name, topic=topic, **kwargs)


async def _collect(listener, timeout=2.0):
    async def drain():
        return [m async for m in listener.subscribe()]
    return await asyncio.wait_for(drain(), timeout)


class TestSenderSession:

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, coordinator, topic, sink):
        from kmt.events import EventKind
        from kmt.sessions import SessionState

        sender = await coordinator.start_sender(_sender(topic))
        assert sender.state is SessionState.RUNNING
        assert sender.handle.refcount == 1

        await sender.stop()

        assert sender.state is SessionState.STOPPED
        assert sender.handle is None
        states = [e.name for e in sink.history(kind=EventKind.SESSION) if e.target == "sender"]
        assert states == ["starting", "running", "stopping", "stopped"]

    @pytest.mark.asyncio
    async def test_sends_acknowledged_in_order(self, coordinator, factory, topic):
        """s1, s2, s3 issued back to back leave and are acknowledged in that order."""
        sender = await coordinator.start_sender(_sender(topic))
        factory.delay("send", 0.02, times=1)

        outcomes = await asyncio.gather(
            sender.send("s1"), sender.send("s2"), sender.send("s3")
        )

        assert all(o.ok for o in outcomes)
        assert [o.value.offset for o in outcomes] == [0, 1, 2]
        assert [r.value for r in factory.cluster.get_messages("orders")] == ["s1", "s2", "s3"]
        assert sender.sent_count == 3

    @pytest.mark.asyncio
    async def test_key_and_headers(self, coordinator, factory, topic):
        from kmt.models import DEFAULT_MESSAGE_KEY

        sender = await coordinator.start_sender(_sender(topic, headers={"source": "kmt"}))

        await sender.send("hello", headers={"trace": "1"})
        await sender.send("keyed", key="k2")

        first, second = factory.cluster.get_messages("orders")
        assert first.key == DEFAULT_MESSAGE_KEY
        assert first.headers == {"source": "kmt", "trace": "1"}
        assert second.key == "k2"

    @pytest.mark.asyncio
    async def test_send_requires_running(self, coordinator, topic):
        from kmt.exceptions import SessionStateError

        sender = coordinator.create_sender(_sender(topic))

        with pytest.raises(SessionStateError):
            await sender.send("too early")

    @pytest.mark.asyncio
    async def test_send_timeout(self, coordinator, factory, topic):
        from kmt.events import OutcomeStatus
        from kmt.sessions import SessionState

        sender = await coordinator.start_sender(_sender(topic))
        factory.hang("send", times=1)

        outcome = await sender.send("lost")

        assert outcome.status is OutcomeStatus.TIMEOUT
        assert sender.failed_count == 1
        # a timeout alone does not end the session
        assert sender.state is SessionState.RUNNING
        assert (await sender.send("next")).ok

    @pytest.mark.asyncio
    async def test_connection_lost_fails_session(self, coordinator, topic):
        from kmt.exceptions import ConnectivityError
        from kmt.sessions import SessionState

        sender = await coordinator.start_sender(_sender(topic))
        sender.handle.mark_unhealthy(ConnectivityError("connection reset"))

        with pytest.raises(ConnectivityError):
            await sender.send("hello")

        assert sender.state is SessionState.FAILED
        assert isinstance(sender.cause, ConnectivityError)

    @pytest.mark.asyncio
    async def test_connectivity_failure_during_send(self, coordinator, factory, topic):
        from kmt.events import OutcomeStatus
        from kmt.exceptions import ConnectivityError
        from kmt.sessions import SessionState

        sender = await coordinator.start_sender(_sender(topic))
        factory.fail("send", ConnectivityError("broker went away"), times=1)

        outcome = await sender.send("hello")

        assert outcome.status is OutcomeStatus.FAILURE
        assert sender.state is SessionState.FAILED
        assert sender.cause is outcome.error

    @pytest.mark.asyncio
    async def test_start_unreachable(self, coordinator, factory, topic):
        from kmt.exceptions import ConnectivityError
        from kmt.sessions import SessionState

        factory.cluster.unreachable.add("kafka.local")
        sender = coordinator.create_sender(_sender(topic))

        with pytest.raises(ConnectivityError):
            await sender.start()

        assert sender.state is SessionState.FAILED
        assert isinstance(sender.cause, ConnectivityError)

    @pytest.mark.asyncio
    async def test_start_unbound(self, coordinator):
        from kmt.models import SenderConfig
        from kmt.sessions import SessionState

        sender = coordinator.create_sender(SenderConfig(name="nowhere"))

        with pytest.raises(ValueError):
            await sender.start()
        assert sender.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_start_twice(self, coordinator, topic):
        from kmt.exceptions import SessionStateError

        sender = await coordinator.start_sender(_sender(topic))

        with pytest.raises(SessionStateError):
            await sender.start()

    @pytest.mark.asyncio
    async def test_restart_after_failure(self, coordinator, factory, topic):
        from kmt.exceptions import ConnectivityError
        from kmt.sessions import SessionState

        factory.cluster.unreachable.add("kafka.local")
        sender = coordinator.create_sender(_sender(topic))
        with pytest.raises(ConnectivityError):
            await sender.start()

        factory.cluster.unreachable.clear()
        await sender.start()

        assert sender.state is SessionState.RUNNING
        assert sender.cause is None

    @pytest.mark.asyncio
    async def test_stop_cancels_only_own_sends(self, coordinator, factory, topic):
        """Stopping one sender leaves another sender on the same connection untouched."""
        from kmt.events import OutcomeStatus
        from kmt.sessions import SessionState

        first = await coordinator.start_sender(_sender(topic, name="first"))
        second = await coordinator.start_sender(_sender(topic, name="second"))
        assert first.handle is second.handle

        factory.hang("send", times=1)
        stuck = asyncio.ensure_future(first.send("stuck"))
        await asyncio.sleep(0.01)

        await first.stop()

        assert (await stuck).status is OutcomeStatus.CANCELLED
        assert first.state is SessionState.STOPPED
        assert second.state is SessionState.RUNNING
        assert second.handle.alive
        assert (await second.send("still works")).ok

    @pytest.mark.asyncio
    async def test_send_configured(self, coordinator, factory, topic):
        sender = await coordinator.start_sender(
            _sender(topic, message_template="payload", repeat_count=3)
        )

        outcomes = await sender.send_configured()

        assert len(outcomes) == 3
        factory.cluster.assert_sent("orders", count=3)

    @pytest.mark.asyncio
    async def test_send_configured_simulation(self, coordinator, factory, topic):
        sender = await coordinator.start_sender(
            _sender(topic, message_template="payload", repeat_count=3, simulate=True)
        )

        assert await sender.send_configured() == []
        factory.cluster.assert_sent("orders", count=0)


class TestListenerSession:

    @pytest.mark.asyncio
    async def test_stops_after_max_messages(self, coordinator, factory, topic):
        from kmt.sessions import SessionState

        factory.cluster.add_topic("orders")
        for value in ("m1", "m2", "m3"):
            factory.cluster.produce("orders", value)

        listener = await coordinator.start_listener(_listener(topic, max_messages=2))
        received = await _collect(listener)

        assert [m.value for m in received] == ["m1", "m2"]
        assert listener.received_count == 2
        assert listener.state is SessionState.STOPPED
        assert listener.handle is None

    @pytest.mark.asyncio
    async def test_receives_sent_messages(self, coordinator, topic):
        listener = await coordinator.start_listener(_listener(topic, max_messages=1, offset_reset="latest"))
        sender = await coordinator.start_sender(_sender(topic))

        pending = asyncio.ensure_future(_collect(listener))
        await asyncio.sleep(0.01)
        await sender.send("hello")

        received = await pending
        assert [m.value for m in received] == ["hello"]
        assert received[0].topic == "orders"

    @pytest.mark.asyncio
    async def test_messages_on_sink(self, coordinator, factory, topic, sink, wait_until):
        from kmt.events import EventKind

        factory.cluster.add_topic("orders")
        factory.cluster.produce("orders", "m1")

        listener = await coordinator.start_listener(_listener(topic))
        await wait_until(lambda: listener.received_count == 1)

        messages = sink.history(kind=EventKind.MESSAGE)
        assert [e.payload.value for e in messages] == ["m1"]
        assert messages[0].target == "listener"

    @pytest.mark.asyncio
    async def test_stop(self, coordinator, factory, topic):
        from kmt.sessions import SessionState

        listener = await coordinator.start_listener(_listener(topic))
        consumer = factory.clients[0].consumers[0]
        assert factory.cluster.groups["kmt-cg"].members

        await listener.stop()

        assert listener.state is SessionState.STOPPED
        assert consumer.closed
        assert factory.cluster.groups["kmt-cg"].members == []
        # the subscription of a stopped session ends immediately
        assert await _collect(listener) == []

    @pytest.mark.asyncio
    async def test_stop_ends_subscription(self, coordinator, topic):
        listener = await coordinator.start_listener(_listener(topic))
        pending = asyncio.ensure_future(_collect(listener))
        await asyncio.sleep(0.01)

        await listener.stop()

        assert await pending == []

    @pytest.mark.asyncio
    async def test_stop_while_starting(self, coordinator, factory, topic):
        from kmt.exceptions import SessionStateError
        from kmt.sessions import SessionState

        factory.delay("consumer.start", 0.05)
        listener = coordinator.create_listener(_listener(topic))
        starting = asyncio.ensure_future(listener.start())
        await asyncio.sleep(0.01)
        assert listener.state is SessionState.STARTING

        with pytest.raises(SessionStateError):
            await listener.stop()

        await starting
        assert listener.state is SessionState.RUNNING

    @pytest.mark.asyncio
    async def test_poll_failure_fails_session(self, coordinator, factory, topic, wait_until):
        from kmt.exceptions import ProtocolFailure
        from kmt.sessions import SessionState

        listener = await coordinator.start_listener(_listener(topic))
        error = ProtocolFailure("not authorized", error_name="TopicAuthorizationFailedError")
        factory.fail("poll", error)

        await wait_until(lambda: listener.state is SessionState.FAILED)

        assert listener.cause is error
        assert listener.handle is None
        assert factory.clients[0].consumers[0].closed

    @pytest.mark.asyncio
    async def test_hanging_poll_is_retried(self, coordinator, factory, topic, sink, wait_until):
        """A poll exceeding fetch timeout plus grace is abandoned and polling goes on."""
        from kmt.events import OutcomeStatus
        from kmt.sessions import SessionState
        from kmt.timeouts import OperationKind

        listener = await coordinator.start_listener(_listener(topic))
        factory.hang("poll", times=1)

        await wait_until(lambda: any(
            e.name == OperationKind.POLL.value for e in sink.history(status=OutcomeStatus.TIMEOUT)
        ))
        assert listener.state is SessionState.RUNNING

        factory.cluster.produce("orders", "after")
        await wait_until(lambda: listener.received_count == 1)

    @pytest.mark.asyncio
    async def test_close_timeout_fails_session(self, coordinator, factory, topic):
        """A consumer that never closes ends the session FAILED within the close budget."""
        from kmt.exceptions import OperationTimeout
        from kmt.sessions import SessionState

        listener = await coordinator.start_listener(_listener(topic))
        factory.hang("consumer.close")

        loop = asyncio.get_running_loop()
        started = loop.time()
        await listener.stop()

        assert loop.time() - started < 1.0
        assert listener.state is SessionState.FAILED
        assert isinstance(listener.cause, OperationTimeout)
        assert listener.handle is None

    @pytest.mark.asyncio
    async def test_stopping_one_listener_keeps_others(self, coordinator, factory, topic, wait_until):
        from kmt.sessions import SessionState

        first = await coordinator.start_listener(_listener(topic, name="first", consumer_group="g1"))
        second = await coordinator.start_listener(_listener(topic, name="second", consumer_group="g2"))

        await first.stop()
        factory.cluster.produce("orders", "m1")

        await wait_until(lambda: second.received_count == 1)
        assert first.state is SessionState.STOPPED
        assert second.state is SessionState.RUNNING
        assert first.received_count == 0

    @pytest.mark.asyncio
    async def test_buffer_is_bounded(self, coordinator, factory, topic, wait_until):
        factory.cluster.add_topic("orders")
        for i in range(5):
            factory.cluster.produce("orders", f"m{i}")

        listener = await coordinator.start_listener(_listener(topic, buffer_size=2))
        await wait_until(lambda: listener.received_count == 5)

        assert [m.value for m in listener.messages] == ["m3", "m4"]

    @pytest.mark.asyncio
    async def test_restart_resumes_from_committed(self, coordinator, factory, topic, wait_until):
        factory.cluster.add_topic("orders")
        factory.cluster.produce("orders", "m1")

        listener = await coordinator.start_listener(_listener(topic))
        await wait_until(lambda: listener.received_count == 1)
        await listener.stop()

        factory.cluster.produce("orders", "m2")
        await listener.start()
        await wait_until(lambda: listener.received_count == 1)

        assert listener.messages[-1].value == "m2"

    def test_poll_budget(self, policy, sink):
        from unittest.mock import MagicMock

        from kmt.executor import AsyncOperationExecutor
        from kmt.models import ListenerConfig
        from kmt.sessions import ListenerSession

        executor = MagicMock(spec=AsyncOperationExecutor)
        executor.policy = policy
        listener = ListenerSession(ListenerConfig(fetch_timeout_ms=1000), MagicMock(), executor, sink)

        # fetch timeout plus the 200 ms grace of the test policy
        assert listener.poll_budget == pytest.approx(1.2)

    @pytest.mark.asyncio
    async def test_disconnect_fails_running_listener(self, coordinator, topic, wait_until):
        """Closing the connection under a listener fails it and ends its subscription."""
        from kmt.exceptions import ConnectivityError
        from kmt.sessions import SessionState

        listener = await coordinator.start_listener(_listener(topic))
        handle = listener.handle
        received = asyncio.ensure_future(_collect(listener))
        await asyncio.sleep(0.05)

        await coordinator.disconnect(topic.broker)
        await wait_until(lambda: listener.state is SessionState.FAILED)

        assert isinstance(listener.cause, ConnectivityError)
        assert listener.cause.broker == topic.broker.identity
        assert await received == []
        assert listener.handle is None
        assert handle.refcount == 0

    @pytest.mark.asyncio
    async def test_consumer_creation_failure(self, coordinator, factory, topic):
        from unittest.mock import patch

        from kmt.exceptions import ProtocolFailure
        from kmt.sessions import SessionState
        from kmt.testing import MockBrokerClient

        listener = coordinator.create_listener(_listener(topic))
        error = ProtocolFailure("invalid group id", error_name="InvalidGroupIdError")

        with patch.object(MockBrokerClient, "create_consumer", side_effect=error):
            with pytest.raises(ProtocolFailure):
                await listener.start()

        assert listener.state is SessionState.FAILED
        assert listener.cause is error
        assert listener.handle is None
        assert coordinator.registry.handles[0].refcount == 0

        await listener.start()
        assert listener.state is SessionState.RUNNING

    @pytest.mark.asyncio
    async def test_idle_listeners_leave_room_for_sends(self, policy, sink, factory, topic, broker):
        """As many idle listeners as worker slots do not block a send."""
        from kmt.config import Settings
        from kmt.coordinator import BrokerOperationsCoordinator
        from kmt.models import TopicConfig

        settings = Settings(_env_file=None, worker_pool_size=2, idle_close_delay_ms=10000)
        payments = TopicConfig(name="payments", topic_name="payments", broker=broker)

        async with BrokerOperationsCoordinator(
            settings, policy=policy, sink=sink, client_factory=factory, probe=factory.probe
        ) as coordinator:
            for name in ("l1", "l2"):
                await coordinator.start_listener(_listener(payments, name=name, fetch_timeout_ms=2000))
            sender = await coordinator.start_sender(_sender(topic))
            await asyncio.sleep(0.05)

            outcome = await sender.send("x")

        assert outcome.ok
        factory.cluster.assert_sent("orders", count=1)


class TestSessionManager:

    @pytest.mark.asyncio
    async def test_stop_all(self, coordinator, topic):
        from kmt.sessions import SessionState

        sender = await coordinator.start_sender(_sender(topic))
        listener = await coordinator.start_listener(_listener(topic))

        await coordinator.sessions.stop_all()

        assert sender.state is SessionState.STOPPED
        assert listener.state is SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_listeners_for_topic(self, coordinator, topic, broker):
        from kmt.models import TopicConfig

        other = TopicConfig(name="payments", topic_name="payments", broker=broker)
        on_orders = await coordinator.start_listener(_listener(topic, name="a"))
        await coordinator.start_listener(_listener(other, name="b"))
        await coordinator.start_sender(_sender(topic))

        assert coordinator.sessions.listeners_for_topic(broker, "orders") == [on_orders]

    @pytest.mark.asyncio
    async def test_fail_skips_inactive(self, coordinator, topic):
        from kmt.exceptions import TopicRemoved

        listener = coordinator.create_listener(_listener(topic))

        assert await listener.fail(TopicRemoved("orders")) is False

    @pytest.mark.asyncio
    async def test_finished_sessions_are_dropped(self, coordinator, topic):
        """Stopped and failed sessions leave the table until restarted."""
        from kmt.exceptions import TopicRemoved

        sender = await coordinator.start_sender(_sender(topic))
        listener = await coordinator.start_listener(_listener(topic))

        await sender.stop()
        assert coordinator.sessions.get(sender.id) is None
        assert coordinator.sessions.sessions == [listener]

        await listener.fail(TopicRemoved("orders"))
        assert coordinator.sessions.sessions == []

        await sender.start()
        assert coordinator.sessions.get(sender.id) is sender
