"""
Message exchange sessions.

A session binds a sender or listener config to a connection handle and
runs its remote calls through the executor with its own cancellation
token, so stopping one session never affects another session sharing the
same handle.

Lifecycle:

    IDLE ──> STARTING ──> RUNNING ──> STOPPING ──> STOPPED
                 │            │            │
                 └────────────┴────────────┴──> FAILED (always with a cause)

    STOPPED and FAILED sessions can be started again.

Example:
    sender = SenderSession(sender_config, registry, executor, sink)
    await sender.start()
    outcome = await sender.send("hello")
    await sender.stop()

    listener = ListenerSession(listener_config, registry, executor, sink)
    await listener.start()
    async for message in listener.subscribe():
        print(message.format())
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from functools import partial
from typing import AsyncIterator, Callable, TYPE_CHECKING
from uuid import uuid4

from kmt.events import EventKind, EventSink, OutcomeStatus, SinkEvent
from kmt.exceptions import (
    ConnectivityError,
    OperationCancelled,
    OperationTimeout,
    SessionStateError,
)
from kmt.executor import CancellationToken
from kmt.models import (
    BrokerConfig,
    ListenerConfig,
    ReceivedMessage,
    SenderConfig,
    TopicConfig,
    require_topic,
)
from kmt.timeouts import OperationKind

if TYPE_CHECKING:
    from kmt.executor import AsyncOperationExecutor, Outcome
    from kmt.registry import ConnectionHandle, ConnectionRegistry


logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


_ALLOWED: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.STARTING},
    SessionState.STARTING: {SessionState.RUNNING, SessionState.STOPPING, SessionState.FAILED},
    SessionState.RUNNING: {SessionState.STOPPING, SessionState.FAILED},
    SessionState.STOPPING: {SessionState.STOPPED, SessionState.FAILED},
    SessionState.STOPPED: {SessionState.STARTING},
    SessionState.FAILED: {SessionState.STARTING},
}

_ACTIVE = (SessionState.STARTING, SessionState.RUNNING, SessionState.STOPPING)


class Session:
    """
    Shared state machine of sender and listener sessions.

    Args:
        config: Sender or listener config (referenced, never copied)
        registry: Source of the connection handle
        executor: Runs every remote call
        sink: Receives state transitions
    """

    role = "session"

    def __init__(
        self,
        config: SenderConfig | ListenerConfig,
        registry: "ConnectionRegistry",
        executor: "AsyncOperationExecutor",
        sink: EventSink,
    ) -> None:
        self.config = config
        self.id = str(uuid4())
        self.state = SessionState.IDLE
        self.cause: BaseException | None = None
        self.handle: "ConnectionHandle | None" = None
        self.token = CancellationToken()
        self._registry = registry
        self._executor = executor
        self._sink = sink
        self.on_state: Callable[["Session"], None] | None = None

    @property
    def name(self) -> str:
        return self.config.display_name

    @property
    def topic(self) -> TopicConfig | None:
        return self.config.topic

    @property
    def active(self) -> bool:
        return self.state in _ACTIVE

    def is_bound_to(self, broker: BrokerConfig, topic_name: str) -> bool:
        topic = self.config.topic
        return (
            topic is not None
            and topic.broker is not None
            and topic.broker.identity == broker.identity
            and topic.topic_name == topic_name
        )

    # ─── State machine ──────────────────────────────────────────────

    def _transition(self, state: SessionState, cause: BaseException | None = None) -> None:
        if state not in _ALLOWED[self.state]:
            raise SessionStateError(
                f"{self.role} '{self.name}' cannot go from {self.state.value} to {state.value}",
                details={"session": self.id, "state": self.state.value},
            )
        if state is SessionState.FAILED and cause is None:
            raise ValueError("FAILED transition requires a cause")

        previous, self.state = self.state, state
        if state is SessionState.FAILED:
            self.cause = cause
            logger.warning(f"{self.role.capitalize()} '{self.name}' failed: {cause}")
        else:
            logger.info(f"{self.role.capitalize()} '{self.name}': {previous.value} -> {state.value}")

        self._sink.publish(SinkEvent(
            kind=EventKind.SESSION,
            name=state.value,
            target=self.name,
            payload={"session_id": self.id, "role": self.role, "previous": previous.value},
            error=cause,
        ))
        self._on_transition(state)
        if self.on_state is not None:
            self.on_state(self)

    def _on_transition(self, state: SessionState) -> None:
        pass

    def _settle(self, state: SessionState, cause: BaseException | None = None) -> None:
        """Enter a terminal state unless the session already failed."""
        if self.state is SessionState.FAILED:
            return
        self._transition(state, cause)

    def _begin(self) -> BrokerConfig:
        if self.state not in (SessionState.IDLE, SessionState.STOPPED, SessionState.FAILED):
            raise SessionStateError(f"{self.role} '{self.name}' is already {self.state.value}")
        _, broker = require_topic(self.config)
        self.token = CancellationToken()
        self.cause = None
        self._transition(SessionState.STARTING)
        return broker

    async def _attach(self, broker: BrokerConfig) -> "ConnectionHandle":
        try:
            self.handle = await self._registry.acquire(broker)
        except ConnectivityError as e:
            self._transition(SessionState.FAILED, e)
            raise
        except asyncio.CancelledError:
            self._transition(SessionState.FAILED, OperationCancelled("start cancelled"))
            raise
        return self.handle

    def _detach(self) -> None:
        handle, self.handle = self.handle, None
        if handle is not None:
            self._registry.release(handle)

    async def fail(self, cause: BaseException) -> bool:
        """
        Force the session into FAILED with ``cause``.

        Returns:
            False if the session was not active
        """
        if not self.active:
            return False
        self._transition(SessionState.FAILED, cause)
        self.token.cancel(str(cause))
        self._detach()
        return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, state={self.state.value})"


class SenderSession(Session):
    """
    Producer session.

    Sends are serialized per session: a second ``send`` waits until the
    first one resolved, so records leave in call order.
    """

    role = "sender"

    def __init__(
        self,
        config: SenderConfig,
        registry: "ConnectionRegistry",
        executor: "AsyncOperationExecutor",
        sink: EventSink,
    ) -> None:
        super().__init__(config, registry, executor, sink)
        self._send_lock = asyncio.Lock()
        self.sent_count = 0
        self.failed_count = 0

    async def start(self) -> None:
        broker = self._begin()
        await self._attach(broker)
        self._transition(SessionState.RUNNING)

    async def send(
        self,
        value: str | bytes | None,
        key: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> "Outcome":
        """
        Produce one record.

        Args:
            value: Record value
            key: Record key, the config's ``message_key`` when omitted
            headers: Merged over the config's headers

        Returns:
            Outcome of the send, also published to the sink

        Raises:
            SessionStateError: If the session is not running
            ConnectivityError: If the connection was lost before sending
        """
        if self.state is not SessionState.RUNNING:
            raise SessionStateError(f"sender '{self.name}' is {self.state.value}")

        topic, broker = require_topic(self.config)
        merged = {**self.config.headers, **(headers or {})}
        key = key if key is not None else self.config.message_key

        async with self._send_lock:
            handle = self.handle
            if handle is None or not handle.alive:
                cause = ConnectivityError(
                    f"Connection to '{broker.display_name}' is no longer usable",
                    broker=broker.identity,
                )
                if self.state is SessionState.RUNNING:
                    await self.fail(cause)
                raise cause

            outcome = await self._executor.submit(
                OperationKind.FUTURE_WAIT,
                partial(handle.client.send, topic.topic_name, value, key, merged or None),
                connection=handle,
                cancel=self.token,
                target=self.name,
                description=f"send to '{topic.topic_name}'",
            )

        if outcome.ok:
            self.sent_count += 1
        else:
            self.failed_count += 1
            if (
                outcome.status is OutcomeStatus.FAILURE
                and not handle.alive
                and self.state is SessionState.RUNNING
            ):
                await self.fail(outcome.error)
        return outcome

    async def send_configured(self) -> list["Outcome"]:
        """
        Send the configured template ``repeat_count`` times.

        In simulation mode the records are only logged.
        """
        topic, _ = require_topic(self.config)
        total = self.config.repeat_count
        template = self.config.message_template
        logger.info(
            f"Sending message [topic '{topic.topic_name}', key '{self.config.message_key}'], "
            f"content template '{template}', repeat count: {total}"
        )

        outcomes: list[Outcome] = []
        for number in range(1, total + 1):
            if self.state is not SessionState.RUNNING:
                break
            if self.config.simulate:
                logger.info(
                    f"[simulation] {number}/{total} to '{topic.topic_name}' "
                    f"key '{self.config.message_key}': {template}"
                )
                continue
            outcomes.append(await self.send(template))
        return outcomes

    async def stop(self) -> None:
        """Cancel outstanding sends of this session and release the connection."""
        if self.state is not SessionState.RUNNING:
            return
        self._transition(SessionState.STOPPING)
        self.token.cancel("session stopped")

        budget = self._executor.policy.budget(OperationKind.CLOSE)
        try:
            await asyncio.wait_for(self._send_lock.acquire(), budget)
        except TimeoutError:
            self._detach()
            self._settle(SessionState.FAILED, OperationTimeout(
                f"sender '{self.name}' did not stop within {budget * 1000:.0f} ms",
                kind=OperationKind.CLOSE.value,
                budget_ms=budget * 1000,
            ))
            return
        self._send_lock.release()
        self._detach()
        self._settle(SessionState.STOPPED)


class ListenerSession(Session):
    """
    Consumer session with its own polling task.

    Each poll is one executor unit with budget ``fetch_timeout`` plus the
    policy's poll grace. Received messages land in a bounded buffer (oldest
    dropped first), on the sink as MESSAGE events, and in every
    ``subscribe()`` iterator.
    """

    role = "listener"

    def __init__(
        self,
        config: ListenerConfig,
        registry: "ConnectionRegistry",
        executor: "AsyncOperationExecutor",
        sink: EventSink,
        buffer_size: int = 500,
    ) -> None:
        super().__init__(config, registry, executor, sink)
        self.messages: deque[ReceivedMessage] = deque(maxlen=config.buffer_size or buffer_size)
        self.received_count = 0
        self._consumer = None
        self._task: asyncio.Task | None = None
        self._subscribers: set[asyncio.Queue[ReceivedMessage | None]] = set()

    @property
    def poll_budget(self) -> float:
        return self._executor.policy.poll_budget(self.config.fetch_timeout_ms)

    @property
    def limit_reached(self) -> bool:
        limit = self.config.max_messages
        return limit is not None and self.received_count >= limit

    async def start(self) -> None:
        broker = self._begin()
        topic, _ = require_topic(self.config)
        self.received_count = 0
        handle = await self._attach(broker)

        try:
            consumer = handle.client.create_consumer(
                topic.topic_name,
                self.config.consumer_group,
                client_id=f"kmt-listener-{self.id[:8]}",
                offset_reset=self.config.offset_reset,
            )
        except Exception as e:
            self._detach()
            self._settle(SessionState.FAILED, e)
            raise
        outcome = await self._executor.submit(
            OperationKind.FUTURE_WAIT,
            consumer.start,
            connection=handle,
            cancel=self.token,
            target=self.name,
            description=f"subscribe to '{topic.topic_name}'",
        )
        if not outcome.ok or self.state is not SessionState.STARTING:
            self._consumer = consumer
            await self._close_consumer()
            self._detach()
            cause = outcome.error or SessionStateError(f"listener '{self.name}' was stopped while starting")
            self._settle(SessionState.FAILED, cause)
            raise cause

        self._consumer = consumer
        self._transition(SessionState.RUNNING)
        self._task = asyncio.create_task(self._poll_loop(), name=f"kmt-listener-{self.id[:8]}")

    async def _poll_loop(self) -> None:
        topic, _ = require_topic(self.config)
        consumer, handle = self._consumer, self.handle

        while self.state is SessionState.RUNNING:
            if not handle.alive:
                await self._shutdown(SessionState.FAILED, self._connection_lost(handle))
                return
            outcome = await self._executor.submit(
                OperationKind.POLL,
                partial(consumer.poll, self.config.fetch_timeout_ms),
                connection=handle,
                cancel=self.token,
                timeout=self.poll_budget,
                target=self.name,
                description=f"poll '{topic.topic_name}'",
            )
            if outcome.ok:
                for message in outcome.value:
                    if self.limit_reached:
                        break
                    self._deliver(message)
                if self.limit_reached:
                    logger.info(f"Listener '{self.name}' received {self.received_count} message(s)")
                    break
            elif outcome.status is OutcomeStatus.TIMEOUT:
                # already reported by the executor; try again
                continue
            elif outcome.status is OutcomeStatus.CANCELLED:
                if self.token.cancelled or self.state is not SessionState.RUNNING:
                    return
                # cancelled from outside the session: connection closed or executor shut down
                await self._shutdown(SessionState.FAILED, self._connection_lost(handle, outcome.error))
                return
            else:
                if self.state is SessionState.RUNNING:
                    await self._shutdown(SessionState.FAILED, outcome.error)
                return

        if self.state is SessionState.RUNNING:
            self._transition(SessionState.STOPPING)
            await self._shutdown(SessionState.STOPPED)

    def _connection_lost(
        self,
        handle: "ConnectionHandle",
        reason: BaseException | None = None,
    ) -> ConnectivityError:
        cause = reason or handle.failure
        message = f"Connection to '{handle.broker.display_name}' closed under listener '{self.name}'"
        return ConnectivityError(
            f"{message}: {cause}" if cause else message,
            broker=handle.identity,
        )

    def _deliver(self, message: ReceivedMessage) -> None:
        self.messages.append(message)
        self.received_count += 1
        logger.debug(message.format().rstrip())
        self._sink.publish(SinkEvent(
            kind=EventKind.MESSAGE,
            name="received",
            target=self.name,
            payload=message,
        ))
        self._broadcast(message)

    def _broadcast(self, item: ReceivedMessage | None) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(item)
            except asyncio.QueueFull:
                queue.get_nowait()
                queue.put_nowait(item)

    def _on_transition(self, state: SessionState) -> None:
        if state in (SessionState.STOPPED, SessionState.FAILED):
            self._broadcast(None)

    async def subscribe(self) -> AsyncIterator[ReceivedMessage]:
        """Messages received after the call; ends when the session stops or fails."""
        if self.state in (SessionState.STOPPED, SessionState.FAILED):
            return
        queue: asyncio.Queue[ReceivedMessage | None] = asyncio.Queue(maxsize=self.messages.maxlen or 0)
        self._subscribers.add(queue)
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                yield item
        finally:
            self._subscribers.discard(queue)

    async def _close_consumer(self) -> "Outcome | None":
        consumer, self._consumer = self._consumer, None
        if consumer is None:
            return None
        if self._executor.closed:
            logger.warning(f"Executor shut down; consumer of listener '{self.name}' not closed")
            return None
        return await self._executor.submit(
            OperationKind.CLOSE,
            consumer.close,
            connection=self.handle,
            target=self.name,
            description="close consumer",
        )

    async def _shutdown(self, final: SessionState, cause: BaseException | None = None) -> None:
        self.token.cancel(f"listener {final.value}")
        closed = await self._close_consumer()
        self._detach()
        if final is SessionState.STOPPED and closed is not None and not closed.ok:
            self._settle(SessionState.FAILED, closed.error)
        else:
            self._settle(final, cause)

    async def _wait_for_loop(self) -> bool:
        task = self._task
        if task is None or task.done() or task is asyncio.current_task():
            return True
        done, _ = await asyncio.wait({task}, timeout=self._executor.policy.budget(OperationKind.CLOSE))
        if not done:
            task.cancel()
        return bool(done)

    async def stop(self) -> None:
        """
        Stop polling and close the consumer, bounded by the CLOSE budget.

        If the loop does not finish in time the session ends FAILED; the
        connection is released either way.
        """
        if self.state is SessionState.STARTING:
            raise SessionStateError(f"listener '{self.name}' is still starting")
        if self.state is not SessionState.RUNNING:
            return
        self._transition(SessionState.STOPPING)
        self.token.cancel("stop requested")

        if not await self._wait_for_loop():
            budget_ms = self._executor.policy.budget_ms(OperationKind.CLOSE)
            await self._shutdown(SessionState.FAILED, OperationTimeout(
                f"listener '{self.name}' did not stop within {budget_ms} ms",
                kind=OperationKind.CLOSE.value,
                budget_ms=budget_ms,
            ))
            return
        await self._shutdown(SessionState.STOPPED)

    async def fail(self, cause: BaseException) -> bool:
        if not self.active:
            return False
        self._transition(SessionState.FAILED, cause)
        self.token.cancel(str(cause))
        await self._wait_for_loop()
        await self._close_consumer()
        self._detach()
        return True


class SessionManager:
    """
    Live sessions of one coordinator.

    A session is dropped once it reaches STOPPED or FAILED and tracked again
    when it is restarted.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    @property
    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def add(self, session: Session) -> Session:
        self._sessions[session.id] = session
        session.on_state = self._track
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Session | None:
        return self._sessions.pop(session_id, None)

    def _track(self, session: Session) -> None:
        if session.state in (SessionState.STOPPED, SessionState.FAILED):
            self._sessions.pop(session.id, None)
        elif session.state is SessionState.STARTING:
            self._sessions[session.id] = session

    def listeners_for_topic(self, broker: BrokerConfig, topic_name: str) -> list[ListenerSession]:
        return [
            s for s in self._sessions.values()
            if isinstance(s, ListenerSession) and s.active and s.is_bound_to(broker, topic_name)
        ]

    async def fail_listeners_for_topic(
        self,
        broker: BrokerConfig,
        topic_name: str,
        cause: BaseException,
    ) -> list[ListenerSession]:
        """Fail every active listener bound to ``topic_name`` on ``broker``."""
        listeners = self.listeners_for_topic(broker, topic_name)
        results = await asyncio.gather(*(s.fail(cause) for s in listeners))
        return [s for s, failed in zip(listeners, results) if failed]

    async def stop_all(self) -> None:
        running = [s for s in self._sessions.values() if s.state is SessionState.RUNNING]
        await asyncio.gather(*(s.stop() for s in running))
