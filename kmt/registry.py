"""
Connection registry.

Owns the table of live ``ConnectionHandle`` objects keyed by broker config
identity. Handles are created lazily, shared by every session targeting the
same broker, reference counted and closed when nobody uses them anymore.

Example:
    registry = ConnectionRegistry(executor, client_factory)

    handle = await registry.acquire(broker)      # connects or reuses
    ...
    registry.release(handle)                     # close scheduled at zero refs

    await registry.force_close(broker)           # cancel pending ops and close now
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import AsyncIterator, Awaitable, Callable, TYPE_CHECKING

from kmt.base import BrokerClient, ClientFactory
from kmt.exceptions import ClusterConfigurationError, ConnectivityError
from kmt.models import BrokerConfig
from kmt.timeouts import OperationKind

if TYPE_CHECKING:
    from kmt.executor import AsyncOperationExecutor, OperationHandle, Outcome


logger = logging.getLogger(__name__)

Probe = Callable[[str, int], Awaitable[None]]


async def tcp_probe(host: str, port: int) -> None:
    """
    Check that ``host:port`` accepts TCP connections.

    Raises:
        OSError: If the connection is refused or the host cannot be resolved
    """
    reader, writer = await asyncio.open_connection(host, port)
    writer.close()
    await writer.wait_closed()


class ConnectionHandle:
    """
    Live client connection to one broker config.

    Only the registry mutates ``refcount``; sessions hold a reference between
    ``acquire`` and ``release``.
    """

    def __init__(self, broker: BrokerConfig, client: BrokerClient) -> None:
        self.broker = broker
        self.client = client
        self.refcount = 0
        self.healthy = True
        self.closed = False
        self.failure: BaseException | None = None
        self._discarded = False
        self._operations: set["OperationHandle"] = set()
        self._close_task: asyncio.Task | None = None

    @property
    def identity(self) -> str:
        return self.broker.identity

    @property
    def alive(self) -> bool:
        return self.healthy and not self.closed and not self._discarded

    @property
    def pending_operations(self) -> list["OperationHandle"]:
        return list(self._operations)

    def track(self, operation: "OperationHandle") -> None:
        self._operations.add(operation)

    def untrack(self, operation: "OperationHandle") -> None:
        self._operations.discard(operation)

    def mark_unhealthy(self, cause: BaseException | None = None) -> None:
        if self.healthy:
            logger.warning(f"Connection to '{self.broker.display_name}' marked unhealthy: {cause}")
        self.healthy = False
        self.failure = cause

    def cancel_pending(self, reason: str) -> int:
        operations = list(self._operations)
        for operation in operations:
            operation.cancel(reason)
        return len(operations)

    def __repr__(self) -> str:
        return (
            f"ConnectionHandle({self.identity!r}, refs={self.refcount}, "
            f"healthy={self.healthy}, closed={self.closed})"
        )


class ConnectionRegistry:
    """
    At most one live handle per broker identity.

    Args:
        executor: Runs the probe, client start and close under their budgets
        client_factory: Builds the client for a broker config
        probe: Reachability check, ``tcp_probe`` by default
        idle_close_delay: Seconds a handle stays open after its last release
        verify_advertised_listeners: Require one advertised listener to be reachable
    """

    def __init__(
        self,
        executor: "AsyncOperationExecutor",
        client_factory: ClientFactory,
        probe: Probe | None = None,
        idle_close_delay: float = 0.0,
        verify_advertised_listeners: bool = True,
    ) -> None:
        self._executor = executor
        self._client_factory = client_factory
        self._probe = probe or tcp_probe
        self._idle_close_delay = idle_close_delay
        self._verify_advertised = verify_advertised_listeners
        self._handles: dict[str, ConnectionHandle] = {}
        self._connecting: dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()
        self.connect_attempts = 0

    @property
    def handles(self) -> list[ConnectionHandle]:
        return list(self._handles.values())

    def get(self, broker: BrokerConfig) -> ConnectionHandle | None:
        return self._handles.get(broker.identity)

    async def acquire(self, broker: BrokerConfig) -> ConnectionHandle:
        """
        Return a live handle for ``broker``, connecting if needed.

        Concurrent callers for the same identity share one connect attempt.

        Raises:
            ConnectivityError: If the broker cannot be reached (nothing is cached)
        """
        key = broker.identity
        while True:
            async with self._lock:
                handle = self._handles.get(key)
                if handle is not None and handle.alive:
                    self._retain(handle)
                    return handle
                if handle is not None:
                    self._detach(handle)
                    self._spawn(self._close_handle(handle))

                pending = self._connecting.get(key)
                if pending is None:
                    pending = asyncio.ensure_future(self._connect(broker))
                    self._connecting[key] = pending

            try:
                handle = await asyncio.shield(pending)
            except asyncio.CancelledError:
                pending.add_done_callback(partial(self._reap_orphan, key))
                raise

            async with self._lock:
                if handle.alive and self._handles.get(key) is handle:
                    self._retain(handle)
                    return handle
            # closed between creation and retain; try again

    @asynccontextmanager
    async def lease(self, broker: BrokerConfig) -> AsyncIterator[ConnectionHandle]:
        """Hold a reference for the duration of the block."""
        handle = await self.acquire(broker)
        try:
            yield handle
        finally:
            self.release(handle)

    def release(self, handle: ConnectionHandle) -> None:
        """Drop one reference; at zero a close is scheduled."""
        if handle.refcount <= 0:
            logger.warning(f"release() on unreferenced {handle!r}")
            return
        handle.refcount -= 1
        if handle.refcount == 0 and not handle.closed:
            self._schedule_close(handle)

    async def force_close(self, broker: BrokerConfig) -> "Outcome | None":
        """
        Cancel pending operations and close the handle now.

        The handle is discarded even if closing times out; the returned
        outcome (also reported to the sink) tells whether the close succeeded.
        """
        async with self._lock:
            handle = self._handles.get(broker.identity)
            if handle is None:
                return None
            self._detach(handle)
        return await self._close_handle(handle)

    async def close_all(self) -> None:
        """Force-close every handle and abandon in-flight connects."""
        connecting = list(self._connecting.values())
        for pending in connecting:
            pending.cancel()
        if connecting:
            await asyncio.gather(*connecting, return_exceptions=True)
        for handle in self.handles:
            await self.force_close(handle.broker)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ─── internals ──────────────────────────────────────────────────

    async def _connect(self, broker: BrokerConfig) -> ConnectionHandle:
        key = broker.identity
        loop = asyncio.get_running_loop()
        started = loop.time()
        self.connect_attempts += 1

        def elapsed_ms() -> float:
            return (loop.time() - started) * 1000

        try:
            logger.info(f"Connecting to '{broker.display_name}' ({broker.bootstrap_servers})")

            probe = await self._executor.submit(
                OperationKind.REACHABILITY,
                partial(self._probe, broker.hostname, broker.port),
                target=key,
                description=f"probe {broker.bootstrap_servers}",
            )
            if not probe.ok:
                raise ConnectivityError(
                    f"Broker '{broker.display_name}' at {broker.bootstrap_servers} "
                    f"is not reachable: {probe.error}",
                    broker=key,
                    elapsed_ms=elapsed_ms(),
                )

            client = self._client_factory(broker)
            try:
                handle = await self._open(broker, client, elapsed_ms)
            except asyncio.CancelledError:
                logger.info(f"Connect to '{broker.display_name}' abandoned, closing its client")
                self._spawn(self._executor.submit(
                    OperationKind.CLOSE, client.close, target=key, description="close client",
                ))
                raise

            self._handles[key] = handle
            logger.info(f"Connected to '{broker.display_name}' in {elapsed_ms():.0f} ms")
            return handle
        finally:
            self._connecting.pop(key, None)

    async def _open(
        self,
        broker: BrokerConfig,
        client: BrokerClient,
        elapsed_ms: Callable[[], float],
    ) -> ConnectionHandle:
        key = broker.identity
        started_client = await self._executor.submit(
            OperationKind.FUTURE_WAIT,
            client.start,
            target=key,
            description="start client",
        )
        if not started_client.ok:
            await self._executor.submit(OperationKind.CLOSE, client.close, target=key,
                                        description="close client")
            raise ConnectivityError(
                f"Could not open client for '{broker.display_name}': {started_client.error}",
                broker=key,
                elapsed_ms=elapsed_ms(),
            )

        handle = ConnectionHandle(broker, client)
        if self._verify_advertised:
            try:
                await self._verify_advertised_listeners(handle)
            except ClusterConfigurationError:
                await self._close_handle(handle)
                raise
        return handle

    async def _verify_advertised_listeners(self, handle: ConnectionHandle) -> None:
        """At least one node the cluster advertises must be reachable from here."""
        described = await self._executor.submit(
            OperationKind.FUTURE_WAIT,
            handle.client.describe_cluster,
            target=handle.identity,
            description="describe cluster",
        )
        if not described.ok:
            logger.warning(f"Could not verify advertised listeners: {described.error}")
            return

        advertised = [f"{n.host}:{n.port}" for n in described.value.nodes]
        for node in described.value.nodes:
            logger.debug(f"Checking if advertised listener '{node.host}:{node.port}' is reachable")
            probe = await self._executor.submit(
                OperationKind.REACHABILITY,
                partial(self._probe, node.host, node.port),
                target=handle.identity,
                description=f"probe advertised {node.host}:{node.port}",
            )
            if probe.ok:
                return

        if advertised:
            raise ClusterConfigurationError(
                "Cluster config for 'advertised.listeners' is invalid: none of "
                f"{advertised} is reachable, producers/consumers would be unable to use this cluster",
                broker=handle.identity,
            )

    def _retain(self, handle: ConnectionHandle) -> None:
        handle.refcount += 1
        if handle._close_task is not None and not handle._close_task.done():
            handle._close_task.cancel()
        handle._close_task = None

    def _detach(self, handle: ConnectionHandle) -> None:
        handle._discarded = True
        if self._handles.get(handle.identity) is handle:
            del self._handles[handle.identity]
        close_task = handle._close_task
        handle._close_task = None
        if close_task is not None and close_task is not asyncio.current_task():
            close_task.cancel()

    def _schedule_close(self, handle: ConnectionHandle) -> None:
        handle._close_task = self._spawn(self._close_when_idle(handle))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _close_when_idle(self, handle: ConnectionHandle) -> None:
        await asyncio.sleep(self._idle_close_delay)
        async with self._lock:
            if handle.refcount > 0 or self._handles.get(handle.identity) is not handle:
                return
            self._detach(handle)
        logger.info(f"Closing idle connection to '{handle.broker.display_name}'")
        await self._close_handle(handle)

    async def _close_handle(self, handle: ConnectionHandle) -> "Outcome":
        cancelled = handle.cancel_pending("connection closing")
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending operation(s) on '{handle.broker.display_name}'")

        outcome = await self._executor.submit(
            OperationKind.CLOSE,
            handle.client.close,
            target=handle.identity,
            description="close connection",
        )
        handle.closed = True
        if not outcome.ok:
            handle.mark_unhealthy(outcome.error)
            logger.error(f"Closing '{handle.broker.display_name}' failed: {outcome.error}")
        return outcome

    def _reap_orphan(self, key: str, pending: asyncio.Future) -> None:
        """A waiter was cancelled; close the handle if nobody else picked it up."""
        if pending.cancelled() or pending.exception() is not None:
            return
        handle = pending.result()
        if handle.refcount == 0 and handle._close_task is None and not handle.closed:
            self._schedule_close(handle)
