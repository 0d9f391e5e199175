"""
Async operation executor.

Every remote call goes through ``AsyncOperationExecutor.submit``: it starts
the deadline at submission, runs the work on a bounded pool and resolves to
exactly one ``Outcome`` (success, timeout, cancelled or failure).

Example:
    executor = AsyncOperationExecutor(policy, sink)

    outcome = await executor.submit(
        OperationKind.DELETE_TOPIC,
        partial(client.delete_topic, "orders"),   # coroutine function or plain callable
        target="local",
    )
    if outcome.status is OutcomeStatus.TIMEOUT:
        ...

    # Or raise on anything but success
    value = await executor.run(OperationKind.FUTURE_WAIT, client.list_topics)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from concurrent.futures import Future as ThreadFuture, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TYPE_CHECKING
from uuid import uuid4

from kmt.events import EventKind, EventSink, OutcomeStatus, SinkEvent
from kmt.exceptions import ConnectivityError, OperationCancelled, OperationTimeout
from kmt.timeouts import OperationKind, TimeoutPolicy, resolve_kind

if TYPE_CHECKING:
    from kmt.registry import ConnectionHandle


logger = logging.getLogger(__name__)

Work = Callable[[], Awaitable[Any]] | Callable[[], Any]

# Long waits (a poll sits out its whole fetch timeout) run outside the worker
# limit and on their own threads, so idle listeners never hold a slot.
UNBOUNDED_KINDS = frozenset({OperationKind.POLL})


class CancellationToken:
    """
    Cooperative cancellation signal.

    One token is usually owned by a session and passed to every operation
    the session submits, so cancelling the session cancels only its own
    operations.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason)


@dataclass
class Outcome:
    """Resolution of one operation."""

    status: OutcomeStatus
    kind: OperationKind
    value: Any = None
    error: BaseException | None = None
    elapsed_ms: float = 0.0
    operation_id: str = ""

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    def unwrap(self) -> Any:
        """Return the value, or raise the error matching the status."""
        if self.status is OutcomeStatus.SUCCESS:
            return self.value
        if self.error is not None:
            raise self.error
        if self.status is OutcomeStatus.TIMEOUT:
            raise OperationTimeout(kind=self.kind.value)
        raise OperationCancelled()


@dataclass(eq=False)
class OperationHandle:
    """One in-flight remote call."""

    kind: OperationKind
    budget: float
    submitted_at: float
    target: str = ""
    description: str = ""
    connection: "ConnectionHandle | None" = None
    caller_token: CancellationToken | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    token: CancellationToken = field(default_factory=CancellationToken)
    outcome: Outcome | None = None
    task: asyncio.Task | None = field(default=None, repr=False)
    thread_future: ThreadFuture | None = field(default=None, repr=False)

    @property
    def deadline(self) -> float:
        return self.submitted_at + self.budget

    @property
    def resolved(self) -> bool:
        return self.outcome is not None

    def cancel(self, reason: str | None = None) -> None:
        """Request cancellation; resolves as CANCELLED unless already resolved."""
        self.token.cancel(reason)


class AsyncOperationExecutor:
    """
    Single chokepoint for timeouts and cancellation of remote calls.

    Args:
        policy: Budgets per operation kind
        sink: Where every resolution is reported
        max_workers: Maximum concurrently running units (async and threaded);
            kinds in ``UNBOUNDED_KINDS`` are not counted
    """

    def __init__(
        self,
        policy: TimeoutPolicy,
        sink: EventSink,
        max_workers: int = 8,
    ) -> None:
        self.policy = policy
        self.sink = sink
        self._semaphore = asyncio.Semaphore(max_workers)
        self._threads = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="kmt-op")
        self._long_threads = ThreadPoolExecutor(thread_name_prefix="kmt-poll")
        self._inflight: set[OperationHandle] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def inflight(self) -> list[OperationHandle]:
        return list(self._inflight)

    async def submit(
        self,
        kind: OperationKind | str,
        work: Work,
        *,
        connection: "ConnectionHandle | None" = None,
        cancel: CancellationToken | None = None,
        timeout: float | None = None,
        target: str = "",
        description: str = "",
    ) -> Outcome:
        """
        Run ``work`` under the budget of ``kind``.

        Args:
            kind: Operation kind, selects the budget
            work: Coroutine function, or plain callable run on the thread pool
            connection: Handle the work runs against (pending ops are tracked on it)
            cancel: Caller cancellation signal
            timeout: Budget override in seconds
            target: Broker/session identity for reporting
            description: Human-readable label for reporting

        Returns:
            Outcome, already reported to the sink
        """
        if self._closed:
            raise RuntimeError("Executor is shut down")

        kind = resolve_kind(kind)
        loop = asyncio.get_running_loop()
        budget = timeout if timeout is not None else self.policy.budget(kind)
        handle = OperationHandle(
            kind=kind,
            budget=budget,
            submitted_at=loop.time(),
            target=target or (connection.identity if connection is not None else ""),
            description=description,
            connection=connection,
            caller_token=cancel,
        )
        self._inflight.add(handle)
        if connection is not None:
            connection.track(handle)

        task = loop.create_task(self._run(handle, work), name=f"kmt-{kind.value}-{handle.id[:8]}")
        handle.task = task

        waiters: set[asyncio.Future] = {task, loop.create_task(handle.token.wait())}
        if cancel is not None:
            waiters.add(loop.create_task(cancel.wait()))

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=max(budget, 0.0), return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            self._abandon(handle)
            self._resolve(handle, self._cancelled(handle, "caller task cancelled"))
            raise
        finally:
            for waiter in waiters:
                if waiter is not task:
                    waiter.cancel()

        if task in done:
            outcome = self._from_task(handle, task)
        elif handle.token.cancelled or (cancel is not None and cancel.cancelled):
            reason = handle.token.reason or (cancel.reason if cancel is not None else None)
            self._abandon(handle)
            outcome = self._cancelled(handle, reason)
        else:
            self._abandon(handle)
            outcome = Outcome(
                status=OutcomeStatus.TIMEOUT,
                kind=kind,
                error=OperationTimeout(
                    f"{description or kind.value} exceeded {budget * 1000:.0f} ms",
                    kind=kind.value,
                    budget_ms=budget * 1000,
                ),
                elapsed_ms=self._elapsed(handle),
                operation_id=handle.id,
            )

        self._resolve(handle, outcome)
        return outcome

    async def run(self, kind: OperationKind | str, work: Work, **kwargs: Any) -> Any:
        """``submit`` and unwrap: returns the value or raises."""
        outcome = await self.submit(kind, work, **kwargs)
        return outcome.unwrap()

    async def shutdown(self) -> None:
        """Cancel every in-flight operation and stop the thread pool."""
        self._closed = True
        for handle in list(self._inflight):
            handle.cancel("executor shutdown")
        # let the waiters observe their tokens
        await asyncio.sleep(0)
        self._threads.shutdown(wait=False, cancel_futures=True)
        self._long_threads.shutdown(wait=False, cancel_futures=True)

    # ─── internals ──────────────────────────────────────────────────

    async def _run(self, handle: OperationHandle, work: Work) -> Any:
        if handle.kind in UNBOUNDED_KINDS:
            return await self._execute(handle, work, self._long_threads)
        async with self._semaphore:
            return await self._execute(handle, work, self._threads)

    @staticmethod
    async def _execute(handle: OperationHandle, work: Work, threads: ThreadPoolExecutor) -> Any:
        if inspect.iscoroutinefunction(work):
            return await work()
        future = threads.submit(work)
        handle.thread_future = future
        result = await asyncio.wrap_future(future)
        if inspect.isawaitable(result):
            handle.thread_future = None
            return await result
        return result

    def _from_task(self, handle: OperationHandle, task: asyncio.Task) -> Outcome:
        elapsed = self._elapsed(handle)
        if task.cancelled():
            return self._cancelled(handle, "work cancelled")

        error = task.exception()
        if error is None:
            return Outcome(
                status=OutcomeStatus.SUCCESS,
                kind=handle.kind,
                value=task.result(),
                elapsed_ms=elapsed,
                operation_id=handle.id,
            )
        if isinstance(error, OperationCancelled):
            return Outcome(OutcomeStatus.CANCELLED, handle.kind, error=error,
                           elapsed_ms=elapsed, operation_id=handle.id)
        if isinstance(error, (TimeoutError, OperationTimeout)):
            # the client library gave up on its own; outcome is just as unknown
            return Outcome(OutcomeStatus.TIMEOUT, handle.kind, error=error,
                           elapsed_ms=elapsed, operation_id=handle.id)

        if isinstance(error, ConnectivityError) and handle.connection is not None:
            handle.connection.mark_unhealthy(error)
        return Outcome(OutcomeStatus.FAILURE, handle.kind, error=error,
                       elapsed_ms=elapsed, operation_id=handle.id)

    def _cancelled(self, handle: OperationHandle, reason: str | None) -> Outcome:
        return Outcome(
            status=OutcomeStatus.CANCELLED,
            kind=handle.kind,
            error=OperationCancelled(reason),
            elapsed_ms=self._elapsed(handle),
            operation_id=handle.id,
        )

    def _abandon(self, handle: OperationHandle) -> None:
        """Cancel the work best-effort and report it if it completes anyway."""
        loop = asyncio.get_running_loop()

        if handle.thread_future is not None:
            handle.thread_future.add_done_callback(
                lambda f: self._late_from_thread(loop, handle, f)
            )
        elif handle.task is not None:
            handle.task.add_done_callback(lambda t: self._late_from_task(handle, t))

        if handle.task is not None:
            handle.task.cancel()

    def _late_from_task(self, handle: OperationHandle, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        self._publish_discarded(handle, task.exception())

    def _late_from_thread(
        self,
        loop: asyncio.AbstractEventLoop,
        handle: OperationHandle,
        future: ThreadFuture,
    ) -> None:
        if future.cancelled():
            return
        try:
            loop.call_soon_threadsafe(self._publish_discarded, handle, future.exception())
        except RuntimeError:
            logger.debug(f"Loop closed before late result of {handle.kind.value} could be reported")

    def _publish_discarded(self, handle: OperationHandle, error: BaseException | None) -> None:
        self.sink.publish(SinkEvent(
            kind=EventKind.OPERATION,
            name=handle.kind.value,
            target=handle.target,
            status=OutcomeStatus.DISCARDED,
            error=error,
            elapsed_ms=(asyncio.get_running_loop().time() - handle.submitted_at) * 1000,
            operation_id=handle.id,
            description=handle.description,
        ))

    def _resolve(self, handle: OperationHandle, outcome: Outcome) -> None:
        if handle.outcome is not None:
            return
        handle.outcome = outcome
        self._inflight.discard(handle)
        if handle.connection is not None:
            handle.connection.untrack(handle)

        self.sink.publish(SinkEvent(
            kind=EventKind.OPERATION,
            name=handle.kind.value,
            target=handle.target,
            status=outcome.status,
            payload=outcome.value,
            error=outcome.error,
            elapsed_ms=outcome.elapsed_ms,
            operation_id=handle.id,
            description=handle.description,
        ))

    @staticmethod
    def _elapsed(handle: OperationHandle) -> float:
        return (asyncio.get_running_loop().time() - handle.submitted_at) * 1000
