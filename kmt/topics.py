"""
Topic and consumer-group manager.

Tracks what the coordinator believes about each topic of each broker and
caches consumer-group snapshots, so a describe that times out can still
answer with the last known (stale) data.

Topic lifecycle:

    DRAFT ── create ──> CREATING ──┬── ok / already exists ──> PRESENT
                                   ├── timeout ──────────────> UNKNOWN
                                   └── rejected ─────────────> previous state

    PRESENT ── delete ──> DELETING ──┬── ok ───────> DELETED (listeners failed)
                                     ├── timeout ──> UNKNOWN
                                     └── rejected ─> previous state

    UNKNOWN is resolved by ``reconcile`` (a follow-up listing).
"""

from __future__ import annotations

import logging
from dataclasses import replace
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING

from kmt.events import EventKind, EventSink, OutcomeStatus, SinkEvent
from kmt.exceptions import ProtocolFailure, TopicRemoved
from kmt.models import (
    BrokerConfig,
    ClusterSummary,
    GroupMember,
    GroupMetadata,
    TopicConfig,
    TopicInfo,
)
from kmt.timeouts import OperationKind

if TYPE_CHECKING:
    from kmt.executor import AsyncOperationExecutor, Outcome
    from kmt.registry import ConnectionRegistry
    from kmt.sessions import SessionManager


logger = logging.getLogger(__name__)


class TopicState(str, Enum):
    DRAFT = "draft"
    CREATING = "creating"
    PRESENT = "present"
    UNKNOWN = "unknown"
    DELETING = "deleting"
    DELETED = "deleted"
    ABSENT = "absent"


class TopicManager:
    """
    Topic creation/deletion and consumer-group metadata.

    Args:
        registry: Source of connection handles
        executor: Runs every remote call under its budget
        sink: Receives topic state changes and stale snapshots
        sessions: Listener sessions failed when their topic is deleted
    """

    def __init__(
        self,
        registry: "ConnectionRegistry",
        executor: "AsyncOperationExecutor",
        sink: EventSink,
        sessions: "SessionManager",
    ) -> None:
        self._registry = registry
        self._executor = executor
        self._sink = sink
        self._sessions = sessions
        self._states: dict[tuple[str, str], TopicState] = {}
        self._groups: dict[tuple[str, str], GroupMetadata] = {}

    # ─── State ──────────────────────────────────────────────────────

    def topic_state(self, broker: BrokerConfig, name: str) -> TopicState:
        return self._states.get((broker.identity, name), TopicState.DRAFT)

    def states(self, broker: BrokerConfig) -> dict[str, TopicState]:
        return {
            name: state for (identity, name), state in self._states.items()
            if identity == broker.identity
        }

    def _transition(
        self,
        broker: BrokerConfig,
        name: str,
        state: TopicState,
        reason: str = "",
    ) -> None:
        key = (broker.identity, name)
        previous = self._states.get(key, TopicState.DRAFT)
        self._states[key] = state
        if previous is state:
            return

        text = f"Topic '{name}' on '{broker.display_name}': {previous.value} -> {state.value}"
        logger.info(f"{text} ({reason})" if reason else text)
        self._sink.publish(SinkEvent(
            kind=EventKind.TOPIC,
            name=state.value,
            target=f"{broker.identity}/{name}",
            payload={"topic": name, "broker": broker.identity, "previous": previous.value},
            description=reason,
        ))

    # ─── Topics ─────────────────────────────────────────────────────

    async def create_topic(self, topic: TopicConfig) -> "Outcome":
        """
        Create ``topic`` on its broker.

        Returns:
            The executor outcome; "already exists" is a FAILURE whose cause is
            a ``ProtocolFailure`` but leaves the topic PRESENT

        Raises:
            ValueError: If the topic config is not bound to a broker
            ConnectivityError: If the broker cannot be reached
        """
        if topic.broker is None:
            raise ValueError(f"'{topic.display_name}' is not bound to a broker")
        broker, name = topic.broker, topic.topic_name
        previous = self.topic_state(broker, name)

        async with self._registry.lease(broker) as handle:
            self._transition(broker, name, TopicState.CREATING)
            outcome = await self._executor.submit(
                OperationKind.FUTURE_WAIT,
                partial(handle.client.create_topic, topic),
                connection=handle,
                description=f"create topic '{name}'",
            )

        if outcome.ok:
            self._transition(broker, name, TopicState.PRESENT, "created")
        elif outcome.status is OutcomeStatus.TIMEOUT:
            self._transition(broker, name, TopicState.UNKNOWN, "create timed out")
        elif isinstance(outcome.error, ProtocolFailure) and outcome.error.is_topic_exists:
            self._transition(broker, name, TopicState.PRESENT, "already exists")
        else:
            self._transition(broker, name, previous, f"create failed: {outcome.error}")
        return outcome

    async def delete_topic(self, broker: BrokerConfig, name: str) -> "Outcome":
        """
        Delete topic ``name``; on success every listener bound to it fails
        with ``TopicRemoved``.

        Raises:
            ConnectivityError: If the broker cannot be reached
        """
        previous = self.topic_state(broker, name)

        async with self._registry.lease(broker) as handle:
            self._transition(broker, name, TopicState.DELETING)
            outcome = await self._executor.submit(
                OperationKind.DELETE_TOPIC,
                partial(handle.client.delete_topic, name),
                connection=handle,
                description=f"delete topic '{name}'",
            )

        if outcome.ok:
            self._transition(broker, name, TopicState.DELETED, "deleted")
            failed = await self._sessions.fail_listeners_for_topic(
                broker, name, TopicRemoved(name, broker.identity)
            )
            if failed:
                logger.warning(
                    f"Topic '{name}' removed under {len(failed)} listener(s): "
                    f"{', '.join(s.name for s in failed)}"
                )
        elif outcome.status is OutcomeStatus.TIMEOUT:
            self._transition(broker, name, TopicState.UNKNOWN, "delete timed out")
        elif isinstance(outcome.error, ProtocolFailure) and outcome.error.is_unknown_topic:
            self._transition(broker, name, TopicState.ABSENT, "does not exist")
        else:
            self._transition(broker, name, previous, f"delete failed: {outcome.error}")
        return outcome

    async def list_topics(self, broker: BrokerConfig) -> list[TopicInfo]:
        """
        List topics and reconcile local state with what the broker reports.

        Raises:
            ConnectivityError, OperationTimeout, ProtocolFailure
        """
        async with self._registry.lease(broker) as handle:
            outcome = await self._executor.submit(
                OperationKind.FUTURE_WAIT,
                handle.client.list_topics,
                connection=handle,
                description="list topics",
            )
        topics: list[TopicInfo] = outcome.unwrap()

        present = {t.name for t in topics}
        for name in present:
            self._transition(broker, name, TopicState.PRESENT, "listed")
        for name, state in self.states(broker).items():
            if name not in present and state in (
                TopicState.PRESENT, TopicState.UNKNOWN, TopicState.DELETED
            ):
                self._transition(broker, name, TopicState.ABSENT, "not listed")
        return topics

    async def reconcile(self, topic: TopicConfig) -> TopicState:
        """Resolve the state of ``topic`` with a fresh listing."""
        if topic.broker is None:
            raise ValueError(f"'{topic.display_name}' is not bound to a broker")
        await self.list_topics(topic.broker)
        return self.topic_state(topic.broker, topic.topic_name)

    async def describe_cluster(self, broker: BrokerConfig) -> ClusterSummary:
        async with self._registry.lease(broker) as handle:
            outcome = await self._executor.submit(
                OperationKind.FUTURE_WAIT,
                handle.client.describe_cluster,
                connection=handle,
                description="describe cluster",
            )
        summary: ClusterSummary = outcome.unwrap()

        inconsistent = summary.inconsistent_properties()
        if inconsistent:
            logger.warning(
                f"Cluster '{summary.cluster_id}' nodes disagree on: {', '.join(inconsistent)}"
            )
        return summary

    # ─── Consumer groups ────────────────────────────────────────────

    async def describe_consumer_group(self, broker: BrokerConfig, group_id: str) -> GroupMetadata:
        """
        Fetch consumer group metadata.

        On timeout the last known snapshot is returned with ``stale=True``
        (an empty stale snapshot if there is none) and a STALE event is
        published.

        Raises:
            ConnectivityError: If the broker cannot be reached
            ProtocolFailure: If the broker rejected the request
            OperationCancelled: If the describe was cancelled
        """
        key = (broker.identity, group_id)
        async with self._registry.lease(broker) as handle:
            outcome = await self._executor.submit(
                OperationKind.DESCRIBE_GROUP,
                partial(handle.client.describe_consumer_group, group_id),
                connection=handle,
                description=f"describe group '{group_id}'",
            )

        if outcome.ok:
            self._groups[key] = outcome.value
            return outcome.value

        if outcome.status is OutcomeStatus.TIMEOUT:
            last = self._groups.get(key)
            snapshot = replace(last, stale=True) if last else GroupMetadata(group_id=group_id, stale=True)
            self._sink.publish(SinkEvent(
                kind=EventKind.OPERATION,
                name=OperationKind.DESCRIBE_GROUP.value,
                target=broker.identity,
                status=OutcomeStatus.STALE,
                payload=snapshot,
                error=outcome.error,
                operation_id=outcome.operation_id,
                description=f"group '{group_id}' as of {snapshot.fetched_at.isoformat()}",
            ))
            return snapshot

        return outcome.unwrap()

    async def list_consumer_groups(self, broker: BrokerConfig) -> list[str]:
        async with self._registry.lease(broker) as handle:
            outcome = await self._executor.submit(
                OperationKind.FUTURE_WAIT,
                handle.client.list_consumer_groups,
                connection=handle,
                description="list consumer groups",
            )
        return outcome.unwrap()

    def cached_group(self, broker: BrokerConfig, group_id: str) -> GroupMetadata | None:
        return self._groups.get((broker.identity, group_id))

    def consumers_for_topic(self, broker: BrokerConfig, topic: str) -> list[GroupMember]:
        """Members of cached groups that have a partition of ``topic`` assigned."""
        return [
            member
            for (identity, _), group in self._groups.items()
            if identity == broker.identity
            for member in group.members
            if any(a.topic == topic for a in member.assignments)
        ]
