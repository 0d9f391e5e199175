"""
Broker operations coordinator.

Wires the timeout policy, executor, connection registry, topic manager,
sessions and event sink together and exposes the commands a presentation
layer issues.

Example:
    async with BrokerOperationsCoordinator() as coordinator:
        broker = BrokerConfig(name="local", hostname="localhost", port=9092)
        topic = TopicConfig(name="orders", topic_name="orders", broker=broker)

        summary = await coordinator.connect(broker)
        await coordinator.create_topic(topic)

        listener = await coordinator.start_listener(ListenerConfig(topic=topic, max_messages=1))
        sender = await coordinator.start_sender(SenderConfig(topic=topic))
        await sender.send("hello")

        async for message in listener.subscribe():
            print(message.format())
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from kmt.base import ClientFactory, get_client_factory
from kmt.config import Settings, get_settings
from kmt.events import EventSink
from kmt.executor import AsyncOperationExecutor
from kmt.models import (
    BrokerConfig,
    ClusterSummary,
    GroupMember,
    GroupMetadata,
    ListenerConfig,
    SenderConfig,
    TopicConfig,
    TopicInfo,
)
from kmt.registry import ConnectionRegistry, Probe
from kmt.sessions import ListenerSession, SenderSession, Session, SessionManager
from kmt.timeouts import TimeoutPolicy
from kmt.topics import TopicManager, TopicState

if TYPE_CHECKING:
    from kmt.executor import Outcome


logger = logging.getLogger(__name__)


class BrokerOperationsCoordinator:
    """
    Entry point for every broker operation.

    Args:
        settings: Settings, the global instance by default
        policy: Timeout policy, built from settings by default
        sink: Event sink, a new one sized from settings by default
        client_factory: Broker client factory, the configured backend by default
        probe: Reachability check, a TCP connect by default
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        policy: TimeoutPolicy | None = None,
        sink: EventSink | None = None,
        client_factory: ClientFactory | None = None,
        probe: Probe | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.policy = policy or self.settings.timeout_policy()
        self.sink = sink or EventSink(history_size=self.settings.event_history_size)
        self.executor = AsyncOperationExecutor(
            self.policy, self.sink, max_workers=self.settings.worker_pool_size
        )
        self.registry = ConnectionRegistry(
            self.executor,
            client_factory or get_client_factory(self.settings),
            probe=probe,
            idle_close_delay=self.settings.idle_close_delay_ms / 1000,
            verify_advertised_listeners=self.settings.verify_advertised_listeners,
        )
        self.sessions = SessionManager()
        self.topics = TopicManager(self.registry, self.executor, self.sink, self.sessions)

    async def __aenter__(self) -> "BrokerOperationsCoordinator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    # ─── Connections ────────────────────────────────────────────────

    async def connect(self, broker: BrokerConfig) -> ClusterSummary:
        """
        Open (or reuse) the connection to ``broker`` and describe the cluster.

        Raises:
            ConnectivityError: If the broker cannot be reached
            ClusterConfigurationError: If no advertised listener is reachable
        """
        return await self.topics.describe_cluster(broker)

    async def disconnect(self, broker: BrokerConfig) -> "Outcome | None":
        return await self.registry.force_close(broker)

    # ─── Topics and groups ──────────────────────────────────────────

    async def create_topic(self, topic: TopicConfig) -> "Outcome":
        return await self.topics.create_topic(topic)

    async def delete_topic(self, broker: BrokerConfig, name: str) -> "Outcome":
        return await self.topics.delete_topic(broker, name)

    async def list_topics(self, broker: BrokerConfig) -> list[TopicInfo]:
        return await self.topics.list_topics(broker)

    async def reconcile(self, topic: TopicConfig) -> TopicState:
        return await self.topics.reconcile(topic)

    def topic_state(self, broker: BrokerConfig, name: str) -> TopicState:
        return self.topics.topic_state(broker, name)

    async def describe_cluster(self, broker: BrokerConfig) -> ClusterSummary:
        return await self.topics.describe_cluster(broker)

    async def describe_consumer_group(self, broker: BrokerConfig, group_id: str) -> GroupMetadata:
        return await self.topics.describe_consumer_group(broker, group_id)

    async def list_consumer_groups(self, broker: BrokerConfig) -> list[str]:
        return await self.topics.list_consumer_groups(broker)

    def consumers_for_topic(self, broker: BrokerConfig, topic: str) -> list[GroupMember]:
        return self.topics.consumers_for_topic(broker, topic)

    # ─── Sessions ───────────────────────────────────────────────────

    def create_sender(self, config: SenderConfig) -> SenderSession:
        session = SenderSession(config, self.registry, self.executor, self.sink)
        self.sessions.add(session)
        return session

    def create_listener(self, config: ListenerConfig) -> ListenerSession:
        session = ListenerSession(
            config,
            self.registry,
            self.executor,
            self.sink,
            buffer_size=self.settings.listener_buffer_size,
        )
        self.sessions.add(session)
        return session

    async def start_sender(self, config: SenderConfig) -> SenderSession:
        """Create and start a sender session; a failed start raises."""
        session = self.create_sender(config)
        await session.start()
        return session

    async def start_listener(self, config: ListenerConfig) -> ListenerSession:
        """Create and start a listener session; a failed start raises."""
        session = self.create_listener(config)
        await session.start()
        return session

    async def stop_session(self, session: Session | str) -> Session | None:
        if isinstance(session, str):
            session = self.sessions.get(session)
            if session is None:
                return None
        await session.stop()
        return session

    # ─── Shutdown ───────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Stop every session, close every connection and the executor."""
        logger.info("Shutting down coordinator")
        await self.sessions.stop_all()
        await self.registry.close_all()
        await self.executor.shutdown()
