"""
Client-library boundary.

The coordinator never speaks the Kafka protocol itself; it drives a
``BrokerClient`` (one per connection handle) and the ``TopicConsumer``
objects that client creates for listener sessions.

Implementations:
    kmt.kafka.AIOKafkaBrokerClient       aiokafka (default)
    kmt.confluent.ConfluentBrokerClient  confluent-kafka (librdkafka)
    kmt.testing.MockBrokerClient         in-memory, for tests

Implementations translate library errors at this boundary:
    - cannot reach / lost the cluster  -> kmt.exceptions.ConnectivityError
    - broker rejected the request      -> kmt.exceptions.ProtocolFailure
    - client-side timeouts             -> TimeoutError
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, TYPE_CHECKING

from kmt.models import (
    BrokerConfig,
    ClusterSummary,
    GroupMetadata,
    ReceivedMessage,
    SendResult,
    TopicConfig,
    TopicInfo,
)

if TYPE_CHECKING:
    from kmt.config import Settings


class TopicConsumer(ABC):
    """
    Consumer bound to one topic and consumer group.

    Example:
        consumer = client.create_consumer("orders", group_id="kmt-cg", client_id="listener-1")
        await consumer.start()
        messages = await consumer.poll(timeout_ms=5000)
        await consumer.close()
    """

    @abstractmethod
    async def start(self) -> None:
        """Join the group and subscribe."""
        ...

    @abstractmethod
    async def poll(self, timeout_ms: int) -> list[ReceivedMessage]:
        """
        Wait up to ``timeout_ms`` for records.

        Returns:
            Records in arrival order (ordered per partition only)
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Leave the group and release sockets."""
        ...


class BrokerClient(ABC):
    """
    One live client connection to a broker cluster.

    Shared by every session using the same broker config, so
    implementations must tolerate concurrent calls.
    """

    name: str = "base"

    def __init__(self, broker: BrokerConfig, settings: "Settings | None" = None) -> None:
        self.broker = broker
        self._settings = settings

    @property
    def bootstrap_servers(self) -> str:
        return self.broker.bootstrap_servers

    @abstractmethod
    async def start(self) -> None:
        """Open the admin connection and fetch initial metadata."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close every client owned by this connection."""
        ...

    @abstractmethod
    async def describe_cluster(self) -> ClusterSummary:
        """Cluster id, controller, nodes (with their config entries) and topics."""
        ...

    @abstractmethod
    async def list_topics(self) -> list[TopicInfo]:
        """User topics (internal ``__`` topics excluded)."""
        ...

    @abstractmethod
    async def create_topic(self, topic: TopicConfig) -> None:
        """Create ``topic.topic_name``; ``ProtocolFailure`` if it exists."""
        ...

    @abstractmethod
    async def delete_topic(self, name: str) -> None:
        """Delete a topic; ``ProtocolFailure`` if unknown."""
        ...

    @abstractmethod
    async def describe_consumer_group(self, group_id: str) -> GroupMetadata:
        """Members, their assignments and committed offsets."""
        ...

    @abstractmethod
    async def list_consumer_groups(self) -> list[str]:
        ...

    @abstractmethod
    async def send(
        self,
        topic: str,
        value: str | bytes | None,
        key: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> SendResult:
        """Produce one record and wait for its acknowledgement."""
        ...

    @abstractmethod
    def create_consumer(
        self,
        topic: str,
        group_id: str,
        client_id: str,
        offset_reset: str = "earliest",
    ) -> TopicConsumer:
        ...


ClientFactory = Callable[[BrokerConfig], BrokerClient]


def get_client_factory(settings: "Settings") -> ClientFactory:
    """
    Client factory for the configured ``kafka_backend``.

    Args:
        settings: Settings selecting the backend

    Returns:
        Callable building a client for a broker config
    """
    if settings.kafka_backend == "confluent":
        from kmt.confluent import ConfluentBrokerClient

        return lambda broker: ConfluentBrokerClient(broker, settings)

    from kmt.kafka import AIOKafkaBrokerClient

    return lambda broker: AIOKafkaBrokerClient(broker, settings)
