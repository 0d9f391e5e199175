"""
aiokafka implementation of the client boundary.

One ``AIOKafkaBrokerClient`` owns an admin client and a lazily started
producer; listener sessions get their own ``AIOKafkaTopicConsumer``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, TYPE_CHECKING

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.admin.config_resource import ConfigResource, ConfigResourceType
from aiokafka.coordinator.protocol import ConsumerProtocolMemberAssignment
from aiokafka.errors import (
    KafkaConnectionError,
    KafkaError,
    KafkaTimeoutError,
    NodeNotReadyError,
    RequestTimedOutError,
    for_code,
)

from kmt.base import BrokerClient, TopicConsumer
from kmt.exceptions import ConnectivityError, ProtocolFailure
from kmt.models import (
    BrokerConfig,
    ClusterNode,
    ClusterSummary,
    GroupMember,
    GroupMetadata,
    PartitionAssignment,
    ReceivedMessage,
    SendResult,
    TopicConfig,
    TopicInfo,
)

if TYPE_CHECKING:
    from kmt.config import Settings


logger = logging.getLogger(__name__)


@asynccontextmanager
async def translate_errors(broker: str, action: str) -> AsyncIterator[None]:
    """Re-raise aiokafka errors as the coordinator's error taxonomy."""
    try:
        yield
    except (KafkaConnectionError, NodeNotReadyError) as e:
        raise ConnectivityError(f"{action} failed: {e}", broker=broker) from e
    except (KafkaTimeoutError, RequestTimedOutError) as e:
        raise TimeoutError(f"{action} timed out in client: {e}") from e
    except KafkaError as e:
        raise ProtocolFailure(f"{action} rejected: {e}", error_name=type(e).__name__) from e


def _raise_for_code(code: int, action: str, message: str | None = None) -> None:
    if not code:
        return
    error = for_code(code)
    raise ProtocolFailure(
        f"{action} rejected: {message or error.description}",
        error_name=error.__name__,
        details={"error_code": code},
    )


def connection_config(broker: BrokerConfig, settings: "Settings | None") -> dict[str, Any]:
    """Common aiokafka options for admin, producer and consumers."""
    config: dict[str, Any] = {"bootstrap_servers": broker.bootstrap_servers}
    if settings is None:
        return config

    config["client_id"] = settings.kafka_client_id

    # Add security config if needed
    if settings.kafka_security_protocol != "PLAINTEXT":
        config["security_protocol"] = settings.kafka_security_protocol

        if settings.kafka_sasl_mechanism:
            config["sasl_mechanism"] = settings.kafka_sasl_mechanism
            config["sasl_plain_username"] = settings.kafka_sasl_username
            config["sasl_plain_password"] = settings.kafka_sasl_password

        if settings.kafka_security_protocol in ("SSL", "SASL_SSL"):
            from aiokafka.helpers import create_ssl_context

            config["ssl_context"] = create_ssl_context(
                cafile=settings.kafka_ssl_cafile,
                certfile=settings.kafka_ssl_certfile,
                keyfile=settings.kafka_ssl_keyfile,
            )
    return config


def _decode(data: bytes | None) -> str | None:
    if data is None:
        return None
    return data.decode("utf-8", errors="replace")


class AIOKafkaTopicConsumer(TopicConsumer):
    """
    Manually committing consumer for one topic.

    Offsets are committed after every non-empty poll, so a restarted
    listener in the same group continues where the previous one stopped.
    """

    def __init__(
        self,
        broker: BrokerConfig,
        topic: str,
        group_id: str,
        client_id: str,
        offset_reset: str = "earliest",
        settings: "Settings | None" = None,
    ) -> None:
        self.broker = broker
        self.topic = topic
        self.group_id = group_id
        self._config = connection_config(broker, settings)
        self._config.update(
            group_id=group_id,
            client_id=client_id,
            auto_offset_reset=offset_reset,
            enable_auto_commit=False,
        )
        self._consumer: AIOKafkaConsumer | None = None

    async def start(self) -> None:
        consumer = AIOKafkaConsumer(self.topic, **self._config)
        async with translate_errors(self.broker.identity, f"Subscribing to '{self.topic}'"):
            await consumer.start()
        self._consumer = consumer
        logger.info(f"Consumer '{self.group_id}' subscribed to '{self.topic}'")

    async def poll(self, timeout_ms: int) -> list[ReceivedMessage]:
        if self._consumer is None:
            raise RuntimeError("Consumer not started")

        async with translate_errors(self.broker.identity, f"Polling '{self.topic}'"):
            batches = await self._consumer.getmany(timeout_ms=timeout_ms)
            messages = [
                ReceivedMessage(
                    topic=record.topic,
                    partition=record.partition,
                    offset=record.offset,
                    key=_decode(record.key),
                    value=_decode(record.value),
                    timestamp_ms=record.timestamp,
                    headers={k: _decode(v) or "" for k, v in (record.headers or ())},
                )
                for records in batches.values()
                for record in records
            ]
            if messages:
                await self._consumer.commit()
        return messages

    async def close(self) -> None:
        if self._consumer is None:
            return
        consumer, self._consumer = self._consumer, None
        async with translate_errors(self.broker.identity, f"Closing consumer of '{self.topic}'"):
            await consumer.stop()


class AIOKafkaBrokerClient(BrokerClient):
    """
    Broker client using aiokafka.

    Example:
        client = AIOKafkaBrokerClient(BrokerConfig(name="local"))
        await client.start()

        await client.create_topic(TopicConfig(topic_name="orders", partitions=3))
        summary = await client.describe_cluster()

        await client.close()
    """

    name = "aiokafka"

    def __init__(self, broker: BrokerConfig, settings: "Settings | None" = None) -> None:
        super().__init__(broker, settings)
        self._admin: AIOKafkaAdminClient | None = None
        self._producer: AIOKafkaProducer | None = None
        self._producer_lock = asyncio.Lock()

    @property
    def admin(self) -> AIOKafkaAdminClient:
        if self._admin is None:
            raise RuntimeError("Client not started")
        return self._admin

    async def start(self) -> None:
        admin = AIOKafkaAdminClient(**connection_config(self.broker, self._settings))
        async with translate_errors(self.broker.identity, f"Connecting to {self.bootstrap_servers}"):
            await admin.start()
        self._admin = admin

    async def close(self) -> None:
        producer, self._producer = self._producer, None
        admin, self._admin = self._admin, None
        async with translate_errors(self.broker.identity, "Closing client"):
            if producer is not None:
                await producer.stop()
            if admin is not None:
                await admin.close()

    # ─── Cluster ────────────────────────────────────────────────────

    async def describe_cluster(self) -> ClusterSummary:
        async with translate_errors(self.broker.identity, "Describing cluster"):
            metadata = await self.admin.describe_cluster()
            controller_id = metadata.get("controller_id", -1)
            nodes = [
                ClusterNode(
                    node_id=b["node_id"],
                    host=b["host"],
                    port=b["port"],
                    rack=b.get("rack"),
                    is_controller=b["node_id"] == controller_id,
                )
                for b in metadata.get("brokers", [])
            ]
            await self._fill_node_configs(nodes)
            topics = await self.list_topics()

        return ClusterSummary(
            cluster_id=metadata.get("cluster_id"),
            controller_id=controller_id if controller_id is not None else -1,
            nodes=nodes,
            topics=topics,
        )

    async def _fill_node_configs(self, nodes: list[ClusterNode]) -> None:
        if not nodes:
            return
        resources = [ConfigResource(ConfigResourceType.BROKER, str(n.node_id)) for n in nodes]
        try:
            responses = await self.admin.describe_configs(resources)
        except KafkaError as e:
            logger.warning(f"Could not describe broker configs: {e}")
            return

        by_id = {str(n.node_id): n for n in nodes}
        for response in responses:
            for error_code, _message, _type, resource_name, entries in (
                r[:5] for r in response.resources
            ):
                node = by_id.get(resource_name)
                if error_code or node is None:
                    continue
                node.configs = {entry[0]: entry[1] for entry in entries if entry[1] is not None}

    # ─── Topics ─────────────────────────────────────────────────────

    async def list_topics(self) -> list[TopicInfo]:
        async with translate_errors(self.broker.identity, "Listing topics"):
            names = [n for n in await self.admin.list_topics() if not n.startswith("__")]
            if not names:
                return []
            described = await self.admin.describe_topics(names)

        result = []
        for topic in described:
            if topic.get("error_code"):
                continue
            partitions = topic.get("partitions", [])
            result.append(TopicInfo(
                name=topic["topic"],
                partitions=len(partitions),
                replication_factor=len(partitions[0]["replicas"]) if partitions else 0,
            ))
        return sorted(result, key=lambda t: t.name)

    async def create_topic(self, topic: TopicConfig) -> None:
        new_topic = NewTopic(
            name=topic.topic_name,
            num_partitions=topic.partitions,
            replication_factor=topic.replication_factor,
            topic_configs=dict(topic.configs),
        )
        action = f"Creating topic '{topic.topic_name}'"
        async with translate_errors(self.broker.identity, action):
            response = await self.admin.create_topics([new_topic])
        for error in response.topic_errors:
            _raise_for_code(error[1], action, error[2] if len(error) > 2 else None)
        logger.info(f"Created topic: {topic.topic_name}")

    async def delete_topic(self, name: str) -> None:
        action = f"Deleting topic '{name}'"
        async with translate_errors(self.broker.identity, action):
            response = await self.admin.delete_topics([name])
        for _topic, code in response.topic_error_codes:
            _raise_for_code(code, action)
        logger.info(f"Deleted topic: {name}")

    # ─── Consumer groups ────────────────────────────────────────────

    async def list_consumer_groups(self) -> list[str]:
        async with translate_errors(self.broker.identity, "Listing consumer groups"):
            groups = await self.admin.list_consumer_groups()
        return sorted(g[0] if isinstance(g, tuple) else g for g in groups)

    async def describe_consumer_group(self, group_id: str) -> GroupMetadata:
        action = f"Describing group '{group_id}'"
        async with translate_errors(self.broker.identity, action):
            responses = await self.admin.describe_consumer_groups([group_id])
            if not responses or not responses[0].groups:
                return GroupMetadata(group_id=group_id)

            error_code, _group, state, _protocol_type, protocol, raw_members = responses[0].groups[0][:6]
            _raise_for_code(error_code, action)

            members = [self._member(raw) for raw in raw_members]
            await self._fill_offsets(group_id, members)

        return GroupMetadata(group_id=group_id, state=state, protocol=protocol, members=members)

    @staticmethod
    def _member(raw: tuple) -> GroupMember:
        member_id, client_id, client_host, _metadata, assignment_bytes = raw[:5]
        assignments: list[PartitionAssignment] = []
        if assignment_bytes:
            decoded = ConsumerProtocolMemberAssignment.decode(assignment_bytes)
            for topic, partitions in decoded.assignment:
                assignments.extend(PartitionAssignment(topic, p) for p in partitions)
        return GroupMember(
            member_id=member_id,
            client_id=client_id,
            host=client_host or "",
            assignments=assignments,
        )

    async def _fill_offsets(self, group_id: str, members: list[GroupMember]) -> None:
        """Committed and end offsets for every assigned partition."""
        assigned = [a for m in members for a in m.assignments]
        if not assigned:
            return

        committed = await self.admin.list_consumer_group_offsets(group_id)
        consumer = AIOKafkaConsumer(**connection_config(self.broker, self._settings))
        await consumer.start()
        try:
            tps = [TopicPartition(a.topic, a.partition) for a in assigned]
            end_offsets = await consumer.end_offsets(tps)
        finally:
            await consumer.stop()

        for assignment, tp in zip(assigned, tps):
            meta = committed.get(tp)
            if meta is not None and meta.offset >= 0:
                assignment.offset = meta.offset
            assignment.end_offset = end_offsets.get(tp)

    # ─── Messages ───────────────────────────────────────────────────

    async def _get_producer(self) -> AIOKafkaProducer:
        async with self._producer_lock:
            if self._producer is None:
                producer = AIOKafkaProducer(acks="all", **connection_config(self.broker, self._settings))
                await producer.start()
                self._producer = producer
            return self._producer

    async def send(
        self,
        topic: str,
        value: str | bytes | None,
        key: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> SendResult:
        async with translate_errors(self.broker.identity, f"Sending to '{topic}'"):
            producer = await self._get_producer()
            metadata = await producer.send_and_wait(
                topic,
                value=value.encode("utf-8") if isinstance(value, str) else value,
                key=key.encode("utf-8") if key is not None else None,
                headers=[(k, v.encode("utf-8")) for k, v in (headers or {}).items()] or None,
            )
        return SendResult(
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            key=key,
        )

    def create_consumer(
        self,
        topic: str,
        group_id: str,
        client_id: str,
        offset_reset: str = "earliest",
    ) -> AIOKafkaTopicConsumer:
        return AIOKafkaTopicConsumer(
            self.broker, topic, group_id, client_id, offset_reset, self._settings
        )
