"""
confluent-kafka (librdkafka) implementation of the client boundary.

librdkafka calls are blocking or return ``concurrent.futures.Future``;
blocking calls are pushed to the default loop executor and admin futures
are awaited through ``asyncio.wrap_future``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, TYPE_CHECKING

from confluent_kafka import (
    Consumer as CKConsumer,
    ConsumerGroupTopicPartitions,
    KafkaError,
    KafkaException,
    Producer as CKProducer,
    TopicPartition,
)
from confluent_kafka.admin import AdminClient, ConfigResource, NewTopic, ResourceType

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

# librdkafka blocking calls need their own timeout; the executor budget
# still applies on top of it
METADATA_TIMEOUT_S = 10.0

_CONNECTIVITY_CODES = {
    KafkaError._TRANSPORT,
    KafkaError._ALL_BROKERS_DOWN,
    KafkaError._RESOLVE,
}
_TIMEOUT_CODES = {
    KafkaError._TIMED_OUT,
    KafkaError._MSG_TIMED_OUT,
    KafkaError.REQUEST_TIMED_OUT,
}


def translate_error(error: KafkaError | None, broker: str, action: str) -> Exception:
    """Map a librdkafka error to the coordinator's error taxonomy."""
    if error is None:
        return ProtocolFailure(f"{action} failed")
    code = error.code()
    if code in _CONNECTIVITY_CODES:
        return ConnectivityError(f"{action} failed: {error.str()}", broker=broker)
    if code in _TIMEOUT_CODES:
        return TimeoutError(f"{action} timed out in client: {error.str()}")
    return ProtocolFailure(
        f"{action} rejected: {error.str()}",
        error_name=error.name(),
        details={"error_code": code},
    )


@asynccontextmanager
async def translate_errors(broker: str, action: str) -> AsyncIterator[None]:
    try:
        yield
    except KafkaException as e:
        error = e.args[0] if e.args and isinstance(e.args[0], KafkaError) else None
        raise translate_error(error, broker, action) from e


def connection_config(broker: BrokerConfig, settings: "Settings | None") -> dict[str, Any]:
    """Common librdkafka properties for admin, producer and consumers."""
    config: dict[str, Any] = {"bootstrap.servers": broker.bootstrap_servers}
    if settings is None:
        return config

    config["client.id"] = settings.kafka_client_id

    # Add security config if needed
    if settings.kafka_security_protocol != "PLAINTEXT":
        config["security.protocol"] = settings.kafka_security_protocol

        if settings.kafka_sasl_mechanism:
            config["sasl.mechanism"] = settings.kafka_sasl_mechanism
            config["sasl.username"] = settings.kafka_sasl_username
            config["sasl.password"] = settings.kafka_sasl_password

        if settings.kafka_ssl_cafile:
            config["ssl.ca.location"] = settings.kafka_ssl_cafile
        if settings.kafka_ssl_certfile:
            config["ssl.certificate.location"] = settings.kafka_ssl_certfile
        if settings.kafka_ssl_keyfile:
            config["ssl.key.location"] = settings.kafka_ssl_keyfile
    return config


def _decode(data: bytes | str | None) -> str | None:
    if data is None or isinstance(data, str):
        return data
    return data.decode("utf-8", errors="replace")


class ConfluentTopicConsumer(TopicConsumer):
    """librdkafka consumer for one topic, committing synchronously after each poll."""

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
        self._config.update({
            "group.id": group_id,
            "client.id": client_id,
            "auto.offset.reset": offset_reset,
            "enable.auto.commit": False,
        })
        self._consumer: CKConsumer | None = None

    async def start(self) -> None:
        consumer = CKConsumer(self._config)
        async with translate_errors(self.broker.identity, f"Subscribing to '{self.topic}'"):
            consumer.subscribe([self.topic])
        self._consumer = consumer
        logger.info(f"Consumer '{self.group_id}' subscribed to '{self.topic}'")

    async def poll(self, timeout_ms: int) -> list[ReceivedMessage]:
        if self._consumer is None:
            raise RuntimeError("Consumer not started")

        consumer = self._consumer
        loop = asyncio.get_running_loop()
        async with translate_errors(self.broker.identity, f"Polling '{self.topic}'"):
            records = await loop.run_in_executor(
                None, lambda: consumer.consume(num_messages=500, timeout=timeout_ms / 1000)
            )

            messages = []
            for record in records:
                error = record.error()
                if error is not None:
                    if error.code() == KafkaError._PARTITION_EOF:
                        continue
                    raise translate_error(error, self.broker.identity, f"Polling '{self.topic}'")
                _ts_type, timestamp = record.timestamp()
                messages.append(ReceivedMessage(
                    topic=record.topic(),
                    partition=record.partition(),
                    offset=record.offset(),
                    key=_decode(record.key()),
                    value=_decode(record.value()),
                    timestamp_ms=timestamp if timestamp >= 0 else None,
                    headers={k: _decode(v) or "" for k, v in (record.headers() or [])},
                ))

            if messages:
                await loop.run_in_executor(None, lambda: consumer.commit(asynchronous=False))
        return messages

    async def close(self) -> None:
        if self._consumer is None:
            return
        consumer, self._consumer = self._consumer, None
        loop = asyncio.get_running_loop()
        async with translate_errors(self.broker.identity, f"Closing consumer of '{self.topic}'"):
            await loop.run_in_executor(None, consumer.close)


class ConfluentBrokerClient(BrokerClient):
    """
    Broker client using confluent_kafka (librdkafka).

    Same behaviour as ``AIOKafkaBrokerClient``; selected with
    ``KMT_KAFKA_BACKEND=confluent``.
    """

    name = "confluent"

    def __init__(self, broker: BrokerConfig, settings: "Settings | None" = None) -> None:
        super().__init__(broker, settings)
        self._admin: AdminClient | None = None
        self._producer: CKProducer | None = None

    @property
    def admin(self) -> AdminClient:
        if self._admin is None:
            raise RuntimeError("Client not started")
        return self._admin

    async def _blocking(self, action: str, func, *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        async with translate_errors(self.broker.identity, action):
            return await loop.run_in_executor(None, lambda: func(*args, **kwargs))

    async def _result(self, action: str, future) -> Any:
        async with translate_errors(self.broker.identity, action):
            return await asyncio.wrap_future(future)

    async def start(self) -> None:
        admin = AdminClient(connection_config(self.broker, self._settings))
        # AdminClient connects lazily; fetch metadata so start() fails on a dead cluster
        await self._blocking(
            f"Connecting to {self.bootstrap_servers}", admin.list_topics, timeout=METADATA_TIMEOUT_S
        )
        self._admin = admin

    async def close(self) -> None:
        producer, self._producer = self._producer, None
        self._admin = None
        if producer is not None:
            await self._blocking("Flushing producer", producer.flush, METADATA_TIMEOUT_S)

    # ─── Cluster ────────────────────────────────────────────────────

    async def _metadata(self):
        return await self._blocking("Fetching metadata", self.admin.list_topics, timeout=METADATA_TIMEOUT_S)

    async def describe_cluster(self) -> ClusterSummary:
        metadata = await self._metadata()
        nodes = [
            ClusterNode(
                node_id=b.id,
                host=b.host,
                port=b.port,
                is_controller=b.id == metadata.controller_id,
            )
            for b in sorted(metadata.brokers.values(), key=lambda b: b.id)
        ]
        await self._fill_node_configs(nodes)
        return ClusterSummary(
            cluster_id=metadata.cluster_id,
            controller_id=metadata.controller_id,
            nodes=nodes,
            topics=self._topics(metadata),
        )

    async def _fill_node_configs(self, nodes: list[ClusterNode]) -> None:
        resources = [ConfigResource(ResourceType.BROKER, str(n.node_id)) for n in nodes]
        if not resources:
            return
        futures = self.admin.describe_configs(resources)
        by_id = {str(n.node_id): n for n in nodes}
        for resource, future in futures.items():
            try:
                entries = await self._result("Describing broker configs", future)
            except ProtocolFailure as e:
                logger.warning(f"Could not describe configs of node {resource.name}: {e}")
                continue
            node = by_id.get(resource.name)
            if node is not None:
                node.configs = {
                    name: entry.value for name, entry in entries.items() if entry.value is not None
                }

    @staticmethod
    def _topics(metadata) -> list[TopicInfo]:
        result = []
        for name, topic in metadata.topics.items():
            if name.startswith("__") or topic.error is not None:
                continue
            partitions = list(topic.partitions.values())
            result.append(TopicInfo(
                name=name,
                partitions=len(partitions),
                replication_factor=len(partitions[0].replicas) if partitions else 0,
            ))
        return sorted(result, key=lambda t: t.name)

    # ─── Topics ─────────────────────────────────────────────────────

    async def list_topics(self) -> list[TopicInfo]:
        return self._topics(await self._metadata())

    async def create_topic(self, topic: TopicConfig) -> None:
        new_topic = NewTopic(
            topic=topic.topic_name,
            num_partitions=topic.partitions,
            replication_factor=topic.replication_factor,
            config=dict(topic.configs),
        )
        futures = self.admin.create_topics([new_topic])
        for name, future in futures.items():
            await self._result(f"Creating topic '{name}'", future)
            logger.info(f"Created topic: {name}")

    async def delete_topic(self, name: str) -> None:
        futures = self.admin.delete_topics([name])
        for topic_name, future in futures.items():
            await self._result(f"Deleting topic '{topic_name}'", future)
            logger.info(f"Deleted topic: {topic_name}")

    # ─── Consumer groups ────────────────────────────────────────────

    async def list_consumer_groups(self) -> list[str]:
        result = await self._result("Listing consumer groups", self.admin.list_consumer_groups())
        return sorted(g.group_id for g in result.valid)

    async def describe_consumer_group(self, group_id: str) -> GroupMetadata:
        futures = self.admin.describe_consumer_groups([group_id])
        description = await self._result(f"Describing group '{group_id}'", futures[group_id])

        members = [
            GroupMember(
                member_id=m.member_id,
                client_id=m.client_id,
                host=m.host or "",
                assignments=[
                    PartitionAssignment(tp.topic, tp.partition)
                    for tp in (m.assignment.topic_partitions if m.assignment else [])
                ],
            )
            for m in description.members
        ]
        await self._fill_offsets(group_id, members)

        state = description.state
        return GroupMetadata(
            group_id=group_id,
            state=getattr(state, "name", str(state)),
            protocol=description.partition_assignor or "",
            members=members,
        )

    async def _fill_offsets(self, group_id: str, members: list[GroupMember]) -> None:
        assigned = [a for m in members for a in m.assignments]
        if not assigned:
            return

        futures = self.admin.list_consumer_group_offsets([ConsumerGroupTopicPartitions(group_id)])
        committed = await self._result(f"Listing offsets of '{group_id}'", futures[group_id])
        offsets = {(tp.topic, tp.partition): tp.offset for tp in committed.topic_partitions}

        config = connection_config(self.broker, self._settings)
        config["group.id"] = group_id
        consumer = CKConsumer(config)
        try:
            for assignment in assigned:
                _low, high = await self._blocking(
                    "Fetching watermarks",
                    consumer.get_watermark_offsets,
                    TopicPartition(assignment.topic, assignment.partition),
                    timeout=METADATA_TIMEOUT_S,
                )
                committed_offset = offsets.get((assignment.topic, assignment.partition))
                if committed_offset is not None and committed_offset >= 0:
                    assignment.offset = committed_offset
                assignment.end_offset = high
        finally:
            consumer.close()

    # ─── Messages ───────────────────────────────────────────────────

    def _get_producer(self) -> CKProducer:
        if self._producer is None:
            config = connection_config(self.broker, self._settings)
            config["acks"] = "all"
            self._producer = CKProducer(config)
        return self._producer

    async def send(
        self,
        topic: str,
        value: str | bytes | None,
        key: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> SendResult:
        producer = self._get_producer()
        loop = asyncio.get_running_loop()
        delivered: asyncio.Future = loop.create_future()

        def _delivery_callback(err, msg):
            # runs on the thread calling flush()
            if delivered.done():
                return
            if err is not None:
                loop.call_soon_threadsafe(
                    _settle, delivered, translate_error(err, self.broker.identity, f"Sending to '{topic}'")
                )
            else:
                loop.call_soon_threadsafe(
                    _settle, delivered, SendResult(topic=msg.topic(), partition=msg.partition(),
                                                   offset=msg.offset(), key=key)
                )

        async with translate_errors(self.broker.identity, f"Sending to '{topic}'"):
            producer.produce(
                topic=topic,
                value=value.encode("utf-8") if isinstance(value, str) else value,
                key=key.encode("utf-8") if key is not None else None,
                headers=[(k, v.encode("utf-8")) for k, v in (headers or {}).items()] or None,
                on_delivery=_delivery_callback,
            )
            remaining = await loop.run_in_executor(None, producer.flush, METADATA_TIMEOUT_S)

        if remaining and not delivered.done():
            raise TimeoutError(f"Delivery to '{topic}' not acknowledged after flush")
        return await delivered

    def create_consumer(
        self,
        topic: str,
        group_id: str,
        client_id: str,
        offset_reset: str = "earliest",
    ) -> ConfluentTopicConsumer:
        return ConfluentTopicConsumer(
            self.broker, topic, group_id, client_id, offset_reset, self._settings
        )


def _settle(future: asyncio.Future, result: Any) -> None:
    if future.done():
        return
    if isinstance(result, BaseException):
        future.set_exception(result)
    else:
        future.set_result(result)
