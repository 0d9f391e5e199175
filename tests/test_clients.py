"""
Tests for the client library backends.

The Kafka clients themselves are mocked; these tests cover error
translation and the mapping of library responses.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest


@pytest.fixture
def aiokafka_client():
    from kmt.kafka import AIOKafkaBrokerClient
    from kmt.models import BrokerConfig

    client = AIOKafkaBrokerClient(BrokerConfig(name="local"))
    client._admin = AsyncMock()
    return client


class TestAIOKafkaErrors:
    """aiokafka exceptions mapped to the coordinator's errors."""

    @pytest.mark.asyncio
    async def test_connection_error(self):
        from aiokafka.errors import KafkaConnectionError

        from kmt.exceptions import ConnectivityError
        from kmt.kafka import translate_errors

        with pytest.raises(ConnectivityError) as exc_info:
            async with translate_errors("local", "Listing topics"):
                raise KafkaConnectionError("no route")

        assert exc_info.value.broker == "local"
        assert "Listing topics" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_client_timeout(self):
        from aiokafka.errors import KafkaTimeoutError

        from kmt.kafka import translate_errors

        with pytest.raises(TimeoutError):
            async with translate_errors("local", "Sending"):
                raise KafkaTimeoutError()

    @pytest.mark.asyncio
    async def test_broker_rejection(self):
        from aiokafka.errors import UnknownTopicOrPartitionError

        from kmt.exceptions import ProtocolFailure
        from kmt.kafka import translate_errors

        with pytest.raises(ProtocolFailure) as exc_info:
            async with translate_errors("local", "Deleting"):
                raise UnknownTopicOrPartitionError()

        assert exc_info.value.error_name == "UnknownTopicOrPartitionError"
        assert exc_info.value.is_unknown_topic

    @pytest.mark.asyncio
    async def test_other_errors_pass_through(self):
        from kmt.kafka import translate_errors

        with pytest.raises(RuntimeError):
            async with translate_errors("local", "Anything"):
                raise RuntimeError("not a kafka error")


class TestAIOKafkaBrokerClient:

    @pytest.mark.asyncio
    async def test_not_started(self):
        from kmt.kafka import AIOKafkaBrokerClient
        from kmt.models import BrokerConfig

        client = AIOKafkaBrokerClient(BrokerConfig(name="local"))
        with pytest.raises(RuntimeError):
            await client.list_topics()

    @pytest.mark.asyncio
    async def test_list_topics(self, aiokafka_client):
        aiokafka_client._admin.list_topics.return_value = ["payments", "__consumer_offsets", "orders"]
        aiokafka_client._admin.describe_topics.return_value = [
            {"topic": "payments", "error_code": 0, "partitions": [{"replicas": [1]}]},
            {"topic": "orders", "error_code": 0, "partitions": [{"replicas": [1, 2]}, {"replicas": [2, 1]}]},
        ]

        topics = await aiokafka_client.list_topics()

        aiokafka_client._admin.describe_topics.assert_awaited_once_with(["payments", "orders"])
        assert [(t.name, t.partitions, t.replication_factor) for t in topics] == [
            ("orders", 2, 2),
            ("payments", 1, 1),
        ]

    @pytest.mark.asyncio
    async def test_create_existing_topic(self, aiokafka_client):
        from kmt.exceptions import ProtocolFailure
        from kmt.models import TopicConfig

        aiokafka_client._admin.create_topics.return_value = MagicMock(
            topic_errors=[("orders", 36, "Topic 'orders' already exists.")]
        )

        with pytest.raises(ProtocolFailure) as exc_info:
            await aiokafka_client.create_topic(TopicConfig(topic_name="orders"))

        assert exc_info.value.is_topic_exists
        assert exc_info.value.details["error_code"] == 36

    @pytest.mark.asyncio
    async def test_create_topic(self, aiokafka_client):
        from kmt.models import TopicConfig

        aiokafka_client._admin.create_topics.return_value = MagicMock(topic_errors=[("orders", 0, None)])

        await aiokafka_client.create_topic(TopicConfig(topic_name="orders", partitions=3))

        (new_topic,), = aiokafka_client._admin.create_topics.await_args.args
        assert new_topic.name == "orders"
        assert new_topic.num_partitions == 3

    @pytest.mark.asyncio
    async def test_delete_unknown_topic(self, aiokafka_client):
        from kmt.exceptions import ProtocolFailure

        aiokafka_client._admin.delete_topics.return_value = MagicMock(topic_error_codes=[("orders", 3)])

        with pytest.raises(ProtocolFailure) as exc_info:
            await aiokafka_client.delete_topic("orders")

        assert exc_info.value.is_unknown_topic

    @pytest.mark.asyncio
    async def test_list_consumer_groups(self, aiokafka_client):
        aiokafka_client._admin.list_consumer_groups.return_value = [("g2", "consumer"), ("g1", "consumer")]

        assert await aiokafka_client.list_consumer_groups() == ["g1", "g2"]

    @pytest.mark.asyncio
    async def test_send(self, aiokafka_client):
        producer = AsyncMock()
        producer.send_and_wait.return_value = MagicMock(topic="orders", partition=0, offset=7)
        aiokafka_client._producer = producer

        result = await aiokafka_client.send("orders", "hello", key="k1", headers={"source": "kmt"})

        assert (result.topic, result.partition, result.offset, result.key) == ("orders", 0, 7, "k1")
        producer.send_and_wait.assert_awaited_once_with(
            "orders", value=b"hello", key=b"k1", headers=[("source", b"kmt")]
        )

    @pytest.mark.asyncio
    async def test_consumer_poll_before_start(self, aiokafka_client):
        consumer = aiokafka_client.create_consumer("orders", "kmt-cg", client_id="l1")

        with pytest.raises(RuntimeError):
            await consumer.poll(100)

    def test_connection_config_security(self):
        from kmt.config import Settings
        from kmt.kafka.client import connection_config
        from kmt.models import BrokerConfig

        settings = Settings(
            _env_file=None,
            kafka_security_protocol="SASL_PLAINTEXT",
            kafka_sasl_mechanism="PLAIN",
            kafka_sasl_username="user",
            kafka_sasl_password="secret",
        )
        config = connection_config(BrokerConfig(hostname="kafka", port=9093), settings)

        assert config["bootstrap_servers"] == "kafka:9093"
        assert config["client_id"] == "kafka-message-tool"
        assert config["security_protocol"] == "SASL_PLAINTEXT"
        assert config["sasl_plain_username"] == "user"
        assert "ssl_context" not in config


class TestConfluentErrors:
    """librdkafka errors mapped to the coordinator's errors."""

    def test_transport(self):
        from confluent_kafka import KafkaError

        from kmt.confluent.client import translate_error
        from kmt.exceptions import ConnectivityError

        error = translate_error(KafkaError(KafkaError._TRANSPORT), "local", "Listing topics")
        assert isinstance(error, ConnectivityError)
        assert error.broker == "local"

    def test_timeout(self):
        from confluent_kafka import KafkaError

        from kmt.confluent.client import translate_error

        error = translate_error(KafkaError(KafkaError._TIMED_OUT), "local", "Sending")
        assert isinstance(error, TimeoutError)

    def test_topic_exists(self):
        from confluent_kafka import KafkaError

        from kmt.confluent.client import translate_error
        from kmt.exceptions import ProtocolFailure

        error = translate_error(KafkaError(KafkaError.TOPIC_ALREADY_EXISTS), "local", "Creating")
        assert isinstance(error, ProtocolFailure)
        assert error.is_topic_exists

    def test_missing_error(self):
        from kmt.confluent.client import translate_error
        from kmt.exceptions import ProtocolFailure

        assert isinstance(translate_error(None, "local", "Creating"), ProtocolFailure)

    @pytest.mark.asyncio
    async def test_translate_exception(self):
        from confluent_kafka import KafkaError, KafkaException

        from kmt.confluent.client import translate_errors
        from kmt.exceptions import ProtocolFailure

        with pytest.raises(ProtocolFailure) as exc_info:
            async with translate_errors("local", "Deleting"):
                raise KafkaException(KafkaError(KafkaError.UNKNOWN_TOPIC_OR_PART))

        assert exc_info.value.is_unknown_topic

    def test_connection_config(self):
        from kmt.config import Settings
        from kmt.confluent.client import connection_config
        from kmt.models import BrokerConfig

        settings = Settings(
            _env_file=None,
            kafka_security_protocol="SSL",
            kafka_ssl_cafile="/etc/ca.pem",
        )
        config = connection_config(BrokerConfig(hostname="kafka"), settings)

        assert config["bootstrap.servers"] == "kafka:9092"
        assert config["security.protocol"] == "SSL"
        assert config["ssl.ca.location"] == "/etc/ca.pem"
        assert "sasl.mechanism" not in config
