"""
Tests for module imports.

These tests ensure there are no circular imports or missing dependencies.
"""


class TestKmtImports:
    """Test that kmt modules can be imported without errors."""

    def test_import_kmt(self):
        import kmt
        assert hasattr(kmt, "__version__")

    def test_public_api(self):
        """Everything in __all__ is importable from the package."""
        import kmt

        for name in kmt.__all__:
            assert getattr(kmt, name) is not None, name

    def test_import_coordinator(self):
        from kmt.coordinator import BrokerOperationsCoordinator
        assert BrokerOperationsCoordinator is not None

    def test_import_backends(self):
        from kmt.confluent import ConfluentBrokerClient, ConfluentTopicConsumer
        from kmt.kafka import AIOKafkaBrokerClient, AIOKafkaTopicConsumer, translate_errors
        assert ConfluentBrokerClient is not None
        assert ConfluentTopicConsumer is not None
        assert AIOKafkaBrokerClient is not None
        assert AIOKafkaTopicConsumer is not None
        assert translate_errors is not None

    def test_import_testing(self):
        from kmt.testing import MockBrokerClient, MockClientFactory, MockCluster, MockTopicConsumer
        assert MockBrokerClient is not None
        assert MockClientFactory is not None
        assert MockCluster is not None
        assert MockTopicConsumer is not None

    def test_import_cli(self):
        from kmt.cli import cli, create_parser, main
        assert cli is not None
        assert create_parser is not None
        assert main is not None

    def test_backends_implement_boundary(self):
        from kmt.base import BrokerClient, TopicConsumer
        from kmt.confluent import ConfluentBrokerClient, ConfluentTopicConsumer
        from kmt.kafka import AIOKafkaBrokerClient, AIOKafkaTopicConsumer
        from kmt.testing import MockBrokerClient, MockTopicConsumer

        for client in (AIOKafkaBrokerClient, ConfluentBrokerClient, MockBrokerClient):
            assert issubclass(client, BrokerClient)
            assert not client.__abstractmethods__
        for consumer in (AIOKafkaTopicConsumer, ConfluentTopicConsumer, MockTopicConsumer):
            assert issubclass(consumer, TopicConsumer)
            assert not consumer.__abstractmethods__
