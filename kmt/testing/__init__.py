"""
Testing utilities for the Kafka Message Tool.

- MockCluster: in-memory topics, records and consumer groups
- MockClientFactory: builds MockBrokerClient objects, injects hangs/failures/delays
- MockBrokerClient, MockTopicConsumer: the client boundary over MockCluster

Usage:
    from kmt.testing import MockClientFactory

    factory = MockClientFactory()
    registry = ConnectionRegistry(executor, factory, probe=factory.probe)
"""

from kmt.testing.mocks import (
    MockBrokerClient,
    MockClientFactory,
    MockCluster,
    MockTopicConsumer,
)

__all__ = [
    "MockBrokerClient",
    "MockClientFactory",
    "MockCluster",
    "MockTopicConsumer",
]
