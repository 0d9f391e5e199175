"""
confluent-kafka backend (librdkafka).

Requirements:
    pip install confluent-kafka

Usage:
    from kmt.config import configure

    configure(kafka_backend="confluent")
"""

from kmt.confluent.client import ConfluentBrokerClient, ConfluentTopicConsumer

__all__ = [
    "ConfluentBrokerClient",
    "ConfluentTopicConsumer",
]
