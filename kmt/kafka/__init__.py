"""
aiokafka backend.

Requirements:
    pip install aiokafka

Usage:
    from kmt.kafka import AIOKafkaBrokerClient

    client = AIOKafkaBrokerClient(broker, settings)
"""

from kmt.kafka.client import AIOKafkaBrokerClient, AIOKafkaTopicConsumer, translate_errors

__all__ = [
    "AIOKafkaBrokerClient",
    "AIOKafkaTopicConsumer",
    "translate_errors",
]
