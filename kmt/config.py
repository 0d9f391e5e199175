"""
Centralized settings for the Kafka Message Tool.

Single place for every tunable of the coordinator:
- Timeout budgets per operation kind
- Worker pool and idle-close behaviour
- Kafka client backend and security
- Logging

Configuration via environment (or .env):
    KMT_FUTURE_WAIT_TIMEOUT_MS=8000
    KMT_KAFKA_BACKEND=confluent
    KMT_LOG_LEVEL=DEBUG

Or via code (before building the coordinator):
    from kmt.config import configure

    configure(kafka_backend="confluent", describe_group_timeout_ms=500)
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import Field as PydanticField
from pydantic_settings import BaseSettings, SettingsConfigDict

from kmt.models import DEFAULT_FETCH_TIMEOUT_MS
from kmt.timeouts import OperationKind, TimeoutPolicy

logger = logging.getLogger("kmt.config")


class Settings(BaseSettings):
    """
    Kafka Message Tool configuration.

    All settings can be overridden via ``KMT_``-prefixed environment
    variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="KMT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # =========================================================================
    # Timeouts
    # =========================================================================

    hostname_reachable_timeout_ms: int = PydanticField(
        default=2000,
        gt=0,
        description="Budget for the TCP reachability probe (less than 2000 causes spurious timeouts)",
    )
    future_wait_timeout_ms: int = PydanticField(
        default=5000,
        gt=0,
        description="Generic budget for admin futures and produce acknowledgements",
    )
    describe_group_timeout_ms: int = PydanticField(
        default=2000,
        gt=0,
        description="Budget for consumer group metadata",
    )
    close_connection_timeout_ms: int = PydanticField(
        default=2000,
        gt=0,
        description="Budget for closing clients and stopping listeners",
    )
    delete_topic_timeout_ms: int = PydanticField(
        default=2000,
        gt=0,
        description="Budget for topic deletion",
    )
    poll_grace_ms: int = PydanticField(
        default=2000,
        ge=0,
        description="Extra wait on top of the fetch timeout before a poll is abandoned",
    )

    # =========================================================================
    # Executor / registry
    # =========================================================================

    worker_pool_size: int = PydanticField(
        default=8,
        gt=0,
        description="Maximum concurrently running remote operations",
    )
    idle_close_delay_ms: int = PydanticField(
        default=10000,
        ge=0,
        description="Delay before closing a connection nobody references",
    )
    verify_advertised_listeners: bool = PydanticField(
        default=True,
        description="Fail connect when no advertised listener is reachable",
    )

    # =========================================================================
    # Kafka client
    # =========================================================================

    kafka_backend: Literal["aiokafka", "confluent"] = PydanticField(
        default="aiokafka",
        description="Client library used to talk to brokers",
    )
    kafka_client_id: str = PydanticField(
        default="kafka-message-tool",
        description="Kafka client ID",
    )
    kafka_security_protocol: Literal["PLAINTEXT", "SSL", "SASL_PLAINTEXT", "SASL_SSL"] = PydanticField(
        default="PLAINTEXT",
        description="Kafka security protocol",
    )
    kafka_sasl_mechanism: str | None = PydanticField(
        default=None,
        description="SASL mechanism (PLAIN, SCRAM-SHA-256, SCRAM-SHA-512)",
    )
    kafka_sasl_username: str | None = PydanticField(default=None, description="SASL username")
    kafka_sasl_password: str | None = PydanticField(default=None, description="SASL password")
    kafka_ssl_cafile: str | None = PydanticField(default=None, description="Path to CA certificate file")
    kafka_ssl_certfile: str | None = PydanticField(default=None, description="Path to client certificate file")
    kafka_ssl_keyfile: str | None = PydanticField(default=None, description="Path to client key file")

    # =========================================================================
    # Presentation buffers
    # =========================================================================

    event_history_size: int = PydanticField(
        default=1000,
        gt=0,
        description="Outcome events retained by the event sink",
    )
    listener_buffer_size: int = PydanticField(
        default=500,
        gt=0,
        description="Received messages retained per listener session",
    )

    # =========================================================================
    # Logging
    # =========================================================================

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = PydanticField(
        default="INFO",
        description="Log level",
    )
    log_format: str = PydanticField(
        default="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
        description="Log format",
    )

    def timeout_policy(self) -> TimeoutPolicy:
        """Build the immutable timeout policy injected into the coordinator."""
        return TimeoutPolicy(
            budgets_ms={
                OperationKind.REACHABILITY: self.hostname_reachable_timeout_ms,
                OperationKind.FUTURE_WAIT: self.future_wait_timeout_ms,
                OperationKind.DESCRIBE_GROUP: self.describe_group_timeout_ms,
                OperationKind.CLOSE: self.close_connection_timeout_ms,
                OperationKind.DELETE_TOPIC: self.delete_topic_timeout_ms,
                OperationKind.POLL: DEFAULT_FETCH_TIMEOUT_MS + self.poll_grace_ms,
            },
            poll_grace_ms=self.poll_grace_ms,
        )


# =========================================================================
# GLOBAL SETTINGS
# =========================================================================

_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the global Settings instance, creating it on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def configure(**overrides: Any) -> Settings:
    """
    Configure settings programmatically.

    Args:
        **overrides: Settings to override

    Returns:
        Updated Settings instance
    """
    global _settings

    unknown = set(overrides) - set(Settings.model_fields)
    if unknown:
        logger.warning(
            "Unknown settings keys passed to configure(): %s",
            ", ".join(sorted(unknown)),
        )

    _settings = Settings(**overrides)
    return _settings


def reset_settings() -> None:
    """Drop the global instance. Useful for tests."""
    global _settings
    _settings = None


def configure_logging(settings: Settings | None = None) -> None:
    """Apply ``log_level`` and ``log_format`` to the root logger."""
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level, format=settings.log_format)
