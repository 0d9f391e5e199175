"""
Centralized exception classes for the Kafka Message Tool.

Every failure the coordinator surfaces is one of these, so presentation
layers can render them uniformly through ``to_dict()``.

Exception Hierarchy:
    KmtException (base)
    ├── ConnectivityError
    │   └── ClusterConfigurationError
    ├── OperationTimeout
    ├── OperationCancelled
    ├── ProtocolFailure
    ├── TopicRemoved
    ├── SessionStateError
    └── UnknownOperationKind

Stale consumer-group metadata is not an error: it is reported as a
``STALE`` outcome on the event sink and a ``stale`` flag on the snapshot.

Example:
    from kmt.exceptions import ConnectivityError

    try:
        handle = await registry.acquire(broker)
    except ConnectivityError as e:
        print(e.broker, e.elapsed_ms)
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Base Exception
# =============================================================================

class KmtException(Exception):
    """
    Base exception for all Kafka Message Tool exceptions.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional error details
    """

    message: str = "An error occurred"
    code: str = "error"

    def __init__(
        self,
        message: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.message
        self.code = code or self.code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for display."""
        result = {
            "message": self.message,
            "code": self.code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, code={self.code!r})"


# =============================================================================
# Connectivity
# =============================================================================

class ConnectivityError(KmtException):
    """
    Broker could not be reached or the client could not be established.

    Attributes:
        broker: Identity of the broker config that failed
        elapsed_ms: Time spent before giving up
    """

    message = "Broker is not reachable"
    code = "connectivity_error"

    def __init__(
        self,
        message: str | None = None,
        broker: str | None = None,
        elapsed_ms: float | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        if broker is not None:
            details["broker"] = broker
        if elapsed_ms is not None:
            details["elapsed_ms"] = round(elapsed_ms, 1)
        super().__init__(message, code, details)
        self.broker = broker
        self.elapsed_ms = elapsed_ms


class ClusterConfigurationError(ConnectivityError):
    """
    Cluster answered but is unusable from this host.

    Raised when none of the advertised listeners is reachable, which means
    producers and consumers would never get past metadata discovery.
    """

    message = "Cluster configuration is invalid"
    code = "cluster_configuration_error"


# =============================================================================
# Operation outcomes
# =============================================================================

class OperationTimeout(KmtException):
    """Deadline exceeded; the remote outcome is unknown."""

    message = "Operation timed out"
    code = "timeout"

    def __init__(
        self,
        message: str | None = None,
        kind: str | None = None,
        budget_ms: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        if kind is not None:
            details["kind"] = kind
        if budget_ms is not None:
            details["budget_ms"] = budget_ms
        super().__init__(message, None, details)
        self.kind = kind
        self.budget_ms = budget_ms


class OperationCancelled(KmtException):
    """Caller gave up on the operation before its deadline."""

    message = "Operation cancelled"
    code = "cancelled"


class ProtocolFailure(KmtException):
    """
    Broker rejected the request.

    Example:
        raise ProtocolFailure("Topic already exists", error_name="TopicExistsError")
    """

    message = "Broker rejected the request"
    code = "protocol_failure"

    def __init__(
        self,
        message: str | None = None,
        error_name: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        if error_name:
            details["error_name"] = error_name
        super().__init__(message, code, details)
        self.error_name = error_name

    @property
    def _normalized_name(self) -> str:
        # TopicAlreadyExistsError (aiokafka) / TOPIC_ALREADY_EXISTS (librdkafka)
        return (self.error_name or "").lower().replace("_", "")

    @property
    def is_topic_exists(self) -> bool:
        name = self._normalized_name
        return "topicalreadyexists" in name or "topicexists" in name or (
            "already exists" in self.message.lower()
        )

    @property
    def is_unknown_topic(self) -> bool:
        return "unknowntopic" in self._normalized_name


# =============================================================================
# Sessions
# =============================================================================

class TopicRemoved(KmtException):
    """The topic a listener session was bound to has been deleted."""

    message = "Topic was removed"
    code = "topic_removed"

    def __init__(self, topic: str, broker: str | None = None) -> None:
        super().__init__(
            f"Topic '{topic}' was removed",
            details={"topic": topic, "broker": broker} if broker else {"topic": topic},
        )
        self.topic = topic
        self.broker = broker


class SessionStateError(KmtException):
    """Command issued in a session state that does not accept it."""

    message = "Invalid session state"
    code = "invalid_session_state"


# =============================================================================
# Programming errors
# =============================================================================

class UnknownOperationKind(KmtException, LookupError):
    """Timeout policy asked for a kind it does not know."""

    message = "Unknown operation kind"
    code = "unknown_operation_kind"
