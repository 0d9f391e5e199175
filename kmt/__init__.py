"""
Kafka Message Tool - broker operations coordinator.

Time-bounded, cancellable operations against Kafka clusters:
- Connections shared per broker config, probed and reference counted
- Topic creation/deletion and consumer group metadata (stale on timeout)
- Sender and listener sessions with their own cancellation
- One event stream for every outcome

Backends: aiokafka (default) and confluent-kafka.
"""

from kmt.config import Settings, configure, get_settings
from kmt.coordinator import BrokerOperationsCoordinator
from kmt.events import EventKind, EventSink, OutcomeStatus, SinkEvent
from kmt.exceptions import (
    ClusterConfigurationError,
    ConnectivityError,
    KmtException,
    OperationCancelled,
    OperationTimeout,
    ProtocolFailure,
    SessionStateError,
    TopicRemoved,
    UnknownOperationKind,
)
from kmt.executor import AsyncOperationExecutor, CancellationToken, Outcome
from kmt.models import (
    BrokerConfig,
    ClusterSummary,
    GroupMetadata,
    ListenerConfig,
    ReceivedMessage,
    RecordState,
    SenderConfig,
    TopicConfig,
)
from kmt.registry import ConnectionHandle, ConnectionRegistry
from kmt.sessions import ListenerSession, SenderSession, SessionManager, SessionState
from kmt.timeouts import OperationKind, TimeoutPolicy
from kmt.topics import TopicManager, TopicState

__version__ = "0.1.0"
__all__ = [
    # Coordinator
    "BrokerOperationsCoordinator",
    # Config
    "Settings",
    "configure",
    "get_settings",
    # Records
    "BrokerConfig",
    "TopicConfig",
    "SenderConfig",
    "ListenerConfig",
    "RecordState",
    "ReceivedMessage",
    "GroupMetadata",
    "ClusterSummary",
    # Components
    "TimeoutPolicy",
    "OperationKind",
    "AsyncOperationExecutor",
    "CancellationToken",
    "Outcome",
    "ConnectionRegistry",
    "ConnectionHandle",
    "TopicManager",
    "TopicState",
    "SenderSession",
    "ListenerSession",
    "SessionManager",
    "SessionState",
    "EventSink",
    "SinkEvent",
    "EventKind",
    "OutcomeStatus",
    # Exceptions
    "KmtException",
    "ConnectivityError",
    "ClusterConfigurationError",
    "OperationTimeout",
    "OperationCancelled",
    "ProtocolFailure",
    "TopicRemoved",
    "SessionStateError",
    "UnknownOperationKind",
]
