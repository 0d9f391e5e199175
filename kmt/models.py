"""
Configuration records and result types.

Records (``BrokerConfig``, ``TopicConfig``, ``SenderConfig``,
``ListenerConfig``) come from the configuration store; the coordinator only
reads them. A record without a name is a draft: it shows a placeholder
label but its state is carried by ``state``, never by the label text.

Example:
    broker = BrokerConfig(name="local")
    topic = TopicConfig(name="orders", topic_name="orders", broker=broker)
    listener = ListenerConfig(topic=topic)

    listener.state          # RecordState.DRAFT
    listener.display_name   # "<new message listener config>"
"""

from __future__ import annotations

from uuid import uuid4
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field as PydanticField


DEFAULT_HOSTNAME = "localhost"
DEFAULT_PORT = 9092
DEFAULT_TOPIC_NAME = "test"
DEFAULT_MESSAGE_KEY = "kmt-msg-key"
DEFAULT_CONSUMER_GROUP_ID = "kmt-cg"
DEFAULT_FETCH_TIMEOUT_MS = 5000


class RecordState(str, Enum):
    """Whether a record has been given a name yet."""

    DRAFT = "draft"
    NAMED = "named"


class _Record(BaseModel):
    """Shared behaviour of named configuration records."""

    model_config = ConfigDict(validate_assignment=True)

    placeholder: ClassVar[str] = "<new config>"

    uuid: str = PydanticField(default_factory=lambda: str(uuid4()))
    name: str | None = None

    @property
    def state(self) -> RecordState:
        return RecordState.NAMED if self.name else RecordState.DRAFT

    @property
    def is_draft(self) -> bool:
        return self.state is RecordState.DRAFT

    @property
    def display_name(self) -> str:
        return self.name or self.placeholder

    @property
    def identity(self) -> str:
        """Key used by registries; drafts are keyed by their uuid."""
        return self.name if self.name else f"draft:{self.uuid}"

    def __str__(self) -> str:
        return self.display_name


class BrokerConfig(_Record):
    """Where a broker cluster can be reached."""

    placeholder: ClassVar[str] = "<new broker config>"

    hostname: str = DEFAULT_HOSTNAME
    port: int = PydanticField(default=DEFAULT_PORT, ge=1, le=65535)

    @property
    def bootstrap_servers(self) -> str:
        return f"{self.hostname}:{self.port}"


class TopicConfig(_Record):
    """A topic on a given broker, possibly not created yet."""

    placeholder: ClassVar[str] = "<new topic config>"

    topic_name: str = DEFAULT_TOPIC_NAME
    partitions: int = PydanticField(default=1, ge=1)
    replication_factor: int = PydanticField(default=1, ge=1)
    configs: dict[str, str] = PydanticField(default_factory=dict)
    broker: BrokerConfig | None = None


class SenderConfig(_Record):
    """Producer profile."""

    placeholder: ClassVar[str] = "<new message sender config>"

    topic: TopicConfig | None = None
    message_key: str | None = DEFAULT_MESSAGE_KEY
    message_template: str = ""
    headers: dict[str, str] = PydanticField(default_factory=dict)
    repeat_count: int = PydanticField(default=1, ge=1)
    simulate: bool = False


class ListenerConfig(_Record):
    """Consumer profile."""

    placeholder: ClassVar[str] = "<new message listener config>"

    topic: TopicConfig | None = None
    consumer_group: str = DEFAULT_CONSUMER_GROUP_ID
    fetch_timeout_ms: int = PydanticField(default=DEFAULT_FETCH_TIMEOUT_MS, gt=0)
    offset_reset: Literal["earliest", "latest"] = "earliest"
    max_messages: int | None = PydanticField(default=None, ge=1)
    buffer_size: int | None = PydanticField(default=None, ge=1)


def require_topic(config: SenderConfig | ListenerConfig) -> tuple[TopicConfig, BrokerConfig]:
    """
    Resolve the topic and broker a session config points at.

    Raises:
        ValueError: If the chain is incomplete
    """
    topic = config.topic
    if topic is None or topic.broker is None:
        raise ValueError(
            f"'{config.display_name}' is not bound to a topic on a broker"
        )
    return topic, topic.broker


# ─── Result types ────────────────────────────────────────────────


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SendResult:
    """Acknowledgement of a produced record."""

    topic: str
    partition: int
    offset: int
    key: str | None = None
    timestamp: datetime = field(default_factory=_now)


@dataclass
class ReceivedMessage:
    """A record delivered to a listener session."""

    topic: str
    partition: int
    offset: int
    key: str | None
    value: str | None
    timestamp_ms: int | None = None
    headers: dict[str, str] = field(default_factory=dict)
    received_at: datetime = field(default_factory=_now)

    def format(self) -> str:
        """Render the record the way the listener log shows it."""
        produced = (
            datetime.fromtimestamp(self.timestamp_ms / 1000, tz=timezone.utc).isoformat()
            if self.timestamp_ms is not None
            else "-"
        )
        return (
            f"[{self.received_at.isoformat()}] ConsumerRecord: "
            f"(key:{self.key},  partition:{self.partition}, offset:{self.offset}, "
            f"timestamp:{produced})\nvalue '{self.value}'\n"
        )


@dataclass
class TopicInfo:
    """Information about a Kafka topic."""

    name: str
    partitions: int
    replication_factor: int
    configs: dict[str, str] = field(default_factory=dict)


@dataclass
class PartitionAssignment:
    """Committed position of one group member on one partition."""

    topic: str
    partition: int
    offset: int | None = None
    end_offset: int | None = None

    @property
    def lag(self) -> int | None:
        if self.offset is None or self.end_offset is None:
            return None
        return max(0, self.end_offset - self.offset)


@dataclass
class GroupMember:
    """Information about a consumer group member."""

    member_id: str
    client_id: str
    host: str
    assignments: list[PartitionAssignment] = field(default_factory=list)


@dataclass
class GroupMetadata:
    """Snapshot of a consumer group; ``stale`` when the refresh timed out."""

    group_id: str
    state: str = "Unknown"
    protocol: str = ""
    members: list[GroupMember] = field(default_factory=list)
    stale: bool = False
    fetched_at: datetime = field(default_factory=_now)

    @property
    def topics(self) -> set[str]:
        return {a.topic for m in self.members for a in m.assignments}

    @property
    def unassigned_members(self) -> list[GroupMember]:
        return [m for m in self.members if not m.assignments]

    @property
    def total_lag(self) -> int:
        return sum(
            a.lag or 0 for m in self.members for a in m.assignments
        )


class TriState(str, Enum):
    """Cluster-wide boolean that may differ between nodes."""

    TRUE = "true"
    FALSE = "false"
    INCONSISTENT = "inconsistent"
    UNKNOWN = "unknown"


@dataclass
class ClusterNode:
    """Information about a broker node."""

    node_id: int
    host: str
    port: int
    rack: str | None = None
    is_controller: bool = False
    configs: dict[str, str] = field(default_factory=dict)


@dataclass
class ClusterSummary:
    """Cluster metadata as seen through one connection."""

    cluster_id: str | None
    controller_id: int = -1
    nodes: list[ClusterNode] = field(default_factory=list)
    topics: list[TopicInfo] = field(default_factory=list)

    def node_property(self, name: str) -> TriState:
        values = {n.configs[name] for n in self.nodes if name in n.configs}
        if not values:
            return TriState.UNKNOWN
        if len(values) > 1:
            return TriState.INCONSISTENT
        return TriState.TRUE if values.pop().lower() == "true" else TriState.FALSE

    @property
    def topic_deletion_enabled(self) -> TriState:
        return self.node_property("delete.topic.enable")

    @property
    def topic_auto_creation_enabled(self) -> TriState:
        return self.node_property("auto.create.topics.enable")

    def inconsistent_properties(self) -> list[str]:
        """Broker properties whose value differs between nodes."""
        values: dict[str, set[str]] = {}
        for node in self.nodes:
            for key, value in node.configs.items():
                values.setdefault(key, set()).add(value)
        return sorted(k for k, v in values.items() if len(v) > 1)

    def has_topic(self, name: str) -> bool:
        return any(t.name == name for t in self.topics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "controller_id": self.controller_id,
            "nodes": [
                {"id": n.node_id, "host": n.host, "port": n.port, "controller": n.is_controller}
                for n in self.nodes
            ],
            "topics": [t.name for t in self.topics],
            "topic_deletion_enabled": self.topic_deletion_enabled.value,
            "topic_auto_creation_enabled": self.topic_auto_creation_enabled.value,
            "inconsistent_properties": self.inconsistent_properties(),
        }
