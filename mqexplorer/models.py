"""Broker-agnostic dataclasses produced by every provider."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

Payload = str | bytes
MessageProperties = Mapping[str, Any]

_EMPTY: Mapping[str, Any] = MappingProxyType({})


class ProviderType(str, Enum):
    """Broker families a connection profile can target."""

    ACTIVEMQ = "activemq"
    RABBITMQ = "rabbitmq"
    KAFKA = "kafka"
    IBMMQ = "ibmmq"
    AWSSQS = "awssqs"
    AZURESERVICEBUS = "azureservicebus"
    MEMORY = "memory"


class ConnectionState(str, Enum):
    """Lifecycle states of a provider connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class DeleteOutcome(str, Enum):
    """How a delete request was realized at the broker."""

    DELETED = "deleted"
    HIDDEN = "hidden"


class ChannelStatus(str, Enum):
    """Channel run states reported by queue managers."""

    INACTIVE = "Inactive"
    RUNNING = "Running"
    STARTING = "Starting"
    STOPPING = "Stopping"
    RETRYING = "Retrying"
    STOPPED = "Stopped"
    UNKNOWN = "Unknown"


def freeze(values: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Return a read-only copy of ``values``."""

    if not values:
        return _EMPTY
    return MappingProxyType(dict(values))


def decode_payload(raw: bytes | bytearray | memoryview | str | None) -> Payload:
    """Decode broker bytes as UTF-8 text, keeping undecodable payloads as bytes."""

    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    data = bytes(raw)
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data


def encode_payload(payload: Payload) -> bytes:
    """Encode a caller payload for the wire."""

    if isinstance(payload, str):
        return payload.encode("utf-8")
    return bytes(payload)


@dataclass(frozen=True, slots=True)
class Message:
    """Normalized message returned by browse operations."""

    id: str
    payload: Payload
    correlation_id: str | None = None
    timestamp: datetime | None = None
    properties: MessageProperties = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "properties", freeze(self.properties))


@dataclass(frozen=True, slots=True)
class QueueInfo:
    """Queue summary used for listings."""

    name: str
    depth: int | None = None
    type: str = "Queue"
    description: str = ""
    status: str | None = None


@dataclass(frozen=True, slots=True)
class TopicInfo:
    """Topic summary used for listings."""

    name: str
    topic_string: str = ""
    type: str = "Topic"
    description: str = ""
    status: str | None = None
    subscription_count: int | None = None


@dataclass(frozen=True, slots=True)
class QueueProperties:
    """Extended queue details including broker-specific counters."""

    name: str
    depth: int | None = None
    type: str = "Queue"
    description: str = ""
    status: str | None = None
    max_depth: int | None = None
    creation_time: datetime | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", freeze(self.attributes))


@dataclass(frozen=True, slots=True)
class TopicProperties:
    """Extended topic details including subscriptions."""

    name: str
    topic_string: str = ""
    type: str = "Topic"
    description: str = ""
    status: str | None = None
    creation_time: datetime | None = None
    publish_count: int | None = None
    subscription_count: int | None = None
    subscriptions: tuple[str, ...] = ()
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", freeze(self.attributes))


@dataclass(frozen=True, slots=True)
class MessageFilter:
    """Exact-match criteria applied while browsing."""

    message_id: str | None = None
    correlation_id: str | None = None

    def matches(self, message: Message) -> bool:
        if self.message_id is not None and message.id != self.message_id:
            return False
        if self.correlation_id is not None and message.correlation_id != self.correlation_id:
            return False
        return True


@dataclass(frozen=True, slots=True)
class BrowseOptions:
    """Paging and filtering for non-destructive browse."""

    limit: int = 10
    start_position: int = 0
    filter: MessageFilter | None = None

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("Browse limit must be at least 1.")
        if self.start_position < 0:
            raise ValueError("Browse start position cannot be negative.")

    @property
    def window(self) -> int:
        """Number of matching messages needed to satisfy the request."""

        return self.start_position + self.limit

    def accepts(self, message: Message) -> bool:
        return self.filter is None or self.filter.matches(message)


@dataclass(frozen=True, slots=True)
class DeleteResult:
    """Outcome of deleting a single message."""

    queue: str
    message_id: str
    outcome: DeleteOutcome

    @property
    def physically_deleted(self) -> bool:
        return self.outcome is DeleteOutcome.DELETED


@dataclass(frozen=True, slots=True)
class DeleteSummary:
    """Aggregate outcome of a best-effort batch delete."""

    queue: str
    results: tuple[DeleteResult, ...] = ()
    failures: Mapping[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def hidden(self) -> int:
        """Successful deletes that only removed the message from view."""

        return sum(1 for result in self.results if not result.physically_deleted)


@dataclass(frozen=True, slots=True)
class SubscriptionRule:
    """Filter rule attached to a topic subscription."""

    name: str
    filter_type: str
    filter: str | None = None
    action: str | None = None


@dataclass(frozen=True, slots=True)
class SubscriptionInfo:
    """Topic subscription summary."""

    name: str
    topic_name: str
    message_count: int | None = None
    dead_letter_message_count: int | None = None
    status: str | None = None
    description: str = ""
    rules: tuple[SubscriptionRule, ...] = ()


@dataclass(frozen=True, slots=True)
class ChannelInfo:
    """Queue-manager channel summary."""

    name: str
    type: str | None = None
    connection_name: str | None = None
    status: ChannelStatus = ChannelStatus.UNKNOWN
    description: str = ""


@dataclass(frozen=True, slots=True)
class ChannelProperties:
    """Extended channel definition and status."""

    name: str
    type: str | None = None
    connection_name: str | None = None
    status: ChannelStatus = ChannelStatus.UNKNOWN
    description: str = ""
    max_message_length: int | None = None
    heartbeat_interval: int | None = None
    batch_size: int | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", freeze(self.attributes))


__all__ = [
    "BrowseOptions",
    "ChannelInfo",
    "ChannelProperties",
    "ChannelStatus",
    "ConnectionState",
    "DeleteOutcome",
    "DeleteResult",
    "DeleteSummary",
    "Message",
    "MessageFilter",
    "MessageProperties",
    "Payload",
    "ProviderType",
    "QueueInfo",
    "QueueProperties",
    "SubscriptionInfo",
    "SubscriptionRule",
    "TopicInfo",
    "TopicProperties",
    "decode_payload",
    "encode_payload",
    "freeze",
]
