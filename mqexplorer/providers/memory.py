"""In-process broker used for demos and offline contract checks."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, ClassVar

from ..config import ProviderSettings
from ..errors import NotFoundError, ProviderConnectionError
from ..models import (
    BrowseOptions,
    Message,
    Payload,
    ProviderType,
    QueueInfo,
    QueueProperties,
    SubscriptionInfo,
    TopicInfo,
    TopicProperties,
)
from ..profiles import MemoryParams
from .base import BaseProvider, TARGETED_DELETE


@dataclass(slots=True)
class _Destination:
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    messages: list[Message] = field(default_factory=list)
    enqueue_count: int = 0
    dequeue_count: int = 0


@dataclass(slots=True)
class _Topic:
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    subscriptions: dict[str, _Destination] = field(default_factory=dict)
    publish_count: int = 0


class InMemoryBroker:
    """Queues and topics held in process memory, shared by name."""

    _brokers: ClassVar[dict[str, InMemoryBroker]] = {}

    def __init__(self, *, offline: bool = False) -> None:
        self.queues: dict[str, _Destination] = {}
        self.topics: dict[str, _Topic] = {}
        self.offline = offline

    @classmethod
    def named(cls, name: str) -> InMemoryBroker:
        """Return the shared broker registered under ``name``."""

        return cls._brokers.setdefault(name, cls())

    @classmethod
    def reset(cls) -> None:
        cls._brokers.clear()

    def declare_queue(self, name: str) -> None:
        self.queues.setdefault(name, _Destination())

    def declare_topic(self, name: str, *subscriptions: str) -> None:
        topic = self.topics.setdefault(name, _Topic())
        for subscription in subscriptions:
            topic.subscriptions.setdefault(subscription, _Destination())

    def queue(self, name: str) -> _Destination:
        try:
            return self.queues[name]
        except KeyError:
            raise NotFoundError(f"Queue '{name}' does not exist") from None

    def topic(self, name: str) -> _Topic:
        try:
            return self.topics[name]
        except KeyError:
            raise NotFoundError(f"Topic '{name}' does not exist") from None


class InMemoryProvider(BaseProvider):
    """Provider backed by :class:`InMemoryBroker`; every operation is native."""

    provider_type = ProviderType.MEMORY
    deletion_class = TARGETED_DELETE

    def __init__(
        self,
        *,
        settings: ProviderSettings | None = None,
        logger: Any = None,
        broker: InMemoryBroker | None = None,
    ) -> None:
        super().__init__(settings=settings, logger=logger)
        self._injected = broker
        self._broker: InMemoryBroker | None = None

    @property
    def broker(self) -> InMemoryBroker:
        if self._broker is None:
            raise ProviderConnectionError("In-memory broker is not attached")
        return self._broker

    async def _connect(self, params: MemoryParams) -> None:
        broker = self._injected or InMemoryBroker.named(params.broker_name)
        await asyncio.sleep(0)
        if broker.offline:
            raise ProviderConnectionError(f"In-memory broker '{params.broker_name}' is offline")
        self._broker = broker

    async def _disconnect(self) -> None:
        self._broker = None

    async def _list_queues(self, filter: str | None) -> list[QueueInfo]:
        return [
            QueueInfo(name=name, depth=len(queue.messages), description=f"In-memory queue: {name}")
            for name, queue in self.broker.queues.items()
        ]

    async def _list_topics(self, filter: str | None) -> list[TopicInfo]:
        return [
            TopicInfo(
                name=name,
                topic_string=name,
                description=f"In-memory topic: {name}",
                status="Active",
                subscription_count=len(topic.subscriptions),
            )
            for name, topic in self.broker.topics.items()
        ]

    async def _iter_messages(self, queue_name: str, options: BrowseOptions) -> AsyncIterator[Message]:
        for message in tuple(self.broker.queue(queue_name).messages):
            await asyncio.sleep(0)
            yield message

    async def _iter_subscription_messages(
        self, topic_name: str, subscription_name: str, options: BrowseOptions
    ) -> AsyncIterator[Message]:
        for message in tuple(self._subscription(topic_name, subscription_name).messages):
            await asyncio.sleep(0)
            yield message

    async def _put(self, queue_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        self.broker.declare_queue(queue_name)
        queue = self.broker.queue(queue_name)
        queue.messages.append(_build_message(payload, properties))
        queue.enqueue_count += 1

    async def _publish(self, topic_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        self.broker.declare_topic(topic_name)
        topic = self.broker.topic(topic_name)
        topic.publish_count += 1
        for subscription in topic.subscriptions.values():
            subscription.messages.append(_build_message(payload, properties))
            subscription.enqueue_count += 1

    async def _clear(self, queue_name: str) -> None:
        queue = self.broker.queue(queue_name)
        queue.dequeue_count += len(queue.messages)
        queue.messages.clear()

    async def _delete(self, queue_name: str, message: Message) -> None:
        queue = self.broker.queue(queue_name)
        for index, candidate in enumerate(queue.messages):
            if candidate.id == message.id:
                del queue.messages[index]
                queue.dequeue_count += 1
                return
        raise NotFoundError(f"Message '{message.id}' is no longer on '{queue_name}'")

    async def _queue_properties(self, queue_name: str) -> QueueProperties:
        queue = self.broker.queue(queue_name)
        return QueueProperties(
            name=queue_name,
            depth=len(queue.messages),
            description=f"In-memory queue: {queue_name}",
            creation_time=queue.created_at,
            attributes={"enqueue_count": queue.enqueue_count, "dequeue_count": queue.dequeue_count},
        )

    async def _topic_properties(self, topic_name: str) -> TopicProperties:
        topic = self.broker.topic(topic_name)
        return TopicProperties(
            name=topic_name,
            topic_string=topic_name,
            description=f"In-memory topic: {topic_name}",
            status="Active",
            creation_time=topic.created_at,
            publish_count=topic.publish_count,
            subscription_count=len(topic.subscriptions),
            subscriptions=tuple(sorted(topic.subscriptions)),
        )

    async def _list_subscriptions(self, topic_name: str) -> list[SubscriptionInfo]:
        topic = self.broker.topic(topic_name)
        return [
            SubscriptionInfo(name=name, topic_name=topic_name, message_count=len(sub.messages), status="Active")
            for name, sub in topic.subscriptions.items()
        ]

    async def _subscription_info(self, topic_name: str, subscription_name: str) -> SubscriptionInfo:
        subscription = self._subscription(topic_name, subscription_name)
        return SubscriptionInfo(
            name=subscription_name,
            topic_name=topic_name,
            message_count=len(subscription.messages),
            status="Active",
        )

    def _subscription(self, topic_name: str, subscription_name: str) -> _Destination:
        topic = self.broker.topic(topic_name)
        try:
            return topic.subscriptions[subscription_name]
        except KeyError:
            raise NotFoundError(f"Subscription '{subscription_name}' not found on '{topic_name}'") from None


def _build_message(payload: Payload, properties: dict[str, Any]) -> Message:
    extra = dict(properties)
    message_id = str(extra.pop("message_id", None) or uuid.uuid4().hex)
    correlation_id = extra.pop("correlation_id", None)
    return Message(
        id=message_id,
        payload=payload,
        correlation_id=str(correlation_id) if correlation_id is not None else None,
        timestamp=datetime.now(tz=timezone.utc),
        properties=extra,
    )


__all__ = ["InMemoryBroker", "InMemoryProvider"]
