"""Azure Service Bus provider on the async azure-servicebus SDK."""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from typing import Any, AsyncIterator, Callable

from azure.core.exceptions import ResourceNotFoundError
from azure.identity.aio import ClientSecretCredential
from azure.servicebus import ServiceBusMessage, ServiceBusReceiveMode
from azure.servicebus.aio import ServiceBusClient
from azure.servicebus.aio.management import ServiceBusAdministrationClient
from azure.servicebus.management import CorrelationRuleFilter, FalseRuleFilter, SqlRuleFilter, TrueRuleFilter

from ..config import ProviderSettings
from ..errors import NotFoundError
from ..models import (
    BrowseOptions,
    Message,
    Payload,
    ProviderType,
    QueueInfo,
    QueueProperties,
    SubscriptionInfo,
    SubscriptionRule,
    TopicInfo,
    TopicProperties,
    decode_payload,
)
from ..profiles import ServiceBusParams
from .base import TARGETED_DELETE, BaseProvider

ClientFactory = Callable[[ServiceBusParams, Any], tuple[Any, Any]]

_PEEK_BATCH = 100
_MESSAGE_FIELDS = ("content_type", "subject", "to", "reply_to", "session_id", "partition_key")


def default_clients(params: ServiceBusParams, credential: Any) -> tuple[Any, Any]:
    """Build the messaging and administration clients for ``params``."""

    retry = {
        "retry_total": params.retry.max_retries,
        "retry_backoff_factor": params.retry.retry_delay,
        "retry_backoff_max": params.retry.max_retry_delay,
        "retry_mode": params.retry.mode,
    }
    if credential is not None:
        client = ServiceBusClient(params.fully_qualified_namespace, credential, **retry)
        admin = ServiceBusAdministrationClient(params.fully_qualified_namespace, credential)
    else:
        client = ServiceBusClient.from_connection_string(params.connection_string, **retry)
        admin = ServiceBusAdministrationClient.from_connection_string(params.connection_string)
    return client, admin


class ServiceBusProvider(BaseProvider):
    """Queues, topics and subscriptions of one Service Bus namespace."""

    provider_type = ProviderType.AZURESERVICEBUS
    deletion_class = TARGETED_DELETE

    def __init__(
        self,
        *,
        settings: ProviderSettings | None = None,
        logger: Any = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        super().__init__(settings=settings, logger=logger)
        self._client_factory = client_factory or default_clients
        self._credential: Any = None
        self._client: Any = None
        self._admin: Any = None
        self._senders: dict[tuple[str, str], Any] = {}

    async def _connect(self, params: ServiceBusParams) -> None:
        if params.use_aad_auth or not params.connection_string:
            aad = params.credential
            self._credential = ClientSecretCredential(aad.tenant_id, aad.client_id, aad.client_secret)
        self._client, self._admin = self._client_factory(params, self._credential)
        await self._admin.get_namespace_properties()

    async def _disconnect(self) -> None:
        senders, self._senders = self._senders, {}
        for (kind, name), sender in senders.items():
            await self._release(f"{kind} sender '{name}'", sender.close)
        client, self._client = self._client, None
        admin, self._admin = self._admin, None
        credential, self._credential = self._credential, None
        await self._release("Service Bus client", client.close if client else None)
        await self._release("administration client", admin.close if admin else None)
        await self._release("AAD credential", credential.close if credential else None)

    # listings ------------------------------------------------------------------

    async def _list_queues(self, filter: str | None) -> list[QueueInfo]:
        return [
            QueueInfo(
                name=runtime.name,
                depth=runtime.active_message_count,
                description=f"Service Bus queue ({runtime.dead_letter_message_count or 0} dead-lettered)",
                status="Active",
            )
            async for runtime in self._admin.list_queues_runtime_properties()
        ]

    async def _list_topics(self, filter: str | None) -> list[TopicInfo]:
        return [
            TopicInfo(
                name=runtime.name,
                topic_string=runtime.name,
                description="Service Bus topic",
                status="Active",
                subscription_count=runtime.subscription_count,
            )
            async for runtime in self._admin.list_topics_runtime_properties()
        ]

    async def _queue_properties(self, queue_name: str) -> QueueProperties:
        queue = await self._lookup(self._admin.get_queue, queue_name, what="Queue")
        runtime = await self._lookup(self._admin.get_queue_runtime_properties, queue_name, what="Queue")
        max_size = queue.max_size_in_megabytes
        return QueueProperties(
            name=queue_name,
            depth=runtime.active_message_count,
            description="Service Bus queue",
            status=_status(queue.status),
            creation_time=runtime.created_at_utc,
            attributes={
                "max_size_in_megabytes": max_size,
                "size_in_bytes": runtime.size_in_bytes,
                "total_message_count": runtime.total_message_count,
                "dead_letter_message_count": runtime.dead_letter_message_count,
                "scheduled_message_count": runtime.scheduled_message_count,
                "transfer_message_count": runtime.transfer_message_count,
                "lock_duration": _seconds(queue.lock_duration),
                "max_delivery_count": queue.max_delivery_count,
                "default_message_time_to_live": _seconds(queue.default_message_time_to_live),
                "requires_session": queue.requires_session,
                "requires_duplicate_detection": queue.requires_duplicate_detection,
                "dead_lettering_on_message_expiration": queue.dead_lettering_on_message_expiration,
                "enable_partitioning": queue.enable_partitioning,
                "updated_at": runtime.updated_at_utc,
                "accessed_at": runtime.accessed_at_utc,
            },
        )

    async def _topic_properties(self, topic_name: str) -> TopicProperties:
        topic = await self._lookup(self._admin.get_topic, topic_name, what="Topic")
        runtime = await self._lookup(self._admin.get_topic_runtime_properties, topic_name, what="Topic")
        names = tuple(sorted([sub.name async for sub in self._admin.list_subscriptions(topic_name)]))
        return TopicProperties(
            name=topic_name,
            topic_string=topic_name,
            description="Service Bus topic",
            status=_status(topic.status),
            creation_time=runtime.created_at_utc,
            subscription_count=runtime.subscription_count,
            subscriptions=names,
            attributes={
                "max_size_in_megabytes": topic.max_size_in_megabytes,
                "size_in_bytes": runtime.size_in_bytes,
                "scheduled_message_count": runtime.scheduled_message_count,
                "default_message_time_to_live": _seconds(topic.default_message_time_to_live),
                "requires_duplicate_detection": topic.requires_duplicate_detection,
                "enable_partitioning": topic.enable_partitioning,
                "support_ordering": topic.support_ordering,
            },
        )

    async def _list_subscriptions(self, topic_name: str) -> list[SubscriptionInfo]:
        await self._lookup(self._admin.get_topic, topic_name, what="Topic")
        return [
            SubscriptionInfo(
                name=runtime.name,
                topic_name=topic_name,
                message_count=runtime.active_message_count,
                dead_letter_message_count=runtime.dead_letter_message_count,
                status="Active",
            )
            async for runtime in self._admin.list_subscriptions_runtime_properties(topic_name)
        ]

    async def _subscription_info(self, topic_name: str, subscription_name: str) -> SubscriptionInfo:
        try:
            subscription = await self._admin.get_subscription(topic_name, subscription_name)
            runtime = await self._admin.get_subscription_runtime_properties(topic_name, subscription_name)
            rules = [_rule(rule) async for rule in self._admin.list_rules(topic_name, subscription_name)]
        except ResourceNotFoundError as exc:
            raise NotFoundError(f"Subscription '{subscription_name}' not found on '{topic_name}'") from exc
        return SubscriptionInfo(
            name=subscription_name,
            topic_name=topic_name,
            message_count=runtime.active_message_count,
            dead_letter_message_count=runtime.dead_letter_message_count,
            status=_status(subscription.status),
            description=f"Max delivery count {subscription.max_delivery_count}",
            rules=tuple(rules),
        )

    # messages ------------------------------------------------------------------

    def _iter_messages(self, queue_name: str, options: BrowseOptions) -> AsyncIterator[Message]:
        return self._peek(self._client.get_queue_receiver(queue_name=queue_name), options)

    def _iter_subscription_messages(
        self, topic_name: str, subscription_name: str, options: BrowseOptions
    ) -> AsyncIterator[Message]:
        receiver = self._client.get_subscription_receiver(topic_name=topic_name, subscription_name=subscription_name)
        return self._peek(receiver, options)

    async def _peek(self, receiver: Any, options: BrowseOptions) -> AsyncIterator[Message]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.browse_timeout
        async with receiver:
            sequence_number = 0
            while loop.time() < deadline:
                batch = await receiver.peek_messages(
                    max_message_count=min(options.window, _PEEK_BATCH),
                    sequence_number=sequence_number,
                )
                if not batch:
                    return
                for received in batch:
                    yield _to_message(received)
                sequence_number = batch[-1].sequence_number + 1

    async def _delete(self, queue_name: str, message: Message) -> None:
        receiver = self._client.get_queue_receiver(
            queue_name=queue_name,
            receive_mode=ServiceBusReceiveMode.PEEK_LOCK,
            max_wait_time=self._settings.delete_wait_time,
        )
        held: list[Any] = []
        async with receiver:
            try:
                for _ in range(self._settings.delete_max_attempts):
                    batch = await receiver.receive_messages(
                        max_message_count=self._settings.delete_batch_size,
                        max_wait_time=self._settings.delete_wait_time,
                    )
                    if not batch:
                        break
                    target = None
                    for received in batch:
                        if target is None and _message_id(received) == message.id:
                            target = received
                        else:
                            held.append(received)
                    if target is not None:
                        await receiver.complete_message(target)
                        return
            finally:
                for received in held:
                    await self._release("locked message", lambda received=received: receiver.abandon_message(received))
        raise NotFoundError(f"Message '{message.id}' is no longer on '{queue_name}'")

    async def _put(self, queue_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        sender = self._sender("queue", queue_name)
        await sender.send_messages(_build_message(payload, properties))

    async def _publish(self, topic_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        sender = self._sender("topic", topic_name)
        await sender.send_messages(_build_message(payload, properties))

    async def _clear(self, queue_name: str) -> None:
        await self._lookup(self._admin.get_queue, queue_name, what="Queue")
        receiver = self._client.get_queue_receiver(
            queue_name=queue_name,
            receive_mode=ServiceBusReceiveMode.RECEIVE_AND_DELETE,
            max_wait_time=self._settings.clear_wait_time,
        )
        removed = 0
        async with receiver:
            while True:
                batch = await receiver.receive_messages(
                    max_message_count=self._settings.clear_batch_size,
                    max_wait_time=self._settings.clear_wait_time,
                )
                if not batch:
                    break
                removed += len(batch)
        self._log.debug("Removed %d message(s)", removed, extra={"operation": "clear_queue", "count": removed})

    # helpers -------------------------------------------------------------------

    def _sender(self, kind: str, name: str) -> Any:
        key = (kind, name)
        if key not in self._senders:
            if kind == "queue":
                self._senders[key] = self._client.get_queue_sender(queue_name=name)
            else:
                self._senders[key] = self._client.get_topic_sender(topic_name=name)
        return self._senders[key]

    async def _lookup(self, getter: Callable[[str], Any], name: str, *, what: str) -> Any:
        try:
            return await getter(name)
        except ResourceNotFoundError as exc:
            raise NotFoundError(f"{what} '{name}' does not exist") from exc


def _status(value: Any) -> str | None:
    if value is None:
        return None
    return str(getattr(value, "value", value))


def _seconds(value: timedelta | None) -> float | None:
    return value.total_seconds() if value is not None else None


def _rule(rule: Any) -> SubscriptionRule:
    action = getattr(rule.action, "sql_expression", None) if rule.action else None
    current = rule.filter
    if isinstance(current, TrueRuleFilter):
        return SubscriptionRule(rule.name, "TrueFilter", "1=1", action)
    if isinstance(current, FalseRuleFilter):
        return SubscriptionRule(rule.name, "FalseFilter", "1=0", action)
    if isinstance(current, SqlRuleFilter):
        return SubscriptionRule(rule.name, "SqlFilter", current.sql_expression, action)
    if isinstance(current, CorrelationRuleFilter):
        parts = [
            f"{name}={value}"
            for name, value in (
                ("correlation_id", current.correlation_id),
                ("message_id", current.message_id),
                ("subject", current.label),
                ("to", current.to),
                ("reply_to", current.reply_to),
                ("session_id", current.session_id),
                ("content_type", current.content_type),
            )
            if value
        ]
        parts.extend(f"{name}={value}" for name, value in (current.properties or {}).items())
        return SubscriptionRule(rule.name, "CorrelationFilter", ", ".join(parts) or None, action)
    return SubscriptionRule(rule.name, type(current).__name__, None, action)


def _build_message(payload: Payload, properties: dict[str, Any]) -> ServiceBusMessage:
    application = {
        **(properties.get("application_properties") or {}),
        **(properties.get("headers") or {}),
    }
    ttl = properties.get("time_to_live")
    kwargs: dict[str, Any] = {key: properties[key] for key in _MESSAGE_FIELDS if properties.get(key)}
    return ServiceBusMessage(
        payload,
        message_id=str(properties.get("message_id") or uuid.uuid4().hex),
        correlation_id=properties.get("correlation_id"),
        application_properties=application or None,
        time_to_live=timedelta(milliseconds=float(ttl)) if ttl is not None else None,
        **kwargs,
    )


def _message_id(received: Any) -> str:
    return str(received.message_id or received.sequence_number)


def _body(received: Any) -> Payload:
    body = received.body
    if isinstance(body, (bytes, str)):
        return decode_payload(body)
    return decode_payload(b"".join(bytes(chunk) for chunk in body))


def _to_message(received: Any) -> Message:
    properties: dict[str, Any] = {key: getattr(received, key) for key in _MESSAGE_FIELDS if getattr(received, key, None)}
    if received.time_to_live is not None:
        properties["time_to_live"] = int(received.time_to_live.total_seconds() * 1000)
    if received.application_properties:
        properties["application_properties"] = {
            decode_payload(key) if isinstance(key, bytes) else key: decode_payload(value) if isinstance(value, bytes) else value
            for key, value in received.application_properties.items()
        }
    properties["sequence_number"] = received.sequence_number
    properties["delivery_count"] = received.delivery_count
    return Message(
        id=_message_id(received),
        payload=_body(received),
        correlation_id=received.correlation_id,
        timestamp=received.enqueued_time_utc,
        properties=properties,
    )


__all__ = ["ServiceBusProvider", "default_clients"]
