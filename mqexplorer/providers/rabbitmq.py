"""RabbitMQ provider: AMQP via aio-pika, listings via the management HTTP API."""

from __future__ import annotations

import functools
import hashlib
import json
import ssl
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable
from urllib.parse import quote

import aio_pika
import httpx
from aio_pika.exceptions import ChannelNotFoundEntity

from ..config import ProviderSettings
from ..errors import NotFoundError, ProviderConnectionError
from ..models import (
    BrowseOptions,
    Message,
    Payload,
    ProviderType,
    QueueInfo,
    QueueProperties,
    TopicInfo,
    TopicProperties,
    decode_payload,
    encode_payload,
)
from ..profiles import RabbitMQParams
from .base import TARGETED_DELETE, BaseProvider

AmqpConnect = Callable[..., Awaitable[Any]]

_QUEUE_ATTRIBUTES = (
    "durable",
    "auto_delete",
    "exclusive",
    "consumers",
    "memory",
    "state",
    "idle_since",
    "messages_ready",
    "messages_unacknowledged",
    "type",
    "node",
)


class RabbitMQProvider(BaseProvider):
    """AMQP 0-9-1 adapter with non-destructive browse by get-and-requeue."""

    provider_type = ProviderType.RABBITMQ
    deletion_class = TARGETED_DELETE

    def __init__(
        self,
        *,
        settings: ProviderSettings | None = None,
        logger: Any = None,
        amqp_connect: AmqpConnect | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(settings=settings, logger=logger)
        self._amqp_connect = amqp_connect
        self._http_transport = http_transport
        self._connection: Any = None
        self._http: httpx.AsyncClient | None = None
        self._vhost = "/"

    async def _connect(self, params: RabbitMQParams) -> None:
        connect = self._amqp_connect or aio_pika.connect
        self._vhost = params.vhost
        try:
            self._connection = await connect(
                host=params.host,
                port=params.port,
                login=params.username,
                password=params.password,
                virtualhost=params.vhost,
                ssl=params.use_tls,
                ssl_context=_ssl_context(params) if params.use_tls else None,
                timeout=self._settings.browse_timeout * 2,
            )
        except (OSError, aio_pika.exceptions.AMQPError) as exc:
            raise ProviderConnectionError(
                f"Could not open AMQP connection to {params.host}:{params.port}: {exc}"
            ) from exc
        self._http = httpx.AsyncClient(
            base_url=f"{params.management_scheme}://{params.host}:{params.management_port}/api",
            auth=(params.username, params.password),
            timeout=self._settings.management_timeout,
            transport=self._http_transport,
            verify=params.tls.verify if params.tls else True,
        )

    async def _disconnect(self) -> None:
        http, self._http = self._http, None
        connection, self._connection = self._connection, None
        await self._release("management client", http.aclose if http else None)
        await self._release("AMQP connection", connection.close if connection else None)

    # management API ------------------------------------------------------------

    async def _list_queues(self, filter: str | None) -> list[QueueInfo]:
        data = await self._api_get(f"/queues/{self._vhost_path}")
        return [
            QueueInfo(
                name=item["name"],
                depth=int(item.get("messages") or 0),
                type="Queue",
                description=f"RabbitMQ Queue ({'durable' if item.get('durable') else 'transient'})",
                status=item.get("state"),
            )
            for item in data
            if item.get("name")
        ]

    async def _list_topics(self, filter: str | None) -> list[TopicInfo]:
        data = await self._api_get(f"/exchanges/{self._vhost_path}")
        return [
            TopicInfo(
                name=item["name"],
                topic_string=item["name"],
                type=str(item.get("type") or "exchange"),
                description=f"RabbitMQ Exchange ({item.get('type', 'unknown')})",
                status="Active",
            )
            for item in data
            if item.get("name") and not item["name"].startswith("amq.")
        ]

    async def _queue_properties(self, queue_name: str) -> QueueProperties:
        item = await self._api_get(f"/queues/{self._vhost_path}/{quote(queue_name, safe='')}", missing=queue_name)
        arguments = item.get("arguments") or {}
        attributes = {key: item[key] for key in _QUEUE_ATTRIBUTES if key in item}
        attributes["arguments"] = arguments
        max_length = arguments.get("x-max-length")
        return QueueProperties(
            name=queue_name,
            depth=int(item.get("messages") or 0),
            description=f"RabbitMQ Queue on vhost {self._vhost}",
            status=item.get("state"),
            max_depth=int(max_length) if max_length is not None else None,
            attributes=attributes,
        )

    async def _topic_properties(self, topic_name: str) -> TopicProperties:
        path = f"/exchanges/{self._vhost_path}/{quote(topic_name, safe='')}"
        item = await self._api_get(path, missing=topic_name)
        bindings = await self._api_get(f"{path}/bindings/source", missing=topic_name)
        destinations = tuple(sorted({str(binding.get("destination")) for binding in bindings if binding.get("destination")}))
        stats = item.get("message_stats") or {}
        return TopicProperties(
            name=topic_name,
            topic_string=topic_name,
            type=str(item.get("type") or "exchange"),
            description=f"RabbitMQ Exchange ({item.get('type', 'unknown')})",
            status="Active",
            publish_count=stats.get("publish_in"),
            subscription_count=len(destinations),
            subscriptions=destinations,
            attributes={
                "durable": item.get("durable"),
                "auto_delete": item.get("auto_delete"),
                "internal": item.get("internal"),
                "arguments": item.get("arguments") or {},
            },
        )

    # messages ------------------------------------------------------------------

    async def _iter_messages(self, queue_name: str, options: BrowseOptions) -> AsyncIterator[Message]:
        async with self._channel() as channel:
            queue = await _get_queue(channel, queue_name)
            held: list[Any] = []
            try:
                while True:
                    incoming = await queue.get(no_ack=False, fail=False, timeout=self._settings.browse_timeout)
                    if incoming is None:
                        return
                    held.append(incoming)
                    yield _to_message(incoming)
            finally:
                await self._requeue(held)

    async def _delete(self, queue_name: str, message: Message) -> None:
        limit = self._settings.delete_batch_size * self._settings.delete_max_attempts
        async with self._channel() as channel:
            queue = await _get_queue(channel, queue_name)
            held: list[Any] = []
            try:
                for _ in range(limit):
                    incoming = await queue.get(no_ack=False, fail=False, timeout=self._settings.delete_wait_time)
                    if incoming is None:
                        break
                    if _message_id(incoming) == message.id:
                        await incoming.ack()
                        return
                    held.append(incoming)
            finally:
                await self._requeue(held)
        raise NotFoundError(f"Message '{message.id}' is no longer on '{queue_name}'")

    async def _put(self, queue_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        async with self._channel() as channel:
            await channel.default_exchange.publish(_build_message(payload, properties), routing_key=queue_name)

    async def _publish(self, topic_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        async with self._channel() as channel:
            try:
                exchange = await channel.get_exchange(topic_name, ensure=True)
            except ChannelNotFoundEntity as exc:
                raise NotFoundError(f"Exchange '{topic_name}' does not exist") from exc
            routing_key = str(properties.get("routing_key") or "")
            await exchange.publish(_build_message(payload, properties), routing_key=routing_key)

    async def _clear(self, queue_name: str) -> None:
        async with self._channel() as channel:
            queue = await _get_queue(channel, queue_name)
            await queue.purge()

    # helpers -------------------------------------------------------------------

    @property
    def _vhost_path(self) -> str:
        return quote(self._vhost, safe="")

    @asynccontextmanager
    async def _channel(self) -> AsyncIterator[Any]:
        if self._connection is None:
            raise ProviderConnectionError("AMQP connection is not open")
        channel = await self._connection.channel()
        try:
            yield channel
        finally:
            await self._release("AMQP channel", channel.close)

    async def _requeue(self, held: list[Any]) -> None:
        for incoming in held:
            await self._release("unacked delivery", functools.partial(incoming.reject, requeue=True))

    async def _api_get(self, path: str, *, missing: str | None = None) -> Any:
        if self._http is None:
            raise ProviderConnectionError("Management client is not open")
        response = await self._http.get(path)
        if response.status_code == 404 and missing is not None:
            raise NotFoundError(f"'{missing}' does not exist on vhost '{self._vhost}'")
        response.raise_for_status()
        return response.json()


async def _get_queue(channel: Any, queue_name: str) -> Any:
    try:
        return await channel.get_queue(queue_name, ensure=True)
    except ChannelNotFoundEntity as exc:
        raise NotFoundError(f"Queue '{queue_name}' does not exist") from exc


def _ssl_context(params: RabbitMQParams) -> ssl.SSLContext:
    tls = params.tls
    context = ssl.create_default_context(cafile=tls.ca_file if tls else None)
    if tls and tls.cert_file:
        context.load_cert_chain(tls.cert_file, tls.key_file)
    if tls and not tls.verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _build_message(payload: Payload, properties: dict[str, Any]) -> aio_pika.Message:
    headers = {**(properties.get("application_properties") or {}), **(properties.get("headers") or {})}
    expiration = properties.get("expiration")
    kwargs: dict[str, Any] = {
        "message_id": str(properties.get("message_id") or uuid.uuid4().hex),
        "delivery_mode": aio_pika.DeliveryMode(int(properties.get("delivery_mode") or 2)),
        "timestamp": properties.get("timestamp") or datetime.now(tz=timezone.utc),
        "headers": headers or None,
        "content_type": properties.get("content_type"),
        "content_encoding": properties.get("content_encoding"),
        "correlation_id": properties.get("correlation_id"),
        "reply_to": properties.get("reply_to"),
        "priority": int(properties["priority"]) if properties.get("priority") is not None else None,
        "expiration": float(expiration) / 1000 if expiration is not None else None,
        "type": properties.get("type"),
        "user_id": properties.get("user_id"),
        "app_id": properties.get("app_id"),
    }
    return aio_pika.Message(encode_payload(payload), **kwargs)


def _message_id(incoming: Any) -> str:
    if incoming.message_id:
        return str(incoming.message_id)
    digest = hashlib.sha1(bytes(incoming.body))
    digest.update(json.dumps(incoming.headers or {}, sort_keys=True, default=str).encode("utf-8"))
    if incoming.timestamp:
        digest.update(str(incoming.timestamp).encode("utf-8"))
    return f"sha1-{digest.hexdigest()}"


def _to_message(incoming: Any) -> Message:
    properties: dict[str, Any] = {}
    for key in ("content_type", "content_encoding", "reply_to", "type", "user_id", "app_id", "routing_key", "exchange"):
        value = getattr(incoming, key, None)
        if value:
            properties[key] = value
    if incoming.priority is not None:
        properties["priority"] = int(incoming.priority)
    if incoming.delivery_mode is not None:
        properties["delivery_mode"] = int(incoming.delivery_mode)
    if incoming.expiration is not None:
        properties["expiration"] = int(float(incoming.expiration) * 1000)
    if incoming.headers:
        properties["headers"] = {key: _header_value(value) for key, value in incoming.headers.items()}
    properties["redelivered"] = bool(getattr(incoming, "redelivered", False))
    timestamp = incoming.timestamp
    if isinstance(timestamp, datetime) and timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return Message(
        id=_message_id(incoming),
        correlation_id=incoming.correlation_id or None,
        timestamp=timestamp,
        payload=decode_payload(incoming.body),
        properties=properties,
    )


def _header_value(value: Any) -> Any:
    if isinstance(value, bytes):
        return decode_payload(value)
    return value


__all__ = ["RabbitMQProvider"]
