"""ActiveMQ provider speaking STOMP through stomp.py."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, AsyncIterator, Callable, Mapping

import stomp
from stomp.exception import ConnectFailedException

from ..config import ProviderSettings
from ..correlator import ManagementCorrelator, ReplyCallback
from ..errors import ManagementError, ProviderConnectionError
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
)
from ..profiles import ActiveMQParams
from .base import CACHE_ONLY_DELETE, BaseProvider, from_epoch_millis

MANAGEMENT_DESTINATION = "/queue/ActiveMQ.Management"

ConnectionFactory = Callable[[ActiveMQParams], Any]

_STANDARD_HEADERS = frozenset(
    {
        "message-id",
        "correlation-id",
        "timestamp",
        "content-type",
        "content-length",
        "reply-to",
        "type",
        "expires",
        "priority",
        "persistent",
        "destination",
        "subscription",
        "redelivered",
        "ack",
    }
)

_QUEUE_COUNTERS = {
    "ConsumerCount": "consumer_count",
    "ProducerCount": "producer_count",
    "DequeueCount": "dequeue_count",
    "EnqueueCount": "enqueue_count",
    "AverageEnqueueTime": "average_enqueue_time",
    "MemoryPercentUsage": "memory_percent_usage",
    "MaxMessageSize": "max_message_size",
}


def _settle(future: asyncio.Future[None], error: BaseException | None = None) -> None:
    if future.done():
        return
    if error is None:
        future.set_result(None)
    else:
        future.set_exception(error)


class _StompListener(stomp.ConnectionListener):
    """Routes frames from the stomp.py receiver thread to per-subscription callbacks."""

    def __init__(self, logger: Any) -> None:
        self._log = logger
        self._routes: dict[str, ReplyCallback] = {}
        self._pending: tuple[asyncio.AbstractEventLoop, asyncio.Future[None]] | None = None

    def expect_connected(self, loop: asyncio.AbstractEventLoop) -> asyncio.Future[None]:
        future: asyncio.Future[None] = loop.create_future()
        self._pending = (loop, future)
        return future

    def route(self, subscription_id: str, callback: ReplyCallback) -> None:
        self._routes[subscription_id] = callback

    def unroute(self, subscription_id: str) -> None:
        self._routes.pop(subscription_id, None)

    def clear_routes(self) -> None:
        self._routes.clear()

    def on_connected(self, frame: Any) -> None:
        self._finish_connect(None)

    def on_error(self, frame: Any) -> None:
        detail = frame.headers.get("message") or frame.body or "STOMP error frame"
        if not self._finish_connect(ProviderConnectionError(f"Broker rejected connection: {detail}")):
            self._log.error("STOMP error frame: %s", detail)

    def on_disconnected(self) -> None:
        if not self._finish_connect(ProviderConnectionError("Connection closed during handshake")):
            self._log.warning("STOMP connection closed by broker")

    def on_message(self, frame: Any) -> None:
        callback = self._routes.get(frame.headers.get("subscription", ""))
        if callback is not None:
            callback(frame.headers, frame.body)

    def _finish_connect(self, error: BaseException | None) -> bool:
        pending, self._pending = self._pending, None
        if pending is None:
            return False
        loop, future = pending
        loop.call_soon_threadsafe(_settle, future, error)
        return True


class ActiveMQProvider(BaseProvider):
    """STOMP adapter; management calls travel as messages via the correlator."""

    provider_type = ProviderType.ACTIVEMQ
    deletion_class = CACHE_ONLY_DELETE

    def __init__(
        self,
        *,
        settings: ProviderSettings | None = None,
        logger: Any = None,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        super().__init__(settings=settings, logger=logger)
        self._connection_factory = connection_factory or _default_connection
        self._conn: Any = None
        self._listener: _StompListener | None = None
        self._correlator: ManagementCorrelator | None = None
        self._broker_name = "localhost"

    async def _connect(self, params: ActiveMQParams) -> None:
        loop = asyncio.get_running_loop()
        self._broker_name = params.broker_name
        self._conn = self._connection_factory(params)
        self._listener = _StompListener(self._log)
        self._conn.set_listener("mqexplorer", self._listener)
        connected = self._listener.expect_connected(loop)
        headers = dict(params.connect_headers)
        username = params.username or headers.pop("login", None)
        passcode = params.password or headers.pop("passcode", None)
        try:
            self._conn.connect(username=username, passcode=passcode, wait=False, headers=headers)
        except ConnectFailedException as exc:
            raise ProviderConnectionError(f"Could not reach {params.host}:{params.port}: {exc}") from exc
        try:
            await asyncio.wait_for(connected, params.connect_timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderConnectionError(
                f"No CONNECTED frame from {params.host}:{params.port} within {params.connect_timeout:g}s"
            ) from exc
        self._correlator = ManagementCorrelator(
            self,
            destination=MANAGEMENT_DESTINATION,
            timeout=self._settings.management_timeout,
            logger=self._log,
        )

    async def _disconnect(self) -> None:
        conn, self._conn = self._conn, None
        self._correlator = None
        if conn is None:
            return
        if self._listener is not None:
            self._listener.clear_routes()
        await self._release("STOMP connection", conn.disconnect if conn.is_connected() else None)
        await self._release("STOMP listener", lambda: conn.remove_listener("mqexplorer"))
        self._listener = None

    # ManagementTransport -------------------------------------------------------

    def send(self, destination: str, body: str, headers: Mapping[str, str]) -> None:
        extra = {key: value for key, value in headers.items() if key != "content-type"}
        self._connection.send(destination, body, content_type=headers.get("content-type"), headers=extra)

    def subscribe(self, destination: str, callback: ReplyCallback) -> Callable[[], None]:
        return self._subscribe(destination, callback)

    # listings and properties ---------------------------------------------------

    async def _list_queues(self, filter: str | None) -> list[QueueInfo]:
        items = await self._management.request("getQueues", self._broker_mbean())
        queues: list[QueueInfo] = []
        for item in items:
            name, attributes = _destination_entry(item)
            if not name:
                continue
            depth = attributes.get("QueueSize", attributes.get("queueSize", 0))
            queues.append(
                QueueInfo(name=name, depth=int(depth or 0), description=f"ActiveMQ Queue: {name}")
            )
        return queues

    async def _list_topics(self, filter: str | None) -> list[TopicInfo]:
        items = await self._management.request("getTopics", self._broker_mbean())
        topics: list[TopicInfo] = []
        for item in items:
            name, _ = _destination_entry(item)
            if not name or name.startswith("ActiveMQ.Advisory."):
                continue
            topics.append(
                TopicInfo(name=name, topic_string=name, description=f"ActiveMQ Topic: {name}", status="Active")
            )
        return topics

    async def _queue_properties(self, queue_name: str) -> QueueProperties:
        data = await self._read(self._destination_mbean("Queue", queue_name))
        return QueueProperties(
            name=queue_name,
            depth=int(data.get("QueueSize") or 0),
            description=f"ActiveMQ Queue: {queue_name}",
            attributes={key: data.get(source, 0) or 0 for source, key in _QUEUE_COUNTERS.items()},
        )

    async def _topic_properties(self, topic_name: str) -> TopicProperties:
        data = await self._read(self._destination_mbean("Topic", topic_name))
        attributes = {key: data.get(source, 0) or 0 for source, key in _QUEUE_COUNTERS.items()}
        attributes["message_count"] = data.get("QueueSize", 0) or 0
        return TopicProperties(
            name=topic_name,
            topic_string=topic_name,
            description=f"ActiveMQ Topic: {topic_name}",
            status="Active",
            attributes=attributes,
        )

    async def _clear(self, queue_name: str) -> None:
        await self._management.request(
            "purge", self._destination_mbean("Queue", queue_name), expect_list=False
        )

    # messages ------------------------------------------------------------------

    async def _iter_messages(self, queue_name: str, options: BrowseOptions) -> AsyncIterator[Message]:
        loop = asyncio.get_running_loop()
        frames: asyncio.Queue[tuple[dict[str, str], Any]] = asyncio.Queue()

        def _on_frame(headers: Mapping[str, str], body: Any) -> None:
            try:
                loop.call_soon_threadsafe(frames.put_nowait, (dict(headers), body))
            except RuntimeError:
                self._log.debug("Dropped frame after browse finished", extra={"destination": queue_name})

        headers = {"browser": "true"}
        selector = _selector(options)
        if selector:
            headers["selector"] = selector
        unsubscribe = self._subscribe(f"/queue/{queue_name}", _on_frame, headers)
        deadline = loop.time() + self._settings.browse_timeout
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return
                try:
                    frame_headers, body = await asyncio.wait_for(frames.get(), remaining)
                except asyncio.TimeoutError:
                    return
                if frame_headers.get("browser") == "end":
                    return
                yield _to_message(frame_headers, body)
        finally:
            unsubscribe()

    async def _put(self, queue_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        self._send_message(f"/queue/{queue_name}", payload, properties)

    async def _publish(self, topic_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        self._send_message(f"/topic/{topic_name}", payload, properties)

    # helpers -------------------------------------------------------------------

    @property
    def _connection(self) -> Any:
        if self._conn is None:
            raise ProviderConnectionError("STOMP connection is not open")
        return self._conn

    @property
    def _management(self) -> ManagementCorrelator:
        if self._correlator is None:
            raise ProviderConnectionError("STOMP connection is not open")
        return self._correlator

    def _subscribe(
        self,
        destination: str,
        callback: ReplyCallback,
        headers: Mapping[str, str] | None = None,
    ) -> Callable[[], None]:
        conn = self._connection
        listener = self._listener
        assert listener is not None
        subscription_id = f"mqx-{uuid.uuid4().hex}"
        listener.route(subscription_id, callback)
        conn.subscribe(destination=destination, id=subscription_id, ack="auto", headers=dict(headers or {}))

        def _unsubscribe() -> None:
            listener.unroute(subscription_id)
            if conn.is_connected():
                try:
                    conn.unsubscribe(id=subscription_id)
                except Exception:
                    self._log.warning("Failed to unsubscribe %s", destination, exc_info=True)

        return _unsubscribe

    def _send_message(self, destination: str, payload: Payload, properties: dict[str, Any]) -> None:
        headers: dict[str, str] = {}
        for key, value in {**(properties.get("application_properties") or {}), **(properties.get("headers") or {})}.items():
            headers[str(key)] = str(value)
        if properties.get("correlation_id"):
            headers["correlation-id"] = str(properties["correlation_id"])
        if properties.get("reply_to"):
            headers["reply-to"] = str(properties["reply_to"])
        if properties.get("priority") is not None:
            headers["priority"] = str(properties["priority"])
        if properties.get("delivery_mode") is not None:
            headers["persistent"] = "true" if int(properties["delivery_mode"]) == 2 else "false"
        if properties.get("expiration") is not None:
            headers["expires"] = str(properties["expiration"])
        if properties.get("type"):
            headers["type"] = str(properties["type"])
        content_type = str(properties.get("content_type") or "text/plain")
        self._connection.send(destination, payload, content_type=content_type, headers=headers)

    async def _read(self, mbean: str) -> dict[str, Any]:
        value = await self._management.request("read", mbean, kind="read", expect_list=False)
        if not isinstance(value, dict):
            raise ManagementError(f"Unexpected attribute payload for {mbean}")
        return value

    def _broker_mbean(self) -> str:
        return f"org.apache.activemq:type=Broker,brokerName={self._broker_name}"

    def _destination_mbean(self, kind: str, name: str) -> str:
        return f"{self._broker_mbean()},destinationType={kind},destinationName={name}"


def _default_connection(params: ActiveMQParams) -> Any:
    hosts = [(params.host, params.port)]
    conn = stomp.Connection(
        hosts,
        heartbeats=params.heartbeats,
        vhost=params.vhost,
        timeout=params.connect_timeout,
        reconnect_attempts_max=1,
    )
    if params.ssl:
        conn.set_ssl(for_hosts=hosts)
    return conn


def _destination_entry(item: Any) -> tuple[str, Mapping[str, Any]]:
    if isinstance(item, str):
        return item, {}
    if isinstance(item, Mapping):
        name = item.get("name") or item.get("Name") or item.get("destinationName") or ""
        return str(name), item
    return "", {}


def _selector(options: BrowseOptions) -> str | None:
    if options.filter is None:
        return None
    clauses: list[str] = []
    if options.filter.message_id:
        clauses.append(f"JMSMessageID = '{options.filter.message_id}'")
    if options.filter.correlation_id:
        clauses.append(f"JMSCorrelationID = '{options.filter.correlation_id}'")
    return " AND ".join(clauses) or None


def _to_message(headers: Mapping[str, str], body: Any) -> Message:
    properties: dict[str, Any] = {}
    if headers.get("content-type"):
        properties["content_type"] = headers["content-type"]
    if headers.get("reply-to"):
        properties["reply_to"] = headers["reply-to"]
    if headers.get("type"):
        properties["type"] = headers["type"]
    if headers.get("expires") and headers["expires"] != "0":
        properties["expiration"] = int(headers["expires"])
    if headers.get("priority"):
        properties["priority"] = int(headers["priority"])
    properties["delivery_mode"] = 2 if headers.get("persistent") == "true" else 1
    if headers.get("destination"):
        properties["destination"] = headers["destination"]
    if headers.get("redelivered"):
        properties["redelivered"] = headers["redelivered"] == "true"
    custom = {key: value for key, value in headers.items() if key not in _STANDARD_HEADERS and key != "browser"}
    if custom:
        properties["headers"] = custom
    timestamp = headers.get("timestamp")
    return Message(
        id=headers.get("message-id") or uuid.uuid4().hex,
        correlation_id=headers.get("correlation-id") or None,
        timestamp=from_epoch_millis(int(timestamp)) if timestamp and timestamp.isdigit() else None,
        payload=decode_payload(body),
        properties=properties,
    )


__all__ = ["ActiveMQProvider", "MANAGEMENT_DESTINATION"]
