"""Kafka provider built on aiokafka."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.admin import AIOKafkaAdminClient, RecordsToDelete
from aiokafka.helpers import create_ssl_context

from ..config import ProviderSettings
from ..errors import NotFoundError
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
from ..profiles import KafkaParams
from .base import CACHE_ONLY_DELETE, BaseProvider, from_epoch_millis

ClientFactory = Callable[..., Any]

_ID_HEADER = "message-id"
_CORRELATION_HEADER = "correlation-id"
_CONTENT_TYPE_HEADER = "content-type"


class KafkaProvider(BaseProvider):
    """Treats every non-internal topic as both a queue and a topic.

    Browsing reads from the beginning of each partition up to the end offsets
    captured when the browse starts. Records cannot be removed one at a time,
    so deletion only hides them from later browses.
    """

    provider_type = ProviderType.KAFKA
    deletion_class = CACHE_ONLY_DELETE

    def __init__(
        self,
        *,
        settings: ProviderSettings | None = None,
        logger: Any = None,
        admin_factory: ClientFactory | None = None,
        producer_factory: ClientFactory | None = None,
        consumer_factory: ClientFactory | None = None,
    ) -> None:
        super().__init__(settings=settings, logger=logger)
        self._admin_factory = admin_factory or AIOKafkaAdminClient
        self._producer_factory = producer_factory or AIOKafkaProducer
        self._consumer_factory = consumer_factory or AIOKafkaConsumer
        self._options: dict[str, Any] = {}
        self._admin: Any = None
        self._producer: Any = None
        self._metadata: Any = None

    async def _connect(self, params: KafkaParams) -> None:
        self._options = _client_options(params)
        self._admin = self._admin_factory(**self._options)
        self._producer = self._producer_factory(**self._options)
        self._metadata = self._consumer_factory(**self._options, group_id=None, enable_auto_commit=False)
        async with asyncio.timeout(params.connection_timeout):
            await self._admin.start()
            await self._producer.start()
            await self._metadata.start()

    async def _disconnect(self) -> None:
        metadata, self._metadata = self._metadata, None
        producer, self._producer = self._producer, None
        admin, self._admin = self._admin, None
        await self._release("metadata consumer", metadata.stop if metadata else None)
        await self._release("producer", producer.stop if producer else None)
        await self._release("admin client", admin.close if admin else None)

    # listings ------------------------------------------------------------------

    async def _topic_names(self) -> list[str]:
        names = await self._admin.list_topics()
        return sorted(name for name in names if not name.startswith("__"))

    async def _list_queues(self, filter: str | None) -> list[QueueInfo]:
        queues = []
        for name in await self._topic_names():
            partitions = await self._partitions(name)
            queues.append(
                QueueInfo(
                    name=name,
                    depth=await self._depth(partitions),
                    type="Topic",
                    description=f"Kafka topic ({len(partitions)} partitions)",
                )
            )
        return queues

    async def _list_topics(self, filter: str | None) -> list[TopicInfo]:
        return [
            TopicInfo(name=name, topic_string=name, type="Topic", description="Kafka topic", status="Active")
            for name in await self._topic_names()
        ]

    async def _queue_properties(self, queue_name: str) -> QueueProperties:
        partitions = await self._partitions(queue_name)
        attributes = await self._topic_attributes(queue_name, partitions)
        return QueueProperties(
            name=queue_name,
            depth=attributes["message_count"],
            type="Topic",
            description=f"Kafka topic ({len(partitions)} partitions)",
            status="Active",
            attributes=attributes,
        )

    async def _topic_properties(self, topic_name: str) -> TopicProperties:
        partitions = await self._partitions(topic_name)
        attributes = await self._topic_attributes(topic_name, partitions)
        return TopicProperties(
            name=topic_name,
            topic_string=topic_name,
            type="Topic",
            description=f"Kafka topic ({len(partitions)} partitions)",
            status="Active",
            attributes=attributes,
        )

    # messages ------------------------------------------------------------------

    async def _iter_messages(self, queue_name: str, options: BrowseOptions) -> AsyncIterator[Message]:
        partitions = await self._partitions(queue_name)
        beginning = await self._metadata.beginning_offsets(partitions)
        end = await self._metadata.end_offsets(partitions)
        pending = {tp for tp in partitions if end[tp] > beginning[tp]}
        if not pending:
            return
        consumer = self._consumer_factory(
            **self._options,
            group_id=None,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        try:
            await consumer.start()
            consumer.assign(sorted(pending))
            for tp in pending:
                consumer.seek(tp, beginning[tp])
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self._settings.browse_timeout
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    self._log.debug("Browse timed out", extra={"operation": "browse_messages", "destination": queue_name})
                    return
                batch = await consumer.getmany(*sorted(pending), timeout_ms=int(min(remaining, 1.0) * 1000))
                for tp, records in batch.items():
                    for record in records:
                        if record.offset >= end[tp]:
                            pending.discard(tp)
                            break
                        yield _to_message(record)
                        if record.offset + 1 >= end[tp]:
                            pending.discard(tp)
        finally:
            await self._release("browse consumer", consumer.stop)

    async def _put(self, queue_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        await self._send(queue_name, payload, properties)

    async def _publish(self, topic_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        await self._send(topic_name, payload, properties)

    async def _clear(self, queue_name: str) -> None:
        partitions = await self._partitions(queue_name)
        end = await self._metadata.end_offsets(partitions)
        records = {tp: RecordsToDelete(before_offset=end[tp]) for tp in partitions if end[tp] > 0}
        if records:
            await self._admin.delete_records(records)

    # helpers -------------------------------------------------------------------

    async def _partitions(self, topic: str) -> list[TopicPartition]:
        ids = self._metadata.partitions_for_topic(topic)
        if ids is None:
            await self._metadata.topics()
            ids = self._metadata.partitions_for_topic(topic)
        if not ids:
            raise NotFoundError(f"Topic '{topic}' does not exist")
        return [TopicPartition(topic, partition) for partition in sorted(ids)]

    async def _depth(self, partitions: list[TopicPartition]) -> int:
        beginning = await self._metadata.beginning_offsets(partitions)
        end = await self._metadata.end_offsets(partitions)
        return sum(end[tp] - beginning[tp] for tp in partitions)

    async def _topic_attributes(self, topic: str, partitions: list[TopicPartition]) -> dict[str, Any]:
        beginning = await self._metadata.beginning_offsets(partitions)
        end = await self._metadata.end_offsets(partitions)
        attributes: dict[str, Any] = {
            "partition_count": len(partitions),
            "message_count": sum(end[tp] - beginning[tp] for tp in partitions),
            "offsets": {tp.partition: {"low": beginning[tp], "high": end[tp]} for tp in partitions},
        }
        described = await self._admin.describe_topics([topic])
        for entry in described or ():
            if entry.get("topic") != topic:
                continue
            replicas = [len(p.get("replicas") or ()) for p in entry.get("partitions") or ()]
            attributes["is_internal"] = bool(entry.get("is_internal"))
            if replicas:
                attributes["replication_factor"] = max(replicas)
        return attributes

    async def _send(self, topic: str, payload: Payload, properties: dict[str, Any]) -> None:
        headers = {
            **(properties.get("application_properties") or {}),
            **(properties.get("headers") or {}),
        }
        if properties.get("message_id"):
            headers[_ID_HEADER] = properties["message_id"]
        if properties.get("correlation_id"):
            headers[_CORRELATION_HEADER] = properties["correlation_id"]
        if properties.get("content_type"):
            headers[_CONTENT_TYPE_HEADER] = properties["content_type"]
        key = properties.get("key")
        partition = properties.get("partition")
        await self._producer.send_and_wait(
            topic,
            value=encode_payload(payload),
            key=encode_payload(key) if key is not None else None,
            partition=int(partition) if partition is not None else None,
            headers=[(name, encode_payload(str(value))) for name, value in headers.items()],
        )


def _client_options(params: KafkaParams) -> dict[str, Any]:
    options: dict[str, Any] = {
        "bootstrap_servers": list(params.brokers),
        "client_id": params.client_id,
        "request_timeout_ms": int(params.request_timeout * 1000),
    }
    if params.sasl is not None:
        options["security_protocol"] = "SASL_SSL" if params.ssl else "SASL_PLAINTEXT"
        options["sasl_mechanism"] = params.sasl.mechanism
        options["sasl_plain_username"] = params.sasl.username
        options["sasl_plain_password"] = params.sasl.password
    elif params.ssl:
        options["security_protocol"] = "SSL"
    if params.ssl:
        options["ssl_context"] = create_ssl_context()
    return options


def _to_message(record: Any) -> Message:
    headers = {name: decode_payload(value) for name, value in (record.headers or ())}
    message_id = headers.get(_ID_HEADER) or f"{record.partition}-{record.offset}"
    properties: dict[str, Any] = {"partition": record.partition, "offset": record.offset}
    if record.key is not None:
        properties["key"] = decode_payload(record.key)
    content_type = headers.pop(_CONTENT_TYPE_HEADER, None)
    if content_type:
        properties["content_type"] = content_type
    if headers:
        properties["headers"] = headers
    return Message(
        id=str(message_id),
        correlation_id=headers.get(_CORRELATION_HEADER),
        timestamp=from_epoch_millis(record.timestamp),
        payload=decode_payload(record.value),
        properties=properties,
    )


__all__ = ["KafkaProvider"]
