"""AWS SQS provider built on aioboto3."""

from __future__ import annotations

import asyncio
import base64
import json
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

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
)
from ..profiles import SQSParams
from .base import TARGETED_DELETE, BaseProvider, from_epoch_millis

SessionFactory = Callable[..., Any]

_MISSING_QUEUE_CODES = {"AWS.SimpleQueueService.NonExistentQueue", "QueueDoesNotExist"}
_BATCH_LIMIT = 10
_SEARCH_VISIBILITY = 30
_STALE_BATCHES = 3
_BASE64_MARKER = "mqexplorer_encoding"
_RESERVED_ATTRIBUTES = {"correlation_id", "content_type", _BASE64_MARKER}


class SQSProvider(BaseProvider):
    """Queues only; SQS has no topics of its own."""

    provider_type = ProviderType.AWSSQS
    deletion_class = TARGETED_DELETE

    def __init__(
        self,
        *,
        settings: ProviderSettings | None = None,
        logger: Any = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        super().__init__(settings=settings, logger=logger)
        self._session_factory = session_factory or aioboto3.Session
        self._stack: AsyncExitStack | None = None
        self._client: Any = None
        self._urls: dict[str, str] = {}
        self._url_prefix: str | None = None

    async def _connect(self, params: SQSParams) -> None:
        credentials = params.credentials
        session = self._session_factory(
            aws_access_key_id=credentials.access_key_id if credentials else None,
            aws_secret_access_key=credentials.secret_access_key if credentials else None,
            aws_session_token=credentials.session_token if credentials else None,
            region_name=params.region,
            profile_name=params.profile,
        )
        config = BotoConfig(
            retries={"max_attempts": params.max_retries, "mode": params.retry_mode},
            connect_timeout=self._settings.management_timeout,
            read_timeout=self._settings.management_timeout + 20,
        )
        self._url_prefix = params.queue_url_prefix.rstrip("/") if params.queue_url_prefix else None
        self._stack = AsyncExitStack()
        self._client = await self._stack.enter_async_context(
            session.client("sqs", endpoint_url=params.endpoint, config=config)
        )
        await self._client.list_queues(MaxResults=1)

    async def _disconnect(self) -> None:
        stack, self._stack = self._stack, None
        self._client = None
        self._urls.clear()
        await self._release("SQS client", stack.aclose if stack else None)

    # listings ------------------------------------------------------------------

    async def _list_queues(self, filter: str | None) -> list[QueueInfo]:
        queues = []
        async for url in self._queue_urls():
            name = url.rstrip("/").rsplit("/", 1)[-1]
            self._urls[name] = url
            attributes = await self._attributes(url, ["ApproximateNumberOfMessages", "FifoQueue"])
            queues.append(
                QueueInfo(
                    name=name,
                    depth=int(attributes.get("ApproximateNumberOfMessages", 0)),
                    type=_queue_type(attributes),
                    description=url,
                )
            )
        return queues

    async def _list_topics(self, filter: str | None) -> list[TopicInfo]:
        return []

    async def _queue_properties(self, queue_name: str) -> QueueProperties:
        url = await self._queue_url(queue_name)
        attributes = await self._attributes(url, ["All"])
        redrive = attributes.get("RedrivePolicy")
        return QueueProperties(
            name=queue_name,
            depth=int(attributes.get("ApproximateNumberOfMessages", 0)),
            type=_queue_type(attributes),
            description=url,
            status="Active",
            creation_time=_from_epoch_seconds(attributes.get("CreatedTimestamp")),
            attributes={
                "queue_url": url,
                "queue_arn": attributes.get("QueueArn"),
                "last_modified": _from_epoch_seconds(attributes.get("LastModifiedTimestamp")),
                "visibility_timeout": _int(attributes.get("VisibilityTimeout")),
                "maximum_message_size": _int(attributes.get("MaximumMessageSize")),
                "message_retention_period": _int(attributes.get("MessageRetentionPeriod")),
                "delay_seconds": _int(attributes.get("DelaySeconds")),
                "receive_message_wait_time": _int(attributes.get("ReceiveMessageWaitTimeSeconds")),
                "approximate_not_visible": _int(attributes.get("ApproximateNumberOfMessagesNotVisible")),
                "approximate_delayed": _int(attributes.get("ApproximateNumberOfMessagesDelayed")),
                "fifo": attributes.get("FifoQueue") == "true",
                "content_based_deduplication": attributes.get("ContentBasedDeduplication") == "true",
                "redrive_policy": json.loads(redrive) if redrive else None,
            },
        )

    async def _topic_properties(self, topic_name: str) -> TopicProperties:
        raise self._unsupported("topics")

    # messages ------------------------------------------------------------------

    async def _iter_messages(self, queue_name: str, options: BrowseOptions) -> AsyncIterator[Message]:
        url = await self._queue_url(queue_name)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.browse_timeout
        seen: set[str] = set()
        stale = 0
        while stale < _STALE_BATCHES:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            response = await self._client.receive_message(
                QueueUrl=url,
                MaxNumberOfMessages=_BATCH_LIMIT,
                VisibilityTimeout=0,
                WaitTimeSeconds=max(0, min(int(remaining), 1)),
                AttributeNames=["All"],
                MessageAttributeNames=["All"],
            )
            batch = response.get("Messages") or []
            if not batch:
                return
            fresh = [raw for raw in batch if raw["MessageId"] not in seen]
            stale = 0 if fresh else stale + 1
            for raw in fresh:
                seen.add(raw["MessageId"])
                yield _to_message(raw)

    async def _delete(self, queue_name: str, message: Message) -> None:
        url = await self._queue_url(queue_name)
        held: list[str] = []
        try:
            for _ in range(self._settings.delete_max_attempts):
                response = await self._client.receive_message(
                    QueueUrl=url,
                    MaxNumberOfMessages=min(self._settings.delete_batch_size, _BATCH_LIMIT),
                    VisibilityTimeout=_SEARCH_VISIBILITY,
                    WaitTimeSeconds=int(self._settings.delete_wait_time),
                )
                batch = response.get("Messages") or []
                if not batch:
                    break
                target = None
                for raw in batch:
                    if target is None and raw["MessageId"] == message.id:
                        target = raw
                    else:
                        held.append(raw["ReceiptHandle"])
                if target is not None:
                    await self._client.delete_message(QueueUrl=url, ReceiptHandle=target["ReceiptHandle"])
                    return
        finally:
            await self._release_visibility(url, held)
        raise NotFoundError(f"Message '{message.id}' is no longer on '{queue_name}'")

    async def _put(self, queue_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        url = await self._queue_url(queue_name)
        attributes = {
            **(properties.get("application_properties") or {}),
            **(properties.get("headers") or {}),
        }
        for key in ("correlation_id", "content_type"):
            if properties.get(key):
                attributes[key] = properties[key]
        if isinstance(payload, bytes):
            body = base64.b64encode(payload).decode("ascii")
            attributes[_BASE64_MARKER] = "base64"
        else:
            body = payload
        request: dict[str, Any] = {"QueueUrl": url, "MessageBody": body}
        if attributes:
            request["MessageAttributes"] = {key: _attribute(value) for key, value in attributes.items()}
        if properties.get("delay_seconds") is not None:
            request["DelaySeconds"] = int(properties["delay_seconds"])
        if properties.get("message_group_id"):
            request["MessageGroupId"] = str(properties["message_group_id"])
        if properties.get("message_deduplication_id"):
            request["MessageDeduplicationId"] = str(properties["message_deduplication_id"])
        await self._client.send_message(**request)

    async def _publish(self, topic_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        raise self._unsupported("topics")

    async def _clear(self, queue_name: str) -> None:
        url = await self._queue_url(queue_name)
        await self._client.purge_queue(QueueUrl=url)

    # helpers -------------------------------------------------------------------

    async def _queue_urls(self) -> AsyncIterator[str]:
        token: str | None = None
        while True:
            request: dict[str, Any] = {"MaxResults": 1000}
            if token:
                request["NextToken"] = token
            response = await self._client.list_queues(**request)
            for url in response.get("QueueUrls") or ():
                yield url
            token = response.get("NextToken")
            if not token:
                return

    async def _queue_url(self, queue_name: str) -> str:
        if queue_name in self._urls:
            return self._urls[queue_name]
        if self._url_prefix:
            url = f"{self._url_prefix}/{queue_name}"
        else:
            try:
                response = await self._client.get_queue_url(QueueName=queue_name)
            except ClientError as exc:
                if _error_code(exc) in _MISSING_QUEUE_CODES:
                    raise NotFoundError(f"Queue '{queue_name}' does not exist") from exc
                raise
            url = response["QueueUrl"]
        self._urls[queue_name] = url
        return url

    async def _attributes(self, url: str, names: list[str]) -> dict[str, str]:
        try:
            response = await self._client.get_queue_attributes(QueueUrl=url, AttributeNames=names)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_QUEUE_CODES:
                raise NotFoundError(f"Queue '{url}' does not exist") from exc
            raise
        return response.get("Attributes") or {}

    async def _release_visibility(self, url: str, handles: list[str]) -> None:
        for start in range(0, len(handles), _BATCH_LIMIT):
            chunk = handles[start : start + _BATCH_LIMIT]
            entries = [
                {"Id": str(index), "ReceiptHandle": handle, "VisibilityTimeout": 0}
                for index, handle in enumerate(chunk)
            ]
            await self._release(
                "held messages",
                lambda entries=entries: self._client.change_message_visibility_batch(QueueUrl=url, Entries=entries),
            )


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _queue_type(attributes: dict[str, str]) -> str:
    return "FIFO Queue" if attributes.get("FifoQueue") == "true" else "Standard Queue"


def _int(value: str | None) -> int | None:
    return int(value) if value is not None else None


def _from_epoch_seconds(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _attribute(value: Any) -> dict[str, str]:
    if isinstance(value, bool):
        return {"DataType": "String", "StringValue": str(value).lower()}
    if isinstance(value, (int, float)):
        return {"DataType": "Number", "StringValue": str(value)}
    return {"DataType": "String", "StringValue": str(value)}


def _attribute_value(attribute: dict[str, Any]) -> Any:
    if "StringValue" in attribute:
        value = attribute["StringValue"]
        if attribute.get("DataType", "").startswith("Number"):
            try:
                return int(value)
            except ValueError:
                return float(value)
        return value
    return attribute.get("BinaryValue")


def _to_message(raw: dict[str, Any]) -> Message:
    system = raw.get("Attributes") or {}
    custom = {name: _attribute_value(attr) for name, attr in (raw.get("MessageAttributes") or {}).items()}
    body: Payload = raw.get("Body", "")
    if custom.get(_BASE64_MARKER) == "base64":
        body = base64.b64decode(body)
    properties: dict[str, Any] = {}
    if custom.get("content_type"):
        properties["content_type"] = custom["content_type"]
    application = {key: value for key, value in custom.items() if key not in _RESERVED_ATTRIBUTES}
    if application:
        properties["application_properties"] = application
    for source, target in (
        ("ApproximateReceiveCount", "receive_count"),
        ("MessageGroupId", "message_group_id"),
        ("MessageDeduplicationId", "message_deduplication_id"),
        ("SequenceNumber", "sequence_number"),
        ("SenderId", "sender_id"),
    ):
        if source in system:
            properties[target] = system[source]
    sent = system.get("SentTimestamp")
    return Message(
        id=raw["MessageId"],
        payload=body,
        correlation_id=custom.get("correlation_id"),
        timestamp=from_epoch_millis(int(sent)) if sent else None,
        properties=properties,
    )


__all__ = ["SQSProvider"]
