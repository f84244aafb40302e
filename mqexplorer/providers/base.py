"""Provider contract and the shared connection/cache mechanics."""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import aclosing, contextmanager
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    ClassVar,
    Iterable,
    Iterator,
    Mapping,
    Protocol,
    Sequence,
    runtime_checkable,
)

from ..cache import MessageCache
from ..config import ProviderSettings
from ..errors import (
    MQExplorerError,
    NotConnectedError,
    NotFoundError,
    OperationError,
    ParamsValidationError,
    ProviderConnectionError,
    UnsupportedOperationError,
)
from ..logs import provider_logger
from ..models import (
    BrowseOptions,
    ChannelInfo,
    ChannelProperties,
    ConnectionState,
    DeleteOutcome,
    DeleteResult,
    DeleteSummary,
    Message,
    Payload,
    ProviderType,
    QueueInfo,
    QueueProperties,
    SubscriptionInfo,
    TopicInfo,
    TopicProperties,
)
from ..profiles import ConnectionProfile, parse_params

PropertyMap = Mapping[str, Any]
ParamsInput = ConnectionProfile | Mapping[str, Any] | Any

TARGETED_DELETE = 1
CACHE_ONLY_DELETE = 3


@runtime_checkable
class MessageQueueProvider(Protocol):
    """Operations every broker adapter exposes."""

    provider_type: ClassVar[ProviderType]

    @property
    def state(self) -> ConnectionState:
        """Current lifecycle state."""

    async def connect(self, params: ParamsInput) -> None:
        """Open the broker session described by ``params``."""

    async def disconnect(self) -> None:
        """Release the broker session; safe to call repeatedly."""

    def is_connected(self) -> bool:
        """Return True while the session is usable."""

    async def list_queues(self, filter: str | None = None) -> list[QueueInfo]: ...

    async def list_topics(self, filter: str | None = None) -> list[TopicInfo]: ...

    async def browse_messages(self, queue_name: str, options: BrowseOptions | None = None) -> list[Message]: ...

    async def put_message(self, queue_name: str, payload: Payload, properties: PropertyMap | None = None) -> None: ...

    async def publish_message(self, topic_name: str, payload: Payload, properties: PropertyMap | None = None) -> None: ...

    async def clear_queue(self, queue_name: str) -> None: ...

    async def delete_message(self, queue_name: str, message_id: str) -> DeleteResult: ...

    async def delete_messages(self, queue_name: str, message_ids: Iterable[str]) -> DeleteSummary: ...

    async def get_queue_properties(self, queue_name: str) -> QueueProperties: ...

    async def get_topic_properties(self, topic_name: str) -> TopicProperties: ...

    async def get_queue_depth(self, queue_name: str) -> int: ...


def name_matches(name: str, filter: str | None) -> bool:
    """Case-insensitive substring match used by every listing."""

    if not filter:
        return True
    return filter.lower() in name.lower()


class BaseProvider:
    """Implements the contract around broker-specific ``_`` hooks.

    Subclasses set ``provider_type`` and ``deletion_class`` and implement the
    hooks. The base class owns the connection state machine, the connected
    guard, logging, error translation, listing filters, browse paging and the
    message cache.
    """

    provider_type: ClassVar[ProviderType]
    deletion_class: ClassVar[int] = TARGETED_DELETE

    def __init__(
        self,
        *,
        settings: ProviderSettings | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self._settings = settings or ProviderSettings()
        self._log = provider_logger(self.provider_type.value, logger=logger)
        self._cache = MessageCache()
        self._state = ConnectionState.DISCONNECTED
        self._last_error: str | None = None
        self._params: Any = None

    # -- state -----------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def last_error(self) -> str | None:
        """Message recorded by the most recent failed connect."""

        return self._last_error

    @property
    def cache(self) -> MessageCache:
        return self._cache

    @property
    def settings(self) -> ProviderSettings:
        return self._settings

    @property
    def params(self) -> Any:
        return self._params

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def bind_profile(self, name: str) -> None:
        """Tag log lines from this instance with a profile name."""

        self._log.extra["profile"] = name  # type: ignore[index]

    async def connect(self, params: ParamsInput) -> None:
        if self._state is ConnectionState.CONNECTED:
            return
        if self._state is ConnectionState.CONNECTING:
            raise ProviderConnectionError("A connection attempt is already in progress")
        if isinstance(params, ConnectionProfile):
            self.bind_profile(params.name)
            params = params.connection_params
        self._state = ConnectionState.CONNECTING
        self._last_error = None
        try:
            parsed = parse_params(self.provider_type, params)
        except ParamsValidationError as exc:
            self._enter_error(exc)
            raise
        self._log.info("Connecting", extra={"operation": "connect"})
        try:
            await self._connect(parsed)
        except asyncio.CancelledError:
            await self._teardown()
            self._state = ConnectionState.DISCONNECTED
            raise
        except Exception as exc:
            self._enter_error(exc)
            await self._teardown()
            if isinstance(exc, ProviderConnectionError):
                raise
            raise ProviderConnectionError(
                f"Failed to connect to {self.provider_type.value}: {exc}"
            ) from exc
        self._params = parsed
        self._state = ConnectionState.CONNECTED
        self._log.info("Connected", extra={"operation": "connect"})

    async def disconnect(self) -> None:
        if self._state is ConnectionState.DISCONNECTED:
            self._cache.clear_all()
            return
        self._log.info("Disconnecting", extra={"operation": "disconnect"})
        try:
            await self._teardown()
        finally:
            self._cache.clear_all()
            self._params = None
            self._state = ConnectionState.DISCONNECTED
        self._log.info("Disconnected", extra={"operation": "disconnect"})

    # -- listings --------------------------------------------------------------

    async def list_queues(self, filter: str | None = None) -> list[QueueInfo]:
        with self._operation("list_queues", filter=filter):
            queues = await self._list_queues(filter)
        return sorted((queue for queue in queues if name_matches(queue.name, filter)), key=lambda q: q.name)

    async def list_topics(self, filter: str | None = None) -> list[TopicInfo]:
        with self._operation("list_topics", filter=filter):
            topics = await self._list_topics(filter)
        return sorted((topic for topic in topics if name_matches(topic.name, filter)), key=lambda t: t.name)

    # -- messages --------------------------------------------------------------

    async def browse_messages(self, queue_name: str, options: BrowseOptions | None = None) -> list[Message]:
        options = options or BrowseOptions(limit=self._settings.default_browse_limit)
        with self._operation("browse_messages", destination=queue_name):
            messages = await self._page(queue_name, self._iter_messages(queue_name, options), options)
        return messages

    async def put_message(self, queue_name: str, payload: Payload, properties: PropertyMap | None = None) -> None:
        with self._operation("put_message", destination=queue_name):
            await self._put(queue_name, payload, dict(properties or {}))

    async def publish_message(self, topic_name: str, payload: Payload, properties: PropertyMap | None = None) -> None:
        with self._operation("publish_message", destination=topic_name):
            await self._publish(topic_name, payload, dict(properties or {}))

    async def clear_queue(self, queue_name: str) -> None:
        with self._operation("clear_queue", destination=queue_name):
            await self._clear(queue_name)
            self._cache.clear(queue_name)

    async def delete_message(self, queue_name: str, message_id: str) -> DeleteResult:
        with self._operation("delete_message", destination=queue_name, message_id=message_id):
            cached = self._cache.lookup(queue_name, message_id)
            if cached is None:
                raise NotFoundError(
                    f"Message '{message_id}' was not browsed from '{queue_name}' or was already deleted"
                )
            if self.deletion_class == CACHE_ONLY_DELETE:
                self._cache.hide(queue_name, message_id)
                self._log.warning(
                    "%s cannot remove individual messages; message %s is hidden but still on '%s'",
                    self.provider_type.value,
                    message_id,
                    queue_name,
                    extra={"operation": "delete_message"},
                )
                return DeleteResult(queue_name, message_id, DeleteOutcome.HIDDEN)
            await self._delete(queue_name, cached)
            self._cache.remove(queue_name, message_id)
            return DeleteResult(queue_name, message_id, DeleteOutcome.DELETED)

    async def delete_messages(self, queue_name: str, message_ids: Iterable[str]) -> DeleteSummary:
        ids = list(message_ids)
        self._require_connected("delete_messages")
        results: list[DeleteResult] = []
        failures: dict[str, str] = {}
        first_error: MQExplorerError | None = None
        for message_id in ids:
            try:
                results.append(await self.delete_message(queue_name, message_id))
            except MQExplorerError as exc:
                failures[message_id] = str(exc)
                first_error = first_error or exc
        if ids and not results and first_error is not None:
            raise first_error
        self._log.info(
            "Deleted %d of %d message(s) from '%s'",
            len(results),
            len(ids),
            queue_name,
            extra={"operation": "delete_messages"},
        )
        return DeleteSummary(queue_name, tuple(results), failures)

    # -- properties ------------------------------------------------------------

    async def get_queue_properties(self, queue_name: str) -> QueueProperties:
        with self._operation("get_queue_properties", destination=queue_name):
            return await self._queue_properties(queue_name)

    async def get_topic_properties(self, topic_name: str) -> TopicProperties:
        with self._operation("get_topic_properties", destination=topic_name):
            return await self._topic_properties(topic_name)

    async def get_queue_depth(self, queue_name: str) -> int:
        properties = await self.get_queue_properties(queue_name)
        return properties.depth or 0

    # -- optional capabilities -------------------------------------------------

    async def list_subscriptions(self, topic_name: str, filter: str | None = None) -> list[SubscriptionInfo]:
        with self._operation("list_subscriptions", destination=topic_name):
            subscriptions = await self._list_subscriptions(topic_name)
        return sorted((s for s in subscriptions if name_matches(s.name, filter)), key=lambda s: s.name)

    async def get_subscription_info(self, topic_name: str, subscription_name: str) -> SubscriptionInfo:
        with self._operation("get_subscription_info", destination=topic_name):
            return await self._subscription_info(topic_name, subscription_name)

    async def browse_subscription_messages(
        self,
        topic_name: str,
        subscription_name: str,
        options: BrowseOptions | None = None,
    ) -> list[Message]:
        options = options or BrowseOptions(limit=self._settings.default_browse_limit)
        entity = subscription_path(topic_name, subscription_name)
        with self._operation("browse_subscription_messages", destination=entity):
            source = self._iter_subscription_messages(topic_name, subscription_name, options)
            return await self._page(entity, source, options)

    async def list_channels(self, filter: str | None = None) -> list[ChannelInfo]:
        with self._operation("list_channels", filter=filter):
            channels = await self._list_channels()
        return sorted((c for c in channels if name_matches(c.name, filter)), key=lambda c: c.name)

    async def get_channel_properties(self, channel_name: str) -> ChannelProperties:
        with self._operation("get_channel_properties", destination=channel_name):
            return await self._channel_properties(channel_name)

    async def start_channel(self, channel_name: str) -> None:
        with self._operation("start_channel", destination=channel_name):
            await self._start_channel(channel_name)

    async def stop_channel(self, channel_name: str) -> None:
        with self._operation("stop_channel", destination=channel_name):
            await self._stop_channel(channel_name)

    # -- hooks -----------------------------------------------------------------

    async def _connect(self, params: Any) -> None:
        raise NotImplementedError

    async def _disconnect(self) -> None:
        raise NotImplementedError

    async def _list_queues(self, filter: str | None) -> Sequence[QueueInfo]:
        raise NotImplementedError

    async def _list_topics(self, filter: str | None) -> Sequence[TopicInfo]:
        raise NotImplementedError

    def _iter_messages(self, queue_name: str, options: BrowseOptions) -> AsyncIterator[Message]:
        raise NotImplementedError

    async def _put(self, queue_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        raise NotImplementedError

    async def _publish(self, topic_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        raise NotImplementedError

    async def _clear(self, queue_name: str) -> None:
        raise NotImplementedError

    async def _delete(self, queue_name: str, message: Message) -> None:
        raise UnsupportedOperationError(f"{self.provider_type.value} cannot delete individual messages")

    async def _queue_properties(self, queue_name: str) -> QueueProperties:
        raise NotImplementedError

    async def _topic_properties(self, topic_name: str) -> TopicProperties:
        raise NotImplementedError

    async def _list_subscriptions(self, topic_name: str) -> Sequence[SubscriptionInfo]:
        raise self._unsupported("subscriptions")

    async def _subscription_info(self, topic_name: str, subscription_name: str) -> SubscriptionInfo:
        raise self._unsupported("subscriptions")

    def _iter_subscription_messages(
        self, topic_name: str, subscription_name: str, options: BrowseOptions
    ) -> AsyncIterator[Message]:
        raise self._unsupported("subscriptions")

    async def _list_channels(self) -> Sequence[ChannelInfo]:
        raise self._unsupported("channels")

    async def _channel_properties(self, channel_name: str) -> ChannelProperties:
        raise self._unsupported("channels")

    async def _start_channel(self, channel_name: str) -> None:
        raise self._unsupported("channels")

    async def _stop_channel(self, channel_name: str) -> None:
        raise self._unsupported("channels")

    # -- helpers ---------------------------------------------------------------

    def _unsupported(self, feature: str) -> UnsupportedOperationError:
        return UnsupportedOperationError(f"{self.provider_type.value} does not support {feature}")

    def _require_connected(self, operation: str) -> None:
        if self._state is not ConnectionState.CONNECTED:
            raise NotConnectedError(
                f"Cannot {operation.replace('_', ' ')}: {self.provider_type.value} provider is {self._state.value}"
            )

    @contextmanager
    def _operation(self, operation: str, **context: Any) -> Iterator[None]:
        """Guard, log and translate failures for one contract operation."""

        self._require_connected(operation)
        extra = {"operation": operation, **context}
        self._log.debug("%s started", operation, extra=extra)
        try:
            yield
        except MQExplorerError as exc:
            self._log.error("%s failed: %s", operation, exc, extra=extra)
            raise
        except Exception as exc:
            self._log.exception("%s failed", operation, extra=extra)
            raise OperationError(f"{operation} failed: {exc}") from exc
        else:
            self._log.info("%s succeeded", operation, extra=extra)

    async def _page(self, cache_key: str, source: AsyncIterator[Message], options: BrowseOptions) -> list[Message]:
        """Apply filter, hidden ids and paging to a broker-ordered stream.

        Closing the stream when enough messages are found runs the adapter's
        teardown for the in-flight subscription or receiver.
        """

        found: list[Message] = []
        matched = 0
        async with aclosing(source) as stream:
            async for message in stream:
                if self._cache.is_hidden(cache_key, message.id) or not options.accepts(message):
                    continue
                matched += 1
                if matched <= options.start_position:
                    continue
                found.append(message)
                if len(found) >= options.limit:
                    break
        for message in found:
            self._cache.record(cache_key, message)
        return found

    async def _teardown(self) -> None:
        try:
            await self._disconnect()
        except Exception:
            self._log.exception("Error while releasing broker resources", extra={"operation": "disconnect"})

    async def _release(self, label: str, closer: Callable[[], Awaitable[Any] | Any] | None) -> None:
        """Close one resource, logging rather than raising on failure."""

        if closer is None:
            return
        try:
            result = closer()
            if inspect.isawaitable(result):
                await result
        except Exception:
            self._log.warning("Failed to close %s", label, exc_info=True, extra={"operation": "disconnect"})

    def _enter_error(self, exc: BaseException) -> None:
        self._state = ConnectionState.ERROR
        self._last_error = str(exc)
        self._log.error("Connection failed: %s", exc, extra={"operation": "connect"})


def from_epoch_millis(value: float | int | None) -> datetime | None:
    """Convert broker epoch milliseconds to an aware UTC datetime."""

    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def subscription_path(topic_name: str, subscription_name: str) -> str:
    """Entity path used to cache messages browsed from a subscription."""

    return f"{topic_name}/subscriptions/{subscription_name}"


__all__ = [
    "BaseProvider",
    "CACHE_ONLY_DELETE",
    "MessageQueueProvider",
    "TARGETED_DELETE",
    "from_epoch_millis",
    "name_matches",
    "subscription_path",
]
