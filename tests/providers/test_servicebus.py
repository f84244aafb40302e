"""Service Bus provider tests with fake messaging and administration clients."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, AsyncIterator

import pytest
from azure.core.exceptions import ResourceNotFoundError
from azure.servicebus import ServiceBusMessage, ServiceBusReceiveMode
from azure.servicebus.management import CorrelationRuleFilter, SqlRuleFilter, TrueRuleFilter

from mqexplorer.config import ProviderSettings
from mqexplorer.errors import NotFoundError, ProviderConnectionError
from mqexplorer.models import BrowseOptions, ConnectionState, DeleteOutcome
from mqexplorer.providers.servicebus import ServiceBusProvider

CONNECTION_STRING = "Endpoint=sb://demo.servicebus.windows.net/;SharedAccessKeyName=root;SharedAccessKey=key"
CREATED = datetime(2024, 1, 2, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _received(sequence_number: int, body: bytes, **fields: Any) -> SimpleNamespace:
    values: dict[str, Any] = {
        "message_id": None,
        "correlation_id": None,
        "content_type": None,
        "subject": None,
        "to": None,
        "reply_to": None,
        "session_id": None,
        "partition_key": None,
        "time_to_live": None,
        "application_properties": None,
        "delivery_count": 0,
        "enqueued_time_utc": CREATED,
    }
    values.update(fields)
    return SimpleNamespace(sequence_number=sequence_number, body=[body], **values)


class _FakeReceiver:
    def __init__(self, entity: list[SimpleNamespace], receive_mode: Any = None) -> None:
        self.entity = entity
        self.receive_mode = receive_mode
        self.locked: set[int] = set()
        self.completed: list[int] = []
        self.abandoned: list[int] = []
        self.open = False
        self.closed = False

    async def __aenter__(self) -> _FakeReceiver:
        self.open = True
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.closed = True

    async def peek_messages(self, max_message_count: int, sequence_number: int = 0) -> list[SimpleNamespace]:
        return [m for m in self.entity if m.sequence_number >= sequence_number][:max_message_count]

    async def receive_messages(self, max_message_count: int, max_wait_time: float | None = None) -> list[SimpleNamespace]:
        available = [m for m in self.entity if m.sequence_number not in self.locked][:max_message_count]
        if self.receive_mode == ServiceBusReceiveMode.RECEIVE_AND_DELETE:
            for message in available:
                self.entity.remove(message)
        else:
            self.locked.update(m.sequence_number for m in available)
        return available

    async def complete_message(self, message: SimpleNamespace) -> None:
        self.completed.append(message.sequence_number)
        self.locked.discard(message.sequence_number)
        self.entity.remove(message)

    async def abandon_message(self, message: SimpleNamespace) -> None:
        self.abandoned.append(message.sequence_number)
        self.locked.discard(message.sequence_number)


class _FakeSender:
    def __init__(self) -> None:
        self.sent: list[ServiceBusMessage] = []
        self.closed = False

    async def send_messages(self, message: ServiceBusMessage) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True


class _FakeClient:
    def __init__(self) -> None:
        self.entities: dict[str, list[SimpleNamespace]] = {}
        self.receivers: list[_FakeReceiver] = []
        self.senders: dict[str, _FakeSender] = {}
        self.closed = False

    def get_queue_receiver(self, queue_name: str, receive_mode: Any = None, max_wait_time: float | None = None) -> _FakeReceiver:
        receiver = _FakeReceiver(self.entities.setdefault(queue_name, []), receive_mode)
        self.receivers.append(receiver)
        return receiver

    def get_subscription_receiver(self, topic_name: str, subscription_name: str) -> _FakeReceiver:
        receiver = _FakeReceiver(self.entities.setdefault(f"{topic_name}/{subscription_name}", []))
        self.receivers.append(receiver)
        return receiver

    def get_queue_sender(self, queue_name: str) -> _FakeSender:
        return self.senders.setdefault(queue_name, _FakeSender())

    def get_topic_sender(self, topic_name: str) -> _FakeSender:
        return self.senders.setdefault(topic_name, _FakeSender())

    async def close(self) -> None:
        self.closed = True


def _missing(name: str) -> ResourceNotFoundError:
    return ResourceNotFoundError(f"Entity '{name}' was not found")


class _FakeAdmin:
    def __init__(self) -> None:
        self.queues = {
            "orders": SimpleNamespace(
                name="orders",
                status=SimpleNamespace(value="Active"),
                max_size_in_megabytes=1024,
                lock_duration=timedelta(seconds=30),
                max_delivery_count=10,
                default_message_time_to_live=timedelta(days=14),
                requires_session=False,
                requires_duplicate_detection=False,
                dead_lettering_on_message_expiration=True,
                enable_partitioning=False,
            )
        }
        self.topics = {
            "events": SimpleNamespace(
                name="events",
                status=SimpleNamespace(value="Active"),
                max_size_in_megabytes=2048,
                default_message_time_to_live=None,
                requires_duplicate_detection=False,
                enable_partitioning=False,
                support_ordering=True,
            )
        }
        self.subscriptions = {"events": ["billing", "audit"]}
        self.rules = [
            SimpleNamespace(name="$Default", filter=TrueRuleFilter(), action=None),
            SimpleNamespace(name="large", filter=SqlRuleFilter("amount > 100"), action=SimpleNamespace(sql_expression="SET flagged = 1")),
            SimpleNamespace(name="eu", filter=CorrelationRuleFilter(correlation_id="c-1", properties={"region": "eu"}), action=None),
        ]
        self.closed = False
        self.namespace_read = False

    async def get_namespace_properties(self) -> SimpleNamespace:
        self.namespace_read = True
        return SimpleNamespace(name="demo")

    async def list_queues_runtime_properties(self) -> AsyncIterator[SimpleNamespace]:
        yield SimpleNamespace(name="orders", active_message_count=2, dead_letter_message_count=1)

    async def list_topics_runtime_properties(self) -> AsyncIterator[SimpleNamespace]:
        yield SimpleNamespace(name="events", subscription_count=2)

    async def get_queue(self, name: str) -> SimpleNamespace:
        if name not in self.queues:
            raise _missing(name)
        return self.queues[name]

    async def get_queue_runtime_properties(self, name: str) -> SimpleNamespace:
        return SimpleNamespace(
            active_message_count=2,
            size_in_bytes=512,
            total_message_count=3,
            dead_letter_message_count=1,
            scheduled_message_count=0,
            transfer_message_count=0,
            created_at_utc=CREATED,
            updated_at_utc=CREATED,
            accessed_at_utc=CREATED,
        )

    async def get_topic(self, name: str) -> SimpleNamespace:
        if name not in self.topics:
            raise _missing(name)
        return self.topics[name]

    async def get_topic_runtime_properties(self, name: str) -> SimpleNamespace:
        return SimpleNamespace(created_at_utc=CREATED, subscription_count=2, size_in_bytes=0, scheduled_message_count=0)

    async def list_subscriptions(self, topic_name: str) -> AsyncIterator[SimpleNamespace]:
        for name in self.subscriptions[topic_name]:
            yield SimpleNamespace(name=name)

    async def list_subscriptions_runtime_properties(self, topic_name: str) -> AsyncIterator[SimpleNamespace]:
        for name in self.subscriptions[topic_name]:
            yield SimpleNamespace(name=name, active_message_count=1, dead_letter_message_count=0)

    async def get_subscription(self, topic_name: str, subscription_name: str) -> SimpleNamespace:
        if subscription_name not in self.subscriptions.get(topic_name, []):
            raise _missing(subscription_name)
        return SimpleNamespace(status="Active", max_delivery_count=5)

    async def get_subscription_runtime_properties(self, topic_name: str, subscription_name: str) -> SimpleNamespace:
        return SimpleNamespace(active_message_count=4, dead_letter_message_count=1)

    async def list_rules(self, topic_name: str, subscription_name: str) -> AsyncIterator[SimpleNamespace]:
        for rule in self.rules:
            yield rule

    async def close(self) -> None:
        self.closed = True


class _Namespace:
    """Client factory that remembers what it built."""

    def __init__(self) -> None:
        self.client = _FakeClient()
        self.admin = _FakeAdmin()
        self.calls: list[tuple[Any, Any]] = []

    def __call__(self, params: Any, credential: Any) -> tuple[_FakeClient, _FakeAdmin]:
        self.calls.append((params, credential))
        return self.client, self.admin


@pytest.fixture
def namespace() -> _Namespace:
    namespace = _Namespace()
    namespace.client.entities["orders"] = [
        _received(
            1,
            b"first",
            message_id="m-1",
            correlation_id="c-1",
            content_type="application/json",
            subject="created",
            time_to_live=timedelta(seconds=60),
            application_properties={b"tenant": b"acme", "retries": 2},
        ),
        _received(2, b"second", message_id="m-2"),
        _received(3, b"third"),
    ]
    namespace.client.entities["events/audit"] = [_received(7, b"event", message_id="e-1")]
    return namespace


async def _connected(namespace: _Namespace) -> ServiceBusProvider:
    provider = ServiceBusProvider(
        settings=ProviderSettings(browse_timeout=2.0, delete_wait_time=0.1, clear_wait_time=0.1),
        client_factory=namespace,
    )
    await provider.connect({"connectionString": CONNECTION_STRING})
    return provider


@pytest.mark.anyio
async def test_connect_probes_namespace(namespace: _Namespace) -> None:
    provider = await _connected(namespace)

    [(params, credential)] = namespace.calls
    assert provider.state is ConnectionState.CONNECTED
    assert namespace.admin.namespace_read is True
    assert params.connection_string == CONNECTION_STRING
    assert credential is None

    await provider.disconnect()

    assert namespace.client.closed is True
    assert namespace.admin.closed is True


@pytest.mark.anyio
async def test_missing_auth_fails_before_client_creation(namespace: _Namespace) -> None:
    provider = ServiceBusProvider(client_factory=namespace)

    with pytest.raises(ProviderConnectionError):
        await provider.connect({"fullyQualifiedNamespace": "demo.servicebus.windows.net"})

    assert namespace.calls == []
    assert provider.state is ConnectionState.ERROR


@pytest.mark.anyio
async def test_listings_use_runtime_properties(namespace: _Namespace) -> None:
    provider = await _connected(namespace)

    [queue] = await provider.list_queues()
    [topic] = await provider.list_topics()

    assert (queue.name, queue.depth) == ("orders", 2)
    assert queue.description == "Service Bus queue (1 dead-lettered)"
    assert (topic.name, topic.subscription_count) == ("events", 2)


@pytest.mark.anyio
async def test_queue_properties_combine_description_and_runtime(namespace: _Namespace) -> None:
    provider = await _connected(namespace)

    properties = await provider.get_queue_properties("orders")

    assert properties.depth == 2
    assert properties.status == "Active"
    assert properties.creation_time == CREATED
    assert properties.attributes["lock_duration"] == 30.0
    assert properties.attributes["max_delivery_count"] == 10
    with pytest.raises(NotFoundError, match="Queue 'missing' does not exist"):
        await provider.get_queue_properties("missing")


@pytest.mark.anyio
async def test_topic_properties_list_subscriptions(namespace: _Namespace) -> None:
    provider = await _connected(namespace)

    properties = await provider.get_topic_properties("events")
    subscriptions = await provider.list_subscriptions("events")

    assert properties.subscriptions == ("audit", "billing")
    assert properties.attributes["default_message_time_to_live"] is None
    assert [(s.name, s.message_count) for s in subscriptions] == [("audit", 1), ("billing", 1)]


@pytest.mark.anyio
async def test_subscription_info_describes_rules(namespace: _Namespace) -> None:
    provider = await _connected(namespace)

    info = await provider.get_subscription_info("events", "audit")

    assert info.message_count == 4
    assert [(rule.name, rule.filter_type, rule.filter) for rule in info.rules] == [
        ("$Default", "TrueFilter", "1=1"),
        ("large", "SqlFilter", "amount > 100"),
        ("eu", "CorrelationFilter", "correlation_id=c-1, region=eu"),
    ]
    assert info.rules[1].action == "SET flagged = 1"
    with pytest.raises(NotFoundError):
        await provider.get_subscription_info("events", "missing")


@pytest.mark.anyio
async def test_browse_peeks_without_locking(namespace: _Namespace) -> None:
    provider = await _connected(namespace)

    messages = await provider.browse_messages("orders")

    first = messages[0]
    assert [m.id for m in messages] == ["m-1", "m-2", "3"]
    assert first.payload == "first"
    assert first.correlation_id == "c-1"
    assert first.timestamp == CREATED
    assert first.properties["subject"] == "created"
    assert first.properties["time_to_live"] == 60000
    assert first.properties["application_properties"] == {"tenant": "acme", "retries": 2}
    receiver = namespace.client.receivers[-1]
    assert receiver.closed is True
    assert receiver.locked == set()


@pytest.mark.anyio
async def test_browse_pages_through_sequence_numbers(namespace: _Namespace) -> None:
    provider = await _connected(namespace)

    page = await provider.browse_messages("orders", BrowseOptions(limit=1, start_position=1))

    assert [m.id for m in page] == ["m-2"]


@pytest.mark.anyio
async def test_subscription_browse_uses_subscription_receiver(namespace: _Namespace) -> None:
    provider = await _connected(namespace)

    [message] = await provider.browse_subscription_messages("events", "audit")

    assert message.id == "e-1"
    assert ("events/subscriptions/audit", "e-1") in provider.cache


@pytest.mark.anyio
async def test_delete_completes_target_and_abandons_rest(namespace: _Namespace) -> None:
    provider = await _connected(namespace)
    await provider.browse_messages("orders")

    result = await provider.delete_message("orders", "m-2")

    receiver = namespace.client.receivers[-1]
    assert result.outcome is DeleteOutcome.DELETED
    assert receiver.completed == [2]
    assert sorted(receiver.abandoned) == [1, 3]
    assert receiver.locked == set()
    assert [m.sequence_number for m in namespace.client.entities["orders"]] == [1, 3]


@pytest.mark.anyio
async def test_delete_of_consumed_message_is_not_found(namespace: _Namespace) -> None:
    provider = await _connected(namespace)
    await provider.browse_messages("orders")
    namespace.client.entities["orders"].pop(0)

    with pytest.raises(NotFoundError, match="no longer on"):
        await provider.delete_message("orders", "m-1")

    assert namespace.client.receivers[-1].locked == set()


@pytest.mark.anyio
async def test_put_and_publish_reuse_senders(namespace: _Namespace) -> None:
    provider = await _connected(namespace)

    await provider.put_message(
        "orders",
        "hello",
        {"message_id": "m-9", "correlation_id": "c-9", "subject": "greeting", "time_to_live": 1500, "headers": {"tenant": "acme"}},
    )
    await provider.put_message("orders", "again")
    await provider.publish_message("events", "created")

    queue_sender = namespace.client.senders["orders"]
    first = queue_sender.sent[0]
    assert len(queue_sender.sent) == 2
    assert first.message_id == "m-9"
    assert first.correlation_id == "c-9"
    assert first.subject == "greeting"
    assert first.time_to_live == timedelta(milliseconds=1500)
    assert b"".join(first.body) == b"hello"
    assert queue_sender.sent[1].message_id
    assert len(namespace.client.senders["events"].sent) == 1

    await provider.disconnect()

    assert queue_sender.closed is True


@pytest.mark.anyio
async def test_clear_drains_in_receive_and_delete_mode(namespace: _Namespace) -> None:
    provider = await _connected(namespace)

    await provider.clear_queue("orders")

    assert namespace.client.entities["orders"] == []
    assert namespace.client.receivers[-1].receive_mode == ServiceBusReceiveMode.RECEIVE_AND_DELETE
