"""Contract behaviour exercised through the in-memory provider."""

from __future__ import annotations

import asyncio
import logging

import pytest

from mqexplorer.config import ProviderSettings
from mqexplorer.errors import (
    NotConnectedError,
    NotFoundError,
    ProviderConnectionError,
    UnsupportedOperationError,
)
from mqexplorer.models import BrowseOptions, ConnectionState, DeleteOutcome, MessageFilter, ProviderType
from mqexplorer.profiles import ConnectionProfile, MemoryParams
from mqexplorer.providers import create_provider
from mqexplorer.providers.base import MessageQueueProvider
from mqexplorer.providers.memory import InMemoryBroker, InMemoryProvider


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_brokers() -> None:
    InMemoryBroker.reset()


@pytest.fixture
def broker() -> InMemoryBroker:
    broker = InMemoryBroker()
    broker.declare_queue("test.queue")
    broker.declare_queue("orders")
    broker.declare_topic("events", "audit", "billing")
    return broker


@pytest.fixture
async def provider(broker: InMemoryBroker) -> InMemoryProvider:
    provider = InMemoryProvider(broker=broker)
    await provider.connect({"broker_name": "unit"})
    return provider


def test_provider_satisfies_protocol() -> None:
    assert isinstance(InMemoryProvider(), MessageQueueProvider)


@pytest.mark.anyio
async def test_operations_require_connection() -> None:
    provider = InMemoryProvider(broker=InMemoryBroker())

    with pytest.raises(NotConnectedError):
        await provider.list_queues()
    with pytest.raises(NotConnectedError):
        await provider.browse_messages("test.queue")
    with pytest.raises(NotConnectedError):
        await provider.delete_messages("test.queue", ["a"])


@pytest.mark.anyio
async def test_connect_transitions_state(broker: InMemoryBroker) -> None:
    provider = InMemoryProvider(broker=broker)
    assert provider.state is ConnectionState.DISCONNECTED

    await provider.connect(MemoryParams())

    assert provider.state is ConnectionState.CONNECTED
    assert provider.is_connected()


@pytest.mark.anyio
async def test_failed_connect_enters_error_state() -> None:
    provider = InMemoryProvider(broker=InMemoryBroker(offline=True))

    with pytest.raises(ProviderConnectionError, match="offline"):
        await provider.connect({})

    assert provider.state is ConnectionState.ERROR
    assert provider.last_error and "offline" in provider.last_error

    await provider.disconnect()
    assert provider.state is ConnectionState.DISCONNECTED


@pytest.mark.anyio
async def test_invalid_params_fail_as_connection_error() -> None:
    provider = InMemoryProvider()

    with pytest.raises(ProviderConnectionError):
        await provider.connect({"broker_name": "x", "unexpected": True})

    assert provider.state is ConnectionState.ERROR


@pytest.mark.anyio
async def test_disconnect_is_idempotent(provider: InMemoryProvider) -> None:
    await provider.disconnect()
    await provider.disconnect()

    assert provider.state is ConnectionState.DISCONNECTED
    assert len(provider.cache) == 0


@pytest.mark.anyio
async def test_put_then_browse_round_trip(provider: InMemoryProvider) -> None:
    await provider.put_message("test.queue", "hello", {"message_id": "m-1", "correlation_id": "c-1", "priority": 4})

    [message] = await provider.browse_messages("test.queue")

    assert message.id == "m-1"
    assert message.payload == "hello"
    assert message.correlation_id == "c-1"
    assert message.properties["priority"] == 4
    assert ("test.queue", "m-1") in provider.cache


@pytest.mark.anyio
async def test_test_queue_scenario(provider: InMemoryProvider) -> None:
    options = BrowseOptions(limit=10, start_position=0)

    assert await provider.browse_messages("test.queue", options) == []

    await provider.put_message("test.queue", "hello", {"content_type": "text/plain", "priority": 5})
    [message] = await provider.browse_messages("test.queue", options)

    assert message.payload == "hello"
    assert message.properties["priority"] == 5
    assert message.properties["content_type"] == "text/plain"

    result = await provider.delete_message("test.queue", message.id)

    assert result.outcome is DeleteOutcome.DELETED
    assert await provider.browse_messages("test.queue", options) == []
    with pytest.raises(NotFoundError):
        await provider.delete_message("test.queue", message.id)


@pytest.mark.anyio
async def test_browse_pages_through_queue(provider: InMemoryProvider) -> None:
    for index in range(3):
        await provider.put_message("test.queue", f"payload-{index}", {"message_id": f"id-{index}"})

    first_page = await provider.browse_messages("test.queue", BrowseOptions(limit=2))
    second_page = await provider.browse_messages("test.queue", BrowseOptions(limit=2, start_position=2))

    assert [m.id for m in first_page] == ["id-0", "id-1"]
    assert [m.id for m in second_page] == ["id-2"]
    assert await provider.get_queue_depth("test.queue") == 3

    await provider.delete_message("test.queue", "id-1")

    assert [m.id for m in await provider.browse_messages("test.queue")] == ["id-0", "id-2"]
    assert await provider.get_queue_depth("test.queue") == 2


@pytest.mark.anyio
async def test_concurrent_browses_complete_independently(provider: InMemoryProvider) -> None:
    for index in range(6):
        await provider.put_message("q", f"payload-{index}", {"message_id": f"id{index}"})

    first, second = await asyncio.gather(
        provider.browse_messages("q", BrowseOptions(limit=2)),
        provider.browse_messages("q", BrowseOptions(limit=4, start_position=1)),
    )

    assert [m.id for m in first] == ["id0", "id1"]
    assert [m.id for m in second] == ["id1", "id2", "id3", "id4"]
    assert {m.id for m in provider.cache.messages("q")} == {"id0", "id1", "id2", "id3", "id4"}


@pytest.mark.anyio
async def test_browse_filters_by_correlation_id(provider: InMemoryProvider) -> None:
    await provider.put_message("orders", "a", {"message_id": "1", "correlation_id": "x"})
    await provider.put_message("orders", "b", {"message_id": "2", "correlation_id": "y"})

    messages = await provider.browse_messages("orders", BrowseOptions(filter=MessageFilter(correlation_id="y")))

    assert [m.id for m in messages] == ["2"]


@pytest.mark.anyio
async def test_list_queues_filters_case_insensitively(provider: InMemoryProvider) -> None:
    queues = await provider.list_queues("TEST")

    assert [queue.name for queue in queues] == ["test.queue"]
    assert [queue.name for queue in await provider.list_queues()] == ["orders", "test.queue"]


@pytest.mark.anyio
async def test_delete_requires_browsed_message(provider: InMemoryProvider) -> None:
    await provider.put_message("orders", "a", {"message_id": "1"})

    with pytest.raises(NotFoundError, match="was not browsed"):
        await provider.delete_message("orders", "1")


@pytest.mark.anyio
async def test_delete_messages_reports_partial_success(provider: InMemoryProvider) -> None:
    await provider.put_message("orders", "a", {"message_id": "idA"})
    await provider.browse_messages("orders")

    summary = await provider.delete_messages("orders", ["idA", "idB"])

    assert summary.succeeded == 1
    assert summary.failed == 1
    assert "idB" in summary.failures


@pytest.mark.anyio
async def test_delete_messages_raises_when_every_id_fails(provider: InMemoryProvider) -> None:
    with pytest.raises(NotFoundError):
        await provider.delete_messages("orders", ["missing"])

    summary = await provider.delete_messages("orders", [])
    assert summary.results == ()


@pytest.mark.anyio
async def test_clear_queue_empties_queue_and_cache(provider: InMemoryProvider) -> None:
    await provider.put_message("orders", "a", {"message_id": "1"})
    await provider.browse_messages("orders")

    await provider.clear_queue("orders")

    assert await provider.get_queue_depth("orders") == 0
    assert provider.cache.messages("orders") == ()


@pytest.mark.anyio
async def test_unknown_queue_is_not_found(provider: InMemoryProvider) -> None:
    with pytest.raises(NotFoundError):
        await provider.browse_messages("missing")
    with pytest.raises(NotFoundError):
        await provider.get_queue_properties("missing")


@pytest.mark.anyio
async def test_publish_fans_out_to_subscriptions(provider: InMemoryProvider) -> None:
    await provider.publish_message("events", "created", {"message_id": "e-1"})

    topic = await provider.get_topic_properties("events")
    subscriptions = await provider.list_subscriptions("events")
    browsed = await provider.browse_subscription_messages("events", "audit")

    assert topic.publish_count == 1
    assert topic.subscriptions == ("audit", "billing")
    assert [s.message_count for s in subscriptions] == [1, 1]
    assert [m.id for m in browsed] == ["e-1"]
    assert ("events/subscriptions/audit", "e-1") in provider.cache


@pytest.mark.anyio
async def test_channels_are_unsupported(provider: InMemoryProvider) -> None:
    with pytest.raises(UnsupportedOperationError):
        await provider.list_channels()


@pytest.mark.anyio
async def test_operation_logs_carry_profile(broker: InMemoryBroker, caplog: pytest.LogCaptureFixture) -> None:
    profile = ConnectionProfile(name="Demo", provider_type=ProviderType.MEMORY, connection_params=MemoryParams())
    provider = create_provider(profile, settings=ProviderSettings(), broker=broker)
    caplog.set_level(logging.INFO, logger="mqexplorer")

    await provider.connect(profile)
    await provider.list_queues()

    records = [r for r in caplog.records if getattr(r, "operation", None) == "list_queues"]
    assert records
    assert records[-1].getMessage() == "[Demo] list_queues succeeded"
    assert records[-1].provider == "memory"
