"""Tests for the connection manager wiring."""

from __future__ import annotations

import pytest

from mqexplorer.config import AppConfig
from mqexplorer.errors import ProviderConnectionError
from mqexplorer.models import ConnectionState
from mqexplorer.providers import create_provider
from mqexplorer.providers.memory import InMemoryBroker
from mqexplorer.session import ConnectionEvent, ConnectionManager


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_brokers() -> None:
    InMemoryBroker.reset()


def _config() -> AppConfig:
    return AppConfig.model_validate(
        {
            "profiles": [
                {"id": "local", "name": "Local", "provider_type": "memory", "connection_params": {"broker_name": "a"}},
                {"id": "replica", "name": "Replica", "provider_type": "memory", "connection_params": {"broker_name": "b"}},
            ]
        }
    )


@pytest.mark.anyio
async def test_connect_reuses_live_provider() -> None:
    manager = ConnectionManager(_config())

    first = await manager.connect("Local")
    second = await manager.connect("local")

    assert first is second
    assert manager.is_connected("Local")
    assert manager.get_provider("Replica") is None


@pytest.mark.anyio
async def test_connect_unknown_profile_raises() -> None:
    manager = ConnectionManager(_config())

    with pytest.raises(ValueError, match="Profile 'Missing' not found."):
        await manager.connect("Missing")


@pytest.mark.anyio
async def test_listeners_receive_lifecycle_events() -> None:
    manager = ConnectionManager(_config())
    seen: list[ConnectionEvent] = []
    unsubscribe = manager.subscribe(seen.append)

    await manager.connect("Local")
    await manager.disconnect("Local")
    unsubscribe()
    await manager.connect("Replica")

    assert [(event.profile.name, event.state) for event in seen] == [
        ("Local", ConnectionState.CONNECTING),
        ("Local", ConnectionState.CONNECTED),
        ("Local", ConnectionState.DISCONNECTED),
    ]
    assert not manager.is_connected("Local")


@pytest.mark.anyio
async def test_failed_connect_emits_error_event() -> None:
    InMemoryBroker.named("a").offline = True
    manager = ConnectionManager(_config())
    seen: list[ConnectionEvent] = []
    manager.subscribe(seen.append)

    with pytest.raises(ProviderConnectionError):
        await manager.connect("Local")

    assert seen[-1].state is ConnectionState.ERROR
    assert seen[-1].error and "offline" in seen[-1].error
    assert manager.active_connections() == ()


@pytest.mark.anyio
async def test_disconnect_all_closes_every_provider() -> None:
    manager = ConnectionManager(_config())
    local = await manager.connect("Local")
    replica = await manager.connect("Replica")

    assert {profile.name for profile in manager.active_connections()} == {"Local", "Replica"}

    await manager.disconnect_all()

    assert local.state is ConnectionState.DISCONNECTED
    assert replica.state is ConnectionState.DISCONNECTED
    assert manager.active_connections() == ()


@pytest.mark.anyio
async def test_factory_receives_configured_settings() -> None:
    config = _config().with_provider_settings(browse_timeout=1.5)
    created = []

    def _factory(profile, **kwargs):  # type: ignore[no-untyped-def]
        provider = create_provider(profile, **kwargs)
        created.append(provider)
        return provider

    manager = ConnectionManager(config, factory=_factory)
    await manager.connect("Local")

    assert created[0].settings.browse_timeout == 1.5


def test_create_provider_rejects_unknown_type() -> None:
    with pytest.raises(ValueError, match="Unknown provider type"):
        create_provider("zeromq")


@pytest.mark.anyio
async def test_connect_active_uses_configured_profile() -> None:
    manager = ConnectionManager(_config().with_active_profile("Replica"))

    provider = await manager.connect_active()

    assert provider is manager.get_provider("replica")
    assert [profile.name for profile in manager.active_connections()] == ["Replica"]


@pytest.mark.anyio
async def test_connect_active_without_default_connects_nothing() -> None:
    manager = ConnectionManager(_config())

    assert await manager.connect_active() is None
    assert manager.active_connections() == ()


@pytest.mark.anyio
async def test_connect_records_active_profile() -> None:
    config = _config()
    manager = ConnectionManager(config)

    await manager.connect("local")

    assert manager.active_profile_name == "Local"
    assert manager.config.active_profile == "Local"
    assert config.active_profile is None
