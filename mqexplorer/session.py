"""Connection manager keeping one provider per active profile."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .config import AppConfig
from .errors import MQExplorerError
from .models import ConnectionState
from .profiles import ConnectionProfile
from .providers import create_provider
from .providers.base import BaseProvider

LOG = logging.getLogger(__name__)

ProviderFactory = Callable[..., BaseProvider]
ConnectionListener = Callable[["ConnectionEvent"], None]


@dataclass(frozen=True, slots=True)
class ConnectionEvent:
    """Lifecycle change for one profile."""

    profile: ConnectionProfile
    state: ConnectionState
    error: str | None = None
    at: datetime | None = None


class ConnectionManager:
    """Opens, tracks and closes providers for configured profiles."""

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        factory: ProviderFactory = create_provider,
    ) -> None:
        self._config = config or AppConfig()
        self._factory = factory
        self._providers: dict[str, BaseProvider] = {}
        self._profiles_by_id: dict[str, ConnectionProfile] = {}
        self._listeners: set[ConnectionListener] = set()

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def profiles(self) -> tuple[ConnectionProfile, ...]:
        """Profiles available in the current config."""

        return tuple(self._config.profiles)

    def add_profile(self, profile: ConnectionProfile) -> None:
        """Register a profile that is not part of the loaded config."""

        profiles = [entry for entry in self._config.profiles if entry.id != profile.id]
        profiles.append(profile)
        self._config = self._config.with_profiles(profiles)

    @property
    def active_profile_name(self) -> str | None:
        """Name of the profile connected most recently, or the configured default."""

        return self._config.active_profile

    async def connect(self, key: str) -> BaseProvider:
        """Connect the profile with id or name ``key``; reuse a live provider."""

        profile = self._profile(key)
        provider = self._providers.get(profile.id)
        if provider is not None and provider.is_connected():
            return provider
        provider = self._factory(profile, settings=self._config.providers)
        self._emit(profile, ConnectionState.CONNECTING)
        try:
            await provider.connect(profile)
        except MQExplorerError as exc:
            LOG.warning("Profile failed to connect: %s", exc, extra={"profile": profile.name})
            self._emit(profile, ConnectionState.ERROR, str(exc))
            raise
        self._providers[profile.id] = provider
        self._profiles_by_id[profile.id] = profile
        self._config = self._config.with_active_profile(profile.name)
        LOG.info("Profile connected", extra={"profile": profile.name, "provider": profile.provider_type.value})
        self._emit(profile, ConnectionState.CONNECTED)
        return provider

    async def connect_active(self) -> BaseProvider | None:
        """Connect the profile named by ``active_profile``, if the config sets one."""

        if not self._config.active_profile:
            return None
        return await self.connect(self._config.active_profile)

    async def disconnect(self, key: str) -> None:
        """Disconnect the profile's provider if one is open."""

        profile = self._profile(key)
        provider = self._providers.pop(profile.id, None)
        self._profiles_by_id.pop(profile.id, None)
        if provider is None:
            return
        await provider.disconnect()
        self._emit(profile, ConnectionState.DISCONNECTED)

    async def disconnect_all(self) -> None:
        """Disconnect every open provider."""

        for profile_id in list(self._providers):
            profile = self._profiles_by_id.get(profile_id)
            provider = self._providers.pop(profile_id)
            self._profiles_by_id.pop(profile_id, None)
            await provider.disconnect()
            if profile is not None:
                self._emit(profile, ConnectionState.DISCONNECTED)

    def get_provider(self, key: str) -> BaseProvider | None:
        """Return the connected provider for a profile, if any."""

        profile = self._profile(key)
        return self._providers.get(profile.id)

    def is_connected(self, key: str) -> bool:
        provider = self.get_provider(key)
        return provider is not None and provider.is_connected()

    def active_connections(self) -> tuple[ConnectionProfile, ...]:
        """Profiles whose providers are currently connected."""

        return tuple(
            self._profiles_by_id[profile_id]
            for profile_id, provider in self._providers.items()
            if provider.is_connected()
        )

    def subscribe(self, listener: ConnectionListener) -> Callable[[], None]:
        """Subscribe to connection events."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def _profile(self, key: str) -> ConnectionProfile:
        return self._config.profile(key)

    def _emit(self, profile: ConnectionProfile, state: ConnectionState, error: str | None = None) -> None:
        event = ConnectionEvent(profile, state, error, datetime.now(tz=timezone.utc))
        for listener in tuple(self._listeners):
            listener(event)


__all__ = ["ConnectionEvent", "ConnectionListener", "ConnectionManager", "ProviderFactory"]
