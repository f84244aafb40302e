"""App configuration loading helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import tomllib

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ParamsValidationError
from .profiles import ConnectionProfile, parse_profile

LOG = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "mqexplorer" / "config.toml"


class ProviderSettings(BaseModel):
    """Timeouts and loop bounds shared by every provider."""

    model_config = ConfigDict(frozen=True)

    browse_timeout: float = Field(default=5.0, gt=0)
    management_timeout: float = Field(default=5.0, gt=0)
    default_browse_limit: int = Field(default=10, ge=1)
    delete_batch_size: int = Field(default=10, ge=1)
    delete_max_attempts: int = Field(default=100, ge=1)
    delete_wait_time: float = Field(default=2.0, gt=0)
    clear_batch_size: int = Field(default=100, ge=1)
    clear_wait_time: float = Field(default=5.0, gt=0)


class LoggingSettings(BaseModel):
    """Log level and optional file sink."""

    level: str = "INFO"
    file: str | None = None


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    profiles: list[ConnectionProfile] = Field(default_factory=list)
    active_profile: str | None = None

    def profile(self, key: str) -> ConnectionProfile:
        """Look up a profile by id or name."""

        for profile in self.profiles:
            if profile.id == key or profile.name == key:
                return profile
        raise ValueError(f"Profile '{key}' not found.")

    def with_active_profile(self, name: str) -> AppConfig:
        """Return a copy with the active profile updated."""

        return self.model_copy(update={"active_profile": name})

    def with_provider_settings(self, **updates: object) -> AppConfig:
        """Return a copy with provider settings changes applied."""

        providers = self.providers.model_copy(update=updates)
        return self.model_copy(update={"providers": providers})

    def with_profiles(self, profiles: list[ConnectionProfile]) -> AppConfig:
        """Return a copy holding ``profiles``."""

        return self.model_copy(update={"profiles": list(profiles)})


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file(path or CONFIG_FILE)
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        LOG.warning("Ignoring unreadable config file", extra={"path": str(path or CONFIG_FILE)})
        return AppConfig()

    providers = ProviderSettings()
    raw_providers = data.get("providers")
    if isinstance(raw_providers, dict):
        try:
            providers = ProviderSettings(**raw_providers)
        except ValidationError as exc:
            LOG.warning("Ignoring invalid [providers] settings", extra={"error": str(exc)})

    logging_settings = LoggingSettings()
    raw_logging = data.get("logging")
    if isinstance(raw_logging, dict):
        try:
            logging_settings = LoggingSettings(**raw_logging)
        except ValidationError as exc:
            LOG.warning("Ignoring invalid [logging] settings", extra={"error": str(exc)})

    profiles: list[ConnectionProfile] = []
    raw_profiles = data.get("profiles")
    if isinstance(raw_profiles, list):
        for entry in raw_profiles:
            if not isinstance(entry, dict):
                continue
            try:
                profiles.append(parse_profile(entry))
            except ParamsValidationError as exc:
                LOG.warning("Skipping invalid profile", extra={"profile": entry.get("name"), "error": str(exc)})

    active_profile = data.get("active_profile")
    return AppConfig(
        providers=providers,
        logging=logging_settings,
        profiles=profiles,
        active_profile=active_profile if isinstance(active_profile, str) else None,
    )


def _read_config_file(path: Path) -> dict[str, Any]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, Any] = {}
    for key in ("providers", "logging"):
        section = raw.get(key)
        if isinstance(section, dict):
            data[key] = {str(name): value for name, value in section.items()}
    profiles = raw.get("profiles")
    if isinstance(profiles, list):
        data["profiles"] = [profile for profile in profiles if isinstance(profile, dict)]
    active_profile = raw.get("active_profile")
    if isinstance(active_profile, str):
        data["active_profile"] = active_profile
    return data


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "LoggingSettings",
    "ProviderSettings",
    "load_config",
]
