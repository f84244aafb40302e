"""Tests for AppConfig helpers."""

from __future__ import annotations

from pathlib import Path

import pytest

from mqexplorer import config as config_module
from mqexplorer.config import AppConfig, ProviderSettings, load_config
from mqexplorer.models import ProviderType


def test_load_config_returns_defaults_when_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "config.toml")

    result = load_config()

    assert result == AppConfig()
    assert result.providers.browse_timeout == 5.0
    assert result.providers.delete_max_attempts == 100


def test_load_config_reads_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        """
active_profile = "Local Rabbit"

[providers]
browse_timeout = 2.5
default_browse_limit = 25

[logging]
level = "DEBUG"

[[profiles]]
name = "Local Rabbit"
provider_type = "rabbitmq"

[profiles.connection_params]
host = "localhost"
vhost = "/dev"
"""
    )
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config()

    assert result.active_profile == "Local Rabbit"
    assert result.providers.browse_timeout == 2.5
    assert result.providers.default_browse_limit == 25
    assert result.logging.level == "DEBUG"
    profile = result.profiles[0]
    assert profile.provider_type is ProviderType.RABBITMQ
    assert profile.connection_params.vhost == "/dev"
    assert profile.connection_params.port == 5672


def test_load_config_handles_toml_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("active_profile = [unterminated")
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config()

    assert result == AppConfig()


def test_load_config_skips_invalid_profiles(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        """
[[profiles]]
name = "Broken Kafka"
provider_type = "kafka"

[profiles.connection_params]
brokers = ["no-port-here"]

[[profiles]]
name = "Demo"
provider_type = "memory"

[profiles.connection_params]
broker_name = "demo"
"""
    )

    result = load_config(config_path)

    assert [profile.name for profile in result.profiles] == ["Demo"]


def test_load_config_ignores_invalid_provider_section(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("[providers]\nbrowse_timeout = -1\n")

    result = load_config(config_path)

    assert result.providers == ProviderSettings()


def test_with_active_profile_updates_field() -> None:
    config = AppConfig()

    updated = config.with_active_profile("Local Rabbit")

    assert updated.active_profile == "Local Rabbit"
    assert config.active_profile is None


def test_with_provider_settings_returns_copy() -> None:
    config = AppConfig()

    updated = config.with_provider_settings(browse_timeout=1.0, delete_batch_size=5)

    assert updated.providers.browse_timeout == 1.0
    assert updated.providers.delete_batch_size == 5
    assert config.providers.browse_timeout == 5.0


def test_profile_lookup_by_name_and_id() -> None:
    config = AppConfig.model_validate(
        {
            "profiles": [
                {"id": "p1", "name": "Demo", "provider_type": "memory", "connection_params": {}},
            ]
        }
    )

    assert config.profile("Demo").id == "p1"
    assert config.profile("p1").name == "Demo"
    with pytest.raises(ValueError, match="Profile 'missing' not found."):
        config.profile("missing")
