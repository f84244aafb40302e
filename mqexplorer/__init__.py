"""Unified browsing and management across message brokers."""

from __future__ import annotations

from .cache import MessageCache
from .config import AppConfig, ProviderSettings, load_config
from .logs import configure_logging
from .errors import (
    ManagementError,
    MQExplorerError,
    NotConnectedError,
    NotFoundError,
    OperationError,
    ParamsValidationError,
    ProviderConnectionError,
    UnsupportedOperationError,
)
from .models import (
    BrowseOptions,
    ConnectionState,
    DeleteOutcome,
    DeleteResult,
    DeleteSummary,
    Message,
    MessageFilter,
    ProviderType,
    QueueInfo,
    QueueProperties,
    TopicInfo,
    TopicProperties,
)
from .profiles import ConnectionProfile, export_profiles, import_profiles
from .providers import create_provider
from .session import ConnectionManager

__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "BrowseOptions",
    "ConnectionManager",
    "ConnectionProfile",
    "ConnectionState",
    "DeleteOutcome",
    "DeleteResult",
    "DeleteSummary",
    "MQExplorerError",
    "ManagementError",
    "Message",
    "MessageCache",
    "MessageFilter",
    "NotConnectedError",
    "NotFoundError",
    "OperationError",
    "ParamsValidationError",
    "ProviderConnectionError",
    "ProviderSettings",
    "ProviderType",
    "QueueInfo",
    "QueueProperties",
    "TopicInfo",
    "TopicProperties",
    "UnsupportedOperationError",
    "configure_logging",
    "create_provider",
    "export_profiles",
    "import_profiles",
    "load_config",
]
