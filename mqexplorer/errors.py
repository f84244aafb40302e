"""Error taxonomy shared by every broker adapter."""

from __future__ import annotations


class MQExplorerError(RuntimeError):
    """Base error for provider failures."""


class ProviderConnectionError(MQExplorerError):
    """Raised when a provider cannot reach or authenticate with its broker."""


class ParamsValidationError(ProviderConnectionError):
    """Raised when connection parameters are malformed for the provider."""


class NotConnectedError(MQExplorerError):
    """Raised when an operation is attempted outside the connected state."""


class NotFoundError(MQExplorerError):
    """Raised when a message, destination, or other broker object is absent."""


class ManagementError(MQExplorerError):
    """Raised when a management-protocol response is malformed or unsuccessful."""


class UnsupportedOperationError(MQExplorerError):
    """Raised when an operation has no broker-native realization."""


class OperationError(MQExplorerError):
    """Raised when a broker call fails during a contract operation."""


__all__ = [
    "MQExplorerError",
    "ManagementError",
    "NotConnectedError",
    "NotFoundError",
    "OperationError",
    "ParamsValidationError",
    "ProviderConnectionError",
    "UnsupportedOperationError",
]
