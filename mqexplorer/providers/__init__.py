"""Broker adapters and the registry that builds them from profiles."""

from __future__ import annotations

import logging
from typing import Any

from ..config import ProviderSettings
from ..models import ProviderType
from ..profiles import ConnectionProfile
from .activemq import ActiveMQProvider
from .base import BaseProvider, MessageQueueProvider
from .ibmmq import IBMMQProvider
from .kafka import KafkaProvider
from .memory import InMemoryBroker, InMemoryProvider
from .rabbitmq import RabbitMQProvider
from .servicebus import ServiceBusProvider
from .sqs import SQSProvider

PROVIDER_CLASSES: dict[ProviderType, type[BaseProvider]] = {
    ProviderType.ACTIVEMQ: ActiveMQProvider,
    ProviderType.RABBITMQ: RabbitMQProvider,
    ProviderType.KAFKA: KafkaProvider,
    ProviderType.IBMMQ: IBMMQProvider,
    ProviderType.AWSSQS: SQSProvider,
    ProviderType.AZURESERVICEBUS: ServiceBusProvider,
    ProviderType.MEMORY: InMemoryProvider,
}


def available_providers() -> tuple[ProviderType, ...]:
    """Provider types that :func:`create_provider` can build."""

    return tuple(PROVIDER_CLASSES)


def create_provider(
    profile_or_type: ConnectionProfile | ProviderType | str,
    *,
    settings: ProviderSettings | None = None,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
    **seams: Any,
) -> BaseProvider:
    """Instantiate the adapter for a profile or provider type.

    Extra keyword arguments are passed to the adapter constructor, which is
    where SDK factories and clients can be substituted.
    """

    if isinstance(profile_or_type, ConnectionProfile):
        kind = profile_or_type.provider_type
    else:
        try:
            kind = ProviderType(profile_or_type)
        except ValueError:
            raise ValueError(f"Unknown provider type '{profile_or_type}'.") from None
    provider_cls = PROVIDER_CLASSES[kind]
    provider = provider_cls(settings=settings, logger=logger, **seams)
    if isinstance(profile_or_type, ConnectionProfile):
        provider.bind_profile(profile_or_type.name)
    return provider


__all__ = [
    "ActiveMQProvider",
    "BaseProvider",
    "IBMMQProvider",
    "InMemoryBroker",
    "InMemoryProvider",
    "KafkaProvider",
    "MessageQueueProvider",
    "PROVIDER_CLASSES",
    "RabbitMQProvider",
    "SQSProvider",
    "ServiceBusProvider",
    "available_providers",
    "create_provider",
]
