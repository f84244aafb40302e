"""Logging setup for provider operation traces."""

from __future__ import annotations

import logging
from typing import Any, MutableMapping

from .config import LoggingSettings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
ROOT_LOGGER = "mqexplorer"


class ProviderLogAdapter(logging.LoggerAdapter):
    """Prefixes records with the profile a provider instance serves."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        profile = extra.get("profile")
        if profile:
            return f"[{profile}] {msg}", kwargs
        return msg, kwargs


def provider_logger(
    provider: str,
    *,
    profile: str | None = None,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
) -> logging.LoggerAdapter:
    """Build the logger injected into a single provider instance."""

    base = logger or logging.getLogger(f"{ROOT_LOGGER}.providers.{provider}")
    return ProviderLogAdapter(base, {"provider": provider, "profile": profile})


def configure_logging(settings: LoggingSettings | None = None) -> logging.Logger:
    """Attach a timestamped handler to the package logger."""

    settings = settings or LoggingSettings()
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        if getattr(handler, "_mqexplorer", False):
            root.removeHandler(handler)
            handler.close()
    handler: logging.Handler
    if settings.file:
        handler = logging.FileHandler(settings.file, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._mqexplorer = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(settings.level.upper())
    return root


__all__ = ["LOG_FORMAT", "ProviderLogAdapter", "configure_logging", "provider_logger"]
