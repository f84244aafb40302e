"""Request/response emulation over a publish/subscribe management channel."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Mapping, Protocol

from .errors import ManagementError

LOG = logging.getLogger(__name__)

ReplyCallback = Callable[[Mapping[str, str], "str | bytes"], None]

_SUCCESS = {"ok", "success"}


class ManagementTransport(Protocol):
    """Minimal messaging surface the correlator needs from a broker session."""

    def send(self, destination: str, body: str, headers: Mapping[str, str]) -> Awaitable[None] | None:
        """Send ``body`` to ``destination``."""

    def subscribe(self, destination: str, callback: ReplyCallback) -> Callable[[], None]:
        """Deliver frames arriving on ``destination``; returns an unsubscribe handle."""


class ManagementCorrelator:
    """Turns management messages into awaitable calls.

    Every request gets its own reply destination and correlation id, so
    concurrent calls never see each other's replies. List requests collect
    ``value`` items until an envelope arrives without ``more: true`` or the
    timeout passes; whatever was collected by then is the answer. Callbacks may
    fire on an SDK thread and are handed to the event loop with
    ``call_soon_threadsafe``.
    """

    def __init__(
        self,
        transport: ManagementTransport,
        *,
        destination: str,
        reply_prefix: str = "/temp-queue/",
        timeout: float = 5.0,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self._transport = transport
        self._destination = destination
        self._reply_prefix = reply_prefix
        self._timeout = timeout
        self._log = logger or LOG

    @property
    def destination(self) -> str:
        return self._destination

    async def request(
        self,
        operation: str,
        target: Any = None,
        *,
        kind: str = "exec",
        expect_list: bool = True,
        timeout: float | None = None,
    ) -> Any:
        """Send one management request and wait for its reply envelope(s)."""

        loop = asyncio.get_running_loop()
        reply_to = f"{self._reply_prefix}mqexplorer-{uuid.uuid4().hex}"
        correlation_id = uuid.uuid4().hex
        replies: asyncio.Queue[tuple[Mapping[str, str], str | bytes]] = asyncio.Queue()

        def _on_reply(headers: Mapping[str, str], body: str | bytes) -> None:
            try:
                loop.call_soon_threadsafe(replies.put_nowait, (dict(headers), body))
            except RuntimeError:
                self._log.debug("Dropped late management reply", extra={"reply_to": reply_to})

        body = json.dumps({"type": kind, "operation": operation, "target": target})
        headers = {
            "reply-to": reply_to,
            "correlation-id": correlation_id,
            "content-type": "application/json",
        }
        unsubscribe = self._transport.subscribe(reply_to, _on_reply)
        try:
            result = self._transport.send(self._destination, body, headers)
            if inspect.isawaitable(result):
                await result
            return await self._collect(
                replies,
                operation=operation,
                correlation_id=correlation_id,
                expect_list=expect_list,
                timeout=self._timeout if timeout is None else timeout,
            )
        finally:
            unsubscribe()

    async def _collect(
        self,
        replies: asyncio.Queue[tuple[Mapping[str, str], str | bytes]],
        *,
        operation: str,
        correlation_id: str,
        expect_list: bool,
        timeout: float,
    ) -> Any:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        items: list[Any] = []
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                headers, body = await asyncio.wait_for(replies.get(), remaining)
            except asyncio.TimeoutError:
                break
            reply_id = headers.get("correlation-id")
            if reply_id and reply_id != correlation_id:
                continue
            envelope = parse_envelope(body, operation)
            value = envelope.get("value")
            if not expect_list:
                return value
            if isinstance(value, list):
                items.extend(value)
            elif value is not None:
                raise ManagementError(f"Management reply to '{operation}' carried a non-list value")
            if not envelope.get("more"):
                return items
        if expect_list:
            self._log.debug(
                "Management request timed out; returning partial result",
                extra={"operation": operation, "count": len(items)},
            )
            return items
        raise ManagementError(f"No management reply to '{operation}' within {timeout:g}s")


def parse_envelope(body: str | bytes, operation: str = "request") -> dict[str, Any]:
    """Decode and validate a ``{status, value}`` reply."""

    try:
        envelope = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise ManagementError(f"Malformed management reply to '{operation}': {exc}") from exc
    if not isinstance(envelope, dict) or "status" not in envelope:
        raise ManagementError(f"Management reply to '{operation}' has no status")
    status = str(envelope["status"]).lower()
    if status not in _SUCCESS:
        detail = envelope.get("error") or envelope.get("value") or envelope["status"]
        raise ManagementError(f"Management request '{operation}' failed: {detail}")
    return envelope


__all__ = ["ManagementCorrelator", "ManagementTransport", "ReplyCallback", "parse_envelope"]
