"""Per-provider record of messages observed through browse."""

from __future__ import annotations

from .models import Message


class MessageCache:
    """Maps queue name to the last observed message for each id.

    Entries only ever come from browse results, so an id found here is one the
    caller has actually seen. Ids removed by cache-only deletion are remembered
    as hidden so that later browses of the same queue keep skipping them until
    the queue is cleared.
    """

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, Message]] = {}
        self._hidden: dict[str, set[str]] = {}

    def record(self, queue: str, message: Message) -> None:
        self._entries.setdefault(queue, {})[message.id] = message

    def lookup(self, queue: str, message_id: str) -> Message | None:
        return self._entries.get(queue, {}).get(message_id)

    def remove(self, queue: str, message_id: str) -> Message | None:
        """Drop one entry, returning it if it was present."""

        entries = self._entries.get(queue)
        if not entries:
            return None
        message = entries.pop(message_id, None)
        if not entries:
            self._entries.pop(queue, None)
        return message

    def hide(self, queue: str, message_id: str) -> Message | None:
        """Drop an entry and keep skipping its id on later browses."""

        message = self.remove(queue, message_id)
        self._hidden.setdefault(queue, set()).add(message_id)
        return message

    def is_hidden(self, queue: str, message_id: str) -> bool:
        return message_id in self._hidden.get(queue, ())

    def messages(self, queue: str) -> tuple[Message, ...]:
        """Snapshot of cached messages for ``queue``."""

        return tuple(self._entries.get(queue, {}).values())

    def queues(self) -> tuple[str, ...]:
        return tuple(self._entries)

    def clear(self, queue: str) -> None:
        self._entries.pop(queue, None)
        self._hidden.pop(queue, None)

    def clear_all(self) -> None:
        self._entries.clear()
        self._hidden.clear()

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple) or len(key) != 2:
            return False
        queue, message_id = key
        return message_id in self._entries.get(queue, {})

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries.values())


__all__ = ["MessageCache"]
