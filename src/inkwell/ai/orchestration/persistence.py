"""Where transcript messages are persisted.

Storage is somebody else's concern; the engine only appends and updates
messages by session id. :class:`SafeMessageStore` makes sure a failing store
never interrupts a round.
"""

from __future__ import annotations

import copy
import logging
from typing import Protocol

from .types import Message, new_id

__all__ = ["MessageStore", "InMemoryMessageStore", "SafeMessageStore"]

LOGGER = logging.getLogger(__name__)


class MessageStore(Protocol):
    def append_message(self, session_id: str, message: Message) -> str:
        """Persist ``message`` and return its storage id."""
        ...

    def update_message(self, session_id: str, message_id: str, message: Message) -> None:
        """Overwrite a previously appended message."""
        ...


class InMemoryMessageStore:
    """Dictionary-backed store, used by the CLI and tests."""

    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, dict]] = {}

    def append_message(self, session_id: str, message: Message) -> str:
        storage_id = new_id("stored")
        self._sessions.setdefault(session_id, {})[storage_id] = copy.deepcopy(message.to_dict())
        return storage_id

    def update_message(self, session_id: str, message_id: str, message: Message) -> None:
        messages = self._sessions.get(session_id)
        if messages is None or message_id not in messages:
            raise KeyError(f"Unknown message {message_id} in session {session_id}")
        messages[message_id] = copy.deepcopy(message.to_dict())

    def messages(self, session_id: str) -> list[dict]:
        return list(self._sessions.get(session_id, {}).values())


class SafeMessageStore:
    """Wrap a store so failures are logged and swallowed."""

    def __init__(self, store: MessageStore | None) -> None:
        self._store = store

    def append(self, session_id: str, message: Message) -> str | None:
        if self._store is None:
            return None
        try:
            return self._store.append_message(session_id, message)
        except Exception:
            LOGGER.warning("Failed to persist message %s", message.id, exc_info=True)
            return None

    def update(self, session_id: str, message_id: str | None, message: Message) -> bool:
        if self._store is None or message_id is None:
            return False
        try:
            self._store.update_message(session_id, message_id, message)
        except Exception:
            LOGGER.warning("Failed to update persisted message %s", message_id, exc_info=True)
            return False
        return True
