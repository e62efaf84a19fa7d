"""strategy_agent/history.py

Conversation history supply.

The controller only reads history; callers append the new turns after they
receive a reply.  :class:`InMemoryHistoryStore` keeps a rolling window of
messages per conversation, which is enough for the REPL and the HTTP
boundary.  Durable storage plugs in through :class:`HistoryProvider`.
"""

from __future__ import annotations

# Standard Library
import logging
import threading
from collections import OrderedDict, deque
from typing import Any, Protocol

logger = logging.getLogger(__name__)

_CONVERSATION_ROLES: frozenset[str] = frozenset({"user", "assistant"})


class HistoryProvider(Protocol):
    def get_history(
        self, conversation_id: str, limit: int
    ) -> list[dict[str, Any]]: ...


def format_history(
    turns: list[dict[str, Any]], limit: int | None = None
) -> list[dict[str, str]]:
    """Keep user/assistant turns with content, lower-casing their roles.

    Args:
        turns: Raw turns; roles may be upper case (``USER``/``ASSISTANT``).
        limit: Keep only the most recent ``limit`` turns.

    Returns:
        ``[{"role", "content"}]`` ready for the planner.
    """
    formatted: list[dict[str, str]] = []
    for turn in turns:
        role = str(turn.get("role", "")).lower()
        content = turn.get("content")
        if role in _CONVERSATION_ROLES and content:
            formatted.append({"role": role, "content": str(content)})
    if limit is not None and limit >= 0:
        formatted = formatted[-limit:] if limit else []
    return formatted


class InMemoryHistoryStore:
    """Rolling window of the last N messages per conversation.

    At most ``max_conversations`` conversations are kept; adding to a new
    one evicts the conversation that was written to least recently.
    """

    def __init__(
        self, max_messages: int = 20, max_conversations: int = 1_000
    ) -> None:
        """Initialize the store.

        Args:
            max_messages: Messages retained per conversation; the oldest
                roll off first.
            max_conversations: Conversations retained in total.
        """
        if max_conversations < 1:
            raise ValueError("max_conversations must be at least 1")
        self.max_messages = max_messages
        self.max_conversations = max_conversations
        self._conversations: OrderedDict[str, deque[dict[str, str]]] = (
            OrderedDict()
        )
        self._lock = threading.Lock()

    def add_message(
        self, conversation_id: str, role: str, content: str
    ) -> None:
        with self._lock:
            messages = self._conversations.get(conversation_id)
            if messages is None:
                messages = deque(maxlen=self.max_messages)
                self._conversations[conversation_id] = messages
            else:
                self._conversations.move_to_end(conversation_id)
            messages.append({"role": role, "content": content})
            while len(self._conversations) > self.max_conversations:
                evicted, _ = self._conversations.popitem(last=False)
                logger.debug("[history] evicted conversation %s", evicted)

    def get_history(
        self, conversation_id: str, limit: int
    ) -> list[dict[str, Any]]:
        with self._lock:
            messages = list(self._conversations.get(conversation_id, ()))
        return messages[-limit:] if limit > 0 else []

    def clear(self, conversation_id: str) -> None:
        with self._lock:
            self._conversations.pop(conversation_id, None)

    def conversation_count(self) -> int:
        with self._lock:
            return len(self._conversations)

    def message_count(self, conversation_id: str) -> int:
        with self._lock:
            return len(self._conversations.get(conversation_id, ()))
