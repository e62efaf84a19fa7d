"""tests/test_history.py

Unit tests for history formatting and the in-memory store
(strategy_agent/history.py).
"""

from __future__ import annotations

# Third-Party Libraries
import pytest

# Local Modules
from strategy_agent.history import InMemoryHistoryStore, format_history


class TestFormatHistory:
    """Test suite for format_history."""

    def test_filters_roles_and_empty_content(self) -> None:
        """Test only user/assistant turns with content survive."""
        turns = [
            {"role": "USER", "content": "hi"},
            {"role": "system", "content": "rules"},
            {"role": "ASSISTANT", "content": ""},
            {"role": "tool", "content": "{}"},
            {"role": "Assistant", "content": "hello"},
            {"content": "no role"},
        ]
        assert format_history(turns) == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]

    def test_limit_keeps_most_recent(self) -> None:
        """Test the limit keeps the tail of the conversation."""
        turns = [{"role": "user", "content": str(i)} for i in range(5)]
        kept = format_history(turns, 2)
        assert [t["content"] for t in kept] == ["3", "4"]
        assert format_history(turns, 0) == []


class TestInMemoryHistoryStore:
    """Test suite for InMemoryHistoryStore."""

    def test_add_and_get(self) -> None:
        """Test messages come back in insertion order per conversation."""
        store = InMemoryHistoryStore()
        store.add_message("c1", "user", "hi")
        store.add_message("c1", "assistant", "hello")
        store.add_message("c2", "user", "other")

        assert store.get_history("c1", 10) == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]
        assert store.message_count("c2") == 1

    def test_rolling_window(self) -> None:
        """Test the oldest messages roll off past the maximum."""
        store = InMemoryHistoryStore(max_messages=3)
        for i in range(5):
            store.add_message("c1", "user", str(i))

        contents = [m["content"] for m in store.get_history("c1", 10)]
        assert contents == ["2", "3", "4"]
        assert [m["content"] for m in store.get_history("c1", 1)] == ["4"]

    def test_clear_and_unknown(self) -> None:
        """Test clearing a conversation and reading one that never existed."""
        store = InMemoryHistoryStore()
        store.add_message("c1", "user", "hi")
        store.clear("c1")

        assert store.get_history("c1", 10) == []
        assert store.get_history("missing", 10) == []
        assert store.message_count("missing") == 0

    def test_conversation_count_is_capped(self) -> None:
        """Test new conversations evict the least recently written one."""
        store = InMemoryHistoryStore(max_conversations=2)
        store.add_message("c1", "user", "one")
        store.add_message("c2", "user", "two")
        store.add_message("c3", "user", "three")

        assert store.conversation_count() == 2
        assert store.get_history("c1", 10) == []
        assert store.message_count("c2") == 1
        assert store.message_count("c3") == 1

    def test_writing_refreshes_a_conversation(self) -> None:
        """Test an active conversation outlives idle ones."""
        store = InMemoryHistoryStore(max_conversations=2)
        store.add_message("c1", "user", "one")
        store.add_message("c2", "user", "two")
        store.add_message("c1", "assistant", "still here")
        store.add_message("c3", "user", "three")

        assert store.message_count("c1") == 2
        assert store.message_count("c2") == 0
        assert store.conversation_count() == 2

    def test_many_conversations_stay_bounded(self) -> None:
        """Test a stream of one-off conversations never exceeds the cap."""
        store = InMemoryHistoryStore(max_messages=4, max_conversations=10)
        for i in range(500):
            store.add_message(f"conv-{i}", "user", "hello")

        assert store.conversation_count() == 10
        assert store.message_count("conv-499") == 1
        assert store.message_count("conv-489") == 0

    def test_zero_conversations_refused(self) -> None:
        """Test the store must hold at least one conversation."""
        with pytest.raises(ValueError, match="max_conversations"):
            InMemoryHistoryStore(max_conversations=0)
