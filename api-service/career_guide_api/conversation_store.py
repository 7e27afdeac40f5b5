"""In-memory conversation store with TTL-based expiration.

Whole conversation aggregates are stored; readers always get a deep copy so a
turn in progress can never leak partial state into the store.
"""

import threading
from collections import defaultdict
from typing import Callable, cast

from cachetools import TTLCache

from career_guide_api.config import get_settings
from career_guide_api.models import Conversation, utcnow


class ConversationNotFoundError(LookupError):
    """Raised when a conversation id is unknown or has expired."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class ConversationStore:
    """Thread-safe in-memory conversation store with automatic expiration."""

    def __init__(self, ttl_seconds: int | None = None, max_conversations: int | None = None):
        """Initialize the conversation store.

        Args:
            ttl_seconds: Time-to-live in seconds. Defaults to config value.
            max_conversations: Maximum number of conversations. Defaults to config value.
        """
        settings = get_settings()
        self._ttl = ttl_seconds or settings.conversation_ttl
        self._max_conversations = max_conversations or settings.max_conversations
        self._cache: TTLCache[str, Conversation] = TTLCache(
            maxsize=self._max_conversations,
            ttl=self._ttl,
        )
        self._lock = threading.Lock()

    def load(self, conversation_id: str) -> Conversation:
        """Return a private copy of a stored conversation.

        Raises:
            ConversationNotFoundError: If the id is unknown or expired.
        """
        with self._lock:
            result = self._cache.get(conversation_id)
            if result is None:
                raise ConversationNotFoundError(conversation_id)
            return cast(Conversation, result).model_copy(deep=True)

    def save(self, conversation: Conversation) -> None:
        """Store or replace a conversation in one step."""
        snapshot = conversation.model_copy(deep=True)
        with self._lock:
            self._cache[snapshot.id] = snapshot

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            if conversation_id in self._cache:
                del self._cache[conversation_id]
                return True
            return False

    def find_active(self, user_id: str) -> Conversation | None:
        """Most recent active conversation of a user, if any."""
        with self._lock:
            active = [
                c for c in self._cache.values() if c.user_id == user_id and c.status == "active"
            ]
            if not active:
                return None
            latest = max(active, key=lambda c: c.last_active_at)
            return latest.model_copy(deep=True)

    def list_for_user(self, user_id: str, limit: int = 10) -> list[Conversation]:
        """A user's conversations, most recently active first."""
        with self._lock:
            owned = [c for c in self._cache.values() if c.user_id == user_id]
        owned.sort(key=lambda c: c.last_active_at, reverse=True)
        return [c.model_copy(deep=True) for c in owned[:limit]]

    def find_ids(self, predicate: Callable[[Conversation], bool]) -> list[str]:
        """Ids of the stored conversations matching ``predicate``."""
        with self._lock:
            return [key for key, c in self._cache.items() if predicate(c)]

    def stats(self) -> dict[str, dict[str, float | int | None]]:
        """Count, average duration (minutes) and satisfaction per status."""
        now = utcnow()
        with self._lock:
            conversations = list(self._cache.values())

        grouped: dict[str, list[Conversation]] = defaultdict(list)
        for c in conversations:
            grouped[c.status].append(c)

        stats: dict[str, dict[str, float | int | None]] = {}
        for status, items in grouped.items():
            durations = [
                ((c.completed_at or now) - c.created_at).total_seconds() / 60 for c in items
            ]
            ratings = [c.quality.user_satisfaction for c in items if c.quality.user_satisfaction]
            stats[status] = {
                "count": len(items),
                "avg_duration_minutes": round(sum(durations) / len(durations), 2),
                "avg_satisfaction": round(sum(ratings) / len(ratings), 2) if ratings else None,
            }
        return stats

    def count(self) -> int:
        """Get the number of stored conversations."""
        with self._lock:
            return len(self._cache)

    def clear(self) -> None:
        """Clear all conversations."""
        with self._lock:
            self._cache.clear()


# Global conversation store instance
_conversation_store: ConversationStore | None = None


def get_conversation_store() -> ConversationStore:
    """Get the global conversation store instance."""
    global _conversation_store
    if _conversation_store is None:
        _conversation_store = ConversationStore()
    return _conversation_store


def reset_conversation_store() -> None:
    """Reset the global conversation store (useful for testing)."""
    global _conversation_store
    _conversation_store = None
