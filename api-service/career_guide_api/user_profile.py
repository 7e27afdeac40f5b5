"""User-profile sink: where conversation outcomes are written for the user."""

import threading
from typing import Any, Protocol

import structlog

from career_guide_api.models import utcnow
from career_guide_api.signals import ProfileData

logger = structlog.get_logger()


class UserProfileSink(Protocol):
    async def set_target_occupation(
        self, user_id: str, title: str, description: str | None = None
    ) -> None: ...

    async def update_profile_data(self, user_id: str, data: ProfileData) -> None: ...

    async def save_final_profile(self, user_id: str, profile: dict[str, Any]) -> None: ...


class InMemoryUserProfileSink:
    """Keeps user profile writes in a dict keyed by user id."""

    def __init__(self) -> None:
        self._profiles: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _entry(self, user_id: str) -> dict[str, Any]:
        return self._profiles.setdefault(user_id, {"user_id": user_id})

    async def set_target_occupation(
        self, user_id: str, title: str, description: str | None = None
    ) -> None:
        with self._lock:
            entry = self._entry(user_id)
            entry["target_occupation"] = {"title": title, "description": description, "set_at": utcnow()}
        logger.info("Target occupation saved", user_id=user_id, title=title)

    async def update_profile_data(self, user_id: str, data: ProfileData) -> None:
        fields = data.model_dump(exclude_none=True)
        if not fields:
            return
        with self._lock:
            self._entry(user_id).setdefault("profile_data", {}).update(fields)
        logger.info("Profile data updated", user_id=user_id, fields=sorted(fields))

    async def save_final_profile(self, user_id: str, profile: dict[str, Any]) -> None:
        with self._lock:
            self._entry(user_id)["final_profile"] = profile
        logger.info("Final profile saved", user_id=user_id)

    def get(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._profiles.get(user_id)
            return dict(entry) if entry else None


# Global sink instance
_user_profile_sink: InMemoryUserProfileSink | None = None


def get_user_profile_sink() -> InMemoryUserProfileSink:
    global _user_profile_sink
    if _user_profile_sink is None:
        _user_profile_sink = InMemoryUserProfileSink()
    return _user_profile_sink


def reset_user_profile_sink() -> None:
    """Reset the global sink (for testing)."""
    global _user_profile_sink
    _user_profile_sink = None
