"""Read-only access to reporter and responder profiles.

Profiles (names, phone numbers) belong to the external auth/profile
service.  The dispatch core only reads them to fill the reporter's
status view with who is coming.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol, runtime_checkable

import structlog

from src.models.dispatch import Profile

logger = structlog.get_logger(__name__)


@runtime_checkable
class ProfileDirectory(Protocol):
    async def get(self, profile_id: str) -> Profile | None: ...


class InMemoryProfileDirectory:
    """Dict-backed directory for single-process deployments and tests."""

    __slots__ = ("_profiles",)

    def __init__(self, profiles: Iterable[Profile] = ()) -> None:
        self._profiles: dict[str, Profile] = {p.id: p for p in profiles}

    def add(self, profile: Profile) -> None:
        self._profiles[profile.id] = profile

    async def get(self, profile_id: str) -> Profile | None:
        profile = self._profiles.get(profile_id)
        if profile is None:
            logger.debug("profiles.not_found", profile_id=profile_id)
        return profile

    def __len__(self) -> int:
        return len(self._profiles)
