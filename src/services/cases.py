"""Case persistence helpers shared by intake and the lifecycle manager."""

from __future__ import annotations

import secrets
import time

from src.models.dispatch import Case
from src.services.errors import UnknownRecord
from src.services.store import RecordStore

_CASE_PREFIX = "case:"
_REPORTER_PREFIX = "reporter_case:"


def case_key(case_id: str) -> str:
    return f"{_CASE_PREFIX}{case_id}"


def reporter_key(reporter_id: str) -> str:
    return f"{_REPORTER_PREFIX}{reporter_id}"


class CaseIdGenerator:
    """Sortable ids: 12 hex ms timestamp, 4 hex sequence, 8 hex random.

    Ids produced by one generator sort in creation order even when the
    wall clock stalls or steps backwards.
    """

    __slots__ = ("_last_ms", "_seq")

    def __init__(self) -> None:
        self._last_ms = 0
        self._seq = 0

    def __call__(self) -> str:
        now_ms = time.time_ns() // 1_000_000
        if now_ms > self._last_ms:
            self._last_ms = now_ms
            self._seq = 0
        else:
            self._seq += 1
            if self._seq > 0xFFFF:
                self._last_ms += 1
                self._seq = 0
        return f"{self._last_ms:012x}{self._seq:04x}{secrets.token_hex(4)}"


class CaseRepository:
    """Typed access to case records and the reporter -> open case index."""

    __slots__ = ("_store",)

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    @property
    def store(self) -> RecordStore:
        return self._store

    def locked(self, case_id: str):
        return self._store.locked(case_key(case_id))

    def reporter_locked(self, reporter_id: str):
        return self._store.locked(reporter_key(reporter_id))

    async def find(self, case_id: str) -> Case | None:
        found = await self._store.get(case_key(case_id))
        if found is None:
            return None
        document, _version = found
        return Case.model_validate(document)

    async def get(self, case_id: str) -> Case:
        case = await self.find(case_id)
        if case is None:
            raise UnknownRecord("case", case_id)
        return case

    async def write(self, case: Case, *, expected_version: int) -> Case:
        """Validate and CAS-write *case*; returns it with the new version."""
        checked = Case.model_validate(case.model_dump())
        version = await self._store.put(
            case_key(checked.id), checked.model_dump(mode="json"), expected_version=expected_version
        )
        return checked.model_copy(update={"version": version})

    async def delete(self, case_id: str) -> None:
        await self._store.delete(case_key(case_id))

    async def indexed_case_id(self, reporter_id: str) -> tuple[str | None, int]:
        """Return ``(case_id, index_version)`` for a reporter's latest case."""
        found = await self._store.get(reporter_key(reporter_id))
        if found is None:
            return None, 0
        document, version = found
        return document.get("case_id"), version

    async def index_reporter(self, reporter_id: str, case_id: str, *, expected_version: int) -> int:
        return await self._store.put(
            reporter_key(reporter_id), {"case_id": case_id}, expected_version=expected_version
        )

    async def all_ids(self) -> list[str]:
        return [key[len(_CASE_PREFIX):] for key in await self._store.keys(_CASE_PREFIX)]
