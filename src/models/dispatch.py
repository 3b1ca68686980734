"""Dispatch domain records: responders, cases, lifecycle events.

Every persisted record carries a ``version`` counter.  Writers must
present the version they read; the store rejects the write if someone
else committed in between.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from src.models.enums import (
    CaseChannel,
    CaseState,
    CaseTrigger,
    DispatchEventType,
    ReporterStatus,
    ResponderKind,
    ResponderStatus,
)


def utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Location
# ---------------------------------------------------------------------------


class GeoPoint(BaseModel):
    """A resolved GPS fix with the time it was captured."""

    latitude: float
    longitude: float
    captured_at: datetime = Field(default_factory=utcnow)

    @field_validator("latitude", "longitude")
    @classmethod
    def _finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("coordinate must be a finite number")
        return value

    @field_validator("captured_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        # Naive timestamps from devices are taken as UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Responder
# ---------------------------------------------------------------------------


class Responder(BaseModel):
    """A driver or doctor mirrored into the registry."""

    id: str
    kind: ResponderKind
    status: ResponderStatus = ResponderStatus.OFFLINE
    location: GeoPoint
    assigned_case_id: str | None = None
    version: int = 0
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _busy_iff_assigned(self) -> Responder:
        busy = self.status == ResponderStatus.BUSY
        if busy != (self.assigned_case_id is not None):
            raise ValueError("responder must be busy exactly when it has an assigned case")
        return self


# ---------------------------------------------------------------------------
# Case
# ---------------------------------------------------------------------------


class TransitionRecord(BaseModel):
    """Audit entry for one committed state change."""

    from_state: CaseState
    to_state: CaseState
    trigger: CaseTrigger
    actor: str = "system"
    at: datetime = Field(default_factory=utcnow)


class Case(BaseModel):
    """One emergency request tracked end-to-end."""

    id: str
    reporter_id: str
    location: GeoPoint
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    state: CaseState = CaseState.PENDING
    assigned_responder_id: str | None = None
    channel: CaseChannel = CaseChannel.ONLINE
    escalated: bool = False
    match_attempts: int = 0
    history: list[TransitionRecord] = Field(default_factory=list)
    version: int = 0

    @model_validator(mode="after")
    def _responder_iff_active(self) -> Case:
        if self.state.holds_responder != (self.assigned_responder_id is not None):
            raise ValueError(
                "assigned_responder_id must be set exactly when the case is assigned or en route"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class DispatchEvent(BaseModel):
    """Typed event published on the realtime channel."""

    event_id: str = Field(default_factory=lambda: uuid4().hex)
    type: DispatchEventType
    case_id: str | None = None
    reporter_id: str | None = None
    responder_id: str | None = None
    state: CaseState | None = None
    sequence: int = 0
    detail: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Offline fallback payload
# ---------------------------------------------------------------------------


class FallbackPayload(BaseModel):
    """Decoded contents of an SMS-sized distress message."""

    version: str
    case_ref: str
    reporter_id: str
    latitude: float
    longitude: float


# ---------------------------------------------------------------------------
# Reporter-facing view
# ---------------------------------------------------------------------------


class Profile(BaseModel):
    """Identity fields owned by the external profile service."""

    id: str
    display_name: str
    phone: str | None = None


class CaseStatusView(BaseModel):
    """What the reporter's screen renders for a case."""

    case_id: str
    status: ReporterStatus
    message: str
    responder: Profile | None = None
    responder_en_route: bool = False
    created_at: datetime
    updated_at: datetime
