from __future__ import annotations

from enum import StrEnum


class ResponderKind(StrEnum):
    __slots__ = ()

    DRIVER = "driver"
    DOCTOR = "doctor"


class ResponderStatus(StrEnum):
    __slots__ = ()

    ONLINE = "online"
    BUSY = "busy"
    OFFLINE = "offline"


class CaseState(StrEnum):
    """Lifecycle states of an emergency case."""

    __slots__ = ()

    PENDING = "pending"
    ASSIGNED = "assigned"
    EN_ROUTE = "en_route"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    @property
    def holds_responder(self) -> bool:
        return self in (CaseState.ASSIGNED, CaseState.EN_ROUTE)


_TERMINAL_STATES = frozenset({CaseState.RESOLVED, CaseState.CANCELLED, CaseState.EXPIRED})


class CaseTrigger(StrEnum):
    """Events that drive a case from one state to the next."""

    __slots__ = ()

    MATCH_ACCEPTED = "match_accepted"
    DEPARTED = "departed"
    RESOLVED = "resolved"
    CANCEL = "cancel"
    TIMEOUT = "timeout"
    NO_MATCH_AFTER_MAX_WAIT = "no_match_after_max_wait"


class CaseChannel(StrEnum):
    __slots__ = ()

    ONLINE = "online"
    OFFLINE_FALLBACK = "offline_fallback"


class DispatchEventType(StrEnum):
    __slots__ = ()

    CASE_CREATED = "case_created"
    CASE_TRANSITIONED = "case_transitioned"
    ASSIGNMENT_PROPOSED = "assignment_proposed"
    MATCH_EXHAUSTED = "match_exhausted"
    RESPONDER_UPDATED = "responder_updated"
    DIAGNOSTIC = "diagnostic"


class ReporterStatus(StrEnum):
    """What a reporter is shown; never a raw internal error."""

    __slots__ = ()

    SEARCHING = "searching"
    ASSIGNED = "assigned"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    ESCALATED = "escalated"
