from src.models.dispatch import (
    Case,
    CaseStatusView,
    DispatchEvent,
    FallbackPayload,
    GeoPoint,
    Profile,
    Responder,
    TransitionRecord,
)
from src.models.enums import (
    CaseChannel,
    CaseState,
    CaseTrigger,
    DispatchEventType,
    ReporterStatus,
    ResponderKind,
    ResponderStatus,
)

__all__ = [
    "Case",
    "CaseChannel",
    "CaseState",
    "CaseStatusView",
    "CaseTrigger",
    "DispatchEvent",
    "DispatchEventType",
    "FallbackPayload",
    "GeoPoint",
    "Profile",
    "ReporterStatus",
    "Responder",
    "ResponderKind",
    "ResponderStatus",
    "TransitionRecord",
]
