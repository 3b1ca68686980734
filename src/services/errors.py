"""Exceptions raised by the dispatch core."""

from __future__ import annotations


class DispatchError(RuntimeError):
    """Base exception for dispatch operations."""


class InvalidLocation(DispatchError):
    """Raised when SOS coordinates fall outside the accepted region."""

    def __init__(self, latitude: float, longitude: float) -> None:
        super().__init__(f"Location ({latitude}, {longitude}) is outside the service region")
        self.latitude = latitude
        self.longitude = longitude


class Conflict(DispatchError):
    """Raised when a concurrent write superseded the version a caller read.

    The caller should re-read the record and retry.
    """

    def __init__(self, key: str, expected_version: int | None = None, detail: str = "") -> None:
        message = detail or f"Record {key!r} changed concurrently"
        super().__init__(message)
        self.key = key
        self.expected_version = expected_version


class InvalidTransition(DispatchError):
    """Raised when a trigger is not valid for the case's current state."""

    def __init__(self, case_id: str, state: str, trigger: str, reason: str = "") -> None:
        message = f"Case {case_id} cannot take {trigger!r} from state {state!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.case_id = case_id
        self.state = state
        self.trigger = trigger


class MatchExhausted(DispatchError):
    """Raised when every radius tier and attempt found no responder."""

    def __init__(self, case_id: str, attempts: int) -> None:
        super().__init__(f"No responder found for case {case_id} after {attempts} attempts")
        self.case_id = case_id
        self.attempts = attempts


class MalformedPayload(DispatchError):
    """Raised when an offline fallback payload cannot be decoded."""


class PayloadTooLarge(DispatchError):
    """Raised when an encoded fallback payload exceeds the message budget."""

    def __init__(self, length: int, limit: int) -> None:
        super().__init__(f"Encoded payload is {length} characters; limit is {limit}")
        self.length = length
        self.limit = limit


class UnknownRecord(DispatchError):
    """Raised when a case or responder id is not in the store."""

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"Unknown {kind}: {record_id}")
        self.kind = kind
        self.record_id = record_id


class StoreUnavailable(DispatchError):
    """Raised when the backing store cannot be reached; transient."""


__all__ = [
    "Conflict",
    "DispatchError",
    "InvalidLocation",
    "InvalidTransition",
    "MalformedPayload",
    "MatchExhausted",
    "PayloadTooLarge",
    "StoreUnavailable",
    "UnknownRecord",
]
