"""Emergency dispatch API endpoints.

Patient devices raise and cancel SOS requests here, driver devices report
their status and answer assignment offers, and the SMS gateway replays
offline fallback messages.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from src.models.dispatch import Case, CaseStatusView, GeoPoint, Responder, utcnow
from src.models.enums import CaseState, ResponderKind, ResponderStatus
from src.services.dispatch import DispatchService
from src.services.errors import (
    Conflict,
    DispatchError,
    InvalidLocation,
    InvalidTransition,
    MalformedPayload,
    PayloadTooLarge,
    StoreUnavailable,
    UnknownRecord,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/dispatch", tags=["dispatch"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class LocationFields(BaseModel):
    latitude: float = Field(..., allow_inf_nan=False)
    longitude: float = Field(..., allow_inf_nan=False)
    captured_at: datetime | None = Field(
        default=None, description="When the GPS fix was taken; defaults to now"
    )

    def to_point(self) -> GeoPoint:
        return GeoPoint(
            latitude=self.latitude,
            longitude=self.longitude,
            captured_at=self.captured_at or utcnow(),
        )


class SOSRequest(LocationFields):
    reporter_id: str = Field(..., min_length=1, max_length=128)


class FallbackEncodeRequest(LocationFields):
    reporter_id: str = Field(..., min_length=1, max_length=128)
    case_ref: str | None = Field(default=None, max_length=64)


class FallbackEncodeResponse(BaseModel):
    payload: str
    length: int


class FallbackMessage(BaseModel):
    message: str = Field(..., min_length=1, max_length=1600, description="Raw SMS text")


class CancelRequest(BaseModel):
    actor: str = Field(default="reporter", max_length=128)
    expected_state: CaseState | None = Field(
        default=None, description="State the caller last saw; 409 if the case has moved on"
    )


class DepartRequest(BaseModel):
    responder_id: str = Field(..., min_length=1)


class ResolveRequest(BaseModel):
    responder_id: str | None = None
    actor: str | None = None


class AcknowledgeRequest(BaseModel):
    responder_id: str = Field(..., min_length=1)
    accepted: bool


class ResponderUpdate(LocationFields):
    status: ResponderStatus
    kind: ResponderKind | None = None


class CaseResponse(BaseModel):
    case_id: str
    state: CaseState
    view: CaseStatusView


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: dict[type[DispatchError], int] = {
    InvalidLocation: 422,
    Conflict: 409,
    InvalidTransition: 409,
    MalformedPayload: 400,
    PayloadTooLarge: 400,
    UnknownRecord: 404,
    StoreUnavailable: 503,
}


def _service(request: Request) -> DispatchService:
    service = getattr(request.app.state, "dispatch", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Dispatch service not available")
    return service


def _http_error(exc: DispatchError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail="Dispatch failed")


async def _case_response(service: DispatchService, case: Case) -> CaseResponse:
    return CaseResponse(case_id=case.id, state=case.state, view=await service.describe(case))


# ---------------------------------------------------------------------------
# Reporter endpoints
# ---------------------------------------------------------------------------


@router.post("/sos", response_model=CaseResponse)
async def submit_sos(body: SOSRequest, request: Request) -> CaseResponse:
    """Raise an SOS.  Repeated calls while a case is open return that case."""
    service = _service(request)
    try:
        case = await service.submit_sos(body.reporter_id, body.to_point())
    except DispatchError as exc:
        logger.warning("api.dispatch.sos_rejected", reporter_id=body.reporter_id, error=str(exc))
        raise _http_error(exc) from None
    return await _case_response(service, case)


@router.get("/cases/{case_id}", response_model=CaseStatusView)
async def get_case_status(case_id: str, request: Request) -> CaseStatusView:
    service = _service(request)
    try:
        return await service.case_status(case_id)
    except DispatchError as exc:
        raise _http_error(exc) from None


@router.post("/cases/{case_id}/cancel", response_model=CaseResponse)
async def cancel_case(case_id: str, request: Request, body: CancelRequest | None = None) -> CaseResponse:
    service = _service(request)
    body = body or CancelRequest()
    try:
        case = await service.cancel(case_id, actor=body.actor, expected_state=body.expected_state)
    except DispatchError as exc:
        raise _http_error(exc) from None
    return await _case_response(service, case)


# ---------------------------------------------------------------------------
# Responder endpoints
# ---------------------------------------------------------------------------


@router.post("/cases/{case_id}/acknowledge")
async def acknowledge_offer(case_id: str, body: AcknowledgeRequest, request: Request) -> dict:
    """Accept or reject an assignment offer.

    Acceptance is committed by the matcher; poll the case or listen on
    the responder topic for the resulting ``assigned`` transition.
    """
    service = _service(request)
    try:
        await service.acknowledge(case_id, body.responder_id, body.accepted)
    except DispatchError as exc:
        raise _http_error(exc) from None
    return {"case_id": case_id, "responder_id": body.responder_id, "accepted": body.accepted}


@router.post("/cases/{case_id}/depart", response_model=CaseResponse)
async def depart(case_id: str, body: DepartRequest, request: Request) -> CaseResponse:
    service = _service(request)
    try:
        case = await service.depart(case_id, body.responder_id)
    except DispatchError as exc:
        raise _http_error(exc) from None
    return await _case_response(service, case)


@router.post("/cases/{case_id}/resolve", response_model=CaseResponse)
async def resolve(case_id: str, request: Request, body: ResolveRequest | None = None) -> CaseResponse:
    service = _service(request)
    body = body or ResolveRequest()
    try:
        case = await service.resolve(case_id, responder_id=body.responder_id, actor=body.actor)
    except DispatchError as exc:
        raise _http_error(exc) from None
    return await _case_response(service, case)


@router.put("/responders/{responder_id}", response_model=Responder)
async def update_responder(responder_id: str, body: ResponderUpdate, request: Request) -> Responder:
    """Report a responder's status and current location."""
    service = _service(request)
    try:
        return await service.update_responder(responder_id, body.status, body.to_point(), body.kind)
    except DispatchError as exc:
        raise _http_error(exc) from None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None


@router.get("/responders/{responder_id}", response_model=Responder)
async def get_responder(responder_id: str, request: Request) -> Responder:
    service = _service(request)
    try:
        return await service.get_responder(responder_id)
    except DispatchError as exc:
        raise _http_error(exc) from None


# ---------------------------------------------------------------------------
# Offline fallback
# ---------------------------------------------------------------------------


@router.post("/fallback/encode", response_model=FallbackEncodeResponse)
async def encode_fallback(body: FallbackEncodeRequest, request: Request) -> FallbackEncodeResponse:
    """Build the SMS text a device sends when it has no data connection."""
    service = _service(request)
    try:
        payload = service.encode_fallback(body.reporter_id, body.to_point(), body.case_ref)
    except DispatchError as exc:
        raise _http_error(exc) from None
    return FallbackEncodeResponse(payload=payload, length=len(payload))


@router.post("/fallback", response_model=CaseResponse)
async def receive_fallback(body: FallbackMessage, request: Request) -> CaseResponse:
    """SMS gateway hook: decode a relayed message and raise the SOS."""
    service = _service(request)
    try:
        case = await service.decode_and_submit(body.message)
    except DispatchError as exc:
        raise _http_error(exc) from None
    return await _case_response(service, case)
