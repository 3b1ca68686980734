"""HTTP tests for the dispatch and health endpoints."""

from __future__ import annotations

import logging
import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.api.router import api_router
from tests.helpers import DHAKA_DRIVER, DHAKA_REPORTER

SOS_URL = "/api/v1/dispatch/sos"


@pytest.fixture
def client():
    """Test client with the lifespan run, so the dispatch service exists."""
    from src.main import app

    with TestClient(app) as test_client:
        yield test_client


def _wait_until(condition, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return False


def _driver_online(client: TestClient, responder_id: str = "driver-1"):
    return client.put(
        f"/api/v1/dispatch/responders/{responder_id}",
        json={
            "status": "online",
            "kind": "driver",
            "latitude": DHAKA_DRIVER[0],
            "longitude": DHAKA_DRIVER[1],
        },
    )


def _sos(client: TestClient, reporter_id: str = "mother-1"):
    return client.post(
        SOS_URL,
        json={"reporter_id": reporter_id, "latitude": DHAKA_REPORTER[0], "longitude": DHAKA_REPORTER[1]},
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


def test_app_starts_and_serves_requests():
    from src.main import app

    with TestClient(app) as test_client:
        assert test_client.app.state.dispatch is not None, "lifespan must build the dispatch service"
        response = test_client.get("/api/v1/health")
    assert response.status_code == 200


@pytest.mark.parametrize(
    ("name", "expected"),
    [("info", logging.INFO), ("DEBUG", logging.DEBUG), ("Warning", logging.WARNING)],
)
def test_log_level_names(name, expected):
    from src.main import _log_level

    assert _log_level(name) == expected


def test_unknown_log_level_rejected():
    from src.main import _log_level

    with pytest.raises(ValueError):
        _log_level("chatty")


def test_liveness(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_readiness_checks_store(client):
    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["checks"]["store"].startswith("ok")


def test_dispatch_unavailable_without_service():
    bare = FastAPI()
    bare.include_router(api_router)
    response = TestClient(bare).post(
        SOS_URL, json={"reporter_id": "mother-1", "latitude": 23.7, "longitude": 90.4}
    )
    assert response.status_code == 503


# ---------------------------------------------------------------------------
# Responders
# ---------------------------------------------------------------------------


def test_responder_registration(client):
    response = _driver_online(client)
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "online"
    assert data["kind"] == "driver"

    fetched = client.get("/api/v1/dispatch/responders/driver-1")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == "driver-1"


def test_new_responder_requires_kind(client):
    response = client.put(
        "/api/v1/dispatch/responders/driver-2",
        json={"status": "online", "latitude": DHAKA_DRIVER[0], "longitude": DHAKA_DRIVER[1]},
    )
    assert response.status_code == 400


def test_unknown_responder(client):
    assert client.get("/api/v1/dispatch/responders/nobody").status_code == 404


# ---------------------------------------------------------------------------
# SOS intake and reporter view
# ---------------------------------------------------------------------------


def test_sos_outside_region_rejected(client):
    response = client.post(
        SOS_URL, json={"reporter_id": "mother-1", "latitude": 51.5074, "longitude": -0.1278}
    )
    assert response.status_code == 422


def test_sos_rejects_missing_fields(client):
    response = client.post(SOS_URL, json={"reporter_id": "mother-1", "latitude": 23.7})
    assert response.status_code == 422


def test_sos_creates_searching_case(client):
    response = _sos(client)
    assert response.status_code == 200
    data = response.json()
    assert data["state"] == "pending"
    assert data["view"]["status"] == "searching"

    again = _sos(client)
    assert again.json()["case_id"] == data["case_id"], "an open case is returned, not duplicated"

    status = client.get(f"/api/v1/dispatch/cases/{data['case_id']}")
    assert status.status_code == 200
    assert status.json()["status"] == "searching"


def test_unknown_case(client):
    assert client.get("/api/v1/dispatch/cases/missing").status_code == 404


def test_cancel_flow(client):
    case_id = _sos(client).json()["case_id"]

    depart = client.post(f"/api/v1/dispatch/cases/{case_id}/depart", json={"responder_id": "driver-1"})
    assert depart.status_code == 409

    cancelled = client.post(f"/api/v1/dispatch/cases/{case_id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["state"] == "cancelled"
    assert cancelled.json()["view"]["status"] == "cancelled"

    assert client.post(f"/api/v1/dispatch/cases/{case_id}/cancel").status_code == 409


def test_cancel_with_stale_state_rejected(client):
    case_id = _sos(client).json()["case_id"]
    response = client.post(
        f"/api/v1/dispatch/cases/{case_id}/cancel", json={"expected_state": "assigned"}
    )
    assert response.status_code == 409
    assert client.get(f"/api/v1/dispatch/cases/{case_id}").json()["status"] == "searching"

    cancelled = client.post(
        f"/api/v1/dispatch/cases/{case_id}/cancel", json={"expected_state": "pending"}
    )
    assert cancelled.status_code == 200


def test_acknowledge_without_offer(client):
    case_id = _sos(client).json()["case_id"]
    response = client.post(
        f"/api/v1/dispatch/cases/{case_id}/acknowledge",
        json={"responder_id": "driver-1", "accepted": True},
    )
    assert response.status_code == 409


# ---------------------------------------------------------------------------
# Offline fallback
# ---------------------------------------------------------------------------


def test_fallback_round_trip(client):
    encoded = client.post(
        "/api/v1/dispatch/fallback/encode",
        json={"reporter_id": "mother-3", "latitude": DHAKA_REPORTER[0], "longitude": DHAKA_REPORTER[1]},
    )
    assert encoded.status_code == 200
    payload = encoded.json()["payload"]
    assert encoded.json()["length"] <= 140

    received = client.post("/api/v1/dispatch/fallback", json={"message": f"SOS {payload}"})
    assert received.status_code == 200
    assert received.json()["state"] == "pending"

    redelivered = client.post("/api/v1/dispatch/fallback", json={"message": payload})
    assert redelivered.json()["case_id"] == received.json()["case_id"]


def test_fallback_malformed(client):
    response = client.post("/api/v1/dispatch/fallback", json={"message": "help me please"})
    assert response.status_code == 400


# ---------------------------------------------------------------------------
# Full assignment
# ---------------------------------------------------------------------------


def test_offer_accept_depart_resolve(client):
    service = client.app.state.dispatch
    assert _driver_online(client).status_code == 200
    case_id = _sos(client).json()["case_id"]

    assert _wait_until(lambda: service.broker.open_offers("driver-1")), "driver never got an offer"
    ack = client.post(
        f"/api/v1/dispatch/cases/{case_id}/acknowledge",
        json={"responder_id": "driver-1", "accepted": True},
    )
    assert ack.status_code == 200

    assert _wait_until(
        lambda: client.get(f"/api/v1/dispatch/cases/{case_id}").json()["status"] == "assigned"
    )

    departed = client.post(f"/api/v1/dispatch/cases/{case_id}/depart", json={"responder_id": "driver-1"})
    assert departed.status_code == 200
    assert departed.json()["state"] == "en_route"
    assert departed.json()["view"]["responder_en_route"] is True

    resolved = client.post(
        f"/api/v1/dispatch/cases/{case_id}/resolve", json={"responder_id": "driver-1"}
    )
    assert resolved.status_code == 200
    assert resolved.json()["view"]["status"] == "resolved"

    driver = client.get("/api/v1/dispatch/responders/driver-1").json()
    assert driver["status"] == "online"
