"""
Tests for the intake API (FastAPI TestClient).
"""

import hashlib

import pytest
from fastapi.testclient import TestClient

from agents.services import build_services
from backend.app.main import create_app
from core.config import TrackingSettings
from core.database import session_scope
from schemas.tracking import SurfaceModel, TrackedEventModel


SURFACE_ID = "1234567890"


def sha(value):
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@pytest.fixture
def services(engine, fake_redis, null_driver, cipher, monkeypatch):
    monkeypatch.setenv("TRACKING_DRIVER", "null")
    settings = TrackingSettings(_env_file=None)
    services = build_services(settings, redis_client=fake_redis, engine=engine, driver=null_driver)
    with session_scope(services.session_factory) as session:
        session.add(SurfaceModel(
            surface_id=SURFACE_ID,
            access_token="EAAB-test-token",
            domains=["example.com"],
        ))
    return services


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


@pytest.fixture
def payload():
    return {
        "pixel_id": SURFACE_ID,
        "event_name": "Purchase",
        "event_source_url": "https://example.com/checkout",
        "event_id": "order-1",
        "user_data": {"em": "A@Example.com"},
        "custom_data": {"value": 10, "currency": "usd"},
    }


class TestTrackEndpoint:

    def test_track_accepted(self, client, payload, services):
        client.cookies.set("_fbp", "fb.1.1700000000000.1234567890")
        response = client.post(
            "/api/v1/track",
            json=payload,
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "User-Agent": "Mozilla/5.0"},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending"
        assert body["match_quality_score"] == 30 + 4 + 3 + 8
        assert services.queue.contains(body["event_id"])
        assert "X-Request-ID" in response.headers

        with session_scope(services.session_factory) as session:
            event = session.get(TrackedEventModel, body["event_id"])
            assert event.identity["client_ip"] == "203.0.113.7"
            assert event.identity["email"] == sha("a@example.com")

    def test_duplicate_reported(self, client, payload):
        client.post("/api/v1/track", json=payload)
        response = client.post("/api/v1/track", json=payload)
        assert response.status_code == 202
        assert response.json()["status"] == "duplicate"

    def test_validation_error_422(self, client, payload):
        del payload["event_source_url"]
        response = client.post("/api/v1/track", json=payload)
        assert response.status_code == 422
        assert response.json()["error"] == "validation_failure"

    def test_unknown_surface_404(self, client, payload):
        payload["pixel_id"] = "999"
        response = client.post("/api/v1/track", json=payload)
        assert response.status_code == 404
        assert response.json()["error"] == "surface_not_found"


class TestBatchEndpoint:

    def test_batch_with_top_level_surface(self, client, payload):
        del payload["pixel_id"]
        events = [dict(payload, event_id="a"), dict(payload, event_id="b"), {"event_name": "Lead"}]
        response = client.post("/api/v1/track/batch", json={"surface_id": SURFACE_ID, "events": events})

        assert response.status_code == 200
        body = response.json()
        assert body["received"] == 3
        assert body["admitted"] == 2
        assert body["results"][2]["success"] is False

    def test_batch_requires_events_list(self, client):
        response = client.post("/api/v1/track/batch", json={"events": "nope"})
        assert response.status_code == 422

    def test_oversized_batch(self, client, payload):
        response = client.post("/api/v1/track/batch", json={"events": [payload] * 101})
        assert response.status_code == 422


class TestGtmEndpoint:

    def test_gtm_event(self, client, services):
        response = client.post(f"/api/v1/gtm/{SURFACE_ID}", json={
            "event_name": "purchase",
            "page_location": "https://example.com/thanks",
            "transaction_id": "T-1",
            "value": 25,
            "currency": "EUR",
            "user_data": {"email_address": "a@example.com"},
        })
        assert response.status_code == 202
        assert response.json()["status"] == "pending"

    def test_gtm_empty_payload(self, client):
        response = client.post(f"/api/v1/gtm/{SURFACE_ID}", json={})
        assert response.status_code == 422


class TestRetryEndpoint:

    def test_retry_pending_conflict(self, client, payload):
        event_id = client.post("/api/v1/track", json=payload).json()["event_id"]
        response = client.post(f"/api/v1/events/{event_id}/retry")
        assert response.status_code == 409

    def test_retry_unknown_404(self, client):
        response = client.post("/api/v1/events/does-not-exist/retry")
        assert response.status_code == 404

    def test_retry_failed_event(self, client, payload, services):
        event_id = client.post("/api/v1/track", json=payload).json()["event_id"]
        with session_scope(services.session_factory) as session:
            session.get(TrackedEventModel, event_id).status = "failed"

        response = client.post(f"/api/v1/events/{event_id}/retry")
        assert response.status_code == 202
        assert response.json() == {"event_id": event_id, "status": "pending"}


class TestMatchQualityEndpoint:

    def test_report_after_track(self, client, payload):
        client.post("/api/v1/track", json=payload)
        response = client.get("/api/v1/track/match-quality", params={"pixel_id": SURFACE_ID, "days": 500})

        assert response.status_code == 200
        body = response.json()
        assert body["period_days"] == 90
        assert body["total_events"] == 1
        assert body["by_domain"][0]["count"] == 1

    def test_no_data(self, client):
        response = client.get("/api/v1/track/match-quality")
        assert response.status_code == 200
        assert response.json()["total_events"] == 0

    def test_days_must_be_positive(self, client):
        response = client.get("/api/v1/track/match-quality", params={"days": 0})
        assert response.status_code == 422


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_metrics_mounted(self, client):
        response = client.get("/metrics/")
        assert response.status_code == 200
        assert "tracking_admissions_total" in response.text
