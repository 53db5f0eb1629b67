"""
Tests for the admission pipeline.

Tests:
- validation and surface resolution errors
- dedup: one eligible event and one Duplicate per (surface, event id) window
- quality gate: low score → Skipped, never queued
- enrichment from the visitor profile and match-quality logging
- batch admission reports per-index results
"""

import hashlib
from datetime import datetime, timedelta

import pytest

from agents.admission_agent import AdmissionPipeline
from agents.profile_store import ProfileStore
from contracts.tracking_schemas import EventStatus, RequestContext
from core.config import AdmissionConfig
from core.database import session_scope
from core.exceptions import SurfaceNotFound, ValidationFailure
from core.identity import IdentityRecord
from schemas.tracking import DedupClaimModel, MatchQualityLogModel


def sha(value):
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class FixedClock:

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now += timedelta(**delta)


class TestAdmissionValidation:

    def test_missing_source_url(self, pipeline, surface, submission):
        payload = submission()
        del payload["source_url"]
        with pytest.raises(ValidationFailure) as exc_info:
            pipeline.admit(payload)
        fields = [e["field"] for e in exc_info.value.details["errors"]]
        assert "source_url" in fields

    def test_relative_source_url(self, pipeline, surface, submission):
        with pytest.raises(ValidationFailure):
            pipeline.admit(submission(source_url="/checkout"))

    def test_unknown_surface(self, pipeline, surface, submission):
        with pytest.raises(SurfaceNotFound):
            pipeline.admit(submission(surface_id="999"))

    def test_inactive_surface(self, pipeline, make_surface, submission):
        make_surface("555", is_active=False)
        with pytest.raises(SurfaceNotFound):
            pipeline.admit(submission(surface_id="555"))

    def test_domain_not_allowed(self, pipeline, surface, submission):
        with pytest.raises(ValidationFailure) as exc_info:
            pipeline.admit(submission(source_url="https://evil.test/page"))
        assert exc_info.value.error_code == "domain_not_allowed"

    def test_nothing_stored_on_rejection(self, pipeline, surface, submission, queue, session_factory):
        with pytest.raises(SurfaceNotFound):
            pipeline.admit(submission(surface_id="999"))
        assert queue.depth() == 0
        with session_scope(session_factory) as session:
            assert session.query(MatchQualityLogModel).count() == 0


class TestAdmission:

    def test_email_only_submission(self, pipeline, surface, submission, queue, load_event):
        result = pipeline.admit(submission())

        assert result.status is EventStatus.PENDING
        assert result.match_quality_score == 30
        assert result.external_scale == 3
        assert queue.contains(result.event_id)

        event = load_event(result.event_id)
        assert event.status == "pending"
        assert event.attempt_count == 0
        assert event.identity["email"] == sha("a@example.com")
        assert "A@Example.com" not in str(event.identity)

    def test_custom_event_name(self, pipeline, surface, submission, load_event):
        result = pipeline.admit(submission(event_name="WishlistShared"))
        event = load_event(result.event_id)
        assert event.event_name == "Custom"
        assert event.custom_event_name == "WishlistShared"
        assert event.resolved_event_name == "WishlistShared"

    def test_event_time_defaults_to_now(self, session_factory, queue, surface, submission, load_event):
        clock = FixedClock(datetime(2024, 1, 1, 12, 0, 0))
        pipeline = AdmissionPipeline(session_factory, queue, AdmissionConfig(), clock=clock)
        payload = submission()
        del payload["event_time"]

        result = pipeline.admit(payload)
        assert load_event(result.event_id).event_time == 1704110400

    def test_request_context_contributes_signals(self, pipeline, surface, submission):
        context = RequestContext(
            client_ip="203.0.113.7",
            user_agent="Mozilla/5.0",
            browser_id_cookie="fb.1.1700000000000.1234567890",
        )
        result = pipeline.admit(submission(), context)
        assert result.match_quality_score == 30 + 4 + 3 + 8

    def test_custom_data_stored(self, pipeline, surface, submission, load_event):
        result = pipeline.admit(submission(custom_data={"value": 49.5, "currency": "usd"}))
        assert load_event(result.event_id).custom_data == {"value": 49.5, "currency": "USD"}


class TestDeduplication:

    def test_duplicate_within_window(self, pipeline, surface, submission, queue):
        first = pipeline.admit(submission(event_id="order-1"))
        second = pipeline.admit(submission(event_id="order-1"))

        assert first.status is EventStatus.PENDING
        assert second.status is EventStatus.DUPLICATE
        assert second.message == f"Duplicate of event {first.event_id}"
        assert queue.contains(first.event_id)
        assert not queue.contains(second.event_id)

    def test_same_event_id_on_other_surface_is_independent(self, pipeline, make_surface, surface, submission):
        make_surface("222")
        first = pipeline.admit(submission(event_id="order-1"))
        second = pipeline.admit(submission(event_id="order-1", surface_id="222"))
        assert first.status is EventStatus.PENDING
        assert second.status is EventStatus.PENDING

    def test_window_expiry_takes_over_claim(self, session_factory, queue, surface, submission):
        clock = FixedClock(datetime(2024, 1, 1, 12, 0, 0))
        pipeline = AdmissionPipeline(
            session_factory, queue, AdmissionConfig(dedup_window_minutes=60), clock=clock
        )

        first = pipeline.admit(submission(event_id="order-1"))
        clock.advance(minutes=61)
        second = pipeline.admit(submission(event_id="order-1"))

        assert first.status is EventStatus.PENDING
        assert second.status is EventStatus.PENDING
        with session_scope(session_factory) as session:
            claim = session.query(DedupClaimModel).one()
            assert claim.event_id == second.event_id

    def test_duplicate_just_inside_window(self, session_factory, queue, surface, submission):
        clock = FixedClock(datetime(2024, 1, 1, 12, 0, 0))
        pipeline = AdmissionPipeline(session_factory, queue, AdmissionConfig(), clock=clock)

        pipeline.admit(submission(event_id="order-1"))
        clock.advance(minutes=59)
        assert pipeline.admit(submission(event_id="order-1")).status is EventStatus.DUPLICATE

    def test_no_event_id_never_duplicate(self, pipeline, surface, submission):
        assert pipeline.admit(submission()).status is EventStatus.PENDING
        assert pipeline.admit(submission()).status is EventStatus.PENDING


class TestQualityGate:

    def test_low_score_skipped(self, pipeline, surface, submission, queue, load_event):
        result = pipeline.admit(submission(user_data={"fn": "Ann"}))

        assert result.status is EventStatus.SKIPPED
        assert result.match_quality_score == 5
        assert "below minimum threshold 20" in result.message
        assert not queue.contains(result.event_id)
        assert load_event(result.event_id).status == "skipped"

    def test_threshold_is_inclusive(self, session_factory, queue, surface, submission):
        pipeline = AdmissionPipeline(session_factory, queue, AdmissionConfig(min_match_quality=30))
        assert pipeline.admit(submission()).status is EventStatus.PENDING

    def test_duplicate_takes_precedence_over_gate(self, pipeline, surface, submission):
        pipeline.admit(submission(event_id="order-1"))
        second = pipeline.admit(submission(event_id="order-1", user_data={"fn": "Ann"}))
        assert second.status is EventStatus.DUPLICATE

    def test_skipped_event_does_not_hold_claim(self, pipeline, surface, submission, queue, session_factory):
        weak = pipeline.admit(submission(event_id="order-1", user_data={"ct": "Austin"}))
        strong = pipeline.admit(submission(
            event_id="order-1",
            user_data={"em": "a@example.com", "ph": "+1 555 123 4567"},
        ))

        assert weak.status is EventStatus.SKIPPED
        assert strong.status is EventStatus.PENDING
        assert queue.contains(strong.event_id)
        with session_scope(session_factory) as session:
            assert session.query(DedupClaimModel).one().event_id == strong.event_id

    def test_repeated_skips_never_duplicate(self, pipeline, surface, submission):
        pipeline.admit(submission(event_id="order-1", user_data={"fn": "Ann"}))
        second = pipeline.admit(submission(event_id="order-1", user_data={"fn": "Ann"}))
        assert second.status is EventStatus.SKIPPED


class TestEnrichment:

    @pytest.fixture
    def pipeline(self, session_factory, queue):
        return AdmissionPipeline(
            session_factory, queue, AdmissionConfig(infer_country_from_phone=False)
        )

    def test_profile_enrichment_adds_phone(self, pipeline, surface, submission, load_event):
        pipeline.admit(submission(visitor_id="v1", user_data={"ph": "+1 555 123 4567"}))
        result = pipeline.admit(submission(visitor_id="v1", user_data={"em": "A@Example.com"}))

        assert result.match_quality_score == 55
        assert result.enriched
        event = load_event(result.event_id)
        assert event.identity["phone"] == sha("15551234567")

    def test_profile_accumulates_across_events(self, pipeline, surface, submission, session_factory):
        pipeline.admit(submission(visitor_id="v1", user_data={"em": "a@example.com"}))
        pipeline.admit(submission(visitor_id="v1", user_data={"ph": "+1 555 123 4567"}))

        with session_scope(session_factory) as session:
            profile = ProfileStore(session).lookup(surface, visitor_id="v1")
        assert profile.identity.email == sha("a@example.com")
        assert profile.identity.phone == sha("15551234567")
        assert profile.event_count == 2

    def test_returning_cookie_only_visitor_enriched(self, pipeline, surface, submission, load_event):
        fbp = "fb.1.1700000000000.123456789"
        pipeline.admit(submission(user_data={"em": "a@example.com", "fbp": fbp}))
        result = pipeline.admit(submission(user_data={"fbp": fbp}))

        assert result.enriched
        assert result.match_quality_score == 30 + 8
        assert load_event(result.event_id).identity["email"] == sha("a@example.com")

    def test_enrichment_disabled(self, session_factory, queue, surface, submission):
        pipeline = AdmissionPipeline(
            session_factory, queue, AdmissionConfig(enrichment_enabled=False)
        )
        pipeline.admit(submission(visitor_id="v1", user_data={"ph": "+1 555 123 4567"}))
        result = pipeline.admit(submission(visitor_id="v1", user_data={"em": "a@example.com"}))
        assert result.match_quality_score == 30
        assert not result.enriched

    def test_profiles_not_stored_when_disabled(self, session_factory, queue, surface, submission):
        pipeline = AdmissionPipeline(session_factory, queue, AdmissionConfig(store_profiles=False))
        pipeline.admit(submission(visitor_id="v1"))
        with session_scope(session_factory) as session:
            assert ProfileStore(session).lookup(surface, visitor_id="v1") is None

    def test_match_quality_logged(self, pipeline, surface, submission, session_factory):
        pipeline.admit(submission(visitor_id="v1", user_data={"ph": "+1 555 123 4567"}))
        result = pipeline.admit(submission(visitor_id="v1", user_data={"em": "a@example.com"}))

        with session_scope(session_factory) as session:
            log = session.query(MatchQualityLogModel).filter_by(event_id=result.event_id).one()
            assert log.score == 55
            assert log.has_email and log.has_phone
            assert log.was_enriched
            assert log.score_before_enrichment == 30
            assert log.enrichment_source == "profile"
            assert log.source_domain == "shop.example.com"


class TestBatchAdmission:

    def test_per_item_results(self, pipeline, surface, submission):
        results = pipeline.admit_batch([
            submission(event_id="a"),
            submission(surface_id="999"),
            {"event_name": "Purchase"},
            submission(event_id="a"),
        ])

        assert [r.index for r in results] == [0, 1, 2, 3]
        assert results[0].success and results[0].status is EventStatus.PENDING
        assert not results[1].success and "not found" in results[1].error
        assert not results[2].success and results[2].details["errors"]
        assert results[3].success and results[3].status is EventStatus.DUPLICATE

    def test_oversized_batch_rejected(self, session_factory, queue, surface, submission):
        pipeline = AdmissionPipeline(session_factory, queue, AdmissionConfig(max_batch_size=2))
        with pytest.raises(ValidationFailure):
            pipeline.admit_batch([submission(), submission(), submission()])
