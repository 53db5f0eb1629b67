"""
Admission Agent - validate, enrich, score, deduplicate and persist events
=========================================================================

Purpose: turn a raw submission into a Tracked Event with a terminal or
pending status, synchronously, before the submitter gets its answer.

Pipeline (one database transaction per submission):
1. Validate the submission, resolve the active surface, check the source
   domain against the surface allow-list
2. Normalize + hash the identity; enrich it from a stored profile
3. Score it and append a match-quality log row
4. Deduplicate on (surface, external event id) within the window
5. Quality gate: below the minimum score → Skipped
6. Otherwise Pending, enqueued for delivery after commit
7. Upsert the visitor profile with the final identity

Contracts:
- Dedup is enforced by a unique claim row, not by a read-then-write check:
  a fresh INSERT wins; an existing claim older than the window is taken over
  with a conditional UPDATE; anything else is a Duplicate
- Only Pending events hold a claim; a Skipped event releases the one it won
- Duplicate and Skipped are outcomes, not errors
- ValidationFailure / SurfaceNotFound are raised before anything is stored
"""

import calendar
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union
from uuid import uuid4

import structlog
from prometheus_client import Counter, Histogram
from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from agents.profile_store import EnrichmentResult, GeoResolver, ProfileStore
from contracts.tracking_schemas import (
    AdmissionResult,
    BatchItemResult,
    EventStatus,
    EventSubmission,
    RequestContext,
)
from core.config import AdmissionConfig
from core.database import session_scope, utcnow
from core.delivery_queue import DeliveryQueue
from core.exceptions import SurfaceNotFound, TrackingError, ValidationFailure
from core.identity import IdentityNormalizer, IdentityRecord
from core.scoring import FIELD_WEIGHTS, MatchQualityScorer, ScoreResult
from schemas.tracking import (
    DedupClaimModel,
    MatchQualityLogModel,
    SurfaceModel,
    TrackedEventModel,
)

logger = structlog.get_logger()

# Metrics
admissions_total = Counter(
    'tracking_admissions_total',
    'Admitted submissions by resulting status',
    ['status']
)
admission_rejections_total = Counter(
    'tracking_admission_rejections_total',
    'Submissions rejected before persistence',
    ['reason']
)
match_quality_score_histogram = Histogram(
    'tracking_match_quality_score',
    'Match-quality score of admitted events',
    buckets=[10, 20, 30, 40, 50, 60, 70, 80, 90, 100]
)
dedup_claims_total = Counter(
    'tracking_dedup_claims_total',
    'Dedup claim results',
    ['result']
)

SubmissionInput = Union[EventSubmission, Mapping[str, Any]]


def parse_submission(submission: SubmissionInput) -> EventSubmission:
    """Validate raw input into an EventSubmission, raising ValidationFailure"""
    if isinstance(submission, EventSubmission):
        return submission
    try:
        return EventSubmission.model_validate(dict(submission or {}))
    except ValidationError as e:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        admission_rejections_total.labels(reason="validation").inc()
        raise ValidationFailure("Invalid event submission", details={"errors": errors}) from e


def to_unix(moment: datetime) -> int:
    """Unix seconds for a naive UTC datetime"""
    return calendar.timegm(moment.utctimetuple())


class AdmissionPipeline:
    """
    Synchronous admission of event submissions

    One instance is shared by all request handlers; every call opens its own
    session from `session_factory`.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        queue: DeliveryQueue,
        config: Optional[AdmissionConfig] = None,
        normalizer: Optional[IdentityNormalizer] = None,
        scorer: Optional[MatchQualityScorer] = None,
        geo_resolver: Optional[GeoResolver] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.config = config or AdmissionConfig()
        self.normalizer = normalizer or IdentityNormalizer()
        self.scorer = scorer or MatchQualityScorer(target_scale=self.config.target_external_scale)
        self.geo_resolver = geo_resolver
        self.clock = clock

    def admit(
        self,
        submission: SubmissionInput,
        context: Optional[RequestContext] = None,
    ) -> AdmissionResult:
        """
        Admit one submission

        Raises:
            ValidationFailure: malformed submission or domain not allowed
            SurfaceNotFound: unknown or inactive surface
        """
        submission = parse_submission(submission)
        now = self.clock()

        with session_scope(self.session_factory) as session:
            surface = self._resolve_surface(session, submission)
            result = self._admit(session, surface, submission, context, now)

        if result.status is EventStatus.PENDING:
            self._enqueue(result.event_id)

        admissions_total.labels(status=result.status.value).inc()
        match_quality_score_histogram.observe(result.match_quality_score)
        logger.info(
            "event_admitted",
            event_id=result.event_id,
            surface_id=submission.surface_id,
            event_name=submission.event_name,
            status=result.status.value,
            score=result.match_quality_score,
            enriched=result.enriched,
        )
        return result

    def admit_batch(
        self,
        submissions: Sequence[SubmissionInput],
        context: Optional[RequestContext] = None,
    ) -> List[BatchItemResult]:
        """Admit each submission independently, reporting results per index"""
        if len(submissions) > self.config.max_batch_size:
            raise ValidationFailure(
                f"Batch exceeds maximum of {self.config.max_batch_size} events",
                details={"size": len(submissions)},
            )

        results = []
        for index, submission in enumerate(submissions):
            try:
                admitted = self.admit(submission, context)
            except TrackingError as e:
                results.append(BatchItemResult(
                    index=index,
                    success=False,
                    error=e.message,
                    details=e.details or None,
                ))
                continue
            results.append(BatchItemResult(
                index=index,
                success=True,
                event_id=admitted.event_id,
                status=admitted.status,
            ))
        return results

    # ── Steps ─────────────────────────────────────────────────

    def _resolve_surface(self, session: Session, submission: EventSubmission) -> SurfaceModel:
        surface = session.execute(
            select(SurfaceModel).where(SurfaceModel.surface_id == submission.surface_id)
        ).scalar_one_or_none()

        if surface is None or not surface.is_active:
            admission_rejections_total.labels(reason="surface_not_found").inc()
            raise SurfaceNotFound(
                f"Tracking surface {submission.surface_id} not found or inactive",
                details={"surface_id": submission.surface_id},
            )

        if not surface.accepts_domain(submission.source_domain):
            admission_rejections_total.labels(reason="domain_not_allowed").inc()
            raise ValidationFailure(
                f"Domain {submission.source_domain} is not allowed for this surface",
                error_code="domain_not_allowed",
                details={"domain": submission.source_domain},
            )
        return surface

    def _admit(
        self,
        session: Session,
        surface: SurfaceModel,
        submission: EventSubmission,
        context: Optional[RequestContext],
        now: datetime,
    ) -> AdmissionResult:
        store = ProfileStore(
            session,
            scorer=self.scorer,
            normalizer=self.normalizer,
            cross_surface=self.config.cross_surface_matching,
            geo_resolver=self.geo_resolver,
        )

        enrichment = self._enrich(store, surface, submission, context)
        identity = enrichment.identity
        score = self.scorer.score(identity)
        event_id = str(uuid4())

        if self.config.log_match_quality:
            session.add(self._quality_log(surface, submission, event_id, identity, score, enrichment, now))

        status, message = EventStatus.PENDING, None
        if submission.event_id:
            owner = self._claim(session, surface.id, submission.event_id, event_id, now)
            if owner is not None:
                status, message = EventStatus.DUPLICATE, f"Duplicate of event {owner}"

        if status is EventStatus.PENDING and score.score < self.config.min_match_quality:
            status = EventStatus.SKIPPED
            message = (
                f"Match quality {score.score} below minimum threshold "
                f"{self.config.min_match_quality}"
            )
            if submission.event_id:
                self._release_claim(session, surface.id, submission.event_id, event_id)

        session.add(TrackedEventModel(
            id=event_id,
            surface_pk=surface.id,
            external_event_id=submission.event_id,
            event_name=submission.event_name,
            custom_event_name=submission.custom_event_name,
            action_source=submission.action_source.value,
            source_url=submission.source_url,
            event_time=submission.event_time or to_unix(now),
            visitor_id=submission.visitor_id,
            identity=identity.to_storage(),
            custom_data=submission.custom_data.to_api_format() if submission.custom_data else None,
            opt_out=submission.opt_out,
            match_quality_score=score.score,
            status=status.value,
            error_message=message,
            attempt_count=0,
            created_at=now,
        ))

        if self.config.store_profiles:
            self._update_profile(session, store, surface, submission, identity)

        return AdmissionResult(
            event_id=event_id,
            external_event_id=submission.event_id,
            status=status,
            match_quality_score=score.score,
            external_scale=score.external_scale,
            tier=score.tier,
            enriched=enrichment.enriched,
            message=message,
        )

    def _enrich(
        self,
        store: ProfileStore,
        surface: SurfaceModel,
        submission: EventSubmission,
        context: Optional[RequestContext],
    ) -> EnrichmentResult:
        normalized = self.normalizer.normalize(submission.user_data, context)
        identity = normalized.identity

        if not self.config.enrichment_enabled:
            score = self.scorer.quick_score(identity)
            return EnrichmentResult(identity=identity, score_before=score, score_after=score)

        profile = store.lookup(
            surface.surface_id,
            visitor_id=submission.visitor_id,
            external_id=identity.external_id,
            email_hash=identity.email,
            phone_hash=identity.phone,
            browser_id=identity.browser_id,
        )
        return store.enrich(
            identity,
            profile,
            phone_country=normalized.phone_country,
            infer_country=self.config.infer_country_from_phone,
        )

    def _claim(
        self,
        session: Session,
        surface_pk: str,
        external_event_id: str,
        event_id: str,
        now: datetime,
    ) -> Optional[str]:
        """
        Claim (surface, external id) for `event_id`

        Returns:
            None when the claim was won, else the id of the event holding it
        """
        try:
            with session.begin_nested():
                session.add(DedupClaimModel(
                    surface_pk=surface_pk,
                    external_event_id=external_event_id,
                    event_id=event_id,
                    claimed_at=now,
                ))
            dedup_claims_total.labels(result="fresh").inc()
            return None
        except IntegrityError:
            pass

        cutoff = now - timedelta(minutes=self.config.dedup_window_minutes)
        takeover = session.execute(
            update(DedupClaimModel)
            .where(
                DedupClaimModel.surface_pk == surface_pk,
                DedupClaimModel.external_event_id == external_event_id,
                DedupClaimModel.claimed_at < cutoff,
            )
            .values(event_id=event_id, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if takeover.rowcount == 1:
            dedup_claims_total.labels(result="expired_takeover").inc()
            return None

        dedup_claims_total.labels(result="duplicate").inc()
        return session.execute(
            select(DedupClaimModel.event_id).where(
                DedupClaimModel.surface_pk == surface_pk,
                DedupClaimModel.external_event_id == external_event_id,
            )
        ).scalar_one()

    def _release_claim(
        self,
        session: Session,
        surface_pk: str,
        external_event_id: str,
        event_id: str,
    ) -> None:
        """Drop a claim won by an event that will never be delivered"""
        session.execute(
            delete(DedupClaimModel)
            .where(
                DedupClaimModel.surface_pk == surface_pk,
                DedupClaimModel.external_event_id == external_event_id,
                DedupClaimModel.event_id == event_id,
            )
            .execution_options(synchronize_session=False)
        )
        dedup_claims_total.labels(result="released").inc()

    def _quality_log(
        self,
        surface: SurfaceModel,
        submission: EventSubmission,
        event_id: str,
        identity: IdentityRecord,
        score: ScoreResult,
        enrichment: EnrichmentResult,
        now: datetime,
    ) -> MatchQualityLogModel:
        flags: Dict[str, bool] = {f"has_{field}": identity.has(field) for field in FIELD_WEIGHTS}
        return MatchQualityLogModel(
            surface_id=surface.surface_id,
            event_id=event_id,
            event_name=submission.custom_event_name or submission.event_name,
            source_domain=submission.source_domain or None,
            score=score.score,
            has_address=identity.has_address,
            was_enriched=enrichment.enriched,
            score_before_enrichment=enrichment.score_before,
            enrichment_source=enrichment.enrichment_source,
            event_date=now.date(),
            created_at=now,
            **flags,
        )

    def _update_profile(
        self,
        session: Session,
        store: ProfileStore,
        surface: SurfaceModel,
        submission: EventSubmission,
        identity: IdentityRecord,
    ) -> None:
        try:
            with session.begin_nested():
                store.upsert(
                    surface.surface_id,
                    submission.visitor_id,
                    identity,
                    source_domain=submission.source_domain or None,
                )
        except SQLAlchemyError as e:
            # The event itself is still admitted; the profile catches up next time
            logger.warning(
                "profile_upsert_failed",
                surface_id=surface.surface_id,
                visitor_id=submission.visitor_id,
                error=str(e),
            )

    def _enqueue(self, event_id: str) -> None:
        try:
            self.queue.enqueue(event_id, reason="admitted")
        except RedisError as e:
            # Stays Pending in the database; requeue_stranded picks it up
            logger.error("delivery_enqueue_failed", event_id=event_id, error=str(e))
