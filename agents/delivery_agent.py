"""
Delivery Agent - hand Pending events to the attribution API
===========================================================

Purpose: move every Pending event to Sent or Failed, retrying transient
failures with backoff and never letting two attempts for the same event
overlap.

Components:
- DeliveryWorker: one attempt for one event (or one batch per surface);
  records the outcome with a single conditional UPDATE
- DeliveryScheduler: lease → attempt → requeue-with-backoff or finalize
- WorkerPool: daemon threads pulling due event ids from the queue

Contracts:
- Status only moves away from pending; every transition is
  `UPDATE ... WHERE status = 'pending'` and bumps attempt_count in the
  same statement
- Retryable errors are re-raised by the worker; the scheduler decides
  between requeue and DeliveryExhausted
- No session is held open while the driver call is in flight
- Nothing raised by a delivery attempt escapes DeliveryScheduler.process
"""

import signal
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import Counter, Histogram
from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from agents.delivery_driver import DeliveryDriver
from contracts.tracking_schemas import DeliveryResponse, EventStatus, SurfaceCredential
from core.config import DeliveryConfig
from core.database import session_scope, utcnow
from core.delivery_queue import DeliveryQueue
from core.exceptions import DeliveryError, DeliveryExhausted, InvalidTransition
from core.identity import IdentityRecord
from core.lease import LeaseArena
from schemas.tracking import SurfaceModel, TrackedEventModel

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)

# Metrics
delivery_attempts_total = Counter(
    'tracking_delivery_attempts_total',
    'Delivery attempts by outcome',
    ['outcome']
)
delivery_latency_seconds = Histogram(
    'tracking_delivery_latency_seconds',
    'Wall time of one delivery attempt',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)
delivery_overlap_suppressed_total = Counter(
    'tracking_delivery_overlap_suppressed_total',
    'Attempts skipped because another attempt held the lease'
)
delivery_retries_scheduled_total = Counter(
    'tracking_delivery_retries_scheduled_total',
    'Events requeued with backoff after a retryable failure'
)
delivery_exhausted_total = Counter(
    'tracking_delivery_exhausted_total',
    'Events finalized as failed after the last attempt'
)


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    NOOP = "noop"
    RETRY = "retry"


def build_event_payload(event: TrackedEventModel) -> Dict[str, Any]:
    """Attribution API representation of a stored event"""
    payload: Dict[str, Any] = {
        "event_name": event.resolved_event_name,
        "event_time": event.event_time,
        "event_id": event.external_event_id or event.id,
        "action_source": event.action_source,
        "user_data": IdentityRecord.from_storage(event.identity).to_api_format(),
    }
    if event.source_url:
        payload["event_source_url"] = event.source_url
    if event.custom_data:
        payload["custom_data"] = event.custom_data
    if event.opt_out:
        payload["opt_out"] = True
    return payload


@dataclass
class PreparedEvent:
    event_id: str
    credential: SurfaceCredential
    payload: Dict[str, Any]


class DeliveryWorker:
    """Performs delivery attempts and records their outcome"""

    def __init__(
        self,
        session_factory: sessionmaker,
        driver: DeliveryDriver,
        config: Optional[DeliveryConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.driver = driver
        self.config = config or DeliveryConfig()
        self.clock = clock

    # ── Single event ──────────────────────────────────────────

    def deliver(self, event_id: str) -> DeliveryOutcome:
        """
        One attempt for `event_id`

        Raises:
            DeliveryError: retryable failure, attempt already recorded
            Exception: unclassified failure, attempt already recorded
        """
        try:
            prepared = self._prepare([event_id]).get(event_id)
        except Exception as e:
            # Unreadable event or credential; counts against the attempt limit
            self._record_retryable(event_id, str(e) or type(e).__name__)
            raise
        if not isinstance(prepared, PreparedEvent):
            return prepared or DeliveryOutcome.NOOP

        started = time.monotonic()
        with tracer.start_as_current_span("tracking.delivery_attempt") as span:
            span.set_attribute("tracking.event_id", event_id)
            span.set_attribute("tracking.surface_id", prepared.credential.surface_id)
            try:
                response = self.driver.send_batch(
                    prepared.credential,
                    [prepared.payload],
                    test_code=prepared.credential.test_event_code,
                )
            except DeliveryError as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, e.message))
                if not e.retryable:
                    span.set_attribute("tracking.outcome", DeliveryOutcome.FAILED.value)
                    self._mark_failed(event_id, e.message, e.response)
                    return DeliveryOutcome.FAILED
                span.set_attribute("tracking.outcome", DeliveryOutcome.RETRY.value)
                self._record_retryable(event_id, e.message)
                raise
            except Exception as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.set_attribute("tracking.outcome", DeliveryOutcome.RETRY.value)
                self._record_retryable(event_id, str(e) or type(e).__name__)
                raise
            finally:
                delivery_latency_seconds.observe(time.monotonic() - started)

            if response.trace_id:
                span.set_attribute("tracking.trace_id", response.trace_id)
            outcome = self._apply_response(event_id, response)
            span.set_attribute("tracking.outcome", outcome.value)
            return outcome

    # ── Batches ───────────────────────────────────────────────

    def deliver_batch(self, event_ids: Sequence[str]) -> Dict[str, DeliveryOutcome]:
        """
        Deliver many events, one driver call per surface chunk

        Retryable failures are recorded and reported as RETRY instead of
        raised.
        """
        try:
            prepared = self._prepare(event_ids)
        except Exception as e:
            logger.warning("delivery_prepare_failed", events=len(event_ids), error=str(e))
            for event_id in event_ids:
                self._record_retryable(event_id, str(e) or type(e).__name__)
            return {event_id: DeliveryOutcome.RETRY for event_id in event_ids}
        outcomes: Dict[str, DeliveryOutcome] = {}

        by_surface: Dict[str, List[PreparedEvent]] = defaultdict(list)
        for event_id, item in prepared.items():
            if isinstance(item, PreparedEvent):
                by_surface[item.credential.surface_id].append(item)
            else:
                outcomes[event_id] = item

        size = self.config.batch_chunk_size
        for items in by_surface.values():
            for start in range(0, len(items), size):
                outcomes.update(self._deliver_chunk(items[start:start + size]))
        return outcomes

    def _deliver_chunk(self, items: List[PreparedEvent]) -> Dict[str, DeliveryOutcome]:
        credential = items[0].credential
        started = time.monotonic()
        with tracer.start_as_current_span("tracking.delivery_batch") as span:
            span.set_attribute("tracking.surface_id", credential.surface_id)
            span.set_attribute("tracking.batch_size", len(items))
            try:
                response = self.driver.send_batch(
                    credential,
                    [item.payload for item in items],
                    test_code=credential.test_event_code,
                )
            except DeliveryError as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, e.message))
                if not e.retryable:
                    for item in items:
                        self._mark_failed(item.event_id, e.message, e.response)
                    return {item.event_id: DeliveryOutcome.FAILED for item in items}
                for item in items:
                    self._record_retryable(item.event_id, e.message)
                return {item.event_id: DeliveryOutcome.RETRY for item in items}
            except Exception as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                logger.warning("delivery_batch_error", surface_id=credential.surface_id, error=str(e))
                for item in items:
                    self._record_retryable(item.event_id, str(e) or type(e).__name__)
                return {item.event_id: DeliveryOutcome.RETRY for item in items}
            finally:
                delivery_latency_seconds.observe(time.monotonic() - started)

        return {item.event_id: self._apply_response(item.event_id, response) for item in items}

    # ── Preparation ───────────────────────────────────────────

    def _prepare(self, event_ids: Sequence[str]) -> Dict[str, Any]:
        """
        Load events and their credentials in one short session

        Returns:
            event id → PreparedEvent, or the final outcome when no attempt
            should be made
        """
        result: Dict[str, Any] = {}
        unusable: Dict[str, str] = {}

        with session_scope(self.session_factory) as session:
            for event_id in event_ids:
                # Status first: terminal rows are never decrypted
                status = session.execute(
                    select(TrackedEventModel.status).where(TrackedEventModel.id == event_id)
                ).scalar_one_or_none()
                if status is None:
                    logger.warning("delivery_event_missing", event_id=event_id)
                    result[event_id] = DeliveryOutcome.NOOP
                    continue
                if EventStatus(status).is_final:
                    logger.debug("delivery_event_terminal", event_id=event_id, status=status)
                    result[event_id] = DeliveryOutcome.NOOP
                    continue

                event = session.get(TrackedEventModel, event_id)
                surface = event.surface
                if surface is None or not surface.is_active:
                    unusable[event_id] = "Tracking surface not found or inactive"
                    continue

                result[event_id] = PreparedEvent(
                    event_id=event_id,
                    credential=SurfaceCredential(
                        surface_id=surface.surface_id,
                        access_token=surface.access_token,
                        test_event_code=surface.test_event_code,
                    ),
                    payload=build_event_payload(event),
                )

        for event_id, message in unusable.items():
            self._mark_failed(event_id, message)
            result[event_id] = DeliveryOutcome.FAILED
        return result

    # ── Transitions ───────────────────────────────────────────

    def _apply_response(self, event_id: str, response: DeliveryResponse) -> DeliveryOutcome:
        if response.success:
            self._mark_sent(event_id, response)
            return DeliveryOutcome.SENT
        self._mark_failed(event_id, response.error_message, response.to_storage())
        return DeliveryOutcome.FAILED

    def _transition(self, event_id: str, count_attempt: bool = True, **values) -> bool:
        """Conditional UPDATE on a pending event; True when it applied"""
        if count_attempt:
            values["attempt_count"] = TrackedEventModel.attempt_count + 1
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(TrackedEventModel)
                .where(
                    TrackedEventModel.id == event_id,
                    TrackedEventModel.status == EventStatus.PENDING.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def _mark_sent(self, event_id: str, response: DeliveryResponse) -> None:
        applied = self._transition(
            event_id,
            status=EventStatus.SENT.value,
            sent_at=self.clock(),
            delivery_response=response.to_storage(),
            trace_id=response.trace_id,
            error_message=None,
        )
        delivery_attempts_total.labels(outcome="sent").inc()
        logger.info("delivery_sent", event_id=event_id, trace_id=response.trace_id, applied=applied)

    def _mark_failed(
        self,
        event_id: str,
        message: Optional[str],
        response: Optional[Dict[str, Any]] = None,
    ) -> None:
        applied = self._transition(
            event_id,
            status=EventStatus.FAILED.value,
            error_message=message,
            delivery_response=response,
        )
        delivery_attempts_total.labels(outcome="failed").inc()
        logger.warning("delivery_failed", event_id=event_id, error=message, applied=applied)

    def _record_retryable(self, event_id: str, message: str) -> None:
        self._transition(event_id, error_message=message)
        delivery_attempts_total.labels(outcome="retryable_error").inc()
        logger.info("delivery_retryable_error", event_id=event_id, error=message)

    def finalize_failure(self, event_id: str, error: Optional[str] = None) -> bool:
        """Pending → Failed after the last attempt; no-op if already terminal"""
        with session_scope(self.session_factory) as session:
            row = session.execute(
                select(TrackedEventModel.attempt_count, TrackedEventModel.error_message)
                .where(TrackedEventModel.id == event_id)
            ).first()
        if row is None:
            return False

        exhausted = DeliveryExhausted(row.attempt_count, error or row.error_message or "unknown error")
        applied = self._transition(
            event_id,
            count_attempt=False,
            status=EventStatus.FAILED.value,
            error_message=exhausted.message,
        )
        if applied:
            delivery_exhausted_total.inc()
            logger.warning("delivery_exhausted", event_id=event_id, attempts=row.attempt_count)
        return applied

    def retry(self, event_id: str) -> None:
        """
        Failed → Pending with attempts reset to zero

        Raises:
            InvalidTransition: event missing or not Failed
        """
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(TrackedEventModel)
                .where(
                    TrackedEventModel.id == event_id,
                    TrackedEventModel.status == EventStatus.FAILED.value,
                )
                .values(
                    status=EventStatus.PENDING.value,
                    error_message=None,
                    delivery_response=None,
                    attempt_count=0,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                logger.info("delivery_retry_requested", event_id=event_id)
                return

            status = session.execute(
                select(TrackedEventModel.status).where(TrackedEventModel.id == event_id)
            ).scalar_one_or_none()

        if status is None:
            raise InvalidTransition(
                f"Event {event_id} not found",
                error_code="event_not_found",
                details={"event_id": event_id},
            )
        raise InvalidTransition(
            f"Event {event_id} is {status}; only failed events can be retried",
            details={"event_id": event_id, "status": status},
        )

    # ── Reads ─────────────────────────────────────────────────

    def attempt_count(self, event_id: str) -> int:
        with session_scope(self.session_factory) as session:
            count = session.execute(
                select(TrackedEventModel.attempt_count).where(TrackedEventModel.id == event_id)
            ).scalar_one_or_none()
        return count or 0

    def pending_event_ids(self, surface_id: Optional[str] = None, limit: int = 1000) -> List[str]:
        query = select(TrackedEventModel.id).where(
            TrackedEventModel.status == EventStatus.PENDING.value
        )
        if surface_id is not None:
            query = query.join(SurfaceModel).where(SurfaceModel.surface_id == surface_id)
        query = query.order_by(TrackedEventModel.created_at).limit(limit)
        with session_scope(self.session_factory) as session:
            return list(session.execute(query).scalars())


class DeliveryScheduler:
    """Leases, attempts and reschedules events taken from the queue"""

    def __init__(
        self,
        worker: DeliveryWorker,
        queue: DeliveryQueue,
        leases: LeaseArena,
        config: Optional[DeliveryConfig] = None,
    ):
        self.worker = worker
        self.queue = queue
        self.leases = leases
        self.config = config or worker.config

    def process(self, event_id: str) -> Optional[DeliveryOutcome]:
        """
        One leased attempt for `event_id`

        Returns:
            The outcome, RETRY when rescheduled, or None when the attempt was
            suppressed because another one is in flight
        """
        try:
            lease = self.leases.acquire(event_id)
            if lease is None:
                delivery_overlap_suppressed_total.inc()
                logger.info("delivery_overlap_suppressed", event_id=event_id)
                self.queue.enqueue(event_id, self.config.overlap_requeue_seconds, reason="overlap")
                return None

            with lease:
                try:
                    return self.worker.deliver(event_id)
                except Exception as e:
                    return self._handle_retryable(event_id, str(e) or type(e).__name__)
        except Exception:
            logger.exception("delivery_process_error", event_id=event_id)
            return None

    def _handle_retryable(self, event_id: str, error: Optional[str] = None) -> DeliveryOutcome:
        attempts = self.worker.attempt_count(event_id)
        if attempts >= self.config.max_attempts:
            self.worker.finalize_failure(event_id, error)
            return DeliveryOutcome.FAILED

        delay = self.config.backoff_for(attempts)
        self.queue.enqueue(event_id, delay, reason="retry")
        delivery_retries_scheduled_total.inc()
        logger.info("delivery_retry_scheduled", event_id=event_id, attempts=attempts, delay_seconds=delay)
        return DeliveryOutcome.RETRY

    def run_once(self, limit: int = 10) -> Dict[str, Optional[DeliveryOutcome]]:
        """Process up to `limit` due events"""
        return {event_id: self.process(event_id) for event_id in self.queue.claim_due(limit)}

    def flush_surface(self, surface_id: str, limit: int = 1000) -> Dict[str, DeliveryOutcome]:
        """Deliver every pending event of a surface in batches"""
        leased = []
        try:
            for event_id in self.worker.pending_event_ids(surface_id, limit):
                lease = self.leases.acquire(event_id)
                if lease is None:
                    delivery_overlap_suppressed_total.inc()
                    continue
                leased.append(lease)
                self.queue.remove(event_id)

            outcomes = self.worker.deliver_batch([lease.event_id for lease in leased])
            for event_id, outcome in outcomes.items():
                if outcome is DeliveryOutcome.RETRY:
                    outcomes[event_id] = self._handle_retryable(event_id)
        finally:
            for lease in leased:
                lease.release()

        logger.info("surface_flushed", surface_id=surface_id, events=len(outcomes))
        return outcomes

    def retry(self, event_id: str) -> None:
        """Operator retry: Failed → Pending and enqueue once"""
        self.worker.retry(event_id)
        try:
            self.queue.enqueue(event_id, reason="manual_retry")
        except RedisError as e:
            logger.error("delivery_enqueue_failed", event_id=event_id, error=str(e))


class WorkerPool:
    """Daemon threads looping on DeliveryScheduler.run_once"""

    def __init__(
        self,
        scheduler: DeliveryScheduler,
        concurrency: int = 4,
        poll_interval: float = 1.0,
        batch_size: int = 10,
    ):
        self.scheduler = scheduler
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._run, name=f"delivery-worker-{i}", daemon=True)
            for i in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("worker_pool_started", concurrency=self.concurrency)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("worker_pool_stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                processed = self.scheduler.run_once(self.batch_size)
            except RedisError as e:
                logger.error("delivery_queue_unavailable", error=str(e))
                processed = {}
            if not processed:
                self._stop.wait(self.poll_interval)


def main() -> None:
    """Run the delivery worker pool until SIGINT/SIGTERM"""
    from agents.services import build_services
    from core.config import get_settings
    from core.logging import setup_logging

    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    services = build_services(settings)

    pool = WorkerPool(
        services.scheduler,
        concurrency=settings.WORKER_CONCURRENCY,
        poll_interval=settings.WORKER_POLL_INTERVAL_SECONDS,
    )
    stopped = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stopped.set())
    signal.signal(signal.SIGINT, lambda *_: stopped.set())

    pool.start()
    try:
        stopped.wait()
    finally:
        pool.stop(timeout=settings.DELIVERY_TIMEOUT_SECONDS)
        services.close()


if __name__ == "__main__":
    main()
