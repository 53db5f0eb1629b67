"""
Operator commands

Thin wrappers over the delivery contracts for support tooling: manual
retries, surface activation and recovery of Pending events that never made
it into the queue.
"""

from datetime import timedelta
from typing import Dict, List, Optional

import structlog
from sqlalchemy import select, update

from agents.delivery_agent import DeliveryScheduler
from contracts.tracking_schemas import EventStatus
from core.database import session_scope, utcnow
from core.delivery_queue import DeliveryQueue
from core.exceptions import InvalidTransition, SurfaceNotFound
from schemas.tracking import SurfaceModel, TrackedEventModel

logger = structlog.get_logger()


class OperatorCommands:

    def __init__(self, session_factory, scheduler: DeliveryScheduler, queue: DeliveryQueue, leases=None):
        self.session_factory = session_factory
        self.scheduler = scheduler
        self.queue = queue
        self.leases = leases or scheduler.leases

    def retry_event(self, event_id: str) -> None:
        """Failed → Pending, enqueued exactly once"""
        self.scheduler.retry(event_id)
        logger.info("operator_retry_event", event_id=event_id)

    def retry_failed(self, surface_id: str, limit: int = 1000) -> Dict[str, Optional[str]]:
        """
        Retry every Failed event of a surface

        Returns:
            event id → None on success, or the reason it was not retried
        """
        with session_scope(self.session_factory) as session:
            event_ids = list(session.execute(
                select(TrackedEventModel.id)
                .join(SurfaceModel)
                .where(
                    SurfaceModel.surface_id == surface_id,
                    TrackedEventModel.status == EventStatus.FAILED.value,
                )
                .order_by(TrackedEventModel.created_at)
                .limit(limit)
            ).scalars())

        results: Dict[str, Optional[str]] = {}
        for event_id in event_ids:
            try:
                self.scheduler.retry(event_id)
                results[event_id] = None
            except InvalidTransition as e:
                # Changed state since the listing above
                results[event_id] = e.message

        logger.info(
            "operator_retry_failed",
            surface_id=surface_id,
            retried=sum(1 for reason in results.values() if reason is None),
            skipped=sum(1 for reason in results.values() if reason is not None),
        )
        return results

    def set_surface_active(self, surface_id: str, active: bool) -> None:
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(SurfaceModel)
                .where(SurfaceModel.surface_id == surface_id)
                .values(is_active=active, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise SurfaceNotFound(
                    f"Tracking surface {surface_id} not found",
                    details={"surface_id": surface_id},
                )
        logger.info("operator_surface_active", surface_id=surface_id, active=active)

    def requeue_stranded(self, older_than_minutes: int = 10, limit: int = 1000) -> List[str]:
        """Enqueue Pending events older than the cutoff that are not queued or in flight"""
        cutoff = utcnow() - timedelta(minutes=older_than_minutes)
        with session_scope(self.session_factory) as session:
            candidates = list(session.execute(
                select(TrackedEventModel.id)
                .where(
                    TrackedEventModel.status == EventStatus.PENDING.value,
                    TrackedEventModel.created_at < cutoff,
                )
                .order_by(TrackedEventModel.created_at)
                .limit(limit)
            ).scalars())

        requeued = []
        for event_id in candidates:
            if self.queue.contains(event_id) or self.leases.is_held(event_id):
                continue
            self.queue.enqueue(event_id, reason="stranded")
            requeued.append(event_id)

        logger.info("operator_requeue_stranded", candidates=len(candidates), requeued=len(requeued))
        return requeued
