"""
Tests for operator commands.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from agents.delivery_agent import DeliveryScheduler, DeliveryWorker
from agents.delivery_driver import DeliveryDriver
from agents.operator_commands import OperatorCommands
from core.database import session_scope, utcnow
from core.exceptions import DeliveryRejected, InvalidTransition, SurfaceNotFound
from schemas.tracking import SurfaceModel, TrackedEventModel


@pytest.fixture
def failing_driver():
    driver = MagicMock(spec=DeliveryDriver)
    driver.send_batch.side_effect = DeliveryRejected("Invalid parameter", code=100)
    return driver


@pytest.fixture
def failing_commands(session_factory, failing_driver, queue, leases, delivery_config):
    worker = DeliveryWorker(session_factory, failing_driver, delivery_config)
    scheduler = DeliveryScheduler(worker, queue, leases, delivery_config)
    return OperatorCommands(session_factory, scheduler, queue, leases)


def fail_all(commands):
    for event_id in commands.queue.claim_due(100):
        commands.scheduler.process(event_id)


class TestRetryCommands:

    def test_retry_event_enqueues_once(self, pipeline, surface, submission, failing_commands, queue, load_event):
        result = pipeline.admit(submission())
        fail_all(failing_commands)
        assert load_event(result.event_id).status == "failed"

        failing_commands.retry_event(result.event_id)
        assert load_event(result.event_id).status == "pending"
        assert queue.depth() == 1

        with pytest.raises(InvalidTransition):
            failing_commands.retry_event(result.event_id)
        assert queue.depth() == 1

    def test_retry_failed_for_surface(self, pipeline, surface, make_surface, submission, failing_commands, load_event):
        make_surface("222")
        ids = [pipeline.admit(submission(event_id=f"o-{i}")).event_id for i in range(2)]
        other = pipeline.admit(submission(surface_id="222")).event_id
        fail_all(failing_commands)

        results = failing_commands.retry_failed(surface)

        assert set(results) == set(ids)
        assert all(reason is None for reason in results.values())
        assert all(load_event(i).status == "pending" for i in ids)
        assert load_event(other).status == "failed"


class TestSurfaceActivation:

    def test_deactivate_and_reactivate(self, commands, surface, session_factory):
        commands.set_surface_active(surface, False)
        with session_scope(session_factory) as session:
            assert session.query(SurfaceModel).filter_by(surface_id=surface).one().is_active is False

        commands.set_surface_active(surface, True)
        with session_scope(session_factory) as session:
            assert session.query(SurfaceModel).filter_by(surface_id=surface).one().is_active is True

    def test_unknown_surface(self, commands):
        with pytest.raises(SurfaceNotFound):
            commands.set_surface_active("nope", False)


class TestRequeueStranded:

    def test_old_pending_events_requeued(self, pipeline, surface, submission, commands, queue, leases, session_factory):
        stranded = pipeline.admit(submission()).event_id
        queued = pipeline.admit(submission()).event_id
        in_flight = pipeline.admit(submission()).event_id
        fresh = pipeline.admit(submission()).event_id
        queue.remove(stranded)
        queue.remove(in_flight)
        queue.remove(fresh)
        leases.acquire(in_flight)

        old = utcnow() - timedelta(minutes=30)
        with session_scope(session_factory) as session:
            session.query(TrackedEventModel).filter(
                TrackedEventModel.id.in_([stranded, queued, in_flight])
            ).update({"created_at": old}, synchronize_session=False)

        assert commands.requeue_stranded(older_than_minutes=10) == [stranded]
        assert queue.contains(stranded)
        assert not queue.contains(fresh)
