"""
Tests for the Redis-backed delayed delivery queue and the lease arena.
"""

import time

import pytest

from core.delivery_queue import DeliveryQueue
from core.lease import LeaseArena


class TestDeliveryQueue:

    def test_enqueue_and_claim(self, queue):
        queue.enqueue("evt-1")
        assert queue.contains("evt-1")
        assert queue.claim_due(10) == ["evt-1"]
        assert not queue.contains("evt-1")
        assert queue.depth() == 0

    def test_delayed_entry_not_due(self, queue):
        queue.enqueue("evt-1", delay_seconds=60)
        assert queue.claim_due(10) == []
        assert queue.claim_due(10, now=time.time() + 61) == ["evt-1"]

    def test_reenqueue_reschedules_instead_of_duplicating(self, queue):
        queue.enqueue("evt-1")
        eligible_at = queue.enqueue("evt-1", delay_seconds=300)
        assert queue.depth() == 1
        assert queue.eligible_at("evt-1") == pytest.approx(eligible_at)

    def test_claim_order_and_limit(self, queue):
        now = time.time()
        queue.enqueue("late", delay_seconds=0)
        queue.redis.zadd(queue.key, {"early": now - 100})
        assert queue.claim_due(1) == ["early"]
        assert queue.claim_due(1) == ["late"]

    def test_entry_claimed_once(self, fake_redis):
        first = DeliveryQueue(fake_redis)
        second = DeliveryQueue(fake_redis)
        first.enqueue("evt-1")
        assert first.claim_due(10) == ["evt-1"]
        assert second.claim_due(10) == []

    def test_remove(self, queue):
        queue.enqueue("evt-1")
        assert queue.remove("evt-1") is True
        assert queue.remove("evt-1") is False


class TestLeaseArena:

    @pytest.fixture
    def arena(self, fake_redis):
        return LeaseArena(fake_redis, ttl_seconds=45)

    def test_second_acquire_refused_while_held(self, arena):
        lease = arena.acquire("evt-1")
        assert lease is not None
        assert arena.is_held("evt-1")
        assert arena.acquire("evt-1") is None

    def test_release_allows_reacquire(self, arena):
        with arena.acquire("evt-1"):
            assert arena.acquire("evt-1") is None
        assert not arena.is_held("evt-1")
        assert arena.acquire("evt-1") is not None

    def test_lease_expires_after_ttl(self, arena, fake_redis):
        arena.acquire("evt-1")
        fake_redis.advance(46)
        assert not arena.is_held("evt-1")
        assert arena.acquire("evt-1") is not None

    def test_release_after_expiry_does_not_raise(self, arena, fake_redis):
        lease = arena.acquire("evt-1")
        fake_redis.advance(46)
        other = arena.acquire("evt-1")
        lease.release()
        # The new holder keeps its lease
        assert arena.is_held("evt-1")
        other.release()
        assert not arena.is_held("evt-1")

    def test_release_is_idempotent(self, arena):
        lease = arena.acquire("evt-1")
        lease.release()
        lease.release()
        assert not arena.is_held("evt-1")
