"""
Lease Arena - per-event mutual exclusion for delivery attempts
Backed by redis-py locks (token-checked release, automatic expiry), so a
crashed worker's lease expires on its own after the TTL.
"""
import logging
from typing import Optional

from prometheus_client import Counter
from redis import Redis
from redis.exceptions import LockError


logger = logging.getLogger(__name__)

# Prometheus metrics
lease_contention_counter = Counter(
    'tracking_lease_contention_total',
    'Lease acquisitions refused because another holder is active'
)
lease_expired_counter = Counter(
    'tracking_lease_expired_on_release_total',
    'Leases that had already expired when released'
)

LEASE_KEY_PREFIX = "tracking:lease:delivery:"


class Lease:
    """A held lease; release it exactly once"""

    def __init__(self, event_id: str, lock):
        self.event_id = event_id
        self._lock = lock
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self._lock.release()
        except LockError:
            lease_expired_counter.inc()
            logger.warning(f"Lease for {self.event_id} expired before release")

    def __enter__(self) -> "Lease":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


class LeaseArena:
    """Non-blocking leases keyed by event id"""

    def __init__(self, redis_client: Redis, ttl_seconds: float, key_prefix: str = LEASE_KEY_PREFIX):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def acquire(self, event_id: str) -> Optional[Lease]:
        """Return a Lease, or None when another attempt holds it"""
        lock = self.redis.lock(
            f"{self.key_prefix}{event_id}",
            timeout=self.ttl_seconds,
            blocking=False,
            thread_local=False,
        )
        if not lock.acquire(blocking=False):
            lease_contention_counter.inc()
            return None
        return Lease(event_id, lock)

    def is_held(self, event_id: str) -> bool:
        return bool(self.redis.exists(f"{self.key_prefix}{event_id}"))
