"""
Delivery Queue - durable delayed queue of event ids on a Redis sorted set
Score = unix time the event becomes eligible for its next attempt.

- One entry per event id: re-enqueueing reschedules instead of duplicating
- claim_due removes each id with ZREM; only the caller whose ZREM succeeds
  owns that id, so concurrent workers never claim the same entry
- Backoff is expressed as a future eligibility time, workers never sleep
"""
import logging
import time
from typing import List, Optional

from prometheus_client import Counter, Gauge
from redis import Redis


logger = logging.getLogger(__name__)

# Prometheus metrics
queue_enqueued_counter = Counter(
    'tracking_delivery_queue_enqueued_total',
    'Event ids scheduled for delivery',
    ['reason']
)
queue_claimed_counter = Counter(
    'tracking_delivery_queue_claimed_total',
    'Event ids claimed by workers'
)
queue_depth_gauge = Gauge(
    'tracking_delivery_queue_depth',
    'Event ids waiting in the delivery queue'
)

DEFAULT_QUEUE_KEY = "tracking:delivery:queue"


class DeliveryQueue:
    """Delayed delivery queue backed by Redis"""

    def __init__(self, redis_client: Redis, key: str = DEFAULT_QUEUE_KEY):
        self.redis = redis_client
        self.key = key

    def enqueue(self, event_id: str, delay_seconds: float = 0, reason: str = "admitted") -> float:
        """
        Schedule `event_id` for delivery

        Returns:
            Unix time at which the event becomes eligible
        """
        eligible_at = time.time() + max(delay_seconds, 0)
        self.redis.zadd(self.key, {event_id: eligible_at})
        queue_enqueued_counter.labels(reason=reason).inc()
        logger.debug(f"Enqueued {event_id} (reason={reason}, delay={delay_seconds}s)")
        return eligible_at

    def claim_due(self, limit: int = 10, now: Optional[float] = None) -> List[str]:
        """Atomically take up to `limit` ids whose eligibility time has passed"""
        now = time.time() if now is None else now
        candidates = self.redis.zrangebyscore(self.key, "-inf", now, start=0, num=limit)

        claimed = []
        for member in candidates:
            event_id = member.decode() if isinstance(member, bytes) else member
            if self.redis.zrem(self.key, event_id) == 1:
                claimed.append(event_id)

        if claimed:
            queue_claimed_counter.inc(len(claimed))
            queue_depth_gauge.set(self.depth())
        return claimed

    def contains(self, event_id: str) -> bool:
        return self.redis.zscore(self.key, event_id) is not None

    def eligible_at(self, event_id: str) -> Optional[float]:
        return self.redis.zscore(self.key, event_id)

    def remove(self, event_id: str) -> bool:
        return self.redis.zrem(self.key, event_id) == 1

    def depth(self) -> int:
        return self.redis.zcard(self.key)
