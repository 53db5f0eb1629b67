"""
Shared fixtures: in-memory SQLite, an in-memory Redis double, a registered
surface and the assembled admission/delivery components.
"""

import time
from collections import defaultdict
from uuid import uuid4

import pytest
from redis.exceptions import LockNotOwnedError

from agents.admission_agent import AdmissionPipeline
from agents.delivery_agent import DeliveryScheduler, DeliveryWorker
from agents.delivery_driver import NullDriver
from agents.operator_commands import OperatorCommands
from core.config import AdmissionConfig, DeliveryConfig
from core.crypto import FieldCipher, configure_cipher
from core.database import create_db_engine, create_session_factory, init_db, session_scope
from core.delivery_queue import DeliveryQueue
from core.lease import LeaseArena
from schemas.tracking import SurfaceModel, TrackedEventModel


SURFACE_ID = "1234567890"
ACCESS_TOKEN = "EAAB-test-token"


class FakeLock:
    """Token-checked lock with expiry, mirroring redis-py's Lock"""

    def __init__(self, redis, name, timeout=None):
        self.redis = redis
        self.name = name
        self.timeout = timeout
        self.token = uuid4().hex

    def acquire(self, blocking=None):
        px = int(self.timeout * 1000) if self.timeout else None
        return bool(self.redis.set(self.name, self.token, nx=True, px=px))

    def release(self):
        if self.redis.get(self.name) != self.token:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        self.redis.delete(self.name)


class FakeRedis:
    """Single-process stand-in for the Redis commands the relay uses"""

    def __init__(self):
        self._values = {}
        self._expiry = {}
        self._zsets = defaultdict(dict)
        self._offset = 0.0

    def now(self):
        return time.time() + self._offset

    def advance(self, seconds):
        """Move the expiry clock forward"""
        self._offset += seconds

    def _purge(self, key):
        expires_at = self._expiry.get(key)
        if expires_at is not None and expires_at <= self.now():
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    def ping(self):
        return True

    def close(self):
        pass

    def set(self, key, value, nx=False, ex=None, px=None):
        self._purge(key)
        if nx and key in self._values:
            return None
        self._values[key] = value
        self._expiry.pop(key, None)
        if ex is not None:
            self._expiry[key] = self.now() + ex
        elif px is not None:
            self._expiry[key] = self.now() + px / 1000.0
        return True

    def get(self, key):
        self._purge(key)
        return self._values.get(key)

    def delete(self, *keys):
        removed = 0
        for key in keys:
            self._purge(key)
            if self._values.pop(key, None) is not None:
                removed += 1
            self._expiry.pop(key, None)
            if self._zsets.pop(key, None):
                removed += 1
        return removed

    def exists(self, *keys):
        count = 0
        for key in keys:
            self._purge(key)
            if key in self._values or self._zsets.get(key):
                count += 1
        return count

    def lock(self, name, timeout=None, blocking=True, thread_local=True, **kwargs):
        return FakeLock(self, name, timeout)

    def zadd(self, key, mapping):
        zset = self._zsets[key]
        added = sum(1 for member in mapping if member not in zset)
        zset.update({member: float(score) for member, score in mapping.items()})
        return added

    def zrangebyscore(self, key, min, max, start=None, num=None):
        low, high = float(min), float(max)
        members = sorted(
            (score, member)
            for member, score in self._zsets.get(key, {}).items()
            if low <= score <= high
        )
        result = [member.encode() for _, member in members]
        if start is not None and num is not None:
            result = result[start:start + num]
        return result

    def zrem(self, key, *members):
        zset = self._zsets.get(key, {})
        return sum(1 for member in members if zset.pop(member, None) is not None)

    def zscore(self, key, member):
        return self._zsets.get(key, {}).get(member)

    def zcard(self, key):
        return len(self._zsets.get(key, {}))


@pytest.fixture(autouse=True)
def cipher():
    """Fresh Fernet key per test"""
    return configure_cipher(FieldCipher.generate_key())


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def queue(fake_redis):
    return DeliveryQueue(fake_redis)


@pytest.fixture
def leases(fake_redis, delivery_config):
    return LeaseArena(fake_redis, ttl_seconds=delivery_config.lease_ttl_seconds)


@pytest.fixture
def admission_config():
    return AdmissionConfig()


@pytest.fixture
def delivery_config():
    return DeliveryConfig()


@pytest.fixture
def null_driver():
    return NullDriver()


@pytest.fixture
def make_surface(session_factory):
    """Register a surface; returns its public surface id"""

    def _make(surface_id=SURFACE_ID, **overrides):
        values = {
            "surface_id": surface_id,
            "name": f"Surface {surface_id}",
            "access_token": ACCESS_TOKEN,
            "domains": ["example.com"],
            "is_active": True,
        }
        values.update(overrides)
        with session_scope(session_factory) as session:
            session.add(SurfaceModel(**values))
        return surface_id

    return _make


@pytest.fixture
def surface(make_surface):
    return make_surface()


@pytest.fixture
def pipeline(session_factory, queue, admission_config):
    return AdmissionPipeline(session_factory, queue, admission_config)


@pytest.fixture
def worker(session_factory, null_driver, delivery_config):
    return DeliveryWorker(session_factory, null_driver, delivery_config)


@pytest.fixture
def scheduler(worker, queue, leases, delivery_config):
    return DeliveryScheduler(worker, queue, leases, delivery_config)


@pytest.fixture
def commands(session_factory, scheduler, queue, leases):
    return OperatorCommands(session_factory, scheduler, queue, leases)


@pytest.fixture
def load_event(session_factory):
    """Read a tracked event back in its own session"""

    def _load(event_id):
        with session_scope(session_factory) as session:
            return session.get(TrackedEventModel, event_id)

    return _load


@pytest.fixture
def submission():
    """Factory for submission payloads on the default surface"""

    def _make(**overrides):
        payload = {
            "surface_id": SURFACE_ID,
            "event_name": "Purchase",
            "source_url": "https://shop.example.com/checkout",
            "event_time": 1700000000,
            "user_data": {"em": "A@Example.com"},
        }
        payload.update(overrides)
        return payload

    return _make
