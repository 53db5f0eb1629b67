"""
Service assembly

Builds the shared objects (engine, Redis, queue, leases, driver, pipeline,
worker, scheduler) once per process from TrackingSettings. The intake API
and the worker entry point both go through build_services.
"""

from dataclasses import dataclass
from typing import Optional

import redis
import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from agents.admission_agent import AdmissionPipeline
from agents.delivery_agent import DeliveryScheduler, DeliveryWorker
from agents.delivery_driver import DeliveryDriver, build_driver
from agents.match_quality_report import MatchQualityReporter
from agents.operator_commands import OperatorCommands
from core.config import TrackingSettings, get_settings
from core.crypto import configure_cipher, get_cipher
from core.database import create_db_engine, create_session_factory, init_db
from core.delivery_queue import DeliveryQueue
from core.lease import LeaseArena

logger = structlog.get_logger()


@dataclass
class TrackingServices:
    settings: TrackingSettings
    engine: Engine
    session_factory: sessionmaker
    redis: redis.Redis
    queue: DeliveryQueue
    leases: LeaseArena
    driver: DeliveryDriver
    pipeline: AdmissionPipeline
    worker: DeliveryWorker
    scheduler: DeliveryScheduler
    commands: OperatorCommands
    reporter: MatchQualityReporter

    def close(self) -> None:
        self.driver.close()
        self.redis.close()
        self.engine.dispose()
        logger.info("services_closed")


def build_services(
    settings: Optional[TrackingSettings] = None,
    redis_client: Optional[redis.Redis] = None,
    engine: Optional[Engine] = None,
    driver: Optional[DeliveryDriver] = None,
) -> TrackingServices:
    """
    Wire every component from settings

    Raises:
        ConfigurationError: invalid delivery timing or no encryption key
    """
    settings = settings or get_settings()
    admission_config = settings.admission_config()
    delivery_config = settings.delivery_config()

    if settings.ENCRYPTION_KEY:
        configure_cipher(settings.ENCRYPTION_KEY)
    else:
        get_cipher()

    engine = engine or create_db_engine(settings.DATABASE_URL)
    init_db(engine)
    session_factory = create_session_factory(engine)

    redis_client = redis_client or redis.Redis.from_url(settings.REDIS_URL)
    queue = DeliveryQueue(redis_client)
    leases = LeaseArena(redis_client, ttl_seconds=delivery_config.lease_ttl_seconds)
    driver = driver or build_driver(settings)

    pipeline = AdmissionPipeline(session_factory, queue, admission_config)
    worker = DeliveryWorker(session_factory, driver, delivery_config)
    scheduler = DeliveryScheduler(worker, queue, leases, delivery_config)
    commands = OperatorCommands(session_factory, scheduler, queue, leases)

    logger.info(
        "services_built",
        env=settings.ENV,
        driver=driver.name,
        dedup_window_minutes=admission_config.dedup_window_minutes,
        max_attempts=delivery_config.max_attempts,
    )
    return TrackingServices(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        redis=redis_client,
        queue=queue,
        leases=leases,
        driver=driver,
        pipeline=pipeline,
        worker=worker,
        scheduler=scheduler,
        commands=commands,
        reporter=MatchQualityReporter(session_factory),
    )
