"""
Database engine and session helpers
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """
    Create an engine for `url`

    SQLite needs two adjustments: a single shared connection for in-memory
    databases, and explicit BEGIN so that SAVEPOINT (begin_nested) works with
    the pysqlite driver.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, echo=echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all relay tables"""
    from schemas.tracking import Base

    Base.metadata.create_all(engine)
    logger.info("Database tables created")


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """Transactional scope: commit on success, rollback on any error"""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
