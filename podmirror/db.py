"""Database layer for feeds, episodes, alerts and the job queue."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class FeedModel(Base):
    """Feed definition plus its schedule bookkeeping."""

    __tablename__ = "feeds"

    id = Column(String, primary_key=True)
    source = Column(String, nullable=False)
    title = Column(String, nullable=True)
    rule = Column(Text, nullable=True)
    options = Column(Text, nullable=True)
    last_success_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    cycle_offset = Column(Integer, nullable=True)
    cycle_base_fire = Column(DateTime(timezone=True), nullable=True)
    next_due = Column(DateTime(timezone=True), nullable=True)
    alert = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now)


class EpisodeModel(Base):
    """An item mirrored for a feed; unique on its source identity."""

    __tablename__ = "episodes"
    __table_args__ = (UniqueConstraint("feed_id", "source_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    feed_id = Column(String, nullable=False, index=True)
    source_id = Column(String, nullable=False)
    title = Column(String, nullable=True)
    link = Column(String, nullable=True)
    published = Column(DateTime(timezone=True), nullable=True)
    description = Column(Text, nullable=True)
    media_path = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)


class AlertModel(Base):
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    feed_id = Column(String, nullable=False, index=True)
    reason = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now)


class JobModel(Base):
    """Acquisition jobs, live and archived.

    ``active_feed_id`` mirrors ``feed_id`` while the job is non-terminal and
    is NULL afterwards; its unique index allows one live job per feed.
    """

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    feed_id = Column(String, nullable=False, index=True)
    active_feed_id = Column(String, nullable=True, unique=True)
    scheduled_for = Column(DateTime(timezone=True), nullable=False, index=True)
    state = Column(String, nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    manual = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_now)
    dispatched_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    item_count = Column(Integer, nullable=True)


def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=FULL")
    finally:
        cursor.close()


def init_engine(connection_string: Optional[str]) -> Optional[Engine]:
    """Initialize the database engine and create missing tables."""
    if not connection_string:
        return None

    logger.info("Initializing database connection: %s", connection_string)
    kwargs = {}
    if connection_string.startswith("sqlite"):
        # Used from the dispatcher thread as well as the calling thread.
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in connection_string or connection_string == "sqlite://":
            kwargs["poolclass"] = StaticPool

    engine = create_engine(connection_string, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _set_sqlite_pragmas)
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory for the given engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)
