"""Tests for the database layer."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from podmirror import db

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


def test_init_engine_without_connection_string_returns_none():
    assert db.init_engine(None) is None
    assert db.init_engine("") is None


def test_file_database_uses_wal_and_full_sync(tmp_path):
    engine = db.init_engine(f"sqlite:///{tmp_path / 'podmirror.db'}")
    try:
        with engine.connect() as connection:
            assert connection.execute(text("PRAGMA journal_mode")).scalar() == "wal"
            # FULL is synchronous level 2.
            assert connection.execute(text("PRAGMA synchronous")).scalar() == 2
    finally:
        engine.dispose()


def test_active_feed_id_allows_one_live_job_per_feed(session):
    session.add(
        db.JobModel(feed_id="alpha", active_feed_id="alpha", scheduled_for=T0, state="pending")
    )
    session.commit()

    session.add(
        db.JobModel(feed_id="alpha", active_feed_id="alpha", scheduled_for=T0, state="pending")
    )
    with pytest.raises(IntegrityError):
        session.commit()
    session.rollback()

    # Archived jobs release the slot.
    session.add(
        db.JobModel(feed_id="alpha", active_feed_id=None, scheduled_for=T0, state="failed")
    )
    session.add(
        db.JobModel(feed_id="alpha", active_feed_id=None, scheduled_for=T0, state="succeeded")
    )
    session.commit()


def test_episodes_are_unique_per_feed_and_source(session):
    session.add(db.EpisodeModel(feed_id="alpha", source_id="vid1"))
    session.add(db.EpisodeModel(feed_id="bravo", source_id="vid1"))
    session.commit()

    session.add(db.EpisodeModel(feed_id="alpha", source_id="vid1"))
    with pytest.raises(IntegrityError):
        session.commit()
