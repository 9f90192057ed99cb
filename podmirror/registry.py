"""Feed registry backed by the database layer."""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session, sessionmaker

from .db import AlertModel, EpisodeModel, FeedModel
from .errors import FeedNotFound
from .models import (
    AT_BASE,
    AcquisitionOptions,
    CyclePosition,
    Feed,
    FetchedItem,
    ScheduleRule,
    ensure_utc,
    normalize_sponsorblock_categories,
    utcnow,
)
from .recurrence import validate_rule

logger = logging.getLogger(__name__)

FeedListener = Callable[[str], None]


def _feed_from_row(row: FeedModel) -> Feed:
    return Feed(
        id=row.id,
        source=row.source,
        title=row.title,
        rule=ScheduleRule.from_dict(json.loads(row.rule)) if row.rule else None,
        options=AcquisitionOptions.from_dict(
            json.loads(row.options) if row.options else None
        ),
        last_success_at=ensure_utc(row.last_success_at),
        last_attempt_at=ensure_utc(row.last_attempt_at),
        position=CyclePosition(
            offset_index=row.cycle_offset,
            base_fire=ensure_utc(row.cycle_base_fire),
        ),
        next_due=ensure_utc(row.next_due),
        alert=row.alert,
    )


def _episode_from_row(row: EpisodeModel) -> FetchedItem:
    return FetchedItem(
        source_id=row.source_id,
        title=row.title or row.source_id,
        link=row.link or "",
        published=ensure_utc(row.published),
        description=row.description,
        media_path=row.media_path,
    )


def _commit(session: Session) -> None:
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise


class FeedRegistry:
    """Stores feed definitions, their run bookkeeping and mirrored episodes."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        lock: Optional[threading.RLock] = None,
    ):
        self._session_factory = session_factory
        self._lock = lock or threading.RLock()
        self._listeners: List[FeedListener] = []

    def subscribe(self, listener: FeedListener) -> None:
        """Register a callback invoked with the feed id after a definition change."""
        self._listeners.append(listener)

    def _notify(self, feed_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(feed_id)
            except Exception:  # noqa: BLE001
                logger.exception("Feed change listener failed for %s", feed_id)

    def _require(self, session: Session, feed_id: str) -> FeedModel:
        row = session.get(FeedModel, feed_id)
        if row is None:
            raise FeedNotFound(feed_id)
        return row

    def get_feed(self, feed_id: str) -> Optional[Feed]:
        with self._lock, self._session_factory() as session:
            row = session.get(FeedModel, feed_id)
            return _feed_from_row(row) if row else None

    def require_feed(self, feed_id: str) -> Feed:
        feed = self.get_feed(feed_id)
        if feed is None:
            raise FeedNotFound(feed_id)
        return feed

    def list_feeds(self) -> List[Feed]:
        with self._lock, self._session_factory() as session:
            rows = session.execute(select(FeedModel).order_by(FeedModel.id)).scalars()
            return [_feed_from_row(row) for row in rows]

    def list_feeds_due_before(self, moment: datetime) -> List[Feed]:
        """Return scheduled feeds that are due by ``moment`` or were never scheduled."""
        stmt = (
            select(FeedModel)
            .where(FeedModel.rule.is_not(None))
            .where(or_(FeedModel.next_due.is_(None), FeedModel.next_due <= moment))
            .order_by(FeedModel.id)
        )
        with self._lock, self._session_factory() as session:
            return [_feed_from_row(row) for row in session.execute(stmt).scalars()]

    def earliest_next_due(self) -> Optional[datetime]:
        feeds = [feed for feed in self.list_feeds() if feed.rule and feed.next_due]
        if not feeds:
            return None
        return min(feed.next_due for feed in feeds)

    def upsert_feed(self, feed: Feed) -> Feed:
        """Create or update a feed definition.

        Bookkeeping survives an update unless the schedule rule changed, in
        which case the feed restarts from its next base fire.
        """
        if feed.rule is not None:
            validate_rule(feed.rule)
        options = dataclasses.replace(
            feed.options,
            sponsorblock_categories=normalize_sponsorblock_categories(
                list(feed.options.sponsorblock_categories)
            ),
        )
        rule_json = json.dumps(feed.rule.to_dict()) if feed.rule else None

        with self._lock, self._session_factory() as session:
            row = session.get(FeedModel, feed.id)
            if row is None:
                row = FeedModel(id=feed.id, created_at=utcnow())
                session.add(row)
                logger.info("Registering feed '%s' (%s)", feed.id, feed.source)
            elif row.rule != rule_json:
                logger.info("Schedule changed for feed '%s'; restarting its cycle", feed.id)
                row.cycle_offset = None
                row.cycle_base_fire = None
                row.next_due = None

            row.source = feed.source
            row.title = feed.title
            row.rule = rule_json
            row.options = json.dumps(options.to_dict())
            row.updated_at = utcnow()
            _commit(session)
            stored = _feed_from_row(row)

        self._notify(feed.id)
        return stored

    def remove_feed(self, feed_id: str) -> None:
        """Delete a feed together with its episodes and alerts."""
        with self._lock, self._session_factory() as session:
            session.delete(self._require(session, feed_id))
            session.execute(delete(EpisodeModel).where(EpisodeModel.feed_id == feed_id))
            session.execute(delete(AlertModel).where(AlertModel.feed_id == feed_id))
            _commit(session)
        logger.info("Removed feed '%s'", feed_id)
        self._notify(feed_id)

    def schedule_feed(
        self, feed_id: str, next_due: datetime, position: CyclePosition
    ) -> None:
        with self._lock, self._session_factory() as session:
            row = self._require(session, feed_id)
            row.next_due = next_due
            row.cycle_offset = position.offset_index
            row.cycle_base_fire = position.base_fire
            _commit(session)

    def record_attempt(self, feed_id: str, at: datetime) -> None:
        with self._lock, self._session_factory() as session:
            self._require(session, feed_id).last_attempt_at = at
            _commit(session)

    def unknown_items(self, feed_id: str, items: List[FetchedItem]) -> List[FetchedItem]:
        """Return the items whose source id is not yet stored for the feed."""
        source_ids = [item.source_id for item in items]
        if not source_ids:
            return []
        with self._lock, self._session_factory() as session:
            known = set(
                session.execute(
                    select(EpisodeModel.source_id).where(
                        EpisodeModel.feed_id == feed_id,
                        EpisodeModel.source_id.in_(source_ids),
                    )
                ).scalars()
            )
        return [item for item in items if item.source_id not in known]

    def record_run_outcome(
        self,
        feed_id: str,
        new_episodes: List[FetchedItem],
        next_due: Optional[datetime],
        position: CyclePosition = AT_BASE,
        at: Optional[datetime] = None,
    ) -> List[FetchedItem]:
        """Store a successful run and return the episodes that were actually new.

        Items whose source id is already stored for the feed are dropped, so
        replaying a run with an unknown outcome never duplicates episodes.
        """
        at = at or utcnow()
        with self._lock, self._session_factory() as session:
            row = self._require(session, feed_id)
            source_ids = [item.source_id for item in new_episodes]
            known = set()
            if source_ids:
                known = set(
                    session.execute(
                        select(EpisodeModel.source_id).where(
                            EpisodeModel.feed_id == feed_id,
                            EpisodeModel.source_id.in_(source_ids),
                        )
                    ).scalars()
                )

            stored: List[FetchedItem] = []
            for item in new_episodes:
                if item.source_id in known:
                    logger.debug(
                        "Skipping already stored episode %s for feed '%s'",
                        item.source_id,
                        feed_id,
                    )
                    continue
                known.add(item.source_id)
                session.add(
                    EpisodeModel(
                        feed_id=feed_id,
                        source_id=item.source_id,
                        title=item.title,
                        link=item.link,
                        published=item.published,
                        description=item.description,
                        media_path=item.media_path,
                        created_at=at,
                    )
                )
                stored.append(item)

            row.last_success_at = at
            row.next_due = next_due
            row.cycle_offset = position.offset_index
            row.cycle_base_fire = position.base_fire
            row.alert = None
            _commit(session)

        logger.info(
            "Recorded run for feed '%s': %d new of %d fetched items",
            feed_id,
            len(stored),
            len(new_episodes),
        )
        return stored

    def record_alert(
        self, feed_id: str, reason: str, at: Optional[datetime] = None
    ) -> None:
        at = at or utcnow()
        with self._lock, self._session_factory() as session:
            row = self._require(session, feed_id)
            row.alert = reason
            session.add(AlertModel(feed_id=feed_id, reason=reason, created_at=at))
            _commit(session)
        logger.error("Alert raised for feed '%s': %s", feed_id, reason)

    def list_episodes(self, feed_id: str) -> List[FetchedItem]:
        """Return stored episodes, newest first."""
        stmt = (
            select(EpisodeModel)
            .where(EpisodeModel.feed_id == feed_id)
            .order_by(EpisodeModel.published.desc(), EpisodeModel.id.desc())
        )
        with self._lock, self._session_factory() as session:
            return [_episode_from_row(row) for row in session.execute(stmt).scalars()]

    def list_alerts(self, feed_id: Optional[str] = None) -> List[Dict[str, object]]:
        stmt = select(AlertModel).order_by(AlertModel.id)
        if feed_id is not None:
            stmt = stmt.where(AlertModel.feed_id == feed_id)
        with self._lock, self._session_factory() as session:
            return [
                {
                    "feed_id": row.feed_id,
                    "reason": row.reason,
                    "created_at": ensure_utc(row.created_at),
                }
                for row in session.execute(stmt).scalars()
            ]
