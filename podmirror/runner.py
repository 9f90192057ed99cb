"""High-level orchestration for the podmirror service."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

from . import db
from .config import AppConfig, parse_feeds_config
from .dispatcher import Dispatcher
from .fetcher import YtDlpFetcher
from .jobqueue import JobQueue, RecoveryReport
from .models import Feed, Job, utcnow
from .publisher import FeedPublisher
from .registry import FeedRegistry

logger = logging.getLogger(__name__)


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _job_summary(job: Optional[Job]) -> Optional[Dict[str, Any]]:
    if job is None:
        return None
    return {
        "id": job.id,
        "state": job.state.value,
        "scheduled_for": _isoformat(job.scheduled_for),
        "attempts": job.attempts,
        "manual": job.manual,
        "last_error": job.last_error,
    }


class Engine:
    """Owns the storage, the queue and the dispatcher thread for one process."""

    def __init__(self, config: AppConfig, fetcher=None, clock=utcnow, waiter=None):
        self.config = config
        self.clock = clock
        engine = db.init_engine(config.database.connection_string)
        if engine is None:
            raise RuntimeError("A database connection string is required.")
        self.db_engine = engine
        session_factory = db.get_session_factory(engine)

        lock = threading.RLock()
        self.registry = FeedRegistry(session_factory, lock=lock)
        self.queue = JobQueue(
            session_factory,
            lock=lock,
            max_attempts=config.max_attempts,
            retry_delay=config.retry_delay,
        )
        self.fetcher = fetcher or YtDlpFetcher(
            config.media_directory,
            binary=config.fetcher.binary,
            request_timeout=config.fetcher.request_timeout,
        )
        self.publisher = FeedPublisher(config.media_directory, config.base_url)
        self.dispatcher = Dispatcher(
            self.registry,
            self.queue,
            self.fetcher,
            config=config.dispatcher,
            publisher=self.publisher,
            clock=clock,
            waiter=waiter,
        )
        self.registry.subscribe(self.dispatcher.notify)

    def recover(self) -> RecoveryReport:
        return self.queue.recover()

    def start(self) -> RecoveryReport:
        """Recover the queue, schedule idle feeds and start dispatching."""
        report = self.recover()
        enqueued = self.dispatcher.schedule_idle_feeds(self.clock())
        logger.info("Scheduled %d feeds on startup", len(enqueued))
        self.dispatcher.restore_cursor()
        self.dispatcher.start()
        return report

    def stop(self, timeout: Optional[float] = None) -> None:
        self.dispatcher.stop(timeout)

    def sync_feeds(self, feeds: Optional[List[Feed]] = None) -> List[Feed]:
        """Upsert feed definitions, by default from the configured feeds file."""
        if feeds is None:
            if not self.config.feeds_file:
                raise ValueError("No feeds file configured.")
            feeds = parse_feeds_config(self.config.feeds_file)

        stored = []
        for feed in feeds:
            previous = self.registry.get_feed(feed.id)
            updated = self.registry.upsert_feed(feed)
            if previous is not None and previous.rule != updated.rule:
                # The dispatcher holding the old job may run in another process.
                self.queue.cancel_pending(feed.id)
            stored.append(updated)
        listed = {feed.id for feed in feeds}
        for existing in self.registry.list_feeds():
            if existing.id not in listed:
                logger.warning(
                    "Feed '%s' is registered but missing from the definitions file",
                    existing.id,
                )
        return stored

    def trigger(self, feed_id: str) -> Optional[Job]:
        """Process a feed as soon as the dispatcher allows."""
        self.registry.require_feed(feed_id)
        job = self.queue.expedite(feed_id, self.clock())
        self.dispatcher.notify(feed_id)
        return job

    def status(self) -> List[Dict[str, Any]]:
        active = {job.feed_id: job for job in self.queue.active_jobs()}
        rows = []
        for feed in self.registry.list_feeds():
            rows.append(
                {
                    "id": feed.id,
                    "source": feed.source,
                    "title": feed.title,
                    "schedule": feed.rule.to_dict() if feed.rule else None,
                    "next_due": _isoformat(feed.next_due),
                    "position": feed.position.describe(),
                    "last_success_at": _isoformat(feed.last_success_at),
                    "last_attempt_at": _isoformat(feed.last_attempt_at),
                    "alert": feed.alert,
                    "active_job": _job_summary(active.get(feed.id)),
                }
            )
        return rows
