"""Durable acquisition job queue."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .db import JobModel
from .errors import PodmirrorError, QueueInvariantViolation
from .models import Job, JobState, ensure_utc, utcnow

logger = logging.getLogger(__name__)

UNKNOWN_OUTCOME = "unknown outcome"

_LIVE_STATES = (JobState.PENDING.value, JobState.DISPATCHED.value)
_TERMINAL_STATES = (JobState.SUCCEEDED.value, JobState.FAILED.value)


def _job_from_row(row: JobModel) -> Job:
    return Job(
        id=row.id,
        feed_id=row.feed_id,
        scheduled_for=ensure_utc(row.scheduled_for),
        state=JobState(row.state),
        attempts=row.attempts,
        last_error=row.last_error,
        manual=bool(row.manual),
        created_at=ensure_utc(row.created_at),
        dispatched_at=ensure_utc(row.dispatched_at),
        finished_at=ensure_utc(row.finished_at),
        item_count=row.item_count,
    )


@dataclass
class FailureOutcome:
    """Result of recording a failed attempt."""

    job: Job
    retry_job: Optional[Job] = None

    @property
    def exhausted(self) -> bool:
        return self.retry_job is None


@dataclass
class RecoveryReport:
    requeued: List[Job] = field(default_factory=list)
    discarded: List[int] = field(default_factory=list)
    repaired: List[int] = field(default_factory=list)

    def as_dict(self) -> Dict[str, List[int]]:
        return {
            "requeued": [job.id for job in self.requeued],
            "discarded": list(self.discarded),
            "repaired": list(self.repaired),
        }


class JobQueue:
    """Pending and in-flight acquisition jobs, at most one live job per feed."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        lock: Optional[threading.RLock] = None,
        max_attempts: int = 3,
        retry_delay: timedelta = timedelta(minutes=10),
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        self._session_factory = session_factory
        self._lock = lock or threading.RLock()
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def _active_row(self, session: Session, feed_id: str) -> Optional[JobModel]:
        stmt = select(JobModel).where(JobModel.active_feed_id == feed_id)
        return session.execute(stmt).scalar_one_or_none()

    def _transition(
        self, session: Session, job_id: int, expected: JobState
    ) -> JobModel:
        row = session.get(JobModel, job_id)
        if row is None:
            raise PodmirrorError(f"Job {job_id} does not exist.")
        if row.state != expected.value:
            raise PodmirrorError(
                f"Job {job_id} is {row.state}; expected {expected.value}."
            )
        return row

    def enqueue_if_absent(
        self,
        feed_id: str,
        due: datetime,
        manual: bool = False,
        attempts: int = 0,
        at: Optional[datetime] = None,
    ) -> Optional[Job]:
        """Insert a pending job unless the feed already has a live one."""
        with self._lock, self._session_factory() as session:
            if self._active_row(session, feed_id) is not None:
                logger.debug("Feed '%s' already has a live job; not enqueuing", feed_id)
                return None

            row = JobModel(
                feed_id=feed_id,
                active_feed_id=feed_id,
                scheduled_for=due,
                state=JobState.PENDING.value,
                attempts=attempts,
                manual=manual,
                created_at=at or utcnow(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.debug("Concurrent enqueue for feed '%s' ignored", feed_id)
                return None

            job = _job_from_row(row)

        logger.info(
            "Enqueued job %d for feed '%s' at %s%s",
            job.id,
            feed_id,
            job.scheduled_for,
            " (manual)" if manual else "",
        )
        return job

    def next_eligible(self, now: datetime) -> Optional[Job]:
        """Return the earliest due pending job, ties broken by feed id."""
        stmt = (
            select(JobModel)
            .where(JobModel.state == JobState.PENDING.value)
            .where(JobModel.scheduled_for <= now)
            .order_by(JobModel.scheduled_for, JobModel.feed_id)
            .limit(1)
        )
        with self._lock, self._session_factory() as session:
            row = session.execute(stmt).scalar_one_or_none()
            return _job_from_row(row) if row else None

    def mark_dispatched(self, job_id: int, at: datetime) -> Job:
        with self._lock, self._session_factory() as session:
            row = self._transition(session, job_id, JobState.PENDING)
            row.state = JobState.DISPATCHED.value
            row.dispatched_at = at
            session.commit()
            return _job_from_row(row)

    def mark_succeeded(
        self, job_id: int, item_count: int = 0, at: Optional[datetime] = None
    ) -> Job:
        with self._lock, self._session_factory() as session:
            row = self._transition(session, job_id, JobState.DISPATCHED)
            row.state = JobState.SUCCEEDED.value
            row.active_feed_id = None
            row.item_count = item_count
            row.last_error = None
            row.finished_at = at or utcnow()
            session.commit()
            return _job_from_row(row)

    def mark_failed(
        self, job_id: int, error: str, at: Optional[datetime] = None
    ) -> FailureOutcome:
        """Archive a failed attempt and schedule a retry while attempts remain."""
        at = at or utcnow()
        with self._lock, self._session_factory() as session:
            row = self._transition(session, job_id, JobState.DISPATCHED)
            row.attempts += 1
            row.state = JobState.FAILED.value
            row.active_feed_id = None
            row.last_error = error
            row.finished_at = at
            session.flush()

            retry_row = None
            if row.attempts < self.max_attempts:
                retry_row = JobModel(
                    feed_id=row.feed_id,
                    active_feed_id=row.feed_id,
                    scheduled_for=at + self.retry_delay,
                    state=JobState.PENDING.value,
                    attempts=row.attempts,
                    last_error=error,
                    manual=row.manual,
                    created_at=at,
                )
                session.add(retry_row)
            session.commit()

            outcome = FailureOutcome(
                job=_job_from_row(row),
                retry_job=_job_from_row(retry_row) if retry_row else None,
            )

        if outcome.exhausted:
            logger.warning(
                "Job %d for feed '%s' failed %d times; giving up: %s",
                job_id,
                outcome.job.feed_id,
                outcome.job.attempts,
                error,
            )
        else:
            logger.warning(
                "Job %d for feed '%s' failed (attempt %d of %d); retrying at %s: %s",
                job_id,
                outcome.job.feed_id,
                outcome.job.attempts,
                self.max_attempts,
                outcome.retry_job.scheduled_for,
                error,
            )
        return outcome

    def recover(self) -> RecoveryReport:
        """Restore queue invariants after a restart.

        Dispatched jobs whose outcome was never recorded go back to pending
        with their attempt count unchanged. Duplicate live jobs for one feed
        are reduced to the oldest one.
        """
        report = RecoveryReport()
        with self._lock, self._session_factory() as session:
            session.execute(
                update(JobModel)
                .where(JobModel.state.in_(_TERMINAL_STATES))
                .where(JobModel.active_feed_id.is_not(None))
                .values(active_feed_id=None)
            )

            stmt = (
                select(JobModel)
                .where(JobModel.state.in_(_LIVE_STATES))
                .order_by(JobModel.created_at, JobModel.id)
            )
            by_feed: Dict[str, List[JobModel]] = defaultdict(list)
            for row in session.execute(stmt).scalars():
                by_feed[row.feed_id].append(row)

            for feed_id, rows in sorted(by_feed.items()):
                keeper = rows[0]
                if len(rows) > 1:
                    violation = QueueInvariantViolation(feed_id, [row.id for row in rows])
                    logger.critical("%s; keeping job %d", violation, keeper.id)
                    for extra in rows[1:]:
                        session.delete(extra)
                        report.discarded.append(extra.id)
                    session.flush()

                if keeper.active_feed_id != feed_id:
                    keeper.active_feed_id = feed_id
                    report.repaired.append(keeper.id)

                if keeper.state == JobState.DISPATCHED.value:
                    keeper.state = JobState.PENDING.value
                    keeper.last_error = UNKNOWN_OUTCOME
                    logger.warning(
                        "Job %d for feed '%s' was in flight at shutdown; requeued",
                        keeper.id,
                        feed_id,
                    )
                    report.requeued.append(keeper)

            session.commit()
            report.requeued = [_job_from_row(row) for row in report.requeued]

        logger.info(
            "Queue recovery: %d requeued, %d discarded, %d repaired",
            len(report.requeued),
            len(report.discarded),
            len(report.repaired),
        )
        return report

    def expedite(self, feed_id: str, at: datetime) -> Optional[Job]:
        """Bring a feed's job forward to ``at``; only a job that moves is flagged manual."""
        with self._lock, self._session_factory() as session:
            row = self._active_row(session, feed_id)
            if row is not None:
                if row.state == JobState.DISPATCHED.value:
                    logger.info("Feed '%s' is already being processed", feed_id)
                    return None
                if ensure_utc(row.scheduled_for) <= at:
                    logger.info("Job %d for feed '%s' is already due", row.id, feed_id)
                    return _job_from_row(row)
                row.scheduled_for = at
                row.manual = True
                session.commit()
                logger.info("Expedited job %d for feed '%s'", row.id, feed_id)
                return _job_from_row(row)

        return self.enqueue_if_absent(feed_id, at, manual=True, at=at)

    def cancel_pending(self, feed_id: str) -> bool:
        """Drop a feed's pending job; in-flight jobs are left alone."""
        with self._lock, self._session_factory() as session:
            row = self._active_row(session, feed_id)
            if row is None or row.state != JobState.PENDING.value:
                return False
            session.delete(row)
            session.commit()
        logger.info("Cancelled pending job for feed '%s'", feed_id)
        return True

    def get_job(self, job_id: int) -> Optional[Job]:
        with self._lock, self._session_factory() as session:
            row = session.get(JobModel, job_id)
            return _job_from_row(row) if row else None

    def active_job(self, feed_id: str) -> Optional[Job]:
        with self._lock, self._session_factory() as session:
            row = self._active_row(session, feed_id)
            return _job_from_row(row) if row else None

    def active_jobs(self) -> List[Job]:
        stmt = (
            select(JobModel)
            .where(JobModel.state.in_(_LIVE_STATES))
            .order_by(JobModel.scheduled_for, JobModel.feed_id)
        )
        with self._lock, self._session_factory() as session:
            return [_job_from_row(row) for row in session.execute(stmt).scalars()]

    def history(self, feed_id: Optional[str] = None, limit: int = 50) -> List[Job]:
        """Return archived jobs, most recently finished first."""
        stmt = select(JobModel).where(JobModel.state.in_(_TERMINAL_STATES))
        if feed_id is not None:
            stmt = stmt.where(JobModel.feed_id == feed_id)
        stmt = stmt.order_by(JobModel.finished_at.desc(), JobModel.id.desc()).limit(limit)
        with self._lock, self._session_factory() as session:
            return [_job_from_row(row) for row in session.execute(stmt).scalars()]

    def earliest_pending_due(self) -> Optional[datetime]:
        stmt = select(func.min(JobModel.scheduled_for)).where(
            JobModel.state == JobState.PENDING.value
        )
        with self._lock, self._session_factory() as session:
            return ensure_utc(session.execute(stmt).scalar())

    def last_dispatch_time(self) -> Optional[datetime]:
        """Latest dispatch recorded in the queue; restores the throttle cursor."""
        with self._lock, self._session_factory() as session:
            return ensure_utc(session.execute(select(func.max(JobModel.dispatched_at))).scalar())
