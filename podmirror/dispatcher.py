"""Single-worker, rate-limited dispatch of acquisition jobs."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Set, Tuple

from .errors import FeedNotFound, FetchFailure, FetchTimeout
from .jobqueue import JobQueue
from .models import AT_BASE, BurstPolicy, CyclePosition, Feed, FetchedItem, Job, utcnow
from .publisher import FeedPublisher
from .recurrence import next_due
from .registry import FeedRegistry

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Waiter = Callable[[float], bool]

_TICK = timedelta(microseconds=1)
_ERROR_BACKOFF_SECONDS = 5.0


@dataclass
class DispatcherConfig:
    """Operator-tunable pacing for the dispatcher."""

    min_dispatch_spacing: timedelta = timedelta(minutes=5)
    job_timeout: timedelta = timedelta(minutes=30)
    max_idle_wait: timedelta = timedelta(minutes=15)
    wake_interval: timedelta = timedelta(seconds=1)
    timeout_grace: timedelta = timedelta(seconds=30)
    burst_policy: BurstPolicy = BurstPolicy.STOP_ON_NEW_ITEMS


class _Abandoned(Exception):
    """The dispatcher was stopped while an acquisition was in flight."""


class Dispatcher:
    """Pulls due jobs one at a time, never faster than the configured spacing.

    The dispatcher owns no durable state: its throttle cursor is restored
    from the queue with :meth:`restore_cursor`, and every job transition is
    committed before the next step runs. ``clock`` and ``waiter`` are
    injectable so tests can drive it on virtual time; ``waiter(seconds)``
    blocks for up to ``seconds`` and returns True when woken early.
    """

    def __init__(
        self,
        registry: FeedRegistry,
        queue: JobQueue,
        fetcher,
        config: Optional[DispatcherConfig] = None,
        publisher: Optional[FeedPublisher] = None,
        clock: Clock = utcnow,
        waiter: Optional[Waiter] = None,
    ):
        self.registry = registry
        self.queue = queue
        self.fetcher = fetcher
        self.config = config or DispatcherConfig()
        self.publisher = publisher
        self._clock = clock
        self._wakeup = threading.Event()
        self._stopping = threading.Event()
        self._waiter = waiter or self._wakeup.wait
        self._changed: Set[str] = set()
        self._changed_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.last_dispatch: Optional[datetime] = None

    def restore_cursor(self) -> Optional[datetime]:
        self.last_dispatch = self.queue.last_dispatch_time()
        if self.last_dispatch:
            logger.info("Restored last dispatch time: %s", self.last_dispatch)
        return self.last_dispatch

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self.run, name="dispatcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal shutdown and wait for the loop to exit."""
        self._stopping.set()
        self._wakeup.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Dispatcher did not stop within %s seconds", timeout)

    def notify(self, feed_id: Optional[str] = None) -> None:
        """Feed-change callback: wake the loop so the change is scheduled promptly."""
        if feed_id is not None:
            with self._changed_lock:
                self._changed.add(feed_id)
        self._wakeup.set()

    def run(self) -> None:
        logger.info(
            "Dispatcher started (spacing %s, job timeout %s)",
            self.config.min_dispatch_spacing,
            self.config.job_timeout,
        )
        while not self._stopping.is_set():
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Dispatcher iteration failed")
                self._pause(_ERROR_BACKOFF_SECONDS, wake_on_change=False)
        logger.info("Dispatcher stopped")

    def _has_changes(self) -> bool:
        with self._changed_lock:
            return bool(self._changed)

    def _pause(self, seconds: float, wake_on_change: bool) -> None:
        """Wait on the clock in wake-interval slices; always ends on stop."""
        end = self._clock() + timedelta(seconds=seconds)
        slice_seconds = self.config.wake_interval.total_seconds()
        while not self._stopping.is_set():
            remaining = (end - self._clock()).total_seconds()
            if remaining <= 0:
                return
            woke = self._waiter(min(remaining, slice_seconds))
            if woke:
                self._wakeup.clear()
                if wake_on_change and self._has_changes():
                    return

    def _idle(self, now: datetime) -> None:
        upcoming = [
            moment
            for moment in (self.queue.earliest_pending_due(), self.registry.earliest_next_due())
            if moment is not None and moment > now
        ]
        wait = self.config.max_idle_wait
        if upcoming:
            wait = min(wait, min(upcoming) - now)
        logger.debug("Nothing due; idling for %s", wait)
        self._pause(wait.total_seconds(), wake_on_change=True)

    def _drain_changes(self) -> List[str]:
        with self._changed_lock:
            changed = sorted(self._changed)
            self._changed.clear()
        return changed

    def apply_feed_changes(self) -> None:
        """Drop pending jobs made stale by feed edits or removals."""
        for feed_id in self._drain_changes():
            feed = self.registry.get_feed(feed_id)
            if feed is None or feed.rule is None or feed.next_due is None:
                self.queue.cancel_pending(feed_id)

    def schedule_idle_feeds(self, now: datetime) -> List[Job]:
        """Enqueue the next job for every scheduled feed that has none."""
        enqueued = []
        for feed in self.registry.list_feeds():
            if feed.rule is None or self.queue.active_job(feed.id) is not None:
                continue
            due, position = feed.next_due, feed.position
            if due is None:
                due, position = next_due(
                    feed.rule, now, feed.position, policy=self.config.burst_policy
                )
                self.registry.schedule_feed(feed.id, due, position)
            job = self.queue.enqueue_if_absent(feed.id, due, at=now)
            if job is not None:
                enqueued.append(job)
        return enqueued

    def _natural_next(
        self, feed: Feed, job: Job, moment: datetime, found_new_items: bool
    ) -> Tuple[Optional[datetime], CyclePosition]:
        if feed.rule is None:
            return None, AT_BASE
        if job.manual and feed.next_due is not None and feed.next_due > job.scheduled_for:
            # Manual runs leave a still-upcoming regular run where it was.
            return feed.next_due, feed.position
        after = max(moment, job.scheduled_for + _TICK)
        return next_due(
            feed.rule,
            after,
            feed.position,
            found_new_items=found_new_items,
            policy=self.config.burst_policy,
        )

    def run_once(self) -> Optional[Job]:
        """Run one loop iteration; returns the job dispatched, if any."""
        if self._stopping.is_set():
            return None

        now = self._clock()
        spacing = self.config.min_dispatch_spacing
        if self.last_dispatch is not None and now - self.last_dispatch < spacing:
            remaining = spacing - (now - self.last_dispatch)
            logger.debug("Throttling dispatch for %s", remaining)
            self._pause(remaining.total_seconds(), wake_on_change=False)
            if self._stopping.is_set():
                return None
            now = self._clock()

        self.apply_feed_changes()
        self.schedule_idle_feeds(now)

        job = self.queue.next_eligible(now)
        if job is None:
            self._idle(now)
            return None
        return self._dispatch(job, now)

    def _dispatch(self, job: Job, now: datetime) -> Optional[Job]:
        feed = self.registry.get_feed(job.feed_id)
        if feed is None:
            logger.warning("Dropping job %d for unknown feed '%s'", job.id, job.feed_id)
            self.queue.cancel_pending(job.feed_id)
            return None

        job = self.queue.mark_dispatched(job.id, now)
        self.last_dispatch = now
        self.registry.record_attempt(feed.id, now)
        logger.info(
            "Dispatching job %d for feed '%s' (attempt %d, scheduled %s)",
            job.id,
            feed.id,
            job.attempts + 1,
            job.scheduled_for,
        )

        try:
            items = self._acquire(feed)
        except _Abandoned:
            logger.warning(
                "Stopped with job %d for feed '%s' in flight; it will be requeued on restart",
                job.id,
                feed.id,
            )
            return job
        except FetchFailure as exc:
            self._handle_failure(job, str(exc))
            return job
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error acquiring feed '%s'", feed.id)
            self._handle_failure(job, f"{type(exc).__name__}: {exc}")
            return job

        self._handle_success(job, items)
        return job

    def _acquire(self, feed: Feed) -> List[FetchedItem]:
        """Run the fetcher on a worker thread, bounded by the job timeout."""
        timeout = self.config.job_timeout.total_seconds()
        future: concurrent.futures.Future = concurrent.futures.Future()

        def work() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.fetcher.acquire(feed, timeout))
            except BaseException as exc:  # noqa: BLE001
                future.set_exception(exc)

        threading.Thread(target=work, name=f"acquire-{feed.id}", daemon=True).start()

        deadline = time.monotonic() + timeout + self.config.timeout_grace.total_seconds()
        slice_seconds = self.config.wake_interval.total_seconds()
        while True:
            if self._stopping.is_set():
                raise _Abandoned()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise FetchTimeout(
                    f"Acquisition for feed '{feed.id}' exceeded {self.config.job_timeout}"
                )
            try:
                return future.result(timeout=min(remaining, slice_seconds))
            except concurrent.futures.TimeoutError:
                continue

    def _handle_success(self, job: Job, items: List[FetchedItem]) -> None:
        finished = self._clock()
        self.queue.mark_succeeded(job.id, item_count=len(items), at=finished)

        feed = self.registry.get_feed(job.feed_id)
        if feed is None:
            logger.warning("Feed '%s' was removed while job %d ran", job.feed_id, job.id)
            return

        new_items = self.registry.unknown_items(feed.id, items)
        due, position = self._natural_next(feed, job, finished, bool(new_items))
        try:
            stored = self.registry.record_run_outcome(
                feed.id, new_items, due, position, at=finished
            )
        except FeedNotFound:
            logger.warning("Feed '%s' was removed while job %d ran", feed.id, job.id)
            return

        if due is not None:
            self.queue.enqueue_if_absent(feed.id, due, at=finished)
            logger.info(
                "Feed '%s' next due at %s (%s)", feed.id, due, position.describe()
            )
        if stored:
            self._publish(feed)

    def _handle_failure(self, job: Job, error: str) -> None:
        finished = self._clock()
        outcome = self.queue.mark_failed(job.id, error, at=finished)
        if not outcome.exhausted:
            return

        feed = self.registry.get_feed(job.feed_id)
        if feed is None:
            return
        self.registry.record_alert(
            feed.id,
            f"Acquisition failed {outcome.job.attempts} times: {error}",
            at=finished,
        )
        due, position = self._natural_next(feed, job, finished, found_new_items=False)
        if due is not None:
            self.registry.schedule_feed(feed.id, due, position)
            self.queue.enqueue_if_absent(feed.id, due, at=finished)
            logger.info("Feed '%s' will be retried at its next run, %s", feed.id, due)

    def _publish(self, feed: Feed) -> None:
        if self.publisher is None:
            return
        try:
            self.publisher.publish(feed, self.registry.list_episodes(feed.id))
        except Exception:  # noqa: BLE001
            logger.exception("Failed to publish feed '%s'", feed.id)
