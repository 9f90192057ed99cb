import threading
from datetime import time, timedelta

import pytest

from podmirror.dispatcher import Dispatcher, DispatcherConfig
from podmirror.errors import FetchFailure
from podmirror.jobqueue import JobQueue
from podmirror.models import Feed, FetchedItem, Interval, JobState, ScheduleRule, Unit
from podmirror.publisher import FeedPublisher
from podmirror.registry import FeedRegistry

DAILY = ScheduleRule(base=Interval(Unit.DAYS))
EVERY_MINUTE = ScheduleRule(base=Interval(Unit.MINUTES))


class RecordingFetcher:
    def __init__(self, clock, results=None):
        self.clock = clock
        self.calls = []
        self.results = results or {}

    def acquire(self, feed, timeout):
        self.calls.append((feed.id, self.clock()))
        result = self.results.get(feed.id, [])
        if isinstance(result, Exception):
            raise result
        return list(result)


@pytest.fixture
def registry(session_factory):
    return FeedRegistry(session_factory)


@pytest.fixture
def queue(session_factory):
    return JobQueue(session_factory, max_attempts=3, retry_delay=timedelta(minutes=10))


def _dispatcher(registry, queue, fetcher, clock, publisher=None, **overrides):
    settings = {
        "min_dispatch_spacing": timedelta(minutes=5),
        "wake_interval": timedelta(seconds=60),
    }
    settings.update(overrides)
    dispatcher = Dispatcher(
        registry,
        queue,
        fetcher,
        config=DispatcherConfig(**settings),
        publisher=publisher,
        clock=clock,
        waiter=clock.wait,
    )
    registry.subscribe(dispatcher.notify)
    return dispatcher


def test_simultaneously_due_feeds_are_spaced_in_feed_id_order(registry, queue, clock, t0):
    for feed_id in ("charlie", "alpha", "bravo"):
        registry.upsert_feed(Feed(id=feed_id, source=f"UC{feed_id}", rule=DAILY))
    fetcher = RecordingFetcher(clock)
    dispatcher = _dispatcher(registry, queue, fetcher, clock)

    for _ in range(3):
        assert dispatcher.run_once() is not None

    assert fetcher.calls == [
        ("alpha", t0),
        ("bravo", t0 + timedelta(minutes=5)),
        ("charlie", t0 + timedelta(minutes=10)),
    ]
    for feed_id in ("alpha", "bravo", "charlie"):
        upcoming = queue.active_job(feed_id)
        assert upcoming.state is JobState.PENDING
        assert upcoming.scheduled_for == t0 + timedelta(days=1)


def test_exhausted_retries_raise_one_alert_and_wait_for_next_recurrence(
    registry, queue, clock, t0
):
    registry.upsert_feed(Feed(id="alpha", source="UCalpha", rule=DAILY))
    fetcher = RecordingFetcher(clock, {"alpha": FetchFailure("network down")})
    dispatcher = _dispatcher(registry, queue, fetcher, clock)

    for _ in range(10):
        dispatcher.run_once()
        if len(queue.history("alpha")) == 3:
            break

    assert [moment for _, moment in fetcher.calls] == [
        t0,
        t0 + timedelta(minutes=10),
        t0 + timedelta(minutes=20),
    ]
    history = queue.history("alpha")
    assert [job.state for job in history] == [JobState.FAILED] * 3
    assert len(registry.list_alerts("alpha")) == 1
    assert "network down" in registry.get_feed("alpha").alert

    upcoming = queue.active_job("alpha")
    assert upcoming.scheduled_for == t0 + timedelta(days=1)
    assert upcoming.attempts == 0
    assert registry.get_feed("alpha").next_due == t0 + timedelta(days=1)


def test_success_stores_episodes_publishes_and_schedules_burst(
    registry, queue, clock, t0, tmp_path
):
    rule = ScheduleRule(
        base=Interval(Unit.MONDAY), at=time(0, 0), offsets=(timedelta(hours=1),)
    )
    registry.upsert_feed(Feed(id="alpha", source="UCalpha", rule=rule, title="Alpha"))
    media = tmp_path / "alpha" / "vid1.m4a"
    media.parent.mkdir(parents=True)
    media.write_bytes(b"audio")
    item = FetchedItem(
        source_id="vid1",
        title="First",
        link="https://www.youtube.com/watch?v=vid1",
        published=t0,
        media_path=str(media),
    )
    fetcher = RecordingFetcher(clock, {"alpha": [item]})
    publisher = FeedPublisher(str(tmp_path))
    dispatcher = _dispatcher(registry, queue, fetcher, clock, publisher=publisher)

    job = dispatcher.run_once()

    done = queue.get_job(job.id)
    assert done.state is JobState.SUCCEEDED
    assert done.item_count == 1
    assert [episode.source_id for episode in registry.list_episodes("alpha")] == ["vid1"]
    assert publisher.feed_path("alpha").exists()
    # New items end the burst, so the next check is the following Monday.
    assert queue.active_job("alpha").scheduled_for == t0 + timedelta(weeks=1)


def test_burst_continues_while_nothing_new_arrives(registry, queue, clock, t0):
    rule = ScheduleRule(
        base=Interval(Unit.MONDAY), at=time(0, 0), offsets=(timedelta(hours=1),)
    )
    registry.upsert_feed(Feed(id="alpha", source="UCalpha", rule=rule))
    dispatcher = _dispatcher(registry, queue, RecordingFetcher(clock), clock)

    dispatcher.run_once()

    assert queue.active_job("alpha").scheduled_for == t0 + timedelta(hours=1)
    feed = registry.get_feed("alpha")
    assert feed.position.at_base


def test_timed_out_acquisition_is_failed(registry, queue, clock, t0):
    registry.upsert_feed(Feed(id="alpha", source="UCalpha", rule=DAILY))
    release = threading.Event()

    class HangingFetcher:
        def acquire(self, feed, timeout):
            release.wait(5)
            return []

    dispatcher = _dispatcher(
        registry,
        queue,
        HangingFetcher(),
        clock,
        job_timeout=timedelta(milliseconds=50),
        timeout_grace=timedelta(0),
        wake_interval=timedelta(milliseconds=10),
    )
    try:
        job = dispatcher.run_once()
    finally:
        release.set()

    failed = queue.get_job(job.id)
    assert failed.state is JobState.FAILED
    assert "exceeded" in failed.last_error
    retry = queue.active_job("alpha")
    assert retry.attempts == 1
    assert retry.scheduled_for == t0 + timedelta(minutes=10)


def test_stop_while_in_flight_leaves_job_for_recovery(registry, queue, clock, t0):
    registry.upsert_feed(Feed(id="alpha", source="UCalpha", rule=DAILY))
    release = threading.Event()
    holder = {}

    class StoppingFetcher:
        def acquire(self, feed, timeout):
            holder["dispatcher"].stop()
            release.wait(5)
            return []

    dispatcher = _dispatcher(
        registry, queue, StoppingFetcher(), clock, wake_interval=timedelta(milliseconds=10)
    )
    holder["dispatcher"] = dispatcher
    try:
        job = dispatcher.run_once()
    finally:
        release.set()

    assert queue.get_job(job.id).state is JobState.DISPATCHED
    report = queue.recover()
    assert [entry.id for entry in report.requeued] == [job.id]


def test_feed_change_interrupts_idle_wait(registry, queue, clock, t0):
    dispatcher = _dispatcher(registry, queue, RecordingFetcher(clock), clock)

    def change_feed(fake_clock):
        fake_clock.on_wait = None
        registry.upsert_feed(Feed(id="alpha", source="UCalpha", rule=EVERY_MINUTE))
        return True

    clock.on_wait = change_feed

    assert dispatcher.run_once() is None
    assert clock.now == t0 + timedelta(seconds=60)

    job = dispatcher.run_once()
    assert job.feed_id == "alpha"


def test_idle_wait_is_bounded_by_max_idle_wait(registry, queue, clock, t0):
    dispatcher = _dispatcher(
        registry,
        queue,
        RecordingFetcher(clock),
        clock,
        max_idle_wait=timedelta(minutes=15),
    )

    assert dispatcher.run_once() is None
    assert clock.now == t0 + timedelta(minutes=15)


def test_throttle_cursor_is_restored_from_queue(registry, queue, clock, t0):
    job = queue.enqueue_if_absent("alpha", t0 - timedelta(minutes=2), at=t0)
    queue.mark_dispatched(job.id, t0 - timedelta(minutes=2))
    dispatcher = _dispatcher(registry, queue, RecordingFetcher(clock), clock)

    assert dispatcher.restore_cursor() == t0 - timedelta(minutes=2)


def test_manual_trigger_keeps_regular_schedule(registry, queue, clock, t0):
    registry.upsert_feed(Feed(id="alpha", source="UCalpha", rule=DAILY))
    fetcher = RecordingFetcher(clock)
    dispatcher = _dispatcher(registry, queue, fetcher, clock)
    dispatcher.run_once()
    clock.advance(hours=3)

    queue.expedite("alpha", clock())
    job = dispatcher.run_once()

    assert job.manual is True
    assert fetcher.calls[-1] == ("alpha", t0 + timedelta(hours=3))
    assert queue.active_job("alpha").scheduled_for == t0 + timedelta(days=1)
    assert queue.active_job("alpha").manual is False


def test_trigger_on_already_due_job_runs_it_once(registry, queue, clock, t0):
    registry.upsert_feed(Feed(id="alpha", source="UCalpha", rule=DAILY))
    fetcher = RecordingFetcher(clock)
    dispatcher = _dispatcher(registry, queue, fetcher, clock)
    dispatcher.schedule_idle_feeds(clock())
    clock.advance(minutes=1)

    queue.expedite("alpha", clock())
    dispatcher.run_once()
    dispatcher.run_once()

    assert fetcher.calls == [("alpha", t0 + timedelta(minutes=1))]
    assert queue.active_job("alpha").scheduled_for == t0 + timedelta(days=1)


def test_trigger_on_pending_retry_does_not_replay_the_missed_run(registry, queue, clock, t0):
    registry.upsert_feed(Feed(id="alpha", source="UCalpha", rule=DAILY))
    fetcher = RecordingFetcher(clock, {"alpha": FetchFailure("flaky")})
    dispatcher = _dispatcher(registry, queue, fetcher, clock)
    dispatcher.run_once()
    assert queue.active_job("alpha").scheduled_for == t0 + timedelta(minutes=10)

    fetcher.results = {}
    clock.advance(minutes=2)
    queue.expedite("alpha", clock())
    job = dispatcher.run_once()
    dispatcher.run_once()

    assert job.manual is True
    assert [moment for _, moment in fetcher.calls] == [t0, t0 + timedelta(minutes=5)]
    assert queue.active_job("alpha").scheduled_for == t0 + timedelta(days=1)


def test_weekly_burst_runs_each_follow_up_then_waits_for_next_week(registry, queue, clock, t0):
    rule = ScheduleRule.repeating(
        Interval(Unit.MONDAY), every=timedelta(hours=1), times=4, at=time(18, 0)
    )
    registry.upsert_feed(Feed(id="alpha", source="UCalpha", rule=rule))
    fetcher = RecordingFetcher(clock)
    dispatcher = _dispatcher(
        registry,
        queue,
        fetcher,
        clock,
        max_idle_wait=timedelta(days=7),
        wake_interval=timedelta(hours=1),
    )

    stored = []
    for _ in range(20):
        if dispatcher.run_once() is not None:
            feed = registry.get_feed("alpha")
            stored.append((feed.next_due, feed.position.offset_index))
        if len(fetcher.calls) == 5:
            break

    evening = t0 + timedelta(hours=18)
    assert [moment for _, moment in fetcher.calls] == [
        evening + timedelta(hours=hours) for hours in range(5)
    ]
    assert stored == [
        (evening + timedelta(hours=1), 1),
        (evening + timedelta(hours=2), 2),
        (evening + timedelta(hours=3), 3),
        (evening + timedelta(hours=4), None),
        (evening + timedelta(weeks=1), 0),
    ]
    assert queue.active_job("alpha").scheduled_for == evening + timedelta(weeks=1)
