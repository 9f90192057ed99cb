from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from sqlalchemy import select

from podmirror import db
from podmirror.db import JobModel
from podmirror.errors import PodmirrorError
from podmirror.jobqueue import UNKNOWN_OUTCOME, JobQueue
from podmirror.models import JobState

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def queue(session_factory):
    return JobQueue(session_factory, max_attempts=3, retry_delay=timedelta(minutes=10))


def _live_counts(session_factory):
    with session_factory() as session:
        rows = session.execute(
            select(JobModel).where(
                JobModel.state.in_([JobState.PENDING.value, JobState.DISPATCHED.value])
            )
        ).scalars()
        counts = {}
        for row in rows:
            counts[row.feed_id] = counts.get(row.feed_id, 0) + 1
        return counts


def test_enqueue_if_absent_is_idempotent(queue):
    first = queue.enqueue_if_absent("alpha", T0, at=T0)
    second = queue.enqueue_if_absent("alpha", T0 + timedelta(hours=1), at=T0)

    assert first is not None
    assert second is None
    assert queue.active_job("alpha").id == first.id
    assert queue.active_job("alpha").scheduled_for == T0


def test_enqueue_refused_while_job_is_dispatched(queue):
    job = queue.enqueue_if_absent("alpha", T0, at=T0)
    queue.mark_dispatched(job.id, T0)

    assert queue.enqueue_if_absent("alpha", T0, at=T0) is None


def test_next_eligible_orders_by_due_time_then_feed_id(queue):
    queue.enqueue_if_absent("charlie", T0, at=T0)
    queue.enqueue_if_absent("alpha", T0, at=T0)
    queue.enqueue_if_absent("bravo", T0 - timedelta(minutes=1), at=T0)
    queue.enqueue_if_absent("delta", T0 + timedelta(minutes=1), at=T0)

    assert queue.next_eligible(T0).feed_id == "bravo"
    queue.cancel_pending("bravo")
    assert queue.next_eligible(T0).feed_id == "alpha"
    queue.cancel_pending("alpha")
    assert queue.next_eligible(T0).feed_id == "charlie"
    queue.cancel_pending("charlie")
    assert queue.next_eligible(T0) is None


def test_success_archives_job_and_frees_the_feed(queue):
    job = queue.enqueue_if_absent("alpha", T0, at=T0)
    queue.mark_dispatched(job.id, T0)
    done = queue.mark_succeeded(job.id, item_count=2, at=T0 + timedelta(minutes=3))

    assert done.state is JobState.SUCCEEDED
    assert done.item_count == 2
    assert queue.active_job("alpha") is None
    assert [entry.id for entry in queue.history("alpha")] == [job.id]
    assert queue.enqueue_if_absent("alpha", T0 + timedelta(days=1), at=T0) is not None


def test_failure_schedules_retry_until_attempts_are_exhausted(queue):
    job = queue.enqueue_if_absent("alpha", T0, at=T0)
    now = T0
    outcomes = []
    for _ in range(3):
        queue.mark_dispatched(job.id, now)
        outcome = queue.mark_failed(job.id, "boom", at=now)
        outcomes.append(outcome)
        if outcome.exhausted:
            break
        job = outcome.retry_job
        assert job.scheduled_for == now + timedelta(minutes=10)
        now = job.scheduled_for

    assert [outcome.job.attempts for outcome in outcomes] == [1, 2, 3]
    assert outcomes[-1].exhausted
    assert not outcomes[0].exhausted
    assert queue.active_job("alpha") is None
    assert all(entry.state is JobState.FAILED for entry in queue.history("alpha"))


def test_transitions_reject_wrong_state(queue):
    job = queue.enqueue_if_absent("alpha", T0, at=T0)

    with pytest.raises(PodmirrorError):
        queue.mark_succeeded(job.id)
    queue.mark_dispatched(job.id, T0)
    with pytest.raises(PodmirrorError):
        queue.mark_dispatched(job.id, T0)


def test_recover_requeues_in_flight_jobs_without_losing_attempts(session_factory, queue):
    job = queue.enqueue_if_absent("alpha", T0, attempts=1, at=T0)
    queue.mark_dispatched(job.id, T0)

    # Simulate a restart with a fresh queue over the same storage.
    restarted = JobQueue(session_factory)
    report = restarted.recover()

    assert [entry.id for entry in report.requeued] == [job.id]
    recovered = restarted.active_job("alpha")
    assert recovered.state is JobState.PENDING
    assert recovered.attempts == 1
    assert recovered.last_error == UNKNOWN_OUTCOME
    assert restarted.last_dispatch_time() == T0


def test_recover_discards_duplicate_live_jobs(session_factory, queue):
    kept = queue.enqueue_if_absent("alpha", T0, at=T0)
    with session_factory() as session:
        session.add(
            JobModel(
                feed_id="alpha",
                active_feed_id=None,
                scheduled_for=T0,
                state=JobState.PENDING.value,
                attempts=0,
                manual=False,
                created_at=T0 + timedelta(seconds=1),
            )
        )
        session.commit()

    report = queue.recover()

    assert len(report.discarded) == 1
    assert _live_counts(session_factory) == {"alpha": 1}
    assert queue.active_job("alpha").id == kept.id


def test_recover_repairs_missing_active_marker(session_factory, queue):
    job = queue.enqueue_if_absent("alpha", T0, at=T0)
    with session_factory() as session:
        session.get(JobModel, job.id).active_feed_id = None
        session.commit()

    report = queue.recover()

    assert report.repaired == [job.id]
    assert queue.active_job("alpha").id == job.id


def test_expedite_moves_pending_job_forward_and_flags_it_manual(queue):
    job = queue.enqueue_if_absent("alpha", T0 + timedelta(days=1), at=T0)

    expedited = queue.expedite("alpha", T0)

    assert expedited.id == job.id
    assert expedited.manual is True
    assert expedited.scheduled_for == T0


def test_expedite_leaves_already_due_job_unflagged(queue):
    job = queue.enqueue_if_absent("alpha", T0, at=T0)

    expedited = queue.expedite("alpha", T0 + timedelta(minutes=1))

    assert expedited.id == job.id
    assert expedited.manual is False
    assert expedited.scheduled_for == T0


def test_expedite_creates_manual_job_for_idle_feed(queue):
    job = queue.expedite("alpha", T0)

    assert job.manual is True
    assert queue.next_eligible(T0).id == job.id


def test_expedite_leaves_in_flight_job_alone(queue):
    job = queue.enqueue_if_absent("alpha", T0, at=T0)
    queue.mark_dispatched(job.id, T0)

    assert queue.expedite("alpha", T0) is None
    assert queue.active_job("alpha").state is JobState.DISPATCHED


_FEEDS = ("alpha", "bravo", "charlie")
_OPERATIONS = st.lists(
    st.tuples(
        st.sampled_from(
            ["enqueue", "dispatch", "succeed", "fail", "expedite", "cancel", "recover"]
        ),
        st.sampled_from(_FEEDS),
        st.integers(min_value=0, max_value=120),
    ),
    max_size=40,
)


@settings(max_examples=40, deadline=None)
@given(operations=_OPERATIONS)
def test_at_most_one_live_job_per_feed(operations):
    engine = db.init_engine("sqlite:///:memory:")
    session_factory = db.get_session_factory(engine)
    queue = JobQueue(session_factory, max_attempts=2)

    for name, feed_id, minutes in operations:
        moment = T0 + timedelta(minutes=minutes)
        active = queue.active_job(feed_id)
        if name == "enqueue":
            queue.enqueue_if_absent(feed_id, moment, at=moment)
        elif name == "expedite":
            queue.expedite(feed_id, moment)
        elif name == "cancel":
            queue.cancel_pending(feed_id)
        elif name == "recover":
            queue.recover()
        elif active is None:
            continue
        elif name == "dispatch" and active.state is JobState.PENDING:
            queue.mark_dispatched(active.id, moment)
        elif name == "succeed" and active.state is JobState.DISPATCHED:
            queue.mark_succeeded(active.id, at=moment)
        elif name == "fail" and active.state is JobState.DISPATCHED:
            queue.mark_failed(active.id, "boom", at=moment)

        counts = _live_counts(session_factory)
        assert all(count == 1 for count in counts.values())

    engine.dispose()
