"""Exception types raised across podmirror."""

from __future__ import annotations


class PodmirrorError(RuntimeError):
    """Base class for podmirror runtime errors."""


class FetchFailure(PodmirrorError):
    """The acquisition tool returned an error for a feed."""


class FetchTimeout(FetchFailure):
    """The acquisition exceeded its time budget."""


class ScheduleRuleInvalid(ValueError):
    """A recurrence rule is malformed."""


class QueueInvariantViolation(PodmirrorError):
    """More than one non-terminal job exists for a single feed."""

    def __init__(self, feed_id: str, job_ids):
        self.feed_id = feed_id
        self.job_ids = list(job_ids)
        super().__init__(
            f"Feed {feed_id!r} has {len(self.job_ids)} non-terminal jobs: {self.job_ids}"
        )


class FeedNotFound(PodmirrorError, KeyError):
    """The requested feed does not exist."""

    def __str__(self) -> str:
        return f"Feed does not exist: {self.args[0]}" if self.args else "Feed does not exist"
