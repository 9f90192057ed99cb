"""Shared data models for podmirror."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple


class Unit(str, enum.Enum):
    """Base cadence units, modelled after clokwerk intervals."""

    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"
    WEEKDAY = "weekday"


DAY_NAMES = (
    Unit.MONDAY,
    Unit.TUESDAY,
    Unit.WEDNESDAY,
    Unit.THURSDAY,
    Unit.FRIDAY,
    Unit.SATURDAY,
    Unit.SUNDAY,
)

FIXED_UNITS = {
    Unit.SECONDS: timedelta(seconds=1),
    Unit.MINUTES: timedelta(minutes=1),
    Unit.HOURS: timedelta(hours=1),
    Unit.DAYS: timedelta(days=1),
    Unit.WEEKS: timedelta(weeks=1),
}


class BurstPolicy(str, enum.Enum):
    """What a burst does once a run finds new items."""

    STOP_ON_NEW_ITEMS = "stop-on-new-items"
    CONTINUE = "continue"


class SponsorMarking(str, enum.Enum):
    NONE = "none"
    MARK = "mark"
    REMOVE = "remove"


class JobState(str, enum.Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


# Supported sponsorblock categories and their display names.
SPONSORBLOCK_CATEGORIES: Dict[str, str] = {
    "sponsor": "Sponsor",
    "intro": "Intermission/Intro Animation",
    "outro": "Endcards/Credits",
    "selfpromo": "Unpaid/Self Promotion",
    "interaction": "Interaction Reminder",
    "preview": "Preview/Recap",
    "music_offtopic": "Non-Music Section",
}


@dataclass(frozen=True)
class Interval:
    """A base cadence such as "every 6 hours" or "every monday"."""

    unit: Unit
    count: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {"unit": self.unit.value, "count": self.count}


@dataclass(frozen=True)
class ScheduleRule:
    """Base cadence plus an ordered burst of follow-up offsets."""

    base: Interval
    at: Optional[time] = None
    offsets: Tuple[timedelta, ...] = ()

    @classmethod
    def repeating(
        cls,
        base: Interval,
        every: timedelta,
        times: int,
        at: Optional[time] = None,
    ) -> "ScheduleRule":
        """Build a rule whose burst repeats ``every`` for ``times`` checks."""
        offsets = tuple(every * step for step in range(1, times + 1))
        return cls(base=base, at=at, offsets=offsets)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base": self.base.to_dict(),
            "at": self.at.strftime("%H:%M:%S") if self.at else None,
            "offsets": [int(offset.total_seconds()) for offset in self.offsets],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduleRule":
        base = data["base"]
        at_value = data.get("at")
        return cls(
            base=Interval(unit=Unit(base["unit"]), count=int(base.get("count", 1))),
            at=time.fromisoformat(at_value) if at_value else None,
            offsets=tuple(
                timedelta(seconds=int(seconds)) for seconds in data.get("offsets", [])
            ),
        )


@dataclass(frozen=True)
class CyclePosition:
    """Where a feed sits in its recurrence cycle.

    ``offset_index`` of None means the feed is awaiting its next base fire;
    otherwise it is mid-burst at that offset of the burst anchored on
    ``base_fire``.
    """

    offset_index: Optional[int] = None
    base_fire: Optional[datetime] = None

    @property
    def at_base(self) -> bool:
        return self.offset_index is None

    def describe(self) -> str:
        if self.at_base:
            return "at base"
        return f"burst offset {self.offset_index}"


AT_BASE = CyclePosition()


@dataclass(frozen=True)
class AcquisitionOptions:
    """Options forwarded verbatim to the acquisition tool."""

    chapter_stripping: bool = False
    sponsor_marking: SponsorMarking = SponsorMarking.NONE
    format_selector: str = "bestaudio/best"
    sponsorblock_categories: Tuple[str, ...] = ()
    downloader_arguments: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chapter_stripping": self.chapter_stripping,
            "sponsor_marking": self.sponsor_marking.value,
            "format_selector": self.format_selector,
            "sponsorblock_categories": list(self.sponsorblock_categories),
            "downloader_arguments": list(self.downloader_arguments),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AcquisitionOptions":
        if not data:
            return cls()
        return cls(
            chapter_stripping=bool(data.get("chapter_stripping", False)),
            sponsor_marking=SponsorMarking(data.get("sponsor_marking", "none")),
            format_selector=data.get("format_selector") or "bestaudio/best",
            sponsorblock_categories=tuple(data.get("sponsorblock_categories") or ()),
            downloader_arguments=tuple(data.get("downloader_arguments") or ()),
        )


def normalize_sponsorblock_categories(categories: List[str]) -> Tuple[str, ...]:
    """Keep supported categories only; a lone ``all`` selects every one."""
    if len(categories) == 1 and categories[0] == "all":
        return tuple(SPONSORBLOCK_CATEGORIES)
    return tuple(
        category for category in categories if category in SPONSORBLOCK_CATEGORIES
    )


@dataclass
class Feed:
    """A tracked remote source and its schedule bookkeeping."""

    id: str
    source: str
    rule: Optional[ScheduleRule] = None
    options: AcquisitionOptions = field(default_factory=AcquisitionOptions)
    title: Optional[str] = None
    last_success_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    position: CyclePosition = AT_BASE
    next_due: Optional[datetime] = None
    alert: Optional[str] = None


@dataclass
class FetchedItem:
    """An item retrieved by the acquisition tool."""

    source_id: str
    title: str
    link: str
    published: Optional[datetime] = None
    description: Optional[str] = None
    media_path: Optional[str] = None


@dataclass
class Job:
    """One scheduled acquisition attempt for one feed."""

    id: int
    feed_id: str
    scheduled_for: datetime
    state: JobState = JobState.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    manual: bool = False
    created_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    item_count: Optional[int] = None


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and normalise others."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
