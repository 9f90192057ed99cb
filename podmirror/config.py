"""Configuration loading for podmirror."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import time, timedelta
from pathlib import Path
from typing import List, Optional
from xml.etree import ElementTree as ET

from .dispatcher import DispatcherConfig
from .errors import ScheduleRuleInvalid
from .models import (
    AcquisitionOptions,
    BurstPolicy,
    Feed,
    Interval,
    ScheduleRule,
    SponsorMarking,
    Unit,
)
from .recurrence import validate_rule

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhdw]?)\s*$")
_DURATION_UNITS = {
    "": "seconds",
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class DatabaseConfig:
    connection_string: str = "sqlite:///podmirror.db"


@dataclass
class FetcherConfig:
    binary: str = "yt-dlp"
    request_timeout: float = 10.0


@dataclass
class AppConfig:
    feeds_file: Optional[str] = None
    media_directory: str = "media"
    base_url: Optional[str] = None
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    fetcher: FetcherConfig = field(default_factory=FetcherConfig)
    max_attempts: int = 3
    retry_delay: timedelta = timedelta(minutes=10)


def parse_duration(value: str) -> timedelta:
    """Parse ``30s``, ``5m``, ``2h``, ``1d``, ``1w`` or a bare number of seconds."""
    match = _DURATION_RE.match(value or "")
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit]: float(amount)})


def _resolve_path(base_path: Path, target_path: str) -> str:
    """Resolve a path relative to the base config file if it's not absolute."""
    target = Path(target_path)
    if target.is_absolute():
        return str(target)
    return str((base_path.parent / target).resolve())


def _duration(node: Optional[ET.Element], tag: str, default: timedelta) -> timedelta:
    if node is None:
        return default
    text = node.findtext(tag)
    return parse_duration(text) if text else default


def parse_app_config(path: str) -> AppConfig:
    """Parse the main application configuration XML."""
    config_path = Path(path).resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    logger.info("Loading application configuration from %s", config_path)
    tree = ET.parse(config_path)
    root = tree.getroot()

    feeds_text = root.findtext("feeds")
    feeds_file = _resolve_path(config_path, feeds_text.strip()) if feeds_text else None

    media_text = root.findtext("media-directory", "media").strip()
    media_directory = _resolve_path(config_path, media_text)
    base_url = root.findtext("base-url")

    # Database
    db_config = DatabaseConfig()
    db_node = root.find("database")
    if db_node is not None:
        connection_string = db_node.findtext("connection-string")
        if connection_string:
            db_config.connection_string = connection_string.strip()

    # Logging
    log_node = root.find("logging")
    logging_config = LoggingConfig()
    if log_node is not None:
        logging_config.level = log_node.findtext("level", "INFO")
        log_file = log_node.findtext("file")
        if log_file:
            logging_config.file = _resolve_path(config_path, log_file)

    # Dispatcher
    defaults = DispatcherConfig()
    dispatch_node = root.find("dispatcher")
    dispatcher_config = DispatcherConfig(
        min_dispatch_spacing=_duration(
            dispatch_node, "min-dispatch-spacing", defaults.min_dispatch_spacing
        ),
        job_timeout=_duration(dispatch_node, "job-timeout", defaults.job_timeout),
        max_idle_wait=_duration(dispatch_node, "max-idle-wait", defaults.max_idle_wait),
        wake_interval=_duration(dispatch_node, "wake-interval", defaults.wake_interval),
        timeout_grace=_duration(dispatch_node, "timeout-grace", defaults.timeout_grace),
    )
    max_attempts = 3
    retry_delay = timedelta(minutes=10)
    if dispatch_node is not None:
        policy = dispatch_node.findtext("burst-policy")
        if policy:
            try:
                dispatcher_config.burst_policy = BurstPolicy(policy.strip())
            except ValueError:
                raise ValueError(f"Unsupported burst policy: {policy}")
        max_attempts = int(dispatch_node.findtext("max-attempts", "3"))
        retry_delay = _duration(dispatch_node, "retry-delay", retry_delay)
    if max_attempts < 1:
        raise ValueError("max-attempts must be at least 1.")
    if dispatcher_config.wake_interval <= timedelta(0):
        raise ValueError("wake-interval must be positive.")

    # Fetcher
    fetcher_config = FetcherConfig()
    fetch_node = root.find("fetcher")
    if fetch_node is not None:
        fetcher_config.binary = fetch_node.findtext("binary", "yt-dlp").strip()
        fetcher_config.request_timeout = _duration(
            fetch_node, "request-timeout", timedelta(seconds=10)
        ).total_seconds()

    return AppConfig(
        feeds_file=feeds_file,
        media_directory=media_directory,
        base_url=base_url.strip() if base_url else None,
        database=db_config,
        logging=logging_config,
        dispatcher=dispatcher_config,
        fetcher=fetcher_config,
        max_attempts=max_attempts,
        retry_delay=retry_delay,
    )


def _parse_time(value: str) -> time:
    try:
        return time.fromisoformat(value.strip())
    except ValueError:
        raise ScheduleRuleInvalid(f"Invalid time of day: {value!r}")


def parse_schedule(node: ET.Element) -> ScheduleRule:
    """Build a schedule rule from a ``<schedule>`` element."""
    unit_name = node.attrib.get("unit")
    if not unit_name:
        raise ScheduleRuleInvalid("<schedule> requires a 'unit' attribute.")
    try:
        unit = Unit(unit_name.strip().lower())
    except ValueError:
        raise ScheduleRuleInvalid(f"Unsupported schedule unit: {unit_name}")

    try:
        count = int(node.attrib.get("every", "1"))
        at_value = node.attrib.get("at")
        at = _parse_time(at_value) if at_value else None
        base = Interval(unit=unit, count=count)

        repeat = node.find("repeat")
        if repeat is not None:
            rule = ScheduleRule.repeating(
                base,
                every=parse_duration(repeat.attrib.get("every", "")),
                times=int(repeat.attrib.get("times", "1")),
                at=at,
            )
        else:
            offsets = tuple(
                parse_duration(follow_up.attrib.get("offset", ""))
                for follow_up in node.findall("follow-up")
            )
            rule = ScheduleRule(base=base, at=at, offsets=offsets)
    except ScheduleRuleInvalid:
        raise
    except ValueError as exc:
        raise ScheduleRuleInvalid(str(exc)) from exc

    return validate_rule(rule)


def _parse_options(feed_node: ET.Element) -> AcquisitionOptions:
    node = feed_node.find("options")
    arguments = tuple(
        (arg.text or "").strip()
        for arg in feed_node.findall("downloader-argument")
        if arg.text and arg.text.strip()
    )
    if node is None:
        return AcquisitionOptions(downloader_arguments=arguments)

    categories = [
        category.strip()
        for category in node.attrib.get("sponsorblock", "").split(",")
        if category.strip()
    ]
    marking = node.attrib.get("sponsor-marking", "none").strip().lower()
    try:
        sponsor_marking = SponsorMarking(marking)
    except ValueError:
        raise ValueError(f"Unsupported sponsor-marking value: {marking}")

    return AcquisitionOptions(
        chapter_stripping=node.attrib.get("chapter-stripping", "false").lower() == "true",
        sponsor_marking=sponsor_marking,
        format_selector=node.attrib.get("format") or AcquisitionOptions().format_selector,
        sponsorblock_categories=tuple(categories),
        downloader_arguments=arguments,
    )


def parse_feeds_config(path: str) -> List[Feed]:
    """Parse the feed definitions file."""
    logger.info("Loading feed definitions from %s", path)
    tree = ET.parse(path)
    root = tree.getroot()

    feeds: List[Feed] = []
    seen = set()
    for node in root.findall("feed"):
        feed_id = (node.attrib.get("id") or "").strip()
        source = (node.attrib.get("source") or "").strip()
        if not feed_id or not source:
            raise ValueError("Every <feed> needs 'id' and 'source' attributes.")
        if feed_id in seen:
            raise ValueError(f"Duplicate feed id: {feed_id}")
        seen.add(feed_id)

        schedule_node = node.find("schedule")
        feeds.append(
            Feed(
                id=feed_id,
                source=source,
                title=node.attrib.get("title"),
                rule=parse_schedule(schedule_node) if schedule_node is not None else None,
                options=_parse_options(node),
            )
        )
        logger.debug("Registered feed '%s' (%s)", feed_id, source)

    logger.info("Loaded %d feed definitions from configuration", len(feeds))
    return feeds
