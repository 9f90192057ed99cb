"""Acquisition of feed items through yt-dlp."""

from __future__ import annotations

import glob
import logging
import re
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Set

import feedparser
import requests
from bs4 import BeautifulSoup

from .errors import FetchFailure, FetchTimeout
from .models import AcquisitionOptions, Feed, FetchedItem, SponsorMarking

logger = logging.getLogger(__name__)

YOUTUBE_FEED_URL = "https://www.youtube.com/feeds/videos.xml?channel_id={channel_id}"
YOUTUBE_WATCH_URL = "https://www.youtube.com/watch?v={video_id}"

_MEDIA_SUFFIXES = (".m4a", ".mp3", ".opus", ".ogg", ".aac", ".webm", ".mp4", ".mkv")
_STDERR_TAIL = 500


def resolve_feed_url(source: str) -> str:
    """Return the listing URL for a source reference (channel id or URL)."""
    if source.startswith(("http://", "https://")):
        return source
    return YOUTUBE_FEED_URL.format(channel_id=source)


def to_datetime(value: Optional[time.struct_time]) -> Optional[datetime]:
    """Convert feedparser timestamps to timezone-aware datetimes."""
    if value is None:
        return None
    return datetime(*value[:6], tzinfo=timezone.utc)


def _strip_html(raw_value: str) -> str:
    """Return text content extracted from HTML fragments."""
    soup = BeautifulSoup(raw_value, "html.parser")
    text = soup.get_text(separator=" ", strip=True)
    text = re.sub(r"\s+([.,;:!?])", r"\1", text)
    text = re.sub(r"\s{2,}", " ", text)
    return text.strip()


def _entry_source_id(entry) -> Optional[str]:
    video_id = getattr(entry, "yt_videoid", None)
    if video_id:
        return video_id
    entry_id = getattr(entry, "id", None)
    if entry_id:
        return entry_id.rsplit(":", 1)[-1]
    return None


def _entry_description(entry) -> Optional[str]:
    summary = getattr(entry, "summary", None)
    if not summary:
        summary_detail = getattr(entry, "summary_detail", None)
        if summary_detail:
            summary = summary_detail.get("value")
    if not summary:
        content = getattr(entry, "content", None)
        if content:
            try:
                summary = content[0].get("value")
            except (TypeError, KeyError, IndexError, AttributeError):
                summary = None
    return _strip_html(summary) if summary else None


def read_archive(path: Path) -> Set[str]:
    """Return the video ids recorded in a yt-dlp download archive."""
    if not path.exists():
        return set()
    ids = set()
    for line in path.read_text(encoding="utf-8").splitlines():
        parts = line.split()
        if len(parts) >= 2:
            ids.add(parts[1])
    return ids


def build_download_command(
    binary: str,
    options: AcquisitionOptions,
    archive: Path,
    output_template: str,
    url: str,
) -> List[str]:
    """Translate acquisition options into yt-dlp arguments."""
    command = [
        binary,
        "--no-progress",
        "--download-archive",
        str(archive),
        "--output",
        output_template,
        "--format",
        options.format_selector,
    ]
    command.append("--no-embed-chapters" if options.chapter_stripping else "--embed-chapters")

    categories = ",".join(options.sponsorblock_categories) or "default"
    if options.sponsor_marking is SponsorMarking.MARK:
        command.extend(["--sponsorblock-mark", categories])
    elif options.sponsor_marking is SponsorMarking.REMOVE:
        command.extend(["--sponsorblock-remove", categories])

    command.extend(options.downloader_arguments)
    command.extend(["--", url])
    return command


class YtDlpFetcher:
    """Lists a source's recent uploads and downloads them with yt-dlp.

    Downloads are recorded in a per-feed yt-dlp archive, so acquiring the
    same feed twice never downloads an item twice. Every listed item whose
    media is on disk is reported; the registry drops the ones it already has.
    """

    def __init__(
        self,
        media_directory: str,
        binary: str = "yt-dlp",
        request_timeout: float = 10.0,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.media_directory = Path(media_directory)
        self.binary = binary
        self.request_timeout = request_timeout
        self._run = run

    def feed_directory(self, feed_id: str) -> Path:
        return self.media_directory / feed_id

    def list_entries(self, feed: Feed, timeout: Optional[float] = None) -> List[FetchedItem]:
        """Fetch and parse the source listing, oldest entry first."""
        url = resolve_feed_url(feed.source)
        request_timeout = self.request_timeout
        if timeout is not None:
            request_timeout = min(request_timeout, timeout)
        logger.info("Listing feed '%s' (%s)", feed.id, url)

        try:
            response = requests.get(url, timeout=request_timeout)
            response.raise_for_status()
        except requests.Timeout as exc:
            raise FetchTimeout(f"Listing {url} timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise FetchFailure(f"Failed to list {url}: {exc}") from exc

        parsed = feedparser.parse(response.content)
        if getattr(parsed, "bozo", False) and not parsed.entries:
            raise FetchFailure(f"Listing {url} is not a valid feed.")

        entries: List[FetchedItem] = []
        for entry in parsed.entries:
            source_id = _entry_source_id(entry)
            if not source_id:
                logger.debug("Skipping entry without an id in feed '%s'", feed.id)
                continue

            published = None
            for attr in ("published_parsed", "updated_parsed"):
                published = getattr(entry, attr, None)
                if published:
                    break

            entries.append(
                FetchedItem(
                    source_id=source_id,
                    title=getattr(entry, "title", None) or source_id,
                    link=getattr(entry, "link", None)
                    or YOUTUBE_WATCH_URL.format(video_id=source_id),
                    published=to_datetime(published),
                    description=_entry_description(entry),
                )
            )

        entries.sort(
            key=lambda item: item.published or datetime.min.replace(tzinfo=timezone.utc)
        )
        logger.info("Collected %d entries from feed '%s'", len(entries), feed.id)
        return entries

    def locate_media(self, feed_id: str, source_id: str) -> Optional[Path]:
        directory = self.feed_directory(feed_id)
        if not directory.exists():
            return None
        candidates = sorted(
            path
            for path in directory.glob(f"{glob.escape(source_id)}.*")
            if path.suffix.lower() in _MEDIA_SUFFIXES
        )
        return candidates[0] if candidates else None

    def _download(self, feed: Feed, item: FetchedItem, timeout: float) -> None:
        directory = self.feed_directory(feed.id)
        directory.mkdir(parents=True, exist_ok=True)
        command = build_download_command(
            self.binary,
            feed.options,
            directory / "archive.txt",
            str(directory / "%(id)s.%(ext)s"),
            item.link,
        )
        logger.debug("Running %s", " ".join(command))

        try:
            result = self._run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise FetchTimeout(
                f"yt-dlp exceeded {timeout:.0f}s for {item.link}"
            ) from exc
        except OSError as exc:
            raise FetchFailure(f"Could not run {self.binary}: {exc}") from exc

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()[-_STDERR_TAIL:]
            raise FetchFailure(
                f"yt-dlp exited with {result.returncode} for {item.link}: {stderr}"
            )

    def acquire(self, feed: Feed, timeout: float) -> List[FetchedItem]:
        """Download everything new for ``feed`` within ``timeout`` seconds."""
        deadline = time.monotonic() + timeout
        entries = self.list_entries(feed, timeout=timeout)
        archived = read_archive(self.feed_directory(feed.id) / "archive.txt")

        items: List[FetchedItem] = []
        for entry in entries:
            if entry.source_id not in archived:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise FetchTimeout(
                        f"Time budget of {timeout:.0f}s exhausted for feed '{feed.id}'"
                    )
                logger.info("Downloading '%s' for feed '%s'", entry.title, feed.id)
                self._download(feed, entry, remaining)

            media = self.locate_media(feed.id, entry.source_id)
            if media is None:
                logger.debug(
                    "No media on disk for %s in feed '%s'", entry.source_id, feed.id
                )
                continue
            entry.media_path = str(media)
            items.append(entry)

        logger.info("Acquired %d items for feed '%s'", len(items), feed.id)
        return items

