"""Render mirrored episodes as a locally hosted podcast feed."""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from .fetcher import resolve_feed_url
from .models import Feed, FetchedItem, utcnow
from .templating import get_environment

logger = logging.getLogger(__name__)

FEED_FILENAME = "feed.xml"


class FeedPublisher:
    """Writes ``<media_directory>/<feed id>/feed.xml`` for a feed."""

    def __init__(self, media_directory: str, base_url: Optional[str] = None):
        self.media_directory = Path(media_directory)
        self.base_url = (base_url or "").rstrip("/")

    def feed_path(self, feed_id: str) -> Path:
        return self.media_directory / feed_id / FEED_FILENAME

    def _media_url(self, feed_id: str, media_path: str) -> str:
        name = quote(Path(media_path).name)
        prefix = f"{self.base_url}/" if self.base_url else ""
        return f"{prefix}{quote(feed_id)}/{name}"

    def _episode_view(self, feed: Feed, episode: FetchedItem) -> Dict[str, Any]:
        length = 0
        if episode.media_path and os.path.exists(episode.media_path):
            length = os.path.getsize(episode.media_path)
        return {
            "source_id": episode.source_id,
            "title": episode.title,
            "link": episode.link,
            "published": episode.published,
            "description": episode.description,
            "media_path": episode.media_path,
            "url": self._media_url(feed.id, episode.media_path or episode.source_id),
            "length": length,
        }

    def render(self, feed: Feed, episodes: List[FetchedItem]) -> str:
        template = get_environment().get_template("feed.xml.j2")
        return template.render(
            title=feed.title or feed.id,
            link=resolve_feed_url(feed.source),
            description=f"Mirror of {feed.title or feed.id}",
            built_at=utcnow(),
            episodes=[
                self._episode_view(feed, episode)
                for episode in episodes
                if episode.media_path
            ],
        )

    def publish(self, feed: Feed, episodes: List[FetchedItem]) -> Path:
        """Render and atomically replace the feed file."""
        target = self.feed_path(feed.id)
        target.parent.mkdir(parents=True, exist_ok=True)
        content = self.render(feed, episodes)

        fd, temp_name = tempfile.mkstemp(dir=target.parent, prefix=".feed-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, target)
        except Exception:
            with contextlib.suppress(OSError):
                os.unlink(temp_name)
            raise

        logger.info("Published %d episodes for feed '%s' to %s", len(episodes), feed.id, target)
        return target

