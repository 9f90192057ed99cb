"""Jinja2 environment for podmirror templates."""

from __future__ import annotations

import mimetypes
from datetime import datetime
from email.utils import format_datetime
from pathlib import Path, PurePath

from jinja2 import Environment, FileSystemLoader, select_autoescape
from markupsafe import Markup

_ENV: Environment | None = None

# Not every platform mimetypes table knows the yt-dlp audio containers.
_MEDIA_TYPES = {
    ".m4a": "audio/mp4",
    ".opus": "audio/ogg",
    ".ogg": "audio/ogg",
    ".mp3": "audio/mpeg",
    ".aac": "audio/aac",
    ".webm": "audio/webm",
}


def _rfc2822(value: datetime | None) -> str:
    """Format a datetime the way RSS readers expect."""
    if value is None:
        return ""
    return format_datetime(value)


def _cdata(value: str | None) -> Markup:
    """Wrap text in a CDATA section, splitting any embedded terminator."""
    if not value:
        return Markup("")
    return Markup("<![CDATA[" + value.replace("]]>", "]]]]><![CDATA[>") + "]]>")


def _mimetype(path: str | None) -> str:
    if not path:
        return "application/octet-stream"
    suffix = PurePath(path).suffix.lower()
    if suffix in _MEDIA_TYPES:
        return _MEDIA_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path)
    return guessed or "application/octet-stream"


def get_environment() -> Environment:
    """Return a cached Jinja environment configured for package templates."""
    global _ENV
    if _ENV is None:
        template_dir = Path(__file__).resolve().parent / "templates"
        loader = FileSystemLoader(str(template_dir))
        _ENV = Environment(
            loader=loader,
            autoescape=select_autoescape(["html", "xml", "xml.j2"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        _ENV.filters["rfc2822"] = _rfc2822
        _ENV.filters["cdata"] = _cdata
        _ENV.filters["mimetype"] = _mimetype
    return _ENV
