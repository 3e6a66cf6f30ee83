"""
Helper functions for formatting data into human-readable strings, including
the filename/foldername templates.
"""

import re
from typing import Callable, Dict, Optional, Union

from qobuz_jobs.models.catalog import Album, Track

Item = Union[Track, Album]

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def format_size(bytes_size: float) -> str:
    """Formats bytes into a human-readable size string (e.g., '145.3 MB')."""
    if bytes_size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while bytes_size >= 1024 and i < len(units) - 1:
        bytes_size /= 1024
        i += 1
    return f"{bytes_size:.1f} {units[i]}"


def format_duration(seconds: float) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 34m 12s').
    """
    s = int(seconds)
    hours, remainder = divmod(s, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def format_clock(seconds: Optional[int]) -> str:
    """Formats seconds as a clock reading ('3:07', '1:02:03')."""
    if not seconds:
        return ""
    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02}:{secs:02}"
    return f"{minutes}:{secs:02}"


def format_title(item: Item) -> str:
    """Constructs a full title including its version, if available."""
    title = item.title or ""
    if (version := item.version) and version.lower() not in title.lower():
        title = f"{title} ({version})"
    return title


def get_album(item: Item) -> Optional[Album]:
    return item if isinstance(item, Album) else item.album


def format_artists(item: Item, separator: str = ", ") -> str:
    """
    The album's credited artists, falling back to the track performer or the
    album's main artist when no artist list is available.
    """
    album = get_album(item)
    if album and album.artists:
        return separator.join(a.name for a in album.artists)
    if isinstance(item, Track) and item.performer:
        return item.performer.name
    if album and album.artist:
        return album.artist.name
    return ""


def get_year(item: Item) -> str:
    album = get_album(item)
    if album and album.release_date:
        return album.release_date[:4]
    return ""


_TEMPLATE_FIELDS: Dict[str, Callable[[Item], str]] = {
    "artists": format_artists,
    "name": format_title,
    "year": get_year,
    "duration": lambda item: format_clock(item.duration),
}


def format_custom_title(template: str, item: Item) -> str:
    """
    Renders a naming template against a track or album.

    Known placeholders with no value render as an empty string; unknown
    placeholders are left in place untouched. Never raises.
    """

    def replacer(match: re.Match) -> str:
        key = match.group(1)
        getter = _TEMPLATE_FIELDS.get(key)
        if getter is None:
            return match.group(0)
        try:
            return getter(item) or ""
        except (AttributeError, TypeError, ValueError):
            return ""

    return _PLACEHOLDER.sub(replacer, template or "")
