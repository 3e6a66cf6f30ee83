"""
Utilities for handling file paths, leaf-name sanitizing and URL parsing.
"""

import re
from pathlib import Path
from typing import Optional, Tuple

from pathvalidate import sanitize_filename

_SEPARATORS = re.compile(r"[\\/]")
_SEPARATORS_KEPT = re.compile(r"([\\/])")


def parse_qobuz_url(url: str) -> Optional[Tuple[str, str]]:
    """
    Parses a Qobuz URL to extract the content type and ID.
    Handles multiple URL formats.
    """
    pattern = re.compile(
        r"qobuz\.com/(?:[^/]+/)?(?P<type>album|track)/(?:[^/]+/)?(?P<id>[\w\d-]+)"
    )
    match = pattern.search(url)
    if match:
        return match.group("type"), match.group("id")
    return None


def create_dir(directory_path: Path) -> None:
    """Creates a directory if it does not already exist."""
    directory_path.mkdir(parents=True, exist_ok=True)


def clean_file_name(name: str, replacement: str = "_") -> str:
    """
    Sanitizes a single file name. The result never contains a path separator,
    whatever the platform.
    """
    flattened = _SEPARATORS.sub(replacement, name or "")
    if flattened and not flattened.strip("."):
        # "." and ".." would walk the tree
        return replacement * len(flattened)
    return sanitize_filename(
        flattened, replacement_text=replacement, platform="universal"
    )


def clean_folder_path(path: str, replacement: str = "_") -> str:
    """
    Sanitizes a folder path while keeping its hierarchy: every separator in the
    input survives and each segment between them is sanitized as a file name.
    """
    parts = _SEPARATORS_KEPT.split(path or "")
    # Even indexes are segments, odd indexes the separators between them
    return "".join(
        part if i % 2 else clean_file_name(part, replacement)
        for i, part in enumerate(parts)
    )
