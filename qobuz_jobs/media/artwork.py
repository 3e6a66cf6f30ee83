"""
Cover art lookup and resizing.
"""

import asyncio
import io
import logging
from typing import Optional

from PIL import Image

from qobuz_jobs.models.catalog import Album

log = logging.getLogger(__name__)

COVER_FILENAME = "cover.jpg"


def get_full_res_image_url(album: Optional[Album]) -> Optional[str]:
    """The original-resolution cover URL, derived from the 600px variant."""
    if album is None:
        return None
    url = album.image.get("large") or album.image.get("small")
    if not url:
        return None
    return url.replace("_600.", "_org.").replace("_230.", "_org.")


def _resize(data: bytes, max_size: int, quality: float) -> bytes:
    img = Image.open(io.BytesIO(data))
    if img.mode != "RGB":
        img = img.convert("RGB")
    if max(img.size) > max_size:
        img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
    out = io.BytesIO()
    img.save(out, format="JPEG", quality=max(1, min(100, round(quality * 100))))
    return out.getvalue()


async def resize_cover(data: bytes, max_size: int, quality: float) -> bytes:
    """
    Scales a cover so its longest side is at most ``max_size`` and re-encodes
    it as JPEG at ``quality`` (0.1-1.0). Images Pillow cannot read are
    returned unchanged.
    """
    try:
        return await asyncio.to_thread(_resize, data, max_size, quality)
    except (OSError, ValueError) as e:
        log.debug(f"Could not resize cover art, using it as is: {e}")
        return data
