"""
Builds ffmpeg metadata blocks and runs the re-encode, metadata and cover art
passes that turn a raw Qobuz download into the requested output file.
"""

import logging
import re
import shutil
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

import aiofiles

from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.core.progress import NullProgress, ProgressSink
from qobuz_jobs.exceptions import JobCancelledError
from qobuz_jobs.media.encoder import FFmpegEncoder
from qobuz_jobs.models.catalog import Album, Track
from qobuz_jobs.models.config import CODEC_MAP, Settings
from qobuz_jobs.utils.formatting import format_artists, format_title

log = logging.getLogger(__name__)

# --- Constants ---
COPYRIGHT, PHON_COPYRIGHT = "©", "℗"
VARIOUS_ARTISTS = "Various Artists"

ArtProvider = Callable[[], Awaitable[bytes]]

_FFMETADATA_SPECIAL = re.compile(r"([=;#\\\n])")


def _escape(value: str) -> str:
    return _FFMETADATA_SPECIAL.sub(r"\\\1", str(value))


def format_copyright(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    return text.replace("(P)", PHON_COPYRIGHT).replace("(C)", COPYRIGHT)


def build_metadata_block(track: Track, album: Optional[Album] = None) -> str:
    """
    Renders the ``;FFMETADATA1`` text ffmpeg reads with ``-map_metadata``.

    The album's credited artists are used when it has an artist list, then
    the track performer, then "Various Artists".
    """
    album = album or track.album
    if album is not None and album.artists:
        artists = format_artists(album)
    elif track.performer:
        artists = track.performer.name
    else:
        artists = VARIOUS_ARTISTS

    release_date = album.release_date if album else None
    tags = [
        ("title", format_title(track)),
        ("artist", artists),
        ("album_artist", artists),
        ("album", format_title(album) if album else ""),
        ("genre", (album.genre if album else None) or "Unknown Genre"),
        ("date", release_date or "Unknown Date"),
        ("year", release_date[:4] if release_date else "Unknown Year"),
        ("label", (album.label if album else None) or "Unknown Label"),
        (
            "copyright",
            format_copyright(track.copyright or (album.copyright if album else None)),
        ),
        ("isrc", track.isrc),
        ("track", str(track.track_number) if track.track_number else None),
        ("disc", str(track.media_number) if track.media_number else None),
        ("barcode", album.upc if album else None),
    ]

    lines = [";FFMETADATA1"]
    lines.extend(f"{key}={_escape(value)}" for key, value in tags if value)
    return "\n".join(lines) + "\n"


def reencode_args(src: str, dst: str, settings: Settings) -> List[str]:
    codec = CODEC_MAP[settings.output_codec]
    args = ["-y", "-i", src, "-map", "0:a", "-c:a", codec["encoder"]]
    if settings.bitrate and codec["accepts_bitrate"]:
        args += ["-b:a", f"{settings.bitrate}k"]
    if settings.output_codec == "OPUS":
        args += ["-vbr", "on"]
    args.append(dst)
    return args


def metadata_args(src: str, metadata_path: str, dst: str) -> List[str]:
    return ["-y", "-i", src, "-i", metadata_path, "-map_metadata", "1", "-codec", "copy", dst]


def cover_art_args(src: str, art_path: str, dst: str, settings: Settings) -> List[str]:
    args = ["-y", "-i", src, "-i", art_path, "-c", "copy", "-map", "0:a", "-map", "1"]
    if settings.output_codec == "MP3":
        args += ["-id3v2_version", "3"]
    args += ["-disposition:v:0", "attached_pic", dst]
    return args


class Tagger:
    """
    Transforms raw audio bytes into the requested codec, with tags and cover
    art. Each step is one ffmpeg pass over files in a private temp directory.
    """

    def __init__(self, encoder: FFmpegEncoder):
        self.encoder = encoder

    async def process(
        self,
        data: bytes,
        track: Track,
        settings: Settings,
        cancel_token: CancelToken,
        art_provider: Optional[ArtProvider] = None,
        progress: Optional[ProgressSink] = None,
    ) -> bytes:
        progress = progress or NullProgress()
        ext = settings.extension
        source_ext = CODEC_MAP[settings.source_codec]["extension"]

        with tempfile.TemporaryDirectory(prefix="qobuz_jobs_") as tmp:
            work = Path(tmp)
            current = work / f"raw.{source_ext}"
            async with aiofiles.open(current, "wb") as f:
                await f.write(data)

            if settings.needs_reencode:
                progress.stage(f"Converting to {settings.output_codec}...")
                encoded = work / f"encoded.{ext}"
                await self.encoder.run(
                    reencode_args(str(current), str(encoded), settings), cancel_token
                )
                current = encoded

            if settings.apply_metadata:
                progress.stage("Applying metadata...")
                metadata_path = work / "metadata.txt"
                async with aiofiles.open(metadata_path, "w", encoding="utf-8") as f:
                    await f.write(build_metadata_block(track))
                tagged = work / f"tagged.{ext}"
                await self.encoder.run(
                    metadata_args(str(current), str(metadata_path), str(tagged)),
                    cancel_token,
                )
                current = tagged

                if CODEC_MAP[settings.output_codec]["embeds_art"] and art_provider:
                    current = await self._embed_cover(
                        current, work, settings, cancel_token, art_provider, progress
                    )

            cancel_token.raise_if_cancelled()
            async with aiofiles.open(current, "rb") as f:
                return await f.read()

    async def _embed_cover(
        self,
        current: Path,
        work: Path,
        settings: Settings,
        cancel_token: CancelToken,
        art_provider: ArtProvider,
        progress: ProgressSink,
    ) -> Path:
        """
        Muxes the cover into ``current``. If the cover cannot be fetched the
        metadata-only file is copied verbatim and processing carries on.
        """
        progress.stage("Embedding album art...")
        final = work / f"final.{settings.extension}"
        try:
            art = await art_provider()
        except JobCancelledError:
            raise
        except Exception as e:
            log.warning(f"Failed to download album art, continuing without it: {e}")
            shutil.copyfile(current, final)
            return final

        art_path = work / "albumArt.jpg"
        async with aiofiles.open(art_path, "wb") as f:
            await f.write(art)
        await self.encoder.run(
            cover_art_args(str(current), str(art_path), str(final), settings),
            cancel_token,
        )
        return final
