"""
Handles the processing of a single track, from download to a finished file.
"""

import logging
from typing import Callable, Optional

from qobuz_jobs.api.client import CatalogService
from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.core.progress import NullProgress, ProgressSink
from qobuz_jobs.exceptions import DurationAnomaly
from qobuz_jobs.media.downloader import ByteProgress
from qobuz_jobs.media.encoder import FFmpegEncoder
from qobuz_jobs.media.integrity import fix_flac_md5, probe_duration
from qobuz_jobs.media.tagger import ArtProvider, Tagger
from qobuz_jobs.models.catalog import Track
from qobuz_jobs.models.config import Settings
from qobuz_jobs.utils.formatting import format_size, format_title

log = logging.getLogger(__name__)


class TrackProcessor:
    """
    Runs the per-track stages: fetch, transcode (with metadata and cover
    art), integrity repair and duration validation. Packaging is left to the
    caller, which knows where the bytes go.
    """

    def __init__(
        self,
        catalog: CatalogService,
        encoder: FFmpegEncoder,
        tagger: Optional[Tagger] = None,
        duration_probe: Callable[[bytes], Optional[float]] = probe_duration,
    ):
        self.catalog = catalog
        self.encoder = encoder
        self.tagger = tagger or Tagger(encoder)
        self.duration_probe = duration_probe

    async def fetch(
        self,
        track: Track,
        settings: Settings,
        cancel_token: CancelToken,
        progress: Optional[ProgressSink] = None,
        url: Optional[str] = None,
        size: Optional[int] = None,
        on_bytes: Optional[ByteProgress] = None,
    ) -> bytes:
        """
        Downloads the raw file. ``url`` and ``size`` skip the lookups when an
        album sizing pass already resolved them; ``on_bytes`` replaces the
        per-track percentage with the caller's own accounting.
        """
        progress = progress or NullProgress()
        if url is None or size is None:
            progress.stage("Fetching track size...")
            url = url or await self.catalog.resolve_download_url(
                track.id, settings.output_quality, cancel_token
            )
            size = await self.catalog.head_size(url, cancel_token)

        def report(received: int, total: int) -> None:
            if on_bytes:
                on_bytes(received, total)
            elif total > 0:
                progress.update(
                    received / total * 100,
                    f"{format_size(received)} / {format_size(total)}",
                )

        progress.stage(f"Downloading {format_title(track)}...")
        data = await self.catalog.fetch_bytes(url, cancel_token, report, size)
        log.debug(f"Fetched track {track.id}: {len(data)} bytes")
        return data

    async def transcode(
        self,
        data: bytes,
        track: Track,
        settings: Settings,
        cancel_token: CancelToken,
        progress: Optional[ProgressSink] = None,
        art_provider: Optional[ArtProvider] = None,
    ) -> bytes:
        """
        Re-encodes and tags ``data`` as ``settings`` require. When the source
        already is the requested codec and no metadata is wanted the bytes are
        returned untouched.
        """
        progress = progress or NullProgress()
        if settings.needs_encoder:
            data = await self.tagger.process(
                data, track, settings, cancel_token, art_provider, progress
            )
        else:
            log.debug(f"Track {track.id} needs no encoding, passing through.")

        if settings.output_codec == "FLAC" and settings.fix_md5:
            progress.stage("Fixing MD5 hash...")
            data = await fix_flac_md5(data, self.encoder, cancel_token)
        cancel_token.raise_if_cancelled()
        return data

    def validate(self, data: bytes, track: Track) -> Optional[DurationAnomaly]:
        """
        Compares the output's duration with the catalog's. Returns the anomaly
        for the caller to decide on, or None when the output looks complete or
        cannot be measured.
        """
        actual = self.duration_probe(data)
        if actual is None or not track.duration:
            log.debug(f"Skipping duration check for track {track.id}")
            return None
        if actual < track.duration:
            return DurationAnomaly(format_title(track), float(track.duration), actual)
        return None

    async def process(
        self,
        track: Track,
        settings: Settings,
        cancel_token: CancelToken,
        progress: Optional[ProgressSink] = None,
        art_provider: Optional[ArtProvider] = None,
        url: Optional[str] = None,
        size: Optional[int] = None,
        on_bytes: Optional[ByteProgress] = None,
    ) -> bytes:
        """Fetches and transcodes one track."""
        data = await self.fetch(
            track, settings, cancel_token, progress, url, size, on_bytes
        )
        return await self.transcode(
            data, track, settings, cancel_token, progress, art_provider
        )
