"""
The main orchestrator: creates jobs, picks their execution mode and drives
tracks and albums through the pipeline to a packaged result.
"""

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple, Union

from qobuz_jobs.api.client import CatalogService
from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.core.progress import ProgressChannel, ScopedProgress
from qobuz_jobs.core.strategy import resolve_execution_mode
from qobuz_jobs.exceptions import (
    ConfigurationError,
    DurationAnomaly,
    FetchError,
    JobCancelledError,
    NotStreamableError,
    QobuzJobsError,
)
from qobuz_jobs.media.artwork import COVER_FILENAME, get_full_res_image_url, resize_cover
from qobuz_jobs.media.encoder import FFmpegEncoder
from qobuz_jobs.media.tagger import ArtProvider
from qobuz_jobs.models.catalog import Album, Track
from qobuz_jobs.models.config import Settings
from qobuz_jobs.models.job import (
    Artifact,
    ExecutionMode,
    JobOutcome,
    JobState,
    OutputFile,
    ProgressEvent,
    SaveReport,
)
from qobuz_jobs.storage.packagers import ArchivePackager, ServerTreePackager, pad_width
from qobuz_jobs.utils.formatting import format_custom_title, format_size, format_title
from qobuz_jobs.utils.path import clean_file_name, clean_folder_path
from qobuz_jobs.web.remote import RemoteServerClient

from .track_processor import TrackProcessor

log = logging.getLogger(__name__)

Item = Union[Track, Album]
# Returns True to keep a file that is shorter than the catalog says
AnomalyHandler = Callable[[DurationAnomaly], Awaitable[bool]]


def order_album_tracks(album: Album) -> List[Tuple[int, Track]]:
    """
    Orders an album disc-major and numbers it as one flat sequence, so disc 2
    continues where disc 1 ended. Unstreamable tracks keep their position but
    are left out.
    """
    ordered = sorted(album.tracks, key=lambda t: (t.media_number, t.track_number))
    positioned = []
    for position, track in enumerate(ordered, start=1):
        if track.album is not album:
            track.album = album
        if track.streamable:
            positioned.append((position, track))
    return positioned


class Job:
    """One download of a track or an album. Lives in memory until resolved."""

    def __init__(self, item: Item, settings: Settings, mode: ExecutionMode):
        self.item = item
        self.settings = settings
        self.mode = mode
        self.state = JobState.QUEUED
        self.cancel_token = CancelToken()
        self.progress = ProgressChannel()
        self.outcome: Optional[JobOutcome] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def percent(self) -> float:
        return self.progress.percent

    @property
    def message(self) -> str:
        return self.progress.message

    def cancel(self, reason: str = "Cancelled by user") -> None:
        self.cancel_token.cancel(reason)

    def events(self) -> AsyncIterator[ProgressEvent]:
        return self.progress.events()

    async def wait(self) -> JobOutcome:
        return await self._task

    def __repr__(self) -> str:
        return f"<Job {format_title(self.item)!r} {self.mode.value} {self.state.value}>"


class DownloadManager:
    """
    Creates jobs and runs them. Each job is its own task; stages inside a job,
    and the tracks of an album, run one at a time.

    With a ``remote`` server configured, server modes are delegated to it.
    Without one this manager is the server and runs server-native jobs
    against its own filesystem.
    """

    def __init__(
        self,
        catalog: CatalogService,
        encoder: Optional[FFmpegEncoder] = None,
        remote: Optional[RemoteServerClient] = None,
        server_downloads_enabled: bool = False,
        on_duration_anomaly: Optional[AnomalyHandler] = None,
        tree_packager_factory: Callable[[Path], ServerTreePackager] = ServerTreePackager,
        duration_probe: Optional[Callable[[bytes], Optional[float]]] = None,
    ):
        self.catalog = catalog
        self.encoder = encoder or FFmpegEncoder()
        self.remote = remote
        self.server_downloads_enabled = server_downloads_enabled
        self.on_duration_anomaly = on_duration_anomaly
        self.tree_packager_factory = tree_packager_factory
        processor_kwargs = {"duration_probe": duration_probe} if duration_probe else {}
        self.track_processor = TrackProcessor(catalog, self.encoder, **processor_kwargs)

    async def _server_downloads_enabled(self) -> bool:
        if self.remote is not None:
            return await self.remote.is_server_downloads_enabled()
        return self.server_downloads_enabled

    async def create_job(
        self, item: Item, settings: Settings, mode: Optional[ExecutionMode] = None
    ) -> Job:
        """
        Starts a job for ``item``. The mode is resolved afresh for every job
        unless the caller forces one (the server does, for its own jobs).
        """
        if mode is None:
            mode = resolve_execution_mode(
                await self._server_downloads_enabled(),
                settings.server_side_downloads,
                settings.server_side_processing,
            )
        job = Job(item, settings, mode)
        log.debug(f"Created {job!r}")
        job._task = asyncio.create_task(self._run(job))
        return job

    async def close(self) -> None:
        if self.remote is not None:
            await self.remote.close()

    async def _run(self, job: Job) -> JobOutcome:
        try:
            if job.mode is ExecutionMode.SERVER_NATIVE and self.remote is not None:
                outcome = await self._delegate(job)
            elif job.mode is ExecutionMode.SERVER_NATIVE:
                outcome = await self._run_server_native(job)
            elif isinstance(job.item, Album):
                outcome = await self._run_client_album(job)
            else:
                outcome = await self._run_client_track(job)
        except (JobCancelledError, asyncio.CancelledError):
            job.cancel_token.cancel()
            job.state = JobState.CANCELLED
            job.progress.close()
            outcome = JobOutcome(JobState.CANCELLED, message="Download cancelled")
        except Exception as e:
            log.debug(f"Job {job!r} failed", exc_info=True)
            job.state = JobState.FAILED
            job.progress.error(str(e))
            outcome = JobOutcome(JobState.FAILED, error=e, message=str(e))
        job.outcome = outcome
        return outcome

    # --- Cover art ---
    async def _fetch_cover(
        self, album: Optional[Album], settings: Settings, cancel_token: CancelToken
    ) -> bytes:
        url = get_full_res_image_url(album)
        if not url:
            raise FetchError("Album has no cover art.")
        data = await self.catalog.fetch_image(url, cancel_token)
        return await resize_cover(
            data, settings.album_art_size, settings.album_art_quality
        )

    async def _album_cover(
        self, album: Album, settings: Settings, cancel_token: CancelToken
    ) -> Optional[bytes]:
        """Fetched once per album; a missing cover never fails the batch."""
        try:
            return await self._fetch_cover(album, settings, cancel_token)
        except JobCancelledError:
            raise
        except QobuzJobsError as e:
            log.warning(f"Failed to download album art, continuing without it: {e}")
            return None

    @staticmethod
    def _held_cover(cover: Optional[bytes]) -> Optional[ArtProvider]:
        if cover is None:
            return None

        async def provide() -> bytes:
            return cover

        return provide

    # --- Client modes ---
    async def _run_client_track(self, job: Job) -> JobOutcome:
        track, settings, token = job.item, job.settings, job.cancel_token
        processor = self.track_processor

        job.state = JobState.FETCHING
        data = await processor.fetch(track, settings, token, job.progress)

        job.state = JobState.TRANSCODING
        art_provider = None
        if track.album is not None:

            async def art_provider() -> bytes:
                return await self._fetch_cover(track.album, settings, token)

        data = await processor.transcode(
            data, track, settings, token, job.progress, art_provider
        )

        job.state = JobState.VALIDATING
        anomaly = processor.validate(data, track)

        name = clean_file_name(
            f"{format_custom_title(settings.track_name, track)}.{settings.extension}"
        )
        files = [OutputFile(name, data)]

        async def package() -> JobOutcome:
            return await self._package_client(job, files, name, single=True)

        if anomaly is not None:
            return await self._resolve_anomaly(job, anomaly, package)
        return await package()

    async def _resolve_anomaly(
        self,
        job: Job,
        anomaly: DurationAnomaly,
        package: Callable[[], Awaitable[JobOutcome]],
    ) -> JobOutcome:
        log.warning(str(anomaly))
        job.progress.warn(str(anomaly))
        if self.on_duration_anomaly is not None:
            keep = await job.cancel_token.guard(self.on_duration_anomaly(anomaly))
            if keep:
                return await package()
            message = f'Discarded "{anomaly.title}"'
            job.state = JobState.COMPLETED
            job.progress.complete(message)
            return JobOutcome(JobState.COMPLETED, anomaly=anomaly, message=message)

        held = DurationAnomaly(anomaly.title, anomaly.expected, anomaly.actual, package)
        message = f'"{anomaly.title}" is shorter than expected; awaiting a decision'
        job.state = JobState.COMPLETED
        job.progress.complete(message)
        return JobOutcome(JobState.COMPLETED, anomaly=held, message=message)

    async def _run_client_album(self, job: Job) -> JobOutcome:
        settings, token = job.settings, job.cancel_token
        album: Album = job.item

        job.state = JobState.FETCHING
        if not album.tracks:
            job.progress.stage("Fetching album metadata...")
            album = await self.catalog.fetch_album(album.id, token)
            job.item = album

        tracks = order_album_tracks(album)
        if not tracks:
            raise NotStreamableError(
                f"Album '{format_title(album)}' has no streamable tracks."
            )
        width = pad_width(len(album.tracks))

        # Sizing pass; any failure here aborts the whole album
        job.progress.stage("Fetching track sizes...")
        sources = []
        for i, (position, track) in enumerate(tracks):
            url = await self.catalog.resolve_download_url(
                track.id, settings.output_quality, token
            )
            size = await self.catalog.head_size(url, token)
            sources.append((position, track, url, size))
            job.progress.update(
                (i + 1) / len(tracks) * 100,
                f"Fetching track sizes ({i + 1}/{len(tracks)})...",
            )
        total_bytes = sum(size for *_, size in sources)

        cover = await self._album_cover(album, settings, token)
        files: List[OutputFile] = []
        if cover is not None:
            files.append(OutputFile(COVER_FILENAME, cover))

        # Transfer pass, one track in flight at a time
        job.progress.stage(f"Downloading {format_title(album)}...")
        done = 0
        produced = 0
        last_error: Optional[Exception] = None
        for position, track, url, size in sources:

            def on_bytes(received: int, _total: int, base: int = done) -> None:
                if total_bytes > 0:
                    job.progress.update(
                        (base + received) / total_bytes * 100,
                        f"{format_size(base + received)} / {format_size(total_bytes)}",
                    )

            job.state = JobState.TRANSCODING
            stage_messages = ScopedProgress(job.progress, job.progress.percent, 0)
            try:
                data = await self.track_processor.process(
                    track,
                    settings,
                    token,
                    stage_messages,
                    self._held_cover(cover),
                    url=url,
                    size=size,
                    on_bytes=on_bytes,
                )
            except JobCancelledError:
                raise
            except Exception as e:
                log.error(f"Failed to process '{format_title(track)}': {e}")
                job.progress.warn(f"Skipped '{format_title(track)}': {e}")
                last_error = e
                continue
            finally:
                done += size

            track_name = format_custom_title(settings.track_name, track)
            files.append(
                OutputFile(
                    clean_file_name(
                        f"{position:0{width}d} {track_name}.{settings.extension}"
                    ),
                    data,
                )
            )
            produced += 1

        if produced == 0:
            raise last_error or QobuzJobsError("No tracks could be downloaded.")
        if produced < len(sources):
            log.warning(
                f"{len(sources) - produced} of {len(sources)} tracks of "
                f"'{format_title(album)}' could not be downloaded."
            )

        name = clean_file_name(f"{format_custom_title(settings.zip_name, album)}.zip")
        folder = clean_folder_path(format_custom_title(settings.folder_name, album))
        return await self._package_client(job, files, name, folder=folder)

    async def _package_client(
        self,
        job: Job,
        files: List[OutputFile],
        name: str,
        single: bool = False,
        folder: str = "",
    ) -> JobOutcome:
        settings, token = job.settings, job.cancel_token
        token.raise_if_cancelled()
        job.state = JobState.PACKAGING

        if job.mode is ExecutionMode.CLIENT_SERVER_UPLOAD:
            if self.remote is None:
                raise ConfigurationError("Saving to a server needs a server URL.")
            base = settings.server_download_path or "downloads"
            output_path = f"{base}/{folder}" if folder else base
            job.progress.stage("Saving to server...", 90)
            uploader = await self.remote.uploader()
            report = await uploader.package(files, output_path, token, job.progress)
            if report.succeeded == 0:
                raise FetchError(f"None of the {report.total} files reached the server.")
            if report.is_partial:
                log.warning(f"Only {report} files were saved to the server.")
            message = f"Saved {report} files to {output_path}"
            artifact = Artifact(name, report=report)
        elif single:
            message = f"Finished {name}"
            artifact = Artifact(name, data=files[0].data)
        else:
            job.progress.stage("Creating ZIP file...", 100)
            data = await asyncio.to_thread(ArchivePackager().package, files)
            message = f"Created {name} ({format_size(len(data))})"
            artifact = Artifact(name, data=data)

        token.raise_if_cancelled()
        job.state = JobState.COMPLETED
        job.progress.complete(message)
        return JobOutcome(JobState.COMPLETED, artifact=artifact, message=message)

    # --- Server modes ---
    async def _delegate(self, job: Job) -> JobOutcome:
        job.state = JobState.FETCHING
        job.progress.stage("Sending job to server...")
        event = await self.remote.run_job(
            job.item, job.settings, job.cancel_token, job.progress
        )
        message = event.message or "Saved on server"
        job.state = JobState.COMPLETED
        job.progress.complete(message)
        return JobOutcome(
            JobState.COMPLETED,
            artifact=Artifact(format_title(job.item)),
            message=message,
        )

    async def _run_server_native(self, job: Job) -> JobOutcome:
        """
        Processes on this machine and writes each track into the download
        tree as soon as it is finished. A track that fails to process or to
        write is counted and skipped; nothing is validated for duration.
        """
        settings, token = job.settings, job.cancel_token
        item = job.item
        packager = self.tree_packager_factory(Path(settings.server_download_path))

        job.state = JobState.FETCHING
        if isinstance(item, Album):
            if not item.tracks:
                job.progress.stage("Fetching album metadata...")
                item = await self.catalog.fetch_album(item.id, token)
                job.item = item
            tracks = order_album_tracks(item)
            if not tracks:
                raise NotStreamableError(
                    f"Album '{format_title(item)}' has no streamable tracks."
                )
            width = pad_width(len(item.tracks))
            cover = await self._album_cover(item, settings, token)
            art_provider = self._held_cover(cover)
        else:
            tracks = [(0, item)]
            width = 0
            art_provider = None
            if item.album is not None:

                async def art_provider() -> bytes:
                    return await self._fetch_cover(item.album, settings, token)

        folder = clean_folder_path(format_custom_title(settings.folder_name, item))
        await packager.prepare(folder)
        report = SaveReport(total=len(tracks))
        count = len(tracks)
        for i, (position, track) in enumerate(tracks):
            token.raise_if_cancelled()
            track_name = format_custom_title(settings.track_name, track)
            prefix = f"{position:0{width}d} " if width else ""
            name = clean_file_name(f"{prefix}{track_name}.{settings.extension}")
            job.state = JobState.TRANSCODING
            try:
                data = await self.track_processor.process(
                    track,
                    settings,
                    token,
                    job.progress.scoped(i / count * 100, 100 / count),
                    art_provider,
                )
                job.state = JobState.PACKAGING
                path = await packager.write_one(folder, name, data)
            except JobCancelledError:
                raise
            except Exception as e:
                log.error(f"Failed to save '{name}': {e}")
                job.progress.warn(f"Failed to save '{name}': {e}")
                report.failed_names.append(name)
                continue
            report.succeeded += 1
            report.saved_paths.append(str(path))

        if report.succeeded == 0:
            raise QobuzJobsError(f"None of the {report.total} tracks could be saved.")
        destination = Path(settings.server_download_path, folder)
        message = f"Saved {report} tracks to {destination}"
        if report.is_partial:
            log.warning(message)
        job.state = JobState.COMPLETED
        job.progress.complete(message)
        return JobOutcome(
            JobState.COMPLETED,
            artifact=Artifact(format_title(item), report=report),
            message=message,
        )
