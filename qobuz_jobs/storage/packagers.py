"""
Turns finished files into a job's deliverable: an in-memory ZIP, files
uploaded to a remote server, or files written into the server's own tree.
"""

import asyncio
import io
import logging
import zipfile
from pathlib import Path
from typing import Iterable, List, Optional

import aiofiles
import aiohttp

from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.core.progress import NullProgress, ProgressSink
from qobuz_jobs.exceptions import FetchError, QobuzJobsError
from qobuz_jobs.models.job import OutputFile, SaveReport
from qobuz_jobs.utils.path import clean_file_name, create_dir

log = logging.getLogger(__name__)

SAVE_ENDPOINT = "/api/save-to-server"


def pad_width(track_count: int) -> int:
    """Digits used for track positions in album file names; at least two."""
    return max(len(str(max(track_count - 1, 0))), 2)


def resolve_within(root: Path, relative: str) -> Path:
    """
    Joins ``relative`` onto ``root`` and refuses anything that would end up
    outside of it.
    """
    root = root.resolve()
    parts = [p for p in relative.replace("\\", "/").split("/") if p]
    target = root.joinpath(*parts).resolve() if parts else root
    if target != root and root not in target.parents:
        raise QobuzJobsError(f"Path '{relative}' escapes the download directory.")
    return target


class ArchivePackager:
    """Bundles files into an uncompressed ZIP held in memory."""

    def package(self, files: Iterable[OutputFile]) -> bytes:
        buffer = io.BytesIO()
        # Audio is already compressed; storing keeps packaging fast
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as zf:
            for f in files:
                zf.writestr(f.name, f.data)
        return buffer.getvalue()


class RemoteUploadPackager:
    """
    Uploads finished files one at a time to a remote server's save endpoint.
    A failed upload is logged and counted; it never aborts the rest.
    """

    def __init__(self, server_url: str, session: Optional[aiohttp.ClientSession] = None):
        self.server_url = server_url.rstrip("/")
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def upload_one(
        self, file: OutputFile, output_path: str, cancel_token: CancelToken
    ) -> str:
        """Sends one file; returns the path the server saved it under."""
        session = await self._get_session()
        form = aiohttp.FormData()
        form.add_field(
            "file", file.data, filename=file.name, content_type="application/octet-stream"
        )
        form.add_field("filename", file.name)
        form.add_field("output_path", output_path)
        url = f"{self.server_url}{SAVE_ENDPOINT}"

        async def _post() -> str:
            async with session.post(url, data=form) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = {}
                if response.status != 200 or not body.get("success"):
                    raise FetchError(
                        body.get("error") or f"Upload failed with HTTP {response.status}",
                        url=url,
                    )
                return body.get("data", {}).get("filepath", file.name)

        try:
            return await cancel_token.guard(_post())
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchError(f"Could not upload '{file.name}': {e}", url=url) from e

    async def package(
        self,
        files: List[OutputFile],
        output_path: str,
        cancel_token: CancelToken,
        progress: Optional[ProgressSink] = None,
        start: float = 90.0,
        span: float = 10.0,
    ) -> SaveReport:
        progress = progress or NullProgress()
        report = SaveReport(total=len(files))
        for i, file in enumerate(files):
            cancel_token.raise_if_cancelled()
            try:
                saved = await self.upload_one(file, output_path, cancel_token)
            except FetchError as e:
                log.error(f"Failed to save '{file.name}' to server: {e}")
                report.failed_names.append(file.name)
            else:
                report.succeeded += 1
                report.saved_paths.append(saved)
            progress.update(
                start + (i + 1) / len(files) * span,
                f"Saved {report.succeeded}/{report.total} files to server",
            )
        return report


class ServerTreePackager:
    """Writes finished files straight into the server's download directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    async def prepare(self, folder: str = "") -> Path:
        """Creates ``folder`` under the root; safe to call repeatedly."""
        target = resolve_within(self.root, folder)
        await asyncio.to_thread(create_dir, target)
        return target

    async def write_one(self, folder: str, name: str, data: bytes) -> Path:
        directory = await self.prepare(folder)
        path = directory / clean_file_name(name)
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        log.debug(f"Saved {path} ({len(data)} bytes)")
        return path
