"""
Client side of a qobuz-jobs server: reads its configuration, delegates whole
jobs to it and relays the progress frames it streams back.
"""

import asyncio
import logging
from typing import Optional, Union

import aiohttp

from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.core.progress import ProgressChannel
from qobuz_jobs.exceptions import FetchError, ServerJobError
from qobuz_jobs.models.catalog import Album, Track
from qobuz_jobs.models.config import Settings
from qobuz_jobs.models.job import EventKind, ProgressEvent
from qobuz_jobs.storage.packagers import RemoteUploadPackager
from qobuz_jobs.web.sse import FrameParser

log = logging.getLogger(__name__)

CONFIG_ENDPOINT = "/api/server-config"
DOWNLOAD_ENDPOINT = "/api/server-download"


class RemoteServerClient:
    def __init__(self, server_url: str, session: Optional[aiohttp.ClientSession] = None):
        self.server_url = server_url.rstrip("/")
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # Server jobs stream for as long as the album takes
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=15)
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def uploader(self) -> RemoteUploadPackager:
        return RemoteUploadPackager(self.server_url, await self._get_session())

    async def fetch_config(self) -> dict:
        session = await self._get_session()
        url = f"{self.server_url}{CONFIG_ENDPOINT}"
        try:
            async with session.get(url) as response:
                response.raise_for_status()
                body = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchError(f"Could not read server configuration: {e}", url=url) from e
        return body.get("data", {})

    async def is_server_downloads_enabled(self) -> bool:
        """The operator's switch; an unreachable server counts as disabled."""
        try:
            config = await self.fetch_config()
        except FetchError as e:
            log.warning(f"Server unavailable, processing locally: {e}")
            return False
        return bool(config.get("enable_server_downloads"))

    async def run_job(
        self,
        item: Union[Track, Album],
        settings: Settings,
        cancel_token: CancelToken,
        progress: ProgressChannel,
    ) -> ProgressEvent:
        """
        Asks the server to download and process ``item`` and relays its
        progress. Returns the server's completion event; an error frame, or
        a stream that ends without a terminal frame, raises ServerJobError.
        """
        session = await self._get_session()
        key = "album_id" if isinstance(item, Album) else "track_id"
        payload = {key: item.id, "settings": settings.model_dump()}
        url = f"{self.server_url}{DOWNLOAD_ENDPOINT}"

        async def _stream() -> ProgressEvent:
            async with session.post(url, json=payload) as response:
                if response.status != 200:
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        body = {}
                    raise ServerJobError(
                        body.get("error") or f"Server rejected the job (HTTP {response.status})"
                    )
                parser = FrameParser()
                last_percent = 0.0
                async for chunk in response.content.iter_any():
                    for event in parser.feed(chunk):
                        if event.kind is EventKind.COMPLETE:
                            return event
                        if event.kind is EventKind.ERROR:
                            raise ServerJobError(event.message or "Server job failed")
                        if event.kind is EventKind.WARNING:
                            progress.warn(event.message)
                            continue
                        percent = event.percent if event.percent is not None else last_percent
                        if percent < last_percent:
                            progress.stage(event.message, percent)
                        else:
                            progress.update(percent, event.message or None)
                        last_percent = percent
                parser.flush()
            raise ServerJobError("Server closed the progress stream before the job finished.")

        try:
            return await cancel_token.guard(_stream())
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchError(f"Lost connection to server: {e}", url=url) from e
