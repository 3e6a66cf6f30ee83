"""
Async client for the parts of the Qobuz catalog the job pipeline consumes.
"""

import asyncio
import hashlib
import logging
import time
from typing import Any, Dict, Optional, Protocol

import aiohttp

from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.exceptions import (
    FetchError,
    InvalidAppSecretError,
    InvalidQualityError,
    NotStreamableError,
)
from qobuz_jobs.media.downloader import ByteProgress, Downloader
from qobuz_jobs.models.catalog import Album, Track
from qobuz_jobs.models.config import QUALITY_MAP

log = logging.getLogger(__name__)


class CatalogService(Protocol):
    """The catalog operations the pipeline depends on."""

    async def resolve_download_url(
        self, track_id: str, quality: str, cancel_token: CancelToken
    ) -> str: ...

    async def fetch_album(self, album_id: str, cancel_token: CancelToken) -> Album: ...

    async def fetch_track(self, track_id: str, cancel_token: CancelToken) -> Track: ...

    async def head_size(self, url: str, cancel_token: CancelToken) -> int: ...

    async def fetch_bytes(
        self,
        url: str,
        cancel_token: CancelToken,
        on_progress: Optional[ByteProgress] = None,
        expected_size: int = 0,
    ) -> bytes: ...

    async def fetch_image(self, url: str, cancel_token: CancelToken) -> bytes: ...


class QobuzCatalogClient:
    """
    Client for the Qobuz JSON API (v0.2).

    Download URLs are time-limited and signed with the app secret; album and
    track metadata calls only need the app id and the user token.
    """

    BASE_URL = "https://www.qobuz.com/api.json/0.2/"

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        user_auth_token: str = "",
        max_connections: int = 8,
    ):
        """
        Initializes the API client.

        Args:
            app_id: 9-digit Qobuz application ID from the web player.
            app_secret: The matching app secret used to sign file URL requests.
            user_auth_token: Token of a streaming-eligible Qobuz account.
            max_connections: Size of the connection pool.
        """
        self.app_id: str = str(app_id)
        self.app_secret: str = app_secret
        self.user_auth_token: str = user_auth_token
        self.max_connections = max_connections

        self._session: Optional[aiohttp.ClientSession] = None
        self._downloader = Downloader()

    async def _initialize_session(self) -> aiohttp.ClientSession:
        """Ensures an active aiohttp session is available with compression enabled."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self.max_connections * 2,
                limit_per_host=self.max_connections,
                ttl_dns_cache=300,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                headers={
                    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
                    "X-App-Id": self.app_id,
                    "Accept-Encoding": "gzip, deflate, br",
                },
                timeout=aiohttp.ClientTimeout(total=60, connect=15, sock_read=30),
            )
        return self._session

    async def close(self) -> None:
        """Gracefully closes the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    def _prepare_get_file_url_params(
        self, track_id: str, format_id: int
    ) -> Dict[str, Any]:
        """
        Builds the signed parameter dictionary for the 'track/getFileUrl' endpoint.
        """
        if str(format_id) not in QUALITY_MAP:
            raise InvalidQualityError(
                f"Invalid format_id: {format_id}. Must be one of 5, 6, 7, or 27."
            )
        if not self.app_secret:
            raise InvalidAppSecretError(
                "App secret has not been configured. Cannot sign request."
            )

        unix_ts = int(time.time())
        sig_str = f"trackgetFileUrlformat_id{format_id}intentstreamtrack_id{track_id}{unix_ts}{self.app_secret}"
        request_sig = hashlib.md5(sig_str.encode("utf-8")).hexdigest()  # noqa: S324

        return {
            "request_ts": unix_ts,
            "request_sig": request_sig,
            "track_id": track_id,
            "format_id": format_id,
            "intent": "stream",
        }

    async def api_call(
        self, endpoint: str, cancel_token: Optional[CancelToken] = None, **kwargs: Any
    ) -> Dict[str, Any]:
        """Makes an authenticated API call; network failures become FetchError."""
        session = await self._initialize_session()

        params = kwargs.copy()
        if endpoint == "track/getFileUrl":
            params = self._prepare_get_file_url_params(
                track_id=params.pop("id"), format_id=params.pop("fmt_id")
            )
        if self.user_auth_token:
            params["user_auth_token"] = self.user_auth_token

        async def _call() -> Dict[str, Any]:
            start_time = time.monotonic()
            async with session.get(self.BASE_URL + endpoint, params=params) as r:
                duration_ms = (time.monotonic() - start_time) * 1000
                log.debug(f"API call {endpoint} -> {r.status} in {duration_ms:.0f} ms")
                if endpoint == "track/getFileUrl" and r.status == 400:
                    raise InvalidAppSecretError(
                        "The app secret is invalid or has expired."
                    )
                r.raise_for_status()
                return await r.json()

        try:
            if cancel_token is not None:
                return await cancel_token.guard(_call())
            return await _call()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.debug(f"API call to {endpoint} failed: {e}")
            raise FetchError(f"Qobuz API call '{endpoint}' failed: {e}") from e

    # Public API Methods
    async def fetch_album(self, album_id: str, cancel_token: CancelToken) -> Album:
        data = await self.api_call("album/get", cancel_token, album_id=album_id)
        return Album.from_api(data)

    async def fetch_track(self, track_id: str, cancel_token: CancelToken) -> Track:
        data = await self.api_call("track/get", cancel_token, track_id=track_id)
        return Track.from_api(data)

    async def resolve_download_url(
        self, track_id: str, quality: str, cancel_token: CancelToken
    ) -> str:
        data = await self.api_call(
            "track/getFileUrl", cancel_token, id=track_id, fmt_id=int(quality)
        )
        if not (url := data.get("url")):
            raise NotStreamableError(f"Track {track_id} has no download URL.")
        return url

    async def head_size(self, url: str, cancel_token: CancelToken) -> int:
        return await self._downloader.head_size(url, cancel_token)

    async def fetch_bytes(
        self,
        url: str,
        cancel_token: CancelToken,
        on_progress: Optional[ByteProgress] = None,
        expected_size: int = 0,
    ) -> bytes:
        return await self._downloader.fetch_bytes(
            url, cancel_token, on_progress, expected_size
        )

    async def fetch_image(self, url: str, cancel_token: CancelToken) -> bytes:
        """Downloads cover art; a missing image is a FetchError like any other."""
        return await self._downloader.fetch_bytes(url, cancel_token)
