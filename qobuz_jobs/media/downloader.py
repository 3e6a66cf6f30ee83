"""
Handles the low-level downloading of files over HTTP with cooperative cancellation.
"""

import asyncio
import logging
from typing import Callable, Optional

import aiohttp

from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.exceptions import FetchError

log = logging.getLogger(__name__)

ByteProgress = Callable[[int, int], None]

_connection_pool: aiohttp.ClientSession | None = None
_pool_lock = asyncio.Lock()


async def get_connection_pool(max_connections: int = 8) -> aiohttp.ClientSession:
    """
    Gets or creates a shared aiohttp ClientSession for downloads.

    This function ensures that only one connection pool is created for the
    lifetime of the application run.
    """
    global _connection_pool
    async with _pool_lock:
        if _connection_pool and not _connection_pool.closed:
            return _connection_pool

        connector = aiohttp.TCPConnector(
            limit=max_connections * 2,
            limit_per_host=max_connections,
            ttl_dns_cache=600,  # 10 minutes
            keepalive_timeout=30,
            enable_cleanup_closed=True,
        )
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=90)
        _connection_pool = aiohttp.ClientSession(connector=connector, timeout=timeout)
        log.debug(f"Created download pool with limit_per_host={max_connections}")

    return _connection_pool


async def close_connection_pool() -> None:
    """Closes the shared global connection pool."""
    global _connection_pool
    async with _pool_lock:
        if _connection_pool and not _connection_pool.closed:
            await _connection_pool.close()
            _connection_pool = None
            log.debug("Shared downloader connection pool closed.")


class Downloader:
    """
    Streams remote files into memory. Nothing here retries: a failed transfer
    surfaces as :class:`FetchError` and the user decides whether to try again.
    """

    CHUNK_SIZE = 262144  # 256 KB

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is not None and not self._session.closed:
            return self._session
        return await get_connection_pool()

    async def head_size(self, url: str, cancel_token: CancelToken) -> int:
        """Returns the Content-Length of ``url``, or 0 when it is not announced."""

        async def _head() -> int:
            session = await self._get_session()
            async with session.head(url, allow_redirects=True) as response:
                response.raise_for_status()
                return int(response.headers.get("Content-Length", 0))

        try:
            return await cancel_token.guard(_head())
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise FetchError(f"Could not fetch file size: {e}", url=url) from e

    async def fetch_bytes(
        self,
        url: str,
        cancel_token: CancelToken,
        on_progress: Optional[ByteProgress] = None,
        expected_size: int = 0,
    ) -> bytes:
        """
        Downloads ``url`` into memory, reporting ``(received, total)`` after
        every chunk. Cancelling the token aborts the transfer immediately.
        """

        async def _stream() -> bytes:
            session = await self._get_session()
            async with session.get(url, allow_redirects=True) as response:
                response.raise_for_status()
                total = int(response.headers.get("Content-Length", expected_size))
                buffer = bytearray()
                async for chunk in response.content.iter_chunked(self.CHUNK_SIZE):
                    cancel_token.raise_if_cancelled()
                    buffer.extend(chunk)
                    if on_progress:
                        on_progress(len(buffer), total)
                return bytes(buffer)

        try:
            return await cancel_token.guard(_stream())
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchError(f"Download failed: {e}", url=url) from e
