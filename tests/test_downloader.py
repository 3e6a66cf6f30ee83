import asyncio
import io

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from PIL import Image

from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.exceptions import FetchError, JobCancelledError
from qobuz_jobs.media.artwork import get_full_res_image_url, resize_cover
from qobuz_jobs.media.downloader import Downloader
from qobuz_jobs.models.catalog import Album

PAYLOAD = b"x" * 700_000


async def serve_file(request):
    return web.Response(body=PAYLOAD)


async def serve_slowly(request):
    response = web.StreamResponse()
    await response.prepare(request)
    for _ in range(40):
        await response.write(b"x" * 1024)
        await asyncio.sleep(0.05)
    return response


def with_downloader(scenario):
    async def run():
        app = web.Application()
        app.router.add_route("*", "/file", serve_file)
        app.router.add_get("/slow", serve_slowly)
        async with TestServer(app) as server, aiohttp.ClientSession() as session:
            return await scenario(Downloader(session), server)

    return asyncio.run(run())


def test_fetch_bytes_reports_progress():
    seen = []

    async def scenario(downloader, server):
        size = await downloader.head_size(str(server.make_url("/file")), CancelToken())
        data = await downloader.fetch_bytes(
            str(server.make_url("/file")),
            CancelToken(),
            lambda received, total: seen.append((received, total)),
        )
        return size, data

    size, data = with_downloader(scenario)

    assert size == len(PAYLOAD)
    assert data == PAYLOAD
    assert seen[-1] == (len(PAYLOAD), len(PAYLOAD))
    assert [r for r, _ in seen] == sorted(r for r, _ in seen)


def test_http_errors_become_fetch_errors():
    async def scenario(downloader, server):
        await downloader.fetch_bytes(str(server.make_url("/missing")), CancelToken())

    with pytest.raises(FetchError):
        with_downloader(scenario)


def test_cancel_aborts_a_transfer():
    async def scenario(downloader, server):
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.1, token.cancel)
        await downloader.fetch_bytes(str(server.make_url("/slow")), token)

    with pytest.raises(JobCancelledError):
        with_downloader(scenario)


def test_full_resolution_cover_url():
    album = Album(id="1", title="x", image={"large": "https://img/ab_600.jpg"})
    assert get_full_res_image_url(album) == "https://img/ab_org.jpg"
    assert get_full_res_image_url(Album(id="2", title="y")) is None
    assert get_full_res_image_url(None) is None


def test_resize_cover_limits_the_longest_side():
    buffer = io.BytesIO()
    Image.new("RGBA", (1200, 600), (255, 0, 0, 255)).save(buffer, format="PNG")

    resized = asyncio.run(resize_cover(buffer.getvalue(), 300, 0.8))

    with Image.open(io.BytesIO(resized)) as img:
        assert img.format == "JPEG"
        assert img.size == (300, 150)


def test_unreadable_cover_is_kept_as_is():
    assert asyncio.run(resize_cover(b"not an image", 300, 0.8)) == b"not an image"
