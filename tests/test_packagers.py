import asyncio
import io
import zipfile

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.exceptions import QobuzJobsError
from qobuz_jobs.models.job import OutputFile
from qobuz_jobs.storage.packagers import (
    ArchivePackager,
    RemoteUploadPackager,
    ServerTreePackager,
    pad_width,
    resolve_within,
)


@pytest.mark.parametrize(
    "count, width", [(1, 2), (9, 2), (11, 2), (100, 2), (101, 3), (1000, 3), (1001, 4)]
)
def test_pad_width(count, width):
    assert pad_width(count) == width


def test_archive_is_stored_uncompressed_in_order():
    files = [OutputFile("cover.jpg", b"jpg"), OutputFile("01 a.flac", b"a" * 100)]

    data = ArchivePackager().package(files)

    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert zf.namelist() == ["cover.jpg", "01 a.flac"]
        assert {i.compress_type for i in zf.infolist()} == {zipfile.ZIP_STORED}
        assert zf.read("01 a.flac") == b"a" * 100


@pytest.mark.parametrize("relative", ["../outside", "a/../../outside", "..\\..\\etc"])
def test_resolve_within_refuses_escapes(tmp_path, relative):
    with pytest.raises(QobuzJobsError):
        resolve_within(tmp_path, relative)


def test_resolve_within_accepts_nested_paths(tmp_path):
    assert resolve_within(tmp_path, "a\\b/c") == (tmp_path / "a" / "b" / "c").resolve()
    assert resolve_within(tmp_path, "") == tmp_path.resolve()


def test_tree_packager_writes_into_folder(tmp_path):
    packager = ServerTreePackager(tmp_path)

    path = asyncio.run(packager.write_one("Artist - Album", "01 A/B.flac", b"data"))

    assert path == (tmp_path / "Artist - Album" / "01 A_B.flac").resolve()
    assert path.read_bytes() == b"data"


def test_tree_packager_refuses_folders_outside_the_root(tmp_path):
    packager = ServerTreePackager(tmp_path / "root")

    with pytest.raises(QobuzJobsError):
        asyncio.run(packager.prepare("../elsewhere"))


def test_upload_failures_are_counted_not_fatal():
    received = []

    async def save(request):
        form = await request.post()
        if form["filename"] == "02 b.flac":
            return web.json_response({"success": False, "error": "disk full"}, status=500)
        received.append((form["filename"], form["output_path"], form["file"].file.read()))
        return web.json_response(
            {"success": True, "data": {"filepath": f"/srv/{form['filename']}"}}
        )

    async def scenario():
        app = web.Application()
        app.router.add_post("/api/save-to-server", save)
        async with TestServer(app) as server:
            packager = RemoteUploadPackager(str(server.make_url("/")))
            try:
                return await packager.package(
                    [
                        OutputFile("01 a.flac", b"a"),
                        OutputFile("02 b.flac", b"b"),
                        OutputFile("03 c.flac", b"c"),
                    ],
                    "downloads/Album",
                    CancelToken(),
                )
            finally:
                await packager.close()

    report = asyncio.run(scenario())

    assert str(report) == "2/3"
    assert report.is_partial
    assert report.failed_names == ["02 b.flac"]
    assert report.saved_paths == ["/srv/01 a.flac", "/srv/03 c.flac"]
    assert received[0] == ("01 a.flac", "downloads/Album", b"a")
