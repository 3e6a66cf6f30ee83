import asyncio

import aiohttp
import pytest
from aiohttp.test_utils import TestClient, TestServer
from conftest import FakeCatalog, make_album, make_track, payload_for

from qobuz_jobs.core.download_manager import DownloadManager
from qobuz_jobs.exceptions import QobuzJobsError, ServerJobError
from qobuz_jobs.models.config import ServerConfig, Settings
from qobuz_jobs.models.job import EventKind, ExecutionMode, JobState
from qobuz_jobs.web.remote import RemoteServerClient
from qobuz_jobs.web.server import confine_path, create_app
from qobuz_jobs.web.sse import FrameParser


def server_app(tmp_path, encoder, catalog=None, enabled=True):
    config = ServerConfig(
        enable_server_downloads=enabled, server_download_path=str(tmp_path)
    )
    manager = DownloadManager(
        catalog or FakeCatalog(),
        encoder,
        server_downloads_enabled=enabled,
        duration_probe=lambda data: None,
    )
    return create_app(config, manager.catalog, encoder, manager=manager)


def settings_for(tmp_path, **kwargs):
    return Settings(
        output_quality="6",
        output_codec="FLAC",
        apply_metadata=False,
        server_download_path=str(tmp_path),
        **kwargs,
    )


def with_client(app, scenario):
    async def run():
        async with TestClient(TestServer(app)) as client:
            return await scenario(client)

    return asyncio.run(run())


def test_confine_path(tmp_path):
    assert confine_path(str(tmp_path), "music/new") == (tmp_path / "music" / "new").resolve()
    assert confine_path(str(tmp_path), str(tmp_path / "x")) == (tmp_path / "x").resolve()
    assert confine_path(str(tmp_path), None) == tmp_path.resolve()
    with pytest.raises(QobuzJobsError):
        confine_path(str(tmp_path / "root"), str(tmp_path))


def test_server_config_is_published(tmp_path, encoder):
    async def scenario(client):
        response = await client.get("/api/server-config")
        return response.status, await response.json()

    status, body = with_client(server_app(tmp_path, encoder), scenario)

    assert status == 200
    assert body["success"] is True
    assert body["data"]["enable_server_downloads"] is True
    assert body["data"]["server_download_path"] == str(tmp_path)


def test_save_to_server_writes_under_the_root(tmp_path, encoder):
    async def scenario(client):
        form = aiohttp.FormData()
        form.add_field("file", b"audio", filename="01 a.flac")
        form.add_field("filename", "01 a.flac")
        form.add_field("output_path", "downloads/Album")
        response = await client.post("/api/save-to-server", data=form)
        return response.status, await response.json()

    status, body = with_client(server_app(tmp_path, encoder), scenario)

    saved = tmp_path / "downloads" / "Album" / "01 a.flac"
    assert status == 200
    assert body["data"]["filepath"] == str(saved.resolve())
    assert saved.read_bytes() == b"audio"


def test_save_to_server_rejects_escaping_paths(tmp_path, encoder):
    async def scenario(client):
        form = aiohttp.FormData()
        form.add_field("file", b"audio", filename="x.flac")
        form.add_field("filename", "x.flac")
        form.add_field("output_path", "../../etc")
        response = await client.post("/api/save-to-server", data=form)
        return response.status, await response.json()

    status, body = with_client(server_app(tmp_path / "root", encoder), scenario)

    assert status == 400
    assert body["success"] is False


def test_save_to_server_requires_a_file(tmp_path, encoder):
    async def scenario(client):
        form = aiohttp.FormData()
        form.add_field("filename", "x.flac")
        response = await client.post("/api/save-to-server", data=form)
        return response.status

    assert with_client(server_app(tmp_path, encoder), scenario) == 400


def test_server_download_is_refused_when_disabled(tmp_path, encoder):
    async def scenario(client):
        response = await client.post("/api/server-download", json={"album_id": "alb1"})
        return response.status

    app = server_app(tmp_path, encoder, enabled=False)
    assert with_client(app, scenario) == 403


def test_server_download_requires_an_id(tmp_path, encoder):
    async def scenario(client):
        response = await client.post("/api/server-download", json={"settings": {}})
        return response.status

    assert with_client(server_app(tmp_path, encoder), scenario) == 400


def test_server_download_streams_progress_frames(tmp_path, encoder):
    catalog = FakeCatalog(album=make_album(disc_sizes=(3,)))

    async def scenario(client):
        response = await client.post(
            "/api/server-download",
            json={"album_id": "alb1", "settings": settings_for(tmp_path).model_dump()},
        )
        parser = FrameParser()
        events = []
        async for chunk in response.content.iter_any():
            events.extend(parser.feed(chunk))
        return response.headers["Content-Type"], events

    content_type, events = with_client(server_app(tmp_path, encoder, catalog), scenario)

    assert content_type.startswith("text/event-stream")
    assert events[-1].kind is EventKind.COMPLETE
    assert "3/3" in events[-1].message
    folder = tmp_path / "The Midnight - Night Drive"
    assert sorted(p.name for p in folder.iterdir()) == [
        "01 The Midnight - Song 1.flac",
        "02 The Midnight - Song 2.flac",
        "03 The Midnight - Song 3.flac",
    ]


def test_server_download_reports_an_unknown_track(tmp_path, encoder):
    async def scenario(client):
        response = await client.post(
            "/api/server-download", json={"track_id": "missing"}
        )
        parser = FrameParser()
        return parser.feed(await response.read())

    events = with_client(server_app(tmp_path, encoder), scenario)

    assert events[-1].kind is EventKind.ERROR


def run_remote(tmp_path, encoder, server_catalog, item, settings, client_catalog=None):
    """Runs a job on a client manager that talks to a live test server."""

    async def scenario():
        app = server_app(tmp_path, encoder, server_catalog)
        async with TestServer(app) as server:
            remote = RemoteServerClient(str(server.make_url("/")))
            manager = DownloadManager(
                client_catalog or FakeCatalog(),
                encoder,
                remote=remote,
                duration_probe=lambda data: None,
            )
            try:
                job = await manager.create_job(item, settings)
                events = []
                job.progress.subscribe(events.append)
                return job, await job.wait(), events
            finally:
                await manager.close()

    return asyncio.run(scenario())


def test_server_native_job_is_delegated_to_the_server(tmp_path, encoder):
    album = make_album(disc_sizes=(2,))
    settings = settings_for(
        tmp_path, server_side_downloads=True, server_side_processing=True
    )

    job, outcome, events = run_remote(
        tmp_path, encoder, FakeCatalog(album=album), make_album(disc_sizes=()), settings
    )

    assert job.mode is ExecutionMode.SERVER_NATIVE
    assert outcome.status is JobState.COMPLETED
    assert "2/2" in outcome.message
    assert (tmp_path / "The Midnight - Night Drive" / "02 The Midnight - Song 2.flac").exists()


def test_delegated_job_failure_surfaces_as_server_job_error(tmp_path, encoder):
    settings = settings_for(
        tmp_path, server_side_downloads=True, server_side_processing=True
    )
    track = make_track(track_id="t1")
    server_catalog = FakeCatalog(tracks={"t1": track}, failing_tracks={"t1"})

    _, outcome, events = run_remote(tmp_path, encoder, server_catalog, track, settings)

    assert outcome.status is JobState.FAILED
    assert isinstance(outcome.error, ServerJobError)
    assert events[-1].kind is EventKind.ERROR


def test_client_processed_album_is_uploaded_to_the_server(tmp_path, encoder):
    settings = settings_for(tmp_path, server_side_downloads=True)

    job, outcome, _ = run_remote(
        tmp_path, encoder, FakeCatalog(), make_album(disc_sizes=(2,)), settings
    )

    folder = tmp_path / "The Midnight - Night Drive"
    assert job.mode is ExecutionMode.CLIENT_SERVER_UPLOAD
    assert outcome.status is JobState.COMPLETED
    assert outcome.artifact.report.succeeded == 2
    assert (folder / "01 The Midnight - Song 1.flac").read_bytes() == payload_for("t1")


def test_unreachable_server_falls_back_to_a_local_archive(encoder):
    async def scenario():
        remote = RemoteServerClient("http://127.0.0.1:9")
        manager = DownloadManager(
            FakeCatalog(), encoder, remote=remote, duration_probe=lambda data: None
        )
        try:
            settings = Settings(
                output_quality="6",
                apply_metadata=False,
                server_side_downloads=True,
                server_side_processing=True,
            )
            job = await manager.create_job(make_track(), settings)
            return job.mode, await job.wait()
        finally:
            await manager.close()

    mode, outcome = asyncio.run(scenario())

    assert mode is ExecutionMode.CLIENT_ARCHIVE
    assert outcome.artifact.data == payload_for("t1")


def test_cancelling_during_upload_stops_after_the_current_file(tmp_path, encoder):
    settings = settings_for(tmp_path, server_side_downloads=True)

    async def scenario():
        app = server_app(tmp_path, encoder)
        async with TestServer(app) as server:
            remote = RemoteServerClient(str(server.make_url("/")))
            manager = DownloadManager(
                FakeCatalog(), encoder, remote=remote, duration_probe=lambda data: None
            )
            try:
                job = await manager.create_job(make_album(disc_sizes=(3,)), settings)

                def cancel_after_first_upload(event):
                    if event.message.startswith("Saved 1/"):
                        job.cancel()

                job.progress.subscribe(cancel_after_first_upload)
                return job, await job.wait()
            finally:
                await manager.close()

    job, outcome = asyncio.run(scenario())

    assert job.mode is ExecutionMode.CLIENT_SERVER_UPLOAD
    assert outcome.status is JobState.CANCELLED
    assert outcome.artifact is None
    folder = tmp_path / "The Midnight - Night Drive"
    assert [p.name for p in folder.iterdir()] == ["01 The Midnight - Song 1.flac"]
