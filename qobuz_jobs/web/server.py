"""
The aiohttp application a qobuz-jobs server runs: it publishes its
configuration, accepts uploaded files and runs server-native jobs while
streaming their progress back as server-sent events.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from aiohttp import web
from pydantic import ValidationError

from qobuz_jobs.api.client import CatalogService
from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.core.download_manager import DownloadManager, Job
from qobuz_jobs.exceptions import QobuzJobsError
from qobuz_jobs.media.encoder import FFmpegEncoder
from qobuz_jobs.models.catalog import Album
from qobuz_jobs.models.config import ServerConfig, Settings
from qobuz_jobs.models.job import ExecutionMode
from qobuz_jobs.storage.packagers import ServerTreePackager, resolve_within
from qobuz_jobs.web.sse import KEEPALIVE, encode_frame

log = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey("config", ServerConfig)
MANAGER_KEY = web.AppKey("manager", DownloadManager)

MAX_UPLOAD_SIZE = 1024**3


def _json_error(message: str, status: int) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


def confine_path(root: str, requested: Optional[str]) -> Path:
    """
    Maps a client-supplied output path onto the server's download root.
    Relative paths land under the root; absolute ones must already be in it.
    """
    root_path = Path(root).resolve()
    if not requested:
        return root_path
    candidate = Path(requested)
    if candidate.is_absolute():
        candidate = candidate.resolve()
        if candidate != root_path and root_path not in candidate.parents:
            raise QobuzJobsError(f"Path '{requested}' is outside the download directory.")
        return candidate
    return resolve_within(root_path, requested)


async def handle_server_config(request: web.Request) -> web.Response:
    config = request.app[CONFIG_KEY]
    return web.json_response({"success": True, "data": config.model_dump()})


async def handle_save_to_server(request: web.Request) -> web.Response:
    config = request.app[CONFIG_KEY]
    try:
        form = await request.post()
    except ValueError as e:
        return _json_error(f"Invalid form data: {e}", 400)

    upload = form.get("file")
    if not isinstance(upload, web.FileField):
        return _json_error("No file provided", 400)
    filename = form.get("filename") or upload.filename
    if not filename:
        return _json_error("No filename provided", 400)

    try:
        directory = confine_path(config.server_download_path, form.get("output_path"))
        packager = ServerTreePackager(directory)
        path = await packager.write_one("", str(filename), upload.file.read())
    except QobuzJobsError as e:
        return _json_error(str(e), 400)
    except OSError as e:
        log.error(f"Failed to save '{filename}': {e}")
        return _json_error(str(e) or "Failed to save file to server", 500)

    log.info(f"Saved upload to {path}")
    return web.json_response(
        {"success": True, "data": {"filepath": str(path), "filename": path.name}}
    )


async def handle_server_download(request: web.Request) -> web.StreamResponse:
    """
    Runs a server-native job and streams its progress as ``progress``,
    ``complete`` and ``error`` frames. Skipped tracks show up as progress
    frames carrying ``"level": "warning"``, which plain consumers can ignore.
    """
    config = request.app[CONFIG_KEY]
    manager = request.app[MANAGER_KEY]
    if not config.enable_server_downloads:
        return _json_error("Server downloads are disabled on this server.", 403)

    try:
        payload = await request.json()
    except ValueError:
        return _json_error("Request body must be JSON.", 400)
    if not isinstance(payload, dict):
        return _json_error("Request body must be a JSON object.", 400)
    album_id, track_id = payload.get("album_id"), payload.get("track_id")
    if not (album_id or track_id):
        return _json_error("Either track_id or album_id is required.", 400)

    try:
        settings = Settings.model_validate(
            payload.get("settings") or config.default_settings().model_dump()
        )
        root = confine_path(config.server_download_path, settings.server_download_path)
    except ValidationError as e:
        return _json_error(f"Invalid settings: {e}", 400)
    except QobuzJobsError as e:
        return _json_error(str(e), 400)
    settings = settings.model_copy(update={"server_download_path": str(root)})

    response = web.StreamResponse(
        headers={"Content-Type": "text/event-stream", "Cache-Control": "no-cache"}
    )
    await response.prepare(request)
    await response.write(KEEPALIVE)

    job: Optional[Job] = None
    try:
        if album_id:
            item = Album(id=str(album_id), title="")
        else:
            item = await manager.catalog.fetch_track(str(track_id), CancelToken())
        job = await manager.create_job(item, settings, mode=ExecutionMode.SERVER_NATIVE)
        async for event in job.events():
            await response.write(encode_frame(event.to_frame()))
        outcome = await job.wait()
        log.info(f"Server job finished: {outcome.status.value} {outcome.message}")
    except ConnectionResetError:
        log.info("Client disconnected, cancelling server job.")
        if job is not None:
            job.cancel("Client disconnected")
        return response
    except asyncio.CancelledError:
        if job is not None:
            job.cancel("Client disconnected")
        raise
    except QobuzJobsError as e:
        log.error(f"Server job could not start: {e}")
        await response.write(encode_frame({"type": "error", "message": str(e)}))

    await response.write_eof()
    return response


async def _close_manager(app: web.Application) -> None:
    manager = app[MANAGER_KEY]
    await manager.close()
    close = getattr(manager.catalog, "close", None)
    if close is not None:
        await close()


def create_app(
    config: ServerConfig,
    catalog: CatalogService,
    encoder: Optional[FFmpegEncoder] = None,
    manager: Optional[DownloadManager] = None,
) -> web.Application:
    app = web.Application(client_max_size=MAX_UPLOAD_SIZE)
    app[CONFIG_KEY] = config
    app[MANAGER_KEY] = manager or DownloadManager(
        catalog,
        encoder,
        server_downloads_enabled=config.enable_server_downloads,
    )
    app.router.add_get("/api/server-config", handle_server_config)
    app.router.add_post("/api/save-to-server", handle_save_to_server)
    app.router.add_post("/api/server-download", handle_server_download)
    app.on_cleanup.append(_close_manager)
    return app
