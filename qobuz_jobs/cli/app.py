"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
import shutil
import sys
import time
from pathlib import Path
from typing import Optional

import aiofiles
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from qobuz_jobs import __version__
from qobuz_jobs.api.client import QobuzCatalogClient
from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.core.download_manager import DownloadManager, Job
from qobuz_jobs.exceptions import QobuzJobsError
from qobuz_jobs.media.downloader import close_connection_pool
from qobuz_jobs.models.config import CODEC_MAP, QUALITY_MAP, ServerConfig
from qobuz_jobs.models.job import JobState
from qobuz_jobs.storage.config_manager import ConfigManager
from qobuz_jobs.utils.path import create_dir, parse_qobuz_url
from qobuz_jobs.web.remote import RemoteServerClient

from .formatters import (
    format_error_with_suggestions,
    print_config,
    print_summary_panel,
    print_validation_table,
)
from .progress_manager import ProgressManager

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("qobuz_jobs")

app = typer.Typer(
    name="qobuz-jobs",
    help=(
        "Download, transcode and tag music from Qobuz, locally or on a"
        " qobuz-jobs server. Use 'qobuz-jobs <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "qobuz-jobs"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
):
    """Qobuz Jobs CLI"""
    if version:
        console.print(f"[bold]qobuz-jobs[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("qobuz_jobs").setLevel(log_level)

    if show_config:
        if not CONFIG_FILE.is_file():
            console.print(
                "[red]✗ Config file not found.[/] Run [cyan]qobuz-jobs init[/cyan]"
                " first."
            )
            raise typer.Exit(code=1)
        try:
            values = ConfigManager(CONFIG_FILE).load_values()
        except QobuzJobsError as e:
            console.print(f"[red]✗ {escape(str(e))}[/red]")
            raise typer.Exit(code=1) from e
        print_config(CONFIG_FILE, values)
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    app_id: str = typer.Option(..., "--app-id", help="Qobuz web player app id."),
    app_secret: str = typer.Option(
        ..., "--app-secret", help="The app secret used to sign download requests."
    ),
    token: str = typer.Option(..., "--token", help="Your Qobuz user auth token."),
    server_url: str = typer.Option(
        "", "--server-url", help="URL of a qobuz-jobs server to delegate jobs to."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration without asking."
    ),
):
    """Initialize configuration with Qobuz credentials."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    config_manager = ConfigManager(CONFIG_FILE)
    config_manager.save_new_config(
        {
            "app_id": app_id,
            "app_secret": app_secret,
            "token": token,
            "server_url": server_url,
        }
    )
    console.print(f"\n[bold green]✓ Configuration saved to '{CONFIG_FILE}'[/bold green]")
    console.print("Ready to download! Try: [cyan]qobuz-jobs download <URL>[/cyan]")


def _read_urls_from_stdin() -> list[str]:
    """Reads URLs from stdin, one per line."""
    if sys.stdin.isatty():
        console.print(
            "[yellow]⚠️  No input detected on stdin. Please pipe URLs or redirect"
            " a file.[/yellow]"
        )
        raise typer.Exit(code=1)

    urls = [
        line.strip()
        for line in sys.stdin
        if line.strip() and not line.startswith("#")
    ]
    if not urls:
        console.print("[yellow]⚠️  No valid URLs found in stdin.[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"[green]✓ Read {len(urls)} URLs from stdin.[/green]")
    return urls


async def _save_artifact(job: Job, output_dir: Path) -> Optional[tuple[str, int]]:
    outcome = job.outcome
    if outcome is None or outcome.artifact is None:
        return None
    artifact = outcome.artifact
    if artifact.data is None:
        # Saved on the server; nothing to write locally
        return (artifact.name, 0)
    await asyncio.to_thread(create_dir, output_dir)
    path = output_dir / artifact.name
    async with aiofiles.open(path, "wb") as f:
        await f.write(artifact.data)
    return (str(path), len(artifact.data))


@app.command(name="download")
def download_command(
    urls: list[str] | None = typer.Argument(  # noqa: B008
        None, help="One or more Qobuz album or track URLs."
    ),
    quality: str | None = typer.Option(
        None,
        "-q",
        "--quality",
        help="Source quality. 5: MP3 320, 6: CD (16/44.1), 7: Hi-Res (24/96), 27: Hi-Res (24/192).",
    ),
    codec: str | None = typer.Option(
        None,
        "-c",
        "--codec",
        help=f"Output codec: {', '.join(CODEC_MAP)}.",
    ),
    bitrate: int | None = typer.Option(
        None, "-b", "--bitrate", help="Bitrate in kbps for lossy codecs (24-320)."
    ),
    metadata: bool | None = typer.Option(
        None, "--metadata/--no-metadata", help="Write tags and cover art into files."
    ),
    fix_md5: bool | None = typer.Option(
        None, "--fix-md5/--no-fix-md5", help="Recompute the MD5 of FLAC output."
    ),
    server: bool | None = typer.Option(
        None,
        "--server/--no-server",
        help="Deliver to the configured server if it allows server downloads.",
    ),
    server_processing: bool | None = typer.Option(
        None,
        "--server-processing/--local-processing",
        help="Let the server download and process instead of this machine.",
    ),
    server_path: str | None = typer.Option(
        None, "--server-path", help="Directory on the server to save into."
    ),
    output_dir: Path = typer.Option(  # noqa: B008
        Path("."), "-o", "--output", help="Directory for local files and archives."
    ),
    stdin: bool = typer.Option(
        False, "--stdin", help="Read URLs from standard input, one URL per line."
    ),
):
    """Download music from Qobuz."""
    if stdin:
        urls = _read_urls_from_stdin()
    elif not urls:
        console.print(
            "[red]✗ No URLs provided.[/red] "
            "Use: [cyan]qobuz-jobs download <URL>[/cyan] or [cyan]--stdin[/cyan]"
        )
        raise typer.Exit(code=1)

    if quality is not None and quality not in QUALITY_MAP:
        console.print(f"[red]✗ Unknown quality '{escape(quality)}'.[/red]")
        raise typer.Exit(code=1)

    cli_options = {
        "output_quality": quality,
        "output_codec": codec.upper() if codec else None,
        "bitrate": bitrate,
        "apply_metadata": metadata,
        "fix_md5": fix_md5,
        "server_side_downloads": server,
        "server_side_processing": server_processing,
        "server_download_path": server_path,
    }

    async def _download_async():
        client = None
        manager = None
        jobs: list[Job] = []
        saved: list[tuple[str, int]] = []
        start_time = time.monotonic()

        config_manager = ConfigManager(CONFIG_FILE)
        credentials = config_manager.load_credentials()
        settings = config_manager.load_settings(cli_options)
        client = QobuzCatalogClient(
            credentials["app_id"], credentials["app_secret"], credentials["token"]
        )
        remote = (
            RemoteServerClient(credentials["server_url"])
            if credentials["server_url"]
            else None
        )

        try:
            if remote is not None and settings.server_side_downloads and not server_path:
                try:
                    remote_config = await remote.fetch_config()
                    if remote_config.get("server_download_path"):
                        settings = settings.model_copy(
                            update={
                                "server_download_path": remote_config[
                                    "server_download_path"
                                ]
                            }
                        )
                except QobuzJobsError as e:
                    log.warning(f"[yellow]Could not read server settings: {e}[/yellow]")

            async with ProgressManager(console) as progress_manager:
                manager = DownloadManager(
                    client,
                    remote=remote,
                    server_downloads_enabled=config_manager.server_downloads_enabled(),
                    on_duration_anomaly=progress_manager.confirm_anomaly,
                )

                for url in dict.fromkeys(urls):
                    parsed = parse_qobuz_url(url)
                    if not parsed:
                        log.error(f"[red]Invalid or unsupported URL: {escape(url)}[/red]")
                        continue
                    kind, item_id = parsed
                    try:
                        if kind == "album":
                            item = await client.fetch_album(item_id, CancelToken())
                        else:
                            item = await client.fetch_track(item_id, CancelToken())
                    except QobuzJobsError as e:
                        console.print(format_error_with_suggestions(e, {"url": url}))
                        continue
                    job = await manager.create_job(item, settings)
                    progress_manager.track_job(job)
                    jobs.append(job)

                try:
                    await asyncio.gather(*(job.wait() for job in jobs))
                except asyncio.CancelledError:
                    for job in jobs:
                        job.cancel()
                    raise
                finally:
                    for job in jobs:
                        if job.outcome is not None:
                            progress_manager.record_outcome(job, job.outcome)
                progress_stats = progress_manager.get_statistics()

            for job in jobs:
                outcome = job.outcome
                if outcome.status is JobState.FAILED:
                    console.print(
                        format_error_with_suggestions(
                            outcome.error, {"item": job.item.title}
                        )
                    )
                elif outcome.status is JobState.COMPLETED:
                    if (result := await _save_artifact(job, output_dir)) is not None:
                        saved.append(result)
        finally:
            await close_connection_pool()
            if manager is not None:
                await manager.close()
            elif remote is not None:
                await remote.close()
            if client is not None:
                await client.close()

        print_summary_panel(progress_stats, time.monotonic() - start_time, saved)

    asyncio.run(_download_async())


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Interface to listen on."),
    port: int = typer.Option(3000, "--port", "-p", help="Port to listen on."),
):
    """Run a qobuz-jobs server for remote clients."""
    from aiohttp import web

    from qobuz_jobs.web.server import create_app

    config_manager = ConfigManager(CONFIG_FILE)
    credentials = config_manager.load_credentials()
    server_config = ServerConfig.from_env()
    client = QobuzCatalogClient(
        credentials["app_id"], credentials["app_secret"], credentials["token"]
    )
    state = "enabled" if server_config.enable_server_downloads else "disabled"
    console.print(
        f"[bold cyan]🎵 Serving on http://{host}:{port}[/bold cyan] "
        f"[dim](server downloads {state}, root {server_config.server_download_path})[/dim]"
    )
    web.run_app(create_app(server_config, client), host=host, port=port, print=None)


@app.command()
def validate():
    """Validate the current configuration."""
    try:
        config_manager = ConfigManager(CONFIG_FILE)
        credentials = config_manager.load_credentials()
        settings = config_manager.load_settings()
        print_validation_table(settings, credentials["server_url"])
    except QobuzJobsError as e:
        console.print(f"[red]✗ Configuration is invalid: {e}[/red]")
        raise typer.Exit(code=1) from e


@app.command()
def diagnose():
    """Diagnose common configuration and tooling issues."""
    console.print("\n[bold cyan]Running diagnostics...[/bold cyan]\n")
    issues_found = False
    if CONFIG_FILE.is_file():
        console.print(f"[green]✓[/] Config file exists at: [dim]{CONFIG_FILE}[/dim]")
    else:
        console.print(
            "[red]✗ Config file not found.[/] Run [cyan]qobuz-jobs init[/cyan]."
        )
        raise typer.Exit(code=1)
    try:
        config_manager = ConfigManager(CONFIG_FILE)
        credentials = config_manager.load_credentials()
        config_manager.load_settings()
        console.print("[green]✓[/] Configuration file is valid and can be loaded.")
    except QobuzJobsError as e:
        console.print(f"[red]✗ Configuration validation failed: {e}[/red]")
        issues_found = True
        credentials = {"server_url": ""}

    if ffmpeg := shutil.which("ffmpeg"):
        console.print(f"[green]✓[/] ffmpeg found at: [dim]{ffmpeg}[/dim]")
    else:
        console.print("[red]✗ ffmpeg not found on PATH.[/] Transcoding will fail.")
        issues_found = True

    if credentials.get("server_url"):

        async def check_server() -> None:
            remote = RemoteServerClient(credentials["server_url"])
            try:
                enabled = await remote.is_server_downloads_enabled()
            finally:
                await remote.close()
            state = "enabled" if enabled else "disabled or unreachable"
            console.print(f"[green]✓[/] Server downloads are {state}.")

        asyncio.run(check_server())

    console.print()
    if not issues_found:
        console.print(
            "[bold green]✓ All checks passed! Your setup looks good.[/bold green]\n"
        )
    else:
        console.print(
            "[bold red]✗ Some issues were found. "
            "Please review the messages above.[/bold red]\n"
        )
