"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from qobuz_jobs.models.config import CODEC_MAP, Settings, get_quality_info
from qobuz_jobs.utils.formatting import format_duration, format_size

HIDDEN_KEYS = ("token", "app_secret")


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Run `qobuz-jobs init` to create or repair the configuration.",
            "• Check the values shown by `qobuz-jobs --show-config`.",
        ],
        "InvalidAppSecretError": [
            "• Qobuz may have rotated the web player's app secret.",
            "• Run `qobuz-jobs init` again with a fresh app id and secret.",
        ],
        "NotStreamableError": [
            "• This content may not be available in your region.",
            "• Your subscription tier may not grant access.",
            "• Try a different quality with the -q flag.",
        ],
        "FetchError": [
            "• A network connection issue occurred.",
            "• The Qobuz API or the server might be temporarily unavailable.",
            "• Downloads are never retried automatically; run the command again.",
        ],
        "EncodeError": [
            "• Make sure a recent ffmpeg is installed and on your PATH.",
            "• Try a different output codec with the -c flag.",
        ],
        "ServerJobError": [
            "• Check the server's logs for the underlying failure.",
            "• Use --no-server to process the item locally instead.",
        ],
        "DurationAnomaly": [
            "• Qobuz may have served a 30 second preview instead of the full track.",
            "• Check that your account can stream this release in full.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    suggestion_text = Text("\n".join(suggestions))

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(suggestion_text)

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the current configuration, hiding sensitive data."""
    console = Console()
    content = ""
    for key, value in config_data.items():
        if key in HIDDEN_KEYS and value:
            value = "[hidden]"
        content += f"{key} = {escape(str(value))}\n"

    console.print(
        Panel(
            content.strip(),
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_validation_table(settings: Settings, server_url: str = ""):
    """Displays a summary of the current settings."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    quality = get_quality_info(settings.output_quality)
    codec = CODEC_MAP[settings.output_codec]
    bitrate = (
        f"{settings.bitrate} kbps"
        if settings.bitrate and codec["accepts_bitrate"]
        else "n/a"
    )

    table.add_row("Quality:", f"({settings.output_quality}) {quality['name']}")
    table.add_row("Codec:", f"{settings.output_codec} [dim](.{codec['extension']})[/dim]")
    table.add_row("Bitrate:", bitrate)
    table.add_row(
        "Metadata:", "✓ Enabled" if settings.apply_metadata else "✗ Disabled"
    )
    table.add_row("Fix FLAC MD5:", "✓ Enabled" if settings.fix_md5 else "✗ Disabled")
    table.add_row(
        "Cover Art:",
        f"{settings.album_art_size}px @ {round(settings.album_art_quality * 100)}%",
    )
    table.add_row("Track Name:", f"[dim]{settings.track_name}[/dim]")
    table.add_row("Folder Name:", f"[dim]{settings.folder_name}[/dim]")
    table.add_row("ZIP Name:", f"[dim]{settings.zip_name}[/dim]")
    table.add_row("Server:", server_url or "[dim]not configured[/dim]")

    console.print(
        Panel(
            table,
            title="[bold green]✓ Validated Settings[/bold green]",
            border_style="green",
        )
    )


def print_summary_panel(
    progress_stats: dict, duration_s: float, saved: list[tuple[str, int]]
):
    """Displays the final summary of the download session."""
    console = Console()

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=20)
    stats_table.add_column(style="white", justify="left")

    stats_table.add_row(
        "✓ Completed:", f"[bold green]{progress_stats.get('completed', 0)}[/bold green]"
    )
    if progress_stats.get("cancelled"):
        stats_table.add_row(
            "○ Cancelled:", f"[yellow]{progress_stats['cancelled']}[/yellow]"
        )
    if progress_stats.get("failed"):
        stats_table.add_row(
            "✗ Failed:", f"[bold red]{progress_stats['failed']}[/bold red]"
        )
    if progress_stats.get("warnings"):
        stats_table.add_row(
            "⚠ Warnings:", f"[yellow]{progress_stats['warnings']}[/yellow]"
        )

    stats_table.add_row("", "")  # Spacer

    total_size = sum(size for _, size in saved)
    if saved:
        stats_table.add_row("Total Size:", f"[cyan]{format_size(total_size)}[/cyan]")
    stats_table.add_row("Time Elapsed:", f"[blue]{format_duration(duration_s)}[/blue]")

    for path, size in saved:
        stats_table.add_row("Saved:", f"[dim]{path}[/dim] ({format_size(size)})")

    console.print()
    console.print(
        Panel(
            stats_table,
            title="🎵 [bold]Download Complete![/bold]",
            border_style="green" if not progress_stats.get("failed") else "yellow",
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )

    console.print()
