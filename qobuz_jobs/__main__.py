"""
Console entry point for qobuz-jobs: runs the Typer app and turns whatever
escapes it into a readable panel and a process exit code.
"""

import asyncio
import logging
import os
import sys
from contextlib import suppress

import typer
from rich.console import Console

from qobuz_jobs.cli.app import app
from qobuz_jobs.cli.formatters import format_error_with_suggestions
from qobuz_jobs.exceptions import ConfigurationError, QobuzJobsError

log = logging.getLogger("qobuz_jobs")

EXIT_FAILURE = 1
# sysexits.h EX_CONFIG
EXIT_CONFIG = 78
# 128 + SIGINT, what shells report for Ctrl+C
EXIT_INTERRUPTED = 130


def _use_utf8_streams() -> None:
    """Legacy Windows consoles cannot print the progress bars' glyphs otherwise."""
    if os.name != "nt":
        return
    for stream in (sys.stdout, sys.stderr):
        with suppress(TypeError, AttributeError):
            stream.reconfigure(encoding="utf-8")


def main() -> None:
    _use_utf8_streams()
    console = Console()

    try:
        app()
    except (typer.Exit, typer.Abort):
        pass
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\n[yellow]⚠️  Download cancelled by user.[/yellow]")
        sys.exit(EXIT_INTERRUPTED)
    except ConfigurationError as e:
        console.print(f"\n{format_error_with_suggestions(e)}")
        sys.exit(EXIT_CONFIG)
    except QobuzJobsError as e:
        console.print(f"\n{format_error_with_suggestions(e)}")
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        console.print(f"\n{format_error_with_suggestions(e, {'type': 'Unexpected'})}")
        log.debug("Full traceback:", exc_info=True)
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
