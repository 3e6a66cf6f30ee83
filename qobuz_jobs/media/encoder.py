"""
Drives the external ffmpeg binary as an asyncio subprocess.
"""

import asyncio
import logging
import shutil
from contextlib import suppress
from typing import List, Optional, Sequence

from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.exceptions import EncodeError, JobCancelledError

log = logging.getLogger(__name__)


def find_ffmpeg() -> Optional[str]:
    """Find ffmpeg binary. Returns path or None."""
    return shutil.which("ffmpeg")


class FFmpegEncoder:
    """
    Runs one ffmpeg invocation per pipeline pass. Exit code 0 is success; any
    other code raises :class:`EncodeError` with the captured stderr.
    """

    def __init__(self, binary: Optional[str] = None):
        self.binary = binary or find_ffmpeg() or "ffmpeg"
        self.invocations = 0

    async def run(
        self, args: Sequence[str], cancel_token: CancelToken, capture_stdout: bool = False
    ) -> bytes:
        """
        Runs ffmpeg with ``args`` and returns its stdout (empty unless
        ``capture_stdout``). A fired cancel token kills the process; whatever it
        wrote must not be used.
        """
        cancel_token.raise_if_cancelled()
        cmd: List[str] = [self.binary, "-hide_banner", "-loglevel", "error", *args]
        log.debug(f"Running: {' '.join(cmd)}")
        self.invocations += 1

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE
                if capture_stdout
                else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EncodeError(f"Could not start ffmpeg: {e}", returncode=-1) from e

        try:
            stdout, stderr = await cancel_token.guard(proc.communicate())
        except (JobCancelledError, asyncio.CancelledError):
            if proc.returncode is None:
                with suppress(ProcessLookupError):
                    proc.kill()
                await asyncio.shield(proc.wait())
            raise

        if proc.returncode != 0:
            diagnostic = (stderr or b"").decode("utf-8", errors="replace")
            raise EncodeError(
                f"FFmpeg exited with code {proc.returncode}",
                returncode=proc.returncode,
                stderr=diagnostic,
            )
        return stdout or b""
