import asyncio
import os

import pytest

from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.exceptions import EncodeError, JobCancelledError
from qobuz_jobs.media.encoder import FFmpegEncoder

pytestmark = pytest.mark.skipif(os.name == "nt", reason="needs a POSIX shell")


def fake_ffmpeg(tmp_path, body):
    """A stand-in binary that ignores ffmpeg's arguments and runs ``body``."""
    script = tmp_path / "ffmpeg"
    script.write_text(f"#!/bin/sh\n{body}\n")
    os.chmod(script, 0o755)
    return FFmpegEncoder(str(script))


def test_stdout_is_returned_when_captured(tmp_path):
    encoder = fake_ffmpeg(tmp_path, "printf pcm")

    data = asyncio.run(encoder.run(["-i", "in.flac", "-"], CancelToken(), capture_stdout=True))

    assert data == b"pcm"
    assert encoder.invocations == 1


def test_non_zero_exit_raises_with_stderr(tmp_path):
    encoder = fake_ffmpeg(tmp_path, "echo 'Invalid data found' >&2; exit 3")

    with pytest.raises(EncodeError) as excinfo:
        asyncio.run(encoder.run(["-i", "in.flac", "out.mp3"], CancelToken()))

    assert excinfo.value.returncode == 3
    assert "Invalid data found" in excinfo.value.stderr


def test_cancel_kills_and_reaps_the_process(tmp_path, monkeypatch):
    encoder = fake_ffmpeg(tmp_path, "exec sleep 30")
    started = []
    spawn = asyncio.create_subprocess_exec

    async def recording_spawn(*args, **kwargs):
        proc = await spawn(*args, **kwargs)
        started.append(proc)
        return proc

    monkeypatch.setattr(asyncio, "create_subprocess_exec", recording_spawn)

    async def scenario():
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.2, token.cancel)
        await encoder.run(["-i", "in.flac", "out.mp3"], token)

    with pytest.raises(JobCancelledError):
        asyncio.run(scenario())

    assert len(started) == 1
    assert started[0].returncode is not None
