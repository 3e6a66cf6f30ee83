"""
Post-processing integrity helpers: FLAC STREAMINFO checksum repair and
duration probing of finished files.
"""

import hashlib
import io
import logging
import tempfile
from pathlib import Path
from typing import Optional

import aiofiles
import mutagen
from mutagen.flac import FLAC, FLACNoHeaderError

from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.exceptions import FileIntegrityError
from qobuz_jobs.media.encoder import FFmpegEncoder

log = logging.getLogger(__name__)

FLAC_MAGIC = b"fLaC"
# "fLaC" + 4-byte block header + 18 bytes of STREAMINFO before the MD5
STREAMINFO_MD5_OFFSET = 26
MD5_LENGTH = 16

PCM_FORMATS = {8: "s8", 16: "s16le", 24: "s24le", 32: "s32le"}


def probe_duration(data: bytes) -> Optional[float]:
    """
    Returns the playing time of an encoded file in seconds, or None when
    mutagen cannot make sense of it.
    """
    try:
        audio = mutagen.File(io.BytesIO(data))
    except mutagen.MutagenError as e:
        log.debug(f"Duration probe failed: {e}")
        return None
    if audio is None or audio.info is None:
        return None
    length = getattr(audio.info, "length", None)
    return float(length) if length else None


def read_bits_per_sample(data: bytes) -> int:
    try:
        return FLAC(io.BytesIO(data)).info.bits_per_sample
    except FLACNoHeaderError as e:
        raise FileIntegrityError("Not a FLAC file: missing FLAC header.") from e
    except mutagen.MutagenError as e:
        raise FileIntegrityError(f"Unreadable FLAC stream info: {e}") from e


def patch_streaminfo_md5(data: bytes, digest: bytes) -> bytes:
    """Writes ``digest`` into the STREAMINFO block of a FLAC file."""
    if len(digest) != MD5_LENGTH:
        raise ValueError("An MD5 digest is 16 bytes long.")
    if data[:4] != FLAC_MAGIC or len(data) < STREAMINFO_MD5_OFFSET + MD5_LENGTH:
        raise FileIntegrityError("Not a FLAC file: missing FLAC header.")
    if data[4] & 0x7F != 0:
        raise FileIntegrityError("FLAC file does not start with a STREAMINFO block.")
    end = STREAMINFO_MD5_OFFSET + MD5_LENGTH
    return data[:STREAMINFO_MD5_OFFSET] + digest + data[end:]


async def fix_flac_md5(
    data: bytes, encoder: FFmpegEncoder, cancel_token: CancelToken
) -> bytes:
    """
    Recomputes the MD5 of the decoded audio and patches it into STREAMINFO.

    The checksum covers the interleaved signed little-endian samples at the
    stream's own bit depth, which is what ffmpeg emits for the matching raw
    PCM format.
    """
    bits = read_bits_per_sample(data)
    pcm_format = PCM_FORMATS.get(bits)
    if pcm_format is None:
        raise FileIntegrityError(f"Unsupported FLAC bit depth: {bits}")

    with tempfile.TemporaryDirectory(prefix="qobuz_jobs_md5_") as tmp:
        source = Path(tmp) / "input.flac"
        async with aiofiles.open(source, "wb") as f:
            await f.write(data)
        pcm = await encoder.run(
            ["-i", str(source), "-map", "0:a", "-f", pcm_format, "pipe:1"],
            cancel_token,
            capture_stdout=True,
        )

    digest = hashlib.md5(pcm).digest()  # noqa: S324
    log.debug(f"Recomputed FLAC MD5: {digest.hex()}")
    return patch_streaminfo_md5(data, digest)
