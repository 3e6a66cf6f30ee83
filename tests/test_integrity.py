import asyncio
import hashlib
import struct

import pytest

from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.exceptions import FileIntegrityError
from qobuz_jobs.media.integrity import (
    STREAMINFO_MD5_OFFSET,
    fix_flac_md5,
    patch_streaminfo_md5,
    probe_duration,
)


def streaminfo_flac(bits=16, md5=b"\x00" * 16, frames=b"FRAMES"):
    """A minimal FLAC file: the marker, one STREAMINFO block and fake frames."""
    sample_rate, channels, total_samples = 44100, 2, 44100 * 3
    packed = (
        (sample_rate << 44)
        | ((channels - 1) << 41)
        | ((bits - 1) << 36)
        | total_samples
    )
    info = struct.pack(">HH", 4096, 4096) + b"\x00" * 6 + packed.to_bytes(8, "big") + md5
    header = bytes([0x80]) + len(info).to_bytes(3, "big")
    return b"fLaC" + header + info + frames


def test_patch_writes_the_digest_at_the_streaminfo_offset():
    digest = hashlib.md5(b"pcm").digest()
    patched = patch_streaminfo_md5(streaminfo_flac(), digest)

    assert patched[STREAMINFO_MD5_OFFSET : STREAMINFO_MD5_OFFSET + 16] == digest
    assert patched.endswith(b"FRAMES")
    assert len(patched) == len(streaminfo_flac())


def test_patch_refuses_non_flac_data():
    with pytest.raises(FileIntegrityError):
        patch_streaminfo_md5(b"ID3" + b"\x00" * 64, b"\x00" * 16)


def test_fix_flac_md5_hashes_the_decoded_samples(encoder):
    data = asyncio.run(fix_flac_md5(streaminfo_flac(), encoder, CancelToken()))

    expected = hashlib.md5(b"\x00\x01" * 8).digest()
    assert data[STREAMINFO_MD5_OFFSET : STREAMINFO_MD5_OFFSET + 16] == expected
    assert encoder.calls[0][encoder.calls[0].index("-f") + 1] == "s16le"


def test_fix_flac_md5_rejects_other_formats(encoder):
    with pytest.raises(FileIntegrityError):
        asyncio.run(fix_flac_md5(b"not a flac file", encoder, CancelToken()))
    assert encoder.invocations == 0


def test_probe_duration_of_unreadable_data_is_unknown():
    assert probe_duration(b"audio-t1") is None


def test_probe_duration_reads_streaminfo():
    assert probe_duration(streaminfo_flac()) == pytest.approx(3.0)
