import asyncio
from typing import Dict, List, Optional

import pytest

from qobuz_jobs.core.cancellation import CancelToken
from qobuz_jobs.core.download_manager import DownloadManager
from qobuz_jobs.exceptions import FetchError
from qobuz_jobs.models.catalog import Album, Artist, Track


def make_album(disc_sizes=(3,), album_id="alb1", title="Night Drive", **kwargs) -> Album:
    """An album whose tracks are numbered per disc, like the Qobuz API does."""
    album = Album(
        id=album_id,
        title=title,
        artists=[Artist("a1", "The Midnight")],
        release_date="2016-03-04",
        label="Counter Records",
        genre="Synthwave",
        image=kwargs.pop("image", {}),
        **kwargs,
    )
    n = 0
    for disc, size in enumerate(disc_sizes, start=1):
        for number in range(1, size + 1):
            n += 1
            album.tracks.append(
                Track(
                    id=f"t{n}",
                    title=f"Song {n}",
                    performer=Artist("a1", "The Midnight"),
                    album=album,
                    media_number=disc,
                    track_number=number,
                    duration=200,
                )
            )
    album.tracks_count = n
    return album


def make_track(track_id="t1", title="Sunset", duration=200, album=None) -> Track:
    return Track(
        id=track_id,
        title=title,
        performer=Artist("p1", "Gunship"),
        album=album,
        track_number=1,
        duration=duration,
        isrc="GBXXX1600001",
        copyright="(P) 2016 Horsie In The Hedge",
    )


def payload_for(track_id: str) -> bytes:
    return f"audio-{track_id}".encode()


class FakeCatalog:
    """In-memory catalog; every operation is recorded in ``calls``."""

    def __init__(
        self,
        album: Optional[Album] = None,
        tracks: Optional[Dict[str, Track]] = None,
        image: Optional[bytes] = None,
        failing_tracks=(),
        failing_urls=(),
        hang: bool = False,
    ):
        self.album = album
        self.tracks = tracks or {}
        self.image = image
        self.failing_tracks = set(failing_tracks)
        self.failing_urls = set(failing_urls)
        self.hang = hang
        self.calls: List[tuple] = []

    async def resolve_download_url(self, track_id, quality, cancel_token):
        self.calls.append(("resolve", track_id, quality))
        if track_id in self.failing_urls:
            raise FetchError(f"No URL for {track_id}")
        return f"https://files.example/{track_id}"

    async def fetch_album(self, album_id, cancel_token):
        self.calls.append(("album", album_id))
        return self.album

    async def fetch_track(self, track_id, cancel_token):
        self.calls.append(("track", track_id))
        if track_id not in self.tracks:
            raise FetchError(f"Track {track_id} not found")
        return self.tracks[track_id]

    async def head_size(self, url, cancel_token):
        self.calls.append(("head", url))
        return len(payload_for(url.rsplit("/", 1)[-1]))

    async def fetch_bytes(self, url, cancel_token, on_progress=None, expected_size=0):
        track_id = url.rsplit("/", 1)[-1]
        self.calls.append(("fetch", track_id))
        if self.hang:
            return await cancel_token.guard(asyncio.Event().wait())
        if track_id in self.failing_tracks:
            raise FetchError(f"Download of {track_id} failed", url=url)
        data = payload_for(track_id)
        if on_progress:
            on_progress(len(data) // 2, len(data))
            on_progress(len(data), len(data))
        await asyncio.sleep(0)
        return data

    async def fetch_image(self, url, cancel_token):
        self.calls.append(("image", url))
        if self.image is None:
            raise FetchError("Cover not found", url=url)
        return self.image


class FakeEncoder:
    """
    Stands in for ffmpeg: copies the first input to the output path and tags
    the bytes with the pass that ran, so tests can tell passes apart.
    """

    def __init__(self):
        self.invocations = 0
        self.calls: List[List[str]] = []

    async def run(self, args, cancel_token: CancelToken, capture_stdout=False):
        cancel_token.raise_if_cancelled()
        self.invocations += 1
        self.calls.append(list(args))
        if capture_stdout:
            return b"\x00\x01" * 8
        src = args[args.index("-i") + 1]
        with open(src, "rb") as f:
            data = f.read()
        if "attached_pic" in args:
            data += b"+art"
        elif "-map_metadata" in args:
            data += b"+meta"
        else:
            data += b"+enc"
        with open(args[-1], "wb") as f:
            f.write(data)
        return b""


@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest.fixture
def make_manager(encoder):
    def factory(catalog, **kwargs):
        kwargs.setdefault("duration_probe", lambda data: None)
        return DownloadManager(catalog, encoder, **kwargs)

    return factory
