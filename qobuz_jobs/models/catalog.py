"""
Catalog entities parsed from Qobuz API responses.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Artist:
    id: Optional[str]
    name: str

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> Optional["Artist"]:
        if not data:
            return None
        name = data.get("name")
        # Album artists come as {"name": {"display": ...}} on some endpoints
        if isinstance(name, dict):
            name = name.get("display")
        if not name:
            return None
        return cls(id=str(data["id"]) if data.get("id") else None, name=name)


@dataclass(eq=False)
class Track:
    """A single catalog track. ``album`` is a back-reference, not owned."""

    id: str
    title: str
    version: Optional[str] = None
    performer: Optional[Artist] = None
    album: Optional["Album"] = None
    media_number: int = 1
    track_number: int = 0
    duration: int = 0
    isrc: Optional[str] = None
    copyright: Optional[str] = None
    streamable: bool = True

    @classmethod
    def from_api(
        cls, data: Dict[str, Any], album: Optional["Album"] = None
    ) -> "Track":
        track = cls(
            id=str(data["id"]),
            title=data.get("title") or "Unknown Title",
            version=data.get("version"),
            performer=Artist.from_api(data.get("performer")),
            media_number=data.get("media_number") or 1,
            track_number=data.get("track_number") or 0,
            duration=data.get("duration") or 0,
            isrc=data.get("isrc"),
            copyright=data.get("copyright"),
            streamable=bool(data.get("streamable", True)),
        )
        if album is not None:
            track.album = album
        elif data.get("album"):
            track.album = Album.from_api(data["album"], with_tracks=False)
        return track


@dataclass(eq=False)
class Album:
    """An album with its ordered track list."""

    id: str
    title: str
    version: Optional[str] = None
    artists: List[Artist] = field(default_factory=list)
    artist: Optional[Artist] = None
    release_date: Optional[str] = None
    label: Optional[str] = None
    genre: Optional[str] = None
    upc: Optional[str] = None
    copyright: Optional[str] = None
    image: Dict[str, str] = field(default_factory=dict)
    tracks: List[Track] = field(default_factory=list)
    tracks_count: int = 0
    duration: int = 0
    streamable: bool = True

    @classmethod
    def from_api(cls, data: Dict[str, Any], with_tracks: bool = True) -> "Album":
        album = cls(
            id=str(data["id"]),
            title=data.get("title") or "Unknown Album",
            version=data.get("version"),
            artists=[
                a for a in (Artist.from_api(x) for x in data.get("artists") or []) if a
            ],
            artist=Artist.from_api(data.get("artist")),
            release_date=data.get("release_date_original"),
            label=(data.get("label") or {}).get("name"),
            genre=(data.get("genre") or {}).get("name"),
            upc=data.get("upc"),
            copyright=data.get("copyright"),
            image=data.get("image") or {},
            tracks_count=data.get("tracks_count") or 0,
            duration=data.get("duration") or 0,
            streamable=bool(data.get("streamable", True)),
        )
        if with_tracks:
            # Every track points back at this exact instance
            album.tracks = [
                Track.from_api(t, album=album)
                for t in (data.get("tracks") or {}).get("items", [])
            ]
            album.tracks_count = album.tracks_count or len(album.tracks)
        return album
