"""
Pydantic models for job settings and server configuration.
Provides robust validation for all settings.
"""

import os
from typing import Literal, Optional

from pydantic import BaseModel, field_validator

# Qobuz format IDs and the container Qobuz serves for each of them
QUALITY_MAP = {
    "5": {
        "name": "MP3 320kbps",
        "short": "MP3 320",
        "codec": "MP3",
        "color": "yellow",
    },
    "6": {
        "name": "CD Lossless (16/44.1)",
        "short": "16/44.1",
        "codec": "FLAC",
        "color": "green",
    },
    "7": {
        "name": "Hi-Res (up to 24/96)",
        "short": "24/96",
        "codec": "FLAC",
        "color": "cyan",
    },
    "27": {
        "name": "Hi-Res+ (up to 24/192)",
        "short": "24/192",
        "codec": "FLAC",
        "color": "magenta",
    },
}

# Output codec -> file extension, ffmpeg encoder and container capabilities
CODEC_MAP = {
    "FLAC": {
        "extension": "flac",
        "encoder": "flac",
        "accepts_bitrate": False,
        "embeds_art": True,
    },
    "WAV": {
        "extension": "wav",
        "encoder": "pcm_s16le",
        "accepts_bitrate": False,
        "embeds_art": False,
    },
    "ALAC": {
        "extension": "m4a",
        "encoder": "alac",
        "accepts_bitrate": False,
        "embeds_art": True,
    },
    "MP3": {
        "extension": "mp3",
        "encoder": "libmp3lame",
        "accepts_bitrate": True,
        "embeds_art": True,
    },
    "AAC": {
        "extension": "m4a",
        "encoder": "aac",
        "accepts_bitrate": True,
        "embeds_art": True,
    },
    "OPUS": {
        "extension": "opus",
        "encoder": "libopus",
        "accepts_bitrate": True,
        "embeds_art": False,
    },
}

SOURCE_MP3_BITRATE = 320

QualityCode = Literal["27", "7", "6", "5"]
CodecName = Literal["FLAC", "WAV", "ALAC", "MP3", "AAC", "OPUS"]

DEFAULT_NAME_TEMPLATE = "{artists} - {name}"


def get_quality_info(quality: str) -> dict[str, str]:
    """Gets all information for a given quality code from the central map."""
    return QUALITY_MAP.get(
        str(quality),
        {"name": "Unknown", "short": "Unknown", "codec": "FLAC", "color": "white"},
    )


class Settings(BaseModel):
    """
    An immutable snapshot of everything a job needs to know about the user's
    preferences. One instance is threaded through a job from creation to
    packaging; nothing reads settings from global state.
    """

    output_quality: QualityCode = "27"
    output_codec: CodecName = "FLAC"
    bitrate: Optional[int] = 320
    apply_metadata: bool = True
    fix_md5: bool = False
    album_art_size: int = 3600
    album_art_quality: float = 1.0

    track_name: str = DEFAULT_NAME_TEMPLATE
    folder_name: str = DEFAULT_NAME_TEMPLATE
    zip_name: str = DEFAULT_NAME_TEMPLATE

    server_side_downloads: bool = False
    server_side_processing: bool = False
    server_download_path: str = "downloads"

    class Config:
        """Pydantic model configuration."""

        frozen = True
        str_strip_whitespace = True

    @field_validator("output_quality", mode="before")
    @classmethod
    def coerce_quality(cls, v):
        """Accepts quality codes given as integers (e.g. from an INI file)."""
        return str(v) if isinstance(v, int) else v

    @field_validator("bitrate")
    @classmethod
    def validate_bitrate(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 24 <= v <= 320:
            raise ValueError("Bitrate must be between 24 and 320 kbps.")
        return v

    @field_validator("album_art_size")
    @classmethod
    def validate_art_size(cls, v: int) -> int:
        if not 100 <= v <= 3600:
            raise ValueError("Album art size must be between 100 and 3600 pixels.")
        return v

    @field_validator("album_art_quality")
    @classmethod
    def validate_art_quality(cls, v: float) -> float:
        if not 0.1 <= v <= 1:
            raise ValueError("Album art quality must be between 0.1 and 1.")
        return v

    @field_validator("track_name", "folder_name", "zip_name")
    @classmethod
    def validate_template(cls, v: str) -> str:
        """Name templates must render to something and stay relative."""
        if not v:
            raise ValueError("Name template cannot be empty.")
        if ".." in v or v.startswith(("/", "\\")):
            raise ValueError(
                "Name template cannot contain relative '..' or absolute paths."
            )
        return v

    @property
    def extension(self) -> str:
        return CODEC_MAP[self.output_codec]["extension"]

    @property
    def source_codec(self) -> str:
        """The codec of the container Qobuz serves at the requested quality."""
        return get_quality_info(self.output_quality)["codec"]

    @property
    def needs_reencode(self) -> bool:
        """
        True unless the requested codec is exactly what Qobuz serves at the
        requested quality (MP3 additionally requires the source 320 kbps).
        """
        if self.output_codec != self.source_codec:
            return True
        if self.output_codec == "MP3":
            return self.bitrate not in (None, SOURCE_MP3_BITRATE)
        return False

    @property
    def needs_encoder(self) -> bool:
        return self.needs_reencode or self.apply_metadata


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() == "true"


class ServerConfig(BaseModel):
    """
    Operator-controlled configuration of a qobuz-jobs server, read from the
    environment. ``enable_server_downloads`` is the global switch: without it
    every job runs as a client archive regardless of user preference.
    """

    enable_server_downloads: bool = False
    server_side_downloads: bool = False
    output_quality: QualityCode = "27"
    output_codec: CodecName = "FLAC"
    bitrate: Optional[int] = 320
    server_download_path: str = "/downloads"
    folder_name: str = DEFAULT_NAME_TEMPLATE
    track_name: str = DEFAULT_NAME_TEMPLATE
    zip_name: str = DEFAULT_NAME_TEMPLATE

    @classmethod
    def from_env(cls) -> "ServerConfig":
        return cls(
            enable_server_downloads=_env_flag("ENABLE_SERVER_DOWNLOADS"),
            server_side_downloads=_env_flag("DEFAULT_SERVER_DOWNLOADS"),
            output_quality=os.getenv("DEFAULT_OUTPUT_QUALITY", "27"),
            output_codec=os.getenv("DEFAULT_OUTPUT_CODEC", "FLAC"),
            bitrate=int(os.getenv("DEFAULT_BITRATE", "320")),
            server_download_path=os.getenv("QOBUZ_DOWNLOAD_PATH", "/downloads"),
            folder_name=os.getenv("DEFAULT_FOLDER_NAME", DEFAULT_NAME_TEMPLATE),
            track_name=os.getenv("DEFAULT_TRACK_NAME", DEFAULT_NAME_TEMPLATE),
            zip_name=os.getenv("DEFAULT_ZIP_NAME", DEFAULT_NAME_TEMPLATE),
        )

    def default_settings(self) -> Settings:
        """Settings a user starts from when talking to this server."""
        return Settings(
            output_quality=self.output_quality,
            output_codec=self.output_codec,
            bitrate=self.bitrate,
            server_download_path=self.server_download_path,
            server_side_downloads=self.server_side_downloads,
            folder_name=self.folder_name,
            track_name=self.track_name,
            zip_name=self.zip_name,
        )
