"""
Data Models Layer.

This package contains the settings models, the catalog entities and the
value types that describe jobs, their progress events and their outcomes.
"""

from .catalog import Album, Artist, Track
from .config import ServerConfig, Settings
from .job import (
    Artifact,
    EventKind,
    ExecutionMode,
    JobOutcome,
    JobState,
    OutputFile,
    ProgressEvent,
    SaveReport,
)

__all__ = [
    "Album",
    "Artifact",
    "Artist",
    "EventKind",
    "ExecutionMode",
    "JobOutcome",
    "JobState",
    "OutputFile",
    "ProgressEvent",
    "SaveReport",
    "ServerConfig",
    "Settings",
    "Track",
]
