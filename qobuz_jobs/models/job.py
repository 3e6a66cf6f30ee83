"""
Value types describing jobs, their progress and their outcomes.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from qobuz_jobs.exceptions import DurationAnomaly


class ExecutionMode(str, Enum):
    """Where a job's audio is processed and how the result is delivered."""

    CLIENT_ARCHIVE = "client_archive"
    CLIENT_SERVER_UPLOAD = "client_server_upload"
    SERVER_NATIVE = "server_native"


class JobState(str, Enum):
    QUEUED = "queued"
    FETCHING = "fetching"
    TRANSCODING = "transcoding"
    VALIDATING = "validating"
    PACKAGING = "packaging"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EventKind(str, Enum):
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ProgressEvent:
    kind: EventKind
    message: str = ""
    percent: Optional[float] = None

    def to_frame(self) -> dict:
        """
        The JSON object carried by one server-sent frame. The wire only knows
        progress, complete and error frames, so a warning travels as a
        progress frame marked ``"level": "warning"``.
        """
        if self.kind is EventKind.WARNING:
            frame = {"type": EventKind.PROGRESS.value, "level": "warning"}
        else:
            frame = {"type": self.kind.value}
        if self.message:
            frame["message"] = self.message
        if self.percent is not None:
            frame["progress"] = self.percent
        return frame


@dataclass
class OutputFile:
    """One finished file, named by its sanitized leaf name."""

    name: str
    data: bytes


@dataclass
class SaveReport:
    """Result of a multi-file save; failed files do not roll back the others."""

    total: int = 0
    succeeded: int = 0
    saved_paths: List[str] = field(default_factory=list)
    failed_names: List[str] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return self.succeeded < self.total

    def __str__(self) -> str:
        return f"{self.succeeded}/{self.total}"


@dataclass
class Artifact:
    """What a job delivers: an in-memory blob, or files saved elsewhere."""

    name: str
    data: Optional[bytes] = None
    report: Optional[SaveReport] = None


@dataclass
class JobOutcome:
    status: JobState
    artifact: Optional[Artifact] = None
    error: Optional[BaseException] = None
    anomaly: Optional[DurationAnomaly] = None
    message: str = ""
