"""
Server-sent event framing for job progress.

Each frame is one ``data: <json>`` line followed by a blank line. The parser
side is incremental: network chunks are buffered until a blank-line delimiter
arrives, so frames split across (or packed into) chunks decode the same way.
"""

import codecs
import json
import logging
from typing import Any, Dict, List, Optional

from qobuz_jobs.exceptions import FrameParseError
from qobuz_jobs.models.job import EventKind, ProgressEvent

log = logging.getLogger(__name__)

FRAME_DELIMITER = "\n\n"
KEEPALIVE = b": keepalive\n\n"
WIRE_TYPES = {
    kind.value: kind
    for kind in (EventKind.PROGRESS, EventKind.COMPLETE, EventKind.ERROR)
}


def encode_frame(frame: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(frame)}{FRAME_DELIMITER}".encode("utf-8")


def decode_frame(block: str) -> Optional[ProgressEvent]:
    """
    Turns one delimited block into an event. Comment-only blocks yield None;
    anything that is not a well-formed progress frame raises FrameParseError.
    """
    data_lines = []
    for line in block.split("\n"):
        if not line or line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            data_lines.append(value[1:] if value.startswith(" ") else value)
    if not data_lines:
        return None

    payload = "\n".join(data_lines)
    try:
        frame = json.loads(payload)
    except json.JSONDecodeError as e:
        raise FrameParseError(f"Invalid JSON in frame: {payload[:80]!r}") from e
    if not isinstance(frame, dict):
        raise FrameParseError(f"Frame is not an object: {payload[:80]!r}")

    kind = WIRE_TYPES.get(frame.get("type"))
    if kind is None:
        raise FrameParseError(f"Unknown frame type: {frame.get('type')!r}")
    if kind is EventKind.PROGRESS and frame.get("level") == "warning":
        kind = EventKind.WARNING

    percent = frame.get("progress")
    if percent is not None:
        try:
            percent = float(percent)
        except (TypeError, ValueError) as e:
            raise FrameParseError(f"Invalid progress value: {percent!r}") from e
    return ProgressEvent(kind, str(frame.get("message") or ""), percent)


class FrameParser:
    """Accumulates bytes and returns each complete frame as it arrives."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.skipped = 0

    def feed(self, chunk: bytes) -> List[ProgressEvent]:
        text = self._decoder.decode(chunk)
        self._buffer = (self._buffer + text).replace("\r\n", "\n")
        events = []
        while FRAME_DELIMITER in self._buffer:
            block, self._buffer = self._buffer.split(FRAME_DELIMITER, 1)
            try:
                event = decode_frame(block)
            except FrameParseError as e:
                self.skipped += 1
                log.warning(f"Skipping malformed progress frame: {e}")
                continue
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> None:
        """Discards whatever incomplete frame is left once the stream ends."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        if tail.strip():
            log.debug(f"Dropping incomplete trailing frame: {tail[:80]!r}")
        self._buffer = ""
