"""
Defines custom exceptions for the application to allow for more specific error handling.
"""

from typing import Any, Awaitable, Callable, Optional


class QobuzJobsError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(QobuzJobsError):
    """Raised for issues related to configuration loading or validation."""


class InvalidQualityError(QobuzJobsError):
    """Raised when an invalid quality ID is requested."""


class InvalidAppSecretError(QobuzJobsError):
    """Raised when the app secret is missing or rejected by the Qobuz API."""


class NotStreamableError(QobuzJobsError):
    """
    Raised when attempting to download an item that is not available for streaming.
    """


class FetchError(QobuzJobsError):
    """
    Raised when audio, cover art or album metadata cannot be retrieved.

    Never retried automatically; the message carries enough detail for the
    user to retry by hand.
    """

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class EncodeError(QobuzJobsError):
    """Raised when ffmpeg exits with a non-zero code."""

    def __init__(self, message: str, returncode: int, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr

    def __str__(self) -> str:
        base = super().__str__()
        if not self.stderr:
            return base
        tail = self.stderr.strip().splitlines()[-5:]
        return base + "\n" + "\n".join(tail)


class FileIntegrityError(QobuzJobsError):
    """Raised when a processed file cannot be read back or patched."""


class JobCancelledError(QobuzJobsError):
    """Raised at a suspension point once the job's cancel token has fired."""


class FrameParseError(QobuzJobsError):
    """Raised for a malformed server-sent progress frame."""


class ServerJobError(QobuzJobsError):
    """Raised when a job delegated to a remote server ends in an error frame."""


class DurationAnomaly(QobuzJobsError):
    """
    The processed file is shorter than the duration the catalog declares.

    This usually means Qobuz served a preview sample instead of the full track.
    It is not fatal: the caller decides whether to keep the output. When the
    decision is deferred, ``proceed()`` packages the held output.
    """

    def __init__(
        self,
        title: str,
        expected: float,
        actual: float,
        proceed: Optional[Callable[[], Awaitable[Any]]] = None,
    ):
        super().__init__(
            f'Qobuz provided a file shorter than expected for "{title}" '
            f"({actual:.1f}s < {expected:.1f}s). This can indicate the file "
            "being a sample track rather than the full track."
        )
        self.title = title
        self.expected = expected
        self.actual = actual
        self._proceed = proceed

    async def proceed(self) -> Any:
        """Packages the held output anyway."""
        if self._proceed is None:
            raise QobuzJobsError("No output is held for this anomaly.")
        return await self._proceed()
