"""Exception taxonomy for video-pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ProbeError(PipelineError):
    """Media inspection failed or produced unparsable output. Not retried."""


class EncoderError(PipelineError):
    """The external encoder exited non-zero. Retried at the job level."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class JobCancelled(PipelineError):
    """The job was cancelled while queued or while its encoder was running."""


class QueueCapacityExceeded(PipelineError):
    """A submission hit a full queue; the caller should retry later."""


class UnknownProfileError(PipelineError, ValueError):
    """A job referenced a transcoding profile that is not in the catalog."""


class SessionNotFound(PipelineError):
    """Operation on an unknown or expired streaming session."""


class DownloadValidationError(PipelineError):
    """Requested rendition is unavailable, or the download is unusable."""


class LicenseExpired(PipelineError):
    """The offline download is past its license expiry."""
