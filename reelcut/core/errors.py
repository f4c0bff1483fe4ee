"""
Typed failures raised by the export pipeline.

Every fatal error carries a human-readable message. AudioExtractionError is
the one recoverable member: the orchestrator catches it and downgrades the
run to a video-only encode.
"""


class ExportError(RuntimeError):
    """Base class for all export pipeline failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ExportError, ValueError):
    """Bad caller input (time range, missing source). Never retried."""


class ResourceLoadError(ExportError):
    """Source metadata could not be loaded, or a seek failed / timed out."""


class AudioExtractionError(ExportError):
    """Audio could not be extracted from the source. Recovered locally."""


class EncodeError(ExportError):
    """The encoder process failed."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class EmptyOutputError(ExportError):
    """The encoder reported success but produced no bytes."""


class ExportCancelled(ExportError):
    """The export was cancelled at a frame boundary."""
