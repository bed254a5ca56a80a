"""Error kinds raised by the pyramid pipeline and surfaced to callers."""

from __future__ import annotations


class LayoutUploaderError(RuntimeError):
    """Base exception; ``str(exc)`` is the human-readable failure message."""


class ConfigurationError(LayoutUploaderError, ValueError):
    """Raised when run parameters are invalid before any work begins."""


class ImageDecodeError(LayoutUploaderError):
    """Raised when the source image is unreadable, corrupt, or unsupported."""


class EncodeError(LayoutUploaderError):
    """Raised when a tile cannot be encoded as JPEG."""


class UploadError(LayoutUploaderError):
    """Raised when a tile upload fails (non-2xx status or transport error).

    Args:
        message: Human-readable description.
        status_code: HTTP status returned by the server, ``None`` for transport failures.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FinalizeError(LayoutUploaderError):
    """Raised when the finalize call fails after all tiles were uploaded."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RunCancelledError(LayoutUploaderError):
    """Raised when a cancellation request is observed at a checkpoint."""

    def __init__(self, message: str = "Processing cancelled") -> None:
        super().__init__(message)


class RunInProgressError(LayoutUploaderError):
    """Raised when a run is started while another one is still active."""
