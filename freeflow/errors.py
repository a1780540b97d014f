"""Error taxonomy shared by the dictation pipeline."""

from __future__ import annotations

from enum import Enum


class FreeflowError(RuntimeError):
    """Base class for errors surfaced to the user."""


class PermissionDeniedError(FreeflowError):
    """A required system permission has not been granted."""

    MESSAGES = {
        "microphone": "Microphone access is required. Grant it in System Settings > Privacy & Security > Microphone.",
        "accessibility": (
            "Accessibility permission required. Grant access in System Settings > "
            "Privacy & Security > Accessibility."
        ),
        "screen_recording": (
            "Screen recording permission not granted. Enable in System Settings > "
            "Privacy & Security > Screen Recording."
        ),
    }

    def __init__(self, permission: str) -> None:
        self.permission = permission
        super().__init__(self.MESSAGES.get(permission, f"Permission required: {permission}"))


class ScreenRecordingPermissionError(PermissionDeniedError):
    def __init__(self) -> None:
        super().__init__("screen_recording")


class CaptureErrorKind(str, Enum):
    DEVICE_UNAVAILABLE = "device_unavailable"
    FORMAT_NEGOTIATION = "format_negotiation"
    PERMISSION_DENIED = "permission_denied"
    NO_AUDIO = "no_audio"


class CaptureError(FreeflowError):
    """The audio capture provider could not start or produced nothing."""

    PREFIXES = {
        CaptureErrorKind.DEVICE_UNAVAILABLE: "Microphone unavailable",
        CaptureErrorKind.FORMAT_NEGOTIATION: "Unsupported audio format",
        CaptureErrorKind.PERMISSION_DENIED: "Microphone permission denied",
        CaptureErrorKind.NO_AUDIO: "No audio recorded",
    }

    def __init__(self, kind: CaptureErrorKind, detail: str = "") -> None:
        self.kind = kind
        self.detail = detail
        prefix = self.PREFIXES[kind]
        super().__init__(f"{prefix}: {detail}" if detail else prefix)


class TranscriptionError(FreeflowError):
    """Base class for remote transcription failures."""


class TranscriptionSubmissionFailed(TranscriptionError):
    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Submission failed: {detail}")


class TranscriptionTimedOut(TranscriptionError):
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        super().__init__(f"Transcription timed out after {seconds:g}s")


class TranscriptionInvalidResponse(TranscriptionError):
    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Invalid transcription response: {detail}")


class PostProcessingError(FreeflowError):
    """Base class for post-processing failures. Never fatal to a session."""


class PostProcessingRequestFailed(PostProcessingError):
    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Post-processing failed with status {status_code}: {detail}")


class PostProcessingInvalidResponse(PostProcessingError):
    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Invalid post-processing response: {detail}")


class PersistenceError(FreeflowError):
    """Raised when the history store cannot be read or written."""


class StoreCorruptionError(PersistenceError):
    """The on-disk history store is unreadable and must be reinitialised."""


class SessionCancelled(FreeflowError):
    def __init__(self) -> None:
        super().__init__("Session cancelled")


def format_error(exc: BaseException) -> str:
    """Return a user readable message for ``exc``."""

    message = str(exc).strip()
    if isinstance(exc, FreeflowError) and message:
        return message
    if message:
        return f"{type(exc).__name__}: {message}"
    return type(exc).__name__


def error_status(exc: BaseException) -> str:
    """Return the history ``processing_status`` recorded for a failed session."""

    return f"Error: {format_error(exc)}"
