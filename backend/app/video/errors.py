"""Error normalization for the video engine.

Whatever a call object raises is turned into a ``VideoEngineError`` with a
stable code, so callers can decide between retrying, rejoining and giving up
without knowing which provider SDK is underneath.
"""

import enum
from dataclasses import dataclass

RECOVERABLE_CODES = frozenset({"network-error", "connection-error", "timeout"})


class CallError(Exception):
    """Raised by call objects for provider-side failures."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class VideoEngineError(Exception):
    def __init__(self, code: str, message: str, recoverable: bool | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.recoverable = code in RECOVERABLE_CODES if recoverable is None else recoverable

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "recoverable": self.recoverable}


class ScreenShareError(VideoEngineError):
    """Screen share refused. ``code`` tells the caller how to recover."""


class ModerationError(VideoEngineError):
    """A moderation action failed. Recoverable only if the underlying failure is."""

    def __init__(self, action: str, detail: str, recoverable: bool = False):
        self.action = action
        super().__init__("moderation-failed", f"Failed to {action}: {detail}", recoverable=recoverable)


def _message_of(exc: BaseException) -> str:
    return getattr(exc, "message", None) or str(exc) or "Unknown error"


def normalize_error(exc: BaseException) -> VideoEngineError:
    if isinstance(exc, VideoEngineError):
        return exc
    if isinstance(exc, CallError):
        return VideoEngineError(exc.code, exc.message)
    if isinstance(exc, TimeoutError):
        return VideoEngineError("timeout", _message_of(exc))
    if isinstance(exc, ConnectionError):
        return VideoEngineError("connection-error", _message_of(exc))
    return VideoEngineError("unknown-error", _message_of(exc))


def screen_share_error(exc: BaseException) -> ScreenShareError:
    """Map a provider's screen-share rejection to a specific, actionable error."""
    text = _message_of(exc)
    code = getattr(exc, "code", "")

    if code == "cancelled" or "User cancelled screen share prompt" in text:
        return ScreenShareError(
            "cancelled",
            "Screen sharing was cancelled. Click the screen share button to try again.",
            recoverable=True,
        )
    if "Permission denied" in text or "NotAllowedError" in text:
        return ScreenShareError(
            "permission-denied",
            "Screen sharing permission was denied. Please allow screen sharing in your browser settings.",
            recoverable=False,
        )
    if "NotSupportedError" in text:
        return ScreenShareError(
            "not-supported", "Screen sharing is not supported on this device.", recoverable=False
        )
    if "NotFoundError" in text:
        return ScreenShareError(
            "no-source",
            "No screen available to share. Please check your display settings.",
            recoverable=False,
        )
    return ScreenShareError("failed", f"Screen sharing failed: {text}", recoverable=False)


# ---------------------------------------------------------------------------
# User-facing descriptions
# ---------------------------------------------------------------------------


class RecoveryAction(str, enum.Enum):
    RETRY = "retry"
    REJOIN = "rejoin"
    REFRESH = "refresh"
    CONTACT_SUPPORT = "contact-support"
    NONE = "none"


@dataclass(frozen=True)
class ErrorDescription:
    code: str
    user_message: str
    action: RecoveryAction
    recoverable: bool


_DESCRIPTIONS: dict[str, tuple[str, RecoveryAction]] = {
    "network-error": ("Network connection lost. Please check your internet.", RecoveryAction.RETRY),
    "connection-error": ("Failed to connect to meeting. Please try again.", RecoveryAction.REJOIN),
    "timeout": ("Connection timed out. Please try again.", RecoveryAction.RETRY),
    "permission-denied": (
        "Camera/microphone permission denied. Please allow access in browser settings.",
        RecoveryAction.NONE,
    ),
    "meeting-full": ("This meeting is full. Please try again later.", RecoveryAction.RETRY),
    "meeting-ended": ("This meeting has ended.", RecoveryAction.NONE),
    "not-allowed": ("You are not allowed to join this meeting.", RecoveryAction.CONTACT_SUPPORT),
    "cam-in-use": ("Your camera is being used by another application.", RecoveryAction.REFRESH),
    "mic-in-use": ("Your microphone is being used by another application.", RecoveryAction.REFRESH),
}


def describe_error(error: BaseException) -> ErrorDescription:
    err = normalize_error(error)
    if err.code in _DESCRIPTIONS:
        user_message, action = _DESCRIPTIONS[err.code]
    else:
        user_message = err.message
        action = RecoveryAction.RETRY if err.recoverable else RecoveryAction.REFRESH
    return ErrorDescription(
        code=err.code,
        user_message=user_message,
        action=action,
        recoverable=err.recoverable,
    )
