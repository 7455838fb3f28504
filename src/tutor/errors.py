"""Error taxonomy for the voice tutor.

Errors carry a ``details`` dict so that boundary failures (credential
issuance, negotiation, evaluation) can always be surfaced with reproducible
diagnostic text. Policy rejections (already active, daily limit) are modeled
as errors so callers can handle them uniformly, but they are not failures.
"""

from typing import Any


class TutorError(Exception):
    """Base class for all voice tutor errors.

    Attributes:
        message: Human-readable description
        details: Diagnostic payload (status codes, raw bodies, etc.)
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON error bodies."""
        return {"type": type(self).__name__, "message": self.message, **self.details}


class ConfigError(TutorError):
    """Required configuration (e.g. the server secret) is missing. Fatal."""


class UpstreamError(TutorError):
    """A remote service returned a non-success response or timed out."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        body: Any = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if status is not None:
            merged["status"] = status
        if body is not None:
            merged["body"] = body
        super().__init__(message, merged)
        self.status = status
        self.body = body


class NegotiationError(UpstreamError):
    """Offer/answer exchange with the remote engine failed."""


class ValidationError(TutorError):
    """A payload (media description, evaluation report) is malformed."""


class InvalidDescriptionError(NegotiationError, ValidationError):
    """Local or remote session description does not look like SDP."""


class MicrophonePermissionError(TutorError, PermissionError):
    """Microphone access was denied or the device is unavailable."""


class PolicyRejection(TutorError):
    """A request was refused by policy rather than by a failure."""


class AlreadyActiveError(PolicyRejection):
    """A session is already connecting or live on this client."""


class DailyLimitError(PolicyRejection):
    """The student already completed today's session."""


class TranscriptTooShortError(TutorError):
    """Transcript is too short to evaluate. User-correctable."""
