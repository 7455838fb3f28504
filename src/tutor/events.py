"""Session events consumed by the session controller.

Control-channel arrivals, timer ticks and transport state changes are all
turned into one of these immutable events and posted onto the controller's
event queue, so a recorded sequence can be replayed deterministically.
"""

from dataclasses import dataclass

from src.tutor.transcript_buffer import Role


@dataclass(frozen=True)
class SpeechStarted:
    """Server VAD detected the student starting to speak."""


@dataclass(frozen=True)
class SpeechStopped:
    """Server VAD detected the student stopping."""


@dataclass(frozen=True)
class ResponseCompleted:
    """The tutor finished a response."""

    response_id: str | None = None


@dataclass(frozen=True)
class TranscriptFragment:
    """Completed text attributed to the tutor or the student."""

    role: Role
    text: str


@dataclass(frozen=True)
class ServerError:
    """Error event reported by the remote engine."""

    message: str
    code: str | None = None


@dataclass(frozen=True)
class Tick:
    """Periodic timer tick driving the deadline and nudge timers."""


@dataclass(frozen=True)
class ConnectionLost:
    """Control channel closed or peer connection failed."""

    reason: str


SessionEvent = (
    SpeechStarted
    | SpeechStopped
    | ResponseCompleted
    | TranscriptFragment
    | ServerError
    | Tick
    | ConnectionLost
)
