"""Append-only transcript log for a tutoring session.

Every textual fragment surfaced by the control channel while a session is
Live is recorded here as a role-tagged Turn. Once the session leaves Live the
log is frozen and any further append raises.

Typical usage:
    log = TranscriptLog()
    log.append(Role.TUTOR, "Hello Ali! Today's topic: My family")
    log.append(Role.STUDENT, "I have two brothers.")
    log.freeze()
    text = log.text  # "TUTOR: Hello Ali! ...\\nSTUDENT: I have two brothers."
"""

import time
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum


class Role(Enum):
    """Speaker attributed to a turn."""

    TUTOR = "tutor"
    STUDENT = "student"
    SYSTEM = "system"


@dataclass(frozen=True)
class Turn:
    """Single utterance in the transcript.

    Attributes:
        role: Who produced the text.
        text: Utterance text (stripped).
        timestamp: Unix timestamp when the turn was captured.
    """

    role: Role
    text: str
    timestamp: float

    def render(self) -> str:
        """Return the role-tagged line used in the evaluation transcript."""
        return f"{self.role.name}: {self.text}"


class TranscriptFrozenError(RuntimeError):
    """Raised when appending to a log whose session is no longer Live."""


class TranscriptLog:
    """Ordered, append-only sequence of turns.

    Attributes:
        frozen: Whether the log has been sealed.
    """

    def __init__(self) -> None:
        self._turns: list[Turn] = []
        self.frozen = False

    def append(self, role: Role, text: str, timestamp: float | None = None) -> Turn | None:
        """Append a turn.

        Blank text is ignored.

        Args:
            role: Speaker role.
            text: Utterance text.
            timestamp: Capture time (defaults to now).

        Returns:
            The appended turn, or None if the text was blank.

        Raises:
            TranscriptFrozenError: If the log has been frozen.
        """
        if self.frozen:
            raise TranscriptFrozenError("Transcript is frozen; session is no longer live")

        text = text.strip()
        if not text:
            return None

        turn = Turn(role=role, text=text, timestamp=time.time() if timestamp is None else timestamp)
        self._turns.append(turn)
        return turn

    def freeze(self) -> None:
        """Seal the log. Idempotent."""
        self.frozen = True

    @property
    def turns(self) -> tuple[Turn, ...]:
        """Immutable view of all turns in capture order."""
        return tuple(self._turns)

    @property
    def text(self) -> str:
        """Full transcript as newline-separated role-tagged lines."""
        return "\n".join(turn.render() for turn in self._turns)

    def preview(self, max_chars: int = 700) -> str:
        """Tail of the transcript, truncated for display."""
        text = self.text
        if len(text) > max_chars:
            return "..." + text[-max_chars:]
        return text

    def count(self, role: Role) -> int:
        """Number of turns attributed to ``role``."""
        return sum(1 for turn in self._turns if turn.role is role)

    def __iter__(self) -> Iterator[Turn]:
        return iter(tuple(self._turns))

    def __len__(self) -> int:
        """Return number of turns in the log."""
        return len(self._turns)

    def __repr__(self) -> str:
        return f"TranscriptLog(turns={len(self._turns)}, frozen={self.frozen})"
