"""Follow-up nudge scheduling driven by turn-taking events.

After the tutor finishes speaking, a nudge is armed to fire once the silence
window elapses. It fires only if the budget is not exhausted, the cooldown
since the previous nudge has elapsed and the student is not speaking at fire
time. Student speech cancels a pending nudge immediately; a suppressed or
cancelled nudge is never rescheduled on its own, only the next completed
tutor response re-arms it.

All methods take the current monotonic time explicitly so the scheduler can
be driven by the controller's ticks and replayed deterministically.
"""

import logging
from dataclasses import dataclass

from src.tutor.config import FollowUpConfig

logger = logging.getLogger(__name__)


@dataclass
class FollowUpCounter:
    """Nudges sent in the current session."""

    count: int = 0
    last_fire_time: float | None = None


class FollowUpScheduler:
    """Arms, cancels and fires follow-up nudges.

    Attributes:
        counter: Nudges fired so far
        student_speaking: Whether the student is currently speaking
        due_at: Monotonic time the pending nudge fires, or None
    """

    def __init__(self, config: FollowUpConfig) -> None:
        self.config = config
        self.counter = FollowUpCounter()
        self.student_speaking = False
        self.due_at: float | None = None

    def reset(self) -> None:
        """Start a fresh session budget."""
        self.counter = FollowUpCounter()
        self.student_speaking = False
        self.due_at = None

    @property
    def exhausted(self) -> bool:
        return self.counter.count >= self.config.budget

    @property
    def pending(self) -> bool:
        return self.due_at is not None

    def on_speech_started(self) -> None:
        self.student_speaking = True
        if self.due_at is not None:
            logger.debug("Pending nudge cancelled by student speech")
        self.due_at = None

    def on_speech_stopped(self) -> None:
        self.student_speaking = False

    def on_response_completed(self, now: float) -> bool:
        """Arm a nudge after a completed tutor response.

        Returns:
            True if a nudge was armed
        """
        if not self.config.enabled or self.exhausted:
            self.due_at = None
            return False

        self.due_at = now + self.config.silence_window_s
        return True

    def poll(self, now: float) -> bool:
        """Decide whether the pending nudge fires now.

        A due nudge is consumed whether it fires or is suppressed.

        Returns:
            True if the caller should send a nudge (already counted)
        """
        if self.due_at is None or now < self.due_at:
            return False

        self.due_at = None

        if self.exhausted:
            return False
        if self.student_speaking:
            logger.debug("Nudge suppressed: student speaking")
            return False
        last = self.counter.last_fire_time
        if last is not None and now - last < self.config.cooldown_s:
            logger.debug("Nudge suppressed: cooldown", extra={"since_last_s": now - last})
            return False

        self.counter.count += 1
        self.counter.last_fire_time = now
        return True
