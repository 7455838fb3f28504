"""Scoring requestor: evaluate a finished transcript and persist the result.

The requestor rejects short transcripts before any network call, bounds the
evaluation with a timeout and validates the result against ``ScoreReport``.
Progress (history, streak, best average) is only mutated after a report
validates.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from datetime import date
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from src.tutor.config import ScoringConfig
from src.tutor.errors import TranscriptTooShortError, UpstreamError, ValidationError
from src.tutor.evaluator import Evaluator
from src.tutor.progress import ProgressStore, StudentProgress, student_key, update_streak
from src.tutor.transcript_buffer import TranscriptLog
from src.tutor.utils.logging import log_event

logger = logging.getLogger(__name__)


class Scores(BaseModel):
    """Four skill scores, each an integer from 1 to 5."""

    model_config = ConfigDict(extra="forbid")

    pronunciation: int = Field(strict=True, ge=1, le=5)
    grammar: int = Field(strict=True, ge=1, le=5)
    fluency: int = Field(strict=True, ge=1, le=5)
    confidence: int = Field(strict=True, ge=1, le=5)

    @property
    def average(self) -> float:
        return (self.pronunciation + self.grammar + self.fluency + self.confidence) / 4


class CorrectedSentence(BaseModel):
    model_config = ConfigDict(extra="forbid")

    student_said: str
    better: str


class ScoreReport(BaseModel):
    """Structured evaluation of one session."""

    model_config = ConfigDict(extra="ignore")

    student: str = ""
    level: str = ""
    lesson: str = ""
    scores: Scores
    strengths: list[str] = Field(min_length=2, max_length=4)
    improvements: list[str] = Field(min_length=2, max_length=5)
    corrected_sentences: list[CorrectedSentence] = Field(default_factory=list, max_length=3)
    homework: str

    @property
    def average(self) -> float:
        return self.scores.average


def parse_report(raw: Any) -> ScoreReport:
    """Validate a raw evaluator result.

    Raises:
        ValidationError: If the result does not match ``ScoreReport``
    """
    try:
        return ScoreReport.model_validate(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Score report failed validation",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


class ScoringRequestor:
    """Submits transcripts for evaluation and records the outcome."""

    def __init__(
        self,
        evaluator: Evaluator,
        progress_store: ProgressStore,
        config: ScoringConfig | None = None,
        today: Callable[[], date] = date.today,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize requestor.

        Args:
            evaluator: Evaluation backend
            progress_store: Per-student progress storage
            config: Scoring configuration (defaults if None)
            today: Calendar date provider for streak updates
            wall_clock: Epoch seconds provider for history timestamps
        """
        self.evaluator = evaluator
        self.progress_store = progress_store
        self.config = config or ScoringConfig()
        self.today = today
        self.wall_clock = wall_clock

    async def request_score(
        self,
        transcript: str | TranscriptLog,
        student_name: str,
        level: str,
        lesson: str,
    ) -> ScoreReport:
        """Evaluate a transcript and persist the report.

        Args:
            transcript: Rendered transcript text or the session's log
            student_name: Display name of the student
            level: Level label in effect for the session
            lesson: Lesson title for the session

        Returns:
            Validated score report

        Raises:
            TranscriptTooShortError: If the transcript is below the minimum length
            UpstreamError: If evaluation fails or times out
            ValidationError: If the evaluator result is malformed
        """
        text = transcript.text if isinstance(transcript, TranscriptLog) else (transcript or "")
        text = text.strip()
        if len(text) < self.config.min_transcript_chars:
            raise TranscriptTooShortError(
                "Transcript is missing or too short. Let the student speak for 30-60 seconds first.",
                details={"length": len(text), "minimum": self.config.min_transcript_chars},
            )

        started = time.perf_counter()
        try:
            raw = await asyncio.wait_for(
                self.evaluator.evaluate(student_name, level, lesson, text),
                timeout=self.config.timeout_s,
            )
        except TimeoutError as e:
            raise UpstreamError(
                "Scoring timed out",
                details={"timeout_s": self.config.timeout_s},
            ) from e

        report = parse_report(raw)
        logger.info(
            "Score received",
            extra={
                "student": student_name,
                "average": report.average,
                "latency_ms": (time.perf_counter() - started) * 1000,
            },
        )

        await self._record(student_name, report)
        return report

    async def _record(self, student_name: str, report: ScoreReport) -> None:
        progress = StudentProgress(self.progress_store, student_key(student_name))

        entry: dict[str, Any] = {
            "id": uuid.uuid4().hex,
            "ts": int(self.wall_clock() * 1000),
            **report.model_dump(),
        }
        history = await progress.get_history()
        await progress.set_history([entry, *history][: self.config.history_size])

        streak = update_streak(await progress.get_streak(), self.today())
        await progress.set_streak(streak)

        log_event(
            "score_recorded",
            {"student": progress.student, "average": report.average, "streak": streak.count},
        )

        best = await progress.get_best_average()
        if best is None or report.average > best:
            await progress.set_best_average(report.average)
            logger.info(
                "New best average",
                extra={"student": progress.student, "average": report.average},
            )
