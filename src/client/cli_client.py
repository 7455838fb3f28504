"""Terminal client for a voice tutoring session.

Runs one session against the speech engine using the local microphone, shows
status changes and notices, then submits the transcript for scoring and
prints the report.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from src.tutor.config import TutorConfig
from src.tutor.curriculum import LEVEL_PROFILES
from src.tutor.errors import PolicyRejection, TutorError
from src.tutor.evaluator import Evaluator, HttpEvaluator, OpenAIEvaluator
from src.tutor.progress import ProgressStore, StudentProgress, student_key
from src.tutor.scoring import ScoreReport, ScoringRequestor
from src.tutor.server import build_stores, close_stores
from src.tutor.session import SessionController
from src.tutor.token_broker import HttpTokenBroker, TokenBroker
from src.tutor.transport.media import Microphone, RemoteAudioOutput
from src.tutor.transport.negotiator import TransportNegotiator
from src.tutor.utils.logging import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_REJECTED = 2


def build_token_broker(config: TutorConfig) -> Any:
    """Remote credential route when configured, in-process issuance otherwise."""
    if config.session.credential_url:
        return HttpTokenBroker(
            config.session.credential_url, timeout_s=config.session.credential_timeout_s
        )
    return TokenBroker(config.openai, timeout_s=config.session.credential_timeout_s)


def build_evaluator(config: TutorConfig) -> Evaluator:
    """Remote scoring route when configured, in-process evaluation otherwise."""
    if config.scoring.endpoint_url:
        return HttpEvaluator(config.scoring.endpoint_url, timeout_s=config.scoring.timeout_s)
    return OpenAIEvaluator(config.openai)


def format_report(report: ScoreReport) -> str:
    scores = report.scores
    lines = [
        f"Score report for {report.student} ({report.level}, {report.lesson})",
        f"  Pronunciation: {scores.pronunciation}/5",
        f"  Grammar:       {scores.grammar}/5",
        f"  Fluency:       {scores.fluency}/5",
        f"  Confidence:    {scores.confidence}/5",
        f"  Average:       {report.average:.2f}",
        "Strengths:",
        *(f"  - {s}" for s in report.strengths),
        "Improvements:",
        *(f"  - {s}" for s in report.improvements),
    ]
    if report.corrected_sentences:
        lines.append("Corrections:")
        for c in report.corrected_sentences:
            lines.append(f"  - {c.student_said} -> {c.better}")
    lines.append(f"Homework: {report.homework}")
    return "\n".join(lines)


class TutorCLI:
    """Runs one tutoring session from the terminal."""

    def __init__(
        self,
        config: TutorConfig,
        student_name: str,
        level: str | None = None,
        score: bool = True,
        reset_lessons: bool = False,
        clear_history: bool = False,
    ) -> None:
        """Initialize CLI client.

        Args:
            config: Tutor configuration
            student_name: Student display name
            level: Level for this session (stored preference when None)
            score: Submit the transcript for scoring after the session
            reset_lessons: Rewind the student to lesson 1 instead of running a session
            clear_history: Delete the student's score history instead of running a session
        """
        self.config = config
        self.student_name = student_name
        self.level = level
        self.score = score
        self.reset_lessons = reset_lessons
        self.clear_history = clear_history

    async def run(self) -> int:
        """Run the session (or a progress maintenance action) and return an exit code."""
        progress_store, roster = await build_stores(self.config.storage)
        try:
            if self.reset_lessons or self.clear_history:
                return await self._maintain(progress_store)
            return await self._run(progress_store)
        finally:
            await close_stores(progress_store, roster)

    async def _maintain(self, progress_store: ProgressStore) -> int:
        key = student_key(self.student_name)
        progress = StudentProgress(progress_store, key)
        if self.reset_lessons:
            await progress.reset_lessons()
            logger.info("Lessons reset", extra={"student": key})
            print(f"Lessons reset for {key}: next session starts at lesson 1.")
        if self.clear_history:
            await progress.clear_history()
            logger.info("Score history cleared", extra={"student": key})
            print(f"Score history cleared for {key}.")
        return EXIT_OK

    async def _run(self, progress_store: ProgressStore) -> int:
        controller = SessionController(
            self.config,
            token_broker=build_token_broker(self.config),
            negotiator=TransportNegotiator(
                self.config.openai, timeout_s=self.config.session.negotiation_timeout_s
            ),
            microphone=Microphone.from_config(self.config.media),
            audio_output=RemoteAudioOutput.from_config(self.config.media),
            progress_store=progress_store,
            on_status=lambda status: print(f"[status] {status}"),
            on_notice=lambda message: print(f"[notice] {message}"),
        )

        loop = asyncio.get_running_loop()

        def request_stop() -> None:
            print("\nStopping...")
            asyncio.ensure_future(controller.stop())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, request_stop)

        try:
            try:
                session = await controller.start(self.student_name, self.level)
            except PolicyRejection as e:
                print(e.message)
                return EXIT_REJECTED
            except TutorError as e:
                print(f"Could not start session: {e.message}")
                if e.details:
                    print(f"Details: {e.details}")
                return EXIT_ERROR

            print(f"Lesson {session.lesson.number}: {session.topic}. Press Ctrl+C to stop.")
            await controller.wait_closed()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

        print("\nTranscript:")
        print(controller.transcript.preview() or "(empty)")

        if not self.score or session.start_time is None:
            return EXIT_OK

        requestor = ScoringRequestor(
            build_evaluator(self.config), progress_store, self.config.scoring
        )
        try:
            report = await requestor.request_score(
                controller.transcript,
                session.student_name,
                LEVEL_PROFILES[session.level].label,
                session.lesson.title,
            )
        except TutorError as e:
            print(f"Scoring failed: {e.message}")
            return EXIT_ERROR

        print()
        print(format_report(report))

        progress = StudentProgress(progress_store, student_key(session.student_name))
        streak = await progress.get_streak()
        best = await progress.get_best_average()
        print(f"Streak: {streak.count} day(s)")
        if best is not None:
            print(f"Best average: {best:.2f}")
        return EXIT_OK


def main() -> None:
    """Main entry point for the tutor CLI."""
    parser = argparse.ArgumentParser(description="Voice English tutor (terminal client)")
    parser.add_argument("student", type=str, help="Student name")
    parser.add_argument(
        "--level",
        type=str,
        default=None,
        choices=["beginner", "medium", "advanced"],
        help="Level for this session (default: stored preference)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "tutor.yaml",
        help="Path to tutor config YAML file",
    )
    parser.add_argument(
        "--no-score",
        action="store_true",
        help="Skip scoring after the session",
    )
    parser.add_argument(
        "--reset-lessons",
        action="store_true",
        help="Restart the student's course at lesson 1 and exit",
    )
    parser.add_argument(
        "--clear-history",
        action="store_true",
        help="Delete the student's stored score history and exit",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args()

    config = TutorConfig.from_yaml_with_defaults(args.config)
    setup_logging("DEBUG" if args.verbose else config.log_level)

    client = TutorCLI(
        config,
        args.student,
        level=args.level,
        score=not args.no_score,
        reset_lessons=args.reset_lessons,
        clear_history=args.clear_history,
    )
    try:
        sys.exit(asyncio.run(client.run()))
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
