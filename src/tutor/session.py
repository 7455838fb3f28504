"""Session controller: the tutoring session state machine.

Owns the connection lifecycle, the control-channel choreography, the
duration budget and daily usage lock, follow-up nudges and transcript
capture for one client. Control-channel arrivals, timer ticks and transport
failures are posted as events onto a single queue and consumed by one
transition handler per event type, so a recorded event sequence can be
replayed deterministically through ``handle_event``.
"""

import asyncio
import logging
import math
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, TypeVar

from src.tutor import protocol
from src.tutor.config import TutorConfig
from src.tutor.curriculum import (
    LEVEL_PROFILES,
    Lesson,
    Level,
    build_greeting,
    build_instructions,
    build_nudge,
    lesson_for_cursor,
    next_cursor,
)
from src.tutor.errors import (
    AlreadyActiveError,
    DailyLimitError,
    MicrophonePermissionError,
    NegotiationError,
    TutorError,
    UpstreamError,
)
from src.tutor.events import (
    ConnectionLost,
    ResponseCompleted,
    ServerError,
    SessionEvent,
    SpeechStarted,
    SpeechStopped,
    Tick,
    TranscriptFragment,
)
from src.tutor.followup import FollowUpScheduler
from src.tutor.progress import ProgressStore, StudentProgress, student_key
from src.tutor.transcript_buffer import Role, TranscriptLog
from src.tutor.transport.base import AudioInput, AudioOutput
from src.tutor.transport.connection import RealtimeConnection
from src.tutor.utils.logging import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(Enum):
    """Session state machine states.

    State Transitions:
    - IDLE → CONNECTING (start accepted)
    - CONNECTING → LIVE (negotiation succeeded and control channel open)
    - CONNECTING → CLOSED (negotiation failure, permission denial, stop)
    - LIVE → STOPPING (explicit stop, deadline expiry, connection lost)
    - STOPPING → CLOSED (cleanup finished)

    Transitions are monotonic; CLOSED is terminal.
    """

    IDLE = "idle"
    CONNECTING = "connecting"
    LIVE = "live"
    STOPPING = "stopping"
    CLOSED = "closed"


VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.CONNECTING, SessionState.CLOSED},
    SessionState.CONNECTING: {SessionState.LIVE, SessionState.CLOSED},
    SessionState.LIVE: {SessionState.STOPPING},
    SessionState.STOPPING: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}

ACTIVE_STATES = frozenset({SessionState.CONNECTING, SessionState.LIVE, SessionState.STOPPING})

LIMIT_NOTICE = "Today's 10 minute speaking class is complete. Come back tomorrow!"


@dataclass
class Session:
    """One tutoring session.

    Attributes:
        id: Unique session identifier
        student_id: Normalized student key
        student_name: Display name used in prompts
        level: Level profile in effect
        lesson: Lesson picked for this session
        state: Current state
        start_time: Monotonic time the session went Live
        deadline: Monotonic time the duration budget expires
        end_reason: Why the session closed (stopped, limit_reached, disconnected, error)
        error: Diagnostic text of the failure that closed the session
        state_history: Every state entered, in order
    """

    student_id: str
    student_name: str
    level: Level
    lesson: Lesson
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.IDLE
    created_at: datetime = field(default_factory=datetime.now)
    start_time: float | None = None
    deadline: float | None = None
    end_reason: str | None = None
    error: str | None = None
    state_history: list[SessionState] = field(default_factory=lambda: [SessionState.IDLE])

    @property
    def topic(self) -> str:
        return self.lesson.topic


class SessionController:
    """Drives one tutoring session at a time for a client.

    Example:
        >>> controller = SessionController(config, broker, negotiator, mic, store)
        >>> session = await controller.start("Ali", level="beginner")
        >>> ...  # conversation runs; events arrive on the control channel
        >>> await controller.stop()
        >>> controller.transcript.text

    Thread-safety: Not thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        config: TutorConfig,
        token_broker: Any,
        negotiator: Any,
        microphone: AudioInput,
        progress_store: ProgressStore,
        audio_output: AudioOutput | None = None,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = date.today,
        on_status: Callable[[str], None] | None = None,
        on_notice: Callable[[str], None] | None = None,
        start_ticker: bool = True,
    ) -> None:
        """Initialize controller.

        Args:
            config: Tutor configuration
            token_broker: Provides ``request_ephemeral_credential()``
            negotiator: Provides ``negotiate(credential, track, audio_output)``
            microphone: Exclusively-owned local audio input
            progress_store: Per-student progress storage
            audio_output: Sink for the tutor's voice (optional)
            clock: Monotonic clock in seconds
            today: Calendar date provider for the daily lock
            on_status: Called with every human-readable status change
            on_notice: Called with user-facing notices (limit reached, engine errors)
            start_ticker: Run the periodic tick task while Live
        """
        self.config = config
        self.token_broker = token_broker
        self.negotiator = negotiator
        self.microphone = microphone
        self.progress_store = progress_store
        self.audio_output = audio_output
        self.clock = clock
        self.today = today
        self.on_status = on_status
        self.on_notice = on_notice
        self.start_ticker = start_ticker

        self.session: Session | None = None
        self.connection: RealtimeConnection | None = None
        self.transcript = TranscriptLog()
        self.followups = FollowUpScheduler(config.followup)
        self.status = "Idle"
        self.time_left: int | None = None

        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._event_task: asyncio.Task[None] | None = None
        self._ticker_task: asyncio.Task[None] | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._closed = asyncio.Event()
        self._starting = False
        self._stop_requested = False
        self._limit_reached = False

        self._handlers: dict[type, Callable[[Any], Awaitable[None]]] = {
            SpeechStarted: self._on_speech_started,
            SpeechStopped: self._on_speech_stopped,
            ResponseCompleted: self._on_response_completed,
            TranscriptFragment: self._on_transcript_fragment,
            ServerError: self._on_server_error,
            Tick: self._on_tick,
            ConnectionLost: self._on_connection_lost,
        }

    @property
    def is_active(self) -> bool:
        """True while a session is connecting, live or stopping."""
        return self._starting or (
            self.session is not None and self.session.state in ACTIVE_STATES
        )

    @property
    def state(self) -> SessionState:
        return self.session.state if self.session is not None else SessionState.IDLE

    # ------------------------------------------------------------------
    # Public API

    async def start(self, student_name: str, level: str | Level | None = None) -> Session:
        """Start a new session for a student.

        Args:
            student_name: Display name of the student
            level: Level for this session; the stored preference when None

        Returns:
            The session, Live on success or Closed if ``stop()`` interrupted
            the connection attempt

        Raises:
            AlreadyActiveError: If a session is connecting or live
            DailyLimitError: If the student already had today's session
            MicrophonePermissionError: If the microphone cannot be acquired
            UpstreamError: If credential issuance or negotiation fails
        """
        if self.is_active:
            raise AlreadyActiveError("A session is already active on this client")

        self._stop_requested = False
        self._starting = True
        try:
            key = student_key(student_name)
            progress = StudentProgress(self.progress_store, key)

            if await progress.is_locked(self.today()):
                logger.info("Daily limit reached", extra={"student": key})
                raise DailyLimitError(
                    "You already completed today's speaking class. Come back tomorrow!",
                    details={"student": key, "date": self.today().isoformat()},
                )

            if level is None:
                resolved = Level.parse(await progress.get_level())
            else:
                resolved = Level.parse(level)
                await progress.set_level(resolved.value)

            lesson = lesson_for_cursor(await progress.get_lesson_cursor())

            session = Session(
                student_id=key,
                student_name=(student_name or "").strip() or "Student",
                level=resolved,
                lesson=lesson,
            )
            self._reset_for(session)
            self._transition(SessionState.CONNECTING)
        finally:
            self._starting = False

        if self._stop_requested:
            logger.info("Stop requested before connecting", extra={"session_id": session.id})
            await self._close_connecting(session, "stopped", "Stopped")
            return session

        logger.info(
            "Session starting",
            extra={
                "session_id": session.id,
                "student": key,
                "level": resolved.value,
                "lesson": lesson.number,
            },
        )

        self._connect_task = asyncio.create_task(self._connect())
        try:
            await self._connect_task
        except asyncio.CancelledError:
            if not self._stop_requested:
                await self._close_connecting(session, "cancelled", "Idle")
                raise
            await self._close_connecting(session, "stopped", "Stopped")
            return session
        except Exception as e:
            session.error = str(e)
            logger.error(
                "Session failed to connect",
                extra={"session_id": session.id, "error": str(e)},
            )
            await self._close_connecting(session, "error", "Error")
            raise
        finally:
            self._connect_task = None

        if self._stop_requested:
            await self._close_connecting(session, "stopped", "Stopped")
            return session

        await self._enter_live(session, progress)
        return session

    async def stop(self) -> None:
        """Stop the current session.

        Cancels a pending connection attempt, or moves a Live session through
        Stopping to Closed. Safe to call at any time and repeatedly.
        """
        if self._starting:
            logger.info("Stop requested while start checks are pending")
            self._stop_requested = True
            return

        session = self.session
        if session is None or session.state is SessionState.CLOSED:
            return

        if session.state is SessionState.CONNECTING:
            logger.info("Stop requested while connecting", extra={"session_id": session.id})
            self._stop_requested = True
            if self._connect_task is not None and not self._connect_task.done():
                self._connect_task.cancel()
            await self._closed.wait()
            return

        await self._shutdown("stopped", "Stopped")

    async def wait_closed(self) -> None:
        """Wait until the current session reaches Closed."""
        if self.session is None:
            return
        await self._closed.wait()

    def post(self, event: SessionEvent) -> None:
        """Enqueue an event for the session's event worker."""
        self._events.put_nowait(event)

    async def handle_event(self, event: SessionEvent) -> None:
        """Apply one event to the state machine.

        Events are only acted on while the session is Live.
        """
        session = self.session
        if session is None or session.state is not SessionState.LIVE:
            logger.debug("Event ignored outside Live", extra={"event": type(event).__name__})
            return

        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning("No handler for event", extra={"event": type(event).__name__})
            return

        await handler(event)

    # ------------------------------------------------------------------
    # Connecting

    def _reset_for(self, session: Session) -> None:
        self.session = session
        self.connection = None
        self.transcript = TranscriptLog()
        self.followups.reset()
        self.time_left = None
        self._events = asyncio.Queue()
        self._closed = asyncio.Event()
        self._limit_reached = False

    async def _connect(self) -> None:
        cfg = self.config.session

        self._set_status("Connecting... (mic)")
        track = await _bounded(
            self.microphone.acquire(),
            cfg.microphone_timeout_s,
            lambda: MicrophonePermissionError("Timed out waiting for microphone permission"),
        )

        self._set_status("Connecting... (token)")
        credential = await _bounded(
            self.token_broker.request_ephemeral_credential(),
            cfg.credential_timeout_s,
            lambda: UpstreamError("Timed out requesting ephemeral credential"),
        )

        self._set_status("Connecting... (webrtc)")
        connection = await _bounded(
            self.negotiator.negotiate(credential, track, self.audio_output),
            cfg.negotiation_timeout_s,
            lambda: NegotiationError("Timed out negotiating with the speech engine"),
        )
        self.connection = connection
        connection.on_message = self._on_channel_message

        await _bounded(
            connection.wait_open(cfg.channel_open_timeout_s),
            cfg.channel_open_timeout_s + 1.0,
            lambda: NegotiationError("Control channel did not open"),
        )
        connection.on_lost = self._on_link_lost

    async def _close_connecting(self, session: Session, reason: str, status: str) -> None:
        await self._cleanup()
        session.end_reason = reason
        if session.state is not SessionState.CLOSED:
            self._transition(SessionState.CLOSED)
        self.transcript.freeze()
        self._set_status(status)
        self._closed.set()

    # ------------------------------------------------------------------
    # Live

    async def _enter_live(self, session: Session, progress: StudentProgress) -> None:
        assert self.connection is not None
        budget = self.config.session.duration_budget_s
        now = self.clock()

        session.start_time = now
        session.deadline = now + budget
        self._transition(SessionState.LIVE)
        self.time_left = budget

        profile = LEVEL_PROFILES[session.level]
        self.transcript.append(
            Role.SYSTEM,
            f"Student={session.student_name}, Level={profile.label}, "
            f"Lesson={session.lesson.number} ({session.lesson.topic})",
        )

        openai_cfg = self.config.openai
        self.connection.send(
            protocol.session_update(
                build_instructions(session.student_name, profile, session.lesson),
                transcription_model=openai_cfg.transcription_model,
                language=openai_cfg.transcription_language,
                voice=openai_cfg.voice,
            )
        )
        self.connection.send(
            protocol.response_create(build_greeting(session.student_name, profile, session.lesson))
        )

        self._event_task = asyncio.create_task(self._event_worker())
        if self.start_ticker:
            self._ticker_task = asyncio.create_task(self._ticker())

        self._set_status("Live")
        logger.info(
            "Session live",
            extra={"session_id": session.id, "budget_s": budget, "topic": session.topic},
        )

        try:
            await progress.set_daily_lock(self.today())
            await progress.set_lesson_cursor(next_cursor(session.lesson))
        except Exception as e:
            logger.error(
                "Failed to persist session start",
                extra={"session_id": session.id, "error": str(e)},
            )
            session.error = str(e)
            await self._shutdown("error", "Error")
            raise

    async def _event_worker(self) -> None:
        while self.session is not None and self.session.state is SessionState.LIVE:
            event = await self._events.get()
            try:
                await self.handle_event(event)
            except TutorError as e:
                logger.warning("Event handling failed", extra={"error": str(e)})
            except Exception:
                logger.exception("Unexpected error handling session event")

    async def _ticker(self) -> None:
        interval = self.config.session.tick_interval_s
        while True:
            await asyncio.sleep(interval)
            self.post(Tick())

    def _on_channel_message(self, raw: str) -> None:
        try:
            event = protocol.parse_server_event(raw)
        except protocol.ProtocolError as e:
            logger.debug("Dropping malformed control frame", extra={"error": str(e)})
            return
        if event is not None:
            self.post(event)

    def _on_link_lost(self, reason: str) -> None:
        self.post(ConnectionLost(reason=reason))

    async def _on_speech_started(self, event: SpeechStarted) -> None:
        self.followups.on_speech_started()

    async def _on_speech_stopped(self, event: SpeechStopped) -> None:
        self.followups.on_speech_stopped()

    async def _on_response_completed(self, event: ResponseCompleted) -> None:
        self.followups.on_response_completed(self.clock())

    async def _on_transcript_fragment(self, event: TranscriptFragment) -> None:
        self.transcript.append(event.role, event.text)

    async def _on_server_error(self, event: ServerError) -> None:
        logger.warning(
            "Speech engine reported an error",
            extra={"code": event.code, "error": event.message},
        )
        self._notify(f"Speech engine error: {event.message}")

    async def _on_tick(self, event: Tick) -> None:
        session = self.session
        assert session is not None and session.deadline is not None
        now = self.clock()

        remaining = session.deadline - now
        self.time_left = max(0, math.ceil(remaining))
        if remaining <= 0:
            await self._on_deadline()
            return

        if self.followups.poll(now):
            self._send_nudge()

    async def _on_connection_lost(self, event: ConnectionLost) -> None:
        logger.warning(
            "Session disconnected",
            extra={"session_id": self.session.id if self.session else None, "reason": event.reason},
        )
        await self._shutdown("disconnected", "Disconnected")

    async def _on_deadline(self) -> None:
        if self._limit_reached:
            return
        self._limit_reached = True
        session = self.session
        assert session is not None

        minutes = self.config.session.duration_budget_s // 60
        self.transcript.append(Role.SYSTEM, f"Session limit reached ({minutes} minutes).")
        self._notify(LIMIT_NOTICE)

        try:
            await StudentProgress(self.progress_store, session.student_id).set_daily_lock(
                self.today()
            )
        except Exception as e:
            logger.error("Failed to persist daily lock", extra={"error": str(e)})

        await self._shutdown("limit_reached", "Stopped")

    def _send_nudge(self) -> None:
        session = self.session
        if session is None or self.connection is None:
            return

        attempt = self.followups.counter.count
        try:
            self.connection.send(
                protocol.conversation_item_create(build_nudge(session.student_name, attempt))
            )
            self.connection.send(protocol.response_create())
        except ConnectionError as e:
            logger.warning("Nudge not sent", extra={"error": str(e)})
            return

        logger.info(
            "Follow-up nudge sent",
            extra={"session_id": session.id, "attempt": attempt, "budget": self.followups.config.budget},
        )

    # ------------------------------------------------------------------
    # Stopping / cleanup

    async def _shutdown(self, reason: str, status: str) -> None:
        session = self.session
        if session is None or session.state is SessionState.CLOSED:
            return
        if session.state is SessionState.STOPPING:
            await self._closed.wait()
            return

        self._transition(SessionState.STOPPING)
        self._set_status("Stopping...")
        self.transcript.freeze()

        await self._cleanup()

        session.end_reason = reason
        self._transition(SessionState.CLOSED)
        self._set_status(status)
        self._closed.set()
        logger.info(
            "Session closed",
            extra={"session_id": session.id, "reason": reason, "turns": len(self.transcript)},
        )
        log_event(
            "session_closed",
            {
                "session_id": session.id,
                "student": session.student_id,
                "reason": reason,
                "turns": len(self.transcript),
                "nudges": self.followups.counter.count,
            },
        )

    async def _cleanup(self) -> None:
        """Release every acquired resource; each step is independent."""
        for task in (self._ticker_task, self._event_task, self._connect_task):
            await _cancel(task)
        self._ticker_task = None
        self._event_task = None

        if self.connection is not None:
            try:
                await self.connection.close()
            except Exception as e:
                logger.warning("Error closing connection", extra={"error": str(e)})

        try:
            self.microphone.release()
        except Exception as e:
            logger.warning("Error releasing microphone", extra={"error": str(e)})

        if self.audio_output is not None:
            try:
                await self.audio_output.stop()
            except Exception as e:
                logger.warning("Error stopping audio output", extra={"error": str(e)})

        self.followups.due_at = None
        self.time_left = None

    # ------------------------------------------------------------------
    # Helpers

    def _transition(self, new_state: SessionState) -> None:
        """Transition the current session with validation.

        Raises:
            ValueError: If the transition is invalid
        """
        session = self.session
        assert session is not None
        if new_state not in VALID_TRANSITIONS.get(session.state, set()):
            raise ValueError(f"Invalid state transition: {session.state.value} → {new_state.value}")

        old_state = session.state
        session.state = new_state
        session.state_history.append(new_state)

        logger.info(
            "Session state transition",
            extra={
                "session_id": session.id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

    def _set_status(self, status: str) -> None:
        self.status = status
        if self.on_status is not None:
            try:
                self.on_status(status)
            except Exception:
                logger.exception("Status callback failed")

    def _notify(self, message: str) -> None:
        if self.on_notice is not None:
            try:
                self.on_notice(message)
            except Exception:
                logger.exception("Notice callback failed")


async def _bounded(
    awaitable: Awaitable[T],
    timeout: float,
    on_timeout: Callable[[], TutorError],
) -> T:
    """Race a pending operation against a timeout."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as e:
        raise on_timeout() from e


async def _cancel(task: "asyncio.Task[Any] | None") -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug("Task ended with error during cleanup", extra={"error": str(e)})
