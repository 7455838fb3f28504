"""Tutor HTTP API server.

Exposes the server-side halves of the tutor over aiohttp:
- GET  /api/realtime   liveness text for the credential route
- POST /api/realtime   ephemeral credential ``{"value": ...}``
- POST /api/score      evaluate a transcript, returns the score report
- POST /api/students   register a student ``{name, pin}``
- GET  /api/students   list registered students (without PINs)
- POST /api/login      check ``{name, pin}``
- GET  /health, /liveness

Errors are rendered as ``{"error": {...}}`` JSON bodies.
"""

import argparse
import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from aiohttp import web
from aiohttp.web import AppRunner, TCPSite

from src.tutor.config import StorageConfig, TutorConfig
from src.tutor.errors import (
    ConfigError,
    TranscriptTooShortError,
    TutorError,
    UpstreamError,
    ValidationError,
)
from src.tutor.evaluator import Evaluator, OpenAIEvaluator
from src.tutor.progress import MemoryProgressStore, ProgressStore, RedisProgressStore
from src.tutor.roster import MemoryRosterStore, RedisRosterStore, RosterStore, StudentExistsError
from src.tutor.scoring import parse_report
from src.tutor.token_broker import TokenBroker
from src.tutor.utils.logging import setup_logging

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def error_status(error: TutorError) -> int:
    """Map an error to its HTTP status."""
    if isinstance(error, UpstreamError):
        if error.status is not None and 400 <= error.status < 600:
            return error.status
        return 502
    if isinstance(error, StudentExistsError):
        return 409
    if isinstance(error, (ValidationError, TranscriptTooShortError)):
        return 400
    return 500


def error_response(error: TutorError) -> web.Response:
    return web.json_response({"error": error.to_dict()}, status=error_status(error))


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Render tutor errors and unexpected crashes as JSON bodies."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except TutorError as e:
        logger.warning(
            "Request failed",
            extra={"path": request.path, "error": e.message, "type": type(e).__name__},
        )
        return error_response(e)
    except Exception as e:
        logger.exception("Unhandled error serving request", extra={"path": request.path})
        return web.json_response(
            {"error": {"type": "ServerError", "message": str(e) or "Server error"}},
            status=500,
        )


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse a JSON object body; an empty body reads as ``{}``."""
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except ValueError as e:
        raise ValidationError("Request body is not valid JSON") from e
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


class TutorAPIHandler:
    """Request handlers for the tutor API."""

    def __init__(
        self,
        config: TutorConfig,
        token_broker: Any = None,
        evaluator: Evaluator | None = None,
        roster: RosterStore | None = None,
        progress_store: ProgressStore | None = None,
    ) -> None:
        """Initialize handler.

        Args:
            config: Tutor configuration
            token_broker: Issues ephemeral credentials (built from config if None)
            evaluator: Scores transcripts (built lazily from config if None)
            roster: Student roster (in-memory if None)
            progress_store: Progress store, only used for health reporting
        """
        self.config = config
        self.token_broker = token_broker or TokenBroker(
            config.openai, timeout_s=config.session.credential_timeout_s
        )
        self._evaluator = evaluator
        self.roster = roster or MemoryRosterStore()
        self.progress_store = progress_store
        self.start_time = time.time()

    @property
    def evaluator(self) -> Evaluator:
        """Evaluator, created on first use so a missing secret fails per request."""
        if self._evaluator is None:
            self._evaluator = OpenAIEvaluator(self.config.openai)
        return self._evaluator

    async def realtime_alive(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"ok": True, "message": "api/realtime is alive. Use POST to get ephemeral key."},
            headers={"Cache-Control": "no-store"},
        )

    async def create_credential(self, request: web.Request) -> web.Response:
        value = await self.token_broker.request_ephemeral_credential()
        return web.json_response({"value": value}, headers={"Cache-Control": "no-store"})

    async def score(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        transcript = body.get("transcript")
        student = str(body.get("student") or body.get("studentName") or "")
        level = str(body.get("level") or "")
        lesson = str(body.get("lesson") or "")

        minimum = self.config.scoring.min_transcript_chars
        if not isinstance(transcript, str) or len(transcript.strip()) < minimum:
            raise TranscriptTooShortError(
                "Transcript is missing or too short. Let the student speak for 30-60 seconds first.",
                details={"minimum": minimum},
            )

        try:
            raw = await asyncio.wait_for(
                self.evaluator.evaluate(student, level, lesson, transcript),
                timeout=self.config.scoring.timeout_s,
            )
        except TimeoutError as e:
            raise UpstreamError("Scoring timed out", status=504) from e

        report = parse_report(raw)
        return web.json_response(report.model_dump())

    async def add_student(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        student = await self.roster.add_student(
            _as_text(body.get("name")), _as_text(body.get("pin"))
        )
        return web.json_response({"success": True, "student": student.public_dict()})

    async def list_students(self, request: web.Request) -> web.Response:
        students = await self.roster.list_students()
        return web.json_response({"data": [s.public_dict() for s in students]})

    async def login(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        name = _as_text(body.get("name")).strip()
        pin = _as_text(body.get("pin")).strip()

        if not name:
            raise ValidationError("Please enter username.")
        if not pin.isdigit() or len(pin) != 4:
            raise ValidationError("PIN must be 4 digits.")

        student = await self.roster.authenticate(name, pin)
        if student is None:
            return web.json_response(
                {"error": {"type": "Unauthorized", "message": "Wrong username or PIN."}},
                status=401,
            )
        return web.json_response({"user": student.key, "student": student.public_dict()})

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK when storage is reachable, 503 otherwise
        """
        storage_ok = True
        storage_error = None
        health = getattr(self.progress_store, "health_check", None)
        if health is not None:
            try:
                storage_ok = await health()
            except Exception as e:
                storage_ok = False
                storage_error = str(e)
                logger.warning("Storage health check failed", extra={"error": str(e)})

        return web.json_response(
            {
                "status": "healthy" if storage_ok else "unhealthy",
                "uptime_seconds": time.time() - self.start_time,
                "checks": {
                    "storage": {"ok": storage_ok, "error": storage_error},
                    "credentials": {"ok": bool(self.config.openai.api_key)},
                },
            },
            status=200 if storage_ok else 503,
        )

    async def liveness_check(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"status": "alive", "uptime_seconds": time.time() - self.start_time}
        )


def setup_tutor_routes(app: web.Application, handler: TutorAPIHandler) -> None:
    """Register API routes on an application."""
    app.router.add_get("/api/realtime", handler.realtime_alive)
    app.router.add_post("/api/realtime", handler.create_credential)
    app.router.add_post("/api/score", handler.score)
    app.router.add_post("/api/students", handler.add_student)
    app.router.add_get("/api/students", handler.list_students)
    app.router.add_post("/api/login", handler.login)
    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)


def create_app(
    config: TutorConfig,
    token_broker: Any = None,
    evaluator: Evaluator | None = None,
    roster: RosterStore | None = None,
    progress_store: ProgressStore | None = None,
) -> web.Application:
    """Build the aiohttp application."""
    app = web.Application(middlewares=[error_middleware])
    handler = TutorAPIHandler(
        config,
        token_broker=token_broker,
        evaluator=evaluator,
        roster=roster,
        progress_store=progress_store,
    )
    setup_tutor_routes(app, handler)
    return app


async def build_stores(storage: StorageConfig) -> tuple[ProgressStore, RosterStore]:
    """Create (and connect) the configured progress and roster stores.

    Raises:
        ConnectionError: If the Redis backend is unreachable
    """
    if storage.backend == "memory":
        return MemoryProgressStore(), MemoryRosterStore()

    options = {
        "redis_url": storage.redis_url,
        "db": storage.db,
        "key_prefix": storage.key_prefix,
        "connection_pool_size": storage.connection_pool_size,
    }
    progress = RedisProgressStore(**options)
    roster = RedisRosterStore(**options)
    await progress.connect()
    await roster.connect()
    return progress, roster


async def close_stores(*stores: Any) -> None:
    for store in stores:
        disconnect = getattr(store, "disconnect", None)
        if disconnect is not None:
            await disconnect()


async def start_server(config_path: Path) -> None:
    """Start the API server and run until cancelled.

    Args:
        config_path: Path to tutor config YAML file
    """
    config = TutorConfig.from_yaml_with_defaults(config_path)
    setup_logging(config.log_level)

    if not config.openai.api_key:
        logger.warning("OPENAI_API_KEY not set; credential and scoring routes will fail")

    progress_store, roster = await build_stores(config.storage)
    app = create_app(config, roster=roster, progress_store=progress_store)

    runner = AppRunner(app)
    await runner.setup()
    site = TCPSite(runner, config.server.host, config.server.port)
    await site.start()
    logger.info(
        "Tutor API server started",
        extra={"host": config.server.host, "port": config.server.port},
    )

    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        await runner.cleanup()
        await close_stores(progress_store, roster)
        logger.info("Tutor API server stopped")


def main() -> None:
    """Entry point for the tutor API server."""
    parser = argparse.ArgumentParser(description="Voice tutor API server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "tutor.yaml",
        help="Path to tutor config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Tutor API server interrupted")
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        raise SystemExit(1) from e


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


if __name__ == "__main__":
    main()
