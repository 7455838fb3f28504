"""Unit tests for the tutor HTTP API."""

import asyncio
import copy
from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import AsyncMock

import pytest
from aiohttp.test_utils import TestClient, TestServer

from src.tutor.config import OpenAIConfig, ScoringConfig, TutorConfig
from src.tutor.errors import TutorError, UpstreamError
from src.tutor.evaluator import Evaluator
from src.tutor.roster import MemoryRosterStore
from src.tutor.server import create_app, error_status
from tests.helpers.fakes import FakeTokenBroker

TRANSCRIPT = "TUTOR: Hello Ali! What is your favorite food?\nSTUDENT: I like rice and fish."

REPORT: dict[str, Any] = {
    "student": "Ali",
    "level": "Beginner",
    "lesson": "Lesson 1: Greetings",
    "scores": {"pronunciation": 4, "grammar": 3, "fluency": 3, "confidence": 4},
    "strengths": ["Clear voice", "Good vocabulary"],
    "improvements": ["Use past tense", "Speak in longer sentences"],
    "corrected_sentences": [],
    "homework": "Practice greetings.",
}


class StubEvaluator(Evaluator):
    def __init__(self, result: Any = None, error: Exception | None = None, delay: float = 0.0):
        self.result = copy.deepcopy(REPORT) if result is None else result
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, str, str, str]] = []

    async def evaluate(
        self, student: str, level: str, lesson: str, transcript: str
    ) -> dict[str, Any]:
        self.calls.append((student, level, lesson, transcript))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.result)


@pytest.fixture
def api_config() -> TutorConfig:
    return TutorConfig(
        openai=OpenAIConfig(api_key="sk-test"),
        scoring=ScoringConfig(timeout_s=0.5),
    )


@pytest.fixture
def evaluator() -> StubEvaluator:
    return StubEvaluator()


@pytest.fixture
def roster() -> MemoryRosterStore:
    return MemoryRosterStore()


@pytest.fixture
async def client(
    api_config: TutorConfig,
    broker: FakeTokenBroker,
    evaluator: StubEvaluator,
    roster: MemoryRosterStore,
) -> AsyncGenerator[TestClient, None]:
    app = create_app(api_config, token_broker=broker, evaluator=evaluator, roster=roster)
    async with TestClient(TestServer(app)) as client:
        yield client


class TestErrorStatus:
    def test_upstream_keeps_http_status(self) -> None:
        assert error_status(UpstreamError("x", status=401)) == 401

    def test_upstream_without_status_is_bad_gateway(self) -> None:
        assert error_status(UpstreamError("x")) == 502

    def test_generic_error(self) -> None:
        assert error_status(TutorError("x")) == 500


class TestRealtimeRoute:
    """Test the credential route."""

    async def test_get_is_liveness_text(self, client: TestClient) -> None:
        resp = await client.get("/api/realtime")

        assert resp.status == 200
        data = await resp.json()
        assert data["ok"] is True
        assert "POST" in data["message"]

    async def test_post_returns_credential(self, client: TestClient, broker: FakeTokenBroker) -> None:
        resp = await client.post("/api/realtime")

        assert resp.status == 200
        assert resp.headers["Cache-Control"] == "no-store"
        assert await resp.json() == {"value": "ek_test_123"}
        assert broker.calls == 1

    async def test_upstream_failure_propagates_status(
        self,
        api_config: TutorConfig,
        evaluator: StubEvaluator,
    ) -> None:
        broker = FakeTokenBroker(
            error=UpstreamError("Failed to get ephemeral key", status=401, body={"error": "bad key"})
        )
        app = create_app(api_config, token_broker=broker, evaluator=evaluator)

        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/api/realtime")
            data = await resp.json()

        assert resp.status == 401
        assert data["error"]["type"] == "UpstreamError"
        assert data["error"]["message"] == "Failed to get ephemeral key"
        assert data["error"]["body"] == {"error": "bad key"}


class TestScoreRoute:
    """Test the scoring route."""

    async def test_success(self, client: TestClient, evaluator: StubEvaluator) -> None:
        resp = await client.post(
            "/api/score",
            json={
                "studentName": "Ali",
                "level": "Beginner",
                "lesson": "Lesson 1: Greetings",
                "transcript": TRANSCRIPT,
            },
        )

        assert resp.status == 200
        data = await resp.json()
        assert data["scores"]["pronunciation"] == 4
        assert data["homework"] == "Practice greetings."
        assert evaluator.calls == [("Ali", "Beginner", "Lesson 1: Greetings", TRANSCRIPT)]

    async def test_short_transcript(self, client: TestClient, evaluator: StubEvaluator) -> None:
        resp = await client.post("/api/score", json={"student": "Ali", "transcript": "hi"})

        assert resp.status == 400
        data = await resp.json()
        assert data["error"]["type"] == "TranscriptTooShortError"
        assert evaluator.calls == []

    async def test_missing_transcript(self, client: TestClient) -> None:
        resp = await client.post("/api/score", json={"student": "Ali"})
        assert resp.status == 400

    async def test_invalid_json_body(self, client: TestClient) -> None:
        resp = await client.post(
            "/api/score", data="{nope", headers={"Content-Type": "application/json"}
        )

        assert resp.status == 400
        assert (await resp.json())["error"]["type"] == "ValidationError"

    async def test_invalid_report_is_400(self, client: TestClient, evaluator: StubEvaluator) -> None:
        evaluator.result["strengths"] = []

        resp = await client.post("/api/score", json={"student": "Ali", "transcript": TRANSCRIPT})

        assert resp.status == 400
        assert (await resp.json())["error"]["message"] == "Score report failed validation"

    async def test_evaluator_upstream_error(
        self, client: TestClient, evaluator: StubEvaluator
    ) -> None:
        evaluator.error = UpstreamError("Scoring failed", status=500, body={"error": "boom"})

        resp = await client.post("/api/score", json={"student": "Ali", "transcript": TRANSCRIPT})

        assert resp.status == 500
        assert (await resp.json())["error"]["body"] == {"error": "boom"}

    async def test_timeout(self, client: TestClient, evaluator: StubEvaluator) -> None:
        evaluator.delay = 2.0

        resp = await client.post("/api/score", json={"student": "Ali", "transcript": TRANSCRIPT})

        assert resp.status == 504
        assert (await resp.json())["error"]["message"] == "Scoring timed out"

    async def test_unexpected_error_is_json_500(
        self, client: TestClient, evaluator: StubEvaluator
    ) -> None:
        evaluator.error = RuntimeError("kaboom")

        resp = await client.post("/api/score", json={"student": "Ali", "transcript": TRANSCRIPT})

        assert resp.status == 500
        assert (await resp.json())["error"] == {"type": "ServerError", "message": "kaboom"}

    async def test_missing_secret_fails_per_request(self) -> None:
        app = create_app(TutorConfig(), token_broker=FakeTokenBroker())

        async with TestClient(TestServer(app)) as client:
            resp = await client.post(
                "/api/score", json={"student": "Ali", "transcript": TRANSCRIPT}
            )
            data = await resp.json()

        assert resp.status == 500
        assert data["error"]["type"] == "ConfigError"


class TestStudentRoutes:
    """Test registration, listing and login."""

    async def test_register_and_list(self, client: TestClient) -> None:
        resp = await client.post("/api/students", json={"name": "Ali Khan", "pin": "1234"})

        assert resp.status == 200
        data = await resp.json()
        assert data["success"] is True
        assert data["student"] == {"key": "ali_khan", "name": "Ali Khan", "active": True}

        resp = await client.get("/api/students")
        listed = (await resp.json())["data"]
        assert listed == [{"key": "ali_khan", "name": "Ali Khan", "active": True}]

    async def test_register_duplicate(self, client: TestClient) -> None:
        await client.post("/api/students", json={"name": "Ali", "pin": "1234"})

        resp = await client.post("/api/students", json={"name": "ali", "pin": "5678"})

        assert resp.status == 409

    async def test_register_bad_pin(self, client: TestClient) -> None:
        resp = await client.post("/api/students", json={"name": "Ali", "pin": 12})

        assert resp.status == 400
        assert (await resp.json())["error"]["message"] == "PIN must be 4 digits"

    async def test_login(self, client: TestClient) -> None:
        await client.post("/api/students", json={"name": "Ali", "pin": "1234"})

        resp = await client.post("/api/login", json={"name": " Ali ", "pin": "1234"})

        assert resp.status == 200
        data = await resp.json()
        assert data["user"] == "ali"
        assert "pin" not in data["student"]

    async def test_login_wrong_pin(self, client: TestClient) -> None:
        await client.post("/api/students", json={"name": "Ali", "pin": "1234"})

        resp = await client.post("/api/login", json={"name": "Ali", "pin": "0000"})

        assert resp.status == 401
        assert (await resp.json())["error"]["type"] == "Unauthorized"

    @pytest.mark.parametrize(
        "body,message",
        [
            ({"pin": "1234"}, "Please enter username."),
            ({"name": "Ali", "pin": "12"}, "PIN must be 4 digits."),
        ],
    )
    async def test_login_validation(
        self, client: TestClient, body: dict[str, Any], message: str
    ) -> None:
        resp = await client.post("/api/login", json=body)

        assert resp.status == 400
        assert (await resp.json())["error"]["message"] == message


class TestHealth:
    """Test health endpoints."""

    async def test_liveness(self, client: TestClient) -> None:
        resp = await client.get("/liveness")

        assert resp.status == 200
        assert (await resp.json())["status"] == "alive"

    async def test_healthy_without_storage_check(self, client: TestClient) -> None:
        resp = await client.get("/health")

        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "healthy"
        assert data["checks"]["credentials"]["ok"] is True

    async def test_unhealthy_storage(self, api_config: TutorConfig) -> None:
        store = AsyncMock()
        store.health_check = AsyncMock(return_value=False)
        app = create_app(api_config, token_broker=FakeTokenBroker(), progress_store=store)

        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/health")
            data = await resp.json()

        assert resp.status == 503
        assert data["checks"]["storage"]["ok"] is False
