"""Transcript evaluators.

An evaluator takes a finished transcript plus its session context and returns
the raw score report as a dict; validation against the report model happens
in the scoring requestor.

- ``OpenAIEvaluator`` calls the Responses API directly with a strict JSON
  schema. Used server-side, where the long-lived secret lives.
- ``HttpEvaluator`` posts to this project's ``/api/score`` endpoint, so a
  client never needs the secret.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import aiohttp
import openai
from openai import AsyncOpenAI

from src.tutor.config import OpenAIConfig
from src.tutor.errors import ConfigError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

SCORE_FORMAT_NAME = "speaking_score"

SCORE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "student": {"type": "string"},
        "level": {"type": "string"},
        "lesson": {"type": "string"},
        "scores": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "pronunciation": {"type": "integer", "minimum": 1, "maximum": 5},
                "grammar": {"type": "integer", "minimum": 1, "maximum": 5},
                "fluency": {"type": "integer", "minimum": 1, "maximum": 5},
                "confidence": {"type": "integer", "minimum": 1, "maximum": 5},
            },
            "required": ["pronunciation", "grammar", "fluency", "confidence"],
        },
        "strengths": {
            "type": "array",
            "items": {"type": "string"},
            "minItems": 2,
            "maxItems": 4,
        },
        "improvements": {
            "type": "array",
            "items": {"type": "string"},
            "minItems": 2,
            "maxItems": 5,
        },
        "corrected_sentences": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "student_said": {"type": "string"},
                    "better": {"type": "string"},
                },
                "required": ["student_said", "better"],
            },
            "minItems": 0,
            "maxItems": 3,
        },
        "homework": {"type": "string"},
    },
    "required": [
        "student",
        "level",
        "lesson",
        "scores",
        "strengths",
        "improvements",
        "corrected_sentences",
        "homework",
    ],
}


def build_examiner_prompt(student: str, level: str, lesson: str, transcript: str) -> str:
    """Examiner prompt grounding the evaluation in the transcript only."""
    return (
        "You are an English speaking examiner for school students.\n\n"
        f"Student: {student or 'Student'}\n"
        f"Level: {level or 'Unknown'}\n"
        f"Lesson: {lesson or 'Unknown'}\n\n"
        "Evaluate based ONLY on this transcript:\n"
        "---\n"
        f"{transcript}\n"
        "---\n\n"
        "Return ONLY valid JSON in the required schema."
    )


def fill_defaults(report: dict[str, Any], student: str, level: str, lesson: str) -> dict[str, Any]:
    """Fill context fields the model left empty."""
    report["student"] = report.get("student") or student or "Student"
    report["level"] = report.get("level") or level or ""
    report["lesson"] = report.get("lesson") or lesson or ""
    if not isinstance(report.get("corrected_sentences"), list):
        report["corrected_sentences"] = []
    return report


class Evaluator(ABC):
    """Scores a finished transcript."""

    @abstractmethod
    async def evaluate(
        self, student: str, level: str, lesson: str, transcript: str
    ) -> dict[str, Any]:
        """Return the raw score report.

        Raises:
            UpstreamError: If the evaluation service fails
            ValidationError: If the service returns unreadable output
        """
        pass


class OpenAIEvaluator(Evaluator):
    """Evaluates transcripts with the Responses API and a strict JSON schema."""

    def __init__(self, config: OpenAIConfig, client: AsyncOpenAI | None = None) -> None:
        """Initialize evaluator.

        Args:
            config: Engine configuration (api key, base URL, scoring model)
            client: Pre-built client (tests inject a mock)

        Raises:
            ConfigError: If no client is given and the API key is missing
        """
        self.config = config
        if client is None:
            if not config.api_key:
                raise ConfigError("Missing OPENAI_API_KEY for scoring")
            client = AsyncOpenAI(api_key=config.api_key, base_url=config.base_url)
        self.client = client

    async def evaluate(
        self, student: str, level: str, lesson: str, transcript: str
    ) -> dict[str, Any]:
        prompt = build_examiner_prompt(student, level, lesson, transcript)

        try:
            response = await self.client.responses.create(
                model=self.config.scoring_model,
                input=prompt,
                text={
                    "format": {
                        "type": "json_schema",
                        "name": SCORE_FORMAT_NAME,
                        "strict": True,
                        "schema": SCORE_SCHEMA,
                    }
                },
            )
        except openai.APIStatusError as e:
            logger.warning(
                "Scoring request rejected",
                extra={"status": e.status_code, "model": self.config.scoring_model},
            )
            raise UpstreamError("Scoring failed", status=e.status_code, body=e.body) from e
        except openai.APIError as e:
            raise UpstreamError(f"Scoring request failed: {e}") from e

        out_text = getattr(response, "output_text", "") or ""
        try:
            parsed = json.loads(out_text)
        except ValueError as e:
            raise ValidationError(
                "Model did not return valid JSON text",
                details={"output_text": out_text[:500]},
            ) from e

        if not isinstance(parsed, dict):
            raise ValidationError("Model returned a non-object score report")

        return fill_defaults(parsed, student, level, lesson)


class HttpEvaluator(Evaluator):
    """Delegates evaluation to a scoring endpoint (``POST /api/score``)."""

    def __init__(
        self,
        endpoint_url: str,
        timeout_s: float = 20.0,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.endpoint_url = endpoint_url
        self.timeout_s = timeout_s
        self._http_session = http_session

    async def evaluate(
        self, student: str, level: str, lesson: str, transcript: str
    ) -> dict[str, Any]:
        payload = {
            "student": student,
            "level": level,
            "lesson": lesson,
            "transcript": transcript,
        }

        session = self._http_session or aiohttp.ClientSession()
        try:
            async with session.post(
                self.endpoint_url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as resp:
                status = resp.status
                text = await resp.text()
        except TimeoutError as e:
            raise UpstreamError("Scoring request timed out") from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Scoring request failed: {e}") from e
        finally:
            if self._http_session is None:
                await session.close()

        try:
            body: Any = json.loads(text)
        except ValueError:
            body = None

        if status >= 400:
            message = "Scoring failed"
            error = body.get("error") if isinstance(body, dict) else None
            if isinstance(error, dict) and error.get("message"):
                message = str(error["message"])
            elif error:
                message = str(error)
            raise UpstreamError(message, status=status, body=body if body is not None else text)

        if not isinstance(body, dict):
            raise ValidationError(
                "Scoring endpoint returned a non-object body",
                details={"body": text[:500]},
            )
        return body
