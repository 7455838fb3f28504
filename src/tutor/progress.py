"""Per-student progress persistence.

The session controller and scoring requestor never touch ambient storage
directly: they receive a ``ProgressStore`` with scoped get/set semantics and
use the typed ``StudentProgress`` view on top of it.

Stored fields per student:
- level: level preference
- lesson_cursor: index of the next lesson in the course
- history: JSON list of recent score reports (newest first)
- streak / streak_last_day: login streak counters
- daily_lock: ISO date of the last day a session went Live
- best_average: best average score (high-water mark)
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from redis import asyncio as aioredis
from redis.asyncio import ConnectionPool

logger = logging.getLogger(__name__)

FIELD_LEVEL = "level"
FIELD_LESSON_CURSOR = "lesson_cursor"
FIELD_HISTORY = "history"
FIELD_STREAK = "streak"
FIELD_STREAK_LAST_DAY = "streak_last_day"
FIELD_DAILY_LOCK = "daily_lock"
FIELD_BEST_AVERAGE = "best_average"


def student_key(name: str | None) -> str:
    """Normalize a display name into a storage key.

    Lower-cased, whitespace runs become ``_``, anything outside
    ``[a-z0-9_]`` is dropped; falls back to ``student``.
    """
    safe = re.sub(r"\s+", "_", (name or "Student").strip().lower())
    safe = re.sub(r"[^a-z0-9_]", "", safe)
    return safe or "student"


@dataclass(frozen=True)
class StreakRecord:
    """Consecutive-day success streak."""

    count: int = 0
    last_day: date | None = None


def update_streak(record: StreakRecord, today: date) -> StreakRecord:
    """Apply one successful scoring day to a streak.

    - first success ever → 1
    - already counted today → unchanged
    - last success yesterday → +1
    - otherwise → reset to 1
    """
    if record.last_day is None:
        return StreakRecord(count=1, last_day=today)
    if record.last_day == today:
        return record
    if record.last_day == today - timedelta(days=1):
        return StreakRecord(count=max(1, record.count + 1), last_day=today)
    return StreakRecord(count=1, last_day=today)


class ProgressStore(ABC):
    """Scoped key/value storage for per-student progress."""

    @abstractmethod
    async def get(self, student: str, field: str) -> str | None:
        """Read one field for a student (None if unset)."""
        pass

    @abstractmethod
    async def set(self, student: str, field: str, value: str) -> None:
        """Write one field for a student."""
        pass

    @abstractmethod
    async def delete(self, student: str, field: str) -> None:
        """Remove one field for a student."""
        pass


class MemoryProgressStore(ProgressStore):
    """In-process store; state lives as long as the object."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, str]] = {}

    async def get(self, student: str, field: str) -> str | None:
        return self._data.get(student, {}).get(field)

    async def set(self, student: str, field: str, value: str) -> None:
        self._data.setdefault(student, {})[field] = value

    async def delete(self, student: str, field: str) -> None:
        self._data.get(student, {}).pop(field, None)


class RedisBackend:
    """Redis connection pool shared by the Redis-backed stores."""

    def __init__(
        self,
        redis_url: str,
        db: int = 0,
        key_prefix: str = "tutor:",
        connection_pool_size: int = 10,
    ) -> None:
        """Initialize store.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379")
            db: Redis database number (0-15)
            key_prefix: Prefix for all keys written by the store
            connection_pool_size: Redis connection pool size
        """
        self.redis_url = redis_url
        self.db = db
        self.key_prefix = key_prefix
        self.connection_pool_size = connection_pool_size

        self._pool: Any = None
        self._redis: Any = None
        self._connected = False

    async def connect(self) -> None:
        """Establish Redis connection pool.

        This method is idempotent - safe to call multiple times.

        Raises:
            ConnectionError: If Redis connection fails
        """
        if self._connected:
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.redis_url,
                db=self.db,
                max_connections=self.connection_pool_size,
                decode_responses=True,
            )
            self._redis = aioredis.Redis(connection_pool=self._pool)
            await self._redis.ping()
            self._connected = True
            logger.info(f"Connected to Redis at {self.redis_url} (db={self.db})")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise ConnectionError(f"Redis connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Close Redis connection pool gracefully. Idempotent."""
        if not self._connected:
            return

        try:
            if self._redis:
                await self._redis.close()
            if self._pool:
                await self._pool.disconnect()
            self._connected = False
            logger.info("Disconnected from Redis")
        except Exception as e:
            logger.warning(f"Error during Redis disconnect: {e}")

    async def health_check(self) -> bool:
        """Return True if Redis is reachable and responsive."""
        if not self._connected or not self._redis:
            return False

        try:
            await self._redis.ping()
            return True
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    def _require_connection(self) -> None:
        if not self._connected or not self._redis:
            raise ConnectionError("Redis not connected. Call connect() first.")


class RedisProgressStore(RedisBackend, ProgressStore):
    """Redis-backed store: one hash per student.

    Key layout: ``{key_prefix}progress:{student}`` → hash of fields.
    """

    def _key(self, student: str) -> str:
        return f"{self.key_prefix}progress:{student}"

    async def get(self, student: str, field: str) -> str | None:
        self._require_connection()
        value = await self._redis.hget(self._key(student), field)
        return value if value is None or isinstance(value, str) else value.decode()

    async def set(self, student: str, field: str, value: str) -> None:
        self._require_connection()
        await self._redis.hset(self._key(student), field, value)

    async def delete(self, student: str, field: str) -> None:
        self._require_connection()
        await self._redis.hdel(self._key(student), field)


class StudentProgress:
    """Typed view of one student's progress fields."""

    def __init__(self, store: ProgressStore, student: str) -> None:
        """Initialize view.

        Args:
            store: Backing progress store
            student: Normalized student key (see ``student_key``)
        """
        self.store = store
        self.student = student

    async def get_level(self) -> str | None:
        return await self.store.get(self.student, FIELD_LEVEL)

    async def set_level(self, level: str) -> None:
        await self.store.set(self.student, FIELD_LEVEL, level)

    async def get_lesson_cursor(self) -> int:
        raw = await self.store.get(self.student, FIELD_LESSON_CURSOR)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    async def set_lesson_cursor(self, cursor: int) -> None:
        await self.store.set(self.student, FIELD_LESSON_CURSOR, str(cursor))

    async def reset_lessons(self) -> None:
        await self.set_lesson_cursor(0)

    async def get_history(self) -> list[dict[str, Any]]:
        raw = await self.store.get(self.student, FIELD_HISTORY)
        if not raw:
            return []
        try:
            history = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable score history", extra={"student": self.student})
            return []
        return history if isinstance(history, list) else []

    async def set_history(self, history: list[dict[str, Any]]) -> None:
        await self.store.set(self.student, FIELD_HISTORY, json.dumps(history))

    async def clear_history(self) -> None:
        await self.store.delete(self.student, FIELD_HISTORY)

    async def get_streak(self) -> StreakRecord:
        raw_count = await self.store.get(self.student, FIELD_STREAK)
        raw_day = await self.store.get(self.student, FIELD_STREAK_LAST_DAY)
        try:
            count = int(raw_count) if raw_count is not None else 0
        except ValueError:
            count = 0
        return StreakRecord(count=count, last_day=_parse_day(raw_day))

    async def set_streak(self, record: StreakRecord) -> None:
        await self.store.set(self.student, FIELD_STREAK, str(record.count))
        if record.last_day is not None:
            await self.store.set(self.student, FIELD_STREAK_LAST_DAY, record.last_day.isoformat())

    async def get_daily_lock(self) -> date | None:
        return _parse_day(await self.store.get(self.student, FIELD_DAILY_LOCK))

    async def set_daily_lock(self, day: date) -> None:
        await self.store.set(self.student, FIELD_DAILY_LOCK, day.isoformat())

    async def is_locked(self, today: date) -> bool:
        return await self.get_daily_lock() == today

    async def get_best_average(self) -> float | None:
        raw = await self.store.get(self.student, FIELD_BEST_AVERAGE)
        try:
            return float(raw) if raw is not None else None
        except ValueError:
            return None

    async def set_best_average(self, value: float) -> None:
        await self.store.set(self.student, FIELD_BEST_AVERAGE, repr(value))


def _parse_day(raw: str | None) -> date | None:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return None
