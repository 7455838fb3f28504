"""Unit tests for per-student progress storage.

Coverage:
- Student key normalization
- Streak rules
- Typed progress fields over the in-memory store
- Redis store with a mocked client
"""

from datetime import date
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.tutor.progress import (
    MemoryProgressStore,
    RedisProgressStore,
    StreakRecord,
    StudentProgress,
    student_key,
    update_streak,
)

TODAY = date(2026, 3, 10)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Ali", "ali"),
        ("  Fatima Khan ", "fatima_khan"),
        ("Rahul  K.", "rahul_k"),
        ("", "student"),
        (None, "student"),
        ("!!!", "student"),
    ],
)
def test_student_key(name: str | None, expected: str) -> None:
    assert student_key(name) == expected


class TestStreak:
    """Test consecutive-day streak rules."""

    def test_first_success(self) -> None:
        assert update_streak(StreakRecord(), TODAY) == StreakRecord(1, TODAY)

    def test_same_day_unchanged(self) -> None:
        record = StreakRecord(4, TODAY)
        assert update_streak(record, TODAY) == record

    def test_yesterday_increments(self) -> None:
        record = StreakRecord(4, date(2026, 3, 9))
        assert update_streak(record, TODAY) == StreakRecord(5, TODAY)

    def test_gap_resets(self) -> None:
        record = StreakRecord(4, date(2026, 3, 7))
        assert update_streak(record, TODAY) == StreakRecord(1, TODAY)

    def test_month_boundary(self) -> None:
        record = StreakRecord(2, date(2026, 2, 28))
        assert update_streak(record, date(2026, 3, 1)) == StreakRecord(3, date(2026, 3, 1))


@pytest.fixture
def progress() -> StudentProgress:
    return StudentProgress(MemoryProgressStore(), "ali")


class TestStudentProgress:
    """Test typed fields over the in-memory store."""

    async def test_defaults(self, progress: StudentProgress) -> None:
        assert await progress.get_level() is None
        assert await progress.get_lesson_cursor() == 0
        assert await progress.get_history() == []
        assert await progress.get_streak() == StreakRecord()
        assert await progress.get_daily_lock() is None
        assert await progress.get_best_average() is None

    async def test_daily_lock(self, progress: StudentProgress) -> None:
        await progress.set_daily_lock(TODAY)

        assert await progress.is_locked(TODAY) is True
        assert await progress.is_locked(date(2026, 3, 11)) is False

    async def test_lesson_cursor_round_trip(self, progress: StudentProgress) -> None:
        await progress.set_lesson_cursor(7)
        assert await progress.get_lesson_cursor() == 7

        await progress.reset_lessons()
        assert await progress.get_lesson_cursor() == 0

    async def test_corrupt_cursor_reads_as_zero(self, progress: StudentProgress) -> None:
        await progress.store.set("ali", "lesson_cursor", "seven")
        assert await progress.get_lesson_cursor() == 0

    async def test_history(self, progress: StudentProgress) -> None:
        await progress.set_history([{"id": "b"}, {"id": "a"}])
        assert [h["id"] for h in await progress.get_history()] == ["b", "a"]

        await progress.clear_history()
        assert await progress.get_history() == []

    async def test_unreadable_history_discarded(self, progress: StudentProgress) -> None:
        await progress.store.set("ali", "history", "{not json")
        assert await progress.get_history() == []

    async def test_streak_round_trip(self, progress: StudentProgress) -> None:
        await progress.set_streak(StreakRecord(3, TODAY))
        assert await progress.get_streak() == StreakRecord(3, TODAY)

    async def test_best_average(self, progress: StudentProgress) -> None:
        await progress.set_best_average(3.75)
        assert await progress.get_best_average() == 3.75

    async def test_students_are_isolated(self) -> None:
        store = MemoryProgressStore()
        await StudentProgress(store, "ali").set_level("advanced")

        assert await StudentProgress(store, "rahul").get_level() is None


@pytest.fixture
def mock_redis() -> MagicMock:
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.hget = AsyncMock(return_value="2026-03-10")
    client.hset = AsyncMock(return_value=1)
    client.hdel = AsyncMock(return_value=1)
    client.close = AsyncMock()
    return client


class TestRedisProgressStore:
    """Test the Redis-backed store with a mocked client."""

    async def test_requires_connection(self) -> None:
        store = RedisProgressStore("redis://localhost:6379")

        with pytest.raises(ConnectionError, match="not connected"):
            await store.get("ali", "level")

    async def test_connect_and_hash_layout(self, mock_redis: MagicMock) -> None:
        store = RedisProgressStore("redis://localhost:6379", key_prefix="test:")

        with (
            patch("src.tutor.progress.ConnectionPool.from_url") as from_url,
            patch("src.tutor.progress.aioredis.Redis", return_value=mock_redis),
        ):
            from_url.return_value = MagicMock(disconnect=AsyncMock())
            await store.connect()
            await store.connect()

            assert from_url.call_count == 1
            assert await store.health_check() is True

            assert await store.get("ali", "daily_lock") == "2026-03-10"
            mock_redis.hget.assert_awaited_with("test:progress:ali", "daily_lock")

            await store.set("ali", "level", "medium")
            mock_redis.hset.assert_awaited_with("test:progress:ali", "level", "medium")

            await store.delete("ali", "history")
            mock_redis.hdel.assert_awaited_with("test:progress:ali", "history")

            await store.disconnect()
            assert await store.health_check() is False

    async def test_connect_failure(self, mock_redis: MagicMock) -> None:
        mock_redis.ping = AsyncMock(side_effect=OSError("refused"))
        store = RedisProgressStore("redis://localhost:6379")

        with (
            patch("src.tutor.progress.ConnectionPool.from_url"),
            patch("src.tutor.progress.aioredis.Redis", return_value=mock_redis),
        ):
            with pytest.raises(ConnectionError, match="Redis connection failed"):
                await store.connect()
