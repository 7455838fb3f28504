"""Student roster: who may log in, and with which PIN."""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass

from src.tutor.errors import TutorError, ValidationError
from src.tutor.progress import RedisBackend, student_key

logger = logging.getLogger(__name__)

PIN_PATTERN = re.compile(r"^\d{4}$")


class StudentExistsError(TutorError):
    """A student with the same normalized name is already registered."""


@dataclass(frozen=True)
class Student:
    """Registered student.

    Attributes:
        key: Normalized storage key (see ``student_key``)
        name: Display name as entered
        pin: 4-digit login PIN
        active: Inactive students cannot log in
    """

    key: str
    name: str
    pin: str
    active: bool = True

    def public_dict(self) -> dict[str, object]:
        """Serializable view without the PIN."""
        return {"key": self.key, "name": self.name, "active": self.active}


def validate_registration(name: str | None, pin: str | None) -> tuple[str, str]:
    """Normalize and check a name/PIN pair.

    Raises:
        ValidationError: If the name is blank or the PIN is not 4 digits
    """
    clean_name = (name or "").strip()
    clean_pin = (pin or "").strip()
    if not clean_name or not clean_pin:
        raise ValidationError("Missing name or pin")
    if not PIN_PATTERN.match(clean_pin):
        raise ValidationError("PIN must be 4 digits", details={"field": "pin"})
    return clean_name, clean_pin


class RosterStore(ABC):
    """Storage for registered students."""

    @abstractmethod
    async def get(self, key: str) -> Student | None:
        pass

    @abstractmethod
    async def put(self, student: Student) -> None:
        pass

    @abstractmethod
    async def list_students(self) -> list[Student]:
        pass

    async def add_student(self, name: str | None, pin: str | None) -> Student:
        """Register a new student.

        Raises:
            ValidationError: If name or PIN are missing or malformed
            StudentExistsError: If the normalized name is taken
        """
        clean_name, clean_pin = validate_registration(name, pin)
        key = student_key(clean_name)

        if await self.get(key) is not None:
            raise StudentExistsError(f"Student '{clean_name}' already exists", details={"key": key})

        student = Student(key=key, name=clean_name, pin=clean_pin)
        await self.put(student)
        logger.info("Student registered", extra={"student": key})
        return student

    async def authenticate(self, name: str | None, pin: str | None) -> Student | None:
        """Return the active student matching the credentials, or None."""
        key = student_key(name)
        student = await self.get(key)
        if student is None or not student.active:
            return None
        if student.pin != (pin or "").strip():
            logger.info("Login rejected: wrong PIN", extra={"student": key})
            return None
        return student


class MemoryRosterStore(RosterStore):
    def __init__(self) -> None:
        self._students: dict[str, Student] = {}

    async def get(self, key: str) -> Student | None:
        return self._students.get(key)

    async def put(self, student: Student) -> None:
        self._students[student.key] = student

    async def list_students(self) -> list[Student]:
        return sorted(self._students.values(), key=lambda s: s.key)


class RedisRosterStore(RedisBackend, RosterStore):
    """Roster kept in one Redis hash: ``{key_prefix}roster`` → student JSON."""

    @property
    def _roster_key(self) -> str:
        return f"{self.key_prefix}roster"

    async def get(self, key: str) -> Student | None:
        self._require_connection()
        raw = await self._redis.hget(self._roster_key, key)
        return _decode_student(raw)

    async def put(self, student: Student) -> None:
        self._require_connection()
        await self._redis.hset(self._roster_key, student.key, json.dumps(asdict(student)))

    async def list_students(self) -> list[Student]:
        self._require_connection()
        raw = await self._redis.hgetall(self._roster_key)
        students = [s for s in (_decode_student(v) for v in raw.values()) if s is not None]
        return sorted(students, key=lambda s: s.key)


def _decode_student(raw: str | bytes | None) -> Student | None:
    if raw is None:
        return None
    try:
        return Student(**json.loads(raw))
    except (ValueError, TypeError):
        logger.warning("Discarding unreadable roster entry")
        return None
