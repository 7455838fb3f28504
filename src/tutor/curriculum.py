"""Course content and tutor prompts.

Holds the fixed lesson sequence, the per-level pacing/vocabulary profiles and
the instruction texts sent to the speech engine: the persona configuration,
the scripted greeting and the follow-up nudge.
"""

from dataclasses import dataclass
from enum import Enum

TUTOR_NAME = "Amin Sir"

COURSE_TOPICS: tuple[str, ...] = (
    "Introducing myself",
    "My family",
    "My school",
    "My best friend",
    "My daily routine",
    "At the grocery shop",
    "At the restaurant",
    "At the bus stop",
    "At the doctor",
    "My favorite food",
    "My hobbies",
    "Weather and seasons",
    "Shopping conversation",
    "Asking for directions",
    "Telephone conversation",
    "Ordering food",
    "Describing a picture",
    "Story telling",
    "Past tense speaking",
    "Future plans",
)


class Level(Enum):
    """Student proficiency level."""

    BEGINNER = "beginner"
    MEDIUM = "medium"
    ADVANCED = "advanced"

    @classmethod
    def parse(cls, value: "str | Level | None") -> "Level":
        """Parse a stored level preference, defaulting to beginner."""
        if isinstance(value, Level):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.BEGINNER


@dataclass(frozen=True)
class LevelProfile:
    """Pacing and vocabulary profile for one level."""

    level: Level
    label: str
    speed: str
    vocabulary: str
    answer_length: str


LEVEL_PROFILES: dict[Level, LevelProfile] = {
    Level.BEGINNER: LevelProfile(
        level=Level.BEGINNER,
        label="Beginner",
        speed="slow",
        vocabulary="very simple everyday words, short sentences",
        answer_length="one short sentence",
    ),
    Level.MEDIUM: LevelProfile(
        level=Level.MEDIUM,
        label="Medium",
        speed="slow-medium",
        vocabulary="common words with a few new ones explained simply",
        answer_length="two or three sentences",
    ),
    Level.ADVANCED: LevelProfile(
        level=Level.ADVANCED,
        label="Advanced",
        speed="normal",
        vocabulary="natural vocabulary including idioms",
        answer_length="long answers with reasons and examples",
    ),
}


@dataclass(frozen=True)
class Lesson:
    """A lesson picked from the course."""

    number: int
    topic: str

    @property
    def title(self) -> str:
        return f"Lesson {self.number}: {self.topic}"


def lesson_for_cursor(cursor: int) -> Lesson:
    """Return the lesson at ``cursor``, wrapping to the start past the end."""
    if cursor < 0 or cursor >= len(COURSE_TOPICS):
        cursor = 0
    return Lesson(number=cursor + 1, topic=COURSE_TOPICS[cursor])


def next_cursor(lesson: Lesson) -> int:
    """Cursor value that selects the lesson after ``lesson``."""
    return lesson.number % len(COURSE_TOPICS)


def build_instructions(student_name: str, profile: LevelProfile, lesson: Lesson) -> str:
    """Persona, language policy and level profile for ``session.update``."""
    return f"""You are {TUTOR_NAME} AI Tutor, a friendly English teacher for school students.

LANGUAGE RULE (STRICT):
- Speak ONLY in English.
- You may use SMALL SIMPLE Hindi words in Roman letters only (Hinglish).
- Never output Arabic/Persian/Urdu script.
- If the student speaks non-English, say: "Please speak in English."

TEACHING STYLE:
- Correct grammar gently. Never say "wrong", say "Good try, let's improve it".
- Encourage the student and give one short practice sentence when useful.

Student: {student_name}
Today's topic: {lesson.topic}
Level: {profile.label}. Speed: {profile.speed}.
Vocabulary: {profile.vocabulary}. Expect {profile.answer_length} from the student.
Ask ONE question at a time and wait for the reply."""


def build_greeting(student_name: str, profile: LevelProfile, lesson: Lesson) -> str:
    """Scripted instruction for the first tutor utterance."""
    return (
        f'Start the class now. Say exactly: "Hello {student_name}! I am {TUTOR_NAME}." '
        f'Then say: "Today\'s topic: {lesson.topic}. We will practice at {profile.label} level." '
        "Then ask your first simple question about the topic."
    )


def build_nudge(student_name: str, attempt: int) -> str:
    """Scripted follow-up utterance injected after student silence."""
    return (
        f"(The student {student_name} has been quiet. This is follow-up {attempt}.) "
        "Kindly encourage them and ask an easier, shorter question about the same topic."
    )
