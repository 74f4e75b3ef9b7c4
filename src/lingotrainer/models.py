"""Core domain models for lessons, exercises, and learner progress."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

LESSON_SOURCE_PROVIDER = "provider"
LESSON_SOURCE_CACHE = "cache"
LESSON_SOURCE_FALLBACK = "fallback"

MAX_TOPIC_LEVEL = 5


class ExerciseType(str, Enum):
    """Supported exercise variants."""

    TRANSLATE_TO_TARGET = "TRANSLATE_TO_TARGET"
    TRANSLATE_TO_SOURCE = "TRANSLATE_TO_SOURCE"
    SELECT_MEANING = "SELECT_MEANING"
    LISTEN_AND_TYPE = "LISTEN_AND_TYPE"
    FILL_IN_THE_BLANK = "FILL_IN_THE_BLANK"
    CHOOSE_THE_CORRECT_TRANSLATION = "CHOOSE_THE_CORRECT_TRANSLATION"


CHOICE_TYPES = frozenset({ExerciseType.SELECT_MEANING, ExerciseType.CHOOSE_THE_CORRECT_TRANSLATION})
WORD_BANK_TYPES = frozenset(
    {ExerciseType.TRANSLATE_TO_TARGET, ExerciseType.TRANSLATE_TO_SOURCE, ExerciseType.LISTEN_AND_TYPE}
)
FREE_TEXT_TYPES = frozenset({ExerciseType.FILL_IN_THE_BLANK})


class Difficulty(str, Enum):
    """Lesson difficulty levels."""

    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class AchievementCondition(str, Enum):
    """Metric an achievement threshold is compared against."""

    LESSONS_COMPLETED = "LESSONS_COMPLETED"
    STREAK_DAYS = "STREAK_DAYS"
    XP_EARNED = "XP_EARNED"
    TOPICS_MASTERED = "TOPICS_MASTERED"
    PERFECT_LESSONS = "PERFECT_LESSONS"
    SPEEDRUN_LESSONS = "SPEEDRUN_LESSONS"


@dataclass(frozen=True)
class Exercise:
    """One unit of assessment inside a lesson."""

    id: int
    type: ExerciseType
    prompt: str
    correct_answer: str
    options: tuple[str, ...] = ()
    translation: str = ""
    explanation: str = ""
    pronunciation: str = ""


@dataclass(frozen=True)
class Lesson:
    """Ordered, fixed set of exercises for one language, topic, and difficulty."""

    id: str
    topic_id: str
    title: str
    description: str
    difficulty: Difficulty
    exercises: tuple[Exercise, ...]
    source: str = LESSON_SOURCE_PROVIDER


@dataclass(frozen=True)
class Topic:
    """Catalog topic."""

    id: str
    name: str
    icon: str
    order: int


@dataclass(frozen=True)
class LanguageConfig:
    """Supported learning language."""

    code: str
    name: str
    flag: str


@dataclass(frozen=True)
class Achievement:
    """Achievement definition plus unlock status."""

    id: str
    title: str
    description: str
    icon: str
    condition_type: AchievementCondition
    threshold: int
    unlocked: bool = False
    unlocked_at: str | None = None


@dataclass(frozen=True)
class SessionResult:
    """Score for one completed session."""

    xp: int
    mistakes: int
    time_seconds: int

    @property
    def is_perfect(self) -> bool:
        """Return whether the session finished without mistakes."""
        return self.mistakes == 0


@dataclass(frozen=True)
class UserState:
    """Persisted learner progress snapshot."""

    hearts: int = 5
    xp: int = 0
    streak: int = 1
    daily_xp: int = 0
    daily_goal: int = 50
    current_language: str = "es"
    difficulty: Difficulty = Difficulty.BEGINNER
    last_active_date: str = ""
    timer_enabled: bool = False
    streak_freeze_active: bool = False
    topic_levels: Mapping[str, int] = field(default_factory=dict, hash=False)
    completed_lessons: frozenset[str] = frozenset()
    perfect_lesson_count: int = 0
    fast_lesson_count: int = 0
    achievements: tuple[Achievement, ...] = ()

    def __post_init__(self) -> None:
        # Snapshots never share a mutable levels mapping.
        object.__setattr__(self, "topic_levels", MappingProxyType(dict(self.topic_levels)))

    def topic_level(self, topic_id: str) -> int:
        """Return current mastery level for a topic."""
        return self.topic_levels.get(topic_id, 0)

    def mastered_topic_count(self) -> int:
        """Return number of topics at the maximum level."""
        return len([level for level in self.topic_levels.values() if level >= MAX_TOPIC_LEVEL])
