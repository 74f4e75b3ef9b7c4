"""Application service tying sessions, progress, content, and persistence together."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from pathlib import Path
from typing import cast

from . import __version__, progression
from .achievements import evaluate, initialize_achievements
from .config import Settings, get_settings
from .content_loader import composite_key, load_languages, load_topics
from .models import (
    LESSON_SOURCE_FALLBACK,
    MAX_TOPIC_LEVEL,
    Achievement,
    Difficulty,
    LanguageConfig,
    Lesson,
    SessionResult,
    Topic,
    UserState,
)
from .progress import (
    SCHEMA_VERSION,
    PersistenceError,
    ProgressStore,
    coerce_int,
    user_state_from_dict,
    user_state_to_dict,
)
from .provider import ContentGenerationFailed, ContentProvider, fallback_exercises
from .scoring import DEFAULT_POLICY, ScoringPolicy
from .session import InvalidTransition, SessionPhase, SessionState, finish, start_session

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = 1
PRACTICE_TOPIC_ID = "practice"


@dataclass(frozen=True)
class TopicState:
    """Topic path entry for the current learner."""

    topic: Topic
    level: int
    unlocked: bool
    mastered: bool
    cached: bool


@dataclass(frozen=True)
class LessonOutcome:
    """What finishing a session changed.

    `result` is None for sessions that ran out of time or were abandoned;
    those award nothing and only write back hearts. `warnings` carries
    persistence problems that did not stop the in-memory update.
    """

    result: SessionResult | None
    state: UserState
    newly_unlocked: tuple[Achievement, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProgressTransferSummary:
    """Summary emitted by progress export/import operations."""

    xp: int
    topic_count: int
    unlocked_achievements: int
    cached_lessons: int


class LearnService:
    """Coordinates learner state and lesson flows."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: ProgressStore | None = None,
        provider: ContentProvider | None = None,
        today: Callable[[], date] = date.today,
        policy: ScoringPolicy = DEFAULT_POLICY,
    ) -> None:
        """Load catalogs and the learner snapshot, applying the daily rollover."""
        self.settings = settings or get_settings()
        self.topics = load_topics()
        self.languages: dict[str, LanguageConfig] = {language.code: language for language in load_languages()}
        self.progress = store or ProgressStore(self.settings.db_path)
        self.provider = provider or ContentProvider.from_settings(self.settings)
        self.policy = policy
        self._today = today
        self._warnings: list[str] = []
        self.state = UserState()
        self._commit(self._load_state())

    def _load_state(self) -> UserState:
        try:
            stored = self.progress.load_user_state()
        except PersistenceError as exc:
            logger.warning("Starting with fresh progress: %s", exc)
            self._warnings.append(str(exc))
            stored = None
        if stored is None:
            stored = UserState(hearts=self.settings.starting_hearts, daily_goal=self.settings.daily_goal)
        state = progression.daily_rollover(stored, self._today())
        return replace(state, achievements=initialize_achievements(state.achievements))

    def _commit(self, state: UserState) -> tuple[str, ...]:
        """Adopt `state` in memory, then persist it; failures become warnings."""
        self.state = state
        try:
            self.progress.save_user_state(state)
        except PersistenceError as exc:
            logger.warning("Progress not saved: %s", exc)
            self._warnings.append(str(exc))
            return (str(exc),)
        return ()

    def take_warnings(self) -> list[str]:
        """Return and clear pending persistence warnings."""
        warnings, self._warnings = self._warnings, []
        return warnings

    @property
    def language(self) -> LanguageConfig:
        code = self.state.current_language
        return self.languages.get(code) or LanguageConfig(code=code, name=code, flag="")

    def get_topic(self, topic_id: str) -> Topic:
        """Get topic by id."""
        for topic in self.topics:
            if topic.id == topic_id:
                return topic
        raise KeyError(topic_id)

    def list_topic_states(self) -> list[TopicState]:
        """Return the learning path in catalog order."""
        cached = self.cached_topic_ids()
        return [
            TopicState(
                topic=topic,
                level=self.state.topic_level(topic.id),
                unlocked=progression.topic_unlocked(self.topics, self.state, topic.id),
                mastered=self.state.topic_level(topic.id) >= MAX_TOPIC_LEVEL,
                cached=topic.id in cached,
            )
            for topic in self.topics
        ]

    def set_language(self, code: str) -> UserState:
        """Switch the learning language."""
        if code not in self.languages:
            raise ValueError(f"Unsupported language: {code}")
        self._commit(replace(self.state, current_language=code))
        return self.state

    def set_difficulty(self, difficulty: Difficulty | str) -> UserState:
        """Switch lesson difficulty."""
        self._commit(replace(self.state, difficulty=Difficulty(difficulty)))
        return self.state

    def toggle_timer(self) -> bool:
        """Flip timer mode and return the new setting."""
        self._commit(replace(self.state, timer_enabled=not self.state.timer_enabled))
        return self.state.timer_enabled

    def daily_goal_progress(self) -> tuple[float, bool]:
        return progression.daily_goal_progress(self.state)

    def buy_streak_freeze(self) -> UserState:
        """Spend XP on a streak freeze."""
        self._commit(progression.buy_streak_freeze(self.state, self.settings.streak_freeze_cost))
        return self.state

    def reset_topic(self, topic_id: str) -> UserState:
        """Reset one topic's level to 0."""
        self.get_topic(topic_id)
        self._commit(progression.reset_topic(self.state, topic_id))
        return self.state

    async def start_lesson(self, topic_id: str) -> Lesson:
        """Return the lesson for a topic from cache, the provider, or the static fallback."""
        topic = self.get_topic(topic_id)
        if not progression.topic_unlocked(self.topics, self.state, topic.id):
            raise ValueError(f"Topic '{topic.name}' is locked.")
        difficulty = self.state.difficulty
        key = composite_key(topic.id, difficulty)

        cached = self._cached_lesson(key)
        if cached is not None:
            logger.info("Using cached lesson %s/%s", self.state.current_language, key)
            return cached

        try:
            exercises = await self.provider.generate_lesson(self.language.name, topic.name, difficulty)
        except ContentGenerationFailed as exc:
            logger.warning("Falling back to static lesson for %s: %s", key, exc)
            return self._fallback_lesson(key, topic.id, topic.name, difficulty)
        return Lesson(
            id=key,
            topic_id=topic.id,
            title=topic.name,
            description=f"{difficulty.value.title()} {topic.name} lesson",
            difficulty=difficulty,
            exercises=exercises,
        )

    async def start_practice(self) -> Lesson:
        """Return a review lesson mixing every topic learned so far."""
        learned = [
            topic
            for topic in self.topics
            if topic.id in self.state.completed_lessons or self.state.topic_level(topic.id) > 0
        ]
        if not learned:
            raise ValueError("Complete a lesson before practicing.")
        difficulty = self.state.difficulty
        key = composite_key(PRACTICE_TOPIC_ID, difficulty)
        try:
            exercises = await self.provider.generate_practice(
                self.language.name, [topic.name for topic in learned], difficulty
            )
        except ContentGenerationFailed as exc:
            logger.warning("Falling back to static practice lesson: %s", exc)
            return self._fallback_lesson(key, PRACTICE_TOPIC_ID, "Practice", difficulty)
        return Lesson(
            id=key,
            topic_id=PRACTICE_TOPIC_ID,
            title="Practice",
            description=f"Review of {len(learned)} topic(s)",
            difficulty=difficulty,
            exercises=exercises,
        )

    def _fallback_lesson(self, key: str, topic_id: str, title: str, difficulty: Difficulty) -> Lesson:
        return Lesson(
            id=key,
            topic_id=topic_id,
            title=title,
            description="Offline fallback lesson",
            difficulty=difficulty,
            exercises=fallback_exercises(),
            source=LESSON_SOURCE_FALLBACK,
        )

    def _cached_lesson(self, key: str) -> Lesson | None:
        try:
            return self.progress.get_cached_lesson(self.state.current_language, key)
        except PersistenceError as exc:
            logger.warning("Lesson cache unavailable: %s", exc)
            self._warnings.append(str(exc))
            return None

    async def download_lesson(self, topic_id: str) -> Lesson:
        """Generate a lesson and keep it for offline use.

        Raises ContentGenerationFailed when the provider gives up; nothing is
        cached in that case.
        """
        topic = self.get_topic(topic_id)
        difficulty = self.state.difficulty
        key = composite_key(topic.id, difficulty)
        exercises = await self.provider.generate_lesson(self.language.name, topic.name, difficulty)
        lesson = Lesson(
            id=key,
            topic_id=topic.id,
            title=topic.name,
            description=f"{difficulty.value.title()} {topic.name} lesson",
            difficulty=difficulty,
            exercises=exercises,
        )
        self.progress.save_cached_lesson(self.state.current_language, key, lesson)
        return lesson

    def delete_download(self, topic_id: str) -> bool:
        """Remove the cached lesson for a topic at the current difficulty."""
        key = composite_key(topic_id, self.state.difficulty)
        return self.progress.delete_cached_lesson(self.state.current_language, key)

    def cached_topic_ids(self) -> set[str]:
        """Return topic ids with a cached lesson for the current language and difficulty."""
        language = self.state.current_language
        try:
            keys = set(self.progress.list_cached_lessons(language).get(language, []))
        except PersistenceError as exc:
            logger.warning("Lesson cache unavailable: %s", exc)
            self._warnings.append(str(exc))
            return set()
        return {topic.id for topic in self.topics if composite_key(topic.id, self.state.difficulty) in keys}

    def begin_session(self, lesson: Lesson) -> SessionState:
        """Start a session with the learner's hearts and timer preference."""
        return start_session(
            lesson,
            hearts=self.state.hearts,
            timer_enabled=self.state.timer_enabled,
            time_budget=self.settings.timer_budget_seconds,
        )

    def finish_session(self, session: SessionState) -> LessonOutcome:
        """Apply a finished session to learner progress and persist it."""
        if session.phase == SessionPhase.COMPLETE:
            result = finish(session, self.policy)
            next_state = progression.apply_result(
                self.state,
                session.lesson.topic_id,
                result,
                timer_enabled=session.timer_enabled,
                update_topic=session.lesson.topic_id != PRACTICE_TOPIC_ID,
                today=self._today(),
                policy=self.policy,
            )
            next_state, unlocked = evaluate(next_state)
            next_state = progression.settle_hearts(next_state, session.hearts, self.settings.starting_hearts)
            warnings = self._commit(next_state)
            logger.info("Lesson %s complete: +%d XP", session.lesson.id, result.xp)
            return LessonOutcome(result, self.state, tuple(unlocked), warnings)

        if session.phase in (SessionPhase.TIME_UP, SessionPhase.EXITED):
            next_state = progression.settle_hearts(self.state, session.hearts, self.settings.starting_hearts)
            warnings = self._commit(next_state)
            return LessonOutcome(None, self.state, (), warnings)

        raise InvalidTransition(f"Session is still {session.phase.value}.")

    async def speak(self, text: str) -> bytes | None:
        """Return spoken audio in the current language, or None."""
        return await self.provider.synthesize_speech(text, self.state.current_language)

    def export_progress(self, export_path: Path | str) -> ProgressTransferSummary:
        """Export learner state and cached lessons to a JSON file."""
        lessons = self.progress.export_cached_lessons()
        payload = {
            "format_version": EXPORT_FORMAT_VERSION,
            "exported_at": datetime.now(UTC).isoformat(),
            "source": {
                "app_version": __version__,
                "schema_version": SCHEMA_VERSION,
            },
            "user_state": user_state_to_dict(self.state),
            "lessons": lessons,
        }

        path = Path(export_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        return self._summary(self.state, sum(len(items) for items in lessons.values()))

    def import_progress(self, import_path: Path | str) -> ProgressTransferSummary:
        """Replace learner state from an export file and merge its cached lessons."""
        path = Path(import_path)
        raw_obj: object = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw_obj, dict):
            raise ValueError("Import file root must be a JSON object.")
        raw = cast(dict[str, object], raw_obj)

        format_version = coerce_int(raw.get("format_version", 0))
        if format_version is None:
            raise ValueError("Import file has invalid format_version.")
        if format_version > EXPORT_FORMAT_VERSION:
            raise ValueError(
                f"Import file format version {format_version} is newer than supported {EXPORT_FORMAT_VERSION}."
            )

        state_raw = raw.get("user_state")
        if not isinstance(state_raw, dict):
            raise ValueError("Import file has no user_state object.")
        imported = user_state_from_dict(cast(dict[str, object], state_raw))
        if imported.current_language not in self.languages:
            imported = replace(imported, current_language=UserState().current_language)
        imported = progression.daily_rollover(imported, self._today())
        imported = replace(imported, achievements=initialize_achievements(imported.achievements))

        lessons_raw = raw.get("lessons")
        merged = self.progress.merge_cached_lessons(lessons_raw) if lessons_raw is not None else 0
        self._commit(imported)
        return self._summary(imported, merged)

    @staticmethod
    def _summary(state: UserState, cached_lessons: int) -> ProgressTransferSummary:
        return ProgressTransferSummary(
            xp=state.xp,
            topic_count=len(state.topic_levels),
            unlocked_achievements=len([item for item in state.achievements if item.unlocked]),
            cached_lessons=cached_lessons,
        )

    def close(self) -> None:
        """Close resources."""
        self.progress.close()

    def __del__(self) -> None:  # pragma: no cover
        """Best-effort cleanup for test/process teardown."""
        try:
            self.close()
        except Exception:
            pass
