"""SQLite persistence for the learner state and the offline lesson cache."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast

from .content_loader import lesson_from_dict, lesson_to_dict, split_composite_key
from .models import (
    LESSON_SOURCE_CACHE,
    MAX_TOPIC_LEVEL,
    Achievement,
    AchievementCondition,
    Difficulty,
    Lesson,
    UserState,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class PersistenceError(RuntimeError):
    """Reading or writing the progress database failed."""


class ProgressStore:
    """Database access layer for learner progress and cached lessons."""

    def __init__(self, db_path: Path | str) -> None:
        """Initialize database and schema."""
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_path)
        else:
            target = db_path
        self._conn = sqlite3.connect(target)
        self._conn.row_factory = sqlite3.Row
        self._apply_migrations()

    def _apply_migrations(self) -> None:
        """Apply forward-only schema migrations to latest version."""
        current = int(self._conn.execute("PRAGMA user_version").fetchone()[0])
        if current > SCHEMA_VERSION:
            raise RuntimeError(f"Database schema version {current} is newer than supported {SCHEMA_VERSION}.")

        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """)

        for version in range(current + 1, SCHEMA_VERSION + 1):
            if version == 1:
                self._migrate_to_v1()
            with self._conn:
                self._conn.execute(f"PRAGMA user_version = {version}")
                self._conn.execute(
                    "INSERT OR REPLACE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now(UTC).isoformat()),
                )

    def _migrate_to_v1(self) -> None:
        """Create the state snapshot and lesson cache tables."""
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS user_state (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS lesson_cache (
                    language TEXT NOT NULL,
                    lesson_key TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    saved_at TEXT NOT NULL,
                    PRIMARY KEY (language, lesson_key)
                )
                """)

    def load_user_state(self) -> UserState | None:
        """Return the stored snapshot, or None when absent or unreadable."""
        try:
            row = self._conn.execute("SELECT payload FROM user_state WHERE id = 1").fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not read user state: {exc}") from exc
        if row is None:
            return None
        try:
            raw: object = json.loads(str(row["payload"]))
        except ValueError:
            logger.warning("Stored user state is not valid JSON; starting fresh.")
            return None
        if not isinstance(raw, dict):
            logger.warning("Stored user state is not an object; starting fresh.")
            return None
        return user_state_from_dict(cast(dict[str, object], raw))

    def save_user_state(self, state: UserState) -> None:
        """Replace the stored snapshot in one statement (last write wins)."""
        try:
            payload = json.dumps(user_state_to_dict(state))
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO user_state (id, payload, updated_at) VALUES (1, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        payload = excluded.payload,
                        updated_at = excluded.updated_at
                    """,
                    (payload, datetime.now(UTC).isoformat()),
                )
        except (sqlite3.Error, TypeError, ValueError) as exc:
            raise PersistenceError(f"Could not save user state: {exc}") from exc

    def get_cached_lesson(self, language: str, lesson_key: str) -> Lesson | None:
        """Return a cached lesson, or None when missing or malformed."""
        try:
            row = self._conn.execute(
                "SELECT payload FROM lesson_cache WHERE language = ? AND lesson_key = ?",
                (language, lesson_key),
            ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not read lesson cache: {exc}") from exc
        if row is None:
            return None
        try:
            return lesson_from_dict(json.loads(str(row["payload"])), source=LESSON_SOURCE_CACHE)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring malformed cached lesson %s/%s: %s", language, lesson_key, exc)
            return None

    def save_cached_lesson(self, language: str, lesson_key: str, lesson: Lesson) -> None:
        """Store or replace one cached lesson."""
        self._write_cache_rows([(language, lesson_key, json.dumps(lesson_to_dict(lesson)))])

    def delete_cached_lesson(self, language: str, lesson_key: str) -> bool:
        """Remove one cached lesson."""
        try:
            with self._conn:
                cursor = self._conn.execute(
                    "DELETE FROM lesson_cache WHERE language = ? AND lesson_key = ?",
                    (language, lesson_key),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not delete cached lesson: {exc}") from exc
        return cursor.rowcount > 0

    def list_cached_lessons(self, language: str | None = None) -> dict[str, list[str]]:
        """Return cached lesson keys grouped by language."""
        query = "SELECT language, lesson_key FROM lesson_cache"
        params: tuple[str, ...] = ()
        if language is not None:
            query += " WHERE language = ?"
            params = (language,)
        try:
            rows = self._conn.execute(query + " ORDER BY language, lesson_key", params).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not list lesson cache: {exc}") from exc
        grouped: dict[str, list[str]] = {}
        for row in rows:
            grouped.setdefault(str(row["language"]), []).append(str(row["lesson_key"]))
        return grouped

    def export_cached_lessons(self) -> dict[str, dict[str, object]]:
        """Return every cached lesson payload as `{language: {key: lesson}}`."""
        try:
            rows = self._conn.execute(
                "SELECT language, lesson_key, payload FROM lesson_cache ORDER BY language, lesson_key"
            ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not read lesson cache: {exc}") from exc
        data: dict[str, dict[str, object]] = {}
        for row in rows:
            data.setdefault(str(row["language"]), {})[str(row["lesson_key"])] = json.loads(str(row["payload"]))
        return data

    def merge_cached_lessons(self, raw: object) -> int:
        """Merge an imported `{language: {key: lesson}}` payload; returns lessons stored.

        Invalid entries are skipped; imported entries replace existing ones.
        Each lesson takes its topic and difficulty from the key it is filed
        under, and entries whose own topic disagrees with that key are skipped.
        """
        if not isinstance(raw, dict):
            raise ValueError("Lesson cache payload must be an object.")
        rows: list[tuple[str, str, str]] = []
        for language, lessons in cast(dict[object, object], raw).items():
            if not isinstance(lessons, dict):
                continue
            for lesson_key, lesson_raw in cast(dict[object, object], lessons).items():
                if not isinstance(lesson_raw, dict):
                    continue
                try:
                    topic_id, difficulty = split_composite_key(str(lesson_key))
                    lesson = lesson_from_dict(cast(dict[str, Any], lesson_raw))
                except (ValueError, KeyError, TypeError) as exc:
                    logger.warning("Skipping imported lesson %s/%s: %s", language, lesson_key, exc)
                    continue
                if lesson.topic_id and lesson.topic_id != topic_id:
                    logger.warning(
                        "Skipping imported lesson %s/%s: filed under %s but belongs to %s",
                        language,
                        lesson_key,
                        topic_id,
                        lesson.topic_id,
                    )
                    continue
                lesson = replace(lesson, id=str(lesson_key), topic_id=topic_id, difficulty=difficulty)
                rows.append((str(language), str(lesson_key), json.dumps(lesson_to_dict(lesson))))
        self._write_cache_rows(rows)
        return len(rows)

    def _write_cache_rows(self, rows: list[tuple[str, str, str]]) -> None:
        now = datetime.now(UTC).isoformat()
        try:
            with self._conn:
                self._conn.executemany(
                    """
                    INSERT INTO lesson_cache (language, lesson_key, payload, saved_at) VALUES (?, ?, ?, ?)
                    ON CONFLICT(language, lesson_key) DO UPDATE SET
                        payload = excluded.payload,
                        saved_at = excluded.saved_at
                    """,
                    [(language, key, payload, now) for language, key, payload in rows],
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not save lesson cache: {exc}") from exc

    def close(self) -> None:
        """Close db connection."""
        self._conn.close()

    def __del__(self) -> None:  # pragma: no cover
        """Best-effort connection cleanup."""
        try:
            self.close()
        except Exception:
            pass


def user_state_to_dict(state: UserState) -> dict[str, object]:
    """Serialize a snapshot to JSON-compatible data."""
    return {
        "hearts": state.hearts,
        "xp": state.xp,
        "streak": state.streak,
        "daily_xp": state.daily_xp,
        "daily_goal": state.daily_goal,
        "current_language": state.current_language,
        "difficulty": state.difficulty.value,
        "last_active_date": state.last_active_date,
        "timer_enabled": state.timer_enabled,
        "streak_freeze_active": state.streak_freeze_active,
        "topic_levels": dict(sorted(state.topic_levels.items())),
        "completed_lessons": sorted(state.completed_lessons),
        "perfect_lesson_count": state.perfect_lesson_count,
        "fast_lesson_count": state.fast_lesson_count,
        "achievements": [
            {
                "id": achievement.id,
                "title": achievement.title,
                "description": achievement.description,
                "icon": achievement.icon,
                "condition_type": achievement.condition_type.value,
                "threshold": achievement.threshold,
                "unlocked": achievement.unlocked,
                "unlocked_at": achievement.unlocked_at,
            }
            for achievement in state.achievements
        ],
    }


def user_state_from_dict(raw: dict[str, object]) -> UserState:
    """Build a snapshot from stored or imported data, defaulting missing fields."""
    defaults = UserState()

    def int_field(name: str, default: int, minimum: int = 0) -> int:
        value = coerce_int(raw.get(name), default=default)
        return max(minimum, value if value is not None else default)

    difficulty_raw = raw.get("difficulty")
    try:
        difficulty = Difficulty(str(difficulty_raw)) if difficulty_raw is not None else defaults.difficulty
    except ValueError:
        difficulty = defaults.difficulty

    topic_levels: dict[str, int] = {}
    levels_raw = raw.get("topic_levels")
    if isinstance(levels_raw, dict):
        for topic_id, level_raw in cast(dict[object, object], levels_raw).items():
            level = coerce_int(level_raw)
            if level is None:
                continue
            topic_levels[str(topic_id)] = max(0, min(MAX_TOPIC_LEVEL, level))

    completed_raw = raw.get("completed_lessons")
    completed = (
        frozenset(str(item) for item in cast(list[object], completed_raw) if str(item).strip())
        if isinstance(completed_raw, list)
        else frozenset()
    )

    language = raw.get("current_language")
    last_active = raw.get("last_active_date")
    return UserState(
        hearts=int_field("hearts", defaults.hearts),
        xp=int_field("xp", defaults.xp),
        streak=int_field("streak", defaults.streak),
        daily_xp=int_field("daily_xp", defaults.daily_xp),
        daily_goal=int_field("daily_goal", defaults.daily_goal, minimum=1),
        current_language=language if isinstance(language, str) and language else defaults.current_language,
        difficulty=difficulty,
        last_active_date=last_active if isinstance(last_active, str) else "",
        timer_enabled=raw.get("timer_enabled") is True,
        streak_freeze_active=raw.get("streak_freeze_active") is True,
        topic_levels=topic_levels,
        completed_lessons=completed,
        perfect_lesson_count=int_field("perfect_lesson_count", 0),
        fast_lesson_count=int_field("fast_lesson_count", 0),
        achievements=_achievements_from_raw(raw.get("achievements")),
    )


def _achievements_from_raw(raw: object) -> tuple[Achievement, ...]:
    """Normalize stored achievements; unknown conditions are dropped."""
    if not isinstance(raw, list):
        return ()
    achievements: list[Achievement] = []
    for item in cast(list[object], raw):
        if not isinstance(item, dict):
            continue
        row = cast(dict[str, object], item)
        achievement_id = row.get("id")
        if not isinstance(achievement_id, str) or not achievement_id:
            continue
        try:
            condition = AchievementCondition(str(row.get("condition_type")))
        except ValueError:
            continue
        unlocked_at = row.get("unlocked_at")
        achievements.append(
            Achievement(
                id=achievement_id,
                title=str(row.get("title", "")),
                description=str(row.get("description", "")),
                icon=str(row.get("icon", "")),
                condition_type=condition,
                threshold=coerce_int(row.get("threshold"), default=1) or 1,
                unlocked=row.get("unlocked") is True,
                unlocked_at=unlocked_at if isinstance(unlocked_at, str) else None,
            )
        )
    return tuple(achievements)


def coerce_int(value: object, default: int | None = None) -> int | None:
    """Coerce value to int for import normalization."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return default
    return default
