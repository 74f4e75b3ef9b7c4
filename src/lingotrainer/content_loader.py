"""Load bundled catalog content and convert lessons to and from JSON payloads."""

from __future__ import annotations

import json
from importlib import resources
from pathlib import Path
from typing import Any

from .models import (
    CHOICE_TYPES,
    LESSON_SOURCE_PROVIDER,
    WORD_BANK_TYPES,
    Difficulty,
    Exercise,
    ExerciseType,
    LanguageConfig,
    Lesson,
    Topic,
)

CONTENT_PACKAGE = "lingotrainer.content"
TOPICS_FILE = "topics.json"
LANGUAGES_FILE = "languages.json"


class MalformedLessonError(ValueError):
    """Lesson content does not satisfy the exercise shape contract."""


def composite_key(topic_id: str, difficulty: Difficulty | str) -> str:
    """Return the cache/lesson key for a topic at a difficulty."""
    value = difficulty.value if isinstance(difficulty, Difficulty) else str(difficulty)
    return f"{topic_id}-{value}"


def split_composite_key(key: str) -> tuple[str, Difficulty]:
    """Return the topic id and difficulty encoded in a lesson key."""
    for difficulty in Difficulty:
        suffix = f"-{difficulty.value}"
        if key.endswith(suffix) and len(key) > len(suffix):
            return key[: -len(suffix)], difficulty
    raise MalformedLessonError(f"Not a lesson key: {key}")


def exercise_from_dict(raw: dict[str, Any], fallback_id: int = 0) -> Exercise:
    """Build an exercise from provider or cache JSON.

    Accepts both camelCase provider keys and snake_case cache keys.
    """
    type_raw = str(raw.get("type", "")).strip()
    try:
        exercise_type = ExerciseType(type_raw)
    except ValueError as exc:
        raise MalformedLessonError(f"Unknown exercise type: {type_raw or '<missing>'}") from exc

    correct = raw.get("correct_answer", raw.get("correctAnswer"))
    options_raw = raw.get("options") or []
    if not isinstance(options_raw, list):
        raise MalformedLessonError("Exercise options must be a list.")

    try:
        exercise_id = int(raw.get("id", fallback_id))
    except (TypeError, ValueError):
        exercise_id = fallback_id

    exercise = Exercise(
        id=exercise_id,
        type=exercise_type,
        prompt=str(raw.get("prompt") or ""),
        correct_answer=str(correct) if correct is not None else "",
        options=tuple(str(option) for option in options_raw),
        translation=str(raw.get("translation") or ""),
        explanation=str(raw.get("explanation") or ""),
        pronunciation=str(raw.get("pronunciation") or ""),
    )
    validate_exercise(exercise)
    return exercise


def exercise_to_dict(exercise: Exercise) -> dict[str, Any]:
    """Serialize an exercise for the lesson cache."""
    return {
        "id": exercise.id,
        "type": exercise.type.value,
        "prompt": exercise.prompt,
        "correct_answer": exercise.correct_answer,
        "options": list(exercise.options),
        "translation": exercise.translation,
        "explanation": exercise.explanation,
        "pronunciation": exercise.pronunciation,
    }


def validate_exercise(exercise: Exercise) -> None:
    """Raise MalformedLessonError when an exercise cannot be answered."""
    if not exercise.prompt.strip():
        raise MalformedLessonError(f"Exercise {exercise.id} has no prompt.")
    if not exercise.correct_answer.strip():
        raise MalformedLessonError(f"Exercise {exercise.id} has no correct answer.")
    if exercise.type in CHOICE_TYPES or exercise.type in WORD_BANK_TYPES:
        if not exercise.options:
            raise MalformedLessonError(f"Exercise {exercise.id} ({exercise.type.value}) has no options.")
    if exercise.type in CHOICE_TYPES and exercise.correct_answer not in exercise.options:
        raise MalformedLessonError(f"Exercise {exercise.id} correct answer is not among its options.")


def validate_lesson(lesson: Lesson) -> None:
    """Raise MalformedLessonError when a lesson cannot be run."""
    if not lesson.exercises:
        raise MalformedLessonError(f"Lesson '{lesson.id}' has no exercises.")
    for exercise in lesson.exercises:
        validate_exercise(exercise)


def lesson_from_dict(raw: dict[str, Any], source: str | None = None) -> Lesson:
    """Build a lesson from cached JSON content."""
    exercises_raw = raw.get("exercises", [])
    if not isinstance(exercises_raw, list):
        raise MalformedLessonError("Lesson exercises must be a list.")
    exercises = tuple(
        exercise_from_dict(item, fallback_id=index + 1)
        for index, item in enumerate(exercises_raw)
        if isinstance(item, dict)
    )
    difficulty_raw = str(raw.get("difficulty", Difficulty.BEGINNER.value))
    try:
        difficulty = Difficulty(difficulty_raw)
    except ValueError as exc:
        raise MalformedLessonError(f"Unknown difficulty: {difficulty_raw}") from exc

    topic_id = str(raw.get("topic_id", raw.get("topicId", "")))
    lesson = Lesson(
        id=str(raw.get("id") or composite_key(topic_id, difficulty)),
        topic_id=topic_id,
        title=str(raw.get("title", topic_id)),
        description=str(raw.get("description", "")),
        difficulty=difficulty,
        exercises=exercises,
        source=source or str(raw.get("source", LESSON_SOURCE_PROVIDER)),
    )
    validate_lesson(lesson)
    return lesson


def lesson_to_dict(lesson: Lesson) -> dict[str, Any]:
    """Serialize a lesson for the lesson cache."""
    return {
        "id": lesson.id,
        "topic_id": lesson.topic_id,
        "title": lesson.title,
        "description": lesson.description,
        "difficulty": lesson.difficulty.value,
        "source": lesson.source,
        "exercises": [exercise_to_dict(exercise) for exercise in lesson.exercises],
    }


def _topics_from_raw(raw: object) -> list[Topic]:
    if not isinstance(raw, list):
        raise ValueError("Topic catalog root must be a list.")
    topics: list[Topic] = []
    seen: set[str] = set()
    for order, item in enumerate(raw):
        topic = Topic(id=str(item["id"]), name=str(item["name"]), icon=str(item.get("icon", "")), order=order)
        if topic.id in seen:
            raise ValueError(f"Duplicate topic id: {topic.id}")
        seen.add(topic.id)
        topics.append(topic)
    return topics


def _languages_from_raw(raw: object) -> list[LanguageConfig]:
    if not isinstance(raw, list):
        raise ValueError("Language catalog root must be a list.")
    languages: list[LanguageConfig] = []
    seen: set[str] = set()
    for item in raw:
        language = LanguageConfig(code=str(item["code"]), name=str(item["name"]), flag=str(item.get("flag", "")))
        if language.code in seen:
            raise ValueError(f"Duplicate language code: {language.code}")
        seen.add(language.code)
        languages.append(language)
    return languages


def _read_bundled(name: str) -> object:
    entry = resources.files(CONTENT_PACKAGE).joinpath(name)
    return json.loads(entry.read_text(encoding="utf-8-sig"))


def load_topics() -> list[Topic]:
    """Load the bundled topic catalog in path order."""
    return _topics_from_raw(_read_bundled(TOPICS_FILE))


def load_languages() -> list[LanguageConfig]:
    """Load the bundled language catalog."""
    return _languages_from_raw(_read_bundled(LANGUAGES_FILE))


def load_topics_from_file(path: Path) -> list[Topic]:
    """Load a topic catalog from a JSON file for tests/tools."""
    return _topics_from_raw(json.loads(path.read_text(encoding="utf-8-sig")))
