from __future__ import annotations

import shutil
import sys
from collections.abc import Iterator
from pathlib import Path
from uuid import uuid4

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from lingotrainer.models import Difficulty, Exercise, ExerciseType, Lesson  # noqa: E402


def _tmp_path_fixture() -> Iterator[Path]:
    """Provide per-test temporary directory path inside the workspace.

    This intentionally overrides pytest's builtin ``tmp_path`` fixture for this
    repository. In this environment, system temp locations and builtin tmp-path
    setup are not reliable, so tests keep temporary files under the project
    working directory at ``.tmp_pytest/``.
    """
    base = ROOT / ".tmp_pytest"
    base.mkdir(parents=True, exist_ok=True)
    path = base / str(uuid4())
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        try:
            next(base.iterdir())
        except StopIteration:
            base.rmdir()
        except FileNotFoundError:
            pass


tmp_path = pytest.fixture(name="tmp_path")(_tmp_path_fixture)


def _exercise(
    exercise_id: int, exercise_type: ExerciseType, prompt: str, answer: str, options: tuple[str, ...]
) -> Exercise:
    return Exercise(id=exercise_id, type=exercise_type, prompt=prompt, correct_answer=answer, options=options)


def build_lesson(topic_id: str = "basics", difficulty: Difficulty = Difficulty.BEGINNER) -> Lesson:
    """Five-exercise lesson covering every answer mode."""
    exercises = (
        _exercise(1, ExerciseType.SELECT_MEANING, "What does 'gato' mean?", "Cat", ("Dog", "Cat", "Bird")),
        _exercise(2, ExerciseType.TRANSLATE_TO_TARGET, "I eat bread", "Yo como pan", ("pan", "Yo", "como", "agua")),
        _exercise(3, ExerciseType.FILL_IN_THE_BLANK, "Yo ___ agua", "bebo", ()),
        _exercise(
            4, ExerciseType.CHOOSE_THE_CORRECT_TRANSLATION, "Good night", "Buenas noches", ("Buenas noches", "Hola")
        ),
        _exercise(5, ExerciseType.TRANSLATE_TO_SOURCE, "La casa", "The house", ("the", "house", "the", "cat")),
    )
    return Lesson(
        id=f"{topic_id}-{difficulty.value}",
        topic_id=topic_id,
        title=topic_id.title(),
        description="test lesson",
        difficulty=difficulty,
        exercises=exercises,
    )


@pytest.fixture
def lesson() -> Lesson:
    return build_lesson()
