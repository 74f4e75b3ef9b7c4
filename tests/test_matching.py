import pytest

from lingotrainer.matching import (
    answer_matches,
    disabled_slots,
    is_slot_disabled,
    normalize_text,
    word_bank_answer,
)
from lingotrainer.models import Exercise, ExerciseType


def _exercise(exercise_type: ExerciseType, answer: str, options: tuple[str, ...] = ()) -> Exercise:
    return Exercise(id=1, type=exercise_type, prompt="p", correct_answer=answer, options=options)


def test_normalize_text_strips_punctuation_case_and_spacing() -> None:
    assert normalize_text("  Hola,   ¿cómo ESTÁS?! ") == "hola ¿cómo estás"
    assert normalize_text("a.b;c:d") == "abcd"


def test_choice_types_require_exact_option() -> None:
    exercise = _exercise(ExerciseType.SELECT_MEANING, "Thank you", ("Thank you", "Please"))
    assert answer_matches(exercise, "Thank you") is True
    assert answer_matches(exercise, "thank you") is False
    assert answer_matches(exercise, "Thank you.") is False

    translation = _exercise(ExerciseType.CHOOSE_THE_CORRECT_TRANSLATION, "Buenas noches", ("Buenas noches",))
    assert answer_matches(translation, "Buenas noches") is True


@pytest.mark.parametrize(
    "exercise_type",
    [ExerciseType.TRANSLATE_TO_TARGET, ExerciseType.TRANSLATE_TO_SOURCE, ExerciseType.LISTEN_AND_TYPE],
)
def test_word_bank_types_ignore_case_and_punctuation(exercise_type: ExerciseType) -> None:
    exercise = _exercise(exercise_type, "Yo como pan.", ("Yo", "como", "pan"))
    assert answer_matches(exercise, "yo como pan") is True
    assert answer_matches(exercise, "YO  COMO   PAN!") is True
    assert answer_matches(exercise, "como yo pan") is False


def test_fill_in_the_blank_keeps_punctuation() -> None:
    exercise = _exercise(ExerciseType.FILL_IN_THE_BLANK, "Bebo")
    assert answer_matches(exercise, "  bebo ") is True
    assert answer_matches(exercise, "bebo.") is False


def test_empty_answer_is_never_correct() -> None:
    assert answer_matches(_exercise(ExerciseType.SELECT_MEANING, "", ("",)), "") is False
    assert answer_matches(_exercise(ExerciseType.FILL_IN_THE_BLANK, "x"), "   ") is False


def test_word_bank_answer_joins_in_selection_order() -> None:
    assert word_bank_answer(["Yo", "como", "pan"]) == "Yo como pan"
    assert word_bank_answer([]) == ""


def test_duplicate_bank_words_disable_one_slot_per_selection() -> None:
    options = ["the", "cat", "the", "dog"]
    assert disabled_slots(options, []) == set()
    assert disabled_slots(options, ["the"]) == {0}
    assert disabled_slots(options, ["the", "the"]) == {0, 2}
    assert is_slot_disabled(options, ["the", "cat"], 1) is True
    assert is_slot_disabled(options, ["the", "cat"], 2) is False
