"""Answer validation and word-bank slot bookkeeping."""

from __future__ import annotations

import re
from collections.abc import Sequence

from .models import CHOICE_TYPES, FREE_TEXT_TYPES, WORD_BANK_TYPES, Exercise

_PUNCTUATION = re.compile(r"[.,!?;:]")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, strip `.,!?;:` and collapse whitespace."""
    without_punctuation = _PUNCTUATION.sub("", text.lower())
    return _WHITESPACE.sub(" ", without_punctuation).strip()


def answer_matches(exercise: Exercise, answer: str) -> bool:
    """Return whether a submitted answer is correct for the exercise.

    - choice types compare the chosen option to the correct answer exactly.
    - word-bank types compare case-insensitively with punctuation removed.
    - fill-in-the-blank compares trimmed, case-insensitive text without
      removing punctuation.

    An empty submission is never correct.
    """
    if not answer.strip():
        return False
    if exercise.type in CHOICE_TYPES:
        return answer == exercise.correct_answer
    if exercise.type in WORD_BANK_TYPES:
        expected = normalize_text(exercise.correct_answer)
        return bool(expected) and normalize_text(answer) == expected
    if exercise.type in FREE_TEXT_TYPES:
        return answer.strip().lower() == exercise.correct_answer.strip().lower()
    raise ValueError(f"Unsupported exercise type: {exercise.type}")


def word_bank_answer(selected_words: Sequence[str]) -> str:
    """Join selected bank words in selection order."""
    return " ".join(selected_words)


def is_slot_disabled(options: Sequence[str], selected_words: Sequence[str], index: int) -> bool:
    """Return whether bank slot `index` is already used by the current selection.

    A slot is used when the word has been selected more times than it occurs
    in the bank before this slot.
    """
    word = options[index]
    selected = len([item for item in selected_words if item == word])
    earlier = len([item for item in options[:index] if item == word])
    return selected > earlier


def disabled_slots(options: Sequence[str], selected_words: Sequence[str]) -> set[int]:
    """Return indices of every used bank slot."""
    return {index for index in range(len(options)) if is_slot_disabled(options, selected_words, index)}
