"""Lesson session state machine.

A session is an immutable `SessionState` value. Every transition is a pure
function taking the current state and returning the next one, so a UI shell
(or a test) can drive a lesson without any rendering harness:

    IDLE --submit/skip--> CORRECT | WRONG --advance--> IDLE | COMPLETE
    IDLE | CORRECT | WRONG --countdown hits 0--> TIME_UP
    any non-terminal --exit--> EXITED

`LessonSession` wraps one state together with the asyncio countdown task for
timer mode.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import Enum

from .content_loader import validate_lesson
from .matching import answer_matches, is_slot_disabled, word_bank_answer
from .models import CHOICE_TYPES, FREE_TEXT_TYPES, WORD_BANK_TYPES, Exercise, Lesson, SessionResult
from .scoring import DEFAULT_POLICY, ScoringPolicy, compute_result

logger = logging.getLogger(__name__)

DEFAULT_TIME_BUDGET = 120


class SessionPhase(str, Enum):
    """Session lifecycle phase."""

    IDLE = "idle"
    CORRECT = "correct"
    WRONG = "wrong"
    TIME_UP = "time_up"
    COMPLETE = "complete"
    EXITED = "exited"


FEEDBACK_PHASES = frozenset({SessionPhase.CORRECT, SessionPhase.WRONG})
TERMINAL_PHASES = frozenset({SessionPhase.TIME_UP, SessionPhase.COMPLETE, SessionPhase.EXITED})


class InvalidTransition(RuntimeError):
    """Transition requested from a phase that does not allow it."""


@dataclass(frozen=True)
class SessionState:
    """Snapshot of one running lesson."""

    lesson: Lesson
    hearts: int
    timer_enabled: bool = False
    time_budget: int = 0
    time_remaining: int = 0
    current_index: int = 0
    correct_count: int = 0
    mistake_count: int = 0
    phase: SessionPhase = SessionPhase.IDLE
    selected_option: str | None = None
    selected_words: tuple[str, ...] = ()
    typed_text: str = ""
    last_answer: str = ""

    @property
    def current_exercise(self) -> Exercise:
        return self.lesson.exercises[self.current_index]

    @property
    def is_last_exercise(self) -> bool:
        return self.current_index == len(self.lesson.exercises) - 1

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def hearts_exhausted(self) -> bool:
        """Zero hearts is reported to the UI but never blocks the lesson."""
        return not self.timer_enabled and self.hearts == 0

    @property
    def progress(self) -> float:
        """Fraction of exercises already passed, for progress bars."""
        if self.phase == SessionPhase.COMPLETE:
            return 1.0
        return self.current_index / len(self.lesson.exercises)


def start_session(
    lesson: Lesson,
    hearts: int = 5,
    *,
    timer_enabled: bool = False,
    time_budget: int = DEFAULT_TIME_BUDGET,
) -> SessionState:
    """Validate lesson shape and return the initial state."""
    validate_lesson(lesson)
    if timer_enabled and time_budget <= 0:
        raise ValueError("Timer budget must be positive.")
    budget = time_budget if timer_enabled else 0
    return SessionState(
        lesson=lesson,
        hearts=max(0, hearts),
        timer_enabled=timer_enabled,
        time_budget=budget,
        time_remaining=budget,
    )


def _require(state: SessionState, *phases: SessionPhase, action: str) -> None:
    if state.phase not in phases:
        raise InvalidTransition(f"Cannot {action} while session is {state.phase.value}.")


def select_option(state: SessionState, option: str) -> SessionState:
    """Choose one option for a multiple-choice exercise."""
    _require(state, SessionPhase.IDLE, action="select an option")
    exercise = state.current_exercise
    if exercise.type not in CHOICE_TYPES:
        raise InvalidTransition(f"{exercise.type.value} has no single-choice options.")
    if option not in exercise.options:
        raise ValueError(f"Unknown option: {option}")
    return replace(state, selected_option=option)


def add_word(state: SessionState, slot_index: int) -> SessionState:
    """Append the word in one bank slot to the assembled answer."""
    _require(state, SessionPhase.IDLE, action="select a word")
    exercise = state.current_exercise
    if exercise.type not in WORD_BANK_TYPES:
        raise InvalidTransition(f"{exercise.type.value} has no word bank.")
    if not 0 <= slot_index < len(exercise.options):
        raise IndexError(slot_index)
    if is_slot_disabled(exercise.options, state.selected_words, slot_index):
        raise InvalidTransition(f"Word bank slot {slot_index} is already used.")
    return replace(state, selected_words=state.selected_words + (exercise.options[slot_index],))


def remove_word(state: SessionState, position: int) -> SessionState:
    """Drop one word from the assembled answer, freeing its bank slot."""
    _require(state, SessionPhase.IDLE, action="remove a word")
    if not 0 <= position < len(state.selected_words):
        raise IndexError(position)
    words = state.selected_words[:position] + state.selected_words[position + 1 :]
    return replace(state, selected_words=words)


def type_answer(state: SessionState, text: str) -> SessionState:
    """Set free-text input for a fill-in-the-blank exercise."""
    _require(state, SessionPhase.IDLE, action="type an answer")
    exercise = state.current_exercise
    if exercise.type not in FREE_TEXT_TYPES:
        raise InvalidTransition(f"{exercise.type.value} does not take typed input.")
    return replace(state, typed_text=text)


def current_answer(state: SessionState) -> str:
    """Return the answer assembled from the current selection."""
    exercise = state.current_exercise
    if exercise.type in CHOICE_TYPES:
        return state.selected_option or ""
    if exercise.type in WORD_BANK_TYPES:
        return word_bank_answer(state.selected_words)
    return state.typed_text


def _spend_heart(state: SessionState) -> int:
    if state.timer_enabled:
        return state.hearts
    return max(0, state.hearts - 1)


def submit(state: SessionState, answer: str | None = None) -> SessionState:
    """Check an answer for the current exercise.

    Without an explicit `answer` the current selection is submitted.
    """
    _require(state, SessionPhase.IDLE, action="submit")
    submitted = current_answer(state) if answer is None else answer
    if not submitted.strip():
        raise InvalidTransition("Nothing selected to check.")
    if answer_matches(state.current_exercise, submitted):
        return replace(
            state,
            phase=SessionPhase.CORRECT,
            correct_count=state.correct_count + 1,
            last_answer=submitted,
        )
    return replace(
        state,
        phase=SessionPhase.WRONG,
        mistake_count=state.mistake_count + 1,
        hearts=_spend_heart(state),
        last_answer=submitted,
    )


def skip(state: SessionState) -> SessionState:
    """Give up on the current exercise; counts as a mistake and reveals the answer."""
    _require(state, SessionPhase.IDLE, action="skip")
    return replace(
        state,
        phase=SessionPhase.WRONG,
        mistake_count=state.mistake_count + 1,
        hearts=_spend_heart(state),
        last_answer="",
    )


def advance(state: SessionState) -> SessionState:
    """Leave feedback and move to the next exercise or complete the lesson."""
    _require(state, *FEEDBACK_PHASES, action="continue")
    if state.is_last_exercise:
        logger.debug("Lesson %s complete", state.lesson.id)
        return replace(state, phase=SessionPhase.COMPLETE)
    return replace(
        state,
        phase=SessionPhase.IDLE,
        current_index=state.current_index + 1,
        selected_option=None,
        selected_words=(),
        typed_text="",
        last_answer="",
    )


def tick(state: SessionState, seconds: int = 1) -> SessionState:
    """Count the timer down; stray ticks on untimed or finished sessions are ignored."""
    if not state.timer_enabled or state.is_terminal or seconds <= 0:
        return state
    remaining = max(0, state.time_remaining - seconds)
    if remaining == 0:
        return time_expire(replace(state, time_remaining=0))
    return replace(state, time_remaining=remaining)


def time_expire(state: SessionState) -> SessionState:
    """End a timed session because the countdown ran out."""
    if not state.timer_enabled:
        raise InvalidTransition("Session has no timer.")
    _require(state, SessionPhase.IDLE, *FEEDBACK_PHASES, action="expire")
    logger.debug("Lesson %s ran out of time", state.lesson.id)
    return replace(state, phase=SessionPhase.TIME_UP)


def exit_session(state: SessionState) -> SessionState:
    """Abandon the session; no XP is awarded."""
    _require(state, SessionPhase.IDLE, *FEEDBACK_PHASES, action="exit")
    return replace(state, phase=SessionPhase.EXITED)


def time_taken(state: SessionState) -> int:
    """Return seconds used in timer mode, otherwise 0."""
    if not state.timer_enabled:
        return 0
    return state.time_budget - state.time_remaining


def finish(state: SessionState, policy: ScoringPolicy = DEFAULT_POLICY) -> SessionResult:
    """Score a completed session."""
    _require(state, SessionPhase.COMPLETE, action="score")
    return compute_result(
        state.correct_count,
        state.mistake_count,
        state.timer_enabled,
        state.time_remaining,
        time_budget=state.time_budget,
        policy=policy,
    )


SleepFn = Callable[[float], Awaitable[None]]
ChangeFn = Callable[[SessionState], None]


class LessonSession:
    """Mutable holder for one session plus its countdown task."""

    def __init__(
        self,
        state: SessionState,
        *,
        on_change: ChangeFn | None = None,
        tick_interval: float = 1.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._state = state
        self._on_change = on_change
        self._tick_interval = tick_interval
        self._sleep = sleep
        self._countdown: asyncio.Task[None] | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def countdown_running(self) -> bool:
        return self._countdown is not None and not self._countdown.done()

    def start_countdown(self) -> asyncio.Task[None] | None:
        """Start ticking once per interval; requires a running event loop."""
        if not self._state.timer_enabled or self._state.is_terminal or self.countdown_running:
            return None
        self._countdown = asyncio.get_running_loop().create_task(self._run_countdown())
        return self._countdown

    async def _run_countdown(self) -> None:
        while not self._state.is_terminal:
            await self._sleep(self._tick_interval)
            if self._state.is_terminal:
                break
            self._apply(tick(self._state))

    def _apply(self, state: SessionState) -> SessionState:
        self._state = state
        if state.is_terminal:
            self.cancel_countdown()
        if self._on_change is not None:
            self._on_change(state)
        return state

    def cancel_countdown(self) -> None:
        """Stop further ticks."""
        task = self._countdown
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def select_option(self, option: str) -> SessionState:
        return self._apply(select_option(self._state, option))

    def add_word(self, slot_index: int) -> SessionState:
        return self._apply(add_word(self._state, slot_index))

    def remove_word(self, position: int) -> SessionState:
        return self._apply(remove_word(self._state, position))

    def type_answer(self, text: str) -> SessionState:
        return self._apply(type_answer(self._state, text))

    def submit(self, answer: str | None = None) -> SessionState:
        return self._apply(submit(self._state, answer))

    def skip(self) -> SessionState:
        return self._apply(skip(self._state))

    def advance(self) -> SessionState:
        return self._apply(advance(self._state))

    def exit(self) -> SessionState:
        return self._apply(exit_session(self._state))

    def result(self, policy: ScoringPolicy = DEFAULT_POLICY) -> SessionResult:
        return finish(self._state, policy)
