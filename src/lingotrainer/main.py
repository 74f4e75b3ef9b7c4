"""CLI entrypoint for the gamified language trainer."""

from __future__ import annotations

import argparse
import asyncio
import logging
import time
from collections.abc import Callable

from .config import get_settings
from .models import (
    CHOICE_TYPES,
    LESSON_SOURCE_CACHE,
    LESSON_SOURCE_FALLBACK,
    WORD_BANK_TYPES,
    Difficulty,
    Exercise,
    Lesson,
)
from .progress import PersistenceError
from .progression import InsufficientXPError
from .provider import ContentProviderError
from .service import LearnService, LessonOutcome
from .session import (
    InvalidTransition,
    SessionPhase,
    SessionState,
    add_word,
    advance,
    exit_session,
    select_option,
    skip,
    submit,
    tick,
    type_answer,
)

InputFn = Callable[[str], str]
PrintFn = Callable[[str], None]
Clock = Callable[[], float]
BACK_COMMANDS = {":back", ":b", "back"}
MENU_QUIT_COMMANDS = {"q"}
FLOW_EXIT_COMMANDS = {":quit", ":exit", ":q"}
MENU_BACK_COMMANDS = {"b"}
SKIP_COMMANDS = {":skip", ":s"}
LISTEN_COMMANDS = {":hear", ":h"}


class QuitApp(Exception):
    """Signal immediate app exit from nested menu flows."""


def _service() -> LearnService:
    """Create app service from environment settings."""
    return LearnService(get_settings())


def run(argv: list[str] | None = None) -> int:
    """Run the CLI application."""
    parser = argparse.ArgumentParser(prog="lingotrainer", description="Gamified language lessons")
    parser.add_argument("command", nargs="?", default="play", choices=["play"])
    parser.add_argument("--log-level", default=None, help="Override LINGOTRAINER_LOG_LEVEL")
    args = parser.parse_args(argv)
    level = (args.log_level or get_settings().log_level).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return play_shell()


def play_shell(input_fn: InputFn = input, print_fn: PrintFn = print) -> int:
    """Run persistent menu-driven shell."""
    service = _service()
    try:
        while True:
            _print_warnings(service, print_fn)
            _print_header(service, print_fn)
            print_fn("1) Learn a topic")
            print_fn("2) Practice")
            print_fn("3) Profile")
            print_fn("4) Shop")
            print_fn("5) Downloads")
            print_fn("6) Settings")
            print_fn("7) Export progress")
            print_fn("8) Import progress")
            print_fn("q) Quit")
            choice = input_fn("Choose: ").strip().lower()

            if choice == "1":
                _learn_topic_flow(service, input_fn, print_fn)
            elif choice == "2":
                _practice_flow(service, input_fn, print_fn)
            elif choice == "3":
                _profile_flow(service, print_fn)
            elif choice == "4":
                _shop_flow(service, input_fn, print_fn)
            elif choice == "5":
                _downloads_flow(service, input_fn, print_fn)
            elif choice == "6":
                _settings_flow(service, input_fn, print_fn)
            elif choice == "7":
                _export_progress_flow(service, input_fn, print_fn)
            elif choice == "8":
                _import_progress_flow(service, input_fn, print_fn)
            elif choice in MENU_QUIT_COMMANDS:
                return 0
            else:
                print_fn("Invalid choice.")
    except QuitApp:
        return 0
    finally:
        service.close()


def _print_header(service: LearnService, print_fn: PrintFn) -> None:
    state = service.state
    language = service.language
    percent, reached = service.daily_goal_progress()
    print_fn("\n=== LingoTrainer ===")
    print_fn(
        f"{language.flag} {language.name} | {state.difficulty.value} | "
        f"XP {state.xp} | Streak {state.streak} | Hearts {state.hearts}"
    )
    goal = "reached" if reached else f"{percent:.0f}%"
    print_fn(f"Daily goal: {state.daily_xp}/{state.daily_goal} XP ({goal})")


def _print_warnings(service: LearnService, print_fn: PrintFn) -> None:
    for warning in service.take_warnings():
        print_fn(f"Warning: progress may not be saved ({warning})")


def _learn_topic_flow(service: LearnService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Choose an unlocked topic and play its lesson."""
    states = service.list_topic_states()
    print_fn("\n=== Learning Path ===")
    for idx, state in enumerate(states, start=1):
        if not state.unlocked:
            marker = "locked"
        elif state.mastered:
            marker = "mastered"
        else:
            marker = f"level {state.level}/5"
        offline = " [offline]" if state.cached else ""
        print_fn(f"{idx}) {state.topic.icon} {state.topic.name} ({marker}){offline}")
    print_fn("b) Back")
    print_fn("q) Quit")

    choice = input_fn("Choose topic: ").strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return
    if choice in MENU_QUIT_COMMANDS:
        raise QuitApp()
    if not choice.isdigit() or not (0 <= int(choice) - 1 < len(states)):
        print_fn("Invalid choice.")
        return
    selected = states[int(choice) - 1]
    if not selected.unlocked:
        print_fn("That topic is locked. Finish the previous topic first.")
        return

    print_fn(f"Preparing {selected.topic.name}...")
    lesson = asyncio.run(service.start_lesson(selected.topic.id))
    _run_session(service, lesson, input_fn, print_fn)


def _practice_flow(service: LearnService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Play a review lesson across learned topics."""
    print_fn("Preparing practice...")
    try:
        lesson = asyncio.run(service.start_practice())
    except ValueError as exc:
        print_fn(str(exc))
        return
    _run_session(service, lesson, input_fn, print_fn)


def _run_session(
    service: LearnService,
    lesson: Lesson,
    input_fn: InputFn,
    print_fn: PrintFn,
    clock: Clock = time.monotonic,
) -> LessonOutcome:
    """Drive one lesson to a terminal phase, then record the outcome."""
    state = service.begin_session(lesson)
    print_fn(f"\n=== {lesson.title} ===")
    if lesson.source == LESSON_SOURCE_FALLBACK:
        print_fn("Content service unavailable; playing an offline fallback lesson.")
    elif lesson.source == LESSON_SOURCE_CACHE:
        print_fn("Playing downloaded lesson.")
    print_fn("Type :skip to skip, :hear for audio, :q to leave the lesson.")
    if state.timer_enabled:
        print_fn(f"Timer on: {state.time_budget}s for the whole lesson.")

    started = clock()
    while not state.is_terminal:
        if state.phase == SessionPhase.IDLE:
            _print_exercise(state, print_fn)
            text = input_fn("Answer: ").strip()
            state = _elapse(state, started, clock)
            if state.is_terminal:
                break
            lowered = text.lower()
            if lowered in FLOW_EXIT_COMMANDS or lowered in BACK_COMMANDS:
                state = exit_session(state)
                break
            if lowered in LISTEN_COMMANDS:
                _listen(service, state.current_exercise, print_fn)
                continue
            if lowered in SKIP_COMMANDS:
                state = skip(state)
            else:
                try:
                    state = _answer(state, text)
                except (InvalidTransition, ValueError, IndexError) as exc:
                    print_fn(f"Could not check that answer: {exc}")
                    continue
            _print_feedback(state, print_fn)
        else:
            input_fn("Press Enter to continue: ")
            state = _elapse(state, started, clock)
            if not state.is_terminal:
                state = advance(state)

    outcome = service.finish_session(state)
    _print_outcome(state, outcome, print_fn)
    return outcome


def _elapse(state: SessionState, started: float, clock: Clock) -> SessionState:
    """Feed wall-clock seconds since the lesson started into the countdown."""
    if not state.timer_enabled:
        return state
    elapsed = int(clock() - started)
    used = state.time_budget - state.time_remaining
    return tick(state, elapsed - used)


def _answer(state: SessionState, text: str) -> SessionState:
    """Translate terminal input into selection transitions and submit."""
    exercise = state.current_exercise
    if exercise.type in CHOICE_TYPES:
        if text in exercise.options:
            return submit(select_option(state, text))
        if text.isdigit() and 0 < int(text) <= len(exercise.options):
            return submit(select_option(state, exercise.options[int(text) - 1]))
        return submit(select_option(state, text))
    if exercise.type in WORD_BANK_TYPES:
        slots = text.split()
        if slots and all(slot.isdigit() for slot in slots):
            for slot in slots:
                state = add_word(state, int(slot) - 1)
            return submit(state)
        return submit(state, text)
    return submit(type_answer(state, text))


def _print_exercise(state: SessionState, print_fn: PrintFn) -> None:
    exercise = state.current_exercise
    status = f"Exercise {state.current_index + 1}/{len(state.lesson.exercises)}"
    if state.timer_enabled:
        status += f" | {state.time_remaining}s left"
    else:
        status += f" | Hearts {state.hearts}"
    print_fn(f"\n{status}")
    print_fn(f"{exercise.type.value.replace('_', ' ').title()}: {exercise.prompt}")
    if exercise.pronunciation:
        print_fn(f"({exercise.pronunciation})")
    if exercise.type in CHOICE_TYPES:
        for idx, option in enumerate(exercise.options, start=1):
            print_fn(f"  {idx}) {option}")
    elif exercise.type in WORD_BANK_TYPES:
        bank = "  ".join(f"{idx}:{word}" for idx, word in enumerate(exercise.options, start=1))
        print_fn(f"Word bank: {bank}")
        print_fn("Enter slot numbers in order, or type the sentence.")


def _print_feedback(state: SessionState, print_fn: PrintFn) -> None:
    exercise = state.current_exercise
    if state.phase == SessionPhase.CORRECT:
        print_fn("Correct!")
    else:
        print_fn(f"Incorrect. Correct answer: {exercise.correct_answer}")
    if exercise.explanation:
        print_fn(f"Note: {exercise.explanation}")
    if state.hearts_exhausted:
        print_fn("Out of hearts! Keep going; they refill after the lesson.")


def _print_outcome(state: SessionState, outcome: LessonOutcome, print_fn: PrintFn) -> None:
    if state.phase == SessionPhase.TIME_UP:
        print_fn("\nTime's up! No XP this time. Try again.")
        return
    if outcome.result is None:
        print_fn("\nLesson left. No XP awarded.")
        return
    result = outcome.result
    print_fn(f"\nLesson complete! +{result.xp} XP")
    print_fn(f"Mistakes: {result.mistakes}")
    if state.timer_enabled:
        print_fn(f"Time: {result.time_seconds}s")
    if result.is_perfect:
        print_fn("Perfect lesson!")
    for achievement in outcome.newly_unlocked:
        print_fn(f"Achievement unlocked: {achievement.icon} {achievement.title}")


def _listen(service: LearnService, exercise: Exercise, print_fn: PrintFn) -> None:
    """Save spoken audio for the prompt next to the progress database."""
    audio = asyncio.run(service.speak(exercise.prompt))
    if audio is None:
        print_fn("Audio unavailable.")
        return
    path = service.settings.data_dir / "speech.mp3"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(audio)
    print_fn(f"Audio saved to {path}")


def _profile_flow(service: LearnService, print_fn: PrintFn) -> None:
    """Print learner stats and achievements."""
    state = service.state
    print_fn("\n=== Profile ===")
    print_fn(f"Total XP: {state.xp}")
    print_fn(f"Streak: {state.streak} day(s)" + (" (freeze active)" if state.streak_freeze_active else ""))
    print_fn(f"Lessons completed: {len(state.completed_lessons)}")
    print_fn(f"Topics mastered: {state.mastered_topic_count()}")
    print_fn(f"Perfect lessons: {state.perfect_lesson_count}")
    print_fn("\nAchievements")
    for achievement in state.achievements:
        mark = "x" if achievement.unlocked else " "
        print_fn(f"[{mark}] {achievement.icon} {achievement.title} - {achievement.description}")


def _shop_flow(service: LearnService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Spend XP on shop items."""
    cost = service.settings.streak_freeze_cost
    print_fn("\n=== Shop ===")
    print_fn(f"XP available: {service.state.xp}")
    status = "active" if service.state.streak_freeze_active else "not active"
    print_fn(f"1) Streak freeze ({cost} XP, {status})")
    print_fn("b) Back")
    choice = input_fn("Buy: ").strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return
    if choice in MENU_QUIT_COMMANDS:
        raise QuitApp()
    if choice != "1":
        print_fn("Invalid choice.")
        return
    try:
        service.buy_streak_freeze()
    except InsufficientXPError as exc:
        print_fn(f"Not enough XP. {exc}")
        return
    except ValueError as exc:
        print_fn(str(exc))
        return
    print_fn("Streak freeze equipped.")


def _downloads_flow(service: LearnService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Download or remove offline lessons for the current language and difficulty."""
    states = service.list_topic_states()
    print_fn("\n=== Downloads ===")
    print_fn(f"{service.language.name}, {service.state.difficulty.value}")
    for idx, state in enumerate(states, start=1):
        marker = "downloaded" if state.cached else "online only"
        print_fn(f"{idx}) {state.topic.name} ({marker})")
    print_fn("b) Back")
    choice = input_fn("Toggle topic: ").strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return
    if choice in MENU_QUIT_COMMANDS:
        raise QuitApp()
    if not choice.isdigit() or not (0 <= int(choice) - 1 < len(states)):
        print_fn("Invalid choice.")
        return

    selected = states[int(choice) - 1]
    try:
        if selected.cached:
            service.delete_download(selected.topic.id)
            print_fn(f"Removed download for {selected.topic.name}.")
        else:
            print_fn(f"Downloading {selected.topic.name}...")
            asyncio.run(service.download_lesson(selected.topic.id))
            print_fn("Download complete.")
    except (ContentProviderError, PersistenceError) as exc:
        print_fn(f"Download failed: {exc}")


def _settings_flow(service: LearnService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Change language, difficulty, timer mode, or reset a topic."""
    while True:
        state = service.state
        print_fn("\n=== Settings ===")
        print_fn(f"1) Language ({service.language.name})")
        print_fn(f"2) Difficulty ({state.difficulty.value})")
        print_fn(f"3) Timer mode ({'on' if state.timer_enabled else 'off'})")
        print_fn("4) Reset a topic")
        print_fn("b) Back")
        print_fn("q) Quit")
        choice = input_fn("Choose: ").strip().lower()
        if choice in MENU_BACK_COMMANDS:
            return
        if choice in MENU_QUIT_COMMANDS:
            raise QuitApp()

        if choice == "1":
            codes = ", ".join(sorted(service.languages))
            print_fn(f"Available: {codes}")
            code = input_fn("Language code: ").strip().lower()
            try:
                service.set_language(code)
            except ValueError as exc:
                print_fn(str(exc))
        elif choice == "2":
            for idx, difficulty in enumerate(Difficulty, start=1):
                print_fn(f"{idx}) {difficulty.value}")
            picked = input_fn("Difficulty: ").strip()
            levels = list(Difficulty)
            if picked.isdigit() and 0 < int(picked) <= len(levels):
                service.set_difficulty(levels[int(picked) - 1])
            else:
                print_fn("Invalid choice.")
        elif choice == "3":
            enabled = service.toggle_timer()
            print_fn(f"Timer mode {'on' if enabled else 'off'}.")
        elif choice == "4":
            _reset_topic_flow(service, input_fn, print_fn)
        else:
            print_fn("Invalid choice.")


def _reset_topic_flow(service: LearnService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Reset one topic level with explicit confirmation safeguard."""
    states = service.list_topic_states()
    for idx, state in enumerate(states, start=1):
        print_fn(f"{idx}) {state.topic.name} (level {state.level})")
    choice = input_fn("Topic to reset: ").strip()
    if not choice.isdigit() or not (0 <= int(choice) - 1 < len(states)):
        print_fn("Invalid choice.")
        return
    target = states[int(choice) - 1].topic
    confirm = input_fn(f"Type YES to reset '{target.name}' to level 0: ").strip()
    if confirm != "YES":
        print_fn("Reset cancelled.")
        return
    service.reset_topic(target.id)
    print_fn(f"Reset '{target.name}'.")


def _export_progress_flow(service: LearnService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Export learner progress to a JSON file."""
    print_fn("\n=== Export Progress ===")
    path_text = input_fn("Export file path: ").strip()
    if not path_text:
        print_fn("File path is required.")
        return
    try:
        summary = service.export_progress(path_text)
    except Exception as exc:
        print_fn(f"Export failed: {exc}")
        return
    print_fn(f"Exported progress to {path_text}")
    print_fn(f"- xp: {summary.xp}")
    print_fn(f"- topics: {summary.topic_count}")
    print_fn(f"- achievements: {summary.unlocked_achievements}")
    print_fn(f"- downloaded lessons: {summary.cached_lessons}")


def _import_progress_flow(service: LearnService, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Replace learner progress from a JSON file."""
    print_fn("\n=== Import Progress ===")
    path_text = input_fn("Import file path: ").strip()
    if not path_text:
        print_fn("File path is required.")
        return
    confirm = input_fn("Type YES to replace current progress: ").strip()
    if confirm != "YES":
        print_fn("Import cancelled.")
        return
    try:
        summary = service.import_progress(path_text)
    except Exception as exc:
        print_fn(f"Import failed: {exc}")
        return
    print_fn("Imported progress.")
    print_fn(f"- xp: {summary.xp}")
    print_fn(f"- topics: {summary.topic_count}")
    print_fn(f"- achievements: {summary.unlocked_achievements}")
    print_fn(f"- downloaded lessons: {summary.cached_lessons}")


def main_entry() -> None:
    """Console script entrypoint."""
    raise SystemExit(run())


if __name__ == "__main__":  # pragma: no cover
    main_entry()
