import asyncio
import json
from collections.abc import Sequence
from datetime import date
from pathlib import Path
from typing import Any

import pytest
from conftest import build_lesson

from lingotrainer.config import Settings
from lingotrainer.models import (
    LESSON_SOURCE_CACHE,
    LESSON_SOURCE_FALLBACK,
    LESSON_SOURCE_PROVIDER,
    Difficulty,
    Exercise,
    UserState,
)
from lingotrainer.progress import PersistenceError, ProgressStore
from lingotrainer.progression import InsufficientXPError
from lingotrainer.provider import ContentGenerationFailed, TransientProviderError
from lingotrainer.service import PRACTICE_TOPIC_ID, LearnService
from lingotrainer.session import InvalidTransition, SessionPhase, advance, exit_session, skip, submit, tick

TODAY = date(2025, 3, 10)


class FakeProvider:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, object]] = []

    async def generate_lesson(
        self, language_name: str, topic_name: str, difficulty: Difficulty
    ) -> tuple[Exercise, ...]:
        self.calls.append(("lesson", (language_name, topic_name, difficulty)))
        if self.fail:
            raise ContentGenerationFailed("gave up", cause=TransientProviderError("503"), attempts=4)
        return build_lesson().exercises

    async def generate_practice(
        self, language_name: str, topic_names: Sequence[str], difficulty: Difficulty
    ) -> tuple[Exercise, ...]:
        self.calls.append(("practice", tuple(topic_names)))
        if self.fail:
            raise ContentGenerationFailed("gave up", cause=TransientProviderError("503"), attempts=4)
        return build_lesson().exercises

    async def synthesize_speech(self, text: str, language_code: str) -> bytes | None:
        self.calls.append(("speech", (text, language_code)))
        return b"audio"


class BrokenStore(ProgressStore):
    def save_user_state(self, state: UserState) -> None:
        raise PersistenceError("disk full")


def _service(
    tmp_path: Path, provider: FakeProvider | None = None, store: ProgressStore | None = None, today: date = TODAY
) -> LearnService:
    return LearnService(
        Settings(_env_file=None, data_dir=tmp_path),
        store=store or ProgressStore(":memory:"),
        provider=provider or FakeProvider(),  # type: ignore[arg-type]
        today=lambda: today,
    )


def _complete(service: LearnService, wrong: int = 0) -> Any:
    lesson = asyncio.run(service.start_lesson("basics"))
    state = service.begin_session(lesson)
    while state.phase != SessionPhase.COMPLETE:
        if wrong > 0:
            state = submit(state, "nope")
            wrong -= 1
        else:
            state = submit(state, state.current_exercise.correct_answer)
        state = advance(state)
    return service.finish_session(state)


def test_fresh_start_uses_settings_and_catalog(tmp_path: Path) -> None:
    settings = Settings(_env_file=None, data_dir=tmp_path, starting_hearts=4, daily_goal=30)
    provider: Any = FakeProvider()
    service = LearnService(settings, store=ProgressStore(":memory:"), provider=provider, today=lambda: TODAY)
    assert service.state.hearts == 4
    assert service.state.daily_goal == 30
    assert service.state.last_active_date == "2025-03-10"
    assert len(service.state.achievements) == 11
    assert service.progress.load_user_state() == service.state


def test_startup_rollover_applies_to_stored_state(tmp_path: Path) -> None:
    store = ProgressStore(":memory:")
    store.save_user_state(UserState(streak=5, daily_xp=40, last_active_date="2025-03-01"))
    service = _service(tmp_path, store=store)
    assert service.state.streak == 1
    assert service.state.daily_xp == 0


def test_topic_states_follow_unlock_path(tmp_path: Path) -> None:
    service = _service(tmp_path)
    states = service.list_topic_states()
    assert states[0].unlocked is True
    assert states[1].unlocked is False
    assert all(state.level == 0 and not state.cached for state in states)


def test_start_lesson_from_provider(tmp_path: Path) -> None:
    provider = FakeProvider()
    service = _service(tmp_path, provider)
    lesson = asyncio.run(service.start_lesson("basics"))
    assert lesson.id == "basics-beginner"
    assert lesson.source == LESSON_SOURCE_PROVIDER
    assert provider.calls == [("lesson", ("Spanish", "Basics", Difficulty.BEGINNER))]


def test_start_lesson_locked_topic_rejected(tmp_path: Path) -> None:
    service = _service(tmp_path)
    with pytest.raises(ValueError):
        asyncio.run(service.start_lesson("food"))
    with pytest.raises(KeyError):
        asyncio.run(service.start_lesson("unknown"))


def test_start_lesson_falls_back_when_generation_fails(tmp_path: Path) -> None:
    service = _service(tmp_path, FakeProvider(fail=True))
    lesson = asyncio.run(service.start_lesson("basics"))
    assert lesson.source == LESSON_SOURCE_FALLBACK
    assert len(lesson.exercises) == 3
    assert service.cached_topic_ids() == set()


def test_download_then_play_offline(tmp_path: Path) -> None:
    provider = FakeProvider()
    service = _service(tmp_path, provider)
    asyncio.run(service.download_lesson("basics"))
    assert service.cached_topic_ids() == {"basics"}
    assert service.list_topic_states()[0].cached is True

    provider.fail = True
    lesson = asyncio.run(service.start_lesson("basics"))
    assert lesson.source == LESSON_SOURCE_CACHE

    assert service.delete_download("basics") is True
    assert service.cached_topic_ids() == set()


def test_download_failure_propagates_and_caches_nothing(tmp_path: Path) -> None:
    service = _service(tmp_path, FakeProvider(fail=True))
    with pytest.raises(ContentGenerationFailed):
        asyncio.run(service.download_lesson("basics"))
    assert service.progress.list_cached_lessons() == {}


def test_cache_is_scoped_by_language_and_difficulty(tmp_path: Path) -> None:
    service = _service(tmp_path)
    asyncio.run(service.download_lesson("basics"))
    service.set_difficulty("advanced")
    assert service.cached_topic_ids() == set()
    service.set_difficulty(Difficulty.BEGINNER)
    service.set_language("fr")
    assert service.cached_topic_ids() == set()
    with pytest.raises(ValueError):
        service.set_language("xx")


def test_perfect_lesson_updates_progress(tmp_path: Path) -> None:
    service = _service(tmp_path)
    outcome = _complete(service)
    assert outcome.result.xp == 15
    assert outcome.state.xp == 15
    assert outcome.state.daily_xp == 15
    assert outcome.state.streak == 2
    assert outcome.state.topic_level("basics") == 1
    assert outcome.state.hearts == 5
    assert {achievement.id for achievement in outcome.newly_unlocked} == {"first_lesson", "perfect_1"}
    assert outcome.warnings == ()
    assert service.progress.load_user_state() == service.state
    assert service.list_topic_states()[1].unlocked is True


def test_second_lesson_same_day_keeps_streak(tmp_path: Path) -> None:
    service = _service(tmp_path)
    _complete(service)
    outcome = _complete(service, wrong=2)
    assert outcome.state.streak == 2
    assert outcome.state.hearts == 3
    assert outcome.state.xp == 15 + 11
    assert outcome.newly_unlocked == ()


def test_time_up_awards_nothing(tmp_path: Path) -> None:
    service = _service(tmp_path)
    service.toggle_timer()
    state = service.begin_session(asyncio.run(service.start_lesson("basics")))
    assert state.time_budget == 120
    state = tick(state, 120)
    assert state.phase == SessionPhase.TIME_UP
    outcome = service.finish_session(state)
    assert outcome.result is None
    assert outcome.state.xp == 0
    assert outcome.state.topic_level("basics") == 0


def test_exit_with_no_hearts_refills(tmp_path: Path) -> None:
    store = ProgressStore(":memory:")
    store.save_user_state(UserState(hearts=1, last_active_date="2025-03-10"))
    service = _service(tmp_path, store=store)
    state = skip(service.begin_session(asyncio.run(service.start_lesson("basics"))))
    assert state.hearts == 0
    outcome = service.finish_session(exit_session(state))
    assert outcome.result is None
    assert outcome.state.hearts == 5


def test_finish_running_session_rejected(tmp_path: Path) -> None:
    service = _service(tmp_path)
    state = service.begin_session(asyncio.run(service.start_lesson("basics")))
    with pytest.raises(InvalidTransition):
        service.finish_session(state)


def test_practice_requires_learned_topic_and_keeps_levels(tmp_path: Path) -> None:
    provider = FakeProvider()
    service = _service(tmp_path, provider)
    with pytest.raises(ValueError):
        asyncio.run(service.start_practice())

    _complete(service)
    lesson = asyncio.run(service.start_practice())
    assert lesson.id == "practice-beginner"
    assert lesson.topic_id == PRACTICE_TOPIC_ID
    assert provider.calls[-1] == ("practice", ("Basics",))

    state = service.begin_session(lesson)
    while state.phase != SessionPhase.COMPLETE:
        state = advance(submit(state, state.current_exercise.correct_answer))
    outcome = service.finish_session(state)
    assert outcome.state.xp == 30
    assert outcome.state.topic_levels == {"basics": 1}
    assert PRACTICE_TOPIC_ID not in outcome.state.completed_lessons


def test_practice_fallback_is_tagged(tmp_path: Path) -> None:
    provider = FakeProvider()
    service = _service(tmp_path, provider)
    _complete(service)
    provider.fail = True
    lesson = asyncio.run(service.start_practice())
    assert lesson.source == LESSON_SOURCE_FALLBACK
    assert lesson.topic_id == PRACTICE_TOPIC_ID


def test_persistence_failure_becomes_warning(tmp_path: Path) -> None:
    service = _service(tmp_path, store=BrokenStore(":memory:"))
    assert service.take_warnings() == ["disk full"]
    outcome = _complete(service)
    assert outcome.warnings == ("disk full",)
    assert service.state.xp == 15
    assert service.state.topic_level("basics") == 1
    assert service.take_warnings() == ["disk full"]
    assert service.take_warnings() == []


def test_unreadable_lesson_cache_becomes_warning(tmp_path: Path) -> None:
    store = ProgressStore(":memory:")
    service = _service(tmp_path, store=store)
    service.take_warnings()
    with store._conn:  # noqa: SLF001
        store._conn.execute("DROP TABLE lesson_cache")  # noqa: SLF001

    states = service.list_topic_states()
    assert len(states) == 10
    assert not any(state.cached for state in states)
    assert service.cached_topic_ids() == set()
    warnings = service.take_warnings()
    assert warnings
    assert all("lesson cache" in warning for warning in warnings)


def test_shop_and_topic_reset(tmp_path: Path) -> None:
    store = ProgressStore(":memory:")
    store.save_user_state(UserState(xp=60, topic_levels={"basics": 3}, last_active_date="2025-03-10"))
    service = _service(tmp_path, store=store)
    assert service.buy_streak_freeze().xp == 10
    assert service.state.streak_freeze_active is True
    with pytest.raises(ValueError):
        service.buy_streak_freeze()
    service.reset_topic("basics")
    assert service.state.topic_level("basics") == 0
    with pytest.raises(KeyError):
        service.reset_topic("nope")


def test_shop_rejects_short_xp(tmp_path: Path) -> None:
    service = _service(tmp_path)
    with pytest.raises(InsufficientXPError):
        service.buy_streak_freeze()


def test_daily_goal_progress(tmp_path: Path) -> None:
    service = _service(tmp_path)
    _complete(service)
    assert service.daily_goal_progress() == (30.0, False)


def test_speak_uses_current_language(tmp_path: Path) -> None:
    provider = FakeProvider()
    service = _service(tmp_path, provider)
    service.set_language("de")
    assert asyncio.run(service.speak("Hallo")) == b"audio"
    assert provider.calls[-1] == ("speech", ("Hallo", "de"))


def test_export_import_round_trip(tmp_path: Path) -> None:
    source = _service(tmp_path)
    _complete(source)
    asyncio.run(source.download_lesson("basics"))
    export_path = tmp_path / "exports" / "progress.json"
    summary = source.export_progress(export_path)
    assert summary.xp == 15
    assert summary.cached_lessons == 1
    assert summary.unlocked_achievements == 2

    payload = json.loads(export_path.read_text(encoding="utf-8"))
    assert payload["format_version"] == 1
    assert payload["source"]["schema_version"] == 1

    target = _service(tmp_path)
    imported = target.import_progress(export_path)
    assert imported.xp == 15
    assert imported.cached_lessons == 1
    assert target.state.topic_levels == {"basics": 1}
    assert target.cached_topic_ids() == {"basics"}
    assert target.progress.load_user_state() == target.state


def test_import_applies_rollover_and_normalizes(tmp_path: Path) -> None:
    path = tmp_path / "old.json"
    path.write_text(
        json.dumps(
            {
                "format_version": "1",
                "user_state": {
                    "xp": 90,
                    "streak": 9,
                    "daily_xp": 30,
                    "current_language": "zz",
                    "last_active_date": "2025-02-01",
                },
            }
        ),
        encoding="utf-8",
    )
    service = _service(tmp_path)
    summary = service.import_progress(path)
    assert summary.cached_lessons == 0
    assert service.state.xp == 90
    assert service.state.streak == 1
    assert service.state.daily_xp == 0
    assert service.state.current_language == "es"
    assert len(service.state.achievements) == 11


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"format_version": "x", "user_state": {}},
        {"format_version": 99, "user_state": {}},
        {"format_version": 1},
    ],
)
def test_import_rejects_bad_files(tmp_path: Path, payload: object) -> None:
    path = tmp_path / "bad.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    service = _service(tmp_path)
    before = service.state
    with pytest.raises(ValueError):
        service.import_progress(path)
    assert service.state == before
