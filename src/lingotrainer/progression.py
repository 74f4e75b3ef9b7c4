"""Pure progress rules: applying lesson results, daily rollover, and shop items."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from datetime import date, timedelta

from .models import MAX_TOPIC_LEVEL, SessionResult, Topic, UserState
from .scoring import DEFAULT_POLICY, ScoringPolicy, is_fast_lesson

STREAK_FREEZE_COST = 50


class InsufficientXPError(ValueError):
    """Purchase costs more XP than the learner has."""


def apply_result(
    prior: UserState,
    topic_id: str,
    result: SessionResult,
    *,
    timer_enabled: bool = False,
    first_lesson_today: bool | None = None,
    update_topic: bool = True,
    today: date | None = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> UserState:
    """Return the next progress snapshot after a completed lesson.

    Every field is derived from `prior` in one step and returned as a new
    value, so callers never observe a half-applied update. The streak grows
    only on the first completion of the day, detected by `daily_xp == 0`
    unless `first_lesson_today` is given. Practice sessions pass
    `update_topic=False` and leave topic levels alone.
    """
    first_today = prior.daily_xp == 0 if first_lesson_today is None else first_lesson_today
    topic_levels = dict(prior.topic_levels)
    completed = prior.completed_lessons
    if update_topic:
        topic_levels[topic_id] = min(MAX_TOPIC_LEVEL, topic_levels.get(topic_id, 0) + 1)
        completed = completed | {topic_id}

    return replace(
        prior,
        xp=prior.xp + result.xp,
        daily_xp=prior.daily_xp + result.xp,
        streak=prior.streak + 1 if first_today else prior.streak,
        topic_levels=topic_levels,
        completed_lessons=completed,
        perfect_lesson_count=prior.perfect_lesson_count + (1 if result.is_perfect else 0),
        fast_lesson_count=prior.fast_lesson_count + (1 if is_fast_lesson(result, timer_enabled, policy) else 0),
        last_active_date=today.isoformat() if today is not None else prior.last_active_date,
    )


def daily_rollover(state: UserState, today: date) -> UserState:
    """Reset daily counters on the first start of a new day.

    The streak survives if the learner was active yesterday; otherwise an
    active streak freeze is consumed to keep it, and without one the streak
    falls back to 1. A blank `last_active_date` (first run) keeps the streak.
    """
    today_text = today.isoformat()
    if state.last_active_date == today_text:
        return state

    streak = state.streak
    freeze = state.streak_freeze_active
    yesterday = (today - timedelta(days=1)).isoformat()
    if state.last_active_date and state.last_active_date != yesterday:
        if freeze:
            freeze = False
        else:
            streak = 1
    return replace(state, daily_xp=0, streak=streak, streak_freeze_active=freeze, last_active_date=today_text)


def settle_hearts(state: UserState, remaining: int, max_hearts: int = 5) -> UserState:
    """Write session hearts back; an empty heart bar refills instead of blocking play."""
    hearts = max(0, min(remaining, max_hearts))
    if hearts == 0:
        hearts = max_hearts
    return replace(state, hearts=hearts)


def buy_streak_freeze(state: UserState, cost: int = STREAK_FREEZE_COST) -> UserState:
    """Spend XP on a streak freeze."""
    if state.streak_freeze_active:
        raise ValueError("Streak freeze is already active.")
    if state.xp < cost:
        raise InsufficientXPError(f"Streak freeze costs {cost} XP; you have {state.xp}.")
    return replace(state, xp=state.xp - cost, streak_freeze_active=True)


def reset_topic(state: UserState, topic_id: str) -> UserState:
    """Set one topic's level back to 0."""
    topic_levels = dict(state.topic_levels)
    topic_levels[topic_id] = 0
    return replace(state, topic_levels=topic_levels)


def daily_goal_progress(state: UserState) -> tuple[float, bool]:
    """Return (percent of daily goal capped at 100, goal reached)."""
    if state.daily_goal <= 0:
        return (100.0, True)
    percent = min(100.0, 100.0 * state.daily_xp / state.daily_goal)
    return (percent, state.daily_xp >= state.daily_goal)


def topic_unlocked(topics: Sequence[Topic], state: UserState, topic_id: str) -> bool:
    """Return whether a topic is open on the learning path.

    The first topic is always open; later topics open once the previous one
    has a level above 0 or was completed before levels were tracked. A topic
    already started stays open if the catalog order changes.
    """
    ids = [topic.id for topic in topics]
    index = ids.index(topic_id)
    if index == 0 or state.topic_level(topic_id) > 0:
        return True
    previous = ids[index - 1]
    return state.topic_level(previous) > 0 or previous in state.completed_lessons
