"""Achievement catalog and unlock evaluation."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import UTC, datetime

from .models import Achievement, AchievementCondition, UserState

logger = logging.getLogger(__name__)

_C = AchievementCondition

ACHIEVEMENT_DEFINITIONS: tuple[Achievement, ...] = (
    Achievement("first_lesson", "First Steps", "Complete your first lesson", "🎯", _C.LESSONS_COMPLETED, 1),
    Achievement("lesson_5", "Dedicated", "Complete 5 lessons", "📚", _C.LESSONS_COMPLETED, 5),
    Achievement("scholar_1", "Scholar", "Earn 100 XP", "🎓", _C.XP_EARNED, 100),
    Achievement("scholar_2", "Sage", "Earn 500 XP", "🧙", _C.XP_EARNED, 500),
    Achievement("streak_3", "On Fire", "Reach a 3-day streak", "🔥", _C.STREAK_DAYS, 3),
    Achievement("streak_7", "Unstoppable", "Reach a 7-day streak", "🚀", _C.STREAK_DAYS, 7),
    Achievement("mastery_1", "Master Mind", "Reach Level 5 in 1 Topic", "👑", _C.TOPICS_MASTERED, 1),
    Achievement("mastery_3", "Polyglot", "Reach Level 5 in 3 Topics", "🌍", _C.TOPICS_MASTERED, 3),
    Achievement("perfect_1", "Sharpshooter", "Complete a lesson with no mistakes", "🏹", _C.PERFECT_LESSONS, 1),
    Achievement("perfect_5", "Perfectionist", "Complete 5 perfect lessons", "💎", _C.PERFECT_LESSONS, 5),
    Achievement(
        "speed_1", "Speed Demon", "Complete a timed lesson in under 60 seconds", "⚡", _C.SPEEDRUN_LESSONS, 1
    ),
)


def initialize_achievements(existing: Iterable[Achievement] = ()) -> tuple[Achievement, ...]:
    """Return current definitions carrying over stored unlock status by id."""
    stored = {achievement.id: achievement for achievement in existing}
    merged: list[Achievement] = []
    for definition in ACHIEVEMENT_DEFINITIONS:
        previous = stored.get(definition.id)
        if previous is not None and previous.unlocked:
            merged.append(replace(definition, unlocked=True, unlocked_at=previous.unlocked_at))
        else:
            merged.append(definition)
    return tuple(merged)


def metric_for(condition: AchievementCondition, state: UserState) -> int:
    """Return the learner's current value for an achievement condition."""
    if condition == AchievementCondition.LESSONS_COMPLETED:
        return len(state.completed_lessons)
    if condition == AchievementCondition.STREAK_DAYS:
        return state.streak
    if condition == AchievementCondition.XP_EARNED:
        return state.xp
    if condition == AchievementCondition.TOPICS_MASTERED:
        return state.mastered_topic_count()
    if condition == AchievementCondition.PERFECT_LESSONS:
        return state.perfect_lesson_count
    if condition == AchievementCondition.SPEEDRUN_LESSONS:
        return state.fast_lesson_count
    raise ValueError(f"Unsupported achievement condition: {condition}")


def evaluate(state: UserState, now: datetime | None = None) -> tuple[UserState, list[Achievement]]:
    """Unlock every achievement whose threshold is now met.

    Already-unlocked achievements pass through untouched, so evaluating the
    same state twice yields no new unlocks the second time. Newly unlocked
    achievements are returned in definition order; the caller decides how
    many to surface.
    """
    timestamp = (now or datetime.now(UTC)).isoformat()
    updated: list[Achievement] = []
    newly_unlocked: list[Achievement] = []
    for achievement in state.achievements:
        if achievement.unlocked or metric_for(achievement.condition_type, state) < achievement.threshold:
            updated.append(achievement)
            continue
        unlocked = replace(achievement, unlocked=True, unlocked_at=timestamp)
        updated.append(unlocked)
        newly_unlocked.append(unlocked)
        logger.info("Achievement unlocked: %s", achievement.id)
    if not newly_unlocked:
        return state, []
    return replace(state, achievements=tuple(updated)), newly_unlocked
