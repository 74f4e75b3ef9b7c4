"""XP computation for finished lesson sessions."""

from __future__ import annotations

import math
from dataclasses import dataclass

from .models import SessionResult


@dataclass(frozen=True)
class ScoringPolicy:
    """Tunable XP constants.

    XP = flat completion bonus + per-correct bonus + one point for every
    `speed_divisor` unused seconds when the timer is on.
    """

    base_xp: int = 5
    xp_per_correct: int = 2
    speed_divisor: int = 5
    fast_threshold_seconds: int = 60


DEFAULT_POLICY = ScoringPolicy()


def compute_result(
    correct_count: int,
    mistake_count: int,
    timer_enabled: bool,
    time_remaining: int,
    *,
    time_budget: int = 0,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> SessionResult:
    """Compute XP and reported time for one completed session."""
    if correct_count < 0 or mistake_count < 0:
        raise ValueError("Counts must be non-negative.")
    remaining = max(0, time_remaining)
    speed_bonus = math.ceil(remaining / policy.speed_divisor) if timer_enabled else 0
    xp = policy.base_xp + (correct_count * policy.xp_per_correct) + speed_bonus
    time_seconds = max(0, time_budget - remaining) if timer_enabled else 0
    return SessionResult(xp=max(0, xp), mistakes=mistake_count, time_seconds=time_seconds)


def is_fast_lesson(result: SessionResult, timer_enabled: bool, policy: ScoringPolicy = DEFAULT_POLICY) -> bool:
    """Return whether a timed lesson qualifies as a speed run."""
    return timer_enabled and 0 < result.time_seconds < policy.fast_threshold_seconds
