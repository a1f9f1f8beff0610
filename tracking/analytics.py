"""Pure arithmetic for focus credit, levels, streaks and tree health."""

import math
from datetime import datetime
from typing import Dict, Optional, Any

import config


def round_half_up(value: float) -> int:
    """
    Round to the nearest integer with halves rounded up.

    Python's built-in round() uses banker's rounding (round(2.5) == 2),
    which would make a 2-score average of 85 and 30 report 57 instead
    of 58. Averages and health values always round half up.

    Args:
        value: Number to round.

    Returns:
        Rounded integer.
    """
    return int(math.floor(value + 0.5))


def format_duration(seconds: float) -> str:
    """Compact duration for log lines, e.g. "1h 2m 5s", "25m 0s" or "45s"."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    mins, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {mins}m {secs}s"
    if mins:
        return f"{mins}m {secs}s"
    return f"{secs}s"


def elapsed_seconds(start: datetime, end: datetime) -> int:
    """
    Whole seconds between two timestamps, never negative.

    Args:
        start: Session start timestamp.
        end: Session end timestamp.

    Returns:
        Floor of the elapsed seconds, 0 if the clock went backwards.
    """
    return max(0, int(math.floor((end - start).total_seconds())))


def credited_minutes(duration_seconds: int, adjustment: int) -> int:
    """
    Minutes credited for a completed session.

    Whole elapsed minutes plus the accumulated adjustment, clamped so a
    large penalty can never produce negative credit.

    Args:
        duration_seconds: Elapsed wall-clock seconds.
        adjustment: Signed accumulated adjustment in minutes.

    Returns:
        Non-negative credited minutes.
    """
    return max(0, duration_seconds // 60 + adjustment)


def level_for_minutes(total_minutes: int, minutes_per_level: int = config.MINUTES_PER_LEVEL) -> int:
    """
    Derive a level from cumulative focus minutes.

    Level is a pure function of total minutes and is recomputed on every
    write: floor(total / minutes_per_level) + 1.

    Args:
        total_minutes: Cumulative credited focus minutes (non-negative).
        minutes_per_level: Minutes required per level.

    Returns:
        Level, starting at 1.
    """
    return max(0, total_minutes) // minutes_per_level + 1


def level_progress(total_minutes: int, minutes_per_level: int = config.MINUTES_PER_LEVEL) -> Dict[str, Any]:
    """
    Progress towards the next level.

    Args:
        total_minutes: Cumulative credited focus minutes.
        minutes_per_level: Minutes required per level.

    Returns:
        Dictionary with level, minutes into the level, minutes remaining
        and integer progress percentage.
    """
    total_minutes = max(0, total_minutes)
    into_level = total_minutes % minutes_per_level
    return {
        "level": level_for_minutes(total_minutes, minutes_per_level),
        "minutesIntoLevel": into_level,
        "minutesToNextLevel": minutes_per_level - into_level,
        "progressPercent": round_half_up(into_level / minutes_per_level * 100),
    }


def tree_stage(level: int) -> str:
    """Describe the growth stage of a user's tree for a level."""
    if level <= 1:
        return "Seedling"
    if level <= 3:
        return "Sapling"
    if level <= 5:
        return "Young Tree"
    if level <= 8:
        return "Mature Tree"
    return "Ancient Tree"


def clamp_health(value: float) -> int:
    """Clamp a tree health value into [0, 100]."""
    return min(100, max(0, round_half_up(value)))


def tree_health_after(current: int, active_members: int, member_count: int) -> int:
    """
    Recompute a group's tree health from today's member adherence.

    Health moves halfway from its current value towards the adherence
    target (share of members who contributed today, as a percentage).
    The result is monotone in adherence: everyone active pulls health up
    towards 100, lapsing members pull it down towards 0.

    Args:
        current: Current tree health.
        active_members: Members who contributed today.
        member_count: Total group members.

    Returns:
        New tree health in [0, 100].
    """
    if member_count <= 0:
        target = 0.0
    else:
        active = min(max(active_members, 0), member_count)
        target = 100.0 * active / member_count
    current = min(100, max(0, current))
    return clamp_health(current + (target - current) / 2.0)


def next_streak(previous_streak: int, last_active: Optional[datetime], now: datetime) -> int:
    """
    Compute the daily streak after activity at ``now``.

    Activity on the same calendar day keeps the streak, activity on the
    following day extends it, anything else starts a new streak of 1.

    Args:
        previous_streak: Streak before this activity.
        last_active: Timestamp of previous activity, if any.
        now: Timestamp of this activity.

    Returns:
        Updated streak in days.
    """
    if last_active is None:
        return 1

    gap_days = (now.date() - last_active.date()).days
    if gap_days == 0:
        return max(previous_streak, 1)
    if gap_days == 1:
        return previous_streak + 1
    return 1
