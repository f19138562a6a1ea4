import datetime
import math
from typing import Optional, Tuple

SYNC_INTERVAL_DAYS = 90
XP_PER_LEVEL = 100


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def next_sync_due(completed_at: datetime.datetime) -> datetime.datetime:
    return completed_at + datetime.timedelta(days=SYNC_INTERVAL_DAYS)


def days_until(due_at: Optional[datetime.datetime], now: datetime.datetime) -> Optional[int]:
    """Whole days until ``due_at`` rounded up; negative once overdue."""
    if due_at is None:
        return None
    return math.ceil((due_at - now).total_seconds() / 86400)


def is_sync_due(next_due_at: Optional[datetime.datetime], now: datetime.datetime) -> bool:
    # no recorded due date means no sync ever completed
    if next_due_at is None:
        return True
    return now >= next_due_at


def streak_transition(
    streak_count: int,
    longest_streak: int,
    last_activity: datetime.date,
    today: datetime.date,
) -> Tuple[int, int, bool]:
    """
    Daily streak update, evaluated at most once per calendar day.

    Rules:
      - last activity today       -> unchanged
      - last activity yesterday   -> streak + 1
      - anything older (or future) -> streak resets to 1
    The longest streak is the max of itself and the new streak.

    Returns:
        (new_streak, new_longest, changed)
    """
    gap = (today - last_activity).days
    if gap == 0:
        return streak_count, longest_streak, False
    new_streak = streak_count + 1 if gap == 1 else 1
    return new_streak, max(longest_streak, new_streak), True


def level_for_xp(total_xp: int) -> int:
    return total_xp // XP_PER_LEVEL + 1
