"""
Streak and progress calculations.

Everything here is a pure function of a ``LogBook`` (and a habit list where
needed), so the same figures can be computed from any snapshot, any number
of times, without touching shared state.
"""

from datetime import date, timedelta
from typing import Iterable, List, Sequence

from logs import LogBook
from schemas import (
    CompletionLog,
    OverallStats,
    TodayProgress,
    TrackerDay,
    WeekOverview,
    WeeklyStats,
    parse_day,
)

DEFAULT_STREAK_WINDOW = 30
DEFAULT_TRACKER_DAYS = 45


def percent(part: int, whole: int) -> int:
    """Whole-number percentage rounded half up; 0 when ``whole`` is 0."""
    if whole <= 0:
        return 0
    return (part * 200 + whole) // (2 * whole)


def streak(book: LogBook, habit_id: str, window: int = DEFAULT_STREAK_WINDOW) -> int:
    """Consecutive completed days ending today, looking back at most ``window`` days."""
    count = 0
    for offset in range(window):
        if not book.completed_on(habit_id, book.today - timedelta(days=offset)):
            break
        count += 1
    return count


def longest_streak(book: LogBook, habit_id: str) -> int:
    days = sorted(
        log.day for log in book.for_habit(habit_id)
        if log.completed and log.day <= book.today
    )
    longest = current = 0
    previous = None
    for day in days:
        if previous is not None and day == previous + timedelta(days=1):
            current += 1
        else:
            current = 1
        longest = max(longest, current)
        previous = day
    return longest


def week_dates(anchor) -> List[date]:
    """The Monday-to-Sunday week containing ``anchor``."""
    anchor = parse_day(anchor)
    monday = anchor - timedelta(days=anchor.weekday())
    return [monday + timedelta(days=i) for i in range(7)]


def weekly_stats(book: LogBook, habit_id: str, week_start) -> WeeklyStats:
    days = week_dates(week_start)
    stats = WeeklyStats(habit_id=habit_id, week_start=days[0].isoformat())
    for day in days:
        status = book.status_for(habit_id, day)
        if status is True:
            stats.completed += 1
        elif status is False:
            stats.missed += 1
        else:
            stats.future += 1
    return stats


def week_overview(book: LogBook, habit_ids: Sequence[str], week_start) -> WeekOverview:
    days = week_dates(week_start)
    overview = WeekOverview(
        week_start=days[0].isoformat(),
        total_habits=len(habit_ids),
        total_days=len(days),
    )
    for habit_id in habit_ids:
        week = weekly_stats(book, habit_id, days[0])
        overview.completed_count += week.completed
        overview.missed_count += week.missed
        overview.future_count += week.future
    return overview


def overall_stats(logs: Iterable[CompletionLog], total_habits: int = 0) -> OverallStats:
    logs = list(logs)
    completed = sum(1 for log in logs if log.completed)
    return OverallStats(
        total_habits=total_habits,
        total_completed=completed,
        total_missed=len(logs) - completed,
        total_days=len(logs),
        success_rate=percent(completed, len(logs)),
    )


def today_progress(book: LogBook, habit_ids: Sequence[str]) -> TodayProgress:
    completed = sum(1 for habit_id in habit_ids if book.today_status(habit_id))
    total = len(habit_ids)
    return TodayProgress(
        completed=completed,
        total=total,
        percentage=percent(completed, total),
        date=book.today.isoformat(),
    )


def tracker(book: LogBook, habit_id: str, days: int = DEFAULT_TRACKER_DAYS) -> List[TrackerDay]:
    """The last ``days`` days ending today, oldest first."""
    out = []
    for offset in range(days - 1, -1, -1):
        day = book.today - timedelta(days=offset)
        status = book.status_for(habit_id, day)
        if status is None:
            label = "future"
        else:
            label = "completed" if status else "missed"
        out.append(TrackerDay(date=day.isoformat(), status=label))
    return out
