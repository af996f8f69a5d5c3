"""
Completion log model: per-day status of a habit.

Status rules:
    future day            -> None (not attempted yet, not "missed")
    today                 -> live today-status, never None
    past day, log present -> the log's completed flag
    past day, no log      -> False (absence of a record means missed)
"""

from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Tuple

from schemas import CompletionLog, parse_day

TodayFn = Callable[[], date]


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class LogBook:
    """Read-only index over a log collection, keyed by (habit id, ISO day)."""

    def __init__(
        self,
        logs: Iterable[CompletionLog],
        today: Optional[date] = None,
        live_today_status: Optional[Callable[[str], bool]] = None,
    ):
        self.today = parse_day(today) if today is not None else utc_today()
        self._by_key: Dict[Tuple[str, str], CompletionLog] = {}
        for log in logs:
            self._by_key[(log.habit_id, log.date)] = log
        self._live_today_status = live_today_status

    def __len__(self):
        return len(self._by_key)

    def __iter__(self):
        return iter(self._by_key.values())

    def get(self, habit_id: str, day) -> Optional[CompletionLog]:
        return self._by_key.get((habit_id, parse_day(day).isoformat()))

    def completed_on(self, habit_id: str, day) -> bool:
        log = self.get(habit_id, day)
        return bool(log and log.completed)

    def for_habit(self, habit_id: str):
        return [log for (hid, _), log in self._by_key.items() if hid == habit_id]

    def today_status(self, habit_id: str) -> bool:
        return self.completed_on(habit_id, self.today)

    def status_for(self, habit_id: str, day) -> Optional[bool]:
        day = parse_day(day)
        if day > self.today:
            return None
        if day == self.today:
            if self._live_today_status is not None:
                return self._live_today_status(habit_id)
            return self.today_status(habit_id)
        log = self.get(habit_id, day)
        return log.completed if log else False
