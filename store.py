"""
Local habit/log store.

Holds the client-side copy of the owner's habits and completion logs, the
per-entity optimistic lifecycle state, and the derived today-progress. Only
the sync coordinator writes to it; calculators read immutable snapshots.
"""

import logging
from datetime import date
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from logs import LogBook, TodayFn, utc_today
from progress import today_progress
from schemas import CompletionLog, EntityState, Habit, TodayProgress, parse_day

logger = logging.getLogger(__name__)

LogKey = Tuple[str, str]
Listener = Callable[["HabitStore"], None]


class Snapshot(NamedTuple):
    habits: Tuple[Habit, ...]
    logs: Tuple[CompletionLog, ...]
    today: date

    @property
    def habit_ids(self) -> List[str]:
        return [h.id for h in self.habits]

    def book(self) -> LogBook:
        return LogBook(self.logs, today=self.today)


class HabitStore:
    def __init__(self, today: TodayFn = utc_today):
        self._today = today
        self._habits: Dict[str, Habit] = {}
        self._logs: Dict[LogKey, CompletionLog] = {}
        self._habit_states: Dict[str, EntityState] = {}
        self._log_states: Dict[LogKey, EntityState] = {}
        self._listeners: List[Listener] = []
        self._progress = TodayProgress()
        self._recompute()

    # -----------------------------
    # Reads
    # -----------------------------

    def today(self) -> date:
        return self._today()

    @property
    def habits(self) -> List[Habit]:
        return list(self._habits.values())

    @property
    def logs(self) -> List[CompletionLog]:
        return list(self._logs.values())

    @property
    def today_progress(self) -> TodayProgress:
        return self._progress

    def get_habit(self, habit_id: str) -> Optional[Habit]:
        return self._habits.get(habit_id)

    def get_log(self, habit_id: str, day) -> Optional[CompletionLog]:
        return self._logs.get((habit_id, parse_day(day).isoformat()))

    def find_log_by_id(self, log_id: str) -> Optional[CompletionLog]:
        for log in self._logs.values():
            if log.id == log_id:
                return log
        return None

    def habit_state(self, habit_id: str) -> Optional[EntityState]:
        return self._habit_states.get(habit_id)

    def log_state(self, habit_id: str, day) -> Optional[EntityState]:
        return self._log_states.get((habit_id, parse_day(day).isoformat()))

    def today_status(self, habit_id: str) -> bool:
        log = self._logs.get((habit_id, self.today().isoformat()))
        return bool(log and log.completed)

    def snapshot(self) -> Snapshot:
        return Snapshot(tuple(self._habits.values()), tuple(self._logs.values()), self.today())

    def book(self) -> LogBook:
        """LogBook over the current logs whose today-status reads the live store."""
        return LogBook(self.logs, today=self.today(), live_today_status=self.today_status)

    # -----------------------------
    # Writes
    # -----------------------------

    def put_habit(self, habit: Habit, state: EntityState = EntityState.CONFIRMED) -> Habit:
        self._habits[habit.id] = habit
        self._habit_states[habit.id] = state
        self._changed()
        return habit

    def rekey_habit(self, old_id: str, habit: Habit, state: EntityState = EntityState.CONFIRMED) -> Habit:
        """Swap a temporary habit id for the authoritative one, moving its logs along."""
        if old_id != habit.id:
            self._habits.pop(old_id, None)
            self._habit_states.pop(old_id, None)
            for (habit_id, day), log in list(self._logs.items()):
                if habit_id == old_id:
                    del self._logs[(habit_id, day)]
                    log_state = self._log_states.pop((habit_id, day), EntityState.CONFIRMED)
                    self._logs[(habit.id, day)] = log.model_copy(update={"habit_id": habit.id})
                    self._log_states[(habit.id, day)] = log_state
        return self.put_habit(habit, state)

    def remove_habit(self, habit_id: str) -> int:
        """Remove a habit together with all of its logs; returns the number of logs purged."""
        self._habits.pop(habit_id, None)
        self._habit_states.pop(habit_id, None)
        keys = [key for key in self._logs if key[0] == habit_id]
        for key in keys:
            del self._logs[key]
            self._log_states.pop(key, None)
        self._changed()
        return len(keys)

    def put_log(self, log: CompletionLog, state: EntityState = EntityState.CONFIRMED) -> CompletionLog:
        key = (log.habit_id, log.date)
        self._logs[key] = log
        self._log_states[key] = state
        self._changed()
        return log

    def remove_log(self, habit_id: str, day) -> Optional[CompletionLog]:
        key = (habit_id, parse_day(day).isoformat())
        log = self._logs.pop(key, None)
        self._log_states.pop(key, None)
        self._changed()
        return log

    def mark_habit(self, habit_id: str, state: EntityState) -> None:
        if habit_id in self._habits:
            self._habit_states[habit_id] = state

    def mark_log(self, habit_id: str, day, state: EntityState) -> None:
        key = (habit_id, parse_day(day).isoformat())
        if key in self._logs:
            self._log_states[key] = state

    def replace_all(self, habits, logs) -> None:
        self._habits = {h.id: h for h in habits}
        self._logs = {(log.habit_id, log.date): log for log in logs}
        self._habit_states = {h_id: EntityState.CONFIRMED for h_id in self._habits}
        self._log_states = {key: EntityState.CONFIRMED for key in self._logs}
        self._changed()

    def clear(self) -> None:
        self.replace_all([], [])

    # -----------------------------
    # Change notification
    # -----------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _recompute(self) -> None:
        self._progress = today_progress(self.book(), list(self._habits))

    def _changed(self) -> None:
        self._recompute()
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Store listener failed")
