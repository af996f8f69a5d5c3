import itertools
from datetime import date

from passlib.context import CryptContext

from errors import AuthError, NotFoundError, UnavailableError
from gateway import (
    PersistenceGateway,
    require_owner,
    validate_habit_create,
    validate_habit_update,
)
from schemas import CompletionLog, Habit, parse_day, utcnow

TODAY = date(2024, 6, 10)  # a Monday
OWNER = "user-1"


class MemoryGateway(PersistenceGateway):
    """Gateway over plain dicts; set ``offline`` to make every call unavailable."""

    def __init__(self):
        self.habits = {}
        self.logs = {}
        self.offline = False
        self.calls = []
        self._ids = itertools.count(1)

    def _call(self, name):
        self.calls.append(name)
        if self.offline:
            raise UnavailableError()

    def ping(self):
        self._call("ping")
        return True

    def get_habit(self, habit_id):
        self._call("get_habit")
        if habit_id not in self.habits:
            raise NotFoundError("Habit not found")
        return self.habits[habit_id]

    def list_habits(self, owner_id):
        self._call("list_habits")
        require_owner(owner_id)
        return [h for h in self.habits.values() if h.user_id == owner_id]

    def create_habit(self, data, owner_id):
        self._call("create_habit")
        require_owner(owner_id)
        data = validate_habit_create(data)
        habit = Habit(id=f"h{next(self._ids)}", user_id=owner_id, created_at=utcnow(), **data.model_dump())
        self.habits[habit.id] = habit
        return habit

    def update_habit(self, habit_id, data):
        self._call("update_habit")
        changes = validate_habit_update(data)
        if habit_id not in self.habits:
            raise NotFoundError("Habit not found")
        habit = self.habits[habit_id].model_copy(update=changes.model_dump(exclude_none=True))
        self.habits[habit_id] = habit
        return habit

    def delete_habit(self, habit_id):
        self._call("delete_habit")
        if habit_id not in self.habits:
            raise NotFoundError("Habit not found")
        del self.habits[habit_id]
        self.logs = {k: v for k, v in self.logs.items() if v.habit_id != habit_id}

    def list_logs(self, owner_id):
        self._call("list_logs")
        require_owner(owner_id)
        return [log for log in self.logs.values() if log.user_id == owner_id]

    def list_logs_in_range(self, owner_id, start, end, habit_id=None):
        return [
            log for log in self.list_logs(owner_id)
            if (not start or log.date >= parse_day(start).isoformat())
            and (not end or log.date <= parse_day(end).isoformat())
            and (habit_id is None or log.habit_id == habit_id)
        ]

    def upsert_completion(self, habit_id, day, completed, owner_id):
        self._call("upsert_completion")
        if not owner_id:
            raise AuthError()
        if habit_id not in self.habits:
            raise NotFoundError("Habit not found")
        day = parse_day(day).isoformat()
        existing = self.logs.get((habit_id, day))
        log = CompletionLog(
            id=existing.id if existing else f"log{next(self._ids)}",
            habit_id=habit_id,
            date=day,
            completed=completed,
            user_id=owner_id,
            updated_at=utcnow(),
            version=(existing.version if existing else 0) + 1,
        )
        self.logs[(habit_id, day)] = log
        return log


def make_log(habit_id, day, completed=True, owner=OWNER, version=1, log_id=None):
    day = parse_day(day).isoformat()
    return CompletionLog(
        id=log_id or f"{habit_id}-{day}",
        habit_id=habit_id,
        date=day,
        completed=completed,
        user_id=owner,
        version=version,
    )


def make_habit(habit_id="1", name="Fajr Namaz", category="namaz", owner=OWNER):
    return Habit(id=habit_id, name=name, category=category, user_id=owner)


# Low-cost bcrypt so the identity tests stay quick.
FAST_PASSWORDS = CryptContext(schemes=["bcrypt"], bcrypt__rounds=4)
