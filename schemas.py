"""
Database Schemas for the Islamic Habit Tracker

Each persisted Pydantic model represents a MongoDB collection. The collection
name is the lowercase form of the class name (e.g., Habit -> "habit",
HabitLog -> "habitlog"). The remaining models are request bodies and derived,
never-stored views.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_day(value) -> date:
    """Accept a ``date``/``datetime`` or an ISO ``YYYY-MM-DD`` string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValueError(f"Invalid date: {value!r}, expected YYYY-MM-DD")


class HabitCategory(str, Enum):
    PRAYER = "prayer"
    SCRIPTURE = "scripture"
    REMEMBRANCE = "remembrance"
    DAILY = "daily"


# Older clients send the original category names.
CATEGORY_ALIASES = {
    "namaz": HabitCategory.PRAYER,
    "salah": HabitCategory.PRAYER,
    "quran": HabitCategory.SCRIPTURE,
    "zikr": HabitCategory.REMEMBRANCE,
    "dhikr": HabitCategory.REMEMBRANCE,
}


def normalize_category(value):
    if isinstance(value, HabitCategory) or value is None:
        return value
    key = str(value).strip().lower()
    return CATEGORY_ALIASES.get(key, key)


def clean_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value:
        raise ValueError("name must not be empty")
    return value


# -----------------------------
# Persisted models
# -----------------------------

class Habit(BaseModel):
    """
    Habits a user wants to track.
    Collection: "habit"
    """
    id: str
    name: str = Field(..., description="Habit name, e.g., Fajr Namaz")
    category: HabitCategory = Field(..., description="Habit category")
    description: Optional[str] = Field("", description="Short description")
    user_id: str = Field(..., description="Owner user id")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, v):
        return normalize_category(v)


class HabitLog(BaseModel):
    """
    One completion record per (habit, day).
    Collection: "habitlog"
    """
    id: str
    habit_id: str = Field(..., description="Reference to Habit id")
    date: str = Field(..., description="Calendar day, YYYY-MM-DD")
    completed: bool = Field(True, description="Whether completed for this date")
    user_id: str = Field(..., description="Owner user id")
    updated_at: Optional[datetime] = None
    version: int = Field(0, ge=0, description="Bumped by every upsert")

    @field_validator("date", mode="before")
    @classmethod
    def iso_day(cls, v):
        return parse_day(v).isoformat()

    @property
    def day(self):
        return date.fromisoformat(self.date)


CompletionLog = HabitLog


# -----------------------------
# Request bodies
# -----------------------------

class HabitCreate(BaseModel):
    name: str = Field(...)
    category: HabitCategory = Field(...)
    description: Optional[str] = Field("")

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, v):
        return normalize_category(v)

    @field_validator("name")
    @classmethod
    def clean_name(cls, v):
        return clean_name(v)


class HabitUpdate(BaseModel):
    name: Optional[str] = None
    category: Optional[HabitCategory] = None
    description: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, v):
        return normalize_category(v)

    @field_validator("name")
    @classmethod
    def clean_name(cls, v):
        return clean_name(v)

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, mode="json")


class CompletionToggle(BaseModel):
    completed: bool = Field(True)
    date: Optional[str] = Field(None, description="Defaults to today")

    @field_validator("date", mode="before")
    @classmethod
    def iso_day(cls, v):
        return None if v is None else parse_day(v).isoformat()


# -----------------------------
# Derived views
# -----------------------------

class TodayProgress(BaseModel):
    completed: int = 0
    total: int = 0
    percentage: int = 0
    date: Optional[str] = None


class WeeklyStats(BaseModel):
    habit_id: str
    week_start: str
    completed: int = 0
    missed: int = 0
    future: int = 0


class WeekOverview(BaseModel):
    week_start: str
    total_habits: int = 0
    total_days: int = 0
    completed_count: int = 0
    missed_count: int = 0
    future_count: int = 0


class OverallStats(BaseModel):
    total_habits: int = 0
    total_completed: int = 0
    total_missed: int = 0
    total_days: int = 0
    success_rate: int = 0


class TrackerDay(BaseModel):
    date: str
    status: Literal["completed", "missed", "future"]


class HabitStats(BaseModel):
    habit_id: str
    streak: int
    longest_streak: int
    week: WeeklyStats
    tracker: List[TrackerDay]


# -----------------------------
# Local sync bookkeeping
# -----------------------------

class OperationType(str, Enum):
    CREATE_HABIT = "CreateHabit"
    UPDATE_HABIT = "UpdateHabit"
    DELETE_HABIT = "DeleteHabit"
    TOGGLE_COMPLETION = "ToggleCompletion"


class EntityState(str, Enum):
    CONFIRMED = "Confirmed"
    OPTIMISTIC_PENDING = "OptimisticPending"
    OPTIMISTIC_FAILED = "OptimisticFailed"


class PendingOperation(BaseModel):
    type: OperationType
    payload: Dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=utcnow)
    attempts: int = 0
