import logging
from contextlib import asynccontextmanager
from datetime import date, timedelta
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import database
from config import get_settings
from errors import HabitTrackerError, NotFoundError, UnavailableError, ValidationError
from gateway import MongoGateway, PersistenceGateway, require_owner
from logging_config import setup_logging
from logs import LogBook, utc_today
from progress import (
    longest_streak,
    overall_stats,
    streak,
    today_progress,
    tracker,
    week_overview,
    weekly_stats,
)
from schemas import (
    CompletionLog,
    CompletionToggle,
    Habit,
    HabitCreate,
    HabitStats,
    HabitUpdate,
    TodayProgress,
    parse_day,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file)
    if database.db is not None:
        try:
            database.ensure_indexes(database.db)
        except Exception as e:
            logger.warning("Could not create indexes: %s", e)
    yield


app = FastAPI(title="Islamic Habit Tracker API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------
# Dependencies & error mapping
# -----------------------------

def get_gateway() -> PersistenceGateway:
    if database.db is None:
        raise UnavailableError("Database not configured")
    return MongoGateway(database.db)


def get_owner_id(x_user_id: Optional[str] = Header(None)) -> str:
    return require_owner(x_user_id or get_settings().default_owner_id)


def get_today() -> date:
    return utc_today()


@app.exception_handler(HabitTrackerError)
async def tracker_error_handler(request, exc: HabitTrackerError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    fields = sorted({str(e["loc"][-1]) for e in exc.errors() if e.get("loc")})
    if {"name", "category"} & set(fields):
        message = "Name and category are required"
    else:
        message = "Invalid request: " + ", ".join(fields) if fields else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


# -----------------------------
# Utilities
# -----------------------------

def _owned_habit(gateway: PersistenceGateway, habit_id: str, owner_id: str) -> Habit:
    habit = gateway.get_habit(habit_id)
    if habit.user_id != owner_id:
        raise NotFoundError("Habit not found")
    return habit


def _book(gateway: PersistenceGateway, owner_id: str, today: date, days: int) -> LogBook:
    start = today - timedelta(days=days)
    return LogBook(gateway.list_logs_in_range(owner_id, start, today), today=today)


def _day_param(value: Optional[str], default: date) -> date:
    if not value:
        return default
    try:
        return parse_day(value)
    except ValueError as e:
        raise ValidationError(str(e))


# -----------------------------
# Health & Root
# -----------------------------
@app.get("/")
def read_root():
    return {"message": "Islamic Habit Tracker Backend is running"}


@app.get("/test")
def test_database():
    """Test endpoint to check if database is available and accessible"""
    settings = get_settings()
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }

    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"

            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"

    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if settings.database_url else "❌ Not Set"
    response["database_name"] = "✅ Set" if settings.database_name else "❌ Not Set"

    return response


# -----------------------------
# Habit Endpoints
# -----------------------------

@app.get("/api/habits")
def list_habits(
    gateway: PersistenceGateway = Depends(get_gateway),
    owner_id: str = Depends(get_owner_id),
    today: date = Depends(get_today),
):
    window = get_settings().streak_window_days
    habits = gateway.list_habits(owner_id)
    book = _book(gateway, owner_id, today, window)
    result = []
    for h in habits:
        data = h.model_dump(mode="json")
        data["streak"] = streak(book, h.id, window)
        data["today_completed"] = book.today_status(h.id)
        result.append(data)
    return result


@app.post("/api/habits", status_code=201, response_model=Habit)
def create_habit(
    payload: HabitCreate,
    gateway: PersistenceGateway = Depends(get_gateway),
    owner_id: str = Depends(get_owner_id),
):
    return gateway.create_habit(payload, owner_id)


@app.put("/api/habits/{habit_id}", response_model=Habit)
def update_habit(
    habit_id: str,
    payload: HabitUpdate,
    gateway: PersistenceGateway = Depends(get_gateway),
    owner_id: str = Depends(get_owner_id),
):
    _owned_habit(gateway, habit_id, owner_id)
    return gateway.update_habit(habit_id, payload)


@app.delete("/api/habits/{habit_id}")
def delete_habit(
    habit_id: str,
    gateway: PersistenceGateway = Depends(get_gateway),
    owner_id: str = Depends(get_owner_id),
):
    _owned_habit(gateway, habit_id, owner_id)
    gateway.delete_habit(habit_id)
    return {"message": "Habit deleted successfully"}


@app.post("/api/habits/{habit_id}/complete", response_model=CompletionLog)
def complete_habit(
    habit_id: str,
    payload: CompletionToggle,
    gateway: PersistenceGateway = Depends(get_gateway),
    owner_id: str = Depends(get_owner_id),
    today: date = Depends(get_today),
):
    day = _day_param(payload.date, today)
    if day > today:
        raise ValidationError("Cannot complete a habit for a future date")
    return gateway.upsert_completion(habit_id, day, payload.completed, owner_id)


@app.get("/api/habits/{habit_id}/completion", response_model=List[CompletionLog])
def habit_completion(
    habit_id: str,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    gateway: PersistenceGateway = Depends(get_gateway),
    owner_id: str = Depends(get_owner_id),
):
    _owned_habit(gateway, habit_id, owner_id)
    return gateway.list_logs_in_range(owner_id, start_date, end_date, habit_id=habit_id)


@app.get("/api/habits/{habit_id}/stats", response_model=HabitStats)
def habit_stats(
    habit_id: str,
    week_start: Optional[str] = Query(None, alias="weekStart"),
    gateway: PersistenceGateway = Depends(get_gateway),
    owner_id: str = Depends(get_owner_id),
    today: date = Depends(get_today),
):
    settings = get_settings()
    _owned_habit(gateway, habit_id, owner_id)
    book = LogBook(
        gateway.list_logs_in_range(owner_id, None, today, habit_id=habit_id), today=today
    )
    return HabitStats(
        habit_id=habit_id,
        streak=streak(book, habit_id, settings.streak_window_days),
        longest_streak=longest_streak(book, habit_id),
        week=weekly_stats(book, habit_id, _day_param(week_start, today)),
        tracker=tracker(book, habit_id, settings.tracker_days),
    )


@app.get("/api/habit-logs", response_model=List[CompletionLog])
def habit_logs(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    gateway: PersistenceGateway = Depends(get_gateway),
    owner_id: str = Depends(get_owner_id),
):
    if start_date or end_date:
        return gateway.list_logs_in_range(owner_id, start_date, end_date)
    return gateway.list_logs(owner_id)


@app.get("/api/today-progress", response_model=TodayProgress)
def get_today_progress(
    gateway: PersistenceGateway = Depends(get_gateway),
    owner_id: str = Depends(get_owner_id),
    today: date = Depends(get_today),
):
    habits = gateway.list_habits(owner_id)
    book = LogBook(gateway.list_logs_in_range(owner_id, today, today), today=today)
    return today_progress(book, [h.id for h in habits])


@app.get("/api/stats")
def get_stats(
    week_start: Optional[str] = Query(None, alias="weekStart"),
    gateway: PersistenceGateway = Depends(get_gateway),
    owner_id: str = Depends(get_owner_id),
    today: date = Depends(get_today),
):
    habits = gateway.list_habits(owner_id)
    logs = gateway.list_logs(owner_id)
    book = LogBook(logs, today=today)
    habit_ids = [h.id for h in habits]
    return {
        "overall": overall_stats(logs, total_habits=len(habits)).model_dump(),
        "week": week_overview(book, habit_ids, _day_param(week_start, today)).model_dump(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=get_settings().port)
