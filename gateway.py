"""
Persistence gateway: habit and completion-log CRUD against the remote store.

No business rules live here beyond the storage contract itself: one log per
(habit, date), cascading log deletion, owner scoping, and translating driver
failures into the error taxonomy in ``errors``.
"""

import functools
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Union

import pydantic
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

from database import (
    HABIT_COLLECTION,
    HABIT_LOG_COLLECTION,
    create_document,
    get_documents,
    serialize_doc,
)
from errors import (
    AuthError,
    HabitTrackerError,
    NotFoundError,
    UnavailableError,
    UnknownError,
    ValidationError,
)
from schemas import CompletionLog, Habit, HabitCreate, HabitUpdate, parse_day, utcnow

logger = logging.getLogger(__name__)

HabitData = Union[HabitCreate, Mapping[str, Any]]


class SubscriptionError(HabitTrackerError):
    """The store cannot stream changes; callers fall back to polling."""


class PersistenceGateway(ABC):

    @abstractmethod
    def list_habits(self, owner_id: str) -> List[Habit]:
        ...

    @abstractmethod
    def create_habit(self, data: HabitData, owner_id: str) -> Habit:
        ...

    @abstractmethod
    def update_habit(self, habit_id: str, data) -> Habit:
        ...

    @abstractmethod
    def delete_habit(self, habit_id: str) -> None:
        ...

    @abstractmethod
    def list_logs(self, owner_id: str) -> List[CompletionLog]:
        ...

    @abstractmethod
    def list_logs_in_range(self, owner_id: str, start, end, habit_id: Optional[str] = None) -> List[CompletionLog]:
        ...

    @abstractmethod
    def upsert_completion(self, habit_id: str, day, completed: bool, owner_id: str) -> CompletionLog:
        ...

    def get_habit(self, habit_id: str) -> Habit:
        raise NotImplementedError

    def watch(self, owner_id: str):
        """Open change streams for the owner's habits and logs."""
        raise SubscriptionError("This store does not support push updates")

    def ping(self) -> bool:
        return True


def require_owner(owner_id: Optional[str]) -> str:
    if not owner_id:
        raise AuthError()
    return owner_id


def validate_habit_create(data: HabitData) -> HabitCreate:
    if isinstance(data, HabitCreate):
        return data
    try:
        return HabitCreate.model_validate(dict(data or {}))
    except pydantic.ValidationError as e:
        raise ValidationError(_first_error(e, "Name and category are required"))


def validate_habit_update(data) -> HabitUpdate:
    if isinstance(data, HabitUpdate):
        return data
    try:
        return HabitUpdate.model_validate(dict(data or {}))
    except pydantic.ValidationError as e:
        raise ValidationError(_first_error(e, "Invalid habit data"))


def _first_error(exc: pydantic.ValidationError, fallback: str) -> str:
    errors = exc.errors()
    if not errors:
        return fallback
    err = errors[0]
    field = ".".join(str(p) for p in err.get("loc", ()))
    return f"{field}: {err.get('msg', fallback)}" if field else fallback


def translate_errors(func):
    """Map pymongo failures onto UnavailableError / UnknownError."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except HabitTrackerError:
            raise
        except ConnectionFailure as e:
            logger.warning("%s: store unavailable: %s", func.__name__, e)
            raise UnavailableError() from e
        except PyMongoError as e:
            logger.error("%s: store error: %s", func.__name__, e)
            raise UnknownError() from e
    return wrapper


def _object_id(habit_id: str) -> ObjectId:
    try:
        return ObjectId(habit_id)
    except (InvalidId, TypeError):
        raise NotFoundError("Habit not found")


def _iso_day(value) -> str:
    try:
        return parse_day(value).isoformat()
    except ValueError as e:
        raise ValidationError(str(e))


def habit_from_doc(doc: dict) -> Habit:
    return Habit.model_validate(serialize_doc(doc))


def log_from_doc(doc: dict) -> CompletionLog:
    return CompletionLog.model_validate(serialize_doc(doc))


class MongoGateway(PersistenceGateway):
    def __init__(self, database: Database):
        if database is None:
            raise UnavailableError("Database not configured")
        self.db = database
        self.habits = database[HABIT_COLLECTION]
        self.logs = database[HABIT_LOG_COLLECTION]

    @translate_errors
    def ping(self) -> bool:
        self.db.command("ping")
        return True

    @translate_errors
    def list_habits(self, owner_id: str) -> List[Habit]:
        owner_id = require_owner(owner_id)
        docs = get_documents(HABIT_COLLECTION, {"user_id": owner_id}, database=self.db)
        return [habit_from_doc(d) for d in docs]

    @translate_errors
    def get_habit(self, habit_id: str) -> Habit:
        doc = self.habits.find_one({"_id": _object_id(habit_id)})
        if doc is None:
            raise NotFoundError("Habit not found")
        return habit_from_doc(doc)

    @translate_errors
    def create_habit(self, data: HabitData, owner_id: str) -> Habit:
        owner_id = require_owner(owner_id)
        habit = validate_habit_create(data)
        doc = habit.model_dump(mode="json")
        doc["description"] = doc.get("description") or ""
        doc["user_id"] = owner_id
        new_id = create_document(HABIT_COLLECTION, doc, database=self.db)
        logger.info("Created habit %s for %s", new_id, owner_id)
        return self.get_habit(new_id)

    @translate_errors
    def update_habit(self, habit_id: str, data) -> Habit:
        changes = validate_habit_update(data).changes()
        changes["updated_at"] = utcnow()
        doc = self.habits.find_one_and_update(
            {"_id": _object_id(habit_id)},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFoundError("Habit not found")
        return habit_from_doc(doc)

    @translate_errors
    def delete_habit(self, habit_id: str) -> None:
        oid = _object_id(habit_id)
        if self.habits.count_documents({"_id": oid}, limit=1) == 0:
            raise NotFoundError("Habit not found")
        removed = self.logs.delete_many({"habit_id": habit_id}).deleted_count
        self.habits.delete_one({"_id": oid})
        logger.info("Deleted habit %s and %d logs", habit_id, removed)

    @translate_errors
    def list_logs(self, owner_id: str) -> List[CompletionLog]:
        owner_id = require_owner(owner_id)
        cursor = self.logs.find({"user_id": owner_id}).sort("date", 1)
        return [log_from_doc(d) for d in cursor]

    @translate_errors
    def list_logs_in_range(self, owner_id: str, start, end, habit_id: Optional[str] = None) -> List[CompletionLog]:
        owner_id = require_owner(owner_id)
        query: Dict[str, Any] = {"user_id": owner_id}
        day_range = {}
        if start:
            day_range["$gte"] = _iso_day(start)
        if end:
            day_range["$lte"] = _iso_day(end)
        if day_range:
            query["date"] = day_range
        if habit_id:
            query["habit_id"] = habit_id
        cursor = self.logs.find(query).sort("date", 1)
        return [log_from_doc(d) for d in cursor]

    @translate_errors
    def upsert_completion(self, habit_id: str, day, completed: bool, owner_id: str) -> CompletionLog:
        owner_id = require_owner(owner_id)
        habit = self.get_habit(habit_id)
        if habit.user_id != owner_id:
            raise NotFoundError("Habit not found")
        day = _iso_day(day)
        now = utcnow()
        key = {"habit_id": habit_id, "date": day}
        update = {
            "$set": {"completed": bool(completed), "user_id": owner_id, "updated_at": now},
            "$setOnInsert": {"created_at": now},
            "$inc": {"version": 1},
        }
        try:
            doc = self.logs.find_one_and_update(
                key, update, upsert=True, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            # Lost an insert race against a concurrent upsert; the unique
            # index guarantees the retry is an update.
            doc = self.logs.find_one_and_update(
                key, update, return_document=ReturnDocument.AFTER
            )
        return log_from_doc(doc)

    def watch(self, owner_id: str):
        owner_id = require_owner(owner_id)
        # Deletes carry no fullDocument, so they cannot be owner-filtered.
        pipeline = [
            {"$match": {"$or": [
                {"fullDocument.user_id": owner_id},
                {"operationType": "delete"},
            ]}}
        ]
        streams = []
        try:
            for collection in (self.habits, self.logs):
                streams.append(collection.watch(pipeline, full_document="updateLookup"))
        except (PyMongoError, NotImplementedError) as e:
            for stream in streams:
                stream.close()
            logger.info("Change streams unavailable: %s", e)
            raise SubscriptionError(str(e)) from e
        return tuple(streams)
