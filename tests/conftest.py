import mongomock
import pytest

from database import ensure_indexes
from gateway import MongoGateway
from store import HabitStore
from tests.helpers import TODAY, MemoryGateway


@pytest.fixture
def memory_gateway():
    return MemoryGateway()


@pytest.fixture
def store():
    return HabitStore(today=lambda: TODAY)


@pytest.fixture
def mongo_db():
    db = mongomock.MongoClient()["habit_tracker_test"]
    ensure_indexes(db)
    return db


@pytest.fixture
def mongo_gateway(mongo_db):
    return MongoGateway(mongo_db)
