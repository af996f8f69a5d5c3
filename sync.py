"""
Sync sources: where authoritative remote changes come from.

``PushSource`` streams inserts/updates/deletes from MongoDB change streams.
Deployments without change streams (standalone servers) make ``watch``
fail, in which case ``open_sync_source`` falls back to ``PollSource``, which
re-reads the owner's data on every poll and diffs it against the last read.

Both are pumped cooperatively by the coordinator; neither starts a thread.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, NamedTuple, Optional, Union

from pymongo.errors import ConnectionFailure, PyMongoError

from database import HABIT_COLLECTION, HABIT_LOG_COLLECTION
from errors import UnavailableError, UnknownError
from gateway import PersistenceGateway, SubscriptionError, habit_from_doc, log_from_doc
from schemas import CompletionLog, Habit

logger = logging.getLogger(__name__)

HABIT = "habit"
LOG = "log"

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"


class Delta(NamedTuple):
    kind: str
    op: str
    entity_id: str
    document: Optional[Union[Habit, CompletionLog]] = None


class SyncSource(ABC):
    name = "base"

    @abstractmethod
    def start(self, owner_id: str) -> None:
        ...

    @abstractmethod
    def poll(self) -> List[Delta]:
        ...

    def stop(self) -> None:
        pass


class PushSource(SyncSource):
    name = "push"

    _kinds = {HABIT_COLLECTION: HABIT, HABIT_LOG_COLLECTION: LOG}

    def __init__(self, gateway: PersistenceGateway):
        self.gateway = gateway
        self._streams = ()

    def start(self, owner_id: str) -> None:
        self._streams = self.gateway.watch(owner_id)

    def poll(self) -> List[Delta]:
        deltas = []
        try:
            for stream in self._streams:
                change = stream.try_next()
                while change is not None:
                    delta = self.to_delta(change)
                    if delta is not None:
                        deltas.append(delta)
                    change = stream.try_next()
        except ConnectionFailure as e:
            raise UnavailableError() from e
        except PyMongoError as e:
            logger.error("Change stream failed: %s", e)
            raise UnknownError() from e
        return deltas

    def stop(self) -> None:
        for stream in self._streams:
            stream.close()
        self._streams = ()

    @classmethod
    def to_delta(cls, change: dict) -> Optional[Delta]:
        kind = cls._kinds.get(change.get("ns", {}).get("coll"))
        if kind is None:
            return None
        entity_id = str(change["documentKey"]["_id"])
        operation = change.get("operationType")
        if operation == DELETE:
            return Delta(kind, DELETE, entity_id)
        if operation not in (INSERT, UPDATE, "replace"):
            return None
        doc = change.get("fullDocument")
        if doc is None:
            # Deleted before the lookup ran; the delete event follows.
            return None
        model = habit_from_doc(doc) if kind == HABIT else log_from_doc(doc)
        return Delta(kind, INSERT if operation == INSERT else UPDATE, entity_id, model)


class PollSource(SyncSource):
    name = "poll"

    def __init__(self, gateway: PersistenceGateway):
        self.gateway = gateway
        self.owner_id = None
        self._habits: Dict[str, Habit] = {}
        self._logs: Dict[str, CompletionLog] = {}

    def start(self, owner_id: str) -> None:
        self.owner_id = owner_id
        self._habits, self._logs = self._fetch()

    def poll(self) -> List[Delta]:
        habits, logs = self._fetch()
        deltas = self._diff(HABIT, self._habits, habits) + self._diff(LOG, self._logs, logs)
        self._habits, self._logs = habits, logs
        return deltas

    def _fetch(self):
        habits = {h.id: h for h in self.gateway.list_habits(self.owner_id)}
        logs = {log.id: log for log in self.gateway.list_logs(self.owner_id)}
        return habits, logs

    @staticmethod
    def _diff(kind: str, before: dict, after: dict) -> List[Delta]:
        deltas = []
        for entity_id, doc in after.items():
            if entity_id not in before:
                deltas.append(Delta(kind, INSERT, entity_id, doc))
            elif before[entity_id] != doc:
                deltas.append(Delta(kind, UPDATE, entity_id, doc))
        for entity_id in before:
            if entity_id not in after:
                deltas.append(Delta(kind, DELETE, entity_id))
        return deltas


def open_sync_source(gateway: PersistenceGateway, owner_id: str, prefer_push: bool = True) -> SyncSource:
    """Start a push source, falling back to polling if subscription fails."""
    if prefer_push:
        source = PushSource(gateway)
        try:
            source.start(owner_id)
            logger.info("Real-time sync via change streams for %s", owner_id)
            return source
        except SubscriptionError as e:
            logger.info("Push subscription failed (%s), falling back to polling", e)
    source = PollSource(gateway)
    source.start(owner_id)
    return source
