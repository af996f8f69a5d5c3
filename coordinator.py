"""
Sync coordinator: the only writer of the local ``HabitStore``.

Every mutation first goes to the persistence gateway. When the gateway
reports ``UnavailableError`` (or the coordinator already knows it is
offline) the mutation is applied optimistically to the store, queued as a
``PendingOperation`` and the optimistic result is returned. Any other error
is raised to the caller and leaves the store untouched.

When connectivity returns the queue is drained in FIFO order. Failed
replays go back to the end of the queue; unavailable-store failures are
never dropped, permanent ones are dropped after ``max_replay_attempts``.

Authoritative changes pushed by a ``SyncSource`` supersede optimistic local
state, except that a log carrying a lower version than the one already
confirmed locally is ignored.

Logs are only kept for habits present in the store, and switching users
discards the previous user's queue.
"""

import logging
import uuid
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from config import get_settings
from errors import HabitTrackerError, NotFoundError, UnavailableError
from gateway import (
    PersistenceGateway,
    require_owner,
    validate_habit_create,
    validate_habit_update,
)
from identity import IdentityProvider, User
from schemas import (
    CompletionLog,
    EntityState,
    Habit,
    OperationType,
    PendingOperation,
    parse_day,
    utcnow,
)
from store import HabitStore
from sync import DELETE, HABIT, LOG, Delta, SyncSource, open_sync_source

logger = logging.getLogger(__name__)

TEMP_PREFIX = "tmp-"


def is_temp_id(entity_id: str) -> bool:
    return entity_id.startswith(TEMP_PREFIX)


class _Deferred(Exception):
    """Replay depends on a queued create that has not gone through yet."""


class SyncCoordinator:
    def __init__(
        self,
        gateway: PersistenceGateway,
        store: Optional[HabitStore] = None,
        owner_id: Optional[str] = None,
        identity: Optional[IdentityProvider] = None,
        max_replay_attempts: Optional[int] = None,
    ):
        self.gateway = gateway
        self.store = store if store is not None else HabitStore()
        self.identity = identity
        self._owner_id = owner_id
        self.online = True
        self.pending: Deque[PendingOperation] = deque()
        self.source: Optional[SyncSource] = None
        self.max_replay_attempts = (
            max_replay_attempts
            if max_replay_attempts is not None
            else get_settings().max_replay_attempts
        )
        self._id_map: Dict[str, str] = {}
        self._unsubscribe_identity = None
        if identity is not None:
            self._unsubscribe_identity = identity.on_change(self._on_user_changed)

    # -----------------------------
    # Identity
    # -----------------------------

    @property
    def owner_id(self) -> Optional[str]:
        if self.identity is not None:
            user = self.identity.current_user()
            return user.id if user else None
        return self._owner_id

    def _on_user_changed(self, user: Optional[User]) -> None:
        self.stop_sync()
        self.store.clear()
        if self.pending:
            logger.warning("Discarding %d pending operations of the previous user", len(self.pending))
        self.pending.clear()
        self._id_map.clear()
        if user is None:
            logger.info("Signed out, local state cleared")
            return
        if self.online:
            try:
                self.load()
            except UnavailableError:
                logger.warning("Initial load for %s deferred, store unavailable", user.id)

    # -----------------------------
    # Reads
    # -----------------------------

    def load(self) -> None:
        """Replace local state with the owner's habits and logs from the store."""
        owner = require_owner(self.owner_id)
        habits = self._remote(self.gateway.list_habits, owner)
        logs = self._remote(self.gateway.list_logs, owner)
        self.store.replace_all(habits, logs)
        logger.info("Loaded %d habits and %d logs for %s", len(habits), len(logs), owner)

    def fetch_logs(self, start, end) -> List[CompletionLog]:
        owner = require_owner(self.owner_id)
        logs = self._remote(self.gateway.list_logs_in_range, owner, start, end)
        for log in logs:
            self._apply_confirmed_log(log)
        return logs

    # -----------------------------
    # Mutations
    # -----------------------------

    def create_habit(self, data) -> Habit:
        owner = require_owner(self.owner_id)
        habit_data = validate_habit_create(data)
        try:
            habit = self._remote(self.gateway.create_habit, habit_data, owner)
        except UnavailableError:
            temp = Habit(
                id=f"{TEMP_PREFIX}{uuid.uuid4().hex}",
                user_id=owner,
                created_at=utcnow(),
                **habit_data.model_dump(),
            )
            self.store.put_habit(temp, EntityState.OPTIMISTIC_PENDING)
            self._enqueue(OperationType.CREATE_HABIT, {
                "temp_id": temp.id,
                "data": habit_data.model_dump(mode="json"),
                "owner_id": owner,
            })
            return temp
        self.store.put_habit(habit)
        return habit

    def update_habit(self, habit_id: str, data) -> Habit:
        changes = validate_habit_update(data)
        habit_id = self._resolve(habit_id, strict=False)
        try:
            if is_temp_id(habit_id):
                raise UnavailableError("Habit not created remotely yet")
            habit = self._remote(self.gateway.update_habit, habit_id, changes)
        except UnavailableError:
            current = self.store.get_habit(habit_id)
            if current is None:
                raise NotFoundError("Habit not found")
            habit = current.model_copy(update={
                **changes.model_dump(exclude_none=True),
                "updated_at": utcnow(),
            })
            self.store.put_habit(habit, EntityState.OPTIMISTIC_PENDING)
            self._enqueue(OperationType.UPDATE_HABIT, {
                "habit_id": habit_id,
                "data": changes.changes(),
                "owner_id": self.owner_id,
            })
            return habit
        self.store.put_habit(habit)
        return habit

    def delete_habit(self, habit_id: str) -> None:
        habit_id = self._resolve(habit_id, strict=False)
        if is_temp_id(habit_id):
            # Never reached the store: forget the queued create and its dependants.
            if self.store.get_habit(habit_id) is None:
                raise NotFoundError("Habit not found")
            self._drop_pending_for(habit_id)
            self.store.remove_habit(habit_id)
            return
        try:
            self._remote(self.gateway.delete_habit, habit_id)
        except UnavailableError:
            if self.store.get_habit(habit_id) is None:
                raise NotFoundError("Habit not found")
            self._drop_pending_for(habit_id)
            self.store.remove_habit(habit_id)
            self._enqueue(OperationType.DELETE_HABIT, {"habit_id": habit_id, "owner_id": self.owner_id})
            return
        self.store.remove_habit(habit_id)

    def toggle_completion(self, habit_id: str, completed: bool, day=None) -> CompletionLog:
        owner = require_owner(self.owner_id)
        day = parse_day(day if day is not None else self.store.today()).isoformat()
        habit_id = self._resolve(habit_id, strict=False)
        try:
            if is_temp_id(habit_id):
                raise UnavailableError("Habit not created remotely yet")
            log = self._remote(self.gateway.upsert_completion, habit_id, day, completed, owner)
        except UnavailableError:
            if self.store.get_habit(habit_id) is None:
                raise NotFoundError("Habit not found")
            existing = self.store.get_log(habit_id, day)
            log = CompletionLog(
                id=existing.id if existing else f"{habit_id}_{day}",
                habit_id=habit_id,
                date=day,
                completed=completed,
                user_id=owner,
                updated_at=utcnow(),
                version=existing.version if existing else 0,
            )
            self.store.put_log(log, EntityState.OPTIMISTIC_PENDING)
            self._enqueue(OperationType.TOGGLE_COMPLETION, {
                "habit_id": habit_id,
                "date": day,
                "completed": bool(completed),
                "owner_id": owner,
            })
            return log
        self._apply_confirmed_log(log)
        return log

    # -----------------------------
    # Connectivity and replay
    # -----------------------------

    def set_online(self, online: bool) -> None:
        was_online = self.online
        self.online = online
        if online and not was_online:
            logger.info("Back online, replaying %d pending operations", len(self.pending))
            self.replay()
        elif not online and was_online:
            logger.warning("Went offline")

    def check_connectivity(self) -> bool:
        try:
            self.gateway.ping()
        except UnavailableError:
            self.set_online(False)
            return False
        self.set_online(True)
        return True

    def replay(self) -> int:
        """Drain the queue once in FIFO order; returns how many operations succeeded."""
        replayed = 0
        for _ in range(len(self.pending)):
            op = self.pending.popleft()
            try:
                self._replay_one(op)
            except _Deferred:
                self.pending.append(op)
            except UnavailableError:
                op.attempts += 1
                self._mark_failed(op)
                self.pending.append(op)
            except HabitTrackerError as e:
                op.attempts += 1
                self._mark_failed(op)
                if op.attempts >= self.max_replay_attempts:
                    logger.error("Dropping %s after %d attempts: %s", op.type.value, op.attempts, e)
                    self._drop_dependants(op)
                else:
                    logger.warning("Replay of %s failed (%s), re-queued", op.type.value, e)
                    self.pending.append(op)
            else:
                replayed += 1
        if replayed:
            logger.info("Replayed %d operations, %d still pending", replayed, len(self.pending))
        return replayed

    def _replay_one(self, op: PendingOperation) -> None:
        payload = op.payload
        # Results for another account are sent but never land in this store.
        local = payload.get("owner_id", self.owner_id) == self.owner_id
        if op.type == OperationType.CREATE_HABIT:
            habit = self._remote(self.gateway.create_habit, payload["data"], payload["owner_id"])
            self._id_map[payload["temp_id"]] = habit.id
            if local:
                self.store.rekey_habit(payload["temp_id"], habit)
        elif op.type == OperationType.UPDATE_HABIT:
            habit_id = self._resolve(payload["habit_id"])
            habit = self._remote(self.gateway.update_habit, habit_id, payload["data"])
            if local and not self._has_pending(habit_id, OperationType.UPDATE_HABIT):
                self.store.put_habit(habit)
        elif op.type == OperationType.DELETE_HABIT:
            habit_id = self._resolve(payload["habit_id"])
            try:
                self._remote(self.gateway.delete_habit, habit_id)
            except NotFoundError:
                logger.info("Habit %s already gone", habit_id)
            if local:
                self.store.remove_habit(habit_id)
        elif op.type == OperationType.TOGGLE_COMPLETION:
            habit_id = self._resolve(payload["habit_id"])
            log = self._remote(
                self.gateway.upsert_completion,
                habit_id, payload["date"], payload["completed"], payload["owner_id"],
            )
            if local:
                self._apply_confirmed_log(log)

    # -----------------------------
    # Push updates
    # -----------------------------

    def start_sync(self, source: Optional[SyncSource] = None) -> SyncSource:
        self.stop_sync()
        if source is None:
            source = open_sync_source(self.gateway, require_owner(self.owner_id))
        else:
            source.start(require_owner(self.owner_id))
        self.source = source
        return source

    def stop_sync(self) -> None:
        if self.source is not None:
            self.source.stop()
            self.source = None

    def pump(self) -> int:
        """Apply whatever the sync source has; returns the number of deltas applied."""
        if self.source is None:
            return 0
        try:
            deltas = self.source.poll()
        except UnavailableError:
            self.set_online(False)
            return 0
        for delta in deltas:
            self.apply_delta(delta)
        return len(deltas)

    def apply_delta(self, delta: Delta) -> None:
        if delta.kind == HABIT:
            if delta.op == DELETE:
                if self.store.get_habit(delta.entity_id) is not None:
                    self.store.remove_habit(delta.entity_id)
                return
            habit = delta.document
            if habit.user_id != self.owner_id:
                return
            if self._has_pending(habit.id, OperationType.DELETE_HABIT):
                return
            self.store.put_habit(habit)
        elif delta.kind == LOG:
            if delta.op == DELETE:
                log = self.store.find_log_by_id(delta.entity_id)
                if log is not None:
                    self.store.remove_log(log.habit_id, log.date)
                return
            log = delta.document
            if log.user_id != self.owner_id:
                return
            if self.store.get_habit(log.habit_id) is None:
                logger.debug("Ignoring log %s of unknown or deleted habit %s", log.id, log.habit_id)
                return
            current = self.store.get_log(log.habit_id, log.date)
            state = self.store.log_state(log.habit_id, log.date)
            if current is not None and state == EntityState.CONFIRMED and current.version > log.version:
                logger.debug("Ignoring stale log %s v%d < v%d", log.id, log.version, current.version)
                return
            self.store.put_log(log)

    def close(self) -> None:
        self.stop_sync()
        if self._unsubscribe_identity is not None:
            self._unsubscribe_identity()
            self._unsubscribe_identity = None

    # -----------------------------
    # Helpers
    # -----------------------------

    def _remote(self, call, *args):
        if not self.online:
            raise UnavailableError()
        try:
            return call(*args)
        except UnavailableError:
            self.set_online(False)
            raise

    def _enqueue(self, op_type: OperationType, payload: Dict[str, Any]) -> PendingOperation:
        op = PendingOperation(type=op_type, payload=payload)
        self.pending.append(op)
        logger.info("Queued %s while offline (%d pending)", op_type.value, len(self.pending))
        return op

    def _resolve(self, entity_id: str, strict: bool = True) -> str:
        if entity_id in self._id_map:
            return self._id_map[entity_id]
        if strict and is_temp_id(entity_id):
            raise _Deferred(entity_id)
        return entity_id

    def _apply_confirmed_log(self, log: CompletionLog) -> None:
        if self.store.get_habit(log.habit_id) is None:
            return
        if self._has_pending_toggle(log.habit_id, log.date):
            return
        self.store.put_log(log)

    def _has_pending(self, habit_id: str, op_type: OperationType) -> bool:
        return any(
            op.type == op_type and self._resolve(op.payload.get("habit_id", ""), strict=False) == habit_id
            for op in self.pending
        )

    def _has_pending_toggle(self, habit_id: str, day: str) -> bool:
        return any(
            op.type == OperationType.TOGGLE_COMPLETION
            and self._resolve(op.payload["habit_id"], strict=False) == habit_id
            and op.payload["date"] == day
            for op in self.pending
        )

    def _drop_pending_for(self, habit_id: str) -> None:
        keep = deque()
        for op in self.pending:
            target = op.payload.get("temp_id") or op.payload.get("habit_id")
            if self._resolve(target, strict=False) != habit_id:
                keep.append(op)
        self.pending = keep

    def _drop_dependants(self, op: PendingOperation) -> None:
        if op.type == OperationType.CREATE_HABIT:
            temp_id = op.payload["temp_id"]
            self.pending = deque(p for p in self.pending if p.payload.get("habit_id") != temp_id)

    def _mark_failed(self, op: PendingOperation) -> None:
        payload = op.payload
        if op.type == OperationType.TOGGLE_COMPLETION:
            habit_id = self._resolve(payload["habit_id"], strict=False)
            self.store.mark_log(habit_id, payload["date"], EntityState.OPTIMISTIC_FAILED)
        elif op.type == OperationType.CREATE_HABIT:
            self.store.mark_habit(payload["temp_id"], EntityState.OPTIMISTIC_FAILED)
        elif op.type == OperationType.UPDATE_HABIT:
            self.store.mark_habit(self._resolve(payload["habit_id"], strict=False), EntityState.OPTIMISTIC_FAILED)
