import pytest

from coordinator import SyncCoordinator, is_temp_id
from errors import AuthError, NotFoundError, ValidationError
from identity import InMemoryIdentityProvider
from schemas import EntityState, OperationType
from sync import DELETE, HABIT, LOG, UPDATE, Delta
from tests.helpers import FAST_PASSWORDS, OWNER, TODAY, make_habit, make_log


@pytest.fixture
def coordinator(memory_gateway, store):
    memory_gateway.habits["1"] = make_habit("1")
    coord = SyncCoordinator(memory_gateway, store, owner_id=OWNER, max_replay_attempts=3)
    coord.load()
    return coord


def go_offline(coordinator):
    coordinator.gateway.offline = True


def go_online(coordinator):
    coordinator.gateway.offline = False
    coordinator.set_online(True)


def test_toggle_creates_log_for_today(coordinator):
    log = coordinator.toggle_completion("1", True)

    assert (log.habit_id, log.date, log.completed) == ("1", "2024-06-10", True)
    progress = coordinator.store.today_progress
    assert (progress.completed, progress.total, progress.percentage) == (1, 1, 100)


def test_toggle_twice_restores_value_with_single_log(coordinator, memory_gateway):
    coordinator.toggle_completion("1", True)
    coordinator.toggle_completion("1", False)

    assert coordinator.store.today_status("1") is False
    assert len([log for log in coordinator.store.logs if log.habit_id == "1"]) == 1
    assert len(memory_gateway.logs) == 1
    assert coordinator.store.today_progress.percentage == 0


def test_today_progress_follows_habit_set(coordinator):
    coordinator.toggle_completion("1", True)
    habit = coordinator.create_habit({"name": "Quran Reading", "category": "quran"})
    assert coordinator.store.today_progress.total == 2
    assert coordinator.store.today_progress.percentage == 50

    coordinator.delete_habit(habit.id)
    assert coordinator.store.today_progress.total == 1
    assert coordinator.store.today_progress.percentage == 100


def test_delete_removes_logs(coordinator, memory_gateway):
    coordinator.toggle_completion("1", True, day="2024-06-09")
    coordinator.toggle_completion("1", True)

    coordinator.delete_habit("1")

    assert coordinator.store.get_habit("1") is None
    assert coordinator.store.logs == []
    assert memory_gateway.logs == {}
    book = coordinator.store.book()
    assert book.for_habit("1") == []
    assert book.status_for("1", "2024-06-09") is False


def test_permanent_errors_are_raised_without_queueing(coordinator):
    with pytest.raises(NotFoundError):
        coordinator.toggle_completion("missing", True)
    with pytest.raises(ValidationError):
        coordinator.create_habit({"name": "", "category": "quran"})
    assert not coordinator.pending
    assert coordinator.online


def test_requires_owner(memory_gateway, store):
    coordinator = SyncCoordinator(memory_gateway, store)
    with pytest.raises(AuthError):
        coordinator.toggle_completion("1", True)


def test_offline_toggle_is_optimistic_and_replayed(coordinator, memory_gateway):
    go_offline(coordinator)

    log = coordinator.toggle_completion("1", True)

    assert log.completed is True
    assert not coordinator.online
    assert len(coordinator.pending) == 1
    assert coordinator.pending[0].type == OperationType.TOGGLE_COMPLETION
    assert coordinator.store.log_state("1", TODAY) == EntityState.OPTIMISTIC_PENDING
    assert coordinator.store.today_progress.percentage == 100
    assert memory_gateway.logs == {}

    go_online(coordinator)

    assert not coordinator.pending
    assert memory_gateway.logs[("1", "2024-06-10")].completed is True
    assert coordinator.store.log_state("1", TODAY) == EntityState.CONFIRMED


def test_known_offline_skips_remote_call(coordinator, memory_gateway):
    coordinator.set_online(False)
    memory_gateway.calls.clear()

    coordinator.toggle_completion("1", True)

    assert memory_gateway.calls == []
    assert len(coordinator.pending) == 1


def test_duplicate_offline_toggles_replay_to_one_log(coordinator, memory_gateway):
    go_offline(coordinator)
    coordinator.toggle_completion("1", True)
    coordinator.toggle_completion("1", False)
    coordinator.toggle_completion("1", True)

    go_online(coordinator)

    assert not coordinator.pending
    assert list(memory_gateway.logs) == [("1", "2024-06-10")]
    assert memory_gateway.logs[("1", "2024-06-10")].completed is True
    assert coordinator.store.today_status("1") is True


def test_offline_create_gets_temp_id_then_authoritative_id(coordinator, memory_gateway):
    go_offline(coordinator)
    habit = coordinator.create_habit({"name": "Morning Zikr", "category": "zikr"})
    coordinator.toggle_completion(habit.id, True)

    assert is_temp_id(habit.id)
    assert coordinator.store.habit_state(habit.id) == EntityState.OPTIMISTIC_PENDING
    assert [op.type for op in coordinator.pending] == [
        OperationType.CREATE_HABIT, OperationType.TOGGLE_COMPLETION,
    ]

    go_online(coordinator)

    assert not coordinator.pending
    assert coordinator.store.get_habit(habit.id) is None
    created = [h for h in coordinator.store.habits if h.name == "Morning Zikr"][0]
    assert not is_temp_id(created.id)
    assert coordinator.store.habit_state(created.id) == EntityState.CONFIRMED
    assert coordinator.store.today_status(created.id) is True
    assert memory_gateway.logs[(created.id, "2024-06-10")].completed is True


def test_replay_keeps_fifo_order(coordinator, memory_gateway):
    go_offline(coordinator)
    coordinator.create_habit({"name": "A", "category": "daily"})
    coordinator.create_habit({"name": "B", "category": "daily"})

    go_online(coordinator)

    assert [h.name for h in memory_gateway.habits.values()] == ["Fajr Namaz", "A", "B"]


def test_offline_update(coordinator, memory_gateway):
    go_offline(coordinator)
    habit = coordinator.update_habit("1", {"description": "On time"})
    assert habit.description == "On time"
    assert coordinator.store.habit_state("1") == EntityState.OPTIMISTIC_PENDING

    go_online(coordinator)

    assert memory_gateway.habits["1"].description == "On time"
    assert coordinator.store.habit_state("1") == EntityState.CONFIRMED


def test_offline_delete_purges_logs_and_queues(coordinator, memory_gateway):
    coordinator.toggle_completion("1", True)
    go_offline(coordinator)

    coordinator.delete_habit("1")

    assert coordinator.store.get_habit("1") is None
    assert coordinator.store.logs == []
    assert [op.type for op in coordinator.pending] == [OperationType.DELETE_HABIT]

    go_online(coordinator)

    assert memory_gateway.habits == {}
    assert memory_gateway.logs == {}


def test_offline_delete_of_unsynced_habit_drops_its_queue(coordinator, memory_gateway):
    go_offline(coordinator)
    habit = coordinator.create_habit({"name": "A", "category": "daily"})
    coordinator.toggle_completion(habit.id, True)

    coordinator.delete_habit(habit.id)

    assert not coordinator.pending
    assert coordinator.store.get_habit(habit.id) is None
    go_online(coordinator)
    assert list(memory_gateway.habits) == ["1"]


def test_failed_replay_is_requeued(coordinator, memory_gateway):
    go_offline(coordinator)
    coordinator.toggle_completion("1", True)

    coordinator.set_online(True)  # the store is still down

    assert len(coordinator.pending) == 1
    assert coordinator.pending[0].attempts == 1
    assert coordinator.store.log_state("1", TODAY) == EntityState.OPTIMISTIC_FAILED
    assert not coordinator.online

    go_online(coordinator)
    assert not coordinator.pending
    assert coordinator.store.log_state("1", TODAY) == EntityState.CONFIRMED


def test_permanent_replay_failure_dropped_after_max_attempts(coordinator, memory_gateway):
    go_offline(coordinator)
    coordinator.toggle_completion("1", True)
    del memory_gateway.habits["1"]  # removed elsewhere meanwhile

    go_online(coordinator)
    assert len(coordinator.pending) == 1
    coordinator.replay()
    assert len(coordinator.pending) == 1
    coordinator.replay()

    assert not coordinator.pending
    assert coordinator.store.log_state("1", TODAY) == EntityState.OPTIMISTIC_FAILED


def test_push_update_supersedes_optimistic_log(coordinator):
    go_offline(coordinator)
    optimistic = coordinator.toggle_completion("1", True)

    coordinator.apply_delta(Delta(LOG, UPDATE, "log-9", make_log("1", TODAY, completed=False, log_id="log-9")))

    assert coordinator.store.log_state("1", TODAY) == EntityState.CONFIRMED
    assert coordinator.store.get_log("1", TODAY).id == "log-9"
    assert coordinator.store.today_status("1") is False
    assert optimistic.completed is True


def test_stale_push_is_ignored(coordinator):
    coordinator.apply_delta(Delta(LOG, UPDATE, "a", make_log("1", TODAY, completed=True, version=3, log_id="a")))
    coordinator.apply_delta(Delta(LOG, UPDATE, "a", make_log("1", TODAY, completed=False, version=2, log_id="a")))
    assert coordinator.store.today_status("1") is True

    coordinator.apply_delta(Delta(LOG, UPDATE, "a", make_log("1", TODAY, completed=False, version=4, log_id="a")))
    assert coordinator.store.today_status("1") is False


def test_push_habit_deltas(coordinator):
    coordinator.apply_delta(Delta(HABIT, UPDATE, "2", make_habit("2", name="Isha")))
    coordinator.apply_delta(Delta(HABIT, UPDATE, "3", make_habit("3", owner="someone-else")))
    assert sorted(h.id for h in coordinator.store.habits) == ["1", "2"]

    coordinator.apply_delta(Delta(LOG, UPDATE, "l", make_log("2", TODAY, log_id="l")))
    coordinator.apply_delta(Delta(HABIT, DELETE, "2"))
    assert coordinator.store.get_habit("2") is None
    assert coordinator.store.get_log("2", TODAY) is None


def test_push_log_delete(coordinator):
    log = coordinator.toggle_completion("1", True)
    coordinator.apply_delta(Delta(LOG, DELETE, log.id))
    assert coordinator.store.get_log("1", TODAY) is None


def test_check_connectivity_triggers_replay(coordinator, memory_gateway):
    go_offline(coordinator)
    coordinator.toggle_completion("1", True)
    assert coordinator.check_connectivity() is False

    memory_gateway.offline = False
    assert coordinator.check_connectivity() is True
    assert not coordinator.pending


def test_identity_drives_owner_and_state(memory_gateway, store):
    identity = InMemoryIdentityProvider(password_context=FAST_PASSWORDS)
    coordinator = SyncCoordinator(memory_gateway, store, identity=identity)
    with pytest.raises(AuthError):
        coordinator.create_habit({"name": "Fajr", "category": "namaz"})

    user = identity.sign_up("a@example.com", "secret1")
    habit = coordinator.create_habit({"name": "Fajr", "category": "namaz"})
    assert habit.user_id == user.id

    identity.sign_out()
    assert coordinator.store.habits == []

    identity.sign_in("a@example.com", "secret1")
    assert [h.id for h in coordinator.store.habits] == [habit.id]
    coordinator.close()


def test_switching_users_discards_previous_queue(memory_gateway, store):
    identity = InMemoryIdentityProvider(password_context=FAST_PASSWORDS)
    coordinator = SyncCoordinator(memory_gateway, store, identity=identity)
    identity.sign_up("a@example.com", "secret1")
    go_offline(coordinator)
    coordinator.create_habit({"name": "A private", "category": "daily"})
    assert len(coordinator.pending) == 1

    identity.sign_out()
    identity.sign_up("b@example.com", "secret2")
    go_online(coordinator)

    assert not coordinator.pending
    assert coordinator.store.habits == []
    assert memory_gateway.habits == {}
    coordinator.close()


def test_replay_for_another_owner_stays_out_of_store(coordinator, memory_gateway):
    go_offline(coordinator)
    coordinator.toggle_completion("1", True)
    coordinator.pending[0].payload["owner_id"] = "someone-else"
    coordinator.store.remove_log("1", TODAY)

    go_online(coordinator)

    assert not coordinator.pending
    assert memory_gateway.logs[("1", "2024-06-10")].user_id == "someone-else"
    assert coordinator.store.get_log("1", TODAY) is None


def test_push_log_for_habit_deleted_offline_is_ignored(coordinator):
    go_offline(coordinator)
    coordinator.delete_habit("1")

    coordinator.apply_delta(Delta(LOG, UPDATE, "l9", make_log("1", TODAY, log_id="l9")))

    assert coordinator.store.logs == []
    assert coordinator.store.get_log("1", TODAY) is None


def test_push_log_for_unknown_habit_is_ignored(coordinator):
    coordinator.apply_delta(Delta(LOG, UPDATE, "l9", make_log("ghost", TODAY, log_id="l9")))
    assert coordinator.store.logs == []


def test_push_delete_of_unknown_habit_does_not_notify(coordinator):
    seen = []
    coordinator.store.subscribe(seen.append)

    coordinator.apply_delta(Delta(HABIT, DELETE, "not-mine"))

    assert seen == []
    assert [h.id for h in coordinator.store.habits] == ["1"]


def test_fetch_logs_merges_range_and_keeps_pending_toggles(coordinator, memory_gateway):
    memory_gateway.upsert_completion("1", "2024-06-01", True, OWNER)
    memory_gateway.upsert_completion("1", "2024-06-08", True, OWNER)
    memory_gateway.upsert_completion("1", "2024-06-09", True, OWNER)
    go_offline(coordinator)
    coordinator.toggle_completion("1", False, day="2024-06-09")
    memory_gateway.offline = False
    coordinator.online = True

    logs = coordinator.fetch_logs("2024-06-05", "2024-06-09")

    assert [log.date for log in logs] == ["2024-06-08", "2024-06-09"]
    book = coordinator.store.book()
    assert book.status_for("1", "2024-06-08") is True
    assert book.status_for("1", "2024-06-09") is False
    assert coordinator.store.log_state("1", "2024-06-09") == EntityState.OPTIMISTIC_PENDING
    assert coordinator.store.get_log("1", "2024-06-01") is None
    assert len(coordinator.pending) == 1
