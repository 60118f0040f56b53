from datetime import datetime, timedelta, timezone

import pytest

from guardian import tasks_engine
from guardian.core.settings import update_settings
from guardian.core.timeutils import to_db
from guardian.logging_utils import read_last_logs


@pytest.fixture
def engine(db, services):
    tasks_engine.init_engine(db, services)
    yield tasks_engine
    tasks_engine.init_engine(None, None)


def _task(db, name):
    return db.query_one("SELECT * FROM tasks WHERE name = ?", (name,))


@pytest.mark.parametrize("value, expected", [
    (5, 5),
    (59, 59),
    (60, 60),
    (300, 300),
    (3540, 3540),
    (3600, 3600),
    (7200, 7200),
    (90, 10),
    (5400, 10),
    (0, 10),
    (-5, 10),
    ("abc", 10),
    (None, 10),
])
def test_normalize_refresh_interval(value, expected):
    assert tasks_engine.normalize_refresh_interval(value) == expected


def test_default_tasks_registered(db):
    names = [r["name"] for r in db.query("SELECT name FROM tasks ORDER BY name")]
    assert names == ["device_cleanup", "sync_plex_users", "update_sessions"]


def test_run_device_cleanup_task(engine, db, services, make_session, payload):
    services.devices.process_sessions_for_device_tracking(payload(make_session()))
    db.execute("UPDATE user_devices SET last_seen = '2000-01-01 00:00:00'")
    update_settings(db, {"device_cleanup_enabled": True, "device_cleanup_interval_days": 7})

    task = _task(db, "device_cleanup")
    engine.run_task(task["id"])

    task = _task(db, "device_cleanup")
    assert task["status"] == "idle"
    assert task["last_run"] is not None
    assert task["next_run"] is not None
    assert task["last_error"] is None
    assert db.query("SELECT * FROM user_devices") == []


def test_disabled_cleanup_keeps_devices(engine, db, services, make_session, payload):
    services.devices.process_sessions_for_device_tracking(payload(make_session()))
    db.execute("UPDATE user_devices SET last_seen = '2000-01-01 00:00:00'")

    engine.run_task(_task(db, "device_cleanup")["id"])

    assert len(db.query("SELECT * FROM user_devices")) == 1
    assert _task(db, "device_cleanup")["status"] == "idle"


def test_unknown_task_module_marks_error(engine, db):
    db.execute("INSERT INTO tasks (name, enabled) VALUES ('does_not_exist', 1)")
    task = _task(db, "does_not_exist")

    engine.run_task(task["id"])

    task = _task(db, "does_not_exist")
    assert task["status"] == "error"
    assert "does_not_exist" in task["last_error"]


def test_run_task_by_name(engine, db, monkeypatch):
    queued = []
    monkeypatch.setattr(tasks_engine, "enqueue_task", queued.append)

    assert engine.run_task_by_name("sync_plex_users") is True
    assert engine.run_task_by_name("nope") is False

    db.execute("UPDATE tasks SET enabled = 0 WHERE name = 'device_cleanup'")
    assert engine.run_task_by_name("device_cleanup") is False

    assert queued == [_task(db, "sync_plex_users")["id"]]


def test_scheduler_tick(engine, db, monkeypatch):
    queued = []
    monkeypatch.setattr(tasks_engine, "enqueue_task", queued.append)
    now = datetime.now(timezone.utc)

    engine.scheduler_tick(now)
    expected = sorted([_task(db, "device_cleanup")["id"], _task(db, "sync_plex_users")["id"]])
    assert sorted(queued) == expected

    queued.clear()
    db.execute(
        "UPDATE tasks SET last_run = ?, next_run = ? WHERE schedule IS NOT NULL",
        (to_db(now - timedelta(minutes=5)), to_db(now + timedelta(hours=1))),
    )
    engine.scheduler_tick(now)
    assert queued == []

    db.execute(
        "UPDATE tasks SET next_run = ? WHERE name = 'sync_plex_users'",
        (to_db(now - timedelta(minutes=1)),),
    )
    engine.scheduler_tick(now)
    assert queued == [_task(db, "sync_plex_users")["id"]]

    queued.clear()
    db.execute("UPDATE tasks SET status = 'running' WHERE name = 'sync_plex_users'")
    engine.scheduler_tick(now)
    assert queued == []


def test_recover_stuck_tasks(engine, db):
    db.execute(
        "UPDATE tasks SET status = 'running', updated_at = '2000-01-01 00:00:00' WHERE name = 'sync_plex_users'"
    )
    engine.recover_stuck_tasks()

    task = _task(db, "sync_plex_users")
    assert task["status"] == "idle"
    assert task["last_error"] == "Watchdog: task was stuck in running state"


def test_session_cycle_skips_without_configuration(engine, plex):
    assert engine.run_session_cycle() is False
    assert plex.terminated == []


def test_session_cycle(engine, plex, configure_plex, make_session, payload):
    configure_plex()
    plex.sessions = payload(make_session())

    assert engine.run_session_cycle() is True
    assert plex.terminated[0][0] == "sess-1"


def test_session_cycle_failure(engine, plex, configure_plex, monkeypatch):
    configure_plex()

    def broken():
        raise RuntimeError("plex down")

    monkeypatch.setattr(plex, "get_sessions", broken)
    assert engine.run_session_cycle() is False
    with pytest.raises(RuntimeError):
        engine.run_session_cycle(raise_errors=True)


def test_update_sessions_task(engine, db, plex, configure_plex, make_session, payload):
    configure_plex()
    plex.sessions = payload(make_session())

    engine.run_task(_task(db, "update_sessions")["id"])

    task = _task(db, "update_sessions")
    assert task["status"] == "idle"
    assert task["next_run"] is None
    assert len(db.query("SELECT * FROM session_history WHERE ended_at IS NULL")) == 1


def test_task_logs_format():
    tasks_engine.task_logs(3, "error", "boom", {"a": 1})
    assert any('[TASK 3] ERROR: boom | details={"a": 1}' in line for line in read_last_logs(50))


class _Stopper:
    """Lets the poll loop run a fixed number of iterations."""

    def __init__(self, rounds):
        self.rounds = rounds

    def is_set(self):
        return self.rounds <= 0

    def wait(self, timeout=None):
        self.rounds -= 1


def test_poll_loop_normalizes_interval_once_per_change(engine, db, monkeypatch):
    db.execute("UPDATE settings SET refresh_interval = 90 WHERE id = 1")
    seen = []
    original = tasks_engine.normalize_refresh_interval

    def counting(value):
        seen.append(value)
        return original(value)

    monkeypatch.setattr(tasks_engine, "normalize_refresh_interval", counting)
    monkeypatch.setattr(tasks_engine, "run_session_cycle", lambda: False)
    monkeypatch.setattr(tasks_engine, "_stop", _Stopper(3))

    engine.session_poll_loop()

    assert seen == [90]
