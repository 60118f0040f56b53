import importlib
import json
import threading
import time
from datetime import datetime

from croniter import croniter

from guardian.core.settings import get_setting, is_plex_configured, is_valid_refresh_interval
from guardian.core.timeutils import from_db, now_in_timezone, to_db
from guardian.errors import PlexConfigurationError
from guardian.logging_utils import get_logger

logger = get_logger("tasks_engine")

queue_lock = threading.Lock()
worker_running = False

_db = None
_services = None
_stop = threading.Event()


# -------------------------------------------------------------------
# CONFIG
# -------------------------------------------------------------------

TASK_MAX_DURATION = {
    "sync_plex_users": 10 * 60,
    "device_cleanup": 10 * 60,
}
DEFAULT_TASK_MAX_DURATION = 5 * 60

DEFAULT_REFRESH_INTERVAL = 10
WATCHDOG_INTERVAL = 30
STARTUP_TASKS = ("device_cleanup", "sync_plex_users")


def init_engine(db, services) -> None:
    global _db, _services
    _db = db
    _services = services


def get_services():
    if _services is None:
        raise RuntimeError("Task engine not initialized")
    return _services


def run_task_by_name(task_name: str) -> bool:
    row = _db.query_one(
        "SELECT id, status, enabled FROM tasks WHERE name = ?",
        (task_name,)
    )

    if not row:
        logger.error(f"Unknown task: {task_name}")
        return False

    if not row["enabled"]:
        logger.warning(f"Task disabled: {task_name}")
        return False

    enqueue_task(row["id"])
    return True


# -------------------------------------------------------------------
# Watchdog
# -------------------------------------------------------------------

def recover_stuck_tasks(max_minutes=30):
    try:
        _db.execute(
            """
            UPDATE tasks
            SET
                status = 'idle',
                last_error = 'Watchdog: task was stuck in running state',
                updated_at = CURRENT_TIMESTAMP
            WHERE status = 'running'
              AND datetime(updated_at) < datetime('now', ?)
            """,
            (f'-{max_minutes} minutes',)
        )
    except Exception as e:
        logger.error(f"[WATCHDOG] failed to recover tasks: {e}")


def _watchdog_loop():
    while not _stop.is_set():
        recover_stuck_tasks()
        _stop.wait(WATCHDOG_INTERVAL)


# -------------------------------------------------------------------
# Unified task logging
# -------------------------------------------------------------------

def task_logs(task_id, status, message, details=None):
    status_l = str(status).lower().strip()

    level = "info"
    label = "INFO"

    if status_l in ("start", "starting", "running", "begin"):
        label = "START"
    elif status_l in ("success", "ok", "done", "finished"):
        label = "SUCCESS"
    elif status_l in ("warn", "warning"):
        level = "warning"
        label = "WARNING"
    elif status_l in ("error", "err", "failed", "timeout"):
        level = "error"
        label = "ERROR"

    log_msg = f"[TASK {task_id}] {label}: {message}"

    if details is not None:
        if not isinstance(details, str):
            try:
                details = json.dumps(details, ensure_ascii=False, default=str)
            except (TypeError, ValueError):
                details = str(details)
        log_msg += f" | details={details}"

    if level == "error":
        logger.error(log_msg)
    elif level == "warning":
        logger.warning(log_msg)
    else:
        logger.info(log_msg)


# -------------------------------------------------------------------
# Queue + worker
# -------------------------------------------------------------------

def enqueue_task(task_id: int):
    global worker_running

    row = _db.query_one(
        "SELECT enabled FROM tasks WHERE id = ?",
        (task_id,)
    )
    if not row or not row["enabled"]:
        logger.info(f"Task {task_id} ignored (disabled)")
        return

    _db.execute(
        """
        UPDATE tasks
        SET queued_count = queued_count + 1,
            status = CASE
                WHEN status IN ('idle', 'error') THEN 'queued'
                ELSE status
            END,
            updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
          AND enabled = 1
        """,
        (task_id,)
    )

    with queue_lock:
        if not worker_running:
            worker_running = True
            threading.Thread(
                target=_task_worker,
                name="guardian-task-worker",
                daemon=True
            ).start()


def _task_worker():
    global worker_running

    try:
        while True:
            row = _db.query_one(
                """
                SELECT id
                FROM tasks
                WHERE queued_count > 0
                  AND enabled = 1
                ORDER BY updated_at ASC
                LIMIT 1
                """
            )

            if not row:
                return

            try:
                run_task(row["id"])
            except Exception:
                logger.error(f"[WORKER] Error running task {row['id']}", exc_info=True)
    finally:
        with queue_lock:
            worker_running = False


def compute_next_run(schedule: str, base: datetime | None = None) -> datetime:
    """Next cron occurrence, evaluated in the configured timezone."""
    base = base or now_in_timezone(get_setting(_db, "timezone"))
    return croniter(schedule, base).get_next(datetime)


# -------------------------------------------------------------------
# Task execution
# -------------------------------------------------------------------

def run_task(task_id: int):
    row = _db.query_one(
        "SELECT id, name, schedule, status FROM tasks WHERE id = ?",
        (task_id,)
    )

    if not row:
        task_logs(task_id, "error", "Task not found in database")
        return

    name = row["name"]
    schedule = row["schedule"]
    module_name = f"guardian.tasks.{name}"

    task_logs(task_id, "start", f"Running task '{name}'")

    start_time = time.time()
    max_duration = TASK_MAX_DURATION.get(name, DEFAULT_TASK_MAX_DURATION)

    # -------------------------------------------------
    # RUNNING (consumes one queue slot)
    # -------------------------------------------------
    try:
        _db.execute(
            """
            UPDATE tasks
            SET
                status = 'running',
                last_error = NULL,
                queued_count = CASE
                    WHEN queued_count > 0 THEN queued_count - 1
                    ELSE 0
                END,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (task_id,)
        )
    except Exception as e:
        task_logs(task_id, "error", f"Could not mark task running: {e}")
        return

    try:
        module = importlib.import_module(module_name)
        if not hasattr(module, "run"):
            raise AttributeError(f"Module {module_name} does not expose run()")
        run_func = module.run
    except (ImportError, AttributeError) as e:
        task_logs(task_id, "error", f"Cannot load {module_name}: {e}")
        _db.execute(
            "UPDATE tasks SET status='error', last_error=?, updated_at = CURRENT_TIMESTAMP WHERE id=?",
            (str(e), task_id)
        )
        return

    try:
        result = run_func(task_id, _db)

        duration = time.time() - start_time
        if duration > max_duration:
            raise TimeoutError(
                f"Task {name} took too long ({int(duration)}s > {max_duration}s)"
            )

        _db.execute(
            """
            UPDATE tasks
            SET
                status = CASE WHEN queued_count > 0 THEN 'queued' ELSE 'idle' END,
                last_run = datetime('now'),
                last_error = NULL,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (task_id,)
        )

        task_logs(task_id, "success", f"Task '{name}' finished", result)

        if schedule:
            try:
                next_exec = compute_next_run(schedule)
                _db.execute(
                    "UPDATE tasks SET next_run=? WHERE id=?",
                    (to_db(next_exec), task_id)
                )
                task_logs(task_id, "info", f"Next run '{name}' -> {next_exec.isoformat()}")
            except Exception as e:
                task_logs(task_id, "warning", f"Cron error after run: {e}")

    except Exception as e:
        logger.error(f"Error while running {name}: {e}", exc_info=True)
        task_logs(task_id, "error", f"Error while running {name}: {e}")

        _db.execute(
            """
            UPDATE tasks
            SET
                status = CASE WHEN queued_count > 0 THEN 'queued' ELSE 'error' END,
                last_error = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (str(e), task_id)
        )

    finally:
        # a task must never stay RUNNING after this point
        row = _db.query_one("SELECT status FROM tasks WHERE id = ?", (task_id,))
        if row and row["status"] == "running":
            _db.execute(
                """
                UPDATE tasks
                SET
                    status = 'idle',
                    last_error = COALESCE(
                        last_error,
                        'Failsafe: task exited without explicit status update'
                    ),
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (task_id,)
            )
            logger.warning(f"[FAILSAFE] Task {task_id} reset (left in RUNNING)")


# -------------------------------------------------------------------
# Cron scheduler
# -------------------------------------------------------------------

def scheduler_tick(now: datetime | None = None):
    """Enqueue every enabled cron task that is due."""
    now = now or now_in_timezone(get_setting(_db, "timezone"))

    rows = _db.query(
        """
        SELECT id, name, schedule, enabled, last_run, next_run, status
        FROM tasks
        WHERE enabled = 1
        """
    )

    for row in rows:
        task_id = row["id"]
        name = row["name"]
        schedule = row["schedule"]

        if not schedule or row["status"] in ("running", "queued"):
            continue

        next_exec = from_db(row["next_run"])
        if next_exec is None:
            base = from_db(row["last_run"]) or now
            next_exec = compute_next_run(schedule, base.astimezone(now.tzinfo))
            _db.execute(
                "UPDATE tasks SET next_run=? WHERE id=?",
                (to_db(next_exec), task_id)
            )

        if row["last_run"] is None:
            logger.info(f"First run forced: {name}")
            enqueue_task(task_id)
            continue

        if next_exec <= now:
            logger.info(f"Task due: {name}")
            enqueue_task(task_id)


def scheduler_loop(tick_seconds=30):
    logger.info("Guardian cron scheduler started")

    while not _stop.is_set():
        try:
            scheduler_tick()
        except Exception as e:
            logger.error(f"Scheduler error: {e}", exc_info=True)
        _stop.wait(tick_seconds)


# -------------------------------------------------------------------
# Session polling
# -------------------------------------------------------------------

def normalize_refresh_interval(value) -> int:
    """
    Valid intervals: 1-59 seconds, or a whole number of minutes below
    an hour, or a whole number of hours. Anything else falls back to
    the default.
    """
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        seconds = 0

    if is_valid_refresh_interval(seconds):
        return seconds

    logger.warning(
        f"Invalid refresh interval {value!r}, using {DEFAULT_REFRESH_INTERVAL} seconds"
    )
    return DEFAULT_REFRESH_INTERVAL


def run_session_cycle(raise_errors=False) -> bool:
    """One poll of Plex sessions. Returns False when skipped or failed."""
    if not is_plex_configured(_db):
        logger.debug("Plex not configured (ip, port or token missing), skipping session update")
        return False

    try:
        get_services().plex.update_active_sessions()
        return True
    except PlexConfigurationError:
        logger.debug("Plex configuration incomplete, skipping session update")
        return False
    except Exception as e:
        logger.error(f"Session update failed: {e}")
        if raise_errors:
            raise
        return False


def session_poll_loop():
    logger.info("Session poller started")
    last_value = object()
    interval = DEFAULT_REFRESH_INTERVAL

    while not _stop.is_set():
        value = get_setting(_db, "refresh_interval", DEFAULT_REFRESH_INTERVAL)
        if value != last_value:
            interval = normalize_refresh_interval(value)
            logger.info(f"Session refresh interval: {interval}s")
            last_value = value

        run_session_cycle()
        _stop.wait(interval)


# -------------------------------------------------------------------
# Entry point
# -------------------------------------------------------------------

def start_scheduler(db, services, tick_seconds=30):
    """
    Starts:
    - the watchdog (stuck task recovery)
    - the session poller (runs one update immediately)
    - one device cleanup and one user sync
    - the cron scheduler
    """
    init_engine(db, services)
    _stop.clear()

    logger.info("Starting Guardian scheduler")

    threading.Thread(target=_watchdog_loop, name="guardian-watchdog", daemon=True).start()
    threading.Thread(target=session_poll_loop, name="guardian-session-poller", daemon=True).start()

    for name in STARTUP_TASKS:
        try:
            run_task_by_name(name)
        except Exception as e:
            logger.error(f"Startup task {name} failed to enqueue: {e}", exc_info=True)

    threading.Thread(
        target=scheduler_loop,
        args=(tick_seconds,),
        name="guardian-scheduler",
        daemon=True
    ).start()

    logger.info("Scheduler running")


def stop_scheduler():
    _stop.set()
