from guardian import tasks_engine
from guardian.tasks_engine import task_logs


def run(task_id, db):
    """Manual trigger of one session poll."""
    if not tasks_engine.run_session_cycle(raise_errors=True):
        task_logs(task_id, "warning", "Plex not configured, nothing to update")
        return {"updated": False}

    active = db.query_one("SELECT COUNT(*) AS cnt FROM session_history WHERE ended_at IS NULL")
    return {"updated": True, "active_sessions": active["cnt"] if active else 0}
