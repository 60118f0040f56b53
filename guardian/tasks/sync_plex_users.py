from guardian.core.settings import get_setting
from guardian.tasks_engine import get_services, task_logs


def run(task_id, db):
    if not get_setting(db, "plex_token"):
        task_logs(task_id, "info", "No Plex token configured, skipping user sync")
        return {"skipped": True}

    result = get_services().users.sync_users_from_plex_tv()
    if result["errors"] and not (result["created"] or result["updated"]):
        task_logs(task_id, "warning", "User sync finished with errors", result)
    return result
