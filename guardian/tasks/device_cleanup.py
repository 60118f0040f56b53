from guardian.core.settings import get_settings
from guardian.tasks_engine import get_services, task_logs


def run(task_id, db):
    settings = get_settings(db)

    if not settings.get("device_cleanup_enabled"):
        task_logs(task_id, "info", "Device cleanup disabled, skipping")
        return {"skipped": True}

    days = int(settings.get("device_cleanup_interval_days") or 30)
    task_logs(task_id, "info", f"Removing devices inactive for more than {days} days")

    result = get_services().devices.cleanup_inactive_devices(days)
    return {"deleted_count": result["deleted_count"]}
