from flask import jsonify

from guardian.errors import NotFoundError, ValidationError
from guardian.tasks_engine import run_task_by_name
from guardian.web.helpers import get_db


def register(app):
    @app.route("/api/tasks", methods=["GET"])
    def api_tasks_list():
        rows = get_db().query(
            """
            SELECT
                id,
                name,
                description,
                schedule,
                status,
                enabled,
                last_run,
                next_run,
                last_error
            FROM tasks
            ORDER BY name
            """
        )
        return jsonify([dict(r) for r in rows])

    @app.route("/api/tasks/<name>/run", methods=["POST"])
    def api_task_run(name):
        row = get_db().query_one("SELECT enabled FROM tasks WHERE name = ?", (name,))
        if not row:
            raise NotFoundError(f"Unknown task: {name}")
        if not row["enabled"]:
            raise ValidationError(f"Task disabled: {name}")

        run_task_by_name(name)
        return {"queued": True, "task": name}, 202
