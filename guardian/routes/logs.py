from flask import request

from guardian.errors import ValidationError
from guardian.logging_utils import read_last_logs
from guardian.web.helpers import parse_int

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def register(app):
    @app.route("/api/logs", methods=["GET"])
    def api_logs_tail():
        limit = parse_int(request.args.get("limit"), default=100, name="limit")
        limit = max(1, min(limit, 2000))

        level = (request.args.get("level") or "").upper() or None
        if level and level not in LEVELS:
            raise ValidationError(f"level must be one of {', '.join(LEVELS)}")
        return {"lines": [line.rstrip("\n") for line in read_last_logs(limit, level)]}
