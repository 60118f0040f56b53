from flask import current_app, g, request

from guardian.db_manager import DBManager
from guardian.errors import ValidationError


# -----------------------------
# DB / services (request-scoped)
# -----------------------------
def get_db() -> DBManager:
    if "db" not in g:
        g.db = DBManager(current_app.config["DATABASE"])
    return g.db


def get_services():
    return current_app.extensions["guardian"]


def close_db(_exception=None):
    g.pop("db", None)


# -----------------------------
# Request helpers
# -----------------------------
def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON object expected")
    return data


def parse_bool(value, default=False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_int(value, default=None, name="value") -> int:
    if value is None or value == "":
        if default is None:
            raise ValidationError(f"{name} is required")
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")
