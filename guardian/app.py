import hmac
import os
from datetime import datetime, timezone

from flask import Flask, jsonify, request

from guardian import __version__
from guardian.config import Config
from guardian.db_bootstrap import run_migrations
from guardian.db_manager import DBManager
from guardian.errors import GuardianError
from guardian.logging_utils import get_logger, set_db_path
from guardian.routes import devices, logs, notifications, plex, sessions, settings, tasks_api, users
from guardian.services import build_services
from guardian.tasks_engine import init_engine, start_scheduler, stop_scheduler
from guardian.web.helpers import close_db

logger = get_logger("app")
security_logger = get_logger("security")

ROUTE_MODULES = (devices, users, sessions, notifications, settings, plex, tasks_api, logs)


def _error_payload(status_code: int, message: str):
    return jsonify({
        "statusCode": status_code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": request.path,
        "method": request.method,
        "message": message,
    }), status_code


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    db_path = app.config["DATABASE"]
    db_dir = os.path.dirname(db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    run_migrations(db_path)
    set_db_path(db_path)

    db = DBManager(db_path)
    services = build_services(
        db,
        public_url=app.config["PUBLIC_URL"],
        plex_client=app.config.get("PLEX_CLIENT"),
    )
    app.extensions["guardian"] = services
    init_engine(db, services)

    app.teardown_appcontext(close_db)

    # -----------------------------
    # API key guard
    # -----------------------------
    @app.before_request
    def api_key_guard():
        api_key = app.config.get("API_KEY")
        if not api_key or not request.path.startswith("/api/"):
            return None

        supplied = request.headers.get("X-Api-Key", "")
        auth = request.headers.get("Authorization", "")
        if not supplied and auth.lower().startswith("bearer "):
            supplied = auth[7:].strip()

        if not hmac.compare_digest(supplied.encode("utf-8"), str(api_key).encode("utf-8")):
            security_logger.warning(f"Rejected API call without valid key: {request.method} {request.path}")
            return _error_payload(401, "Invalid or missing API key")
        return None

    # -----------------------------
    # Errors
    # -----------------------------
    @app.errorhandler(GuardianError)
    def handle_guardian_error(e):
        if e.status_code >= 500:
            logger.error(f"{request.method} {request.path} failed: {e.message}")
        return _error_payload(e.status_code, e.message)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        code = getattr(e, "code", None)
        if isinstance(code, int) and 400 <= code < 600:
            return _error_payload(code, getattr(e, "description", None) or str(e))
        logger.error(f"Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
        return _error_payload(500, "Internal server error")

    # -----------------------------
    # Routes
    # -----------------------------
    @app.route("/health")
    def health():
        return {"status": "ok", "version": __version__}

    for module in ROUTE_MODULES:
        module.register(app)

    if app.config.get("START_SCHEDULER"):
        start_scheduler(db, services, app.config.get("SCHEDULER_TICK", 30))

    logger.info(f"Guardian {__version__} ready (database: {db_path})")
    return app


def main():
    app = create_app()
    try:
        app.run(host=app.config["HOST"], port=app.config["PORT"])
    finally:
        stop_scheduler()


if __name__ == "__main__":
    main()
