import os


class Config:
    # SQLite database path
    DATABASE = os.environ.get("GUARDIAN_DATABASE", "/appdata/guardian.db")

    # Flask secret key (change in production)
    SECRET_KEY = os.environ.get("GUARDIAN_SECRET_KEY", "change-me")

    # Debug mode (0/1)
    DEBUG = bool(int(os.environ.get("GUARDIAN_DEBUG", "0")))

    # Optional API key; empty disables the guard
    API_KEY = os.environ.get("GUARDIAN_API_KEY", "")

    # Public base URL used to build media proxy URLs
    PUBLIC_URL = os.environ.get("GUARDIAN_PUBLIC_URL", "http://localhost:3001")

    # Background threads (session poller + cron scheduler)
    START_SCHEDULER = bool(int(os.environ.get("GUARDIAN_START_SCHEDULER", "1")))
    SCHEDULER_TICK = int(os.environ.get("GUARDIAN_SCHEDULER_TICK", "30"))

    HOST = os.environ.get("GUARDIAN_HOST", "0.0.0.0")
    PORT = int(os.environ.get("GUARDIAN_PORT", "3001"))
