import logging
import os
import re
import sqlite3
import sys
import time
from contextlib import closing
from logging.handlers import RotatingFileHandler

# -------------------------------------------------------------------
# LOCATIONS
# -------------------------------------------------------------------

LOG_DIR = os.environ.get("GUARDIAN_LOG_DIR", "/logs")
LOG_FILE = os.path.join(LOG_DIR, "guardian.log")
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# mirrors the file log on stdout for `docker logs`
LOG_TO_STDOUT = os.environ.get("GUARDIAN_LOG_STDOUT", "0").lower() in ("1", "true", "yes")

DB_PATH = os.environ.get("GUARDIAN_DATABASE", "/appdata/guardian.db")

DEBUG_CACHE_TTL = 10  # seconds
_debug_cache = {"value": False, "checked_at": 0.0}


def set_db_path(path: str) -> None:
    """Read debug_mode from another database from now on."""
    global DB_PATH
    DB_PATH = path
    _debug_cache["checked_at"] = 0.0


def is_debug_mode_enabled() -> bool:
    """
    settings.debug_mode, re-read at most every DEBUG_CACHE_TTL seconds.
    A missing or unreadable database means debug is off.
    """
    now = time.time()
    if now - _debug_cache["checked_at"] < DEBUG_CACHE_TTL:
        return _debug_cache["value"]

    enabled = False
    if os.path.exists(DB_PATH):
        try:
            with closing(sqlite3.connect(DB_PATH)) as conn:
                row = conn.execute("SELECT debug_mode FROM settings WHERE id = 1").fetchone()
            enabled = bool(row and row[0] == 1)
        except sqlite3.Error:
            enabled = False

    _debug_cache.update(value=enabled, checked_at=now)
    return enabled


# -------------------------------------------------------------------
# ANONYMIZATION
# -------------------------------------------------------------------

class AnonymizeFilter(logging.Filter):
    """
    Keeps secrets and viewer identities out of the log file.

    Plex tokens (headers, query strings, plex.tv XML attributes), bearer
    values and passwords are redacted; e-mail addresses keep their first
    letter and domain. Nothing is masked while debug_mode is on.
    """

    EMAIL_REGEX = re.compile(
        r'([a-zA-Z0-9._%+-])([a-zA-Z0-9._%+-]*)(@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})'
    )

    TOKEN_REGEX = re.compile(
        r'(?i)\b(x-plex-token|token|authorization|bearer|password|smtp_pass)\b\s*[:=]\s*[a-z0-9\-._~]+'
    )

    # plex.tv answers carry authToken="..." on <user> and <server> nodes
    XML_TOKEN_REGEX = re.compile(r'(?i)\b(authToken|accessToken)="[^"]*"')

    def mask(self, msg: str) -> str:
        msg = self.XML_TOKEN_REGEX.sub(lambda m: f'{m.group(1)}="***REDACTED***"', msg)
        msg = self.TOKEN_REGEX.sub(lambda m: f"{m.group(1)}=***REDACTED***", msg)
        return self.EMAIL_REGEX.sub(
            lambda m: f"{m.group(1)}{'*' * len(m.group(2))}{m.group(3)}",
            msg,
        )

    def filter(self, record: logging.LogRecord) -> bool:
        if not is_debug_mode_enabled():
            record.msg = self.mask(record.getMessage())
            record.args = ()
        return True


# -------------------------------------------------------------------
# HANDLERS
# -------------------------------------------------------------------

def _build_handlers():
    os.makedirs(LOG_DIR, exist_ok=True)
    handlers = [RotatingFileHandler(LOG_FILE, maxBytes=5_000_000, backupCount=5, encoding="utf-8")]
    if LOG_TO_STDOUT:
        handlers.append(logging.StreamHandler(sys.stdout))

    formatter = logging.Formatter(LOG_FORMAT)
    anonymize = AnonymizeFilter()
    for h in handlers:
        h.setFormatter(formatter)
        h.addFilter(anonymize)
    return handlers


logger = logging.getLogger("guardian")
logger.setLevel(logging.DEBUG)  # handlers and the filter decide what lands
if not logger.handlers:
    for _handler in _build_handlers():
        logger.addHandler(_handler)
logger.propagate = False


def get_logger(name: str):
    """guardian.<name>, e.g. guardian.devices or guardian.tasks_engine"""
    return logger.getChild(name)


def read_last_logs(limit=10, level=None):
    """
    Last `limit` lines of the log file, optionally only one level
    (INFO, WARNING, ...).
    """
    try:
        with open(LOG_FILE, "r", encoding="utf-8") as f:
            lines = f.readlines()
    except FileNotFoundError:
        return []

    if level:
        marker = f"| {level.upper()} |"
        lines = [line for line in lines if marker in line]
    return lines[-limit:]
