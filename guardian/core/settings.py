from typing import Any

from guardian.errors import ValidationError
from guardian.logging_utils import get_logger

logger = get_logger("settings")

BOOL_KEYS = {
    "use_ssl",
    "ignore_cert_errors",
    "default_block",
    "device_cleanup_enabled",
    "auto_mark_notification_read",
    "enable_media_thumbnails",
    "enable_media_artwork",
    "smtp_enabled",
    "smtp_tls",
    "smtp_notify_on_new_device",
    "smtp_notify_on_block",
    "debug_mode",
}

INT_KEYS = {
    "refresh_interval",
    "device_cleanup_interval_days",
    "smtp_port",
}

TEXT_KEYS = {
    "plex_server_ip",
    "plex_server_port",
    "plex_token",
    "custom_plex_url",
    "msg_device_pending",
    "msg_device_rejected",
    "msg_time_restricted",
    "msg_ip_lan_only",
    "msg_ip_wan_only",
    "msg_ip_not_allowed",
    "timezone",
    "smtp_host",
    "smtp_user",
    "smtp_pass",
    "mail_from",
    "mail_from_name",
    "mail_to",
}

PRIVATE_KEYS = {"plex_token", "smtp_pass"}

EDITABLE_KEYS = BOOL_KEYS | INT_KEYS | TEXT_KEYS

MASK = "********"


def is_valid_refresh_interval(seconds: int) -> bool:
    if 0 < seconds < 60:
        return True
    if seconds >= 60 and seconds % 60 == 0:
        minutes = seconds // 60
        return minutes < 60 or minutes % 60 == 0
    return False


def _coerce(key: str, value: Any):
    if key in BOOL_KEYS:
        if isinstance(value, str):
            value = value.strip().lower()
            if value in ("1", "true", "yes", "on"):
                return 1
            if value in ("0", "false", "no", "off", ""):
                return 0
            raise ValidationError(f"Invalid boolean for {key}: {value}")
        return 1 if value else 0

    if key in INT_KEYS:
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid integer for {key}: {value}")
        if number < 1:
            raise ValidationError(f"{key} must be positive")
        if key == "refresh_interval" and not is_valid_refresh_interval(number):
            raise ValidationError(
                "refresh_interval must be 1-59 seconds, whole minutes below an hour or whole hours"
            )
        return number

    if value is None:
        return ""
    return str(value).strip()


def get_settings(db) -> dict:
    row = db.query_one("SELECT * FROM settings WHERE id = 1")
    if not row:
        return {}
    data = dict(row)
    for key in BOOL_KEYS:
        if key in data:
            data[key] = bool(data[key])
    return data


def get_setting(db, key: str, default=None):
    return get_settings(db).get(key, default)


def public_settings(db) -> dict:
    """Settings for API output, with secrets masked."""
    data = get_settings(db)
    for key in PRIVATE_KEYS:
        if data.get(key):
            data[key] = MASK
    data.pop("id", None)
    return data


def update_settings(db, updates: dict) -> dict:
    if not isinstance(updates, dict) or not updates:
        raise ValidationError("No settings provided")

    unknown = sorted(set(updates) - EDITABLE_KEYS)
    if unknown:
        raise ValidationError(f"Unknown settings: {', '.join(unknown)}")

    values = {}
    for key, value in updates.items():
        # masked secrets sent back unchanged are ignored
        if key in PRIVATE_KEYS and value == MASK:
            continue
        values[key] = _coerce(key, value)

    if values:
        assignments = ", ".join(f"{key} = ?" for key in values)
        db.execute(
            f"UPDATE settings SET {assignments} WHERE id = 1",
            tuple(values.values()),
        )
        logger.info(f"Settings updated: {', '.join(sorted(values))}")

    return public_settings(db)


def is_plex_configured(db) -> bool:
    s = get_settings(db)
    return bool(s.get("plex_server_ip") and s.get("plex_server_port") and s.get("plex_token"))
