import re
from datetime import datetime
from typing import Iterable, List, Optional

from guardian.core.settings import get_setting
from guardian.core.timeutils import iso_now, now_in_timezone
from guardian.errors import NotFoundError, ValidationError
from guardian.logging_utils import get_logger

logger = get_logger("time_policy")

DAY_NAMES_SHORT = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

UPDATABLE_FIELDS = ("rule_name", "enabled", "day_of_week", "start_time", "end_time", "device_identifier")


def _check_time(value, field):
    if not isinstance(value, str) or not TIME_RE.match(value):
        raise ValidationError(f"{field} must use HH:MM (24h)")
    return value


def _check_day(value):
    try:
        day = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid day of week: {value}")
    if day < 0 or day > 6:
        raise ValidationError(f"Invalid day of week: {value}")
    return day


def _check_enabled(value) -> bool:
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off"):
            return False
        raise ValidationError(f"Invalid value for enabled: {value}")
    return bool(value)


def format_day_of_week(day) -> str:
    try:
        return DAY_NAMES_SHORT[int(day)]
    except (TypeError, ValueError, IndexError):
        return "Invalid Day"


def sunday_based_weekday(dt: datetime) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return dt.isoweekday() % 7


def is_rule_active(rule: dict, day: int, hhmm: str) -> bool:
    if int(rule["day_of_week"]) != day:
        return False
    return rule["start_time"] <= hhmm <= rule["end_time"]


class TimePolicyService:
    """
    Weekly blocking windows per user, optionally narrowed to one device.
    Every enabled rule is a block rule: streaming is refused while any
    rule for the user (or the device) is active.
    """

    def __init__(self, db):
        self.db = db

    # -------------------------
    # CRUD
    # -------------------------

    def create_rules(
        self,
        user_id: str,
        rule_name: str,
        days_of_week: Iterable[int],
        start_time: str,
        end_time: str,
        device_identifier: Optional[str] = None,
        enabled: bool = True,
    ) -> List[dict]:
        if not user_id:
            raise ValidationError("user_id is required")
        if not rule_name or not str(rule_name).strip():
            raise ValidationError("rule_name is required")

        days = sorted({_check_day(d) for d in (days_of_week or [])})
        if not days:
            raise ValidationError("At least one day of week is required")

        _check_time(start_time, "start_time")
        _check_time(end_time, "end_time")
        if start_time > end_time:
            raise ValidationError("start_time must not be after end_time")

        now = iso_now()
        created = []
        for day in days:
            cur = self.db.execute(
                """
                INSERT INTO user_time_rules
                    (user_id, device_identifier, rule_name, day_of_week,
                     start_time, end_time, enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(user_id),
                    device_identifier or None,
                    str(rule_name).strip(),
                    day,
                    start_time,
                    end_time,
                    1 if enabled else 0,
                    now,
                    now,
                ),
            )
            created.append(self.get_rule(cur.lastrowid))

        logger.info(
            f"Time rule '{rule_name}' created for user {user_id} "
            f"({', '.join(format_day_of_week(d) for d in days)} {start_time}-{end_time})"
        )
        return created

    def get_rule(self, rule_id: int) -> dict:
        row = self.db.query_one("SELECT * FROM user_time_rules WHERE id = ?", (rule_id,))
        if not row:
            raise NotFoundError("Time rule not found")
        return _rule_dict(row)

    def get_rules(self, user_id: str) -> List[dict]:
        rows = self.db.query(
            "SELECT * FROM user_time_rules WHERE user_id = ? ORDER BY created_at ASC, id ASC",
            (str(user_id),),
        )
        return [_rule_dict(r) for r in rows]

    def get_rules_for_device(self, user_id: str, device_identifier: str) -> List[dict]:
        """Rules for this device plus the user-wide ones."""
        rows = self.db.query(
            """
            SELECT * FROM user_time_rules
            WHERE user_id = ?
              AND (device_identifier = ? OR device_identifier IS NULL)
            ORDER BY created_at ASC, id ASC
            """,
            (str(user_id), device_identifier),
        )
        return [_rule_dict(r) for r in rows]

    def update_rule(self, rule_id: int, updates: dict) -> dict:
        current = self.get_rule(rule_id)

        values = {}
        for key, value in (updates or {}).items():
            if key not in UPDATABLE_FIELDS:
                continue
            if key == "day_of_week":
                value = _check_day(value)
            elif key in ("start_time", "end_time"):
                value = _check_time(value, key)
            elif key == "enabled":
                value = 1 if _check_enabled(value) else 0
            elif key == "rule_name":
                if not value or not str(value).strip():
                    raise ValidationError("rule_name is required")
                value = str(value).strip()
            elif key == "device_identifier":
                value = value or None
            values[key] = value

        start = values.get("start_time", current["start_time"])
        end = values.get("end_time", current["end_time"])
        if start > end:
            raise ValidationError("start_time must not be after end_time")

        if values:
            values["updated_at"] = iso_now()
            assignments = ", ".join(f"{k} = ?" for k in values)
            self.db.execute(
                f"UPDATE user_time_rules SET {assignments} WHERE id = ?",
                (*values.values(), rule_id),
            )
        return self.get_rule(rule_id)

    def delete_rule(self, rule_id: int) -> None:
        cur = self.db.execute("DELETE FROM user_time_rules WHERE id = ?", (rule_id,))
        if cur.rowcount == 0:
            raise NotFoundError("Time rule not found")

    def toggle_rule(self, rule_id: int) -> dict:
        rule = self.get_rule(rule_id)
        self.db.execute(
            "UPDATE user_time_rules SET enabled = ?, updated_at = ? WHERE id = ?",
            (0 if rule["enabled"] else 1, iso_now(), rule_id),
        )
        return self.get_rule(rule_id)

    # -------------------------
    # Evaluation
    # -------------------------

    def _enabled_rules(self, user_id, device_identifier=None) -> List[dict]:
        rules = (
            self.get_rules_for_device(user_id, device_identifier)
            if device_identifier
            else self.get_rules(user_id)
        )
        return [r for r in rules if r["enabled"]]

    def is_time_schedule_allowed(
        self,
        user_id: str,
        device_identifier: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        rules = self._enabled_rules(user_id, device_identifier)
        if not rules:
            return True

        local = now_in_timezone(get_setting(self.db, "timezone"), now)
        day = sunday_based_weekday(local)
        hhmm = local.strftime("%H:%M")

        for rule in rules:
            if is_rule_active(rule, day, hhmm):
                logger.debug(
                    f"Time rule '{rule['rule_name']}' blocks user {user_id} "
                    f"({format_day_of_week(day)} {hhmm})"
                )
                return False
        return True

    def get_policy_summary(self, user_id: str, device_identifier: Optional[str] = None) -> str:
        rules = self._enabled_rules(user_id, device_identifier)
        if not rules:
            return "No time restrictions"
        return "; ".join(
            f"BLOCK: {format_day_of_week(r['day_of_week'])} {r['start_time']}-{r['end_time']}"
            for r in rules
        )


def _rule_dict(row) -> dict:
    data = dict(row)
    data["enabled"] = bool(data.get("enabled"))
    return data
