import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional

from guardian.core.settings import get_setting
from guardian.core.timeutils import from_db, iso_now, parse_timezone, to_db, utc_now
from guardian.errors import NotFoundError, ValidationError
from guardian.logging_utils import get_logger

logger = get_logger("devices")

DEVICE_STATUSES = ("pending", "approved", "rejected")


@dataclass
class NewDeviceDetectedEvent:
    user_id: str
    username: str
    device_name: str
    device_identifier: str
    ip_address: str
    platform: str
    session_key: Optional[str] = None


def extract_sessions(data) -> list:
    if not data or not isinstance(data, dict):
        return []
    container = data.get("MediaContainer") or {}
    return container.get("Metadata") or []


def extract_device_info(session: dict) -> dict:
    user = session.get("User") or {}
    player = session.get("Player") or {}
    return {
        "user_id": str(user.get("id") or user.get("uuid") or "unknown"),
        "username": user.get("title"),
        "avatar_url": user.get("thumb"),
        "device_identifier": player.get("machineIdentifier") or "unknown",
        "session_key": str(session["sessionKey"]) if session.get("sessionKey") else None,
        "device_name": player.get("device") or player.get("title"),
        "device_platform": player.get("platform"),
        "device_product": player.get("product"),
        "device_version": player.get("version"),
        "ip_address": player.get("address"),
    }


def device_dict(row) -> Optional[dict]:
    if row is None:
        return None
    return dict(row)


class DeviceTrackingService:
    """
    Keeps one row per (user, device) seen in Plex sessions and holds the
    approval state and temporary access grants the enforcement step reads.
    """

    def __init__(self, db, users_service):
        self.db = db
        self.users = users_service
        self._new_device_callbacks: List[Callable[[NewDeviceDetectedEvent], None]] = []

    # -------------------------
    # Session processing
    # -------------------------

    def process_sessions_for_device_tracking(self, sessions_data) -> None:
        for session in extract_sessions(sessions_data):
            try:
                self._process_session(session)
            except Exception as e:
                logger.error(
                    f"Error tracking device for session {session.get('sessionKey')}: {e}",
                    exc_info=True,
                )

    def _process_session(self, session: dict) -> None:
        info = extract_device_info(session)

        if not info["user_id"] or not info["device_identifier"]:
            logger.warning(
                f"Session missing user id or device identifier "
                f"(user={info['user_id']}, device={info['device_identifier']})"
            )
            return

        self.users.update_user_from_session_data(info["user_id"], info["username"])
        self._track_device(info)

    def _track_device(self, info: dict) -> None:
        existing = self.find_device_by_user_and_identifier(info["user_id"], info["device_identifier"])
        if existing:
            self._update_existing_device(existing, info)
        else:
            logger.debug(f"Device {info['device_identifier']} not found, creating it")
            self._create_new_device(info)

    def _update_existing_device(self, device: dict, info: dict) -> None:
        values = {"last_seen": iso_now()}

        if info["session_key"] and device.get("current_session_key") != info["session_key"]:
            values["session_count"] = (device.get("session_count") or 0) + 1
            values["current_session_key"] = info["session_key"]
            logger.debug(
                f"New session on device {info['device_identifier']}, "
                f"session count {values['session_count']}"
            )

        for column, key in (
            ("device_name", "device_name"),
            ("device_platform", "device_platform"),
            ("device_product", "device_product"),
            ("username", "username"),
        ):
            if info[key] and not device.get(column):
                values[column] = info[key]

        if info["device_version"]:
            values["device_version"] = info["device_version"]
        if info["ip_address"]:
            values["ip_address"] = info["ip_address"]

        assignments = ", ".join(f"{k} = ?" for k in values)
        self.db.execute(
            f"UPDATE user_devices SET {assignments} WHERE id = ?",
            (*values.values(), device["id"]),
        )

    def _create_new_device(self, info: dict) -> None:
        default_block = self.users.get_effective_default_block(info["user_id"])
        now = iso_now()

        self.db.execute(
            """
            INSERT INTO user_devices
                (user_id, username, device_identifier, device_name, device_platform,
                 device_product, device_version, status, session_count,
                 current_session_key, ip_address, first_seen, last_seen)
            VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', 1, ?, ?, ?, ?)
            """,
            (
                info["user_id"],
                info["username"],
                info["device_identifier"],
                info["device_name"],
                info["device_platform"],
                info["device_product"],
                info["device_version"],
                info["session_key"],
                info["ip_address"],
                now,
                now,
            ),
        )

        logger.warning(
            f"NEW DEVICE DETECTED: user={info['username'] or info['user_id']} "
            f"ip={info['ip_address'] or 'Unknown IP'} "
            f"device={info['device_name'] or info['device_identifier']} "
            f"platform={info['device_platform'] or 'Unknown'} status=pending "
            f"default_action={'Block' if default_block else 'Allow'}"
        )

        self._emit_new_device(NewDeviceDetectedEvent(
            user_id=info["user_id"],
            username=info["username"] or "Unknown User",
            device_name=info["device_name"] or "Unknown Device",
            device_identifier=info["device_identifier"],
            ip_address=info["ip_address"] or "Unknown IP",
            platform=info["device_platform"] or "Unknown",
            session_key=info["session_key"],
        ))

    # -------------------------
    # Events
    # -------------------------

    def on_new_device_detected(self, callback: Callable[[NewDeviceDetectedEvent], None]) -> None:
        self._new_device_callbacks.append(callback)

    def _emit_new_device(self, event: NewDeviceDetectedEvent) -> None:
        for callback in self._new_device_callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in new device callback: {e}", exc_info=True)

    # -------------------------
    # Queries
    # -------------------------

    def get_all_devices(self) -> List[dict]:
        return [dict(r) for r in self.db.query("SELECT * FROM user_devices ORDER BY last_seen DESC")]

    def get_pending_devices(self) -> List[dict]:
        rows = self.db.query(
            "SELECT * FROM user_devices WHERE status = 'pending' ORDER BY first_seen DESC"
        )
        return [dict(r) for r in rows]

    def get_processed_devices(self) -> List[dict]:
        rows = self.db.query(
            """
            SELECT * FROM user_devices
            WHERE status IN ('approved', 'rejected')
            ORDER BY last_seen DESC
            """
        )
        return [dict(r) for r in rows]

    def get_approved_devices(self) -> List[dict]:
        rows = self.db.query(
            "SELECT * FROM user_devices WHERE status = 'approved' ORDER BY last_seen DESC"
        )
        return [dict(r) for r in rows]

    def get_device(self, device_id: int) -> dict:
        row = self.db.query_one("SELECT * FROM user_devices WHERE id = ?", (device_id,))
        if not row:
            raise NotFoundError(f"Device {device_id} not found")
        return dict(row)

    def find_device_by_user_and_identifier(self, user_id: str, device_identifier: str) -> Optional[dict]:
        return device_dict(self.db.query_one(
            "SELECT * FROM user_devices WHERE user_id = ? AND device_identifier = ?",
            (str(user_id), device_identifier),
        ))

    def find_device_by_identifier(self, device_identifier: str) -> Optional[dict]:
        return device_dict(self.db.query_one(
            "SELECT * FROM user_devices WHERE device_identifier = ? ORDER BY last_seen DESC LIMIT 1",
            (device_identifier,),
        ))

    # -------------------------
    # Admin actions
    # -------------------------

    def _set_status(self, device_id: int, status: str) -> None:
        cur = self.db.execute(
            "UPDATE user_devices SET status = ? WHERE id = ?",
            (status, device_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"Device {device_id} not found")

    def approve_device(self, device_id: int) -> dict:
        self._set_status(device_id, "approved")
        # a permanent approval supersedes any temporary grant
        self.revoke_temporary_access(device_id)
        logger.info(f"Device {device_id} approved")
        return self.get_device(device_id)

    def reject_device(self, device_id: int) -> dict:
        self._set_status(device_id, "rejected")
        logger.info(f"Device {device_id} rejected")
        return self.get_device(device_id)

    def delete_device(self, device_id: int) -> None:
        self.get_device(device_id)
        try:
            self.db.transaction([
                ("DELETE FROM session_history WHERE user_device_id = ?", (device_id,)),
                ("DELETE FROM user_devices WHERE id = ?", (device_id,)),
            ])
        except Exception as e:
            logger.error(f"Failed to delete device {device_id}: {e}")
            raise
        logger.info(f"Device {device_id} and its session history deleted")

    def rename_device(self, device_id: int, new_name: str) -> dict:
        new_name = (new_name or "").strip()
        if not new_name:
            raise ValidationError("Device name cannot be empty")
        cur = self.db.execute(
            "UPDATE user_devices SET device_name = ? WHERE id = ?",
            (new_name, device_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"Device {device_id} not found")
        logger.info(f'Device {device_id} renamed to "{new_name}"')
        return self.get_device(device_id)

    # -------------------------
    # Temporary access
    # -------------------------

    def grant_temporary_access(self, device_id: int, duration_minutes: int) -> dict:
        try:
            duration_minutes = int(duration_minutes)
        except (TypeError, ValueError):
            raise ValidationError("duration_minutes must be an integer")
        if duration_minutes <= 0:
            raise ValidationError("duration_minutes must be positive")

        device = self.get_device(device_id)
        now = utc_now()
        until = now + timedelta(minutes=duration_minutes)

        self.db.execute(
            """
            UPDATE user_devices
            SET temporary_access_until = ?,
                temporary_access_granted_at = ?,
                temporary_access_duration_minutes = ?
            WHERE id = ?
            """,
            (to_db(until), to_db(now), duration_minutes, device_id),
        )

        tz = parse_timezone(get_setting(self.db, "timezone"))
        logger.info(
            f"Temporary access granted to device {device.get('device_name') or device_id} "
            f"for {duration_minutes} minutes, until {until.astimezone(tz).strftime('%Y-%m-%d %H:%M:%S %z')}"
        )
        return self.get_device(device_id)

    def revoke_temporary_access(self, device_id: int) -> None:
        self.db.execute(
            """
            UPDATE user_devices
            SET temporary_access_until = NULL,
                temporary_access_granted_at = NULL,
                temporary_access_duration_minutes = NULL
            WHERE id = ?
            """,
            (device_id,),
        )
        logger.info(f"Temporary access revoked for device {device_id}")

    def is_temporary_access_valid(self, device: Optional[dict]) -> bool:
        if not device:
            return False
        until = from_db(device.get("temporary_access_until"))
        if until is None:
            return False

        if utc_now() >= until:
            logger.info(f"Temporary access for device {device['id']} expired, revoking")
            self.revoke_temporary_access(device["id"])
            return False
        return True

    def get_temporary_access_time_left(self, device: Optional[dict]) -> Optional[int]:
        """Minutes left (rounded up), 0 once expired, None without a grant."""
        until = from_db((device or {}).get("temporary_access_until"))
        if until is None:
            return None
        seconds = (until - utc_now()).total_seconds()
        if seconds <= 0:
            return 0
        return math.ceil(seconds / 60)

    # -------------------------
    # Session key bookkeeping
    # -------------------------

    def clear_session_key(self, session_key: str) -> None:
        cur = self.db.execute(
            "UPDATE user_devices SET current_session_key = NULL WHERE current_session_key = ?",
            (session_key,),
        )
        self.db.execute(
            "UPDATE session_history SET ended_at = ? WHERE session_key = ? AND ended_at IS NULL",
            (iso_now(), session_key),
        )
        logger.debug(f"Cleared session key {session_key} on {cur.rowcount} device(s)")

    # -------------------------
    # Cleanup
    # -------------------------

    def cleanup_inactive_devices(self, inactive_days: int) -> dict:
        cutoff = utc_now() - timedelta(days=int(inactive_days))

        devices = self.get_all_devices()
        if not devices:
            logger.info("No devices in database, skipping cleanup")
            return {"deleted_count": 0, "deleted_devices": []}

        inactive = []
        for device in devices:
            last_seen = from_db(device.get("last_seen"))
            if last_seen is None:
                logger.warning(f"Device {device['id']} has no last_seen date, skipping")
                continue
            if last_seen < cutoff:
                inactive.append(device)

        logger.info(f"Found {len(inactive)} inactive device(s) older than {inactive_days} days")
        if not inactive:
            return {"deleted_count": 0, "deleted_devices": []}

        for device in inactive:
            logger.info(
                f"Removing inactive device {device.get('device_name') or device['device_identifier']} "
                f"(user {device.get('username') or device['user_id']}, last seen {device['last_seen']})"
            )

        ids = [d["id"] for d in inactive]
        placeholders = ", ".join("?" * len(ids))
        self.db.transaction([
            (f"DELETE FROM session_history WHERE user_device_id IN ({placeholders})", ids),
            (f"DELETE FROM user_devices WHERE id IN ({placeholders})", ids),
        ])

        logger.info(f"Removed {len(inactive)} inactive device(s)")
        return {"deleted_count": len(inactive), "deleted_devices": inactive}

    # -------------------------
    # Maintenance
    # -------------------------

    def reset_stream_counts(self) -> int:
        cur = self.db.execute("UPDATE user_devices SET session_count = 0")
        logger.info(f"Stream counts reset on {cur.rowcount} device(s)")
        return cur.rowcount

    def delete_all_devices(self) -> int:
        row = self.db.query_one("SELECT COUNT(*) AS n FROM user_devices")
        count = row["n"] if row else 0
        self.db.transaction([
            ("DELETE FROM session_history WHERE user_device_id IS NOT NULL", ()),
            ("DELETE FROM user_devices", ()),
        ])
        logger.warning(f"All devices deleted ({count}) with their session history")
        return count
