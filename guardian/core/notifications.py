import time
from datetime import timedelta
from typing import List, Optional

from guardian import mailer
from guardian.core.settings import get_settings
from guardian.core.timeutils import iso_now, to_db, utc_now
from guardian.errors import NotFoundError, ValidationError
from guardian.logging_utils import get_logger

logger = get_logger("notifications")

NOTIFICATION_TYPES = ("info", "warning", "error", "block")
NEW_DEVICE_PREFIX = "New device detected"

STOP_CODE_TEXT = {
    "DEVICE_PENDING": "device needs approval",
    "DEVICE_REJECTED": "device is not allowed",
    "IP_POLICY_LAN_ONLY": "device attempted WAN access but is restricted to LAN only",
    "IP_POLICY_WAN_ONLY": "device attempted LAN access but is restricted to WAN only",
    "IP_POLICY_NOT_ALLOWED": "IP address is not in the allowed list",
    "TIME_RESTRICTED": "user schedule doesn't allow streaming at this moment",
}

_LIST_SELECT = """
    SELECT
        n.id,
        n.user_id,
        COALESCE(p.username, 'Unknown User') AS username,
        COALESCE(d.device_name, 'Unknown Device') AS device_name,
        n.text,
        n.type,
        n.read,
        n.created_at,
        n.session_history_id
    FROM notifications n
    LEFT JOIN session_history sh ON sh.id = n.session_history_id
    LEFT JOIN user_preferences p ON p.user_id = sh.user_id
    LEFT JOIN user_devices d ON d.id = sh.user_device_id
"""


def stream_blocked_text(username: str, device_name: str, stop_code: Optional[str]) -> str:
    base = f"Stream blocked for {username} on {device_name}"
    if not stop_code:
        return base
    return f"{base} - {STOP_CODE_TEXT.get(stop_code, stop_code)}"


def _notification_dict(row) -> dict:
    data = dict(row)
    data["read"] = bool(data.get("read"))
    return data


class NotificationsService:
    def __init__(self, db):
        self.db = db

    # -------------------------
    # Create
    # -------------------------

    def create_notification(
        self,
        user_id: str,
        text: str,
        type: str = "info",
        session_history_id: Optional[int] = None,
    ) -> dict:
        if type not in NOTIFICATION_TYPES:
            raise ValidationError(f"Invalid notification type: {type}")
        cur = self.db.execute(
            """
            INSERT INTO notifications (user_id, text, type, read, session_history_id, created_at)
            VALUES (?, ?, ?, 0, ?, ?)
            """,
            (str(user_id), text, type, session_history_id, iso_now()),
        )
        return self.get_notification(cur.lastrowid)

    def create_new_device_notification(
        self,
        user_id: str,
        username: str,
        device_name: str,
        ip_address: str,
        session_history_id: Optional[int] = None,
    ) -> dict:
        text = f"{NEW_DEVICE_PREFIX} for {username} on {device_name} - {ip_address}"
        notification = self.create_notification(user_id, text, "info", session_history_id)

        body = (
            f"{text}\n\n"
            f"User: {username}\n"
            f"Device: {device_name}\n"
            f"IP address: {ip_address}\n\n"
            "The device is pending approval in Guardian."
        )
        self._send_email("smtp_notify_on_new_device", "Guardian: new device detected", body)
        return notification

    def create_stream_blocked_notification(
        self,
        user_id: str,
        username: str,
        device_identifier: str,
        stop_code: Optional[str] = None,
        session_history_id: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> dict:
        device_name = "Unknown Device"
        try:
            row = self.db.query_one(
                "SELECT device_name FROM user_devices WHERE user_id = ? AND device_identifier = ?",
                (str(user_id), device_identifier),
            )
            if row and row["device_name"]:
                device_name = row["device_name"]
        except Exception as e:
            logger.warning(f"Failed to look up device name for {device_identifier}: {e}")

        text = stream_blocked_text(username, device_name, stop_code)
        notification = self.create_notification(user_id, text, "block", session_history_id)

        body = (
            f"{text}\n\n"
            f"User: {username}\n"
            f"Device: {device_name}\n"
            f"Reason: {stop_code or 'N/A'}\n"
            f"IP address: {ip_address or 'Unknown'}"
        )
        self._send_email("smtp_notify_on_block", "Guardian: stream blocked", body)
        return notification

    def _send_email(self, flag: str, subject: str, body: str) -> None:
        try:
            settings = get_settings(self.db)
            if not (settings.get("smtp_enabled") and settings.get(flag)):
                logger.debug(f"E-mail notification skipped ({flag} disabled)")
                return

            ok, err = mailer.send_email(subject, body, settings.get("mail_to"), settings)
            if ok:
                logger.info(f"E-mail notification sent: {subject}")
            else:
                logger.error(f"E-mail notification failed: {err}")
        except Exception as e:
            logger.error(f"E-mail notification failed: {e}", exc_info=True)

    def test_smtp_connection(self) -> dict:
        settings = get_settings(self.db)
        if not settings.get("smtp_enabled"):
            return {"success": False, "message": "SMTP email notifications are disabled"}

        result = mailer.send_test_email(settings)
        if result["success"]:
            logger.info(result["message"])
        else:
            logger.warning(f"SMTP test failed: {result['message']}")
        return result

    # -------------------------
    # Read
    # -------------------------

    def get_notification(self, notification_id: int) -> dict:
        row = self.db.query_one(_LIST_SELECT + " WHERE n.id = ?", (notification_id,))
        if not row:
            raise NotFoundError(f"Notification with ID {notification_id} not found")
        return _notification_dict(row)

    def get_all_notifications(self) -> List[dict]:
        rows = self.db.query(_LIST_SELECT + " ORDER BY n.created_at DESC, n.id DESC")
        return [_notification_dict(r) for r in rows]

    def get_notifications_for_user(self, user_id: str) -> List[dict]:
        rows = self.db.query(
            _LIST_SELECT + " WHERE n.user_id = ? ORDER BY n.created_at DESC, n.id DESC",
            (str(user_id),),
        )
        return [_notification_dict(r) for r in rows]

    def get_unread_count_for_user(self, user_id: str) -> int:
        row = self.db.query_one(
            "SELECT COUNT(*) AS cnt FROM notifications WHERE user_id = ? AND read = 0",
            (str(user_id),),
        )
        return int(row["cnt"]) if row else 0

    # -------------------------
    # Update / delete
    # -------------------------

    def mark_as_read(self, notification_id: int, forced: bool = False) -> dict:
        notification = self.get_notification(notification_id)

        if not forced and not get_settings(self.db).get("auto_mark_notification_read"):
            return notification

        self.db.execute("UPDATE notifications SET read = 1 WHERE id = ?", (notification_id,))
        return self.get_notification(notification_id)

    def delete_notification(self, notification_id: int) -> None:
        cur = self.db.execute("DELETE FROM notifications WHERE id = ?", (notification_id,))
        if cur.rowcount == 0:
            raise NotFoundError(f"Notification with ID {notification_id} not found")

    def mark_all_as_read(self) -> None:
        self.db.execute("UPDATE notifications SET read = 1 WHERE read = 0")

    def clear_all(self) -> None:
        self.db.execute("DELETE FROM notifications")
        logger.info("All notifications cleared")

    def link_notification_to_session_history(self, session_key: str) -> Optional[int]:
        """Attach the latest unlinked new-device notification of the session's user."""
        try:
            history = self.db.query_one(
                """
                SELECT id, user_id FROM session_history
                WHERE session_key = ?
                ORDER BY started_at DESC, id DESC LIMIT 1
                """,
                (str(session_key),),
            )
            if not history:
                logger.debug(f"No session history for session key {session_key}")
                return None

            since = to_db(utc_now() - timedelta(minutes=5))
            recent = self.db.query(
                """
                SELECT id, text FROM notifications
                WHERE user_id = ?
                  AND session_history_id IS NULL
                  AND created_at > ?
                ORDER BY created_at DESC, id DESC
                LIMIT 5
                """,
                (history["user_id"], since),
            )
            for row in recent:
                if NEW_DEVICE_PREFIX in row["text"]:
                    self.db.execute(
                        "UPDATE notifications SET session_history_id = ? WHERE id = ?",
                        (history["id"], row["id"]),
                    )
                    logger.debug(f"Linked notification {row['id']} to session history {history['id']}")
                    return row["id"]
        except Exception as e:
            logger.error(f"Error linking notification for session {session_key}: {e}", exc_info=True)
        return None


class NotificationOrchestrator:
    """
    Turns device/termination events into notifications tied to the
    matching session_history row.
    """

    retry_delay = 1.0

    def __init__(self, db, notifications: NotificationsService):
        self.db = db
        self.notifications = notifications
        self._orphan_keys: set = set()

    def _find_session_history_id(self, session_key: str) -> Optional[int]:
        query = """
            SELECT id FROM session_history
            WHERE session_key = ?
            ORDER BY started_at DESC, id DESC LIMIT 1
        """
        try:
            row = self.db.query_one(query, (str(session_key),))
            if not row:
                logger.debug(f"Session history not found for key {session_key}, retrying")
                time.sleep(self.retry_delay)
                row = self.db.query_one(query, (str(session_key),))
            if row:
                return row["id"]
            logger.warning(f"Session history not found after retry for key {session_key}")
        except Exception as e:
            logger.error(f"Error finding session history for key {session_key}: {e}")
        return None

    def _mark_session_terminated(self, history_id: int) -> None:
        try:
            self.db.execute("UPDATE session_history SET terminated = 1 WHERE id = ?", (history_id,))
        except Exception as e:
            logger.error(f"Error marking session history {history_id} terminated: {e}")

    def notify_new_device(self, event) -> dict:
        history_id = self._find_session_history_id(event.session_key) if event.session_key else None
        if event.session_key and history_id is None:
            self._orphan_keys.add(str(event.session_key))
        try:
            return self.notifications.create_new_device_notification(
                event.user_id,
                event.username,
                event.device_name,
                event.ip_address,
                history_id,
            )
        except Exception as e:
            logger.error(f"Error creating new device notification: {e}", exc_info=True)
            raise

    def notify_stream_blocked(self, event) -> dict:
        history_id = self._find_session_history_id(event.session_key) if event.session_key else None
        if history_id:
            self._mark_session_terminated(history_id)
        try:
            return self.notifications.create_stream_blocked_notification(
                event.user_id,
                event.username,
                event.device_identifier,
                event.stop_code,
                history_id,
                event.ip_address,
            )
        except Exception as e:
            logger.error(f"Error creating stream blocked notification: {e}", exc_info=True)
            raise

    def link_orphaned_notifications(self, session_key: str) -> bool:
        linked = self.notifications.link_notification_to_session_history(session_key)
        return linked is not None

    def link_pending_orphans(self) -> None:
        """Retry linking new-device notifications created before their session row."""
        for key in list(self._orphan_keys):
            if self.link_orphaned_notifications(key):
                self._orphan_keys.discard(key)
            elif not self.db.query_one(
                "SELECT 1 FROM session_history WHERE session_key = ? AND ended_at IS NULL",
                (key,),
            ):
                self._orphan_keys.discard(key)
