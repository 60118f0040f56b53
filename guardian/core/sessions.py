from typing import List, Optional

from guardian.core.devices import extract_sessions
from guardian.core.timeutils import iso_now
from guardian.errors import NotFoundError
from guardian.logging_utils import get_logger

logger = get_logger("sessions")

_ACTIVE_SELECT = """
    SELECT
        sh.*,
        d.device_identifier,
        d.device_name,
        d.device_platform,
        d.device_product,
        d.session_count AS device_session_count,
        p.username
    FROM session_history sh
    LEFT JOIN user_devices d ON d.id = sh.user_device_id
    LEFT JOIN user_preferences p ON p.user_id = sh.user_id
"""


def _session_values(session: dict, user_device_id: Optional[int]) -> dict:
    """Only the fields present in the Plex payload, keyed by column."""
    user = session.get("User") or {}
    player = session.get("Player") or {}
    media = (session.get("Media") or [{}])[0] or {}
    plex_session = session.get("Session") or {}

    candidates = {
        "user_id": str(user["id"]) if user.get("id") else None,
        "user_device_id": user_device_id,
        "device_address": player.get("address"),
        "player_state": player.get("state"),
        "product": player.get("product"),
        "content_title": session.get("title"),
        "content_type": session.get("type"),
        "grandparent_title": session.get("grandparentTitle"),
        "parent_title": session.get("parentTitle"),
        "year": session.get("year"),
        "duration": session.get("duration"),
        "thumb": session.get("thumb"),
        "art": session.get("art"),
        "rating_key": session.get("ratingKey"),
        "parent_rating_key": session.get("parentRatingKey"),
        "video_resolution": media.get("videoResolution"),
        "bitrate": media.get("bitrate"),
        "container": media.get("container"),
        "video_codec": media.get("videoCodec"),
        "audio_codec": media.get("audioCodec"),
        "session_location": plex_session.get("location"),
        "bandwidth": plex_session.get("bandwidth"),
    }
    values = {k: v for k, v in candidates.items() if v}

    # 0 is a real playback position
    if session.get("viewOffset") is not None:
        values["view_offset"] = session["viewOffset"]
    return values


class ActiveSessionService:
    """Mirrors Plex's live sessions into session_history."""

    def __init__(self, db, device_tracking, plex_client=None):
        self.db = db
        self.devices = device_tracking
        self.plex_client = plex_client

    def update_active_sessions(self, sessions_data) -> None:
        sessions = extract_sessions(sessions_data)
        current_keys = {str(s["sessionKey"]) for s in sessions if s.get("sessionKey")}

        active = self.db.query("SELECT DISTINCT session_key FROM session_history WHERE ended_at IS NULL")
        ending = [r["session_key"] for r in active if r["session_key"] not in current_keys]

        if ending:
            placeholders = ", ".join("?" * len(ending))
            self.db.execute(
                f"""
                UPDATE session_history
                SET ended_at = ?, player_state = 'stopped'
                WHERE session_key IN ({placeholders}) AND ended_at IS NULL
                """,
                (iso_now(), *ending),
            )
            logger.debug(f"{len(ending)} session(s) ended: {', '.join(ending)}")

        for key in ending:
            self.devices.clear_session_key(key)

        for session in sessions:
            self.upsert_session(session)

    def upsert_session(self, session: dict) -> None:
        session_key = session.get("sessionKey")
        if not session_key:
            logger.warning("Session missing session key, skipping")
            return
        session_key = str(session_key)

        try:
            user = session.get("User") or {}
            player = session.get("Player") or {}
            user_id = str(user["id"]) if user.get("id") else None

            user_device_id = None
            if user_id and player.get("machineIdentifier"):
                device = self.devices.find_device_by_user_and_identifier(user_id, player["machineIdentifier"])
                if device:
                    user_device_id = device["id"]

            if user_id and user.get("title"):
                self.devices.users.update_user_from_session_data(user_id, user["title"])

            values = _session_values(session, user_device_id)

            existing = self.db.query_one(
                "SELECT id FROM session_history WHERE session_key = ? AND ended_at IS NULL",
                (session_key,),
            )
            if existing:
                if values:
                    assignments = ", ".join(f"{k} = ?" for k in values)
                    self.db.execute(
                        f"UPDATE session_history SET {assignments} WHERE id = ?",
                        (*values.values(), existing["id"]),
                    )
            else:
                values["session_key"] = session_key
                values["started_at"] = iso_now()
                columns = ", ".join(values)
                placeholders = ", ".join("?" * len(values))
                self.db.execute(
                    f"INSERT INTO session_history ({columns}) VALUES ({placeholders})",
                    tuple(values.values()),
                )
        except Exception as e:
            logger.error(f"Error upserting session {session_key}: {e}", exc_info=True)

    # -------------------------
    # Reads
    # -------------------------

    def get_active_sessions(self) -> List[dict]:
        rows = self.db.query(
            _ACTIVE_SELECT + " WHERE sh.ended_at IS NULL ORDER BY sh.started_at DESC, sh.id DESC"
        )
        return [dict(r) for r in rows]

    def get_active_sessions_formatted(self, server_identifier: Optional[str] = None) -> dict:
        """Active sessions rebuilt in the shape of Plex's /status/sessions."""
        if server_identifier is None and self.plex_client is not None:
            server_identifier = self.plex_client.get_server_identity()

        metadata = []
        for s in self.get_active_sessions():
            device_name = s.get("device_name")
            product = s.get("device_product")
            has_media = s.get("video_resolution") or s.get("bitrate") or s.get("container")
            metadata.append({
                "sessionKey": s["session_key"],
                "User": {
                    "id": s.get("user_id"),
                    "title": s.get("username") or "Unknown User",
                },
                "Player": {
                    "machineIdentifier": s.get("device_identifier") or "Unknown",
                    "platform": s.get("device_platform") or "Unknown",
                    "product": product or "Unknown",
                    "title": device_name or product or "Unknown Device",
                    "device": device_name or "Unknown",
                    "address": s.get("device_address"),
                    "state": s.get("player_state"),
                    "originalTitle": device_name or product or "Unknown",
                },
                "Media": [{
                    "videoResolution": s.get("video_resolution"),
                    "bitrate": s.get("bitrate"),
                    "container": s.get("container"),
                    "videoCodec": s.get("video_codec"),
                    "audioCodec": s.get("audio_codec"),
                }] if has_media else [],
                "Session": {
                    "id": s["session_key"],
                    "bandwidth": s.get("bandwidth"),
                    "location": s.get("session_location"),
                    "sessionCount": s.get("device_session_count") or 0,
                },
                "title": s.get("content_title"),
                "grandparentTitle": s.get("grandparent_title"),
                "parentTitle": s.get("parent_title"),
                "year": s.get("year"),
                "duration": s.get("duration"),
                "viewOffset": s.get("view_offset"),
                "type": s.get("content_type"),
                "thumb": s.get("thumb"),
                "art": s.get("art"),
                "ratingKey": s.get("rating_key"),
                "parentRatingKey": s.get("parent_rating_key"),
                "serverMachineIdentifier": server_identifier,
            })

        return {"MediaContainer": {"size": len(metadata), "Metadata": metadata}}

    def get_user_session_history(self, user_id: str, limit: int = 50, include_active: bool = False) -> List[dict]:
        sql = _ACTIVE_SELECT + " WHERE sh.user_id = ?"
        if not include_active:
            sql += " AND sh.ended_at IS NOT NULL"
        sql += " ORDER BY sh.started_at DESC, sh.id DESC LIMIT ?"
        return [dict(r) for r in self.db.query(sql, (str(user_id), int(limit)))]

    def delete_session_history(self, history_id: int) -> None:
        cur = self.db.execute("DELETE FROM session_history WHERE id = ?", (history_id,))
        if cur.rowcount == 0:
            raise NotFoundError(f"Session history {history_id} not found")
        logger.info(f"Session history {history_id} deleted")

    def clear_all_session_history(self) -> int:
        cur = self.db.execute("DELETE FROM session_history")
        logger.warning(f"Session history cleared ({cur.rowcount} row(s))")
        return cur.rowcount
