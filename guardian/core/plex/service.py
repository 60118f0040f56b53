import re
import threading
from typing import Optional

from guardian.core.devices import extract_sessions
from guardian.core.settings import get_settings
from guardian.errors import PlexConfigurationError
from guardian.logging_utils import get_logger

logger = get_logger("plex_service")

MEDIA_PATH_RE = re.compile(r"^/library/metadata/(\d+)/(thumb|art)(?:/(\d+))?")
MEDIA_KINDS = ("thumb", "art")


class PlexService:
    def __init__(self, db, plex_client, device_tracking, orchestrator, active_sessions, public_url=""):
        self.db = db
        self.client = plex_client
        self.devices = device_tracking
        self.orchestrator = orchestrator
        self.active_sessions = active_sessions
        self.public_url = (public_url or "").rstrip("/")

        self._server_identifier: Optional[str] = None
        self._identifier_lock = threading.Lock()
        # one poll cycle at a time across threads
        self._cycle_lock = threading.Lock()

    # -------------------------
    # Server identity
    # -------------------------

    def get_server_identifier(self) -> Optional[str]:
        if self._server_identifier:
            return self._server_identifier

        # concurrent callers wait for the lookup in progress
        with self._identifier_lock:
            if self._server_identifier:
                return self._server_identifier
            try:
                identifier = self.client.get_server_identity()
            except Exception as e:
                logger.error(f"Failed to get server identifier: {e}")
                identifier = None
            if identifier:
                self._server_identifier = identifier
            return identifier

    def reset_server_identifier(self) -> None:
        self._server_identifier = None

    # -------------------------
    # Sessions
    # -------------------------

    def get_active_sessions(self) -> dict:
        data = self.client.get_sessions() or {}
        identifier = self.get_server_identifier()
        settings = get_settings(self.db)

        for session in extract_sessions(data):
            self._enrich(session, identifier, settings)
        return data

    def _enrich(self, session: dict, identifier: Optional[str], settings: dict) -> None:
        count = 0
        machine_id = (session.get("Player") or {}).get("machineIdentifier")
        if machine_id:
            try:
                device = self.devices.find_device_by_identifier(machine_id)
                count = device["session_count"] if device else 0
            except Exception as e:
                logger.warning(f"Could not read session count for device {machine_id}: {e}")

        session.setdefault("Session", {})
        session["Session"]["sessionCount"] = count
        session["serverMachineIdentifier"] = identifier

        if settings.get("enable_media_thumbnails") and session.get("thumb"):
            session["thumbnailUrl"] = self.build_media_url("thumb", session["thumb"])
        if settings.get("enable_media_artwork") and session.get("art"):
            session["artUrl"] = self.build_media_url("art", session["art"])

    def build_media_url(self, kind: str, path: str) -> str:
        """
        /library/metadata/<ratingKey>/<thumb|art>[/<timestamp>]
          -> <public_url>/api/plex/media/<kind>/<ratingKey>[?t=<timestamp>]
        """
        m = MEDIA_PATH_RE.match(path or "")
        if not m or kind not in MEDIA_KINDS:
            logger.warning(f"Unrecognized media path: {path}")
            return ""
        rating_key, _, timestamp = m.groups()
        url = f"{self.public_url}/api/plex/media/{kind}/{rating_key}"
        if timestamp:
            url += f"?t={timestamp}"
        return url

    def get_plex_web_url(self) -> str:
        s = get_settings(self.db)
        custom = (s.get("custom_plex_url") or "").strip()
        if custom:
            return custom.rstrip("/")

        ip = (s.get("plex_server_ip") or "").strip()
        port = str(s.get("plex_server_port") or "").strip()
        if not ip or not port:
            raise PlexConfigurationError("Plex server IP and port are not configured")
        scheme = "https" if s.get("use_ssl") else "http"
        return f"{scheme}://{ip}:{port}"

    def update_active_sessions(self) -> dict:
        with self._cycle_lock:
            try:
                data = self.get_active_sessions()
                self.orchestrator.orchestrate_session_update(data)
                return data
            except Exception as e:
                logger.error(f"Error updating active sessions: {e}")
                raise

    def get_active_sessions_with_media_urls(self) -> dict:
        identifier = self.get_server_identifier()
        data = self.active_sessions.get_active_sessions_formatted(identifier)
        settings = get_settings(self.db)

        for session in extract_sessions(data):
            if settings.get("enable_media_thumbnails") and session.get("thumb"):
                session["thumbnailUrl"] = self.build_media_url("thumb", session["thumb"])
            if settings.get("enable_media_artwork") and session.get("art"):
                session["artUrl"] = self.build_media_url("art", session["art"])
        return data

    def get_media(self, kind: str, rating_key: str, timestamp: Optional[str] = None) -> Optional[bytes]:
        if kind not in MEDIA_KINDS or not str(rating_key).isdigit():
            return None
        path = f"library/metadata/{rating_key}/{kind}"
        if timestamp and str(timestamp).isdigit():
            path += f"/{timestamp}"
        return self.client.request_media(path)
