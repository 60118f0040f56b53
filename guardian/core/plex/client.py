from __future__ import annotations

from typing import Any, Dict, Optional

import requests
from plexapi.exceptions import BadRequest, Unauthorized
from plexapi.server import PlexServer

from guardian.core.settings import get_settings
from guardian.errors import PlexConfigurationError, PlexRequestError
from guardian.logging_utils import get_logger

logger = get_logger("plex_client")

PLEX_TV_USERS_URL = "https://plex.tv/api/users"
CLIENT_IDENTIFIER = "Guardian"
REQUEST_TIMEOUT = 15
MEDIA_TIMEOUT = 10


class PlexClient:
    """
    Thin HTTP client for one Plex Media Server.
    Connection settings are read from the settings row on every call,
    so edits made through the API apply on the next poll.
    """

    def __init__(self, db):
        self.db = db

    # -------------------------
    # Config
    # -------------------------

    def _config(self) -> Dict[str, Any]:
        s = get_settings(self.db)
        return {
            "ip": (s.get("plex_server_ip") or "").strip(),
            "port": str(s.get("plex_server_port") or "").strip(),
            "token": (s.get("plex_token") or "").strip(),
            "use_ssl": bool(s.get("use_ssl")),
            "ignore_cert_errors": bool(s.get("ignore_cert_errors")),
        }

    def validate_configuration(self) -> Dict[str, Any]:
        cfg = self._config()
        if not cfg["ip"] or not cfg["port"] or not cfg["token"]:
            raise PlexConfigurationError(
                "Missing required Plex configuration: ip, port or token"
            )
        return cfg

    @staticmethod
    def base_url(cfg: Dict[str, Any]) -> str:
        scheme = "https" if cfg["use_ssl"] else "http"
        return f"{scheme}://{cfg['ip']}:{cfg['port']}"

    def _headers(self, cfg: Dict[str, Any]) -> Dict[str, str]:
        return {
            "X-Plex-Token": cfg["token"],
            "X-Plex-Client-Identifier": CLIENT_IDENTIFIER,
            "Accept": "application/json",
        }

    # -------------------------
    # Requests
    # -------------------------

    def request(
        self,
        endpoint: str,
        method: str = "GET",
        params: Optional[dict] = None,
        timeout: int = REQUEST_TIMEOUT,
    ) -> requests.Response:
        cfg = self.validate_configuration()
        url = f"{self.base_url(cfg)}/{endpoint.lstrip('/')}"

        try:
            r = requests.request(
                method,
                url,
                params=params,
                headers=self._headers(cfg),
                verify=not cfg["ignore_cert_errors"],
                timeout=timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Plex request {method} /{endpoint.lstrip('/')} failed: {e}")
            raise PlexRequestError(f"Plex request failed: {e}") from e

        if not r.ok:
            logger.error(f"Plex request {method} /{endpoint.lstrip('/')} -> HTTP {r.status_code}")
            raise PlexRequestError(
                f"Plex returned HTTP {r.status_code} for /{endpoint.lstrip('/')}",
                plex_status=r.status_code,
            )
        return r

    def get_sessions(self) -> dict:
        r = self.request("status/sessions")
        if not r.content:
            return {}
        try:
            return r.json()
        except ValueError as e:
            raise PlexRequestError(f"Invalid JSON from Plex sessions: {e}") from e

    def get_server_identity(self) -> Optional[str]:
        try:
            cfg = self.validate_configuration()
            session = requests.Session()
            session.verify = not cfg["ignore_cert_errors"]
            plex = PlexServer(self.base_url(cfg), cfg["token"], session=session, timeout=REQUEST_TIMEOUT)
            return plex.machineIdentifier or None
        except Exception as e:
            logger.error(f"Failed to read Plex server identity: {e}")
            return None

    def terminate_session(self, session_id: str, reason: str) -> None:
        if not session_id or not str(session_id).strip():
            logger.warning("terminate_session called without a session id, ignored")
            return

        self.request(
            "status/sessions/terminate",
            params={"sessionId": str(session_id), "reason": reason or ""},
        )
        logger.info(f"Plex session {session_id} terminated")

    def get_plex_users(self) -> str:
        """Raw XML from plex.tv listing the accounts the server is shared with."""
        cfg = self._config()
        if not cfg["token"]:
            raise PlexConfigurationError("Missing required Plex configuration: token")

        try:
            r = requests.get(
                PLEX_TV_USERS_URL,
                headers={
                    "X-Plex-Token": cfg["token"],
                    "X-Plex-Client-Identifier": CLIENT_IDENTIFIER,
                    "Accept": "application/xml",
                },
                timeout=REQUEST_TIMEOUT,
            )
            r.raise_for_status()
        except requests.exceptions.RequestException as e:
            code = getattr(getattr(e, "response", None), "status_code", None)
            logger.error(f"plex.tv users request failed: {code or type(e).__name__}")
            raise PlexRequestError(f"plex.tv users request failed: {e}", plex_status=code) from e

        return r.text

    def request_media(self, endpoint: str) -> Optional[bytes]:
        try:
            cfg = self.validate_configuration()
        except PlexConfigurationError:
            return None

        url = f"{self.base_url(cfg)}/{endpoint.lstrip('/')}"
        try:
            r = requests.get(
                url,
                headers={"X-Plex-Token": cfg["token"]},
                verify=not cfg["ignore_cert_errors"],
                timeout=MEDIA_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"Media request failed for {endpoint}: {e}")
            return None

        if r.status_code != 200:
            return None
        return r.content

    # -------------------------
    # Diagnostics
    # -------------------------

    def test_connection(self) -> Dict[str, Any]:
        try:
            cfg = self.validate_configuration()
        except PlexConfigurationError as e:
            return {
                "success": False,
                "code": "MISSING_CONFIG",
                "message": str(e),
                "suggestion": "Fill in the Plex server IP, port and token.",
            }

        base = self.base_url(cfg)
        session = requests.Session()
        session.verify = not cfg["ignore_cert_errors"]

        try:
            plex = PlexServer(base, cfg["token"], session=session, timeout=REQUEST_TIMEOUT)
            return {
                "success": True,
                "code": "CONNECTION_SUCCESS",
                "message": f"Connected to {plex.friendlyName} ({plex.version})",
                "suggestion": None,
            }
        except Unauthorized:
            return _failure(
                "AUTH_FAILED",
                "Plex rejected the token",
                "Check that the Plex token is valid and belongs to the server owner.",
            )
        except BadRequest as e:
            return _failure("SERVER_ERROR", f"Plex server error: {e}", "Check the Plex server logs.")
        except requests.exceptions.SSLError as e:
            text = str(e)
            if "CERTIFICATE_VERIFY_FAILED" in text or "certificate" in text.lower():
                return _failure(
                    "CERT_ERROR",
                    "The Plex server certificate could not be verified",
                    "Enable 'ignore certificate errors' or use a trusted certificate.",
                )
            return _failure(
                "SSL_ERROR",
                f"SSL handshake failed: {text}",
                "Disable SSL if the server does not serve HTTPS on this port.",
            )
        except requests.exceptions.Timeout:
            return _failure(
                "CONNECTION_TIMEOUT",
                f"Connection to {base} timed out",
                "Check the IP, port and any firewall between Guardian and Plex.",
            )
        except requests.exceptions.ConnectionError as e:
            if "refused" in str(e).lower():
                return _failure(
                    "CONNECTION_REFUSED",
                    f"Connection refused by {base}",
                    "Check that Plex is running and listening on this port.",
                )
            return _failure(
                "NETWORK_ERROR",
                f"Network error: {e}",
                "Check the IP address and network connectivity.",
            )
        except requests.exceptions.RequestException as e:
            return _failure("NETWORK_ERROR", f"Network error: {e}", "Check network connectivity.")


def _failure(code: str, message: str, suggestion: str) -> Dict[str, Any]:
    logger.warning(f"Plex connection test failed: {code} {message}")
    return {"success": False, "code": code, "message": message, "suggestion": suggestion}
