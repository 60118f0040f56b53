from dataclasses import dataclass, field
from typing import Callable, List, Optional

from guardian.core.devices import extract_sessions
from guardian.core.policy.ip_validation import validate_ip_access
from guardian.core.settings import get_settings
from guardian.logging_utils import get_logger

logger = get_logger("termination")

DEFAULT_PENDING_MESSAGE = (
    "Device Pending Approval. The server owner must approve this device before it can be used."
)
DEFAULT_REJECTED_MESSAGE = (
    "You are not authorized to use this device. "
    "Please contact the server administrator for more information."
)


@dataclass
class StreamBlockedEvent:
    user_id: str
    username: str
    device_identifier: str
    stop_code: Optional[str] = None
    session_key: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class StopDecision:
    should_stop: bool
    reason: Optional[str] = None
    stop_code: Optional[str] = None


@dataclass
class TerminationResult:
    stopped_sessions: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


KEEP = StopDecision(False)


class SessionTerminationService:
    """
    Decides, for each live session, whether it violates IP, schedule or
    device-approval policy, and stops the offending streams on Plex.
    """

    def __init__(self, db, plex_client, users_service, time_policy, device_tracking):
        self.db = db
        self.plex_client = plex_client
        self.users = users_service
        self.time_policy = time_policy
        self.devices = device_tracking
        self._stream_blocked_callbacks: List[Callable[[StreamBlockedEvent], None]] = []

    # -------------------------
    # Events
    # -------------------------

    def on_stream_blocked(self, callback: Callable[[StreamBlockedEvent], None]) -> None:
        self._stream_blocked_callbacks.append(callback)

    def _emit_stream_blocked(self, event: StreamBlockedEvent) -> None:
        for callback in self._stream_blocked_callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in stream blocked callback: {e}", exc_info=True)

    # -------------------------
    # Enforcement
    # -------------------------

    def stop_unapproved_sessions(self, sessions_data) -> TerminationResult:
        result = TerminationResult()

        for session in extract_sessions(sessions_data):
            session_key = session.get("sessionKey") or (session.get("Session") or {}).get("id") or "unknown"
            try:
                decision = self.should_stop_session(session)
                if not decision.should_stop:
                    continue

                user = session.get("User") or {}
                player = session.get("Player") or {}
                session_id = (session.get("Session") or {}).get("id")

                if not session_id:
                    logger.warning(f"Could not find session id for session {session_key}")
                    continue

                username = user.get("title") or "Unknown"
                device_name = player.get("title") or "Unknown Device"

                self.terminate_session(session_id, decision.reason)
                result.stopped_sessions.append(str(session_id))

                self._emit_stream_blocked(StreamBlockedEvent(
                    user_id=str(user.get("id") or "unknown"),
                    username=username,
                    device_identifier=player.get("machineIdentifier") or "unknown",
                    stop_code=decision.stop_code,
                    session_key=session.get("sessionKey"),
                    ip_address=player.get("address"),
                ))

                logger.warning(
                    f"Stopped session: {username} on {device_name} "
                    f"(session {session_id}) reason: {decision.reason}"
                )
            except Exception as e:
                result.errors.append(f"Error processing session {session_key}: {e}")
                logger.error(f"Error processing session {session_key}: {e}", exc_info=True)

        return result

    def _validate_ip_access(self, session: dict, settings: dict) -> StopDecision:
        try:
            user = session.get("User") or {}
            user_id = user.get("id") or user.get("uuid")
            client_ip = (session.get("Player") or {}).get("address")

            if not user_id:
                return KEEP
            if not client_ip:
                return StopDecision(True, "Invalid or missing client IP address from Plex")

            pref = self.users.get_user_preference(str(user_id))
            if not pref:
                return KEEP

            result = validate_ip_access(
                client_ip,
                {
                    "network_policy": pref.get("network_policy") or "both",
                    "ip_access_policy": pref.get("ip_access_policy") or "all",
                    "allowed_ips": pref.get("allowed_ips") or [],
                },
                {
                    "lan_only": settings.get("msg_ip_lan_only"),
                    "wan_only": settings.get("msg_ip_wan_only"),
                    "not_allowed": settings.get("msg_ip_not_allowed"),
                },
            )
            if result.allowed:
                return KEEP
            return StopDecision(True, result.reason, result.stop_code)
        except Exception as e:
            logger.error(f"Error validating IP access: {e}", exc_info=True)
            return KEEP

    def should_stop_session(self, session: dict) -> StopDecision:
        try:
            user = session.get("User") or {}
            player = session.get("Player") or {}
            user_id = user.get("id") or user.get("uuid")
            device_identifier = player.get("machineIdentifier")

            if not user_id or not device_identifier:
                logger.warning("Session missing user id or device identifier, cannot check approval")
                return KEEP
            user_id = str(user_id)

            if player.get("product") == "Plexamp":
                return KEEP

            settings = get_settings(self.db)

            ip_decision = self._validate_ip_access(session, settings)
            if ip_decision.should_stop:
                logger.warning(f"IP access denied for user {user_id}: {ip_decision.reason}")
                return ip_decision

            if not self.time_policy.is_time_schedule_allowed(user_id, device_identifier):
                summary = self.time_policy.get_policy_summary(user_id, device_identifier)
                logger.warning(
                    f"Device {device_identifier} for user {user_id} blocked by time policy: {summary}"
                )
                reason = settings.get("msg_time_restricted") or (
                    "Streaming is not allowed at this time due to time restrictions "
                    f"(Policy: {summary})"
                )
                return StopDecision(True, reason, "TIME_RESTRICTED")

            device = self.devices.find_device_by_user_and_identifier(user_id, device_identifier)

            if not device or device.get("status") == "pending":
                if device and self.devices.is_temporary_access_valid(device):
                    return KEEP
                if self.users.get_effective_default_block(user_id):
                    return StopDecision(
                        True,
                        settings.get("msg_device_pending") or DEFAULT_PENDING_MESSAGE,
                        "DEVICE_PENDING",
                    )
                return KEEP

            if device.get("status") == "rejected":
                if self.devices.is_temporary_access_valid(device):
                    return KEEP
                logger.warning(f"Device {device_identifier} for user {user_id} is rejected")
                return StopDecision(
                    True,
                    settings.get("msg_device_rejected") or DEFAULT_REJECTED_MESSAGE,
                    "DEVICE_REJECTED",
                )

            return KEEP
        except Exception as e:
            logger.error(f"Error checking session approval status: {e}", exc_info=True)
            return KEEP

    def terminate_session(self, session_id: str, reason: Optional[str] = None) -> None:
        if not reason:
            reason = get_settings(self.db).get("msg_device_pending") or DEFAULT_PENDING_MESSAGE

        logger.info(f"Terminating session {session_id} with reason: {reason}")
        try:
            self.plex_client.terminate_session(session_id, reason)
        except Exception as e:
            logger.error(f"Failed to terminate session {session_id}: {e}")
            raise
