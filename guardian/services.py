from dataclasses import dataclass

from guardian.core.devices import DeviceTrackingService
from guardian.core.notifications import NotificationOrchestrator, NotificationsService
from guardian.core.orchestrator import SessionOrchestrator
from guardian.core.plex.client import PlexClient
from guardian.core.plex.service import PlexService
from guardian.core.policy.time_policy import TimePolicyService
from guardian.core.sessions import ActiveSessionService
from guardian.core.termination import SessionTerminationService
from guardian.core.users import UsersService
from guardian.logging_utils import get_logger

logger = get_logger("services")


@dataclass
class Services:
    db: object
    plex_client: PlexClient
    users: UsersService
    time_policy: TimePolicyService
    devices: DeviceTrackingService
    sessions: ActiveSessionService
    termination: SessionTerminationService
    notifications: NotificationsService
    notification_orchestrator: NotificationOrchestrator
    orchestrator: SessionOrchestrator
    plex: PlexService


def build_services(db, public_url: str = "", plex_client=None) -> Services:
    """Wire every service on one database and hook notifications to events."""
    client = plex_client or PlexClient(db)

    users = UsersService(db, client)
    time_policy = TimePolicyService(db)
    devices = DeviceTrackingService(db, users)
    sessions = ActiveSessionService(db, devices, client)
    termination = SessionTerminationService(db, client, users, time_policy, devices)
    notifications = NotificationsService(db)
    notification_orchestrator = NotificationOrchestrator(db, notifications)
    orchestrator = SessionOrchestrator(sessions, devices, termination, notification_orchestrator)
    plex = PlexService(db, client, devices, orchestrator, sessions, public_url)

    devices.on_new_device_detected(notification_orchestrator.notify_new_device)
    termination.on_stream_blocked(notification_orchestrator.notify_stream_blocked)

    logger.debug("Services wired")

    return Services(
        db=db,
        plex_client=client,
        users=users,
        time_policy=time_policy,
        devices=devices,
        sessions=sessions,
        termination=termination,
        notifications=notifications,
        notification_orchestrator=notification_orchestrator,
        orchestrator=orchestrator,
        plex=plex,
    )
