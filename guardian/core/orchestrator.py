from guardian.logging_utils import get_logger

logger = get_logger("orchestrator")


class SessionOrchestrator:
    """
    One poll cycle, in order:
      1. session history
      2. device tracking
      3. linking of notifications left without a history row
      4. access enforcement
    A failing step is logged and the next one still runs.
    """

    def __init__(self, active_sessions, device_tracking, termination, notification_orchestrator=None):
        self.active_sessions = active_sessions
        self.device_tracking = device_tracking
        self.termination = termination
        self.notification_orchestrator = notification_orchestrator

    def orchestrate_session_update(self, sessions_data):
        try:
            self.active_sessions.update_active_sessions(sessions_data)
        except Exception as e:
            logger.error(f"Error updating session history: {e}", exc_info=True)

        try:
            self.device_tracking.process_sessions_for_device_tracking(sessions_data)
        except Exception as e:
            logger.error(f"Error tracking devices: {e}", exc_info=True)

        if self.notification_orchestrator is not None:
            try:
                self.notification_orchestrator.link_pending_orphans()
            except Exception as e:
                logger.error(f"Error linking pending notifications: {e}", exc_info=True)

        try:
            result = self.termination.stop_unapproved_sessions(sessions_data)
            if result.stopped_sessions:
                logger.info(f"Stopped {len(result.stopped_sessions)} session(s)")
            for err in result.errors:
                logger.warning(err)
        except Exception as e:
            logger.error(f"Error enforcing access restrictions: {e}", exc_info=True)

        return sessions_data
