class GuardianError(Exception):
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(GuardianError):
    status_code = 404


class ValidationError(GuardianError):
    status_code = 400


class PlexConfigurationError(GuardianError):
    """Plex ip, port or token missing from settings."""
    status_code = 400


class PlexRequestError(GuardianError):
    """HTTP or network failure while talking to Plex."""
    status_code = 502

    def __init__(self, message, plex_status=None):
        super().__init__(message)
        self.plex_status = plex_status
