"""Error taxonomy for ingestion and queue processing."""


class TrackerError(Exception):
    """Base class for postback tracker errors."""


class RejectionError(TrackerError):
    """Malformed or unauthorized inbound request.

    Surfaced synchronously to the caller with ``status_code``; no queue
    entry is created and nothing is retried.
    """

    status_code = 400

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class MissingPartnerIdError(RejectionError):
    status_code = 400

    def __init__(self, message: str = "Partner ID is required"):
        super().__init__(message)


class PartnerNotFoundError(RejectionError):
    status_code = 404

    def __init__(self, message: str = "Partner not found"):
        super().__init__(message)


class IpNotAllowedError(RejectionError):
    status_code = 403

    def __init__(self, message: str = "IP not allowed"):
        super().__init__(message)


class StorageError(TrackerError):
    """Storage unavailable while serving an inbound request (HTTP 500)."""

    status_code = 500

    def __init__(self, message: str = "Database error"):
        super().__init__(message)
        self.message = message


class TransientProcessingError(TrackerError):
    """Storage or side-effect failure during batch processing; retried up to the cap."""


class PermanentFailure(TrackerError):
    """Terminal failure of a queue entry; never retried."""


class ConfigurationError(PermanentFailure):
    """Processing cannot succeed with the current configuration (partner gone, bad payload)."""


class BestEffortFailure(TrackerError):
    """Notification or export failure; logged only."""
