from typing import Optional


class SyncError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(SyncError):
    status_code = 400


class NotFoundError(SyncError):
    status_code = 404


class PermissionDeniedError(SyncError):
    status_code = 403


class NotConfiguredError(SyncError):
    """The store or its company has no usable AIMS credentials."""

    status_code = 400


class SyncDisabledError(SyncError):
    status_code = 400


class ConflictError(SyncError):
    """Another worker holds or already moved the queue item."""

    status_code = 409


class ExternalSystemError(SyncError):
    """A call to AIMS failed.

    ``transient`` failures (timeouts, transport errors, 408/429/5xx) are retried
    with backoff; anything else is a permanent rejection.
    """

    status_code = 502

    def __init__(
        self, message: str, transient: bool = True, http_status: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.http_status = http_status
