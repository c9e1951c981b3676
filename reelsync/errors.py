"""Error taxonomy shared by the remote client and the sync engine."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for recoverable failures surfaced to the view as messages."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(SyncError):
    """The TMDb credential is missing or still a placeholder."""


class TransportError(SyncError):
    """Timeout, connection failure or an HTTP error status."""


class MalformedResponseError(SyncError):
    """The response body could not be parsed into the expected shape."""


class RemoteApiError(SyncError):
    """A well-formed response carrying an embedded TMDb error status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
