from typing import Optional


class SyncError(Exception):
    """Base for every per-record failure the sync job knows how to classify."""


class NoCredential(SyncError):
    """The account has no usable linked carrier credential. Skip, not a failure."""


class NoRemoteIdentifier(SyncError):
    """The record has nothing to query the carrier with. Skip."""


class RemoteUnavailable(SyncError):
    """Timeout, throttling or 5xx from the carrier. Retried by the next scheduled run."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedPayload(SyncError):
    """Carrier payload did not have the expected shape."""


class PersistenceError(SyncError):
    """Storage write failed; the record's in-memory state is discarded."""
