"""Application-level exception types.

Convention:
- ``InternalServerError``: for errors whose details must never reach clients.
  The global handler logs the full message at ERROR and returns a generic
  "Internal server error" (500) to the client.
- ``ValueError``: for *business logic* validation errors that are safe to
  forward to clients (invalid timestamps, foreign note ownership, etc.).  The
  global ``ValueError`` handler returns ``str(exc)`` as the 422 detail.
- ``NoteSyncError`` subclasses: the sync/storage taxonomy. Each maps to a
  fixed HTTP status in ``notesync/main.py``.

Sync conflicts are *not* exceptions: they are reported in
``ConflictReport.superseded`` and returned to the caller.
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``notesync/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """


class NoteSyncError(Exception):
    """Base class for sync and storage errors."""


class AuthenticationFailure(NoteSyncError):
    """Bad credentials or an unresolvable token.

    Deliberately carries no detail about which check failed.
    """

    def __init__(self) -> None:
        super().__init__("Access denied")


class UnknownUser(NoteSyncError):
    """A note repository was opened for a username with no user record."""

    def __init__(self, username: str) -> None:
        super().__init__(f"Unknown user: {username}")
        self.username = username


class ServerIdMismatch(NoteSyncError):
    """The client manifest refers to a different note collection instance.

    The client must drop its local sync state and perform a full resync.
    """

    def __init__(self, client_server_id: str, server_id: str) -> None:
        super().__init__(
            f"Client server id {client_server_id!r} does not match server id {server_id!r}"
        )
        self.client_server_id = client_server_id
        self.server_id = server_id


class StorageFailure(NoteSyncError):
    """A record store operation failed.

    ``transient`` failures (timeouts, lock contention, lost compare-and-swap)
    leave no state behind and may be retried with the same client delta.
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class RevisionConflict(StorageFailure):
    """Another session advanced the manifest revision first."""

    def __init__(self, expected_revision: int) -> None:
        super().__init__(
            f"Manifest revision moved past {expected_revision} during sync", transient=True
        )
        self.expected_revision = expected_revision


class SyncAborted(NoteSyncError):
    """A sync session failed after it started applying changes.

    No partial note writes survive; ``cause`` holds the underlying error.
    """

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Sync aborted: {cause}")
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return isinstance(self.cause, StorageFailure) and self.cause.transient
