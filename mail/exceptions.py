"""Error taxonomy for mailbox sync.

Celery retries only ``TransientRemoteError``; everything else is terminal for
the job that raised it.
"""


class SyncError(Exception):
    """Base class for sync failures."""


class SyncPreconditionError(SyncError):
    """The requested sync is not allowed for the account's current state."""


class HistoryExpiredError(SyncPreconditionError):
    """The stored history cursor is too old for the remote change log."""


class TransientRemoteError(SyncError):
    """Rate limit, network failure or 5xx from the remote API."""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class MailboxAuthError(SyncError):
    """No usable credential; the account needs to be re-authorized."""


class RemoteDataError(SyncError):
    """A remote item is malformed and cannot be stored."""


class MessageNotFoundError(RemoteDataError):
    """The remote message no longer exists."""


class DispatchError(SyncError):
    """A job could not be handed to the queue."""
