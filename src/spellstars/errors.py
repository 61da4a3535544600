"""Exception types raised by the practice core."""
from typing import Optional


class SpellStarsError(Exception):
    """Base class for practice core errors."""


class DataUnavailable(SpellStarsError):
    """Difficulty data could not be read from the remote store."""


class RemoteError(SpellStarsError):
    """A call to the remote store failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteUnavailable(RemoteError):
    """Transient failure: timeout, network error, throttling or a 5xx response."""


class RemoteRejected(RemoteError):
    """The remote store refused the request (4xx other than 429)."""


class InvalidQueueRecord(SpellStarsError, ValueError):
    """A record handed to the local queue is malformed."""


class QueueItemNotFound(SpellStarsError, LookupError):
    """No queued record exists with the given id."""
