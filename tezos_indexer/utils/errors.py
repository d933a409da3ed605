from typing import Optional


class IndexerError(Exception):
    pass


class SourceError(IndexerError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# 5xx, 429 and network failures. Retried by the client before surfacing.
class TransientSourceError(SourceError):
    pass


# Any other 4xx or a payload we cannot parse. Never retried.
class PermanentSourceError(SourceError):
    pass


class StorageError(IndexerError):
    pass


# Raised when a Context is done, so callers can tell "ran out of time" or
# "was stopped" apart from data errors.
class ContextDone(IndexerError):
    pass


class Cancelled(ContextDone):
    pass


class DeadlineExceeded(ContextDone):
    pass


class AlreadyStartedError(IndexerError):
    pass


class BackfillError(IndexerError):
    pass
