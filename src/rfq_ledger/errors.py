"""
Exception hierarchy shared by the store adapters, the ledger, the catalog
publisher and the HTTP layer.

Every error carries a machine-readable `code` and the HTTP status it maps
to, so the API can render the uniform `{code, message, details?}` envelope
without knowing about individual exception types.
"""
from typing import Any


class LedgerError(Exception):
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = "", details: Any = None):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        self.details = details

    def envelope(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(LedgerError):
    """Malformed or oversized input. Raised before any store write."""

    code = "validation_error"
    status_code = 400


class NotFound(LedgerError):
    code = "not_found"
    status_code = 404


class ObjectNotFound(NotFound):
    """A raw store key does not exist (or has expired)."""

    def __init__(self, key: str):
        super().__init__(f"No object stored under {key!r}")
        self.key = key


class IdempotencyConflict(LedgerError):
    """The same idempotency token was reused with a different payload."""

    code = "idempotency_conflict"
    status_code = 409


class IdempotencyInProgress(LedgerError):
    code = "idempotency_in_progress"
    status_code = 409


class RateLimited(LedgerError):
    code = "rate_limited"
    status_code = 429


class PreconditionFailed(LedgerError):
    """A conditional put did not hold (key present for IfAbsent, etag moved for IfMatch)."""

    code = "precondition_failed"
    status_code = 412

    def __init__(self, key: str, reason: str = ""):
        super().__init__(f"Precondition failed for {key!r}{': ' + reason if reason else ''}")
        self.key = key


class StorageTransient(LedgerError):
    """A store hiccup that is safe to retry with backoff."""

    code = "storage_unavailable"
    status_code = 503


class StorageFatal(LedgerError):
    """Malformed key, permission problem or corrupt backend. Never retried."""

    code = "storage_error"
    status_code = 500


class StorageContention(LedgerError):
    """Optimistic-concurrency retries on a metadata record were exhausted."""

    code = "storage_contention"
    status_code = 503
