"""Typed failures raised by the sync REST client."""

from enum import Enum

from markview.models.sync import SyncDocument


class SyncErrorKind(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    UNKNOWN = "UNKNOWN"  # network failures and 5xx


_STATUS_KINDS: dict[int, SyncErrorKind] = {
    400: SyncErrorKind.VALIDATION_ERROR,
    401: SyncErrorKind.UNAUTHORIZED,
    403: SyncErrorKind.FORBIDDEN,
    404: SyncErrorKind.NOT_FOUND,
    409: SyncErrorKind.CONFLICT,
    422: SyncErrorKind.VALIDATION_ERROR,
    429: SyncErrorKind.RATE_LIMITED,
}


def kind_for_status(status: int | None) -> SyncErrorKind:
    """Map an HTTP status to an error kind. ``None`` means no response at all."""
    if status is None:
        return SyncErrorKind.UNKNOWN
    return _STATUS_KINDS.get(status, SyncErrorKind.UNKNOWN)


class SyncApiError(Exception):
    """A sync request failed. Callers branch on ``kind``, never on the message."""

    def __init__(
        self,
        kind: SyncErrorKind,
        message: str,
        status: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status
        self.retry_after = retry_after

    def __repr__(self) -> str:
        return f"SyncApiError(kind={self.kind.value}, status={self.status}, message={self.message!r})"


class SyncConflictError(SyncApiError):
    """409: the server holds a newer version of the document."""

    def __init__(self, message: str, server_version: int, server_document: SyncDocument):
        super().__init__(SyncErrorKind.CONFLICT, message, status=409)
        self.server_version = server_version
        self.server_document = server_document
