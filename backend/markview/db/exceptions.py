"""Database-specific exceptions for the sync server."""

from typing import Any


class DatabaseError(Exception):
    """Base exception for database operations."""

    pass


class RecordNotFoundError(DatabaseError):
    """Raised when a required record is not found."""

    pass


class DuplicateRecordError(DatabaseError):
    """Raised when attempting to create a duplicate record."""

    pass


class ConnectionError(DatabaseError):
    """Raised when database connection fails."""

    pass


class VersionConflictError(DatabaseError):
    """Raised when a write carries a sync version older than the stored one.

    ``server_record`` is the current row so the caller can hand it back to
    the client.
    """

    def __init__(self, server_version: int, server_record: Any) -> None:
        super().__init__(f"Stored version {server_version} is newer than the submitted version")
        self.server_version = server_version
        self.server_record = server_record
