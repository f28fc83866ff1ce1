"""
Error taxonomy for catalog synchronization.

Storage backends translate driver exceptions (pymongo, psycopg2, sqlite3)
into StoreError subclasses so the sync engine never handles driver types.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all catalog sync errors."""


class StoreError(SyncError):
    """A storage operation failed."""


class StoreConnectionError(StoreError, ConnectionError):
    """The document store could not be reached."""


class BulkWriteError(StoreError):
    """A bulk write (upsert, insert, delete, tombstone) failed."""

    def __init__(self, message: str, operation: str = "", batch_size: int = 0):
        super().__init__(message)
        self.operation = operation
        self.batch_size = batch_size


class IndexManagementError(StoreError):
    """Dropping or creating an index failed."""


class ParseError(SyncError):
    """The input file is malformed, truncated, or missing its record array.

    `offset` is the start of the input block the parser failed in; the
    error itself lies at or after it.
    """

    def __init__(self, message: str, path: Optional[str] = None, offset: Optional[int] = None):
        if offset is not None:
            message = f"{message} (in block starting at byte {offset})"
        super().__init__(message)
        self.path = path
        self.offset = offset


class MissingIdentityError(SyncError):
    """A record lacks a usable value for one of its identity fields."""

    def __init__(self, field: str, reason: str = "missing"):
        super().__init__(f"Identity field '{field}' is {reason}")
        self.field = field
        self.reason = reason
