"""Error taxonomy shared by every storage backend.

Callers of :mod:`invcore.storage` only ever see these exception types; the
backend specific failures (``HttpError`` from the Sheets API, SQLAlchemy
``IntegrityError`` and friends) are translated at the backend boundary.
"""

from __future__ import annotations


class StorageError(Exception):
    """Base error raised by the storage layer."""


class NotFound(StorageError):
    """Raised when an id, username or email lookup misses."""


class Conflict(StorageError):
    """Raised when a unique key (username, email, category name) already exists."""


class InvalidArgument(StorageError):
    """Raised for payloads the storage layer refuses to persist."""


class Unavailable(StorageError):
    """Raised when the backend cannot be reached or rejects our credentials."""


class Internal(StorageError):
    """Raised for unexpected decode/encode failures."""


__all__ = [
    "StorageError",
    "NotFound",
    "Conflict",
    "InvalidArgument",
    "Unavailable",
    "Internal",
]
