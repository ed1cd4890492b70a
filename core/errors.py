"""
Error taxonomy of the storage layer.

Only these two exceptions leave a repository:

- RepositoryError: a MongoDB operation failed, or the query handed to an
  existence check could never be answered meaningfully.
- DeveloperError: a repository class is misconfigured. It needs a code
  change, retrying will not help.
"""

from typing import Optional


class StorageError(Exception):
    """Base class for errors raised by the storage layer."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RepositoryError(StorageError):
    """A store operation failed or was given an unusable query."""

    def __init__(self, reason: str, cause: Optional[BaseException] = None):
        super().__init__(reason)
        self.cause = cause

    @classmethod
    def wrap(cls, cause: BaseException) -> "RepositoryError":
        """Build an error carrying ``cause``, keeping its message."""
        return cls(str(cause) or type(cause).__name__, cause=cause)


class DeveloperError(StorageError):
    """A repository subclass did not declare its mandatory configuration."""

    pass
