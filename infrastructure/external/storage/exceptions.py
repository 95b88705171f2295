"""Storage service exceptions.

Every backend-native failure is translated into one of these kinds before
it leaves a store; the original exception is kept as ``__cause__``.
"""
from typing import Iterable, Optional


class StorageError(Exception):
    """Base storage exception."""
    pass


class ValidationError(StorageError):
    """Invalid input, rejected before any I/O."""
    pass


class InvalidKeyError(ValidationError):
    """Object key is empty, absolute, or escapes the storage root."""
    pass


class NotFoundError(StorageError):
    """Object not found in storage."""
    pass


class UploadFailedError(StorageError):
    """Object could not be written."""
    pass


class DownloadFailedError(StorageError):
    """Object could not be read."""
    pass


class _BatchError(StorageError):
    """Error that carries the keys a batch operation could not process."""

    def __init__(self, message: str, failed_keys: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.failed_keys: list[str] = list(failed_keys or [])


class DeleteFailedError(_BatchError):
    """One or more objects could not be deleted."""
    pass


class OperationCancelledError(_BatchError):
    """Caller cancelled the operation; not a backend failure."""
    pass


class DeadlineExceededError(OperationCancelledError):
    """Caller-supplied deadline expired."""
    pass


class InternalStorageError(StorageError):
    """Unclassified backend failure."""
    pass


class ConfigurationError(StorageError):
    """Storage configuration error."""
    pass
