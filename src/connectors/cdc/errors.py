"""
Error taxonomy for the CDC connector.

Checkpoint errors never escape ``CheckpointStore``'s public methods; they are
raised internally to drive the retry loop and recorded on ``OperationResult``.
"""

from enum import Enum


class CDCError(Exception):
    """Base exception for CDC errors."""
    pass


class CheckpointError(CDCError):
    """Error saving/loading/clearing a checkpoint."""
    pass


class TransientCheckpointError(CheckpointError):
    """Failure that may succeed when the operation is attempted again."""
    pass


class ConnectionUnavailable(TransientCheckpointError):
    """The connection provider returned no storage handle."""
    pass


class AccessError(TransientCheckpointError):
    """A handle was obtained but the checkpoint collection/table could not be accessed."""
    pass


class StorageError(TransientCheckpointError):
    """The upsert/find/delete itself failed after a handle was obtained."""
    pass


class ValidationError(CheckpointError):
    """Resume token is structurally invalid. Never retried."""
    pass


class CheckpointCancelled(CheckpointError):
    """The store was cancelled before the operation could complete."""
    pass


class ErrorKind(str, Enum):
    """Failure classification carried by ``OperationResult``."""

    CONNECTION_UNAVAILABLE = "connection_unavailable"
    ACCESS_ERROR = "access_error"
    STORAGE_ERROR = "storage_error"
    VALIDATION_ERROR = "validation_error"
    CANCELLED = "cancelled"

    @classmethod
    def from_exception(cls, error: BaseException) -> "ErrorKind":
        if isinstance(error, ConnectionUnavailable):
            return cls.CONNECTION_UNAVAILABLE
        if isinstance(error, AccessError):
            return cls.ACCESS_ERROR
        if isinstance(error, ValidationError):
            return cls.VALIDATION_ERROR
        if isinstance(error, CheckpointCancelled):
            return cls.CANCELLED
        return cls.STORAGE_ERROR
