"""
CDC (Change Data Capture) module: resume-token checkpointing for MongoDB changestreams.
"""

from .errors import (
    CDCError,
    CheckpointError,
    TransientCheckpointError,
    ConnectionUnavailable,
    AccessError,
    StorageError,
    ValidationError,
    CheckpointCancelled,
    ErrorKind,
)
from .retry import RetryPolicy
from .validation import validate_resume_token, describe_invalid_token
from .backends import (
    CheckpointRecord,
    MongoCheckpointBackend,
    SqlCheckpointBackend,
    ResumeTokenCheckpoint,
)
from .checkpoint_store import (
    CheckpointStore,
    CheckpointMetadata,
    ConnectionProvider,
    OperationResult,
)
from .mongo_changestream import ChangeStreamWatcher, CDCConfig, ResumeTokenRejected

__all__ = [
    "CDCError",
    "CheckpointError",
    "TransientCheckpointError",
    "ConnectionUnavailable",
    "AccessError",
    "StorageError",
    "ValidationError",
    "CheckpointCancelled",
    "ErrorKind",
    "RetryPolicy",
    "validate_resume_token",
    "describe_invalid_token",
    "CheckpointRecord",
    "MongoCheckpointBackend",
    "SqlCheckpointBackend",
    "ResumeTokenCheckpoint",
    "CheckpointStore",
    "CheckpointMetadata",
    "ConnectionProvider",
    "OperationResult",
    "ChangeStreamWatcher",
    "CDCConfig",
    "ResumeTokenRejected",
]
