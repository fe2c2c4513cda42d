"""
Resume-token checkpoint store for the change stream consumer.

Persists, validates, loads and invalidates the single resume token the consumer
uses to continue reading the change stream after a restart. Transient storage
failures are retried with a fixed backoff; no exception ever crosses the public
methods, failures come back as ``False``/``None`` with detail in the logs.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable
import logging
import threading

from prometheus_client import Counter, Gauge
from tenacity import RetryCallState

from src.utils.clock import Clock, SystemClock
from .backends import (
    CheckpointBackend,
    CheckpointRecord,
    MongoCheckpointBackend,
    SqlCheckpointBackend,
)
from .errors import (
    AccessError,
    CheckpointCancelled,
    ConnectionUnavailable,
    ErrorKind,
    StorageError,
    TransientCheckpointError,
    ValidationError,
)
from .retry import RetryPolicy
from .validation import DEFAULT_TOKEN_FIELD, describe_invalid_token, validate_resume_token

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_ID = "change-stream-resume-token"
DEFAULT_STALENESS = timedelta(days=7)
UNKNOWN_INSTANCE = "unknown"

checkpoint_operations_total = Counter(
    'cafesync_checkpoint_operations_total',
    'Checkpoint store operations',
    ['operation', 'status']
)

checkpoint_retries_total = Counter(
    'cafesync_checkpoint_retries_total',
    'Checkpoint operation retries',
    ['operation', 'error_kind']
)

checkpoint_age_seconds = Gauge(
    'cafesync_checkpoint_age_seconds',
    'Age of the last loaded checkpoint'
)


@runtime_checkable
class ConnectionProvider(Protocol):
    """Supplies handles to the local persistent store."""

    def get_local_connection(self) -> Any:
        """Return a storage handle, or None when the store is unavailable."""
        ...

    def is_available(self) -> bool:
        """Cheap liveness check."""
        ...


@dataclass(frozen=True)
class CheckpointMetadata:
    """Checkpoint diagnostics without the token payload."""
    exists: bool
    timestamp: Optional[datetime]
    instance_id: Optional[str]
    is_valid: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exists": self.exists,
            "timestamp": self.timestamp,
            "instanceId": self.instance_id,
            "isValid": self.is_valid,
        }


@dataclass(frozen=True)
class OperationResult:
    """Outcome of the most recent store operation."""
    operation: str
    ok: bool
    value: Any = None
    error_kind: Optional[ErrorKind] = None
    attempts: int = 0
    error: Optional[str] = None


class CheckpointStore:
    """
    Single authority for the consumer's resume token.

    Features:
    - Singleton record keyed by a fixed id, written with a native upsert
    - Structural validation before every write and after every read
    - Fixed-schedule retry on transient storage failures
    - Cancellation that aborts a retry loop mid-wait
    - Metrics instrumentation

    Thread Safety: NO. Assumes a single logical writer issuing calls one at a time.

    Example:
        >>> store = CheckpointStore(MongoConnectionProvider(settings.mongo))
        >>> store.save({"_data": "8263A1F2"}, "worker-1")
        True
        >>> store.load()
        {'_data': '8263A1F2'}
    """

    def __init__(
        self,
        connection_provider: ConnectionProvider,
        backend: Optional[CheckpointBackend] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        token_id: str = DEFAULT_TOKEN_ID,
        token_field: str = DEFAULT_TOKEN_FIELD,
        staleness_threshold: timedelta = DEFAULT_STALENESS,
        instance_id: str = UNKNOWN_INSTANCE,
    ):
        """
        Initialize checkpoint store.

        Args:
            connection_provider: Source of storage handles
            backend: Collection/table binding (default: Mongo ``_sync_metadata``)
            retry_policy: Attempt budget and backoff schedule
            clock: Time source for ``saved_at`` and staleness
            logger: Logger receiving all diagnostics
            sleep: Backoff sleep (default: interruptible wait on ``cancel_event``)
            cancel_event: Event that aborts in-flight and future operations
            token_id: Fixed key of the singleton record
            token_field: Resume token payload field checked by ``validate``
            staleness_threshold: Age after which a loaded token is reported
            instance_id: Owner recorded when `save` is called without one
        """
        self.connection_provider = connection_provider
        self.backend = backend or MongoCheckpointBackend()
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock or SystemClock()
        self.logger = logger or logging.getLogger(__name__)
        self.cancel_event = cancel_event or threading.Event()
        self.sleep = sleep or self.cancel_event.wait
        self.token_id = token_id
        self.token_field = token_field
        self.staleness_threshold = staleness_threshold
        self.instance_id = instance_id
        self._last_result: Optional[OperationResult] = None

    @classmethod
    def from_settings(
        cls,
        settings=None,
        connection_provider: Optional[ConnectionProvider] = None,
        **kwargs
    ) -> "CheckpointStore":
        """
        Build a store from application settings.

        Args:
            settings: ``Settings`` instance; loaded from the environment when omitted
            connection_provider: Overrides the provider derived from ``checkpoint.backend``
            **kwargs: Passed through to the constructor (clock, logger, sleep, ...)
        """
        if settings is None:
            from config.settings import get_settings
            settings = get_settings()
        checkpoint = settings.checkpoint

        if checkpoint.backend == "sql":
            backend = SqlCheckpointBackend()
            if connection_provider is None:
                from src.postgres.connection import SqlConnectionProvider
                connection_provider = SqlConnectionProvider(settings.database)
        else:
            backend = MongoCheckpointBackend(checkpoint.collection_name)
            if connection_provider is None:
                from src.mongodb.connection import MongoConnectionProvider
                connection_provider = MongoConnectionProvider(settings.mongo)

        kwargs.setdefault("instance_id", checkpoint.instance_id)
        store = cls(
            connection_provider,
            backend=backend,
            retry_policy=RetryPolicy.from_settings(checkpoint),
            token_id=checkpoint.token_id,
            token_field=checkpoint.token_field,
            staleness_threshold=timedelta(days=checkpoint.staleness_days),
            **kwargs
        )
        store.logger.info(
            f"Checkpoint store configured with {checkpoint.backend} backend",
            extra={
                "instance_id": store.instance_id,
                "max_attempts": store.retry_policy.max_attempts,
                "max_backoff_seconds": store.retry_policy.max_total_delay,
            }
        )
        return store

    @property
    def last_result(self) -> Optional[OperationResult]:
        """Outcome of the most recent save/load/clear/handle_invalid_token call."""
        return self._last_result

    def cancel(self) -> None:
        """Abort the current retry loop and make further operations fail fast."""
        self.logger.info("Checkpoint store cancelled")
        self.cancel_event.set()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def save(self, resume_token: Optional[Dict[str, Any]], instance_id: Optional[str] = None) -> bool:
        """
        Save resume token (upsert).

        Overwrites any previous checkpoint unconditionally.

        Args:
            resume_token: Change stream resume token
            instance_id: Consumer instance writing the token (default: the store's)

        Returns:
            True if the token was persisted
        """
        if resume_token is None:
            self.logger.warning("Cannot save null resume token")
            self._record(OperationResult("save", False, error_kind=ErrorKind.VALIDATION_ERROR, error="token is None"))
            return False

        if not self.validate(resume_token):
            reason = describe_invalid_token(resume_token, self.token_field)
            self.logger.error(
                f"Resume token validation failed, not saving: {reason}",
                extra={"token_id": self.token_id}
            )
            self._record(OperationResult("save", False, error_kind=ErrorKind.VALIDATION_ERROR, error=reason))
            return False

        token = dict(resume_token)
        owner_id = instance_id or self.instance_id

        def write(collection, attempt: int) -> bool:
            collection.upsert(CheckpointRecord(
                key=self.token_id,
                resume_token=token,
                saved_at=self.clock.now(),
                owner_id=owner_id,
                save_attempt=attempt,
            ))
            return True

        result = self._record(self._run("save", write))
        if result.ok:
            self.logger.debug(
                "Resume token saved",
                extra={"token_id": self.token_id, "instance_id": owner_id, "attempt": result.attempts}
            )
        return result.ok

    def load(self) -> Optional[Dict[str, Any]]:
        """
        Load resume token.

        A structurally invalid stored token is cleared and never returned. A stale
        token is reported but still returned; the change stream decides whether it
        can resume from it.

        Returns:
            Resume token if a valid one exists, None otherwise
        """
        result = self._run("load", lambda collection, attempt: collection.find(self.token_id))
        if not result.ok:
            self._record(result)
            return None

        record: Optional[CheckpointRecord] = result.value
        if record is None or record.resume_token is None:
            self.logger.debug("No resume token found", extra={"token_id": self.token_id})
            self._record(OperationResult("load", True, None, attempts=result.attempts))
            return None

        if not self.validate(record.resume_token):
            reason = describe_invalid_token(record.resume_token, self.token_field)
            self.logger.warning(
                f"Stored resume token is invalid, clearing it: {reason}",
                extra={"token_id": self.token_id, "instance_id": record.owner_id}
            )
            try:
                if not self.clear():
                    self.logger.error("Failed to clear invalid resume token")
            except Exception as e:
                self.logger.error(f"Error clearing invalid resume token: {e}", exc_info=True)
            self._record(OperationResult(
                "load", False, None, ErrorKind.VALIDATION_ERROR, result.attempts, reason
            ))
            return None

        if record.saved_at is not None:
            age = self.clock.now() - record.saved_at
            checkpoint_age_seconds.set(max(age.total_seconds(), 0.0))
            if age > self.staleness_threshold:
                self.logger.warning(
                    f"Resume token is {age.days} days old, might be expired",
                    extra={"token_id": self.token_id, "age_seconds": age.total_seconds()}
                )
            self.logger.debug(
                "Resume token loaded",
                extra={
                    "token_id": self.token_id,
                    "saved_at": record.saved_at.isoformat(),
                    "instance_id": record.owner_id,
                    "age_seconds": int(age.total_seconds()),
                }
            )

        token = dict(record.resume_token)
        self._record(OperationResult("load", True, token, attempts=result.attempts))
        return token

    def validate(self, resume_token: Any) -> bool:
        """Check resume token structure. Pure; never raises."""
        return validate_resume_token(resume_token, self.token_field)

    def clear(self) -> bool:
        """
        Delete the resume token. Idempotent: clearing an absent token succeeds.

        Returns:
            True if no token remains stored
        """
        result = self._record(
            self._run("clear", lambda collection, attempt: collection.delete(self.token_id))
        )
        if not result.ok:
            return False

        if result.value:
            self.logger.info("Resume token cleared", extra={"token_id": self.token_id})
        else:
            self.logger.info("No resume token found to clear", extra={"token_id": self.token_id})
        return True

    def get_metadata(self) -> Optional[CheckpointMetadata]:
        """
        Describe the stored checkpoint without exposing the token.

        Single attempt, no retry.

        Returns:
            Metadata, or None if the store is unreachable or empty
        """
        try:
            record = self._bind().find(self.token_id)
        except Exception as e:
            self.logger.error(f"Error getting resume token metadata: {e}", exc_info=True)
            return None

        if record is None:
            return None

        return CheckpointMetadata(
            exists=True,
            timestamp=record.saved_at,
            instance_id=record.owner_id,
            is_valid=self.validate(record.resume_token),
        )

    def exists(self) -> bool:
        """Check whether a checkpoint record is stored."""
        try:
            metadata = self.get_metadata()
            return metadata is not None and metadata.exists
        except Exception as e:
            self.logger.error(f"Error checking resume token existence: {e}", exc_info=True)
            return False

    def handle_invalid_token(self, reason: str = "Resume token invalid or expired") -> bool:
        """
        Discard a token the change stream rejected, forcing a full resync.

        ``clear`` is itself retried here: a failed clear counts as a transient
        failure of this operation.

        Args:
            reason: Why the token was rejected (logged)

        Returns:
            True if the token was cleared
        """
        self.logger.warning(f"{reason}, clearing resume token", extra={"token_id": self.token_id})
        attempts = 0

        def clear_once() -> bool:
            nonlocal attempts
            if self.cancel_event.is_set():
                raise CheckpointCancelled("Checkpoint store cancelled")
            attempts += 1
            if not self.clear():
                raise StorageError(f"clear failed: {self._last_result.error}")
            return True

        retrying = self.retry_policy.retrying(
            sleep=self.sleep,
            cancel_event=self.cancel_event,
            before_sleep=self._log_retry("handle_invalid_token"),
        )
        try:
            retrying(clear_once)
        except Exception as e:
            kind = ErrorKind.CANCELLED if self.cancel_event.is_set() else ErrorKind.from_exception(e)
            self.logger.error(f"Failed to clear invalid resume token: {e}", extra={"token_id": self.token_id})
            checkpoint_operations_total.labels(operation="handle_invalid_token", status="error").inc()
            self._record(OperationResult("handle_invalid_token", False, None, kind, attempts, str(e)))
            return False

        self.logger.info("Invalid resume token cleared, full resync will follow")
        checkpoint_operations_total.labels(operation="handle_invalid_token", status="success").inc()
        self._record(OperationResult("handle_invalid_token", True, True, attempts=attempts))
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _bind(self):
        """Obtain a handle and bind the checkpoint collection to it."""
        handle = self.connection_provider.get_local_connection()
        if handle is None:
            raise ConnectionUnavailable("Local connection not available")
        try:
            return self.backend.bind(handle)
        except AccessError:
            raise
        except Exception as e:
            raise AccessError(f"Error accessing checkpoint collection: {e}") from e

    def _run(self, operation: str, action: Callable[[Any, int], Any]) -> OperationResult:
        """Run ``action(collection, attempt)`` under the retry policy."""
        attempts = 0

        def attempt():
            nonlocal attempts
            if self.cancel_event.is_set():
                raise CheckpointCancelled("Checkpoint store cancelled")
            attempts += 1
            collection = self._bind()
            try:
                return action(collection, attempts)
            except (TransientCheckpointError, ValidationError):
                raise
            except Exception as e:
                raise StorageError(f"Unexpected error during {operation}: {e}") from e

        retrying = self.retry_policy.retrying(
            sleep=self.sleep,
            cancel_event=self.cancel_event,
            before_sleep=self._log_retry(operation),
        )
        try:
            value = retrying(attempt)
        except Exception as e:
            kind = ErrorKind.CANCELLED if self.cancel_event.is_set() else ErrorKind.from_exception(e)
            if kind is ErrorKind.CANCELLED:
                self.logger.warning(
                    f"Checkpoint {operation} cancelled after {attempts} attempt(s)",
                    extra={"token_id": self.token_id}
                )
            else:
                self.logger.error(
                    f"Max retries reached, checkpoint {operation} failed: {e}",
                    exc_info=e,
                    extra={"token_id": self.token_id, "attempts": attempts}
                )
            checkpoint_operations_total.labels(operation=operation, status="error").inc()
            return OperationResult(operation, False, None, kind, attempts, str(e))

        checkpoint_operations_total.labels(operation=operation, status="success").inc()
        return OperationResult(operation, True, value, attempts=attempts)

    def _log_retry(self, operation: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            kind = ErrorKind.from_exception(error)
            checkpoint_retries_total.labels(operation=operation, error_kind=kind.value).inc()
            self.logger.warning(
                f"Checkpoint {operation} failed ({error}), retrying in "
                f"{retry_state.next_action.sleep}s "
                f"(attempt {retry_state.attempt_number}/{self.retry_policy.max_attempts})",
                extra={
                    "token_id": self.token_id,
                    "attempt": retry_state.attempt_number,
                    "error_type": kind.value,
                }
            )
        return before_sleep

    def _record(self, result: OperationResult) -> OperationResult:
        self._last_result = result
        return result
