"""
MongoDB CDC using changestreams with crash recovery.

Drives the checkpoint store through its consumer lifecycle:
1. Load the resume token once at startup (full resync when there is none)
2. Watch the collection, resuming after the token
3. Buffer changes (configurable size and time thresholds)
4. Hand each batch to the callback, then persist the stream's resume token
5. Invalidate the token and resync when the server rejects it
6. Handle connection failures with exponential backoff
7. Graceful shutdown (flush buffer, save checkpoint)
"""

from pymongo.errors import PyMongoError, OperationFailure, ConnectionFailure, ServerSelectionTimeoutError
from typing import Callable, Optional, Dict, Any, List
from dataclasses import dataclass
import time
import logging
import threading

from prometheus_client import Counter

from src.utils.logging import InstanceContext
from .errors import CDCError

logger = logging.getLogger(__name__)

# Server error codes meaning the resume token can no longer be used
RESUME_TOKEN_REJECTED_CODES = frozenset({
    260,  # InvalidResumeToken
    280,  # ChangeStreamFatalError
    286,  # ChangeStreamHistoryLost
})

cdc_records_processed = Counter(
    'cafesync_cdc_records_total',
    'Total CDC records processed',
    ['collection', 'operation']
)

cdc_errors_total = Counter(
    'cafesync_cdc_errors_total',
    'Total CDC errors',
    ['collection', 'error_type']
)


@dataclass
class CDCConfig:
    """Configuration for CDC watcher."""
    batch_size: int = 100  # Max records before flush
    batch_interval: int = 5  # Max seconds before flush
    max_retries: int = 5
    retry_backoff_base: int = 2  # Exponential backoff: 2^attempt seconds
    max_retry_delay: int = 60  # Max 60 seconds between retries
    pipeline_filter: Optional[List[Dict]] = None  # Changestream pipeline

    def __post_init__(self):
        """Validate configuration values."""
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.batch_interval <= 0:
            raise ValueError("batch_interval must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.retry_backoff_base <= 0:
            raise ValueError("retry_backoff_base must be positive")
        if self.max_retry_delay <= 0:
            raise ValueError("max_retry_delay must be positive")


class ResumeTokenRejected(CDCError):
    """The server refused to resume the change stream from the stored token."""
    pass


class ChangeStreamWatcher:
    """
    Watch MongoDB changestream and process in batches.

    Features:
    - Automatic resume on crashes (via the checkpoint store)
    - Full resync when no usable resume token exists
    - Micro-batching for efficiency (time or size threshold)
    - Exponential backoff on connection failures

    Delivery is at-least-once: the token is saved only after the callback
    returns, so a crash in between replays the batch.

    Thread Safety: NOT thread-safe. Use one instance per collection, and a
    single active instance per checkpoint record.

    Example:
        >>> watcher = ChangeStreamWatcher(
        ...     collection=atlas_db['bills'],
        ...     checkpoint_store=store,
        ...     config=CDCConfig(batch_size=100),
        ...     instance_id="worker-1",
        ...     on_full_resync=copy_all_bills,
        ... )
        >>> watcher.start(callback=apply_to_local)
    """

    def __init__(
        self,
        collection,
        checkpoint_store: 'CheckpointStore',
        config: CDCConfig,
        instance_id: str,
        on_full_resync: Optional[Callable[[], None]] = None
    ):
        """
        Initialize changestream watcher.

        Args:
            collection: PyMongo collection (or database) to watch
            checkpoint_store: Store for resume token persistence
            config: CDC configuration
            instance_id: Identifier written with every checkpoint
            on_full_resync: Called when the watcher must rebuild the replica
                            because no usable resume token exists

        Raises:
            TypeError: If collection or checkpoint store lack the required API
        """
        if not hasattr(collection, 'watch'):
            raise TypeError("collection must be a PyMongo Collection instance")

        if not hasattr(checkpoint_store, 'handle_invalid_token'):
            raise TypeError("checkpoint_store must be a CheckpointStore instance")

        self.collection = collection
        self.checkpoint_store = checkpoint_store
        self.config = config
        self.instance_id = instance_id
        self.on_full_resync = on_full_resync
        self.collection_name = getattr(collection, 'name', str(collection))

        # State management
        self.buffer: List[Dict[str, Any]] = []
        self.last_flush: float = time.time()
        self.running: bool = False
        self.stop_requested: bool = False
        self.current_resume_token: Optional[Dict[str, Any]] = None
        self.pending_resume_token: Optional[Dict[str, Any]] = None
        self.records_processed: int = 0
        self.full_resyncs: int = 0
        self.lock = threading.Lock()

        logger.info(
            f"Initialized ChangeStreamWatcher for collection {self.collection_name}",
            extra={
                "instance_id": self.instance_id,
                "collection": self.collection_name,
                "batch_size": self.config.batch_size,
                "batch_interval": self.config.batch_interval
            }
        )

    def start(self, callback: Callable[[List[Dict]], None]) -> None:
        """
        Start watching changestream (blocking call).

        Args:
            callback: Function called with each batch. Must be idempotent.
                     Signature: callback(batch: List[Dict]) -> None

        Raises:
            CDCError: On unrecoverable errors
        """
        with InstanceContext(self.instance_id):
            self._run(callback)

    def _run(self, callback: Callable[[List[Dict]], None]) -> None:
        self.running = True
        self.stop_requested = False

        # The only load of this run; reconnects resume from the in-memory token
        self.current_resume_token = self.checkpoint_store.load()
        if self.current_resume_token:
            logger.info(
                f"Resuming from checkpoint for collection {self.collection_name}",
                extra={"collection": self.collection_name}
            )
        else:
            self._full_resync("no stored resume token")

        attempt = 0
        while self.running and not self.stop_requested:
            try:
                self._process_changestream(callback)
                # If we exit normally, break
                break

            except ResumeTokenRejected as e:
                self.checkpoint_store.handle_invalid_token(str(e))
                self.current_resume_token = None
                self.pending_resume_token = None
                with self.lock:
                    self.buffer.clear()
                self._full_resync(str(e))
                continue

            except (ConnectionFailure, ServerSelectionTimeoutError) as e:
                attempt += 1
                if attempt > self.config.max_retries:
                    logger.error(
                        "Max retries exceeded for connection errors",
                        extra={"collection": self.collection_name, "attempt": attempt, "error": str(e)}
                    )
                    raise CDCError(f"Max retries exceeded: {e}") from e

                # Unflushed changes are redelivered after the committed token
                self.pending_resume_token = self.current_resume_token
                with self.lock:
                    self.buffer.clear()
                self._handle_error(e, attempt)
                continue

            except PyMongoError as e:
                logger.error(
                    f"Non-retryable MongoDB error: {e}",
                    extra={"collection": self.collection_name, "error": str(e)}
                )
                raise CDCError(f"Non-retryable error: {e}") from e

            except Exception as e:
                logger.error(
                    f"Unexpected error: {e}",
                    extra={"collection": self.collection_name, "error": str(e)},
                    exc_info=True
                )
                raise CDCError(f"Unexpected error: {e}") from e

        # Graceful shutdown
        self._shutdown(callback)

    def _process_changestream(self, callback: Callable[[List[Dict]], None]) -> None:
        """Process changestream events until the stream ends or a stop is requested."""
        stream_options: Dict[str, Any] = {
            "full_document": "updateLookup",
            "batch_size": 100,
            "max_await_time_ms": 1000
        }
        if self.current_resume_token:
            stream_options["resume_after"] = self.current_resume_token

        pipeline = self.config.pipeline_filter or []

        logger.info(
            f"Opening changestream for collection {self.collection_name}",
            extra={
                "collection": self.collection_name,
                "has_resume_token": self.current_resume_token is not None
            }
        )

        try:
            with self.collection.watch(pipeline=pipeline, **stream_options) as stream:
                for change in stream:
                    if self.stop_requested:
                        logger.info(
                            "Stop requested, breaking changestream loop",
                            extra={"collection": self.collection_name}
                        )
                        break

                    # Committed only together with the batch that contains the change
                    self.pending_resume_token = stream.resume_token

                    with self.lock:
                        self.buffer.append(change)
                        if self._should_flush():
                            self._flush_buffer(callback, self.pending_resume_token)
        except OperationFailure as e:
            if e.code in RESUME_TOKEN_REJECTED_CODES:
                raise ResumeTokenRejected(f"Resume point rejected by server (code {e.code}): {e}") from e
            raise

    def _should_flush(self) -> bool:
        if len(self.buffer) >= self.config.batch_size:
            logger.debug(
                f"Buffer size threshold reached: {len(self.buffer)}",
                extra={"collection": self.collection_name}
            )
            return True

        elapsed = time.time() - self.last_flush
        if elapsed >= self.config.batch_interval:
            logger.debug(
                f"Batch interval threshold reached: {elapsed}s",
                extra={"collection": self.collection_name}
            )
            return True

        return False

    def _flush_buffer(
        self,
        callback: Callable[[List[Dict]], None],
        resume_token: Optional[Dict[str, Any]]
    ) -> None:
        """
        Flush current buffer to callback.

        Steps:
        1. Call callback with buffered changes
        2. If success: save checkpoint, clear buffer
        3. If failure: raise exception (the batch stays buffered)
        """
        if not self.buffer:
            return

        batch_start_time = time.time()
        batch = self.buffer.copy()
        batch_size = len(batch)

        try:
            callback(batch)
        except Exception as e:
            logger.error(
                f"Error processing batch: {e}",
                extra={"collection": self.collection_name, "batch_size": batch_size, "error": str(e)}
            )
            cdc_errors_total.labels(
                collection=self.collection_name,
                error_type=type(e).__name__
            ).inc()
            raise

        operation_counts: Dict[str, int] = {}
        for change in batch:
            op_type = change.get('operationType', 'unknown')
            operation_counts[op_type] = operation_counts.get(op_type, 0) + 1
            cdc_records_processed.labels(collection=self.collection_name, operation=op_type).inc()

        # Batch is applied; only now may its resume point be persisted
        if resume_token:
            self.current_resume_token = resume_token
            if not self.checkpoint_store.save(resume_token, self.instance_id):
                logger.error(
                    "Failed to save checkpoint, batch will be replayed after a restart",
                    extra={"collection": self.collection_name}
                )

        self.buffer.clear()
        self.last_flush = time.time()
        self.records_processed += batch_size

        logger.info(
            f"Flushed batch of {batch_size} records",
            extra={
                "collection": self.collection_name,
                "batch_size": batch_size,
                "duration_seconds": time.time() - batch_start_time,
                "operations": operation_counts,
                "total_processed": self.records_processed
            }
        )

    def stop(self) -> None:
        """Request a graceful stop; the buffer is flushed on the way out."""
        logger.info(
            f"Stopping changestream watcher for collection {self.collection_name}",
            extra={"collection": self.collection_name}
        )
        self.stop_requested = True
        self.running = False

    def _full_resync(self, reason: str) -> None:
        self.full_resyncs += 1
        logger.warning(
            f"Full resync required: {reason}",
            extra={"collection": self.collection_name}
        )
        if self.on_full_resync is not None:
            self.on_full_resync()

    def _shutdown(self, callback: Callable[[List[Dict]], None]) -> None:
        """Perform graceful shutdown."""
        logger.info(
            f"Shutting down changestream watcher for collection {self.collection_name}",
            extra={"collection": self.collection_name}
        )

        with self.lock:
            if self.buffer:
                logger.info(
                    f"Flushing {len(self.buffer)} remaining records",
                    extra={"collection": self.collection_name}
                )
                try:
                    self._flush_buffer(callback, self.pending_resume_token)
                except Exception as e:
                    logger.error(
                        f"Error flushing final buffer: {e}",
                        extra={"collection": self.collection_name}
                    )

        self.running = False
        logger.info(
            f"Shutdown complete for collection {self.collection_name}",
            extra={"collection": self.collection_name, "total_processed": self.records_processed}
        )

    def _handle_error(self, error: Exception, attempt: int) -> None:
        """Sleep with capped exponential backoff before reconnecting."""
        delay = min(
            self.config.retry_backoff_base ** attempt,
            self.config.max_retry_delay
        )

        logger.warning(
            f"Error occurred, retrying in {delay}s (attempt {attempt}/{self.config.max_retries})",
            extra={
                "collection": self.collection_name,
                "attempt": attempt,
                "max_retries": self.config.max_retries,
                "delay_seconds": delay,
                "error": str(error),
                "error_type": type(error).__name__
            }
        )

        cdc_errors_total.labels(
            collection=self.collection_name,
            error_type=type(error).__name__
        ).inc()

        time.sleep(delay)
