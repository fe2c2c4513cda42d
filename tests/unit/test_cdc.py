"""Unit tests for the change stream watcher."""

import pytest
from unittest.mock import Mock, patch, call

from pymongo.errors import ConnectionFailure, OperationFailure

from src.connectors.cdc.checkpoint_store import CheckpointStore
from src.connectors.cdc.errors import CDCError
from src.connectors.cdc.mongo_changestream import ChangeStreamWatcher, CDCConfig


def change(n, operation="insert"):
    return {"_id": {"_data": f"T{n}"}, "operationType": operation, "fullDocument": {"_id": n}}


class FakeChangeStream:
    """Context-managed iterable mimicking pymongo's ChangeStream."""

    def __init__(self, changes, error=None):
        self.changes = changes
        self.error = error
        self.resume_token = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def __iter__(self):
        for item in self.changes:
            self.resume_token = item["_id"]
            yield item
        if self.error is not None:
            raise self.error


class TestCDCConfig:
    """Test CDCConfig."""

    def test_valid_config(self):
        config = CDCConfig(batch_size=100, batch_interval=5)
        assert config.batch_size == 100
        assert config.batch_interval == 5

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError, match="batch_size must be positive"):
            CDCConfig(batch_size=0)

    def test_invalid_batch_interval(self):
        with pytest.raises(ValueError, match="batch_interval must be positive"):
            CDCConfig(batch_interval=0)

    def test_invalid_max_retries(self):
        with pytest.raises(ValueError, match="max_retries must be non-negative"):
            CDCConfig(max_retries=-1)

    def test_invalid_backoff_base(self):
        with pytest.raises(ValueError, match="retry_backoff_base must be positive"):
            CDCConfig(retry_backoff_base=0)


class TestChangeStreamWatcher:
    """Test ChangeStreamWatcher against a mocked collection and checkpoint store."""

    @pytest.fixture
    def mock_collection(self):
        collection = Mock()
        collection.name = "bills"
        return collection

    @pytest.fixture
    def mock_checkpoint_store(self):
        store = Mock(spec=CheckpointStore)
        store.load.return_value = None
        store.save.return_value = True
        store.handle_invalid_token.return_value = True
        return store

    @pytest.fixture
    def on_full_resync(self):
        return Mock()

    @pytest.fixture
    def make_watcher(self, mock_collection, mock_checkpoint_store, on_full_resync):
        def _make(**config):
            config.setdefault("batch_size", 2)
            return ChangeStreamWatcher(
                collection=mock_collection,
                checkpoint_store=mock_checkpoint_store,
                config=CDCConfig(**config),
                instance_id="worker-1",
                on_full_resync=on_full_resync
            )
        return _make

    def test_init_validates_collection(self, mock_checkpoint_store):
        with pytest.raises(TypeError, match="collection must be a PyMongo Collection"):
            ChangeStreamWatcher(
                collection="not_a_collection",
                checkpoint_store=mock_checkpoint_store,
                config=CDCConfig(),
                instance_id="worker-1"
            )

    def test_init_validates_checkpoint_store(self, mock_collection):
        with pytest.raises(TypeError, match="checkpoint_store must be a CheckpointStore"):
            ChangeStreamWatcher(
                collection=mock_collection,
                checkpoint_store="not_a_store",
                config=CDCConfig(),
                instance_id="worker-1"
            )

    def test_resumes_from_stored_token(
        self, make_watcher, mock_collection, mock_checkpoint_store, on_full_resync
    ):
        """The stored token is loaded once and passed as the resume point."""
        token = {"_data": "T0"}
        mock_checkpoint_store.load.return_value = token
        mock_collection.watch.return_value = FakeChangeStream([])

        make_watcher().start(callback=Mock())

        mock_checkpoint_store.load.assert_called_once_with()
        assert mock_collection.watch.call_args.kwargs["resume_after"] == token
        on_full_resync.assert_not_called()

    def test_full_resync_without_token(
        self, make_watcher, mock_collection, on_full_resync
    ):
        mock_collection.watch.return_value = FakeChangeStream([])

        watcher = make_watcher()
        watcher.start(callback=Mock())

        on_full_resync.assert_called_once_with()
        assert watcher.full_resyncs == 1
        assert "resume_after" not in mock_collection.watch.call_args.kwargs

    def test_token_saved_after_batch_applied(
        self, make_watcher, mock_collection, mock_checkpoint_store
    ):
        """Each batch is applied before its resume point is persisted."""
        events = []
        callback = Mock(side_effect=lambda batch: events.append(("apply", [c["_id"]["_data"] for c in batch])))
        mock_checkpoint_store.save.side_effect = lambda token, instance_id: events.append(("save", token["_data"])) or True
        mock_collection.watch.return_value = FakeChangeStream([change(1), change(2), change(3)])

        make_watcher(batch_size=2).start(callback=callback)

        assert events == [
            ("apply", ["T1", "T2"]),
            ("save", "T2"),
            ("apply", ["T3"]),
            ("save", "T3"),
        ]

    def test_save_uses_instance_id(self, make_watcher, mock_collection, mock_checkpoint_store):
        mock_collection.watch.return_value = FakeChangeStream([change(1)])

        make_watcher(batch_size=1).start(callback=Mock())

        mock_checkpoint_store.save.assert_called_once_with({"_data": "T1"}, "worker-1")

    def test_failed_save_does_not_stop_processing(
        self, make_watcher, mock_collection, mock_checkpoint_store
    ):
        mock_checkpoint_store.save.return_value = False
        mock_collection.watch.return_value = FakeChangeStream([change(1), change(2)])
        callback = Mock()

        watcher = make_watcher(batch_size=1)
        watcher.start(callback=callback)

        assert callback.call_count == 2
        assert watcher.records_processed == 2

    def test_callback_error_raises_without_saving(
        self, make_watcher, mock_collection, mock_checkpoint_store
    ):
        mock_collection.watch.return_value = FakeChangeStream([change(1)])
        callback = Mock(side_effect=ValueError("apply failed"))

        with pytest.raises(CDCError, match="apply failed"):
            make_watcher(batch_size=1).start(callback=callback)

        mock_checkpoint_store.save.assert_not_called()

    def test_rejected_token_triggers_invalidation_and_resync(
        self, make_watcher, mock_collection, mock_checkpoint_store, on_full_resync
    ):
        """A history-lost failure clears the token and reopens the stream from scratch."""
        mock_checkpoint_store.load.return_value = {"_data": "T0"}
        mock_collection.watch.side_effect = [
            FakeChangeStream([], error=OperationFailure("history lost", code=286)),
            FakeChangeStream([]),
        ]

        watcher = make_watcher()
        watcher.start(callback=Mock())

        mock_checkpoint_store.handle_invalid_token.assert_called_once()
        assert "code 286" in mock_checkpoint_store.handle_invalid_token.call_args.args[0]
        on_full_resync.assert_called_once_with()
        assert mock_collection.watch.call_count == 2
        assert mock_collection.watch.call_args_list[0].kwargs["resume_after"] == {"_data": "T0"}
        assert "resume_after" not in mock_collection.watch.call_args_list[1].kwargs
        mock_checkpoint_store.load.assert_called_once_with()

    def test_other_operation_failure_is_fatal(
        self, make_watcher, mock_collection, mock_checkpoint_store
    ):
        mock_collection.watch.side_effect = OperationFailure("unauthorized", code=13)

        with pytest.raises(CDCError, match="Non-retryable"):
            make_watcher().start(callback=Mock())

        mock_checkpoint_store.handle_invalid_token.assert_not_called()

    @patch("time.sleep")
    def test_connection_failure_backoff(
        self, mock_sleep, make_watcher, mock_collection, mock_checkpoint_store
    ):
        """Connection failures back off exponentially without reloading the token."""
        mock_collection.watch.side_effect = [
            ConnectionFailure("down"),
            ConnectionFailure("down"),
            FakeChangeStream([]),
        ]

        make_watcher().start(callback=Mock())

        assert mock_sleep.call_args_list == [call(2), call(4)]
        mock_checkpoint_store.load.assert_called_once_with()

    @patch("time.sleep")
    def test_connection_failure_max_retries(self, mock_sleep, make_watcher, mock_collection):
        mock_collection.watch.side_effect = ConnectionFailure("down")

        with pytest.raises(CDCError, match="Max retries exceeded"):
            make_watcher(max_retries=1).start(callback=Mock())

        assert mock_sleep.call_count == 1

    @patch("time.sleep")
    def test_reconnect_resumes_from_committed_token(
        self, mock_sleep, make_watcher, mock_collection, mock_checkpoint_store
    ):
        """Unflushed changes are dropped on reconnect and redelivered after the saved token."""
        mock_collection.watch.side_effect = [
            FakeChangeStream([change(1), change(2), change(3)], error=ConnectionFailure("reset")),
            FakeChangeStream([]),
        ]
        callback = Mock()

        make_watcher(batch_size=2).start(callback=callback)

        assert callback.call_count == 1
        mock_checkpoint_store.save.assert_called_once_with({"_data": "T2"}, "worker-1")
        assert mock_collection.watch.call_args_list[1].kwargs["resume_after"] == {"_data": "T2"}

    def test_stop_flushes_and_exits(self, make_watcher, mock_collection, mock_checkpoint_store):
        mock_collection.watch.return_value = FakeChangeStream([change(1), change(2), change(3)])
        watcher = make_watcher(batch_size=1)
        callback = Mock(side_effect=lambda batch: watcher.stop())

        watcher.start(callback=callback)

        assert callback.call_count == 1
        mock_checkpoint_store.save.assert_called_once_with({"_data": "T1"}, "worker-1")
        assert watcher.running is False
