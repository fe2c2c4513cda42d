"""Shared fixtures for checkpoint store and change stream tests."""

import os
import sys

import mongomock
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from src.connectors.cdc.backends import MongoCheckpointBackend
from src.connectors.cdc.checkpoint_store import CheckpointStore
from src.connectors.cdc.retry import RetryPolicy
from tests.support import FlakyProvider, ManualClock, RecordingSleeper


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def sleeper():
    return RecordingSleeper()


@pytest.fixture
def mongo_db():
    """In-process MongoDB database."""
    client = mongomock.MongoClient()
    yield client["cafe"]
    client.close()


@pytest.fixture
def provider(mongo_db):
    return FlakyProvider(mongo_db)


@pytest.fixture
def make_store(clock, sleeper):
    """Factory building a Mongo-backed store with deterministic time."""
    def _make(provider, **kwargs):
        kwargs.setdefault("backend", MongoCheckpointBackend("_sync_metadata"))
        kwargs.setdefault("retry_policy", RetryPolicy())
        return CheckpointStore(provider, clock=clock, sleep=sleeper, **kwargs)
    return _make


@pytest.fixture
def store(make_store, provider):
    return make_store(provider)
