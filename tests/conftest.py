"""Shared fixtures for the change stream consumer tests."""

import pytest

from mongowatch.connectors.cdc.change_feed import ChangeFeedSource
from mongowatch.connectors.cdc.manager import StreamManager
from mongowatch.connectors.cdc.watcher import ChangeStreamWatcher

from fakes import FakeCollection, MemoryCheckpointStore


@pytest.fixture
def collection() -> FakeCollection:
    return FakeCollection()


@pytest.fixture
def store() -> MemoryCheckpointStore:
    return MemoryCheckpointStore()


@pytest.fixture
def source(collection) -> ChangeFeedSource:
    return ChangeFeedSource(collection, max_await_time_ms=10)


@pytest.fixture
def watcher(source, store) -> ChangeStreamWatcher:
    return ChangeStreamWatcher(source, store)


@pytest.fixture
def manager(store, watcher) -> StreamManager:
    return StreamManager(store, watcher)
