"""Unit tests for DocumentProcessor, including the end-to-end scenarios on fakes."""

import threading
import time
from unittest.mock import ANY, MagicMock, Mock, patch

import pytest
from bson import ObjectId

from mongowatch.config.settings import CheckpointSettings, Settings, WatchSettings
from mongowatch.connectors.cdc.cancel import CancelScope
from mongowatch.connectors.cdc.change_feed import PreImageMode
from mongowatch.connectors.cdc.checkpoint_store import MongoCheckpointStore, SQLCheckpointStore
from mongowatch.connectors.cdc.errors import DispatchError, SerializationError
from mongowatch.connectors.cdc.events import WatchStatus
from mongowatch.connectors.cdc.processor import DocumentProcessor, document_stage, select_document
from mongowatch.connectors.cdc.supervisor import BackoffPolicy

from fakes import RecordingCollectionWatcher, make_change, make_event, make_token

FAST = BackoffPolicy(initial_interval=0.001, multiplier=1.0, max_interval=0.001)


def inserts(start, stop):
    return [make_change(i) for i in range(start, stop)]


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met in time")


def run_in_thread(processor, actions):
    result = {}
    thread = threading.Thread(target=lambda: result.update(status=processor.start_with_retry(actions)))
    thread.start()
    return thread, result


class TestDocumentStage:
    """Test routing of events to the collaborator."""

    @pytest.fixture
    def actions(self):
        return RecordingCollectionWatcher()

    def test_insert(self, actions):
        document_stage(actions)(CancelScope(), make_event(1), None)

        assert actions.calls == [("insert", {"_id": 1, "n": 1})]

    def test_update(self, actions):
        document_stage(actions)(CancelScope(), make_event(2, "update", doc={"_id": 2, "n": 9}), None)

        assert actions.calls == [("update", {"_id": 2, "n": 9})]

    def test_delete_prefers_pre_image(self, actions):
        event = make_event(3, "delete", pre={"_id": 3, "n": 3})

        document_stage(actions)(CancelScope(), event, None)

        assert actions.calls == [("delete", {"_id": 3, "n": 3})]

    def test_delete_falls_back_to_post_image(self, actions):
        """Without a pre-image the delete payload is the (usually empty) post-image."""
        document_stage(actions)(CancelScope(), make_event(3, "delete"), None)

        assert actions.calls == [("delete", None)]

    def test_invalidate_reaches_no_handler(self, actions):
        document_stage(actions)(CancelScope(), make_event(4, "invalidate"), None)

        assert actions.calls == []

    def test_bson_values_are_converted(self, actions):
        oid = ObjectId()

        document_stage(actions)(CancelScope(), make_event(1, doc={"_id": oid}), None)

        assert actions.calls == [("insert", {"_id": str(oid)})]

    def test_unserializable_document(self, actions):
        with pytest.raises(SerializationError):
            document_stage(actions)(CancelScope(), make_event(1, doc={"_id": 1, "x": object()}), None)

        assert actions.calls == []

    def test_handler_receives_scope(self):
        actions = Mock()
        scope = CancelScope()

        document_stage(actions)(scope, make_event(1), None)

        actions.insert.assert_called_once_with(scope, b'{"_id": 1, "n": 1}')

    def test_select_document_for_update_ignores_pre_image(self):
        event = make_event(2, "update", doc={"_id": 2, "n": 2}, pre={"_id": 2, "n": 1})

        assert select_document(event) == {"_id": 2, "n": 2}


class TestScenarios:
    """Collection-level scenarios run against the in-memory change log."""

    @pytest.fixture
    def processor(self, manager):
        return DocumentProcessor(manager, FAST)

    def test_scenario_a_cold_start(self, processor, collection, store):
        """Five inserts, no prior checkpoint: five insert calls and one checkpoint."""
        collection.write_after_open(*inserts(0, 5))
        actions = RecordingCollectionWatcher(stop_after=5)

        status = processor.start(actions)

        assert status == WatchStatus.STOPPED
        assert [op for op, _ in actions.calls] == ["insert"] * 5
        assert [doc["_id"] for _, doc in actions.calls] == [0, 1, 2, 3, 4]
        assert store.count() == 1
        assert store.get_last().id == make_token(4)

    def test_scenario_b_restart(self, processor, collection, store):
        """After a stop, delivery resumes exactly at the 6th document."""
        collection.write_after_open(*inserts(0, 5))
        processor.start(RecordingCollectionWatcher(stop_after=5))

        collection.append(*inserts(5, 10))
        actions = RecordingCollectionWatcher(stop_after=5)
        processor.start(actions)

        assert [doc["_id"] for _, doc in actions.calls] == [5, 6, 7, 8, 9]
        assert store.count() == 1
        assert store.get_last().id == make_token(9)

    def test_scenario_c_handler_error(self, processor, collection, store):
        """A failure on the 3rd document ends the watch, checkpoint at the 3rd."""
        collection.write_after_open(*inserts(0, 5))
        actions = RecordingCollectionWatcher(fail_at=3)

        with pytest.raises(DispatchError) as exc_info:
            processor.start(actions)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert len(actions.calls) == 3
        assert store.count() == 1
        assert store.get_last().id == make_token(2)

    def test_scenario_d_invalidate(self, processor, manager, collection, store):
        """The supervisor restarts after an invalidate, delivering the next event first."""
        collection.write_after_open(
            make_change(0),
            make_change(1, "invalidate"),
            make_change(2),
        )
        actions = RecordingCollectionWatcher(stop_after=2)

        with patch.object(manager, "stop", wraps=manager.stop) as stop:
            status = processor.start_with_retry(actions)

        assert status == WatchStatus.STOPPED
        stop.assert_called_once()
        assert [doc["_id"] for _, doc in actions.calls] == [0, 2]
        assert collection.watch_calls[1]["start_after"] == make_token(1)
        assert store.get_last().id == make_token(2)

    def test_start_with_retry_redelivers_after_failure(self, processor, collection):
        """A handler failure is retried and the failed document delivered again."""
        collection.write_after_open(*inserts(0, 3))
        actions = RecordingCollectionWatcher(fail_at=2, stop_after=4)

        status = processor.start_with_retry(actions)

        assert status == WatchStatus.STOPPED
        assert [doc["_id"] for _, doc in actions.calls] == [0, 1, 1, 2]

    def test_start_with_retry_after_stop(self, processor, collection, store):
        """The same processor resumes at the 6th document after stop()."""
        collection.write_after_open(*inserts(0, 5))
        actions = RecordingCollectionWatcher()
        thread, result = run_in_thread(processor, actions)
        wait_until(lambda: len(actions.calls) == 5)
        processor.stop()
        thread.join(timeout=5)
        assert result["status"] == WatchStatus.STOPPED

        collection.append(*inserts(5, 10))
        actions = RecordingCollectionWatcher()
        thread, result = run_in_thread(processor, actions)
        wait_until(lambda: len(actions.calls) == 5)
        processor.stop()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert result["status"] == WatchStatus.STOPPED
        assert [doc["_id"] for _, doc in actions.calls] == [5, 6, 7, 8, 9]
        assert store.count() == 1
        assert store.get_last().id == make_token(9)


class TestWiring:
    """Test construction from databases and settings."""

    def test_from_databases(self):
        target_db = MagicMock()
        local_db = MagicMock()

        processor = DocumentProcessor.from_databases(
            target_db, "orders", local_db, pre_image_mode=PreImageMode.REQUIRED
        )

        local_db.get_collection.assert_called_once_with("orders_resume_points", write_concern=ANY)
        target_db.get_collection.assert_called_once_with("orders", write_concern=ANY)
        watcher = processor.manager.watcher
        assert isinstance(processor.manager.store, MongoCheckpointStore)
        assert watcher.store is processor.manager.store
        assert watcher.source.collection is target_db.get_collection.return_value
        assert watcher.source.pre_image_mode == PreImageMode.REQUIRED

    def test_custom_resume_suffix(self):
        """Two watches on one collection use distinct resume collections."""
        local_db = MagicMock()

        DocumentProcessor.from_databases(MagicMock(), "orders", local_db, resume_suffix="_audit_resume")

        local_db.get_collection.assert_called_once_with("orders_audit_resume", write_concern=ANY)

    def test_from_settings_sql_backend(self):
        settings = Settings(
            watch=WatchSettings(collection="orders", max_await_time_ms=250),
            checkpoint=CheckpointSettings(backend="sql", database_url="sqlite://"),
        )
        local_db = MagicMock()

        processor = DocumentProcessor.from_settings(settings, MagicMock(), local_db)

        store = processor.manager.store
        assert isinstance(store, SQLCheckpointStore)
        assert store.watch_id == "orders_resume_points"
        assert processor.manager.watcher.source.max_await_time_ms == 250
        local_db.get_collection.assert_not_called()
        store.close()

    def test_stop_without_start(self):
        processor = DocumentProcessor.from_databases(MagicMock(), "orders", MagicMock())

        processor.stop()
