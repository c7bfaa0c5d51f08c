"""
Document processor: the high-level entry point.

Wraps the stream manager so applications only implement insert/update/delete
handlers that receive the changed document as JSON bytes and can decode it
into their own types.
"""

import logging
from typing import Optional, Protocol

from pymongo.database import Database

from .cancel import CancelScope
from .change_feed import ChangeFeedSource, PreImageMode
from .checkpoint_store import CheckpointStore, MongoCheckpointStore, SQLCheckpointStore
from .errors import SerializationError
from .events import ChangeEvent, OperationType, WatchStatus
from .manager import StreamManager
from .supervisor import BackoffPolicy, RetrySupervisor
from .watcher import ChangeStreamWatcher
from ...core.utils.bson_convert import to_json_bytes
from ...mongodb.connection import get_collection

logger = logging.getLogger(__name__)

# default suffix of the collection holding resume points
RESUME_SUFFIX = "_resume_points"


class CollectionWatcher(Protocol):
    """Application handlers for document changes."""

    def insert(self, ctx: CancelScope, payload: bytes) -> None:
        ...

    def update(self, ctx: CancelScope, payload: bytes) -> None:
        ...

    def delete(self, ctx: CancelScope, payload: bytes) -> None:
        ...


def select_document(event: ChangeEvent) -> Optional[dict]:
    """
    Document view handed to handlers.

    Deletes prefer the pre-image and fall back to the post-image, which most
    sources leave empty on delete. Everything else uses the post-image.
    """
    if event.operation_type == OperationType.DELETE and event.full_document_before_change is not None:
        return event.full_document_before_change
    return event.full_document


def document_stage(actions: CollectionWatcher):
    """Build the dispatch stage routing events to ``actions`` by operation type."""

    def dispatch_document(ctx: CancelScope, event: ChangeEvent, _error: Optional[Exception]) -> None:
        # single stage, so there is never a previous error to act on
        logger.debug(
            f"Processing event {event.timestamp.time}: {event.operation_type.value}",
            extra={"token": event.id, "document_key": event.document_key}
        )
        if event.is_invalidate:
            return

        try:
            payload = to_json_bytes(select_document(event))
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Failed to marshal event stream document: {e}") from e

        if event.operation_type == OperationType.INSERT:
            actions.insert(ctx, payload)
        elif event.operation_type == OperationType.UPDATE:
            actions.update(ctx, payload)
        elif event.operation_type == OperationType.DELETE:
            actions.delete(ctx, payload)

    return dispatch_document


class DocumentProcessor:
    """
    Watches one collection and feeds its document changes to a CollectionWatcher.

    Two processors may watch the same collection as long as they use
    different resume suffixes (or watch ids) and separate handlers.

    Example:
        >>> processor = DocumentProcessor.from_databases(target_db, "orders", local_db)
        >>> processor.start_with_retry(OrdersWatcher())
    """

    def __init__(self, manager: StreamManager, policy: Optional[BackoffPolicy] = None):
        self.manager = manager
        self.supervisor = RetrySupervisor(manager, policy)

    @classmethod
    def from_databases(
        cls,
        target_db: Database,
        collection: str,
        local_db: Database,
        resume_suffix: str = RESUME_SUFFIX,
        pre_image_mode: PreImageMode = PreImageMode.OFF,
        full_document: str = "updateLookup",
        max_await_time_ms: int = 1000,
        batch_size: Optional[int] = None,
        policy: Optional[BackoffPolicy] = None,
        store: Optional[CheckpointStore] = None,
    ) -> "DocumentProcessor":
        """Wire source, resume repository and manager for ``collection``."""
        if store is None:
            store = MongoCheckpointStore(get_collection(local_db, collection + resume_suffix))
        source = ChangeFeedSource(
            get_collection(target_db, collection),
            full_document=full_document,
            pre_image_mode=pre_image_mode,
            max_await_time_ms=max_await_time_ms,
            batch_size=batch_size,
        )
        manager = StreamManager(store, ChangeStreamWatcher(source, store))
        return cls(manager, policy)

    @classmethod
    def from_settings(cls, settings, target_db: Database, local_db: Database) -> "DocumentProcessor":
        """Build a processor from ``mongowatch.config.Settings``."""
        watch = settings.watch
        store: Optional[CheckpointStore] = None
        if settings.checkpoint.backend == "sql":
            store = SQLCheckpointStore(settings.checkpoint.database_url, watch.effective_watch_id)
        return cls.from_databases(
            target_db,
            watch.collection,
            local_db,
            resume_suffix=watch.resume_suffix,
            pre_image_mode=watch.pre_image_mode,
            full_document=watch.full_document,
            max_await_time_ms=watch.max_await_time_ms,
            batch_size=watch.batch_size,
            policy=settings.backoff.to_policy(),
            store=store,
        )

    def start(self, actions: CollectionWatcher) -> WatchStatus:
        """Run a single watch from the last checkpoint (blocking)."""
        return self.manager.watch(None, document_stage(actions))

    def start_with_retry(self, actions: CollectionWatcher) -> WatchStatus:
        """Run the watch under the retry supervisor until stopped (blocking)."""
        return self.supervisor.run(document_stage(actions))

    def stop(self) -> None:
        """Stop the watch started by start() or start_with_retry()."""
        self.supervisor.stop()
        if self.manager.active:
            self.manager.stop()
