"""
Change stream watch loop with crash-safe checkpointing.

For every event the loop:
1. Saves the event as the new checkpoint
2. Deletes the previous checkpoint, only once the new one is stored
3. Runs the dispatch pipeline
4. Marks the checkpoint as dispatched

A crash between 1 and 2 leaves two checkpoints; the newest one wins on
restart. A crash before 1 leaves the previous checkpoint, which is then
replayed. A dispatch failure leaves the event's checkpoint undelivered, so
the next attempt hands it to the pipeline again (at-least-once).

When resuming by timestamp the stream replays the checkpointed event first.
It is not stored again, and only dispatched if the previous run did not get
to deliver it.

An invalidate event ends the loop with WatchStatus.INVALIDATED after it has
been checkpointed and dispatched; the next attempt must reopen the stream
after its token.
"""

import logging
from typing import Any, Dict, Optional

from .cancel import CancelScope
from .change_feed import ChangeEventCursor, ChangeFeedSource
from .checkpoint_store import CheckpointStore
from .dispatch import DispatchPipeline
from .events import ChangeEvent, CheckpointRecord, ResumePoint, WatchStatus
from ...monitoring.metrics import cdc_events_dispatched, cdc_last_checkpoint_time

logger = logging.getLogger(__name__)


class ChangeStreamWatcher:
    """
    Runs the watch loop for one collection.

    Thread Safety: NOT thread-safe. One loop at a time per instance; the
    StreamManager enforces this.
    """

    def __init__(self, source: ChangeFeedSource, store: CheckpointStore):
        self.source = source
        self.store = store

    @property
    def collection_name(self) -> str:
        return self.source.collection_name

    def run(
        self,
        scope: CancelScope,
        pipeline: DispatchPipeline,
        resume_point: Optional[ResumePoint] = None,
    ) -> WatchStatus:
        """
        Open the change stream and process events until cancelled or invalidated.

        Returns:
            WatchStatus.STOPPED when the scope was cancelled,
            WatchStatus.INVALIDATED after an invalidate event

        Raises:
            ChangeFeedError: Stream could not be opened or iterated
            SerializationError: A change document could not be decoded
            CheckpointError: The checkpoint store failed
            DispatchError: A dispatch stage failed
        """
        with self.source.open(scope, resume_point) as cursor:
            logger.info(
                f"Change stream watcher launched for {self.collection_name}, waiting for change events",
                extra={"collection": self.collection_name, "resuming": resume_point is not None}
            )
            return self._consume(cursor, scope, pipeline, resume_point)

    def _consume(
        self,
        cursor: ChangeEventCursor,
        scope: CancelScope,
        pipeline: DispatchPipeline,
        resume_point: Optional[ResumePoint],
    ) -> WatchStatus:
        previous_token: Optional[Dict[str, Any]] = None
        replay_pending = False
        if resume_point is not None:
            if resume_point.resume_after_token:
                # the invalidate checkpoint is reclaimed once the next event is stored
                previous_token = resume_point.token
            else:
                replay_pending = True

        for event in cursor:
            if replay_pending:
                replay_pending = False
                if event.id == resume_point.token:
                    self._replay(scope, pipeline, event, resume_point)
                    if event.is_invalidate:
                        return self._invalidated(event)
                    previous_token = event.id
                    continue

                logger.warning(
                    "First event after resume is not the checkpointed one, processing it as new",
                    extra={"collection": self.collection_name, "token": event.id}
                )
                previous_token = resume_point.token

            self._checkpoint(event, previous_token)
            self._dispatch(scope, pipeline, event)

            if event.is_invalidate:
                return self._invalidated(event)

            previous_token = event.id

        logger.info(
            f"Change stream watcher for {self.collection_name} stopped",
            extra={"collection": self.collection_name}
        )
        return WatchStatus.STOPPED

    def _replay(
        self,
        scope: CancelScope,
        pipeline: DispatchPipeline,
        event: ChangeEvent,
        resume_point: ResumePoint,
    ) -> None:
        if resume_point.dispatched:
            logger.debug(
                "Resumed at checkpointed event, already dispatched",
                extra={"collection": self.collection_name, "token": event.id}
            )
            return

        logger.info(
            "Resumed at checkpointed event, dispatching it again",
            extra={"collection": self.collection_name, "token": event.id}
        )
        self._dispatch(scope, pipeline, event)

    def _checkpoint(self, event: ChangeEvent, previous_token: Optional[Dict[str, Any]]) -> None:
        self.store.save(CheckpointRecord.from_event(event))
        cdc_last_checkpoint_time.labels(collection=self.collection_name).set(event.timestamp.time)
        logger.debug(
            f"Saved checkpoint {event.id}",
            extra={"collection": self.collection_name, "token": event.id}
        )

        # the very first event of a cold start has nothing to reclaim
        if previous_token is not None:
            self.store.delete(previous_token)
            logger.debug(
                f"Deleted checkpoint {previous_token}",
                extra={"collection": self.collection_name, "token": previous_token}
            )

    def _dispatch(self, scope: CancelScope, pipeline: DispatchPipeline, event: ChangeEvent) -> None:
        pipeline.run(scope, event)
        self.store.mark_dispatched(event.id)
        cdc_events_dispatched.labels(
            collection=self.collection_name,
            operation=event.operation_type.value
        ).inc()
        logger.debug(
            f"Processed {event.operation_type.value} event {event.id}",
            extra={"collection": self.collection_name, "token": event.id}
        )

    def _invalidated(self, event: ChangeEvent) -> WatchStatus:
        logger.info(
            f"Received invalidate event for {event.collection or self.collection_name}, "
            f"restart will resume after {event.id}",
            extra={"collection": self.collection_name, "token": event.id}
        )
        return WatchStatus.INVALIDATED
