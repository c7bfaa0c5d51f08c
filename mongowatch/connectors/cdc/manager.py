"""
Stream manager: owns the cancellation scope of the active watch.
"""

import logging
import threading
from typing import Optional

from .cancel import CancelScope
from .checkpoint_store import CheckpointStore
from .dispatch import DispatchPipeline, DispatchStage
from .errors import CDCError
from .events import CheckpointRecord, ResumePoint, WatchStatus
from .watcher import ChangeStreamWatcher

logger = logging.getLogger(__name__)


class StreamManager:
    """
    Starts and stops the watch loop for one collection.

    Only one watch may run per manager at a time. ``stop()`` is safe to call
    from any thread.

    Example:
        >>> manager = StreamManager(store, ChangeStreamWatcher(source, store))
        >>> threading.Thread(target=manager.watch, args=(None, handle)).start()
        >>> manager.stop()
    """

    def __init__(self, store: CheckpointStore, watcher: ChangeStreamWatcher):
        self.store = store
        self.watcher = watcher
        self._scope: Optional[CancelScope] = None
        self._lock = threading.Lock()
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def resolve_resume_point(self, resume_point: Optional[ResumePoint] = None) -> Optional[ResumePoint]:
        """Explicit resume point, else the last checkpoint, else None (cold start)."""
        if resume_point is not None:
            return resume_point

        record = self.store.get_last()
        if record is None:
            logger.info(
                "No checkpoint found, starting from now",
                extra={"collection": self.watcher.collection_name}
            )
            return None

        if self.store.count() > 1:
            self._reclaim_stale(record)
        return ResumePoint.from_checkpoint(record)

    def _reclaim_stale(self, newest: CheckpointRecord) -> None:
        # a crash between save and delete leaves an older checkpoint behind
        for record in self.store.fetch_all():
            if record.id == newest.id:
                continue
            logger.warning(
                f"Deleting stale checkpoint {record.id}",
                extra={"collection": self.watcher.collection_name, "token": record.id}
            )
            self.store.delete(record.id)

    def watch(
        self,
        resume_point: Optional[ResumePoint] = None,
        *stages: DispatchStage,
        scope: Optional[CancelScope] = None,
    ) -> WatchStatus:
        """
        Run one watch to completion (blocking).

        Args:
            resume_point: Where to resume; defaults to the last checkpoint
            stages: Dispatch stages run for every event, in order
            scope: Cancellation scope to run under; a new one is created by default

        Returns:
            WatchStatus.STOPPED after stop(), WatchStatus.INVALIDATED after an invalidate event

        Raises:
            CDCError: On any failure, or if a watch is already running
        """
        logger.debug("manager.watch", extra={"collection": self.watcher.collection_name})
        with self._lock:
            if self._active:
                raise CDCError(f"A watch is already active for {self.watcher.collection_name}")
            self._active = True
            if scope is None:
                scope = CancelScope()
            self._scope = scope

        try:
            resolved = self.resolve_resume_point(resume_point)
            return self.watcher.run(scope, DispatchPipeline(stages), resolved)
        finally:
            with self._lock:
                self._active = False
                self._scope = None

    def stop(self) -> None:
        """Cancel the running watch. Without a running watch this only logs."""
        with self._lock:
            scope = self._scope

        if scope is None:
            logger.info(
                "Change stream manager stop called with no active watch",
                extra={"collection": self.watcher.collection_name}
            )
            return

        logger.debug("Change stream manager stop called", extra={"collection": self.watcher.collection_name})
        scope.cancel()
