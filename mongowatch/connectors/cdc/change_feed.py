"""
MongoDB change stream source.

Opens a change stream on the watched collection, positioned from a resume
point, and exposes it as an iterator of ChangeEvent values that ends
cleanly when the watch is cancelled.
"""

import logging
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pymongo.collection import Collection
from pymongo.errors import OperationFailure, PyMongoError

from .cancel import CancelScope
from .errors import ChangeFeedError
from .events import ChangeEvent, OperationType, ResumePoint

logger = logging.getLogger(__name__)

# server error raised when a requested pre-image has expired
NO_MATCHING_DOCUMENT_CODE = 47


class PreImageMode(str, Enum):
    """fullDocumentBeforeChange modes."""
    OFF = "off"
    WHEN_AVAILABLE = "whenAvailable"
    REQUIRED = "required"


def build_pipeline() -> List[Dict[str, Any]]:
    """
    Aggregation pipeline reshaping raw changes into the ChangeEvent layout.

    Only insert/update/delete/invalidate changes are let through.
    """
    return [
        {
            "$match": {
                "operationType": {"$in": [op.value for op in OperationType]}
            }
        },
        {
            "$addFields": {
                "timestamp": "$clusterTime",
                "database": "$ns.db",
                "collection": "$ns.coll",
                "documentKey": "$documentKey._id",
            }
        },
        {
            "$project": {
                "timestamp": 1,
                "operationType": 1,
                "database": 1,
                "collection": 1,
                "documentKey": 1,
                "fullDocument": 1,
                "fullDocumentBeforeChange": 1,
                "updateDescription": 1,
            }
        },
    ]


def _is_missing_pre_image(error: PyMongoError) -> bool:
    if isinstance(error, OperationFailure) and error.code == NO_MATCHING_DOCUMENT_CODE:
        return True
    return "NoMatchingDocument" in str(error)


class ChangeEventCursor:
    """
    Iterator over the events of an open change stream.

    Waits for the next event are bounded by the stream's ``max_await_time_ms``
    and the stream is closed when the scope is cancelled, so iteration stops
    shortly after ``CancelScope.cancel()``.
    """

    def __init__(self, stream, scope: CancelScope):
        self._stream = stream
        self._scope = scope
        scope.add_callback(self.close)

    def __iter__(self) -> Iterator[ChangeEvent]:
        while not self._scope.cancelled:
            try:
                raw = self._stream.try_next()
            except PyMongoError as e:
                if self._scope.cancelled:
                    # closing the stream from another thread interrupts the wait
                    logger.debug(f"Change stream closed on cancel: {e}")
                    return
                raise ChangeFeedError(f"Change stream iteration failed: {e}") from e

            if raw is None:
                if not self._stream.alive and not self._scope.cancelled:
                    raise ChangeFeedError("Change stream cursor died")
                continue

            yield ChangeEvent.from_change(raw)

    def close(self) -> None:
        try:
            self._stream.close()
        except PyMongoError as e:
            logger.debug(f"Error closing change stream: {e}")

    def __enter__(self) -> "ChangeEventCursor":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ChangeFeedSource:
    """
    Opens change streams on the watched collection.

    Example:
        >>> source = ChangeFeedSource(db["orders"], pre_image_mode=PreImageMode.REQUIRED)
        >>> with source.open(scope, resume_point) as cursor:
        ...     for event in cursor:
        ...         handle(event)
    """

    def __init__(
        self,
        collection: Collection,
        full_document: str = "updateLookup",
        pre_image_mode: PreImageMode = PreImageMode.OFF,
        max_await_time_ms: int = 1000,
        batch_size: Optional[int] = None,
    ):
        self.collection = collection
        self.full_document = full_document
        self.pre_image_mode = PreImageMode(pre_image_mode)
        self.max_await_time_ms = max_await_time_ms
        self.batch_size = batch_size

    @property
    def collection_name(self) -> str:
        return self.collection.name

    def stream_options(self, resume_point: Optional[ResumePoint]) -> Dict[str, Any]:
        """Keyword arguments for ``Collection.watch`` at the given resume point."""
        options: Dict[str, Any] = {
            "full_document": self.full_document,
            "max_await_time_ms": self.max_await_time_ms,
        }
        if self.batch_size:
            options["batch_size"] = self.batch_size
        if self.pre_image_mode != PreImageMode.OFF:
            options["full_document_before_change"] = self.pre_image_mode.value

        if resume_point is None:
            logger.info(
                f"Opening change stream on {self.collection_name} from now",
                extra={"collection": self.collection_name}
            )
        elif resume_point.resume_after_token:
            logger.info(
                f"Opening change stream on {self.collection_name} after invalidate token",
                extra={"collection": self.collection_name, "token": resume_point.token}
            )
            options["start_after"] = resume_point.token
        else:
            logger.info(
                f"Opening change stream on {self.collection_name} from timestamp {resume_point.timestamp}",
                extra={"collection": self.collection_name, "token": resume_point.token}
            )
            options["start_at_operation_time"] = resume_point.timestamp

        return options

    def open(self, scope: CancelScope, resume_point: Optional[ResumePoint] = None) -> ChangeEventCursor:
        """
        Open the change stream.

        Raises:
            ChangeFeedError: If the stream cannot be opened
        """
        options = self.stream_options(resume_point)
        try:
            stream = self.collection.watch(pipeline=build_pipeline(), **options)
        except PyMongoError as e:
            if "full_document_before_change" not in options or not _is_missing_pre_image(e):
                raise ChangeFeedError(f"Failed to watch collection {self.collection_name}: {e}") from e

            logger.error(
                f"NoMatchingDocument, reopening {self.collection_name} without pre-images: {e}",
                extra={"collection": self.collection_name}
            )
            options.pop("full_document_before_change")
            try:
                stream = self.collection.watch(pipeline=build_pipeline(), **options)
            except PyMongoError as retry_error:
                raise ChangeFeedError(
                    f"Failed to watch collection {self.collection_name}: {retry_error}"
                ) from retry_error

        return ChangeEventCursor(stream, scope)
