"""
CDC (Change Data Capture) module for MongoDB change stream processing.
"""

from .errors import (
    CDCError,
    ChangeFeedError,
    SerializationError,
    CheckpointError,
    DispatchError,
    RetryExhaustedError,
)
from .events import ChangeEvent, CheckpointRecord, ResumePoint, OperationType, WatchStatus
from .cancel import CancelScope
from .change_feed import ChangeFeedSource, ChangeEventCursor, PreImageMode, build_pipeline
from .checkpoint_store import CheckpointStore, MongoCheckpointStore, SQLCheckpointStore
from .dispatch import DispatchPipeline, DispatchStage
from .watcher import ChangeStreamWatcher
from .manager import StreamManager
from .supervisor import BackoffPolicy, RetrySupervisor
from .processor import CollectionWatcher, DocumentProcessor, document_stage

__all__ = [
    "CDCError",
    "ChangeFeedError",
    "SerializationError",
    "CheckpointError",
    "DispatchError",
    "RetryExhaustedError",
    "ChangeEvent",
    "CheckpointRecord",
    "ResumePoint",
    "OperationType",
    "WatchStatus",
    "CancelScope",
    "ChangeFeedSource",
    "ChangeEventCursor",
    "PreImageMode",
    "build_pipeline",
    "CheckpointStore",
    "MongoCheckpointStore",
    "SQLCheckpointStore",
    "DispatchPipeline",
    "DispatchStage",
    "ChangeStreamWatcher",
    "StreamManager",
    "BackoffPolicy",
    "RetrySupervisor",
    "CollectionWatcher",
    "DocumentProcessor",
    "document_stage",
]
