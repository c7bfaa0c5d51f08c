"""
Change stream data model.

ChangeEvent is the normalized shape produced by the change feed pipeline,
CheckpointRecord is what gets persisted to resume from, and ResumePoint is
the read-only view of the last checkpoint used when opening the feed.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from bson import Timestamp
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import SerializationError


class OperationType(str, Enum):
    """Operation types surfaced by the change feed."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    INVALIDATE = "invalidate"


class WatchStatus(str, Enum):
    """How a watch attempt ended when it did not raise."""
    STOPPED = "stopped"
    INVALIDATED = "invalidated"


class UpdateDescription(BaseModel):
    """Changed and removed fields of an update event."""
    model_config = ConfigDict(populate_by_name=True)

    updated_fields: Dict[str, Any] = Field(default_factory=dict, alias="updatedFields")
    removed_fields: List[str] = Field(default_factory=list, alias="removedFields")


class ChangeEvent(BaseModel):
    """A single mutation read from the change stream."""
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    id: Dict[str, Any] = Field(..., alias="_id", description="Resume token")
    operation_type: OperationType = Field(..., alias="operationType")
    timestamp: Timestamp = Field(..., description="Cluster time of the change")
    database: Optional[str] = None
    collection: Optional[str] = None
    # some collections use custom primary keys, so keep the key as a string
    document_key: Optional[str] = Field(None, alias="documentKey")
    full_document: Optional[Dict[str, Any]] = Field(None, alias="fullDocument")
    full_document_before_change: Optional[Dict[str, Any]] = Field(
        None, alias="fullDocumentBeforeChange"
    )
    update_description: Optional[UpdateDescription] = Field(None, alias="updateDescription")

    @field_validator("id")
    @classmethod
    def validate_token(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if not v:
            raise ValueError("resume token must not be empty")
        return v

    @field_validator("timestamp", mode="before")
    @classmethod
    def validate_timestamp(cls, v: Any) -> Timestamp:
        if not isinstance(v, Timestamp):
            raise ValueError(f"expected bson Timestamp, got {type(v).__name__}")
        return v

    @field_validator("document_key", mode="before")
    @classmethod
    def stringify_document_key(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        return str(v)

    @property
    def is_invalidate(self) -> bool:
        return self.operation_type == OperationType.INVALIDATE

    @classmethod
    def from_change(cls, raw: Dict[str, Any]) -> "ChangeEvent":
        """
        Decode a raw change document.

        Raises:
            SerializationError: If the document does not have the expected shape
        """
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise SerializationError(f"Failed to decode change event: {e}") from e


class CheckpointRecord(BaseModel):
    """
    Durable resume unit for one watched collection.

    Keyed by the resume token of the event it was derived from. The full
    document is kept for diagnostics only.
    """
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    id: Dict[str, Any] = Field(..., alias="_id")
    timestamp: Timestamp
    operation_type: OperationType = Field(..., alias="operationType")
    full_document: Optional[Dict[str, Any]] = Field(None, alias="fullDocument")
    dispatched: bool = Field(default=False, description="Event was handed to the pipeline without error")

    @classmethod
    def from_event(cls, event: ChangeEvent) -> "CheckpointRecord":
        return cls(
            id=event.id,
            timestamp=event.timestamp,
            operation_type=event.operation_type,
            full_document=event.full_document,
        )

    def to_document(self) -> Dict[str, Any]:
        """MongoDB representation, field names as stored."""
        doc = self.model_dump(by_alias=True)
        doc["operationType"] = self.operation_type.value
        return doc


class ResumePoint(BaseModel):
    """Where to reopen the change feed, derived from the last checkpoint."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    token: Dict[str, Any]
    timestamp: Timestamp
    operation_type: OperationType
    dispatched: bool = False

    @property
    def resume_after_token(self) -> bool:
        # an invalidate cannot be replayed by timestamp, it would be read again
        return self.operation_type == OperationType.INVALIDATE

    @classmethod
    def from_checkpoint(cls, record: CheckpointRecord) -> "ResumePoint":
        return cls(
            token=record.id,
            timestamp=record.timestamp,
            operation_type=record.operation_type,
            dispatched=record.dispatched,
        )
