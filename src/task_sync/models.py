"""
Pydantic models for the Task Sync Engine.

Covers the task entity, mutation queue items, the batch transport wire
shapes exchanged with the remote peer, sync results and API request/error
bodies.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SyncStatus(str, Enum):
    """Per-task synchronization state."""

    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class Operation(str, Enum):
    """Mutation kinds recorded in the queue."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def priority(self) -> int:
        """Tie-break rank for equal timestamps: delete > update > create."""
        return _OPERATION_PRIORITY[self]


_OPERATION_PRIORITY = {
    Operation.CREATE: 0,
    Operation.UPDATE: 1,
    Operation.DELETE: 2,
}


class ItemStatus(str, Enum):
    """Per-item outcome reported by the remote peer."""

    SUCCESS = "success"
    CONFLICT = "conflict"
    ERROR = "error"


class Task(BaseModel):
    """Task record as held by the local store and the remote peer."""

    id: str
    title: str
    description: str = ""
    completed: bool = False
    created_at: datetime
    updated_at: datetime
    is_deleted: bool = False
    sync_status: SyncStatus = SyncStatus.PENDING
    server_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at", "last_synced_at")
    @classmethod
    def normalize_timestamps(cls, v):
        """Store all timestamps as UTC so comparisons are well defined."""
        if v is None:
            return v
        return ensure_utc(v)

    def snapshot(self) -> Dict[str, Any]:
        """JSON-compatible copy of the task, used as queue payload."""
        return self.model_dump(mode="json")


class MutationQueueItem(BaseModel):
    """One pending mutation awaiting remote confirmation."""

    id: str
    task_id: str
    operation: Operation
    data: Dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0
    last_error: Optional[str] = None
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v):
        return ensure_utc(v)

    def is_dead_lettered(self, retry_limit: int) -> bool:
        """True once the retry budget is exhausted."""
        return self.retry_count >= retry_limit


# Batch transport wire shapes


class BatchSyncItem(BaseModel):
    """Queue item as shipped to the remote peer."""

    id: str
    task_id: str
    operation: Operation
    data: Dict[str, Any]
    retry_count: int
    created_at: datetime

    @classmethod
    def from_queue_item(cls, item: MutationQueueItem) -> "BatchSyncItem":
        return cls(
            id=item.id,
            task_id=item.task_id,
            operation=item.operation,
            data=item.data,
            retry_count=item.retry_count,
            created_at=item.created_at,
        )


class BatchSyncRequest(BaseModel):
    """Request body for POST {endpoint}/batch."""

    items: List[BatchSyncItem]
    client_timestamp: datetime = Field(default_factory=utc_now)


class ProcessedItem(BaseModel):
    """Per-item outcome in a batch response."""

    client_id: str
    status: ItemStatus
    resolved_data: Optional[Dict[str, Any]] = None
    server_id: Optional[str] = None
    error: Optional[str] = None


class BatchSyncResponse(BaseModel):
    """Response body for POST {endpoint}/batch."""

    processed_items: List[ProcessedItem] = Field(default_factory=list)
    server_timestamp: Optional[datetime] = None


# Sync outcomes


class SyncItemError(BaseModel):
    """A single failure entry aggregated into SyncResult.errors."""

    item_id: Optional[str] = None
    task_id: str
    operation: Optional[Operation] = None
    error: str


class SyncResult(BaseModel):
    """Aggregated outcome of one sync() run."""

    success: bool
    synced_items: int = 0
    failed_items: int = 0
    deferred_items: int = 0
    errors: List[SyncItemError] = Field(default_factory=list)


class SyncStatusSummary(BaseModel):
    """Queue and connectivity summary for operational tooling."""

    pending_sync_count: int
    dead_letter_count: int
    sync_queue_size: int
    last_sync_timestamp: Optional[datetime] = None
    is_online: bool


# API request models


class TaskCreateRequest(BaseModel):
    """Request model for creating a task."""

    title: str = Field(min_length=1, max_length=500, description="Task title")
    description: Optional[str] = Field("", max_length=5000, description="Task description")
    completed: bool = False

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        """Reject titles made only of whitespace."""
        if not v.strip():
            raise ValueError("Title cannot be empty")
        return v.strip()


class TaskUpdateRequest(BaseModel):
    """Request model for partial task updates; omitted fields are left as-is."""

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = Field(None, max_length=5000)
    completed: Optional[bool] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        if v is not None and not v.strip():
            raise ValueError("Title cannot be empty")
        return v.strip() if v is not None else v

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str
    timestamp: str
    path: Optional[str] = None


def create_error_response(message: str, path: Optional[str] = None) -> Dict[str, Any]:
    """Create a standardized error response dictionary."""
    return {
        "error": message,
        "timestamp": utc_now().isoformat(),
        "path": path,
    }
