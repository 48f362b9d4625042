"""
Operation models for the orchestration core.

This module defines the records that flow between the dispatcher, the
progress tracker, the cancellation registry and the stream coordinator,
plus the executor wire format for results and stream chunks.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OperationKind(str, Enum):
    """Kind of work an operation represents."""

    READ = "read"
    WRITE = "write"
    CREATE = "create"
    DELETE = "delete"
    LIST = "list"
    TERMINAL = "terminal"
    AI_REQUEST = "ai_request"
    FILE_OPERATION = "file_operation"
    BATCH_OPERATION = "batch_operation"


class OperationPriority(str, Enum):
    """Dispatch priority tier. High strictly precedes normal precedes low."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    OperationPriority.HIGH: 0,
    OperationPriority.NORMAL: 1,
    OperationPriority.LOW: 2,
}


class OperationStatus(str, Enum):
    """Status of an operation."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.CANCELLED}
)


class OverallStatus(str, Enum):
    """Summary status across every tracked operation."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StreamChunkType(str, Enum):
    """Type of a stream chunk."""

    STDOUT = "stdout"
    STDERR = "stderr"
    PROGRESS = "progress"
    STATUS = "status"
    COMPLETION = "completion"
    ERROR = "error"


class HandleType(str, Enum):
    """How a cancellable unit of work is stopped."""

    TERMINAL = "terminal"
    FILESYSTEM = "filesystem"
    AI_REQUEST = "ai_request"

    @classmethod
    def for_kind(cls, kind: OperationKind) -> "HandleType":
        if kind == OperationKind.TERMINAL:
            return cls.TERMINAL
        if kind == OperationKind.AI_REQUEST:
            return cls.AI_REQUEST
        return cls.FILESYSTEM


class CancellationOutcome(str, Enum):
    """Result of one cancellation attempt."""

    CANCELLED = "cancelled"
    ALREADY_FINISHED = "already_finished"
    NOT_FOUND = "not_found"
    FAILED = "failed"


def generate_operation_id(kind: OperationKind) -> str:
    """Generate a unique operation id, e.g. op_write_20250117_100000_1a2b3c4d."""
    timestamp = utc_now().strftime("%Y%m%d_%H%M%S")
    return f"op_{kind.value}_{timestamp}_{uuid.uuid4().hex[:8]}"


class Operation(BaseModel):
    """A unit of work submitted to the dispatcher."""

    id: str = Field("", description="Unique operation identifier")
    kind: OperationKind = Field(..., description="Kind of work")
    target: str = Field(..., description="Path or logical resource name")
    payload: Optional[Any] = Field(
        None, description="Opaque content, e.g. file bytes or a command string"
    )
    priority: OperationPriority = Field(OperationPriority.NORMAL)
    enqueued_at: datetime = Field(default_factory=utc_now)
    retry_count: int = Field(0, ge=0)
    max_retries: int = Field(
        3, ge=0, description="Retry limit; the dispatcher default applies when unset"
    )

    @model_validator(mode="after")
    def _assign_id(self) -> "Operation":
        if not self.id:
            self.id = generate_operation_id(self.kind)
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "op_write_20250117_100000_1a2b3c4d",
                "kind": "write",
                "target": "src/app.py",
                "payload": "print('hello')",
                "priority": "high",
                "retry_count": 0,
                "max_retries": 3,
            }
        }
    )


class OperationResult(BaseModel):
    """Outcome of one operation as reported by an executor."""

    operation_id: str = Field(..., alias="operationId")
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    code: Optional[str] = None
    recoverable: Optional[bool] = None
    duration: float = Field(0.0, ge=0.0, description="Duration in seconds")

    model_config = ConfigDict(populate_by_name=True)


class OperationProgress(BaseModel):
    """Live state of one tracked operation."""

    operation_id: str
    kind: str
    status: OperationStatus = OperationStatus.PENDING
    progress: float = Field(0.0, ge=0.0, le=100.0)
    message: str = ""
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    duration: Optional[float] = Field(None, description="Seconds from start to end")
    error: Optional[str] = None
    recoverable: Optional[bool] = None


class OverallProgress(BaseModel):
    """Aggregate view recomputed from the tracked entries."""

    total_operations: int = 0
    completed_operations: int = 0
    failed_operations: int = 0
    cancelled_operations: int = 0
    running_operations: int = 0
    pending_operations: int = 0
    overall_progress: float = 0.0
    estimated_time_remaining: Optional[float] = Field(
        None, description="Seconds, None until an operation has finished"
    )
    current_operation: Optional[str] = None
    status: OverallStatus = OverallStatus.IDLE


class StreamChunk(BaseModel):
    """One immutable fragment of a streaming operation's output."""

    id: str = Field(default_factory=lambda: f"chunk_{uuid.uuid4().hex[:12]}")
    type: StreamChunkType
    data: str = ""
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: Optional[dict[str, Any]] = None

    model_config = ConfigDict(frozen=True)

    @property
    def progress_value(self) -> Optional[float]:
        """Numeric progress carried by a progress chunk, if any."""
        if self.type != StreamChunkType.PROGRESS or not self.metadata:
            return None
        value = self.metadata.get("progress")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)


class StreamingOperation(BaseModel):
    """State of an operation whose output arrives incrementally."""

    id: str
    kind: OperationKind
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    status: OperationStatus = OperationStatus.RUNNING
    progress: float = 0.0
    total_chunks: int = 0
    current_chunk: int = 0
    last_activity: datetime = Field(default_factory=utc_now)


class QueueStatus(BaseModel):
    """Dispatcher introspection snapshot."""

    queued_count: int
    is_processing: bool
    active_batches: int
    retrying_count: int = 0


class BatchProgress(BaseModel):
    """Progress of a single batch."""

    total: int
    completed: int = 0
    failed: int = 0
    current_operation: Optional[str] = None


class RetryScheduled(BaseModel):
    """Published when a recoverable failure is re-queued with backoff."""

    operation_id: str
    retry_count: int
    delay: float
    error: Optional[str] = None
