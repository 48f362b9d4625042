"""Data models for the orchestration core."""

from opcore.models.operations import (
    TERMINAL_STATUSES,
    BatchProgress,
    CancellationOutcome,
    HandleType,
    Operation,
    OperationKind,
    OperationPriority,
    OperationProgress,
    OperationResult,
    OperationStatus,
    OverallProgress,
    OverallStatus,
    QueueStatus,
    RetryScheduled,
    StreamChunk,
    StreamChunkType,
    StreamingOperation,
    generate_operation_id,
)

__all__ = [
    "TERMINAL_STATUSES",
    "BatchProgress",
    "CancellationOutcome",
    "HandleType",
    "Operation",
    "OperationKind",
    "OperationPriority",
    "OperationProgress",
    "OperationResult",
    "OperationStatus",
    "OverallProgress",
    "OverallStatus",
    "QueueStatus",
    "RetryScheduled",
    "StreamChunk",
    "StreamChunkType",
    "StreamingOperation",
    "generate_operation_id",
]
