"""Schema definitions for workflow state and checkpoints."""

from proposal_engine.schemas.checkpoint import (
    ChannelWrite,
    Checkpoint,
    CheckpointMetadata,
    CheckpointSource,
    CheckpointSummary,
)
from proposal_engine.schemas.state import (
    CONTENT_CHANNELS,
    EvaluationResult,
    FeedbackPayload,
    FeedbackProcessingStatus,
    FeedbackType,
    InterruptMetadata,
    InterruptReason,
    InterruptStatus,
    LoadingStatus,
    Message,
    ProcessingStatus,
    RfpDocument,
    Section,
    SectionStatus,
    UserFeedback,
    WorkflowState,
)

__all__ = [
    "CONTENT_CHANNELS",
    "ChannelWrite",
    "Checkpoint",
    "CheckpointMetadata",
    "CheckpointSource",
    "CheckpointSummary",
    "EvaluationResult",
    "FeedbackPayload",
    "FeedbackProcessingStatus",
    "FeedbackType",
    "InterruptMetadata",
    "InterruptReason",
    "InterruptStatus",
    "LoadingStatus",
    "Message",
    "ProcessingStatus",
    "RfpDocument",
    "Section",
    "SectionStatus",
    "UserFeedback",
    "WorkflowState",
]
