"""
Workflow State Schema - The channels a proposal thread carries.

Every field of WorkflowState is a channel. Nodes never mutate state; they
return partial updates that the executor merges through each channel's
reducer (see proposal_engine.graph.channels).

Content references name the pieces of generated content that can be
reviewed, edited or invalidated: "research", "solution", "connections",
"intelligence", or the id of a proposal section.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> str:
    """ISO 8601 UTC timestamp used for every time field in state."""
    return datetime.now(UTC).isoformat()


class LoadingStatus(StrEnum):
    """Status of the source document."""

    NOT_STARTED = "not_started"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


class ProcessingStatus(StrEnum):
    """Status of a generated piece of content, or of the thread as a whole."""

    NOT_STARTED = "not_started"
    QUEUED = "queued"
    RUNNING = "running"
    GENERATING = "generating"
    AWAITING_REVIEW = "awaiting_review"
    APPROVED = "approved"
    EDITED = "edited"
    NEEDS_REVISION = "needs_revision"
    STALE = "stale"
    COMPLETE = "complete"
    ERROR = "error"


# Sections move through the same lifecycle as the phase channels
SectionStatus = ProcessingStatus


class FeedbackType(StrEnum):
    APPROVE = "approve"
    REVISE = "revise"
    REGENERATE = "regenerate"


class InterruptReason(StrEnum):
    EVALUATION_NEEDED = "evaluation_needed"
    CONTENT_REVIEW = "content_review"
    ERROR_OCCURRED = "error_occurred"


class FeedbackProcessingStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


# === CONTENT ENTITIES ===


class RfpDocument(BaseModel):
    """The funding opportunity / RFP the proposal answers."""

    id: str
    file_name: str | None = None
    text: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: LoadingStatus = LoadingStatus.NOT_STARTED

    model_config = {"extra": "allow"}


class EvaluationResult(BaseModel):
    """Outcome of an automated quality check on a piece of content."""

    score: float = 0.0
    passed: bool = False
    feedback: str = ""
    categories: dict[str, float] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


class Section(BaseModel):
    """
    One section of the proposal.

    previous_status is required: it is the status a stale section returns
    to when the user chooses to keep it instead of regenerating.
    """

    id: str
    title: str | None = None
    content: str = ""
    status: SectionStatus
    previous_status: SectionStatus
    evaluation: EvaluationResult | None = None
    last_updated: str = Field(default_factory=utc_now)

    model_config = {"extra": "allow"}


class Message(BaseModel):
    id: str
    role: str  # "user" | "assistant" | "system"
    content: str
    timestamp: str = Field(default_factory=utc_now)

    model_config = {"extra": "allow"}


# === INTERRUPT / FEEDBACK ===


class FeedbackPayload(BaseModel):
    """Feedback as embedded in InterruptStatus while it awaits processing."""

    type: FeedbackType
    content: str | None = None
    timestamp: str = Field(default_factory=utc_now)


class UserFeedback(BaseModel):
    """Feedback submitted by a reviewer for an interrupted thread."""

    type: FeedbackType
    comments: str | None = None
    content_reference: str | None = None
    specific_edits: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=utc_now)

    model_config = {"extra": "allow"}


class InterruptStatus(BaseModel):
    is_interrupted: bool = False
    interruption_point: str | None = None
    feedback: FeedbackPayload | None = None
    processing_status: FeedbackProcessingStatus | None = None


class InterruptMetadata(BaseModel):
    """Why the thread paused and what the reviewer is looking at."""

    reason: InterruptReason
    node_id: str
    timestamp: str = Field(default_factory=utc_now)
    content_reference: str | None = None
    evaluation_result: EvaluationResult | None = None

    model_config = {"extra": "allow"}


# === WORKFLOW STATE ===


class WorkflowState(BaseModel):
    """
    Complete state of one proposal thread.

    Channels and their reducers:
        errors              append-only
        messages            append, same id replaces in place
        sections            merge by key
        intelligence        merge by key
        context             merge by key
        rfp_document        shallow merge
        interrupt_status    shallow merge
        everything else     last value wins
    """

    rfp_document: RfpDocument | None = None

    research_results: dict[str, Any] | None = None
    research_status: ProcessingStatus = ProcessingStatus.QUEUED
    research_evaluation: EvaluationResult | None = None

    solution_results: dict[str, Any] | None = None
    solution_status: ProcessingStatus = ProcessingStatus.QUEUED
    solution_evaluation: EvaluationResult | None = None

    connections: list[Any] | None = None
    connections_status: ProcessingStatus = ProcessingStatus.QUEUED
    connections_evaluation: EvaluationResult | None = None

    # Per-topic results of the parallel intelligence branches
    intelligence: dict[str, Any] = Field(default_factory=dict)
    intelligence_status: ProcessingStatus = ProcessingStatus.QUEUED

    sections: dict[str, Section] = Field(default_factory=dict)
    required_sections: list[str] = Field(default_factory=list)

    messages: list[Message] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    status: ProcessingStatus = ProcessingStatus.QUEUED
    interrupt_status: InterruptStatus = Field(default_factory=InterruptStatus)
    interrupt_metadata: InterruptMetadata | None = None
    user_feedback: UserFeedback | None = None

    current_step: str | None = None
    active_thread_id: str | None = None

    # Free-form seed input (e.g. {"rfp_id": "42"})
    context: dict[str, Any] = Field(default_factory=dict)

    created_at: str = Field(default_factory=utc_now)
    last_updated_at: str = Field(default_factory=utc_now)

    @classmethod
    def channels(cls) -> set[str]:
        return set(cls.model_fields)

    @property
    def is_interrupted(self) -> bool:
        return self.interrupt_status.is_interrupted


# === CONTENT REFERENCES ===

# reference -> (results channel, status channel, evaluation channel)
CONTENT_CHANNELS: dict[str, tuple[str, str, str | None]] = {
    "research": ("research_results", "research_status", "research_evaluation"),
    "solution": ("solution_results", "solution_status", "solution_evaluation"),
    "connections": ("connections", "connections_status", "connections_evaluation"),
    "intelligence": ("intelligence", "intelligence_status", None),
}


def is_section_reference(ref: str) -> bool:
    return ref not in CONTENT_CHANNELS


def content_status(state: WorkflowState, ref: str) -> ProcessingStatus | None:
    """Status of the content a reference names, or None if it does not exist yet."""
    if ref in CONTENT_CHANNELS:
        return getattr(state, CONTENT_CHANNELS[ref][1])
    section = state.sections.get(ref)
    return section.status if section else None


def content_value(state: WorkflowState, ref: str) -> Any:
    """The reviewable content a reference names (results payload or section)."""
    if ref in CONTENT_CHANNELS:
        return getattr(state, CONTENT_CHANNELS[ref][0])
    return state.sections.get(ref)


def content_evaluation(state: WorkflowState, ref: str) -> EvaluationResult | None:
    if ref in CONTENT_CHANNELS:
        evaluation_channel = CONTENT_CHANNELS[ref][2]
        return getattr(state, evaluation_channel) if evaluation_channel else None
    section = state.sections.get(ref)
    return section.evaluation if section else None


def status_update(state: WorkflowState, ref: str, status: ProcessingStatus) -> dict[str, Any]:
    """
    Build the partial update that moves a piece of content to a new status.

    Marking a section stale records the status it had before, unless it is
    already stale (the original status is what "keep" must restore).

    Args:
        state: Current state (used to read the section's current status)
        ref: Content reference
        status: Target status

    Returns:
        Partial update for the executor, empty if the section does not exist
    """
    if ref in CONTENT_CHANNELS:
        return {CONTENT_CHANNELS[ref][1]: status}

    section = state.sections.get(ref)
    if section is None:
        return {}
    entry: dict[str, Any] = {"status": status, "last_updated": utc_now()}
    if status == ProcessingStatus.STALE and section.status != ProcessingStatus.STALE:
        entry["previous_status"] = section.status
    return {"sections": {ref: entry}}
