"""
Checkpoint Schema - Immutable state snapshots for durable resume.

A checkpoint is written after every node completion and every out-of-run
state update. The latest checkpoint of a thread is its current state; older
ones form an append-only audit trail that can be replayed through the
channel reducers.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from proposal_engine.schemas.state import WorkflowState, utc_now


class CheckpointSource(StrEnum):
    """What produced a checkpoint."""

    INPUT = "input"  # Thread seeded from initial input
    LOOP = "loop"  # A node completed inside a run
    UPDATE = "update"  # Out-of-run update (feedback, messages, keep)
    INTERRUPT = "interrupt"  # A node completed and requested review


class ChannelWrite(BaseModel):
    """One partial update merged into state, as it was applied."""

    node: str
    update: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class CheckpointMetadata(BaseModel):
    """
    Execution bookkeeping stored alongside channel values.

    next_nodes is the frontier still to execute; for a partially completed
    parallel epoch it lists the branches that had not yet finished, and
    pending_nodes the successors already chosen by the ones that had.
    resume_routes names nodes whose outgoing routing still has to be
    resolved when the thread resumes (set by an interrupting node).
    barriers holds, per join node, the predecessors that have arrived in
    the current epoch.
    """

    source: CheckpointSource
    step: int = 0
    parent_sequence: int | None = None
    node: str | None = None
    next_nodes: list[str] = Field(default_factory=list)
    pending_nodes: list[str] = Field(default_factory=list)
    resume_routes: list[str] = Field(default_factory=list)
    barriers: dict[str, list[str]] = Field(default_factory=dict)
    epoch: int = 0
    failed_nodes: list[str] = Field(default_factory=list)

    model_config = {"extra": "allow"}


class Checkpoint(BaseModel):
    """Single immutable snapshot in a thread's history."""

    thread_id: str
    sequence: int
    timestamp: str
    channel_values: dict[str, Any]
    channel_versions: dict[str, int] = Field(default_factory=dict)
    metadata: CheckpointMetadata
    writes: list[ChannelWrite] = Field(default_factory=list)

    model_config = {"frozen": True}

    @classmethod
    def create(
        cls,
        thread_id: str,
        sequence: int,
        state: WorkflowState,
        metadata: CheckpointMetadata,
        channel_versions: dict[str, int] | None = None,
        writes: list[ChannelWrite] | None = None,
    ) -> "Checkpoint":
        """
        Snapshot a state with a fresh timestamp.

        Args:
            thread_id: Thread the checkpoint belongs to
            sequence: Monotonic position in the thread's history (0 for the seed)
            state: State after the writes were merged
            metadata: Execution bookkeeping
            channel_versions: Per-channel write counters
            writes: Partial updates merged since the parent checkpoint

        Returns:
            New Checkpoint instance
        """
        return cls(
            thread_id=thread_id,
            sequence=sequence,
            timestamp=utc_now(),
            channel_values=state.model_dump(mode="json"),
            channel_versions=dict(channel_versions or {}),
            metadata=metadata,
            writes=list(writes or []),
        )

    def state(self) -> WorkflowState:
        """Rebuild the WorkflowState held in this checkpoint."""
        return WorkflowState.model_validate(self.channel_values)

    def same_content(self, other: "Checkpoint") -> bool:
        """True when two checkpoints differ at most in their timestamp."""
        return self.model_dump(exclude={"timestamp"}) == other.model_dump(exclude={"timestamp"})


class CheckpointSummary(BaseModel):
    """Lightweight checkpoint metadata for history listings."""

    thread_id: str
    sequence: int
    timestamp: str
    source: CheckpointSource
    step: int
    node: str | None = None
    next_nodes: list[str] = Field(default_factory=list)
    status: str | None = None
    is_interrupted: bool = False

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "CheckpointSummary":
        """Create summary from full checkpoint."""
        values = checkpoint.channel_values
        return cls(
            thread_id=checkpoint.thread_id,
            sequence=checkpoint.sequence,
            timestamp=checkpoint.timestamp,
            source=checkpoint.metadata.source,
            step=checkpoint.metadata.step,
            node=checkpoint.metadata.node,
            next_nodes=checkpoint.metadata.next_nodes,
            status=values.get("status"),
            is_interrupted=bool(values.get("interrupt_status", {}).get("is_interrupted")),
        )
