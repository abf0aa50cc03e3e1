"""
Edge Protocol - How nodes connect in a workflow graph.

Edge Types:
- EdgeSpec: unconditional, always traverse source -> target
- ConditionalEdgeSpec: the source's Router picks the target(s) from a path map
- JoinSpec: a synchronization edge; the join node fires only once every
  member of its predecessor set has completed and written its expected
  channels in the current epoch
"""

from dataclasses import dataclass

from pydantic import BaseModel, Field

from proposal_engine.graph.router import Router


class EdgeSpec(BaseModel):
    """
    Unconditional edge.

    Example:
        EdgeSpec(source="documentLoader", target="deepResearch")
    """

    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID or END")
    description: str = ""

    model_config = {"extra": "allow"}


@dataclass
class ConditionalEdgeSpec:
    """Branch point: after source completes, its router chooses what runs next."""

    source: str
    router: Router


class JoinSpec(BaseModel):
    """
    Synchronization edge into a join node.

    Example:
        JoinSpec(
            node="intelligenceSynchronizer",
            predecessors=["strategicInitiatives", "decisionMakers"],
            expected_channels={"strategicInitiatives": ["intelligence"]},
        )

    A predecessor without an entry in expected_channels counts as arrived
    as soon as it completes without error.
    """

    node: str
    predecessors: list[str]
    expected_channels: dict[str, list[str]] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    def expects(self, predecessor: str) -> list[str]:
        return self.expected_channels.get(predecessor, [])
