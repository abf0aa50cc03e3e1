"""
Node Protocol - The unit of work in a workflow graph.

A node is any callable with the contract:

    (state: WorkflowState) -> PartialUpdate | RoutingDirective | None

where PartialUpdate is a dict keyed by channel name. Sync and async
callables are both accepted. Nodes never mutate state or touch the
checkpoint store; the executor merges what they return.

A node that wants to choose its own successor (content-driven control
flow, e.g. "rejected, restart research") returns a RoutingDirective. The
directive's targets must be declared up front in NodeSpec.destinations so
the graph's adjacency map can be validated at build time.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from proposal_engine.schemas.state import WorkflowState

logger = logging.getLogger(__name__)

END = "__end__"

PartialUpdate = dict[str, Any]


class RoutingDirective(BaseModel):
    """
    A partial update plus an explicit choice of next node(s).

    Examples:
        # Loop back after a failed evaluation
        RoutingDirective(update={"research_status": "needs_revision"}, goto="deepResearch")

        # Fan out to parallel branches
        RoutingDirective(goto=["strategicInitiatives", "decisionMakers"])
    """

    update: PartialUpdate = Field(default_factory=dict)
    goto: str | list[str] = END

    def targets(self) -> list[str]:
        return [self.goto] if isinstance(self.goto, str) else list(self.goto)


NodeResult = PartialUpdate | RoutingDirective | None
NodeFn = Callable[[WorkflowState], NodeResult | Awaitable[NodeResult]]


class NodeSpec(BaseModel):
    """
    Static description of a node.

    reads/writes name content references (research, solution, connections,
    intelligence, section ids); they feed the dependency map used to mark
    downstream content stale after an edit.
    """

    id: str
    description: str = ""

    reads: list[str] = Field(default_factory=list)
    writes: list[str] = Field(default_factory=list)

    # Channel set to "error" when the node fails
    status_channel: str | None = None

    # Allowed RoutingDirective targets
    destinations: list[str] = Field(default_factory=list)

    # None means the executor's retry policy decides
    max_retries: int | None = None
    timeout_seconds: float | None = None

    model_config = {"extra": "allow"}


@dataclass
class RegisteredNode:
    spec: NodeSpec
    fn: NodeFn

    async def invoke(self, state: WorkflowState) -> NodeResult:
        result = self.fn(state)
        if inspect.isawaitable(result):
            result = await result
        return result


class NodeRegistry:
    """Maps node names to executable units."""

    def __init__(self) -> None:
        self._nodes: dict[str, RegisteredNode] = {}

    def register(self, spec: NodeSpec, fn: NodeFn) -> None:
        if spec.id in self._nodes:
            raise ValueError(f"Node '{spec.id}' is already registered")
        if spec.id == END:
            raise ValueError(f"'{END}' is reserved")
        self._nodes[spec.id] = RegisteredNode(spec=spec, fn=fn)
        logger.debug(f"Registered node '{spec.id}'")

    def get(self, node_id: str) -> RegisteredNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise KeyError(f"Node '{node_id}' is not registered") from None

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self):
        return iter(self._nodes.values())

    def names(self) -> list[str]:
        return list(self._nodes)
