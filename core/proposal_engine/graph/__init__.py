"""Graph structures and execution engine."""

from proposal_engine.graph.builder import CompiledGraph, GraphBuilder
from proposal_engine.graph.channels import CHANNEL_REDUCERS, apply_update, replay
from proposal_engine.graph.edge import ConditionalEdgeSpec, EdgeSpec, JoinSpec
from proposal_engine.graph.executor import GraphExecutor, NodeOutcome
from proposal_engine.graph.node import END, NodeRegistry, NodeSpec, RoutingDirective
from proposal_engine.graph.router import Router
from proposal_engine.graph.synchronizer import Synchronizer

__all__ = [
    # Building
    "GraphBuilder",
    "CompiledGraph",
    "NodeSpec",
    "NodeRegistry",
    "EdgeSpec",
    "ConditionalEdgeSpec",
    "JoinSpec",
    "Router",
    "Synchronizer",
    "END",
    "RoutingDirective",
    # Channels
    "CHANNEL_REDUCERS",
    "apply_update",
    "replay",
    # Execution
    "GraphExecutor",
    "NodeOutcome",
]
