"""
Proposal Engine - Durable workflow orchestration for AI-assisted proposal writing.

A workflow is a graph of nodes over a shared, checkpointed state. Threads
can pause for human review, be resumed after feedback, and pick up where
they stopped after a restart.
"""

from proposal_engine.config import EngineConfig
from proposal_engine.graph import END, GraphBuilder, GraphExecutor, Router, RoutingDirective
from proposal_engine.interrupt import ContentRoute, InterruptController, request_review
from proposal_engine.schemas import WorkflowState
from proposal_engine.service import OrchestrationService, create_service, thread_id_for

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "END",
    "GraphBuilder",
    "GraphExecutor",
    "Router",
    "RoutingDirective",
    "ContentRoute",
    "InterruptController",
    "request_review",
    "WorkflowState",
    "OrchestrationService",
    "create_service",
    "thread_id_for",
]
