"""
Proposal Workflow - The grant/RFP proposal graph.

    documentLoader
        -> deepResearch -> humanReview
        -> solutionSought -> humanReview
        -> intelligenceDispatcher
             => strategicInitiatives | vendorRelationships
              | procurementPatterns  | decisionMakers
        -> intelligenceSynchronizer (join)
        -> connectionPairs -> humanReview
        -> sectionManager <-> sectionGenerator -> humanReview
        -> complete

humanReview is a single interrupt node shared by every phase; what it
reviews is whatever current_step names, and route_after_review sends the
approved thread on to the next phase.

Content generation itself is supplied by the caller through
ProposalServices.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from proposal_engine.dependencies import DEFAULT_SECTION_DEPENDENCIES, DependencyMap
from proposal_engine.errors import RoutingError, ValidationError
from proposal_engine.graph.builder import CompiledGraph, GraphBuilder
from proposal_engine.graph.node import RoutingDirective
from proposal_engine.graph.router import Router
from proposal_engine.interrupt import ContentRoute
from proposal_engine.nodes.content import call_collaborator, content_node, human_review_node
from proposal_engine.nodes.document_loader import DocumentSource, document_loader_node
from proposal_engine.nodes.parsing import extract_structured
from proposal_engine.retry import RetryPolicy
from proposal_engine.schemas.state import (
    CONTENT_CHANNELS,
    EvaluationResult,
    LoadingStatus,
    ProcessingStatus,
    Section,
    WorkflowState,
    utc_now,
)
from proposal_engine.service import default_input_mapper

logger = logging.getLogger(__name__)

# Intelligence branch node -> key in the intelligence channel
INTELLIGENCE_BRANCHES: dict[str, str] = {
    "strategicInitiatives": "strategic_initiatives",
    "vendorRelationships": "vendor_relationships",
    "procurementPatterns": "procurement_patterns",
    "decisionMakers": "decision_makers",
}

SECTION_TITLES: dict[str, str] = {
    "problem_statement": "Problem Statement",
    "methodology": "Methodology",
    "budget": "Budget",
    "timeline": "Timeline",
    "conclusion": "Conclusion",
}

# Where revise / regenerate feedback sends each reviewed piece of content
PROPOSAL_CONTENT_ROUTES: dict[str, ContentRoute] = {
    "research": ContentRoute(revise="deepResearch"),
    "solution": ContentRoute(revise="solutionSought"),
    "intelligence": ContentRoute(revise="intelligenceDispatcher"),
    "connections": ContentRoute(revise="connectionPairs"),
}
SECTION_ROUTE = ContentRoute(revise="sectionGenerator", regenerate="sectionManager")

# Still to be (re)written by sectionGenerator; stale sections not kept are regenerated
_TO_GENERATE = {
    ProcessingStatus.QUEUED,
    ProcessingStatus.NEEDS_REVISION,
    ProcessingStatus.STALE,
}


@dataclass
class ProposalServices:
    """
    Content-generation collaborators for the proposal graph.

    Generators receive the full state (including user_feedback when the
    content is being revised) and return raw output, usually JSON text.
    """

    documents: DocumentSource
    research: Callable[[WorkflowState], Any]
    solution: Callable[[WorkflowState], Any]
    connections: Callable[[WorkflowState], Any]
    # (state, topic) -> findings for one intelligence branch
    intelligence: Callable[[WorkflowState, str], Any]
    # (state, section_id) -> section text
    section: Callable[[WorkflowState, str], Any]
    # Optional automated checks keyed by content reference ("research", "solution", ...)
    evaluators: dict[str, Callable[[WorkflowState, Any], Any]] = field(default_factory=dict)
    section_evaluator: Callable[[WorkflowState, str, str], Any] | None = None
    section_dependencies: Mapping[str, list[str]] = field(
        default_factory=lambda: dict(DEFAULT_SECTION_DEPENDENCIES)
    )
    timeout_seconds: float | None = 60.0
    document_retry: RetryPolicy | None = None


# === ROUTERS ===


def route_after_load(state: WorkflowState) -> list[str]:
    document = state.rfp_document
    if document is None or document.status != LoadingStatus.LOADED:
        return []
    return ["loaded"]


def route_after_review(state: WorkflowState) -> str:
    """Next phase once the content named in current_step is approved."""
    ref = state.current_step
    if ref == "research":
        return "solutionSought"
    if ref == "solution":
        return "intelligenceDispatcher"
    if ref in ("connections", "intelligence"):
        return "sectionManager"
    if ref in state.sections:
        return "sectionManager"
    raise RoutingError(f"No review route for '{ref}'")


# === NODES ===


def _section_order(services: ProposalServices, state: WorkflowState) -> list[str]:
    required = state.required_sections or list(SECTION_TITLES)
    ordered = DependencyMap.from_mapping(services.section_dependencies).in_dependency_order()
    in_order = [s for s in ordered if s in required]
    return in_order + [s for s in required if s not in in_order]


def _section_manager(services: ProposalServices):
    def manage_sections(state: WorkflowState) -> RoutingDirective:
        update: dict[str, Any] = {}
        sections = dict(state.sections)

        if not sections:
            order = _section_order(services, state)
            new_sections = {
                sid: Section(
                    id=sid,
                    title=SECTION_TITLES.get(sid, sid.replace("_", " ").title()),
                    status=ProcessingStatus.QUEUED,
                    previous_status=ProcessingStatus.QUEUED,
                )
                for sid in order
            }
            update["sections"] = new_sections
            update["required_sections"] = order
            sections = new_sections
            logger.info(f"Queued sections: {order}")

        for sid in _section_order(services, state) or list(sections):
            section = sections.get(sid)
            if section is None:
                continue
            if section.status in _TO_GENERATE:
                update["current_step"] = sid
                entry = {"status": ProcessingStatus.GENERATING, "last_updated": utc_now()}
                queued = update.setdefault("sections", {})
                if sid in queued:
                    queued[sid] = queued[sid].model_copy(update=entry)
                else:
                    queued[sid] = entry
                return RoutingDirective(update=update, goto="sectionGenerator")

        return RoutingDirective(update=update, goto="complete")

    return manage_sections


def _section_generator(services: ProposalServices):
    async def generate_section(state: WorkflowState) -> dict[str, Any]:
        sid = state.current_step
        if not sid or sid not in state.sections:
            raise ValidationError(f"No section to generate at '{sid}'", channel="current_step")

        raw = await call_collaborator(
            services.section, state, sid,
            timeout=services.timeout_seconds, what=f"section {sid} generation",
        )
        if isinstance(raw, dict):
            raw = raw.get("content", "")
        if not isinstance(raw, str) or not raw.strip():
            raise ValidationError(f"Section '{sid}' generator returned no text", channel="sections")

        entry: dict[str, Any] = {
            "content": raw,
            "status": ProcessingStatus.COMPLETE,
            "last_updated": utc_now(),
        }
        if services.section_evaluator is not None:
            evaluation = await call_collaborator(
                services.section_evaluator, state, sid, raw,
                timeout=services.timeout_seconds, what=f"section {sid} evaluation",
            )
            if not isinstance(evaluation, EvaluationResult):
                evaluation = EvaluationResult.model_validate(evaluation)
            entry["evaluation"] = evaluation
        return {"sections": {sid: entry}, "current_step": sid}

    return generate_section


def _intelligence_dispatcher(state: WorkflowState) -> RoutingDirective:
    return RoutingDirective(
        update={
            "intelligence_status": ProcessingStatus.RUNNING,
            "current_step": "intelligence",
        },
        goto=list(INTELLIGENCE_BRANCHES),
    )


def _intelligence_branch(services: ProposalServices, topic: str):
    async def research_topic(state: WorkflowState) -> dict[str, Any]:
        raw = await call_collaborator(
            services.intelligence, state, topic,
            timeout=services.timeout_seconds, what=f"{topic} intelligence",
        )
        return {"intelligence": {topic: extract_structured(raw, what=topic)}}

    return research_topic


def _intelligence_synchronizer(state: WorkflowState) -> dict[str, Any]:
    missing = [t for t in INTELLIGENCE_BRANCHES.values() if t not in state.intelligence]
    if missing:
        logger.warning(f"Intelligence incomplete, missing {missing}")
    return {"intelligence_status": ProcessingStatus.COMPLETE}


def _complete(state: WorkflowState) -> dict[str, Any]:
    logger.info(f"✓ Proposal for {state.active_thread_id} complete")
    return {"current_step": None}


# === GRAPH ===


def build_proposal_graph(services: ProposalServices) -> CompiledGraph:
    """
    Build and compile the proposal graph around the given collaborators.

    Raises:
        GraphBuildError: The graph does not validate
    """
    timeout = services.timeout_seconds
    builder = GraphBuilder()

    builder.add_node(
        "documentLoader",
        document_loader_node(services.documents, services.document_retry),
        description="Load the RFP text",
    )

    for node_id, ref, generate, reads in (
        ("deepResearch", "research", services.research, []),
        ("solutionSought", "solution", services.solution, ["research"]),
        ("connectionPairs", "connections", services.connections,
         ["research", "solution", "intelligence"]),
    ):
        results_channel, status_channel, evaluation_channel = CONTENT_CHANNELS[ref]
        builder.add_node(
            node_id,
            content_node(
                results_channel, status_channel, generate,
                timeout_seconds=timeout,
                reference=ref,
                evaluation_channel=evaluation_channel,
                evaluate=services.evaluators.get(ref),
            ),
            reads=reads,
            writes=[ref],
            status_channel=status_channel,
        )

    builder.add_node("humanReview", human_review_node("humanReview"))

    builder.add_node(
        "intelligenceDispatcher",
        _intelligence_dispatcher,
        destinations=list(INTELLIGENCE_BRANCHES),
    )
    for node_id, topic in INTELLIGENCE_BRANCHES.items():
        builder.add_node(
            node_id,
            _intelligence_branch(services, topic),
            reads=["research", "solution"],
            writes=["intelligence"],
            status_channel="intelligence_status",
        )
        builder.add_edge(node_id, "intelligenceSynchronizer")
    builder.add_node("intelligenceSynchronizer", _intelligence_synchronizer)
    builder.add_join(
        "intelligenceSynchronizer",
        list(INTELLIGENCE_BRANCHES),
        expected_channels={node_id: ["intelligence"] for node_id in INTELLIGENCE_BRANCHES},
    )

    builder.add_node(
        "sectionManager", _section_manager(services), destinations=["sectionGenerator", "complete"]
    )
    builder.add_node("sectionGenerator", _section_generator(services))
    builder.add_node("complete", _complete)

    builder.add_conditional_edges(
        "documentLoader", Router("route_after_load", route_after_load, {"loaded": "deepResearch"})
    )
    builder.add_edge("deepResearch", "humanReview")
    builder.add_edge("solutionSought", "humanReview")
    builder.add_edge("intelligenceSynchronizer", "connectionPairs")
    builder.add_edge("connectionPairs", "humanReview")
    builder.add_edge("sectionGenerator", "humanReview")
    builder.add_conditional_edges(
        "humanReview",
        Router(
            "route_after_review",
            route_after_review,
            ["solutionSought", "intelligenceDispatcher", "sectionManager"],
        ),
    )

    builder.set_entry_point("documentLoader")
    builder.add_terminal("complete")
    return builder.compile()


def proposal_input_mapper(initial_input: dict[str, Any]) -> dict[str, Any]:
    """
    Map a caller's seed input onto channels.

    {"rfp_id": "42"} seeds rfp_document with id "42"; everything else goes
    through the default mapping (channels as-is, the rest into context).
    """
    rest = dict(initial_input)
    rfp_id = rest.pop("rfp_id", None)
    update = default_input_mapper(rest)
    if rfp_id is not None:
        update["rfp_document"] = {
            **update.get("rfp_document", {}),
            "id": str(rfp_id),
            "status": LoadingStatus.NOT_STARTED,
        }
        update["context"] = {**update.get("context", {}), "rfp_id": str(rfp_id)}
    return update
