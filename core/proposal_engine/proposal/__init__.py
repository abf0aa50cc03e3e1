"""The grant/RFP proposal workflow built on the engine."""

from proposal_engine.proposal.workflow import (
    INTELLIGENCE_BRANCHES,
    PROPOSAL_CONTENT_ROUTES,
    SECTION_ROUTE,
    ProposalServices,
    build_proposal_graph,
    proposal_input_mapper,
    route_after_review,
)

__all__ = [
    "INTELLIGENCE_BRANCHES",
    "PROPOSAL_CONTENT_ROUTES",
    "SECTION_ROUTE",
    "ProposalServices",
    "build_proposal_graph",
    "proposal_input_mapper",
    "route_after_review",
]
