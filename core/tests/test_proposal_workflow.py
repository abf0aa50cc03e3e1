"""End-to-end tests for the proposal graph driven through the orchestration service."""

import json
from collections import Counter

import pytest

from proposal_engine.config import EngineConfig
from proposal_engine.errors import DocumentNotFoundError, RoutingError
from proposal_engine.graph.channels import replay
from proposal_engine.nodes import LoadedDocument
from proposal_engine.proposal import (
    INTELLIGENCE_BRANCHES,
    PROPOSAL_CONTENT_ROUTES,
    SECTION_ROUTE,
    ProposalServices,
    build_proposal_graph,
    proposal_input_mapper,
    route_after_review,
)
from proposal_engine.retry import RetryPolicy
from proposal_engine.schemas.state import (
    LoadingStatus,
    ProcessingStatus,
    Section,
    WorkflowState,
)
from proposal_engine.service import create_service

THREAD = "user-1::rfp-42::proposal"
SECTIONS = ["problem_statement", "methodology", "budget", "timeline", "conclusion"]

S = ProcessingStatus


class FakeCollaborators:
    """Canned generators that record what they were asked for."""

    def __init__(self, fail_document: bool = False, broken_topic: str | None = None):
        self.calls: Counter[str] = Counter()
        self.fail_document = fail_document
        self.broken_topic = broken_topic
        self.connections_saw: list[str] = []

    async def fetch(self, document_id: str) -> LoadedDocument:
        self.calls["document"] += 1
        if self.fail_document:
            raise DocumentNotFoundError(document_id)
        return LoadedDocument(text="Community health RFP", metadata={"agency": "HRSA"})

    def research(self, state: WorkflowState) -> str:
        self.calls["research"] += 1
        guidance = state.user_feedback.comments if state.user_feedback else None
        return json.dumps({"funder": "HRSA", "guidance": guidance})

    def solution(self, state: WorkflowState) -> str:
        self.calls["solution"] += 1
        return '{"approach": "mobile clinics"}'

    async def intelligence(self, state: WorkflowState, topic: str):
        self.calls[topic] += 1
        if topic == self.broken_topic:
            return "I could not find anything."
        return {"summary": f"{topic} findings"}

    def connections(self, state: WorkflowState) -> str:
        self.calls["connections"] += 1
        self.connections_saw = sorted(state.intelligence)
        return '[{"need": "rural access", "offer": "mobile clinics"}]'

    async def section(self, state: WorkflowState, section_id: str) -> str:
        self.calls[section_id] += 1
        return f"{section_id} draft {self.calls[section_id]}"

    def services(self) -> ProposalServices:
        return ProposalServices(
            documents=self,
            research=self.research,
            solution=self.solution,
            connections=self.connections,
            intelligence=self.intelligence,
            section=self.section,
            timeout_seconds=5.0,
            document_retry=RetryPolicy(max_attempts=2, base_delay=0.0, jitter=0.0),
        )


async def proposal_service(fake: FakeCollaborators):
    services = fake.services()
    config = EngineConfig(
        checkpoint_backend="memory",
        node_retry=RetryPolicy(max_attempts=2, base_delay=0.0, jitter=0.0),
    )
    return await create_service(
        config,
        build_proposal_graph(services),
        section_dependencies=services.section_dependencies,
        content_routes=PROPOSAL_CONTENT_ROUTES,
        section_route=SECTION_ROUTE,
        input_mapper=proposal_input_mapper,
    )


async def review_reference(service) -> str:
    return (await service.get_interrupt_details(THREAD)).content_reference


async def approve_all(service, state) -> list[str]:
    """Approve every review until the thread stops interrupting; returns what was reviewed."""
    reviewed = []
    while state.is_interrupted:
        reviewed.append(await review_reference(service))
        await service.submit_feedback(THREAD, {"type": "approve"})
        state = await service.resume(THREAD)
    return reviewed


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestFullProposal:
    @pytest.mark.asyncio
    async def test_research_to_complete(self):
        fake = FakeCollaborators()
        service = await proposal_service(fake)

        state = await service.start(THREAD, {"rfp_id": 42})

        assert state.is_interrupted
        assert state.rfp_document.status == LoadingStatus.LOADED
        assert state.rfp_document.text == "Community health RFP"
        assert state.context == {"rfp_id": "42"}
        content = await service.get_interrupt_content(THREAD)
        assert content.reference == "research"
        assert content.content["funder"] == "HRSA"

        reviewed = await approve_all(service, state)

        assert reviewed == ["research", "solution", "connections", *SECTIONS]
        state = await service.get_state(THREAD)
        assert state.status == S.COMPLETE
        assert state.current_step is None
        assert state.required_sections == SECTIONS
        assert all(state.sections[sid].status == S.APPROVED for sid in SECTIONS)
        assert state.sections["budget"].content == "budget draft 1"
        assert state.research_status == S.APPROVED
        assert state.connections == [{"need": "rural access", "offer": "mobile clinics"}]

    @pytest.mark.asyncio
    async def test_intelligence_branches_all_land_before_connections(self):
        fake = FakeCollaborators()
        service = await proposal_service(fake)
        state = await service.start(THREAD, {"rfp_id": "42"})

        for _ in range(2):  # research, solution
            await service.submit_feedback(THREAD, {"type": "approve"})
            state = await service.resume(THREAD)

        assert await review_reference(service) == "connections"
        assert fake.connections_saw == sorted(INTELLIGENCE_BRANCHES.values())
        assert state.intelligence_status == S.COMPLETE
        assert all(fake.calls[topic] == 1 for topic in INTELLIGENCE_BRANCHES.values())

    @pytest.mark.asyncio
    async def test_history_replays_to_latest_state(self):
        service = await proposal_service(FakeCollaborators())
        await approve_all(service, await service.start(THREAD, {"rfp_id": "42"}))

        history = await service.get_history(THREAD)

        assert replay(history).model_dump() == history[0].state().model_dump()


# ---------------------------------------------------------------------------
# Review decisions
# ---------------------------------------------------------------------------


class TestReviewDecisions:
    @pytest.mark.asyncio
    async def test_revise_research_with_guidance(self):
        fake = FakeCollaborators()
        service = await proposal_service(fake)
        await service.start(THREAD, {"rfp_id": "42"})

        await service.submit_feedback(
            THREAD, {"type": "revise", "comments": "Include state-level funders"}
        )
        state = await service.resume(THREAD)

        assert fake.calls["research"] == 2
        assert fake.calls["solution"] == 0
        assert state.is_interrupted
        assert await review_reference(service) == "research"
        assert state.research_results["guidance"] == "Include state-level funders"
        assert state.research_status == S.AWAITING_REVIEW

    @pytest.mark.asyncio
    async def test_regenerate_section_under_review(self):
        fake = FakeCollaborators()
        service = await proposal_service(fake)
        state = await service.start(THREAD, {"rfp_id": "42"})
        for _ in range(3):  # research, solution, connections
            await service.submit_feedback(THREAD, {"type": "approve"})
            state = await service.resume(THREAD)
        assert await review_reference(service) == "problem_statement"

        await service.submit_feedback(THREAD, {"type": "regenerate"})
        state = await service.resume(THREAD)

        assert fake.calls["problem_statement"] == 2
        assert await review_reference(service) == "problem_statement"
        assert state.sections["problem_statement"].content == "problem_statement draft 2"
        # Sections that were never generated are not marked stale
        assert state.sections["methodology"].status == S.QUEUED

    @pytest.mark.asyncio
    async def test_kept_sections_survive_and_stale_ones_are_regenerated(self):
        fake = FakeCollaborators()
        service = await proposal_service(fake)
        await approve_all(service, await service.start(THREAD, {"rfp_id": "42"}))

        state = await service.edit_content(THREAD, "methodology", "Hand-written methodology")

        assert state.sections["methodology"].status == S.EDITED
        assert state.sections["methodology"].content == "Hand-written methodology"
        for sid in ("budget", "timeline", "conclusion"):
            assert state.sections[sid].status == S.STALE
            assert state.sections[sid].previous_status == S.APPROVED
        assert state.sections["problem_statement"].status == S.APPROVED

        state = await service.keep_stale_section(THREAD, "budget", comments="Budget still holds")
        assert state.sections["budget"].status == S.APPROVED
        assert state.sections["budget"].content == "budget draft 1"
        assert not state.is_interrupted

        state = await service.regenerate_stale_section(
            THREAD, "timeline", guidance="Compress to 12 months"
        )
        assert state.is_interrupted
        assert await review_reference(service) == "timeline"
        assert state.sections["timeline"].content == "timeline draft 2"

        reviewed = await approve_all(service, state)
        state = await service.get_state(THREAD)
        # The remaining stale section is rewritten before the thread completes
        assert reviewed == ["timeline", "conclusion"]
        assert state.status == S.COMPLETE
        assert state.sections["conclusion"].content == "conclusion draft 2"
        assert all(state.sections[sid].status != S.STALE for sid in SECTIONS)
        assert state.sections["budget"].content == "budget draft 1"
        assert fake.calls["budget"] == 1


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_missing_document_stops_the_thread(self):
        fake = FakeCollaborators(fail_document=True)
        service = await proposal_service(fake)

        state = await service.start(THREAD, {"rfp_id": "42"})

        assert not state.is_interrupted
        assert state.status == S.ERROR
        assert state.rfp_document.status == LoadingStatus.ERROR
        assert state.errors == ["documentLoader: Document not found: 42"]
        assert fake.calls["research"] == 0

    @pytest.mark.asyncio
    async def test_failed_intelligence_branch_blocks_the_join(self):
        fake = FakeCollaborators(broken_topic="decision_makers")
        service = await proposal_service(fake)
        state = await service.start(THREAD, {"rfp_id": "42"})
        for _ in range(2):
            await service.submit_feedback(THREAD, {"type": "approve"})
            state = await service.resume(THREAD)

        assert state.status == S.ERROR
        assert state.intelligence_status == S.ERROR
        assert state.errors[0].startswith("decisionMakers: ContentParseError")
        assert "decision_makers" not in state.intelligence
        assert len(state.intelligence) == 3
        assert fake.calls["connections"] == 0


# ---------------------------------------------------------------------------
# Pieces
# ---------------------------------------------------------------------------


def test_input_mapper_seeds_document():
    update = proposal_input_mapper({"rfp_id": 42, "owner": "user-1"})

    assert update["rfp_document"] == {"id": "42", "status": LoadingStatus.NOT_STARTED}
    assert update["context"] == {"owner": "user-1", "rfp_id": "42"}


def test_route_after_review():
    section = Section(id="budget", status=S.APPROVED, previous_status=S.APPROVED)

    assert route_after_review(WorkflowState(current_step="research")) == "solutionSought"
    assert route_after_review(WorkflowState(current_step="solution")) == "intelligenceDispatcher"
    assert route_after_review(WorkflowState(current_step="connections")) == "sectionManager"
    assert (
        route_after_review(WorkflowState(current_step="budget", sections={"budget": section}))
        == "sectionManager"
    )
    with pytest.raises(RoutingError):
        route_after_review(WorkflowState(current_step="appendix"))
