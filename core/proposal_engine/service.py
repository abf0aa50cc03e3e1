"""
Orchestration Service - Thread lifecycle facade for callers (API, CLI).

Threads are addressed by a deterministic id built from the owner and the
subject of the work, so the same (user, RFP) pair resolves to the same
thread across restarts:

    user-1::rfp-42::proposal

Every mutation goes through the GraphExecutor (run or update_state), so
each transition is checkpointed.
"""

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from proposal_engine.config import EngineConfig
from proposal_engine.dependencies import DependencyMap, keep_update
from proposal_engine.errors import InvalidThreadKey, ThreadNotFound, ValidationError
from proposal_engine.graph.builder import CompiledGraph
from proposal_engine.graph.executor import GraphExecutor
from proposal_engine.interrupt import (
    ContentRoute,
    InterruptContent,
    InterruptController,
    InterruptDetails,
)
from proposal_engine.schemas.checkpoint import Checkpoint
from proposal_engine.schemas.state import (
    CONTENT_CHANNELS,
    FeedbackType,
    Message,
    ProcessingStatus,
    UserFeedback,
    WorkflowState,
    status_update,
    utc_now,
)
from proposal_engine.storage.checkpoint_store import create_backend, open_checkpoint_store

logger = logging.getLogger(__name__)

THREAD_KEY_SEPARATOR = "::"
USER_NODE = "__user__"

InputMapper = Callable[[dict[str, Any]], dict[str, Any]]


def thread_id_for(owner_key: str, subject_key: str, workflow_kind: str = "proposal") -> str:
    """
    Build the deterministic thread id for an owner/subject pair.

    Raises:
        InvalidThreadKey: A key is empty or contains the separator
    """
    parts = [owner_key, subject_key, workflow_kind]
    for part in parts:
        if not part or not part.strip():
            raise InvalidThreadKey("Thread keys cannot be empty")
        if THREAD_KEY_SEPARATOR in part:
            raise InvalidThreadKey(f"Thread key '{part}' cannot contain '{THREAD_KEY_SEPARATOR}'")
    return THREAD_KEY_SEPARATOR.join(p.strip() for p in parts)


def parse_thread_id(thread_id: str) -> tuple[str, str, str]:
    """Split a thread id into (owner_key, subject_key, workflow_kind)."""
    parts = thread_id.split(THREAD_KEY_SEPARATOR)
    if len(parts) != 3 or not all(parts):
        raise InvalidThreadKey(f"'{thread_id}' is not an owner::subject::kind thread id")
    return parts[0], parts[1], parts[2]


def default_input_mapper(initial_input: dict[str, Any]) -> dict[str, Any]:
    """Channel names pass through; any other key lands in the context channel."""
    channels = WorkflowState.channels()
    update = {k: v for k, v in initial_input.items() if k in channels}
    extra = {k: v for k, v in initial_input.items() if k not in channels}
    if extra:
        update["context"] = {**update.get("context", {}), **extra}
    return update


def _user_message(prefix: str, content: str, role: str = "user") -> Message:
    return Message(id=f"{prefix}-{uuid.uuid4().hex[:12]}", role=role, content=content)


@dataclass
class ThreadHandle:
    thread_id: str
    state: WorkflowState | None
    is_new: bool


class OrchestrationService:
    """
    Entry point for everything outside the engine.

    Example:
        service = await create_service(EngineConfig.load(), build_proposal_graph(services))
        handle = await service.init_or_get_thread("user-1", "rfp-42")
        state = await service.start(handle.thread_id, {"rfp_id": "42"})
        if state.is_interrupted:
            await service.submit_feedback(handle.thread_id, {"type": "approve"})
            state = await service.resume(handle.thread_id)
    """

    def __init__(
        self,
        executor: GraphExecutor,
        interrupts: InterruptController,
        workflow_kind: str = "proposal",
        input_mapper: InputMapper | None = None,
    ):
        self.executor = executor
        self.interrupts = interrupts
        self.workflow_kind = workflow_kind
        self.input_mapper = input_mapper or default_input_mapper

    # === THREAD LIFECYCLE ===

    async def init_or_get_thread(self, owner_key: str, subject_key: str) -> ThreadHandle:
        thread_id = thread_id_for(owner_key, subject_key, self.workflow_kind)
        state = await self.executor.get_state(thread_id)
        if state is None:
            logger.info(f"New thread {thread_id}")
        return ThreadHandle(thread_id=thread_id, state=state, is_new=state is None)

    async def start(self, thread_id: str, initial_input: dict[str, Any]) -> WorkflowState:
        """
        Seed a thread and run it until it stops.

        Starting a thread that already exists continues it from its latest
        checkpoint; the initial input is not applied again.
        """
        parse_thread_id(thread_id)
        if await self.executor.get_state(thread_id) is not None:
            logger.warning(f"Thread {thread_id} already started; continuing from checkpoint")
            return await self.executor.run(thread_id)
        return await self.executor.run(thread_id, input_override=self.input_mapper(initial_input))

    async def submit_message(
        self, thread_id: str, message: str | Message | dict[str, Any], role: str = "user"
    ) -> WorkflowState:
        """Append a message to the thread's log and run from the current checkpoint."""
        if isinstance(message, str):
            message = _user_message("msg", message, role=role)
        elif isinstance(message, dict):
            message = Message.model_validate(
                {"id": f"msg-{uuid.uuid4().hex[:12]}", "role": role, **message}
            )
        await self.executor.update_state(thread_id, {"messages": [message]}, as_node=USER_NODE)
        return await self.executor.run(thread_id)

    async def get_state(self, thread_id: str) -> WorkflowState:
        state = await self.executor.get_state(thread_id)
        if state is None:
            raise ThreadNotFound(thread_id)
        return state

    async def get_history(self, thread_id: str) -> list[Checkpoint]:
        return await self.executor.get_history(thread_id)

    # === CONTENT DECISIONS ===

    async def edit_content(self, thread_id: str, ref: str, content: Any) -> WorkflowState:
        """
        Replace a piece of content with a user edit and mark its dependents stale.

        Does not run the graph.
        """
        state = await self.get_state(thread_id)
        if ref in CONTENT_CHANNELS:
            results_channel, status_channel, _ = CONTENT_CHANNELS[ref]
            update: dict[str, Any] = {
                results_channel: content,
                status_channel: ProcessingStatus.EDITED,
            }
        elif ref in state.sections:
            update = {
                "sections": {
                    ref: {
                        "content": content,
                        "status": ProcessingStatus.EDITED,
                        "last_updated": utc_now(),
                    }
                }
            }
        else:
            raise ValidationError(f"Nothing to edit at '{ref}'", channel="sections")

        stale = self.interrupts.dependencies.stale_update(state, ref)
        if "sections" in stale and "sections" in update:
            stale["sections"].update(update.pop("sections"))
        update.update(stale)
        update["messages"] = [_user_message("edit", f"Content for {ref} has been edited.")]
        return await self.executor.update_state(thread_id, update, as_node=USER_NODE)

    async def keep_stale_section(
        self, thread_id: str, section_id: str, comments: str | None = None
    ) -> WorkflowState:
        """Keep a stale section as it is (restoring its previous status) and continue."""
        state = await self.get_state(thread_id)
        update = keep_update(state, section_id)
        if comments:
            update["messages"] = [_user_message("keep", comments)]
        await self.executor.update_state(thread_id, update, as_node=USER_NODE)
        return await self.executor.run(thread_id)

    async def regenerate_stale_section(
        self, thread_id: str, section_id: str, guidance: str | None = None
    ) -> WorkflowState:
        """Queue a stale section for regeneration and continue."""
        state = await self.get_state(thread_id)
        section = state.sections.get(section_id)
        if section is None or section.status != ProcessingStatus.STALE:
            raise ValidationError(f"Section '{section_id}' is not stale", channel="sections")

        update = status_update(state, section_id, ProcessingStatus.QUEUED)
        if guidance:
            update["messages"] = [_user_message("regen", guidance)]
        route = self.interrupts.section_route
        goto = route.target(FeedbackType.REGENERATE) if route else None
        await self.executor.update_state(thread_id, update, as_node=USER_NODE, goto=goto)
        return await self.executor.run(thread_id)

    # === INTERRUPTS ===

    async def detect_interrupt(self, thread_id: str) -> bool:
        return await self.interrupts.detect_interrupt(thread_id)

    async def get_interrupt_details(self, thread_id: str) -> InterruptDetails | None:
        return await self.interrupts.get_interrupt_details(thread_id)

    async def get_interrupt_content(self, thread_id: str) -> InterruptContent | None:
        return await self.interrupts.get_interrupt_content(thread_id)

    async def submit_feedback(
        self, thread_id: str, feedback: UserFeedback | dict[str, Any]
    ) -> WorkflowState:
        return await self.interrupts.submit_feedback(thread_id, feedback)

    async def resume(self, thread_id: str) -> WorkflowState:
        return await self.interrupts.resume(thread_id)


async def create_service(
    config: EngineConfig,
    graph: CompiledGraph,
    section_dependencies: Mapping[str, list[str]] | None = None,
    content_routes: Mapping[str, ContentRoute] | None = None,
    section_route: ContentRoute | None = None,
    input_mapper: InputMapper | None = None,
) -> OrchestrationService:
    """
    Wire store, executor and interrupt controller from configuration.

    Args:
        config: Engine configuration
        graph: Compiled workflow graph
        section_dependencies: Section-to-section dependencies added to the
            ones derived from the graph
        content_routes: Where revise/regenerate feedback sends each content reference
        section_route: Route for section ids
        input_mapper: Turns a caller's initial input into the seed update

    Returns:
        Ready OrchestrationService
    """
    store = await open_checkpoint_store(
        create_backend(config),
        fallback=config.fallback_to_memory,
        retry_policy=config.store_retry,
    )
    executor = GraphExecutor(
        graph,
        store,
        recursion_limit=config.recursion_limit,
        retry_policy=config.node_retry,
        node_timeout_seconds=config.node_timeout_seconds,
    )
    dependencies = DependencyMap.from_graph(graph)
    if section_dependencies:
        dependencies = dependencies.merge(DependencyMap.from_mapping(section_dependencies))
    interrupts = InterruptController(
        executor, dependencies, content_routes=content_routes, section_route=section_route
    )
    return OrchestrationService(
        executor, interrupts, workflow_kind=config.workflow_kind, input_mapper=input_mapper
    )
