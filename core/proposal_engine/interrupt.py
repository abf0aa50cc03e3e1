"""
Interrupt Controller - Human review checkpoints inside a workflow.

Per-thread state machine:

    Running
      -> (node returns request_review(...))      Interrupted, no feedback
      -> (submit_feedback)                       Interrupted, feedback pending
      -> (resume: feedback applied)              Interrupted, processing
      -> (executor.run)                          Running ... Complete | Error

Feedback types:
- approve:    content approved, interrupt cleared; the interrupting node's
              router decides where to go next
- revise:     content marked edited, dependents stale, back to the node
              that generates it, with the reviewer's comments as guidance
- regenerate: content marked stale, dependents stale, back to the
              upstream node that produces it from scratch
"""

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from proposal_engine.dependencies import DependencyMap
from proposal_engine.errors import FeedbackMissing, ThreadNotFound, ThreadNotInterrupted
from proposal_engine.graph.executor import GraphExecutor
from proposal_engine.schemas.state import (
    EvaluationResult,
    FeedbackPayload,
    FeedbackProcessingStatus,
    FeedbackType,
    InterruptMetadata,
    InterruptReason,
    ProcessingStatus,
    UserFeedback,
    WorkflowState,
    content_value,
    status_update,
    utc_now,
)

logger = logging.getLogger(__name__)

FEEDBACK_NODE = "__feedback__"


def request_review(
    state: WorkflowState,
    node_id: str,
    content_reference: str,
    reason: InterruptReason = InterruptReason.CONTENT_REVIEW,
    evaluation: EvaluationResult | None = None,
) -> dict[str, Any]:
    """
    Build the update a node returns to pause the thread for review.

    Args:
        state: State the node was invoked with
        node_id: The requesting node (its router runs after approval)
        content_reference: What the reviewer should look at
        reason: Why the thread is pausing
        evaluation: Automated evaluation to show the reviewer

    Returns:
        Partial update that sets the interrupt and marks the content awaiting review
    """
    update: dict[str, Any] = {
        "interrupt_status": {
            "is_interrupted": True,
            "interruption_point": node_id,
            "feedback": None,
            "processing_status": None,
        },
        "interrupt_metadata": InterruptMetadata(
            reason=reason,
            node_id=node_id,
            content_reference=content_reference,
            evaluation_result=evaluation,
        ),
        "status": ProcessingStatus.AWAITING_REVIEW,
    }
    update.update(status_update(state, content_reference, ProcessingStatus.AWAITING_REVIEW))
    return update


@dataclass
class ContentRoute:
    """Nodes to return to when a piece of content is revised or regenerated."""

    revise: str
    regenerate: str | None = None

    def target(self, feedback_type: FeedbackType) -> str:
        if feedback_type == FeedbackType.REGENERATE and self.regenerate:
            return self.regenerate
        return self.revise


@dataclass
class InterruptDetails:
    node_id: str
    reason: InterruptReason
    content_reference: str | None
    timestamp: str
    evaluation_result: EvaluationResult | None = None


@dataclass
class InterruptContent:
    reference: str
    content: Any


class InterruptController:
    """
    Applies reviewer feedback to interrupted threads and resumes them.

    Every state change goes through GraphExecutor.update_state, so each
    transition of the state machine is its own checkpoint.
    """

    def __init__(
        self,
        executor: GraphExecutor,
        dependencies: DependencyMap | None = None,
        content_routes: Mapping[str, ContentRoute] | None = None,
        section_route: ContentRoute | None = None,
    ):
        """
        Args:
            executor: Executor that owns the threads
            dependencies: Map used to mark dependents stale
            content_routes: Per content reference, where revise/regenerate go
            section_route: Route for any section id not in content_routes
        """
        self.executor = executor
        self.dependencies = dependencies or DependencyMap()
        self.content_routes = dict(content_routes or {})
        self.section_route = section_route

    async def _state(self, thread_id: str) -> WorkflowState:
        state = await self.executor.get_state(thread_id)
        if state is None:
            raise ThreadNotFound(thread_id)
        return state

    async def detect_interrupt(self, thread_id: str) -> bool:
        return (await self._state(thread_id)).is_interrupted

    async def get_interrupt_details(self, thread_id: str) -> InterruptDetails | None:
        state = await self._state(thread_id)
        metadata = state.interrupt_metadata
        if not state.is_interrupted or metadata is None:
            return None
        return InterruptDetails(
            node_id=metadata.node_id,
            reason=metadata.reason,
            content_reference=metadata.content_reference,
            timestamp=metadata.timestamp,
            evaluation_result=metadata.evaluation_result,
        )

    async def get_interrupt_content(self, thread_id: str) -> InterruptContent | None:
        """The content under review, or None if there is nothing to show."""
        state = await self._state(thread_id)
        metadata = state.interrupt_metadata
        if not state.is_interrupted or metadata is None or not metadata.content_reference:
            return None
        content = content_value(state, metadata.content_reference)
        if content is None:
            return None
        return InterruptContent(reference=metadata.content_reference, content=content)

    async def submit_feedback(
        self, thread_id: str, feedback: UserFeedback | dict[str, Any]
    ) -> WorkflowState:
        """
        Record reviewer feedback without advancing the graph.

        Args:
            thread_id: Interrupted thread
            feedback: UserFeedback, or a dict accepted by UserFeedback

        Returns:
            State with the feedback pending

        Raises:
            ThreadNotInterrupted: There is no active interrupt
        """
        if not isinstance(feedback, UserFeedback):
            feedback = UserFeedback.model_validate(feedback)

        state = await self._state(thread_id)
        if not state.is_interrupted:
            raise ThreadNotInterrupted(thread_id)

        if feedback.content_reference is None and state.interrupt_metadata is not None:
            feedback = feedback.model_copy(
                update={"content_reference": state.interrupt_metadata.content_reference}
            )

        update = {
            "interrupt_status": {
                "feedback": FeedbackPayload(
                    type=feedback.type, content=feedback.comments, timestamp=feedback.timestamp
                ),
                "processing_status": FeedbackProcessingStatus.PENDING,
            },
            "user_feedback": feedback,
        }
        state = await self.executor.update_state(thread_id, update, as_node=FEEDBACK_NODE)
        logger.info(f"📥 Feedback ({feedback.type}) submitted for {thread_id}")
        return state

    def _route_for(self, state: WorkflowState, ref: str | None) -> ContentRoute | None:
        if ref is None:
            return None
        if ref in self.content_routes:
            return self.content_routes[ref]
        if ref in state.sections:
            return self.section_route
        return None

    def _transition(self, state: WorkflowState) -> tuple[dict[str, Any], str | None]:
        """The update and goto that apply the pending feedback."""
        feedback = state.user_feedback
        ref = feedback.content_reference
        if ref is None and state.interrupt_metadata is not None:
            ref = state.interrupt_metadata.content_reference

        update: dict[str, Any] = {
            "interrupt_status": {
                "is_interrupted": False,
                "interruption_point": None,
                "feedback": None,
                "processing_status": FeedbackProcessingStatus.PROCESSED,
            },
            "interrupt_metadata": None,
            "status": ProcessingStatus.RUNNING,
            "messages": [self._feedback_message(feedback, ref)],
        }
        if ref is None:
            return update, None

        if feedback.type == FeedbackType.APPROVE:
            update.update(status_update(state, ref, ProcessingStatus.APPROVED))
            return update, None

        new_status = (
            ProcessingStatus.EDITED
            if feedback.type == FeedbackType.REVISE
            else ProcessingStatus.STALE
        )
        content_update = status_update(state, ref, new_status)
        edited_content = feedback.specific_edits.get("content")
        if edited_content is not None and "sections" in content_update:
            content_update["sections"][ref]["content"] = edited_content
        stale = self.dependencies.stale_update(state, ref)
        if "sections" in stale and "sections" in content_update:
            stale["sections"].update(content_update.pop("sections"))
        update.update(content_update)
        update.update(stale)

        route = self._route_for(state, ref)
        if route is None:
            logger.warning(
                f"No generator route for '{ref}'; falling back to the interrupting node's router"
            )
            return update, None
        return update, route.target(feedback.type)

    @staticmethod
    def _feedback_message(feedback: UserFeedback, ref: str | None) -> dict[str, Any]:
        if feedback.comments:
            content = feedback.comments
        elif feedback.type == FeedbackType.APPROVE:
            content = f"The {ref or 'content'} has been approved."
        elif feedback.type == FeedbackType.REVISE:
            content = f"Please revise the {ref or 'content'}."
        else:
            content = f"Please regenerate the {ref or 'content'}."
        return {
            "id": f"feedback-{uuid.uuid4().hex[:12]}",
            "role": "user",
            "content": content,
            "timestamp": utc_now(),
            "feedback_type": feedback.type,
            "content_reference": ref,
        }

    async def resume(self, thread_id: str) -> WorkflowState:
        """
        Apply the pending feedback and continue the thread.

        Returns:
            State after the resumed run stops (complete, next interrupt, or idle)

        Raises:
            ThreadNotInterrupted: The thread is not waiting for feedback
            FeedbackMissing: No feedback was submitted for the interrupt
            Exception: Whatever the resumed run raised, after recording
                processing_status=failed on the thread
        """
        state = await self._state(thread_id)
        if not state.is_interrupted:
            raise ThreadNotInterrupted(thread_id)
        if state.user_feedback is None or state.interrupt_status.feedback is None:
            raise FeedbackMissing(thread_id)
        if state.interrupt_status.processing_status != FeedbackProcessingStatus.PENDING:
            logger.warning(
                f"Unexpected processing status when resuming {thread_id}: "
                f"{state.interrupt_status.processing_status}"
            )

        state = await self.executor.update_state(
            thread_id,
            {"interrupt_status": {"processing_status": FeedbackProcessingStatus.PROCESSING}},
            as_node=FEEDBACK_NODE,
        )

        update, goto = self._transition(state)
        await self.executor.update_state(thread_id, update, as_node=FEEDBACK_NODE, goto=goto)
        logger.info(
            f"🔄 Resuming {thread_id} after {state.user_feedback.type}"
            + (f" → {goto}" if goto else "")
        )

        try:
            return await self.executor.run(thread_id)
        except Exception as e:
            logger.error(f"✗ Resume of {thread_id} failed: {e}")
            await self.executor.update_state(
                thread_id,
                {
                    "interrupt_status": {"processing_status": FeedbackProcessingStatus.FAILED},
                    "errors": [f"Failed to resume graph: {e}"],
                },
                as_node=FEEDBACK_NODE,
            )
            raise
