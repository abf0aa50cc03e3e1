"""
Content Nodes - Adapters between the engine and content-generation collaborators.

A collaborator is any callable (state) -> raw output, sync or async. The
adapter bounds it with a timeout, parses the output into structured
content, and returns the named result channel. Failures are raised as
typed errors so the executor can retry the transient ones and record the
rest in the errors channel with the content's status set to "error".
"""

import inspect
import logging
from collections.abc import Callable
from typing import Any

from proposal_engine.config import DEFAULT_NODE_TIMEOUT_SECONDS
from proposal_engine.errors import ValidationError
from proposal_engine.interrupt import request_review
from proposal_engine.nodes.parsing import extract_structured
from proposal_engine.nodes.timeouts import with_timeout
from proposal_engine.schemas.state import (
    EvaluationResult,
    InterruptReason,
    ProcessingStatus,
    WorkflowState,
    content_evaluation,
    content_value,
)

logger = logging.getLogger(__name__)

Generator = Callable[[WorkflowState], Any]
Evaluator = Callable[[WorkflowState, Any], Any]


async def call_collaborator(
    fn: Callable[..., Any], *args: Any, timeout: float | None, what: str
) -> Any:
    """Call a collaborator, bounding it with a timeout when it is async."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await with_timeout(result, timeout, what=what)
    return result


def content_node(
    channel: str,
    status_channel: str,
    generate: Generator,
    timeout_seconds: float | None = DEFAULT_NODE_TIMEOUT_SECONDS,
    reference: str | None = None,
    evaluation_channel: str | None = None,
    evaluate: Evaluator | None = None,
    parse: bool = True,
):
    """
    Wrap a content generator as a node.

    Args:
        channel: Result channel the parsed content is written to
        status_channel: Status channel set to "complete" on success
        generate: Collaborator producing the raw content
        timeout_seconds: Budget for one generate call
        reference: Content reference recorded in current_step for review
        evaluation_channel: Where the evaluator's result goes
        evaluate: Optional automated check (state, content) -> EvaluationResult
        parse: Run the output through extract_structured

    Returns:
        Async node function
    """

    async def generate_content(state: WorkflowState) -> dict[str, Any]:
        what = reference or channel
        raw = await call_collaborator(
            generate, state, timeout=timeout_seconds, what=f"{what} generation"
        )
        content = extract_structured(raw, what=what) if parse else raw

        update: dict[str, Any] = {channel: content, status_channel: ProcessingStatus.COMPLETE}
        if reference:
            update["current_step"] = reference

        if evaluate is not None and evaluation_channel:
            evaluation = await call_collaborator(
                evaluate, state, content, timeout=timeout_seconds, what=f"{what} evaluation"
            )
            if not isinstance(evaluation, EvaluationResult):
                evaluation = EvaluationResult.model_validate(evaluation)
            update[evaluation_channel] = evaluation
            logger.info(f"{what} evaluated: score={evaluation.score} passed={evaluation.passed}")

        return update

    return generate_content


def human_review_node(node_id: str = "humanReview"):
    """
    Build the node that pauses for review of the content named in current_step.

    The interrupt carries the content's evaluation when there is one.
    """

    def review(state: WorkflowState) -> dict[str, Any]:
        ref = state.current_step
        if not ref or content_value(state, ref) is None:
            raise ValidationError(f"Nothing to review at '{ref}'", channel="current_step")

        evaluation = content_evaluation(state, ref)
        reason = (
            InterruptReason.EVALUATION_NEEDED if evaluation else InterruptReason.CONTENT_REVIEW
        )
        logger.info(f"⏸ Requesting review of {ref}")
        return request_review(state, node_id, ref, reason=reason, evaluation=evaluation)

    return review
