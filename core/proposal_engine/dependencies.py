"""
Dependencies - Static map of which content is derived from which.

When a reviewer edits or rejects a piece of content, everything generated
from it, directly or transitively, is no longer trustworthy. The map is
computed once from the graph (each node's reads -> writes) plus an explicit
section-to-section mapping, and is used to build the update that marks
those dependents stale.

Content that was never generated (queued / not started) is not marked.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from proposal_engine.errors import ValidationError
from proposal_engine.graph.builder import CompiledGraph
from proposal_engine.schemas.state import (
    ProcessingStatus,
    WorkflowState,
    content_status,
    status_update,
    utc_now,
)

logger = logging.getLogger(__name__)

# section -> content it is written from
DEFAULT_SECTION_DEPENDENCIES: dict[str, list[str]] = {
    "problem_statement": ["research", "solution"],
    "methodology": ["problem_statement", "solution", "connections"],
    "budget": ["methodology"],
    "timeline": ["methodology", "budget"],
    "conclusion": ["problem_statement", "methodology", "budget", "timeline"],
}

_NEVER_GENERATED = {ProcessingStatus.NOT_STARTED, ProcessingStatus.QUEUED}


class DependencyMap:
    """Directed "is derived from" relation between content references."""

    def __init__(self, dependencies: Mapping[str, Iterable[str]] | None = None):
        self._deps: dict[str, set[str]] = {}
        for ref, deps in (dependencies or {}).items():
            self._add(ref, deps)

    def _add(self, ref: str, deps: Iterable[str]) -> None:
        deps = list(deps)
        self._deps.setdefault(ref, set()).update(d for d in deps if d != ref)
        for dep in deps:
            self._deps.setdefault(dep, set())

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Iterable[str]]) -> "DependencyMap":
        return cls(mapping)

    @classmethod
    def from_graph(cls, graph: CompiledGraph) -> "DependencyMap":
        """Every content reference a node writes depends on every reference it reads."""
        dep_map = cls()
        for node in graph.nodes():
            for written in node.spec.writes:
                dep_map._add(written, node.spec.reads)
        return dep_map

    def merge(self, other: "DependencyMap") -> "DependencyMap":
        merged = DependencyMap(self._deps)
        for ref, deps in other._deps.items():
            merged._add(ref, deps)
        return merged

    @property
    def references(self) -> list[str]:
        return sorted(self._deps)

    def dependencies_of(self, ref: str) -> list[str]:
        return sorted(self._deps.get(ref, ()))

    def dependents_of(self, ref: str) -> list[str]:
        return sorted(r for r, deps in self._deps.items() if ref in deps)

    def all_dependents(self, ref: str) -> list[str]:
        """Every reference that depends on ref directly or transitively (cycle-safe)."""
        seen: set[str] = set()
        to_visit = self.dependents_of(ref)
        while to_visit:
            current = to_visit.pop()
            if current in seen or current == ref:
                continue
            seen.add(current)
            to_visit.extend(self.dependents_of(current))
        return sorted(seen)

    def is_dependency_of(self, upstream: str, downstream: str) -> bool:
        return downstream in self.all_dependents(upstream)

    def in_dependency_order(self) -> list[str]:
        """Topological order: no reference appears before the ones it depends on."""
        visited: set[str] = set()
        ordered: list[str] = []

        def visit(ref: str) -> None:
            if ref in visited:
                return
            visited.add(ref)
            for dep in sorted(self._deps.get(ref, ())):
                visit(dep)
            ordered.append(ref)

        for ref in sorted(self._deps):
            visit(ref)
        return ordered

    def stale_update(self, state: WorkflowState, changed_ref: str) -> dict[str, Any]:
        """
        Build the update marking everything derived from changed_ref as stale.

        Args:
            state: Current state
            changed_ref: The content that was edited or rejected

        Returns:
            Partial update (possibly empty)
        """
        update: dict[str, Any] = {}
        marked: list[str] = []
        for ref in self.all_dependents(changed_ref):
            status = content_status(state, ref)
            if status is None or status in _NEVER_GENERATED or status == ProcessingStatus.STALE:
                continue
            _merge_into(update, status_update(state, ref, ProcessingStatus.STALE))
            marked.append(ref)
        if marked:
            logger.info(f"Marked stale after change to {changed_ref}: {marked}")
        return update


def keep_update(state: WorkflowState, section_id: str) -> dict[str, Any]:
    """
    Build the update that keeps a stale section as it is.

    The section returns to the status it had before it was marked stale.

    Raises:
        ValidationError: The section does not exist or is not stale
    """
    section = state.sections.get(section_id)
    if section is None:
        raise ValidationError(f"Section '{section_id}' does not exist", channel="sections")
    if section.status != ProcessingStatus.STALE:
        raise ValidationError(
            f"Section '{section_id}' is {section.status}, not stale", channel="sections"
        )
    return {
        "sections": {
            section_id: {"status": section.previous_status, "last_updated": utc_now()}
        }
    }


def _merge_into(target: dict[str, Any], update: dict[str, Any]) -> None:
    for channel, value in update.items():
        if channel == "sections":
            target.setdefault("sections", {}).update(value)
        else:
            target[channel] = value
