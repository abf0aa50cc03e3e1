"""
Synchronizer - Barrier in front of a join node.

Arrivals are kept in a plain mapping {join node: [arrived predecessors]}
that the executor stores in every checkpoint's metadata, so a barrier that
was half full when the process stopped is half full again on resume.

All methods are pure: they take the barrier map and return a new one.
"""

import logging

from proposal_engine.graph.edge import JoinSpec

logger = logging.getLogger(__name__)

Barriers = dict[str, list[str]]


class Synchronizer:
    """Tracks which members of a join's predecessor set have arrived this epoch."""

    def __init__(self, join: JoinSpec):
        self.join = join
        self.node = join.node
        self.predecessors = list(join.predecessors)

    def arrived(self, barriers: Barriers) -> list[str]:
        return list(barriers.get(self.node, []))

    def record_arrival(self, barriers: Barriers, node: str, written: set[str]) -> Barriers:
        """
        Record that a predecessor completed.

        Args:
            barriers: Current barrier map (not modified)
            node: The node that completed
            written: Channels the node wrote in this completion

        Returns:
            Updated barrier map. Unchanged if node is not a predecessor, has
            already arrived, or did not write every channel it is expected to.
        """
        if node not in self.predecessors:
            return barriers

        arrived = self.arrived(barriers)
        if node in arrived:
            return barriers

        missing_channels = [c for c in self.join.expects(node) if c not in written]
        if missing_channels:
            logger.warning(
                f"⑃ {node} completed without writing {missing_channels}; "
                f"not counted toward join '{self.node}'"
            )
            return barriers

        updated = dict(barriers)
        updated[self.node] = arrived + [node]
        logger.info(
            f"⑃ {self.node}: {node} arrived ({len(arrived) + 1}/{len(self.predecessors)})"
        )
        return updated

    def missing(self, barriers: Barriers) -> list[str]:
        arrived = set(self.arrived(barriers))
        return [p for p in self.predecessors if p not in arrived]

    def is_ready(self, barriers: Barriers) -> bool:
        return not self.missing(barriers)

    def reset(self, barriers: Barriers) -> Barriers:
        """Clear the barrier after the join fired, opening the next epoch."""
        updated = dict(barriers)
        updated.pop(self.node, None)
        return updated
