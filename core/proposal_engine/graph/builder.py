"""
Graph Builder - Declares nodes and edges, validates them, compiles the graph.

Every transition a graph can take is known after compile(): unconditional
edges, router path maps and node destinations together form the static
adjacency map. compile() rejects references to unregistered nodes, nodes
with no way out, and unreachable nodes, so a bad transition fails at build
time instead of halfway through a run.

Usage:
    builder = GraphBuilder()
    builder.add_node("load", load_fn, writes=["rfp_document"])
    builder.add_node("draft", draft_fn, reads=["research"], writes=["solution"])
    builder.add_edge("load", "draft")
    builder.set_entry_point("load")
    builder.add_terminal("draft")
    graph = builder.compile()
"""

import logging
from collections.abc import Mapping
from types import MappingProxyType

from proposal_engine.errors import GraphBuildError
from proposal_engine.graph.edge import ConditionalEdgeSpec, EdgeSpec, JoinSpec
from proposal_engine.graph.node import END, NodeFn, NodeRegistry, NodeSpec, RegisteredNode
from proposal_engine.graph.router import Router, RouterFn
from proposal_engine.graph.synchronizer import Synchronizer
from proposal_engine.schemas.state import WorkflowState

logger = logging.getLogger(__name__)


def _adjacency(
    registry: NodeRegistry,
    edges: list[EdgeSpec],
    conditional_edges: Mapping[str, ConditionalEdgeSpec],
) -> dict[str, set[str]]:
    adjacency: dict[str, set[str]] = {name: set() for name in registry.names()}
    for edge in edges:
        adjacency[edge.source].add(edge.target)
    for source, conditional in conditional_edges.items():
        adjacency[source] |= conditional.router.destinations
    for node in registry:
        adjacency[node.spec.id] |= set(node.spec.destinations)
    return adjacency


class CompiledGraph:
    """Validated, read-only graph the executor runs."""

    def __init__(
        self,
        registry: NodeRegistry,
        entry_point: str,
        edges: list[EdgeSpec],
        conditional_edges: dict[str, ConditionalEdgeSpec],
        joins: dict[str, JoinSpec],
        terminal_nodes: set[str],
    ):
        self.registry = registry
        self.entry_point = entry_point
        self.edges = tuple(edges)
        self.conditional_edges = MappingProxyType(dict(conditional_edges))
        self.joins = MappingProxyType(dict(joins))
        self.terminal_nodes = frozenset(terminal_nodes)
        self.synchronizers = MappingProxyType(
            {node: Synchronizer(join) for node, join in joins.items()}
        )
        self.allowed_successors: Mapping[str, frozenset[str]] = MappingProxyType(
            {
                name: frozenset(targets)
                for name, targets in _adjacency(registry, edges, conditional_edges).items()
            }
        )

    def node(self, node_id: str) -> RegisteredNode:
        return self.registry.get(node_id)

    def nodes(self) -> list[RegisteredNode]:
        return list(self.registry)

    def is_terminal(self, node_id: str) -> bool:
        return node_id in self.terminal_nodes

    def synchronizer(self, node_id: str) -> Synchronizer | None:
        return self.synchronizers.get(node_id)

    def joins_fed_by(self, node_id: str) -> list[Synchronizer]:
        """Synchronizers whose predecessor set contains node_id."""
        return [s for s in self.synchronizers.values() if node_id in s.predecessors]

    def static_successors(self, node_id: str, state: WorkflowState) -> list[str]:
        """
        Successors from unconditional edges plus the node's router, in order.

        Raises:
            RoutingError: The router chose an undeclared destination
        """
        successors = [e.target for e in self.edges if e.source == node_id]
        conditional = self.conditional_edges.get(node_id)
        if conditional is not None:
            successors.extend(conditional.router.resolve(state))
        ordered: list[str] = []
        for target in successors:
            if target not in ordered:
                ordered.append(target)
        return ordered


class GraphBuilder:
    """Collects node and edge declarations and compiles them into a CompiledGraph."""

    def __init__(self) -> None:
        self._registry = NodeRegistry()
        self._edges: list[EdgeSpec] = []
        self._conditional: dict[str, ConditionalEdgeSpec] = {}
        self._joins: dict[str, JoinSpec] = {}
        self._terminal: set[str] = set()
        self._entry: str | None = None
        self._errors: list[str] = []

    def add_node(
        self,
        node_id: str,
        fn: NodeFn,
        *,
        reads: list[str] | None = None,
        writes: list[str] | None = None,
        status_channel: str | None = None,
        destinations: list[str] | None = None,
        max_retries: int | None = None,
        timeout_seconds: float | None = None,
        description: str = "",
    ) -> "GraphBuilder":
        spec = NodeSpec(
            id=node_id,
            description=description,
            reads=reads or [],
            writes=writes or [],
            status_channel=status_channel,
            destinations=destinations or [],
            max_retries=max_retries,
            timeout_seconds=timeout_seconds,
        )
        try:
            self._registry.register(spec, fn)
        except ValueError as e:
            self._errors.append(str(e))
        return self

    def add_edge(self, source: str, target: str) -> "GraphBuilder":
        self._edges.append(EdgeSpec(source=source, target=target))
        return self

    def add_conditional_edges(
        self,
        source: str,
        router: Router | RouterFn,
        path_map: Mapping[str, str] | list[str] | None = None,
    ) -> "GraphBuilder":
        if source in self._conditional:
            self._errors.append(f"Node '{source}' already has a router")
            return self
        if not isinstance(router, Router):
            router = Router(f"{source}_router", router, path_map)
        self._conditional[source] = ConditionalEdgeSpec(source=source, router=router)
        return self

    def add_join(
        self,
        node: str,
        predecessors: list[str],
        expected_channels: dict[str, list[str]] | None = None,
    ) -> "GraphBuilder":
        if node in self._joins:
            self._errors.append(f"Join '{node}' declared twice")
            return self
        self._joins[node] = JoinSpec(
            node=node, predecessors=predecessors, expected_channels=expected_channels or {}
        )
        return self

    def set_entry_point(self, node_id: str) -> "GraphBuilder":
        self._entry = node_id
        return self

    def add_terminal(self, node_id: str) -> "GraphBuilder":
        self._terminal.add(node_id)
        return self

    def validate(self) -> list[str]:
        """Return every problem with the current declarations (empty when valid)."""
        errors = list(self._errors)
        known = set(self._registry.names())

        def check(name: str, where: str, allow_end: bool = True) -> None:
            if name == END and allow_end:
                return
            if name not in known:
                errors.append(f"{where} references unregistered node '{name}'")

        if self._entry is None:
            errors.append("No entry point set")
        else:
            check(self._entry, "Entry point", allow_end=False)

        for terminal in self._terminal:
            check(terminal, "Terminal", allow_end=False)

        for edge in self._edges:
            check(edge.source, f"Edge {edge.source}->{edge.target}", allow_end=False)
            check(edge.target, f"Edge {edge.source}->{edge.target}")

        for source, conditional in self._conditional.items():
            check(source, f"Router '{conditional.router.name}'", allow_end=False)
            for target in sorted(conditional.router.destinations):
                check(target, f"Router '{conditional.router.name}' path map")

        for node in self._registry:
            for target in node.spec.destinations:
                check(target, f"Node '{node.spec.id}' destination")
            if node.spec.status_channel and node.spec.status_channel not in WorkflowState.channels():
                errors.append(
                    f"Node '{node.spec.id}' status channel '{node.spec.status_channel}' "
                    "is not a state channel"
                )

        for join in self._joins.values():
            check(join.node, "Join", allow_end=False)
            if not join.predecessors:
                errors.append(f"Join '{join.node}' has an empty predecessor set")
            for predecessor in join.predecessors:
                check(predecessor, f"Join '{join.node}' predecessor", allow_end=False)
            for predecessor, channels in join.expected_channels.items():
                if predecessor not in join.predecessors:
                    errors.append(
                        f"Join '{join.node}' expects channels from non-member '{predecessor}'"
                    )
                unknown = set(channels) - WorkflowState.channels()
                if unknown:
                    errors.append(
                        f"Join '{join.node}' expects unknown channel(s) {sorted(unknown)}"
                    )

        # Every non-terminal node needs a way out
        sources = {e.source for e in self._edges} | set(self._conditional)
        for node in self._registry:
            node_id = node.spec.id
            if node_id in self._terminal:
                continue
            if node_id not in sources and not node.spec.destinations:
                errors.append(f"Node '{node_id}' has no outgoing edge and is not terminal")

        if errors:
            return errors

        # Reachability from the entry point over the full adjacency map
        adjacency = _adjacency(self._registry, self._edges, self._conditional)

        reachable: set[str] = set()
        to_visit = [self._entry]
        while to_visit:
            current = to_visit.pop()
            if current in reachable or current == END:
                continue
            reachable.add(current)
            to_visit.extend(adjacency.get(current, ()))

        for name in self._registry.names():
            if name not in reachable:
                label = "Join" if name in self._joins else "Node"
                errors.append(f"{label} '{name}' is unreachable from entry")

        return errors

    def compile(self) -> CompiledGraph:
        """
        Validate and freeze the graph.

        Raises:
            GraphBuildError: Listing every validation problem found
        """
        errors = self.validate()
        if errors:
            raise GraphBuildError(errors)

        graph = CompiledGraph(
            registry=self._registry,
            entry_point=self._entry,
            edges=self._edges,
            conditional_edges=self._conditional,
            joins=self._joins,
            terminal_nodes=self._terminal,
        )
        logger.info(
            f"✓ Compiled graph: {len(self._registry.names())} nodes, "
            f"{len(self._edges)} edges, {len(self._conditional)} routers, "
            f"{len(self._joins)} joins"
        )
        return graph
