"""
Router - Pure branch-point functions selecting the next node(s).

A router reads state and returns a key, a list of keys (fan-out), or node
names directly. Keys are mapped through the router's path map; anything
that does not resolve to a declared destination is a RoutingError.

Routers must not have side effects: on resume the engine re-runs the
router of the interrupted node against the checkpointed state, and that
only works if the same state always routes the same way.
"""

from collections.abc import Callable, Mapping

from proposal_engine.errors import RoutingError
from proposal_engine.schemas.state import WorkflowState

RouterFn = Callable[[WorkflowState], str | list[str]]


class Router:
    """
    A conditional branch point.

    Example:
        Router(
            "route_after_research",
            lambda s: s.research_status,
            {"approved": "solutionSought", "needs_revision": "deepResearch"},
        )
    """

    def __init__(
        self,
        name: str,
        fn: RouterFn,
        path_map: Mapping[str, str] | list[str] | None = None,
    ):
        self.name = name
        self.fn = fn
        if path_map is None:
            self.path_map: dict[str, str] = {}
        elif isinstance(path_map, Mapping):
            self.path_map = dict(path_map)
        else:
            self.path_map = {dest: dest for dest in path_map}

    @property
    def destinations(self) -> set[str]:
        return set(self.path_map.values())

    def resolve(self, state: WorkflowState) -> list[str]:
        """
        Evaluate the router against state.

        Returns:
            Ordered, de-duplicated node names

        Raises:
            RoutingError: The router returned a key outside its path map
        """
        choice = self.fn(state)
        keys = [choice] if isinstance(choice, str) else list(choice)

        resolved: list[str] = []
        for key in keys:
            key = str(key)
            if key in self.path_map:
                target = self.path_map[key]
            elif key in self.destinations:
                target = key
            else:
                raise RoutingError(
                    f"Router '{self.name}' chose '{key}', which is not in its path map "
                    f"{sorted(self.path_map)}"
                )
            if target not in resolved:
                resolved.append(target)
        return resolved

    def __repr__(self) -> str:
        return f"Router({self.name!r}, destinations={sorted(self.destinations)})"
