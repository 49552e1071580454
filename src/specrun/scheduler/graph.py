"""Dependency graph validation, cycle detection and level ordering."""

from __future__ import annotations

from collections.abc import Iterable

from specrun.scheduler.models import SpecNode

_WHITE = 0
_GRAY = 1
_BLACK = 2


class UnresolvedDependencyError(ValueError):
    """One or more specs depend on names that are not part of the batch."""

    def __init__(self, missing: list[tuple[str, str]]) -> None:
        self.missing = list(missing)
        lines = "\n".join(
            f'  {spec} depends on "{dependency}" which is not in the spec batch'
            for spec, dependency in self.missing
        )
        super().__init__(f"Unresolved spec dependencies:\n{lines}")


class CircularDependencyError(ValueError):
    """The declared dependency edges contain a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' → '.join(self.cycle)}")


class DependencyGraph:
    """Immutable dependency graph for one batch.

    Names listed in ``satisfied`` are dependencies fulfilled outside of this
    batch (for example specs that already succeeded in a prior run). They are
    accepted as resolved and ignored when computing levels.
    """

    def __init__(
        self,
        nodes: Iterable[SpecNode],
        *,
        satisfied: Iterable[str] = (),
        validate: bool = True,
    ) -> None:
        ordered = list(nodes)
        by_name: dict[str, SpecNode] = {}
        for node in ordered:
            if node.name in by_name:
                raise ValueError(f"Duplicate spec name in batch: {node.name}")
            by_name[node.name] = node
        self._nodes = by_name
        self._satisfied = frozenset(satisfied) - by_name.keys()
        if validate:
            self._raise_if_unresolved()

    @classmethod
    def build(cls, nodes: Iterable[SpecNode], satisfied: Iterable[str] = ()) -> DependencyGraph:
        """Build a validated graph; raises ``UnresolvedDependencyError``."""

        return cls(nodes, satisfied=satisfied, validate=True)

    @property
    def names(self) -> list[str]:
        return sorted(self._nodes)

    @property
    def satisfied(self) -> frozenset[str]:
        return self._satisfied

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def node(self, name: str) -> SpecNode:
        return self._nodes[name]

    def nodes(self) -> list[SpecNode]:
        return [self._nodes[name] for name in self.names]

    def dependencies_of(self, name: str) -> list[str]:
        """In-batch dependencies of one node, sorted."""

        return sorted(dep for dep in self._nodes[name].depends_on if dep in self._nodes)

    def missing_dependencies(self) -> list[tuple[str, str]]:
        missing: list[tuple[str, str]] = []
        for name in self.names:
            for dependency in sorted(self._nodes[name].depends_on):
                if dependency not in self._nodes and dependency not in self._satisfied:
                    missing.append((name, dependency))
        return missing

    def detect_cycle(self) -> list[str] | None:
        """Return the first cycle found as ``[a, b, ..., a]``, or None.

        Iterative depth-first search with white/gray/black marking. Nodes and
        edges are visited in name order so the reported cycle is stable.
        """

        color = dict.fromkeys(self._nodes, _WHITE)
        for root in self.names:
            if color[root] != _WHITE:
                continue
            path: list[str] = [root]
            stack = [iter(self.dependencies_of(root))]
            color[root] = _GRAY
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    color[path.pop()] = _BLACK
                    stack.pop()
                    continue
                if color[child] == _GRAY:
                    start = path.index(child)
                    return [*path[start:], child]
                if color[child] == _WHITE:
                    color[child] = _GRAY
                    path.append(child)
                    stack.append(iter(self.dependencies_of(child)))
        return None

    def topo_sort(self) -> list[list[str]]:
        """Group nodes into execution levels.

        Every dependency of a level-k node lies in a level below k. Each level
        is sorted by name.
        """

        missing = self.missing_dependencies()
        if missing:
            raise UnresolvedDependencyError(missing)
        cycle = self.detect_cycle()
        if cycle is not None:
            raise CircularDependencyError(cycle)

        remaining = {name: set(self.dependencies_of(name)) for name in self._nodes}
        assigned: set[str] = set()
        levels: list[list[str]] = []
        while remaining:
            ready = sorted(name for name, deps in remaining.items() if deps <= assigned)
            if not ready:
                # Unreachable once detect_cycle returned None.
                raise CircularDependencyError(sorted(remaining))
            levels.append(ready)
            assigned.update(ready)
            for name in ready:
                del remaining[name]
        return levels

    def _raise_if_unresolved(self) -> None:
        missing = self.missing_dependencies()
        if missing:
            raise UnresolvedDependencyError(missing)
