"""Model graph — execution order, parallel groups and model selection."""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field

from lens.core.errors import LensError


@dataclass
class DAGNode:
    """A model and the models it reads from / is read by."""
    name: str
    upstream: set[str] = field(default_factory=set)
    downstream: set[str] = field(default_factory=set)


class CycleError(LensError):
    """Raised when models depend on each other in a loop."""
    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' → '.join(cycle)}")


class DAGResolver:
    """Model dependency graph (staging → dims/facts → marts).

    Selectors follow the usual warehouse convention: ``name`` is one model,
    ``name+`` adds everything downstream of it, ``+name`` everything it
    reads from, and ``+name+`` both.
    """

    def __init__(self):
        self._nodes: dict[str, DAGNode] = {}

    @classmethod
    def from_models(cls, models: dict) -> "DAGResolver":
        """Build the graph from registered models (name → ModelMetadata)."""
        dag = cls()
        for name, meta in models.items():
            unknown = [d for d in meta.depends_on if d not in models]
            if unknown:
                raise KeyError(f"Model '{name}' depends on unknown model(s): {unknown}")
            dag.add_model(name)
            dag.add_dependencies(name, meta.depends_on)
        return dag

    @property
    def nodes(self) -> dict[str, DAGNode]:
        return self._nodes

    def add_model(self, name: str) -> None:
        self._nodes.setdefault(name, DAGNode(name=name))

    def add_dependency(self, upstream: str, downstream: str) -> None:
        """``downstream`` reads from ``upstream``."""
        self.add_model(upstream)
        self.add_model(downstream)
        self._nodes[upstream].downstream.add(downstream)
        self._nodes[downstream].upstream.add(upstream)

    def add_dependencies(self, model: str, depends_on: list[str]) -> None:
        for dep in depends_on:
            self.add_dependency(upstream=dep, downstream=model)

    # ─── Traversal ───

    def _reachable(self, name: str, direction: str) -> set[str]:
        seen: set[str] = set()
        queue = deque(getattr(self._nodes[name], direction) if name in self._nodes else ())
        while queue:
            node = queue.popleft()
            if node not in seen:
                seen.add(node)
                queue.extend(getattr(self._nodes[node], direction))
        seen.discard(name)
        return seen

    def get_upstream(self, name: str) -> set[str]:
        """Every model ``name`` reads from, directly or not."""
        return self._reachable(name, "upstream")

    def get_downstream(self, name: str) -> set[str]:
        """Every model that reads from ``name``, directly or not."""
        return self._reachable(name, "downstream")

    # ─── Ordering ───

    def _layers(self) -> tuple[list[list[str]], set[str]]:
        """Kahn layering. Returns the layers and the nodes left on a cycle."""
        remaining = {n: len(node.upstream) for n, node in self._nodes.items()}
        layer = sorted(n for n, d in remaining.items() if d == 0)
        layers = []
        while layer:
            layers.append(layer)
            for n in layer:
                del remaining[n]
            ready = set()
            for n in layer:
                for child in self._nodes[n].downstream:
                    remaining[child] -= 1
                    if remaining[child] == 0:
                        ready.add(child)
            layer = sorted(ready)
        return layers, set(remaining)

    def detect_cycles(self) -> list[str] | None:
        """A cycle path (first node repeated at the end), or None."""
        _, stuck = self._layers()
        if not stuck:
            return None
        # Every stuck node has a stuck upstream; walk until a node repeats
        path: list[str] = []
        node = min(stuck)
        while node not in path:
            path.append(node)
            node = min(u for u in self._nodes[node].upstream if u in stuck)
        cycle = path[path.index(node):] + [node]
        cycle.reverse()
        return cycle

    def parallel_groups(self) -> list[list[str]]:
        """Execution groups. Models within a group do not depend on each other."""
        layers, stuck = self._layers()
        if stuck:
            raise CycleError(self.detect_cycles())
        return layers

    def topological_sort(self) -> list[str]:
        """Models in dependency order (upstream first). Raises CycleError."""
        return [name for group in self.parallel_groups() for name in group]

    # ─── Selection ───

    def subgraph(self, names: set[str]) -> "DAGResolver":
        """The graph restricted to ``names``, keeping edges between them."""
        sub = DAGResolver()
        for name in sorted(names):
            sub.add_model(name)
            for child in self._nodes[name].downstream & names:
                sub.add_dependency(name, child)
        return sub

    def get_subgraph(self, root: str) -> "DAGResolver":
        """``root`` and everything downstream of it."""
        return self.select(f"{root}+")

    def select(self, selector: str) -> "DAGResolver":
        """Resolve ``name``, ``name+``, ``+name`` or ``+name+``."""
        name = selector.strip().strip("+")
        if name not in self._nodes:
            raise KeyError(f"Unknown model '{name}'. Available: {sorted(self._nodes)}")
        chosen = {name}
        if selector.strip().endswith("+"):
            chosen |= self.get_downstream(name)
        if selector.strip().startswith("+"):
            chosen |= self.get_upstream(name)
        return self.subgraph(chosen)

    def to_dict(self) -> dict:
        """Serialize the graph for JSON output."""
        return {
            "nodes": sorted(self._nodes),
            "edges": [
                {"upstream": name, "downstream": child}
                for name in sorted(self._nodes)
                for child in sorted(self._nodes[name].downstream)
            ],
            "groups": self.parallel_groups(),
        }
