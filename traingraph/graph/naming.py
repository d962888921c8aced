"""Collision-free edge and node names for graph rewriting passes."""

from __future__ import annotations

from traingraph.graph.ir import Graph


class NameGenerator:
    """
    Monotonic per-base counters checked against the names a graph already uses.

    Two generators fed the same graph and the same request sequence produce the
    same names, which keeps every rank's graph structurally identical.
    """

    def __init__(self, graph: Graph) -> None:
        self._graph = graph
        self._counters: dict[str, int] = {}
        self._issued: set[str] = set()

    def _taken(self, name: str) -> bool:
        return name in self._issued or self._graph.has_arg(name) or self._graph.has_node(name)

    def exact_or_new(self, name: str) -> str:
        """Return `name` itself if unused, else a suffixed variant."""
        if not self._taken(name):
            self._issued.add(name)
            return name
        return self.new(name)

    def new(self, base: str) -> str:
        count = self._counters.get(base, 0)
        while True:
            candidate = f"{base}_{count}"
            count += 1
            if not self._taken(candidate):
                self._counters[base] = count
                self._issued.add(candidate)
                return candidate
