"""Exceptions raised while building training graphs.

Every failure at this layer is structural or configuration related and is
detected once at build time, so nothing here is retried.
"""

from __future__ import annotations

from typing import Optional


class GraphBuildError(Exception):
    """Base class for all build-time failures."""


class UnsupportedOperator(GraphBuildError):
    """A node in the pruned forward set has no registered gradient formula."""

    def __init__(self, op_type: str, node_name: Optional[str] = None) -> None:
        self.op_type = op_type
        self.node_name = node_name
        where = f" (node {node_name!r})" if node_name else ""
        super().__init__(f"No gradient formula registered for op type {op_type!r}{where}")


class ShapeMismatch(GraphBuildError):
    """Inferred shape disagrees with the recorded shape of an edge."""


class TypeMismatch(GraphBuildError):
    """Inferred element type disagrees with the declared type of an edge."""


class InvalidConfiguration(GraphBuildError, ValueError):
    """Optimizer, distribution or precision settings are inconsistent."""


class GraphIntegrityError(GraphBuildError):
    """The graph violates a structural invariant."""


class CycleDetected(GraphIntegrityError):
    """The node set is not a DAG."""

    def __init__(self, node_names: list[str]) -> None:
        self.node_names = list(node_names)
        preview = ", ".join(self.node_names[:8])
        super().__init__(f"Graph contains a cycle through {len(self.node_names)} node(s): {preview}")


class AliasConflict(GraphIntegrityError):
    """A pre-update buffer is read after the node that overwrites it in place."""
