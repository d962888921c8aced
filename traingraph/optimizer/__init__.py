"""Optimizer graph construction.

Exports are resolved lazily: the distributed strategies import optimizer
configuration while the builders import the strategies.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any


_EXPORTS: dict[str, tuple[str, str]] = {
    "OptimizerBuildResult": ("traingraph.optimizer.builder", "OptimizerBuildResult"),
    "OptimizerGraphBuilder": ("traingraph.optimizer.builder", "OptimizerGraphBuilder"),
    "check_inplace_aliasing": ("traingraph.optimizer.builder", "check_inplace_aliasing"),
    "OptimizerGraphConfig": ("traingraph.optimizer.config", "OptimizerGraphConfig"),
    "OptimizerNodeConfig": ("traingraph.optimizer.config", "OptimizerNodeConfig"),
    "OptimizerBuilderKind": ("traingraph.optimizer.registry", "OptimizerBuilderKind"),
    "build_optimizer_graph": ("traingraph.optimizer.registry", "build_optimizer_graph"),
    "create_optimizer_graph_builder": ("traingraph.optimizer.registry", "create_optimizer_graph_builder"),
    "select_optimizer_builder": ("traingraph.optimizer.registry", "select_optimizer_builder"),
    "OPTIMIZER_SCHEMAS": ("traingraph.optimizer.schema", "OPTIMIZER_SCHEMAS"),
    "OptimizerSchema": ("traingraph.optimizer.schema", "OptimizerSchema"),
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    target = _EXPORTS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = target
    value = getattr(import_module(module_name), attr_name)
    globals()[name] = value
    return value
