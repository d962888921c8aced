"""Training graph construction for static computation graphs."""

from __future__ import annotations

from importlib import import_module
from typing import Any


__version__ = "0.1.0"

_EXPORTS: dict[str, tuple[str, str]] = {
    "Graph": ("traingraph.graph.ir", "Graph"),
    "SaveOption": ("traingraph.graph.serialization", "SaveOption"),
    "load_graph": ("traingraph.graph.serialization", "load_graph"),
    "save_graph": ("traingraph.graph.serialization", "save_graph"),
    "GradientGraphBuilder": ("traingraph.gradients.builder", "GradientGraphBuilder"),
    "GradientGraphSpec": ("traingraph.gradients.builder", "GradientGraphSpec"),
    "LossFunctionInfo": ("traingraph.gradients.loss", "LossFunctionInfo"),
    "OptimizerGraphConfig": ("traingraph.optimizer.config", "OptimizerGraphConfig"),
    "OptimizerNodeConfig": ("traingraph.optimizer.config", "OptimizerNodeConfig"),
    "build_optimizer_graph": ("traingraph.optimizer.registry", "build_optimizer_graph"),
    "MPIContext": ("traingraph.distributed.context", "MPIContext"),
    "GraphExecutor": ("traingraph.runtime.executor", "GraphExecutor"),
    "TrainingRunner": ("traingraph.training.runner", "TrainingRunner"),
    "TrainingSession": ("traingraph.training.session", "TrainingSession"),
    "TrainingSessionConfig": ("traingraph.training.session", "TrainingSessionConfig"),
    "TrainingRunnerConfig": ("traingraph.config", "TrainingRunnerConfig"),
    "load_config": ("traingraph.config", "load_config"),
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
