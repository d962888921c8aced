"""Training orchestration: mixed precision, session and runner."""

from __future__ import annotations

from importlib import import_module
from typing import Any


_EXPORTS: dict[str, tuple[str, str]] = {
    "convert_to_mixed_precision": ("traingraph.training.mixed_precision", "convert_to_mixed_precision"),
    "LearningRateScheduler": ("traingraph.training.scheduler", "LearningRateScheduler"),
    "StepAccumulator": ("traingraph.training.runner", "StepAccumulator"),
    "TrainingRunner": ("traingraph.training.runner", "TrainingRunner"),
    "TrainingSession": ("traingraph.training.session", "TrainingSession"),
    "TrainingSessionConfig": ("traingraph.training.session", "TrainingSessionConfig"),
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
