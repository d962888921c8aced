"""Reference evaluation of built graphs: kernels, executor, loss scaling, gradient checking."""

from __future__ import annotations

from importlib import import_module
from typing import Any


_EXPORTS: dict[str, tuple[str, str]] = {
    "GraphExecutor": ("traingraph.runtime.executor", "GraphExecutor"),
    "default_kernels": ("traingraph.runtime.executor", "default_kernels"),
    "GradientCheckResult": ("traingraph.runtime.gradient_checker", "GradientCheckResult"),
    "TensorInfo": ("traingraph.runtime.gradient_checker", "TensorInfo"),
    "compute_gradient_error": ("traingraph.runtime.gradient_checker", "compute_gradient_error"),
    "KernelContext": ("traingraph.runtime.kernels", "KernelContext"),
    "LossScaler": ("traingraph.runtime.loss_scaler", "LossScaler"),
    "AdamState": ("traingraph.runtime.optimizer_kernels", "AdamState"),
    "LambState": ("traingraph.runtime.optimizer_kernels", "LambState"),
    "adam_update": ("traingraph.runtime.optimizer_kernels", "adam_update"),
    "lamb_update": ("traingraph.runtime.optimizer_kernels", "lamb_update"),
    "sgd_update": ("traingraph.runtime.optimizer_kernels", "sgd_update"),
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
