"""Worker topology, ZeRO partitioning and collective insertion strategies."""

from __future__ import annotations

from importlib import import_module
from typing import Any


_EXPORTS: dict[str, tuple[str, str]] = {
    "MPIContext": ("traingraph.distributed.context", "MPIContext"),
    "partition_order": ("traingraph.distributed.partition", "partition_order"),
    "partition_weights": ("traingraph.distributed.partition", "partition_weights"),
    "rank_loads": ("traingraph.distributed.partition", "rank_loads"),
    "AllreduceSync": ("traingraph.distributed.sync", "AllreduceSync"),
    "GradientSync": ("traingraph.distributed.sync", "GradientSync"),
    "NoSync": ("traingraph.distributed.sync", "NoSync"),
    "WeightUpdate": ("traingraph.distributed.sync", "WeightUpdate"),
    "ZeroSync": ("traingraph.distributed.sync", "ZeroSync"),
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily resolve exports; strategies and optimizer config import each other."""
    target = _EXPORTS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = target
    value = getattr(import_module(module_name), attr_name)
    globals()[name] = value
    return value
