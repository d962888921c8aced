"""Weight-to-rank ownership for partitioned (ZeRO) optimizer state."""

from __future__ import annotations

import logging
from typing import Mapping

import numpy as np


LOGGER = logging.getLogger(__name__)


def _ceil_div(value: int, divisor: int) -> int:
    return (value + divisor - 1) // divisor


def partition_weights(weight_numels: Mapping[str, int], world_size: int) -> dict[str, int]:
    """
    Assign every weight to exactly one rank.

    Weights are walked in sorted-name order and cut into contiguous runs of
    roughly `ceil(total / world_size)` elements; a weight belongs to the rank
    whose run contains its first element. Every rank computes the same answer.
    """
    if world_size < 1:
        raise ValueError(f"world_size must be >= 1, got {world_size}")
    names = sorted(weight_numels)
    if not names:
        return {}
    numels = np.array([int(weight_numels[n]) for n in names], dtype=np.int64)
    if (numels < 0).any():
        raise ValueError("weight element counts must be >= 0")
    chunk = max(1, _ceil_div(int(numels.sum()), world_size))
    starts = np.concatenate(([0], np.cumsum(numels)[:-1]))
    owners = np.minimum(starts // chunk, world_size - 1)
    return {name: int(owner) for name, owner in zip(names, owners)}


def rank_loads(owners: Mapping[str, int], weight_numels: Mapping[str, int], world_size: int) -> list[int]:
    """Total element count owned by each rank."""
    loads = [0] * world_size
    for name, rank in owners.items():
        loads[rank] += int(weight_numels[name])
    return loads


def partition_order(owners: Mapping[str, int]) -> list[str]:
    """Weights ordered by (owning rank, name): the layout of scatter/gather buffers."""
    return sorted(owners, key=lambda name: (owners[name], name))
