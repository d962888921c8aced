"""Collective kernels backed by torch.distributed.

Without an initialized process group every collective is the single-worker
identity, so graphs built for one rank run unchanged.
"""

from __future__ import annotations

import logging

import torch
import torch.distributed as dist

from traingraph.runtime.kernels import Kernel
from traingraph.runtime.kernels import KernelContext


LOGGER = logging.getLogger(__name__)

COLLECTIVE_KERNELS: dict[str, Kernel] = {}

_REDUCE_OPS = {
    "sum": dist.ReduceOp.SUM,
    "min": dist.ReduceOp.MIN,
    "max": dist.ReduceOp.MAX,
}


def _kernel(op_type: str):
    def decorator(fn: Kernel) -> Kernel:
        COLLECTIVE_KERNELS[op_type] = fn
        return fn

    return decorator


def is_distributed() -> bool:
    return dist.is_available() and dist.is_initialized() and dist.get_world_size() > 1


def _as_reducible(t: torch.Tensor) -> torch.Tensor:
    # Process-group backends do not reduce bool tensors.
    return t.to(torch.uint8) if t.dtype == torch.bool else t.clone()


@_kernel("AllReduce")
def _all_reduce(node, inputs, ctx: KernelContext):
    if not is_distributed():
        return [t.clone() for t in inputs]
    op_name = node.attributes.get("reduce_op", "sum")
    try:
        op = _REDUCE_OPS[op_name]
    except KeyError as exc:
        raise ValueError(f"Unsupported reduce_op {op_name!r} on node {node.name!r}") from exc
    LOGGER.debug("AllReduce(%s) over %d tensor(s) on node %s", op_name, len(inputs), node.name)
    outputs = []
    for t in inputs:
        buffer = _as_reducible(t)
        dist.all_reduce(buffer, op=op)
        outputs.append(buffer.to(t.dtype))
    return outputs


@_kernel("ReduceScatter")
def _reduce_scatter(node, inputs, ctx: KernelContext):
    """Sum every gradient onto its owning rank; other ranks keep their local copy."""
    if not is_distributed():
        return [t.clone() for t in inputs]
    outputs = []
    for t, owner in zip(inputs, node.attributes["owner_ranks"]):
        buffer = t.clone()
        dist.reduce(buffer, dst=int(owner), op=dist.ReduceOp.SUM)
        outputs.append(buffer)
    return outputs


@_kernel("AllGather")
def _all_gather(node, inputs, ctx: KernelContext):
    """Broadcast each tensor from its owning rank."""
    if not is_distributed():
        return [t.clone() for t in inputs]
    outputs = []
    for t, owner in zip(inputs, node.attributes["owner_ranks"]):
        buffer = t.clone()
        dist.broadcast(buffer, src=int(owner))
        outputs.append(buffer)
    return outputs
