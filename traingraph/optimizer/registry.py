"""Optimizer graph builder selection from the distributed topology."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable
from typing import Mapping

from traingraph.distributed.sync import AllreduceSync
from traingraph.distributed.sync import GradientSync
from traingraph.distributed.sync import NoSync
from traingraph.distributed.sync import ZeroSync
from traingraph.graph.ir import Graph
from traingraph.optimizer.builder import OptimizerBuildResult
from traingraph.optimizer.builder import OptimizerGraphBuilder
from traingraph.optimizer.config import OptimizerGraphConfig
from traingraph.optimizer.config import OptimizerNodeConfig


LOGGER = logging.getLogger(__name__)


class OptimizerBuilderKind(str, Enum):
    DEFAULT = "Default"
    ALLREDUCE = "Allreduce"
    ZERO = "ZeRO"


def select_optimizer_builder(world_size: int, partition_optimizer: bool) -> OptimizerBuilderKind:
    """Single worker uses Default; multi-worker uses ZeRO when partitioning, else Allreduce."""
    if world_size <= 1:
        return OptimizerBuilderKind.DEFAULT
    if partition_optimizer:
        return OptimizerBuilderKind.ZERO
    return OptimizerBuilderKind.ALLREDUCE


_SYNC_FACTORIES: dict[OptimizerBuilderKind, Callable[[OptimizerGraphConfig], GradientSync]] = {
    OptimizerBuilderKind.DEFAULT: lambda config: NoSync(),
    OptimizerBuilderKind.ALLREDUCE: lambda config: AllreduceSync(allreduce_in_fp16=config.allreduce_in_fp16),
    OptimizerBuilderKind.ZERO: lambda config: ZeroSync(world=config.world, allreduce_in_fp16=config.allreduce_in_fp16),
}


def create_optimizer_graph_builder(graph: Graph, config: OptimizerGraphConfig) -> OptimizerGraphBuilder:
    kind = select_optimizer_builder(config.world.world_size, config.partition_optimizer)
    LOGGER.debug("Selected %s optimizer builder for world_size=%d", kind.value, config.world.world_size)
    return OptimizerGraphBuilder(graph, config, _SYNC_FACTORIES[kind](config), kind=kind.value)


def build_optimizer_graph(
    graph: Graph,
    gradients: Mapping[str, str],
    node_configs: Mapping[str, OptimizerNodeConfig],
    config: OptimizerGraphConfig,
) -> OptimizerBuildResult:
    """Insert optimizer nodes for `gradients` using the builder chosen by `config`."""
    return create_optimizer_graph_builder(graph, config).build(gradients, node_configs)
