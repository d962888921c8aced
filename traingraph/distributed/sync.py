"""Gradient and weight synchronization placed around optimizer nodes.

Each strategy decides which collectives to insert and which weights this
rank updates:

- `NoSync`: single worker, nothing inserted.
- `AllreduceSync`: one AllReduce per weight gradient; every rank updates every weight.
- `ZeroSync`: one ReduceScatter over all gradients, optimizer state only for
  owned weights, one AllGather broadcasting updated weights from their owners.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Mapping
from typing import Optional
from typing import Protocol
from typing import Sequence

from traingraph.distributed.context import MPIContext
from traingraph.distributed.partition import partition_order
from traingraph.distributed.partition import partition_weights
from traingraph.distributed.partition import rank_loads
from traingraph.errors import InvalidConfiguration
from traingraph.graph.ir import Graph
from traingraph.graph.ir import IOAlias
from traingraph.graph.ir import Node
from traingraph.optimizer.config import OptimizerNodeConfig


LOGGER = logging.getLogger(__name__)


class GraphEditor(Protocol):
    """What a strategy needs from the optimizer builder to insert nodes."""

    graph: Graph

    def add_node(
        self,
        op_type: str,
        inputs: Sequence[str],
        outputs: Sequence[str],
        attributes: Optional[dict] = None,
        aliases: Sequence[IOAlias] = (),
    ) -> Node: ...

    def unique_name(self, base: str) -> str: ...


@dataclass(frozen=True)
class WeightUpdate:
    """Edges of one weight around its optimizer step on this rank."""

    weight: str
    weight_out: Optional[str] = None
    fp16_weight: Optional[str] = None
    fp16_weight_out: Optional[str] = None


class GradientSync(Protocol):
    def validate(
        self,
        weights: Sequence[str],
        node_configs: Mapping[str, OptimizerNodeConfig],
        weight_numels: Mapping[str, int],
    ) -> None: ...

    def owns(self, weight: str) -> bool: ...

    def reduce_gradients(
        self,
        editor: GraphEditor,
        gradients: Mapping[str, str],
        node_configs: Mapping[str, OptimizerNodeConfig],
    ) -> dict[str, str]: ...

    def reduce_flag(self, editor: GraphEditor, flag: str) -> str: ...

    def broadcast_weights(self, editor: GraphEditor, updates: Sequence[WeightUpdate]) -> dict[str, str]: ...


def _cast_for_reduction(editor: GraphEditor, grad: str, in_fp16: bool) -> str:
    """Cast `grad` to the reduction precision when it differs from its own."""
    target = "fp16" if in_fp16 else "fp32"
    grad_type = editor.graph.arg_type(grad)
    if grad_type is None or grad_type.elem_type == target:
        return grad
    cast = editor.unique_name(f"{grad}_{target}")
    editor.add_node("Cast", [grad], [cast], {"to": target})
    return cast


def _final_edges(updates: Sequence[WeightUpdate]) -> dict[str, str]:
    return {u.weight: u.weight_out or u.weight for u in updates}


@dataclass
class NoSync:
    """Single worker: gradients and weights stay local."""

    def validate(self, weights, node_configs, weight_numels) -> None:
        return None

    def owns(self, weight: str) -> bool:
        return True

    def reduce_gradients(self, editor, gradients, node_configs) -> dict[str, str]:
        return dict(gradients)

    def reduce_flag(self, editor, flag: str) -> str:
        return flag

    def broadcast_weights(self, editor, updates) -> dict[str, str]:
        return _final_edges(updates)


@dataclass
class AllreduceSync:
    """Sum each weight gradient across workers before its optimizer node."""

    allreduce_in_fp16: bool = False

    def validate(self, weights, node_configs, weight_numels) -> None:
        return None

    def owns(self, weight: str) -> bool:
        return True

    def reduce_gradients(self, editor, gradients, node_configs) -> dict[str, str]:
        reduced = {}
        for weight in sorted(gradients):
            source = _cast_for_reduction(editor, gradients[weight], self.allreduce_in_fp16)
            out = editor.unique_name(f"{gradients[weight]}_AllReduce_Out")
            editor.add_node(
                "AllReduce",
                [source],
                [out],
                {"reduce_op": "sum", "group": node_configs[weight].reduction_group},
            )
            reduced[weight] = out
        return reduced

    def reduce_flag(self, editor, flag: str) -> str:
        return flag

    def broadcast_weights(self, editor, updates) -> dict[str, str]:
        return _final_edges(updates)


@dataclass
class ZeroSync:
    """Partition optimizer state by weight across ranks."""

    world: MPIContext
    allreduce_in_fp16: bool = False
    owners: dict[str, int] = field(default_factory=dict)

    def validate(self, weights, node_configs, weight_numels) -> None:
        explicit = {w: node_configs[w].owner_rank for w in weights}
        assigned = {w: r for w, r in explicit.items() if r is not None}
        if assigned and len(assigned) != len(weights):
            missing = sorted(w for w, r in explicit.items() if r is None)
            raise InvalidConfiguration(f"Weights {missing} have no assigned owning rank")
        for weight, rank in assigned.items():
            if not 0 <= rank < self.world.world_size:
                raise InvalidConfiguration(
                    f"Owner rank {rank} of {weight!r} is outside [0, {self.world.world_size - 1}]"
                )
        self.owners = assigned or partition_weights({w: weight_numels[w] for w in weights}, self.world.world_size)
        loads = rank_loads(self.owners, weight_numels, self.world.world_size)
        LOGGER.info(
            "[ZeRO][rank=%d] %d of %d weight(s) owned locally; elements per rank: %s",
            self.world.world_rank,
            sum(1 for r in self.owners.values() if r == self.world.world_rank),
            len(self.owners),
            loads,
        )

    def owns(self, weight: str) -> bool:
        return self.owners[weight] == self.world.world_rank

    def reduce_gradients(self, editor, gradients, node_configs) -> dict[str, str]:
        order = partition_order({w: self.owners[w] for w in gradients})
        sources = [_cast_for_reduction(editor, gradients[w], self.allreduce_in_fp16) for w in order]
        outputs = [editor.unique_name(f"{gradients[w]}_ReduceScatter_Out") for w in order]
        editor.add_node(
            "ReduceScatter",
            sources,
            outputs,
            {
                "owner_ranks": [self.owners[w] for w in order],
                "group": node_configs[order[0]].reduction_group,
            },
        )
        return dict(zip(order, outputs))

    def reduce_flag(self, editor, flag: str) -> str:
        # Each rank checked only its own shard; agree on the minimum.
        out = editor.unique_name(f"{flag}_AllReduce_Out")
        editor.add_node("AllReduce", [flag], [out], {"reduce_op": "min"})
        return out

    def broadcast_weights(self, editor, updates) -> dict[str, str]:
        by_weight = {u.weight: u for u in updates}
        order = partition_order({w: self.owners[w] for w in by_weight})
        inputs: list[str] = []
        owner_ranks: list[int] = []
        gathered: dict[str, str] = {}
        outputs: list[str] = []
        for weight in order:
            update = by_weight[weight]
            pairs = [(update.weight, update.weight_out)]
            if update.fp16_weight:
                pairs.append((update.fp16_weight, update.fp16_weight_out))
            for original, updated in pairs:
                inputs.append(updated or original)
                owner_ranks.append(self.owners[weight])
                out = editor.unique_name(f"{original}_AllGather_Out")
                outputs.append(out)
                if original == weight:
                    gathered[weight] = out
        editor.add_node(
            "AllGather",
            inputs,
            outputs,
            {"owner_ranks": owner_ranks},
            aliases=[IOAlias(i, i) for i in range(len(inputs))],
        )
        return gathered
