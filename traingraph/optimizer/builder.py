"""Insert per-weight optimizer nodes after the gradient graph.

One builder serves every distribution mode; the difference between Default,
Allreduce and ZeRO lives entirely in the composed `GradientSync` strategy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Mapping
from typing import Optional
from typing import Sequence

import torch

from traingraph.distributed.sync import GradientSync
from traingraph.distributed.sync import WeightUpdate
from traingraph.errors import AliasConflict
from traingraph.errors import InvalidConfiguration
from traingraph.graph.inference import infer_node
from traingraph.graph.ir import Graph
from traingraph.graph.ir import IOAlias
from traingraph.graph.ir import Node
from traingraph.graph.naming import NameGenerator
from traingraph.graph.types import TensorType
from traingraph.graph.types import elem_type_to_torch
from traingraph.graph.types import is_static
from traingraph.graph.types import numel
from traingraph.optimizer.config import OptimizerGraphConfig
from traingraph.optimizer.config import OptimizerNodeConfig
from traingraph.optimizer.schema import OptimizerSchema
from traingraph.optimizer.schema import TypeCombo
from traingraph.optimizer.schema import get_schema
from traingraph.optimizer.schema import resolve_attributes
from traingraph.optimizer.schema import validate_types


LOGGER = logging.getLogger(__name__)

GRADIENT_ACCUMULATION_KEY = "gradient_accumulation"
OPTIMIZER_UPDATE_KEY = "optimizer_update"
GRADIENT_ALL_FINITE_KEY = "gradient_all_finite"


@dataclass
class OptimizerBuildResult:
    """Names produced by an optimizer build."""

    kind: str
    weight_outputs: dict[str, dict[str, str]] = field(default_factory=dict)
    output_keys: dict[str, str] = field(default_factory=dict)
    owned_weights: tuple[str, ...] = ()


@dataclass(frozen=True)
class _WeightPlan:
    weight: str
    gradient: str
    config: OptimizerNodeConfig
    schema: OptimizerSchema
    attributes: dict[str, float]
    weight_type: TensorType
    moment_type: Optional[str]


def check_inplace_aliasing(graph: Graph) -> None:
    """
    Reject graphs where a buffer is read after the node that overwrites it.

    For every declared alias, no other consumer of the aliased input may depend
    on the in-place node, and no input may be overwritten by two nodes.
    """
    writers: dict[str, str] = {}
    for node in graph.nodes:
        for alias in node.aliases:
            buffer = node.input(alias.input_index)
            if not buffer:
                continue
            previous = writers.get(buffer)
            if previous is not None and previous != node.name:
                raise AliasConflict(f"Edge {buffer!r} is overwritten in place by both {previous!r} and {node.name!r}")
            writers[buffer] = node.name
    for buffer, writer in writers.items():
        for consumer in graph.consumers(buffer):
            if consumer.name != writer and writer in graph.ancestors(consumer.name):
                raise AliasConflict(
                    f"Node {consumer.name!r} reads {buffer!r} after {writer!r} updated it in place"
                )


class OptimizerGraphBuilder:
    """Adds accumulation, synchronization and optimizer nodes for each weight."""

    def __init__(self, graph: Graph, config: OptimizerGraphConfig, sync: GradientSync, kind: str = "Default") -> None:
        self.graph = graph
        self.config = config
        self.sync = sync
        self.kind = kind
        self._names = NameGenerator(graph)
        self.nodes_added = 0

    # GraphEditor protocol ---------------------------------------------
    def unique_name(self, base: str) -> str:
        return self._names.exact_or_new(base)

    def add_node(
        self,
        op_type: str,
        inputs: Sequence[str],
        outputs: Sequence[str],
        attributes: Optional[dict] = None,
        aliases: Sequence[IOAlias] = (),
    ) -> Node:
        node = self.graph.add_node(
            op_type,
            inputs,
            outputs,
            name=self._names.new(op_type),
            attributes=attributes,
            stage="optimizer",
            aliases=aliases,
        )
        infer_node(self.graph, node)
        self.nodes_added += 1
        return node

    # ------------------------------------------------------------------
    def build(
        self,
        gradients: Mapping[str, str],
        node_configs: Mapping[str, OptimizerNodeConfig],
    ) -> OptimizerBuildResult:
        """
        Wire an optimizer update for every weight in `gradients`.

        All configuration is validated before the first node is inserted.

        Returns:
            OptimizerBuildResult with the per-weight output names and the group
            output keys callers fetch to run accumulation or update steps.
        """
        weights = sorted(gradients)
        plans = self._validate(weights, gradients, node_configs)
        self._declare_feeds(plans)
        result = OptimizerBuildResult(kind=self.kind)

        grads = {w: gradients[w] for w in weights}
        buffers: dict[str, str] = {}
        accumulated: dict[str, str] = {}
        if self.config.gradient_accumulation_steps > 1:
            for weight in weights:
                buffers[weight], grads[weight] = self._accumulate(plans[weight])
                accumulated[weight] = grads[weight]
            result.output_keys[GRADIENT_ACCUMULATION_KEY] = self._group(
                "gradient_accumulation_done", [grads[w] for w in weights]
            )

        grads = self.sync.reduce_gradients(self, grads, node_configs)
        owned = [w for w in weights if self.sync.owns(w)]

        do_update = self._do_update_edge([grads[w] for w in owned])
        if do_update is not None and self.config.check_gradients_finite:
            result.output_keys[GRADIENT_ALL_FINITE_KEY] = do_update

        updates: list[WeightUpdate] = []
        for weight in weights:
            plan = plans[weight]
            if weight in owned:
                outputs = self._add_optimizer_node(plan, grads[weight], do_update)
                result.weight_outputs[weight] = outputs
                updates.append(
                    WeightUpdate(
                        weight=weight,
                        weight_out=outputs["W_Out"],
                        fp16_weight=plan.config.fp16_weight_arg_name,
                        fp16_weight_out=outputs.get("FP16_W_Out"),
                    )
                )
            else:
                updates.append(WeightUpdate(weight=weight, fp16_weight=plan.config.fp16_weight_arg_name))

        final_weights = self.sync.broadcast_weights(self, updates)

        update_edges: list[str] = list(final_weights.values())
        for outputs in result.weight_outputs.values():
            update_edges.extend(e for slot, e in outputs.items() if slot not in ("W_Out", "FP16_W_Out"))
        for weight, buffer in buffers.items():
            reset = self.unique_name(f"{buffer}_Reset_Out")
            self.add_node(
                "ZeroGradient",
                [accumulated[weight], final_weights[weight]],
                [reset],
                aliases=[IOAlias(0, 0)],
            )
            update_edges.append(reset)
        result.output_keys[OPTIMIZER_UPDATE_KEY] = self._group("optimizer_update_done", update_edges)
        result.owned_weights = tuple(owned)

        check_inplace_aliasing(self.graph)
        self.graph.check_acyclic()
        LOGGER.info(
            "%s optimizer graph built: %d of %d weight(s) updated on this rank, %d node(s) added",
            self.kind,
            len(owned),
            len(weights),
            self.nodes_added,
        )
        return result

    # ------------------------------------------------------------------
    def _validate(
        self,
        weights: list[str],
        gradients: Mapping[str, str],
        node_configs: Mapping[str, OptimizerNodeConfig],
    ) -> dict[str, _WeightPlan]:
        graph = self.graph
        if not weights:
            raise InvalidConfiguration("No weight gradients to optimize")
        plans: dict[str, _WeightPlan] = {}
        numels: dict[str, int] = {}
        for weight in weights:
            config = node_configs.get(weight)
            if config is None:
                raise InvalidConfiguration(f"No optimizer config for weight {weight!r}")
            schema = get_schema(config.name)
            attributes = resolve_attributes(schema, config.attributes)
            if not config.lr_feed_name:
                raise InvalidConfiguration(f"Empty learning-rate feed name for {weight!r}")

            weight_type = graph.arg_type(weight)
            grad_type = graph.arg_type(gradients[weight])
            if weight_type is None or not is_static(weight_type.shape):
                raise InvalidConfiguration(f"Weight {weight!r} needs a static recorded shape")
            if grad_type is None:
                raise InvalidConfiguration(f"Gradient {gradients[weight]!r} of {weight!r} has no type")

            if config.fp16_weight_arg_name is not None:
                fp16_type = graph.arg_type(config.fp16_weight_arg_name)
                if config.fp16_weight_arg_name not in graph.initializers or fp16_type is None:
                    raise InvalidConfiguration(
                        f"fp16 shadow {config.fp16_weight_arg_name!r} of {weight!r} must be an initializer"
                    )
                if fp16_type.elem_type != "fp16":
                    raise InvalidConfiguration(f"fp16 shadow {config.fp16_weight_arg_name!r} is {fp16_type.elem_type}")

            moment_type = None
            if schema.has_moments:
                moment_type = "fp16" if config.use_fp16_moments else weight_type.elem_type
            combo = TypeCombo(
                eta=self._lr_elem_type(config.lr_feed_name),
                weight=weight_type.elem_type,
                grad=self._synced_grad_type(grad_type.elem_type),
                moment=moment_type,
            )
            validate_types(schema, combo, weight)

            plans[weight] = _WeightPlan(
                weight=weight,
                gradient=gradients[weight],
                config=config,
                schema=schema,
                attributes=attributes,
                weight_type=weight_type,
                moment_type=moment_type,
            )
            numels[weight] = numel(weight_type.shape)

        for name in self._feed_names(plans):
            if name not in graph.inputs and graph.has_arg(name):
                raise InvalidConfiguration(f"Edge {name!r} exists but is not a graph input")
        self.sync.validate(weights, node_configs, numels)
        return plans

    def _feed_names(self, plans: Mapping[str, _WeightPlan]) -> list[str]:
        names = sorted({plan.config.lr_feed_name for plan in plans.values()})
        for name in (self.config.loss_scale_input_name, self.config.do_update_input_name):
            if name is not None:
                names.append(name)
        return names

    def _lr_elem_type(self, lr_feed_name: str) -> str:
        lr_type = self.graph.arg_type(lr_feed_name)
        return "fp32" if lr_type is None else lr_type.elem_type

    def _synced_grad_type(self, grad_elem_type: str) -> str:
        if self.config.gradient_accumulation_steps > 1:
            grad_elem_type = "fp32" if grad_elem_type == "fp16" else grad_elem_type
        if self.config.world.world_size > 1:
            return "fp16" if self.config.allreduce_in_fp16 else "fp32"
        return grad_elem_type

    # ------------------------------------------------------------------
    def _ensure_input(self, name: str, elem_type: str) -> str:
        if name not in self.graph.inputs:
            if self.graph.has_arg(name):
                raise InvalidConfiguration(f"Edge {name!r} exists but is not a graph input")
            self.graph.add_input(name, elem_type, ())
        return name

    def _declare_feeds(self, plans: Mapping[str, _WeightPlan]) -> None:
        """Every rank declares the same scalar feeds, whether or not it owns a weight."""
        for name in self._feed_names(plans):
            self._ensure_input(name, "bool" if name == self.config.do_update_input_name else "fp32")

    def _add_state(self, name: str, value: torch.Tensor) -> str:
        state = self.unique_name(name)
        self.graph.add_initializer(state, value)
        return state

    def _accumulate(self, plan: _WeightPlan) -> tuple[str, str]:
        grad_type = self.graph.arg_type(plan.gradient)
        acc_type = "fp32" if grad_type.elem_type == "fp16" else grad_type.elem_type
        buffer = self._add_state(
            f"{plan.gradient}_accumulation_buffer",
            torch.zeros(tuple(plan.weight_type.shape), dtype=elem_type_to_torch(acc_type)),
        )
        out = self.unique_name(f"{buffer}_Out")
        self.add_node("GradientAccumulator", [buffer, plan.gradient], [out], aliases=[IOAlias(0, 0)])
        return buffer, out

    def _do_update_edge(self, owned_grads: list[str]) -> Optional[str]:
        if self.config.do_update_input_name is not None:
            return self._ensure_input(self.config.do_update_input_name, "bool")
        if not self.config.check_gradients_finite:
            return None
        flag = self.unique_name("all_gradients_finite")
        self.add_node("IsAllFinite", owned_grads, [flag])
        return self.sync.reduce_flag(self, flag)

    def _add_optimizer_node(self, plan: _WeightPlan, grad: str, do_update: Optional[str]) -> dict[str, str]:
        schema, config, weight = plan.schema, plan.config, plan.weight
        shape = tuple(plan.weight_type.shape)
        slots: dict[str, str] = {
            "ETA": self._ensure_input(config.lr_feed_name, "fp32"),
            "W": weight,
            "G": grad,
        }
        outputs: dict[str, str] = {"W_Out": self.unique_name(f"{weight}_Out")}
        if "Update_Count" in schema.inputs:
            slots["Update_Count"] = self._add_state(f"{weight}_Update_Count", torch.tensor(1, dtype=torch.int64))
            outputs["Update_Count_Out"] = self.unique_name(f"{weight}_Update_Count_Out")
        if schema.has_moments:
            moment_dtype = elem_type_to_torch(plan.moment_type)
            for slot in ("Moment_1", "Moment_2"):
                slots[slot] = self._add_state(f"{weight}_{slot}", torch.zeros(shape, dtype=moment_dtype))
                outputs[f"{slot}_Out"] = self.unique_name(f"{weight}_{slot}_Out")
        if config.fp16_weight_arg_name is not None:
            slots["FP16_W"] = config.fp16_weight_arg_name
            outputs["FP16_W_Out"] = self.unique_name(f"{config.fp16_weight_arg_name}_Out")
        if do_update is not None:
            slots["DoUpdate"] = do_update
        if self.config.loss_scale_input_name is not None:
            slots["loss_scale"] = self._ensure_input(self.config.loss_scale_input_name, "fp32")

        inputs = _positional(schema.inputs, slots)
        output_names = _positional(schema.outputs, outputs)
        aliases = [
            a
            for a in schema.aliases
            if a.input_index < len(inputs) and inputs[a.input_index] and a.output_index < len(output_names)
        ]
        attributes = dict(plan.attributes)
        if schema.op_type == "AdamOptimizer":
            attributes["do_bias_correction"] = int(config.do_bias_correction)

        self.graph.add_node(
            schema.op_type,
            inputs,
            output_names,
            name=self._names.exact_or_new(f"{schema.op_type}_{weight}"),
            attributes=attributes,
            stage="optimizer",
            aliases=aliases,
        )
        infer_node(self.graph, self.graph.producer(outputs["W_Out"]))
        self.nodes_added += 1
        LOGGER.debug("Added %s for %s (grad %s)", schema.op_type, weight, grad)
        return outputs

    def _group(self, base: str, edges: list[str]) -> str:
        out = self.unique_name(base)
        self.add_node("Group", edges, [out])
        return out


def _positional(slots: Sequence[str], values: Mapping[str, str]) -> list[str]:
    """Lay out named values by slot order; absent optional slots become "" and trailing ones are dropped."""
    laid_out = [values.get(slot, "") for slot in slots]
    while laid_out and not laid_out[-1]:
        laid_out.pop()
    return laid_out
