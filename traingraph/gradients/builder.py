"""Synthesize the backward graph of a forward + loss graph.

The builder mutates the graph in place:

1. type/shape inference over the forward graph,
2. the pruned forward set (nodes fed by a trainable weight that reach the loss),
3. a seed gradient at the loss, scaled by the loss scale,
4. per-node gradient formulas in reverse topological order, with partial
   gradients of multi-consumer edges summed before they flow further upstream,
5. optional unscaling of the weight gradients.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING
from typing import Any
from typing import Mapping
from typing import Optional

import torch

from traingraph.errors import GraphBuildError
from traingraph.errors import GraphIntegrityError
from traingraph.errors import InvalidConfiguration
from traingraph.errors import ShapeMismatch
from traingraph.errors import TypeMismatch
from traingraph.gradients.registry import GradientContext
from traingraph.gradients.registry import GradientRegistry
from traingraph.gradients.registry import NodeDef
from traingraph.gradients.registry import default_registry
from traingraph.gradients.registry import is_local
from traingraph.graph.inference import infer_graph
from traingraph.graph.inference import infer_node
from traingraph.graph.ir import Graph
from traingraph.graph.ir import Node
from traingraph.graph.naming import NameGenerator
from traingraph.graph.types import FLOAT_TYPES
from traingraph.graph.types import TensorType
from traingraph.graph.types import elem_type_to_torch

if TYPE_CHECKING:
    from traingraph.optimizer.config import OptimizerNodeConfig


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class GradientGraphSpec:
    """What to differentiate, and how to scale the seed gradient."""

    weight_names: tuple[str, ...]
    loss_name: str
    optimizer_configs: Optional[Mapping[str, "OptimizerNodeConfig"]] = None
    loss_scale: float = 1.0
    loss_scale_input_name: Optional[str] = None
    unscale_gradients: bool = False
    expose_gradients_as_outputs: bool = True

    def __post_init__(self) -> None:
        if not self.weight_names:
            raise InvalidConfiguration("At least one trainable weight is required")
        if len(set(self.weight_names)) != len(self.weight_names):
            raise InvalidConfiguration(f"Duplicate trainable weights in {list(self.weight_names)}")
        if not self.loss_name:
            raise InvalidConfiguration("loss_name must be non-empty")
        if self.loss_scale <= 0.0:
            raise InvalidConfiguration(f"loss_scale must be > 0, got {self.loss_scale}")

    @property
    def uses_loss_scaling(self) -> bool:
        return self.loss_scale_input_name is not None or self.loss_scale != 1.0


def _check_gradient_type(edge: str, fwd: Optional[TensorType], grad: Optional[TensorType], grad_name: str) -> None:
    if fwd is None or grad is None:
        return
    if fwd.elem_type != grad.elem_type:
        raise TypeMismatch(f"Gradient {grad_name!r} is {grad.elem_type} but {edge!r} is {fwd.elem_type}")
    if fwd.shape is None or grad.shape is None:
        return
    if len(fwd.shape) != len(grad.shape) or any(
        isinstance(a, int) and isinstance(b, int) and a != b for a, b in zip(fwd.shape, grad.shape)
    ):
        raise ShapeMismatch(f"Gradient {grad_name!r} has shape {grad.shape} but {edge!r} has {fwd.shape}")


class GradientGraphBuilder:
    """Adds the gradient subgraph for `spec` to `graph`."""

    def __init__(self, graph: Graph, spec: GradientGraphSpec, registry: Optional[GradientRegistry] = None) -> None:
        self.graph = graph
        self.spec = spec
        self.registry = registry or default_registry()
        self._names = NameGenerator(graph)
        self._live: list[Node] = []
        self._required_slots: dict[str, list[int]] = {}
        self._contributor_counts: dict[str, int] = {}
        self._pending: dict[str, list[str]] = {}
        self._final: dict[str, Optional[str]] = {}
        self._scale_edges: dict[str, str] = {}
        self.nodes_added = 0

    # ------------------------------------------------------------------
    def build(self) -> dict[str, str]:
        """Build the backward graph; returns weight name -> gradient edge name."""
        self._validate()
        infer_graph(self.graph)
        self._plan()

        loss = self.spec.loss_name
        self._final[loss] = self._seed_gradient()

        for node in reversed(self._live):
            self._differentiate(node)

        gradients: dict[str, str] = {}
        for weight in self.spec.weight_names:
            grad = self._finalize(weight)
            if grad is None:
                raise InvalidConfiguration(
                    f"Weight {weight!r} does not reach loss {loss!r} through differentiable inputs"
                )
            gradients[weight] = grad

        if self.spec.unscale_gradients and self.spec.uses_loss_scaling:
            gradients = {w: self._unscale(g) for w, g in gradients.items()}

        if self.spec.expose_gradients_as_outputs:
            for grad in gradients.values():
                self.graph.add_output(grad)

        self.graph.check_acyclic()
        LOGGER.info(
            "Gradient graph built: %d forward node(s) differentiated, %d gradient node(s) added, %d weight(s)",
            len(self._live),
            self.nodes_added,
            len(gradients),
        )
        return gradients

    # ------------------------------------------------------------------
    def _validate(self) -> None:
        graph = self.graph
        loss = self.spec.loss_name
        if not graph.has_arg(loss):
            raise InvalidConfiguration(f"Loss edge {loss!r} is not in graph {graph.name!r}")
        for weight in self.spec.weight_names:
            if weight not in graph.initializers and weight not in graph.inputs:
                raise InvalidConfiguration(f"Trainable weight {weight!r} is not an initializer or graph input")
        if self.spec.loss_scale_input_name is not None:
            name = self.spec.loss_scale_input_name
            if graph.has_arg(name) and name not in graph.inputs:
                raise InvalidConfiguration(f"Loss scale edge {name!r} exists but is not a graph input")

    def _plan(self) -> None:
        """Find the live nodes and count gradient contributors per edge."""
        graph = self.graph
        reaches_loss = graph.upstream_nodes([self.spec.loss_name])
        requires_grad = set(self.spec.weight_names)
        active: list[Node] = []

        for node in graph.topological_sort():
            if node.name not in reaches_loss:
                continue
            touching = [i for i, inp in enumerate(node.inputs) if inp and inp in requires_grad]
            if not touching:
                continue
            formula = self.registry.get(node.op_type, node.name)
            slots = [i for i in touching if formula.is_differentiable(i)]
            if not slots:
                continue
            active.append(node)
            self._required_slots[node.name] = slots
            requires_grad.update(node.outputs)

        has_grad = {self.spec.loss_name}
        live: list[Node] = []
        for node in reversed(active):
            if any(out in has_grad for out in node.outputs):
                live.append(node)
                for slot in self._required_slots[node.name]:
                    edge = node.inputs[slot]
                    has_grad.add(edge)
                    self._contributor_counts[edge] = self._contributor_counts.get(edge, 0) + 1
        live.reverse()
        self._live = live
        LOGGER.debug("Pruned forward set: %s", [n.name for n in live])

    # ------------------------------------------------------------------
    def _add(
        self,
        op_type: str,
        inputs: list[str],
        outputs: list[str],
        attributes: Optional[dict] = None,
        owner: Optional[str] = None,
    ) -> Node:
        base = f"{owner}_Grad/{op_type}" if owner else f"{op_type}_Grad"
        node = self.graph.add_node(
            op_type,
            inputs,
            outputs,
            name=self._names.new(base),
            attributes=attributes,
            stage="gradient",
        )
        infer_node(self.graph, node)
        self.nodes_added += 1
        return node

    def _loss_scale_edge(self, elem_type: str) -> str:
        """Loss-scale value as an edge of `elem_type`."""
        cached = self._scale_edges.get(elem_type)
        if cached is not None:
            return cached
        spec = self.spec
        if spec.loss_scale_input_name is not None:
            name = spec.loss_scale_input_name
            if name not in self.graph.inputs:
                self.graph.add_input(name, "fp32", ())
            edge = name
            if elem_type != "fp32":
                edge = self._names.new(f"{name}_{elem_type}")
                self._add("Cast", [name], [edge], {"to": elem_type})
        else:
            edge = self._names.new(f"loss_scale_{elem_type}")
            value = torch.tensor(spec.loss_scale, dtype=elem_type_to_torch(elem_type))
            self._add("Constant", [], [edge], {"value": value})
        self._scale_edges[elem_type] = edge
        return edge

    def _seed_gradient(self) -> str:
        loss = self.spec.loss_name
        loss_type = self.graph.arg_type(loss)
        if loss_type is None:
            raise ShapeMismatch(f"Loss edge {loss!r} has no type")
        if loss_type.elem_type not in FLOAT_TYPES:
            raise TypeMismatch(f"Loss edge {loss!r} must be floating point, got {loss_type.elem_type}")

        seed = self._names.exact_or_new(f"{loss}_grad")
        if not self.spec.uses_loss_scaling:
            self._add("OnesLike", [loss], [seed])
            return seed
        ones = self._names.new(f"{loss}_ones")
        self._add("OnesLike", [loss], [ones])
        self._add("Mul", [ones, self._loss_scale_edge(loss_type.elem_type)], [seed])
        return seed

    def _allocate_partial(self, edge: str) -> str:
        partials = self._pending.setdefault(edge, [])
        if self._contributor_counts[edge] == 1:
            name = self._names.exact_or_new(f"{edge}_grad")
        else:
            name = self._names.exact_or_new(f"{edge}_grad/{len(partials)}")
        partials.append(name)
        return name

    def _finalize(self, edge: str) -> Optional[str]:
        """Gradient of `edge` once every consumer has contributed."""
        if edge in self._final:
            return self._final[edge]
        partials = self._pending.pop(edge, [])
        expected = self._contributor_counts.get(edge, 0)
        if len(partials) != expected:
            raise GraphIntegrityError(
                f"Edge {edge!r} has {len(partials)} gradient contribution(s), expected {expected}"
            )
        if not partials:
            result = None
        elif len(partials) == 1:
            result = partials[0]
        else:
            result = self._names.exact_or_new(f"{edge}_grad")
            op_type = "Add" if len(partials) == 2 else "Sum"
            self._add(op_type, partials, [result])
            LOGGER.debug("Accumulated %d partial gradients of %s with %s", len(partials), edge, op_type)
        self._final[edge] = result
        return result

    # ------------------------------------------------------------------
    def _differentiate(self, node: Node) -> None:
        graph = self.graph
        formula = self.registry.get(node.op_type, node.name)
        output_grads = [self._finalize(out) if out else None for out in node.outputs]
        if all(g is None for g in output_grads):
            raise GraphIntegrityError(f"Live node {node.name!r} received no output gradient")

        input_grads: list[Optional[str]] = [None] * len(node.inputs)
        for slot in self._required_slots[node.name]:
            input_grads[slot] = self._allocate_partial(node.inputs[slot])

        ctx = GradientContext(
            node,
            [graph.arg_type(i) if i else None for i in node.inputs],
            [graph.arg_type(o) if o else None for o in node.outputs],
            output_grads,
            input_grads,
        )
        defs = formula.fn(ctx)
        defs = ctx.zero_grad_defs + defs

        produced = {out for d in defs for out in d.outputs}
        missing = [g for g in input_grads if g is not None and g not in produced]
        if missing:
            raise GraphBuildError(f"Gradient formula for {node.op_type} did not produce {missing}")

        self._insert(node, defs, formula.copy_attributes)

        for slot, grad in enumerate(input_grads):
            if grad is not None:
                edge = node.inputs[slot]
                _check_gradient_type(edge, graph.arg_type(edge), graph.arg_type(grad), grad)

    def _insert(self, node: Node, defs: list[NodeDef], copy_attributes: bool) -> None:
        renamed: dict[str, str] = {}

        def resolve(name: str) -> str:
            if not name or not is_local(name):
                return name
            if name not in renamed:
                renamed[name] = self._names.exact_or_new(f"{node.name}_Grad/{name[1:]}")
            return renamed[name]

        for node_def in defs:
            attributes: dict[str, Any] = {}
            if copy_attributes:
                attributes.update(node.attributes)
            attributes.update(node_def.attributes)
            inputs = [resolve(i) for i in node_def.inputs]
            outputs = [resolve(o) for o in node_def.outputs]
            self._add(node_def.op_type, inputs, outputs, attributes, owner=node.name)

    def _unscale(self, grad: str) -> str:
        grad_type = self.graph.arg_type(grad)
        elem_type = "fp32" if grad_type is None else grad_type.elem_type
        unscaled = self._names.exact_or_new(f"{grad}_unscaled")
        self._add("Div", [grad, self._loss_scale_edge(elem_type)], [unscaled])
        return unscaled


def build_gradient_graph(
    graph: Graph, spec: GradientGraphSpec, registry: Optional[GradientRegistry] = None
) -> dict[str, str]:
    """Convenience wrapper: build the gradient graph and return weight -> gradient edge."""
    return GradientGraphBuilder(graph, spec, registry).build()
