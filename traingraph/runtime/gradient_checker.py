"""Numerical verification of gradient formulas.

A single-op graph is built in fp64, a random linear projection of its outputs
serves as the loss, and the analytic gradients produced by the gradient graph
builder are compared with central differences of that loss.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from typing import Callable
from typing import Optional
from typing import Sequence

import torch

from traingraph.gradients.builder import GradientGraphBuilder
from traingraph.gradients.builder import GradientGraphSpec
from traingraph.graph.inference import infer_graph
from traingraph.graph.ir import Graph
from traingraph.graph.types import ElemType
from traingraph.graph.types import FLOAT_TYPES
from traingraph.graph.types import elem_type_to_torch
from traingraph.runtime.executor import GraphExecutor


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TensorInfo:
    """
    One op input.

    Attributes:
        shape: Static shape.
        has_gradient: Whether the gradient w.r.t. this input is checked.
        elem_type: Element type; float inputs are evaluated in fp64.
        values: Fixed values (indices, labels); random normal when omitted.
        transform: Applied elementwise to random values (e.g. to keep Sqrt inputs positive).
    """

    shape: tuple[int, ...]
    has_gradient: bool = True
    elem_type: ElemType = "fp32"
    values: Optional[torch.Tensor] = None
    transform: Optional[Callable[[torch.Tensor], torch.Tensor]] = None


@dataclass(frozen=True)
class GradientCheckResult:
    max_error: float
    graph: Graph
    unexpected_gradients: tuple[str, ...] = ()


def _materialize(info: TensorInfo, generator: torch.Generator) -> torch.Tensor:
    if info.values is not None:
        value = info.values.clone()
    else:
        value = torch.randn(info.shape, generator=generator, dtype=torch.float64)
        if info.transform is not None:
            value = info.transform(value)
    if info.elem_type in FLOAT_TYPES:
        return value.to(torch.float64)
    return value.to(elem_type_to_torch(info.elem_type))


def _build_check_graph(
    op_type: str,
    inputs: Sequence[TensorInfo],
    output_has_gradient: Sequence[bool],
    attributes: dict[str, Any],
    generator: torch.Generator,
) -> tuple[Graph, list[str], str]:
    graph = Graph(f"check_{op_type}")
    input_names = [f"X{i}" for i in range(len(inputs))]
    for name, info in zip(input_names, inputs):
        if info.values is not None and not info.has_gradient:
            graph.add_initializer(name, _materialize(info, generator))
            continue
        elem_type = "fp64" if info.elem_type in FLOAT_TYPES else info.elem_type
        graph.add_input(name, elem_type, info.shape)
    output_names = [f"Y{j}" for j in range(len(output_has_gradient))]
    graph.add_node(op_type, input_names, output_names, name=op_type, attributes=attributes)

    infer_graph(graph)
    terms = []
    for j, (name, has_gradient) in enumerate(zip(output_names, output_has_gradient)):
        if not has_gradient:
            continue
        shape = graph.shape_of(name)
        projection = f"projection_{j}"
        graph.add_initializer(projection, torch.randn(tuple(shape), generator=generator, dtype=torch.float64))
        weighted, term = f"weighted_{j}", f"term_{j}"
        graph.add_node("Mul", [name, projection], [weighted], stage="loss")
        graph.add_node("ReduceMean", [weighted], [term], attributes={"keepdims": 0}, stage="loss")
        terms.append(term)
    loss = terms[0]
    for k, term in enumerate(terms[1:], start=1):
        total = "loss" if k == len(terms) - 1 else f"partial_loss_{k}"
        graph.add_node("Add", [loss, term], [total], stage="loss")
        loss = total
    graph.add_output(loss)
    return graph, input_names, loss


def compute_gradient_error(
    op_type: str,
    inputs: Sequence[TensorInfo],
    output_has_gradient: Sequence[bool] = (True,),
    attributes: Optional[dict[str, Any]] = None,
    *,
    delta: float = 1e-4,
    seed: int = 0,
    check_not_have_gradient: bool = True,
) -> GradientCheckResult:
    """
    Largest absolute difference between analytic and numeric gradients.

    With `check_not_have_gradient`, inputs marked ``has_gradient=False`` must
    not receive any gradient computation; offending edge names are reported in
    `unexpected_gradients`.
    """
    generator = torch.Generator().manual_seed(seed)
    graph, input_names, loss = _build_check_graph(
        op_type, inputs, output_has_gradient, dict(attributes or {}), generator
    )
    feeds = {
        name: _materialize(info, generator) for name, info in zip(input_names, inputs) if name in graph.inputs
    }
    checked = [name for name, info in zip(input_names, inputs) if info.has_gradient]

    gradients = GradientGraphBuilder(graph, GradientGraphSpec(weight_names=tuple(checked), loss_name=loss)).build()

    unexpected: list[str] = []
    if check_not_have_gradient:
        for index, (name, info) in enumerate(zip(input_names, inputs)):
            if info.has_gradient:
                continue
            for node in graph.nodes:
                if node.stage != "gradient":
                    continue
                unexpected += [o for o in node.outputs if o == f"{name}_grad" or f"unused_dX{index}" in o]

    executor = GraphExecutor(graph)
    analytic = executor.run(feeds, [gradients[name] for name in checked], seed=seed)

    max_error = 0.0
    for name in checked:
        base = feeds[name]
        grad = analytic[gradients[name]].reshape(-1)
        for k in range(base.numel()):
            shifted = {}
            for sign in (1.0, -1.0):
                perturbed = base.clone().reshape(-1)
                perturbed[k] += sign * delta
                run_feeds = dict(feeds)
                run_feeds[name] = perturbed.reshape(base.shape)
                shifted[sign] = float(executor.run(run_feeds, [loss], seed=seed)[loss])
            numeric = (shifted[1.0] - shifted[-1.0]) / (2.0 * delta)
            max_error = max(max_error, abs(numeric - float(grad[k])))

    LOGGER.debug("%s gradient check: max error %.3e over %d input(s)", op_type, max_error, len(checked))
    return GradientCheckResult(max_error=max_error, graph=graph, unexpected_gradients=tuple(unexpected))
