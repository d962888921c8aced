"""Attach a loss function to a forward graph."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from traingraph.errors import InvalidConfiguration
from traingraph.graph.inference import infer_node
from traingraph.graph.ir import Graph
from traingraph.graph.naming import NameGenerator


LOGGER = logging.getLogger(__name__)

LossOpType = Literal["MeanSquaredError", "SoftmaxCrossEntropy", "SparseSoftmaxCrossEntropy"]
Reduction = Literal["mean", "sum"]

_SUPPORTED_LOSSES = ("MeanSquaredError", "SoftmaxCrossEntropy", "SparseSoftmaxCrossEntropy")


@dataclass(frozen=True)
class LossFunctionInfo:
    """
    Loss to attach.

    `inputs` is (prediction, label) or, for SparseSoftmaxCrossEntropy,
    optionally (prediction, label, per-example weight). Labels and weights that
    are not yet edges of the graph become graph inputs.
    """

    op_type: LossOpType
    loss_name: str
    inputs: tuple[str, ...]
    reduction: Reduction = "mean"

    def __post_init__(self) -> None:
        if self.op_type not in _SUPPORTED_LOSSES:
            raise InvalidConfiguration(f"Unsupported loss function: {self.op_type}")
        if self.reduction not in ("mean", "sum"):
            raise InvalidConfiguration(f"Unsupported loss reduction: {self.reduction}")
        if self.op_type == "MeanSquaredError" and self.reduction != "mean":
            raise InvalidConfiguration("MeanSquaredError supports only mean reduction")
        max_inputs = 3 if self.op_type == "SparseSoftmaxCrossEntropy" else 2
        if not 2 <= len(self.inputs) <= max_inputs:
            raise InvalidConfiguration(f"{self.op_type} takes 2..{max_inputs} inputs, got {len(self.inputs)}")


def _ensure_label_input(graph: Graph, info: LossFunctionInfo) -> None:
    prediction = graph.arg_type(info.inputs[0])
    if prediction is None or prediction.shape is None:
        raise InvalidConfiguration(f"Prediction edge {info.inputs[0]!r} needs a recorded type and shape")
    label = info.inputs[1]
    if not graph.has_arg(label):
        if info.op_type == "SparseSoftmaxCrossEntropy":
            graph.add_input(label, "int64", prediction.shape[:-1])
        else:
            graph.add_input(label, prediction.elem_type, prediction.shape)
    if len(info.inputs) > 2 and not graph.has_arg(info.inputs[2]):
        graph.add_input(info.inputs[2], prediction.elem_type, prediction.shape[:-1])


def build_loss_function(graph: Graph, info: LossFunctionInfo) -> str:
    """Add the loss nodes (stage "loss") and expose the loss edge as a graph output."""
    if not graph.has_arg(info.inputs[0]):
        raise InvalidConfiguration(f"Prediction edge {info.inputs[0]!r} is not in graph {graph.name!r}")
    if graph.has_arg(info.loss_name):
        raise InvalidConfiguration(f"Loss edge {info.loss_name!r} already exists")
    _ensure_label_input(graph, info)

    names = NameGenerator(graph)
    loss = info.loss_name
    added = []
    if info.op_type == "MeanSquaredError":
        diff = names.exact_or_new(f"{loss}_diff")
        squared = names.exact_or_new(f"{loss}_squared")
        added.append(graph.add_node("Sub", list(info.inputs), [diff], name=names.new(f"{loss}_Sub"), stage="loss"))
        added.append(graph.add_node("Mul", [diff, diff], [squared], name=names.new(f"{loss}_Mul"), stage="loss"))
        added.append(
            graph.add_node(
                "ReduceMean",
                [squared],
                [loss],
                name=names.new(f"{loss}_ReduceMean"),
                attributes={"keepdims": 0},
                stage="loss",
            )
        )
    else:
        log_prob = names.exact_or_new(f"{loss}_log_prob")
        added.append(
            graph.add_node(
                info.op_type,
                list(info.inputs),
                [loss, log_prob],
                name=names.new(f"{loss}_{info.op_type}"),
                attributes={"reduction": info.reduction},
                stage="loss",
            )
        )

    for node in added:
        infer_node(graph, node)
    graph.add_output(loss)
    LOGGER.info("Attached %s loss %r over %s", info.op_type, loss, list(info.inputs))
    return loss
