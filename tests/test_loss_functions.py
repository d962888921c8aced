"""Tests for attaching loss functions to a forward graph."""

from __future__ import annotations

import pytest
import torch
import torch.nn.functional as F

from conftest import assert_tensor_close
from conftest import build_mlp_graph
from traingraph.errors import InvalidConfiguration
from traingraph.gradients.loss import LossFunctionInfo
from traingraph.gradients.loss import build_loss_function
from traingraph.graph.types import TensorType
from traingraph.runtime.executor import GraphExecutor


def test_mean_squared_error_nodes_and_value() -> None:
    graph = build_mlp_graph()
    loss = build_loss_function(graph, LossFunctionInfo("MeanSquaredError", "loss", ("Y", "label")))

    assert loss == "loss"
    assert "label" in graph.inputs
    assert graph.arg_type("label") == TensorType("fp32", (4, 2))
    assert graph.arg_type("loss") == TensorType("fp32", ())
    assert graph.outputs[-1] == "loss"
    loss_nodes = [node for node in graph.nodes if node.stage == "loss"]
    assert [n.name for n in loss_nodes] == ["loss_Sub_0", "loss_Mul_0", "loss_ReduceMean_0"]
    assert graph.has_arg("loss_diff") and graph.has_arg("loss_squared")

    x = torch.randn(4, 3)
    label = torch.randn(4, 2)
    outputs = GraphExecutor(graph).run({"X": x, "label": label}, ["Y", "loss"])
    assert_tensor_close(outputs["loss"], F.mse_loss(outputs["Y"], label), rtol=1e-5, atol=1e-6)


@pytest.mark.parametrize("reduction", ["mean", "sum"])
def test_softmax_cross_entropy_value(reduction) -> None:
    graph = build_mlp_graph(out_features=3)
    build_loss_function(graph, LossFunctionInfo("SoftmaxCrossEntropy", "xent", ("Y", "probs"), reduction=reduction))

    assert graph.has_arg("xent_log_prob")
    x = torch.randn(4, 3)
    probs = torch.softmax(torch.randn(4, 3), dim=-1)
    outputs = GraphExecutor(graph).run({"X": x, "probs": probs}, ["Y", "xent"])

    per_example = -(probs * torch.log_softmax(outputs["Y"], dim=-1)).sum(dim=-1)
    expected = per_example.mean() if reduction == "mean" else per_example.sum()
    assert_tensor_close(outputs["xent"], expected, rtol=1e-5, atol=1e-6)


def test_sparse_softmax_cross_entropy_creates_int_label() -> None:
    graph = build_mlp_graph(out_features=3)
    build_loss_function(graph, LossFunctionInfo("SparseSoftmaxCrossEntropy", "loss", ("Y", "label")))

    assert graph.arg_type("label") == TensorType("int64", (4,))

    x = torch.randn(4, 3)
    label = torch.tensor([0, 2, 1, 2])
    outputs = GraphExecutor(graph).run({"X": x, "label": label}, ["Y", "loss"])
    assert_tensor_close(outputs["loss"], F.cross_entropy(outputs["Y"], label), rtol=1e-5, atol=1e-6)


def test_weighted_sparse_softmax_cross_entropy_divides_by_weight_sum() -> None:
    graph = build_mlp_graph(out_features=3)
    info = LossFunctionInfo("SparseSoftmaxCrossEntropy", "loss", ("Y", "label", "weight"))
    build_loss_function(graph, info)

    assert graph.arg_type("weight") == TensorType("fp32", (4,))

    x = torch.randn(4, 3)
    label = torch.tensor([0, 2, 1, 2])
    weight = torch.tensor([1.0, 0.0, 2.0, 0.5])
    outputs = GraphExecutor(graph).run({"X": x, "label": label, "weight": weight}, ["Y", "loss"])
    per_example = F.cross_entropy(outputs["Y"], label, reduction="none")
    assert_tensor_close(outputs["loss"], (per_example * weight).sum() / weight.sum(), rtol=1e-5, atol=1e-6)


def test_existing_label_edge_is_reused() -> None:
    graph = build_mlp_graph()
    graph.add_input("target", "fp32", (4, 2))
    build_loss_function(graph, LossFunctionInfo("MeanSquaredError", "loss", ("Y", "target")))

    assert graph.inputs.count("target") == 1


def test_mean_squared_error_rejects_sum_reduction() -> None:
    with pytest.raises(InvalidConfiguration, match="MeanSquaredError supports only mean reduction"):
        LossFunctionInfo("MeanSquaredError", "loss", ("Y", "label"), reduction="sum")


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"op_type": "Hinge", "loss_name": "loss", "inputs": ("Y", "label")}, "Unsupported loss function"),
        (
            {"op_type": "SoftmaxCrossEntropy", "loss_name": "loss", "inputs": ("Y", "label"), "reduction": "max"},
            "Unsupported loss reduction",
        ),
        ({"op_type": "MeanSquaredError", "loss_name": "loss", "inputs": ("Y",)}, "takes 2..2 inputs"),
        (
            {"op_type": "SoftmaxCrossEntropy", "loss_name": "loss", "inputs": ("Y", "label", "weight")},
            "takes 2..2 inputs",
        ),
    ],
)
def test_loss_info_validation(kwargs, message) -> None:
    with pytest.raises(InvalidConfiguration, match=message):
        LossFunctionInfo(**kwargs)


def test_missing_prediction_or_duplicate_loss_rejected() -> None:
    graph = build_mlp_graph()
    with pytest.raises(InvalidConfiguration, match="is not in graph"):
        build_loss_function(graph, LossFunctionInfo("MeanSquaredError", "loss", ("missing", "label")))

    with pytest.raises(InvalidConfiguration, match="already exists"):
        build_loss_function(graph, LossFunctionInfo("MeanSquaredError", "H1", ("Y", "label")))
