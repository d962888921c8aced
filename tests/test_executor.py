"""Tests for the reference graph executor."""

from __future__ import annotations

import pytest
import torch

from conftest import assert_tensor_close
from conftest import build_mlp_graph
from traingraph.graph.ir import Graph
from traingraph.graph.ir import IOAlias
from traingraph.runtime.executor import GraphExecutor
from traingraph.runtime.executor import default_kernels


def test_mlp_forward_matches_torch() -> None:
    graph = build_mlp_graph()
    x = torch.randn(4, 3)

    y = GraphExecutor(graph).run({"X": x}, ["Y"])["Y"]

    w1, b1, w2, b2 = (graph.initializers[n] for n in ("W1", "B1", "W2", "B2"))
    assert_tensor_close(y, torch.relu(x @ w1 + b1) @ w2 + b2, rtol=1e-5, atol=1e-6)


def test_only_needed_nodes_run() -> None:
    graph = build_mlp_graph()
    graph.add_node("Tanh", ["H2"], ["side"], name="side_branch")
    calls: list[str] = []
    kernels = default_kernels()

    def counting(name):
        inner = kernels[name]

        def kernel(node, inputs, ctx):
            calls.append(node.name)
            return inner(node, inputs, ctx)

        return kernel

    kernels = {name: counting(name) for name in kernels}
    GraphExecutor(graph, kernels=kernels).run({"X": torch.randn(4, 3)}, ["H1"])

    assert calls == ["fc1", "fc1_bias"]


def test_unknown_feed_and_missing_input_rejected() -> None:
    executor = GraphExecutor(build_mlp_graph())

    with pytest.raises(ValueError, match="are not graph inputs"):
        executor.run({"X": torch.randn(4, 3), "Z": torch.zeros(1)}, ["Y"])
    with pytest.raises(ValueError, match="Missing values for"):
        executor.run({}, ["Y"])


def test_missing_kernel_raises() -> None:
    graph = Graph("custom")
    graph.add_input("X", "fp32", (2,))
    graph.add_node("MyCustomOp", ["X"], ["Y"], name="custom")

    with pytest.raises(NotImplementedError, match="MyCustomOp"):
        GraphExecutor(graph).run({"X": torch.ones(2)}, ["Y"])


def _accumulating_graph() -> Graph:
    graph = Graph("acc")
    graph.add_input("G", "fp32", (2,))
    graph.add_initializer("buffer", torch.zeros(2))
    graph.add_node(
        "GradientAccumulator",
        ["buffer", "G"],
        ["buffer_Out"],
        name="acc",
        stage="optimizer",
        aliases=[IOAlias(0, 0)],
    )
    return graph


def test_aliased_outputs_are_committed() -> None:
    graph = _accumulating_graph()
    executor = GraphExecutor(graph)

    executor.run({"G": torch.tensor([1.0, 2.0])}, ["buffer_Out"])
    executor.run({"G": torch.tensor([1.0, 2.0])}, ["buffer_Out"])

    assert_tensor_close(graph.initializers["buffer"], torch.tensor([2.0, 4.0]))
    assert executor.runs == 2


def test_commit_false_leaves_initializers() -> None:
    graph = _accumulating_graph()

    out = GraphExecutor(graph).run({"G": torch.tensor([1.0, 2.0])}, ["buffer_Out"], commit=False)

    assert_tensor_close(out["buffer_Out"], torch.tensor([1.0, 2.0]))
    assert_tensor_close(graph.initializers["buffer"], torch.zeros(2))


def _dropout_graph() -> Graph:
    graph = Graph("dropout")
    graph.add_input("X", "fp32", (64,))
    graph.add_node("Dropout", ["X"], ["Y", "mask"], attributes={"ratio": 0.5})
    return graph


def test_seeded_runs_reproduce_dropout_masks() -> None:
    executor = GraphExecutor(_dropout_graph())
    x = torch.ones(64)

    first = executor.run({"X": x}, ["mask"], seed=7)["mask"]
    second = executor.run({"X": x}, ["mask"], seed=7)["mask"]

    assert torch.equal(first, second)
    assert first.dtype == torch.bool


def test_inference_mode_disables_dropout() -> None:
    x = torch.randn(64)

    outputs = GraphExecutor(_dropout_graph()).run({"X": x}, ["Y", "mask"], training=False)

    assert_tensor_close(outputs["Y"], x)
    assert bool(outputs["mask"].all())
