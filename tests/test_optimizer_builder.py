"""Tests for optimizer graph construction on a single worker and with all-reduce."""

from __future__ import annotations

import pytest
import torch

from conftest import assert_tensor_close
from conftest import build_mlp_graph
from conftest import regression_batches
from traingraph.distributed.context import MPIContext
from traingraph.errors import AliasConflict
from traingraph.errors import InvalidConfiguration
from traingraph.gradients.builder import GradientGraphSpec
from traingraph.gradients.builder import build_gradient_graph
from traingraph.gradients.loss import LossFunctionInfo
from traingraph.gradients.loss import build_loss_function
from traingraph.graph.ir import Graph
from traingraph.graph.ir import IOAlias
from traingraph.graph.types import TensorType
from traingraph.optimizer.builder import GRADIENT_ACCUMULATION_KEY
from traingraph.optimizer.builder import GRADIENT_ALL_FINITE_KEY
from traingraph.optimizer.builder import OPTIMIZER_UPDATE_KEY
from traingraph.optimizer.builder import check_inplace_aliasing
from traingraph.optimizer.config import OptimizerGraphConfig
from traingraph.optimizer.config import OptimizerNodeConfig
from traingraph.optimizer.registry import OptimizerBuilderKind
from traingraph.optimizer.registry import build_optimizer_graph
from traingraph.optimizer.registry import select_optimizer_builder
from traingraph.runtime.executor import GraphExecutor


WEIGHTS = ("B1", "B2", "W1", "W2")
LR = 0.1


def _graph_with_gradients(weights=WEIGHTS) -> tuple[Graph, dict[str, str]]:
    graph = build_mlp_graph()
    build_loss_function(graph, LossFunctionInfo("MeanSquaredError", "loss", ("Y", "label")))
    gradients = build_gradient_graph(graph, GradientGraphSpec(weight_names=tuple(weights), loss_name="loss"))
    return graph, gradients


def _configs(name: str = "SGDOptimizer", weights=WEIGHTS, **kwargs) -> dict[str, OptimizerNodeConfig]:
    return {w: OptimizerNodeConfig(name=name, **kwargs) for w in weights}


def _feeds(batch: dict[str, torch.Tensor]) -> dict[str, torch.Tensor]:
    return {**batch, "Learning_Rate": torch.tensor(LR)}


@pytest.mark.parametrize(
    "world_size, partition, expected",
    [
        (0, False, OptimizerBuilderKind.DEFAULT),
        (0, True, OptimizerBuilderKind.DEFAULT),
        (1, False, OptimizerBuilderKind.DEFAULT),
        (1, True, OptimizerBuilderKind.DEFAULT),
        (4, False, OptimizerBuilderKind.ALLREDUCE),
        (4, True, OptimizerBuilderKind.ZERO),
    ],
)
def test_builder_selection(world_size, partition, expected) -> None:
    assert select_optimizer_builder(world_size, partition) == expected


def test_sgd_structure_and_update() -> None:
    graph, gradients = _graph_with_gradients()
    result = build_optimizer_graph(graph, gradients, _configs(), OptimizerGraphConfig())

    assert result.kind == "Default"
    assert result.owned_weights == WEIGHTS
    assert result.weight_outputs["W1"] == {"W_Out": "W1_Out"}
    assert set(result.output_keys) == {OPTIMIZER_UPDATE_KEY}
    node = graph.node("SGDOptimizer_W1")
    assert node.inputs == ["Learning_Rate", "W1", "W1_grad"]
    assert node.aliases == (IOAlias(1, 0),)
    assert node.stage == "optimizer"
    assert graph.arg_type("Learning_Rate") == TensorType("fp32", ())
    assert graph.arg_type("W1_Out") == graph.arg_type("W1")

    batch = regression_batches(1)[0]
    executor = GraphExecutor(graph)
    before = {w: graph.initializers[w].clone() for w in WEIGHTS}
    grads = executor.run(_feeds(batch), [gradients[w] for w in WEIGHTS])
    executor.run(_feeds(batch), [result.output_keys[OPTIMIZER_UPDATE_KEY]])

    for w in WEIGHTS:
        assert_tensor_close(graph.initializers[w], before[w] - LR * grads[gradients[w]], rtol=1e-5, atol=1e-6, msg=w)


def test_adam_state_initializers_and_first_step() -> None:
    graph, gradients = _graph_with_gradients()
    configs = _configs("AdamOptimizer", attributes={"beta": 0.99})
    result = build_optimizer_graph(graph, gradients, configs, OptimizerGraphConfig())

    outputs = result.weight_outputs["W2"]
    assert set(outputs) == {"W_Out", "Moment_1_Out", "Moment_2_Out", "Update_Count_Out"}
    node = graph.node("AdamOptimizer_W2")
    assert node.inputs[:6] == ["Learning_Rate", "W2_Update_Count", "W2", "W2_grad", "W2_Moment_1", "W2_Moment_2"]
    assert node.attributes["beta"] == 0.99
    assert node.attributes["alpha"] == 0.9
    assert node.attributes["do_bias_correction"] == 1
    assert int(graph.initializers["W2_Update_Count"]) == 1
    assert torch.count_nonzero(graph.initializers["W2_Moment_1"]) == 0

    batch = regression_batches(1)[0]
    GraphExecutor(graph).run(_feeds(batch), [result.output_keys[OPTIMIZER_UPDATE_KEY]])

    assert int(graph.initializers["W2_Update_Count"]) == 2
    assert torch.count_nonzero(graph.initializers["W2_Moment_1"]) > 0


def test_adam_fp16_moments_allowed_lamb_fp16_moments_rejected() -> None:
    graph, gradients = _graph_with_gradients()
    build_optimizer_graph(graph, gradients, _configs("AdamOptimizer", use_fp16_moments=True), OptimizerGraphConfig())
    assert graph.initializers["W1_Moment_1"].dtype == torch.float16

    graph, gradients = _graph_with_gradients()
    with pytest.raises(InvalidConfiguration, match="does not support precision combination"):
        build_optimizer_graph(graph, gradients, _configs("LambOptimizer", use_fp16_moments=True), OptimizerGraphConfig())
    assert not any(node.stage == "optimizer" for node in graph.nodes)


def test_gradient_accumulation_sums_micro_batches_then_resets() -> None:
    graph, gradients = _graph_with_gradients()
    config = OptimizerGraphConfig(gradient_accumulation_steps=2)
    result = build_optimizer_graph(graph, gradients, _configs(), config)

    assert set(result.output_keys) == {GRADIENT_ACCUMULATION_KEY, OPTIMIZER_UPDATE_KEY}
    buffer = "W1_grad_accumulation_buffer"
    assert graph.initializers[buffer].shape == graph.initializers["W1"].shape
    assert graph.node("SGDOptimizer_W1").inputs[2] == f"{buffer}_Out"

    first, second = regression_batches(2)
    executor = GraphExecutor(graph)
    before = graph.initializers["W1"].clone()
    g1 = executor.run(_feeds(first), ["W1_grad"])["W1_grad"]
    g2 = executor.run(_feeds(second), ["W1_grad"])["W1_grad"]

    executor.run(_feeds(first), [result.output_keys[GRADIENT_ACCUMULATION_KEY]])
    assert_tensor_close(graph.initializers[buffer], g1, rtol=1e-5, atol=1e-6)
    assert_tensor_close(graph.initializers["W1"], before)

    executor.run(_feeds(second), [result.output_keys[OPTIMIZER_UPDATE_KEY]])
    assert_tensor_close(graph.initializers["W1"], before - LR * (g1 + g2), rtol=1e-5, atol=1e-6)
    assert torch.count_nonzero(graph.initializers[buffer]) == 0


def test_fp16_shadow_is_updated_in_place() -> None:
    graph, gradients = _graph_with_gradients(("W1",))
    graph.add_initializer("FP16_W1", graph.initializers["W1"].half())
    configs = {"W1": OptimizerNodeConfig(name="SGDOptimizer", fp16_weight_arg_name="FP16_W1")}
    result = build_optimizer_graph(graph, gradients, configs, OptimizerGraphConfig())

    assert result.weight_outputs["W1"] == {"W_Out": "W1_Out", "FP16_W_Out": "FP16_W1_Out"}
    node = graph.node("SGDOptimizer_W1")
    assert node.inputs == ["Learning_Rate", "W1", "W1_grad", "FP16_W1"]
    assert node.aliases == (IOAlias(1, 0), IOAlias(3, 1))

    GraphExecutor(graph).run(_feeds(regression_batches(1)[0]), [result.output_keys[OPTIMIZER_UPDATE_KEY]])
    assert graph.initializers["FP16_W1"].dtype == torch.float16
    assert_tensor_close(graph.initializers["FP16_W1"].float(), graph.initializers["W1"].half().float())


@pytest.mark.parametrize(
    "setup, message",
    [
        (lambda g: g.add_initializer("FP16_W1", torch.zeros(3, 5)), "is fp32"),
        (lambda g: None, "must be an initializer"),
    ],
)
def test_invalid_fp16_shadow(setup, message) -> None:
    graph, gradients = _graph_with_gradients(("W1",))
    setup(graph)
    configs = {"W1": OptimizerNodeConfig(name="SGDOptimizer", fp16_weight_arg_name="FP16_W1")}
    with pytest.raises(InvalidConfiguration, match=message):
        build_optimizer_graph(graph, gradients, configs, OptimizerGraphConfig())


def test_loss_scale_input_is_wired_last() -> None:
    graph, gradients = _graph_with_gradients(("W2",))
    config = OptimizerGraphConfig(loss_scale_input_name="Loss_Scale")
    build_optimizer_graph(graph, gradients, _configs(weights=("W2",)), config)

    node = graph.node("SGDOptimizer_W2")
    assert node.inputs == ["Learning_Rate", "W2", "W2_grad", "", "", "Loss_Scale"]
    assert node.aliases == (IOAlias(1, 0),)
    assert graph.arg_type("Loss_Scale") == TensorType("fp32", ())


def test_check_gradients_finite_gates_the_update() -> None:
    graph, gradients = _graph_with_gradients()
    result = build_optimizer_graph(graph, gradients, _configs(), OptimizerGraphConfig(check_gradients_finite=True))

    flag = result.output_keys[GRADIENT_ALL_FINITE_KEY]
    assert graph.producer(flag).op_type == "IsAllFinite"
    assert graph.node("SGDOptimizer_W1").inputs[4] == flag

    batch = regression_batches(1)[0]
    outputs = GraphExecutor(graph).run(_feeds(batch), [result.output_keys[OPTIMIZER_UPDATE_KEY], flag])
    assert bool(outputs[flag])

    before = graph.initializers["W1"].clone()
    poisoned = dict(batch)
    poisoned["label"] = torch.full_like(batch["label"], float("inf"))
    outputs = GraphExecutor(graph).run(_feeds(poisoned), [result.output_keys[OPTIMIZER_UPDATE_KEY], flag])
    assert not bool(outputs[flag])
    assert_tensor_close(graph.initializers["W1"], before)


def test_do_update_input_skips_step() -> None:
    graph, gradients = _graph_with_gradients()
    result = build_optimizer_graph(graph, gradients, _configs(), OptimizerGraphConfig(do_update_input_name="DoUpdate"))

    assert graph.arg_type("DoUpdate") == TensorType("bool", ())
    before = {w: graph.initializers[w].clone() for w in WEIGHTS}
    feeds = {**_feeds(regression_batches(1)[0]), "DoUpdate": torch.tensor(False)}
    GraphExecutor(graph).run(feeds, [result.output_keys[OPTIMIZER_UPDATE_KEY]])

    for w in WEIGHTS:
        assert_tensor_close(graph.initializers[w], before[w])


def test_allreduce_per_weight() -> None:
    graph, gradients = _graph_with_gradients()
    config = OptimizerGraphConfig(world=MPIContext(world_rank=1, world_size=2))
    result = build_optimizer_graph(graph, gradients, _configs(), config)

    assert result.kind == "Allreduce"
    assert result.owned_weights == WEIGHTS
    allreduce = [node for node in graph.nodes if node.op_type == "AllReduce"]
    assert len(allreduce) == len(WEIGHTS)
    assert graph.node("SGDOptimizer_W1").inputs[2] == "W1_grad_AllReduce_Out"
    assert all(node.attributes["group"] == "data_parallel" for node in allreduce)


def test_allreduce_in_fp16_casts_gradients() -> None:
    graph, gradients = _graph_with_gradients(("W1",))
    config = OptimizerGraphConfig(world=MPIContext(world_rank=0, world_size=2), allreduce_in_fp16=True)
    build_optimizer_graph(graph, gradients, _configs(weights=("W1",)), config)

    cast = graph.producer("W1_grad_fp16")
    assert cast.op_type == "Cast"
    assert graph.producer("W1_grad_AllReduce_Out").inputs == ["W1_grad_fp16"]
    assert graph.arg_type("W1_grad_AllReduce_Out").elem_type == "fp16"


@pytest.mark.parametrize(
    "configs, message",
    [
        ({"W1": OptimizerNodeConfig(name="SGDOptimizer")}, "No optimizer config for weight"),
        (_configs(name="RMSPropOptimizer"), "Unsupported optimizer"),
        (_configs("AdamOptimizer", attributes={"momentum": 0.9}), "does not accept attributes"),
        (_configs("AdamOptimizer", attributes={"alpha": 1.5}), r"alpha must be in \[0, 1\]"),
        (_configs("LambOptimizer", attributes={"threshold": 0.0}), "threshold must be > 0"),
        (_configs("AdamOptimizer", attributes={"max_norm": -1.0}), "max_norm must be > 0"),
        (_configs(lr_feed_name=""), "Empty learning-rate feed name"),
        (_configs(lr_feed_name="H1"), "exists but is not a graph input"),
    ],
)
def test_invalid_node_configs(configs, message) -> None:
    graph, gradients = _graph_with_gradients()
    with pytest.raises(InvalidConfiguration, match=message):
        build_optimizer_graph(graph, gradients, configs, OptimizerGraphConfig())


def test_empty_gradients_rejected() -> None:
    graph, _ = _graph_with_gradients()
    with pytest.raises(InvalidConfiguration, match="No weight gradients"):
        build_optimizer_graph(graph, {}, {}, OptimizerGraphConfig())


def test_graph_config_validation() -> None:
    with pytest.raises(InvalidConfiguration, match="gradient_accumulation_steps"):
        OptimizerGraphConfig(gradient_accumulation_steps=0)
    with pytest.raises(InvalidConfiguration, match="mutually exclusive"):
        OptimizerGraphConfig(do_update_input_name="DoUpdate", check_gradients_finite=True)


def test_alias_check_rejects_read_after_write() -> None:
    graph = Graph("alias")
    graph.add_initializer("W", torch.ones(2))
    graph.add_node("ZeroGradient", ["W"], ["W_zeroed"], name="writer", aliases=[IOAlias(0, 0)])
    graph.add_node("Add", ["W", "W_zeroed"], ["late"], name="reader")

    with pytest.raises(AliasConflict, match="reads 'W' after 'writer'"):
        check_inplace_aliasing(graph)


def test_alias_check_rejects_two_writers() -> None:
    graph = Graph("alias")
    graph.add_initializer("W", torch.ones(2))
    graph.add_node("ZeroGradient", ["W"], ["a"], name="first", aliases=[IOAlias(0, 0)])
    graph.add_node("ZeroGradient", ["W"], ["b"], name="second", aliases=[IOAlias(0, 0)])

    with pytest.raises(AliasConflict, match="overwritten in place by both"):
        check_inplace_aliasing(graph)


def test_feed_name_conflict_leaves_graph_untouched() -> None:
    graph, gradients = _graph_with_gradients()
    node_count, inputs = len(graph.nodes), list(graph.inputs)
    config = OptimizerGraphConfig(gradient_accumulation_steps=2)

    with pytest.raises(InvalidConfiguration, match="is not a graph input"):
        build_optimizer_graph(graph, gradients, _configs(lr_feed_name="H0"), config)

    assert len(graph.nodes) == node_count
    assert graph.inputs == inputs
    assert not any(name.endswith("_accumulation_buffer") for name in graph.initializers)


def test_loss_scale_conflict_detected_before_insertion() -> None:
    graph, gradients = _graph_with_gradients()
    node_count = len(graph.nodes)
    config = OptimizerGraphConfig(loss_scale_input_name="H2")

    with pytest.raises(InvalidConfiguration, match="'H2' exists but is not a graph input"):
        build_optimizer_graph(graph, gradients, _configs(), config)

    assert len(graph.nodes) == node_count
