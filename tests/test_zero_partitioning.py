"""Unit tests for ZeRO weight ownership and the partitioned optimizer graph."""

from __future__ import annotations

import pytest
import torch

from conftest import assert_tensor_close
from conftest import build_mlp_graph
from conftest import regression_batches
from traingraph.distributed.context import MPIContext
from traingraph.distributed.partition import partition_order
from traingraph.distributed.partition import partition_weights
from traingraph.distributed.partition import rank_loads
from traingraph.errors import InvalidConfiguration
from traingraph.gradients.builder import GradientGraphSpec
from traingraph.gradients.builder import build_gradient_graph
from traingraph.gradients.loss import LossFunctionInfo
from traingraph.gradients.loss import build_loss_function
from traingraph.optimizer.builder import GRADIENT_ALL_FINITE_KEY
from traingraph.optimizer.builder import OPTIMIZER_UPDATE_KEY
from traingraph.optimizer.config import OptimizerGraphConfig
from traingraph.optimizer.config import OptimizerNodeConfig
from traingraph.optimizer.registry import build_optimizer_graph
from traingraph.runtime.executor import GraphExecutor


WEIGHTS = ("B1", "B2", "W1", "W2")


def _zero_config(rank: int, world_size: int = 2, **kwargs) -> OptimizerGraphConfig:
    return OptimizerGraphConfig(world=MPIContext(world_rank=rank, world_size=world_size), partition_optimizer=True, **kwargs)


def _build(rank: int, world_size: int = 2, node_kwargs=None, **kwargs):
    graph = build_mlp_graph()
    build_loss_function(graph, LossFunctionInfo("MeanSquaredError", "loss", ("Y", "label")))
    gradients = build_gradient_graph(graph, GradientGraphSpec(weight_names=WEIGHTS, loss_name="loss"))
    node_kwargs = node_kwargs or {}
    configs = {w: OptimizerNodeConfig(name="AdamOptimizer", **node_kwargs.get(w, {})) for w in WEIGHTS}
    result = build_optimizer_graph(graph, gradients, configs, _zero_config(rank, world_size, **kwargs))
    return graph, result


def test_partition_covers_every_weight_once() -> None:
    """Every weight gets exactly one owner, and ranks own contiguous runs in name order."""
    numels = {"a": 10, "b": 10, "c": 10, "d": 10}
    owners = partition_weights(numels, 2)

    assert owners == {"a": 0, "b": 0, "c": 1, "d": 1}
    assert rank_loads(owners, numels, 2) == [20, 20]


def test_partition_is_order_independent_and_stable() -> None:
    numels = {"W2": 10, "B1": 5, "W1": 15, "B2": 2}
    reordered = dict(reversed(list(numels.items())))

    assert partition_weights(numels, 3) == partition_weights(reordered, 3)


def test_partition_more_ranks_than_weights() -> None:
    owners = partition_weights({"only": 7}, 4)

    assert owners == {"only": 0}
    assert rank_loads(owners, {"only": 7}, 4) == [7, 0, 0, 0]


def test_partition_large_weight_does_not_exceed_last_rank() -> None:
    owners = partition_weights({"a": 1, "b": 100, "c": 1}, 2)

    assert set(owners.values()) <= {0, 1}
    assert owners["a"] == 0


def test_partition_rejects_bad_world_size() -> None:
    with pytest.raises(ValueError, match="world_size must be >= 1"):
        partition_weights({"a": 1}, 0)


def test_partition_order_groups_by_rank() -> None:
    assert partition_order({"b": 1, "a": 1, "c": 0}) == ["c", "a", "b"]


@pytest.mark.parametrize("rank", [0, 1])
def test_each_rank_builds_state_only_for_owned_weights(rank) -> None:
    graph, result = _build(rank)
    owners = partition_weights({w: graph.initializers[w].numel() for w in WEIGHTS}, 2)
    owned = tuple(w for w in WEIGHTS if owners[w] == rank)

    assert result.kind == "ZeRO"
    assert result.owned_weights == owned
    assert set(result.weight_outputs) == set(owned)
    for weight in WEIGHTS:
        assert graph.has_node(f"AdamOptimizer_{weight}") == (weight in owned)
        assert graph.is_initializer(f"{weight}_Moment_1") == (weight in owned)


def test_one_reduce_scatter_and_one_all_gather() -> None:
    graph, _ = _build(0)
    owners = partition_weights({w: graph.initializers[w].numel() for w in WEIGHTS}, 2)
    order = partition_order(owners)

    scatter = [node for node in graph.nodes if node.op_type == "ReduceScatter"]
    gather = [node for node in graph.nodes if node.op_type == "AllGather"]
    assert len(scatter) == 1 and len(gather) == 1
    assert scatter[0].inputs == [f"{w}_grad" for w in order]
    assert scatter[0].attributes["owner_ranks"] == [owners[w] for w in order]
    assert gather[0].outputs == [f"{w}_AllGather_Out" for w in order]
    assert len(gather[0].aliases) == len(order)


def test_all_gather_includes_fp16_shadows() -> None:
    graph = build_mlp_graph()
    build_loss_function(graph, LossFunctionInfo("MeanSquaredError", "loss", ("Y", "label")))
    gradients = build_gradient_graph(graph, GradientGraphSpec(weight_names=WEIGHTS, loss_name="loss"))
    for w in WEIGHTS:
        graph.add_initializer(f"FP16_{w}", graph.initializers[w].half())
    configs = {w: OptimizerNodeConfig(name="SGDOptimizer", fp16_weight_arg_name=f"FP16_{w}") for w in WEIGHTS}
    build_optimizer_graph(graph, gradients, configs, _zero_config(1))

    gather = next(node for node in graph.nodes if node.op_type == "AllGather")
    assert len(gather.outputs) == 2 * len(WEIGHTS)
    assert any(out.startswith("FP16_") for out in gather.outputs)


def test_finite_flag_is_agreed_across_ranks() -> None:
    graph, result = _build(0, check_gradients_finite=True)

    flag = result.output_keys[GRADIENT_ALL_FINITE_KEY]
    reduce = graph.producer(flag)
    assert reduce.op_type == "AllReduce"
    assert reduce.attributes["reduce_op"] == "min"
    assert graph.producer(reduce.inputs[0]).op_type == "IsAllFinite"


def test_explicit_owner_ranks() -> None:
    node_kwargs = {w: {"owner_rank": 1} for w in WEIGHTS}
    graph, result = _build(1, node_kwargs=node_kwargs)
    assert result.owned_weights == WEIGHTS

    with pytest.raises(InvalidConfiguration, match="no assigned owning rank"):
        _build(0, node_kwargs={"W1": {"owner_rank": 1}})
    with pytest.raises(InvalidConfiguration, match="outside"):
        _build(0, node_kwargs={w: {"owner_rank": 2} for w in WEIGHTS})


def test_single_process_run_updates_only_owned_weights() -> None:
    """Without a process group the collectives are identities, so non-owned weights stay put."""
    graph, result = _build(0)
    before = {w: graph.initializers[w].clone() for w in WEIGHTS}
    feeds = {**regression_batches(1)[0], "Learning_Rate": torch.tensor(0.1)}

    GraphExecutor(graph).run(feeds, [result.output_keys[OPTIMIZER_UPDATE_KEY]])

    for weight in WEIGHTS:
        if weight in result.owned_weights:
            assert not torch.equal(graph.initializers[weight], before[weight])
        else:
            assert_tensor_close(graph.initializers[weight], before[weight])


def test_rank_without_weights_still_declares_learning_rate() -> None:
    graph, result = _build(1, node_kwargs={w: {"owner_rank": 0} for w in WEIGHTS})
    before = {w: graph.initializers[w].clone() for w in WEIGHTS}
    feeds = {**regression_batches(1)[0], "Learning_Rate": torch.tensor(0.1)}

    assert result.owned_weights == ()
    assert "Learning_Rate" in graph.inputs
    GraphExecutor(graph).run(feeds, [result.output_keys[OPTIMIZER_UPDATE_KEY]])

    for weight in WEIGHTS:
        assert_tensor_close(graph.initializers[weight], before[weight])
