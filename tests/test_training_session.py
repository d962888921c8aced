"""Tests for assembling a training graph with TrainingSession."""

from __future__ import annotations

import logging

import pytest
import torch

from conftest import assert_tensor_close
from conftest import build_mlp_graph
from conftest import regression_batches
from traingraph.errors import InvalidConfiguration
from traingraph.gradients.loss import LossFunctionInfo
from traingraph.graph.inference import infer_graph
from traingraph.graph.serialization import SaveOption
from traingraph.graph.serialization import load_graph
from traingraph.graph.types import TensorType
from traingraph.optimizer.builder import GRADIENT_ALL_FINITE_KEY
from traingraph.optimizer.builder import OPTIMIZER_UPDATE_KEY
from traingraph.optimizer.config import OptimizerGraphConfig
from traingraph.optimizer.config import OptimizerNodeConfig
from traingraph.training.mixed_precision import convert_to_mixed_precision
from traingraph.training.session import LOSS_SCALE_INPUT_NAME
from traingraph.training.session import TrainingSession
from traingraph.training.session import TrainingSessionConfig


MSE = LossFunctionInfo("MeanSquaredError", "loss", ("Y", "label"))


def _session(**kwargs) -> TrainingSession:
    kwargs.setdefault("loss", MSE)
    return TrainingSession(build_mlp_graph(), TrainingSessionConfig(**kwargs))


def _feeds(batch, lr: float = 0.1) -> dict[str, torch.Tensor]:
    return {**batch, "Learning_Rate": torch.tensor(lr)}


# ----------------------------------------------------------------------
# Configuration and weight selection
# ----------------------------------------------------------------------
@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"loss": MSE, "weights_to_train": ("W1",), "weights_not_to_train": ("B1",)}, "mutually exclusive"),
        ({}, "Either loss or loss_name must be given"),
        ({"loss": MSE, "loss_name": "other"}, "disagrees with loss"),
    ],
)
def test_session_config_validation(kwargs, message) -> None:
    with pytest.raises(InvalidConfiguration, match=message):
        TrainingSessionConfig(**kwargs)


def test_default_selection_trains_every_float_initializer() -> None:
    session = _session()
    session.build()

    assert session.weights_to_train == ("B1", "B2", "W1", "W2")
    assert session.gradients == {w: f"{w}_grad" for w in session.weights_to_train}
    assert session.is_built
    assert session.loss_scale_input_name is None


def test_weights_not_to_train_excluded_with_warning(caplog) -> None:
    session = _session(weights_not_to_train=("B1", "B2", "no_such_weight"))

    with caplog.at_level(logging.WARNING, logger="traingraph.training.session"):
        session.build()

    assert session.weights_to_train == ("W1", "W2")
    assert "no_such_weight" in caplog.text


def test_explicit_weights_to_train() -> None:
    session = _session(weights_to_train=("W2",))
    result = session.build()

    assert session.weights_to_train == ("W2",)
    assert result.owned_weights == ("W2",)
    assert not session.graph.has_node("SGDOptimizer_W1")


def test_unknown_weight_to_train_rejected() -> None:
    with pytest.raises(InvalidConfiguration, match="are not initializers"):
        _session(weights_to_train=("H1",)).build()


def test_non_differentiable_initializer_is_not_trainable() -> None:
    graph = build_mlp_graph()
    graph.add_initializer("P", torch.tensor(2.0))
    graph.add_node("Pow", ["Y", "P"], ["Y2"], name="square")
    infer_graph(graph)
    loss = LossFunctionInfo("MeanSquaredError", "loss", ("Y2", "label"))
    session = TrainingSession(graph, TrainingSessionConfig(loss=loss))
    session.attach_loss()

    assert "P" not in session.trainable_initializers()
    assert "W1" in session.trainable_initializers()


def test_existing_loss_edge_can_be_named() -> None:
    graph = build_mlp_graph()
    graph.add_node("ReduceMean", ["Y"], ["mean_y"], attributes={"keepdims": 0}, stage="loss")
    infer_graph(graph)
    session = TrainingSession(graph, TrainingSessionConfig(loss_name="mean_y"))
    session.build()

    assert "mean_y" in graph.outputs


def test_missing_loss_edge_raises() -> None:
    session = TrainingSession(build_mlp_graph(), TrainingSessionConfig(loss_name="nowhere"))
    with pytest.raises(InvalidConfiguration, match="is not in graph"):
        session.build()


def test_build_twice_rejected() -> None:
    session = _session()
    session.build()
    with pytest.raises(InvalidConfiguration, match="already built"):
        session.build()


def test_per_weight_optimizer_override() -> None:
    session = _session(weight_optimizers={"W1": OptimizerNodeConfig(name="AdamOptimizer")})
    session.build()

    assert session.graph.has_node("AdamOptimizer_W1")
    assert session.graph.has_node("SGDOptimizer_W2")


def test_override_for_untrained_weight_rejected() -> None:
    session = _session(
        weights_to_train=("W2",),
        weight_optimizers={"W1": OptimizerNodeConfig(name="AdamOptimizer")},
    )
    with pytest.raises(InvalidConfiguration, match="untrained weights"):
        session.build()


# ----------------------------------------------------------------------
# Running and saving
# ----------------------------------------------------------------------
def test_training_steps_reduce_loss() -> None:
    session = _session(optimizer=OptimizerNodeConfig(name="AdamOptimizer"))
    result = session.build()
    batch = regression_batches(1)[0]
    update = result.output_keys[OPTIMIZER_UPDATE_KEY]

    losses = [float(session.run(_feeds(batch, 0.05), ["loss", update])["loss"]) for _ in range(30)]

    assert losses[-1] < losses[0]


def test_save_options_select_stages(tmp_path) -> None:
    session = _session()
    session.build()
    session.run(_feeds(regression_batches(1)[0]), [session.optimizer_result.output_keys[OPTIMIZER_UPDATE_KEY]])

    full = load_graph(session.save(tmp_path / "full.pt"))
    forward = load_graph(session.save(tmp_path / "fwd.pt", SaveOption.WITH_UPDATED_WEIGHTS))
    with_loss = load_graph(session.save(tmp_path / "loss.pt", SaveOption.WITH_UPDATED_WEIGHTS_AND_LOSS_FUNC))
    with_grads = load_graph(
        session.save(tmp_path / "grads.pt", SaveOption.WITH_UPDATED_WEIGHTS_AND_LOSS_FUNC_AND_GRADIENTS)
    )

    assert {n.stage for n in full.nodes} == {"forward", "loss", "gradient", "optimizer"}
    assert {n.stage for n in forward.nodes} == {"forward"}
    assert {n.stage for n in with_loss.nodes} == {"forward", "loss"}
    assert {n.stage for n in with_grads.nodes} == {"forward", "loss", "gradient"}
    assert forward.outputs == ["Y"]
    assert "loss" in with_loss.outputs
    assert "Learning_Rate" not in forward.inputs
    assert_tensor_close(forward.initializers["W1"], session.weight("W1"))


# ----------------------------------------------------------------------
# Mixed precision
# ----------------------------------------------------------------------
def test_mixed_precision_graph_structure() -> None:
    session = _session(use_mixed_precision=True)
    result = session.build()
    graph = session.graph

    assert session.fp16_weights == {w: f"FP16_{w}" for w in ("B1", "B2", "W1", "W2")}
    assert graph.initializers["FP16_W1"].dtype == torch.float16
    assert graph.initializers["W1"].dtype == torch.float32
    assert graph.node("fc1").inputs == ["X_fp16", "FP16_W1"]
    assert graph.arg_type("Y").elem_type == "fp16"
    assert graph.arg_type("loss").elem_type == "fp16"
    assert graph.arg_type(LOSS_SCALE_INPUT_NAME) == TensorType("fp32", ())
    assert session.gradients["W1"] == "FP16_W1_grad"
    assert graph.arg_type("FP16_W1_grad").elem_type == "fp16"

    optimizer = graph.node("SGDOptimizer_W1")
    assert optimizer.inputs[1] == "W1"
    assert optimizer.inputs[3] == "FP16_W1"
    assert optimizer.inputs[-1] == LOSS_SCALE_INPUT_NAME
    assert GRADIENT_ALL_FINITE_KEY in result.output_keys


def test_mixed_precision_with_casts_and_static_scale() -> None:
    session = _session(use_mixed_precision=True, use_fp16_initializer=False, dynamic_loss_scale=False)
    result = session.build()
    graph = session.graph

    assert graph.producer("FP16_W1").op_type == "Cast"
    assert not graph.is_initializer("FP16_W1")
    assert session.gradients["W1"] == "W1_grad"
    assert graph.arg_type("W1_grad").elem_type == "fp32"
    assert GRADIENT_ALL_FINITE_KEY not in result.output_keys
    assert "FP16_W_Out" not in result.weight_outputs["W1"]


def test_mixed_precision_requires_fp32_initializer() -> None:
    graph = build_mlp_graph()
    with pytest.raises(InvalidConfiguration, match="must be an fp32 initializer"):
        convert_to_mixed_precision(graph, ["H1"])


def test_mixed_precision_after_gradients_rejected() -> None:
    session = _session()
    session.build()
    with pytest.raises(InvalidConfiguration, match="before gradients are built"):
        convert_to_mixed_precision(session.graph, ["W1"])


def test_from_runner_config_maps_settings() -> None:
    from traingraph.config import MixedPrecisionSettings
    from traingraph.config import OptimizerSettings
    from traingraph.config import TrainingRunnerConfig

    runner_config = TrainingRunnerConfig(
        optimizer=OptimizerSettings(name="LambOptimizer", gradient_accumulation_steps=2),
        mixed_precision=MixedPrecisionSettings(enabled=True, loss_scale=128.0),
        output_dir="",
    )
    config = TrainingSessionConfig.from_runner_config(runner_config, loss=MSE, weights_to_train=["W1"])

    assert config.optimizer.name == "LambOptimizer"
    assert config.optimizer_graph == OptimizerGraphConfig(gradient_accumulation_steps=2)
    assert config.use_mixed_precision
    assert not config.dynamic_loss_scale
    assert config.weights_to_train == ("W1",)
