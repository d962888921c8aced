"""Tests for the runner configuration schema and loader."""

from __future__ import annotations

import pytest

from traingraph.config import DistributedSettings
from traingraph.config import MixedPrecisionSettings
from traingraph.config import OptimizerSettings
from traingraph.config import TrainingRunnerConfig
from traingraph.config import load_config
from traingraph.distributed.context import MPIContext


def test_defaults() -> None:
    config = load_config()

    assert config == TrainingRunnerConfig()
    assert config.optimizer.name == "SGDOptimizer"
    assert config.mixed_precision.dynamic
    assert config.optimizer_graph_config().world == MPIContext()


def test_yaml_file_and_overrides(tmp_path) -> None:
    path = tmp_path / "run.yaml"
    path.write_text(
        "optimizer:\n"
        "  name: AdamOptimizer\n"
        "  learning_rate: 0.001\n"
        "  attributes:\n"
        "    beta: 0.98\n"
        "distributed:\n"
        "  world_size: 4\n"
        "  world_rank: 2\n"
        "  partition_optimizer: true\n"
        "num_epochs: 3\n"
    )

    config = load_config(path, ["optimizer.learning_rate=0.01", "mixed_precision.loss_scale=1024"])

    assert isinstance(config, TrainingRunnerConfig)
    assert config.optimizer.name == "AdamOptimizer"
    assert config.optimizer.learning_rate == 0.01
    assert config.optimizer.attributes == {"beta": 0.98}
    assert config.num_epochs == 3
    assert not config.mixed_precision.dynamic

    graph_config = config.optimizer_graph_config()
    assert graph_config.world == MPIContext(world_rank=2, world_size=4)
    assert graph_config.partition_optimizer

    node_config = config.optimizer.node_config()
    assert node_config.name == "AdamOptimizer"
    assert node_config.attributes == {"beta": 0.98}


def test_load_config_rejects_out_of_range_values() -> None:
    with pytest.raises(ValueError, match="num_epochs must be >= 1"):
        load_config(overrides=["num_epochs=0"])


def test_distributed_from_env(monkeypatch) -> None:
    monkeypatch.setenv("RANK", "1")
    monkeypatch.setenv("WORLD_SIZE", "2")
    monkeypatch.setenv("LOCAL_RANK", "1")

    context = DistributedSettings(from_env=True).context()

    assert context == MPIContext(world_rank=1, world_size=2, local_rank=1)


@pytest.mark.parametrize(
    "factory, message",
    [
        (lambda: OptimizerSettings(name="Adagrad"), "optimizer name must be one of"),
        (lambda: OptimizerSettings(learning_rate=-1.0), "learning_rate must be >= 0"),
        (lambda: OptimizerSettings(lr_feed_name=""), "lr_feed_name must be non-empty"),
        (lambda: OptimizerSettings(gradient_accumulation_steps=0), "gradient_accumulation_steps must be >= 1"),
        (lambda: OptimizerSettings(lr_schedule="linear"), "lr_schedule must be one of"),
        (lambda: OptimizerSettings(warmup_steps=-1), "warmup_steps must be >= 0"),
        (lambda: OptimizerSettings(min_learning_rate=-0.1), "min_learning_rate must be >= 0"),
        (lambda: DistributedSettings(world_size=0), "world_size must be >= 1"),
        (lambda: DistributedSettings(world_rank=2, world_size=2), "world_rank must be in"),
        (lambda: MixedPrecisionSettings(loss_scale=-1.0), "loss_scale must be >= 0"),
        (lambda: MixedPrecisionSettings(growth_interval=0), "growth_interval must be >= 1"),
        (lambda: TrainingRunnerConfig(max_steps=-1), "max_steps must be >= 0"),
        (lambda: TrainingRunnerConfig(log_steps=0), "log_steps must be >= 1"),
        (lambda: TrainingRunnerConfig(evaluation_period=-1), "evaluation_period must be >= 0"),
        (
            lambda: TrainingRunnerConfig(optimizer=OptimizerSettings(lr_schedule="cosine")),
            "cosine lr_schedule needs max_steps > 0",
        ),
        (
            lambda: TrainingRunnerConfig(optimizer=OptimizerSettings(lr_schedule="cosine", warmup_steps=3), max_steps=3),
            "warmup_steps must be smaller than max_steps",
        ),
        (lambda: TrainingRunnerConfig(model_name=""), "model_name must be non-empty"),
    ],
)
def test_invalid_settings(factory, message) -> None:
    with pytest.raises(ValueError, match=message):
        factory()


def test_schedule_overrides() -> None:
    config = load_config(
        overrides=[
            "optimizer.lr_schedule=cosine",
            "optimizer.warmup_steps=10",
            "optimizer.min_learning_rate=0.001",
            "max_steps=100",
            "evaluation_period=25",
        ]
    )

    assert config.optimizer.lr_schedule == "cosine"
    assert config.optimizer.warmup_steps == 10
    assert config.optimizer.min_learning_rate == 0.001
    assert config.evaluation_period == 25
