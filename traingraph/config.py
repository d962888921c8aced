"""
Configuration system for traingraph.

Dataclass schemas validated in __post_init__; YAML files and dotlist
overrides are merged onto them with OmegaConf.
"""

from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Dict
from typing import Optional
from typing import Sequence
from typing import Union

from omegaconf import OmegaConf

from traingraph.distributed.context import MPIContext
from traingraph.optimizer.config import OptimizerGraphConfig
from traingraph.optimizer.config import OptimizerNodeConfig


_OPTIMIZERS = ("SGDOptimizer", "AdamOptimizer", "LambOptimizer")
_LR_SCHEDULES = ("constant", "cosine")


@dataclass
class OptimizerSettings:
    """Optimizer shared by all trainable weights."""
    name: str = "SGDOptimizer"
    learning_rate: float = 0.1
    lr_feed_name: str = "Learning_Rate"
    # Per-step rate: linear warmup, then constant or cosine decay to min_learning_rate
    lr_schedule: str = "constant"
    warmup_steps: int = 0
    min_learning_rate: float = 0.0
    # alpha, beta, lambda, epsilon, threshold, max_norm; unset keys take the op defaults
    attributes: Dict[str, float] = field(default_factory=dict)
    do_bias_correction: bool = True
    use_fp16_moments: bool = False
    gradient_accumulation_steps: int = 1

    def __post_init__(self) -> None:
        if self.name not in _OPTIMIZERS:
            raise ValueError(f"optimizer name must be one of {_OPTIMIZERS}, got {self.name!r}")
        if self.learning_rate < 0.0:
            raise ValueError(f"learning_rate must be >= 0, got {self.learning_rate}")
        if not self.lr_feed_name:
            raise ValueError("lr_feed_name must be non-empty")
        if self.lr_schedule not in _LR_SCHEDULES:
            raise ValueError(f"lr_schedule must be one of {_LR_SCHEDULES}, got {self.lr_schedule!r}")
        if self.warmup_steps < 0:
            raise ValueError(f"warmup_steps must be >= 0, got {self.warmup_steps}")
        if self.min_learning_rate < 0.0:
            raise ValueError(f"min_learning_rate must be >= 0, got {self.min_learning_rate}")
        if self.gradient_accumulation_steps < 1:
            raise ValueError(f"gradient_accumulation_steps must be >= 1, got {self.gradient_accumulation_steps}")

    def node_config(self) -> OptimizerNodeConfig:
        return OptimizerNodeConfig(
            name=self.name,
            lr_feed_name=self.lr_feed_name,
            attributes=dict(self.attributes),
            do_bias_correction=self.do_bias_correction,
            use_fp16_moments=self.use_fp16_moments,
        )


@dataclass
class DistributedSettings:
    """
    Worker placement and gradient synchronization.

    With `from_env`, rank and world size are read from RANK / WORLD_SIZE /
    LOCAL_RANK instead of the fields below.
    """
    world_rank: int = 0
    world_size: int = 1
    local_rank: int = 0
    from_env: bool = False
    partition_optimizer: bool = False
    allreduce_in_fp16: bool = False

    def __post_init__(self) -> None:
        if self.world_size < 1:
            raise ValueError(f"world_size must be >= 1, got {self.world_size}")
        if not 0 <= self.world_rank < self.world_size:
            raise ValueError(f"world_rank must be in [0, {self.world_size - 1}], got {self.world_rank}")

    def context(self) -> MPIContext:
        if self.from_env:
            return MPIContext.from_env()
        return MPIContext(world_rank=self.world_rank, world_size=self.world_size, local_rank=self.local_rank)


@dataclass
class MixedPrecisionSettings:
    """fp16 forward/backward with loss scaling."""
    enabled: bool = False
    use_fp16_initializer: bool = True
    # 0.0 selects dynamic loss scaling
    loss_scale: float = 0.0
    growth_interval: int = 2000

    def __post_init__(self) -> None:
        if self.loss_scale < 0.0:
            raise ValueError(f"loss_scale must be >= 0, got {self.loss_scale}")
        if self.growth_interval < 1:
            raise ValueError(f"growth_interval must be >= 1, got {self.growth_interval}")

    @property
    def dynamic(self) -> bool:
        return self.loss_scale == 0.0


@dataclass
class TrainingRunnerConfig:
    """Main configuration class."""
    optimizer: OptimizerSettings = field(default_factory=OptimizerSettings)
    distributed: DistributedSettings = field(default_factory=DistributedSettings)
    mixed_precision: MixedPrecisionSettings = field(default_factory=MixedPrecisionSettings)

    num_epochs: int = 1
    # 0 runs until the data is exhausted
    max_steps: int = 0
    log_steps: int = 10
    # Run the evaluation callback every N optimizer steps; 0 disables it
    evaluation_period: int = 1
    progress_bar: bool = True
    seed: int = 42

    # Output; checkpoints are skipped when output_dir is empty
    model_name: str = "model"
    output_dir: str = "outputs"
    log_dir: str = "logs"

    def __post_init__(self) -> None:
        if self.num_epochs < 1:
            raise ValueError(f"num_epochs must be >= 1, got {self.num_epochs}")
        if self.max_steps < 0:
            raise ValueError(f"max_steps must be >= 0, got {self.max_steps}")
        if self.log_steps < 1:
            raise ValueError(f"log_steps must be >= 1, got {self.log_steps}")
        if self.evaluation_period < 0:
            raise ValueError(f"evaluation_period must be >= 0, got {self.evaluation_period}")
        if self.optimizer.lr_schedule == "cosine":
            if self.max_steps == 0:
                raise ValueError("cosine lr_schedule needs max_steps > 0")
            if self.optimizer.warmup_steps >= self.max_steps:
                raise ValueError("warmup_steps must be smaller than max_steps")
        if not self.model_name:
            raise ValueError("model_name must be non-empty")

    def optimizer_graph_config(self) -> OptimizerGraphConfig:
        return OptimizerGraphConfig(
            world=self.distributed.context(),
            partition_optimizer=self.distributed.partition_optimizer,
            allreduce_in_fp16=self.distributed.allreduce_in_fp16,
            gradient_accumulation_steps=self.optimizer.gradient_accumulation_steps,
        )


def load_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Sequence[str] = (),
) -> TrainingRunnerConfig:
    """
    Build a TrainingRunnerConfig from defaults, an optional YAML file and dotlist overrides.

    Usage:
        config = load_config("configs/mlp.yaml", ["optimizer.name=AdamOptimizer"])

    Later sources win. Unknown keys and ill-typed values raise
    omegaconf's ValidationError; out-of-range values raise ValueError.
    """
    sources = [OmegaConf.structured(TrainingRunnerConfig)]
    if path is not None:
        sources.append(OmegaConf.load(Path(path)))
    if overrides:
        sources.append(OmegaConf.from_dotlist(list(overrides)))
    merged = OmegaConf.merge(*sources)
    return OmegaConf.to_object(merged)
