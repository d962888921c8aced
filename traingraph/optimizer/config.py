"""Per-weight and per-graph optimizer configuration."""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import Literal
from typing import Mapping
from typing import Optional

from traingraph.distributed.context import MPIContext
from traingraph.errors import InvalidConfiguration


OptimizerName = Literal["SGDOptimizer", "AdamOptimizer", "LambOptimizer"]


@dataclass(frozen=True)
class OptimizerNodeConfig:
    """
    Optimizer binding of one trainable weight.

    Attributes:
        name: Optimizer op type.
        lr_feed_name: Graph input carrying the learning rate.
        attributes: Hyperparameters (alpha, beta, lambda, epsilon, threshold).
        do_bias_correction: Adam bias correction switch.
        use_fp16_moments: Keep momentum buffers in fp16.
        fp16_weight_arg_name: fp16 shadow copy of the weight, updated in place.
        owner_rank: Rank owning this weight's optimizer state under ZeRO.
        reduction_group: Collective group used for gradient reduction.
    """

    name: OptimizerName
    lr_feed_name: str = "Learning_Rate"
    attributes: Mapping[str, float] = field(default_factory=dict)
    do_bias_correction: bool = True
    use_fp16_moments: bool = False
    fp16_weight_arg_name: Optional[str] = None
    owner_rank: Optional[int] = None
    reduction_group: str = "data_parallel"


@dataclass(frozen=True)
class OptimizerGraphConfig:
    """Graph-wide optimizer settings."""

    world: MPIContext = field(default_factory=MPIContext)
    partition_optimizer: bool = False
    allreduce_in_fp16: bool = False
    gradient_accumulation_steps: int = 1
    loss_scale_input_name: Optional[str] = None
    do_update_input_name: Optional[str] = None
    check_gradients_finite: bool = False

    def __post_init__(self) -> None:
        if self.gradient_accumulation_steps < 1:
            raise InvalidConfiguration(
                f"gradient_accumulation_steps must be >= 1, got {self.gradient_accumulation_steps}"
            )
        if self.do_update_input_name is not None and self.check_gradients_finite:
            raise InvalidConfiguration("do_update_input_name and check_gradients_finite are mutually exclusive")
