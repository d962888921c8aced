"""Static or dynamic loss scale fed to graphs built with a loss-scale input."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import torch


LOGGER = logging.getLogger(__name__)

DYNAMIC_INITIAL_SCALE = 65536.0


@dataclass
class LossScalerState:
    """Mutable counters updated once per optimizer step."""

    loss_scale: float
    growth_tracker: int = 0
    skipped_steps: int = 0
    found_inf_steps: int = 0


class LossScaler:
    """
    Loss scale policy.

    A configured ``loss_scale`` of 0.0 selects dynamic scaling starting at
    65536: the scale backs off on every step with non-finite gradients and
    grows after ``growth_interval`` consecutive finite steps. Any positive
    value is a fixed scale.
    """

    def __init__(
        self,
        loss_scale: float = 0.0,
        *,
        input_name: str = "Loss_Scale",
        growth_factor: float = 2.0,
        backoff_factor: float = 0.5,
        growth_interval: int = 2000,
        min_scale: float = 1.0,
        max_scale: float = 16777216.0,
    ) -> None:
        if loss_scale < 0.0:
            raise ValueError(f"loss_scale must be >= 0, got {loss_scale}")
        if growth_factor <= 1.0:
            raise ValueError(f"growth_factor must be > 1, got {growth_factor}")
        if not 0.0 < backoff_factor < 1.0:
            raise ValueError(f"backoff_factor must be in (0, 1), got {backoff_factor}")
        if growth_interval < 1:
            raise ValueError(f"growth_interval must be >= 1, got {growth_interval}")
        if not 0.0 < min_scale <= max_scale:
            raise ValueError(f"Invalid scale bounds [{min_scale}, {max_scale}]")
        self.input_name = input_name
        self.is_dynamic = loss_scale == 0.0
        self.growth_factor = growth_factor
        self.backoff_factor = backoff_factor
        self.growth_interval = growth_interval
        self.min_scale = min_scale
        self.max_scale = max_scale
        self.state = LossScalerState(loss_scale=DYNAMIC_INITIAL_SCALE if self.is_dynamic else float(loss_scale))

    @property
    def loss_scale(self) -> float:
        return self.state.loss_scale

    def as_feed(self) -> dict[str, torch.Tensor]:
        return {self.input_name: torch.tensor(self.state.loss_scale, dtype=torch.float32)}

    def update(self, all_finite: bool) -> None:
        """Record one attempted optimizer step."""
        if not all_finite:
            self.state.found_inf_steps += 1
            self.state.skipped_steps += 1
        if not self.is_dynamic:
            return

        if not all_finite:
            self.state.loss_scale = max(self.min_scale, self.state.loss_scale * self.backoff_factor)
            self.state.growth_tracker = 0
            LOGGER.debug("Non-finite gradients; loss scale backed off to %s", self.state.loss_scale)
            return

        self.state.growth_tracker += 1
        if self.state.growth_tracker < self.growth_interval:
            return
        self.state.growth_tracker = 0
        self.state.loss_scale = min(self.max_scale, self.state.loss_scale * self.growth_factor)
