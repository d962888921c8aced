"""
Learning rate schedules fed to the optimizer graph's learning-rate input.
"""

import math

_SCHEDULES = ("constant", "cosine")


class LearningRateScheduler:
    """Linear warmup, then either a constant rate or cosine annealing to `min_lr`."""

    def __init__(
        self,
        base_lr: float,
        schedule: str = "constant",
        warmup_steps: int = 0,
        max_steps: int = 0,
        min_lr: float = 0.0,
    ) -> None:
        """
        Args:
            base_lr: Peak learning rate, reached at the end of warmup
            schedule: "constant" or "cosine"
            warmup_steps: Number of warmup steps
            max_steps: Total training steps (cosine only)
            min_lr: Final learning rate of the cosine decay
        """
        if schedule not in _SCHEDULES:
            raise ValueError(f"lr_schedule must be one of {_SCHEDULES}, got {schedule!r}")
        if base_lr < 0:
            raise ValueError("learning_rate must be >= 0")
        if warmup_steps < 0:
            raise ValueError("warmup_steps must be >= 0")
        if min_lr < 0:
            raise ValueError("min_learning_rate must be >= 0")
        if schedule == "cosine":
            if max_steps <= 0:
                raise ValueError("cosine schedule needs max_steps > 0")
            if warmup_steps >= max_steps:
                raise ValueError("warmup_steps must be smaller than max_steps")

        self.base_lr = base_lr
        self.schedule = schedule
        self.warmup_steps = warmup_steps
        self.max_steps = max_steps
        self.min_lr = min_lr
        self.current_step = 0

    def step(self) -> float:
        """Advance to the next optimizer update and return its learning rate."""
        self.current_step += 1
        return self.get_lr()

    def get_lr(self) -> float:
        if self.warmup_steps > 0 and self.current_step <= self.warmup_steps:
            return self.base_lr * self.current_step / self.warmup_steps
        if self.schedule == "constant":
            return self.base_lr

        progress = (self.current_step - self.warmup_steps) / (self.max_steps - self.warmup_steps)
        progress = min(max(progress, 0.0), 1.0)
        return self.min_lr + (self.base_lr - self.min_lr) * 0.5 * (1 + math.cos(math.pi * progress))
