"""
Training loop over a built `TrainingSession`.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta
from pathlib import Path
from typing import Callable
from typing import Iterable
from typing import Mapping
from typing import Optional
from typing import Sequence

import torch
from tqdm import tqdm

from traingraph.config import TrainingRunnerConfig
from traingraph.graph.serialization import SaveOption
from traingraph.optimizer.builder import GRADIENT_ACCUMULATION_KEY
from traingraph.optimizer.builder import GRADIENT_ALL_FINITE_KEY
from traingraph.optimizer.builder import OPTIMIZER_UPDATE_KEY
from traingraph.runtime.loss_scaler import LossScaler
from traingraph.training.scheduler import LearningRateScheduler
from traingraph.training.session import TrainingSession


LOGGER = logging.getLogger(__name__)

Batch = Mapping[str, torch.Tensor]

# Checkpoint file suffixes, keyed by when they are written.
WITH_COST_SUFFIX = "_with_cost"
BACKWARD_SUFFIX = "_bw"
TRAINED_SUFFIX = "_trained"
TRAINED_WITH_COST_SUFFIX = "_with_cost_trained"


@dataclass
class StepAccumulator:
    """Per-run statistics, handed to every callback."""

    step: int = 0
    micro_steps: int = 0
    losses: list[float] = field(default_factory=list)
    skipped_steps: int = 0
    loss_scales: list[float] = field(default_factory=list)
    learning_rates: list[float] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def last_loss(self) -> Optional[float]:
        return self.losses[-1] if self.losses else None

    def mean_loss(self, window: int = 10) -> float:
        recent = self.losses[-window:]
        return sum(recent) / len(recent) if recent else math.nan


StepCallback = Callable[[StepAccumulator], None]


class TrainingRunner:
    """Feeds batches through a training graph, one optimizer update per step."""

    def __init__(
        self,
        session: TrainingSession,
        config: TrainingRunnerConfig,
        callbacks: Sequence[StepCallback] = (),
        evaluate: Optional[Callable[[TrainingSession], None]] = None,
    ) -> None:
        self.session = session
        self.config = config
        self.callbacks = list(callbacks)
        self.evaluate = evaluate
        self.loss_scaler: Optional[LossScaler] = None
        if session.loss_scale_input_name is not None:
            self.loss_scaler = LossScaler(
                config.mixed_precision.loss_scale,
                input_name=session.loss_scale_input_name,
                growth_interval=config.mixed_precision.growth_interval,
            )
        optimizer = config.optimizer
        self.scheduler = LearningRateScheduler(
            optimizer.learning_rate,
            schedule=optimizer.lr_schedule,
            warmup_steps=optimizer.warmup_steps,
            max_steps=config.max_steps,
            min_lr=optimizer.min_learning_rate,
        )
        self.stats = StepAccumulator()

    @property
    def rank(self) -> int:
        return self.session.config.optimizer_graph.world.world_rank

    # ------------------------------------------------------------------
    def _checkpoint_path(self, suffix: str) -> Optional[Path]:
        if not self.config.output_dir or self.rank != 0:
            return None
        return Path(self.config.output_dir) / f"{self.config.model_name}{suffix}.pt"

    def _save(self, suffix: str, option: SaveOption) -> None:
        path = self._checkpoint_path(suffix)
        if path is not None:
            self.session.save(path, option)

    def initialize(self) -> None:
        """Build the training graph, saving the intermediate graphs."""
        session = self.session
        if session.is_built:
            return
        session.attach_loss()
        self._save(WITH_COST_SUFFIX, SaveOption.NO_RELOAD)
        session.build()
        self._save(BACKWARD_SUFFIX, SaveOption.NO_RELOAD)

    def _feeds(self, batch: Batch, learning_rate: float) -> dict[str, torch.Tensor]:
        feeds = dict(batch)
        lr_name = self.session.config.optimizer.lr_feed_name
        feeds[lr_name] = torch.tensor(learning_rate, dtype=torch.float32)
        for node_config in self.session.config.weight_optimizers.values():
            feeds.setdefault(node_config.lr_feed_name, feeds[lr_name])
        if self.loss_scaler is not None:
            feeds.update(self.loss_scaler.as_feed())
        return feeds

    def train_step(self, batches: Sequence[Batch]) -> float:
        """One optimizer update over `batches` (one per micro step)."""
        keys = self.session.optimizer_result.output_keys
        loss_name = self.session.loss_name
        losses = []
        learning_rate = self.scheduler.step()
        for micro, batch in enumerate(batches):
            is_update = micro == len(batches) - 1
            fetches = [loss_name, keys[OPTIMIZER_UPDATE_KEY] if is_update else keys[GRADIENT_ACCUMULATION_KEY]]
            if is_update and GRADIENT_ALL_FINITE_KEY in keys:
                fetches.append(keys[GRADIENT_ALL_FINITE_KEY])
            feeds = self._feeds(batch, learning_rate)
            outputs = self.session.run(feeds, fetches, seed=self.config.seed + self.stats.micro_steps)
            self.stats.micro_steps += 1
            losses.append(float(outputs[loss_name]))

            if is_update and self.loss_scaler is not None:
                all_finite = True
                if GRADIENT_ALL_FINITE_KEY in keys:
                    all_finite = bool(outputs[keys[GRADIENT_ALL_FINITE_KEY]])
                self.loss_scaler.update(all_finite)
                self.stats.loss_scales.append(self.loss_scaler.loss_scale)
                if not all_finite:
                    self.stats.skipped_steps += 1
                    LOGGER.warning("Step %d skipped: non-finite gradients", self.stats.step)

        loss = sum(losses) / len(losses)
        self.stats.step += 1
        self.stats.losses.append(loss)
        self.stats.learning_rates.append(learning_rate)
        return loss

    def _should_evaluate(self) -> bool:
        period = self.config.evaluation_period
        return self.evaluate is not None and self.rank == 0 and period > 0 and self.stats.step % period == 0

    def _steps(self, data: Iterable[Batch]):
        group = self.session.config.optimizer_graph.gradient_accumulation_steps
        pending: list[Batch] = []
        for _ in range(self.config.num_epochs):
            for batch in data:
                pending.append(batch)
                if len(pending) == group:
                    yield pending
                    pending = []

    def train(self, data: Iterable[Batch]) -> StepAccumulator:
        """Main training loop."""
        self.initialize()
        max_steps = self.config.max_steps
        LOGGER.info(
            "Starting training: %d weight(s), accumulation %d, max_steps=%s",
            len(self.session.weights_to_train),
            self.session.config.optimizer_graph.gradient_accumulation_steps,
            max_steps if max_steps > 0 else "unbounded",
        )

        start_time = time.time()
        progress = tqdm(
            total=max_steps if max_steps > 0 else None,
            desc="train",
            disable=not self.config.progress_bar or self.rank != 0,
        )
        try:
            for batches in self._steps(data):
                if 0 < max_steps <= self.stats.step:
                    break
                self.train_step(batches)
                self.stats.elapsed_seconds = time.time() - start_time
                progress.update(1)
                if self.stats.step % self.config.log_steps == 0:
                    progress.set_postfix({"loss": f"{self.stats.mean_loss(self.config.log_steps):.4f}"})
                    LOGGER.info(
                        "step %d loss %.6f lr %.3e", self.stats.step, self.stats.last_loss, self.stats.learning_rates[-1]
                    )
                for callback in self.callbacks:
                    callback(self.stats)
                if self._should_evaluate():
                    self.evaluate(self.session)
        finally:
            progress.close()

        self.end_training()
        elapsed = self.stats.elapsed_seconds
        LOGGER.info(
            "Training completed: %d step(s) in %s, final loss %s",
            self.stats.step,
            timedelta(seconds=int(elapsed)),
            "n/a" if self.stats.last_loss is None else f"{self.stats.last_loss:.4f}",
        )
        return self.stats

    def end_training(self) -> None:
        if self.rank != 0:
            LOGGER.info("Skipping end of training on rank %d", self.rank)
            return
        self._save(TRAINED_SUFFIX, SaveOption.WITH_UPDATED_WEIGHTS)
        self._save(TRAINED_WITH_COST_SUFFIX, SaveOption.WITH_UPDATED_WEIGHTS_AND_LOSS_FUNC)
