"""Tests for the learning-rate scheduler."""

from __future__ import annotations

import math

import pytest

from traingraph.training.scheduler import LearningRateScheduler


def test_constant_schedule_with_warmup() -> None:
    scheduler = LearningRateScheduler(0.4, warmup_steps=4)

    lrs = [scheduler.step() for _ in range(6)]

    assert lrs == pytest.approx([0.1, 0.2, 0.3, 0.4, 0.4, 0.4])


def test_constant_schedule_without_warmup() -> None:
    scheduler = LearningRateScheduler(0.01)

    assert [scheduler.step() for _ in range(3)] == [0.01, 0.01, 0.01]


def test_cosine_schedule_decays_to_min_lr() -> None:
    scheduler = LearningRateScheduler(1.0, schedule="cosine", warmup_steps=2, max_steps=6, min_lr=0.1)

    lrs = [scheduler.step() for _ in range(8)]

    assert lrs[:2] == pytest.approx([0.5, 1.0])
    assert lrs[3] == pytest.approx(0.1 + 0.9 * 0.5 * (1 + math.cos(math.pi * 0.5)))
    assert lrs[5] == pytest.approx(0.1)
    # Past max_steps the rate stays at the floor.
    assert lrs[7] == pytest.approx(0.1)
    assert all(a >= b for a, b in zip(lrs[1:], lrs[2:]))


def test_get_lr_does_not_advance() -> None:
    scheduler = LearningRateScheduler(1.0, warmup_steps=10)
    scheduler.step()

    assert scheduler.get_lr() == scheduler.get_lr() == pytest.approx(0.1)
    assert scheduler.current_step == 1


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"schedule": "step"}, "lr_schedule must be one of"),
        ({"warmup_steps": -1}, "warmup_steps must be >= 0"),
        ({"min_lr": -0.5}, "min_learning_rate must be >= 0"),
        ({"schedule": "cosine"}, "needs max_steps > 0"),
        ({"schedule": "cosine", "warmup_steps": 5, "max_steps": 5}, "warmup_steps must be smaller than max_steps"),
    ],
)
def test_invalid_arguments(kwargs, message) -> None:
    with pytest.raises(ValueError, match=message):
        LearningRateScheduler(0.1, **kwargs)
