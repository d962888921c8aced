"""Reference kernels for optimizer, accumulation and zeroing ops.

The update rules are plain torch functions over tensors so they can be tested
against fixed vectors without building a graph. Arithmetic runs in fp32 (fp64
when the weight is fp64); results are cast back to each state's own dtype.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import torch

from traingraph.runtime.kernels import Inputs
from traingraph.runtime.kernels import Kernel
from traingraph.runtime.kernels import KernelContext


@dataclass
class AdamState:
    weight: torch.Tensor
    moment_1: torch.Tensor
    moment_2: torch.Tensor
    update_count: torch.Tensor


@dataclass
class LambState:
    weight: torch.Tensor
    moment_1: torch.Tensor
    moment_2: torch.Tensor


def _compute_dtype(weight: torch.Tensor) -> torch.dtype:
    return torch.float64 if weight.dtype == torch.float64 else torch.float32


def _unscale(grad: torch.Tensor, loss_scale: Optional[torch.Tensor], dtype: torch.dtype) -> torch.Tensor:
    grad = grad.to(dtype)
    if loss_scale is not None:
        grad = grad / loss_scale.to(dtype)
    return grad


def sgd_update(
    eta: torch.Tensor,
    weight: torch.Tensor,
    grad: torch.Tensor,
    loss_scale: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """W_new = W - eta * G."""
    dtype = _compute_dtype(weight)
    step = eta.to(dtype) * _unscale(grad, loss_scale, dtype)
    return (weight.to(dtype) - step).to(weight.dtype)


def _gradient_scale(
    loss_scale: Optional[torch.Tensor],
    grad_norm: Optional[torch.Tensor],
    max_norm: float,
    dtype: torch.dtype,
) -> torch.Tensor:
    """Divisor applied to the raw gradient: the loss scale, grown when the unscaled norm exceeds `max_norm`."""
    scale = torch.ones((), dtype=dtype) if loss_scale is None else loss_scale.to(dtype)
    if grad_norm is not None:
        unscaled_norm = grad_norm.to(dtype) / scale
        if float(unscaled_norm) > max_norm:
            scale = scale * unscaled_norm / max_norm
    return scale


def adam_update(
    eta: torch.Tensor,
    state: AdamState,
    grad: torch.Tensor,
    alpha: float = 0.9,
    beta: float = 0.999,
    lambda_: float = 0.0,
    epsilon: float = 1e-8,
    do_bias_correction: bool = True,
    loss_scale: Optional[torch.Tensor] = None,
    grad_norm: Optional[torch.Tensor] = None,
    max_norm: float = 1.0,
) -> AdamState:
    """
    One Adam step.

    Bias correction uses the incoming update count ``t``; the returned count is
    ``t + 1``. `grad_norm` is the global norm of the (loss-scaled) gradients;
    when its unscaled value exceeds `max_norm` the gradient is clipped by
    ``max_norm / norm``.
    """
    dtype = _compute_dtype(state.weight)
    g = grad.to(dtype) / _gradient_scale(loss_scale, grad_norm, max_norm, dtype)
    w = state.weight.to(dtype)
    m1 = alpha * state.moment_1.to(dtype) + (1.0 - alpha) * g
    m2 = beta * state.moment_2.to(dtype) + (1.0 - beta) * g * g

    t = float(state.update_count)
    alpha_correction = 1.0 - alpha**t if do_bias_correction else 1.0
    beta_correction = 1.0 - beta**t if do_bias_correction else 1.0
    denom = torch.sqrt(m2 / beta_correction) + epsilon
    update = (m1 / alpha_correction) / denom + lambda_ * w
    w_new = w - eta.to(dtype) * update

    return AdamState(
        weight=w_new.to(state.weight.dtype),
        moment_1=m1.to(state.moment_1.dtype),
        moment_2=m2.to(state.moment_2.dtype),
        update_count=state.update_count + 1,
    )


def lamb_update(
    eta: torch.Tensor,
    state: LambState,
    grad: torch.Tensor,
    alpha: float = 0.9,
    beta: float = 0.999,
    lambda_: float = 0.0,
    epsilon: float = 1e-6,
    threshold: float = 1.0,
    loss_scale: Optional[torch.Tensor] = None,
) -> LambState:
    """
    One Lamb step.

    The direction ``r = m / (sqrt(v) + epsilon) + lambda * w`` is scaled by the
    trust ratio ``min(||w|| / ||r||, threshold)``, or 1 when either norm is zero.
    """
    dtype = _compute_dtype(state.weight)
    g = _unscale(grad, loss_scale, dtype)
    w = state.weight.to(dtype)
    m1 = alpha * state.moment_1.to(dtype) + (1.0 - alpha) * g
    m2 = beta * state.moment_2.to(dtype) + (1.0 - beta) * g * g
    r = m1 / (torch.sqrt(m2) + epsilon) + lambda_ * w

    w_norm = float(torch.linalg.vector_norm(w))
    r_norm = float(torch.linalg.vector_norm(r))
    ratio = 1.0 if w_norm == 0.0 or r_norm == 0.0 else min(w_norm / r_norm, threshold)
    w_new = w - eta.to(dtype) * ratio * r

    return LambState(
        weight=w_new.to(state.weight.dtype),
        moment_1=m1.to(state.moment_1.dtype),
        moment_2=m2.to(state.moment_2.dtype),
    )


# ----------------------------------------------------------------------
# Node kernels
# ----------------------------------------------------------------------
OPTIMIZER_KERNELS: dict[str, Kernel] = {}


def _kernel(op_type: str):
    def decorator(fn: Kernel) -> Kernel:
        OPTIMIZER_KERNELS[op_type] = fn
        return fn

    return decorator


def _optional(inputs: Inputs, index: int) -> Optional[torch.Tensor]:
    return inputs[index] if index < len(inputs) else None


def _skip_update(inputs: Inputs, do_update_index: int) -> bool:
    do_update = _optional(inputs, do_update_index)
    return do_update is not None and not bool(do_update)


@_kernel("SGDOptimizer")
def _sgd(node, inputs, ctx: KernelContext):
    eta, weight, grad = inputs[0], inputs[1], inputs[2]
    fp16_weight = _optional(inputs, 3)
    if _skip_update(inputs, 4):
        outputs = [weight.clone()]
        if fp16_weight is not None:
            outputs.append(fp16_weight.clone())
        return outputs[: len(node.outputs)]
    w_new = sgd_update(eta, weight, grad, _optional(inputs, 5))
    outputs = [w_new]
    if fp16_weight is not None:
        outputs.append(w_new.to(torch.float16))
    return outputs[: len(node.outputs)]


@_kernel("AdamOptimizer")
def _adam(node, inputs, ctx: KernelContext):
    eta, count, weight, grad, m1, m2 = inputs[:6]
    fp16_weight = _optional(inputs, 6)
    state = AdamState(weight=weight, moment_1=m1, moment_2=m2, update_count=count)
    if _skip_update(inputs, 7):
        fp16_out = None if fp16_weight is None else fp16_weight.clone()
        outputs = [weight.clone(), m1.clone(), m2.clone(), count.clone(), fp16_out, torch.zeros_like(grad)]
        return outputs[: len(node.outputs)]
    attrs = node.attributes
    new = adam_update(
        eta,
        state,
        grad,
        alpha=float(attrs.get("alpha", 0.9)),
        beta=float(attrs.get("beta", 0.999)),
        lambda_=float(attrs.get("lambda", 0.0)),
        epsilon=float(attrs.get("epsilon", 1e-8)),
        do_bias_correction=bool(int(attrs.get("do_bias_correction", 1))),
        loss_scale=_optional(inputs, 8),
        grad_norm=_optional(inputs, 9),
        max_norm=float(attrs.get("max_norm", 1.0)),
    )
    fp16_out = None if fp16_weight is None else new.weight.to(torch.float16)
    # G_Out carries the applied weight delta.
    dtype = _compute_dtype(weight)
    delta = (new.weight.to(dtype) - weight.to(dtype)).to(grad.dtype)
    outputs = [new.weight, new.moment_1, new.moment_2, new.update_count, fp16_out, delta]
    return outputs[: len(node.outputs)]


@_kernel("LambOptimizer")
def _lamb(node, inputs, ctx: KernelContext):
    eta, weight, grad, m1, m2 = inputs[:5]
    fp16_weight = _optional(inputs, 5)
    if _skip_update(inputs, 6):
        outputs = [weight.clone(), m1.clone(), m2.clone()]
        if fp16_weight is not None:
            outputs.append(fp16_weight.clone())
        return outputs[: len(node.outputs)]
    attrs = node.attributes
    new = lamb_update(
        eta,
        LambState(weight=weight, moment_1=m1, moment_2=m2),
        grad,
        alpha=float(attrs.get("alpha", 0.9)),
        beta=float(attrs.get("beta", 0.999)),
        lambda_=float(attrs.get("lambda", 0.0)),
        epsilon=float(attrs.get("epsilon", 1e-6)),
        threshold=float(attrs.get("threshold", 1.0)),
        loss_scale=_optional(inputs, 7),
    )
    outputs = [new.weight, new.moment_1, new.moment_2]
    if fp16_weight is not None:
        outputs.append(new.weight.to(torch.float16))
    return outputs[: len(node.outputs)]


@_kernel("GradientAccumulator")
def _gradient_accumulator(node, inputs, ctx: KernelContext):
    old_sum, value = inputs[0], inputs[1]
    return [old_sum + value.to(old_sum.dtype)]


@_kernel("ZeroGradient")
def _zero_gradient(node, inputs, ctx: KernelContext):
    return [torch.zeros_like(inputs[0])]
