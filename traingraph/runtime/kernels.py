"""Reference torch kernels for forward and gradient ops.

Each kernel maps ``(node, inputs, ctx)`` to the list of output tensors, where
absent optional inputs are ``None``. Kernels favour clarity over speed; a few
gradient ops with awkward closed forms are evaluated through
``torch.autograd.functional.vjp`` of the matching forward kernel.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from dataclasses import field
from typing import Callable
from typing import Optional
from typing import Sequence

import torch
import torch.nn.functional as F
from torch.autograd.functional import vjp

from traingraph.graph.ir import Node
from traingraph.graph.types import elem_type_to_torch


Inputs = Sequence[Optional[torch.Tensor]]
Kernel = Callable[[Node, Inputs, "KernelContext"], list[torch.Tensor]]


@dataclass
class KernelContext:
    """Per-run state shared by kernels."""

    generator: torch.Generator = field(default_factory=torch.Generator)
    training: bool = True


KERNELS: dict[str, Kernel] = {}


def _kernel(*op_types: str):
    def decorator(fn: Kernel) -> Kernel:
        for op_type in op_types:
            KERNELS[op_type] = fn
        return fn

    return decorator


def _axes(node: Node, rank: int, key: str = "axes") -> Optional[list[int]]:
    axes = node.attributes.get(key)
    if axes is None:
        return None
    return sorted(int(a) + rank if int(a) < 0 else int(a) for a in axes)


def _onnx_to_torch_pads(pads: Sequence[int]) -> list[int]:
    """[b1..bn, e1..en] -> F.pad order (last spatial dim first)."""
    n = len(pads) // 2
    out: list[int] = []
    for i in reversed(range(n)):
        out += [int(pads[i]), int(pads[i + n])]
    return out


def _spatial_attrs(node: Node, n: int) -> tuple[list[int], list[int], list[int]]:
    strides = list(node.attributes.get("strides") or [1] * n)
    dilations = list(node.attributes.get("dilations") or [1] * n)
    pads = list(node.attributes.get("pads") or [0] * (2 * n))
    return strides, dilations, pads


# ----------------------------------------------------------------------
# Elementwise
# ----------------------------------------------------------------------
_UNARY: dict[str, Callable[[torch.Tensor], torch.Tensor]] = {
    "Neg": torch.neg,
    "Sin": torch.sin,
    "Cos": torch.cos,
    "Tanh": torch.tanh,
    "Sqrt": torch.sqrt,
    "Erf": torch.erf,
    "Exp": torch.exp,
    "Relu": torch.relu,
    "Gelu": F.gelu,
}


@_kernel(*_UNARY)
def _unary(node, inputs, ctx):
    return [_UNARY[node.op_type](inputs[0])]


@_kernel("Identity")
def _identity(node, inputs, ctx):
    return [inputs[0].clone()]


@_kernel("ZerosLike")
def _zeros_like(node, inputs, ctx):
    return [torch.zeros_like(inputs[0])]


@_kernel("OnesLike")
def _ones_like(node, inputs, ctx):
    return [torch.ones_like(inputs[0])]


_BINARY: dict[str, Callable[[torch.Tensor, torch.Tensor], torch.Tensor]] = {
    "Add": torch.add,
    "Sub": torch.sub,
    "Mul": torch.mul,
    "Div": torch.div,
}


@_kernel(*_BINARY)
def _binary(node, inputs, ctx):
    return [_BINARY[node.op_type](inputs[0], inputs[1])]


@_kernel("Pow")
def _pow(node, inputs, ctx):
    base, exponent = inputs
    return [torch.pow(base, exponent.to(base.dtype))]


@_kernel("Sum")
def _sum(node, inputs, ctx):
    total = inputs[0]
    for value in inputs[1:]:
        total = total + value
    return [total]


@_kernel("Cast")
def _cast(node, inputs, ctx):
    return [inputs[0].to(elem_type_to_torch(node.attributes["to"]))]


@_kernel("Constant")
def _constant(node, inputs, ctx):
    return [node.attributes["value"].clone()]


@_kernel("Shape")
def _shape(node, inputs, ctx):
    return [torch.tensor(list(inputs[0].shape), dtype=torch.int64)]


@_kernel("IsAllFinite")
def _is_all_finite(node, inputs, ctx):
    finite = all(bool(torch.isfinite(t).all()) for t in inputs if t is not None)
    return [torch.tensor(finite)]


@_kernel("Group")
def _group(node, inputs, ctx):
    return [torch.tensor(True)]


@_kernel("ReluGrad")
def _relu_grad(node, inputs, ctx):
    d_y, x = inputs
    return [d_y * (x > 0).to(d_y.dtype)]


@_kernel("GeluGrad")
def _gelu_grad(node, inputs, ctx):
    d_y, x = inputs
    cdf = 0.5 * (1.0 + torch.erf(x / math.sqrt(2.0)))
    pdf = torch.exp(-0.5 * x * x) / math.sqrt(2.0 * math.pi)
    return [d_y * (cdf + x * pdf)]


# ----------------------------------------------------------------------
# Structural
# ----------------------------------------------------------------------
def _target(node: Node, inputs: Inputs) -> list[int]:
    if len(inputs) > 1 and inputs[1] is not None:
        return [int(d) for d in inputs[1].tolist()]
    return [int(d) for d in node.attributes["shape"]]


@_kernel("Reshape")
def _reshape(node, inputs, ctx):
    x = inputs[0]
    shape = [x.shape[i] if d == 0 else d for i, d in enumerate(_target(node, inputs))]
    return [x.reshape(shape)]


@_kernel("Expand")
def _expand(node, inputs, ctx):
    x = inputs[0]
    shape = torch.broadcast_shapes(tuple(x.shape), tuple(_target(node, inputs)))
    return [x.expand(shape).clone()]


@_kernel("Transpose")
def _transpose(node, inputs, ctx):
    x = inputs[0]
    perm = node.attributes.get("perm") or list(reversed(range(x.dim())))
    return [x.permute(*perm).contiguous()]


@_kernel("Squeeze")
def _squeeze(node, inputs, ctx):
    x = inputs[0]
    axes = _axes(node, x.dim())
    if axes is None:
        return [x.squeeze()]
    return [x.reshape([d for i, d in enumerate(x.shape) if i not in axes])]


@_kernel("Unsqueeze")
def _unsqueeze(node, inputs, ctx):
    x = inputs[0]
    axes = _axes(node, x.dim() + len(node.attributes["axes"]))
    for axis in axes:
        x = x.unsqueeze(axis)
    return [x]


@_kernel("Concat")
def _concat(node, inputs, ctx):
    return [torch.cat(list(inputs), dim=int(node.attributes["axis"]))]


@_kernel("Split")
def _split(node, inputs, ctx):
    x = inputs[0]
    axis = int(node.attributes.get("axis", 0))
    sizes = node.attributes.get("split")
    if sizes is None:
        sizes = [x.shape[axis] // len(node.outputs)] * len(node.outputs)
    return [part.clone() for part in torch.split(x, [int(s) for s in sizes], dim=axis)]


@_kernel("ReduceSum", "ReduceMean")
def _reduce(node, inputs, ctx):
    x = inputs[0]
    axes = _axes(node, x.dim())
    dims = list(range(x.dim())) if axes is None else axes
    keepdim = bool(int(node.attributes.get("keepdims", 1)))
    if not dims:
        return [x.clone()]
    reduce = torch.sum if node.op_type == "ReduceSum" else torch.mean
    return [reduce(x, dim=dims, keepdim=keepdim)]


def _normalized_indices(indices: torch.Tensor, extent: int) -> torch.Tensor:
    return torch.where(indices < 0, indices + extent, indices).to(torch.int64)


@_kernel("Gather")
def _gather(node, inputs, ctx):
    data, indices = inputs
    axis = int(node.attributes.get("axis", 0)) % data.dim()
    flat = _normalized_indices(indices, data.shape[axis]).reshape(-1)
    picked = data.index_select(axis, flat)
    shape = tuple(data.shape[:axis]) + tuple(indices.shape) + tuple(data.shape[axis + 1:])
    return [picked.reshape(shape)]


@_kernel("GatherGrad")
def _gather_grad(node, inputs, ctx):
    shape, indices, d_y = inputs
    shape = [int(d) for d in shape.tolist()]
    axis = int(node.attributes.get("axis", 0)) % len(shape)
    flat = _normalized_indices(indices, shape[axis]).reshape(-1)
    src = d_y.reshape(shape[:axis] + [flat.numel()] + shape[axis + 1:])
    return [torch.zeros(shape, dtype=d_y.dtype).index_add_(axis, flat, src)]


def _gather_nd_positions(data_shape: Sequence[int], indices: torch.Tensor, batch_dims: int):
    """Index tuples into `data` for every gathered slice, batch dims flattened."""
    batch_shape = list(data_shape[:batch_dims])
    batch = int(math.prod(batch_shape))
    depth = indices.shape[-1]
    idx = indices.reshape(batch, -1, depth).to(torch.int64).clone()
    for d in range(depth):
        extent = data_shape[batch_dims + d]
        idx[..., d] = torch.where(idx[..., d] < 0, idx[..., d] + extent, idx[..., d])
    batch_index = torch.arange(batch).unsqueeze(1).expand(batch, idx.shape[1])
    return batch, batch_index, idx


@_kernel("GatherND")
def _gather_nd(node, inputs, ctx):
    data, indices = inputs
    batch_dims = int(node.attributes.get("batch_dims", 0))
    batch, batch_index, idx = _gather_nd_positions(data.shape, indices, batch_dims)
    flat = data.reshape((batch,) + tuple(data.shape[batch_dims:]))
    picked = flat[(batch_index,) + tuple(idx[..., d] for d in range(idx.shape[-1]))]
    out_shape = tuple(indices.shape[:-1]) + tuple(data.shape[batch_dims + indices.shape[-1]:])
    return [picked.reshape(out_shape)]


@_kernel("GatherNDGrad")
def _gather_nd_grad(node, inputs, ctx):
    shape, indices, d_y = inputs
    shape = [int(d) for d in shape.tolist()]
    batch_dims = int(node.attributes.get("batch_dims", 0))
    batch, batch_index, idx = _gather_nd_positions(shape, indices, batch_dims)
    grad = torch.zeros([batch] + shape[batch_dims:], dtype=d_y.dtype)
    values = d_y.reshape(batch, idx.shape[1], *shape[batch_dims + idx.shape[-1]:])
    grad.index_put_((batch_index,) + tuple(idx[..., d] for d in range(idx.shape[-1])), values, accumulate=True)
    return [grad.reshape(shape)]


# ----------------------------------------------------------------------
# Linear algebra
# ----------------------------------------------------------------------
@_kernel("MatMul")
def _matmul(node, inputs, ctx):
    return [torch.matmul(inputs[0], inputs[1])]


@_kernel("Gemm")
def _gemm(node, inputs, ctx):
    a, b = inputs[0], inputs[1]
    c = inputs[2] if len(inputs) > 2 else None
    if int(node.attributes.get("transA", 0)):
        a = a.t()
    if int(node.attributes.get("transB", 0)):
        b = b.t()
    y = float(node.attributes.get("alpha", 1.0)) * (a @ b)
    beta = float(node.attributes.get("beta", 1.0))
    if c is not None and beta != 0.0:
        y = y + beta * c
    return [y]


# ----------------------------------------------------------------------
# Convolution and pooling
# ----------------------------------------------------------------------
_CONV = {1: F.conv1d, 2: F.conv2d, 3: F.conv3d}
_MAX_POOL = {1: F.max_pool1d, 2: F.max_pool2d, 3: F.max_pool3d}
_AVG_POOL = {1: F.avg_pool1d, 2: F.avg_pool2d, 3: F.avg_pool3d}


def _conv_forward(node: Node, x: torch.Tensor, w: torch.Tensor, b: Optional[torch.Tensor]) -> torch.Tensor:
    n = x.dim() - 2
    strides, dilations, pads = _spatial_attrs(node, n)
    x = F.pad(x, _onnx_to_torch_pads(pads))
    return _CONV[n](x, w, b, stride=strides, dilation=dilations, groups=int(node.attributes.get("group", 1)))


@_kernel("Conv")
def _conv(node, inputs, ctx):
    bias = inputs[2] if len(inputs) > 2 else None
    return [_conv_forward(node, inputs[0], inputs[1], bias)]


@_kernel("ConvGrad")
def _conv_grad(node, inputs, ctx):
    d_y, x, w = inputs
    _, (d_x, d_w) = vjp(lambda x_, w_: _conv_forward(node, x_, w_, None), (x, w), d_y)
    outputs = [d_x, d_w]
    if len(node.outputs) > 2:
        outputs.append(d_y.sum(dim=[0] + list(range(2, d_y.dim()))))
    return outputs


def _max_pool_forward(node: Node, x: torch.Tensor, return_indices: bool = False):
    n = x.dim() - 2
    kernel = list(node.attributes["kernel_shape"])
    strides, dilations, pads = _spatial_attrs(node, n)
    x = F.pad(x, _onnx_to_torch_pads(pads), value=float("-inf"))
    return _MAX_POOL[n](x, kernel, stride=strides, dilation=dilations, return_indices=return_indices)


@_kernel("MaxPool")
def _max_pool(node, inputs, ctx):
    if len(node.outputs) > 1:
        y, indices = _max_pool_forward(node, inputs[0], return_indices=True)
        return [y, indices.to(torch.int64)]
    return [_max_pool_forward(node, inputs[0])]


@_kernel("MaxPoolGrad")
def _max_pool_grad(node, inputs, ctx):
    d_y, x = inputs
    _, d_x = vjp(lambda x_: _max_pool_forward(node, x_), x, d_y)
    return [d_x]


def _average_pool_forward(node: Node, x: torch.Tensor) -> torch.Tensor:
    n = x.dim() - 2
    kernel = list(node.attributes["kernel_shape"])
    strides, _, pads = _spatial_attrs(node, n)
    torch_pads = _onnx_to_torch_pads(pads)
    pooled = _AVG_POOL[n](F.pad(x, torch_pads), kernel, stride=strides)
    if int(node.attributes.get("count_include_pad", 0)) or not any(pads):
        return pooled
    ones = torch.ones((1, 1) + tuple(x.shape[2:]), dtype=x.dtype)
    coverage = _AVG_POOL[n](F.pad(ones, torch_pads), kernel, stride=strides)
    return pooled / coverage


@_kernel("AveragePool")
def _average_pool(node, inputs, ctx):
    return [_average_pool_forward(node, inputs[0])]


@_kernel("AveragePoolGrad")
def _average_pool_grad(node, inputs, ctx):
    d_y, shape = inputs
    x = torch.zeros([int(d) for d in shape.tolist()], dtype=d_y.dtype)
    _, d_x = vjp(lambda x_: _average_pool_forward(node, x_), x, d_y)
    return [d_x]


@_kernel("GlobalAveragePool")
def _global_average_pool(node, inputs, ctx):
    x = inputs[0]
    return [x.mean(dim=list(range(2, x.dim())), keepdim=True)]


def _lrn_forward(node: Node, x: torch.Tensor) -> torch.Tensor:
    return F.local_response_norm(
        x,
        int(node.attributes["size"]),
        alpha=float(node.attributes.get("alpha", 1e-4)),
        beta=float(node.attributes.get("beta", 0.75)),
        k=float(node.attributes.get("bias", 1.0)),
    )


@_kernel("LRN")
def _lrn(node, inputs, ctx):
    return [_lrn_forward(node, inputs[0])]


@_kernel("LRNGrad")
def _lrn_grad(node, inputs, ctx):
    d_y, x = inputs[0], inputs[1]
    _, d_x = vjp(lambda x_: _lrn_forward(node, x_), x, d_y)
    return [d_x]


# ----------------------------------------------------------------------
# Normalization and regularization
# ----------------------------------------------------------------------
def _layer_norm_dims(node: Node, rank: int) -> list[int]:
    axis = int(node.attributes.get("axis", -1))
    axis = axis + rank if axis < 0 else axis
    return list(range(axis, rank))


@_kernel("LayerNormalization")
def _layer_norm(node, inputs, ctx):
    x, scale = inputs[0], inputs[1]
    bias = inputs[2] if len(inputs) > 2 else None
    dims = _layer_norm_dims(node, x.dim())
    mean = x.mean(dim=dims, keepdim=True)
    var = ((x - mean) ** 2).mean(dim=dims, keepdim=True)
    inv_std = torch.rsqrt(var + float(node.attributes.get("epsilon", 1e-5)))
    y = (x - mean) * inv_std * scale
    if bias is not None:
        y = y + bias
    return [y, mean, inv_std][: len(node.outputs)]


@_kernel("LayerNormalizationGrad")
def _layer_norm_grad(node, inputs, ctx):
    d_y, x, scale, mean, inv_std = inputs
    dims = _layer_norm_dims(node, x.dim())
    outer = list(range(x.dim() - len(dims)))
    x_hat = (x - mean) * inv_std
    d_bias = d_y.sum(dim=outer) if outer else d_y.clone()
    d_scale = (d_y * x_hat).sum(dim=outer) if outer else d_y * x_hat
    d_x_hat = d_y * scale
    d_x = inv_std * (
        d_x_hat
        - d_x_hat.mean(dim=dims, keepdim=True)
        - x_hat * (d_x_hat * x_hat).mean(dim=dims, keepdim=True)
    )
    return [d_x, d_scale, d_bias][: len(node.outputs)]


def _channel_view(t: torch.Tensor, rank: int) -> torch.Tensor:
    return t.reshape((1, -1) + (1,) * (rank - 2))


@_kernel("BatchNormalization")
def _batch_norm(node, inputs, ctx):
    x, scale, bias, running_mean, running_var = inputs
    epsilon = float(node.attributes.get("epsilon", 1e-5))
    rank = x.dim()
    if len(node.outputs) == 1 or not ctx.training:
        inv_std = torch.rsqrt(running_var + epsilon)
        y = (x - _channel_view(running_mean, rank)) * _channel_view(inv_std * scale, rank) + _channel_view(bias, rank)
        return [y] + [running_mean.clone(), running_var.clone(), running_mean.clone(), inv_std][: len(node.outputs) - 1]

    momentum = float(node.attributes.get("momentum", 0.9))
    dims = [0] + list(range(2, rank))
    mean = x.mean(dim=dims)
    var = x.var(dim=dims, unbiased=False)
    inv_std = torch.rsqrt(var + epsilon)
    y = (x - _channel_view(mean, rank)) * _channel_view(inv_std * scale, rank) + _channel_view(bias, rank)
    new_mean = running_mean * momentum + mean * (1.0 - momentum)
    new_var = running_var * momentum + var * (1.0 - momentum)
    return [y, new_mean, new_var, mean, inv_std][: len(node.outputs)]


@_kernel("BatchNormalizationGrad")
def _batch_norm_grad(node, inputs, ctx):
    d_y, x, scale, saved_mean, saved_inv_std = inputs
    rank = x.dim()
    dims = [0] + list(range(2, rank))
    count = x.numel() // x.shape[1]
    x_hat = (x - _channel_view(saved_mean, rank)) * _channel_view(saved_inv_std, rank)
    d_bias = d_y.sum(dim=dims)
    d_scale = (d_y * x_hat).sum(dim=dims)
    coef = _channel_view(scale * saved_inv_std / count, rank)
    d_x = coef * (count * d_y - _channel_view(d_bias, rank) - x_hat * _channel_view(d_scale, rank))
    return [d_x, d_scale, d_bias]


def _dropout_ratio(node: Node, inputs: Inputs, index: int) -> float:
    if len(inputs) > index and inputs[index] is not None:
        return float(inputs[index].reshape(-1)[0])
    return float(node.attributes.get("ratio", 0.5))


@_kernel("Dropout", "TrainableDropout")
def _dropout(node, inputs, ctx):
    x = inputs[0]
    ratio = _dropout_ratio(node, inputs, 1)
    if not ctx.training or ratio == 0.0:
        y, mask = x.clone(), torch.ones_like(x, dtype=torch.bool)
    else:
        mask = torch.rand(x.shape, generator=ctx.generator, dtype=torch.float64) >= ratio
        y = x * mask.to(x.dtype) / (1.0 - ratio)
    return [y, mask][: len(node.outputs)]


@_kernel("DropoutGrad")
def _dropout_grad(node, inputs, ctx):
    d_y, mask = inputs[0], inputs[1]
    ratio = _dropout_ratio(node, inputs, 2)
    return [d_y * mask.to(d_y.dtype) / (1.0 - ratio)]


@_kernel("Softmax")
def _softmax(node, inputs, ctx):
    return [torch.softmax(inputs[0], dim=int(node.attributes.get("axis", -1)))]


@_kernel("SoftmaxGrad")
def _softmax_grad(node, inputs, ctx):
    d_y, y = inputs
    axis = int(node.attributes.get("axis", -1))
    return [y * (d_y - (d_y * y).sum(dim=axis, keepdim=True))]


# ----------------------------------------------------------------------
# Losses
# ----------------------------------------------------------------------
def _reduce_loss(per_example: torch.Tensor, reduction: str, denominator) -> torch.Tensor:
    if reduction == "sum":
        return per_example.sum()
    if reduction == "mean":
        return per_example.sum() / denominator
    raise ValueError(f"Unsupported reduction: {reduction}")


@_kernel("SoftmaxCrossEntropy")
def _softmax_cross_entropy(node, inputs, ctx):
    logits, label = inputs[0], inputs[1]
    log_prob = torch.log_softmax(logits, dim=-1)
    per_example = -(label.to(log_prob.dtype) * log_prob).sum(dim=-1)
    batch = logits.numel() // logits.shape[-1]
    loss = _reduce_loss(per_example, node.attributes.get("reduction", "mean"), batch)
    return [loss, log_prob][: len(node.outputs)]


@_kernel("SoftmaxCrossEntropyGrad")
def _softmax_cross_entropy_grad(node, inputs, ctx):
    d_y, log_prob, label = inputs
    grad = d_y * (torch.exp(log_prob) - label.to(log_prob.dtype))
    if node.attributes.get("reduction", "mean") == "mean":
        grad = grad / (log_prob.numel() // log_prob.shape[-1])
    return [grad]


def _sparse_weights(inputs: Inputs, index: torch.Tensor, dtype: torch.dtype) -> torch.Tensor:
    if len(inputs) > 2 and inputs[2] is not None:
        return inputs[2].to(dtype)
    return torch.ones(index.shape, dtype=dtype)


@_kernel("SparseSoftmaxCrossEntropy")
def _sparse_softmax_cross_entropy(node, inputs, ctx):
    logits, index = inputs[0], inputs[1].to(torch.int64)
    log_prob = torch.log_softmax(logits, dim=-1)
    weights = _sparse_weights(inputs, index, log_prob.dtype)
    picked = log_prob.gather(-1, index.unsqueeze(-1)).squeeze(-1)
    loss = _reduce_loss(-picked * weights, node.attributes.get("reduction", "mean"), weights.sum())
    return [loss, log_prob][: len(node.outputs)]


@_kernel("SparseSoftmaxCrossEntropyGrad")
def _sparse_softmax_cross_entropy_grad(node, inputs, ctx):
    d_y, log_prob, index = inputs[0], inputs[1], inputs[2].to(torch.int64)
    weights = _sparse_weights([None, None] + list(inputs[3:]), index, log_prob.dtype)
    one_hot = F.one_hot(index, num_classes=log_prob.shape[-1]).to(log_prob.dtype)
    grad = d_y * (torch.exp(log_prob) - one_hot) * weights.unsqueeze(-1)
    if node.attributes.get("reduction", "mean") == "mean":
        grad = grad / weights.sum()
    return [grad]
