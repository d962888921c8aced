"""Built-in gradient formulas, one per supported forward op type."""

from __future__ import annotations

import math

from traingraph.errors import GraphBuildError
from traingraph.errors import ShapeMismatch
from traingraph.gradients.registry import GradientContext
from traingraph.gradients.registry import GradientFormula
from traingraph.gradients.registry import NodeDef
from traingraph.graph.types import Shape
from traingraph.graph.types import broadcast_reduction_axes


def _reduce_to_input(ctx: GradientContext, grad: str, index: int, grad_shape: Shape) -> list[NodeDef]:
    """Sum `grad` over the axes input `index` was broadcast along, writing GI(index)."""
    axes = broadcast_reduction_axes(ctx.input_shape(index), grad_shape)
    if not axes:
        return [NodeDef("Identity", [grad], [ctx.GI(index)])]
    reduced = ctx.IA(f"reduced_dX{index}")
    shape = ctx.IA(f"shape_X{index}")
    return [
        NodeDef("ReduceSum", [grad], [reduced], {"axes": axes, "keepdims": 1}),
        NodeDef("Shape", [ctx.I(index)], [shape]),
        NodeDef("Reshape", [reduced, shape], [ctx.GI(index)]),
    ]


def _swap_last_two(rank: int) -> list[int]:
    perm = list(range(rank))
    perm[-2], perm[-1] = perm[-1], perm[-2]
    return perm


# ----------------------------------------------------------------------
# Elementwise unary
# ----------------------------------------------------------------------
def _cast_grad(ctx: GradientContext) -> list[NodeDef]:
    return [NodeDef("Cast", [ctx.GO(0)], [ctx.GI(0)], {"to": ctx.elem_type(0)})]


def _identity_grad(ctx: GradientContext) -> list[NodeDef]:
    return [NodeDef("Identity", [ctx.GO(0)], [ctx.GI(0)])]


def _sin_grad(ctx: GradientContext) -> list[NodeDef]:
    cos = ctx.IA("cos_X")
    return [
        NodeDef("Cos", [ctx.I(0)], [cos]),
        NodeDef("Mul", [ctx.GO(0), cos], [ctx.GI(0)]),
    ]


def _tanh_grad(ctx: GradientContext) -> list[NodeDef]:
    # dX = dY * (1 - Y^2)
    y_sq, one, one_minus = ctx.IA("Y_sq"), ctx.IA("one"), ctx.IA("one_minus_Y_sq")
    return [
        NodeDef("Mul", [ctx.O(0), ctx.O(0)], [y_sq]),
        ctx.constant("one", 1.0, ctx.elem_type(0)),
        NodeDef("Sub", [one, y_sq], [one_minus]),
        NodeDef("Mul", [ctx.GO(0), one_minus], [ctx.GI(0)]),
    ]


def _sqrt_grad(ctx: GradientContext) -> list[NodeDef]:
    # dX = dY * 0.5 / Y
    ratio, half = ctx.IA("dY_over_Y"), ctx.IA("half")
    return [
        NodeDef("Div", [ctx.GO(0), ctx.O(0)], [ratio]),
        ctx.constant("half", 0.5, ctx.elem_type(0)),
        NodeDef("Mul", [ratio, half], [ctx.GI(0)]),
    ]


def _erf_grad(ctx: GradientContext) -> list[NodeDef]:
    # dX = dY * 2/sqrt(pi) * exp(-X^2)
    x_sq, neg, exp, coef, scaled = (
        ctx.IA("X_sq"), ctx.IA("neg_X_sq"), ctx.IA("exp"), ctx.IA("two_over_sqrt_pi"), ctx.IA("scaled_exp")
    )
    return [
        NodeDef("Mul", [ctx.I(0), ctx.I(0)], [x_sq]),
        NodeDef("Neg", [x_sq], [neg]),
        NodeDef("Exp", [neg], [exp]),
        ctx.constant("two_over_sqrt_pi", 2.0 / math.sqrt(math.pi), ctx.elem_type(0)),
        NodeDef("Mul", [exp, coef], [scaled]),
        NodeDef("Mul", [ctx.GO(0), scaled], [ctx.GI(0)]),
    ]


def _relu_grad(ctx: GradientContext) -> list[NodeDef]:
    return [NodeDef("ReluGrad", [ctx.GO(0), ctx.I(0)], [ctx.GI(0)])]


def _gelu_grad(ctx: GradientContext) -> list[NodeDef]:
    return [NodeDef("GeluGrad", [ctx.GO(0), ctx.I(0)], [ctx.GI(0)])]


# ----------------------------------------------------------------------
# Broadcastable binary
# ----------------------------------------------------------------------
def _add_grad(ctx: GradientContext) -> list[NodeDef]:
    defs: list[NodeDef] = []
    out_shape = ctx.output_shape(0)
    for i in (0, 1):
        if ctx.requires(i):
            defs += _reduce_to_input(ctx, ctx.GO(0), i, out_shape)
    return defs


def _sub_grad(ctx: GradientContext) -> list[NodeDef]:
    defs: list[NodeDef] = []
    out_shape = ctx.output_shape(0)
    if ctx.requires(0):
        defs += _reduce_to_input(ctx, ctx.GO(0), 0, out_shape)
    if ctx.requires(1):
        neg = ctx.IA("neg_dY")
        defs.append(NodeDef("Neg", [ctx.GO(0)], [neg]))
        defs += _reduce_to_input(ctx, neg, 1, out_shape)
    return defs


def _mul_grad(ctx: GradientContext) -> list[NodeDef]:
    defs: list[NodeDef] = []
    out_shape = ctx.output_shape(0)
    for i, other in ((0, 1), (1, 0)):
        if ctx.requires(i):
            partial = ctx.IA(f"dY_times_X{other}")
            defs.append(NodeDef("Mul", [ctx.GO(0), ctx.I(other)], [partial]))
            defs += _reduce_to_input(ctx, partial, i, out_shape)
    return defs


def _div_grad(ctx: GradientContext) -> list[NodeDef]:
    defs: list[NodeDef] = []
    out_shape = ctx.output_shape(0)
    if ctx.requires(0):
        partial = ctx.IA("dY_over_B")
        defs.append(NodeDef("Div", [ctx.GO(0), ctx.I(1)], [partial]))
        defs += _reduce_to_input(ctx, partial, 0, out_shape)
    if ctx.requires(1):
        # dB = -dY * A / B^2
        dy_a, b_sq, ratio, neg = ctx.IA("dY_times_A"), ctx.IA("B_sq"), ctx.IA("dY_A_over_B_sq"), ctx.IA("neg_ratio")
        defs += [
            NodeDef("Mul", [ctx.GO(0), ctx.I(0)], [dy_a]),
            NodeDef("Mul", [ctx.I(1), ctx.I(1)], [b_sq]),
            NodeDef("Div", [dy_a, b_sq], [ratio]),
            NodeDef("Neg", [ratio], [neg]),
        ]
        defs += _reduce_to_input(ctx, neg, 1, out_shape)
    return defs


def _pow_grad(ctx: GradientContext) -> list[NodeDef]:
    # dX = dY * p * X^(p - 1); the exponent is treated as a constant.
    x_type = ctx.elem_type(0)
    exponent = ctx.I(1)
    defs: list[NodeDef] = []
    if ctx.elem_type(1) != x_type:
        exponent = ctx.IA("exponent_cast")
        defs.append(NodeDef("Cast", [ctx.I(1)], [exponent], {"to": x_type}))
    one, p_minus_one, x_pow, coef, partial = (
        ctx.IA("one"), ctx.IA("p_minus_one"), ctx.IA("X_pow"), ctx.IA("p_X_pow"), ctx.IA("dY_p_X_pow")
    )
    defs += [
        ctx.constant("one", 1.0, x_type),
        NodeDef("Sub", [exponent, one], [p_minus_one]),
        NodeDef("Pow", [ctx.I(0), p_minus_one], [x_pow]),
        NodeDef("Mul", [x_pow, exponent], [coef]),
        NodeDef("Mul", [ctx.GO(0), coef], [partial]),
    ]
    defs += _reduce_to_input(ctx, partial, 0, ctx.output_shape(0))
    return defs


# ----------------------------------------------------------------------
# Linear algebra
# ----------------------------------------------------------------------
def _matmul_grad(ctx: GradientContext) -> list[NodeDef]:
    a_shape, b_shape, y_shape = ctx.input_shape(0), ctx.input_shape(1), ctx.output_shape(0)
    a, b, d_y = ctx.I(0), ctx.I(1), ctx.GO(0)
    a_vector, b_vector = len(a_shape) == 1, len(b_shape) == 1
    defs: list[NodeDef] = []
    # Rank-1 operands are promoted to (1, K) and (K, 1); dY gets the dropped axes back.
    if a_vector:
        a = ctx.IA("A_matrix")
        defs.append(NodeDef("Unsqueeze", [ctx.I(0)], [a], {"axes": [0]}))
        a_shape = (1,) + tuple(a_shape)
    if b_vector:
        b = ctx.IA("B_matrix")
        defs.append(NodeDef("Unsqueeze", [ctx.I(1)], [b], {"axes": [1]}))
        b_shape = tuple(b_shape) + (1,)
    if a_vector and b_vector:
        y_axes = [0, 1]
    elif a_vector:
        y_axes = [len(y_shape) - 1]
    elif b_vector:
        y_axes = [len(y_shape)]
    else:
        y_axes = []
    y_dims = list(y_shape)
    for axis in y_axes:
        y_dims.insert(axis, 1)
    y_shape = tuple(y_dims)
    if y_axes:
        d_y = ctx.IA("dY_matrix")
        defs.append(NodeDef("Unsqueeze", [ctx.GO(0)], [d_y], {"axes": y_axes}))

    if ctx.requires(0):
        b_t, d_a = ctx.IA("B_transposed"), ctx.IA("dA_full")
        defs += [
            NodeDef("Transpose", [b], [b_t], {"perm": _swap_last_two(len(b_shape))}),
            NodeDef("MatMul", [d_y, b_t], [d_a]),
        ]
        defs += _reduce_to_input(ctx, d_a, 0, y_shape[:-1] + (a_shape[-1],))
    if ctx.requires(1):
        a_t, d_b = ctx.IA("A_transposed"), ctx.IA("dB_full")
        defs += [
            NodeDef("Transpose", [a], [a_t], {"perm": _swap_last_two(len(a_shape))}),
            NodeDef("MatMul", [a_t, d_y], [d_b]),
        ]
        grad_shape = y_shape[:-2] + (b_shape[-2], y_shape[-1])
        if b_vector:
            d_b_vector = ctx.IA("dB_vector")
            defs.append(NodeDef("Squeeze", [d_b], [d_b_vector], {"axes": [len(grad_shape) - 1]}))
            d_b, grad_shape = d_b_vector, grad_shape[:-1]
        defs += _reduce_to_input(ctx, d_b, 1, grad_shape)
    return defs


def _gemm_grad(ctx: GradientContext) -> list[NodeDef]:
    trans_a = int(ctx.attr("transA", 0))
    trans_b = int(ctx.attr("transB", 0))
    alpha = float(ctx.attr("alpha", 1.0))
    beta = float(ctx.attr("beta", 1.0))
    d_y, a, b = ctx.GO(0), ctx.I(0), ctx.I(1)
    defs: list[NodeDef] = []

    if ctx.requires(0):
        if not trans_a:
            inputs, attrs = [d_y, b], {"transA": 0, "transB": 0 if trans_b else 1}
        else:
            inputs, attrs = [b, d_y], {"transA": 1 if trans_b else 0, "transB": 1}
        defs.append(NodeDef("Gemm", inputs, [ctx.GI(0)], {**attrs, "alpha": alpha, "beta": 0.0}))

    if ctx.requires(1):
        if not trans_b:
            inputs, attrs = [a, d_y], {"transA": 0 if trans_a else 1, "transB": 0}
        else:
            inputs, attrs = [d_y, a], {"transA": 1, "transB": 1 if trans_a else 0}
        defs.append(NodeDef("Gemm", inputs, [ctx.GI(1)], {**attrs, "alpha": alpha, "beta": 0.0}))

    if ctx.requires(2):
        grad = d_y
        if beta != 1.0:
            grad = ctx.IA("beta_dY")
            defs += [
                ctx.constant("beta", beta, ctx.elem_type(2)),
                NodeDef("Mul", [d_y, ctx.IA("beta")], [grad]),
            ]
        defs += _reduce_to_input(ctx, grad, 2, ctx.output_shape(0))
    return defs


# ----------------------------------------------------------------------
# Reductions
# ----------------------------------------------------------------------
def _static_extent(ctx: GradientContext, shape: Shape, axes: list[int]) -> int:
    total = 1
    for axis in axes:
        if not isinstance(shape[axis], int):
            raise ShapeMismatch(f"{ctx.node.op_type} gradient needs static reduced dims (node {ctx.name!r})")
        total *= shape[axis]
    return total


def _reduce_mean_grad(ctx: GradientContext) -> list[NodeDef]:
    x_shape = ctx.input_shape(0)
    rank = len(x_shape)
    axes = ctx.attr("axes")
    axes = list(range(rank)) if axes is None else sorted(a + rank if a < 0 else a for a in axes)
    scale = 1.0 / _static_extent(ctx, x_shape, axes)

    scaled, shape = ctx.IA("scaled_dY"), ctx.IA("shape_X")
    defs = [
        ctx.constant("inv_count", scale, ctx.elem_type(0)),
        NodeDef("Mul", [ctx.GO(0), ctx.IA("inv_count")], [scaled]),
    ]
    if not int(ctx.attr("keepdims", 1)):
        unsqueezed = ctx.IA("unsqueezed_dY")
        defs.append(NodeDef("Unsqueeze", [scaled], [unsqueezed], {"axes": axes}))
        scaled = unsqueezed
    defs += [
        NodeDef("Shape", [ctx.I(0)], [shape]),
        NodeDef("Expand", [scaled, shape], [ctx.GI(0)]),
    ]
    return defs


def _global_average_pool_grad(ctx: GradientContext) -> list[NodeDef]:
    x_shape = ctx.input_shape(0)
    scale = 1.0 / _static_extent(ctx, x_shape, list(range(2, len(x_shape))))
    scaled, shape = ctx.IA("scaled_dY"), ctx.IA("shape_X")
    return [
        ctx.constant("inv_count", scale, ctx.elem_type(0)),
        NodeDef("Mul", [ctx.GO(0), ctx.IA("inv_count")], [scaled]),
        NodeDef("Shape", [ctx.I(0)], [shape]),
        NodeDef("Expand", [scaled, shape], [ctx.GI(0)]),
    ]


# ----------------------------------------------------------------------
# Structural
# ----------------------------------------------------------------------
def _reshape_grad(ctx: GradientContext) -> list[NodeDef]:
    shape = ctx.IA("shape_X")
    return [
        NodeDef("Shape", [ctx.I(0)], [shape]),
        NodeDef("Reshape", [ctx.GO(0), shape], [ctx.GI(0)]),
    ]


def _transpose_grad(ctx: GradientContext) -> list[NodeDef]:
    rank = len(ctx.input_shape(0))
    perm = ctx.attr("perm") or list(reversed(range(rank)))
    inverse = [0] * rank
    for i, p in enumerate(perm):
        inverse[p] = i
    return [NodeDef("Transpose", [ctx.GO(0)], [ctx.GI(0)], {"perm": inverse})]


def _squeeze_grad(ctx: GradientContext) -> list[NodeDef]:
    axes = ctx.attr("axes")
    if axes is not None:
        return [NodeDef("Unsqueeze", [ctx.GO(0)], [ctx.GI(0)], {"axes": list(axes)})]
    return _reshape_grad(ctx)


def _unsqueeze_grad(ctx: GradientContext) -> list[NodeDef]:
    return [NodeDef("Squeeze", [ctx.GO(0)], [ctx.GI(0)])]


def _concat_grad(ctx: GradientContext) -> list[NodeDef]:
    axis = int(ctx.attr("axis"))
    sizes = []
    for i in range(ctx.num_inputs()):
        shape = ctx.input_shape(i)
        extent = shape[axis if axis >= 0 else axis + len(shape)]
        if not isinstance(extent, int):
            raise ShapeMismatch(f"Concat gradient needs static extents along axis {axis} (node {ctx.name!r})")
        sizes.append(extent)
    outputs = [ctx.GI_or_IA(i) for i in range(ctx.num_inputs())]
    return [NodeDef("Split", [ctx.GO(0)], outputs, {"axis": axis, "split": sizes})]


def _split_grad(ctx: GradientContext) -> list[NodeDef]:
    grads = [ctx.GO(i) for i in range(ctx.num_outputs())]
    return [NodeDef("Concat", grads, [ctx.GI(0)], {"axis": int(ctx.attr("axis", 0))})]


def _gather_grad(ctx: GradientContext) -> list[NodeDef]:
    shape = ctx.IA("shape_X")
    return [
        NodeDef("Shape", [ctx.I(0)], [shape]),
        NodeDef("GatherGrad", [shape, ctx.I(1), ctx.GO(0)], [ctx.GI(0)], {"axis": int(ctx.attr("axis", 0))}),
    ]


def _gather_nd_grad(ctx: GradientContext) -> list[NodeDef]:
    shape = ctx.IA("shape_X")
    return [
        NodeDef("Shape", [ctx.I(0)], [shape]),
        NodeDef(
            "GatherNDGrad",
            [shape, ctx.I(1), ctx.GO(0)],
            [ctx.GI(0)],
            {"batch_dims": int(ctx.attr("batch_dims", 0))},
        ),
    ]


# ----------------------------------------------------------------------
# Convolution and pooling
# ----------------------------------------------------------------------
def _conv_grad(ctx: GradientContext) -> list[NodeDef]:
    # ConvGrad always produces dX and dW (and dB with a bias), whether or not
    # each is required; unrequired ones land on throwaway edges.
    outputs = [ctx.GI_or_IA(0), ctx.GI_or_IA(1)]
    if ctx.num_inputs() > 2 and ctx.I(2):
        outputs.append(ctx.GI_or_IA(2))
    return [NodeDef("ConvGrad", [ctx.GO(0), ctx.I(0), ctx.I(1)], outputs)]


def _max_pool_grad(ctx: GradientContext) -> list[NodeDef]:
    return [NodeDef("MaxPoolGrad", [ctx.GO(0), ctx.I(0)], [ctx.GI(0)])]


def _average_pool_grad(ctx: GradientContext) -> list[NodeDef]:
    shape = ctx.IA("shape_X")
    return [
        NodeDef("Shape", [ctx.I(0)], [shape]),
        NodeDef("AveragePoolGrad", [ctx.GO(0), shape], [ctx.GI(0)]),
    ]


def _lrn_grad(ctx: GradientContext) -> list[NodeDef]:
    return [NodeDef("LRNGrad", [ctx.GO(0), ctx.I(0), ctx.O(0)], [ctx.GI(0)])]


# ----------------------------------------------------------------------
# Normalization, regularization and losses
# ----------------------------------------------------------------------
def _require_outputs(ctx: GradientContext, count: int, what: str) -> None:
    if ctx.num_outputs() < count or not all(ctx.O(i) for i in range(count)):
        raise GraphBuildError(f"{ctx.node.op_type} node {ctx.name!r} must expose its {what} to be differentiated")


def _softmax_grad(ctx: GradientContext) -> list[NodeDef]:
    return [NodeDef("SoftmaxGrad", [ctx.GO(0), ctx.O(0)], [ctx.GI(0)])]


def _dropout_grad(ctx: GradientContext) -> list[NodeDef]:
    _require_outputs(ctx, 2, "mask output")
    inputs = [ctx.GO(0), ctx.O(1)]
    if ctx.num_inputs() > 1 and ctx.I(1):
        inputs.append(ctx.I(1))
    return [NodeDef("DropoutGrad", inputs, [ctx.GI(0)], {"ratio": float(ctx.attr("ratio", 0.5))})]


def _layer_norm_grad(ctx: GradientContext) -> list[NodeDef]:
    _require_outputs(ctx, 3, "mean and inverse std outputs")
    outputs = [ctx.GI_or_IA(0), ctx.GI_or_IA(1), ctx.GI_or_IA(2)]
    return [
        NodeDef(
            "LayerNormalizationGrad",
            [ctx.GO(0), ctx.I(0), ctx.I(1), ctx.O(1), ctx.O(2)],
            outputs,
        )
    ]


def _batch_norm_grad(ctx: GradientContext) -> list[NodeDef]:
    _require_outputs(ctx, 5, "saved mean and saved inverse std outputs")
    outputs = [ctx.GI_or_IA(0), ctx.GI_or_IA(1), ctx.GI_or_IA(2)]
    return [
        NodeDef(
            "BatchNormalizationGrad",
            [ctx.GO(0), ctx.I(0), ctx.I(1), ctx.O(3), ctx.O(4)],
            outputs,
            {"epsilon": float(ctx.attr("epsilon", 1e-5))},
        )
    ]


def _softmax_cross_entropy_grad(ctx: GradientContext) -> list[NodeDef]:
    _require_outputs(ctx, 2, "log-probability output")
    return [NodeDef("SoftmaxCrossEntropyGrad", [ctx.GO(0), ctx.O(1), ctx.I(1)], [ctx.GI(0)])]


def _sparse_softmax_cross_entropy_grad(ctx: GradientContext) -> list[NodeDef]:
    _require_outputs(ctx, 2, "log-probability output")
    inputs = [ctx.GO(0), ctx.O(1), ctx.I(1)]
    if ctx.num_inputs() > 2 and ctx.I(2):
        inputs.append(ctx.I(2))
    return [NodeDef("SparseSoftmaxCrossEntropyGrad", inputs, [ctx.GI(0)])]


_DATA_ONLY = frozenset({0})

GRADIENT_FORMULAS: tuple[GradientFormula, ...] = (
    GradientFormula("Cast", _cast_grad, copy_attributes=False),
    GradientFormula("Identity", _identity_grad),
    GradientFormula("Sin", _sin_grad),
    GradientFormula("Tanh", _tanh_grad),
    GradientFormula("Sqrt", _sqrt_grad),
    GradientFormula("Erf", _erf_grad),
    GradientFormula("Relu", _relu_grad),
    GradientFormula("Gelu", _gelu_grad),
    GradientFormula("Add", _add_grad),
    GradientFormula("Sub", _sub_grad),
    GradientFormula("Mul", _mul_grad),
    GradientFormula("Div", _div_grad),
    GradientFormula("Pow", _pow_grad, differentiable_inputs=_DATA_ONLY),
    GradientFormula("MatMul", _matmul_grad),
    GradientFormula("Gemm", _gemm_grad, copy_attributes=False),
    GradientFormula("Split", _split_grad),
    GradientFormula("ReduceMean", _reduce_mean_grad, copy_attributes=False),
    GradientFormula("Concat", _concat_grad),
    GradientFormula("Reshape", _reshape_grad, differentiable_inputs=_DATA_ONLY),
    GradientFormula("Transpose", _transpose_grad, copy_attributes=False),
    GradientFormula("MaxPool", _max_pool_grad),
    GradientFormula("AveragePool", _average_pool_grad),
    GradientFormula("LRN", _lrn_grad),
    GradientFormula("Dropout", _dropout_grad, copy_attributes=False, differentiable_inputs=_DATA_ONLY),
    GradientFormula("TrainableDropout", _dropout_grad, copy_attributes=False, differentiable_inputs=_DATA_ONLY),
    GradientFormula("Gather", _gather_grad, copy_attributes=False, differentiable_inputs=_DATA_ONLY),
    GradientFormula("GatherND", _gather_nd_grad, copy_attributes=False, differentiable_inputs=_DATA_ONLY),
    GradientFormula("Conv", _conv_grad),
    GradientFormula("Squeeze", _squeeze_grad, copy_attributes=False),
    GradientFormula("Unsqueeze", _unsqueeze_grad),
    GradientFormula("Softmax", _softmax_grad),
    GradientFormula("SoftmaxCrossEntropy", _softmax_cross_entropy_grad, differentiable_inputs=_DATA_ONLY),
    GradientFormula(
        "SparseSoftmaxCrossEntropy", _sparse_softmax_cross_entropy_grad, differentiable_inputs=_DATA_ONLY
    ),
    GradientFormula("GlobalAveragePool", _global_average_pool_grad),
    GradientFormula("LayerNormalization", _layer_norm_grad),
    GradientFormula(
        "BatchNormalization",
        _batch_norm_grad,
        copy_attributes=False,
        differentiable_inputs=frozenset({0, 1, 2}),
    ),
)
