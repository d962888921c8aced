"""Type and shape propagation for the ops the builders insert or differentiate.

Recorded shapes on an edge always win over inferred ones: inference fills in
missing types and verifies that what it can derive agrees with what was
declared.
"""

from __future__ import annotations

import logging
from typing import Callable
from typing import Optional

from traingraph.errors import ShapeMismatch
from traingraph.errors import TypeMismatch
from traingraph.graph.ir import Graph
from traingraph.graph.ir import Node
from traingraph.graph.types import Dim
from traingraph.graph.types import Shape
from traingraph.graph.types import TensorType
from traingraph.graph.types import broadcast_shapes
from traingraph.graph.types import elem_type_from_torch
from traingraph.graph.types import is_static


LOGGER = logging.getLogger(__name__)

InTypes = list[Optional[TensorType]]
OutTypes = list[Optional[TensorType]]
InferenceRule = Callable[[Node, InTypes, Graph], OutTypes]

_RULES: dict[str, InferenceRule] = {}


def _rule(*op_types: str):
    def decorator(fn: InferenceRule) -> InferenceRule:
        for op_type in op_types:
            _RULES[op_type] = fn
        return fn

    return decorator


def has_inference_rule(op_type: str) -> bool:
    return op_type in _RULES


def _normalize_axis(axis: int, rank: int) -> int:
    if axis < -rank or axis >= max(rank, 1):
        raise ShapeMismatch(f"Axis {axis} out of range for rank {rank}")
    return axis + rank if axis < 0 else axis


def _shape_or_none(t: Optional[TensorType]) -> Optional[Shape]:
    return None if t is None else t.shape


def shape_from_shape_input(graph: Graph, name: str) -> Optional[Shape]:
    """Resolve the value of a shape-carrying edge at build time, if possible."""
    if name in graph.initializers:
        return tuple(int(v) for v in graph.initializers[name].tolist())
    producer = graph.producer(name)
    if producer is not None and producer.op_type == "Shape":
        return graph.shape_of(producer.inputs[0])
    return None


def _target_shape(node: Node, graph: Graph, input_index: int = 1) -> Optional[list[Dim]]:
    name = node.input(input_index)
    if name:
        shape = shape_from_shape_input(graph, name)
        return None if shape is None else list(shape)
    if "shape" in node.attributes:
        return [int(d) for d in node.attributes["shape"]]
    return None


# ----------------------------------------------------------------------
# Elementwise
# ----------------------------------------------------------------------
@_rule(
    "Identity", "Neg", "Sin", "Cos", "Tanh", "Sqrt", "Erf", "Exp", "Relu", "Gelu", "Softmax",
    "ZerosLike", "OnesLike", "LRN", "ReluGrad", "GeluGrad", "SoftmaxGrad", "DropoutGrad",
)
def _same_as_first(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    return [types[0]]


@_rule("Add", "Sub", "Mul", "Div", "Pow", "Sum")
def _broadcast(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    known = [t for t in types if t is not None]
    if not known:
        return [None]
    if node.op_type != "Pow":
        elem_types = {t.elem_type for t in known}
        if len(elem_types) > 1:
            raise TypeMismatch(f"{node.op_type} node {node.name!r} mixes element types {sorted(elem_types)}")
    shapes = [t.shape for t in known]
    if any(s is None for s in shapes) or len(known) != len(types):
        return [TensorType(known[0].elem_type, None)]
    return [TensorType(known[0].elem_type, broadcast_shapes(*shapes))]


@_rule("Cast")
def _cast(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    return [TensorType(node.attributes["to"], _shape_or_none(types[0]))]


@_rule("Constant")
def _constant(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    value = node.attributes["value"]
    return [TensorType(elem_type_from_torch(value.dtype), tuple(value.shape))]


@_rule("Shape")
def _shape(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    rank = None if types[0] is None or types[0].shape is None else len(types[0].shape)
    return [TensorType("int64", None if rank is None else (rank,))]


@_rule("IsAllFinite", "Group")
def _bool_scalar(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    return [TensorType("bool", ())]


# ----------------------------------------------------------------------
# Structural
# ----------------------------------------------------------------------
@_rule("Reshape")
def _reshape(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    src = types[0]
    target = _target_shape(node, graph)
    if src is None:
        return [None]
    if target is None or src.shape is None:
        return [TensorType(src.elem_type, None)]
    resolved: list[Dim] = []
    for i, d in enumerate(target):
        resolved.append(src.shape[i] if d == 0 else d)
    if -1 in resolved:
        if not is_static(src.shape) or not all(isinstance(d, int) for d in resolved):
            return [TensorType(src.elem_type, None)]
        total = 1
        for d in src.shape:
            total *= d
        known = 1
        for d in resolved:
            if d != -1:
                known *= d
        resolved[resolved.index(-1)] = total // known if known else 0
    return [TensorType(src.elem_type, tuple(resolved))]


@_rule("Expand")
def _expand(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    src = types[0]
    target = _target_shape(node, graph)
    if src is None:
        return [None]
    if target is None or src.shape is None:
        return [TensorType(src.elem_type, None)]
    return [TensorType(src.elem_type, broadcast_shapes(src.shape, tuple(target)))]


@_rule("Transpose")
def _transpose(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    src = types[0]
    if src is None or src.shape is None:
        return [src]
    perm = node.attributes.get("perm") or list(reversed(range(len(src.shape))))
    return [TensorType(src.elem_type, tuple(src.shape[p] for p in perm))]


@_rule("Squeeze")
def _squeeze(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    src = types[0]
    if src is None or src.shape is None:
        return [src]
    rank = len(src.shape)
    axes = node.attributes.get("axes")
    if axes is None:
        drop = {i for i, d in enumerate(src.shape) if d == 1}
    else:
        drop = {_normalize_axis(a, rank) for a in axes}
        for a in drop:
            if isinstance(src.shape[a], int) and src.shape[a] != 1:
                raise ShapeMismatch(f"Squeeze axis {a} of {src.shape} is not 1")
    return [TensorType(src.elem_type, tuple(d for i, d in enumerate(src.shape) if i not in drop))]


@_rule("Unsqueeze")
def _unsqueeze(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    src = types[0]
    if src is None or src.shape is None:
        return [src]
    out_rank = len(src.shape) + len(node.attributes["axes"])
    axes = sorted(_normalize_axis(a, out_rank) for a in node.attributes["axes"])
    dims = list(src.shape)
    for a in axes:
        dims.insert(a, 1)
    return [TensorType(src.elem_type, tuple(dims))]


@_rule("Concat")
def _concat(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    if any(t is None or t.shape is None for t in types):
        known = next((t for t in types if t is not None), None)
        return [None if known is None else TensorType(known.elem_type, None)]
    rank = len(types[0].shape)
    axis = _normalize_axis(int(node.attributes["axis"]), rank)
    dims = list(types[0].shape)
    extents = [t.shape[axis] for t in types]
    dims[axis] = sum(extents) if all(isinstance(e, int) for e in extents) else f"concat_{node.name}"
    return [TensorType(types[0].elem_type, tuple(dims))]


@_rule("Split")
def _split(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    src = types[0]
    n_out = len(node.outputs)
    if src is None or src.shape is None:
        return [src] * n_out
    axis = _normalize_axis(int(node.attributes.get("axis", 0)), len(src.shape))
    sizes = node.attributes.get("split")
    if sizes is None:
        extent = src.shape[axis]
        if not isinstance(extent, int):
            return [TensorType(src.elem_type, None)] * n_out
        sizes = [extent // n_out] * n_out
    results = []
    for size in sizes:
        dims = list(src.shape)
        dims[axis] = int(size)
        results.append(TensorType(src.elem_type, tuple(dims)))
    return results


@_rule("ReduceSum", "ReduceMean")
def _reduce(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    src = types[0]
    if src is None or src.shape is None:
        return [src]
    rank = len(src.shape)
    axes = node.attributes.get("axes")
    reduced = set(range(rank)) if axes is None else {_normalize_axis(a, rank) for a in axes}
    keepdims = int(node.attributes.get("keepdims", 1))
    dims = []
    for i, d in enumerate(src.shape):
        if i in reduced:
            if keepdims:
                dims.append(1)
        else:
            dims.append(d)
    return [TensorType(src.elem_type, tuple(dims))]


@_rule("Gather")
def _gather(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    data, indices = types[0], types[1]
    if data is None:
        return [None]
    if data.shape is None or indices is None or indices.shape is None:
        return [TensorType(data.elem_type, None)]
    axis = _normalize_axis(int(node.attributes.get("axis", 0)), len(data.shape))
    dims = data.shape[:axis] + indices.shape + data.shape[axis + 1:]
    return [TensorType(data.elem_type, tuple(dims))]


@_rule("GatherND")
def _gather_nd(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    data, indices = types[0], types[1]
    if data is None:
        return [None]
    if data.shape is None or indices is None or indices.shape is None:
        return [TensorType(data.elem_type, None)]
    batch_dims = int(node.attributes.get("batch_dims", 0))
    depth = indices.shape[-1]
    if not isinstance(depth, int):
        return [TensorType(data.elem_type, None)]
    dims = indices.shape[:-1] + data.shape[batch_dims + depth:]
    return [TensorType(data.elem_type, tuple(dims))]


@_rule("GatherGrad", "GatherNDGrad")
def _scatter_back(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    grad = types[2]
    if grad is None:
        return [None]
    return [TensorType(grad.elem_type, shape_from_shape_input(graph, node.inputs[0]))]


# ----------------------------------------------------------------------
# Linear algebra
# ----------------------------------------------------------------------
def _check_inner(a: Dim, b: Dim, node: Node) -> None:
    if isinstance(a, int) and isinstance(b, int) and a != b:
        raise ShapeMismatch(f"{node.op_type} node {node.name!r}: inner dims {a} and {b} differ")


@_rule("MatMul")
def _matmul(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    a, b = types[0], types[1]
    if a is None or b is None:
        return [None]
    if a.elem_type != b.elem_type:
        raise TypeMismatch(f"MatMul node {node.name!r} mixes {a.elem_type} and {b.elem_type}")
    if a.shape is None or b.shape is None:
        return [TensorType(a.elem_type, None)]
    sa, sb = a.shape, b.shape
    if len(sa) == 1 and len(sb) == 1:
        _check_inner(sa[0], sb[0], node)
        return [TensorType(a.elem_type, ())]
    if len(sa) == 1:
        _check_inner(sa[0], sb[-2], node)
        return [TensorType(a.elem_type, sb[:-2] + sb[-1:])]
    if len(sb) == 1:
        _check_inner(sa[-1], sb[0], node)
        return [TensorType(a.elem_type, sa[:-1])]
    _check_inner(sa[-1], sb[-2], node)
    batch = broadcast_shapes(sa[:-2], sb[:-2])
    return [TensorType(a.elem_type, batch + (sa[-2], sb[-1]))]


@_rule("Gemm")
def _gemm(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    a, b = types[0], types[1]
    if a is None or b is None:
        return [None]
    if a.shape is None or b.shape is None:
        return [TensorType(a.elem_type, None)]
    m, k = (a.shape[1], a.shape[0]) if node.attributes.get("transA", 0) else a.shape
    k2, n = (b.shape[1], b.shape[0]) if node.attributes.get("transB", 0) else b.shape
    _check_inner(k, k2, node)
    return [TensorType(a.elem_type, (m, n))]


# ----------------------------------------------------------------------
# Convolution, pooling, normalization
# ----------------------------------------------------------------------
def _spatial_out(node: Node, in_spatial: Shape, kernel: list[int]) -> Optional[tuple[int, ...]]:
    if not is_static(in_spatial):
        return None
    n = len(kernel)
    strides = node.attributes.get("strides") or [1] * n
    dilations = node.attributes.get("dilations") or [1] * n
    pads = node.attributes.get("pads") or [0] * (2 * n)
    out = []
    for i in range(n):
        span = dilations[i] * (kernel[i] - 1) + 1
        out.append((in_spatial[i] + pads[i] + pads[i + n] - span) // strides[i] + 1)
    return tuple(out)


@_rule("Conv")
def _conv(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    x, w = types[0], types[1]
    if x is None:
        return [None]
    if x.shape is None or w is None or w.shape is None:
        return [TensorType(x.elem_type, None)]
    kernel = node.attributes.get("kernel_shape") or list(w.shape[2:])
    spatial = _spatial_out(node, x.shape[2:], kernel)
    if spatial is None:
        return [TensorType(x.elem_type, None)]
    return [TensorType(x.elem_type, (x.shape[0], w.shape[0]) + spatial)]


@_rule("MaxPool", "AveragePool")
def _pool(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    x = types[0]
    if x is None:
        return [None] * len(node.outputs)
    shape = None
    if x.shape is not None:
        spatial = _spatial_out(node, x.shape[2:], list(node.attributes["kernel_shape"]))
        shape = None if spatial is None else tuple(x.shape[:2]) + spatial
    results: OutTypes = [TensorType(x.elem_type, shape)]
    if len(node.outputs) > 1:
        results.append(TensorType("int64", shape))
    return results


@_rule("GlobalAveragePool")
def _global_pool(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    x = types[0]
    if x is None or x.shape is None:
        return [x]
    return [TensorType(x.elem_type, tuple(x.shape[:2]) + (1,) * (len(x.shape) - 2))]


@_rule("LayerNormalization")
def _layer_norm(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    x = types[0]
    if x is None:
        return [None] * len(node.outputs)
    if x.shape is None:
        stat = TensorType(x.elem_type, None)
    else:
        axis = _normalize_axis(int(node.attributes.get("axis", -1)), len(x.shape))
        stat = TensorType(x.elem_type, tuple(x.shape[:axis]) + (1,) * (len(x.shape) - axis))
    return [x, stat, stat][: len(node.outputs)]


@_rule("BatchNormalization")
def _batch_norm(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    x, scale = types[0], types[1]
    return [x] + [scale] * (len(node.outputs) - 1)


@_rule("Dropout", "TrainableDropout")
def _dropout(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    x = types[0]
    results: OutTypes = [x]
    if len(node.outputs) > 1:
        results.append(None if x is None else TensorType("bool", x.shape))
    return results


@_rule("SoftmaxCrossEntropy", "SparseSoftmaxCrossEntropy")
def _softmax_cross_entropy(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    logits = types[0]
    if logits is None:
        return [None] * len(node.outputs)
    return [TensorType(logits.elem_type, ()), logits][: len(node.outputs)]


# ----------------------------------------------------------------------
# Gradient ops
# ----------------------------------------------------------------------
@_rule("AveragePoolGrad")
def _average_pool_grad(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    grad = types[0]
    if grad is None:
        return [None]
    return [TensorType(grad.elem_type, shape_from_shape_input(graph, node.inputs[1]))]


@_rule("MaxPoolGrad", "LRNGrad")
def _like_second(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    grad, x = types[0], types[1]
    if grad is None or x is None:
        return [x]
    return [TensorType(grad.elem_type, x.shape)]


@_rule("ConvGrad")
def _conv_grad(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    x, w = types[1], types[2]
    bias = None
    if w is not None:
        bias = TensorType(w.elem_type, None if w.shape is None else (w.shape[0],))
    return [x, w, bias][: len(node.outputs)]


@_rule("LayerNormalizationGrad", "BatchNormalizationGrad")
def _norm_grad(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    x, scale = types[1], types[2]
    return [x, scale, scale][: len(node.outputs)]


@_rule("SoftmaxCrossEntropyGrad", "SparseSoftmaxCrossEntropyGrad")
def _softmax_cross_entropy_grad(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    return [types[1]]


# ----------------------------------------------------------------------
# Stateful and collective ops: outputs mirror the inputs they alias
# ----------------------------------------------------------------------
@_rule(
    "SGDOptimizer", "AdamOptimizer", "LambOptimizer", "GradientAccumulator", "ZeroGradient",
    "AllGather",
)
def _aliased(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    results: OutTypes = [None] * len(node.outputs)
    for alias in node.aliases:
        if alias.output_index < len(results) and alias.input_index < len(types):
            results[alias.output_index] = types[alias.input_index]
    if node.op_type == "AdamOptimizer" and len(results) > 5:
        results[5] = types[3]
    return results


@_rule("AllReduce", "ReduceScatter")
def _collective(node: Node, types: InTypes, graph: Graph) -> OutTypes:
    return list(types[: len(node.outputs)])


# ----------------------------------------------------------------------
# Drivers
# ----------------------------------------------------------------------
def _merge(declared: Optional[TensorType], inferred: Optional[TensorType], edge: str) -> Optional[TensorType]:
    if inferred is None:
        return declared
    if declared is None:
        return inferred
    if declared.elem_type != inferred.elem_type:
        raise TypeMismatch(f"Edge {edge!r}: declared {declared.elem_type}, inferred {inferred.elem_type}")
    if declared.shape is None:
        return declared.with_shape(inferred.shape)
    if inferred.shape is not None:
        if len(declared.shape) != len(inferred.shape):
            raise ShapeMismatch(f"Edge {edge!r}: declared shape {declared.shape}, inferred {inferred.shape}")
        for d, i in zip(declared.shape, inferred.shape):
            if isinstance(d, int) and isinstance(i, int) and d != i:
                raise ShapeMismatch(f"Edge {edge!r}: declared shape {declared.shape}, inferred {inferred.shape}")
    return declared


def infer_node(graph: Graph, node: Node) -> None:
    """Infer the node's output types, checking them against declared types."""
    rule = _RULES.get(node.op_type)
    if rule is None:
        LOGGER.debug("No inference rule for %s (node %s); keeping declared types", node.op_type, node.name)
        return
    in_types = [graph.arg_type(name) if name else None for name in node.inputs]
    inferred = rule(node, in_types, graph)
    for out, out_type in zip(node.outputs, inferred):
        merged = _merge(graph.arg_type(out), out_type, out)
        if merged is not None:
            graph.set_arg_type(out, merged)


def infer_graph(graph: Graph, node_names: Optional[set[str]] = None) -> None:
    """Propagate types over the (selected) nodes in topological order."""
    for node in graph.topological_sort(node_names):
        infer_node(graph, node)
