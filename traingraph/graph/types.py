"""Element types, tensor types and broadcasting helpers for graph edges."""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import replace
from typing import Literal
from typing import Optional
from typing import Sequence
from typing import Union

import torch

from traingraph.errors import ShapeMismatch


ElemType = Literal["fp32", "fp16", "fp64", "int64", "int32", "bool"]
Dim = Union[int, str]
Shape = tuple[Dim, ...]

_ELEM_TYPE_TO_TORCH: dict[ElemType, torch.dtype] = {
    "fp32": torch.float32,
    "fp16": torch.float16,
    "fp64": torch.float64,
    "int64": torch.int64,
    "int32": torch.int32,
    "bool": torch.bool,
}
_TORCH_TO_ELEM_TYPE: dict[torch.dtype, ElemType] = {v: k for k, v in _ELEM_TYPE_TO_TORCH.items()}

FLOAT_TYPES: frozenset[str] = frozenset({"fp32", "fp16", "fp64"})


def elem_type_to_torch(elem_type: ElemType) -> torch.dtype:
    """Map an element type alias to the torch dtype."""
    try:
        return _ELEM_TYPE_TO_TORCH[elem_type]
    except KeyError as exc:
        raise ValueError(f"Unsupported element type: {elem_type}") from exc


def elem_type_from_torch(dtype: torch.dtype) -> ElemType:
    """Map a torch dtype back to its element type alias."""
    try:
        return _TORCH_TO_ELEM_TYPE[dtype]
    except KeyError as exc:
        raise ValueError(f"Unsupported torch dtype: {dtype}") from exc


@dataclass(frozen=True)
class TensorType:
    """Element type plus (optional) shape of an edge."""

    elem_type: ElemType
    shape: Optional[Shape] = None

    @property
    def rank(self) -> Optional[int]:
        return None if self.shape is None else len(self.shape)

    def with_elem_type(self, elem_type: ElemType) -> "TensorType":
        return replace(self, elem_type=elem_type)

    def with_shape(self, shape: Optional[Sequence[Dim]]) -> "TensorType":
        return replace(self, shape=None if shape is None else tuple(shape))

    def to_dict(self) -> dict:
        return {"elem_type": self.elem_type, "shape": None if self.shape is None else list(self.shape)}

    @classmethod
    def from_dict(cls, payload: dict) -> "TensorType":
        shape = payload.get("shape")
        return cls(elem_type=payload["elem_type"], shape=None if shape is None else tuple(shape))

    @classmethod
    def of(cls, tensor: torch.Tensor) -> "TensorType":
        return cls(elem_type=elem_type_from_torch(tensor.dtype), shape=tuple(tensor.shape))


def is_static(shape: Optional[Shape]) -> bool:
    """Return True when every dim is a concrete int."""
    return shape is not None and all(isinstance(d, int) for d in shape)


def numel(shape: Shape) -> int:
    if not is_static(shape):
        raise ShapeMismatch(f"Element count needs a static shape, got {shape}")
    total = 1
    for d in shape:
        total *= int(d)
    return total


def _broadcast_dim(a: Dim, b: Dim) -> Dim:
    if a == b:
        return a
    if a == 1:
        return b
    if b == 1:
        return a
    if isinstance(a, str) and isinstance(b, int):
        return b
    if isinstance(b, str) and isinstance(a, int):
        return a
    if isinstance(a, str) and isinstance(b, str):
        return a
    raise ShapeMismatch(f"Dims {a} and {b} are not broadcast compatible")


def broadcast_shapes(*shapes: Shape) -> Shape:
    """Numpy-style multidirectional broadcast over int or symbolic dims."""
    rank = max((len(s) for s in shapes), default=0)
    result: list[Dim] = [1] * rank
    for shape in shapes:
        offset = rank - len(shape)
        for i, d in enumerate(shape):
            try:
                result[offset + i] = _broadcast_dim(result[offset + i], d)
            except ShapeMismatch as exc:
                raise ShapeMismatch(f"Cannot broadcast shapes {list(shapes)}: {exc}") from exc
    return tuple(result)


def broadcast_reduction_axes(input_shape: Shape, output_shape: Shape) -> list[int]:
    """
    Axes of `output_shape` that were produced by broadcasting `input_shape`.

    Derived from the recorded shapes only: leading axes missing from the input,
    plus axes where the input has extent 1 and the output does not.
    """
    offset = len(output_shape) - len(input_shape)
    if offset < 0:
        raise ShapeMismatch(f"Input rank {len(input_shape)} exceeds output rank {len(output_shape)}")
    axes = list(range(offset))
    for i, d in enumerate(input_shape):
        if d == 1 and output_shape[offset + i] != 1:
            axes.append(offset + i)
    return axes
