"""Gradient formula registry.

A formula is a pure function from a read-only snapshot of a forward node to
the node definitions that compute its input gradients. Formulas never touch
the graph: intermediate edges are local placeholders (``@name``) that the
gradient builder renames through its name generator.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Callable
from typing import Optional
from typing import Sequence

import torch

from traingraph.errors import ShapeMismatch
from traingraph.errors import UnsupportedOperator
from traingraph.graph.ir import Node
from traingraph.graph.types import ElemType
from traingraph.graph.types import Shape
from traingraph.graph.types import TensorType
from traingraph.graph.types import elem_type_to_torch


LOCAL_PREFIX = "@"


def is_local(name: str) -> bool:
    return name.startswith(LOCAL_PREFIX)


@dataclass
class NodeDef:
    """Specification of a node a formula wants inserted."""

    op_type: str
    inputs: list[str]
    outputs: list[str]
    attributes: dict[str, Any] = field(default_factory=dict)


class GradientContext:
    """Snapshot of one forward node plus the names of its gradient edges."""

    def __init__(
        self,
        node: Node,
        input_types: Sequence[Optional[TensorType]],
        output_types: Sequence[Optional[TensorType]],
        output_grads: Sequence[Optional[str]],
        input_grads: Sequence[Optional[str]],
    ) -> None:
        self.node = node
        self._input_types = list(input_types)
        self._output_types = list(output_types)
        self._output_grads = list(output_grads)
        self._input_grads = list(input_grads)
        self.zero_grad_defs: list[NodeDef] = []

    @property
    def name(self) -> str:
        return self.node.name

    @property
    def attributes(self) -> dict[str, Any]:
        return dict(self.node.attributes)

    def attr(self, key: str, default: Any = None) -> Any:
        return self.node.attributes.get(key, default)

    def num_inputs(self) -> int:
        return len(self.node.inputs)

    def num_outputs(self) -> int:
        return len(self.node.outputs)

    def I(self, index: int) -> str:  # noqa: E743
        return self.node.input(index)

    def O(self, index: int) -> str:  # noqa: E743
        return self.node.output(index)

    def GO(self, index: int) -> str:
        """Gradient of output `index`; zeros when nothing downstream produced one."""
        grad = self._output_grads[index] if index < len(self._output_grads) else None
        if grad is not None:
            return grad
        zero = self.IA(f"zero_dY{index}")
        if not any(zero in d.outputs for d in self.zero_grad_defs):
            self.zero_grad_defs.append(NodeDef("ZerosLike", [self.O(index)], [zero]))
        return zero

    def has_output_grad(self, index: int) -> bool:
        return index < len(self._output_grads) and self._output_grads[index] is not None

    def requires(self, index: int) -> bool:
        return index < len(self._input_grads) and self._input_grads[index] is not None

    def GI(self, index: int) -> str:
        grad = self._input_grads[index] if index < len(self._input_grads) else None
        if grad is None:
            raise KeyError(f"Input {index} of {self.node.name!r} does not require a gradient")
        return grad

    def GI_or_IA(self, index: int) -> str:
        """Gradient name when required, else a throwaway intermediate."""
        return self.GI(index) if self.requires(index) else self.IA(f"unused_dX{index}")

    @staticmethod
    def IA(local_name: str) -> str:
        return f"{LOCAL_PREFIX}{local_name}"

    def input_type(self, index: int) -> TensorType:
        arg_type = self._input_types[index]
        if arg_type is None:
            raise ShapeMismatch(f"Input {index} of {self.node.name!r} has no recorded type")
        return arg_type

    def output_type(self, index: int) -> TensorType:
        arg_type = self._output_types[index]
        if arg_type is None:
            raise ShapeMismatch(f"Output {index} of {self.node.name!r} has no recorded type")
        return arg_type

    def input_shape(self, index: int) -> Shape:
        shape = self.input_type(index).shape
        if shape is None:
            raise ShapeMismatch(f"Input {index} of {self.node.name!r} has no recorded shape")
        return shape

    def output_shape(self, index: int) -> Shape:
        shape = self.output_type(index).shape
        if shape is None:
            raise ShapeMismatch(f"Output {index} of {self.node.name!r} has no recorded shape")
        return shape

    def elem_type(self, index: int) -> ElemType:
        return self.input_type(index).elem_type

    def constant(self, local_name: str, value: float, elem_type: ElemType) -> NodeDef:
        """Scalar constant definition producing the local edge `local_name`."""
        tensor = torch.tensor(value, dtype=elem_type_to_torch(elem_type))
        return NodeDef("Constant", [], [self.IA(local_name)], {"value": tensor})


GradientFn = Callable[[GradientContext], list[NodeDef]]


@dataclass(frozen=True)
class GradientFormula:
    """Registry entry for one forward op type."""

    op_type: str
    fn: GradientFn
    copy_attributes: bool = True
    differentiable_inputs: Optional[frozenset[int]] = None

    def is_differentiable(self, input_index: int) -> bool:
        return self.differentiable_inputs is None or input_index in self.differentiable_inputs


class GradientRegistry:
    """Explicit op_type -> formula table."""

    def __init__(self, formulas: Sequence[GradientFormula] = ()) -> None:
        self._formulas: dict[str, GradientFormula] = {}
        for formula in formulas:
            self.register(formula)

    def register(self, formula: GradientFormula) -> None:
        if formula.op_type in self._formulas:
            raise ValueError(f"Gradient formula for {formula.op_type!r} is already registered")
        self._formulas[formula.op_type] = formula

    def get(self, op_type: str, node_name: Optional[str] = None) -> GradientFormula:
        formula = self._formulas.get(op_type)
        if formula is None:
            raise UnsupportedOperator(op_type, node_name)
        return formula

    def __contains__(self, op_type: str) -> bool:
        return op_type in self._formulas

    @property
    def op_types(self) -> list[str]:
        return sorted(self._formulas)


_DEFAULT_REGISTRY: Optional[GradientRegistry] = None


def default_registry() -> GradientRegistry:
    """Registry holding every built-in formula."""
    global _DEFAULT_REGISTRY
    if _DEFAULT_REGISTRY is None:
        from traingraph.gradients.formulas import GRADIENT_FORMULAS

        _DEFAULT_REGISTRY = GradientRegistry(GRADIENT_FORMULAS)
    return _DEFAULT_REGISTRY
