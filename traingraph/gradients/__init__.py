"""Gradient graph construction: formula registry, builder and loss attachment."""

from traingraph.gradients.builder import GradientGraphBuilder
from traingraph.gradients.builder import GradientGraphSpec
from traingraph.gradients.builder import build_gradient_graph
from traingraph.gradients.loss import LossFunctionInfo
from traingraph.gradients.loss import build_loss_function
from traingraph.gradients.registry import GradientContext
from traingraph.gradients.registry import GradientFormula
from traingraph.gradients.registry import GradientRegistry
from traingraph.gradients.registry import NodeDef
from traingraph.gradients.registry import default_registry

__all__ = [
    "GradientContext",
    "GradientFormula",
    "GradientGraphBuilder",
    "GradientGraphSpec",
    "GradientRegistry",
    "LossFunctionInfo",
    "NodeDef",
    "build_gradient_graph",
    "build_loss_function",
    "default_registry",
]
