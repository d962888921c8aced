"""Graph IR shared by the gradient and optimizer builders."""

from traingraph.graph.inference import infer_graph
from traingraph.graph.inference import infer_node
from traingraph.graph.ir import Graph
from traingraph.graph.ir import IOAlias
from traingraph.graph.ir import Node
from traingraph.graph.ir import NodeArg
from traingraph.graph.naming import NameGenerator
from traingraph.graph.serialization import SaveOption
from traingraph.graph.serialization import load_graph
from traingraph.graph.serialization import save_graph
from traingraph.graph.types import TensorType
from traingraph.graph.types import elem_type_to_torch

__all__ = [
    "Graph",
    "IOAlias",
    "NameGenerator",
    "Node",
    "NodeArg",
    "SaveOption",
    "TensorType",
    "elem_type_to_torch",
    "infer_graph",
    "infer_node",
    "load_graph",
    "save_graph",
]
