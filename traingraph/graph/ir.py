"""Graph IR: named edges, nodes and the graph that owns them.

Nodes reference edges by name only, so rewriting passes can add nodes and
refine edge types without holding references across builder boundaries.
"""

from __future__ import annotations

import copy
import heapq
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Iterable
from typing import Literal
from typing import Optional
from typing import Sequence

import torch

from traingraph.errors import CycleDetected
from traingraph.errors import GraphIntegrityError
from traingraph.graph.types import ElemType
from traingraph.graph.types import Shape
from traingraph.graph.types import TensorType


Stage = Literal["forward", "loss", "gradient", "optimizer"]
STAGES: tuple[Stage, ...] = ("forward", "loss", "gradient", "optimizer")


@dataclass
class NodeArg:
    """A named, typed edge."""

    name: str
    type: Optional[TensorType] = None


@dataclass(frozen=True)
class IOAlias:
    """Output `output_index` reuses the storage of input `input_index`."""

    input_index: int
    output_index: int


@dataclass
class Node:
    """An operator instance."""

    name: str
    op_type: str
    inputs: list[str]
    outputs: list[str]
    attributes: dict[str, Any] = field(default_factory=dict)
    stage: Stage = "forward"
    aliases: tuple[IOAlias, ...] = ()

    def input(self, index: int) -> str:
        """Input edge name, or "" when the optional slot is absent."""
        return self.inputs[index] if index < len(self.inputs) else ""

    def output(self, index: int) -> str:
        return self.outputs[index] if index < len(self.outputs) else ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "op_type": self.op_type,
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
            "attributes": dict(self.attributes),
            "stage": self.stage,
            "aliases": [[a.input_index, a.output_index] for a in self.aliases],
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "Node":
        return cls(
            name=payload["name"],
            op_type=payload["op_type"],
            inputs=list(payload["inputs"]),
            outputs=list(payload["outputs"]),
            attributes=dict(payload.get("attributes", {})),
            stage=payload.get("stage", "forward"),
            aliases=tuple(IOAlias(int(i), int(o)) for i, o in payload.get("aliases", [])),
        )


class Graph:
    """Owns nodes, edges, graph inputs/outputs and initializer values."""

    def __init__(self, name: str = "graph") -> None:
        self.name = name
        self.inputs: list[str] = []
        self.outputs: list[str] = []
        self.initializers: dict[str, torch.Tensor] = {}
        self._nodes: dict[str, Node] = {}
        self._args: dict[str, NodeArg] = {}
        self._producers: dict[str, str] = {}
        self._consumers: dict[str, list[str]] = {}
        self._node_name_counters: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------
    def has_arg(self, name: str) -> bool:
        return name in self._args

    def arg(self, name: str) -> NodeArg:
        try:
            return self._args[name]
        except KeyError as exc:
            raise KeyError(f"Unknown edge {name!r} in graph {self.name!r}") from exc

    def get_or_create_arg(self, name: str, arg_type: Optional[TensorType] = None) -> NodeArg:
        node_arg = self._args.get(name)
        if node_arg is None:
            node_arg = NodeArg(name=name, type=arg_type)
            self._args[name] = node_arg
        elif arg_type is not None and node_arg.type is None:
            node_arg.type = arg_type
        return node_arg

    def arg_type(self, name: str) -> Optional[TensorType]:
        node_arg = self._args.get(name)
        return None if node_arg is None else node_arg.type

    def set_arg_type(self, name: str, arg_type: TensorType) -> None:
        self.get_or_create_arg(name).type = arg_type

    @property
    def arg_names(self) -> list[str]:
        return list(self._args)

    def add_input(self, name: str, elem_type: ElemType, shape: Optional[Sequence] = None) -> NodeArg:
        if name in self.inputs or name in self.initializers or name in self._producers:
            raise GraphIntegrityError(f"Edge {name!r} is already defined")
        node_arg = self.get_or_create_arg(name)
        node_arg.type = TensorType(elem_type, None if shape is None else tuple(shape))
        self.inputs.append(name)
        return node_arg

    def add_initializer(self, name: str, value: torch.Tensor) -> NodeArg:
        if name in self.initializers or name in self._producers:
            raise GraphIntegrityError(f"Initializer {name!r} is already defined")
        self.initializers[name] = value
        node_arg = self.get_or_create_arg(name)
        node_arg.type = TensorType.of(value)
        return node_arg

    def set_initializer(self, name: str, value: torch.Tensor) -> None:
        """Replace the value of an existing initializer (same edge type)."""
        if name not in self.initializers:
            raise KeyError(f"Unknown initializer {name!r}")
        self.initializers[name] = value

    def is_initializer(self, name: str) -> bool:
        return name in self.initializers

    def add_output(self, name: str) -> None:
        if name not in self._args:
            raise GraphIntegrityError(f"Cannot expose unknown edge {name!r} as graph output")
        if name not in self.outputs:
            self.outputs.append(name)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------
    def _unique_node_name(self, base: str) -> str:
        count = self._node_name_counters.get(base, 0)
        while True:
            candidate = f"{base}_{count}"
            count += 1
            if candidate not in self._nodes:
                self._node_name_counters[base] = count
                return candidate

    def add_node(
        self,
        op_type: str,
        inputs: Sequence[str],
        outputs: Sequence[str],
        name: Optional[str] = None,
        attributes: Optional[dict[str, Any]] = None,
        stage: Stage = "forward",
        aliases: Sequence[IOAlias] = (),
    ) -> Node:
        if name is None:
            name = self._unique_node_name(op_type)
        if name in self._nodes:
            raise GraphIntegrityError(f"Node name {name!r} is already used")
        for out in outputs:
            if not out:
                raise GraphIntegrityError(f"Node {name!r} has an unnamed output")
            if out in self._producers or out in self.initializers or out in self.inputs:
                raise GraphIntegrityError(f"Edge {out!r} already has a producer")

        node = Node(
            name=name,
            op_type=op_type,
            inputs=list(inputs),
            outputs=list(outputs),
            attributes=dict(attributes or {}),
            stage=stage,
            aliases=tuple(aliases),
        )
        self._nodes[name] = node
        for inp in node.inputs:
            if inp:
                self.get_or_create_arg(inp)
                self._consumers.setdefault(inp, []).append(name)
        for out in node.outputs:
            self.get_or_create_arg(out)
            self._producers[out] = name
        return node

    def replace_input(self, node_name: str, index: int, new_input: str) -> None:
        """Rewire one input slot of an existing node."""
        node = self.node(node_name)
        old = node.inputs[index]
        if old:
            self._consumers[old].remove(node_name)
        node.inputs[index] = new_input
        if new_input:
            self.get_or_create_arg(new_input)
            self._consumers.setdefault(new_input, []).append(node_name)

    @property
    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    def node(self, name: str) -> Node:
        try:
            return self._nodes[name]
        except KeyError as exc:
            raise KeyError(f"Unknown node {name!r} in graph {self.name!r}") from exc

    def has_node(self, name: str) -> bool:
        return name in self._nodes

    def producer(self, arg_name: str) -> Optional[Node]:
        node_name = self._producers.get(arg_name)
        return None if node_name is None else self._nodes[node_name]

    def consumers(self, arg_name: str) -> list[Node]:
        return [self._nodes[n] for n in self._consumers.get(arg_name, [])]

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------
    def topological_sort(self, node_names: Optional[Iterable[str]] = None) -> list[Node]:
        """
        Deterministic topological order (Kahn's algorithm).

        Ties are broken by node insertion order, so identical graphs always sort
        identically. Raises CycleDetected if the selected nodes are not a DAG.
        """
        order_index = {name: i for i, name in enumerate(self._nodes)}
        selected = set(self._nodes) if node_names is None else set(node_names)

        in_degree = {name: 0 for name in selected}
        successors: dict[str, list[str]] = {name: [] for name in selected}
        for name in selected:
            node = self._nodes[name]
            seen: set[str] = set()
            for inp in node.inputs:
                src = self._producers.get(inp) if inp else None
                if src is None or src not in selected or src in seen:
                    continue
                seen.add(src)
                in_degree[name] += 1
                successors[src].append(name)

        ready = [(order_index[n], n) for n, d in in_degree.items() if d == 0]
        heapq.heapify(ready)
        ordered: list[Node] = []
        while ready:
            _, name = heapq.heappop(ready)
            ordered.append(self._nodes[name])
            for succ in successors[name]:
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    heapq.heappush(ready, (order_index[succ], succ))

        if len(ordered) != len(selected):
            remaining = sorted((n for n, d in in_degree.items() if d > 0), key=order_index.__getitem__)
            raise CycleDetected(remaining)
        return ordered

    def check_acyclic(self) -> None:
        self.topological_sort()

    def ancestors(self, node_name: str) -> set[str]:
        """Names of all nodes the given node transitively depends on."""
        result: set[str] = set()
        stack = [node_name]
        while stack:
            for inp in self._nodes[stack.pop()].inputs:
                src = self._producers.get(inp) if inp else None
                if src is not None and src not in result:
                    result.add(src)
                    stack.append(src)
        return result

    def downstream_args(self, sources: Iterable[str]) -> set[str]:
        """All edges reachable from `sources` (inclusive) along consumer links."""
        reached = set(sources)
        stack = list(reached)
        while stack:
            for consumer in self._consumers.get(stack.pop(), []):
                for out in self._nodes[consumer].outputs:
                    if out not in reached:
                        reached.add(out)
                        stack.append(out)
        return reached

    def upstream_nodes(self, targets: Iterable[str]) -> set[str]:
        """All node names needed to produce the target edges."""
        needed: set[str] = set()
        stack = [self._producers[t] for t in targets if t in self._producers]
        while stack:
            name = stack.pop()
            if name in needed:
                continue
            needed.add(name)
            for inp in self._nodes[name].inputs:
                src = self._producers.get(inp) if inp else None
                if src is not None and src not in needed:
                    stack.append(src)
        return needed

    # ------------------------------------------------------------------
    # Copies and serialization
    # ------------------------------------------------------------------
    def copy(self) -> "Graph":
        """Structural deep copy; initializer tensors are cloned."""
        clone = Graph.from_dict(self.to_dict())
        return clone

    def filter_stages(self, stages: Iterable[Stage]) -> "Graph":
        """
        New graph with only the nodes of the given stages.

        Initializers and graph inputs that are no longer referenced are dropped;
        graph outputs that lost their producer are dropped too.
        """
        keep = set(stages)
        result = Graph(self.name)
        kept_nodes = [n for n in self.nodes if n.stage in keep]
        referenced: set[str] = set()
        produced: set[str] = set()
        for node in kept_nodes:
            referenced.update(i for i in node.inputs if i)
            produced.update(node.outputs)

        for name in self.inputs:
            if name in referenced:
                arg_type = self.arg_type(name)
                result.add_input(name, arg_type.elem_type, arg_type.shape)
        for name, value in self.initializers.items():
            if name in referenced:
                result.add_initializer(name, value.clone())
        for node in kept_nodes:
            result.add_node(
                node.op_type,
                node.inputs,
                node.outputs,
                name=node.name,
                attributes=copy.deepcopy(node.attributes),
                stage=node.stage,
                aliases=node.aliases,
            )
            for out in node.outputs:
                arg_type = self.arg_type(out)
                if arg_type is not None:
                    result.set_arg_type(out, arg_type)
        for name in self.outputs:
            if name in produced or name in result.inputs or name in result.initializers:
                result.add_output(name)
        return result

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
            "args": {
                name: (None if a.type is None else a.type.to_dict()) for name, a in self._args.items()
            },
            "nodes": [copy.deepcopy(n.to_dict()) for n in self.nodes],
            "initializers": {name: t.detach().clone() for name, t in self.initializers.items()},
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "Graph":
        graph = cls(payload.get("name", "graph"))
        arg_types = payload.get("args", {})
        for name in payload["inputs"]:
            arg_type = TensorType.from_dict(arg_types[name])
            graph.add_input(name, arg_type.elem_type, arg_type.shape)
        for name, value in payload.get("initializers", {}).items():
            graph.add_initializer(name, value)
        for node_payload in payload["nodes"]:
            node = Node.from_dict(node_payload)
            graph.add_node(
                node.op_type,
                node.inputs,
                node.outputs,
                name=node.name,
                attributes=node.attributes,
                stage=node.stage,
                aliases=node.aliases,
            )
        for name, type_payload in arg_types.items():
            if type_payload is not None and name not in graph.initializers:
                graph.set_arg_type(name, TensorType.from_dict(type_payload))
        for name in payload["outputs"]:
            graph.add_output(name)
        return graph

    def shape_of(self, name: str) -> Optional[Shape]:
        arg_type = self.arg_type(name)
        return None if arg_type is None else arg_type.shape

    def __repr__(self) -> str:
        return (
            f"Graph(name={self.name!r}, nodes={len(self._nodes)}, inputs={len(self.inputs)}, "
            f"initializers={len(self.initializers)}, outputs={len(self.outputs)})"
        )
