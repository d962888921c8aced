"""Reference graph evaluation with fetch-based pruning and in-place commits."""

from __future__ import annotations

import logging
from typing import Mapping
from typing import Optional
from typing import Sequence

import torch

from traingraph.graph.ir import Graph
from traingraph.graph.ir import Node
from traingraph.runtime.collectives import COLLECTIVE_KERNELS
from traingraph.runtime.kernels import KERNELS
from traingraph.runtime.kernels import Kernel
from traingraph.runtime.kernels import KernelContext
from traingraph.runtime.optimizer_kernels import OPTIMIZER_KERNELS


LOGGER = logging.getLogger(__name__)


def default_kernels() -> dict[str, Kernel]:
    return {**KERNELS, **OPTIMIZER_KERNELS, **COLLECTIVE_KERNELS}


class GraphExecutor:
    """
    Evaluate a graph in topological order.

    Only the nodes needed for the requested fetches run. Outputs declared as
    in-place aliases are written back to the initializer at the root of their
    alias chain once the run finishes, so every reader in the run observes the
    pre-update value.
    """

    def __init__(self, graph: Graph, kernels: Optional[Mapping[str, Kernel]] = None, seed: int = 0) -> None:
        self.graph = graph
        self.kernels = dict(kernels) if kernels is not None else default_kernels()
        self.generator = torch.Generator().manual_seed(seed)
        self.runs = 0

    def _alias_root(self, node: Node, output_index: int) -> Optional[str]:
        for alias in node.aliases:
            if alias.output_index != output_index:
                continue
            edge = node.input(alias.input_index)
            while edge:
                if self.graph.is_initializer(edge):
                    return edge
                producer = self.graph.producer(edge)
                if producer is None:
                    return None
                index = producer.outputs.index(edge)
                edge = next(
                    (producer.input(a.input_index) for a in producer.aliases if a.output_index == index),
                    "",
                )
        return None

    def run(
        self,
        feeds: Mapping[str, torch.Tensor],
        fetches: Sequence[str],
        training: bool = True,
        seed: Optional[int] = None,
        commit: bool = True,
    ) -> dict[str, torch.Tensor]:
        """
        Compute `fetches` from `feeds` and the current initializer values.

        Args:
            feeds: Values for graph inputs.
            fetches: Edge names to return.
            training: Forwarded to kernels (dropout, batch norm).
            seed: Reseed dropout masks for this run only.
            commit: Write aliased outputs back to their initializers.
        """
        graph = self.graph
        unknown = sorted(set(feeds) - set(graph.inputs))
        if unknown:
            raise ValueError(f"Feeds {unknown} are not graph inputs")

        values: dict[str, torch.Tensor] = dict(graph.initializers)
        values.update(feeds)
        order = graph.topological_sort(graph.upstream_nodes(fetches))
        needed = {i for node in order for i in node.inputs if i} | set(fetches)
        missing = sorted(n for n in needed if n not in values and graph.producer(n) is None)
        if missing:
            raise ValueError(f"Missing values for {missing}")

        generator = torch.Generator().manual_seed(seed) if seed is not None else self.generator
        ctx = KernelContext(generator=generator, training=training)
        commits: list[tuple[str, str]] = []
        with torch.no_grad():
            for node in order:
                kernel = self.kernels.get(node.op_type)
                if kernel is None:
                    raise NotImplementedError(f"No reference kernel for op type {node.op_type!r} (node {node.name!r})")
                outputs = kernel(node, [values[i] if i else None for i in node.inputs], ctx)
                for index, (name, value) in enumerate(zip(node.outputs, outputs)):
                    values[name] = value
                    root = self._alias_root(node, index) if commit else None
                    if root is not None:
                        commits.append((root, name))

        for root, name in commits:
            current = graph.initializers[root]
            graph.set_initializer(root, values[name].detach().to(current.dtype).clone())
        self.runs += 1
        LOGGER.debug("Ran %d node(s), committed %d in-place update(s)", len(order), len(commits))
        return {name: values[name] for name in fetches}
