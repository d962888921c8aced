"""fp16 conversion of the forward and loss part of a graph."""

from __future__ import annotations

import logging
from typing import Iterable

from traingraph.errors import InvalidConfiguration
from traingraph.graph.inference import infer_graph
from traingraph.graph.ir import Graph
from traingraph.graph.naming import NameGenerator


LOGGER = logging.getLogger(__name__)

FP16_PREFIX = "FP16_"
_CONVERTED_STAGES = ("forward", "loss")
# Ops whose output element type is fixed by an attribute rather than the inputs.
_TYPE_PINNING_OPS = ("Cast", "Constant", "Shape")


def _rewire(graph: Graph, edge: str, replacement: str) -> int:
    count = 0
    for node in graph.consumers(edge):
        if node.stage not in _CONVERTED_STAGES or node.outputs == [replacement]:
            continue
        for index, name in enumerate(node.inputs):
            if name == edge:
                graph.replace_input(node.name, index, replacement)
                count += 1
    return count


def convert_to_mixed_precision(
    graph: Graph,
    weights: Iterable[str],
    use_fp16_initializer: bool = True,
) -> dict[str, str]:
    """
    Run the forward and loss stages in fp16.

    Every trainable fp32 weight gets an fp16 counterpart ``FP16_<w>``: an
    initializer the optimizer keeps in sync when `use_fp16_initializer` is set,
    otherwise a ``Cast`` of the fp32 weight. Frozen fp32 initializers are
    converted to fp16 initializers and fp32 graph inputs are cast at their
    consumers. Edge types of the converted stages are re-inferred.

    Returns:
        Map of trainable weight to the fp16 edge the forward pass reads.
    """
    if any(node.stage not in _CONVERTED_STAGES for node in graph.nodes):
        raise InvalidConfiguration("Mixed precision conversion must run before gradients are built")

    names = NameGenerator(graph)
    trainable = sorted(set(weights))
    fp16_edges: dict[str, str] = {}
    for weight in trainable:
        arg_type = graph.arg_type(weight)
        if not graph.is_initializer(weight) or arg_type is None or arg_type.elem_type != "fp32":
            raise InvalidConfiguration(f"Weight {weight!r} must be an fp32 initializer to train in mixed precision")
        fp16_name = names.exact_or_new(f"{FP16_PREFIX}{weight}")
        if use_fp16_initializer:
            graph.add_initializer(fp16_name, graph.initializers[weight].half())
        else:
            graph.add_node("Cast", [weight], [fp16_name], attributes={"to": "fp16"}, stage="forward")
        _rewire(graph, weight, fp16_name)
        fp16_edges[weight] = fp16_name

    frozen = [
        name
        for name, value in graph.initializers.items()
        if name not in fp16_edges and name not in fp16_edges.values() and graph.arg_type(name).elem_type == "fp32"
    ]
    for name in frozen:
        if not graph.consumers(name):
            continue
        fp16_name = names.exact_or_new(f"{FP16_PREFIX}{name}")
        graph.add_initializer(fp16_name, graph.initializers[name].half())
        _rewire(graph, name, fp16_name)

    for name in list(graph.inputs):
        arg_type = graph.arg_type(name)
        if arg_type.elem_type != "fp32" or not graph.consumers(name):
            continue
        cast_output = names.exact_or_new(f"{name}_fp16")
        graph.add_node("Cast", [name], [cast_output], attributes={"to": "fp16"}, stage="forward")
        _rewire(graph, name, cast_output)

    for node in graph.nodes:
        if node.op_type in _TYPE_PINNING_OPS:
            continue
        for out in node.outputs:
            arg_type = graph.arg_type(out)
            if arg_type is not None and arg_type.elem_type == "fp32":
                graph.set_arg_type(out, arg_type.with_elem_type("fp16"))
    infer_graph(graph)

    LOGGER.info(
        "Converted %d trainable weight(s) and %d frozen initializer(s) to fp16 (%s)",
        len(fp16_edges),
        len(frozen),
        "fp16 initializers" if use_fp16_initializer else "casts",
    )
    return fp16_edges
