"""Persist graphs (structure plus initializer values) with torch.save."""

from __future__ import annotations

import enum
import logging
from pathlib import Path
from typing import Union

import torch

from traingraph.graph.ir import Graph
from traingraph.graph.ir import Stage


LOGGER = logging.getLogger(__name__)

FORMAT_VERSION = 1


class SaveOption(enum.Enum):
    """Which part of a training graph to persist."""

    NO_RELOAD = "no_reload"
    WITH_UPDATED_WEIGHTS = "with_updated_weights"
    WITH_UPDATED_WEIGHTS_AND_LOSS_FUNC = "with_updated_weights_and_loss_func"
    WITH_UPDATED_WEIGHTS_AND_LOSS_FUNC_AND_GRADIENTS = "with_updated_weights_and_loss_func_and_gradients"


_STAGES_FOR_OPTION: dict[SaveOption, tuple[Stage, ...]] = {
    SaveOption.WITH_UPDATED_WEIGHTS: ("forward",),
    SaveOption.WITH_UPDATED_WEIGHTS_AND_LOSS_FUNC: ("forward", "loss"),
    SaveOption.WITH_UPDATED_WEIGHTS_AND_LOSS_FUNC_AND_GRADIENTS: ("forward", "loss", "gradient"),
}


def graph_for_save_option(graph: Graph, option: SaveOption) -> Graph:
    """
    Select the part of `graph` that `option` persists.

    NO_RELOAD keeps the graph exactly as it is. The other options keep the
    forward nodes plus, cumulatively, the loss and gradient nodes, with the
    current (trained) initializer values.
    """
    if option is SaveOption.NO_RELOAD:
        return graph.copy()
    return graph.filter_stages(_STAGES_FOR_OPTION[option])


def save_graph(graph: Graph, path: Union[str, Path], option: SaveOption = SaveOption.NO_RELOAD) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    selected = graph_for_save_option(graph, option)
    payload = {
        "format_version": FORMAT_VERSION,
        "save_option": option.value,
        "graph": selected.to_dict(),
    }
    torch.save(payload, path)
    LOGGER.info("Saved %r to %s (%s)", selected, path, option.name)
    return path


def load_graph(path: Union[str, Path]) -> Graph:
    payload = torch.load(Path(path), map_location="cpu", weights_only=False)
    version = payload.get("format_version")
    if version != FORMAT_VERSION:
        raise ValueError(f"Unsupported graph format version {version!r} in {path}")
    return Graph.from_dict(payload["graph"])
