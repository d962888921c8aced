"""Build a complete training graph from a forward graph."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Mapping
from typing import Optional
from typing import Union

import torch

from traingraph.errors import InvalidConfiguration
from traingraph.gradients.builder import GradientGraphBuilder
from traingraph.gradients.builder import GradientGraphSpec
from traingraph.gradients.loss import LossFunctionInfo
from traingraph.gradients.loss import build_loss_function
from traingraph.gradients.registry import default_registry
from traingraph.graph.ir import Graph
from traingraph.graph.serialization import SaveOption
from traingraph.graph.serialization import save_graph
from traingraph.graph.types import FLOAT_TYPES
from traingraph.optimizer.builder import OptimizerBuildResult
from traingraph.optimizer.config import OptimizerGraphConfig
from traingraph.optimizer.config import OptimizerNodeConfig
from traingraph.optimizer.registry import build_optimizer_graph
from traingraph.runtime.executor import GraphExecutor
from traingraph.training.mixed_precision import convert_to_mixed_precision


if TYPE_CHECKING:
    from traingraph.config import TrainingRunnerConfig


LOGGER = logging.getLogger(__name__)

LOSS_SCALE_INPUT_NAME = "Loss_Scale"


@dataclass(frozen=True)
class TrainingSessionConfig:
    """
    What to train and how.

    Attributes:
        loss: Loss to attach; omit when `loss_name` is already produced by the graph.
        loss_name: Existing loss edge, used when `loss` is omitted.
        weights_to_train: Explicit trainable initializers.
        weights_not_to_train: Initializers excluded from the default selection.
        optimizer: Optimizer binding applied to every trainable weight.
        weight_optimizers: Per-weight overrides of `optimizer`.
        optimizer_graph: Graph-wide optimizer settings.
        use_mixed_precision: Run forward and loss in fp16 with loss scaling.
        use_fp16_initializer: Keep fp16 weight shadows as initializers updated by the optimizer.
        dynamic_loss_scale: Skip updates with non-finite gradients (mixed precision only).
    """

    loss: Optional[LossFunctionInfo] = None
    loss_name: Optional[str] = None
    weights_to_train: tuple[str, ...] = ()
    weights_not_to_train: tuple[str, ...] = ()
    optimizer: OptimizerNodeConfig = field(default_factory=lambda: OptimizerNodeConfig(name="SGDOptimizer"))
    weight_optimizers: Mapping[str, OptimizerNodeConfig] = field(default_factory=dict)
    optimizer_graph: OptimizerGraphConfig = field(default_factory=OptimizerGraphConfig)
    use_mixed_precision: bool = False
    use_fp16_initializer: bool = True
    dynamic_loss_scale: bool = True

    def __post_init__(self) -> None:
        if self.weights_to_train and self.weights_not_to_train:
            raise InvalidConfiguration("weights_to_train and weights_not_to_train are mutually exclusive")
        if self.loss is None and not self.loss_name:
            raise InvalidConfiguration("Either loss or loss_name must be given")
        if self.loss is not None and self.loss_name and self.loss_name != self.loss.loss_name:
            raise InvalidConfiguration(f"loss_name {self.loss_name!r} disagrees with loss {self.loss.loss_name!r}")

    @classmethod
    def from_runner_config(
        cls,
        config: "TrainingRunnerConfig",
        loss: Optional[LossFunctionInfo] = None,
        loss_name: Optional[str] = None,
        weights_to_train: tuple[str, ...] = (),
        weights_not_to_train: tuple[str, ...] = (),
    ) -> "TrainingSessionConfig":
        return cls(
            loss=loss,
            loss_name=loss_name,
            weights_to_train=tuple(weights_to_train),
            weights_not_to_train=tuple(weights_not_to_train),
            optimizer=config.optimizer.node_config(),
            optimizer_graph=config.optimizer_graph_config(),
            use_mixed_precision=config.mixed_precision.enabled,
            use_fp16_initializer=config.mixed_precision.use_fp16_initializer,
            dynamic_loss_scale=config.mixed_precision.dynamic,
        )

    @property
    def resolved_loss_name(self) -> str:
        return self.loss.loss_name if self.loss is not None else str(self.loss_name)


class TrainingSession:
    """
    Owns a graph while it is turned into a training graph.

    `build` attaches the loss, optionally converts to mixed precision, then
    adds the gradient and optimizer stages. The built graph runs on the
    reference `GraphExecutor` and can be saved at any point.
    """

    def __init__(self, graph: Graph, config: TrainingSessionConfig) -> None:
        self.graph = graph
        self.config = config
        self.loss_name = config.resolved_loss_name
        self.weights_to_train: tuple[str, ...] = ()
        self.fp16_weights: dict[str, str] = {}
        self.gradients: dict[str, str] = {}
        self.optimizer_result: Optional[OptimizerBuildResult] = None
        self._executor: Optional[GraphExecutor] = None

    @property
    def is_built(self) -> bool:
        return self.optimizer_result is not None

    @property
    def loss_scale_input_name(self) -> Optional[str]:
        return LOSS_SCALE_INPUT_NAME if self.config.use_mixed_precision else None

    def attach_loss(self) -> str:
        if self.config.loss is not None and not self.graph.has_arg(self.loss_name):
            build_loss_function(self.graph, self.config.loss)
        elif not self.graph.has_arg(self.loss_name):
            raise InvalidConfiguration(f"Loss edge {self.loss_name!r} is not in graph {self.graph.name!r}")
        if self.loss_name not in self.graph.outputs:
            self.graph.add_output(self.loss_name)
        return self.loss_name

    def trainable_initializers(self) -> tuple[str, ...]:
        """Float initializers feeding differentiable inputs upstream of the loss, minus `weights_not_to_train`."""
        registry = default_registry()
        consumed = set()
        for name in self.graph.upstream_nodes([self.loss_name]):
            node = self.graph.node(name)
            if node.op_type not in registry:
                continue
            formula = registry.get(node.op_type, node.name)
            consumed.update(i for k, i in enumerate(node.inputs) if i and formula.is_differentiable(k))
        excluded = set(self.config.weights_not_to_train)
        return tuple(
            sorted(
                name
                for name, value in self.graph.initializers.items()
                if name in consumed and name not in excluded and value.is_floating_point()
            )
        )

    def _resolve_weights(self) -> tuple[str, ...]:
        if self.config.weights_to_train:
            weights = tuple(sorted(self.config.weights_to_train))
            unknown = [w for w in weights if not self.graph.is_initializer(w)]
            if unknown:
                raise InvalidConfiguration(f"Weights to train {unknown} are not initializers")
            return weights
        unknown = [w for w in self.config.weights_not_to_train if not self.graph.is_initializer(w)]
        if unknown:
            LOGGER.warning("weights_not_to_train entries %s are not initializers", unknown)
        weights = self.trainable_initializers()
        if not weights:
            raise InvalidConfiguration(f"No trainable initializer reaches loss {self.loss_name!r}")
        return weights

    def _node_configs(self, weights: tuple[str, ...]) -> dict[str, OptimizerNodeConfig]:
        unknown = sorted(set(self.config.weight_optimizers) - set(weights))
        if unknown:
            raise InvalidConfiguration(f"Optimizer overrides given for untrained weights {unknown}")
        configs = {}
        for weight in weights:
            node_config = self.config.weight_optimizers.get(weight, self.config.optimizer)
            if self.config.use_mixed_precision and self.config.use_fp16_initializer:
                node_config = replace(node_config, fp16_weight_arg_name=self.fp16_weights[weight])
            configs[weight] = node_config
        return configs

    def _optimizer_graph_config(self) -> OptimizerGraphConfig:
        config = self.config.optimizer_graph
        if not self.config.use_mixed_precision:
            return config
        return replace(
            config,
            loss_scale_input_name=LOSS_SCALE_INPUT_NAME,
            check_gradients_finite=self.config.dynamic_loss_scale and config.do_update_input_name is None,
        )

    def build(self) -> OptimizerBuildResult:
        if self.is_built:
            raise InvalidConfiguration(f"Training graph for {self.graph.name!r} is already built")
        self.attach_loss()
        weights = self._resolve_weights()
        for weight in weights:
            arg_type = self.graph.arg_type(weight)
            if arg_type is None or arg_type.elem_type not in FLOAT_TYPES:
                raise InvalidConfiguration(f"Weight {weight!r} is not a float tensor")
            LOGGER.debug("Training weight %s", weight)
        self.weights_to_train = weights

        differentiated = weights
        if self.config.use_mixed_precision:
            self.fp16_weights = convert_to_mixed_precision(self.graph, weights, self.config.use_fp16_initializer)
            if self.config.use_fp16_initializer:
                differentiated = tuple(self.fp16_weights[w] for w in weights)

        spec = GradientGraphSpec(
            weight_names=differentiated,
            loss_name=self.loss_name,
            loss_scale_input_name=self.loss_scale_input_name,
        )
        by_edge = GradientGraphBuilder(self.graph, spec).build()
        self.gradients = {w: by_edge[edge] for w, edge in zip(weights, differentiated)}

        self.optimizer_result = build_optimizer_graph(
            self.graph,
            self.gradients,
            self._node_configs(weights),
            self._optimizer_graph_config(),
        )
        LOGGER.info(
            "Training graph %r built: %d weight(s), %s optimizer builder",
            self.graph.name,
            len(weights),
            self.optimizer_result.kind,
        )
        return self.optimizer_result

    @property
    def executor(self) -> GraphExecutor:
        if self._executor is None:
            self._executor = GraphExecutor(self.graph)
        return self._executor

    def run(self, feeds: Mapping[str, torch.Tensor], fetches, **kwargs) -> dict[str, torch.Tensor]:
        return self.executor.run(feeds, list(fetches), **kwargs)

    def weight(self, name: str) -> torch.Tensor:
        return self.graph.initializers[name]

    def save(self, path: Union[str, Path], option: SaveOption = SaveOption.NO_RELOAD) -> Path:
        return save_graph(self.graph, path, option)
