"""Input/output layout, in-place aliases, defaults and type rules of optimizer ops."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping
from typing import Optional

from traingraph.errors import InvalidConfiguration
from traingraph.graph.ir import IOAlias


@dataclass(frozen=True)
class TypeCombo:
    """Element types of (learning rate, weight, gradient, moments)."""

    eta: str
    weight: str
    grad: str
    moment: Optional[str] = None

    def __str__(self) -> str:
        parts = [f"eta={self.eta}", f"weight={self.weight}", f"grad={self.grad}"]
        if self.moment is not None:
            parts.append(f"moments={self.moment}")
        return ", ".join(parts)


@dataclass(frozen=True)
class OptimizerSchema:
    op_type: str
    inputs: tuple[str, ...]
    outputs: tuple[str, ...]
    aliases: tuple[IOAlias, ...]
    defaults: Mapping[str, float]
    allowed_types: frozenset[TypeCombo]
    has_moments: bool = True

    def input_index(self, slot: str) -> int:
        return self.inputs.index(slot)

    def output_index(self, slot: str) -> int:
        return self.outputs.index(slot)


def _combos(*rows: tuple[str, ...]) -> frozenset[TypeCombo]:
    return frozenset(TypeCombo(*row) for row in rows)


SGD_SCHEMA = OptimizerSchema(
    op_type="SGDOptimizer",
    inputs=("ETA", "W", "G", "FP16_W", "DoUpdate", "loss_scale"),
    outputs=("W_Out", "FP16_W_Out"),
    aliases=(IOAlias(1, 0), IOAlias(3, 1)),
    defaults={},
    allowed_types=_combos(
        ("fp32", "fp32", "fp32"),
        ("fp32", "fp32", "fp16"),
        ("fp16", "fp32", "fp16"),
    ),
    has_moments=False,
)

ADAM_SCHEMA = OptimizerSchema(
    op_type="AdamOptimizer",
    inputs=(
        "ETA", "Update_Count", "W", "G", "Moment_1", "Moment_2", "FP16_W", "DoUpdate", "loss_scale", "grad_norm",
    ),
    outputs=("W_Out", "Moment_1_Out", "Moment_2_Out", "Update_Count_Out", "FP16_W_Out", "G_Out"),
    aliases=(IOAlias(1, 3), IOAlias(2, 0), IOAlias(4, 1), IOAlias(5, 2), IOAlias(6, 4)),
    defaults={"alpha": 0.9, "beta": 0.999, "lambda": 0.0, "epsilon": 1e-8, "max_norm": 1.0},
    allowed_types=_combos(
        ("fp32", "fp32", "fp32", "fp32"),
        ("fp16", "fp32", "fp32", "fp16"),
        ("fp32", "fp32", "fp32", "fp16"),
        ("fp32", "fp32", "fp16", "fp32"),
        ("fp16", "fp32", "fp16", "fp16"),
        ("fp32", "fp32", "fp16", "fp16"),
    ),
)

LAMB_SCHEMA = OptimizerSchema(
    op_type="LambOptimizer",
    inputs=("ETA", "W", "G", "Moment_1", "Moment_2", "FP16_W", "DoUpdate", "loss_scale"),
    outputs=("W_Out", "Moment_1_Out", "Moment_2_Out", "FP16_W_Out"),
    aliases=(IOAlias(1, 0), IOAlias(3, 1), IOAlias(4, 2), IOAlias(5, 3)),
    defaults={"alpha": 0.9, "beta": 0.999, "lambda": 0.0, "epsilon": 1e-6, "threshold": 1.0},
    allowed_types=_combos(
        ("fp32", "fp32", "fp16", "fp32"),
        ("fp32", "fp32", "fp32", "fp32"),
        ("fp64", "fp64", "fp64", "fp64"),
        ("fp16", "fp32", "fp16", "fp16"),
        ("fp16", "fp32", "fp16", "fp32"),
    ),
)

OPTIMIZER_SCHEMAS: dict[str, OptimizerSchema] = {
    schema.op_type: schema for schema in (SGD_SCHEMA, ADAM_SCHEMA, LAMB_SCHEMA)
}

_UNIT_INTERVAL = ("alpha", "beta")


def get_schema(name: str) -> OptimizerSchema:
    try:
        return OPTIMIZER_SCHEMAS[name]
    except KeyError as exc:
        raise InvalidConfiguration(
            f"Unsupported optimizer {name!r}; expected one of {sorted(OPTIMIZER_SCHEMAS)}"
        ) from exc


def resolve_attributes(schema: OptimizerSchema, attributes: Mapping[str, float]) -> dict[str, float]:
    """Merge user attributes over the defaults and check documented ranges."""
    unknown = sorted(set(attributes) - set(schema.defaults))
    if unknown:
        raise InvalidConfiguration(f"{schema.op_type} does not accept attributes {unknown}")
    resolved = {**schema.defaults, **{k: float(v) for k, v in attributes.items()}}
    for key in _UNIT_INTERVAL:
        if key in resolved and not 0.0 <= resolved[key] <= 1.0:
            raise InvalidConfiguration(f"{schema.op_type} {key} must be in [0, 1], got {resolved[key]}")
    if resolved.get("lambda", 0.0) < 0.0:
        raise InvalidConfiguration(f"{schema.op_type} lambda must be >= 0, got {resolved['lambda']}")
    if "epsilon" in resolved and resolved["epsilon"] <= 0.0:
        raise InvalidConfiguration(f"{schema.op_type} epsilon must be > 0, got {resolved['epsilon']}")
    if "threshold" in resolved and resolved["threshold"] <= 0.0:
        raise InvalidConfiguration(f"{schema.op_type} threshold must be > 0, got {resolved['threshold']}")
    if "max_norm" in resolved and resolved["max_norm"] <= 0.0:
        raise InvalidConfiguration(f"{schema.op_type} max_norm must be > 0, got {resolved['max_norm']}")
    return resolved


def validate_types(schema: OptimizerSchema, combo: TypeCombo, weight: str) -> None:
    if combo not in schema.allowed_types:
        raise InvalidConfiguration(f"{schema.op_type} for {weight!r} does not support precision combination {combo}")
