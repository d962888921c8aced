"""
Shared test helpers.

Some test modules import helpers via `from conftest import ...`, so this file lives at the
repository root (which pytest adds to `sys.path`) rather than only under `tests/`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import torch

from traingraph.graph.inference import infer_graph
from traingraph.graph.ir import Graph


@dataclass(frozen=True)
class Tolerances:
    """Numerical tolerances for tensor comparisons."""

    RTOL: float = 1e-5
    ATOL: float = 1e-6
    # Gradient checker: max |analytic - numeric| per op family.
    UNARY_GRAD: float = 1e-3
    OP_GRAD: float = 1.5e-2
    MATMUL_GRAD: float = 1e-1


def assert_tensor_close(
    actual: torch.Tensor,
    expected: torch.Tensor,
    rtol: float = 1e-5,
    atol: float = 1e-8,
    msg: Optional[str] = None,
) -> None:
    """
    Assert two tensors are close within tolerances.

    Args:
        actual: Tensor under test.
        expected: Reference tensor.
        rtol: Relative tolerance.
        atol: Absolute tolerance.
        msg: Optional message prefix on failure.
    """
    if actual.shape != expected.shape:
        raise AssertionError(f"Shape mismatch: {actual.shape} vs {expected.shape}")

    if not torch.allclose(actual, expected, rtol=rtol, atol=atol):
        diff = (actual.double() - expected.double()).abs()
        max_diff = float(diff.max().item()) if diff.numel() > 0 else 0.0
        raise AssertionError(f"{msg or 'Tensors not close'}: max diff = {max_diff}")


def build_mlp_graph(
    batch: int = 4,
    in_features: int = 3,
    hidden: int = 5,
    out_features: int = 2,
    seed: int = 0,
) -> Graph:
    """
    Two-layer perceptron `Y = Relu(X @ W1 + B1) @ W2 + B2` with fp32 weights.

    Inputs: X [batch, in_features]. Output: Y [batch, out_features].
    """
    generator = torch.Generator().manual_seed(seed)
    graph = Graph("mlp")
    graph.add_input("X", "fp32", (batch, in_features))
    graph.add_initializer("W1", 0.5 * torch.randn(in_features, hidden, generator=generator))
    graph.add_initializer("B1", torch.zeros(hidden))
    graph.add_initializer("W2", 0.5 * torch.randn(hidden, out_features, generator=generator))
    graph.add_initializer("B2", torch.zeros(out_features))
    graph.add_node("MatMul", ["X", "W1"], ["H0"], name="fc1")
    graph.add_node("Add", ["H0", "B1"], ["H1"], name="fc1_bias")
    graph.add_node("Relu", ["H1"], ["H2"], name="act")
    graph.add_node("MatMul", ["H2", "W2"], ["Y0"], name="fc2")
    graph.add_node("Add", ["Y0", "B2"], ["Y"], name="fc2_bias")
    graph.add_output("Y")
    infer_graph(graph)
    return graph


def regression_batches(
    num_batches: int,
    batch: int = 4,
    in_features: int = 3,
    out_features: int = 2,
    seed: int = 0,
) -> list[dict[str, torch.Tensor]]:
    """Fixed batches of a noiseless linear regression problem for `build_mlp_graph`."""
    generator = torch.Generator().manual_seed(seed + 1)
    true_weight = torch.randn(in_features, out_features, generator=generator)
    batches = []
    for _ in range(num_batches):
        x = torch.randn(batch, in_features, generator=generator)
        batches.append({"X": x, "label": x @ true_weight})
    return batches
