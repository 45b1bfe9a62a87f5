"""
Pytest fixtures and shared test helpers.

Some test modules import helpers via `from conftest import ...`, so this file lives at the
repository root (which pytest adds to `sys.path`) rather than only under `tests/`.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any
from typing import Optional

import pytest
import torch
import yaml


@dataclass(frozen=True)
class Tolerances:
    """Numerical tolerances for tensor comparisons."""

    RTOL: float = 1e-5
    ATOL: float = 1e-6


@pytest.fixture()
def tolerances() -> Tolerances:
    """Default numerical tolerances used by accuracy tests."""
    return Tolerances()


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
        diff = (actual - expected).abs()
        max_diff = float(diff.max().item()) if diff.numel() > 0 else 0.0
        raise AssertionError(f"{msg or 'Tensors not close'}: max diff = {max_diff}")


# --------------------------------------------------------------------------------------
# Definition files
# --------------------------------------------------------------------------------------


def mlp_net_document(batch: int = 8, features: int = 4, hidden: int = 6, classes: int = 3) -> dict[str, Any]:
    """Small classifier: DummyData -> ip1 -> relu1 -> ip2 -> loss (+ accuracy in TEST)."""
    return {
        "name": "mlp",
        "layers": [
            {
                "name": "data",
                "type": "DummyData",
                "top": ["data", "label"],
                "param": {
                    "tops": [
                        {"shape": [batch, features], "filler": {"type": "gaussian", "std": 1.0}},
                        {"shape": [batch], "filler": {"type": "label", "num_classes": classes}},
                    ]
                },
            },
            {
                "name": "ip1",
                "type": "InnerProduct",
                "bottom": "data",
                "top": "ip1",
                "param": {
                    "num_output": hidden,
                    "weight_filler": {"type": "gaussian", "std": 0.1},
                    "bias_filler": {"type": "constant", "value": 0.0},
                },
            },
            {"name": "relu1", "type": "ReLU", "bottom": "ip1", "top": "relu1"},
            {
                "name": "ip2",
                "type": "InnerProduct",
                "bottom": "relu1",
                "top": "ip2",
                "param": {"num_output": classes, "weight_filler": {"type": "xavier"}},
            },
            {"name": "loss", "type": "SoftmaxWithLoss", "bottom": ["ip2", "label"], "top": "loss"},
            {
                "name": "accuracy",
                "type": "Accuracy",
                "bottom": ["ip2", "label"],
                "top": "accuracy",
                "include": {"phase": "TEST"},
            },
        ],
    }


def write_yaml(path: Path, document: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
    return path


def write_mlp_net(tmp_path: Path, name: str = "net.yaml", **kwargs: Any) -> Path:
    return write_yaml(tmp_path / name, mlp_net_document(**kwargs))


def write_solver(tmp_path: Path, net_path: Optional[Path] = None, **overrides: Any) -> Path:
    """
    Write a solver definition next to ``net_path`` (an MLP net is written when omitted).

    Snapshots land under ``tmp_path/snapshots`` and nothing is snapshotted unless asked.
    """
    if net_path is None:
        net_path = write_mlp_net(tmp_path)
    document: dict[str, Any] = {
        "net": str(net_path),
        "base_lr": 0.1,
        "max_iter": 5,
        "snapshot_after_train": False,
        "snapshot_prefix": str(tmp_path / "snapshots" / "mlp"),
    }
    document.update(overrides)
    return write_yaml(tmp_path / "solver.yaml", document)


@pytest.fixture()
def mlp_net_path(tmp_path) -> Path:
    return write_mlp_net(tmp_path)


@pytest.fixture()
def solver_path(tmp_path, mlp_net_path) -> Path:
    return write_solver(tmp_path, mlp_net_path)
