"""Capability contracts between the orchestration layer and the engine."""

from __future__ import annotations

from typing import Callable
from typing import Optional
from typing import Protocol
from typing import Sequence

import torch

from brew.layers import Blob
from brew.runtime.signals import SolverAction


ActionQuery = Callable[[], SolverAction]


class LayerGraph(Protocol):
    """What the verification harness and ``time`` need from a net."""

    layers: Sequence[torch.nn.Module]
    bottom_vecs: list[list[Blob]]
    top_vecs: list[list[Blob]]
    bottom_need_backward: list[list[bool]]

    @property
    def params(self) -> list[torch.nn.Parameter]:
        ...

    @property
    def param_owners(self) -> list[torch.nn.Module]:
        ...

    def forward_layer(self, index: int) -> None:
        ...

    def backward_layer(self, index: int) -> None:
        ...

    def clear_param_diffs(self) -> None:
        ...

    def copy_trained_layers_from(self, path: str) -> None:
        ...


class SolverCallback(Protocol):
    """Hooks a synchronizer attaches to the root solver's iteration loop."""

    def on_start(self, solver: "SolverLike") -> None:
        ...

    def on_gradients_ready(self, solver: "SolverLike") -> None:
        ...


class SolverLike(Protocol):
    """What the lifecycle controller and synchronizers need from a solver."""

    net: LayerGraph
    test_nets: list[LayerGraph]
    iter: int
    is_root: bool
    requested_early_exit: bool
    snapshots_written: list[str]

    def solve(self, resume_file: Optional[str] = None) -> None:
        ...

    def step(self, iters: int) -> None:
        ...

    def restore(self, path: str) -> None:
        ...

    def snapshot(self) -> Optional[str]:
        ...

    def set_action_function(self, fn: Optional[ActionQuery]) -> None:
        ...

    def get_requested_action(self) -> SolverAction:
        ...

    def add_callback(self, callback: SolverCallback) -> None:
        ...

    def remove_callback(self, callback: SolverCallback) -> None:
        ...

    def forward_backward(self) -> float:
        ...

    def apply_update(self) -> None:
        ...


class Transport(Protocol):
    """Point-to-point and collective primitives used by the distributed synchronizer."""

    name: str
    rank: int
    world_size: int
    device: torch.device

    def send(self, tensor: torch.Tensor, dst: int) -> None:
        ...

    def recv(self, tensor: torch.Tensor, src: int) -> None:
        ...

    def broadcast(self, tensor: torch.Tensor, src: int = 0) -> None:
        ...

    def barrier(self) -> None:
        ...

    def close(self) -> None:
        ...
