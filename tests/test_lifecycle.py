"""Unit tests for the solver lifecycle controller."""

from __future__ import annotations

from types import SimpleNamespace

import pytest
import torch

from brew.errors import ConfigurationError
from brew.runtime.lifecycle import LifecycleState
from brew.runtime.lifecycle import SolverLifecycle
from brew.runtime.lifecycle import SolverRequest
from brew.runtime.lifecycle import copy_layers
from brew.runtime.lifecycle import split_weights
from brew.runtime.signals import SolverAction
from brew.runtime.strategy import LocalStrategy
from conftest import write_solver


class _RecordingSolver:
    def __init__(self, config) -> None:
        self.config = config
        self.calls: list[tuple] = []
        self.requested_early_exit = False
        self.snapshots_written: list[str] = []
        self.net = SimpleNamespace(copy_trained_layers_from=lambda path: self.calls.append(("train", path)))
        self.test_nets = [SimpleNamespace(copy_trained_layers_from=lambda path: self.calls.append(("test", path)))]

    def set_action_function(self, fn) -> None:
        self.calls.append(("action", fn))

    def restore(self, path: str) -> None:
        self.calls.append(("restore", path))


class _Strategy:
    def __init__(self, effect=None) -> None:
        self.effect = effect

    def run(self, solver) -> None:
        if self.effect is not None:
            self.effect(solver)


def _lifecycle(solver_path, **kwargs) -> SolverLifecycle:
    return SolverLifecycle(SolverRequest(solver=str(solver_path), **kwargs), solver_factory=_RecordingSolver)


def test_split_weights() -> None:
    assert split_weights("") == []
    assert split_weights("a.weights, b.weights,") == ["a.weights", "b.weights"]


def test_snapshot_and_weights_are_exclusive(solver_path) -> None:
    lifecycle = _lifecycle(solver_path, snapshot="s.solverstate", weights="w.weights")
    with pytest.raises(ConfigurationError, match="not both"):
        lifecycle.configure()
    assert lifecycle.state is LifecycleState.UNCONFIGURED
    assert lifecycle.solver is None


def test_solver_definition_is_required() -> None:
    with pytest.raises(ConfigurationError, match="Need a solver definition"):
        SolverLifecycle(SolverRequest()).configure()


def test_cpu_placement(solver_path) -> None:
    lifecycle = _lifecycle(solver_path)
    solver = lifecycle.configure()
    assert lifecycle.state is LifecycleState.CONFIGURED
    assert lifecycle.devices == ()
    assert solver.config.solver_mode == "CPU"
    assert solver.config.solver_count == 1


def test_gpu_list_scales_solver_count(solver_path) -> None:
    lifecycle = _lifecycle(solver_path, gpu="1,0", device_count=2)
    solver = lifecycle.configure()
    assert lifecycle.devices == (1, 0)
    assert solver.config.solver_mode == "GPU"
    assert solver.config.device_id == 1
    assert solver.config.solver_count == 2


def test_gpu_mode_in_definition_falls_back_to_its_device(tmp_path, mlp_net_path) -> None:
    path = write_solver(tmp_path, mlp_net_path, solver_mode="GPU", device_id=1)
    lifecycle = _lifecycle(path, device_count=2)
    solver = lifecycle.configure()
    assert lifecycle.devices == (1,)
    assert solver.config.device_id == 1
    assert solver.config.solver_count == 1


def test_level_and_stages_override_the_definition(solver_path) -> None:
    solver = _lifecycle(solver_path, level=3, stage="a,b").configure()
    assert solver.config.train_state.level == 3
    assert solver.config.train_state.stages == ["a", "b"]


def test_initialize_restores_snapshot(solver_path) -> None:
    lifecycle = _lifecycle(solver_path, snapshot="run.solverstate")
    solver = lifecycle.configure()

    def action() -> SolverAction:
        return SolverAction.NONE

    lifecycle.initialize(action)
    assert solver.calls == [("action", action), ("restore", "run.solverstate")]


def test_initialize_copies_weights_in_order(solver_path) -> None:
    lifecycle = _lifecycle(solver_path, weights="a.weights,b.weights")
    solver = lifecycle.configure()
    lifecycle.initialize(None)
    assert solver.calls[1:] == [
        ("train", "a.weights"),
        ("test", "a.weights"),
        ("train", "b.weights"),
        ("test", "b.weights"),
    ]


@pytest.mark.parametrize(
    "effect, expected",
    [
        (None, LifecycleState.COMPLETED),
        (lambda solver: setattr(solver, "requested_early_exit", True), LifecycleState.STOPPED),
        (lambda solver: solver.snapshots_written.append("x.solverstate"), LifecycleState.CHECKPOINTED),
    ],
)
def test_terminal_states(solver_path, effect, expected) -> None:
    lifecycle = _lifecycle(solver_path)
    lifecycle.configure()
    lifecycle.initialize(None)
    assert lifecycle.run(_Strategy(effect)) is expected
    assert lifecycle.state is expected


def test_failure_is_recorded_and_reraised(solver_path) -> None:
    lifecycle = _lifecycle(solver_path)
    lifecycle.configure()

    def explode(solver) -> None:
        raise RuntimeError("device lost")

    with pytest.raises(RuntimeError, match="device lost"):
        lifecycle.run(_Strategy(explode))
    assert lifecycle.state is LifecycleState.FAILED


def test_run_requires_configuration(solver_path) -> None:
    with pytest.raises(RuntimeError, match="expected configured"):
        _lifecycle(solver_path).run(_Strategy())


def test_finetuning_end_to_end_last_weights_win(tmp_path, solver_path) -> None:
    seeded = SolverLifecycle(SolverRequest(solver=str(solver_path)))
    reference = seeded.configure()
    reference.net.save_weights(str(tmp_path / "a.weights"))
    with torch.no_grad():
        for param in reference.net.params:
            param.add_(1.0)
    reference.net.save_weights(str(tmp_path / "b.weights"))

    lifecycle = SolverLifecycle(
        SolverRequest(solver=str(solver_path), weights=f"{tmp_path / 'a.weights'},{tmp_path / 'b.weights'}")
    )
    solver = lifecycle.configure()
    lifecycle.initialize(None)
    for expected, actual in zip(reference.net.params, solver.net.params):
        assert torch.equal(expected, actual)

    assert lifecycle.run(LocalStrategy()) is LifecycleState.COMPLETED
    assert solver.iter == solver.config.max_iter


def test_copy_layers_returns_sources(tmp_path, solver_path) -> None:
    solver = SolverLifecycle(SolverRequest(solver=str(solver_path))).configure()
    solver.net.save_weights(str(tmp_path / "only.weights"))
    assert copy_layers(solver, str(tmp_path / "only.weights")) == [str(tmp_path / "only.weights")]
