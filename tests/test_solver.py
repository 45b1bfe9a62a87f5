"""Unit tests for the solver loop, testing and snapshots."""

from __future__ import annotations

from pathlib import Path

import pytest
import torch

from brew.config import load_solver_config
from brew.errors import ConfigurationError
from brew.runtime.signals import SolverAction
from brew.solver import Solver
from conftest import write_solver


def _solver(tmp_path: Path, net_path: Path, **overrides) -> Solver:
    return Solver(load_solver_config(str(write_solver(tmp_path, net_path, **overrides))))


def test_solve_runs_max_iter_and_updates_params(tmp_path, mlp_net_path) -> None:
    solver = _solver(tmp_path, mlp_net_path, max_iter=4)
    before = [param.detach().clone() for param in solver.net.params]

    solver.solve()

    assert solver.iter == 4
    assert not solver.requested_early_exit
    assert solver.snapshots_written == []
    assert any(not torch.equal(a, b) for a, b in zip(before, solver.net.params))


def test_snapshot_after_train_and_restore(tmp_path, mlp_net_path) -> None:
    solver = _solver(tmp_path, mlp_net_path, max_iter=3, momentum=0.9, snapshot_after_train=True)
    solver.solve()

    state_path = tmp_path / "snapshots" / "mlp_iter_3.solverstate"
    assert solver.snapshots_written == [str(state_path)]
    assert state_path.is_file()
    assert (tmp_path / "snapshots" / "mlp_iter_3.weights").is_file()

    resumed = _solver(tmp_path, mlp_net_path, max_iter=5, momentum=0.9)
    resumed.restore(str(state_path))
    assert resumed.iter == 3
    for expected, actual in zip(solver.net.params, resumed.net.params):
        assert torch.equal(expected, actual)
    assert resumed.optimizer.state_dict()["state"].keys() == solver.optimizer.state_dict()["state"].keys()

    resumed.solve()
    assert resumed.iter == 5


def test_periodic_snapshots(tmp_path, mlp_net_path) -> None:
    solver = _solver(tmp_path, mlp_net_path, max_iter=4, snapshot=2, snapshot_after_train=True)
    solver.solve()
    names = [Path(path).name for path in solver.snapshots_written]
    # The final iteration is already covered by the periodic snapshot.
    assert names == ["mlp_iter_2.solverstate", "mlp_iter_4.solverstate"]


def test_stop_action_ends_the_run_early(tmp_path, mlp_net_path) -> None:
    solver = _solver(tmp_path, mlp_net_path, max_iter=10, snapshot_after_train=True)
    solver.set_action_function(lambda: SolverAction.STOP)
    solver.solve()

    assert solver.iter == 1
    assert solver.requested_early_exit
    assert [Path(path).name for path in solver.snapshots_written] == ["mlp_iter_1.solverstate"]


def test_snapshot_action_writes_one_snapshot(tmp_path, mlp_net_path) -> None:
    actions = iter([SolverAction.NONE, SolverAction.SNAPSHOT])
    solver = _solver(tmp_path, mlp_net_path, max_iter=4)
    solver.set_action_function(lambda: next(actions, SolverAction.NONE))
    solver.solve()

    assert solver.iter == 4
    assert [Path(path).name for path in solver.snapshots_written] == ["mlp_iter_2.solverstate"]


def test_test_net_reports_output_means(tmp_path, mlp_net_path) -> None:
    solver = _solver(
        tmp_path,
        mlp_net_path,
        test_net=[str(mlp_net_path)],
        test_iter=[3],
        test_interval=2,
    )
    results = solver.test(0)

    assert set(results) == {"loss", "accuracy"}
    assert 0.0 <= results["accuracy"] <= 1.0
    assert results["loss"] > 0.0
    for expected, actual in zip(solver.net.params, solver.test_nets[0].params):
        assert torch.equal(expected, actual)


def test_periodic_testing(tmp_path, mlp_net_path, monkeypatch) -> None:
    solver = _solver(
        tmp_path,
        mlp_net_path,
        max_iter=4,
        test_net=[str(mlp_net_path)],
        test_iter=[1],
        test_interval=2,
        test_initialization=False,
    )
    tested_at: list[int] = []
    monkeypatch.setattr(solver, "test_all", lambda: tested_at.append(solver.iter))
    solver.solve()
    assert tested_at == [2, 4]


def test_iter_size_averages_gradients(tmp_path, mlp_net_path) -> None:
    solver = _solver(tmp_path, mlp_net_path, iter_size=2)
    loss = solver.forward_backward()
    assert loss > 0.0
    assert all(param.grad is not None for param in solver.net.params)


def test_non_root_solver_neither_updates_nor_snapshots(tmp_path, mlp_net_path) -> None:
    root = _solver(tmp_path, mlp_net_path, max_iter=2, snapshot_after_train=True)
    replica = root.spawn_replica(torch.device("cpu"), 1)
    before = [param.detach().clone() for param in replica.net.params]

    replica.solve()

    assert not replica.is_root
    assert replica.test_nets == []
    assert replica.snapshots_written == []
    assert all(torch.equal(a, b) for a, b in zip(before, replica.net.params))


def test_restore_errors(tmp_path, mlp_net_path) -> None:
    solver = _solver(tmp_path, mlp_net_path)
    with pytest.raises(ConfigurationError, match="Snapshot not found"):
        solver.restore(str(tmp_path / "missing.solverstate"))

    weights = tmp_path / "plain.weights"
    solver.net.save_weights(str(weights))
    with pytest.raises(ConfigurationError, match="Not a solver snapshot"):
        solver.restore(str(weights))
