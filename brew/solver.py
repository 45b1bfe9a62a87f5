"""
Iterative solver driving a train net and its test nets.
"""

from __future__ import annotations

import pickle
import time
from collections import deque
from pathlib import Path
from typing import Any
from typing import Optional

import torch
from torch.utils.tensorboard import SummaryWriter

from brew.config import NetState
from brew.config import SolverConfig
from brew.config import load_net_definition
from brew.errors import ConfigurationError
from brew.logging import get_logger
from brew.net import Net
from brew.optimizer import create_optimizer
from brew.runtime.contracts import ActionQuery
from brew.runtime.contracts import SolverCallback
from brew.runtime.signals import SolverAction
from brew.scheduler import LearningRatePolicy


logger = get_logger(__name__)

SNAPSHOT_FORMAT = "brew-solverstate"


def solver_device(config: SolverConfig) -> torch.device:
    """Device named by the placement fields of ``config``."""
    if config.solver_mode == "GPU":
        return torch.device(f"cuda:{config.device_id or 0}")
    return torch.device("cpu")


class Solver:
    """Runs forward/backward/update iterations with periodic testing and snapshots."""

    def __init__(
        self,
        config: SolverConfig,
        *,
        device: Optional[torch.device] = None,
        replica_rank: int = 0,
        is_root: bool = True,
        with_test_nets: bool = True,
    ) -> None:
        self.config = config
        self.device = device or solver_device(config)
        self.replica_rank = replica_rank
        self.is_root = is_root

        torch.manual_seed(config.random_seed)
        self.net = Net(
            load_net_definition(config.net),
            config.train_state,
            device=self.device,
            seed=config.random_seed,
            data_seed_offset=replica_rank,
        )
        self.test_nets: list[Net] = []
        if with_test_nets:
            for path in config.test_net:
                self.test_nets.append(
                    Net(
                        load_net_definition(path),
                        NetState(phase="TEST", level=config.train_state.level, stages=list(config.train_state.stages)),
                        device=self.device,
                        seed=config.random_seed,
                    )
                )

        self.optimizer = create_optimizer(self.net.params, config)
        self.lr_policy = LearningRatePolicy(self.optimizer, config)

        self.iter = 0
        self.callbacks: list[SolverCallback] = []
        self.requested_early_exit = False
        self.snapshots_written: list[str] = []
        self.losses: deque[float] = deque(maxlen=config.average_loss)
        self.smoothed_loss = 0.0
        self._action_function: Optional[ActionQuery] = None
        self._writer: Optional[SummaryWriter] = None

    # ----------------------------------------------------------------------------------
    # Wiring
    # ----------------------------------------------------------------------------------

    def spawn_replica(self, device: torch.device, replica_rank: int) -> "Solver":
        """Build a non-root solver on ``device`` sharing this solver's configuration."""
        return Solver(
            self.config,
            device=device,
            replica_rank=replica_rank,
            is_root=False,
            with_test_nets=False,
        )

    @property
    def action_function(self) -> Optional[ActionQuery]:
        return self._action_function

    def set_action_function(self, fn: Optional[ActionQuery]) -> None:
        self._action_function = fn

    def get_requested_action(self) -> SolverAction:
        if self._action_function is None:
            return SolverAction.NONE
        return self._action_function()

    def add_callback(self, callback: SolverCallback) -> None:
        self.callbacks.append(callback)

    def remove_callback(self, callback: SolverCallback) -> None:
        if callback in self.callbacks:
            self.callbacks.remove(callback)

    @property
    def writer(self) -> Optional[SummaryWriter]:
        if self._writer is None and self.is_root and self.config.tensorboard_dir:
            self._writer = SummaryWriter(self.config.tensorboard_dir)
            logger.info("TensorBoard logs: %s", self.config.tensorboard_dir)
        return self._writer

    # ----------------------------------------------------------------------------------
    # Iterations
    # ----------------------------------------------------------------------------------

    def forward_backward(self) -> float:
        """Accumulate gradients over ``iter_size`` passes; returns the mean loss."""
        self.net.clear_param_diffs()
        iter_size = self.config.iter_size
        loss = 0.0
        for _ in range(iter_size):
            loss += self.net.forward_backward()
        if iter_size > 1:
            with torch.no_grad():
                for param in self.net.params:
                    param.grad.div_(iter_size)
        return loss / iter_size

    def apply_update(self) -> None:
        lr = self.lr_policy.apply(self.iter)
        if self.config.display and self.iter % self.config.display == 0:
            logger.info("Iteration %d, lr = %g", self.iter, lr)
            if self.writer is not None:
                self.writer.add_scalar("LR", lr, self.iter)
        self.optimizer.step()

    def _update_smoothed_loss(self, loss: float) -> None:
        self.losses.append(loss)
        self.smoothed_loss = sum(self.losses) / len(self.losses)

    def step(self, iters: int) -> None:
        stop_iter = self.iter + iters
        window_start = time.perf_counter()
        window_iters = 0

        while self.iter < stop_iter:
            if (
                self.is_root
                and self.config.test_interval
                and self.iter % self.config.test_interval == 0
                and (self.iter > 0 or self.config.test_initialization)
            ):
                self.test_all()

            for callback in self.callbacks:
                callback.on_start(self)
            loss = self.forward_backward()
            self._update_smoothed_loss(loss)
            window_iters += 1

            if self.is_root and self.config.display and self.iter % self.config.display == 0:
                elapsed = time.perf_counter() - window_start
                rate = window_iters / elapsed if elapsed > 0 else 0.0
                logger.info(
                    "Iteration %d (%.2f iter/s), loss = %.6f",
                    self.iter,
                    rate,
                    self.smoothed_loss,
                )
                if self.writer is not None:
                    self.writer.add_scalar("Loss/train", self.smoothed_loss, self.iter)
                window_start = time.perf_counter()
                window_iters = 0

            for callback in self.callbacks:
                callback.on_gradients_ready(self)
            if self.is_root:
                self.apply_update()
            self.iter += 1

            action = self.get_requested_action()
            periodic = self.config.snapshot and self.iter % self.config.snapshot == 0
            if periodic or action == SolverAction.SNAPSHOT:
                self.snapshot()
            if action == SolverAction.STOP:
                self.requested_early_exit = True
                break

    def solve(self, resume_file: Optional[str] = None) -> None:
        logger.info("Solving %s (%s solver, lr policy %s)", self.net.net_name, self.config.solver_type, self.config.lr_policy)
        self.requested_early_exit = False
        if resume_file:
            logger.info("Restoring previous solver status from %s", resume_file)
            self.restore(resume_file)

        self.step(self.config.max_iter - self.iter)

        if (
            self.config.snapshot_after_train
            and (not self.config.snapshot or self.iter % self.config.snapshot != 0)
        ):
            self.snapshot()
        if self.requested_early_exit:
            logger.info("Optimization stopped early.")
            return
        if (
            self.is_root
            and self.config.test_interval
            and self.iter % self.config.test_interval == 0
        ):
            self.test_all()
        if self._writer is not None:
            self._writer.flush()
        logger.info("Optimization Done.")

    # ----------------------------------------------------------------------------------
    # Testing
    # ----------------------------------------------------------------------------------

    def test_all(self) -> list[dict[str, float]]:
        return [self.test(index) for index in range(len(self.test_nets))]

    def test(self, index: int) -> dict[str, float]:
        """Mean of every output blob of test net ``index`` over ``test_iter[index]`` batches."""
        logger.info("Iteration %d, Testing net (#%d)", self.iter, index)
        test_net = self.test_nets[index]
        test_net.share_trained_layers_with(self.net)

        totals: dict[str, torch.Tensor] = {}
        loss = 0.0
        iterations = self.config.test_iter[index]
        with torch.no_grad():
            for _ in range(iterations):
                loss += test_net.forward()
                for name, blob in test_net.output_blobs:
                    value = blob.data.detach().double()
                    totals[name] = totals[name] + value if name in totals else value.clone()

        results: dict[str, float] = {}
        for name, total in totals.items():
            mean = total / max(1, iterations)
            for position, value in enumerate(mean.reshape(-1).tolist()):
                key = name if mean.numel() == 1 else f"{name}[{position}]"
                results[key] = value
                weight = test_net.blob_loss_weights.get(name, 0.0)
                if weight:
                    logger.info(
                        "    Test net output: %s = %g (* %g = %g loss)",
                        key,
                        value,
                        weight,
                        weight * value,
                    )
                else:
                    logger.info("    Test net output: %s = %g", key, value)
                if self.writer is not None:
                    self.writer.add_scalar(f"Test{index}/{key}", value, self.iter)
        return results

    # ----------------------------------------------------------------------------------
    # Snapshots
    # ----------------------------------------------------------------------------------

    def _snapshot_stem(self) -> str:
        return f"{self.config.snapshot_prefix}_iter_{self.iter}"

    def snapshot(self) -> Optional[str]:
        """Write weights and full solver state; only the root solver writes."""
        if not self.is_root:
            return None
        stem = self._snapshot_stem()
        weights_path = f"{stem}.weights"
        state_path = f"{stem}.solverstate"
        Path(state_path).parent.mkdir(parents=True, exist_ok=True)

        logger.info("Snapshotting to binary proto file %s", weights_path)
        self.net.save_weights(weights_path)
        state: dict[str, Any] = {
            "format": SNAPSHOT_FORMAT,
            "iter": self.iter,
            "weights": self.net.layer_weights(),
            "optimizer": self.optimizer.state_dict(),
        }
        logger.info("Snapshotting solver state to binary proto file %s", state_path)
        torch.save(state, state_path)
        self.snapshots_written.append(state_path)
        return state_path

    def restore(self, path: str) -> None:
        """Resume iteration count, parameters and optimizer state from a snapshot."""
        source = Path(path)
        if not source.is_file():
            raise ConfigurationError(f"Snapshot not found: {path}")
        try:
            state = torch.load(source, map_location=self.device, weights_only=True)
        except (RuntimeError, OSError, EOFError, pickle.UnpicklingError) as exc:
            raise ConfigurationError(f"Cannot restore solver state from {path}: {exc}") from exc
        if not isinstance(state, dict) or state.get("format") != SNAPSHOT_FORMAT:
            raise ConfigurationError(f"Not a solver snapshot: {path}")

        self.net.load_layer_weights(state["weights"], source=path)
        try:
            self.optimizer.load_state_dict(state["optimizer"])
        except (ValueError, KeyError) as exc:
            raise ConfigurationError(f"Optimizer state in {path} does not match this solver: {exc}") from exc
        self.iter = int(state["iter"])
        logger.info("Restored solver state at iteration %d", self.iter)
