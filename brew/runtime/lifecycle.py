"""Solver construction, placement and state restoration for a training run.

    UNCONFIGURED --configure()--> CONFIGURED --run()--> RUNNING --> STOPPED
                                                               \--> CHECKPOINTED
                                                               \--> COMPLETED
                                                               \--> FAILED
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable
from typing import Optional

from brew.config import SolverConfig
from brew.config import load_solver_config
from brew.config import parse_stages
from brew.distributed.device import DeviceSet
from brew.distributed.device import resolve_devices
from brew.errors import ConfigurationError
from brew.logging import get_logger
from brew.runtime.contracts import ActionQuery
from brew.runtime.strategy import SyncStrategy
from brew.solver import Solver


logger = get_logger(__name__)


class LifecycleState(enum.Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    RUNNING = "running"
    STOPPED = "stopped"
    CHECKPOINTED = "checkpointed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SolverRequest:
    """Command-line inputs that shape one solver run."""

    solver: str = ""
    gpu: str = ""
    snapshot: str = ""
    weights: str = ""
    stage: str = ""
    level: Optional[int] = None
    device_count: Optional[int] = None


def create_solver(config: SolverConfig) -> Solver:
    return Solver(config)


def split_weights(weights: str) -> list[str]:
    return [source.strip() for source in weights.split(",") if source.strip()]


def copy_layers(solver, weights: str) -> list[str]:
    """Copy trained layers from each comma-separated source, in order, into every net."""
    sources = split_weights(weights)
    for source in sources:
        logger.info("Finetuning from %s", source)
        solver.net.copy_trained_layers_from(source)
        for test_net in solver.test_nets:
            test_net.copy_trained_layers_from(source)
    return sources


class SolverLifecycle:
    """Drives one solver from configuration to a terminal state."""

    def __init__(
        self,
        request: SolverRequest,
        solver_factory: Callable[[SolverConfig], Solver] = create_solver,
    ) -> None:
        self.request = request
        self.solver_factory = solver_factory
        self.state = LifecycleState.UNCONFIGURED
        self.config: Optional[SolverConfig] = None
        self.devices: DeviceSet = ()
        self.solver: Optional[Solver] = None

    def _transition(self, state: LifecycleState) -> None:
        logger.debug("Solver lifecycle: %s -> %s", self.state.value, state.value)
        self.state = state

    def _require(self, state: LifecycleState) -> None:
        if self.state != state:
            raise RuntimeError(f"Solver lifecycle is {self.state.value}, expected {state.value}")

    def configure(self) -> Solver:
        self._require(LifecycleState.UNCONFIGURED)
        request = self.request
        if not request.solver:
            raise ConfigurationError("Need a solver definition to train (--solver)")
        if request.snapshot and request.weights:
            raise ConfigurationError(
                "Give a snapshot to resume training or weights to finetune but not both"
            )

        config = load_solver_config(request.solver)

        spec = request.gpu
        if not spec and config.solver_mode == "GPU":
            device_id = config.device_id if config.device_id is not None else 0
            spec = str(device_id)
            logger.info("Using device %d from the solver definition", device_id)

        devices = resolve_devices(spec, request.device_count)
        if devices:
            config.solver_mode = "GPU"
            config.device_id = devices[0]
            if len(devices) > 1:
                config.solver_count *= len(devices)
            logger.info("Using devices %s", ", ".join(str(device) for device in devices))
        else:
            config.solver_mode = "CPU"
            logger.info("Using CPU")

        if request.level is not None:
            config.train_state.level = request.level
        stages = parse_stages(request.stage)
        if stages:
            config.train_state.stages = stages

        self.config = config
        self.devices = devices
        self.solver = self.solver_factory(config)
        self._transition(LifecycleState.CONFIGURED)
        return self.solver

    def initialize(self, action_fn: Optional[ActionQuery]) -> None:
        """Install the action query, then restore a snapshot or copy pretrained weights."""
        self._require(LifecycleState.CONFIGURED)
        solver = self.solver
        solver.set_action_function(action_fn)
        if self.request.snapshot:
            logger.info("Resuming from %s", self.request.snapshot)
            solver.restore(self.request.snapshot)
        elif self.request.weights:
            copy_layers(solver, self.request.weights)

    def run(self, strategy: SyncStrategy) -> LifecycleState:
        self._require(LifecycleState.CONFIGURED)
        self._transition(LifecycleState.RUNNING)
        try:
            strategy.run(self.solver)
        except BaseException:
            self._transition(LifecycleState.FAILED)
            raise

        if self.solver.requested_early_exit:
            self._transition(LifecycleState.STOPPED)
        elif self.solver.snapshots_written:
            self._transition(LifecycleState.CHECKPOINTED)
        else:
            self._transition(LifecycleState.COMPLETED)
        return self.state
