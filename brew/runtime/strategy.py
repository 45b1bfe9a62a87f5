"""Execution topology for a training run.

Exactly one strategy is chosen per run, from the parsed command line only:

    transport given         -> DistributedStrategy
    more than one device    -> PeerToPeerStrategy
    otherwise               -> LocalStrategy
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from typing import Sequence
from typing import Union

from brew.logging import get_logger
from brew.logging import setup_process_logging


logger = get_logger(__name__)


@dataclass(frozen=True)
class LocalStrategy:
    """The solver's own single-device loop."""

    def run(self, solver) -> None:
        solver.solve()


@dataclass(frozen=True)
class PeerToPeerStrategy:
    """Threads-per-device gradient averaging inside this process."""

    devices: tuple[int, ...]

    def run(self, solver) -> None:
        from brew.distributed.device import torch_devices
        from brew.runtime.p2p import P2PSync

        logger.info(
            "Running %d solvers on %d devices", solver.config.solver_count, len(self.devices)
        )
        P2PSync(solver, torch_devices(self.devices)).run()


@dataclass(frozen=True)
class DistributedStrategy:
    """Multi-process synchronization over a named transport."""

    transport: str
    comm_threads: int = 1
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def run(self, solver) -> None:
        from brew.distributed.node import DistributedSync
        from brew.distributed.transport import build_transport

        transport = build_transport(self.transport)
        # Only rank 0 keeps the requested verbosity.
        setup_process_logging(transport.rank, self.log_level, self.log_file)
        try:
            DistributedSync(solver, transport, self.comm_threads).run()
        finally:
            transport.close()


SyncStrategy = Union[LocalStrategy, PeerToPeerStrategy, DistributedStrategy]


def select_strategy(
    devices: Sequence[int],
    transport: Optional[str] = None,
    comm_threads: int = 1,
    log_level: str = "INFO",
    log_file: Optional[str] = None,
) -> SyncStrategy:
    """Pick the strategy for a run; performs no validation or I/O."""
    strategy: SyncStrategy
    if transport:
        strategy = DistributedStrategy(
            transport=transport, comm_threads=comm_threads, log_level=log_level, log_file=log_file
        )
    elif len(devices) > 1:
        strategy = PeerToPeerStrategy(devices=tuple(devices))
    else:
        strategy = LocalStrategy()
    logger.debug("Selected %s", strategy)
    return strategy
