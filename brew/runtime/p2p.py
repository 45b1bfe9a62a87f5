"""Single-process multi-device data parallelism.

The root solver drives the loop. Each extra device holds a replica solver whose
forward/backward runs on a worker thread while the root computes its own pass:

    on_start            root params --copy--> replicas; submit replica passes
    (root forward/backward)
    on_gradients_ready  wait for replicas; grad = (g_root + g_1 + ... + g_{N-1}) / N
    (root update)

Gradients are always summed in device order, so the result does not depend on which replica
finished first, and every replica starts the next iteration from the root's exact values.
"""

from __future__ import annotations

from concurrent.futures import Future
from concurrent.futures import ThreadPoolExecutor
from typing import Callable
from typing import Optional
from typing import Sequence

import torch

from brew.errors import ConfigurationError
from brew.errors import SynchronizationError
from brew.logging import get_logger


logger = get_logger(__name__)


class P2PSync:
    """Gradient averaging across replica solvers on several local devices."""

    def __init__(
        self,
        root_solver,
        devices: Sequence[torch.device],
        replica_factory: Optional[Callable[[torch.device, int], object]] = None,
    ) -> None:
        if len(devices) < 2:
            raise ConfigurationError("peer-to-peer synchronization needs at least two devices")
        self.root = root_solver
        self.devices = list(devices)
        factory = replica_factory or root_solver.spawn_replica
        self.replicas = [
            factory(device, rank) for rank, device in enumerate(self.devices[1:], start=1)
        ]
        self._pool: Optional[ThreadPoolExecutor] = None
        self._futures: list[Future] = []

    @property
    def solvers(self) -> list:
        return [self.root, *self.replicas]

    def broadcast_params(self) -> None:
        """Copy root parameter values into every replica."""
        root_params = self.root.net.params
        with torch.no_grad():
            for replica in self.replicas:
                for dst, src in zip(replica.net.params, root_params):
                    dst.copy_(src.to(dst.device))

    def aggregate_gradients(self) -> None:
        """Average replica gradients onto the root in fixed device order."""
        count = len(self.solvers)
        with torch.no_grad():
            for index, param in enumerate(self.root.net.params):
                total = param.grad.clone()
                for replica in self.replicas:
                    total += replica.net.params[index].grad.to(total.device)
                param.grad.copy_(total / count)

    def on_start(self, solver) -> None:
        del solver
        if self._pool is None:
            raise SynchronizationError("P2PSync callbacks fired outside of run()")
        self.broadcast_params()
        self._futures = [self._pool.submit(replica.forward_backward) for replica in self.replicas]

    def on_gradients_ready(self, solver) -> None:
        del solver
        futures, self._futures = self._futures, []
        failures = []
        for device, future in zip(self.devices[1:], futures):
            try:
                future.result()
            except Exception as exc:  # replica errors abort the whole group
                failures.append((device, exc))
        if failures:
            device, exc = failures[0]
            raise SynchronizationError(
                f"Replica on {device} failed during iteration {self.root.iter}: {exc}"
            ) from exc
        self.aggregate_gradients()

    def run(self, resume_file: Optional[str] = None) -> None:
        logger.info(
            "Starting Optimization on devices: %s",
            ", ".join(str(device) for device in self.devices),
        )
        self.broadcast_params()
        self.root.add_callback(self)
        try:
            with ThreadPoolExecutor(
                max_workers=len(self.replicas), thread_name_prefix="brew-p2p"
            ) as pool:
                self._pool = pool
                self.root.solve(resume_file)
        finally:
            self._pool = None
            self._futures = []
            self.root.remove_callback(self)
        self.broadcast_params()
