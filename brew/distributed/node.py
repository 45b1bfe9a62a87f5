"""
Multi-process data parallelism over a ``Transport``.

Rank 0 owns the update. Every iteration boundary is one broadcast from rank 0 carrying the
requested action and the current parameters, so all ranks agree on both:

    rank 0:  [action | params] --broadcast--> ranks 1..N-1
    ranks:   forward/backward
    1..N-1:  flat grads --send--> rank 0   (received on a pool of comm_threads threads)
    rank 0:  grad = (g_0 + g_1 + ... + g_{N-1}) / N, update, poll action
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import torch

from brew.errors import ConfigurationError
from brew.errors import SynchronizationError
from brew.logging import get_logger
from brew.runtime.contracts import ActionQuery
from brew.runtime.contracts import Transport
from brew.runtime.signals import SolverAction


logger = get_logger(__name__)


def flatten_tensors(tensors: list[torch.Tensor], device: torch.device) -> torch.Tensor:
    return torch.cat([tensor.detach().reshape(-1).to(device=device, dtype=torch.float32) for tensor in tensors])


def unflatten_into(flat: torch.Tensor, tensors: list[torch.Tensor]) -> None:
    offset = 0
    with torch.no_grad():
        for tensor in tensors:
            count = tensor.numel()
            tensor.copy_(flat[offset:offset + count].view_as(tensor).to(tensor.device))
            offset += count


class DistributedSync:
    """Keeps one solver per rank in lockstep; rank 0 aggregates and updates."""

    def __init__(self, solver, transport: Transport, comm_threads: int = 1) -> None:
        if comm_threads < 1:
            raise ConfigurationError("comm_threads must be >= 1")
        self.solver = solver
        self.transport = transport
        self.comm_threads = comm_threads
        self.is_root = transport.rank == 0
        self._local_action: Optional[ActionQuery] = None
        self._pool: Optional[ThreadPoolExecutor] = None

    @property
    def params(self) -> list[torch.nn.Parameter]:
        return self.solver.net.params

    # ----------------------------------------------------------------------------------
    # Per-iteration protocol
    # ----------------------------------------------------------------------------------

    def _sync_boundary(self, action: SolverAction) -> SolverAction:
        """Broadcast ``[action code | params]`` from rank 0; returns the agreed action."""
        device = self.transport.device
        params = self.params
        if self.is_root:
            header = torch.tensor([float(action.value)], device=device)
            buffer = torch.cat([header, flatten_tensors(params, device)])
        else:
            buffer = torch.empty(1 + sum(p.numel() for p in params), device=device)
        try:
            self.transport.broadcast(buffer, src=0)
        except RuntimeError as exc:
            raise SynchronizationError(f"Broadcast failed on rank {self.transport.rank}: {exc}") from exc
        if not self.is_root:
            unflatten_into(buffer[1:], params)
        return SolverAction.from_code(int(buffer[0].item()))

    def get_requested_action(self) -> SolverAction:
        local = SolverAction.NONE
        if self.is_root and self._local_action is not None:
            local = self._local_action()
        return self._sync_boundary(local)

    def on_start(self, solver) -> None:
        del solver

    def on_gradients_ready(self, solver) -> None:
        del solver
        device = self.transport.device
        grads = [param.grad for param in self.params]
        flat = flatten_tensors(grads, device)

        if not self.is_root:
            try:
                self.transport.send(flat, dst=0)
            except RuntimeError as exc:
                raise SynchronizationError(f"Rank {self.transport.rank} failed to send gradients: {exc}") from exc
            return

        buffers = {src: torch.empty_like(flat) for src in range(1, self.transport.world_size)}
        futures = {
            src: self._pool.submit(self.transport.recv, buffer, src)
            for src, buffer in buffers.items()
        }
        for src, future in futures.items():
            try:
                future.result()
            except RuntimeError as exc:
                raise SynchronizationError(f"Failed to receive gradients from rank {src}: {exc}") from exc

        total = flat.clone()
        for src in sorted(buffers):
            total += buffers[src]
        unflatten_into(total / self.transport.world_size, grads)

    # ----------------------------------------------------------------------------------
    # Driver
    # ----------------------------------------------------------------------------------

    def run(self) -> None:
        solver = self.solver
        solver.is_root = self.is_root
        solver.net.reseed_data(self.transport.rank)
        self._local_action = solver.action_function
        solver.set_action_function(self.get_requested_action)
        solver.add_callback(self)

        logger.info(
            "Starting distributed optimization: rank %d of %d, %d comm thread(s)",
            self.transport.rank,
            self.transport.world_size,
            self.comm_threads,
        )
        try:
            with ThreadPoolExecutor(
                max_workers=self.comm_threads, thread_name_prefix="brew-comm"
            ) as pool:
                self._pool = pool
                self._sync_boundary(SolverAction.NONE)
                solver.solve()
                self._sync_boundary(SolverAction.NONE)
        finally:
            self._pool = None
            solver.remove_callback(self)
            solver.set_action_function(self._local_action)
