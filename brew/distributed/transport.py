"""
Runtime-selected transports over ``torch.distributed`` process groups.

Both transports implement the same send/recv/broadcast/barrier surface:
- "gloo": message passing over TCP, CPU tensors
- "nccl": GPU interconnect, CUDA tensors on the rank's local device

The process group is initialised from the standard environment (RANK, WORLD_SIZE, MASTER_ADDR,
MASTER_PORT, and LOCAL_RANK for nccl) unless one is already active.
"""

from __future__ import annotations

import os
from datetime import timedelta
from typing import ClassVar
from typing import Optional

import torch
import torch.distributed as dist

from brew.errors import UnsupportedTransportError
from brew.logging import get_logger


logger = get_logger(__name__)


class ProcessGroupTransport:
    """Transport backed by the default ``torch.distributed`` process group."""

    name: ClassVar[str] = ""

    def __init__(self, init_method: str = "env://", timeout: Optional[timedelta] = None) -> None:
        self.check_available()
        self._owns_group = False
        if not dist.is_initialized():
            kwargs = {"backend": self.name, "init_method": init_method}
            if timeout is not None:
                kwargs["timeout"] = timeout
            dist.init_process_group(**kwargs)
            self._owns_group = True
        elif dist.get_backend() != self.name:
            raise UnsupportedTransportError(
                f"A '{dist.get_backend()}' process group is already active; cannot use '{self.name}'"
            )
        self.rank = dist.get_rank()
        self.world_size = dist.get_world_size()
        self.device = self._local_device()
        logger.info(
            "Transport %s ready: rank %d of %d on %s",
            self.name,
            self.rank,
            self.world_size,
            self.device,
        )

    @classmethod
    def check_available(cls) -> None:
        if not dist.is_available():
            raise UnsupportedTransportError("torch.distributed is not available in this build")

    def _local_device(self) -> torch.device:
        return torch.device("cpu")

    def send(self, tensor: torch.Tensor, dst: int) -> None:
        dist.send(tensor, dst=dst)

    def recv(self, tensor: torch.Tensor, src: int) -> None:
        dist.recv(tensor, src=src)

    def broadcast(self, tensor: torch.Tensor, src: int = 0) -> None:
        dist.broadcast(tensor, src=src)

    def barrier(self) -> None:
        dist.barrier()

    def close(self) -> None:
        if self._owns_group and dist.is_initialized():
            dist.destroy_process_group()
        self._owns_group = False


class GlooTransport(ProcessGroupTransport):
    name = "gloo"

    @classmethod
    def check_available(cls) -> None:
        super().check_available()
        if not dist.is_gloo_available():
            raise UnsupportedTransportError("gloo transport is not available in this build")


class NcclTransport(ProcessGroupTransport):
    name = "nccl"

    @classmethod
    def check_available(cls) -> None:
        super().check_available()
        if not torch.cuda.is_available():
            raise UnsupportedTransportError("nccl transport requires CUDA devices")
        if not dist.is_nccl_available():
            raise UnsupportedTransportError("nccl transport is not available in this build")

    def _local_device(self) -> torch.device:
        local_rank = int(os.environ.get("LOCAL_RANK", self.rank % torch.cuda.device_count()))
        torch.cuda.set_device(local_rank)
        return torch.device(f"cuda:{local_rank}")

    def barrier(self) -> None:
        dist.barrier(device_ids=[self.device.index])


TRANSPORTS: dict[str, type[ProcessGroupTransport]] = {
    GlooTransport.name: GlooTransport,
    NcclTransport.name: NcclTransport,
}


def build_transport(name: str, **kwargs) -> ProcessGroupTransport:
    """Instantiate the transport registered under ``name``."""
    cls = TRANSPORTS.get(name)
    if cls is None:
        raise UnsupportedTransportError(
            f"Unsupported transport '{name}' (available: {', '.join(sorted(TRANSPORTS))})"
        )
    return cls(**kwargs)
