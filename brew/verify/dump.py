"""Raw float32 tensor dumps used by the collect/compare harness."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
import torch

from brew.logging import get_logger


logger = get_logger(__name__)

DUMP_DTYPE = np.dtype("<f4")


class DumpRole(enum.Enum):
    """Kind of tensor captured; the value is the tag used in file names and info lines."""

    FORWARD = "Fwrd"
    BACKWARD = "Bwrd"
    GRADIENT = "Grad"
    WEIGHT = "Wght"

    @property
    def tag(self) -> str:
        return self.value


def dump_filename(role: DumpRole, index: int, is_target: bool) -> str:
    """``REFFwrd0004.bin`` / ``TGTGrad0000.bin``; a pure function of its arguments."""
    if index < 0:
        raise ValueError("dump index must be >= 0")
    prefix = "TGT" if is_target else "REF"
    return f"{prefix}{role.tag}{index:04d}.bin"


def info_filename(use_gpu: bool) -> str:
    return "GPUInfo.txt" if use_gpu else "CPUInfo.txt"


def info_line(role: DumpRole, index: int, layer_type: str, layer_name: str) -> str:
    return f"{role.tag}{index:04d} {layer_type} {layer_name}"


@dataclass
class TensorDump:
    """One dumped tensor."""
    role: DumpRole
    index: int
    is_target: bool
    values: np.ndarray

    @property
    def element_count(self) -> int:
        return int(self.values.size)

    @property
    def byte_length(self) -> int:
        return self.element_count * DUMP_DTYPE.itemsize

    @property
    def filename(self) -> str:
        return dump_filename(self.role, self.index, self.is_target)

    @classmethod
    def from_tensor(cls, role: DumpRole, index: int, is_target: bool, tensor: torch.Tensor) -> "TensorDump":
        values = tensor.detach().to(device="cpu", dtype=torch.float32).reshape(-1).numpy()
        return cls(role=role, index=index, is_target=is_target, values=values.astype(DUMP_DTYPE, copy=False))


def write_dump(directory: Path, dump: TensorDump) -> bool:
    """Write ``dump`` into ``directory``; returns False (and logs) on I/O failure."""
    path = Path(directory) / dump.filename
    try:
        np.ascontiguousarray(dump.values, dtype=DUMP_DTYPE).tofile(path)
    except OSError as exc:
        logger.error("Failed to write dump %s: %s", path, exc)
        return False
    return True


def read_dump(path: Path, expected_count: Optional[int] = None) -> Optional[np.ndarray]:
    """Read a dump file; returns None (and logs) when missing, unreadable or short."""
    path = Path(path)
    if not path.is_file():
        logger.error("Dump file not found: %s", path)
        return None
    try:
        values = np.fromfile(path, dtype=DUMP_DTYPE)
    except (OSError, ValueError) as exc:
        logger.error("Failed to read dump %s: %s", path, exc)
        return None
    if expected_count is not None and values.size < expected_count:
        logger.error(
            "Dump file %s holds %d values, %d expected",
            path,
            values.size,
            expected_count,
        )
        return None
    if expected_count is not None:
        values = values[:expected_count]
    return values
