"""
Layer-by-layer collect/compare passes.

collect: run one forward and one backward pass layer by layer, dumping each layer's first top
         (Fwrd), first bottom diff (Bwrd), and finally every parameter gradient (Grad) and
         value (Wght) as REF files.
compare: same traversal writing TGT files, but after each step the freshly computed tensor is
         replaced by its REF counterpart, so each layer is measured on reference inputs and a
         divergence is attributed to the layer that introduced it.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator
from typing import Optional
from typing import TextIO

import numpy as np
import torch

from brew.errors import DumpIOError
from brew.errors import OutputDirectoryError
from brew.logging import get_logger
from brew.runtime.contracts import LayerGraph
from brew.verify.comparator import ComparisonReport
from brew.verify.comparator import compare_directories
from brew.verify.dump import DumpRole
from brew.verify.dump import TensorDump
from brew.verify.dump import dump_filename
from brew.verify.dump import info_filename
from brew.verify.dump import info_line
from brew.verify.dump import read_dump
from brew.verify.dump import write_dump


logger = get_logger(__name__)


def prepare_output_dir(path: str) -> Path:
    directory = Path(path)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise OutputDirectoryError(f"Could not create output directory {path}: {exc}") from exc
    return directory


@contextmanager
def deterministic_mode() -> Iterator[None]:
    """Force deterministic kernels for the duration of a pass."""
    if torch.cuda.is_available():
        # cuBLAS refuses deterministic mode without a fixed workspace.
        os.environ.setdefault("CUBLAS_WORKSPACE_CONFIG", ":4096:8")
    previous = torch.are_deterministic_algorithms_enabled()
    torch.use_deterministic_algorithms(True)
    try:
        yield
    finally:
        torch.use_deterministic_algorithms(previous)


class _Pass:
    """Shared traversal for collect (``reference_dir`` is None) and compare."""

    def __init__(
        self,
        net: LayerGraph,
        output_dir: Path,
        info: TextIO,
        reference_dir: Optional[Path] = None,
    ) -> None:
        self.net = net
        self.output_dir = output_dir
        self.info = info
        self.reference_dir = reference_dir
        self.is_target = reference_dir is not None
        self.failed_writes = 0

    def _note(self, role: DumpRole, index: int, layer) -> None:
        self.info.write(info_line(role, index, layer.type_name, layer.name) + "\n")

    def _dump(self, role: DumpRole, index: int, tensor: torch.Tensor) -> None:
        dump = TensorDump.from_tensor(role, index, self.is_target, tensor)
        if not write_dump(self.output_dir, dump):
            self.failed_writes += 1

    def _reference(self, role: DumpRole, index: int, like: torch.Tensor) -> torch.Tensor:
        path = self.reference_dir / dump_filename(role, index, is_target=False)
        values = read_dump(path, expected_count=like.numel())
        if values is None:
            raise DumpIOError(f"Reference dump {path} is required to continue")
        return torch.from_numpy(np.array(values, dtype=np.float32)).reshape(like.shape).to(like.device, like.dtype)

    def run(self) -> None:
        net = self.net
        net.clear_param_diffs()

        for index, layer in enumerate(net.layers):
            logger.info("Collecting FW Layer[%d]: %s", index, layer.type_name)
            self._note(DumpRole.FORWARD, index, layer)
            net.forward_layer(index)
            tops = net.top_vecs[index]
            if not tops:
                continue
            self._dump(DumpRole.FORWARD, index, tops[0].data)
            if self.is_target:
                tops[0].data = self._reference(DumpRole.FORWARD, index, tops[0].data)

        for index in reversed(range(len(net.layers))):
            layer = net.layers[index]
            logger.info("Collecting BW Layer[%d]: %s", index, layer.type_name)
            self._note(DumpRole.BACKWARD, index, layer)
            net.backward_layer(index)
            need = net.bottom_need_backward[index]
            if need and need[0]:
                bottom = net.bottom_vecs[index][0]
                self._dump(DumpRole.BACKWARD, index, bottom.diff)
                if self.is_target:
                    bottom.diff = self._reference(DumpRole.BACKWARD, index, bottom.diff)

        logger.info("Collecting gradients and weights")
        for index, (param, owner) in enumerate(zip(net.params, net.param_owners)):
            self._note(DumpRole.GRADIENT, index, owner)
            self._dump(DumpRole.GRADIENT, index, param.grad if param.grad is not None else torch.zeros_like(param))
            self._note(DumpRole.WEIGHT, index, owner)
            self._dump(DumpRole.WEIGHT, index, param.detach())


def collect(net: LayerGraph, output_dir: str, *, use_gpu: bool = False) -> int:
    """Write REF dumps and the info file for one pass; returns the number of failed writes."""
    directory = prepare_output_dir(output_dir)
    logger.info("*** Collect procedure begins ***")
    with deterministic_mode(), open(directory / info_filename(use_gpu), "w", encoding="utf-8") as info:
        traversal = _Pass(net, directory, info)
        traversal.run()
    logger.info("*** Collect procedure ends ***")
    return traversal.failed_writes


def compare(
    net: LayerGraph,
    reference_dir: str,
    output_dir: str,
    *,
    use_gpu: bool = False,
    epsilon: float = 1e-3,
) -> ComparisonReport:
    """Replay ``net`` on reference tensors, write TGT dumps, then compare them with the REF set."""
    reference = Path(reference_dir)
    if not reference.is_dir():
        raise DumpIOError(f"Reference directory {reference_dir} does not exist")
    directory = prepare_output_dir(output_dir)
    info_path = directory / info_filename(use_gpu)

    logger.info("*** Compare procedure begins ***")
    with deterministic_mode(), open(info_path, "w", encoding="utf-8") as info:
        _Pass(net, directory, info, reference_dir=reference).run()

    return compare_directories(
        str(reference),
        str(directory),
        epsilon=epsilon,
        info_path=str(info_path),
    )
