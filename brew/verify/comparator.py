"""Offline comparison of reference and target dumps."""

from __future__ import annotations

import re
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Optional

import numpy as np

from brew.errors import DumpIOError
from brew.logging import get_logger
from brew.verify.dump import DumpRole
from brew.verify.dump import dump_filename
from brew.verify.dump import info_filename
from brew.verify.dump import read_dump


logger = get_logger(__name__)

ErrorDictionary = dict[str, int]


@dataclass
class InfoEntry:
    """One line of an info file: ``Fwrd0003 InnerProduct ip1``."""
    role: DumpRole
    index: int
    layer_type: str
    layer_name: str


@dataclass
class ComparisonReport:
    """Per-layer divergence counts and worst errors of one compare run."""
    epsilon: float
    errors: ErrorDictionary = field(default_factory=dict)
    max_errors: dict[str, float] = field(default_factory=dict)
    compared: int = 0
    skipped: int = 0

    @property
    def passed(self) -> bool:
        return not self.errors

    def record(self, layer_name: str, error: float) -> None:
        self.compared += 1
        self.max_errors[layer_name] = max(error, self.max_errors.get(layer_name, 0.0))
        if exceeds(error, self.epsilon):
            self.errors[layer_name] = self.errors.get(layer_name, 0) + 1

    def record_missing(self, layer_name: str) -> None:
        self.errors[layer_name] = self.errors.get(layer_name, 0) + 1
        self.max_errors[layer_name] = float("inf")


_ROLES_BY_TAG = {role.tag: role for role in DumpRole}
_INFO_TAG = re.compile(r"(" + "|".join(_ROLES_BY_TAG) + r")(\d{4,})")


def parse_info_line(line: str) -> InfoEntry:
    fields = line.split(None, 2)
    match = _INFO_TAG.fullmatch(fields[0]) if len(fields) >= 2 else None
    if match is None:
        raise ValueError(f"Malformed info line: {line!r}")
    role = _ROLES_BY_TAG[match.group(1)]
    index = match.group(2)
    layer_type = fields[1]
    layer_name = fields[2].strip() if len(fields) > 2 else layer_type
    return InfoEntry(role=role, index=int(index), layer_type=layer_type, layer_name=layer_name)


def read_info_file(path: Path) -> list[InfoEntry]:
    try:
        lines = Path(path).read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise DumpIOError(f"Cannot read info file {path}: {exc}") from exc
    try:
        return [parse_info_line(line) for line in lines if line.strip()]
    except ValueError as exc:
        raise DumpIOError(f"Cannot parse info file {path}: {exc}") from exc


def exceeds(error: float, epsilon: float) -> bool:
    """True when ``error`` is above ``epsilon`` at dump precision, or is NaN."""
    return not np.float32(error) <= np.float32(epsilon)


def relative_error(reference: np.ndarray, target: np.ndarray) -> float:
    """``max_i |ref_i - tgt_i| / max(1, |ref_i|)`` at dump precision.

    Elements that are bit-for-bit equal (NaN matching NaN included) contribute zero. Any other
    non-finite outcome, and a size mismatch, is ``inf``.
    """
    if reference.size != target.size:
        return float("inf")
    if reference.size == 0:
        return 0.0
    ref = reference.astype(np.float32).ravel()
    tgt = target.astype(np.float32).ravel()
    same = (ref == tgt) | (np.isnan(ref) & np.isnan(tgt))
    with np.errstate(invalid="ignore", over="ignore"):
        error = np.abs(ref - tgt) / np.maximum(np.float32(1.0), np.abs(ref))
    error = np.where(same, np.float32(0.0), error)
    error = np.where(np.isnan(error), np.float32(np.inf), error)
    return float(np.max(error))


def compare_directories(
    reference_dir: str,
    target_dir: str,
    *,
    use_gpu: bool = False,
    epsilon: float = 1e-3,
    info_path: Optional[str] = None,
) -> ComparisonReport:
    """Compare every dump listed in the target info file against its reference."""
    if epsilon < 0:
        raise ValueError("epsilon must be >= 0")
    path = Path(info_path) if info_path else Path(target_dir) / info_filename(use_gpu)
    report = ComparisonReport(epsilon=epsilon)

    for entry in read_info_file(path):
        ref_path = Path(reference_dir) / dump_filename(entry.role, entry.index, is_target=False)
        tgt_path = Path(target_dir) / dump_filename(entry.role, entry.index, is_target=True)
        ref_exists, tgt_exists = ref_path.is_file(), tgt_path.is_file()
        if not ref_exists and not tgt_exists:
            report.skipped += 1
            continue

        reference = read_dump(ref_path) if ref_exists else None
        target = read_dump(tgt_path) if tgt_exists else None
        if reference is None or target is None:
            logger.error(
                "Missing %s dump for %s #%d (%s)",
                "reference" if reference is None else "target",
                entry.role.name.lower(),
                entry.index,
                entry.layer_name,
            )
            report.record_missing(entry.layer_name)
            continue

        error = relative_error(reference, target)
        report.record(entry.layer_name, error)
        if exceeds(error, epsilon):
            logger.warning(
                "%s%04d %s (%s): error %.6g exceeds %.6g",
                entry.role.tag,
                entry.index,
                entry.layer_type,
                entry.layer_name,
                error,
                epsilon,
            )
        else:
            logger.debug(
                "%s%04d %s (%s): error %.6g",
                entry.role.tag,
                entry.index,
                entry.layer_type,
                entry.layer_name,
                error,
            )
    return report


def log_report(report: ComparisonReport) -> None:
    if report.errors:
        logger.info("Invalid layer behaviour detected on: ")
        for name in sorted(report.errors):
            logger.warning("\t%s (%d divergent dump(s), max error %.6g)", name, report.errors[name], report.max_errors[name])
    else:
        logger.info("*** All layers are working correctly ***")
