"""
Detection scoring for ``brew test --detection``.

Each detection-evaluation output blob holds rows of ``[item_id, label, score, tp, fp]``.
Rows with ``item_id == -1`` carry ground-truth counts instead: ``[-1, label, num_pos, -1, -1]``.
Per label, detections are ranked by score and turned into 11-point interpolated average
precision; the mean over labels with ground truth is the mAP.
"""

from __future__ import annotations

from collections import defaultdict

import numpy as np
import torch

from brew.logging import get_logger


logger = get_logger(__name__)


def average_precision_11point(
    scores: np.ndarray,
    true_positive: np.ndarray,
    false_positive: np.ndarray,
    num_pos: int,
) -> float:
    """11-point interpolated AP of ranked detections against ``num_pos`` ground truths."""
    if num_pos <= 0 or scores.size == 0:
        return 0.0
    order = np.argsort(-scores, kind="stable")
    tp = true_positive[order].astype(np.float64)
    fp = false_positive[order].astype(np.float64)
    cum_tp = np.cumsum(tp)
    cum_fp = np.cumsum(fp)
    recall = cum_tp / num_pos
    precision = cum_tp / np.maximum(cum_tp + cum_fp, np.finfo(np.float64).eps)

    ap = 0.0
    for threshold in np.linspace(0.0, 1.0, 11):
        mask = recall >= threshold - 1e-12
        ap += float(precision[mask].max()) if mask.any() else 0.0
    return ap / 11.0


class DetectionEvaluator:
    """Accumulates detection rows across test batches, one bucket per output blob."""

    def __init__(self) -> None:
        self.num_pos: dict[int, dict[int, int]] = defaultdict(lambda: defaultdict(int))
        self.detections: dict[int, dict[int, list[tuple[float, int, int]]]] = defaultdict(lambda: defaultdict(list))

    def update(self, output_index: int, rows: torch.Tensor) -> None:
        data = rows.detach().to("cpu", torch.float64).reshape(-1, 5).numpy()
        for item_id, label, score, tp, fp in data:
            label = int(label)
            if int(item_id) == -1:
                self.num_pos[output_index][label] += int(score)
                continue
            if int(tp) == 0 and int(fp) == 0:
                # Matched a difficult ground truth; not evaluated.
                continue
            self.detections[output_index][label].append((float(score), int(tp), int(fp)))

    def mean_average_precision(self, output_index: int) -> float:
        num_pos = self.num_pos[output_index]
        if not num_pos:
            logger.warning("No ground truth recorded for detection output #%d", output_index)
            return 0.0
        total = 0.0
        for label, count in sorted(num_pos.items()):
            detections = self.detections[output_index].get(label)
            if not detections:
                logger.warning("Missing detections for label %d", label)
                continue
            scores = np.array([score for score, _, _ in detections])
            hits = np.array([tp for _, tp, _ in detections])
            misses = np.array([fp for _, _, fp in detections])
            total += average_precision_11point(scores, hits, misses, count)
        return total / len(num_pos)

    def results(self) -> dict[int, float]:
        indices = sorted(set(self.num_pos) | set(self.detections))
        return {index: self.mean_average_precision(index) for index in indices}
