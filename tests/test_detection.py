"""Unit tests for detection mAP scoring."""

from __future__ import annotations

import numpy as np
import pytest
import torch

from brew.detection import DetectionEvaluator
from brew.detection import average_precision_11point


def test_perfect_ranking_scores_one() -> None:
    ap = average_precision_11point(
        np.array([0.9, 0.8]), np.array([1, 0]), np.array([0, 1]), num_pos=1
    )
    assert ap == pytest.approx(1.0)


def test_false_positive_ranked_first_halves_precision() -> None:
    ap = average_precision_11point(
        np.array([0.9, 0.8]), np.array([0, 1]), np.array([1, 0]), num_pos=1
    )
    assert ap == pytest.approx(0.5)


def test_no_ground_truth_scores_zero() -> None:
    assert average_precision_11point(np.array([0.5]), np.array([1]), np.array([0]), num_pos=0) == 0.0


def _rows() -> torch.Tensor:
    return torch.tensor(
        [
            [-1, 1, 2, -1, -1],
            [0, 1, 0.9, 1, 0],
            [0, 1, 0.8, 0, 1],
            [1, 1, 0.7, 1, 0],
            # Matched a difficult ground truth: neither tp nor fp.
            [1, 1, 0.95, 0, 0],
        ]
    )


def test_evaluator_accumulates_across_batches() -> None:
    evaluator = DetectionEvaluator()
    rows = _rows()
    evaluator.update(0, rows[:2])
    evaluator.update(0, rows[2:])
    # Recall/precision: (0.5, 1), (0.5, 0.5), (1, 2/3); six thresholds reach 1, five reach 2/3.
    assert evaluator.mean_average_precision(0) == pytest.approx(28 / 33)
    assert evaluator.results() == {0: pytest.approx(28 / 33)}


def test_labels_without_detections_count_as_zero() -> None:
    evaluator = DetectionEvaluator()
    evaluator.update(0, _rows())
    evaluator.update(0, torch.tensor([[-1, 2, 3, -1, -1]]))
    assert evaluator.mean_average_precision(0) == pytest.approx(28 / 66)


def test_outputs_are_scored_separately() -> None:
    evaluator = DetectionEvaluator()
    evaluator.update(0, _rows())
    evaluator.update(1, torch.tensor([[-1, 1, 1, -1, -1], [0, 1, 0.5, 0, 1]]))
    results = evaluator.results()
    assert results[0] == pytest.approx(28 / 33)
    assert results[1] == pytest.approx(0.0)
