#!/usr/bin/env python3
"""
Geometry helpers used by the detection, tracking and kinematics modules.
"""

import numpy as np
from typing import Tuple


def calculate_distances(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Calculate Euclidean distances between consecutive points."""
    dx = np.diff(np.asarray(x, dtype=float))
    dy = np.diff(np.asarray(y, dtype=float))
    return np.sqrt(dx**2 + dy**2)


def path_length(points: np.ndarray) -> float:
    """Sum of consecutive-sample distances for an (N, 2) array of points."""
    points = np.asarray(points, dtype=float).reshape(-1, 2)
    if len(points) < 2:
        return 0.0
    return float(np.sum(calculate_distances(points[:, 0], points[:, 1])))


def compute_iou(
    box1: Tuple[float, float, float, float],
    box2: Tuple[float, float, float, float],
) -> float:
    """Compute IoU between two center-format boxes: (cx, cy, w, h)"""
    cx1, cy1, w1, h1 = box1
    cx2, cy2, w2, h2 = box2

    # Intersection
    ixmin = max(cx1 - w1 / 2, cx2 - w2 / 2)
    iymin = max(cy1 - h1 / 2, cy2 - h2 / 2)
    ixmax = min(cx1 + w1 / 2, cx2 + w2 / 2)
    iymax = min(cy1 + h1 / 2, cy2 + h2 / 2)
    iw = max(0.0, ixmax - ixmin)
    ih = max(0.0, iymax - iymin)

    # Union
    area1 = w1 * h1
    area2 = w2 * h2
    union = area1 + area2 - (iw * ih)

    return (iw * ih) / union if union > 0 else 0.0


def compute_iou_matrix(boxes: np.ndarray, box: np.ndarray) -> np.ndarray:
    """Vectorised IoU of one center-format box against an (N, 4) array."""
    boxes = np.asarray(boxes, dtype=float).reshape(-1, 4)
    cx, cy, w, h = box
    ixmin = np.maximum(boxes[:, 0] - boxes[:, 2] / 2, cx - w / 2)
    iymin = np.maximum(boxes[:, 1] - boxes[:, 3] / 2, cy - h / 2)
    ixmax = np.minimum(boxes[:, 0] + boxes[:, 2] / 2, cx + w / 2)
    iymax = np.minimum(boxes[:, 1] + boxes[:, 3] / 2, cy + h / 2)
    inter = np.clip(ixmax - ixmin, 0, None) * np.clip(iymax - iymin, 0, None)
    union = boxes[:, 2] * boxes[:, 3] + w * h - inter
    iou = np.zeros(len(boxes))
    np.divide(inter, union, out=iou, where=union > 0)
    return iou


def side_of_segment(
    point: np.ndarray,
    seg_start: np.ndarray,
    seg_end: np.ndarray,
    dead_zone: float = 1.0,
) -> int:
    """
    Which side of the directed segment the point lies on.

    Returns +1 (left), -1 (right) or 0 when the 2-D cross product falls
    inside [-dead_zone, dead_zone].
    """
    cross = (seg_end[0] - seg_start[0]) * (point[1] - seg_start[1]) - (
        seg_end[1] - seg_start[1]
    ) * (point[0] - seg_start[0])
    if cross > dead_zone:
        return 1
    if cross < -dead_zone:
        return -1
    return 0


def safe_divide(numerator: float, denominator: float) -> float:
    """Division that yields 0.0 instead of raising or producing NaN/inf."""
    if denominator == 0 or not np.isfinite(denominator):
        return 0.0
    result = numerator / denominator
    return float(result) if np.isfinite(result) else 0.0
