#!/usr/bin/env python3
"""
Detector post-processing: turns one frame's raw detector output into a
de-duplicated list of Detection objects in original-frame pixel space.

Also holds the narrow detector-backend interface and the frame preprocessing
that produces the detector's input tensor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Tuple

import cv2
import numpy as np

from .common.data_structures import Detection
from .common.errors import ConfigError, DetectorOutputError
from .common.math_utils import compute_iou_matrix

logger = logging.getLogger(__name__)

# x, y, w, h, objectness
BOX_FIELDS = 5


@dataclass
class DetectionConfig:
    confidence_threshold: float = 0.5
    nms_threshold: float = 0.4
    input_size: int = 640

    def validate(self) -> None:
        if not 0.0 <= self.confidence_threshold < 1.0:
            raise ConfigError(
                f"confidence_threshold must be in [0, 1), got {self.confidence_threshold}"
            )
        if not 0.0 <= self.nms_threshold <= 1.0:
            raise ConfigError(
                f"nms_threshold must be in [0, 1], got {self.nms_threshold}"
            )
        if self.input_size <= 0:
            raise ConfigError(f"input_size must be > 0, got {self.input_size}")


class DetectorBackend(Protocol):
    """Anything that maps a preprocessed (1, 3, S, S) tensor to raw candidate rows."""

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        ...


class CallableDetector:
    """Adapter turning a plain function into a DetectorBackend."""

    def __init__(self, fn: Callable[[np.ndarray], np.ndarray]):
        self.fn = fn

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        return np.asarray(self.fn(tensor))


def preprocess_frame(frame: np.ndarray, input_size: int = 640) -> np.ndarray:
    """
    Build the detector input tensor from a decoded BGR (or grayscale) frame.

    Returns:
        float32 array of shape (1, 3, input_size, input_size), RGB, in [0, 1]
    """
    if not isinstance(frame, np.ndarray):
        raise TypeError("Input frame must be a numpy array")
    if frame.ndim == 2:
        frame = cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
    elif frame.ndim != 3 or frame.shape[2] not in (3, 4):
        raise ValueError(f"Unexpected frame shape: {frame.shape}")
    elif frame.shape[2] == 4:
        frame = cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR)

    resized = cv2.resize(frame, (input_size, input_size))
    rgb = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB)
    tensor = rgb.astype(np.float32) / 255.0
    return np.ascontiguousarray(tensor.transpose(2, 0, 1)[None, ...])


def _as_rows(raw: np.ndarray, num_classes: Optional[int]) -> np.ndarray:
    """Reshape raw detector output into an (N, 5 + C) float array."""
    arr = np.asarray(raw, dtype=np.float64)
    if arr.size == 0:
        return np.empty((0, BOX_FIELDS + (num_classes or 1)))

    if arr.ndim == 3:
        if arr.shape[0] != 1:
            raise DetectorOutputError(
                f"Expected batch size 1 in detector output, got shape {arr.shape}"
            )
        arr = arr[0]

    if arr.ndim == 2:
        if num_classes is not None and arr.shape[1] != BOX_FIELDS + num_classes:
            raise DetectorOutputError(
                f"Row width {arr.shape[1]} does not match {BOX_FIELDS} + {num_classes} classes"
            )
        rows = arr
    elif arr.ndim == 1:
        if num_classes is None:
            raise DetectorOutputError(
                "num_classes is required to decode a flat detector buffer"
            )
        width = BOX_FIELDS + num_classes
        if arr.size % width != 0:
            raise DetectorOutputError(
                f"Buffer of {arr.size} floats is not a multiple of row width {width}"
            )
        rows = arr.reshape(-1, width)
    else:
        raise DetectorOutputError(f"Unsupported detector output shape {arr.shape}")

    if rows.shape[0] and rows.shape[1] <= BOX_FIELDS:
        raise DetectorOutputError(
            f"Detector rows need at least one class score, got width {rows.shape[1]}"
        )
    if not np.all(np.isfinite(rows)):
        raise DetectorOutputError("Detector output contains NaN or inf")
    return rows


def filter_candidates(
    rows: np.ndarray, confidence_threshold: float
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Apply the objectness and final-confidence thresholds.

    Returns:
        Tuple of (boxes (K, 4) center-format, scores (K,), class_ids (K,))
    """
    if len(rows) == 0:
        return np.empty((0, 4)), np.empty(0), np.empty(0, dtype=int)

    objectness = rows[:, 4]
    class_scores = rows[:, BOX_FIELDS:]
    class_ids = np.argmax(class_scores, axis=1)
    final = objectness * class_scores[np.arange(len(rows)), class_ids]

    keep = (objectness > confidence_threshold) & (final > confidence_threshold)
    return rows[keep, :4], final[keep], class_ids[keep]


def non_max_suppression(
    boxes: np.ndarray, scores: np.ndarray, nms_threshold: float
) -> List[int]:
    """
    Class-agnostic NMS over center-format boxes.

    Returns indices of kept boxes, highest score first.
    """
    boxes = np.asarray(boxes, dtype=float).reshape(-1, 4)
    order = list(np.argsort(-np.asarray(scores, dtype=float), kind="stable"))
    keep = []
    while order:
        best = order.pop(0)
        keep.append(int(best))
        if not order:
            break
        ious = compute_iou_matrix(boxes[order], boxes[best])
        order = [idx for idx, iou in zip(order, ious) if iou <= nms_threshold]
    return keep


def postprocess_detections(
    raw: np.ndarray,
    frame_index: int,
    original_width: int,
    original_height: int,
    cfg: Optional[DetectionConfig] = None,
    num_classes: Optional[int] = None,
) -> List[Detection]:
    """
    Convert raw detector output for one frame into Detections.

    Args:
        raw: Detector output, flat or (N, 5 + C) or (1, N, 5 + C)
        frame_index: Index of the frame the output belongs to
        original_width: Width of the decoded frame in pixels
        original_height: Height of the decoded frame in pixels
        cfg: Thresholds and detector input size
        num_classes: Number of class scores per row (required for flat buffers)

    Returns:
        List of Detections, free of duplicates above the NMS threshold
    """
    cfg = cfg or DetectionConfig()
    if original_width <= 0 or original_height <= 0:
        raise DetectorOutputError(
            f"Frame dimensions must be positive, got {original_width}x{original_height}"
        )
    if cfg.input_size <= 0:
        raise DetectorOutputError(f"input_size must be > 0, got {cfg.input_size}")

    rows = _as_rows(raw, num_classes)
    boxes, scores, class_ids = filter_candidates(rows, cfg.confidence_threshold)
    keep = non_max_suppression(boxes, scores, cfg.nms_threshold)

    scale_x = original_width / cfg.input_size
    scale_y = original_height / cfg.input_size

    detections = []
    for i in keep:
        cx, cy, w, h = boxes[i]
        detections.append(
            Detection(
                frame=frame_index,
                x=float(cx * scale_x),
                y=float(cy * scale_y),
                width=float(w * scale_x),
                height=float(h * scale_y),
                confidence=float(scores[i]),
                class_id=int(class_ids[i]),
            )
        )

    logger.debug(
        "Frame %d: %d candidates, %d above threshold, %d after NMS",
        frame_index,
        len(rows),
        len(boxes),
        len(detections),
    )
    return detections
