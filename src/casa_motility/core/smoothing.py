#!/usr/bin/env python3
"""
Track validation and average-path smoothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Tuple

import numpy as np

from .common.errors import ConfigError
from .common.math_utils import path_length
from .tracker import Track

logger = logging.getLogger(__name__)


@dataclass
class ValidationConfig:
    min_track_samples: int = 3
    min_track_movement: float = 10.0  # pixels

    def validate(self) -> None:
        if self.min_track_samples < 1:
            raise ConfigError(
                f"min_track_samples must be >= 1, got {self.min_track_samples}"
            )
        if self.min_track_movement < 0:
            raise ConfigError(
                f"min_track_movement must be >= 0, got {self.min_track_movement}"
            )


def is_valid_track(track: Track, cfg: ValidationConfig) -> bool:
    """Enough samples and enough cumulative movement to be a real cell."""
    if len(track) < cfg.min_track_samples:
        return False
    return path_length(track.positions_array()) > cfg.min_track_movement


def filter_valid_tracks(
    tracks: Iterable[Track], cfg: ValidationConfig
) -> Tuple[List[Track], List[Track]]:
    """
    Split tracks into (valid, rejected).

    Rejected tracks are noise, debris or stationary artifacts.
    """
    valid, rejected = [], []
    for trk in tracks:
        (valid if is_valid_track(trk, cfg) else rejected).append(trk)
    logger.info(
        "Track validation: %d valid, %d rejected (min samples %d, min movement %.1f px)",
        len(valid),
        len(rejected),
        cfg.min_track_samples,
        cfg.min_track_movement,
    )
    return valid, rejected


def smooth_path(points: np.ndarray) -> np.ndarray:
    """
    3-point moving average on interior samples; endpoints are copied.

    Output has the same length as the input.
    """
    points = np.asarray(points, dtype=float).reshape(-1, 2)
    smoothed = points.copy()
    if len(points) < 3:
        return smoothed
    smoothed[1:-1] = (points[:-2] + points[1:-1] + points[2:]) / 3.0
    return smoothed
