#!/usr/bin/env python3
"""
Data structures shared by the detection, tracking and analysis stages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple

from .errors import ConfigError, FrameOrderError


@dataclass(frozen=True)
class Detection:
    """One candidate object found in one frame (original-frame pixel units)."""

    frame: int
    x: float
    y: float
    width: float
    height: float
    confidence: float
    class_id: int = 0

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class FrameDetections:
    """All detections of a single frame plus its timestamp in seconds."""

    frame: int
    timestamp: float
    detections: Tuple[Detection, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        stale = [d.frame for d in self.detections if d.frame != self.frame]
        if stale:
            raise FrameOrderError(
                f"Frame {self.frame} holds detections tagged with frames {sorted(set(stale))}"
            )

    @classmethod
    def from_detections(
        cls, frame: int, detections: List[Detection], frame_rate: float
    ) -> "FrameDetections":
        if frame_rate <= 0:
            raise ConfigError(f"frame_rate must be > 0, got {frame_rate}")
        if frame < 0:
            raise ConfigError(f"frame index must be >= 0, got {frame}")
        return cls(frame, frame / frame_rate, tuple(detections))

    def __len__(self) -> int:
        return len(self.detections)


@dataclass(frozen=True)
class TrackSample:
    frame: int
    x: float
    y: float
    timestamp: float
    confidence: float
