"""
Common package - shared data structures, geometry helpers, errors and I/O.

Submodules:
    data_structures: Detection, FrameDetections, TrackSample
    errors: Exception taxonomy
    io: File input/output operations
    math_utils: Geometry helpers (distances, IoU, side-of-segment)
"""

from .data_structures import Detection, FrameDetections, TrackSample
from .errors import (
    AnalysisError,
    CasaError,
    ConfigError,
    DetectorOutputError,
    FrameOrderError,
    TrackStateError,
)
from .math_utils import (
    calculate_distances,
    compute_iou,
    path_length,
    side_of_segment,
)

__all__ = [
    "Detection",
    "FrameDetections",
    "TrackSample",
    "AnalysisError",
    "CasaError",
    "ConfigError",
    "DetectorOutputError",
    "FrameOrderError",
    "TrackStateError",
    "calculate_distances",
    "compute_iou",
    "path_length",
    "side_of_segment",
]
