"""Computer-assisted sperm analysis: detect, track and measure motility."""

from .core.analysis import AnalysisConfig, KinematicMetrics, PopulationMetrics
from .core.detect import DetectionConfig, postprocess_detections
from .core.pipeline import (
    AnalysisResult,
    PipelineConfig,
    analyze_frame_detections,
    analyze_raw_outputs,
    analyze_video_frames,
)
from .core.smoothing import ValidationConfig
from .core.tracker import NearestNeighborTracker, TrackerConfig, TrackState

__version__ = "0.1.0"

__all__ = [
    "AnalysisConfig",
    "AnalysisResult",
    "DetectionConfig",
    "KinematicMetrics",
    "NearestNeighborTracker",
    "PipelineConfig",
    "PopulationMetrics",
    "TrackState",
    "TrackerConfig",
    "ValidationConfig",
    "analyze_frame_detections",
    "analyze_raw_outputs",
    "analyze_video_frames",
    "postprocess_detections",
]
