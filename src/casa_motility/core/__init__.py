"""
Core package for the CASA motility pipeline.

Modules:
    detect: Detector output post-processing (thresholds, NMS, rescale)
    tracker: Frame-to-frame track association
    smoothing: Track validation and average-path smoothing
    analysis: Kinematic and population metrics
    pipeline: Run orchestration
    common: Shared utilities and data structures
"""

__all__ = ["common", "detect", "tracker", "smoothing", "analysis", "pipeline"]
