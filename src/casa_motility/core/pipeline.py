#!/usr/bin/env python3
"""
Run orchestration for one video: detection post-processing, tracking,
validation, kinematics and population aggregation.

Post-processing has no cross-frame dependency and runs on a thread pool,
but results are handed to the tracker in original frame order. Kinematics
run per terminated track (joblib). Each call owns its tracker state; nothing
is shared between runs.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import numpy as np
import pandas as pd
from tqdm import tqdm

from .analysis import (
    AnalysisConfig,
    Interpretation,
    KinematicMetrics,
    PopulationMetrics,
    aggregate_population,
    compute_track_metrics,
    generate_report,
    interpret,
    interpretation_notes,
    metrics_to_dataframe,
)
from .common.data_structures import FrameDetections
from .common.errors import AnalysisError, ConfigError
from .detect import DetectionConfig, DetectorBackend, postprocess_detections, preprocess_frame
from .smoothing import ValidationConfig, filter_valid_tracks
from .tracker import NearestNeighborTracker, Track, TrackerConfig, tracks_to_dataframe

logger = logging.getLogger(__name__)

_SECTIONS = {
    "detection": DetectionConfig,
    "tracking": TrackerConfig,
    "validation": ValidationConfig,
    "analysis": AnalysisConfig,
}


@dataclass
class PipelineConfig:
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    tracking: TrackerConfig = field(default_factory=TrackerConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    frame_rate: Optional[float] = None
    n_jobs: int = 1
    max_workers: Optional[int] = None
    show_progress: bool = False

    def validate(self) -> None:
        if self.frame_rate is None or self.frame_rate <= 0:
            raise ConfigError(f"frame_rate must be > 0, got {self.frame_rate}")
        self.detection.validate()
        self.tracking.validate()
        self.validation.validate()
        self.analysis.validate()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detection": asdict(self.detection),
            "tracking": asdict(self.tracking),
            "validation": asdict(self.validation),
            "analysis": asdict(self.analysis),
            "pipeline": {
                "frame_rate": self.frame_rate,
                "n_jobs": self.n_jobs,
                "max_workers": self.max_workers,
                "show_progress": self.show_progress,
            },
        }

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> "PipelineConfig":
        """Build a config from nested sections; unknown sections or keys are rejected."""
        unknown = set(params) - set(_SECTIONS) - {"pipeline"}
        if unknown:
            raise ConfigError(f"Unknown config sections: {sorted(unknown)}")

        kwargs: Dict[str, Any] = {}
        for name, section_cls in _SECTIONS.items():
            values = params.get(name) or {}
            allowed = {f.name for f in fields(section_cls)}
            bad = set(values) - allowed
            if bad:
                raise ConfigError(f"Unknown keys in '{name}': {sorted(bad)}")
            kwargs[name] = section_cls(**values)

        pipeline_values = params.get("pipeline") or {}
        allowed = {"frame_rate", "n_jobs", "max_workers", "show_progress"}
        bad = set(pipeline_values) - allowed
        if bad:
            raise ConfigError(f"Unknown keys in 'pipeline': {sorted(bad)}")
        kwargs.update(pipeline_values)
        return cls(**kwargs)

    def report_params(self) -> Dict[str, Any]:
        return {
            "pixel_to_micron": self.analysis.pixel_to_micron,
            "frame_rate": self.frame_rate,
            "motility_threshold": self.analysis.motility_threshold,
            "progressive_lin_threshold": self.analysis.progressive_lin_threshold,
            "tracked_min_samples": self.analysis.tracked_min_samples,
            "analysis_area_mm2": self.analysis.analysis_area_mm2,
            "chamber_depth_um": self.analysis.chamber_depth_um,
        }


@dataclass
class AnalysisResult:
    population: PopulationMetrics
    tracks: List[Track]
    metrics: List[KinematicMetrics]
    frames: List[FrameDetections]
    all_tracks: List[Track]
    config: PipelineConfig

    @property
    def interpretation(self) -> Interpretation:
        return interpret(self.population)

    def tracks_dataframe(self) -> pd.DataFrame:
        return tracks_to_dataframe(self.tracks)

    def metrics_dataframe(self) -> pd.DataFrame:
        return metrics_to_dataframe(self.metrics)

    def detection_summary(self) -> Dict[str, Any]:
        counts = [len(f) for f in self.frames]
        return {
            "total_frames": len(self.frames),
            "total_detections": int(sum(counts)),
            "mean_detections_per_frame": float(np.mean(counts)) if counts else 0.0,
        }

    def tracking_summary(self) -> Dict[str, Any]:
        lengths = [len(t) for t in self.all_tracks]
        return {
            "total_tracks": len(self.all_tracks),
            "valid_tracks": len(self.tracks),
            "mean_track_length": float(np.mean(lengths)) if lengths else 0.0,
            "longest_track": int(max(lengths)) if lengths else 0,
        }

    def summary(self) -> Dict[str, Any]:
        return {
            "population": self.population.to_dict(),
            "interpretation": self.interpretation.value,
            "interpretation_notes": interpretation_notes(self.population),
            "detection": self.detection_summary(),
            "tracking": self.tracking_summary(),
            "params": self.config.to_dict(),
        }

    def report(self) -> str:
        return generate_report(self.population, self.config.report_params())


# ---------------------- Detection stage ----------------------


def iter_raw_output_frames(
    raw_outputs: Iterable[np.ndarray],
    frame_width: int,
    frame_height: int,
    cfg: PipelineConfig,
    num_classes: Optional[int] = None,
) -> Iterator[FrameDetections]:
    """Post-process raw detector outputs in parallel, yielding frames in order."""

    def _one(item):
        idx, raw = item
        dets = postprocess_detections(
            raw, idx, frame_width, frame_height, cfg.detection, num_classes
        )
        return FrameDetections.from_detections(idx, dets, cfg.frame_rate)

    with ThreadPoolExecutor(max_workers=cfg.max_workers) as pool:
        # map() yields in submission order
        yield from pool.map(_one, enumerate(raw_outputs))


def iter_inferred_frames(
    images: Iterable[np.ndarray],
    backend: DetectorBackend,
    cfg: PipelineConfig,
    num_classes: Optional[int] = None,
) -> Iterator[FrameDetections]:
    """
    Run the detector on decoded frames, yielding FrameDetections in order.

    A failing inference call is logged and treated as a frame with zero
    detections. Malformed detector output still fails the run.
    """
    if backend is None:
        raise AnalysisError("Detector backend is not available")

    def _one(item):
        idx, image = item
        try:
            tensor = preprocess_frame(image, cfg.detection.input_size)
            raw = backend.infer(tensor)
        except Exception as e:
            logger.warning("Inference failed for frame %d: %s", idx, e)
            return FrameDetections.from_detections(idx, [], cfg.frame_rate)
        height, width = image.shape[:2]
        dets = postprocess_detections(
            raw, idx, width, height, cfg.detection, num_classes
        )
        return FrameDetections.from_detections(idx, dets, cfg.frame_rate)

    with ThreadPoolExecutor(max_workers=cfg.max_workers) as pool:
        yield from pool.map(_one, enumerate(images))


# ---------------------- Tracking + metrics ----------------------


def analyze_frame_detections(
    frames: Iterable[FrameDetections], cfg: PipelineConfig
) -> AnalysisResult:
    """
    Track, validate, measure and aggregate an ordered frame sequence.

    A truncated sequence is fine: live tracks end at the last frame seen.
    """
    cfg.validate()
    tracker = NearestNeighborTracker(cfg.tracking)
    seen: List[FrameDetections] = []

    frame_iter = tqdm(frames, desc="Tracking", unit="frame") if cfg.show_progress else frames
    for frame_dets in frame_iter:
        tracker.update(frame_dets)
        seen.append(frame_dets)

    if not seen:
        raise AnalysisError("No frames to analyze")

    all_tracks = tracker.finish()
    logger.info(
        "Tracked %d frames (%d detections) into %d tracks",
        len(seen),
        sum(len(f) for f in seen),
        len(all_tracks),
    )

    valid, _ = filter_valid_tracks(all_tracks, cfg.validation)
    metrics = compute_track_metrics(valid, cfg.analysis, n_jobs=cfg.n_jobs)
    population = aggregate_population(metrics, cfg.analysis)

    return AnalysisResult(
        population=population,
        tracks=valid,
        metrics=metrics,
        frames=seen,
        all_tracks=all_tracks,
        config=cfg,
    )


def analyze_raw_outputs(
    raw_outputs: Sequence[np.ndarray],
    frame_width: int,
    frame_height: int,
    cfg: PipelineConfig,
    num_classes: Optional[int] = None,
) -> AnalysisResult:
    """Full pipeline from per-frame raw detector buffers."""
    cfg.validate()
    logger.info(
        "Analyzing %d raw detector outputs (%dx%d, input %d)",
        len(raw_outputs),
        frame_width,
        frame_height,
        cfg.detection.input_size,
    )
    frames = iter_raw_output_frames(
        raw_outputs, frame_width, frame_height, cfg, num_classes
    )
    return analyze_frame_detections(frames, cfg)


def analyze_video_frames(
    images: Iterable[np.ndarray],
    backend: DetectorBackend,
    cfg: PipelineConfig,
    num_classes: Optional[int] = None,
) -> AnalysisResult:
    """Full pipeline from decoded frames and a detector backend."""
    cfg.validate()
    frames = iter_inferred_frames(images, backend, cfg, num_classes)
    return analyze_frame_detections(frames, cfg)
