#!/usr/bin/env python3
"""
Sperm Motility Analysis (CASA)
==============================

Per-track kinematic parameters (VCL, VSL, VAP, LIN, STR, WOB, ALH, BCF) and
their reduction into population-level motility percentages and a
concentration estimate.

Every division by zero resolves to 0: a track spanning a single instant or
with a zero-length path is a legitimate degenerate input, not an error.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .common.errors import ConfigError
from .common.math_utils import path_length, safe_divide, side_of_segment
from .smoothing import smooth_path
from .tracker import Track

logger = logging.getLogger(__name__)

# WHO 2010 lower reference limits
WHO_CONCENTRATION_M_PER_ML = 15.0
WHO_PROGRESSIVE_PERCENT = 32.0
WHO_TOTAL_MOTILITY_PERCENT = 40.0


@dataclass
class AnalysisConfig:
    pixel_to_micron: Optional[float] = None  # must be calibrated per imaging setup
    motility_threshold: float = 5.0  # um/s VCL
    progressive_lin_threshold: float = 0.45
    tracked_min_samples: int = 5
    analysis_area_mm2: float = 1.0
    chamber_depth_um: float = 20.0
    bcf_dead_zone: float = 1.0  # cross-product units in raw pixels

    def validate(self) -> None:
        if self.pixel_to_micron is None or self.pixel_to_micron <= 0:
            raise ConfigError(
                f"pixel_to_micron must be calibrated and > 0, got {self.pixel_to_micron}"
            )
        if self.analysis_area_mm2 <= 0:
            raise ConfigError(
                f"analysis_area_mm2 must be > 0, got {self.analysis_area_mm2}"
            )
        if self.chamber_depth_um <= 0:
            raise ConfigError(
                f"chamber_depth_um must be > 0, got {self.chamber_depth_um}"
            )
        if self.motility_threshold < 0:
            raise ConfigError(
                f"motility_threshold must be >= 0, got {self.motility_threshold}"
            )


# ---------------------- Per-track kinematics ----------------------


def elapsed_time(timestamps: Sequence[float]) -> float:
    if len(timestamps) < 2:
        return 0.0
    return float(timestamps[-1] - timestamps[0])


def calculate_vcl(
    points: np.ndarray, timestamps: Sequence[float], pixel_to_micron: float
) -> float:
    """Curvilinear velocity (VCL)"""
    if len(points) < 2:
        return 0.0
    return safe_divide(path_length(points) * pixel_to_micron, elapsed_time(timestamps))


def calculate_vsl(
    points: np.ndarray, timestamps: Sequence[float], pixel_to_micron: float
) -> float:
    """Straight-line velocity (VSL)"""
    if len(points) < 2:
        return 0.0
    points = np.asarray(points, dtype=float)
    distance_um = float(np.linalg.norm(points[-1] - points[0])) * pixel_to_micron
    return safe_divide(distance_um, elapsed_time(timestamps))


def calculate_vap(
    smoothed: np.ndarray, timestamps: Sequence[float], pixel_to_micron: float
) -> float:
    """Average-path velocity (VAP)"""
    if len(smoothed) < 2:
        return 0.0
    return safe_divide(
        path_length(smoothed) * pixel_to_micron, elapsed_time(timestamps)
    )


def calculate_alh(
    points: np.ndarray, smoothed: np.ndarray, pixel_to_micron: float
) -> float:
    """
    Lateral head displacement: mean distance between each raw sample and the
    smoothed sample at the same index.
    """
    if len(points) < 3:
        return 0.0
    n = min(len(points), len(smoothed))
    points = np.asarray(points, dtype=float)[:n]
    smoothed = np.asarray(smoothed, dtype=float)[:n]
    deviations = np.linalg.norm(points - smoothed, axis=1) * pixel_to_micron
    return float(np.mean(deviations)) if n else 0.0


def calculate_bcf(
    points: np.ndarray,
    smoothed: np.ndarray,
    timestamps: Sequence[float],
    dead_zone: float = 1.0,
) -> float:
    """
    Beat-cross frequency: how often the raw path switches side of the
    smoothed path, per second.

    Points inside the dead zone count as on-path and break a run, so a
    left -> on-path -> right sequence is not a crossing.
    """
    if len(points) < 5:
        return 0.0

    n = min(len(points), len(smoothed))
    crossings = 0
    last_side = 0
    for i in range(1, n - 1):
        side = side_of_segment(points[i], smoothed[i], smoothed[i + 1], dead_zone)
        if last_side != 0 and side != 0 and last_side != side:
            crossings += 1
        last_side = side

    return safe_divide(crossings, elapsed_time(timestamps))


@dataclass(frozen=True)
class KinematicMetrics:
    track_id: int
    n_samples: int
    vcl: float
    vsl: float
    vap: float
    lin: float
    str_ratio: float
    wob: float
    alh: float
    bcf: float
    path_length_um: float
    elapsed_s: float
    mean_confidence: float

    def as_row(self) -> Dict[str, Any]:
        return {
            "track_id": self.track_id,
            "track_length": self.n_samples,
            "VCL_um_s": self.vcl,
            "VSL_um_s": self.vsl,
            "VAP_um_s": self.vap,
            "LIN": self.lin,
            "STR": self.str_ratio,
            "WOB": self.wob,
            "ALH_um": self.alh,
            "BCF_Hz": self.bcf,
            "path_length_um": self.path_length_um,
            "elapsed_s": self.elapsed_s,
            "mean_confidence": self.mean_confidence,
        }


def compute_kinematics(
    track: Track, pixel_to_micron: float, bcf_dead_zone: float = 1.0
) -> KinematicMetrics:
    """Compute all CASA parameters for one finalized track."""
    if pixel_to_micron is None or pixel_to_micron <= 0:
        raise ConfigError(f"pixel_to_micron must be > 0, got {pixel_to_micron}")

    points = track.positions_array()
    timestamps = track.timestamps_array()
    smoothed = smooth_path(points)

    vcl = calculate_vcl(points, timestamps, pixel_to_micron)
    vsl = calculate_vsl(points, timestamps, pixel_to_micron)
    vap = calculate_vap(smoothed, timestamps, pixel_to_micron)

    return KinematicMetrics(
        track_id=track.id,
        n_samples=len(track),
        vcl=vcl,
        vsl=vsl,
        vap=vap,
        lin=safe_divide(vsl, vcl),
        str_ratio=safe_divide(vsl, vap),
        wob=safe_divide(vap, vcl),
        alh=calculate_alh(points, smoothed, pixel_to_micron),
        bcf=calculate_bcf(points, smoothed, timestamps, bcf_dead_zone),
        path_length_um=path_length(points) * pixel_to_micron,
        elapsed_s=elapsed_time(timestamps),
        mean_confidence=track.mean_confidence(),
    )


def compute_track_metrics(
    tracks: Sequence[Track], cfg: AnalysisConfig, n_jobs: int = 1
) -> List[KinematicMetrics]:
    """
    Kinematics for every track, in input order.

    Tracks are independent, so the work is spread with joblib; ``n_jobs=1``
    runs sequentially without worker processes.
    """
    cfg.validate()
    if not tracks:
        return []
    logger.info("Computing kinematics for %d tracks (n_jobs=%d)", len(tracks), n_jobs)
    return list(
        Parallel(n_jobs=n_jobs, backend="loky", verbose=0)(
            delayed(compute_kinematics)(trk, cfg.pixel_to_micron, cfg.bcf_dead_zone)
            for trk in tracks
        )
    )


def metrics_to_dataframe(metrics: Sequence[KinematicMetrics]) -> pd.DataFrame:
    columns = [
        "track_id",
        "track_length",
        "VCL_um_s",
        "VSL_um_s",
        "VAP_um_s",
        "LIN",
        "STR",
        "WOB",
        "ALH_um",
        "BCF_Hz",
        "path_length_um",
        "elapsed_s",
        "mean_confidence",
    ]
    return pd.DataFrame([m.as_row() for m in metrics], columns=columns)


# ---------------------- Population ----------------------


def is_motile(m: KinematicMetrics, cfg: AnalysisConfig) -> bool:
    return m.vcl > cfg.motility_threshold


def is_progressive(m: KinematicMetrics, cfg: AnalysisConfig) -> bool:
    return is_motile(m, cfg) and m.lin > cfg.progressive_lin_threshold


@dataclass(frozen=True)
class PopulationMetrics:
    total_count: int
    tracked_count: int
    motile_count: int
    progressive_count: int
    total_motility: float  # %
    progressive_motility: float  # %
    non_progressive_motility: float  # %
    immotile: float  # %
    concentration: float  # objects / uL
    vcl: float
    vsl: float
    vap: float
    lin: float
    str_ratio: float
    wob: float
    alh: float
    bcf: float
    total_motile_estimate: float
    mean_confidence: Optional[float] = None

    @property
    def concentration_million_per_ml(self) -> float:
        # 1 uL = 1e-3 mL
        return self.concentration * 1000.0 / 1e6

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["concentration_million_per_ml"] = self.concentration_million_per_ml
        return d


def aggregate_population(
    metrics: Sequence[KinematicMetrics], cfg: AnalysisConfig
) -> PopulationMetrics:
    """Reduce valid-track metrics into sample-level statistics."""
    total = len(metrics)
    tracked = sum(1 for m in metrics if m.n_samples >= cfg.tracked_min_samples)
    motile = sum(1 for m in metrics if is_motile(m, cfg))
    progressive = sum(1 for m in metrics if is_progressive(m, cfg))

    moving = [m for m in metrics if m.vcl != 0]

    def mean_of(attr: str) -> float:
        if not moving:
            return 0.0
        return float(np.mean([getattr(m, attr) for m in moving]))

    if total > 0:
        total_motility = motile / total * 100
        progressive_motility = progressive / total * 100
        immotile = 100 - total_motility
        volume_ul = cfg.analysis_area_mm2 * cfg.chamber_depth_um / 1000
        concentration = safe_divide(total, volume_ul)
    else:
        total_motility = progressive_motility = immotile = concentration = 0.0

    confidences = [m.mean_confidence for m in metrics if m.n_samples > 0]

    population = PopulationMetrics(
        total_count=total,
        tracked_count=tracked,
        motile_count=motile,
        progressive_count=progressive,
        total_motility=total_motility,
        progressive_motility=progressive_motility,
        non_progressive_motility=total_motility - progressive_motility,
        immotile=immotile,
        concentration=concentration,
        vcl=mean_of("vcl"),
        vsl=mean_of("vsl"),
        vap=mean_of("vap"),
        lin=mean_of("lin"),
        str_ratio=mean_of("str_ratio"),
        wob=mean_of("wob"),
        alh=mean_of("alh"),
        bcf=mean_of("bcf"),
        total_motile_estimate=total * total_motility / 100.0,
        mean_confidence=float(np.mean(confidences)) if confidences else None,
    )

    logger.info(
        "Population: %d sperm, %.1f%% motile, %.1f%% progressive, %.1f/uL",
        population.total_count,
        population.total_motility,
        population.progressive_motility,
        population.concentration,
    )
    return population


# ---------------------- Interpretation ----------------------


class Interpretation(Enum):
    NORMAL = "normal"
    OLIGOSPERMIA = "oligospermia"
    ASTHENOSPERMIA = "asthenospermia"
    OLIGOASTHENOSPERMIA = "oligoasthenospermia"
    AZOOSPERMIA = "azoospermia"


def interpret(population: PopulationMetrics) -> Interpretation:
    """Classify against WHO 2010 reference values (no morphology)."""
    if population.total_count == 0:
        return Interpretation.AZOOSPERMIA

    oligo = population.concentration_million_per_ml < WHO_CONCENTRATION_M_PER_ML
    astheno = population.progressive_motility < WHO_PROGRESSIVE_PERCENT

    if oligo and astheno:
        return Interpretation.OLIGOASTHENOSPERMIA
    if oligo:
        return Interpretation.OLIGOSPERMIA
    if astheno:
        return Interpretation.ASTHENOSPERMIA
    return Interpretation.NORMAL


def interpretation_notes(population: PopulationMetrics) -> List[str]:
    notes = []
    if population.concentration_million_per_ml < WHO_CONCENTRATION_M_PER_ML:
        notes.append("Sperm concentration below reference (oligospermia)")
    else:
        notes.append("Sperm concentration within reference")

    if population.progressive_motility < WHO_PROGRESSIVE_PERCENT:
        notes.append("Progressive motility below reference")
    else:
        notes.append("Progressive motility within reference")

    if population.total_motility < WHO_TOTAL_MOTILITY_PERCENT:
        notes.append("Total motility below reference")
    else:
        notes.append("Total motility within reference")

    if population.vcl > 0:
        if population.vcl < 20:
            notes.append("Low sperm velocity")
        elif population.vcl > 50:
            notes.append("High sperm velocity")
        else:
            notes.append("Sperm velocity within normal range")
    return notes


# ---------------------- Report ----------------------


def generate_report(population: PopulationMetrics, params: Dict[str, Any]) -> str:
    """Generate formatted analysis report with all parameters."""
    if population.total_count == 0:
        return "No valid tracks found for analysis."

    def pb(pct: float, width: int = 30) -> str:
        """Generate proportional progress bar."""
        filled = int(width * max(0.0, min(pct, 100.0)) / 100)
        return "█" * filled + "░" * (width - filled)

    p = population
    notes = "\n".join(f"  - {n}" for n in interpretation_notes(p))

    report = f"""
╔══════════════════════════════════════════════════════════════╗
║           SPERM MOTILITY ANALYSIS REPORT (CASA)              ║
╚══════════════════════════════════════════════════════════════╝

ANALYSIS PARAMETERS
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  Pixel size:              {params["pixel_to_micron"]} μm/pixel
  Frame rate:              {params["frame_rate"]} fps
  Motility threshold:      VCL > {params["motility_threshold"]} μm/s
  Progressive rule:        motile & LIN > {params["progressive_lin_threshold"]}
  Analysis volume:         {params["analysis_area_mm2"]} mm² × {params["chamber_depth_um"]} μm

COUNTS
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  Total sperm:             {p.total_count}
  Tracked (≥{params["tracked_min_samples"]} samples):    {p.tracked_count}
  Concentration:           {p.concentration:.1f} /μL ({p.concentration_million_per_ml:.3f} M/mL)

MOTILITY
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  Total motility:          {p.total_motility:>6.2f}% {pb(p.total_motility)}
  Progressive:             {p.progressive_motility:>6.2f}% {pb(p.progressive_motility)}
  Non-progressive:         {p.non_progressive_motility:>6.2f}% {pb(p.non_progressive_motility)}
  Immotile:                {p.immotile:>6.2f}% {pb(p.immotile)}

VELOCITY PARAMETERS
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  VCL (Curvilinear):       {p.vcl:>6.2f} μm/s
  VSL (Straight-line):     {p.vsl:>6.2f} μm/s
  VAP (Average path):      {p.vap:>6.2f} μm/s
  LIN / STR / WOB:         {p.lin:.3f} / {p.str_ratio:.3f} / {p.wob:.3f}
  ALH:                     {p.alh:>6.2f} μm
  BCF:                     {p.bcf:>6.2f} Hz

INTERPRETATION: {interpret(p).value.upper()}
{notes}
"""
    return report
