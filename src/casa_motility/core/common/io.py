#!/usr/bin/env python3
"""
File I/O: detection tables, raw detector output stacks, JSON params and
result export.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .data_structures import Detection, FrameDetections
from .errors import ConfigError, DetectorOutputError

logger = logging.getLogger(__name__)

DETECTION_COLUMNS = ["frame", "x", "y", "width", "height", "confidence"]


def load_detections(path: Path) -> pd.DataFrame:
    """Read a detections table (CSV or pickled DataFrame)."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    df = pd.read_pickle(path) if path.suffix == ".pkl" else pd.read_csv(path)
    if missing := set(DETECTION_COLUMNS) - set(df.columns):
        raise ValueError(f"Detections table missing required columns: {sorted(missing)}")
    if not df.empty and df["frame"].min() < 0:
        raise ValueError("Detections table contains negative frame indices")
    return df


def frames_from_dataframe(
    df: pd.DataFrame, frame_rate: float, n_frames: Optional[int] = None
) -> List[FrameDetections]:
    """
    Group a detections table into consecutive FrameDetections.

    Frames between 0 and the last frame with no rows become empty frames so
    that the tracker ages its tracks through them.
    """
    last = int(df["frame"].max()) + 1 if not df.empty else 0
    n_frames = max(n_frames or 0, last)

    per_frame: List[List[Detection]] = [[] for _ in range(n_frames)]
    has_class = "class_id" in df.columns
    for row in df.sort_values("frame", kind="stable").itertuples(index=False):
        per_frame[int(row.frame)].append(
            Detection(
                frame=int(row.frame),
                x=float(row.x),
                y=float(row.y),
                width=float(row.width),
                height=float(row.height),
                confidence=float(row.confidence),
                class_id=int(row.class_id) if has_class else 0,
            )
        )
    return [
        FrameDetections.from_detections(i, dets, frame_rate)
        for i, dets in enumerate(per_frame)
    ]


def load_raw_outputs(path: Path) -> np.ndarray:
    """Load a (T, N, 5 + C) stack of raw detector outputs saved with numpy."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    arr = np.load(path, allow_pickle=False)
    if arr.ndim != 3:
        raise DetectorOutputError(
            f"Raw output stack must be (frames, boxes, 5 + classes), got {arr.shape}"
        )
    logger.info("Loaded raw detector outputs %s from %s", arr.shape, path.name)
    return arr


def load_params(path: Path) -> Dict[str, Any]:
    path = Path(path)
    with open(path, "r") as fh:
        try:
            params = json.load(fh)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in params file {path}: {e}") from e
    if not isinstance(params, dict):
        raise ConfigError(f"Params file {path} must contain a JSON object")
    return params


def save_results(result, out_dir: Path, stem: str) -> Dict[str, Path]:
    """Write tracks, kinematics, population summary and report; return the paths."""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    paths = {
        "tracks": out_dir / f"{stem}_tracks.csv",
        "kinematics": out_dir / f"{stem}_kinematics.csv",
        "population": out_dir / f"{stem}_population.json",
        "report": out_dir / f"{stem}_report.txt",
    }

    result.tracks_dataframe().to_csv(paths["tracks"], index=False)
    result.metrics_dataframe().to_csv(paths["kinematics"], index=False)
    with open(paths["population"], "w") as fh:
        json.dump(result.summary(), fh, indent=2)
    with open(paths["report"], "w", encoding="utf-8") as fh:
        fh.write(result.report())

    for name, p in paths.items():
        logger.info("Saved %s: %s", name, p.name)
    return paths
