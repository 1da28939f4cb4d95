#!/usr/bin/env python3
"""
CASA Motility Pipeline - command-line entry point for tracking and analysis.

Takes either a per-frame detections table or a stack of raw detector outputs,
runs tracking, validation, kinematics and population aggregation, and writes
tracks, per-track kinematics, a population summary and a text report.

Usage:
    casa-motility detections.csv -o results/ --fps 30 --pixel-size 0.2
    casa-motility raw_outputs.npy -o results/ --fps 30 --pixel-size 0.2 \
        --frame-width 1280 --frame-height 720
    casa-motility detections.csv -o results/ --params-file params.json
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from casa_motility.core.common.errors import CasaError, ConfigError
from casa_motility.core.common.io import (
    frames_from_dataframe,
    load_detections,
    load_params,
    load_raw_outputs,
    save_results,
)
from casa_motility.core.pipeline import (
    AnalysisResult,
    PipelineConfig,
    analyze_frame_detections,
    analyze_raw_outputs,
)

# ---------------------- Utilities ----------------------


def setup_logging(output_dir: Path, level: int = logging.INFO) -> None:
    """Configure logging to file and stdout."""
    output_dir.mkdir(parents=True, exist_ok=True)
    log_file = output_dir / "pipeline.log"

    # Clear existing handlers
    logger = logging.getLogger()
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)


# ---------------------- Parameter parsing helpers ----------------------

# cli dest -> (section, key)
CLI_OVERRIDES = {
    "conf_threshold": ("detection", "confidence_threshold"),
    "nms_threshold": ("detection", "nms_threshold"),
    "input_size": ("detection", "input_size"),
    "max_distance": ("tracking", "max_association_distance"),
    "max_missed": ("tracking", "max_missed_frames"),
    "assignment_mode": ("tracking", "assignment_mode"),
    "min_samples": ("validation", "min_track_samples"),
    "min_movement": ("validation", "min_track_movement"),
    "pixel_size": ("analysis", "pixel_to_micron"),
    "motility_threshold": ("analysis", "motility_threshold"),
    "progressive_lin": ("analysis", "progressive_lin_threshold"),
    "area_mm2": ("analysis", "analysis_area_mm2"),
    "depth_um": ("analysis", "chamber_depth_um"),
    "fps": ("pipeline", "frame_rate"),
    "n_jobs": ("pipeline", "n_jobs"),
}

SECTIONS = ("detection", "tracking", "validation", "analysis", "pipeline")


def load_configuration(args: argparse.Namespace) -> Dict[str, Dict[str, Any]]:
    """Merge an optional JSON params file with CLI overrides (CLI wins)."""
    params: Dict[str, Dict[str, Any]] = {key: {} for key in SECTIONS}

    if args.params_file:
        loaded = load_params(args.params_file)
        unknown = set(loaded) - set(SECTIONS)
        if unknown:
            raise ConfigError(f"Unknown sections in params file: {sorted(unknown)}")
        for key in SECTIONS:
            params[key].update(loaded.get(key) or {})

    for cli_arg, (section, name) in CLI_OVERRIDES.items():
        value = getattr(args, cli_arg, None)
        if value is not None:
            params[section][name] = value

    if args.progress:
        params["pipeline"]["show_progress"] = True

    return params


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="CASA sperm motility pipeline")
    p.add_argument(
        "input_path",
        type=Path,
        help="Detections table (.csv/.pkl) or raw detector output stack (.npy)",
    )
    p.add_argument(
        "-o", "--output-dir", required=True, type=Path, help="Output directory"
    )
    p.add_argument("--params-file", type=Path, help="Optional JSON params file")

    # ==================== Acquisition ====================
    acq = p.add_argument_group("Acquisition")
    acq.add_argument("--fps", type=float, default=None, help="Frames per second")
    acq.add_argument(
        "--pixel-size",
        type=float,
        default=None,
        help="Micrometers per pixel (must be calibrated for the imaging setup)",
    )
    acq.add_argument(
        "--frame-width", type=int, default=None, help="Original frame width (raw input)"
    )
    acq.add_argument(
        "--frame-height",
        type=int,
        default=None,
        help="Original frame height (raw input)",
    )
    acq.add_argument(
        "--num-frames",
        type=int,
        default=None,
        help="Total frames in the video, so trailing empty frames age tracks",
    )

    # ==================== Detection ====================
    det = p.add_argument_group("Detection Parameters")
    det.add_argument("--conf-threshold", type=float, default=None)
    det.add_argument("--nms-threshold", type=float, default=None)
    det.add_argument("--input-size", type=int, default=None)

    # ==================== Tracking ====================
    trk = p.add_argument_group("Tracking Parameters")
    trk.add_argument(
        "--max-distance",
        type=float,
        default=None,
        help="Maximum association distance (pixels)",
    )
    trk.add_argument(
        "--max-missed",
        type=int,
        default=None,
        help="Consecutive missed frames before a track terminates",
    )
    trk.add_argument(
        "--assignment-mode", choices=["greedy", "optimal"], default=None
    )
    trk.add_argument("--min-samples", type=int, default=None)
    trk.add_argument(
        "--min-movement",
        type=float,
        default=None,
        help="Minimum path length for a valid track (pixels)",
    )

    # ==================== Analysis ====================
    ana = p.add_argument_group("Analysis Parameters")
    ana.add_argument(
        "--motility-threshold", type=float, default=None, help="VCL threshold (um/s)"
    )
    ana.add_argument("--progressive-lin", type=float, default=None)
    ana.add_argument("--area-mm2", type=float, default=None)
    ana.add_argument("--depth-um", type=float, default=None)

    # ==================== Control ====================
    ctl = p.add_argument_group("Control")
    ctl.add_argument("--n-jobs", type=int, default=None)
    ctl.add_argument("--progress", action="store_true", help="Show progress bar")
    ctl.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    return p


# ---------------------- Main pipeline ----------------------


def run_input(
    in_file: Path, args: argparse.Namespace, cfg: PipelineConfig
) -> AnalysisResult:
    suffix = in_file.suffix.lower()
    if suffix == ".npy":
        if args.frame_width is None or args.frame_height is None:
            raise ConfigError("--frame-width and --frame-height are required for .npy input")
        raw = load_raw_outputs(in_file)
        return analyze_raw_outputs(raw, args.frame_width, args.frame_height, cfg)

    if suffix in (".csv", ".pkl"):
        df = load_detections(in_file)
        frames = frames_from_dataframe(df, cfg.frame_rate, args.num_frames)
        logging.info("Loaded %d detections over %d frames", len(df), len(frames))
        return analyze_frame_detections(frames, cfg)

    raise ConfigError(f"Unsupported input extension: {in_file.suffix}")


def process_input(in_file: Path, args: argparse.Namespace) -> bool:
    """Process one input file through the complete pipeline."""
    t0 = time.time()
    stem = in_file.stem
    out_dir = args.output_dir

    log_level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(out_dir, level=log_level)
    logging.info("Processing %s", in_file)

    try:
        cfg = PipelineConfig.from_dict(load_configuration(args))
        cfg.validate()
        result = run_input(in_file, args, cfg)
        save_results(result, out_dir, stem)
        print(result.report())
        logging.info("Processing complete: %s (%.2fs)", stem, time.time() - t0)
        return True
    except (CasaError, FileNotFoundError, ValueError) as e:
        logging.error("Processing failed for %s: %s", stem, e)
        logging.debug("Detailed error information:", exc_info=True)
        return False


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CASA pipeline."""
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    if not args.input_path.exists():
        print(f"Input path does not exist: {args.input_path}")
        return 1

    return 0 if process_input(args.input_path, args) else 1


if __name__ == "__main__":
    sys.exit(main())
