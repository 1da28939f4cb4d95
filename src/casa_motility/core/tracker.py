#!/usr/bin/env python3
"""
Frame-to-frame track association.

Tracks are plain records kept in an append-only arena keyed by track id.
Each frame, live tracks (ascending id) greedily claim their nearest
unassigned detection within the association distance; leftover detections
start new tracks. Tracks missing for more than ``max_missed_frames``
consecutive frames are terminated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd
from numba import njit
from scipy.optimize import linear_sum_assignment
from scipy.spatial.distance import cdist

from .common.data_structures import Detection, FrameDetections, TrackSample
from .common.errors import ConfigError, FrameOrderError, TrackStateError

logger = logging.getLogger(__name__)

ASSIGNMENT_MODES = ("greedy", "optimal")


@njit
def _greedy_nearest(C, max_distance):
    """
    Greedy nearest-neighbour assignment, rows in order.

    Each row claims its closest still-unused column (lowest column index on
    ties) when that distance is below ``max_distance``.

    Returns:
        Array with the claimed column per row, -1 where nothing was claimed
    """
    n_trk, n_det = C.shape
    used = np.zeros(n_det, np.bool_)
    out = np.empty(n_trk, np.int64)
    out[:] = -1
    for i in range(n_trk):
        best = -1
        best_d = np.inf
        for j in range(n_det):
            if not used[j] and C[i, j] < best_d:
                best_d = C[i, j]
                best = j
        if best >= 0 and best_d < max_distance:
            out[i] = best
            used[best] = True
    return out


def _optimal_assignment(C: np.ndarray, max_distance: float) -> np.ndarray:
    """Globally optimal assignment on the distance-gated cost matrix."""
    out = np.full(C.shape[0], -1, dtype=np.int64)
    gated = np.where(C < max_distance, C, 1e9)
    trk_idx, det_idx = linear_sum_assignment(gated)
    for i, j in zip(trk_idx, det_idx):
        if C[i, j] < max_distance:
            out[i] = j
    return out


@dataclass
class TrackerConfig:
    max_association_distance: float = 50.0
    max_missed_frames: int = 5
    assignment_mode: str = "greedy"

    def validate(self) -> None:
        if self.max_association_distance <= 0:
            raise ConfigError(
                f"max_association_distance must be > 0, got {self.max_association_distance}"
            )
        if self.max_missed_frames < 0:
            raise ConfigError(
                f"max_missed_frames must be >= 0, got {self.max_missed_frames}"
            )
        if self.assignment_mode not in ASSIGNMENT_MODES:
            raise ConfigError(
                f"assignment_mode must be one of {ASSIGNMENT_MODES}, got {self.assignment_mode!r}"
            )


class TrackState(Enum):
    TENTATIVE = "tentative"
    ACTIVE = "active"
    LOST = "lost"
    TERMINATED = "terminated"


class Track:
    def __init__(
        self,
        track_id: int,
        det: Detection,
        timestamp: float,
        frame: Optional[int] = None,
    ):
        frame = det.frame if frame is None else frame
        self.id = track_id
        self.start_frame: int = frame
        self.end_frame: Optional[int] = None
        self.frames: List[int] = []
        self.positions: List[tuple] = []
        self.timestamps: List[float] = []
        self.confidences: List[float] = []
        self.missed_frames: int = 0
        self.state = TrackState.TENTATIVE

        self._append(det, timestamp, frame)

    def __len__(self) -> int:
        return len(self.positions)

    def __repr__(self) -> str:
        return (
            f"Track(id={self.id}, state={self.state.value}, samples={len(self)}, "
            f"frames={self.start_frame}-{self.end_frame})"
        )

    @property
    def is_terminated(self) -> bool:
        return self.state is TrackState.TERMINATED

    def last_position(self) -> np.ndarray:
        return np.array(self.positions[-1], dtype=float)

    def positions_array(self) -> np.ndarray:
        return np.asarray(self.positions, dtype=float).reshape(-1, 2)

    def timestamps_array(self) -> np.ndarray:
        return np.asarray(self.timestamps, dtype=float)

    def samples(self) -> List[TrackSample]:
        return [
            TrackSample(f, p[0], p[1], t, c)
            for f, p, t, c in zip(
                self.frames, self.positions, self.timestamps, self.confidences
            )
        ]

    def mean_confidence(self) -> float:
        return float(np.mean(self.confidences)) if self.confidences else 0.0

    def _append(self, det: Detection, timestamp: float, frame: int) -> None:
        if self.is_terminated:
            raise TrackStateError(f"Track {self.id} is terminated")
        if self.frames and frame <= self.frames[-1]:
            raise FrameOrderError(
                f"Track {self.id}: frame {frame} does not follow {self.frames[-1]}"
            )
        self.frames.append(frame)
        self.positions.append((det.x, det.y))
        self.timestamps.append(timestamp)
        self.confidences.append(det.confidence)

    def append(
        self, det: Detection, timestamp: float, frame: Optional[int] = None
    ) -> None:
        self._append(det, timestamp, det.frame if frame is None else frame)
        self.missed_frames = 0
        self.state = TrackState.ACTIVE

    def mark_missed(self) -> None:
        if self.is_terminated:
            raise TrackStateError(f"Track {self.id} is terminated")
        self.missed_frames += 1
        self.state = TrackState.LOST

    def terminate(self, frame: int) -> None:
        if self.is_terminated:
            raise TrackStateError(f"Track {self.id} is already terminated")
        self.end_frame = frame
        self.state = TrackState.TERMINATED


class NearestNeighborTracker:
    """
    Stateful associator; feed frames in strictly increasing order, then
    call ``finish()``.
    """

    def __init__(self, cfg: Optional[TrackerConfig] = None):
        self.cfg = cfg or TrackerConfig()
        self.cfg.validate()
        self.tracks: Dict[int, Track] = {}
        self.next_id: int = 1
        self.last_frame: Optional[int] = None
        self.finished: bool = False
        self._live: List[int] = []

    @property
    def live_tracks(self) -> List[Track]:
        return [self.tracks[i] for i in self._live]

    @property
    def terminated_tracks(self) -> List[Track]:
        return [t for t in self.tracks.values() if t.is_terminated]

    def update(self, frame_dets: FrameDetections) -> None:
        if self.finished:
            raise FrameOrderError("Tracker already finished; no more frames accepted")
        frame = frame_dets.frame
        if self.last_frame is not None and frame <= self.last_frame:
            raise FrameOrderError(
                f"Frame {frame} received after frame {self.last_frame}"
            )
        self.last_frame = frame

        detections = list(frame_dets.detections)
        live = self.live_tracks
        assigned = self._assign(live, detections)

        claimed = set()
        for trk, j in zip(live, assigned):
            if j >= 0:
                trk.append(detections[j], frame_dets.timestamp, frame)
                claimed.add(int(j))
            else:
                trk.mark_missed()

        terminated = 0
        for trk in live:
            if trk.missed_frames > self.cfg.max_missed_frames:
                trk.terminate(frame)
                terminated += 1
        if terminated:
            self._live = [i for i in self._live if not self.tracks[i].is_terminated]

        spawned = 0
        for j, det in enumerate(detections):
            if j not in claimed:
                self._spawn(det, frame_dets.timestamp, frame)
                spawned += 1

        logger.debug(
            "Frame %d: %d detections, %d matched, %d spawned, %d terminated, %d live",
            frame,
            len(detections),
            len(claimed),
            spawned,
            terminated,
            len(self._live),
        )

    def finish(self) -> List[Track]:
        """Terminate every live track at the last frame seen and return all tracks."""
        if not self.finished:
            end = self.last_frame if self.last_frame is not None else 0
            for trk in self.live_tracks:
                trk.terminate(end)
            self._live = []
            self.finished = True
            logger.info(
                "Tracking finished at frame %s: %d tracks created",
                self.last_frame,
                len(self.tracks),
            )
        return list(self.tracks.values())

    def _assign(self, live: List[Track], detections: List[Detection]) -> np.ndarray:
        if not live:
            return np.empty(0, dtype=np.int64)
        if not detections:
            return np.full(len(live), -1, dtype=np.int64)

        trk_pos = np.array([t.last_position() for t in live])
        det_pos = np.array([d.center for d in detections], dtype=float)
        C = cdist(trk_pos, det_pos)

        if self.cfg.assignment_mode == "optimal":
            return _optimal_assignment(C, self.cfg.max_association_distance)
        return _greedy_nearest(C, float(self.cfg.max_association_distance))

    def _spawn(self, det: Detection, timestamp: float, frame: int) -> Track:
        track = Track(self.next_id, det, timestamp, frame)
        self.tracks[track.id] = track
        self._live.append(track.id)
        self.next_id += 1
        return track


def run_tracking(
    frames: Iterable[FrameDetections], cfg: Optional[TrackerConfig] = None
) -> List[Track]:
    """Run the tracker over an ordered frame sequence and return all terminated tracks."""
    tracker = NearestNeighborTracker(cfg)
    for frame_dets in frames:
        tracker.update(frame_dets)
    return tracker.finish()


def tracks_to_dataframe(tracks: Iterable[Track]) -> pd.DataFrame:
    """Long-form table with one row per track sample."""
    rows = []
    for trk in tracks:
        for i, s in enumerate(trk.samples()):
            rows.append(
                {
                    "track_id": trk.id,
                    "frame": s.frame,
                    "x": s.x,
                    "y": s.y,
                    "timestamp": s.timestamp,
                    "confidence": s.confidence,
                    "accumulated_length": i + 1,
                    "track_length": len(trk),
                    "state": trk.state.value,
                }
            )
    columns = [
        "track_id",
        "frame",
        "x",
        "y",
        "timestamp",
        "confidence",
        "accumulated_length",
        "track_length",
        "state",
    ]
    return pd.DataFrame(rows, columns=columns)
