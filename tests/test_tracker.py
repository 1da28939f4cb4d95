"""
Tests for frame-to-frame track association
"""

import unittest

import numpy as np

from casa_motility.core.common.data_structures import Detection, FrameDetections
from casa_motility.core.common.errors import FrameOrderError, TrackStateError
from casa_motility.core.tracker import (
    NearestNeighborTracker,
    Track,
    TrackerConfig,
    TrackState,
    run_tracking,
    tracks_to_dataframe,
)


def make_frame(frame, points, frame_rate=1.0):
    dets = [Detection(frame, x, y, 4.0, 4.0, 0.9) for x, y in points]
    return FrameDetections.from_detections(frame, dets, frame_rate)


def straight_line(n_frames, start=(0.0, 0.0), step=(10.0, 0.0)):
    return [
        make_frame(i, [(start[0] + step[0] * i, start[1] + step[1] * i)])
        for i in range(n_frames)
    ]


class TestTrack(unittest.TestCase):
    """Test the track record and its state transitions."""

    def test_new_track_is_tentative(self):
        trk = Track(1, Detection(0, 1.0, 2.0, 4, 4, 0.8), 0.0)
        self.assertEqual(trk.state, TrackState.TENTATIVE)
        self.assertEqual(len(trk), 1)
        self.assertEqual(trk.start_frame, 0)

    def test_append_activates_and_resets_missed(self):
        trk = Track(1, Detection(0, 1.0, 2.0, 4, 4, 0.8), 0.0)
        trk.mark_missed()
        self.assertEqual(trk.state, TrackState.LOST)
        self.assertEqual(trk.missed_frames, 1)

        trk.append(Detection(2, 3.0, 2.0, 4, 4, 0.6), 2.0)

        self.assertEqual(trk.state, TrackState.ACTIVE)
        self.assertEqual(trk.missed_frames, 0)
        self.assertAlmostEqual(trk.mean_confidence(), 0.7)

    def test_append_rejects_non_increasing_frame(self):
        trk = Track(1, Detection(3, 1.0, 2.0, 4, 4, 0.8), 0.0)
        with self.assertRaises(FrameOrderError):
            trk.append(Detection(3, 1.0, 2.0, 4, 4, 0.8), 0.0)

    def test_records_given_frame_index(self):
        trk = Track(1, Detection(0, 1.0, 2.0, 4, 4, 0.8), 0.0, frame=4)
        trk.append(Detection(0, 3.0, 2.0, 4, 4, 0.8), 1.0, frame=5)

        self.assertEqual(trk.start_frame, 4)
        self.assertEqual(trk.frames, [4, 5])
        np.testing.assert_allclose(trk.last_position(), [3.0, 2.0])

    def test_terminated_track_is_immutable(self):
        trk = Track(1, Detection(0, 1.0, 2.0, 4, 4, 0.8), 0.0)
        trk.terminate(0)
        with self.assertRaises(TrackStateError):
            trk.append(Detection(1, 1.0, 2.0, 4, 4, 0.8), 1.0)
        with self.assertRaises(TrackStateError):
            trk.mark_missed()


class TestNearestNeighborTracker(unittest.TestCase):
    """Test greedy association, aging and termination."""

    def test_single_object_forms_one_track(self):
        tracks = run_tracking(straight_line(3))

        self.assertEqual(len(tracks), 1)
        trk = tracks[0]
        self.assertEqual(trk.id, 1)
        self.assertEqual(trk.positions, [(0.0, 0.0), (10.0, 0.0), (20.0, 0.0)])
        self.assertEqual(trk.timestamps, [0.0, 1.0, 2.0])
        self.assertEqual(trk.state, TrackState.TERMINATED)
        self.assertEqual(trk.end_frame, 2)

    def test_ids_follow_detection_order(self):
        tracker = NearestNeighborTracker()
        tracker.update(make_frame(0, [(100, 100), (300, 300)]))
        tracker.update(make_frame(1, [(105, 100), (305, 300), (500, 500)]))

        ids = {t.positions[0]: t.id for t in tracker.live_tracks}
        self.assertEqual(ids[(100.0, 100.0)], 1)
        self.assertEqual(ids[(300.0, 300.0)], 2)
        self.assertEqual(ids[(500.0, 500.0)], 3)
        self.assertEqual(tracker.next_id, 4)

    def test_association_distance_is_strict(self):
        tracker = NearestNeighborTracker()
        tracker.update(make_frame(0, [(0, 0)]))
        tracker.update(make_frame(1, [(50, 0)]))

        tracks = tracker.finish()

        self.assertEqual(len(tracks), 2)
        self.assertEqual([len(t) for t in tracks], [1, 1])

    def test_far_jump_starts_new_track(self):
        tracker = NearestNeighborTracker()
        tracker.update(make_frame(0, [(0, 0)]))
        tracker.update(make_frame(1, [(200, 0)]))

        first, second = tracker.live_tracks
        self.assertEqual(first.state, TrackState.LOST)
        self.assertEqual(first.missed_frames, 1)
        self.assertEqual(second.state, TrackState.TENTATIVE)

    def test_lower_id_wins_tie(self):
        tracker = NearestNeighborTracker()
        tracker.update(make_frame(0, [(0, 0), (20, 0)]))
        tracker.update(make_frame(1, [(10, 0)]))

        t1, t2 = tracker.tracks[1], tracker.tracks[2]
        self.assertEqual(len(t1), 2)
        self.assertEqual(t1.state, TrackState.ACTIVE)
        self.assertEqual(len(t2), 1)
        self.assertEqual(t2.missed_frames, 1)

    def test_greedy_processes_tracks_in_id_order(self):
        tracker = NearestNeighborTracker()
        tracker.update(make_frame(0, [(0, 0), (30, 0)]))
        tracker.update(make_frame(1, [(25, 0), (100, 0)]))

        self.assertEqual(tracker.tracks[1].positions[-1], (25.0, 0.0))
        self.assertEqual(tracker.tracks[2].missed_frames, 1)
        self.assertEqual(tracker.tracks[3].positions, [(100.0, 0.0)])

    def test_optimal_mode_minimizes_total_distance(self):
        tracker = NearestNeighborTracker(TrackerConfig(assignment_mode="optimal"))
        tracker.update(make_frame(0, [(0, 0), (30, 0)]))
        tracker.update(make_frame(1, [(25, 0), (100, 0)]))

        self.assertEqual(tracker.tracks[2].positions[-1], (25.0, 0.0))
        self.assertEqual(tracker.tracks[1].missed_frames, 1)

    def test_empty_frame_ages_every_live_track(self):
        tracker = NearestNeighborTracker()
        tracker.update(make_frame(0, [(0, 0), (200, 200)]))
        tracker.update(make_frame(1, []))

        for trk in tracker.live_tracks:
            self.assertEqual(trk.missed_frames, 1)
            self.assertEqual(trk.state, TrackState.LOST)

    def test_terminates_after_exceeding_missed_limit(self):
        tracker = NearestNeighborTracker(TrackerConfig(max_missed_frames=5))
        tracker.update(make_frame(0, [(0, 0)]))
        for frame in range(1, 6):
            tracker.update(make_frame(frame, []))

        trk = tracker.tracks[1]
        self.assertEqual(trk.missed_frames, 5)
        self.assertEqual(trk.state, TrackState.LOST)

        tracker.update(make_frame(6, []))

        self.assertEqual(trk.state, TrackState.TERMINATED)
        self.assertEqual(trk.end_frame, 6)
        self.assertEqual(tracker.live_tracks, [])
        self.assertEqual(tracker.terminated_tracks, [trk])

    def test_lost_track_recovers(self):
        tracker = NearestNeighborTracker()
        tracker.update(make_frame(0, [(0, 0)]))
        tracker.update(make_frame(1, []))
        tracker.update(make_frame(2, []))
        tracker.update(make_frame(3, [(15, 0)]))

        trk = tracker.tracks[1]
        self.assertEqual(trk.state, TrackState.ACTIVE)
        self.assertEqual(trk.frames, [0, 3])
        self.assertEqual(len(tracker.tracks), 1)

    def test_terminated_track_does_not_come_back(self):
        tracker = NearestNeighborTracker(TrackerConfig(max_missed_frames=0))
        tracker.update(make_frame(0, [(0, 0)]))
        tracker.update(make_frame(1, []))
        tracker.update(make_frame(2, [(5, 0)]))

        self.assertTrue(tracker.tracks[1].is_terminated)
        self.assertEqual(tracker.tracks[2].positions, [(5.0, 0.0)])

    def test_frames_must_increase(self):
        tracker = NearestNeighborTracker()
        tracker.update(make_frame(3, [(0, 0)]))
        with self.assertRaises(FrameOrderError):
            tracker.update(make_frame(3, [(0, 0)]))
        with self.assertRaises(FrameOrderError):
            tracker.update(make_frame(1, [(0, 0)]))

    def test_frame_with_stale_detections_is_rejected(self):
        with self.assertRaises(FrameOrderError):
            FrameDetections(1, 1.0, (Detection(0, 12.0, 10.0, 4.0, 4.0, 0.9),))

    def test_stale_frame_leaves_tracker_untouched(self):
        tracker = NearestNeighborTracker()
        tracker.update(make_frame(5, [(10, 10)]))

        with self.assertRaises(FrameOrderError):
            tracker.update(
                FrameDetections(6, 6.0, (Detection(2, 12.0, 10.0, 4.0, 4.0, 0.9),))
            )

        self.assertEqual(tracker.last_frame, 5)
        self.assertEqual(tracker.tracks[1].frames, [5])
        tracker.update(make_frame(6, [(12, 10)]))
        self.assertEqual(tracker.tracks[1].frames, [5, 6])

    def test_no_updates_after_finish(self):
        tracker = NearestNeighborTracker()
        tracker.update(make_frame(0, [(0, 0)]))
        tracker.finish()
        with self.assertRaises(FrameOrderError):
            tracker.update(make_frame(1, [(0, 0)]))

    def test_finish_ends_live_tracks_at_last_frame(self):
        tracker = NearestNeighborTracker()
        for f in straight_line(4):
            tracker.update(f)

        tracks = tracker.finish()

        self.assertTrue(all(t.is_terminated for t in tracks))
        self.assertEqual(tracks[0].end_frame, 3)
        self.assertEqual(tracker.finish(), tracks)

    def test_deterministic(self):
        frames = [
            make_frame(0, [(0, 0), (40, 0), (80, 0)]),
            make_frame(1, [(20, 0), (60, 0)]),
            make_frame(2, []),
            make_frame(3, [(30, 5), (70, 5), (300, 300)]),
        ]

        first = [(t.id, t.positions, t.end_frame) for t in run_tracking(frames)]
        second = [(t.id, t.positions, t.end_frame) for t in run_tracking(frames)]

        self.assertEqual(first, second)

    def test_ids_strictly_increasing(self):
        frames = [make_frame(i, [(i * 100.0, 0.0)]) for i in range(6)]
        ids = [t.id for t in run_tracking(frames)]
        self.assertEqual(ids, [1, 2, 3, 4, 5, 6])


class TestTracksToDataframe(unittest.TestCase):
    """Test long-form track export."""

    def test_columns_and_rows(self):
        df = tracks_to_dataframe(run_tracking(straight_line(3)))

        self.assertEqual(len(df), 3)
        self.assertEqual(list(df["accumulated_length"]), [1, 2, 3])
        self.assertEqual(set(df["track_length"]), {3})
        self.assertEqual(set(df["state"]), {"terminated"})

    def test_empty(self):
        df = tracks_to_dataframe([])
        self.assertTrue(df.empty)
        self.assertIn("track_id", df.columns)


if __name__ == "__main__":
    unittest.main()
