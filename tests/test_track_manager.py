"""
Tests for the per-target track state machine and notifications.
"""

import os
import sys
import unittest

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from markersight.pose import PoseResult  # type: ignore
from markersight.tracking.manager import (  # type: ignore
    Observation,
    TrackingStatus,
    TrackManager,
)


def observation(z=1.0):
    transform = np.eye(4)
    transform[2, 3] = z
    pose = PoseResult.from_matrix(transform, method="marker", inliers=4)
    return Observation(pose=pose, world_pose=pose.copy(), confidence=0.9)


class TestTrackManager(unittest.TestCase):
    """Status transitions of a single track."""

    def setUp(self):
        self.manager = TrackManager({"confirm_frames": 1, "lost_after_frames": 2})
        self.manager.add_track("a")
        self.events = []
        self.manager.subscribe(self.events.append)

    def status(self):
        return self.manager.get("a").status

    def test_new_track_is_not_tracked(self):
        self.assertEqual(self.status(), TrackingStatus.NOT_TRACKED)

    def test_observation_tracks_target(self):
        events = self.manager.update({"a": observation()}, timestamp=0.0)

        self.assertEqual(self.status(), TrackingStatus.TRACKED)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].previous_status, TrackingStatus.NOT_TRACKED)
        self.assertEqual(events[0].status, TrackingStatus.TRACKED)
        self.assertEqual(self.events, events)
        self.assertAlmostEqual(self.manager.get("a").confidence, 0.9)

    def test_miss_limits_then_loses_target(self):
        """A missed target holds its pose, then is lost after the grace period."""
        self.manager.update({"a": observation()})

        self.manager.update({})
        track = self.manager.get("a")
        self.assertEqual(track.status, TrackingStatus.LIMITED)
        self.assertIsNotNone(track.pose)
        self.assertIsNotNone(track.world_pose)

        self.manager.update({})
        self.assertEqual(self.status(), TrackingStatus.LIMITED)

        self.manager.update({})
        self.assertEqual(self.status(), TrackingStatus.LOST)
        self.assertEqual(
            [e.status for e in self.events],
            [TrackingStatus.TRACKED, TrackingStatus.LIMITED, TrackingStatus.LOST],
        )

    def test_limited_recovers_immediately(self):
        manager = TrackManager({"confirm_frames": 3, "lost_after_frames": 5})
        manager.add_track("a")
        for _ in range(3):
            manager.update({"a": observation()})
        manager.update({})
        self.assertEqual(manager.get("a").status, TrackingStatus.LIMITED)

        manager.update({"a": observation()})
        self.assertEqual(manager.get("a").status, TrackingStatus.TRACKED)

    def test_confirm_frames_requires_consecutive_observations(self):
        manager = TrackManager({"confirm_frames": 3, "lost_after_frames": 5})
        manager.add_track("a")

        manager.update({"a": observation()})
        manager.update({"a": observation()})
        manager.update({})
        manager.update({"a": observation()})
        self.assertEqual(manager.get("a").status, TrackingStatus.NOT_TRACKED)

        manager.update({"a": observation()})
        manager.update({"a": observation()})
        self.assertEqual(manager.get("a").status, TrackingStatus.TRACKED)

    def test_lost_target_reacquired(self):
        self.manager.update({"a": observation()})
        for _ in range(3):
            self.manager.update({})
        self.assertEqual(self.status(), TrackingStatus.LOST)

        self.manager.update({"a": observation(2.0)})
        self.assertEqual(self.status(), TrackingStatus.TRACKED)
        # Filter was reset on loss, so the new pose is not blended with the old one
        z = float(self.manager.get("a").world_pose.translation_vector[2, 0])
        self.assertAlmostEqual(z, 2.0)

    def test_unobserved_target_stays_not_tracked(self):
        self.manager.update({})
        self.assertEqual(self.status(), TrackingStatus.NOT_TRACKED)
        self.assertEqual(self.events, [])

    def test_failed_observation_counts_as_miss(self):
        self.manager.update({"a": observation()})
        failed = Observation(pose=PoseResult(success=False), world_pose=PoseResult(success=False))
        self.manager.update({"a": failed})
        self.assertEqual(self.status(), TrackingStatus.LIMITED)

    def test_pose_rejected_by_filter_counts_as_miss(self):
        """A pose the filter refuses never confirms the target or reaches subscribers."""
        manager = TrackManager({"confirm_frames": 1}, {"min_inliers_threshold": 8})
        manager.add_track("a")
        events, poses = [], []
        manager.subscribe(events.append)
        manager.subscribe_pose(poses.append)

        returned = manager.update({"a": observation()}, timestamp=0.0)

        track = manager.get("a")
        self.assertEqual(track.status, TrackingStatus.NOT_TRACKED)
        self.assertEqual(track.consecutive_detections, 0)
        self.assertEqual(returned, [])
        self.assertEqual(events, [])
        self.assertEqual(poses, [])

    def test_unknown_observation_keys_ignored(self):
        events = self.manager.update({"other": observation()})
        self.assertEqual(events, [])
        self.assertNotIn("other", self.manager.tracks)

    def test_world_pose_is_smoothed(self):
        self.manager.update({"a": observation(1.0)})
        self.manager.update({"a": observation(1.2)})
        track = self.manager.get("a")
        self.assertTrue(track.world_pose.is_smoothed)
        self.assertAlmostEqual(float(track.world_pose.translation_vector[2, 0]), 1.1)
        self.assertAlmostEqual(float(track.pose.translation_vector[2, 0]), 1.2)

    def test_reset_emits_events(self):
        self.manager.add_track("b")
        self.manager.update({"a": observation()}, timestamp=1.0)
        self.events.clear()

        events = self.manager.reset(timestamp=2.0)

        self.assertEqual([e.key for e in events], ["a"])
        self.assertEqual(events[0].status, TrackingStatus.NOT_TRACKED)
        self.assertEqual(events[0].timestamp, 2.0)
        self.assertEqual(self.events, events)
        self.assertIsNone(self.manager.get("a").pose)


class TestTrackManagerSubscriptions(unittest.TestCase):
    """Subscriber management and isolation."""

    def setUp(self):
        self.manager = TrackManager()
        self.manager.add_track("a")

    def test_failing_subscriber_does_not_block_others(self):
        received = []

        def broken(event):
            raise RuntimeError("subscriber failure")

        self.manager.subscribe(broken)
        self.manager.subscribe(received.append)

        with self.assertLogs("markersight.tracking.manager", level="ERROR"):
            self.manager.update({"a": observation()})

        self.assertEqual(len(received), 1)
        self.assertEqual(self.manager.get("a").status, TrackingStatus.TRACKED)

    def test_pose_subscribers_receive_every_tracked_frame(self):
        poses = []
        self.manager.subscribe_pose(poses.append)

        self.manager.update({"a": observation()})
        self.manager.update({"a": observation()})
        self.manager.update({})

        self.assertEqual(len(poses), 2)
        self.assertTrue(all(e.status == TrackingStatus.TRACKED for e in poses))

    def test_unsubscribe(self):
        received = []
        self.manager.subscribe(received.append)
        self.manager.subscribe(received.append)
        self.manager.unsubscribe(received.append)

        self.manager.update({"a": observation()})
        self.assertEqual(received, [])

    def test_track_registry_errors(self):
        with self.assertRaises(ValueError):
            self.manager.add_track("a")
        with self.assertRaises(KeyError):
            self.manager.get("missing")
        with self.assertRaises(KeyError):
            self.manager.remove_track("missing")

    def test_invalid_config(self):
        with self.assertRaises(ValueError):
            TrackManager({"confirm_frames": 0})
        with self.assertRaises(ValueError):
            TrackManager({"lost_after_frames": -1})


if __name__ == "__main__":
    unittest.main()
