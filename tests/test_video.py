"""
Tests for frame construction and frame sources.
"""

import os
import sys
import unittest

import cv2
import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from markersight.video import Frame, FrameSource, validate_camera_pose  # type: ignore
from synthetic import calibration_config, make_calibration  # type: ignore


class FakeCapture:
    """Stands in for cv2.VideoCapture over a list of frames."""

    def __init__(self, frames, frame_interval_ms=40.0):
        self.frames = list(frames)
        self.index = 0
        self.frame_interval_ms = frame_interval_ms
        self.released = False

    def isOpened(self):
        return not self.released

    def read(self):
        if self.index >= len(self.frames):
            return False, None
        frame = self.frames[self.index]
        self.index += 1
        return True, frame

    def get(self, prop):
        if prop == cv2.CAP_PROP_POS_MSEC:
            return (self.index - 1) * self.frame_interval_ms
        return 0

    def release(self):
        self.released = True


class TestFrame(unittest.TestCase):
    """Frame validation and luminance conversion."""

    def setUp(self):
        self.calibration = make_calibration()

    def test_color_frame_converted_to_gray(self):
        image = np.zeros((48, 64, 3), dtype=np.uint8)
        image[..., 2] = 255
        frame = Frame.create(image, self.calibration, timestamp=1.5)

        self.assertEqual(frame.shape, (48, 64))
        self.assertEqual(frame.image.dtype, np.uint8)
        self.assertEqual(frame.timestamp, 1.5)
        np.testing.assert_array_equal(frame.camera_pose, np.eye(4))

    def test_bgra_and_single_channel(self):
        self.assertEqual(Frame.create(np.zeros((8, 8, 4), np.uint8), self.calibration).shape, (8, 8))
        self.assertEqual(Frame.create(np.zeros((8, 8, 1), np.uint8), self.calibration).shape, (8, 8))

    def test_float_image_normalized(self):
        image = np.linspace(0.0, 1.0, 64, dtype=np.float32).reshape(8, 8)
        frame = Frame.create(image, self.calibration)
        self.assertEqual(frame.image.dtype, np.uint8)
        self.assertEqual(int(frame.image.max()), 255)

    def test_empty_image_rejected(self):
        with self.assertRaises(ValueError):
            Frame.create(np.zeros((0, 0), np.uint8), self.calibration)

    def test_missing_intrinsics_rejected(self):
        with self.assertRaises(ValueError):
            Frame.create(np.zeros((8, 8), np.uint8), None)

    def test_camera_pose_kept(self):
        pose = np.eye(4)
        pose[:3, 3] = [1.0, 2.0, 3.0]
        frame = Frame.create(np.zeros((8, 8), np.uint8), self.calibration, camera_pose=pose)
        np.testing.assert_array_equal(frame.camera_pose, pose)


class TestCameraPoseValidation(unittest.TestCase):
    """Camera-to-world transform checks."""

    def test_identity_default(self):
        np.testing.assert_array_equal(validate_camera_pose(None), np.eye(4))

    def test_invalid_poses(self):
        bad_shape = np.eye(3)
        scaled = np.eye(4) * 2.0
        scaled[3, 3] = 1.0
        reflected = np.diag([1.0, 1.0, -1.0, 1.0])
        bottom_row = np.eye(4)
        bottom_row[3, 0] = 1.0
        non_finite = np.eye(4)
        non_finite[0, 3] = np.nan

        for pose in (bad_shape, scaled, reflected, bottom_row, non_finite):
            with self.assertRaises(ValueError):
                validate_camera_pose(pose)


class TestFrameSource(unittest.TestCase):
    """Frame iteration over a capture device."""

    def make_source(self, n_frames=3, pose_provider=None):
        source = FrameSource({"calibration": calibration_config()}, pose_provider=pose_provider)
        source.cap = FakeCapture([np.full((48, 64, 3), i * 10, np.uint8) for i in range(n_frames)])
        source.is_file = True
        return source

    def test_frames_until_end_of_stream(self):
        source = self.make_source()
        frames = list(source.frames())

        self.assertEqual(len(frames), 3)
        self.assertEqual([f.timestamp for f in frames], [0.0, 0.04, 0.08])
        self.assertEqual(frames[0].shape, (48, 64))
        self.assertEqual(frames[0].calibration.camera_matrix[0, 0], 800.0)
        self.assertIsNone(source.read())

    def test_max_frames(self):
        self.assertEqual(len(list(self.make_source(5).frames(max_frames=2))), 2)

    def test_pose_provider_sets_camera_pose(self):
        pose = np.eye(4)
        pose[:3, 3] = [0.0, 0.0, 1.0]
        seen = []

        def provider(timestamp):
            seen.append(timestamp)
            return pose

        frame = self.make_source(pose_provider=provider).read()
        np.testing.assert_array_equal(frame.camera_pose, pose)
        self.assertEqual(seen, [0.0])

    def test_cleanup_releases_capture(self):
        source = self.make_source()
        capture = source.cap
        source.cleanup()
        self.assertTrue(capture.released)
        self.assertIsNone(source.cap)
        self.assertEqual(source.get_frame_info(), {})
        self.assertIsNone(source.read())

    def test_missing_video_file(self):
        source = FrameSource({"calibration": calibration_config()})
        self.assertFalse(source.load_video_file("/nonexistent/clip.mp4"))


if __name__ == "__main__":
    unittest.main()
