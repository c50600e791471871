"""
Tests for target pose estimation and filtering.
"""

import json
import os
import sys
import tempfile
import unittest

import cv2
import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from markersight.marker_detect import MarkerDetection, MarkerDetector  # type: ignore
from markersight.pose import (  # type: ignore
    PoseEstimator,
    PoseFilter,
    PoseFilterConfig,
    PoseResult,
    load_calibration,
    rotation_angle_between,
    to_world,
)
from markersight.targets import ImageTarget  # type: ignore
from markersight.tracking.image_target import ImageTargetDetection  # type: ignore
from synthetic import (  # type: ignore
    calibration_config,
    facing_rotation,
    image_target_corners,
    marker_corners_for_pose,
    render_marker_frame,
    textured_reference,
)


def make_pose(translation, rotation=None, inliers=4):
    transform = np.eye(4)
    if rotation is not None:
        transform[:3, :3] = rotation
    transform[:3, 3] = translation
    return PoseResult.from_matrix(transform, method="marker", inliers=inliers)


def rotation_z(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


class TestPoseEstimator(unittest.TestCase):
    """Test cases for planar target pose estimation."""

    def setUp(self):
        self.config = {
            "axis_length": 0.08,
            "calibration": calibration_config(),
        }
        self.estimator = PoseEstimator(self.config)
        self.estimator.initialize()

    def test_pose_estimator_initialization(self):
        """Ensure calibration matrix is loaded."""
        self.assertTrue(self.estimator.initialized)
        self.assertIsNotNone(self.estimator.calibration)
        self.assertEqual(self.estimator.calibration.camera_matrix.shape, (3, 3))

    def test_project_axes(self):
        """Projected axes origin lies at the principal point for a centred target."""
        pose = make_pose([0.0, 0.0, 0.4])
        projected_axes = self.estimator.project_axes(pose, axis_length=self.config["axis_length"])

        self.assertIsNotNone(projected_axes)
        self.assertEqual(projected_axes.shape, (4, 2))
        np.testing.assert_allclose(projected_axes[0], [320.0, 240.0], atol=1e-6)
        self.assertAlmostEqual(projected_axes[1][0], 320.0 + 800.0 * 0.08 / 0.4, places=4)

    def test_marker_pose_from_exact_corners(self):
        """Exact corner projections give back the generating pose."""
        rotation = facing_rotation(20, -10)
        translation = np.array([0.05, -0.03, 0.7])
        detection = MarkerDetection(
            dictionary="4x4_50",
            marker_id=0,
            corners=marker_corners_for_pose(0.12, rotation, translation).astype(np.float32),
        )

        pose = self.estimator.estimate_from_marker(detection, 0.12)

        self.assertTrue(pose.success)
        self.assertEqual(pose.method, "marker")
        self.assertEqual(pose.inliers, 4)
        np.testing.assert_allclose(pose.translation_vector.flatten(), translation, atol=1e-3)
        self.assertLess(rotation_angle_between(pose.rotation_matrix, rotation), 0.02)
        self.assertLess(pose.reprojection_error, 0.1)

    def test_marker_pose_from_rendered_frame(self):
        """Detection followed by estimation recovers the rendered pose."""
        rotation = facing_rotation(15, 20)
        translation = np.array([-0.02, 0.01, 0.5])
        detector = MarkerDetector("4x4_50")
        corners = marker_corners_for_pose(0.1, rotation, translation)
        frame = render_marker_frame(detector.dictionary, 2, corners)

        detections = detector.detect(frame)
        self.assertEqual(len(detections), 1)
        pose = self.estimator.estimate_from_marker(detections[0], 0.1)

        self.assertTrue(pose.success)
        np.testing.assert_allclose(pose.translation_vector.flatten(), translation, atol=0.02)
        self.assertLess(rotation_angle_between(pose.rotation_matrix, rotation), 0.15)

    def test_marker_size_must_be_positive(self):
        detection = MarkerDetection("4x4_50", 0, np.zeros((4, 2), dtype=np.float32))
        with self.assertRaises(ValueError):
            self.estimator.estimate_from_marker(detection, 0.0)

    def test_distorted_quad_is_rejected(self):
        """Corners far from any square projection exceed the reprojection bound."""
        detection = MarkerDetection(
            "4x4_50",
            0,
            np.array([[100, 100], [300, 100], [300, 110], [100, 400]], dtype=np.float32),
        )
        pose = self.estimator.estimate_from_marker(detection, 0.1)
        self.assertFalse(pose.success)

    def test_image_target_pose_from_corners(self):
        """Image targets without point matches fall back to their outline."""
        reference = textured_reference()
        target = ImageTarget("poster", reference, 0.32)
        rotation = facing_rotation(10, 5)
        translation = np.array([0.0, 0.02, 0.8])
        corners = image_target_corners(reference, 0.32, rotation, translation)
        detection = ImageTargetDetection(
            name="poster",
            corners=corners.astype(np.float32),
            homography=np.eye(3),
            reference_points=np.empty((0, 2), dtype=np.float32),
            frame_points=np.empty((0, 2), dtype=np.float32),
        )

        pose = self.estimator.estimate_from_image_target(detection, target)

        self.assertTrue(pose.success)
        self.assertEqual(pose.method, "image")
        np.testing.assert_allclose(pose.translation_vector.flatten(), translation, atol=1e-3)

    def test_image_plane_points_scale(self):
        """The longer image side spans the target size, centred on the origin."""
        points = PoseEstimator.image_plane_points(
            np.array([[0.0, 0.0], [400.0, 200.0]]), (200, 400), 0.4
        )
        np.testing.assert_allclose(points, [[-0.2, 0.1, 0.0], [0.2, -0.1, 0.0]])

    def test_ambiguous_solution_prefers_previous_rotation(self):
        """Comparable errors are resolved towards the previous rotation."""
        r_best, _ = cv2.Rodrigues(np.array([0.0, 0.0, 0.0]))
        r_second, _ = cv2.Rodrigues(np.array([0.0, 0.5, 0.0]))
        rvec_best = np.zeros((3, 1))
        rvec_second = np.array([[0.0], [0.5], [0.0]])
        tvec = np.array([[0.0], [0.0], [1.0]])
        previous = make_pose([0.0, 0.0, 1.0], rotation=r_second)

        ambiguous = [(1.0, rvec_best, tvec), (1.2, rvec_second, tvec)]
        chosen = self.estimator._select_solution(ambiguous, previous)
        self.assertIs(chosen[1], rvec_second)

        clear = [(0.1, rvec_best, tvec), (1.2, rvec_second, tvec)]
        chosen = self.estimator._select_solution(clear, previous)
        self.assertIs(chosen[1], rvec_best)

        chosen = self.estimator._select_solution(ambiguous, None)
        self.assertIs(chosen[1], rvec_best)

    def test_decompose_pose(self):
        components = self.estimator.decompose_pose(make_pose([0.0, 0.3, 0.4]))
        self.assertAlmostEqual(components["distance"], 0.5)
        np.testing.assert_allclose(components["euler_angles"], (0.0, 0.0, 0.0), atol=1e-9)
        self.assertIsNone(self.estimator.decompose_pose(PoseResult(success=False)))

    def test_pose_quality(self):
        pose = make_pose([0.0, 0.0, 1.0])
        pose.reprojection_error = 1.0
        self.assertAlmostEqual(self.estimator.get_pose_quality(pose), 0.75)
        self.assertEqual(self.estimator.get_pose_quality(PoseResult(success=False)), 0.0)


class TestWorldTransform(unittest.TestCase):
    """Conversion of camera-space poses into world space."""

    def test_to_world_composes_camera_pose(self):
        camera_pose = np.eye(4)
        camera_pose[:3, :3] = rotation_z(np.pi / 2)
        camera_pose[:3, 3] = [1.0, 2.0, 0.0]
        pose = make_pose([0.0, 0.0, 1.0])

        world = to_world(pose, camera_pose)

        self.assertTrue(world.success)
        np.testing.assert_allclose(world.as_matrix(), camera_pose @ pose.as_matrix(), atol=1e-9)
        self.assertEqual(world.method, "marker")
        self.assertEqual(world.inliers, 4)

    def test_identity_camera_pose_keeps_pose(self):
        pose = make_pose([0.3, -0.1, 2.0], rotation=rotation_z(0.3))
        world = to_world(pose, np.eye(4))
        np.testing.assert_allclose(world.as_matrix(), pose.as_matrix(), atol=1e-9)

    def test_failed_pose_stays_failed(self):
        world = to_world(PoseResult(success=False, method="image"), np.eye(4))
        self.assertFalse(world.success)
        self.assertIsNone(world.as_matrix())


class TestPoseFilter(unittest.TestCase):
    """Temporal smoothing and outlier rejection."""

    def test_ema_smooths_translation(self):
        pose_filter = PoseFilter(PoseFilterConfig(smoothing_alpha=0.5))
        pose_filter.filter(make_pose([0.0, 0.0, 1.0]))
        smoothed = pose_filter.filter(make_pose([0.0, 0.0, 1.2]))

        self.assertTrue(smoothed.is_smoothed)
        self.assertAlmostEqual(float(smoothed.translation_vector[2, 0]), 1.1)

    def test_ema_smooths_rotation_along_geodesic(self):
        pose_filter = PoseFilter(PoseFilterConfig(smoothing_alpha=0.5))
        pose_filter.filter(make_pose([0.0, 0.0, 1.0], rotation=rotation_z(0.0)))
        smoothed = pose_filter.filter(make_pose([0.0, 0.0, 1.0], rotation=rotation_z(0.4)))

        np.testing.assert_allclose(smoothed.rotation_matrix, rotation_z(0.2), atol=1e-6)

    def test_outlier_rejected_then_relocked(self):
        """A persistent jump is accepted after the rejection budget is spent."""
        pose_filter = PoseFilter(PoseFilterConfig(max_translation_jump=0.5, max_consecutive_rejections=3))
        pose_filter.filter(make_pose([0.0, 0.0, 1.0]))

        for _ in range(3):
            held = pose_filter.filter(make_pose([0.0, 0.0, 2.0]))
            self.assertAlmostEqual(float(held.translation_vector[2, 0]), 1.0)

        relocked = pose_filter.filter(make_pose([0.0, 0.0, 2.0]))
        self.assertAlmostEqual(float(relocked.translation_vector[2, 0]), 2.0)
        self.assertEqual(pose_filter.consecutive_rejections, 0)

    def test_too_few_inliers_rejected(self):
        pose_filter = PoseFilter(PoseFilterConfig(min_inliers_threshold=4))
        result = pose_filter.filter(make_pose([0.0, 0.0, 1.0], inliers=2))
        self.assertFalse(result.success)

    def test_smoothing_disabled_passes_pose_through(self):
        pose_filter = PoseFilter(PoseFilterConfig(enable_smoothing=False))
        pose_filter.filter(make_pose([0.0, 0.0, 1.0]))
        result = pose_filter.filter(make_pose([0.0, 0.0, 1.2]))
        self.assertAlmostEqual(float(result.translation_vector[2, 0]), 1.2)

    def test_config_from_dict_ignores_unknown_keys(self):
        config = PoseFilterConfig.from_dict({"smoothing_alpha": 0.2, "unknown": 1})
        self.assertEqual(config.smoothing_alpha, 0.2)


class TestCalibration(unittest.TestCase):
    """Calibration loading from inline config and files."""

    def test_inline_calibration(self):
        calibration = load_calibration(calibration_config())
        self.assertEqual(calibration.camera_matrix.shape, (3, 3))
        self.assertEqual(calibration.dist_coeffs.shape, (5, 1))

    def test_calibration_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "calib.json")
            with open(path, "w") as f:
                json.dump(calibration_config(), f)
            calibration = load_calibration({"calibration_file": path})
        self.assertEqual(calibration.camera_matrix[0, 0], 800.0)

    def test_missing_calibration_file(self):
        with self.assertRaises(FileNotFoundError):
            load_calibration({"calibration_file": "/nonexistent/calib.json"})

    def test_missing_camera_matrix(self):
        with self.assertRaises(ValueError):
            load_calibration({})


if __name__ == "__main__":
    unittest.main()
