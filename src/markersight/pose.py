"""
Target pose estimation.

Recovers the 6-DoF pose of planar targets (square markers and image targets)
from 2D-3D correspondences with OpenCV's IPPE solvers, and stabilises poses
over time with ``PoseFilter``.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Deque, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

if TYPE_CHECKING:
    from .marker_detect import MarkerDetection
    from .targets import ImageTarget
    from .tracking.image_target import ImageTargetDetection

LOGGER = logging.getLogger(__name__)

# (mean reprojection error, rvec, tvec)
Solution = Tuple[float, np.ndarray, np.ndarray]


@dataclass
class CalibrationData:
    """Intrinsics and distortion of the camera producing frames."""

    camera_matrix: np.ndarray
    dist_coeffs: np.ndarray


@dataclass
class PoseResult:
    """A rigid transform from target space to camera (or world) space."""

    success: bool
    rotation_vector: Optional[np.ndarray] = None
    translation_vector: Optional[np.ndarray] = None
    rotation_matrix: Optional[np.ndarray] = None
    method: str = ""  # "marker" or "image"
    inliers: int = 0
    reprojection_error: Optional[float] = None
    timestamp: Optional[float] = None
    is_smoothed: bool = False

    @property
    def valid(self) -> bool:
        return self.success and self.rotation_matrix is not None and self.translation_vector is not None

    def as_matrix(self) -> Optional[np.ndarray]:
        """4x4 homogeneous transform, or None for a failed pose."""
        if not self.valid:
            return None
        transform = np.eye(4)
        transform[:3, :3] = self.rotation_matrix
        transform[:3, 3] = self.translation_vector.ravel()
        return transform

    @classmethod
    def from_rotation(cls, rotation: np.ndarray, translation: np.ndarray, **kwargs) -> PoseResult:
        rotation = np.asarray(rotation, dtype=np.float64)
        rvec, _ = cv2.Rodrigues(rotation)
        return cls(
            success=True,
            rotation_vector=rvec,
            translation_vector=np.asarray(translation, dtype=np.float64).reshape(3, 1),
            rotation_matrix=rotation,
            **kwargs,
        )

    @classmethod
    def from_matrix(cls, transform: np.ndarray, **kwargs) -> PoseResult:
        """Successful pose from a 4x4 homogeneous transform."""
        transform = np.asarray(transform, dtype=np.float64)
        return cls.from_rotation(transform[:3, :3].copy(), transform[:3, 3].copy(), **kwargs)

    @classmethod
    def failed(cls, method: str = "", timestamp: Optional[float] = None, **kwargs) -> PoseResult:
        return cls(success=False, method=method, timestamp=timestamp, **kwargs)

    def copy(self) -> PoseResult:
        def dup(array):
            return None if array is None else array.copy()

        return replace(
            self,
            rotation_vector=dup(self.rotation_vector),
            translation_vector=dup(self.translation_vector),
            rotation_matrix=dup(self.rotation_matrix),
        )


def rotation_angle_between(r1: np.ndarray, r2: np.ndarray) -> float:
    """Angle in radians of the rotation taking ``r1`` to ``r2``."""
    delta, _ = cv2.Rodrigues(r1.T @ r2)
    return float(np.linalg.norm(delta))


def to_world(pose: PoseResult, camera_pose: np.ndarray) -> PoseResult:
    """Express a camera-space target pose in world space.

    Args:
        pose: Target-to-camera pose
        camera_pose: 4x4 camera-to-world transform

    Returns:
        Target-to-world pose (unsuccessful if ``pose`` is)
    """
    target_to_camera = pose.as_matrix()
    if target_to_camera is None:
        return PoseResult.failed(pose.method, pose.timestamp)

    return PoseResult.from_matrix(
        np.asarray(camera_pose, dtype=np.float64) @ target_to_camera,
        method=pose.method,
        inliers=pose.inliers,
        reprojection_error=pose.reprojection_error,
        timestamp=pose.timestamp,
    )


def load_calibration(config: Dict) -> CalibrationData:
    """Read calibration from ``calibration_file`` or inline matrix entries.

    Raises:
        FileNotFoundError: the named calibration file does not exist
        ValueError: no camera matrix is available
    """
    source: Dict = config
    path = config.get("calibration_file")
    if path:
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Calibration file not found: {path}")
        source = json.loads(path.read_text(encoding="utf-8"))

    matrix = source.get("camera_matrix")
    if matrix is None:
        raise ValueError("Camera matrix must be provided for pose estimation.")

    return CalibrationData(
        camera_matrix=np.asarray(matrix, dtype=np.float64).reshape(3, 3),
        dist_coeffs=normalize_dist_coeffs(source.get("dist_coeffs")),
    )


def normalize_dist_coeffs(coeffs: Optional[Sequence[float]]) -> np.ndarray:
    if coeffs is None:
        return np.zeros((5, 1))
    return np.asarray(coeffs, dtype=np.float64).reshape(-1, 1)


def reprojection_error(
    object_points: np.ndarray,
    rvec: np.ndarray,
    tvec: np.ndarray,
    image_points: np.ndarray,
    calibration: CalibrationData,
) -> float:
    """Mean pixel distance between projected object points and observations."""
    projected, _ = cv2.projectPoints(object_points, rvec, tvec, calibration.camera_matrix, calibration.dist_coeffs)
    residuals = projected.reshape(-1, 2) - np.asarray(image_points).reshape(-1, 2)
    return float(np.linalg.norm(residuals, axis=1).mean())


def euler_angles(rotation: np.ndarray) -> Tuple[float, float, float]:
    """(roll, pitch, yaw) in degrees for a ZYX rotation."""
    cos_pitch = np.hypot(rotation[0, 0], rotation[1, 0])
    pitch = np.arctan2(-rotation[2, 0], cos_pitch)
    if cos_pitch < 1e-6:
        # gimbal lock
        roll = np.arctan2(-rotation[1, 2], rotation[1, 1])
        yaw = 0.0
    else:
        roll = np.arctan2(rotation[2, 1], rotation[2, 2])
        yaw = np.arctan2(rotation[1, 0], rotation[0, 0])
    return float(np.degrees(roll)), float(np.degrees(pitch)), float(np.degrees(yaw))


@dataclass
class PoseFilterConfig:
    """Settings for ``PoseFilter``; mirrors the ``pose_filter`` config section."""

    enable_smoothing: bool = True
    smoothing_alpha: float = 0.5  # weight of the newest pose
    enable_outlier_rejection: bool = True
    max_translation_jump: float = 0.5  # meters
    max_rotation_jump: float = 1.0  # radians
    max_consecutive_rejections: int = 3
    history_size: int = 5
    use_median_filter: bool = False
    min_inliers_threshold: int = 4

    @classmethod
    def from_dict(cls, values: Optional[Dict]) -> PoseFilterConfig:
        values = values or {}
        return cls(**{k: v for k, v in values.items() if k in cls.__dataclass_fields__})


class PoseFilter:
    """
    Temporal filter for pose stabilization.

    Smooths translation with an exponential moving average and rotation along
    the geodesic between the smoothed and the new rotation (or, optionally,
    takes the median over a short history). Sudden jumps are rejected as
    outliers until they persist for ``max_consecutive_rejections`` frames,
    after which the filter re-locks on the new pose.
    """

    def __init__(self, config: Optional[PoseFilterConfig] = None):
        self.config = config or PoseFilterConfig()
        self.pose_history: Deque[PoseResult] = deque(maxlen=max(self.config.history_size, 1))
        self.smoothed_pose: Optional[PoseResult] = None
        self.consecutive_rejections = 0

    def reset(self):
        self.pose_history.clear()
        self.smoothed_pose = None
        self.consecutive_rejections = 0

    def filter(self, pose: PoseResult) -> PoseResult:
        """Feed one raw pose; returns the pose to report for this frame."""
        if not pose.success:
            return pose

        if self.config.enable_outlier_rejection:
            held = self._reject(pose)
            if held is not None:
                return held

        self.consecutive_rejections = 0
        self.pose_history.append(pose)

        if not self.config.enable_smoothing:
            result = pose.copy()
        elif self.config.use_median_filter:
            result = self._median(pose)
        else:
            result = self._ema(pose)

        self.smoothed_pose = result
        return result

    def _reject(self, pose: PoseResult) -> Optional[PoseResult]:
        """Pose to report instead of ``pose``, or None to accept it."""
        if pose.inliers < self.config.min_inliers_threshold:
            LOGGER.debug("Pose rejected: too few inliers (%d < %d)", pose.inliers, self.config.min_inliers_threshold)
            if self.smoothed_pose is not None:
                return self.smoothed_pose.copy()
            return PoseResult.failed(pose.method, pose.timestamp)

        if self.smoothed_pose is None or not self._jumped(pose):
            return None

        self.consecutive_rejections += 1
        if self.consecutive_rejections <= self.config.max_consecutive_rejections:
            LOGGER.debug("Pose rejected as outlier (%d in a row)", self.consecutive_rejections)
            return self.smoothed_pose.copy()

        LOGGER.debug("Outlier persisted, re-locking filter on new pose")
        self.reset()
        return None

    def _jumped(self, pose: PoseResult) -> bool:
        reference = self.smoothed_pose
        if not (pose.valid and reference.valid):
            return False

        shift = float(np.linalg.norm(pose.translation_vector - reference.translation_vector))
        turn = rotation_angle_between(reference.rotation_matrix, pose.rotation_matrix)
        if shift > self.config.max_translation_jump or turn > self.config.max_rotation_jump:
            LOGGER.debug("Pose jump: %.3f m, %.3f rad", shift, turn)
            return True
        return False

    def _smoothed(self, pose: PoseResult, rotation: np.ndarray, translation: np.ndarray) -> PoseResult:
        return PoseResult.from_rotation(
            rotation,
            translation,
            method=pose.method,
            inliers=pose.inliers,
            reprojection_error=pose.reprojection_error,
            timestamp=pose.timestamp,
            is_smoothed=True,
        )

    def _ema(self, pose: PoseResult) -> PoseResult:
        previous = self.smoothed_pose
        if not pose.valid or previous is None or not previous.valid:
            return pose.copy()

        alpha = self.config.smoothing_alpha
        # fraction alpha of the way along the relative rotation
        delta, _ = cv2.Rodrigues(previous.rotation_matrix.T @ pose.rotation_matrix)
        step, _ = cv2.Rodrigues(alpha * delta)
        rotation = previous.rotation_matrix @ step
        translation = previous.translation_vector + alpha * (pose.translation_vector - previous.translation_vector)
        return self._smoothed(pose, rotation, translation)

    def _median(self, pose: PoseResult) -> PoseResult:
        recent = [p for p in self.pose_history if p.valid]
        if len(recent) < 3:
            return pose.copy()

        rvec = np.median(np.hstack([p.rotation_vector.reshape(3, 1) for p in recent]), axis=1)
        translation = np.median(np.hstack([p.translation_vector.reshape(3, 1) for p in recent]), axis=1)
        rotation, _ = cv2.Rodrigues(rvec.reshape(3, 1))
        return self._smoothed(pose, rotation, translation)


class PoseEstimator:
    """
    Estimates target poses from marker corners or image-target matches.

    Markers are solved with IPPE_SQUARE on their four corners; image targets
    with planar IPPE over every inlier correspondence. Of the two planar
    solutions the one with the lower reprojection error wins unless the
    errors are close, in which case the one nearer the previous pose is
    kept.
    """

    def __init__(self, config: Optional[Dict] = None):
        self.config = config or {}
        self.calibration_config = self.config.get("calibration", {})
        pose_config = self.config.get("pose", {})
        self.max_reprojection_error = float(pose_config.get("max_reprojection_error", 4.0))
        self.ambiguity_ratio = float(pose_config.get("ambiguity_ratio", 0.6))

        self.calibration: Optional[CalibrationData] = None
        self.initialized = False

    def initialize(self) -> bool:
        """Load calibration from the ``calibration`` section."""
        self.calibration = load_calibration(self.calibration_config)
        self.initialized = True
        LOGGER.info("Pose estimator initialized with calibration matrix:\n%s", self.calibration.camera_matrix)
        return True

    def _calibration(self, override: Optional[CalibrationData] = None) -> CalibrationData:
        if override is not None:
            return override
        if not self.initialized:
            self.initialize()
        return self.calibration

    @staticmethod
    def marker_object_points(size: float) -> np.ndarray:
        """Marker corners in the marker frame, ordered TL, TR, BR, BL."""
        half = size / 2.0
        signs = np.array([[-1, 1], [1, 1], [1, -1], [-1, -1]], dtype=np.float64)
        return np.hstack([signs * half, np.zeros((4, 1))])

    @staticmethod
    def image_plane_points(points_2d: np.ndarray, image_shape: Tuple[int, int], size: float) -> np.ndarray:
        """Map reference-image pixels onto the metric target plane.

        The longer image dimension spans ``size`` meters; the origin is the
        image centre with +x right and +y up.
        """
        height, width = image_shape[:2]
        scale = size / float(max(width, height))
        pts = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
        x = (pts[:, 0] - width / 2.0) * scale
        y = (height / 2.0 - pts[:, 1]) * scale
        return np.column_stack([x, y, np.zeros(len(pts))])

    def estimate_from_marker(
        self,
        detection: MarkerDetection,
        size: float,
        calibration: Optional[CalibrationData] = None,
        previous: Optional[PoseResult] = None,
        timestamp: Optional[float] = None,
    ) -> PoseResult:
        """Marker-to-camera pose of a detected square marker of side ``size``."""
        if size <= 0:
            raise ValueError("Marker size must be positive.")
        return self._solve_planar(
            self.marker_object_points(size),
            np.asarray(detection.corners, dtype=np.float64).reshape(4, 2),
            cv2.SOLVEPNP_IPPE_SQUARE,
            "marker",
            calibration,
            previous,
            timestamp,
        )

    def estimate_from_image_target(
        self,
        detection: ImageTargetDetection,
        target: ImageTarget,
        calibration: Optional[CalibrationData] = None,
        previous: Optional[PoseResult] = None,
        timestamp: Optional[float] = None,
    ) -> PoseResult:
        """Target-to-camera pose of a matched image target.

        Uses the inlier correspondences when there are at least four, and
        the projected reference corners otherwise.
        """
        shape = target.image.shape
        if detection.reference_points is not None and len(detection.reference_points) >= 4:
            reference = detection.reference_points
            observed = detection.frame_points
        else:
            height, width = shape[:2]
            reference = np.array([[0, 0], [width, 0], [width, height], [0, height]], dtype=np.float64)
            observed = detection.corners

        return self._solve_planar(
            self.image_plane_points(reference, shape, target.size),
            np.asarray(observed, dtype=np.float64).reshape(-1, 2),
            cv2.SOLVEPNP_IPPE,
            "image",
            calibration,
            previous,
            timestamp,
        )

    def _solve_planar(
        self,
        object_points: np.ndarray,
        image_points: np.ndarray,
        flags: int,
        method: str,
        calibration: Optional[CalibrationData],
        previous: Optional[PoseResult],
        timestamp: Optional[float],
    ) -> PoseResult:
        calibration = self._calibration(calibration)
        if len(object_points) < 4 or len(object_points) != len(image_points):
            return PoseResult.failed(method, timestamp)

        try:
            count, rvecs, tvecs, _ = cv2.solvePnPGeneric(
                object_points, image_points, calibration.camera_matrix, calibration.dist_coeffs, flags=flags
            )
        except cv2.error as exc:
            LOGGER.debug("solvePnPGeneric failed: %s", exc)
            return PoseResult.failed(method, timestamp)

        solutions: List[Solution] = []
        for rvec, tvec in zip(rvecs[:count], tvecs[:count]):
            rvec = np.asarray(rvec, dtype=np.float64).reshape(3, 1)
            tvec = np.asarray(tvec, dtype=np.float64).reshape(3, 1)
            if tvec[2, 0] > 0:  # in front of the camera
                error = reprojection_error(object_points, rvec, tvec, image_points, calibration)
                solutions.append((error, rvec, tvec))

        if not solutions:
            return PoseResult.failed(method, timestamp)

        solutions.sort(key=lambda s: s[0])
        error, rvec, tvec = self._select_solution(solutions, previous)

        if error > self.max_reprojection_error:
            LOGGER.debug("Pose rejected: reprojection error %.2f > %.2f", error, self.max_reprojection_error)
            return PoseResult.failed(method, timestamp, reprojection_error=error)

        rotation, _ = cv2.Rodrigues(rvec)
        return PoseResult(
            success=True,
            rotation_vector=rvec,
            translation_vector=tvec,
            rotation_matrix=rotation,
            method=method,
            inliers=len(object_points),
            reprojection_error=error,
            timestamp=timestamp,
        )

    def _select_solution(self, solutions: List[Solution], previous: Optional[PoseResult]) -> Solution:
        """Pick between planar solutions sorted by reprojection error."""
        best = solutions[0]
        if len(solutions) < 2 or previous is None or previous.rotation_matrix is None:
            return best

        second = solutions[1]
        if second[0] <= 1e-9 or best[0] / second[0] < self.ambiguity_ratio:
            return best

        def turn_from_previous(solution: Solution) -> float:
            rotation, _ = cv2.Rodrigues(solution[1])
            return rotation_angle_between(previous.rotation_matrix, rotation)

        chosen = min((best, second), key=turn_from_previous)
        if chosen is not best:
            LOGGER.debug("Ambiguous planar pose resolved using previous pose")
        return chosen

    def project_points(
        self,
        points_3d: np.ndarray,
        pose: PoseResult,
        calibration: Optional[CalibrationData] = None,
    ) -> Optional[np.ndarray]:
        """Pixel positions of target-space points under ``pose``."""
        if pose is None or not pose.success or pose.rotation_vector is None or pose.translation_vector is None:
            return None
        calibration = self._calibration(calibration)
        pixels, _ = cv2.projectPoints(
            np.asarray(points_3d, dtype=np.float64),
            pose.rotation_vector,
            pose.translation_vector,
            calibration.camera_matrix,
            calibration.dist_coeffs,
        )
        return pixels.reshape(-1, 2)

    def project_axes(
        self,
        pose: PoseResult,
        axis_length: float = 0.05,
        calibration: Optional[CalibrationData] = None,
    ) -> Optional[np.ndarray]:
        """Origin followed by the X, Y and Z axis tips, in pixels."""
        axes = np.vstack([np.zeros(3), np.eye(3) * axis_length])
        return self.project_points(axes, pose, calibration)

    def get_pose_quality(self, pose: PoseResult) -> float:
        """Score in [0, 1] from correspondence count and reprojection error."""
        if not pose.success:
            return 0.0

        # markers always have the minimum four points
        needed = 4.0 if pose.method == "marker" else 50.0
        support = min(pose.inliers / needed, 1.0)

        if pose.reprojection_error is None:
            return support
        return support * max(0.0, 1.0 - pose.reprojection_error / self.max_reprojection_error)

    def decompose_pose(self, pose: PoseResult) -> Optional[Dict]:
        """Euler angles (degrees), position and distance of a valid pose."""
        if not pose.valid:
            return None
        t = pose.translation_vector.ravel()
        return {
            "euler_angles": euler_angles(pose.rotation_matrix),
            "position": (float(t[0]), float(t[1]), float(t[2])),
            "distance": float(np.linalg.norm(t)),
        }
