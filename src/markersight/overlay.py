"""
Debug overlay rendering.

Draws detected marker outlines, image target outlines, pose axes and track
status onto BGR frames for visual inspection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

import cv2
import numpy as np

from .marker_detect import MarkerDetection
from .pose import CalibrationData, PoseResult
from .tracking.image_target import ImageTargetDetection
from .tracking.manager import Track, TrackingStatus

LOGGER = logging.getLogger(__name__)

STATUS_COLORS: Dict[TrackingStatus, Tuple[int, int, int]] = {
    TrackingStatus.NOT_TRACKED: (128, 128, 128),
    TrackingStatus.TRACKED: (0, 255, 0),
    TrackingStatus.LIMITED: (0, 255, 255),
    TrackingStatus.LOST: (0, 0, 255),
}


@dataclass
class OverlayConfiguration:
    """Drawing options for debug overlays."""

    antialiasing: bool = True
    line_thickness: int = 2
    font_scale: float = 0.5
    axis_length: float = 0.05  # meters

    @classmethod
    def from_dict(cls, values: Optional[Dict]) -> OverlayConfiguration:
        values = values or {}
        return cls(**{k: v for k, v in values.items() if k in cls.__dataclass_fields__})

    @property
    def line_type(self) -> int:
        return cv2.LINE_AA if self.antialiasing else cv2.LINE_8


def to_bgr(frame: np.ndarray) -> np.ndarray:
    """Return a BGR copy of ``frame`` suitable for drawing."""
    if frame.ndim == 2:
        return cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
    return frame.copy()


def _polyline(frame: np.ndarray, corners: np.ndarray, color, config: OverlayConfiguration):
    pts = np.round(np.asarray(corners).reshape(-1, 1, 2)).astype(np.int32)
    cv2.polylines(frame, [pts], isClosed=True, color=color, thickness=config.line_thickness, lineType=config.line_type)


def _label(frame: np.ndarray, text: str, position, color, config: OverlayConfiguration):
    x, y = int(round(position[0])), int(round(position[1]))
    cv2.putText(
        frame,
        text,
        (x, y),
        cv2.FONT_HERSHEY_SIMPLEX,
        config.font_scale,
        color,
        1,
        config.line_type,
    )


def draw_marker_detections(
    frame: np.ndarray,
    detections: Iterable[MarkerDetection],
    config: Optional[OverlayConfiguration] = None,
) -> np.ndarray:
    """Outline each marker, mark its first corner and label its ID."""
    config = config or OverlayConfiguration()
    for detection in detections:
        _polyline(frame, detection.corners, (0, 255, 0), config)
        corner = tuple(int(round(v)) for v in detection.corners[0])
        cv2.circle(frame, corner, 4, (0, 0, 255), -1, config.line_type)
        _label(frame, str(detection.marker_id), detection.center, (255, 0, 255), config)
    return frame


def draw_image_detections(
    frame: np.ndarray,
    detections: Iterable[ImageTargetDetection],
    config: Optional[OverlayConfiguration] = None,
    draw_points: bool = False,
) -> np.ndarray:
    """Outline each image target; optionally draw its inlier points."""
    config = config or OverlayConfiguration()
    for detection in detections:
        color = (255, 128, 0) if detection.source == "optical_flow" else (255, 0, 0)
        _polyline(frame, detection.corners, color, config)
        if draw_points:
            for x, y in detection.frame_points:
                cv2.circle(frame, (int(round(x)), int(round(y))), 2, (0, 255, 0), -1)
        _label(
            frame,
            f"{detection.name} ({detection.inliers})",
            detection.corners[0] + np.array([0.0, -6.0]),
            color,
            config,
        )
    return frame


def draw_pose_axes(
    frame: np.ndarray,
    pose: PoseResult,
    calibration: CalibrationData,
    config: Optional[OverlayConfiguration] = None,
) -> np.ndarray:
    """Draw the target frame axes (X red, Y green, Z blue)."""
    config = config or OverlayConfiguration()
    if pose is None or not pose.success:
        return frame

    s = config.axis_length
    axes = np.array([[0, 0, 0], [s, 0, 0], [0, s, 0], [0, 0, s]], dtype=np.float64)
    pts_2d, _ = cv2.projectPoints(
        axes,
        pose.rotation_vector,
        pose.translation_vector,
        calibration.camera_matrix,
        calibration.dist_coeffs,
    )
    pts_2d = pts_2d.reshape(-1, 2)
    if not np.all(np.isfinite(pts_2d)):
        LOGGER.debug("Axes projection is not finite; skipping")
        return frame

    pts = [tuple(int(v) for v in p) for p in np.round(pts_2d)]
    origin = pts[0]
    cv2.line(frame, origin, pts[1], (0, 0, 255), config.line_thickness, config.line_type)
    cv2.line(frame, origin, pts[2], (0, 255, 0), config.line_thickness, config.line_type)
    cv2.line(frame, origin, pts[3], (255, 0, 0), config.line_thickness, config.line_type)
    return frame


def draw_status(
    frame: np.ndarray,
    tracks: Iterable[Track],
    config: Optional[OverlayConfiguration] = None,
    origin: Tuple[int, int] = (10, 20),
) -> np.ndarray:
    """List every track with its status in the top-left corner."""
    config = config or OverlayConfiguration()
    x, y = origin
    for track in tracks:
        _label(frame, f"{track.key}: {track.status.value}", (x, y), STATUS_COLORS[track.status], config)
        y += int(30 * config.font_scale) + 6
    return frame
