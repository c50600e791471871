"""
Frame acquisition.

This module turns camera or video-file input into ``Frame`` objects: a
luminance image with the intrinsics and camera-to-world pose it was captured
with.
"""

from __future__ import annotations

import logging
import platform
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Union

import cv2
import numpy as np

from .pose import CalibrationData, load_calibration

LOGGER = logging.getLogger(__name__)

PoseProvider = Callable[[float], Optional[np.ndarray]]

# Capture backends tried in order when ``camera_backend_priority`` is unset
PLATFORM_BACKENDS = {
    'Darwin': ('CAP_AVFOUNDATION',),
    'Windows': ('CAP_DSHOW', 'CAP_MSMF'),
    'Linux': ('CAP_V4L2', 'CAP_GSTREAMER'),
}


def validate_camera_pose(camera_pose: Optional[np.ndarray], tolerance: float = 1e-3) -> np.ndarray:
    """Return a 4x4 float64 camera-to-world transform or raise ``ValueError``."""
    if camera_pose is None:
        return np.eye(4, dtype=np.float64)

    pose = np.asarray(camera_pose, dtype=np.float64)
    if pose.shape != (4, 4):
        raise ValueError(f"Camera pose must be 4x4, got shape {pose.shape}")
    if not np.all(np.isfinite(pose)):
        raise ValueError("Camera pose contains non-finite values")

    rotation = pose[:3, :3]
    if not np.allclose(rotation.T @ rotation, np.eye(3), atol=tolerance) or np.linalg.det(rotation) <= 0:
        raise ValueError("Camera pose rotation is not a proper rotation matrix")
    if not np.allclose(pose[3], [0.0, 0.0, 0.0, 1.0], atol=tolerance):
        raise ValueError("Camera pose bottom row must be [0, 0, 0, 1]")
    return pose


@dataclass
class Frame:
    """One camera frame as consumed by the tracking engine."""

    image: np.ndarray  # luminance, uint8, (H, W)
    calibration: CalibrationData
    timestamp: float = 0.0
    camera_pose: np.ndarray = field(default_factory=lambda: np.eye(4, dtype=np.float64))

    @classmethod
    def create(
        cls,
        image: np.ndarray,
        calibration: CalibrationData,
        timestamp: float = 0.0,
        camera_pose: Optional[np.ndarray] = None,
    ) -> Frame:
        """Validate input and build a frame, converting colour images to luminance."""
        if image is None or image.size == 0:
            raise ValueError("Frame image cannot be empty.")

        if image.ndim == 3:
            if image.shape[2] == 1:
                gray = image[:, :, 0]
            elif image.shape[2] == 4:
                gray = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
            else:
                gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        elif image.ndim == 2:
            gray = image
        else:
            raise ValueError(f"Unsupported image shape {image.shape}")

        if gray.dtype != np.uint8:
            gray = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)

        if calibration is None or np.asarray(calibration.camera_matrix).shape != (3, 3):
            raise ValueError("Frame intrinsics must include a 3x3 camera matrix")

        return cls(
            image=np.ascontiguousarray(gray),
            calibration=calibration,
            timestamp=float(timestamp),
            camera_pose=validate_camera_pose(camera_pose),
        )

    @property
    def shape(self):
        return self.image.shape



def default_backends() -> List[int]:
    """OpenCV capture backends for this platform, ending with ``CAP_ANY``."""
    names = PLATFORM_BACKENDS.get(platform.system(), PLATFORM_BACKENDS['Linux']) + ('CAP_ANY',)
    return [getattr(cv2, name) for name in names if hasattr(cv2, name)] or [cv2.CAP_ANY]


def backend_name(backend: Optional[int]) -> str:
    if backend is None:
        return "none"
    names = [attr for attr in dir(cv2) if attr.startswith("CAP_") and getattr(cv2, attr) == backend]
    return names[0] if names else f"backend {backend}"


class FrameSource:
    """Captures frames from a camera or a video file.

    Frames carry the intrinsics loaded from the ``calibration`` section and,
    when a ``pose_provider`` is given, the camera-to-world pose it returns
    for each frame timestamp.
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        calibration: Optional[CalibrationData] = None,
        pose_provider: Optional[PoseProvider] = None,
    ):
        self.config = config or {}
        video = self.config.get('video', {})

        self.camera_id = video.get('camera_id', 0)
        self.requested = {
            cv2.CAP_PROP_FRAME_WIDTH: video.get('video_width', 640),
            cv2.CAP_PROP_FRAME_HEIGHT: video.get('video_height', 480),
            cv2.CAP_PROP_FPS: video.get('video_fps', 30),
        }
        self.backends = video.get('camera_backend_priority') or default_backends()
        self.warmup_frames = video.get('camera_init_attempts', 10)

        self.calibration = calibration or load_calibration(self.config.get('calibration', {}))
        self.pose_provider = pose_provider

        self.cap: Optional[cv2.VideoCapture] = None
        self.backend: Optional[int] = None
        self.is_file = False
        self._start_time: Optional[float] = None

    def initialize(self) -> bool:
        """Open the configured camera with the first backend that delivers frames."""
        self.cleanup()

        for backend in self.backends:
            cap = self._open_camera(backend)
            if cap is None:
                continue

            self.cap = cap
            self.backend = backend
            self.is_file = False
            self._start_time = time.monotonic()
            LOGGER.info(
                "Camera %s opened with %s: %dx%d @ %dfps",
                self.camera_id,
                backend_name(backend),
                int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
                int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
                int(cap.get(cv2.CAP_PROP_FPS)),
            )
            return True

        LOGGER.error(
            "Could not open camera %s (tried %s)",
            self.camera_id,
            ", ".join(backend_name(b) for b in self.backends),
        )
        return False

    def _open_camera(self, backend: int) -> Optional[cv2.VideoCapture]:
        LOGGER.debug("Opening camera %s with %s", self.camera_id, backend_name(backend))
        try:
            cap = cv2.VideoCapture(self.camera_id, backend)
        except cv2.error as e:
            LOGGER.error("%s failed to open camera %s: %s", backend_name(backend), self.camera_id, e)
            return None

        if not cap.isOpened():
            LOGGER.warning("%s could not open camera %s", backend_name(backend), self.camera_id)
            cap.release()
            return None

        for prop, value in self.requested.items():
            cap.set(prop, value)

        if not self._delivers_frames(cap):
            LOGGER.warning("%s opened camera %s but delivered no frames", backend_name(backend), self.camera_id)
            cap.release()
            return None
        return cap

    def _delivers_frames(self, cap: cv2.VideoCapture) -> bool:
        # Some drivers return black frames while the sensor starts up
        for _ in range(self.warmup_frames):
            ok, image = cap.read()
            if ok and image is not None and image.size and image.any():
                return True
        return False

    def load_video_file(self, filepath: str) -> bool:
        """Read frames from a video file instead of a camera."""
        self.cleanup()
        cap = cv2.VideoCapture(filepath)
        if not cap.isOpened():
            LOGGER.error("Failed to open video file: %s", filepath)
            cap.release()
            return False

        self.cap = cap
        self.is_file = True
        LOGGER.info("Video file loaded: %s", filepath)
        return True

    def read(self) -> Optional[Frame]:
        """Capture the next frame, or None when the stream has ended."""
        if self.cap is None or not self.cap.isOpened():
            return None

        ret, image = self.cap.read()
        if not ret or image is None:
            LOGGER.debug("No frame returned by capture")
            return None

        timestamp = self._timestamp()
        camera_pose = self.pose_provider(timestamp) if self.pose_provider else None
        return Frame.create(image, self.calibration, timestamp=timestamp, camera_pose=camera_pose)

    def frames(self, max_frames: Optional[int] = None) -> Iterator[Frame]:
        """Yield frames until the stream ends or ``max_frames`` is reached."""
        count = 0
        while max_frames is None or count < max_frames:
            frame = self.read()
            if frame is None:
                return
            count += 1
            yield frame

    def _timestamp(self) -> float:
        if self.is_file:
            return float(self.cap.get(cv2.CAP_PROP_POS_MSEC)) / 1000.0
        if self._start_time is None:
            self._start_time = time.monotonic()
        return time.monotonic() - self._start_time

    def get_frame_info(self) -> Dict[str, Union[int, str]]:
        """Get information about the current video stream."""
        if self.cap is None:
            return {}

        return {
            'width': int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            'height': int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            'fps': int(self.cap.get(cv2.CAP_PROP_FPS)),
            'backend': 'file' if self.is_file else backend_name(self.backend),
        }

    def cleanup(self):
        """Release the capture device."""
        if self.cap is not None:
            self.cap.release()
            self.cap = None
            LOGGER.info("Frame source cleaned up")
