"""
markersight - Fiducial marker and image target tracking.

This package provides functionality for:
- Frame acquisition from cameras and video files
- Square fiducial marker detection and identification
- Planar image target matching with optical-flow tracking
- 6-DoF target pose estimation in camera and world space
- Per-target tracking status with change notifications
"""

from .marker_detect import (
    MarkerDetection,
    MarkerDetector,
    MarkerDetectorConfig,
    MarkerDictionary,
    get_dictionary,
)
from .pipeline import EngineFrameResult, TrackingEngine
from .pose import (
    CalibrationData,
    PoseEstimator,
    PoseFilter,
    PoseFilterConfig,
    PoseResult,
    load_calibration,
    to_world,
)
from .targets import ImageTarget, MarkerTarget, TargetRegistry, load_targets
from .tracking import (
    ImageTargetDetection,
    ImageTargetMatcher,
    Observation,
    Track,
    TrackEvent,
    TrackingStatus,
    TrackManager,
)
from .video import Frame, FrameSource

__version__ = "0.1.0"

__all__ = [
    # Acquisition
    "Frame",
    "FrameSource",
    # Targets
    "ImageTarget",
    "MarkerTarget",
    "TargetRegistry",
    "load_targets",
    # Markers
    "MarkerDetection",
    "MarkerDetector",
    "MarkerDetectorConfig",
    "MarkerDictionary",
    "get_dictionary",
    # Image targets
    "ImageTargetDetection",
    "ImageTargetMatcher",
    # Pose
    "CalibrationData",
    "PoseEstimator",
    "PoseFilter",
    "PoseFilterConfig",
    "PoseResult",
    "load_calibration",
    "to_world",
    # Tracking
    "Observation",
    "Track",
    "TrackEvent",
    "TrackingStatus",
    "TrackManager",
    "TrackingEngine",
    "EngineFrameResult",
]
