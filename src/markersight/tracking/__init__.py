"""
Tracking subpackage.

Provides image-target matching built on keypoint features and optical flow,
and the per-target track state machine.

Supported detectors:
- ORB (default, fast and robust)
- FAST + BRIEF (very fast; BRIEF needs opencv-contrib, ORB descriptors otherwise)
- AKAZE (scale/rotation invariant)
- BRISK (balanced)
- SIFT (most robust)
- GFTT + ORB (Good Features To Track with ORB descriptors)
"""

from .feature import (
    DetectorType,
    FeatureConfiguration,
    FeatureDetectorFactory,
    FeatureExtractor,
    MatcherType,
    track_optical_flow,
)
from .image_target import ImageMatcherConfig, ImageTargetDetection, ImageTargetMatcher
from .manager import (
    Observation,
    Track,
    TrackEvent,
    TrackingStatus,
    TrackManager,
    TrackManagerConfig,
)

__all__ = [
    "DetectorType",
    "FeatureConfiguration",
    "FeatureDetectorFactory",
    "FeatureExtractor",
    "MatcherType",
    "track_optical_flow",
    "ImageMatcherConfig",
    "ImageTargetDetection",
    "ImageTargetMatcher",
    "Observation",
    "Track",
    "TrackEvent",
    "TrackingStatus",
    "TrackManager",
    "TrackManagerConfig",
]
