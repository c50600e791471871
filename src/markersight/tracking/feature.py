"""
Keypoint features for image targets.

Describes reference images and frames with one of several OpenCV
detector/descriptor pairs, matches descriptors with a ratio test and follows
points between frames with pyramidal Lucas-Kanade optical flow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import cv2
import numpy as np

LOGGER = logging.getLogger(__name__)


class DetectorType(Enum):
    """Supported feature detector types."""
    ORB = "orb"
    FAST_BRIEF = "fast_brief"
    AKAZE = "akaze"
    BRISK = "brisk"
    SIFT = "sift"
    GFTT_ORB = "gftt_orb"  # corners from goodFeaturesToTrack, ORB descriptors


class MatcherType(Enum):
    """Supported descriptor matcher types."""
    BF_HAMMING = "bf_hamming"
    BF_L2 = "bf_l2"
    FLANN = "flann"


@dataclass
class FeatureConfiguration:
    """Feature extraction, matching and optical flow settings.

    Keys share the flat ``image_matching`` config section with
    ``ImageMatcherConfig``; unknown keys are ignored by ``from_dict``.
    """

    method: str = "orb"
    max_features: int = 1000

    # ORB / FAST
    fast_threshold: int = 20
    orb_scale_factor: float = 1.2
    orb_nlevels: int = 8
    orb_edge_threshold: int = 31
    orb_patch_size: int = 31

    # GFTT
    quality_level: float = 0.01
    min_distance: float = 7.0

    # AKAZE / BRISK / SIFT
    akaze_threshold: float = 0.001
    brisk_threshold: int = 30
    sift_contrast_threshold: float = 0.04

    # Matching
    matcher_type: str = "bf_hamming"
    match_ratio_threshold: float = 0.75
    min_match_distance: float = 30.0  # accepted distance when only one neighbour exists

    # Lucas-Kanade
    optical_flow_win_size: int = 21
    optical_flow_max_level: int = 3
    optical_flow_criteria_count: int = 30
    optical_flow_criteria_eps: float = 0.03
    optical_flow_min_eig_threshold: float = 0.001
    adaptive_optical_flow: bool = True  # forward-backward consistency check
    optical_flow_fb_threshold: float = 1.0  # pixels

    @classmethod
    def from_dict(cls, values: Optional[Dict]) -> FeatureConfiguration:
        values = values or {}
        return cls(**{k: v for k, v in values.items() if k in cls.__dataclass_fields__})


# (detector or None for GFTT, descriptor extractor, norm)
DetectorBundle = Tuple[Optional[cv2.Feature2D], cv2.Feature2D, str]


def _orb(config: FeatureConfiguration) -> cv2.ORB:
    return cv2.ORB_create(
        nfeatures=config.max_features,
        scaleFactor=config.orb_scale_factor,
        nlevels=config.orb_nlevels,
        edgeThreshold=config.orb_edge_threshold,
        patchSize=config.orb_patch_size,
        fastThreshold=config.fast_threshold,
    )


def _build_orb(config: FeatureConfiguration) -> DetectorBundle:
    orb = _orb(config)
    return orb, orb, "hamming"


def _build_fast_brief(config: FeatureConfiguration) -> DetectorBundle:
    fast = cv2.FastFeatureDetector_create(threshold=config.fast_threshold, nonmaxSuppression=True)
    xfeatures2d = getattr(cv2, "xfeatures2d", None)
    if xfeatures2d is None:
        LOGGER.warning("BRIEF requires opencv-contrib; describing FAST corners with ORB")
        return fast, _orb(config), "hamming"
    return fast, xfeatures2d.BriefDescriptorExtractor_create(), "hamming"


def _missing(name: str, config: FeatureConfiguration) -> DetectorBundle:
    LOGGER.warning("%s is not available in this OpenCV build; using ORB", name)
    return _build_orb(config)


def _build_akaze(config: FeatureConfiguration) -> DetectorBundle:
    create = getattr(cv2, "AKAZE_create", None)
    if create is None:
        return _missing("AKAZE", config)
    akaze = create(threshold=config.akaze_threshold)
    return akaze, akaze, "hamming"


def _build_brisk(config: FeatureConfiguration) -> DetectorBundle:
    create = getattr(cv2, "BRISK_create", None)
    if create is None:
        return _missing("BRISK", config)
    brisk = create(thresh=config.brisk_threshold)
    return brisk, brisk, "hamming"


def _build_sift(config: FeatureConfiguration) -> DetectorBundle:
    create = getattr(cv2, "SIFT_create", None)
    if create is None:
        return _missing("SIFT", config)
    sift = create(nfeatures=config.max_features, contrastThreshold=config.sift_contrast_threshold)
    return sift, sift, "l2"


def _build_gftt_orb(config: FeatureConfiguration) -> DetectorBundle:
    return None, _orb(config), "hamming"


_BUILDERS: Dict[DetectorType, Callable[[FeatureConfiguration], DetectorBundle]] = {
    DetectorType.ORB: _build_orb,
    DetectorType.FAST_BRIEF: _build_fast_brief,
    DetectorType.AKAZE: _build_akaze,
    DetectorType.BRISK: _build_brisk,
    DetectorType.SIFT: _build_sift,
    DetectorType.GFTT_ORB: _build_gftt_orb,
}


class FeatureDetectorFactory:
    """Creates OpenCV detectors, descriptor extractors and matchers by name."""

    @staticmethod
    def create_detector(detector_type: str, config: FeatureConfiguration) -> DetectorBundle:
        """Return ``(detector, descriptor_extractor, norm)`` for a method name.

        Unknown names fall back to ORB.
        """
        try:
            kind = DetectorType(detector_type.lower())
        except ValueError:
            LOGGER.warning("Unknown detector type '%s', using ORB", detector_type)
            kind = DetectorType.ORB
        return _BUILDERS[kind](config)

    @staticmethod
    def create_matcher(matcher_type: str, norm: str) -> cv2.DescriptorMatcher:
        """Brute-force matcher by default; FLANN uses LSH for binary descriptors."""
        if matcher_type == MatcherType.FLANN.value:
            if norm == "hamming":
                index_params = {"algorithm": 6, "table_number": 6, "key_size": 12, "multi_probe_level": 1}
            else:
                index_params = {"algorithm": 1, "trees": 5}
            return cv2.FlannBasedMatcher(index_params, {"checks": 50})
        return cv2.BFMatcher(cv2.NORM_HAMMING if norm == "hamming" else cv2.NORM_L2, crossCheck=False)


class FeatureExtractor:
    """Detects keypoints and computes descriptors with the configured method."""

    def __init__(self, config: Optional[FeatureConfiguration] = None):
        self.config = config or FeatureConfiguration()
        self.detector, self.descriptor_extractor, self.norm = FeatureDetectorFactory.create_detector(
            self.config.method, self.config
        )
        self.matcher = FeatureDetectorFactory.create_matcher(self.config.matcher_type, self.norm)

    def _keypoints(self, gray: np.ndarray) -> List[cv2.KeyPoint]:
        if self.detector is None:
            corners = cv2.goodFeaturesToTrack(
                gray,
                maxCorners=self.config.max_features,
                qualityLevel=self.config.quality_level,
                minDistance=self.config.min_distance,
            )
            if corners is None:
                return []
            return [cv2.KeyPoint(float(x), float(y), 31) for x, y in corners.reshape(-1, 2)]

        keypoints = self.detector.detect(gray, None)
        if len(keypoints) > self.config.max_features:
            keypoints = sorted(keypoints, key=lambda kp: kp.response, reverse=True)[:self.config.max_features]
        return list(keypoints)

    def detect_and_compute(self, gray: np.ndarray) -> Tuple[List[cv2.KeyPoint], Optional[np.ndarray]]:
        """Detect up to ``max_features`` keypoints and describe them."""
        keypoints = self._keypoints(gray)
        if not keypoints:
            return [], None
        keypoints, descriptors = self.descriptor_extractor.compute(gray, keypoints)
        return list(keypoints or []), descriptors

    def match(self, query: Optional[np.ndarray], train: Optional[np.ndarray]) -> List[cv2.DMatch]:
        """Two-nearest-neighbour matching filtered by Lowe's ratio test."""
        if query is None or train is None or len(query) == 0 or len(train) == 0:
            return []

        try:
            pairs = self.matcher.knnMatch(query, train, k=2)
        except cv2.error as e:
            LOGGER.debug("Matching failed: %s", e)
            return []

        ratio = self.config.match_ratio_threshold
        good = []
        for pair in pairs:
            if len(pair) >= 2:
                if pair[0].distance < ratio * pair[1].distance:
                    good.append(pair[0])
            elif len(pair) == 1 and pair[0].distance < self.config.min_match_distance:
                good.append(pair[0])
        return good


def keypoints_to_array(keypoints: Optional[List[cv2.KeyPoint]]) -> np.ndarray:
    """(N, 2) float32 array of keypoint positions."""
    if not keypoints:
        return np.empty((0, 2), dtype=np.float32)
    return np.array([kp.pt for kp in keypoints], dtype=np.float32)


def track_optical_flow(
    prev_gray: np.ndarray,
    gray: np.ndarray,
    prev_points: np.ndarray,
    config: FeatureConfiguration,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Follow points from ``prev_gray`` into ``gray``.

    With ``adaptive_optical_flow`` set, each point is also tracked back and
    kept only if it returns within ``optical_flow_fb_threshold`` pixels.

    Returns:
        (tracked points (M, 2), boolean mask over ``prev_points``)
    """
    prev_points = np.asarray(prev_points, dtype=np.float32).reshape(-1, 1, 2)
    if len(prev_points) == 0:
        return np.empty((0, 2), dtype=np.float32), np.zeros(0, dtype=bool)

    lk_params = {
        "winSize": (config.optical_flow_win_size, config.optical_flow_win_size),
        "maxLevel": config.optical_flow_max_level,
        "criteria": (
            cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT,
            config.optical_flow_criteria_count,
            config.optical_flow_criteria_eps,
        ),
        "minEigThreshold": config.optical_flow_min_eig_threshold,
    }

    next_pts, status, _ = cv2.calcOpticalFlowPyrLK(prev_gray, gray, prev_points, None, **lk_params)
    if next_pts is None or status is None:
        return np.empty((0, 2), dtype=np.float32), np.zeros(len(prev_points), dtype=bool)
    mask = status.ravel() == 1

    if config.adaptive_optical_flow:
        back_pts, back_status, _ = cv2.calcOpticalFlowPyrLK(gray, prev_gray, next_pts, None, **lk_params)
        if back_pts is not None and back_status is not None:
            fb_error = np.linalg.norm(prev_points.reshape(-1, 2) - back_pts.reshape(-1, 2), axis=1)
            mask &= (back_status.ravel() == 1) & (fb_error < config.optical_flow_fb_threshold)

    return next_pts.reshape(-1, 2)[mask], mask
