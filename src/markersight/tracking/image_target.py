"""
Planar image target matching.

Reference images are described once with keypoint descriptors. Each frame,
targets found in the previous frame are followed with optical flow; the rest
are searched for by descriptor matching. Both paths fit a RANSAC homography
from the reference image into the frame.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from ..targets import ImageTarget
from .feature import FeatureConfiguration, FeatureExtractor, keypoints_to_array, track_optical_flow

LOGGER = logging.getLogger(__name__)


@dataclass
class ImageMatcherConfig:
    """Acceptance thresholds for image target matching."""

    min_matches: int = 12
    min_inliers: int = 10
    ransac_reproj_threshold: float = 5.0
    min_reference_features: int = 20
    min_area_rate: float = 0.001  # Minimum quad area relative to the frame area
    use_optical_flow: bool = True
    redetect_interval: int = 30  # Frames of pure optical flow before forcing a detection

    @classmethod
    def from_dict(cls, values: Optional[Dict]) -> ImageMatcherConfig:
        values = values or {}
        return cls(**{k: v for k, v in values.items() if k in cls.__dataclass_fields__})


@dataclass
class ImageTargetDetection:
    """An image target located in one frame."""

    name: str
    corners: np.ndarray  # (4, 2) projected reference corners TL, TR, BR, BL
    homography: np.ndarray  # 3x3 reference -> frame
    reference_points: np.ndarray  # (N, 2) inlier points in the reference image
    frame_points: np.ndarray  # (N, 2) matching points in the frame
    inliers: int = 0
    confidence: float = 0.0
    source: str = "detection"

    @property
    def key(self) -> str:
        return self.name


@dataclass
class _ReferenceModel:
    target: ImageTarget
    keypoints: np.ndarray
    descriptors: np.ndarray
    corners: np.ndarray


@dataclass
class _TargetState:
    reference_points: np.ndarray
    frame_points: np.ndarray
    frames_since_detection: int = 0


class ImageTargetMatcher:
    """Locates registered image targets in luminance frames."""

    def __init__(self, config: Optional[Dict] = None):
        cfg_dict = dict(config or {})
        self.config = ImageMatcherConfig.from_dict(cfg_dict)
        self.feature_config = FeatureConfiguration.from_dict(cfg_dict)
        self.extractor = FeatureExtractor(self.feature_config)

        self._references: Dict[str, _ReferenceModel] = {}
        self._states: Dict[str, _TargetState] = {}
        self._prev_gray: Optional[np.ndarray] = None

        LOGGER.info(
            "ImageTargetMatcher initialized: detector=%s, matcher=%s",
            self.feature_config.method,
            self.feature_config.matcher_type,
        )

    # ------------------------------------------------------------------ #
    # Target management
    # ------------------------------------------------------------------ #
    def add_target(self, target: ImageTarget):
        """Describe a reference image so it can be matched."""
        if target.name in self._references:
            raise ValueError(f"Image target '{target.name}' is already registered")

        keypoints, descriptors = self.extractor.detect_and_compute(target.image)
        if descriptors is None or len(keypoints) < self.config.min_reference_features:
            raise ValueError(
                f"Image target '{target.name}' has too few features "
                f"({len(keypoints)} < {self.config.min_reference_features})"
            )

        height, width = target.image.shape[:2]
        corners = np.array(
            [[0.0, 0.0], [width, 0.0], [width, height], [0.0, height]], dtype=np.float32
        )
        self._references[target.name] = _ReferenceModel(
            target=target,
            keypoints=keypoints_to_array(keypoints),
            descriptors=descriptors,
            corners=corners,
        )
        LOGGER.info("Image target '%s' described with %d features", target.name, len(keypoints))

    def remove_target(self, name: str):
        self._references.pop(name, None)
        self._states.pop(name, None)

    @property
    def target_names(self) -> List[str]:
        return list(self._references)

    def reset(self):
        """Drop frame-to-frame state; reference descriptions are kept."""
        self._states.clear()
        self._prev_gray = None

    # ------------------------------------------------------------------ #
    # Per-frame processing
    # ------------------------------------------------------------------ #
    def process(self, frame: np.ndarray) -> List[ImageTargetDetection]:
        """Locate every registered target in the frame."""
        if frame is None or frame.size == 0:
            raise ValueError("Frame cannot be empty.")
        gray = frame if frame.ndim == 2 else cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)

        if self._prev_gray is not None and self._prev_gray.shape != gray.shape:
            self.reset()

        frame_features: Optional[Tuple[np.ndarray, Optional[np.ndarray]]] = None
        detections: List[ImageTargetDetection] = []

        for name, model in self._references.items():
            detection = None
            state = self._states.get(name)

            if (
                self.config.use_optical_flow
                and state is not None
                and self._prev_gray is not None
                and state.frames_since_detection < self.config.redetect_interval
            ):
                detection = self._track(model, state, gray)

            if detection is None:
                if frame_features is None:
                    keypoints, descriptors = self.extractor.detect_and_compute(gray)
                    frame_features = (keypoints_to_array(keypoints), descriptors)
                detection = self._detect(model, gray.shape, *frame_features)

            if detection is None:
                self._states.pop(name, None)
                continue

            frames_since = 0
            if detection.source == "optical_flow":
                frames_since = state.frames_since_detection + 1
            self._states[name] = _TargetState(
                reference_points=detection.reference_points,
                frame_points=detection.frame_points,
                frames_since_detection=frames_since,
            )
            detections.append(detection)

        self._prev_gray = gray
        return detections

    def _detect(
        self,
        model: _ReferenceModel,
        shape: Tuple[int, int],
        frame_points: np.ndarray,
        frame_descriptors: Optional[np.ndarray],
    ) -> Optional[ImageTargetDetection]:
        matches = self.extractor.match(model.descriptors, frame_descriptors)
        if len(matches) < self.config.min_matches:
            LOGGER.debug("Target '%s': %d matches", model.target.name, len(matches))
            return None

        ref_pts = model.keypoints[[m.queryIdx for m in matches]]
        frm_pts = frame_points[[m.trainIdx for m in matches]]
        return self._fit(model, shape, ref_pts, frm_pts, len(matches), "detection")

    def _track(
        self,
        model: _ReferenceModel,
        state: _TargetState,
        gray: np.ndarray,
    ) -> Optional[ImageTargetDetection]:
        tracked, mask = track_optical_flow(self._prev_gray, gray, state.frame_points, self.feature_config)
        if len(tracked) < self.config.min_inliers:
            return None
        ref_pts = state.reference_points[mask]
        return self._fit(model, gray.shape, ref_pts, tracked, len(state.frame_points), "optical_flow")

    def _fit(
        self,
        model: _ReferenceModel,
        shape: Tuple[int, int],
        ref_pts: np.ndarray,
        frm_pts: np.ndarray,
        candidates: int,
        source: str,
    ) -> Optional[ImageTargetDetection]:
        """Fit a homography and validate the projected reference outline."""
        if len(ref_pts) < 4:
            return None

        try:
            homography, inlier_mask = cv2.findHomography(
                ref_pts.reshape(-1, 1, 2).astype(np.float32),
                frm_pts.reshape(-1, 1, 2).astype(np.float32),
                cv2.RANSAC,
                self.config.ransac_reproj_threshold,
            )
        except cv2.error as e:
            LOGGER.debug("Homography failed for '%s': %s", model.target.name, e)
            return None

        if homography is None or inlier_mask is None:
            return None

        inliers = inlier_mask.ravel().astype(bool)
        inlier_count = int(inliers.sum())
        if inlier_count < self.config.min_inliers:
            LOGGER.debug("Target '%s': %d inliers (%s)", model.target.name, inlier_count, source)
            return None

        corners = cv2.perspectiveTransform(model.corners.reshape(-1, 1, 2), homography).reshape(4, 2)
        if not self._plausible_outline(corners, shape):
            LOGGER.debug("Target '%s': implausible outline rejected", model.target.name)
            return None

        return ImageTargetDetection(
            name=model.target.name,
            corners=corners.astype(np.float32),
            homography=homography,
            reference_points=ref_pts[inliers].astype(np.float32),
            frame_points=frm_pts[inliers].astype(np.float32),
            inliers=inlier_count,
            confidence=inlier_count / float(max(candidates, 1)),
            source=source,
        )

    def _plausible_outline(self, corners: np.ndarray, shape: Tuple[int, int]) -> bool:
        if not np.all(np.isfinite(corners)):
            return False
        if not cv2.isContourConvex(corners.reshape(-1, 1, 2).astype(np.float32)):
            return False
        area = cv2.contourArea(corners.reshape(-1, 1, 2).astype(np.float32))
        return area >= self.config.min_area_rate * shape[0] * shape[1]
