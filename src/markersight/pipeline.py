"""
Tracking engine.

Wires the target registry, marker detectors, image target matcher, pose
estimator and track manager into a per-frame pipeline:

    Frame -> {MarkerDetector | ImageTargetMatcher} -> PoseEstimator
          -> TrackManager -> subscribers
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from .marker_detect import MarkerDetection, MarkerDetector
from .pose import PoseEstimator, to_world
from .targets import ImageTarget, MarkerTarget, Target, TargetRegistry, load_targets
from .tracking.image_target import ImageTargetDetection, ImageTargetMatcher
from .tracking.manager import (
    Observation,
    Track,
    TrackCallback,
    TrackEvent,
    TrackingStatus,
    TrackManager,
)
from .utils import default_config, merge_config
from .video import Frame

LOGGER = logging.getLogger(__name__)


@dataclass
class EngineFrameResult:
    """Everything the engine produced for one frame."""

    timestamp: float
    marker_detections: List[MarkerDetection] = field(default_factory=list)
    image_detections: List[ImageTargetDetection] = field(default_factory=list)
    observations: Dict[str, Observation] = field(default_factory=dict)
    events: List[TrackEvent] = field(default_factory=list)
    processing_time: float = 0.0


class TrackingEngine:
    """Standalone marker and image target tracker."""

    def __init__(self, config: Optional[Dict] = None):
        self.config = merge_config(default_config(), config or {})

        self.registry = TargetRegistry()
        self.detectors: Dict[str, MarkerDetector] = {}
        self.image_matcher = ImageTargetMatcher(self.config.get("image_matching", {}))
        self.pose_estimator = PoseEstimator(self.config)
        self.pose_estimator.initialize()
        self.track_manager = TrackManager(
            self.config.get("tracking", {}),
            self.config.get("pose_filter", {}),
        )
        self.frame_count = 0

    @classmethod
    def from_config(cls, config: Dict, base_dir: Optional[str] = None) -> TrackingEngine:
        """Build an engine and register the targets listed in the config."""
        engine = cls(config)
        engine.register_targets(engine.config.get("targets", []), base_dir=base_dir)
        return engine

    # ------------------------------------------------------------------ #
    # Target registration
    # ------------------------------------------------------------------ #
    def register_targets(self, entries: Sequence[Dict], base_dir: Optional[str] = None) -> List[Target]:
        """Register targets described by config entries, in order.

        Entries before a failing one stay registered; the failing target
        leaves neither a registry entry nor a track behind.
        """
        targets = load_targets(TargetRegistry(), entries, base_dir=base_dir)
        for target in targets:
            if target.key in self.registry:
                raise ValueError(f"Target '{target.key}' is already registered")
            self._attach(target)
            self.registry.add(target)
        return targets

    def register_marker(self, dictionary: str, marker_id: int, size: float) -> MarkerTarget:
        """Track a square marker of known side length (meters)."""
        target = MarkerTarget(dictionary=dictionary, marker_id=int(marker_id), size=float(size))
        if target.key in self.registry:
            raise ValueError(f"Target '{target.key}' is already registered")
        self._attach(target)
        self.registry.add(target)
        return target

    def register_image(self, name: str, image: np.ndarray, size: float) -> ImageTarget:
        """Track a planar image whose longer dimension is ``size`` meters."""
        target = ImageTarget(name=name, image=image, size=float(size))
        if target.key in self.registry:
            raise ValueError(f"Target '{target.key}' is already registered")
        self._attach(target)
        self.registry.add(target)
        return target

    def unregister(self, key: str) -> Target:
        target = self.registry.remove(key)
        self.track_manager.remove_track(key)
        if isinstance(target, ImageTarget):
            self.image_matcher.remove_target(target.name)
        elif not self.registry.markers_for(target.dictionary):
            self.detectors.pop(target.dictionary, None)
        return target

    def _attach(self, target: Target):
        """Prepare detection state and a track for a target."""
        if isinstance(target, MarkerTarget):
            detector = self._detector_for(target.dictionary)
            if target.marker_id >= len(detector.dictionary):
                if not self.registry.markers_for(target.dictionary):
                    self.detectors.pop(target.dictionary, None)
                raise ValueError(f"Marker ID {target.marker_id} is not in dictionary {target.dictionary}")
        else:
            self.image_matcher.add_target(target)
        self.track_manager.add_track(target.key)

    def _detector_for(self, dictionary: str) -> MarkerDetector:
        detector = self.detectors.get(dictionary)
        if detector is None:
            detector = MarkerDetector(dictionary, self.config.get("marker_detection", {}))
            self.detectors[dictionary] = detector
        return detector

    # ------------------------------------------------------------------ #
    # Subscriptions
    # ------------------------------------------------------------------ #
    def subscribe(self, callback: TrackCallback):
        self.track_manager.subscribe(callback)

    def unsubscribe(self, callback: TrackCallback):
        self.track_manager.unsubscribe(callback)

    def subscribe_pose(self, callback: TrackCallback):
        self.track_manager.subscribe_pose(callback)

    def unsubscribe_pose(self, callback: TrackCallback):
        self.track_manager.unsubscribe_pose(callback)

    # ------------------------------------------------------------------ #
    # Processing
    # ------------------------------------------------------------------ #
    def process_frame(self, frame: Frame) -> EngineFrameResult:
        """Detect, estimate and update every track for one frame."""
        start = time.perf_counter()
        self.frame_count += 1
        result = EngineFrameResult(timestamp=frame.timestamp)

        for dictionary, detector in self.detectors.items():
            for detection in detector.detect(frame.image):
                target = self.registry.find(detection.key)
                if target is None:
                    LOGGER.debug("Ignoring unregistered marker %s", detection.key)
                    continue
                result.marker_detections.append(detection)
                pose = self.pose_estimator.estimate_from_marker(
                    detection,
                    target.size,
                    calibration=frame.calibration,
                    previous=self._previous_pose(detection.key),
                    timestamp=frame.timestamp,
                )
                self._add_observation(result, detection.key, pose, detection.confidence, frame)

        if self.image_matcher.target_names:
            for detection in self.image_matcher.process(frame.image):
                target = self.registry.get(detection.key)
                result.image_detections.append(detection)
                pose = self.pose_estimator.estimate_from_image_target(
                    detection,
                    target,
                    calibration=frame.calibration,
                    previous=self._previous_pose(detection.key),
                    timestamp=frame.timestamp,
                )
                self._add_observation(result, detection.key, pose, detection.confidence, frame)

        result.events = self.track_manager.update(result.observations, timestamp=frame.timestamp)
        result.processing_time = time.perf_counter() - start
        return result

    def _previous_pose(self, key: str):
        track = self.track_manager.tracks.get(key)
        if track is None or track.status == TrackingStatus.LOST:
            return None
        return track.pose

    @staticmethod
    def _add_observation(result: EngineFrameResult, key: str, pose, confidence: float, frame: Frame):
        if not pose.success:
            LOGGER.debug("Pose estimation failed for %s", key)
            return
        result.observations[key] = Observation(
            pose=pose,
            world_pose=to_world(pose, frame.camera_pose),
            confidence=confidence,
        )

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    def get_track(self, key: str) -> Track:
        return self.track_manager.get(key)

    def get_status(self, key: str) -> TrackingStatus:
        return self.track_manager.get(key).status

    def reset(self) -> List[TrackEvent]:
        """Forget all frame-to-frame state; registrations are kept."""
        self.image_matcher.reset()
        self.frame_count = 0
        return self.track_manager.reset()
