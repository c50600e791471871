"""
Per-target track state and status-change notification.

Every registered target owns a ``Track``. Each frame the manager receives the
targets that were observed, advances every track's state machine, smooths the
world pose and notifies subscribers of status changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..pose import PoseFilter, PoseFilterConfig, PoseResult

LOGGER = logging.getLogger(__name__)


class TrackingStatus(Enum):
    """Tracking status of a single target."""
    NOT_TRACKED = "not_tracked"  # Never seen since registration or reset
    TRACKED = "tracked"  # Observed this frame
    LIMITED = "limited"  # Recently seen; last pose is held
    LOST = "lost"  # Not seen for more than lost_after_frames


@dataclass
class TrackManagerConfig:
    """Configuration for track state transitions."""

    confirm_frames: int = 1  # Consecutive observations before NOT_TRACKED/LOST -> TRACKED
    lost_after_frames: int = 10  # Missed frames before LIMITED -> LOST

    def __post_init__(self):
        if self.confirm_frames < 1:
            raise ValueError("confirm_frames must be at least 1")
        if self.lost_after_frames < 0:
            raise ValueError("lost_after_frames must not be negative")

    @classmethod
    def from_dict(cls, values: Optional[Dict]) -> TrackManagerConfig:
        values = values or {}
        return cls(**{k: v for k, v in values.items() if k in cls.__dataclass_fields__})


@dataclass
class Observation:
    """A target's measured pose in one frame."""

    pose: PoseResult  # target -> camera
    world_pose: PoseResult  # target -> world
    confidence: float = 1.0


@dataclass
class TrackEvent:
    """Delivered to subscribers when a track changes status or pose."""

    key: str
    previous_status: TrackingStatus
    status: TrackingStatus
    pose: Optional[PoseResult]
    world_pose: Optional[PoseResult]
    timestamp: Optional[float]


@dataclass
class Track:
    """Persistent state of one target."""

    key: str
    status: TrackingStatus = TrackingStatus.NOT_TRACKED
    pose: Optional[PoseResult] = None
    world_pose: Optional[PoseResult] = None
    frames_since_seen: int = 0
    consecutive_detections: int = 0
    last_seen_timestamp: Optional[float] = None
    confidence: float = 0.0
    pose_filter: PoseFilter = field(default_factory=PoseFilter, repr=False)

    @property
    def is_tracked(self) -> bool:
        return self.status == TrackingStatus.TRACKED


TrackCallback = Callable[[TrackEvent], None]


class TrackManager:
    """Maintains tracks for registered targets and emits status events."""

    def __init__(self, config: Optional[Dict] = None, filter_config: Optional[Dict] = None):
        self.config = TrackManagerConfig.from_dict(config)
        self.filter_config = PoseFilterConfig.from_dict(filter_config)
        self.tracks: Dict[str, Track] = {}
        self._status_subscribers: List[TrackCallback] = []
        self._pose_subscribers: List[TrackCallback] = []

    # ------------------------------------------------------------------ #
    # Track lifecycle
    # ------------------------------------------------------------------ #
    def add_track(self, key: str) -> Track:
        if key in self.tracks:
            raise ValueError(f"Track '{key}' already exists")
        track = Track(key=key, pose_filter=PoseFilter(self.filter_config))
        self.tracks[key] = track
        return track

    def remove_track(self, key: str) -> Track:
        try:
            return self.tracks.pop(key)
        except KeyError:
            raise KeyError(f"Unknown track '{key}'") from None

    def get(self, key: str) -> Track:
        try:
            return self.tracks[key]
        except KeyError:
            raise KeyError(f"Unknown track '{key}'") from None

    def reset(self, timestamp: Optional[float] = None) -> List[TrackEvent]:
        """Return every track to NOT_TRACKED."""
        events = []
        for track in self.tracks.values():
            previous = track.status
            track.status = TrackingStatus.NOT_TRACKED
            track.pose = None
            track.world_pose = None
            track.frames_since_seen = 0
            track.consecutive_detections = 0
            track.confidence = 0.0
            track.pose_filter.reset()
            if previous != TrackingStatus.NOT_TRACKED:
                events.append(self._event(track, previous, timestamp))
        self._publish(self._status_subscribers, events)
        return events

    # ------------------------------------------------------------------ #
    # Subscriptions
    # ------------------------------------------------------------------ #
    def subscribe(self, callback: TrackCallback):
        """Receive an event whenever a track's status changes."""
        if callback not in self._status_subscribers:
            self._status_subscribers.append(callback)

    def unsubscribe(self, callback: TrackCallback):
        if callback in self._status_subscribers:
            self._status_subscribers.remove(callback)

    def subscribe_pose(self, callback: TrackCallback):
        """Receive an event every frame a target is TRACKED."""
        if callback not in self._pose_subscribers:
            self._pose_subscribers.append(callback)

    def unsubscribe_pose(self, callback: TrackCallback):
        if callback in self._pose_subscribers:
            self._pose_subscribers.remove(callback)

    # ------------------------------------------------------------------ #
    # Per-frame update
    # ------------------------------------------------------------------ #
    def update(self, observations: Dict[str, Observation], timestamp: Optional[float] = None) -> List[TrackEvent]:
        """Advance all tracks by one frame.

        Args:
            observations: Observed targets keyed by target key; keys without
                a track are ignored
            timestamp: Frame timestamp

        Returns:
            Status-change events emitted this frame
        """
        events: List[TrackEvent] = []
        pose_events: List[TrackEvent] = []

        for key, track in self.tracks.items():
            previous = track.status
            observation = observations.get(key)

            filtered = None
            if observation is not None and observation.world_pose.success:
                filtered = track.pose_filter.filter(observation.world_pose)
                if not filtered.success:
                    LOGGER.debug("Target %s: pose rejected by filter", key)

            if filtered is not None and filtered.success:
                self._observe(track, observation, filtered, timestamp)
            else:
                self._miss(track)

            if track.status != previous:
                LOGGER.info("Target %s: %s -> %s", key, previous.value, track.status.value)
                events.append(self._event(track, previous, timestamp))
            if track.status == TrackingStatus.TRACKED:
                pose_events.append(self._event(track, previous, timestamp))

        self._publish(self._status_subscribers, events)
        self._publish(self._pose_subscribers, pose_events)
        return events

    def _observe(self, track: Track, observation: Observation, world_pose: PoseResult, timestamp: Optional[float]):
        track.frames_since_seen = 0
        track.consecutive_detections += 1
        track.last_seen_timestamp = timestamp
        track.confidence = observation.confidence
        track.pose = observation.pose
        track.world_pose = world_pose

        if track.status == TrackingStatus.LIMITED:
            track.status = TrackingStatus.TRACKED
        elif track.status != TrackingStatus.TRACKED:
            if track.consecutive_detections >= self.config.confirm_frames:
                track.status = TrackingStatus.TRACKED

    def _miss(self, track: Track):
        track.consecutive_detections = 0
        if track.status == TrackingStatus.NOT_TRACKED:
            return

        track.frames_since_seen += 1
        if track.status == TrackingStatus.TRACKED:
            track.status = TrackingStatus.LIMITED
        if track.status == TrackingStatus.LIMITED and track.frames_since_seen > self.config.lost_after_frames:
            track.status = TrackingStatus.LOST
            track.pose_filter.reset()

    @staticmethod
    def _event(track: Track, previous: TrackingStatus, timestamp: Optional[float]) -> TrackEvent:
        return TrackEvent(
            key=track.key,
            previous_status=previous,
            status=track.status,
            pose=track.pose,
            world_pose=track.world_pose,
            timestamp=timestamp,
        )

    @staticmethod
    def _publish(subscribers: List[TrackCallback], events: List[TrackEvent]):
        for event in events:
            for callback in list(subscribers):
                try:
                    callback(event)
                except Exception:
                    LOGGER.exception("Subscriber %r failed on event for %s", callback, event.key)
