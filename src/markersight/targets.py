"""
Tracking target definitions and registry.

Targets are immutable once registered: square markers are identified by
dictionary and ID, image targets by name. Every target carries its physical
size in meters, which fixes the metric scale of the recovered pose.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Union

import cv2
import numpy as np

LOGGER = logging.getLogger(__name__)


def marker_key(dictionary: str, marker_id: int) -> str:
    """Registry key of a square marker."""
    return f"{dictionary}:{int(marker_id)}"


@dataclass(frozen=True)
class MarkerTarget:
    """A square fiducial marker with known side length."""

    dictionary: str
    marker_id: int
    size: float  # side length in meters

    def __post_init__(self):
        if self.size <= 0:
            raise ValueError(f"Marker size must be positive, got {self.size}")
        if self.marker_id < 0:
            raise ValueError(f"Marker ID must not be negative, got {self.marker_id}")

    @property
    def key(self) -> str:
        return marker_key(self.dictionary, self.marker_id)


@dataclass(frozen=True)
class ImageTarget:
    """A planar reference image; ``size`` is its longer dimension in meters."""

    name: str
    image: np.ndarray = field(repr=False, compare=False)
    size: float

    def __post_init__(self):
        if not self.name:
            raise ValueError("Image target name must not be empty")
        if self.size <= 0:
            raise ValueError(f"Image target size must be positive, got {self.size}")
        if self.image is None or self.image.size == 0:
            raise ValueError(f"Image target '{self.name}' has an empty reference image")

        gray = self.image if self.image.ndim == 2 else cv2.cvtColor(self.image, cv2.COLOR_BGR2GRAY)
        gray = np.ascontiguousarray(gray, dtype=np.uint8).copy()
        gray.setflags(write=False)
        object.__setattr__(self, "image", gray)

    @property
    def key(self) -> str:
        return self.name

    @property
    def physical_size(self) -> tuple:
        """(width, height) of the target in meters."""
        height, width = self.image.shape[:2]
        scale = self.size / float(max(width, height))
        return width * scale, height * scale


Target = Union[MarkerTarget, ImageTarget]


class TargetRegistry:
    """Keeps the set of targets the engine should look for."""

    def __init__(self):
        self._targets: Dict[str, Target] = {}

    def add(self, target: Target) -> Target:
        if target.key in self._targets:
            raise ValueError(f"Target '{target.key}' is already registered")
        self._targets[target.key] = target
        LOGGER.info("Registered target %s", target.key)
        return target

    def add_marker(self, dictionary: str, marker_id: int, size: float) -> MarkerTarget:
        return self.add(MarkerTarget(dictionary=dictionary, marker_id=int(marker_id), size=float(size)))

    def add_image(self, name: str, image: np.ndarray, size: float) -> ImageTarget:
        return self.add(ImageTarget(name=name, image=image, size=float(size)))

    def remove(self, key: str) -> Target:
        try:
            target = self._targets.pop(key)
        except KeyError:
            raise KeyError(f"Unknown target '{key}'") from None
        LOGGER.info("Unregistered target %s", key)
        return target

    def get(self, key: str) -> Target:
        try:
            return self._targets[key]
        except KeyError:
            raise KeyError(f"Unknown target '{key}'") from None

    def find(self, key: str) -> Optional[Target]:
        return self._targets.get(key)

    def markers(self) -> List[MarkerTarget]:
        return [t for t in self._targets.values() if isinstance(t, MarkerTarget)]

    def markers_for(self, dictionary: str) -> List[MarkerTarget]:
        return [t for t in self.markers() if t.dictionary == dictionary]

    def images(self) -> List[ImageTarget]:
        return [t for t in self._targets.values() if isinstance(t, ImageTarget)]

    def dictionaries(self) -> List[str]:
        return sorted({t.dictionary for t in self.markers()})

    def __contains__(self, key: str) -> bool:
        return key in self._targets

    def __iter__(self) -> Iterator[Target]:
        return iter(list(self._targets.values()))

    def __len__(self) -> int:
        return len(self._targets)


def load_targets(registry: TargetRegistry, entries: Sequence[Dict], base_dir: Optional[str] = None) -> List[Target]:
    """Register targets described by the ``targets`` config section.

    Args:
        registry: Registry to add to
        entries: Dicts with ``type`` of ``"marker"`` or ``"image"``
        base_dir: Directory that relative image paths are resolved against

    Returns:
        The registered targets
    """
    added: List[Target] = []
    for entry in entries:
        kind = entry.get("type", "marker")
        if kind == "marker":
            added.append(registry.add_marker(entry["dictionary"], entry["id"], entry["size"]))
        elif kind == "image":
            path = Path(entry["path"])
            if base_dir and not path.is_absolute():
                path = Path(base_dir) / path
            if not path.exists():
                raise FileNotFoundError(f"Image target file not found: {path}")
            image = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
            if image is None:
                raise ValueError(f"Could not read image target file: {path}")
            added.append(registry.add_image(entry.get("name") or path.stem, image, entry["size"]))
        else:
            raise ValueError(f"Unknown target type '{kind}'")
    return added
