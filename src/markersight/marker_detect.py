"""
Marker detection module.

Detects square binary fiducial markers: candidate quadrilaterals are found by
adaptive thresholding and contour analysis, rectified to a square grid,
binarised cell by cell and decoded against a marker dictionary with
rotation-aware Hamming matching.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from .targets import marker_key

LOGGER = logging.getLogger(__name__)

# name -> (number of markers, bits per side, generator seed)
BUILTIN_DICTIONARIES: Dict[str, Tuple[int, int, int]] = {
    "4x4_50": (50, 4, 4050),
    "5x5_100": (100, 5, 5100),
    "6x6_250": (250, 6, 6250),
}

ARUCO_PREFIX = "aruco:"


class MarkerDictionary:
    """A set of valid marker codes.

    Codes are ``n x n`` arrays of bits where 1 is a white cell. All four
    rotations of every code are kept so identification is a single
    vectorised Hamming distance computation.
    """

    def __init__(
        self,
        name: str,
        marker_size: int,
        codes: Sequence[np.ndarray],
        min_distance: Optional[int] = None,
    ):
        if marker_size < 2:
            raise ValueError("Marker size must be at least 2 bits per side.")
        codes = np.asarray(codes, dtype=np.uint8).reshape(-1, marker_size, marker_size)
        if len(codes) == 0:
            raise ValueError("A marker dictionary needs at least one code.")

        self.name = name
        self.marker_size = marker_size
        self.codes = (codes > 0).astype(np.uint8)
        self.rotations = np.stack(
            [np.stack([np.rot90(code, k) for k in range(4)]) for code in self.codes]
        )
        if min_distance is None:
            min_distance = self._compute_min_distance()
        self.min_distance = int(min_distance)
        self.max_correction_bits = max(0, (self.min_distance - 1) // 2)

    def __len__(self) -> int:
        return len(self.codes)

    def __repr__(self) -> str:
        return (
            f"MarkerDictionary(name={self.name!r}, markers={len(self)}, "
            f"size={self.marker_size}, min_distance={self.min_distance})"
        )

    # ------------------------------------------------------------------ #
    # Construction
    # ------------------------------------------------------------------ #
    @classmethod
    def generate(
        cls,
        name: str,
        n_markers: int,
        marker_size: int,
        seed: int = 0,
        min_distance: Optional[int] = None,
        max_unproductive: int = 5000,
    ) -> MarkerDictionary:
        """Build a dictionary by seeded random search.

        A candidate is accepted when its distance to every rotation of every
        accepted code, and to its own non-identity rotations, is at least the
        current threshold. The threshold drops by one after
        ``max_unproductive`` rejections in a row.
        """
        n_bits = marker_size * marker_size
        if n_markers < 1:
            raise ValueError("Dictionary must contain at least one marker.")
        if n_markers > (2 ** n_bits) // 4:
            raise ValueError(f"Cannot fit {n_markers} markers into {marker_size}x{marker_size} bits.")

        rng = np.random.RandomState(seed)
        tau = min_distance if min_distance is not None else max(1, int(n_bits * 0.3))
        accepted: List[np.ndarray] = []
        rotated = np.empty((0, n_bits), dtype=np.uint8)
        unproductive = 0

        while len(accepted) < n_markers:
            candidate = rng.randint(0, 2, (marker_size, marker_size)).astype(np.uint8)
            rots = np.stack([np.rot90(candidate, k).ravel() for k in range(4)])

            ok = int(np.count_nonzero(rots[1:] != rots[0], axis=1).min()) >= tau
            if ok and len(rotated):
                ok = int(np.count_nonzero(rotated != rots[0], axis=1).min()) >= tau

            if ok:
                accepted.append(candidate)
                rotated = np.vstack([rotated, rots])
                unproductive = 0
            else:
                unproductive += 1
                if unproductive >= max_unproductive and tau > 1:
                    tau -= 1
                    unproductive = 0
                    LOGGER.debug("Dictionary %s: lowering distance threshold to %d", name, tau)

        dictionary = cls(name, marker_size, accepted)
        LOGGER.debug("Generated %r", dictionary)
        return dictionary

    @classmethod
    def from_aruco(cls, aruco_name: str) -> MarkerDictionary:
        """Import one of OpenCV's predefined ArUco dictionaries, e.g. ``DICT_4X4_50``."""
        aruco = getattr(cv2, "aruco", None)
        if aruco is None:
            raise ValueError("OpenCV was built without the aruco module.")
        constant = getattr(aruco, aruco_name, None)
        if constant is None:
            raise ValueError(f"Unknown ArUco dictionary '{aruco_name}'")

        predefined = aruco.getPredefinedDictionary(constant)
        marker_size = int(predefined.markerSize)
        byte_list = np.asarray(predefined.bytesList, dtype=np.uint8)
        # Each row holds the four rotations one after another; rotation 0 comes first
        byte_list = byte_list.reshape(byte_list.shape[0], 4, -1)
        codes = [_bits_from_aruco_bytes(byte_list[i, 0], marker_size) for i in range(byte_list.shape[0])]
        min_distance = 2 * int(predefined.maxCorrectionBits) + 1
        return cls(ARUCO_PREFIX + aruco_name, marker_size, codes, min_distance=min_distance)

    def _compute_min_distance(self) -> int:
        n_bits = self.marker_size * self.marker_size
        flat = self.rotations.reshape(len(self.codes), 4, n_bits)
        best = n_bits
        for i in range(len(flat)):
            best = min(best, int(np.count_nonzero(flat[i, 1:] != flat[i, 0], axis=1).min()))
            if i + 1 < len(flat):
                others = flat[i + 1:].reshape(-1, n_bits)
                best = min(best, int(np.count_nonzero(others != flat[i, 0], axis=1).min()))
        return best

    # ------------------------------------------------------------------ #
    # Identification / rendering
    # ------------------------------------------------------------------ #
    def identify(
        self, bits: np.ndarray, max_correction_bits: Optional[int] = None
    ) -> Optional[Tuple[int, int, int]]:
        """Find the code closest to ``bits`` over all rotations.

        Returns:
            ``(marker_id, rotation, distance)`` where ``bits`` equals the code
            rotated counter-clockwise ``rotation`` times, or None when the
            distance exceeds the allowed correction.
        """
        bits = (np.asarray(bits).reshape(self.marker_size, self.marker_size) > 0).astype(np.uint8)
        allowed = self.max_correction_bits if max_correction_bits is None else max_correction_bits

        distances = np.count_nonzero(self.rotations != bits, axis=(2, 3))
        marker_id, rotation = divmod(int(np.argmin(distances)), 4)
        distance = int(distances[marker_id, rotation])
        if distance > allowed:
            return None
        return marker_id, rotation, distance

    def draw_marker(self, marker_id: int, side_pixels: int, border_bits: int = 1) -> np.ndarray:
        """Render a marker as a grayscale image (black border, white = 1)."""
        if not 0 <= marker_id < len(self.codes):
            raise ValueError(f"Marker ID {marker_id} is not in dictionary {self.name}")
        cells = self.marker_size + 2 * border_bits
        if side_pixels < cells:
            raise ValueError(f"Marker needs at least {cells} pixels per side")

        grid = np.zeros((cells, cells), dtype=np.uint8)
        grid[border_bits:border_bits + self.marker_size, border_bits:border_bits + self.marker_size] = (
            self.codes[marker_id] * 255
        )
        return cv2.resize(grid, (side_pixels, side_pixels), interpolation=cv2.INTER_NEAREST)


def _bits_from_aruco_bytes(row: np.ndarray, marker_size: int) -> np.ndarray:
    """Unpack one rotation of an ArUco byte list; the last byte is low-aligned."""
    total = marker_size * marker_size
    unpacked = np.unpackbits(np.asarray(row, dtype=np.uint8))
    full = (total // 8) * 8
    bits = unpacked[:full]
    remainder = total - full
    if remainder:
        bits = np.concatenate([bits, unpacked[-remainder:]])
    return bits.reshape(marker_size, marker_size)


@functools.lru_cache(maxsize=None)
def get_dictionary(name: str) -> MarkerDictionary:
    """Return a built-in or ArUco dictionary by name."""
    if name.startswith(ARUCO_PREFIX):
        return MarkerDictionary.from_aruco(name[len(ARUCO_PREFIX):])
    try:
        n_markers, marker_size, seed = BUILTIN_DICTIONARIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown marker dictionary '{name}'. Built-in: {sorted(BUILTIN_DICTIONARIES)}"
        ) from None
    return MarkerDictionary.generate(name, n_markers, marker_size, seed=seed)


@dataclass
class MarkerDetectorConfig:
    """Configuration for the square marker detector."""

    adaptive_thresh_win_sizes: Tuple[int, ...] = (3, 13, 23)
    adaptive_thresh_constant: float = 7.0
    min_marker_perimeter_rate: float = 0.03  # relative to the larger image dimension
    max_marker_perimeter_rate: float = 4.0
    polygonal_approx_accuracy_rate: float = 0.03
    min_corner_distance_rate: float = 0.05
    min_marker_distance_rate: float = 0.05
    min_distance_to_border: int = 3
    corner_refinement: str = "subpix"  # "subpix" or "none"
    corner_refinement_win_size: int = 5
    corner_refinement_max_iterations: int = 30
    corner_refinement_min_accuracy: float = 0.01
    perspective_remove_pixel_per_cell: int = 8
    perspective_remove_ignored_margin_per_cell: float = 0.13
    max_erroneous_bits_in_border_rate: float = 0.35
    min_otsu_std_dev: float = 5.0
    error_correction_rate: float = 0.6
    border_bits: int = 1

    @classmethod
    def from_dict(cls, values: Optional[Dict]) -> MarkerDetectorConfig:
        values = values or {}
        cfg = cls(**{k: v for k, v in values.items() if k in cls.__dataclass_fields__})
        cfg.adaptive_thresh_win_sizes = tuple(int(w) for w in cfg.adaptive_thresh_win_sizes)
        return cfg


@dataclass
class MarkerDetection:
    """A decoded marker in one frame."""

    dictionary: str
    marker_id: int
    corners: np.ndarray  # (4, 2) TL, TR, BR, BL of the marker
    rotation: int = 0
    hamming_distance: int = 0
    confidence: float = 1.0

    @property
    def key(self) -> str:
        return marker_key(self.dictionary, self.marker_id)

    @property
    def center(self) -> np.ndarray:
        return self.corners.mean(axis=0)


def order_corners_clockwise(quad: np.ndarray) -> np.ndarray:
    """Order quad corners clockwise as seen in image coordinates (y down)."""
    quad = np.asarray(quad, dtype=np.float32).reshape(4, 2).copy()
    d1 = quad[1] - quad[0]
    d2 = quad[2] - quad[0]
    if d1[0] * d2[1] - d1[1] * d2[0] < 0:
        quad[[1, 3]] = quad[[3, 1]]
    return quad


class MarkerDetector:
    """Finds and decodes square markers of one dictionary in luminance images."""

    def __init__(self, dictionary: Union[MarkerDictionary, str] = "4x4_50", config: Optional[Dict] = None):
        self.dictionary = get_dictionary(dictionary) if isinstance(dictionary, str) else dictionary
        self.config = MarkerDetectorConfig.from_dict(config)
        self.allowed_correction_bits = int(self.dictionary.max_correction_bits * self.config.error_correction_rate)

        cfg = self.config
        if cfg.perspective_remove_pixel_per_cell < 2:
            raise ValueError("perspective_remove_pixel_per_cell must be at least 2")
        if 2 * int(cfg.perspective_remove_ignored_margin_per_cell * cfg.perspective_remove_pixel_per_cell) >= (
            cfg.perspective_remove_pixel_per_cell
        ):
            raise ValueError("Ignored cell margin leaves no pixels to sample")

        LOGGER.info(
            "MarkerDetector initialized: dictionary=%s (%d markers, %d correction bits)",
            self.dictionary.name,
            len(self.dictionary),
            self.allowed_correction_bits,
        )

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def detect(self, frame: np.ndarray) -> List[MarkerDetection]:
        """Detect and decode markers in the given frame."""
        if frame is None or frame.size == 0:
            raise ValueError("Frame cannot be empty.")
        gray = frame if frame.ndim == 2 else cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)

        candidates = self.find_candidates(gray)

        best: Dict[int, MarkerDetection] = {}
        for corners in candidates:
            detection = self._decode_candidate(gray, corners)
            if detection is None:
                continue
            current = best.get(detection.marker_id)
            if current is None or detection.confidence > current.confidence:
                best[detection.marker_id] = detection

        detections = [best[marker_id] for marker_id in sorted(best)]
        if self.config.corner_refinement == "subpix":
            for detection in detections:
                detection.corners = self._refine_corners(gray, detection.corners)

        LOGGER.debug(
            "%d candidates, %d markers decoded (%s)",
            len(candidates),
            len(detections),
            [d.marker_id for d in detections],
        )
        return detections

    def find_candidates(self, gray: np.ndarray) -> List[np.ndarray]:
        """Return clockwise-ordered convex quadrilaterals that may be markers."""
        cfg = self.config
        height, width = gray.shape[:2]
        max_dim = max(height, width)
        min_perimeter = cfg.min_marker_perimeter_rate * max_dim
        max_perimeter = cfg.max_marker_perimeter_rate * max_dim
        border = cfg.min_distance_to_border

        candidates: List[np.ndarray] = []
        for win in cfg.adaptive_thresh_win_sizes:
            if win < 3:
                continue
            if win % 2 == 0:
                win += 1
            thresh = cv2.adaptiveThreshold(
                gray,
                255,
                cv2.ADAPTIVE_THRESH_MEAN_C,
                cv2.THRESH_BINARY_INV,
                win,
                cfg.adaptive_thresh_constant,
            )
            contours = cv2.findContours(thresh, cv2.RETR_LIST, cv2.CHAIN_APPROX_NONE)[-2]

            for contour in contours:
                length = len(contour)
                if length < min_perimeter or length > max_perimeter:
                    continue
                approx = cv2.approxPolyDP(contour, length * cfg.polygonal_approx_accuracy_rate, True)
                if len(approx) != 4 or not cv2.isContourConvex(approx):
                    continue

                quad = approx.reshape(4, 2).astype(np.float32)
                sides = np.roll(quad, -1, axis=0) - quad
                if np.min(np.sum(sides ** 2, axis=1)) < (length * cfg.min_corner_distance_rate) ** 2:
                    continue
                if (
                    np.any(quad[:, 0] < border)
                    or np.any(quad[:, 1] < border)
                    or np.any(quad[:, 0] > width - 1 - border)
                    or np.any(quad[:, 1] > height - 1 - border)
                ):
                    continue

                candidates.append(order_corners_clockwise(quad))

        return self._remove_near_duplicates(candidates)

    # ------------------------------------------------------------------ #
    # Candidate filtering
    # ------------------------------------------------------------------ #
    def _remove_near_duplicates(self, candidates: List[np.ndarray]) -> List[np.ndarray]:
        """Drop candidates whose corners nearly coincide with a larger one."""
        if len(candidates) < 2:
            return candidates

        perimeters = [cv2.arcLength(c.reshape(-1, 1, 2), True) for c in candidates]
        order = np.argsort(perimeters)[::-1]
        kept: List[np.ndarray] = []
        for idx in order:
            candidate = candidates[idx]
            threshold = (self.config.min_marker_distance_rate * perimeters[idx]) ** 2
            if any(self._corner_distance_sq(candidate, other) < threshold for other in kept):
                continue
            kept.append(candidate)
        return kept

    @staticmethod
    def _corner_distance_sq(a: np.ndarray, b: np.ndarray) -> float:
        """Mean squared corner distance, minimised over cyclic corner shifts."""
        return min(
            float(np.mean(np.sum((a - np.roll(b, shift, axis=0)) ** 2, axis=1)))
            for shift in range(4)
        )

    # ------------------------------------------------------------------ #
    # Decoding
    # ------------------------------------------------------------------ #
    def _decode_candidate(self, gray: np.ndarray, corners: np.ndarray) -> Optional[MarkerDetection]:
        cfg = self.config
        n = self.dictionary.marker_size
        b = cfg.border_bits
        cells = n + 2 * b

        try:
            bits = self.extract_bits(gray, corners)
        except cv2.error as exc:
            LOGGER.debug("Rectification failed: %s", exc)
            return None

        border_mask = np.ones((cells, cells), dtype=bool)
        border_mask[b:b + n, b:b + n] = False
        border_cells = int(border_mask.sum())
        border_errors = int(bits[border_mask].sum())
        if border_errors > int(border_cells * cfg.max_erroneous_bits_in_border_rate):
            return None

        match = self.dictionary.identify(bits[b:b + n, b:b + n], self.allowed_correction_bits)
        if match is None:
            return None
        marker_id, rotation, distance = match

        confidence = (1.0 - distance / (self.allowed_correction_bits + 1.0)) * (
            1.0 - border_errors / float(border_cells)
        )
        return MarkerDetection(
            dictionary=self.dictionary.name,
            marker_id=marker_id,
            corners=np.roll(corners, rotation, axis=0).astype(np.float32),
            rotation=rotation,
            hamming_distance=distance,
            confidence=float(confidence),
        )

    def extract_bits(self, gray: np.ndarray, corners: np.ndarray) -> np.ndarray:
        """Rectify a candidate and sample one bit per cell (border included)."""
        cfg = self.config
        cells = self.dictionary.marker_size + 2 * cfg.border_bits
        cell_px = cfg.perspective_remove_pixel_per_cell
        side = cells * cell_px

        target = np.array(
            [[0, 0], [side - 1, 0], [side - 1, side - 1], [0, side - 1]], dtype=np.float32
        )
        transform = cv2.getPerspectiveTransform(np.asarray(corners, dtype=np.float32), target)
        warped = cv2.warpPerspective(gray, transform, (side, side), flags=cv2.INTER_NEAREST)

        if float(warped.std()) < cfg.min_otsu_std_dev:
            # Uniform patch: no reliable threshold
            value = 1 if float(warped.mean()) > 127 else 0
            return np.full((cells, cells), value, dtype=np.uint8)

        _, binary = cv2.threshold(warped, 125, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)
        margin = int(cfg.perspective_remove_ignored_margin_per_cell * cell_px)
        blocks = (binary > 0).reshape(cells, cell_px, cells, cell_px)
        blocks = blocks[:, margin:cell_px - margin, :, margin:cell_px - margin]
        return (blocks.mean(axis=(1, 3)) > 0.5).astype(np.uint8)

    def _refine_corners(self, gray: np.ndarray, corners: np.ndarray) -> np.ndarray:
        cfg = self.config
        cells = self.dictionary.marker_size + 2 * cfg.border_bits
        sides = np.linalg.norm(np.roll(corners, -1, axis=0) - corners, axis=1)
        # Keep the search window inside the outer border cell
        win = int(max(1, min(cfg.corner_refinement_win_size, sides.min() / cells / 2.0)))
        criteria = (
            cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT,
            cfg.corner_refinement_max_iterations,
            cfg.corner_refinement_min_accuracy,
        )
        refined = corners.reshape(-1, 1, 2).astype(np.float32).copy()
        try:
            refined = cv2.cornerSubPix(gray, refined, (win, win), (-1, -1), criteria)
        except cv2.error as exc:
            LOGGER.debug("Corner refinement failed: %s", exc)
            return corners
        return refined.reshape(4, 2)
