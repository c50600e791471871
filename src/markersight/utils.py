"""
Shared helpers: logging setup and the JSON configuration layer.

Configuration is a plain nested dictionary. ``default_config`` lists every
section and key; files loaded with ``get_config`` only need to name the
values they change.
"""

import copy
import json
import logging
import os
from datetime import datetime
from pathlib import Path

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
TARGET_TYPES = ('marker', 'image')


def setup_logging(level=logging.INFO):
    """Configure root logging for command-line use."""
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')
    logging.getLogger(__name__).debug("Logging configured at level %s", logging.getLevelName(level))


def default_config():
    """Return a fresh copy of the default configuration."""
    return {
        # Frame acquisition
        'video': {
            'camera_id': 0,
            'video_width': 640,
            'video_height': 480,
            'video_fps': 30,
            'camera_backend_priority': None,
            'camera_init_attempts': 10,
        },

        # Intrinsics used when the frame source does not provide any
        'calibration': {
            'calibration_file': None,  # Optional JSON file with camera_matrix/dist_coeffs
            'camera_matrix': [
                [800.0, 0.0, 320.0],
                [0.0, 800.0, 240.0],
                [0.0, 0.0, 1.0],
            ],
            'dist_coeffs': [0.0, 0.0, 0.0, 0.0, 0.0],
        },

        # Square marker detection
        'marker_detection': {
            'adaptive_thresh_win_sizes': [3, 13, 23],
            'adaptive_thresh_constant': 7.0,
            'min_marker_perimeter_rate': 0.03,
            'max_marker_perimeter_rate': 4.0,
            'polygonal_approx_accuracy_rate': 0.03,
            'min_corner_distance_rate': 0.05,
            'min_marker_distance_rate': 0.05,
            'min_distance_to_border': 3,
            'corner_refinement': 'subpix',  # 'subpix' or 'none'
            'corner_refinement_win_size': 5,
            'perspective_remove_pixel_per_cell': 8,
            'perspective_remove_ignored_margin_per_cell': 0.13,
            'max_erroneous_bits_in_border_rate': 0.35,
            'min_otsu_std_dev': 5.0,
            'error_correction_rate': 0.6,
            'border_bits': 1,
        },

        # Image target matching
        'image_matching': {
            'method': 'orb',
            'max_features': 1000,
            'matcher_type': 'bf_hamming',
            'match_ratio_threshold': 0.75,
            'min_matches': 12,
            'min_inliers': 10,
            'ransac_reproj_threshold': 5.0,
            'min_reference_features': 20,
            'min_area_rate': 0.001,
            'use_optical_flow': True,
            'redetect_interval': 30,
        },

        # Pose estimation
        'pose': {
            'max_reprojection_error': 4.0,  # pixels
            'ambiguity_ratio': 0.6,
        },

        # Per-track smoothing
        'pose_filter': {
            'enable_smoothing': True,
            'smoothing_alpha': 0.5,  # EMA factor (0 = max smooth, 1 = no smooth)
            'enable_outlier_rejection': True,
            'max_translation_jump': 0.5,  # meters
            'max_rotation_jump': 1.0,  # radians
            'max_consecutive_rejections': 3,
            'history_size': 5,
            'use_median_filter': False,
            'min_inliers_threshold': 4,
        },

        # Track state machine
        'tracking': {
            'confirm_frames': 1,
            'lost_after_frames': 10,
        },

        # Registered targets, e.g.
        # {"type": "marker", "dictionary": "4x4_50", "id": 7, "size": 0.1}
        # {"type": "image", "name": "poster", "path": "poster.png", "size": 0.3}
        'targets': [],

        # Debug display
        'display': {
            'window_name': 'markersight',
            'display_width': 640,
            'display_height': 480,
            'show_detections': True,
            'show_axes': True,
            'antialiasing': True,
            'line_thickness': 2,
            'font_scale': 0.5,
        },
        'axis_length': 0.05,  # meters
    }

def merge_config(base, override):
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_config(config_path=None):
    """Defaults overlaid with the JSON file at ``config_path``, if readable.

    A missing or malformed file is logged and the defaults are returned.
    """
    config = default_config()
    if not config_path:
        return config

    if not os.path.exists(config_path):
        logging.warning("Config file %s not found, using defaults", config_path)
        return config

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            overrides = json.load(f)
    except (OSError, ValueError) as e:
        logging.warning("Failed to load config from %s: %s", config_path, e)
        return config

    logging.info("Configuration loaded from %s", config_path)
    return merge_config(config, overrides)


def save_config(config, config_path):
    """Write ``config`` as indented JSON; returns False if it cannot be written."""
    try:
        with open(config_path, 'w', encoding='utf-8') as f:
            json.dump(config, f, indent=4)
    except (OSError, TypeError) as e:
        logging.error("Failed to save config to %s: %s", config_path, e)
        return False
    logging.info("Configuration saved to %s", config_path)
    return True


def _target_problem(entry):
    """Description of what is wrong with a ``targets`` entry, or None."""
    if not isinstance(entry, dict):
        return "entry must be an object"
    kind = entry.get('type', 'marker')
    if kind not in TARGET_TYPES:
        return f"unknown type '{kind}'"
    size = entry.get('size', 0)
    if isinstance(size, bool) or not isinstance(size, (int, float)):
        return "size must be a number"
    if size <= 0:
        return "size must be positive"
    if kind == 'marker' and not ('dictionary' in entry and 'id' in entry):
        return "marker targets need a 'dictionary' and an 'id'"
    if kind == 'marker' and (isinstance(entry['id'], bool) or not isinstance(entry['id'], int)):
        return "marker id must be an integer"
    if kind == 'image' and not entry.get('path'):
        return "image targets need a 'path'"
    return None


def validate_config(config):
    """Check required sections and value ranges, logging the first problem found."""
    for section in ('video', 'calibration', 'marker_detection', 'tracking'):
        if section not in config:
            logging.error("Missing required config section: %s", section)
            return False

    video = config['video']
    if video.get('video_width', 0) <= 0 or video.get('video_height', 0) <= 0:
        logging.error("video_width and video_height must be positive")
        return False

    tracking = config['tracking']
    if tracking.get('confirm_frames', 1) < 1:
        logging.error("confirm_frames must be at least 1")
        return False
    if tracking.get('lost_after_frames', 0) < 0:
        logging.error("lost_after_frames must not be negative")
        return False

    targets = config.get('targets', [])
    if not isinstance(targets, list):
        logging.error("targets must be a list")
        return False
    for entry in targets:
        problem = _target_problem(entry)
        if problem:
            logging.error("Invalid target %s: %s", entry, problem)
            return False

    logging.debug("Configuration is valid")
    return True


def get_timestamp():
    """Current local time as ``YYYYmmdd_HHMMSS``, for output file names."""
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def create_directory(path):
    """``mkdir -p``; returns False if the directory cannot be created."""
    try:
        Path(path).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logging.error("Failed to create directory %s: %s", path, e)
        return False
    return True
