"""
Command-line entry point for markersight.

Usage:
    markersight track --config config.json           # Track from the default camera
    markersight track --video clip.mp4 --display     # Track a video file with a viewer
    markersight generate --dictionary 4x4_50 --id 7  # Render a printable marker
    markersight config --output config.json          # Write the default configuration
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

import cv2
import numpy as np

from .marker_detect import BUILTIN_DICTIONARIES, get_dictionary
from .pipeline import TrackingEngine
from .tracking.manager import TrackEvent
from .utils import (
    create_directory,
    default_config,
    get_config,
    get_timestamp,
    save_config,
    setup_logging,
    validate_config,
)
from .video import FrameSource

LOGGER = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="markersight",
        description="markersight - Fiducial marker and image target tracking",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  markersight track --config config.json --display
  markersight generate --dictionary 4x4_50 --id 3 --size 400
  markersight generate --dictionary aruco:DICT_4X4_50 --id 3

Viewer controls:
  D  - Toggle detection outlines
  A  - Toggle pose axes
  P  - Pause
  Q  - Quit
        """,
    )
    parser.add_argument(
        "--verbose", "-V",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    track = subparsers.add_parser("track", help="Track configured targets in a camera or video stream")
    track.add_argument("--config", "-c", help="Path to a JSON configuration file")
    source = track.add_mutually_exclusive_group()
    source.add_argument("--camera", type=int, help="Camera index (overrides config)")
    source.add_argument("--video", help="Video file to process instead of a camera")
    track.add_argument("--display", action="store_true", help="Show an annotated viewer window")
    track.add_argument("--max-frames", type=int, default=None, help="Stop after this many frames")

    generate = subparsers.add_parser("generate", help="Render a marker image for printing")
    generate.add_argument(
        "--dictionary", "-d",
        default="4x4_50",
        help=f"Dictionary name: one of {sorted(BUILTIN_DICTIONARIES)} or aruco:DICT_*",
    )
    generate.add_argument("--id", type=int, required=True, help="Marker ID")
    generate.add_argument("--size", type=int, default=400, help="Marker side in pixels")
    generate.add_argument("--margin", type=int, default=None, help="White quiet zone in pixels")
    generate.add_argument("--output", "-o", default=None, help="Output PNG path")

    config = subparsers.add_parser("config", help="Write the default configuration to a file")
    config.add_argument("--output", "-o", default="markersight.json", help="Output JSON path")

    return parser.parse_args(argv)


def log_event(event: TrackEvent):
    """Log a status change, including the world position when tracked."""
    if event.world_pose is not None and event.world_pose.success:
        x, y, z = event.world_pose.translation_vector.flatten()
        LOGGER.info(
            "%s: %s -> %s at (%.3f, %.3f, %.3f)",
            event.key, event.previous_status.value, event.status.value, x, y, z,
        )
    else:
        LOGGER.info("%s: %s -> %s", event.key, event.previous_status.value, event.status.value)


def run_tracking(args: argparse.Namespace) -> int:
    config = get_config(args.config)
    if not validate_config(config):
        return 1
    if args.camera is not None:
        config["video"]["camera_id"] = args.camera

    base_dir = os.path.dirname(os.path.abspath(args.config)) if args.config else None
    engine = TrackingEngine.from_config(config, base_dir=base_dir)
    if len(engine.registry) == 0:
        LOGGER.error("No targets configured; add entries to the 'targets' section")
        return 1
    engine.subscribe(log_event)

    source = FrameSource(config)
    opened = source.load_video_file(args.video) if args.video else source.initialize()
    if not opened:
        return 1

    viewer = None
    if args.display:
        from .ui import TrackingViewer

        viewer = TrackingViewer(config)
        if not viewer.initialize():
            viewer = None

    processed = 0
    total_time = 0.0
    try:
        for frame in source.frames(args.max_frames):
            result = engine.process_frame(frame)
            processed += 1
            total_time += result.processing_time

            if viewer is not None:
                viewer.show(viewer.render(frame, result, engine.track_manager.tracks.values()))
                running = viewer.handle_events()
                while running and viewer.paused:
                    running = viewer.handle_events()
                if not running:
                    break
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user")
    finally:
        source.cleanup()
        if viewer is not None:
            viewer.cleanup()

    if processed:
        LOGGER.info(
            "Processed %d frames, %.1f ms per frame on average",
            processed, 1000.0 * total_time / processed,
        )
    return 0


def run_generate(args: argparse.Namespace) -> int:
    dictionary = get_dictionary(args.dictionary)
    marker = dictionary.draw_marker(args.id, args.size)

    margin = args.size // 8 if args.margin is None else args.margin
    if margin > 0:
        marker = cv2.copyMakeBorder(marker, margin, margin, margin, margin, cv2.BORDER_CONSTANT, value=255)

    output = args.output
    if output is None:
        safe_name = dictionary.name.replace(":", "_")
        output = os.path.join("markers", f"{safe_name}_{args.id}_{get_timestamp()}.png")
    directory = os.path.dirname(output)
    if directory and not create_directory(directory):
        return 1

    if not cv2.imwrite(output, np.ascontiguousarray(marker)):
        LOGGER.error("Failed to write marker image to %s", output)
        return 1
    LOGGER.info("Marker %s:%d written to %s", dictionary.name, args.id, output)
    return 0


def run_config(args: argparse.Namespace) -> int:
    return 0 if save_config(default_config(), args.output) else 1


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=log_level)

    handlers = {
        "track": run_tracking,
        "generate": run_generate,
        "config": run_config,
    }
    try:
        status = handlers[args.command](args)
    except (ValueError, KeyError, FileNotFoundError) as e:
        LOGGER.error("%s", e)
        status = 1

    sys.exit(status)


if __name__ == "__main__":
    main()
