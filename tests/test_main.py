"""
Tests for the command-line interface.
"""

import json
import os
import sys
import tempfile
import unittest
from unittest import mock

import cv2
import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from markersight.main import main, parse_args  # type: ignore
from markersight.marker_detect import MarkerDetector  # type: ignore
from markersight.video import Frame  # type: ignore
from synthetic import make_calibration  # type: ignore


class FakeSource:
    """Frame source yielding a few blank frames."""

    def __init__(self, config=None):
        self.cleaned_up = False

    def load_video_file(self, filepath):
        return True

    def frames(self, max_frames=None):
        for i in range(5):
            yield Frame.create(np.full((480, 640), 255, dtype=np.uint8), make_calibration(), timestamp=0.1 * i)

    def cleanup(self):
        self.cleaned_up = True


class PauseThenQuitViewer:
    """Viewer whose user pauses on the first frame and quits while paused."""

    def __init__(self, config=None):
        self.paused = False
        self.keys = [True, False]

    def initialize(self):
        return True

    def render(self, frame, result, tracks):
        return frame.image

    def show(self, canvas):
        pass

    def handle_events(self):
        self.paused = True
        return self.keys.pop(0)

    def cleanup(self):
        pass


class TestCommandLine(unittest.TestCase):
    """Subcommands run end to end."""

    def test_parse_track_arguments(self):
        args = parse_args(["track", "--video", "clip.mp4", "--max-frames", "5", "--display"])
        self.assertEqual(args.command, "track")
        self.assertEqual(args.video, "clip.mp4")
        self.assertEqual(args.max_frames, 5)
        self.assertTrue(args.display)

    def test_camera_and_video_are_exclusive(self):
        with self.assertRaises(SystemExit):
            parse_args(["track", "--camera", "0", "--video", "clip.mp4"])

    def test_generate_writes_detectable_marker(self):
        """A generated marker image is found again by the detector."""
        with tempfile.TemporaryDirectory() as tmp:
            output = os.path.join(tmp, "out", "marker.png")
            with self.assertRaises(SystemExit) as ctx:
                main(["generate", "--dictionary", "4x4_50", "--id", "9", "--size", "240", "--output", output])
            self.assertEqual(ctx.exception.code, 0)

            image = cv2.imread(output, cv2.IMREAD_GRAYSCALE)

        self.assertEqual(image.shape, (300, 300))
        detections = MarkerDetector("4x4_50").detect(image)
        self.assertEqual([d.marker_id for d in detections], [9])

    def test_generate_unknown_dictionary_fails(self):
        with self.assertRaises(SystemExit) as ctx:
            main(["generate", "--dictionary", "9x9_1", "--id", "0", "--output", "unused.png"])
        self.assertEqual(ctx.exception.code, 1)

    def test_config_command_writes_defaults(self):
        with tempfile.TemporaryDirectory() as tmp:
            output = os.path.join(tmp, "config.json")
            with self.assertRaises(SystemExit) as ctx:
                main(["config", "--output", output])
            with open(output) as f:
                written = json.load(f)

        self.assertEqual(ctx.exception.code, 0)
        self.assertIn("marker_detection", written)

    def test_track_without_targets_fails(self):
        with self.assertRaises(SystemExit) as ctx:
            main(["track", "--video", "/nonexistent/clip.mp4"])
        self.assertEqual(ctx.exception.code, 1)

    def test_quit_while_paused_reports_summary(self):
        """Quitting from the pause loop still ends with the timing summary."""
        with tempfile.TemporaryDirectory() as tmp:
            config_path = os.path.join(tmp, "config.json")
            with open(config_path, "w") as f:
                json.dump({"targets": [{"type": "marker", "dictionary": "4x4_50", "id": 1, "size": 0.05}]}, f)

            with mock.patch("markersight.main.FrameSource", FakeSource), \
                    mock.patch("markersight.ui.TrackingViewer", PauseThenQuitViewer), \
                    self.assertLogs("markersight.main", level="INFO") as logs, \
                    self.assertRaises(SystemExit) as ctx:
                main(["track", "--config", config_path, "--video", "clip.mp4", "--display"])

        self.assertEqual(ctx.exception.code, 0)
        self.assertTrue(any("Processed 1 frames" in line for line in logs.output), logs.output)


if __name__ == "__main__":
    unittest.main()
