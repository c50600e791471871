"""
Debug viewer window.

Shows annotated frames from the tracking loop and handles keyboard input.
"""

import logging

import cv2

from .overlay import (
    OverlayConfiguration,
    draw_image_detections,
    draw_marker_detections,
    draw_pose_axes,
    draw_status,
    to_bgr,
)

LOGGER = logging.getLogger(__name__)


class TrackingViewer:
    """OpenCV window that renders engine results."""

    def __init__(self, config=None):
        """Initialize the viewer.

        Args:
            config: Configuration dictionary (``display`` section is used)
        """
        self.config = config or {}
        display = self.config.get('display', {})

        self.window_name = display.get('window_name', "markersight")
        self.display_width = display.get('display_width', 640)
        self.display_height = display.get('display_height', 480)
        self.overlay_config = OverlayConfiguration.from_dict(display)
        self.overlay_config.axis_length = self.config.get('axis_length', self.overlay_config.axis_length)

        self.show_detections = display.get('show_detections', True)
        self.show_axes = display.get('show_axes', True)
        self.paused = False

    def initialize(self):
        """Create the display window.

        Returns:
            bool: True if the window could be created
        """
        try:
            cv2.namedWindow(self.window_name, cv2.WINDOW_NORMAL)
            cv2.resizeWindow(self.window_name, self.display_width, self.display_height)
        except cv2.error as e:
            LOGGER.error("Viewer initialization failed: %s", e)
            return False

        LOGGER.info("Viewer initialized: %sx%s", self.display_width, self.display_height)
        return True

    def render(self, frame, result, tracks):
        """Draw detections, axes and track status for one processed frame."""
        canvas = to_bgr(frame.image)

        if self.show_detections:
            draw_marker_detections(canvas, result.marker_detections, self.overlay_config)
            draw_image_detections(canvas, result.image_detections, self.overlay_config)

        tracks = list(tracks)
        if self.show_axes:
            for track in tracks:
                if track.is_tracked and track.pose is not None:
                    draw_pose_axes(canvas, track.pose, frame.calibration, self.overlay_config)

        draw_status(canvas, tracks, self.overlay_config)
        if self.paused:
            cv2.putText(
                canvas,
                "PAUSED",
                (10, canvas.shape[0] - 10),
                cv2.FONT_HERSHEY_SIMPLEX,
                self.overlay_config.font_scale,
                (0, 0, 255),
                1,
            )
        return canvas

    def show(self, canvas):
        cv2.imshow(self.window_name, canvas)

    def handle_events(self):
        """Handle keyboard input.

        Returns:
            bool: True to continue running, False to exit
        """
        key = cv2.waitKey(1) & 0xFF

        if key == ord('q') or key == 27:  # 'q' or ESC
            LOGGER.info("User requested exit")
            return False
        elif key == ord('d'):
            self.show_detections = not self.show_detections
            LOGGER.info("Detection display: %s", self.show_detections)
        elif key == ord('a'):
            self.show_axes = not self.show_axes
            LOGGER.info("Axes display: %s", self.show_axes)
        elif key == ord('p'):
            self.paused = not self.paused
            LOGGER.info("Paused: %s", self.paused)
        elif key == ord('h'):
            self._print_help()

        return True

    def _print_help(self):
        """Print help information to console."""
        help_text = """
        markersight viewer controls:
        ============================
        q / ESC - Quit
        d       - Toggle detection outlines
        a       - Toggle pose axes
        p       - Pause/Resume
        h       - Show this help
        """
        print(help_text)

    def cleanup(self):
        """Close the display window."""
        cv2.destroyAllWindows()
        LOGGER.info("Viewer cleaned up")
