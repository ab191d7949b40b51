"""
Real-time scanner overlay.

Draws the following elements onto each video frame:
  • A dashed "position your palm here" guide in the frame centre.
  • Detection status and a colour-coded quality label.
  • The capture-progress bar with its percentage.
  • The countdown (timed scans) or the "Scan Palm" hint (gated scans).
  • A processing veil while a captured palm is being handled.
Also renders a plain message panel when there is no camera picture.
"""

from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np

from .camera import PermissionState
from .presence import Quality
from .session import CAPTURE_GATE, SessionView

# ---------------------------------------------------------------------------
# Colour palette (BGR)
# ---------------------------------------------------------------------------
_GREEN  = (0, 220,  80)
_RED    = (0,  50, 220)
_YELLOW = (0, 210, 210)
_WHITE  = (255, 255, 255)
_BLACK  = (0, 0, 0)
_BLUE   = (220, 120, 30)
_GREY   = (160, 160, 160)
_DARK   = (30, 30, 30)

_QUALITY_COLOURS = {
    Quality.EXCELLENT: _GREEN,
    Quality.GOOD:      _YELLOW,
    Quality.POOR:      _RED,
}


def progress_colour(progress: int) -> Tuple[int, int, int]:
    if progress > 80:
        return _GREEN
    if progress > 50:
        return _YELLOW
    return _RED


class Visualizer:
    """
    Draws the palm-scanner UI onto OpenCV frames in-place.

    Parameters
    ----------
    resolution:
        (width, height) used for message panels when there is no frame.
    guide_inset:
        Margin in pixels between the frame edge and the palm guide.
    """

    def __init__(self, resolution: Tuple[int, int] = (1280, 720), guide_inset: int = 24) -> None:
        self.w, self.h = resolution
        self.guide_inset = guide_inset

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def draw(self, frame: np.ndarray, view: SessionView) -> np.ndarray:
        """Annotate *frame* in-place for the session state in *view* and return it."""
        h, w = frame.shape[:2]

        guide_col = _GREEN if view.detected else _WHITE
        self._dashed_rect(frame, self.guide_inset, self.guide_inset,
                          w - self.guide_inset, h - self.guide_inset, guide_col)
        self._text(frame, "Position your palm here", (w // 2 - 150, h // 2), 0.8, guide_col, 2)

        if view.countdown is not None:
            self._text(frame, f"Scanning in {view.countdown}...", (w // 2 - 120, h // 2 + 40),
                       0.9, _YELLOW, 2)
        else:
            self._draw_status_panel(frame, view)

        if view.processing:
            self._draw_processing(frame)

        return frame

    def message_panel(self, view: SessionView) -> np.ndarray:
        """Frame-sized panel for the non-streaming states."""
        panel = np.full((self.h, self.w, 3), 40, dtype=np.uint8)
        if view.permission is PermissionState.UNAVAILABLE:
            lines = ["Camera not available", "This device doesn't support camera access"]
            colour = _GREY
        elif view.error_message:
            lines = ["Camera Access Required", view.error_message, "Press 'r' to try again"]
            colour = _RED
        else:
            lines = ["Requesting camera access..."]
            colour = _BLUE
        for i, line in enumerate(lines):
            self._text(panel, line, (32, self.h // 2 - 30 + i * 34), 0.75, colour, 2)
        return panel

    # ------------------------------------------------------------------
    # Private drawing helpers
    # ------------------------------------------------------------------

    def _draw_status_panel(self, frame: np.ndarray, view: SessionView) -> None:
        h, w = frame.shape[:2]
        x0, x1 = 40, w - 40
        y0 = h - 110
        cv2.rectangle(frame, (x0, y0), (x1, h - 36), _DARK, -1)

        status = "Palm Detected" if view.detected else "Searching for palm..."
        self._text(frame, status, (x0 + 12, y0 + 26), 0.6, _WHITE, 1)
        q_col = _QUALITY_COLOURS[view.quality]
        self._text(frame, view.quality.value.upper(), (x1 - 130, y0 + 26), 0.6, q_col, 2)

        bar_w = int((x1 - x0 - 24) * view.progress / 100)
        cv2.rectangle(frame, (x0 + 12, y0 + 38), (x1 - 12, y0 + 48), _GREY, -1)
        cv2.rectangle(frame, (x0 + 12, y0 + 38), (x0 + 12 + bar_w, y0 + 48),
                      progress_colour(view.progress), -1)
        self._text(frame, f"Scan Quality: {view.progress}%", (x0 + 12, y0 + 66), 0.45, _GREY, 1)

        if view.progress >= CAPTURE_GATE:
            hint, col = "Press SPACE to scan palm", _GREEN
        else:
            hint, col = f"Wait... {view.progress}%", _GREY
        self._text(frame, hint, (x1 - 260, y0 + 66), 0.5, col, 1)

    def _draw_processing(self, frame: np.ndarray) -> None:
        veil = np.empty_like(frame)
        veil[:] = _BLUE
        cv2.addWeighted(veil, 0.2, frame, 0.8, 0, dst=frame)
        h, w = frame.shape[:2]
        self._text(frame, "Processing palm scan...", (w // 2 - 160, h // 2 + 50), 0.8, _WHITE, 2)
        self._text(frame, "Analyzing palm patterns...", (w // 2 - 140, h // 2 + 80), 0.6, _WHITE, 1)

    @staticmethod
    def _text(img, text, org, scale, colour, thickness) -> None:
        cv2.putText(img, text, org, cv2.FONT_HERSHEY_SIMPLEX, scale, _BLACK, thickness + 2, cv2.LINE_AA)
        cv2.putText(img, text, org, cv2.FONT_HERSHEY_SIMPLEX, scale, colour, thickness, cv2.LINE_AA)

    @staticmethod
    def _dashed_rect(img, x0, y0, x1, y1, colour, dash: int = 14) -> None:
        for x in range(x0, x1, dash * 2):
            cv2.line(img, (x, y0), (min(x + dash, x1), y0), colour, 2)
            cv2.line(img, (x, y1), (min(x + dash, x1), y1), colour, 2)
        for y in range(y0, y1, dash * 2):
            cv2.line(img, (x0, y), (x0, min(y + dash, y1)), colour, 2)
            cv2.line(img, (x1, y), (x1, min(y + dash, y1)), colour, 2)
