"""
Palm-in-frame detector.

A hand held in front of the camera makes the frame:
  - Partly (not entirely) skin-toned.
  - Moderately lit: neither a dark room nor a blown-out highlight.
  - Textured enough to differ from a flat, uniform field.

This is a coarse heuristic that approximates "a hand-sized, skin-toned,
moderately lit object fills part of the frame".  It is not palm
recognition and gives no security guarantee.  The thresholds below are
kept exactly as deployed; changing them changes which captures are
accepted.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np

# Skin-tone rule, per pixel (RGB order)
SKIN_MIN_RED      = 95
SKIN_MIN_GREEN    = 40
SKIN_MIN_BLUE     = 20
SKIN_MIN_RG_DIFF  = 15

# Detection window (skin percentage and mean brightness, both exclusive)
SKIN_RATIO_RANGE  = (15.0, 60.0)
BRIGHTNESS_RANGE  = (80.0, 200.0)

# Quality tiers: (min contrast, min skin percentage), both exclusive
EXCELLENT_LIMITS  = (30.0, 25.0)
GOOD_LIMITS       = (20.0, 20.0)


class Quality(Enum):
    POOR      = "poor"
    GOOD      = "good"
    EXCELLENT = "excellent"


@dataclass(frozen=True)
class PresenceScore:
    detected: bool
    quality: Quality
    brightness: float = 0.0
    skin_ratio: float = 0.0
    contrast: float = 0.0


NO_PRESENCE = PresenceScore(detected=False, quality=Quality.POOR)


class PresenceAnalyzer:
    """
    Heuristic scorer: is a palm held in front of the camera, and how well?
    """

    def score(self, frame: np.ndarray) -> PresenceScore:
        """
        Score a single frame.

        Parameters
        ----------
        frame:
            BGR (H × W × 3) or BGRA (H × W × 4) uint8 image.
        """
        if frame.size == 0:
            return NO_PRESENCE

        # int16 so channel differences cannot wrap around
        b_ch = frame[:, :, 0].astype(np.int16)
        g_ch = frame[:, :, 1].astype(np.int16)
        r_ch = frame[:, :, 2].astype(np.int16)
        n_pixels = r_ch.size

        pixel_brightness = (r_ch + g_ch + b_ch).astype(np.float64) / 3.0
        brightness = float(pixel_brightness.mean())

        skin = (
            (r_ch > SKIN_MIN_RED)
            & (g_ch > SKIN_MIN_GREEN)
            & (b_ch > SKIN_MIN_BLUE)
            & (r_ch > g_ch)
            & (r_ch > b_ch)
            & (np.abs(r_ch - g_ch) > SKIN_MIN_RG_DIFF)
        )
        skin_ratio = float(np.count_nonzero(skin)) / n_pixels * 100.0

        contrast = float(np.abs(pixel_brightness - brightness).mean())

        detected = (
            SKIN_RATIO_RANGE[0] < skin_ratio < SKIN_RATIO_RANGE[1]
            and BRIGHTNESS_RANGE[0] < brightness < BRIGHTNESS_RANGE[1]
        )

        quality = Quality.POOR
        if detected:
            if contrast > EXCELLENT_LIMITS[0] and skin_ratio > EXCELLENT_LIMITS[1]:
                quality = Quality.EXCELLENT
            elif contrast > GOOD_LIMITS[0] and skin_ratio > GOOD_LIMITS[1]:
                quality = Quality.GOOD

        return PresenceScore(
            detected=detected,
            quality=quality,
            brightness=brightness,
            skin_ratio=skin_ratio,
            contrast=contrast,
        )
