"""
Camera access with an explicit permission lifecycle.

Wraps OpenCV ``VideoCapture`` and tracks where the device is in its
``Initial → Requesting → {Granted | Denied | Unavailable}`` lifecycle.
A live stream exists only in ``Granted``.  Whoever moves the device into
``Granted`` owns the stream and must release it via :meth:`close` (or the
context manager) on every exit path.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class PermissionState(Enum):
    INITIAL     = "initial"
    REQUESTING  = "requesting"
    GRANTED     = "granted"
    DENIED      = "denied"
    UNAVAILABLE = "unavailable"


class DenialReason(Enum):
    PERMISSION_REFUSED = "permission-refused"
    NO_DEVICE          = "no-device"
    UNSUPPORTED        = "unsupported"
    DEVICE_IN_USE      = "device-in-use"
    UNKNOWN            = "unknown"


UNAVAILABLE_MESSAGE = "Camera is not supported on this device"

DENIAL_MESSAGES = {
    DenialReason.PERMISSION_REFUSED:
        "Camera permission denied. Please allow camera access and try again.",
    DenialReason.NO_DEVICE: "No camera found on this device.",
    DenialReason.UNSUPPORTED: "Camera is not supported on this device.",
    DenialReason.DEVICE_IN_USE: "Camera is already in use by another application.",
    DenialReason.UNKNOWN:
        "Unable to access camera. Please check your device settings and try again.",
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class CameraError(RuntimeError):
    """Base error for camera acquisition."""


class CameraUnsupported(CameraError):
    """The platform exposes no camera capability at all."""


class PermissionDenied(CameraError):
    """A request for the camera failed; ``reason`` classifies why."""

    def __init__(self, reason: DenialReason) -> None:
        super().__init__(DENIAL_MESSAGES[reason])
        self.reason = reason


class DeviceUnavailable(CameraError):
    """Frames were requested while no stream is held."""


def _has_camera_backend() -> bool:
    try:
        return len(cv2.videoio_registry.getCameraBackends()) > 0
    except cv2.error:
        return False


def classify_failure(exc: BaseException) -> DenialReason:
    """Map an acquisition failure onto the denial taxonomy."""
    if isinstance(exc, PermissionDenied):
        return exc.reason
    if isinstance(exc, PermissionError):
        return DenialReason.PERMISSION_REFUSED
    if isinstance(exc, NotImplementedError):
        return DenialReason.UNSUPPORTED
    return DenialReason.UNKNOWN


class CaptureDevice:
    """
    Permission-aware camera wrapper.

    Parameters
    ----------
    camera_index:
        OpenCV camera index.
    resolution:
        Requested (width, height).  The device may deliver something else.
    flip_horizontal:
        Mirror frames left-to-right (selfie view).
    backend_factory:
        Callable returning a ``cv2.VideoCapture``-like object for an index.
        Injected by tests.
    capability_probe:
        Callable answering whether the platform can provide a camera at all.
    """

    def __init__(
        self,
        camera_index: int = 0,
        resolution: Tuple[int, int] = (1280, 720),
        flip_horizontal: bool = True,
        backend_factory: Callable[[int], object] = cv2.VideoCapture,
        capability_probe: Callable[[], bool] = _has_camera_backend,
    ) -> None:
        self.camera_index = camera_index
        self.resolution = resolution
        self.flip_horizontal = flip_horizontal
        self._backend_factory = backend_factory
        self._capability_probe = capability_probe

        self._cap = None
        self.state = PermissionState.INITIAL
        self.denial_reason: Optional[DenialReason] = None
        self.error_message = ""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_streaming(self) -> bool:
        return self._cap is not None

    def request_access(self) -> PermissionState:
        """
        Ask for the camera (the "allow camera" / "Try Again" action).

        Any stream already held is released first.  Failures are recorded
        on the device rather than raised.
        """
        self._release()
        self.denial_reason = None
        self.error_message = ""

        if not self._capability_probe():
            self.state = PermissionState.UNAVAILABLE
            self.error_message = UNAVAILABLE_MESSAGE
            logger.warning("No camera capability on this platform.")
            return self.state

        self.state = PermissionState.REQUESTING
        try:
            self._cap = self._acquire()
        except Exception as exc:                          # noqa: BLE001
            reason = classify_failure(exc)
            self.state = PermissionState.DENIED
            self.denial_reason = reason
            self.error_message = DENIAL_MESSAGES[reason]
            logger.warning("Camera request denied – reason=%s (%s)", reason.value, exc)
            return self.state

        self.state = PermissionState.GRANTED
        logger.info(
            "Camera opened – index=%d resolution=%s",
            self.camera_index, self.resolution,
        )
        return self.state

    def close(self) -> None:
        """Stop and release the stream; return to ``Initial``."""
        self._release()
        self.state = PermissionState.INITIAL
        self.denial_reason = None
        self.error_message = ""

    def __enter__(self) -> "CaptureDevice":
        self.request_access()
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Frame acquisition
    # ------------------------------------------------------------------

    def read_frame(self) -> np.ndarray | None:
        """
        Grab the current frame.

        Returns
        -------
        numpy.ndarray
            BGR image (H × W × 3, uint8), or *None* when the read fails.
        """
        if self._cap is None:
            raise DeviceUnavailable("Camera is not open.  Call request_access() first.")
        ok, frame = self._cap.read()
        if not ok:
            logger.warning("VideoCapture.read() returned False.")
            return None
        if self.flip_horizontal:
            frame = cv2.flip(frame, 1)
        return frame

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _acquire(self):
        cap = self._backend_factory(self.camera_index)
        if not cap.isOpened():
            cap.release()
            raise PermissionDenied(DenialReason.NO_DEVICE)
        w, h = self.resolution
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
        # A device held by another process opens but refuses to deliver.
        ok, _ = cap.read()
        if not ok:
            cap.release()
            raise PermissionDenied(DenialReason.DEVICE_IN_USE)
        return cap

    def _release(self) -> None:
        if self._cap is None:
            return
        self._cap.release()
        self._cap = None
        logger.info("Camera closed.")
