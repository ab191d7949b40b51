import os
import sys

import numpy as np
import pytest


def pytest_configure():
    # Make `palm_pay` and `main` importable without installing the package
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    if root not in sys.path:
        sys.path.insert(0, root)


# ---------------------------------------------------------------------------
# Synthetic frames
# ---------------------------------------------------------------------------

SKIN_BGR = (120, 150, 220)   # R=220 G=150 B=120 → skin-like, brightness 163.3


def make_frame(skin_cols: int, background: int, skin_bgr=SKIN_BGR, size: int = 100) -> np.ndarray:
    """size×size BGR frame: ``skin_cols`` skin-toned columns, grey elsewhere."""
    frame = np.full((size, size, 3), background, dtype=np.uint8)
    frame[:, :skin_cols] = skin_bgr
    return frame


@pytest.fixture
def palm_frame() -> np.ndarray:
    # 40 % skin on grey 60: brightness ≈ 101, contrast ≈ 49.6 → excellent
    return make_frame(40, 60)


@pytest.fixture
def empty_frame() -> np.ndarray:
    return np.full((100, 100, 3), 128, dtype=np.uint8)


# ---------------------------------------------------------------------------
# Camera / clock doubles
# ---------------------------------------------------------------------------

class FakeCapture:
    """Stand-in for ``cv2.VideoCapture`` serving a settable frame."""

    def __init__(self, frame=None, opened: bool = True, readable: bool = True) -> None:
        self.frame = frame if frame is not None else np.zeros((100, 100, 3), dtype=np.uint8)
        self.opened = opened
        self.readable = readable
        self.released = False
        self.props = {}

    def isOpened(self) -> bool:
        return self.opened

    def set(self, prop, value) -> bool:
        self.props[prop] = value
        return True

    def read(self):
        if not self.readable or self.released:
            return False, None
        return True, self.frame.copy()

    def release(self) -> None:
        self.released = True


class CaptureFactory:
    """Backend factory handing out FakeCapture objects (or raising)."""

    def __init__(self, frame=None, **kwargs) -> None:
        self.frame = frame
        self.kwargs = kwargs
        self.raises = None
        self.created = []

    def __call__(self, index: int) -> FakeCapture:
        if self.raises is not None:
            raise self.raises
        cap = FakeCapture(self.frame, **self.kwargs)
        self.created.append(cap)
        return cap

    @property
    def current(self) -> FakeCapture:
        return self.created[-1]


class ManualClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def capture_factory(palm_frame) -> CaptureFactory:
    return CaptureFactory(palm_frame)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def make_device(capture_factory):
    from palm_pay.camera import CaptureDevice

    def _make(factory=None, available: bool = True):
        return CaptureDevice(
            flip_horizontal=False,
            backend_factory=factory or capture_factory,
            capability_probe=lambda: available,
        )
    return _make
