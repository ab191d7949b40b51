"""
Capture session: camera + presence scoring + code derivation as one flow.

The session is driven cooperatively.  The host calls :meth:`CaptureSession.tick`
once per displayed frame and never from more than one place at a time;
the session never starts a thread of its own.  A :class:`StopToken` is
checked at the top of every tick, so :meth:`CaptureSession.close` halts
the loop and releases the camera synchronously.

Two policies decide when a code is produced:

``GatedPolicy``
    Scores every frame, accumulates capture progress and only lets the
    user capture at >= 80 %.  The frozen frame is hashed and looked up in
    the palm registry.

``TimedPolicy``
    Counts down a fixed number of seconds and then emits a freshly minted
    demo code.  It never scores frames and never consults the registry, so
    it gives none of the gated policy's guarantees.  Both flows exist in
    the deployed product; which one is authoritative is still undecided,
    so neither is folded into the other.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import numpy as np

from .camera import CaptureDevice, PermissionState
from .codes import derive_hash, mint_palm_code
from .presence import PresenceAnalyzer, PresenceScore, Quality
from .registry import PalmRegistry

logger = logging.getLogger(__name__)

PROGRESS_MAX      = 100
PROGRESS_STEP_UP  = 10
PROGRESS_STEP_DOWN = 5
CAPTURE_GATE      = 80
PROCESSING_SECONDS = 2.0

LOW_QUALITY_PROMPT = "Please position your palm properly and wait for better scan quality"
BUSY_PROMPT        = "Palm scan already in progress"


class StopToken:
    """Cancellation flag checked once per tick."""

    def __init__(self) -> None:
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        self._stopped = True


@dataclass(frozen=True)
class SessionView:
    """Everything a renderer needs to draw the scanner for one frame."""
    permission: PermissionState
    error_message: str
    progress: int
    detected: bool
    quality: Quality
    processing: bool
    can_capture: bool
    countdown: Optional[int] = None


@dataclass(frozen=True)
class CaptureAttempt:
    accepted: bool
    message: str = ""


class CapturePolicy(Protocol):
    def start(self, session: "CaptureSession", now: float) -> None: ...

    def on_frame(self, session: "CaptureSession", frame: np.ndarray, now: float) -> None: ...

    def can_capture(self, session: "CaptureSession") -> bool: ...

    def derive_code(self, session: "CaptureSession", frame: np.ndarray) -> str: ...

    def cancel(self) -> None: ...

    @property
    def countdown(self) -> Optional[int]: ...


class GatedPolicy:
    """
    Quality-gated capture.

    Parameters
    ----------
    analyzer:
        Per-frame presence scorer.
    registry:
        Palm registry consulted for returning palms.
    """

    countdown = None

    def __init__(
        self,
        analyzer: Optional[PresenceAnalyzer] = None,
        registry: Optional[PalmRegistry] = None,
    ) -> None:
        self.analyzer = analyzer or PresenceAnalyzer()
        self.registry = registry if registry is not None else PalmRegistry()

    def start(self, session: "CaptureSession", now: float) -> None:
        pass

    def on_frame(self, session: "CaptureSession", frame: np.ndarray, now: float) -> None:
        session.record_presence(self.analyzer.score(frame))

    def can_capture(self, session: "CaptureSession") -> bool:
        return session.progress >= CAPTURE_GATE

    def derive_code(self, session: "CaptureSession", frame: np.ndarray) -> str:
        digest, encoded = derive_hash(frame)
        code, _ = self.registry.resolve(digest, encoded)
        return code

    def cancel(self) -> None:
        pass


class TimedPolicy:
    """
    Countdown capture: emits a demo code when the timer runs out.

    Parameters
    ----------
    seconds:
        Countdown length.
    interval:
        Seconds per countdown step.
    """

    def __init__(self, seconds: int = 3, interval: float = 1.0) -> None:
        if seconds < 1:
            raise ValueError("seconds must be >= 1")
        self.seconds = seconds
        self.interval = interval
        self._remaining: Optional[int] = None
        self._next_step_at = 0.0

    @property
    def countdown(self) -> Optional[int]:
        return self._remaining

    def start(self, session: "CaptureSession", now: float) -> None:
        self._remaining = self.seconds
        self._next_step_at = now + self.interval

    def on_frame(self, session: "CaptureSession", frame: np.ndarray, now: float) -> None:
        if self._remaining is None:
            return
        while self._remaining > 0 and now >= self._next_step_at:
            self._remaining -= 1
            self._next_step_at += self.interval
        if self._remaining == 0:
            self._remaining = None
            session.finish(mint_palm_code())

    def can_capture(self, session: "CaptureSession") -> bool:
        return False

    def derive_code(self, session: "CaptureSession", frame: np.ndarray) -> str:
        return mint_palm_code()

    def cancel(self) -> None:
        self._remaining = None


class CaptureSession:
    """
    One user-facing palm scan.

    Parameters
    ----------
    device:
        Camera wrapper; the session owns its stream while open.
    policy:
        :class:`GatedPolicy` (default) or :class:`TimedPolicy`.
    on_scan:
        Called with the palm code once a scan completes.  The session is
        closed right after.
    processing_seconds:
        Fixed pause between a gated capture and emitting its code.  Pure
        UX; no extra validation happens during it.
    clock:
        Monotonic time source (seconds).
    """

    def __init__(
        self,
        device: CaptureDevice,
        policy: Optional[CapturePolicy] = None,
        on_scan: Optional[Callable[[str], None]] = None,
        processing_seconds: float = PROCESSING_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.device = device
        self.policy = policy if policy is not None else GatedPolicy()
        self.on_scan = on_scan
        self.processing_seconds = processing_seconds
        self._clock = clock

        self._token = StopToken()
        self._token.stop()
        self._last_frame: Optional[np.ndarray] = None
        self._pending_code: Optional[str] = None
        self._emit_at = 0.0
        self.result: Optional[str] = None
        self._reset()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def stopped(self) -> bool:
        return self._token.stopped

    def open(self) -> PermissionState:
        """Start (or restart) the session; also serves as "Try Again"."""
        self._token.stop()
        self.policy.cancel()
        self._reset()
        self.result = None
        self._token = StopToken()
        state = self.device.request_access()
        if state is PermissionState.GRANTED:
            self.policy.start(self, self._clock())
        return state

    retry = open

    def close(self) -> None:
        """Halt the frame loop, cancel timers, release the camera, clear state."""
        self._token.stop()
        self.policy.cancel()
        self.device.close()
        self._reset()

    def __enter__(self) -> "CaptureSession":
        self.open()
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Per-frame step
    # ------------------------------------------------------------------

    def tick(self) -> Optional[np.ndarray]:
        """
        Run one display-frame step.

        Returns the frame to show (the frozen frame while processing), or
        *None* when there is nothing to draw.
        """
        if self._token.stopped or self.device.state is not PermissionState.GRANTED:
            return None

        now = self._clock()
        if self._pending_code is not None:
            if now >= self._emit_at:
                frozen = self._last_frame
                self.finish(self._pending_code)
                return frozen
            return self._last_frame

        frame = self.device.read_frame()
        if frame is None:
            return None
        self._last_frame = frame
        self.policy.on_frame(self, frame, now)
        return frame

    def record_presence(self, score: PresenceScore) -> None:
        """Fold one frame's score into the capture progress."""
        if (
            self._token.stopped
            or self._pending_code is not None
            or self.device.state is not PermissionState.GRANTED
        ):
            return
        self.detected = score.detected
        self.quality = score.quality
        if score.detected:
            self.progress = min(self.progress + PROGRESS_STEP_UP, PROGRESS_MAX)
        else:
            self.progress = max(self.progress - PROGRESS_STEP_DOWN, 0)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    @property
    def processing(self) -> bool:
        return self._pending_code is not None

    def can_capture(self) -> bool:
        return (
            not self._token.stopped
            and not self.processing
            and self.device.state is PermissionState.GRANTED
            and self._last_frame is not None
            and self.policy.can_capture(self)
        )

    def capture(self) -> CaptureAttempt:
        """
        The "Scan Palm" action.

        Below the gate the attempt is refused with a prompt; nothing is
        captured.  Otherwise the current frame is frozen, turned into a
        code, and the processing pause begins.
        """
        if self.processing:
            return CaptureAttempt(False, BUSY_PROMPT)
        if not self.can_capture():
            logger.warning("Capture refused – progress=%d%%", self.progress)
            return CaptureAttempt(False, LOW_QUALITY_PROMPT)

        frozen = self._last_frame.copy()
        self._last_frame = frozen
        self._pending_code = self.policy.derive_code(self, frozen)
        self._emit_at = self._clock() + self.processing_seconds
        logger.info("Palm captured – processing for %.1fs", self.processing_seconds)
        return CaptureAttempt(True)

    def finish(self, code: str) -> None:
        """Emit *code* to the caller and close the session."""
        self.result = code
        try:
            if self.on_scan is not None:
                self.on_scan(code)
        finally:
            self.close()

    # ------------------------------------------------------------------
    # Rendering support
    # ------------------------------------------------------------------

    def view(self) -> SessionView:
        return SessionView(
            permission=self.device.state,
            error_message=self.device.error_message,
            progress=self.progress,
            detected=self.detected,
            quality=self.quality,
            processing=self.processing,
            can_capture=self.can_capture(),
            countdown=self.policy.countdown,
        )

    def _reset(self) -> None:
        self.progress = 0
        self.detected = False
        self.quality = Quality.POOR
        self._pending_code = None
        self._last_frame = None
