"""
Frame Sampler - camera ownership and still snapshots

A background thread keeps the most recent decoded frame so a snapshot is
just a JPEG encode of whatever the camera shows right now.

Usage:
    from petwatch.frame_sampler import FrameSampler, CaptureConstraints

    sampler = FrameSampler()
    handle = sampler.start_capture(CaptureConstraints(device=0))
    image = sampler.capture_snapshot(handle)
    sampler.stop_capture(handle)
"""

import base64
import logging
import time
from dataclasses import dataclass
from threading import Event, Lock, Thread
from typing import Optional, Union

try:
    import cv2
    HAS_CV2 = True
except ImportError:
    HAS_CV2 = False
    cv2 = None

from .config import config
from .exceptions import CameraUnavailable, NoFrameAvailable

logger = logging.getLogger(__name__)


@dataclass
class CaptureConstraints:
    """Camera selection and requested resolution."""
    device: Union[int, str] = 0
    width: Optional[int] = None
    height: Optional[int] = None
    open_timeout: float = 5.0

    @classmethod
    def from_env(cls) -> "CaptureConstraints":
        """Load from environment/.env"""
        device = config.get("PW_CAMERA_DEVICE", "0")
        return cls(
            device=int(device) if device.isdigit() else device,
            open_timeout=config.get_float("PW_CAMERA_OPEN_TIMEOUT", 5.0),
        )


@dataclass
class EncodedImage:
    """A JPEG snapshot at the stream's native resolution."""
    data: bytes
    width: int
    height: int
    mime_type: str = "image/jpeg"

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode()


class CameraHandle:
    """Open camera plus the thread that keeps its latest frame."""

    def __init__(self, capture, constraints: CaptureConstraints):
        self.constraints = constraints
        self._capture = capture
        self._latest = None
        self._lock = Lock()
        self._first_frame = Event()
        self._stop_event = Event()
        self._thread: Optional[Thread] = None
        self.frames_decoded = 0

    @property
    def active(self) -> bool:
        return not self._stop_event.is_set()

    def start(self):
        self._thread = Thread(target=self._grab_loop, name="petwatch-camera", daemon=True)
        self._thread.start()

    def wait_first_frame(self, timeout: float) -> bool:
        return self._first_frame.wait(timeout)

    def latest_frame(self):
        with self._lock:
            return self._latest

    def _grab_loop(self):
        while not self._stop_event.is_set():
            ok, frame = self._capture.read()
            if not ok or frame is None:
                time.sleep(0.05)
                continue
            with self._lock:
                self._latest = frame
                self.frames_decoded += 1
            self._first_frame.set()

    def release(self):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        with self._lock:
            self._latest = None
        self._capture.release()


class FrameSampler:
    """Opens cameras and produces JPEG snapshots."""

    def __init__(self, quality: Optional[float] = None):
        if quality is None:
            quality = config.get_float("PW_SNAPSHOT_QUALITY", 0.8)
        self.quality = min(1.0, max(0.01, quality))

    @property
    def jpeg_quality(self) -> int:
        return int(round(self.quality * 100))

    def start_capture(self, constraints: Optional[CaptureConstraints] = None) -> CameraHandle:
        """Open the camera and start grabbing frames.

        Raises:
            CameraUnavailable: no OpenCV, the device does not open, or no
                frame arrives within ``open_timeout`` seconds.
        """
        constraints = constraints or CaptureConstraints.from_env()

        if not HAS_CV2:
            raise CameraUnavailable("Camera access requires opencv-python: pip install opencv-python")

        capture = cv2.VideoCapture(constraints.device)
        if not capture.isOpened():
            capture.release()
            raise CameraUnavailable(
                f"Could not access camera {constraints.device!r}. "
                "Please ensure permission is granted and no other app is using it."
            )

        if constraints.width:
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        if constraints.height:
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)

        handle = CameraHandle(capture, constraints)
        handle.start()

        if constraints.open_timeout > 0 and not handle.wait_first_frame(constraints.open_timeout):
            handle.release()
            raise CameraUnavailable(
                f"Camera {constraints.device!r} opened but produced no frames "
                f"within {constraints.open_timeout:.0f}s"
            )

        logger.info(f"Camera {constraints.device!r} started")
        return handle

    def stop_capture(self, handle: Optional[CameraHandle]):
        """Release the camera. Safe to call on an already stopped handle."""
        if handle is None or not handle.active:
            return
        handle.release()
        logger.info(f"Camera {handle.constraints.device!r} stopped")

    def capture_snapshot(self, handle: Optional[CameraHandle]) -> EncodedImage:
        """Encode the current frame as JPEG.

        Raises:
            NoFrameAvailable: handle stopped or nothing decoded yet.
        """
        if handle is None or not handle.active:
            raise NoFrameAvailable("Camera is not streaming")

        frame = handle.latest_frame()
        if frame is None:
            raise NoFrameAvailable("No frame decoded yet")

        ok, jpeg = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if not ok:
            raise NoFrameAvailable("Could not encode frame")

        height, width = frame.shape[:2]
        return EncodedImage(data=jpeg.tobytes(), width=width, height=height)
