"""
Clip Analyzer - one-shot interpretation of a recorded video

Samples a handful of evenly spaced frames, asks the backend for a
behaviour summary and stores it as an "Uploaded Video" observation.

Usage:
    from petwatch.clip import ClipAnalyzer

    async with InferenceClient() as client:
        result = await ClipAnalyzer(client, store).analyze("rex_park.mp4", subject_id)
        print(result.text)
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from .config import config
from .diagnostics import metrics
from .exceptions import CaptureError, SubjectNotFound
from .frame_sampler import EncodedImage, HAS_CV2, cv2
from .inference import InferenceClient
from .models import ObservationOrigin, Subject
from .prompts import INTERPRET_CLIP, get_prompt
from .store import SubjectStore

logger = logging.getLogger(__name__)


@dataclass
class ClipResult:
    """Outcome of analysing one clip."""
    subject: Subject
    text: str
    frames_used: int
    created_subject: bool = False


def sample_frames(
    path: Union[str, Path], count: int, jpeg_quality: int = 80
) -> List[EncodedImage]:
    """Grab ``count`` evenly spaced frames from a video file as JPEG.

    Raises:
        CaptureError: the file cannot be opened or yields no frames.
    """
    if not HAS_CV2:
        raise CaptureError("Clip analysis requires opencv-python: pip install opencv-python")

    path = Path(path)
    if not path.exists():
        raise CaptureError(f"Clip not found: {path}")

    cap = cv2.VideoCapture(str(path))
    if not cap.isOpened():
        raise CaptureError(f"Cannot open clip: {path}")

    frames: List[EncodedImage] = []
    try:
        total = int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        count = max(1, count)
        if total > 0:
            step = total / count
            positions = [int(step * i + step / 2) for i in range(count)]
        else:
            positions = [None] * count

        for pos in positions:
            if pos is not None:
                cap.set(cv2.CAP_PROP_POS_FRAMES, pos)
            ok, frame = cap.read()
            if not ok or frame is None:
                continue
            ok, jpeg = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, jpeg_quality])
            if not ok:
                continue
            height, width = frame.shape[:2]
            frames.append(EncodedImage(data=jpeg.tobytes(), width=width, height=height))
    finally:
        cap.release()

    if not frames:
        raise CaptureError(f"No frames could be read from {path.name}")

    logger.debug(f"Sampled {len(frames)}/{count} frames from {path.name} ({total} total)")
    return frames


class ClipAnalyzer:
    """Interprets recorded clips and files the result under a subject."""

    def __init__(
        self,
        inference: InferenceClient,
        store: SubjectStore,
        frame_count: Optional[int] = None,
        jpeg_quality: int = 80,
    ):
        self.inference = inference
        self.store = store
        self.frame_count = frame_count or config.get_int("PW_CLIP_FRAMES", 6)
        self.jpeg_quality = jpeg_quality

    async def _offload(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def analyze(
        self,
        path: Union[str, Path],
        subject_id: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> ClipResult:
        """Interpret ``path`` and append the result to ``subject_id``.

        Without a subject a new one is created from the file name.

        Raises:
            SubjectNotFound: ``subject_id`` is not in the store.
            CaptureError: the clip is unreadable.
            BackendError: the backend failed or answered with nothing.
        """
        path = Path(path)
        if subject_id is not None and await self._offload(self.store.get, subject_id) is None:
            raise SubjectNotFound(f"Unknown subject: {subject_id}")

        frames = await self._offload(sample_frames, path, self.frame_count, self.jpeg_quality)
        with metrics.track("clip"):
            text = await self.inference.interpret_clip(frames, prompt or get_prompt(INTERPRET_CLIP))

        created = False
        if subject_id is None:
            subject = await self._offload(self.store.create, f"Pet from {path.name[:20]}...")
            subject_id = subject.id
            created = True

        subject = await self._offload(
            self.store.append, subject_id, text, ObservationOrigin.RECORDED_UPLOAD, path.name
        )
        if subject is None:
            raise SubjectNotFound(f"Subject {subject_id} was removed during analysis")

        logger.info(f"Clip {path.name} filed under {subject.label}")
        return ClipResult(subject=subject, text=text, frames_used=len(frames), created_subject=created)
