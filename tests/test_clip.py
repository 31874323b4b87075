"""
Tests for recorded clip analysis
"""

import threading
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import numpy as np
import pytest

from petwatch.clip import ClipAnalyzer, sample_frames
from petwatch.exceptions import BackendError, CaptureError, SubjectNotFound
from petwatch.frame_sampler import EncodedImage
from petwatch.models import ObservationOrigin
from petwatch.prompts import INTERPRET_CLIP, get_prompt
from petwatch.store import MemoryKeyValueStore, SubjectStore

FRAME = np.zeros((120, 160, 3), dtype=np.uint8)
FRAMES = [EncodedImage(data=b"jpeg", width=160, height=120)] * 3


@pytest.fixture
def clip_file(tmp_path):
    path = tmp_path / "rex_playing_in_the_park.mp4"
    path.write_bytes(b"not really a video")
    return path


@pytest.fixture
def cv2_mock():
    cv2 = MagicMock()
    cv2.imencode.return_value = (True, np.frombuffer(b"jpeg", dtype=np.uint8))
    capture = cv2.VideoCapture.return_value
    capture.isOpened.return_value = True
    capture.get.return_value = 60
    capture.read.return_value = (True, FRAME)
    with patch("petwatch.clip.cv2", cv2), patch("petwatch.clip.HAS_CV2", True):
        yield cv2


@pytest.fixture
def subjects():
    return SubjectStore(MemoryKeyValueStore())


@pytest.fixture
def inference():
    client = Mock()
    client.interpret_clip = AsyncMock(return_value="Rex is playful and curious.")
    return client


class TestSampleFrames:

    def test_evenly_spaced(self, clip_file, cv2_mock):
        frames = sample_frames(clip_file, 3)

        capture = cv2_mock.VideoCapture.return_value
        positions = [c[0][1] for c in capture.set.call_args_list]
        assert positions == [10, 30, 50]
        assert len(frames) == 3
        assert frames[0].width == 160
        capture.release.assert_called_once()

    def test_missing_file(self, tmp_path, cv2_mock):
        with pytest.raises(CaptureError):
            sample_frames(tmp_path / "nope.mp4", 3)

    def test_cannot_open(self, clip_file, cv2_mock):
        cv2_mock.VideoCapture.return_value.isOpened.return_value = False

        with pytest.raises(CaptureError):
            sample_frames(clip_file, 3)

    def test_no_readable_frames(self, clip_file, cv2_mock):
        cv2_mock.VideoCapture.return_value.read.return_value = (False, None)

        with pytest.raises(CaptureError):
            sample_frames(clip_file, 3)


class TestClipAnalyzer:

    @pytest.mark.asyncio
    async def test_appends_to_existing_subject(self, clip_file, subjects, inference):
        rex = subjects.create("Rex", "Dog")
        analyzer = ClipAnalyzer(inference, subjects, frame_count=3)

        with patch("petwatch.clip.sample_frames", return_value=FRAMES):
            result = await analyzer.analyze(clip_file, rex.id)

        assert not result.created_subject
        assert result.frames_used == 3
        observation = subjects.get(rex.id).observations[0]
        assert observation.origin == ObservationOrigin.RECORDED_UPLOAD
        assert observation.source_file == "rex_playing_in_the_park.mp4"
        assert observation.text == "Rex is playful and curious."
        inference.interpret_clip.assert_awaited_once_with(FRAMES, get_prompt(INTERPRET_CLIP))

    @pytest.mark.asyncio
    async def test_creates_subject_from_file_name(self, clip_file, subjects, inference):
        analyzer = ClipAnalyzer(inference, subjects, frame_count=3)

        with patch("petwatch.clip.sample_frames", return_value=FRAMES):
            result = await analyzer.analyze(clip_file, prompt="Is the dog happy?")

        assert result.created_subject
        assert result.subject.name == "Pet from rex_playing_in_the_p..."
        assert len(subjects.list()) == 1
        assert inference.interpret_clip.call_args[0][1] == "Is the dog happy?"

    @pytest.mark.asyncio
    async def test_unknown_subject(self, clip_file, subjects, inference):
        analyzer = ClipAnalyzer(inference, subjects, frame_count=3)

        with pytest.raises(SubjectNotFound):
            await analyzer.analyze(clip_file, "missing")
        inference.interpret_clip.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backend_failure_saves_nothing(self, clip_file, subjects, inference):
        inference.interpret_clip.side_effect = BackendError("empty", kind=BackendError.EMPTY)
        analyzer = ClipAnalyzer(inference, subjects, frame_count=3)

        with patch("petwatch.clip.sample_frames", return_value=FRAMES):
            with pytest.raises(BackendError):
                await analyzer.analyze(clip_file)

        assert subjects.list() == []

    @pytest.mark.asyncio
    async def test_decoding_runs_off_the_event_loop(self, clip_file, subjects, inference):
        loop_thread = threading.get_ident()
        sampled_in = []

        def sample(path, count, quality):
            sampled_in.append(threading.get_ident())
            return FRAMES

        analyzer = ClipAnalyzer(inference, subjects, frame_count=3)
        with patch("petwatch.clip.sample_frames", side_effect=sample):
            await analyzer.analyze(clip_file)

        assert sampled_in and sampled_in[0] != loop_thread
