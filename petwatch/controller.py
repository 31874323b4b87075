"""
Live Session Controller - camera, identification and interpretation cycle

Phases:
    IDLE ──start_camera──> STREAMING ──request_identification──> IDENTIFYING
                              │                                     │
                              │ select_subject          identified  │
                              v                                     v
                           TRACKING <────────confirm──────── AWAITING_CONFIRMATION
                              │  ^                                  │
                              └──┘ switch_subject        discard ───┘──> STREAMING

    stop_camera returns to IDLE from any phase with the camera on.

While TRACKING (and, if enabled, while AWAITING_CONFIRMATION) a timer task
fires every cycle interval. Each firing spawns one tick unless the previous
request is still running:

    snapshot -> interpret -> log -> persist -> announce

Every reset (stop, start, bind, confirm, discard) bumps a generation
counter; a request that resolves under an older generation is dropped.

Usage:
    controller = LiveSessionController()
    async with controller:
        await controller.start_camera()
        await controller.request_identification()
        await controller.confirm("Rex")
"""

import asyncio
import base64
import functools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .config import config
from .diagnostics import metrics
from .exceptions import (
    BackendError,
    CaptureError,
    DeviceError,
    InvalidTransition,
    StorageError,
    SubjectNotFound,
    ValidationError,
)
from .frame_sampler import CameraHandle, CaptureConstraints, FrameSampler
from .inference import InferenceClient
from .models import (
    ObservationOrigin,
    PendingIdentification,
    SessionPhase,
    SessionState,
    Subject,
)
from .prompts import INTERPRET_BOUND, INTERPRET_PROVISIONAL, get_prompt
from .speech import SpeechAnnouncer
from .store import SubjectStore

logger = logging.getLogger(__name__)

ERROR_PREFIX = "Error from AI: "

Listener = Callable[[Dict[str, Any]], None]

# Phases each operation may start from
_ALLOWED = {
    "start_camera": {SessionPhase.IDLE},
    "select_subject": {
        SessionPhase.IDLE,
        SessionPhase.STREAMING,
        SessionPhase.AWAITING_CONFIRMATION,
        SessionPhase.TRACKING,
    },
    "switch_subject": {SessionPhase.TRACKING},
    "deselect_subject": {SessionPhase.IDLE, SessionPhase.STREAMING, SessionPhase.TRACKING},
    "request_identification": {SessionPhase.STREAMING},
    "edit_name": {SessionPhase.AWAITING_CONFIRMATION},
    "confirm": {SessionPhase.AWAITING_CONFIRMATION},
    "discard": {SessionPhase.AWAITING_CONFIRMATION},
}


@dataclass
class ControllerSettings:
    """Tunables for a live session."""
    cycle_interval_ms: int = 5000
    log_capacity: int = 100
    narrate_provisional: bool = True
    save_thumbnail: bool = True
    locale: str = "en-US"
    speech_rate: float = 1.0

    @classmethod
    def from_env(cls) -> "ControllerSettings":
        """Load from environment/.env"""
        return cls(
            cycle_interval_ms=config.get_int("PW_CYCLE_INTERVAL_MS", 5000),
            log_capacity=config.get_int("PW_LOG_CAPACITY", 100),
            narrate_provisional=config.get_bool("PW_NARRATE_PROVISIONAL", True),
            save_thumbnail=config.get_bool("PW_SAVE_THUMBNAIL", True),
            locale=config.get("PW_TTS_LOCALE", "en-US"),
            speech_rate=config.get_float("PW_TTS_RATE", 1.0),
        )


class LiveSessionController:
    """Owns the camera, the cycle timer and the identify/confirm flow."""

    def __init__(
        self,
        sampler: Optional[FrameSampler] = None,
        inference: Optional[InferenceClient] = None,
        store: Optional[SubjectStore] = None,
        announcer: Optional[SpeechAnnouncer] = None,
        settings: Optional[ControllerSettings] = None,
        constraints: Optional[CaptureConstraints] = None,
    ):
        self.settings = settings or ControllerSettings.from_env()
        self.sampler = sampler or FrameSampler()
        self.inference = inference or InferenceClient()
        self.store = store or SubjectStore.from_env()
        self.announcer = announcer or SpeechAnnouncer()
        self.constraints = constraints

        self.state = SessionState(capacity=self.settings.log_capacity)

        self._handle: Optional[CameraHandle] = None
        self._timer: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._releasing: Optional[asyncio.Future] = None
        self._generation = 0
        self._lock: Optional[asyncio.Lock] = None
        self._listeners: List[Listener] = []

    async def __aenter__(self) -> "LiveSessionController":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        return self.state.phase

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def cycle_active(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def snapshot(self) -> Dict[str, Any]:
        data = self.state.to_dict()
        data["cycle_active"] = self.cycle_active
        return data

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self):
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("State listener failed")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ops_lock(self) -> asyncio.Lock:
        # Created lazily so it binds to the running loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _require(self, operation: str):
        phase = self.state.phase
        if phase not in _ALLOWED[operation]:
            logger.debug(f"Rejected {operation} in {phase.value}")
            raise InvalidTransition(
                f"Cannot {operation.replace('_', ' ')} while {phase.value.replace('_', ' ')}"
            )

    def _fail(self, error: Exception) -> Exception:
        self.state.last_error = str(error)
        logger.warning(f"{type(error).__name__}: {error}")
        self._notify()
        return error

    async def _offload(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    def _has_capture_target(self) -> bool:
        st = self.state
        if not st.camera_on:
            return False
        if st.phase == SessionPhase.TRACKING:
            return st.tracked_subject_id is not None
        if st.phase == SessionPhase.AWAITING_CONFIRMATION:
            return st.pending is not None and self.settings.narrate_provisional
        return False

    # ------------------------------------------------------------------
    # Camera
    # ------------------------------------------------------------------

    async def start_camera(self, constraints: Optional[CaptureConstraints] = None):
        """IDLE -> STREAMING, or straight to TRACKING when a subject is preselected.

        Raises:
            CameraUnavailable: the phase stays IDLE.
        """
        async with self._ops_lock():
            self._require("start_camera")
            if self._releasing is not None and not self._releasing.done():
                await self._releasing

            st = self.state
            st.last_error = None
            st.clear_log()
            self._generation += 1
            generation = self._generation

            try:
                handle = await self._offload(
                    self.sampler.start_capture, constraints or self.constraints
                )
            except DeviceError as e:
                self._fail(e)
                raise

            if generation != self._generation:
                # Torn down while the device was opening
                await self._offload(self.sampler.stop_capture, handle)
                return

            self._handle = handle
            st.camera_on = True
            if st.tracked_subject_id is not None:
                st.phase = SessionPhase.TRACKING
                self._enter_cycle()
            else:
                st.phase = SessionPhase.STREAMING
            logger.info(f"Camera on ({st.phase.value})")
            self._notify()

    async def stop_camera(self):
        """Any camera-on phase -> IDLE. No tick fires after this returns."""
        st = self.state
        if not st.camera_on:
            # A start still opening the device will release its handle
            self._generation += 1
            return

        # Synchronous part first: nothing may run between these lines
        self._generation += 1
        self._cancel_cycle()

        handle, self._handle = self._handle, None
        st.camera_on = False
        st.phase = SessionPhase.IDLE
        st.pending = None
        logger.info("Camera off")
        self._notify()

        self._releasing = asyncio.ensure_future(self._release(handle))
        await self._releasing

    async def _release(self, handle: Optional[CameraHandle]):
        await self._offload(self.announcer.cancel)
        await self._offload(self.sampler.stop_capture, handle)

    # ------------------------------------------------------------------
    # Subject binding
    # ------------------------------------------------------------------

    async def select_subject(self, subject_id: str):
        """Bind an existing subject. Starts the cycle when the camera is on.

        Raises:
            SubjectNotFound: no such subject in the store.
        """
        await self._bind_existing(subject_id, "select_subject")

    async def switch_subject(self, subject_id: str):
        """TRACKING -> TRACKING with a new subject and a fresh timer."""
        await self._bind_existing(subject_id, "switch_subject")

    async def _bind_existing(self, subject_id: str, operation: str):
        async with self._ops_lock():
            self._require(operation)
            subject = await self._offload(self.store.get, subject_id)
            if subject is None:
                raise self._fail(SubjectNotFound(f"Unknown subject: {subject_id}"))
            self._require(operation)
            self._bind(subject.id)
            logger.info(f"Tracking {subject.label}")

    async def deselect_subject(self):
        """Forget the tracked subject; TRACKING drops back to STREAMING."""
        async with self._ops_lock():
            self._require("deselect_subject")
            st = self.state
            self._generation += 1
            self._cancel_cycle()
            st.tracked_subject_id = None
            st.clear_log()
            if st.camera_on:
                st.phase = SessionPhase.STREAMING
            self._notify()

    def _bind(self, subject_id: str):
        st = self.state
        self._generation += 1
        self._cancel_cycle()
        st.tracked_subject_id = subject_id
        st.pending = None
        st.clear_log()
        st.last_error = None
        if st.camera_on:
            st.phase = SessionPhase.TRACKING
            self._enter_cycle()
        self._notify()

    # ------------------------------------------------------------------
    # Identification
    # ------------------------------------------------------------------

    async def request_identification(self) -> Optional[PendingIdentification]:
        """STREAMING -> IDENTIFYING -> AWAITING_CONFIRMATION.

        Returns the pending identification, or None when the session was
        reset while the request was running.

        Raises:
            NoFrameAvailable: nothing to capture yet; stays STREAMING.
            BackendError: identify call failed; back to STREAMING.
            Any other error from the backend also returns to STREAMING
            before propagating.
        """
        async with self._ops_lock():
            self._require("request_identification")
            st = self.state
            if st.request_in_flight:
                raise self._fail(ValidationError("A request is already in progress"))

            st.last_error = None
            generation = self._generation

            try:
                image = await self._offload(self.sampler.capture_snapshot, self._handle)
            except CaptureError as e:
                self._fail(e)
                raise
            if generation != self._generation:
                return None

            st.phase = SessionPhase.IDENTIFYING
            st.request_in_flight = True
            self._notify()

            try:
                with metrics.track("identify"):
                    identification = await self.inference.identify(image)
            except BackendError as e:
                if generation != self._generation:
                    logger.debug(f"Dropping failed identification from a reset session: {e}")
                    return None
                st.phase = SessionPhase.STREAMING
                self._fail(e)
                raise
            except Exception as e:
                # Never leave the session stranded in IDENTIFYING
                if generation == self._generation and st.phase == SessionPhase.IDENTIFYING:
                    st.phase = SessionPhase.STREAMING
                    self._fail(e)
                raise
            finally:
                st.request_in_flight = False

            if generation != self._generation:
                logger.debug("Discarding stale identification")
                return None

            snapshot = image.data if self.settings.save_thumbnail else None
            pending = PendingIdentification.from_identification(identification, snapshot)
            st.pending = pending
            st.phase = SessionPhase.AWAITING_CONFIRMATION
            logger.info(
                f"Identified {identification.category} ({identification.sub_category})"
            )
            self._enter_cycle()
            self._notify()
            return pending

    def edit_name(self, name: str):
        """Update the proposed name shown for the pending identification."""
        self._require("edit_name")
        self.state.pending.proposed_name = name
        self._notify()

    async def confirm(self, name: Optional[str] = None) -> Optional[Subject]:
        """AWAITING_CONFIRMATION -> TRACKING.

        Creates the subject, records the identification and starts the
        cycle. ``name`` defaults to the proposed name.

        Raises:
            ValidationError: blank name; nothing is written.
            StorageError: the subject could not be created.
        """
        async with self._ops_lock():
            self._require("confirm")
            st = self.state
            pending = st.pending

            name = (name if name is not None else pending.proposed_name).strip()
            if not name:
                raise self._fail(ValidationError("Please provide a name for your pet."))

            generation = self._generation
            thumbnail = None
            if pending.snapshot and self.settings.save_thumbnail:
                thumbnail = base64.b64encode(pending.snapshot).decode()

            try:
                subject = await self._offload(
                    self.store.create, name, pending.category, pending.sub_category, thumbnail
                )
            except StorageError as e:
                self._fail(e)
                raise

            storage_warning = None
            try:
                await self._offload(
                    self.store.append,
                    subject.id,
                    pending.identification.summary(),
                    ObservationOrigin.IDENTIFICATION,
                )
            except StorageError as e:
                logger.warning(f"Identification for {subject.name} not saved: {e}")
                storage_warning = str(e)

            if generation != self._generation:
                logger.debug(f"Session reset during confirm; {subject.name} saved but not bound")
                return subject

            self._bind(subject.id)
            if storage_warning:
                st.last_error = storage_warning
                self._notify()
            return subject

    async def discard(self):
        """AWAITING_CONFIRMATION -> STREAMING without saving anything."""
        async with self._ops_lock():
            self._require("discard")
            st = self.state
            self._generation += 1
            self._cancel_cycle()
            st.pending = None
            st.phase = SessionPhase.STREAMING
            self._notify()

    # ------------------------------------------------------------------
    # Speech
    # ------------------------------------------------------------------

    def set_muted(self, muted: bool):
        """Gate future announcements. Does not stop one already playing."""
        self.state.muted = muted
        if muted:
            self.announcer.mute()
        else:
            self.announcer.unmute()
        self._notify()

    def toggle_mute(self) -> bool:
        self.set_muted(not self.state.muted)
        return self.state.muted

    # ------------------------------------------------------------------
    # Interpretation cycle
    # ------------------------------------------------------------------

    def _enter_cycle(self):
        self._cancel_cycle()
        if not self._has_capture_target():
            return
        self._timer = asyncio.ensure_future(self._run_cycle(self._generation))

    def _cancel_cycle(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _run_cycle(self, generation: int):
        period = self.settings.cycle_interval_ms / 1000.0
        while True:
            await asyncio.sleep(period)
            if generation != self._generation or not self._has_capture_target():
                return

            metrics.count("cycle.fired")
            if self.state.request_in_flight:
                metrics.count("cycle.skipped")
                logger.debug("Previous request still running, skipping tick")
                continue

            self.state.request_in_flight = True
            self._tick_task = asyncio.ensure_future(self._tick(generation))

    async def _tick(self, generation: int):
        st = self.state
        try:
            try:
                image = await self._offload(self.sampler.capture_snapshot, self._handle)
            except CaptureError as e:
                logger.debug(f"Skipping tick: {e}")
                return
            if generation != self._generation:
                return

            subject_id = st.tracked_subject_id if st.phase == SessionPhase.TRACKING else None
            prompt = get_prompt(INTERPRET_BOUND if subject_id else INTERPRET_PROVISIONAL)

            try:
                with metrics.track("interpret"):
                    text = await self.inference.interpret(image, prompt)
            except BackendError as e:
                if generation != self._generation:
                    return
                message = str(e) or type(e).__name__
                logger.warning(f"Live interpretation failed ({e.kind}): {message}")
                st.latest_text = ERROR_PREFIX + message[:100]
                st.last_error = message
                self._notify()
                return

            if generation != self._generation:
                logger.debug("Discarding stale interpretation")
                return

            st.latest_text = text
            st.push_log(text)
            st.last_error = None
            self._notify()

            if subject_id is not None:
                await self._persist(subject_id, text)

            if not st.muted and generation == self._generation:
                await self._offload(
                    self.announcer.announce, text, self.settings.locale, self.settings.speech_rate
                )
                if generation != self._generation:
                    # Stopped while the engine was starting up
                    await self._offload(self.announcer.cancel)
        except Exception as e:
            logger.exception("Unexpected error in live cycle")
            st.last_error = str(e)
            self._notify()
        finally:
            st.request_in_flight = False

    async def _persist(self, subject_id: str, text: str):
        try:
            saved = await self._offload(
                self.store.append, subject_id, text, ObservationOrigin.LIVE_INTERPRETATION
            )
        except StorageError as e:
            logger.warning(f"Observation not saved: {e}")
            self.state.last_error = str(e)
            self._notify()
            return
        if saved is None:
            logger.warning(f"Subject {subject_id} no longer exists; observation not saved")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self):
        """Force IDLE from any phase and release every resource."""
        await self.stop_camera()
        if self._tick_task is not None and not self._tick_task.done():
            self._tick_task.cancel()
        self._tick_task = None
        await self._offload(self.announcer.cancel)
        await self.inference.close()
