from __future__ import annotations

"""
Microphone/stream lifecycle and raw transcript events for one capture client.

Design intent:
- Keep the state machine explicit; invalid transitions raise instead of being ignored.
- Hold the microphone exclusively and fail fast when another controller owns it.
- Enforce the continuous recording cap from a watchdog task, signalling once.
"""

import asyncio
import enum
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import numpy as np

from clinscribe.internal_core import audit
from clinscribe.internal_core.audit import AuditSink
from clinscribe.internal_core.contracts import SleepFn
from clinscribe.transcript.diarization import DiarizationMode

from .base import (
    AlreadyStartingError,
    AudioInputDevice,
    CaptureError,
    CaptureStateError,
    MicrophoneBusyError,
    MicrophonePermissionError,
    SpeechRecognizer,
)

logger = logging.getLogger(__name__)

TranscriptListener = Callable[[str, bool], None]


class CaptureState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RECORDING = "recording"
    PAUSED = "paused"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass(frozen=True)
class CaptureOptions:
    device_id: Optional[str] = None
    mode: DiarizationMode = "direct"


class MicrophoneArbiter:
    """Grants the input device to a single controller per client."""

    def __init__(self) -> None:
        self._holder: Optional[object] = None

    @property
    def holder(self) -> Optional[object]:
        return self._holder

    def acquire(self, owner: object) -> None:
        if self._holder is not None and self._holder is not owner:
            raise MicrophoneBusyError("acquire microphone", "held by another controller")
        self._holder = owner

    def release(self, owner: object) -> None:
        if self._holder is owner:
            self._holder = None


def compute_rms(frame: np.ndarray) -> float:
    if frame.size == 0:
        return 0.0
    x = frame.astype(np.float32)
    return float(np.sqrt(np.mean(x * x)))


class AudioCaptureController:
    def __init__(
        self,
        device: AudioInputDevice,
        recognizer: SpeechRecognizer,
        *,
        arbiter: Optional[MicrophoneArbiter] = None,
        max_duration_sec: float = 600.0,
        poll_interval_sec: float = 1.0,
        on_max_duration: Optional[Callable[[], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
        audit_sink: Optional[AuditSink] = None,
        session_id: str = "",
    ) -> None:
        self._device = device
        self._recognizer = recognizer
        self._arbiter = arbiter or MicrophoneArbiter()
        self._max_duration_sec = float(max_duration_sec)
        self._poll_interval_sec = max(0.001, float(poll_interval_sec))
        self._on_max_duration = on_max_duration
        self._clock = clock
        self._sleep = sleep
        self._audit_sink = audit_sink
        self._session_id = session_id

        self._state = CaptureState.IDLE
        self._listeners: List[TranscriptListener] = []
        self._options = CaptureOptions()
        self._elapsed_before_segment = 0.0
        self._segment_started_at: Optional[float] = None
        self._watchdog: Optional[asyncio.Task] = None
        self._max_duration_signalled = False
        self._start_generation = 0

        self.interim_text = ""
        self.audio_level = 0.0
        self.last_error: Optional[str] = None

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def options(self) -> CaptureOptions:
        return self._options

    @property
    def max_duration_reached(self) -> bool:
        return self._max_duration_signalled

    @property
    def elapsed_seconds(self) -> float:
        elapsed = self._elapsed_before_segment
        if self._state is CaptureState.RECORDING and self._segment_started_at is not None:
            elapsed += max(0.0, self._clock() - self._segment_started_at)
        return elapsed

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed_seconds * 1000.0

    def add_listener(self, listener: TranscriptListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def start(self, options: Optional[CaptureOptions] = None) -> None:
        if self._state in (CaptureState.STARTING, CaptureState.RECORDING, CaptureState.PAUSED):
            raise AlreadyStartingError("start", self._state.value)
        if self._state is CaptureState.STOPPING:
            raise CaptureStateError("start", self._state.value)

        self._options = options or CaptureOptions()
        self._start_generation += 1
        generation = self._start_generation
        self._set_state(CaptureState.STARTING)
        try:
            self._arbiter.acquire(self)
        except MicrophoneBusyError:
            self._set_state(CaptureState.IDLE)
            raise

        try:
            await self._device.acquire(self._options.device_id)
        except Exception as exc:
            if self._start_aborted(generation):
                raise CaptureStateError("start", "stopped") from exc
            self._fail(str(exc))
            if isinstance(exc, MicrophonePermissionError):
                raise
            raise MicrophonePermissionError(
                f"Failed to access microphone: {exc}", self._options.device_id
            ) from exc

        if self._start_aborted(generation):
            # stop() ran while the device was being acquired; the arbiter is already released.
            await self._close_device()
            raise CaptureStateError("start", "stopped")

        try:
            self._recognizer.start(self._handle_result)
        except Exception as exc:
            await self._release_device()
            self._fail(str(exc))
            raise CaptureError(f"Speech recognition failed to start: {exc}") from exc

        self._elapsed_before_segment = 0.0
        self._segment_started_at = self._clock()
        self._max_duration_signalled = False
        self.interim_text = ""
        self.last_error = None
        self._set_state(CaptureState.RECORDING)
        self._watchdog = asyncio.get_running_loop().create_task(self._watch_duration())
        audit.log_event(
            self._audit_sink,
            self._session_id,
            "CAPTURE_STARTED",
            "CAPTURE_START",
            f"mode={self._options.mode} device={self._options.device_id or 'default'}",
        )

    def pause(self) -> None:
        if self._state is not CaptureState.RECORDING:
            raise CaptureStateError("pause", self._state.value)
        self._recognizer.pause()
        self._elapsed_before_segment = self.elapsed_seconds
        self._segment_started_at = None
        self.interim_text = ""
        self._set_state(CaptureState.PAUSED)

    def resume(self) -> None:
        if self._state is not CaptureState.PAUSED:
            raise CaptureStateError("resume", self._state.value)
        self._recognizer.resume()
        self._segment_started_at = self._clock()
        self._set_state(CaptureState.RECORDING)

    async def stop(self) -> None:
        if self._state in (CaptureState.IDLE, CaptureState.STOPPING):
            return
        if self._state is CaptureState.ERROR:
            self._set_state(CaptureState.IDLE)
            return
        if self._state is CaptureState.STARTING:
            self._start_generation += 1
            self._arbiter.release(self)
            self._set_state(CaptureState.IDLE)
            return

        elapsed = self.elapsed_seconds
        self._set_state(CaptureState.STOPPING)
        watchdog = self._watchdog
        self._watchdog = None
        if watchdog is not None and watchdog is not asyncio.current_task():
            watchdog.cancel()

        try:
            self._recognizer.stop()
        except Exception:
            logger.exception("recognizer stop failed session_id=%s", self._session_id)
        await self._release_device()

        self._elapsed_before_segment = elapsed
        self._segment_started_at = None
        self.interim_text = ""
        self.audio_level = 0.0
        self._set_state(CaptureState.IDLE)
        audit.log_event(
            self._audit_sink,
            self._session_id,
            "CAPTURE_STOPPED",
            "CAPTURE_STOP",
            f"elapsed_sec={elapsed:.1f}",
        )

    def process_audio_frame(self, frame: np.ndarray) -> float:
        if self._state is not CaptureState.RECORDING:
            return 0.0
        self.audio_level = compute_rms(np.asarray(frame))
        return self.audio_level

    def _handle_result(self, text: str, is_final: bool) -> None:
        if self._state is not CaptureState.RECORDING:
            logger.debug("dropping transcript event while %s", self._state.value)
            return
        if not is_final:
            self.interim_text = text
            self._notify(text, False)
            return
        text = (text or "").strip()
        if not text:
            return
        self.interim_text = ""
        self._notify(text, True)

    def _notify(self, text: str, is_final: bool) -> None:
        for listener in list(self._listeners):
            try:
                listener(text, is_final)
            except Exception:
                logger.exception(
                    "transcript listener failed session_id=%s is_final=%s",
                    self._session_id,
                    is_final,
                )

    async def _watch_duration(self) -> None:
        while self._state in (CaptureState.RECORDING, CaptureState.PAUSED):
            if self._state is CaptureState.RECORDING:
                remaining = self._max_duration_sec - self.elapsed_seconds
                if remaining <= 0:
                    await self._handle_max_duration()
                    return
                await self._sleep(min(self._poll_interval_sec, remaining))
            else:
                await self._sleep(self._poll_interval_sec)

    async def _handle_max_duration(self) -> None:
        if self._max_duration_signalled:
            return
        self._max_duration_signalled = True
        logger.info(
            "maximum capture duration reached session_id=%s max_sec=%s",
            self._session_id,
            self._max_duration_sec,
        )
        audit.log_event(
            self._audit_sink,
            self._session_id,
            "CAPTURE_MAX_DURATION",
            "CAPTURE_CAP",
            f"max_sec={self._max_duration_sec:.0f}",
        )
        await self.stop()
        if self._on_max_duration is None:
            return
        try:
            result = self._on_max_duration()
            if inspect.isawaitable(result):
                await result
        except Exception:
            # Runs inside the watchdog task, so nobody else would observe the failure.
            logger.exception("max duration handler failed session_id=%s", self._session_id)

    def _start_aborted(self, generation: int) -> bool:
        return (
            generation != self._start_generation
            or self._state is not CaptureState.STARTING
            or self._arbiter.holder is not self
        )

    async def _close_device(self) -> None:
        try:
            await self._device.release()
        except Exception:
            logger.exception("device release failed session_id=%s", self._session_id)

    async def _release_device(self) -> None:
        try:
            await self._close_device()
        finally:
            self._arbiter.release(self)

    def _fail(self, message: str) -> None:
        self._arbiter.release(self)
        self.last_error = message
        self._set_state(CaptureState.ERROR)
        audit.log_event(self._audit_sink, self._session_id, "ERROR", "CAPTURE_FAILED", message)

    def _set_state(self, state: CaptureState) -> None:
        if state is not self._state:
            logger.debug("capture state %s -> %s", self._state.value, state.value)
        self._state = state
