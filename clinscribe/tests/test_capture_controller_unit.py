import asyncio

import numpy as np
import pytest

from clinscribe.capture.base import (
    AlreadyStartingError,
    CaptureStateError,
    MicrophoneBusyError,
    MicrophonePermissionError,
)
from clinscribe.capture.controller import (
    AudioCaptureController,
    CaptureOptions,
    CaptureState,
    MicrophoneArbiter,
)
from clinscribe.capture.mock import MockMicrophone, ScriptedRecognizer
from clinscribe.internal_core.session_store import InMemorySessionStore


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _controller(**kwargs):
    mic = kwargs.pop("mic", None) or MockMicrophone()
    recognizer = kwargs.pop("recognizer", None) or ScriptedRecognizer()
    return AudioCaptureController(mic, recognizer, **kwargs), mic, recognizer


def test_start_and_stop_hold_and_release_microphone() -> None:
    async def scenario() -> None:
        arbiter = MicrophoneArbiter()
        controller, mic, recognizer = _controller(arbiter=arbiter)
        await controller.start(CaptureOptions(device_id="usb-1"))
        assert controller.state is CaptureState.RECORDING
        assert mic.held is True
        assert mic.device_ids == ["usb-1"]
        assert recognizer.running is True
        assert arbiter.holder is controller

        await controller.stop()
        assert controller.state is CaptureState.IDLE
        assert mic.held is False
        assert recognizer.running is False
        assert arbiter.holder is None

    asyncio.run(scenario())


def test_start_while_recording_is_rejected() -> None:
    async def scenario() -> None:
        controller, _, _ = _controller()
        await controller.start()
        with pytest.raises(AlreadyStartingError):
            await controller.start()
        assert controller.state is CaptureState.RECORDING
        await controller.stop()

    asyncio.run(scenario())


def test_pause_and_resume_reject_invalid_states() -> None:
    async def scenario() -> None:
        controller, _, recognizer = _controller()
        with pytest.raises(CaptureStateError, match="Cannot pause while capture is idle"):
            controller.pause()

        await controller.start()
        with pytest.raises(CaptureStateError):
            controller.resume()

        controller.pause()
        assert controller.state is CaptureState.PAUSED
        assert recognizer.paused is True
        with pytest.raises(CaptureStateError):
            controller.pause()

        controller.resume()
        assert controller.state is CaptureState.RECORDING
        await controller.stop()

    asyncio.run(scenario())


def test_permission_denied_surfaces_and_enters_error_state() -> None:
    async def scenario() -> None:
        store = InMemorySessionStore()
        session = store.create_session()
        arbiter = MicrophoneArbiter()
        controller, _, recognizer = _controller(
            mic=MockMicrophone(deny=True),
            arbiter=arbiter,
            audit_sink=store,
            session_id=session.id,
        )
        with pytest.raises(PermissionError) as excinfo:
            await controller.start()
        assert isinstance(excinfo.value, MicrophonePermissionError)
        assert controller.state is CaptureState.ERROR
        assert recognizer.start_count == 0
        assert arbiter.holder is None
        assert [event.code for event in store.audit_events(session.id)] == ["CAPTURE_FAILED"]

        await controller.stop()
        assert controller.state is CaptureState.IDLE

    asyncio.run(scenario())


def test_device_failure_is_reported_as_permission_error() -> None:
    class _BrokenMic(MockMicrophone):
        async def acquire(self, device_id=None) -> None:
            raise OSError("device unplugged")

    async def scenario() -> None:
        controller, _, _ = _controller(mic=_BrokenMic())
        with pytest.raises(MicrophonePermissionError, match="device unplugged"):
            await controller.start()
        assert controller.last_error == "device unplugged"

    asyncio.run(scenario())


def test_second_controller_fails_fast_while_microphone_is_held() -> None:
    async def scenario() -> None:
        arbiter = MicrophoneArbiter()
        first, _, _ = _controller(arbiter=arbiter)
        second, second_mic, _ = _controller(arbiter=arbiter)

        await first.start()
        with pytest.raises(MicrophoneBusyError):
            await second.start()
        assert second.state is CaptureState.IDLE
        assert second_mic.device_ids == []

        await first.stop()
        await second.start()
        assert arbiter.holder is second
        await second.stop()

    asyncio.run(scenario())


def test_listeners_receive_interim_and_final_events_only_while_recording() -> None:
    async def scenario() -> None:
        controller, _, recognizer = _controller()
        seen = []
        remove = controller.add_listener(lambda text, is_final: seen.append((text, is_final)))

        recognizer.emit("ignored before start", True)
        await controller.start()
        recognizer.emit("how are", False)
        assert controller.interim_text == "how are"
        recognizer.emit("  How are you feeling today?  ", True)
        recognizer.emit("   ", True)
        controller.pause()
        recognizer.emit("dropped while paused", True)
        controller.resume()
        recognizer.emit("Not great.", True)
        remove()
        recognizer.emit("after removal", True)
        await controller.stop()

        assert seen == [
            ("how are", False),
            ("How are you feeling today?", True),
            ("Not great.", True),
        ]
        assert controller.interim_text == ""

    asyncio.run(scenario())


def test_failing_listener_does_not_block_other_listeners() -> None:
    async def scenario() -> None:
        controller, _, recognizer = _controller()
        seen = []

        def broken(text: str, is_final: bool) -> None:
            raise RuntimeError("listener bug")

        controller.add_listener(broken)
        controller.add_listener(lambda text, is_final: seen.append(text))
        await controller.start()
        recognizer.emit("hello", True)
        await controller.stop()
        assert seen == ["hello"]

    asyncio.run(scenario())


def test_elapsed_time_excludes_paused_intervals() -> None:
    async def scenario() -> None:
        clock = _FakeClock()
        controller, _, _ = _controller(clock=clock)
        await controller.start()
        clock.now = 10.0
        controller.pause()
        clock.now = 50.0
        assert controller.elapsed_seconds == pytest.approx(10.0)
        controller.resume()
        clock.now = 60.0
        assert controller.elapsed_seconds == pytest.approx(20.0)
        assert controller.elapsed_ms == pytest.approx(20000.0)
        await controller.stop()

    asyncio.run(scenario())


def test_max_duration_stops_and_signals_exactly_once() -> None:
    async def scenario() -> None:
        clock = _FakeClock()
        signals = []

        async def fake_sleep(seconds: float) -> None:
            clock.now += seconds
            await asyncio.sleep(0)

        store = InMemorySessionStore()
        session = store.create_session()
        controller, mic, _ = _controller(
            clock=clock,
            sleep=fake_sleep,
            max_duration_sec=600.0,
            poll_interval_sec=60.0,
            on_max_duration=lambda: signals.append(clock.now),
            audit_sink=store,
            session_id=session.id,
        )
        await controller.start()
        for _ in range(200):
            if signals:
                break
            await asyncio.sleep(0)
        for _ in range(20):
            await asyncio.sleep(0)

        assert signals == [600.0]
        assert controller.max_duration_reached is True
        assert controller.state is CaptureState.IDLE
        assert mic.held is False
        types = [event.type for event in store.audit_events(session.id)]
        assert types == ["CAPTURE_STARTED", "CAPTURE_MAX_DURATION", "CAPTURE_STOPPED"]

    asyncio.run(scenario())


def test_audio_level_is_rms_of_frame_while_recording() -> None:
    async def scenario() -> None:
        controller, _, _ = _controller()
        frame = np.array([0.5, -0.5, 0.5, -0.5], dtype=np.float32)
        assert controller.process_audio_frame(frame) == 0.0
        await controller.start()
        assert controller.process_audio_frame(frame) == pytest.approx(0.5)
        assert controller.process_audio_frame(np.array([], dtype=np.float32)) == 0.0
        await controller.stop()
        assert controller.audio_level == 0.0

    asyncio.run(scenario())


class _GatedMicrophone(MockMicrophone):
    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.waiting = asyncio.Event()

    async def acquire(self, device_id=None) -> None:
        self.waiting.set()
        await self.gate.wait()
        await super().acquire(device_id)


def test_stop_during_slow_acquire_aborts_start_and_frees_microphone() -> None:
    async def scenario() -> None:
        arbiter = MicrophoneArbiter()
        slow_mic = _GatedMicrophone()
        first, _, first_recognizer = _controller(arbiter=arbiter, mic=slow_mic)
        second, _, _ = _controller(arbiter=arbiter)

        starting = asyncio.get_running_loop().create_task(first.start())
        await slow_mic.waiting.wait()
        assert first.state is CaptureState.STARTING

        await first.stop()
        assert first.state is CaptureState.IDLE
        assert arbiter.holder is None

        slow_mic.gate.set()
        with pytest.raises(CaptureStateError):
            await starting
        assert first.state is CaptureState.IDLE
        assert first_recognizer.running is False
        assert slow_mic.held is False

        await second.start()
        assert second.state is CaptureState.RECORDING
        assert arbiter.holder is second
        with pytest.raises(MicrophoneBusyError):
            await first.start()
        await second.stop()

    asyncio.run(scenario())
