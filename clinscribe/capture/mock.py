from __future__ import annotations

from typing import List, Optional

from .base import AudioInputDevice, MicrophonePermissionError, ResultCallback, SpeechRecognizer


class MockMicrophone(AudioInputDevice):
    def __init__(self, *, deny: bool = False) -> None:
        self.deny = deny
        self.held = False
        self.device_ids: List[Optional[str]] = []

    async def acquire(self, device_id: Optional[str] = None) -> None:
        self.device_ids.append(device_id)
        if self.deny:
            raise MicrophonePermissionError("microphone permission denied", device_id)
        self.held = True

    async def release(self) -> None:
        self.held = False


class ScriptedRecognizer(SpeechRecognizer):
    """Recognizer whose results are pushed by the caller through `emit`."""

    def __init__(self) -> None:
        self._on_result: Optional[ResultCallback] = None
        self.running = False
        self.paused = False
        self.start_count = 0

    def start(self, on_result: ResultCallback) -> None:
        self._on_result = on_result
        self.running = True
        self.paused = False
        self.start_count += 1

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def stop(self) -> None:
        self.running = False
        self.paused = False

    def emit(self, text: str, is_final: bool = True) -> None:
        if self._on_result is not None:
            self._on_result(text, is_final)
