from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional

ResultCallback = Callable[[str, bool], None]


class CaptureError(Exception):
    """Base class for capture lifecycle failures."""


class MicrophonePermissionError(CaptureError, PermissionError):
    def __init__(self, message: str, device_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.device_id = device_id


class CaptureStateError(CaptureError):
    def __init__(self, operation: str, state: str):
        super().__init__(f"Cannot {operation} while capture is {state}")
        self.operation = operation
        self.state = state


class AlreadyStartingError(CaptureStateError):
    pass


class MicrophoneBusyError(CaptureStateError):
    pass


class AudioInputDevice(ABC):
    @abstractmethod
    async def acquire(self, device_id: Optional[str] = None) -> None: ...

    @abstractmethod
    async def release(self) -> None: ...


class SpeechRecognizer(ABC):
    @abstractmethod
    def start(self, on_result: ResultCallback) -> None: ...

    @abstractmethod
    def pause(self) -> None: ...

    @abstractmethod
    def resume(self) -> None: ...

    @abstractmethod
    def stop(self) -> None: ...
