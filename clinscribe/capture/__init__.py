"""
Audio capture module boundary.

Design intent:
- Own the microphone lifecycle behind an explicit state machine.
- Emit interim/final transcript events; only finals continue downstream.
"""

from .base import (
    AlreadyStartingError,
    AudioInputDevice,
    CaptureError,
    CaptureStateError,
    MicrophoneBusyError,
    MicrophonePermissionError,
    SpeechRecognizer,
)
from .controller import AudioCaptureController, CaptureOptions, CaptureState, MicrophoneArbiter

__all__ = [
    "AlreadyStartingError",
    "AudioCaptureController",
    "AudioInputDevice",
    "CaptureError",
    "CaptureOptions",
    "CaptureState",
    "CaptureStateError",
    "MicrophoneArbiter",
    "MicrophoneBusyError",
    "MicrophonePermissionError",
    "SpeechRecognizer",
]
