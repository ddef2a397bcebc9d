from __future__ import annotations

"""
Assign a speaker to every final transcript fragment of a capture session.

Design intent:
- Keep the alternation state in an explicit object that is reset on each capture start.
- Select the heuristic by capture mode: turn-taking for live, timing gaps for playback.
- Reject out-of-order fragments instead of silently mislabelling them.
"""

from dataclasses import dataclass
from typing import Literal, Optional

from clinscribe.internal_core.contracts import Speaker

DiarizationMode = Literal["direct", "playback"]

DEFAULT_PLAYBACK_GAP_MS = 3000.0


class DiarizationOrderError(ValueError):
    """Raised when a fragment arrives with a timestamp older than the previous one."""


@dataclass
class DiarizationState:
    speaker: Speaker = "provider"
    last_timestamp_ms: Optional[float] = None
    mode: DiarizationMode = "direct"


@dataclass(frozen=True)
class LabeledFragment:
    speaker: Speaker
    text: str


def _other(speaker: Speaker) -> Speaker:
    return "patient" if speaker == "provider" else "provider"


class SpeakerDiarizer:
    def __init__(
        self,
        mode: DiarizationMode = "direct",
        *,
        playback_gap_ms: float = DEFAULT_PLAYBACK_GAP_MS,
    ) -> None:
        self._playback_gap_ms = float(playback_gap_ms)
        self.state = DiarizationState(mode=mode)

    @property
    def mode(self) -> DiarizationMode:
        return self.state.mode

    def reset(self, mode: Optional[DiarizationMode] = None) -> None:
        self.state = DiarizationState(mode=mode or self.state.mode)

    def label_fragment(self, text: str, timestamp_ms: float) -> LabeledFragment:
        state = self.state
        previous = state.last_timestamp_ms
        if previous is not None and timestamp_ms < previous:
            raise DiarizationOrderError(
                f"Fragment timestamp {timestamp_ms} precedes previous fragment at {previous}"
            )

        if state.mode == "direct":
            speaker = state.speaker
            state.speaker = _other(speaker)
        else:
            if previous is not None and (timestamp_ms - previous) > self._playback_gap_ms:
                state.speaker = _other(state.speaker)
            speaker = state.speaker

        state.last_timestamp_ms = float(timestamp_ms)
        return LabeledFragment(speaker=speaker, text=text)
