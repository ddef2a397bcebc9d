from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _getenv_opt_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _preset_overrides(name: str) -> dict[str, object]:
    # Telehealth calls arrive through a speaker, so turn gaps are longer than in-room.
    if name == "telehealth_playback_v1":
        return {
            "SCRIBE_PLAYBACK_GAP_MS": 3500,
            "SCRIBE_CHUNK_RETRY_ATTEMPTS": 6,
        }
    return {}


def _getenv_int_preset(name: str, default: int, preset: dict[str, object]) -> int:
    if os.getenv(name):
        return _getenv_int(name, default)
    if name in preset:
        return int(preset[name])  # type: ignore[arg-type]
    return default


@dataclass(frozen=True)
class ScribeConfig:
    SCRIBE_PRESET: str
    SCRIBE_MAX_CAPTURE_SECONDS: float
    SCRIBE_CAPTURE_POLL_SECONDS: float
    SCRIBE_PLAYBACK_GAP_MS: int
    SCRIBE_CHUNK_RETRY_ATTEMPTS: int
    SCRIBE_CHUNK_RETRY_BASE_SECONDS: float
    SCRIBE_CHUNK_RETRY_MULTIPLIER: float
    SCRIBE_CHUNK_RETRY_MAX_SECONDS: float
    SCRIBE_CHUNK_RETRY_JITTER: float
    SCRIBE_SYNC_DEBOUNCE_SECONDS: float
    SCRIBE_DEFAULT_DETAIL_LEVEL: str
    SCRIBE_DEFAULT_TEMPLATE: str
    SCRIBE_CODE_REGION: str
    SCRIBE_PHI_SCRUB: bool
    SCRIBE_FUNCTIONS_BASE_URL: Optional[str]
    SCRIBE_FUNCTIONS_API_KEY: str
    SCRIBE_FUNCTIONS_TIMEOUT_SECONDS: float
    SCRIBE_LOG_LEVEL: str


def load_config() -> ScribeConfig:
    preset_name = _getenv_str("SCRIBE_PRESET", "")
    preset = _preset_overrides(preset_name)

    return ScribeConfig(
        SCRIBE_PRESET=preset_name,
        SCRIBE_MAX_CAPTURE_SECONDS=_getenv_float("SCRIBE_MAX_CAPTURE_SECONDS", 600.0),
        SCRIBE_CAPTURE_POLL_SECONDS=_getenv_float("SCRIBE_CAPTURE_POLL_SECONDS", 1.0),
        SCRIBE_PLAYBACK_GAP_MS=_getenv_int_preset("SCRIBE_PLAYBACK_GAP_MS", 3000, preset),
        SCRIBE_CHUNK_RETRY_ATTEMPTS=_getenv_int_preset("SCRIBE_CHUNK_RETRY_ATTEMPTS", 4, preset),
        SCRIBE_CHUNK_RETRY_BASE_SECONDS=_getenv_float("SCRIBE_CHUNK_RETRY_BASE_SECONDS", 1.0),
        SCRIBE_CHUNK_RETRY_MULTIPLIER=_getenv_float("SCRIBE_CHUNK_RETRY_MULTIPLIER", 2.0),
        SCRIBE_CHUNK_RETRY_MAX_SECONDS=_getenv_float("SCRIBE_CHUNK_RETRY_MAX_SECONDS", 30.0),
        SCRIBE_CHUNK_RETRY_JITTER=_getenv_float("SCRIBE_CHUNK_RETRY_JITTER", 0.0),
        SCRIBE_SYNC_DEBOUNCE_SECONDS=_getenv_float("SCRIBE_SYNC_DEBOUNCE_SECONDS", 1.0),
        SCRIBE_DEFAULT_DETAIL_LEVEL=_getenv_str("SCRIBE_DEFAULT_DETAIL_LEVEL", "high"),
        SCRIBE_DEFAULT_TEMPLATE=_getenv_str("SCRIBE_DEFAULT_TEMPLATE", "soap"),
        SCRIBE_CODE_REGION=_getenv_str("SCRIBE_CODE_REGION", "US"),
        SCRIBE_PHI_SCRUB=_getenv_bool("SCRIBE_PHI_SCRUB", True),
        SCRIBE_FUNCTIONS_BASE_URL=_getenv_opt_str("SCRIBE_FUNCTIONS_BASE_URL"),
        SCRIBE_FUNCTIONS_API_KEY=_getenv_str("SCRIBE_FUNCTIONS_API_KEY", ""),
        SCRIBE_FUNCTIONS_TIMEOUT_SECONDS=_getenv_float("SCRIBE_FUNCTIONS_TIMEOUT_SECONDS", 60.0),
        SCRIBE_LOG_LEVEL=_getenv_str("SCRIBE_LOG_LEVEL", "INFO"),
    )
