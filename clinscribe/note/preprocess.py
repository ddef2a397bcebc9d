from __future__ import annotations

"""
Transcript preparation before anything is sent to the note generator.

Design intent:
- Mask contact and identifier PHI; names and dates stay for clinical context.
- Validate template and detail options so the generator never sees unknown values.
"""

import re
from dataclasses import dataclass
from typing import Optional

from clinscribe.internal_core.contracts import DetailLevel

TEMPLATE_IDS = ("soap", "hpi", "progress", "discharge")
DETAIL_LEVELS = ("low", "medium", "high")
MAX_TRANSCRIPT_CHARS = 100_000

_PHONE_RE = re.compile(r"(\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}")
_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_SSN_RE = re.compile(r"\b\d{3}[-.\s]?\d{2}[-.\s]?\d{4}\b")
_MRN_RE = re.compile(r"\b(MRN|MR#)[\s:#]*\d{6,10}\b", re.IGNORECASE)


class PreprocessError(ValueError):
    pass


@dataclass(frozen=True)
class PreparedTranscript:
    transcript: str
    context: str
    detail_level: DetailLevel
    template_id: str
    masked_items: int


def scrub_phi(text: str) -> tuple[str, int]:
    """Return the masked text and the number of replacements made."""
    total = 0
    for pattern, token in (
        (_PHONE_RE, "[PHONE]"),
        (_EMAIL_RE, "[EMAIL]"),
        (_SSN_RE, "[SSN]"),
        (_MRN_RE, "[MRN]"),
    ):
        text, count = pattern.subn(token, text)
        total += count
    return text, total


def normalize_template_id(template_id: Optional[str], default: str = "soap") -> str:
    value = (template_id or default).strip().lower()
    if value not in TEMPLATE_IDS:
        raise PreprocessError(f"Unknown template_id: {template_id!r}")
    return value


def normalize_detail_level(detail_level: Optional[str], default: str = "high") -> DetailLevel:
    value = (detail_level or default).strip().lower()
    if value not in DETAIL_LEVELS:
        raise PreprocessError(f"Unknown detail_level: {detail_level!r}")
    return value  # type: ignore[return-value]


def prepare_transcript(
    transcript: str,
    *,
    context: str = "",
    detail_level: Optional[str] = None,
    template_id: Optional[str] = None,
    scrub: bool = True,
    default_detail_level: str = "high",
    default_template_id: str = "soap",
) -> PreparedTranscript:
    text = (transcript or "").strip()
    if not text:
        raise PreprocessError("Transcript is empty")
    if len(text) > MAX_TRANSCRIPT_CHARS:
        raise PreprocessError(f"Transcript exceeds {MAX_TRANSCRIPT_CHARS} characters")

    level = normalize_detail_level(detail_level, default_detail_level)
    template = normalize_template_id(template_id, default_template_id)

    context = (context or "").strip()
    masked = 0
    if scrub:
        text, masked = scrub_phi(text)
        context, context_masked = scrub_phi(context)
        masked += context_masked

    return PreparedTranscript(
        transcript=text,
        context=context,
        detail_level=level,
        template_id=template,
        masked_items=masked,
    )
