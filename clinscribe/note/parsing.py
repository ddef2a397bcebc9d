from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

_JSON_FENCE_RE = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)
_ANY_FENCE_RE = re.compile(r"```\s*([\s\S]*?)\s*```")


class NoteParseError(ValueError):
    """Raised by the strict parser when generator output is not a JSON object."""


@dataclass(frozen=True)
class ParsedNote:
    text: str
    structured: Optional[dict[str, Any]] = None

    @property
    def is_structured(self) -> bool:
        return self.structured is not None


def parse_note_strict(raw: str) -> ParsedNote:
    """
    Parse generator output into canonical note text plus a structured object.

    Fenced blocks win over direct parsing; the fence content becomes the canonical text.
    A ```json fence is preferred, an untagged fence is used only when none exists.
    Raises NoteParseError when no JSON object can be recovered.
    """
    if not raw or not raw.strip():
        raise NoteParseError("empty note output")

    match = _JSON_FENCE_RE.search(raw) or _ANY_FENCE_RE.search(raw)
    candidate = match.group(1) if match else raw.strip()
    try:
        data = json.loads(candidate)
    except ValueError as exc:
        raise NoteParseError(f"note output is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise NoteParseError(f"note output is JSON {type(data).__name__}, expected object")
    return ParsedNote(text=candidate, structured=data)


def parse_note_output(raw: str) -> ParsedNote:
    # Never raises: anything that is not a JSON object degrades to plain text.
    try:
        return parse_note_strict(raw)
    except NoteParseError:
        return ParsedNote(text=raw or "", structured=None)
