from __future__ import annotations

import datetime as _dt
from typing import Optional, Protocol

from .contracts import AuditEvent, AuditEventType


class AuditSink(Protocol):
    def append_audit_event(self, session_id: str, event: AuditEvent) -> None: ...


def _ts_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _sanitize_detail(detail: str) -> str:
    # IMPORTANT: Never include transcript or note text in detail.
    detail = (detail or "").replace("\n", " ").strip()
    if len(detail) > 200:
        detail = detail[:200] + "..."
    return detail


def log_event(
    sink: Optional[AuditSink],
    session_id: str,
    event_type: AuditEventType,
    code: str,
    detail: str,
    duration_ms: Optional[int] = None,
) -> None:
    if sink is None:
        return
    event = AuditEvent(
        ts_iso=_ts_iso(),
        session_id=session_id,
        type=event_type,
        code=code,
        detail=_sanitize_detail(detail),
        duration_ms=duration_ms,
    )
    sink.append_audit_event(session_id, event)
