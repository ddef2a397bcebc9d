from __future__ import annotations

import datetime as _dt
import logging
import uuid
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Tuple

from .contracts import (
    AuditEvent,
    RealtimeEvent,
    RealtimeHandler,
    Session,
    TranscriptChunk,
)

logger = logging.getLogger(__name__)

# Fields the note pipeline and the editor are allowed to write.
_MUTABLE_FIELDS = {
    "patient_name",
    "scheduled_at",
    "status",
    "template_id",
    "context",
    "generated_note",
    "note_json",
}


def _now_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


class InMemorySessionStore:
    """Session CRUD, chunk persistence and a realtime channel over process memory."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._sessions: Dict[str, Session] = {}
        self._chunks: Dict[Tuple[str, int], TranscriptChunk] = {}
        self._audit: Dict[str, List[AuditEvent]] = {}
        self._subscribers: Dict[str, List[RealtimeHandler]] = {}

    def create_session(
        self,
        patient_name: str = "",
        template_id: str = "soap",
        scheduled_at: Optional[str] = None,
        context: str = "",
    ) -> Session:
        now = _now_iso()
        session = Session(
            id=uuid.uuid4().hex,
            patient_name=patient_name,
            scheduled_at=scheduled_at,
            template_id=template_id,
            context=context,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._sessions[session.id] = session
            self._audit[session.id] = []
        return session

    def get_session(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise KeyError(f"Unknown session_id: {session_id}")
            return session.model_copy(deep=True)

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    async def get(self, session_id: str) -> Session:
        return self.get_session(session_id)

    async def update(self, session_id: str, fields: Dict[str, Any]) -> Session:
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields are not writable: {sorted(unknown)}")
        with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                raise KeyError(f"Unknown session_id: {session_id}")
            payload = current.model_dump()
            payload.update(fields)
            payload["updated_at"] = _now_iso()
            updated = Session.model_validate(payload)
            self._sessions[session_id] = updated
        self._publish(
            RealtimeEvent(
                type="session_updated",
                session_id=session_id,
                record=updated.model_dump(),
            )
        )
        return updated.model_copy(deep=True)

    async def upsert_chunk(self, chunk: TranscriptChunk) -> bool:
        key = (chunk.session_id, chunk.sequence)
        with self._lock:
            if chunk.session_id not in self._sessions:
                raise KeyError(f"Unknown session_id: {chunk.session_id}")
            inserted = key not in self._chunks
            self._chunks[key] = chunk
        if inserted:
            self._publish(
                RealtimeEvent(
                    type="transcript_chunk_inserted",
                    session_id=chunk.session_id,
                    record=chunk.model_dump(),
                )
            )
        return True

    async def list_chunks(self, session_id: str) -> List[TranscriptChunk]:
        return self.list_chunks_sync(session_id)

    def list_chunks_sync(self, session_id: str) -> List[TranscriptChunk]:
        with self._lock:
            items = [c for (sid, _), c in self._chunks.items() if sid == session_id]
        return sorted(items, key=lambda item: item.sequence)

    def append_audit_event(self, session_id: str, event: AuditEvent) -> None:
        with self._lock:
            self._audit.setdefault(session_id, []).append(event)

    def audit_events(self, session_id: str) -> List[AuditEvent]:
        with self._lock:
            return list(self._audit.get(session_id, []))

    def subscribe(self, session_id: str, handler: RealtimeHandler) -> Callable[[], None]:
        with self._lock:
            self._subscribers.setdefault(session_id, []).append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._subscribers.get(session_id, [])
                if handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def _publish(self, event: RealtimeEvent) -> None:
        with self._lock:
            handlers = list(self._subscribers.get(event.session_id, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                # A broken subscriber must not fail the write that produced the event.
                logger.exception(
                    "realtime handler failed type=%s session_id=%s", event.type, event.session_id
                )
