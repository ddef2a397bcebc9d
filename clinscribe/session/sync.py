from __future__ import annotations

"""
Debounced session field writes reconciled with remote change notifications.

Design intent:
- Coalesce rapid edits of one field into a single write after an idle window.
- Never send a write whose value equals the last known persisted value.
- Remote updates win for every field except those under active local edit.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from clinscribe.internal_core.config import load_config
from clinscribe.internal_core.contracts import (
    RealtimeChannel,
    RealtimeEvent,
    Session,
    SessionAPI,
    SleepFn,
)
from clinscribe.transcript.chunk_store import TranscriptChunkStore

logger = logging.getLogger(__name__)

_READ_ONLY_FIELDS = {"id", "created_at", "updated_at"}


class SessionSyncError(RuntimeError):
    """A debounced field write was rejected; the field stays dirty for the next flush."""

    def __init__(self, field: str, message: str):
        super().__init__(f"Failed to persist {field}: {message}")
        self.field = field


class SessionSyncManager:
    def __init__(
        self,
        session_api: SessionAPI,
        session_id: str,
        *,
        channel: Optional[RealtimeChannel] = None,
        debounce_sec: Optional[float] = None,
        chunk_store: Optional[TranscriptChunkStore] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.session_id = session_id
        self._api = session_api
        self._channel = channel
        if debounce_sec is None:
            debounce_sec = load_config().SCRIBE_SYNC_DEBOUNCE_SECONDS
        self._debounce_sec = max(0.0, float(debounce_sec))
        self._sleep = sleep
        self.chunk_store = chunk_store

        self._values: Dict[str, Any] = {}
        self._persisted: Dict[str, Any] = {}
        self._dirty: Set[str] = set()
        self._timers: Dict[str, asyncio.Task] = {}
        self._write_locks: Dict[str, asyncio.Lock] = {}
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.last_error: Optional[SessionSyncError] = None

    @property
    def values(self) -> Dict[str, Any]:
        return dict(self._values)

    def value(self, field: str) -> Any:
        return self._values.get(field)

    def is_editing(self, field: str) -> bool:
        return field in self._dirty

    async def load(self) -> Session:
        session = await self._api.get(self.session_id)
        snapshot = session.model_dump()
        self._persisted = dict(snapshot)
        for field, value in snapshot.items():
            if field not in self._dirty:
                self._values[field] = value
        if self._channel is not None and self._unsubscribe is None:
            self._unsubscribe = self._channel.subscribe(self.session_id, self.handle_event)
        return session

    def edit(self, field: str, value: Any) -> None:
        if field in _READ_ONLY_FIELDS or field not in Session.model_fields:
            raise ValueError(f"Session field is not editable: {field}")
        self._values[field] = value
        self._dirty.add(field)

        timer = self._timers.pop(field, None)
        if timer is not None:
            timer.cancel()
        self._timers[field] = asyncio.get_running_loop().create_task(self._debounced_write(field))

    async def flush(self) -> bool:
        for timer in list(self._timers.values()):
            timer.cancel()
        self._timers.clear()
        ok = True
        for field in sorted(self._dirty):
            ok = await self._write(field) and ok
        return ok

    def close(self) -> None:
        for timer in list(self._timers.values()):
            timer.cancel()
        self._timers.clear()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def handle_event(self, event: RealtimeEvent) -> None:
        if event.session_id != self.session_id:
            return
        if event.type == "session_updated":
            self.apply_remote_update(event.record)
        elif event.type == "transcript_chunk_inserted" and self.chunk_store is not None:
            self.chunk_store.apply_remote_chunk(event.record)

    def apply_remote_update(self, record: Dict[str, Any]) -> List[str]:
        applied: List[str] = []
        for field, value in record.items():
            if field not in Session.model_fields:
                continue
            self._persisted[field] = value
            if field in self._dirty:
                continue
            if self._values.get(field) != value:
                self._values[field] = value
                applied.append(field)
        return applied

    async def _debounced_write(self, field: str) -> None:
        await self._sleep(self._debounce_sec)
        # Detach before writing so a new edit schedules a fresh timer instead of cancelling the write.
        if self._timers.get(field) is asyncio.current_task():
            self._timers.pop(field, None)
        await self._write(field)

    async def _write(self, field: str) -> bool:
        # One write per field in flight, so an older write cannot land after a newer one.
        lock = self._write_locks.setdefault(field, asyncio.Lock())
        async with lock:
            return await self._write_unlocked(field)

    async def _write_unlocked(self, field: str) -> bool:
        if field not in self._dirty:
            return True
        value = self._values.get(field)
        if field in self._persisted and self._persisted[field] == value:
            self._dirty.discard(field)
            return True

        try:
            await self._api.update(self.session_id, {field: value})
        except Exception as exc:
            self.last_error = SessionSyncError(field, str(exc))
            logger.warning(
                "session field write failed session_id=%s field=%s error=%s",
                self.session_id,
                field,
                exc,
            )
            return False

        self._persisted[field] = value
        if self._values.get(field) == value:
            self._dirty.discard(field)
        return True
