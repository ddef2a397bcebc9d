from __future__ import annotations

"""
Session-scoped transcript chunk buffer with optimistic reads and durable persistence.

Design intent:
- Assign gapless sequence numbers in arrival order and expose chunks immediately.
- Persist each chunk asynchronously with exponential backoff; failures only show up in stats.
- Build every transcript projection from sequence numbers, never from persist completion order.
"""

import asyncio
import datetime as _dt
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Union

from clinscribe.internal_core import audit
from clinscribe.internal_core.audit import AuditSink
from clinscribe.internal_core.config import ScribeConfig
from clinscribe.internal_core.contracts import (
    ChunkPersistenceAPI,
    ChunkStats,
    ChunkSyncState,
    SleepFn,
    Speaker,
    TranscriptChunk,
)

logger = logging.getLogger(__name__)

SPEAKER_LABELS: Dict[str, str] = {"provider": "Doctor", "patient": "Patient"}
_LATENCY_WINDOW = 100


class ChunkPersistenceError(RuntimeError):
    """Raised when the persistence API rejects a chunk upsert."""


def _now_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay_sec: float = 1.0
    multiplier: float = 2.0
    max_delay_sec: float = 30.0
    jitter: float = 0.0

    @classmethod
    def from_config(cls, cfg: ScribeConfig) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, cfg.SCRIBE_CHUNK_RETRY_ATTEMPTS),
            base_delay_sec=cfg.SCRIBE_CHUNK_RETRY_BASE_SECONDS,
            multiplier=cfg.SCRIBE_CHUNK_RETRY_MULTIPLIER,
            max_delay_sec=cfg.SCRIBE_CHUNK_RETRY_MAX_SECONDS,
            jitter=cfg.SCRIBE_CHUNK_RETRY_JITTER,
        )

    def delay_for(self, failed_attempts: int, rand: Callable[[], float] = random.random) -> float:
        """Delay before the next attempt; 1s, 2s, 4s ... with the default policy."""
        exponent = max(0, failed_attempts - 1)
        delay = min(self.base_delay_sec * (self.multiplier ** exponent), self.max_delay_sec)
        if self.jitter > 0:
            delay += (rand() * 2 - 1) * delay * self.jitter
        return max(0.0, delay)


class TranscriptChunkStore:
    def __init__(
        self,
        session_id: str,
        persistence: ChunkPersistenceAPI,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        audit_sink: Optional[AuditSink] = None,
        speaker_labels: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.session_id = session_id
        self._persistence = persistence
        self._policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock
        self._audit_sink = audit_sink
        self._labels = dict(speaker_labels or SPEAKER_LABELS)

        # Arena keyed by sequence plus a side table of sync state per sequence.
        self._chunks: Dict[int, TranscriptChunk] = {}
        self._sync: Dict[int, ChunkSyncState] = {}
        self._errors: Dict[int, str] = {}
        self._tasks: Dict[int, asyncio.Task] = {}
        self._latencies_ms: Deque[float] = deque(maxlen=_LATENCY_WINDOW)
        self._next_sequence = 0

    @property
    def next_sequence(self) -> int:
        return self._next_sequence

    def add_chunk(self, speaker: Speaker, text: str) -> TranscriptChunk:
        text = (text or "").strip()
        if not text:
            raise ValueError("Transcript chunk text must not be empty")
        sequence = self._next_sequence
        chunk = TranscriptChunk(
            session_id=self.session_id,
            sequence=sequence,
            speaker=speaker,
            text=text,
            created_at=_now_iso(),
        )
        self._next_sequence += 1
        self._chunks[sequence] = chunk
        self._sync[sequence] = "pending"
        self._schedule_persist(chunk)
        return chunk

    def chunks(self) -> List[TranscriptChunk]:
        return [self._chunks[seq] for seq in sorted(self._chunks)]

    def sync_state(self, sequence: int) -> ChunkSyncState:
        try:
            return self._sync[sequence]
        except KeyError:
            raise KeyError(f"Unknown chunk sequence: {sequence}") from None

    def chunk_error(self, sequence: int) -> Optional[str]:
        return self._errors.get(sequence)

    def get_full_transcript(self) -> str:
        return "\n\n".join(chunk.text for chunk in self.chunks())

    def get_diarized_transcript(self) -> str:
        return "\n\n".join(
            f"{self._labels.get(chunk.speaker, chunk.speaker)}: {chunk.text}"
            for chunk in self.chunks()
        )

    def speaker_transcript(self, speaker: Speaker) -> str:
        return "\n\n".join(chunk.text for chunk in self.chunks() if chunk.speaker == speaker)

    def stats(self) -> ChunkStats:
        states = list(self._sync.values())
        average = sum(self._latencies_ms) / len(self._latencies_ms) if self._latencies_ms else 0.0
        return ChunkStats(
            total_chunks=len(states),
            saved_chunks=states.count("saved"),
            pending_chunks=states.count("pending"),
            failed_chunks=states.count("failed"),
            average_latency_ms=round(average, 1),
        )

    async def save_all_pending_chunks(self) -> ChunkStats:
        # Loop because a final fragment can land while earlier persists are awaited.
        while True:
            outstanding = [task for task in self._tasks.values() if not task.done()]
            if not outstanding:
                break
            await asyncio.gather(*outstanding, return_exceptions=True)
        return self.stats()

    def retry_failed_chunks(self) -> int:
        failed = [seq for seq, state in sorted(self._sync.items()) if state == "failed"]
        for seq in failed:
            self._sync[seq] = "pending"
            self._errors.pop(seq, None)
            self._schedule_persist(self._chunks[seq])
        return len(failed)

    def apply_remote_chunk(self, record: Union[TranscriptChunk, Dict[str, Any]]) -> bool:
        """Reconcile a persisted chunk; returns True when it was not known locally."""
        chunk = record if isinstance(record, TranscriptChunk) else TranscriptChunk.model_validate(record)
        if chunk.session_id != self.session_id:
            return False

        existing = self._chunks.get(chunk.sequence)
        if existing is not None:
            if existing.text != chunk.text or existing.speaker != chunk.speaker:
                logger.warning(
                    "remote chunk differs from local copy session_id=%s sequence=%s",
                    self.session_id,
                    chunk.sequence,
                )
            self._sync[chunk.sequence] = "saved"
            self._errors.pop(chunk.sequence, None)
            return False

        self._chunks[chunk.sequence] = chunk
        self._sync[chunk.sequence] = "saved"
        self._next_sequence = max(self._next_sequence, chunk.sequence + 1)
        return True

    async def reload(self) -> int:
        rows = await self._persistence.list_chunks(self.session_id)
        return sum(1 for row in rows if self.apply_remote_chunk(row))

    def _schedule_persist(self, chunk: TranscriptChunk) -> None:
        sequence = chunk.sequence
        task = asyncio.get_running_loop().create_task(self._persist_with_retry(chunk))
        self._tasks[sequence] = task

        def _forget(done: asyncio.Task) -> None:
            if self._tasks.get(sequence) is done:
                self._tasks.pop(sequence, None)

        task.add_done_callback(_forget)

    async def _persist_with_retry(self, chunk: TranscriptChunk) -> None:
        sequence = chunk.sequence
        started = self._clock()
        failed_attempts = 0
        while True:
            if self._sync.get(sequence) == "saved":
                return
            try:
                accepted = await self._persistence.upsert_chunk(chunk)
                if accepted is False:
                    raise ChunkPersistenceError("chunk upsert rejected")
            except Exception as exc:
                failed_attempts += 1
                if failed_attempts >= self._policy.max_attempts:
                    self._mark_failed(sequence, exc, failed_attempts)
                    return
                delay = self._policy.delay_for(failed_attempts)
                logger.info(
                    "chunk persist retry session_id=%s sequence=%s attempt=%s/%s delay_sec=%.2f error=%s",
                    self.session_id,
                    sequence,
                    failed_attempts,
                    self._policy.max_attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                continue

            latency_ms = (self._clock() - started) * 1000.0
            self._latencies_ms.append(latency_ms)
            self._sync[sequence] = "saved"
            self._errors.pop(sequence, None)
            audit.log_event(
                self._audit_sink,
                self.session_id,
                "CHUNK_SAVED",
                "CHUNK_OK",
                f"sequence={sequence} attempts={failed_attempts + 1}",
                duration_ms=int(latency_ms),
            )
            return

    def _mark_failed(self, sequence: int, exc: Exception, attempts: int) -> None:
        if self._sync.get(sequence) == "saved":
            return
        self._sync[sequence] = "failed"
        self._errors[sequence] = str(exc)
        logger.warning(
            "chunk persist failed session_id=%s sequence=%s attempts=%s error=%s",
            self.session_id,
            sequence,
            attempts,
            exc,
        )
        audit.log_event(
            self._audit_sink,
            self.session_id,
            "CHUNK_FAILED",
            "CHUNK_RETRIES_EXHAUSTED",
            f"sequence={sequence} attempts={attempts} error={exc}",
        )
