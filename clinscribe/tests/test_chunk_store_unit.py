import asyncio
from typing import Dict, List

import pytest

from clinscribe.internal_core.contracts import TranscriptChunk
from clinscribe.internal_core.session_store import InMemorySessionStore
from clinscribe.transcript.chunk_store import RetryPolicy, TranscriptChunkStore


class _GatedPersistence:
    """Holds every upsert until the test opens the gate for that sequence."""

    def __init__(self) -> None:
        self.gates: Dict[int, asyncio.Event] = {}
        self.completed: List[int] = []

    def gate(self, sequence: int) -> asyncio.Event:
        return self.gates.setdefault(sequence, asyncio.Event())

    async def upsert_chunk(self, chunk: TranscriptChunk) -> bool:
        await self.gate(chunk.sequence).wait()
        self.completed.append(chunk.sequence)
        return True

    async def list_chunks(self, session_id: str) -> List[TranscriptChunk]:
        return []


class _FlakyPersistence:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.attempts = 0

    async def upsert_chunk(self, chunk: TranscriptChunk) -> bool:
        self.attempts += 1
        if self.attempts <= self.failures:
            if self.attempts % 2:
                raise ConnectionError("network down")
            return False
        return True

    async def list_chunks(self, session_id: str) -> List[TranscriptChunk]:
        return []


async def _drain() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def test_transcripts_follow_sequence_order_not_persist_completion_order() -> None:
    async def scenario() -> None:
        persistence = _GatedPersistence()
        store = TranscriptChunkStore("s1", persistence)
        store.add_chunk("provider", "What brings you in today?")
        store.add_chunk("patient", "Chest tightness since Monday.")
        store.add_chunk("provider", "Any shortness of breath?")

        assert store.get_full_transcript() == (
            "What brings you in today?\n\nChest tightness since Monday.\n\nAny shortness of breath?"
        )

        persistence.gate(2).set()
        await _drain()
        assert store.sync_state(2) == "saved"
        assert store.sync_state(0) == "pending"

        persistence.gate(1).set()
        persistence.gate(0).set()
        stats = await store.save_all_pending_chunks()

        assert persistence.completed == [2, 1, 0]
        assert stats.saved_chunks == 3
        assert stats.pending_chunks == 0
        assert store.get_diarized_transcript() == (
            "Doctor: What brings you in today?\n\n"
            "Patient: Chest tightness since Monday.\n\n"
            "Doctor: Any shortness of breath?"
        )
        assert [chunk.sequence for chunk in store.chunks()] == [0, 1, 2]

    asyncio.run(scenario())


def test_retry_uses_exponential_backoff_then_marks_failed() -> None:
    async def scenario() -> None:
        delays: List[float] = []

        async def fake_sleep(seconds: float) -> None:
            delays.append(seconds)

        audit_store = InMemorySessionStore()
        session = audit_store.create_session()
        persistence = _FlakyPersistence(failures=100)
        store = TranscriptChunkStore(
            session.id, persistence, sleep=fake_sleep, audit_sink=audit_store
        )
        chunk = store.add_chunk("patient", "I have had a cough for a week.")
        assert chunk.sequence == 0

        stats = await store.save_all_pending_chunks()

        assert delays == [1.0, 2.0, 4.0]
        assert persistence.attempts == 4
        assert store.sync_state(0) == "failed"
        assert stats.failed_chunks == 1
        assert stats.saved_chunks == 0
        assert store.chunk_error(0) == "chunk upsert rejected"
        events = audit_store.audit_events(session.id)
        assert [event.type for event in events] == ["CHUNK_FAILED"]
        assert "cough" not in events[0].detail

    asyncio.run(scenario())


def test_transient_failures_recover_and_record_latency() -> None:
    async def scenario() -> None:
        delays: List[float] = []
        ticks = iter([0.0, 0.25])

        async def fake_sleep(seconds: float) -> None:
            delays.append(seconds)

        persistence = _FlakyPersistence(failures=2)
        store = TranscriptChunkStore(
            "s1", persistence, sleep=fake_sleep, clock=lambda: next(ticks)
        )
        store.add_chunk("provider", "Let's check your blood pressure.")
        stats = await store.save_all_pending_chunks()

        assert delays == [1.0, 2.0]
        assert stats.saved_chunks == 1
        assert stats.failed_chunks == 0
        assert stats.average_latency_ms == pytest.approx(250.0)

    asyncio.run(scenario())


def test_retry_failed_chunks_reschedules_persists() -> None:
    async def scenario() -> None:
        async def no_sleep(seconds: float) -> None:
            return None

        persistence = _FlakyPersistence(failures=2)
        store = TranscriptChunkStore(
            "s1", persistence, sleep=no_sleep, retry_policy=RetryPolicy(max_attempts=2)
        )
        store.add_chunk("patient", "It started last night.")
        await store.save_all_pending_chunks()
        assert store.sync_state(0) == "failed"

        assert store.retry_failed_chunks() == 1
        assert store.sync_state(0) == "pending"
        stats = await store.save_all_pending_chunks()
        assert stats.saved_chunks == 1
        assert store.chunk_error(0) is None

    asyncio.run(scenario())


def test_remote_chunks_reconcile_known_and_unknown_sequences() -> None:
    async def scenario() -> None:
        persistence = _GatedPersistence()
        store = TranscriptChunkStore("s1", persistence)
        local = store.add_chunk("provider", "Good morning.")

        assert store.apply_remote_chunk(local.model_dump()) is False
        assert store.sync_state(0) == "saved"

        inserted = store.apply_remote_chunk(
            {
                "session_id": "s1",
                "sequence": 3,
                "speaker": "patient",
                "text": "Morning, doctor.",
                "created_at": "2026-01-01T00:00:00+00:00",
            }
        )
        assert inserted is True
        assert store.next_sequence == 4
        assert store.sync_state(3) == "saved"
        assert store.add_chunk("provider", "Next.").sequence == 4

        other = local.model_copy(update={"session_id": "s2"})
        assert store.apply_remote_chunk(other) is False

        persistence.gate(0).set()
        persistence.gate(4).set()
        await store.save_all_pending_chunks()
        assert persistence.completed == [4]

    asyncio.run(scenario())


def test_reload_rebuilds_arena_from_persistence() -> None:
    async def scenario() -> None:
        backing = InMemorySessionStore()
        session = backing.create_session(patient_name="Ada")
        for sequence, speaker, text in [
            (1, "patient", "My ankle is swollen."),
            (0, "provider", "What happened?"),
        ]:
            await backing.upsert_chunk(
                TranscriptChunk(
                    session_id=session.id,
                    sequence=sequence,
                    speaker=speaker,
                    text=text,
                    created_at="2026-01-01T00:00:00+00:00",
                )
            )

        store = TranscriptChunkStore(session.id, backing)
        assert await store.reload() == 2
        assert await store.reload() == 0
        assert store.get_diarized_transcript() == "Doctor: What happened?\n\nPatient: My ankle is swollen."
        assert store.speaker_transcript("patient") == "My ankle is swollen."
        assert store.stats().saved_chunks == 2

    asyncio.run(scenario())


def test_add_chunk_rejects_blank_text() -> None:
    async def scenario() -> None:
        store = TranscriptChunkStore("s1", _GatedPersistence())
        with pytest.raises(ValueError):
            store.add_chunk("provider", "   ")
        assert store.stats().total_chunks == 0

    asyncio.run(scenario())


def test_retry_policy_caps_and_jitters_delays() -> None:
    policy = RetryPolicy(base_delay_sec=1.0, multiplier=2.0, max_delay_sec=5.0, jitter=0.5)
    assert policy.delay_for(1, rand=lambda: 0.5) == pytest.approx(1.0)
    assert policy.delay_for(3, rand=lambda: 0.5) == pytest.approx(4.0)
    assert policy.delay_for(4, rand=lambda: 0.5) == pytest.approx(5.0)
    assert policy.delay_for(1, rand=lambda: 1.0) == pytest.approx(1.5)
    assert policy.delay_for(1, rand=lambda: 0.0) == pytest.approx(0.5)
