from __future__ import annotations

"""
One recorded encounter: capture -> diarization -> chunk store -> note pipeline.

Design intent:
- Own the per-encounter instances explicitly; nothing lives in module state.
- Stop capture and drain chunk persistence before the pipeline sees the transcript.
- A manual stop and the duration cap share one generation run.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Optional

from clinscribe.capture.base import AudioInputDevice, SpeechRecognizer
from clinscribe.capture.controller import AudioCaptureController, CaptureOptions, MicrophoneArbiter
from clinscribe.internal_core.audit import AuditSink
from clinscribe.internal_core.config import ScribeConfig, load_config
from clinscribe.internal_core.contracts import (
    ChunkPersistenceAPI,
    CodeSuggestionService,
    NoteGenerationService,
    PipelineResult,
    SessionAPI,
    SleepFn,
    TaskExtractionService,
)
from clinscribe.note.orchestrator import (
    NoteGenerationOrchestrator,
    OrchestratorSlot,
    PipelineOptions,
    StateCallback,
)
from clinscribe.transcript.chunk_store import RetryPolicy, TranscriptChunkStore
from clinscribe.transcript.diarization import SpeakerDiarizer

logger = logging.getLogger(__name__)

NoteReadyCallback = Callable[[PipelineResult], Any]


class EncounterRecorder:
    def __init__(
        self,
        session_id: str,
        *,
        device: AudioInputDevice,
        recognizer: SpeechRecognizer,
        persistence: ChunkPersistenceAPI,
        session_api: SessionAPI,
        note_service: NoteGenerationService,
        task_service: Optional[TaskExtractionService] = None,
        code_service: Optional[CodeSuggestionService] = None,
        arbiter: Optional[MicrophoneArbiter] = None,
        config: Optional[ScribeConfig] = None,
        audit_sink: Optional[AuditSink] = None,
        on_state_change: Optional[StateCallback] = None,
        on_note_ready: Optional[NoteReadyCallback] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        cfg = config or load_config()
        self.session_id = session_id
        self.pipeline_options = PipelineOptions()
        self.last_result: Optional[PipelineResult] = None
        self._on_note_ready = on_note_ready
        self._generation: Optional[asyncio.Task] = None

        self.controller = AudioCaptureController(
            device,
            recognizer,
            arbiter=arbiter,
            max_duration_sec=cfg.SCRIBE_MAX_CAPTURE_SECONDS,
            poll_interval_sec=cfg.SCRIBE_CAPTURE_POLL_SECONDS,
            on_max_duration=self._handle_max_duration,
            clock=clock,
            sleep=sleep,
            audit_sink=audit_sink,
            session_id=session_id,
        )
        self.diarizer = SpeakerDiarizer(playback_gap_ms=cfg.SCRIBE_PLAYBACK_GAP_MS)
        self.chunk_store = TranscriptChunkStore(
            session_id,
            persistence,
            retry_policy=RetryPolicy.from_config(cfg),
            sleep=sleep,
            audit_sink=audit_sink,
        )
        self.slot = OrchestratorSlot(
            lambda: NoteGenerationOrchestrator(
                note_service,
                session_api,
                task_service=task_service,
                code_service=code_service,
                config=cfg,
                audit_sink=audit_sink,
            ),
            on_state_change=on_state_change,
        )
        self.controller.add_listener(self._on_transcript)

    async def start(
        self,
        options: Optional[CaptureOptions] = None,
        pipeline_options: Optional[PipelineOptions] = None,
    ) -> None:
        options = options or CaptureOptions()
        await self.controller.start(options)
        self.diarizer.reset(options.mode)
        if pipeline_options is not None:
            self.pipeline_options = pipeline_options
        self._generation = None
        self.last_result = None

    def pause(self) -> None:
        self.controller.pause()

    def resume(self) -> None:
        self.controller.resume()

    async def stop_and_generate(self, pipeline_options: Optional[PipelineOptions] = None) -> PipelineResult:
        if pipeline_options is not None:
            self.pipeline_options = pipeline_options
        if self._generation is None:
            self._generation = asyncio.get_running_loop().create_task(self._finish())
        return await asyncio.shield(self._generation)

    def new_orchestrator(self) -> NoteGenerationOrchestrator:
        return self.slot.replace()

    def _on_transcript(self, text: str, is_final: bool) -> None:
        if not is_final:
            return
        fragment = self.diarizer.label_fragment(text, self.controller.elapsed_ms)
        self.chunk_store.add_chunk(fragment.speaker, fragment.text)

    async def _handle_max_duration(self) -> None:
        await self.stop_and_generate()

    async def _finish(self) -> PipelineResult:
        await self.controller.stop()
        stats = await self.chunk_store.save_all_pending_chunks()
        if stats.failed_chunks:
            logger.warning(
                "generating note with unsaved chunks session_id=%s failed=%s",
                self.session_id,
                stats.failed_chunks,
            )
        transcript = self.chunk_store.get_diarized_transcript()
        result = await self.slot.get().run_complete_pipeline(
            self.session_id, transcript, self.pipeline_options
        )
        self.last_result = result
        if self._on_note_ready is not None:
            outcome = self._on_note_ready(result)
            if inspect.isawaitable(outcome):
                await outcome
        return result
