from __future__ import annotations

"""
Staged transcript -> clinical note pipeline.

Design intent:
- Run a fixed, ordered list of required/optional stages and report every transition.
- Required failures abort the run; optional failures are collected and the run continues.
- Supersession is identity based: only the current run of the current instance may
  change observed state or persist a note.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from clinscribe.internal_core import audit
from clinscribe.internal_core.audit import AuditSink
from clinscribe.internal_core.config import ScribeConfig, load_config
from clinscribe.internal_core.contracts import (
    CodeSuggestionService,
    NoteGenerationRequest,
    NoteGenerationService,
    PipelineResult,
    SessionAPI,
    StageDescriptor,
    StageStatus,
    TaskExtractionService,
    WorkflowState,
)

from .parsing import ParsedNote, parse_note_output
from .preprocess import PreparedTranscript, prepare_transcript

logger = logging.getLogger(__name__)

StateCallback = Callable[[WorkflowState], None]

STAGE_PREPROCESSING = "preprocessing"
STAGE_NOTE_GENERATION = "note_generation"
STAGE_TASK_EXTRACTION = "task_extraction"
STAGE_CODE_SUGGESTION = "code_suggestion"
STAGE_PERSISTENCE = "persistence"

EMPTY_TRANSCRIPT_ERROR = "Transcript is empty; note generation was not started"
SUPERSEDED_ERROR = "Pipeline run was superseded by a newer run"


class PipelineStageError(RuntimeError):
    def __init__(self, stage: str, required: bool, message: str):
        super().__init__(message)
        self.stage = stage
        self.required = required
        self.message = message


@dataclass(frozen=True)
class Stage:
    name: str
    required: bool


@dataclass(frozen=True)
class PipelineOptions:
    context: str = ""
    detail_level: Optional[str] = None
    template_id: Optional[str] = None


@dataclass
class _RunContext:
    session_id: str
    transcript: str
    options: PipelineOptions
    prepared: Optional[PreparedTranscript] = None
    parsed: Optional[ParsedNote] = None
    tasks: List[Dict[str, Any]] = field(default_factory=list)
    codes: List[Dict[str, Any]] = field(default_factory=list)


class NoteGenerationOrchestrator:
    def __init__(
        self,
        note_service: NoteGenerationService,
        session_api: SessionAPI,
        *,
        task_service: Optional[TaskExtractionService] = None,
        code_service: Optional[CodeSuggestionService] = None,
        on_state_change: Optional[StateCallback] = None,
        config: Optional[ScribeConfig] = None,
        audit_sink: Optional[AuditSink] = None,
    ) -> None:
        self._note_service = note_service
        self._session_api = session_api
        self._task_service = task_service
        self._code_service = code_service
        self._on_state_change = on_state_change
        self._cfg = config or load_config()
        self._audit_sink = audit_sink

        self.stages: List[Stage] = [Stage(STAGE_PREPROCESSING, True), Stage(STAGE_NOTE_GENERATION, True)]
        if task_service is not None:
            self.stages.append(Stage(STAGE_TASK_EXTRACTION, False))
        if code_service is not None:
            self.stages.append(Stage(STAGE_CODE_SUGGESTION, False))
        self.stages.append(Stage(STAGE_PERSISTENCE, True))

        self._state = self._fresh_state()
        self._run_token: Optional[object] = None
        self._retired = False

    def set_state_listener(self, callback: Optional[StateCallback]) -> None:
        self._on_state_change = callback

    def get_state(self) -> WorkflowState:
        return self._state.model_copy(deep=True)

    def is_running(self) -> bool:
        return self._state.is_running

    def reset(self) -> None:
        """Drop observation of any in-flight run and return every stage to pending."""
        self._run_token = None
        self._state = self._fresh_state()
        self._emit()

    def retire(self) -> None:
        # A retired instance keeps answering calls but never reports or persists again.
        self._retired = True
        self._run_token = None
        self._on_state_change = None

    async def run_complete_pipeline(
        self,
        session_id: str,
        transcript: str,
        options: Optional[PipelineOptions] = None,
    ) -> PipelineResult:
        if not transcript or not transcript.strip():
            return PipelineResult(success=False, errors=[EMPTY_TRANSCRIPT_ERROR])
        if self._retired:
            return PipelineResult(success=False, errors=[SUPERSEDED_ERROR])

        token = object()
        self._run_token = token
        self._state = self._fresh_state()
        self._state.is_running = True
        self._emit()

        started = time.monotonic()
        audit.log_event(
            self._audit_sink,
            session_id,
            "PIPELINE_STARTED",
            "PIPELINE_START",
            f"stages={','.join(stage.name for stage in self.stages)}",
        )

        ctx = _RunContext(session_id=session_id, transcript=transcript, options=options or PipelineOptions())
        errors: List[str] = []
        for stage in self.stages:
            if token is not self._run_token:
                logger.info("pipeline run superseded session_id=%s before stage=%s", session_id, stage.name)
                return PipelineResult(success=False, errors=errors + [SUPERSEDED_ERROR])

            self._set_stage(token, stage.name, "running")
            try:
                await self._run_stage(stage, ctx)
            except Exception as exc:
                err = exc if isinstance(exc, PipelineStageError) else PipelineStageError(stage.name, stage.required, str(exc))
                message = f"{stage.name} failed: {err.message or type(exc).__name__}"
                logger.warning(
                    "pipeline stage failed session_id=%s stage=%s required=%s error=%s",
                    session_id,
                    stage.name,
                    stage.required,
                    err.message,
                )
                audit.log_event(
                    self._audit_sink,
                    session_id,
                    "STAGE_FAILED",
                    "STAGE_REQUIRED_FAILED" if stage.required else "STAGE_OPTIONAL_FAILED",
                    f"stage={stage.name} error_type={type(exc).__name__}",
                )
                self._set_stage(token, stage.name, "failed", error=err.message)
                if stage.required:
                    errors.insert(0, message)
                    self._finish(token, errors)
                    self._log_done(session_id, started, success=False)
                    return PipelineResult(success=False, note=None, errors=errors)
                errors.append(message)
                self._record_errors(token, errors)
                continue
            self._set_stage(token, stage.name, "succeeded")

        self._finish(token, errors)
        self._log_done(session_id, started, success=True)
        parsed = ctx.parsed
        return PipelineResult(
            success=True,
            note=parsed.text if parsed else None,
            note_json=parsed.structured if parsed else None,
            tasks=ctx.tasks,
            codes=ctx.codes,
            errors=errors,
        )

    async def _run_stage(self, stage: Stage, ctx: _RunContext) -> None:
        if stage.name == STAGE_PREPROCESSING:
            ctx.prepared = prepare_transcript(
                ctx.transcript,
                context=ctx.options.context,
                detail_level=ctx.options.detail_level,
                template_id=ctx.options.template_id,
                scrub=self._cfg.SCRIBE_PHI_SCRUB,
                default_detail_level=self._cfg.SCRIBE_DEFAULT_DETAIL_LEVEL,
                default_template_id=self._cfg.SCRIBE_DEFAULT_TEMPLATE,
            )
            if ctx.prepared.masked_items:
                logger.info(
                    "masked phi items session_id=%s count=%s", ctx.session_id, ctx.prepared.masked_items
                )
        elif stage.name == STAGE_NOTE_GENERATION:
            ctx.parsed = await self._generate(stage, ctx)
        elif stage.name == STAGE_TASK_EXTRACTION and self._task_service is not None:
            note = self._require_note(stage, ctx)
            ctx.tasks = list(await self._task_service.extract_tasks(ctx.session_id, note.text) or [])
        elif stage.name == STAGE_CODE_SUGGESTION and self._code_service is not None:
            note = self._require_note(stage, ctx)
            ctx.codes = list(
                await self._code_service.suggest_codes(
                    ctx.session_id, note.text, region=self._cfg.SCRIBE_CODE_REGION
                )
                or []
            )
        elif stage.name == STAGE_PERSISTENCE:
            note = self._require_note(stage, ctx)
            await self._session_api.update(
                ctx.session_id,
                {
                    "generated_note": note.text,
                    "note_json": note.structured,
                    "status": "review",
                },
            )
        else:
            raise PipelineStageError(stage.name, stage.required, f"Unknown stage: {stage.name}")

    @staticmethod
    def _require_note(stage: Stage, ctx: _RunContext) -> ParsedNote:
        if ctx.parsed is None:
            raise PipelineStageError(stage.name, stage.required, "no generated note available")
        return ctx.parsed

    async def _generate(self, stage: Stage, ctx: _RunContext) -> ParsedNote:
        prepared = ctx.prepared
        if prepared is None:
            raise PipelineStageError(stage.name, stage.required, "transcript was not preprocessed")
        request = NoteGenerationRequest(
            session_id=ctx.session_id,
            transcript=prepared.transcript,
            context=prepared.context,
            detail_level=prepared.detail_level,
            template_id=prepared.template_id,
        )
        response = await self._note_service.generate_note(request)
        if not response.success or not (response.note or "").strip():
            reason = "; ".join(response.errors) or "note generation returned no note"
            raise PipelineStageError(stage.name, stage.required, reason)
        return parse_note_output(response.note or "")

    def _fresh_state(self) -> WorkflowState:
        return WorkflowState(
            is_running=False,
            stages=[StageDescriptor(name=stage.name, required=stage.required) for stage in self.stages],
        )

    def _set_stage(self, token: object, name: str, status: StageStatus, error: Optional[str] = None) -> None:
        if token is not self._run_token:
            return
        for descriptor in self._state.stages:
            if descriptor.name == name:
                descriptor.status = status
                descriptor.error = error
                break
        self._emit()

    def _record_errors(self, token: object, errors: List[str]) -> None:
        if token is not self._run_token:
            return
        self._state.errors = list(errors)
        self._emit()

    def _finish(self, token: object, errors: List[str]) -> None:
        if token is not self._run_token:
            return
        self._state.is_running = False
        self._state.errors = list(errors)
        self._emit()

    def _emit(self) -> None:
        callback = self._on_state_change
        if callback is None:
            return
        try:
            callback(self._state.model_copy(deep=True))
        except Exception:
            logger.exception("workflow state callback failed")

    def _log_done(self, session_id: str, started: float, *, success: bool) -> None:
        audit.log_event(
            self._audit_sink,
            session_id,
            "PIPELINE_DONE",
            "PIPELINE_OK" if success else "PIPELINE_FAILED",
            f"success={success}",
            duration_ms=int((time.monotonic() - started) * 1000),
        )


class OrchestratorSlot:
    """
    Call-site owner of the current orchestrator instance.

    `replace()` retires the previous instance; state updates from anything but the
    current instance never reach `on_state_change`.
    """

    def __init__(
        self,
        factory: Callable[[], NoteGenerationOrchestrator],
        on_state_change: Optional[StateCallback] = None,
    ) -> None:
        self._factory = factory
        self._on_state_change = on_state_change
        self._current: Optional[NoteGenerationOrchestrator] = None

    @property
    def current(self) -> Optional[NoteGenerationOrchestrator]:
        return self._current

    def get(self) -> NoteGenerationOrchestrator:
        return self._current if self._current is not None else self.replace()

    def replace(self) -> NoteGenerationOrchestrator:
        previous = self._current
        instance = self._factory()
        self._current = instance
        if previous is not None and previous is not instance:
            previous.retire()
        instance.set_state_listener(lambda state, owner=instance: self._deliver(owner, state))
        return instance

    def _deliver(self, owner: NoteGenerationOrchestrator, state: WorkflowState) -> None:
        if owner is not self._current or self._on_state_change is None:
            return
        self._on_state_change(state)
