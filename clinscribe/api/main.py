from __future__ import annotations

"""
HTTP host for the scribe core.

Design intent:
- Keep API orchestration thin and typed; domain logic stays in transcript/note/session.
- Serve the session CRUD, chunk persistence and realtime contracts over the in-memory store.
- Inject external services through `app.state` so hosts and tests can swap them.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from clinscribe.internal_core import audit
from clinscribe.internal_core.config import ScribeConfig, load_config
from clinscribe.internal_core.contracts import (
    AuditEvent,
    CodeSuggestionService,
    DetailLevel,
    NoteGenerationService,
    PipelineResult,
    RealtimeEvent,
    Session,
    SessionStatus,
    Speaker,
    TaskExtractionService,
    TranscriptChunk,
)
from clinscribe.internal_core.session_store import InMemorySessionStore
from clinscribe.note.orchestrator import (
    EMPTY_TRANSCRIPT_ERROR,
    NoteGenerationOrchestrator,
    OrchestratorSlot,
    PipelineOptions,
)
from clinscribe.note.services import (
    HostedCodeSuggestionService,
    HostedFunctionsClient,
    HostedNoteGenerationService,
    HostedTaskExtractionService,
)
from clinscribe.transcript.chunk_store import TranscriptChunkStore


class SessionCreateRequest(BaseModel):
    patient_name: str = Field(default="", max_length=256)
    template_id: Optional[str] = Field(default=None, max_length=32)
    scheduled_at: Optional[str] = None
    context: str = ""


class SessionPatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    patient_name: Optional[str] = Field(default=None, max_length=256)
    scheduled_at: Optional[str] = None
    status: Optional[SessionStatus] = None
    template_id: Optional[str] = Field(default=None, max_length=32)
    context: Optional[str] = None
    generated_note: Optional[str] = None


class ChunkUpsertRequest(BaseModel):
    speaker: Speaker
    text: str = Field(min_length=1)
    created_at: Optional[str] = None


class ChunkListResponse(BaseModel):
    session_id: str
    chunks: list[TranscriptChunk] = Field(default_factory=list)


class TranscriptResponse(BaseModel):
    session_id: str
    chunk_count: int = Field(ge=0)
    transcript_text: str = ""
    diarized_text: str = ""


class NoteGenerateRequest(BaseModel):
    detail_level: Optional[DetailLevel] = None
    template_id: Optional[str] = Field(default=None, max_length=32)
    context: Optional[str] = None


class AuditResponse(BaseModel):
    session_id: str
    events: list[AuditEvent] = Field(default_factory=list)


app = FastAPI(title="clinscribe service")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_config() -> ScribeConfig:
    existing = getattr(app.state, "scribe_config", None)
    if isinstance(existing, ScribeConfig):
        return existing
    created = load_config()
    logging.getLogger("clinscribe").setLevel(created.SCRIBE_LOG_LEVEL.upper())
    setattr(app.state, "scribe_config", created)
    return created


def _get_session_store() -> InMemorySessionStore:
    existing = getattr(app.state, "session_store", None)
    if isinstance(existing, InMemorySessionStore):
        return existing
    created = InMemorySessionStore()
    setattr(app.state, "session_store", created)
    return created


def _get_orchestrator_slots() -> dict[str, OrchestratorSlot]:
    existing = getattr(app.state, "orchestrator_slots", None)
    if isinstance(existing, dict):
        return existing
    created: dict[str, OrchestratorSlot] = {}
    setattr(app.state, "orchestrator_slots", created)
    return created


def _require_session(store: InMemorySessionStore, session_id: str) -> Session:
    try:
        return store.get_session(session_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown session_id: {session_id}") from exc


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _get_functions_client() -> Optional[HostedFunctionsClient]:
    cfg = _get_config()
    if not cfg.SCRIBE_FUNCTIONS_BASE_URL:
        return None
    existing = getattr(app.state, "functions_client", None)
    if isinstance(existing, HostedFunctionsClient):
        return existing
    created = HostedFunctionsClient.from_config(cfg)
    setattr(app.state, "functions_client", created)
    return created


def _get_note_generation_service() -> Optional[NoteGenerationService]:
    injected = getattr(app.state, "note_generation_service", None)
    if injected is not None:
        return injected
    client = _get_functions_client()
    return HostedNoteGenerationService(client) if client is not None else None


def _get_task_extraction_service() -> Optional[TaskExtractionService]:
    injected = getattr(app.state, "task_extraction_service", None)
    if injected is not None:
        return injected
    client = _get_functions_client()
    return HostedTaskExtractionService(client) if client is not None else None


def _get_code_suggestion_service() -> Optional[CodeSuggestionService]:
    injected = getattr(app.state, "code_suggestion_service", None)
    if injected is not None:
        return injected
    client = _get_functions_client()
    return HostedCodeSuggestionService(client) if client is not None else None


def _build_orchestrator(
    store: InMemorySessionStore, note_service: NoteGenerationService
) -> NoteGenerationOrchestrator:
    return NoteGenerationOrchestrator(
        note_service,
        store,
        task_service=_get_task_extraction_service(),
        code_service=_get_code_suggestion_service(),
        config=_get_config(),
        audit_sink=store,
    )


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/sessions", response_model=Session, status_code=201)
async def create_session(req: SessionCreateRequest) -> Session:
    cfg = _get_config()
    store = _get_session_store()
    template_id = (req.template_id or cfg.SCRIBE_DEFAULT_TEMPLATE).strip().lower()
    session = store.create_session(
        patient_name=req.patient_name.strip(),
        template_id=template_id,
        scheduled_at=req.scheduled_at,
        context=req.context,
    )
    audit.log_event(store, session.id, "SESSION_CREATED", "SESSION_NEW", f"template={template_id}")
    return session


@app.get("/sessions/{session_id}", response_model=Session)
async def get_session(session_id: str) -> Session:
    return _require_session(_get_session_store(), session_id)


@app.patch("/sessions/{session_id}", response_model=Session)
async def patch_session(session_id: str, req: SessionPatchRequest) -> Session:
    store = _get_session_store()
    _require_session(store, session_id)
    fields = req.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update.")
    try:
        updated = await store.update(session_id, fields)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    audit.log_event(
        store, session_id, "SESSION_UPDATED", "SESSION_PATCH", f"fields={','.join(sorted(fields))}"
    )
    return updated


@app.put("/sessions/{session_id}/chunks/{sequence}", response_model=TranscriptChunk)
async def upsert_chunk(session_id: str, sequence: int, req: ChunkUpsertRequest) -> TranscriptChunk:
    if sequence < 0:
        raise HTTPException(status_code=400, detail="sequence must be >= 0.")
    store = _get_session_store()
    _require_session(store, session_id)
    text = req.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="text must not be blank.")
    chunk = TranscriptChunk(
        session_id=session_id,
        sequence=sequence,
        speaker=req.speaker,
        text=text,
        created_at=req.created_at or _utc_now_iso(),
    )
    await store.upsert_chunk(chunk)
    return chunk


@app.get("/sessions/{session_id}/chunks", response_model=ChunkListResponse)
async def list_chunks(session_id: str) -> ChunkListResponse:
    store = _get_session_store()
    _require_session(store, session_id)
    return ChunkListResponse(session_id=session_id, chunks=await store.list_chunks(session_id))


async def _load_transcript(store: InMemorySessionStore, session_id: str) -> TranscriptChunkStore:
    chunk_store = TranscriptChunkStore(session_id, store)
    await chunk_store.reload()
    return chunk_store


@app.get("/sessions/{session_id}/transcript", response_model=TranscriptResponse)
async def get_transcript(session_id: str) -> TranscriptResponse:
    store = _get_session_store()
    _require_session(store, session_id)
    chunk_store = await _load_transcript(store, session_id)
    return TranscriptResponse(
        session_id=session_id,
        chunk_count=chunk_store.stats().total_chunks,
        transcript_text=chunk_store.get_full_transcript(),
        diarized_text=chunk_store.get_diarized_transcript(),
    )


@app.post("/sessions/{session_id}/note", response_model=PipelineResult)
async def generate_note(session_id: str, req: NoteGenerateRequest) -> PipelineResult:
    note_service = _get_note_generation_service()
    if note_service is None:
        raise HTTPException(status_code=503, detail="Note generation service is not configured.")

    store = _get_session_store()
    session = _require_session(store, session_id)
    chunk_store = await _load_transcript(store, session_id)
    transcript = chunk_store.get_diarized_transcript()
    if not transcript.strip():
        raise HTTPException(status_code=400, detail=EMPTY_TRANSCRIPT_ERROR)

    slots = _get_orchestrator_slots()
    slot = slots.get(session_id)
    if slot is None:
        slot = OrchestratorSlot(lambda: _build_orchestrator(store, _get_note_generation_service()))
        slots[session_id] = slot
    # A repeated request for the same session supersedes the previous run.
    orchestrator = slot.replace()

    options = PipelineOptions(
        context=req.context if req.context is not None else session.context,
        detail_level=req.detail_level,
        template_id=req.template_id or session.template_id,
    )
    return await orchestrator.run_complete_pipeline(session_id, transcript, options)


@app.get("/sessions/{session_id}/audit", response_model=AuditResponse)
async def get_audit(session_id: str) -> AuditResponse:
    store = _get_session_store()
    _require_session(store, session_id)
    return AuditResponse(session_id=session_id, events=store.audit_events(session_id))


@app.websocket("/ws/sessions/{session_id}")
async def session_events_ws(websocket: WebSocket, session_id: str) -> None:
    await websocket.accept()
    store = _get_session_store()
    if not store.has_session(session_id):
        await websocket.send_json({"type": "error", "detail": "unknown_session"})
        await websocket.close(code=1008)
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[RealtimeEvent] = asyncio.Queue()

    def _on_event(event: RealtimeEvent) -> None:
        # Publishers may run on another thread's loop.
        loop.call_soon_threadsafe(queue.put_nowait, event)

    unsubscribe = store.subscribe(session_id, _on_event)

    async def _forward() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(event.model_dump())

    await websocket.send_json({"type": "subscribed", "session_id": session_id})
    forwarder = asyncio.create_task(_forward())
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "detail": "invalid_json"})
                continue
            if isinstance(payload, dict) and str(payload.get("type", "")).strip().lower() == "ping":
                await websocket.send_json({"type": "pong", "session_id": session_id})
    except WebSocketDisconnect:
        logger.debug("realtime client disconnected session_id=%s", session_id)
    finally:
        unsubscribe()
        forwarder.cancel()
