from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

SessionStatus = Literal["draft", "review", "finalized"]
Speaker = Literal["provider", "patient"]
ChunkSyncState = Literal["pending", "saved", "failed"]
StageStatus = Literal["pending", "running", "succeeded", "failed"]
DetailLevel = Literal["low", "medium", "high"]


class Session(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    patient_name: str = ""
    scheduled_at: Optional[str] = None
    status: SessionStatus = "draft"
    template_id: str = "soap"
    context: str = ""
    generated_note: Optional[str] = None
    note_json: Optional[Dict[str, Any]] = None
    created_at: str
    updated_at: str


class TranscriptChunk(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    session_id: str
    sequence: int = Field(ge=0)
    speaker: Speaker
    text: str
    created_at: str


class ChunkStats(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_chunks: int = 0
    saved_chunks: int = 0
    pending_chunks: int = 0
    failed_chunks: int = 0
    average_latency_ms: float = 0.0


class StageDescriptor(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    required: bool
    status: StageStatus = "pending"
    error: Optional[str] = None


class WorkflowState(BaseModel):
    model_config = ConfigDict(extra="forbid")

    is_running: bool = False
    stages: List[StageDescriptor] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class NoteGenerationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    transcript: str
    context: str = ""
    detail_level: DetailLevel = "high"
    template_id: str = "soap"


class NoteGenerationResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    note: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


class PipelineResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    note: Optional[str] = None
    note_json: Optional[Dict[str, Any]] = None
    tasks: List[Dict[str, Any]] = Field(default_factory=list)
    codes: List[Dict[str, Any]] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


AuditEventType = Literal[
    "SESSION_CREATED",
    "SESSION_UPDATED",
    "CAPTURE_STARTED",
    "CAPTURE_STOPPED",
    "CAPTURE_MAX_DURATION",
    "CHUNK_SAVED",
    "CHUNK_FAILED",
    "PIPELINE_STARTED",
    "STAGE_FAILED",
    "PIPELINE_DONE",
    "ERROR",
]


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    session_id: str
    type: AuditEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None


RealtimeEventType = Literal["transcript_chunk_inserted", "session_updated"]


class RealtimeEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: RealtimeEventType
    session_id: str
    record: Dict[str, Any] = Field(default_factory=dict)


RealtimeHandler = Callable[[RealtimeEvent], None]


class ChunkPersistenceAPI(Protocol):
    async def upsert_chunk(self, chunk: TranscriptChunk) -> Optional[bool]: ...

    async def list_chunks(self, session_id: str) -> List[TranscriptChunk]: ...


class SessionAPI(Protocol):
    async def get(self, session_id: str) -> Session: ...

    async def update(self, session_id: str, fields: Dict[str, Any]) -> Session: ...


class RealtimeChannel(Protocol):
    def subscribe(self, session_id: str, handler: RealtimeHandler) -> Callable[[], None]: ...


class NoteGenerationService(Protocol):
    async def generate_note(self, request: NoteGenerationRequest) -> NoteGenerationResponse: ...


class TaskExtractionService(Protocol):
    async def extract_tasks(self, session_id: str, note_text: str) -> List[Dict[str, Any]]: ...


class CodeSuggestionService(Protocol):
    async def suggest_codes(
        self, session_id: str, note_text: str, region: str = "US"
    ) -> List[Dict[str, Any]]: ...


SleepFn = Callable[[float], Awaitable[None]]
