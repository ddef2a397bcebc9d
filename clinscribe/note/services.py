from __future__ import annotations

"""
HTTP clients for the hosted note-generation, task-extraction and code-suggestion functions.

Design intent:
- Keep the wire shape of the hosted functions in one place.
- Run blocking `requests` calls off the event loop so capture is never stalled.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests

from clinscribe.internal_core.config import ScribeConfig
from clinscribe.internal_core.contracts import NoteGenerationRequest, NoteGenerationResponse

logger = logging.getLogger(__name__)

_CONNECT_TIMEOUT_SECONDS = 5.0


class FunctionInvocationError(RuntimeError):
    """Raised when a hosted function is unreachable or answers with an error payload."""

    def __init__(self, function_name: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{function_name}: {message}")
        self.function_name = function_name
        self.status_code = status_code


class HostedFunctionsClient:
    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout_sec: float = 60.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_sec = float(timeout_sec)
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, cfg: ScribeConfig) -> "HostedFunctionsClient":
        if not cfg.SCRIBE_FUNCTIONS_BASE_URL:
            raise ValueError("SCRIBE_FUNCTIONS_BASE_URL is not configured")
        return cls(
            cfg.SCRIBE_FUNCTIONS_BASE_URL,
            api_key=cfg.SCRIBE_FUNCTIONS_API_KEY,
            timeout_sec=cfg.SCRIBE_FUNCTIONS_TIMEOUT_SECONDS,
        )

    def invoke(self, function_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/functions/v1/{function_name}"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = self._session.post(
                url,
                json=payload,
                headers=headers,
                timeout=(_CONNECT_TIMEOUT_SECONDS, self.timeout_sec),
            )
        except requests.Timeout as exc:
            raise FunctionInvocationError(function_name, f"timed out after {self.timeout_sec:.0f}s") from exc
        except requests.RequestException as exc:
            raise FunctionInvocationError(function_name, f"request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise FunctionInvocationError(
                function_name, f"non-JSON response (HTTP {response.status_code})", response.status_code
            )
        if response.status_code >= 400 or not data.get("success", False):
            raise FunctionInvocationError(function_name, _error_message(data), response.status_code)
        return data

    async def invoke_async(self, function_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self.invoke, function_name, payload)


def _error_message(data: Dict[str, Any]) -> str:
    error = data.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or "function failed")
    if isinstance(error, str) and error:
        return error
    return "function failed"


class HostedNoteGenerationService:
    def __init__(self, client: HostedFunctionsClient) -> None:
        self._client = client

    async def generate_note(self, request: NoteGenerationRequest) -> NoteGenerationResponse:
        payload = {
            "session_id": request.session_id,
            "transcript_text": request.transcript,
            "detail_level": request.detail_level,
            "template": request.template_id,
        }
        if request.context:
            payload["context"] = request.context
        try:
            data = await self._client.invoke_async("generate-note", payload)
        except FunctionInvocationError as exc:
            logger.warning("note generation failed session_id=%s error=%s", request.session_id, exc)
            return NoteGenerationResponse(success=False, errors=[str(exc)])
        note = data.get("note")
        if not isinstance(note, str) or not note.strip():
            return NoteGenerationResponse(success=False, errors=["generate-note returned no note"])
        warnings = [str(item) for item in data.get("warnings") or []]
        return NoteGenerationResponse(success=True, note=note, errors=warnings)


class HostedTaskExtractionService:
    def __init__(self, client: HostedFunctionsClient) -> None:
        self._client = client

    async def extract_tasks(self, session_id: str, note_text: str) -> List[Dict[str, Any]]:
        data = await self._client.invoke_async(
            "extract-tasks", {"session_id": session_id, "note_text": note_text}
        )
        return [item for item in data.get("tasks") or [] if isinstance(item, dict)]


class HostedCodeSuggestionService:
    def __init__(self, client: HostedFunctionsClient) -> None:
        self._client = client

    async def suggest_codes(
        self, session_id: str, note_text: str, region: str = "US"
    ) -> List[Dict[str, Any]]:
        data = await self._client.invoke_async(
            "suggest-codes", {"session_id": session_id, "note_text": note_text, "region": region}
        )
        return [item for item in data.get("codes") or [] if isinstance(item, dict)]
