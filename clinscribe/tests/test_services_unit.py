import asyncio

import pytest
import requests

from clinscribe.internal_core.contracts import NoteGenerationRequest
from clinscribe.note.services import (
    FunctionInvocationError,
    HostedCodeSuggestionService,
    HostedFunctionsClient,
    HostedNoteGenerationService,
    HostedTaskExtractionService,
)


class _FakeResponse:
    def __init__(self, status_code: int, payload) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _FakeSession:
    def __init__(self, response=None, error: Exception = None) -> None:
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def _client(session: _FakeSession) -> HostedFunctionsClient:
    return HostedFunctionsClient(
        "https://functions.example.test/", api_key="anon-key", timeout_sec=30, session=session
    )


def test_generate_note_posts_function_payload() -> None:
    session = _FakeSession(_FakeResponse(200, {"success": True, "note": "```json {\"plan\": \"rest\"} ```"}))
    service = HostedNoteGenerationService(_client(session))
    request = NoteGenerationRequest(
        session_id="s1", transcript="Doctor: hi", detail_level="low", template_id="soap"
    )

    response = asyncio.run(service.generate_note(request))

    assert response.success is True
    assert response.note.startswith("```json")
    call = session.calls[0]
    assert call["url"] == "https://functions.example.test/functions/v1/generate-note"
    assert call["json"] == {
        "session_id": "s1",
        "transcript_text": "Doctor: hi",
        "detail_level": "low",
        "template": "soap",
    }
    assert call["headers"]["Authorization"] == "Bearer anon-key"
    assert call["timeout"] == (5.0, 30.0)


def test_generate_note_failure_becomes_unsuccessful_response() -> None:
    session = _FakeSession(
        _FakeResponse(500, {"success": False, "error": {"code": "GENERATION_ERROR", "message": "model overloaded"}})
    )
    service = HostedNoteGenerationService(_client(session))
    request = NoteGenerationRequest(session_id="s1", transcript="Doctor: hi")

    response = asyncio.run(service.generate_note(request))

    assert response.success is False
    assert response.errors == ["generate-note: model overloaded"]


def test_transport_errors_raise_function_invocation_error() -> None:
    client = _client(_FakeSession(error=requests.ConnectionError("refused")))
    with pytest.raises(FunctionInvocationError, match="request failed"):
        client.invoke("extract-tasks", {})

    client = _client(_FakeSession(error=requests.Timeout("slow")))
    with pytest.raises(FunctionInvocationError, match="timed out"):
        client.invoke("extract-tasks", {})

    client = _client(_FakeSession(_FakeResponse(502, ValueError("not json"))))
    with pytest.raises(FunctionInvocationError) as excinfo:
        client.invoke("extract-tasks", {})
    assert excinfo.value.status_code == 502


def test_task_and_code_services_return_dict_items() -> None:
    tasks_session = _FakeSession(
        _FakeResponse(200, {"success": True, "tasks": [{"title": "Order CBC"}, "junk"]})
    )
    codes_session = _FakeSession(
        _FakeResponse(200, {"success": True, "codes": [{"code": "R05.9", "system": "ICD-10-CM"}]})
    )

    tasks = asyncio.run(HostedTaskExtractionService(_client(tasks_session)).extract_tasks("s1", "note"))
    codes = asyncio.run(
        HostedCodeSuggestionService(_client(codes_session)).suggest_codes("s1", "note", region="UK")
    )

    assert tasks == [{"title": "Order CBC"}]
    assert codes == [{"code": "R05.9", "system": "ICD-10-CM"}]
    assert codes_session.calls[0]["json"]["region"] == "UK"
