"""Tests for the OpenAI backend over an in-memory httpx transport."""
import json

import httpx
import pytest

from studyspace.services.errors import (
    EmptyOutput,
    InvalidCredential,
    MissingCredential,
    RemoteAPIError,
    ValidationFailure,
)
from studyspace.services.openai_backend import OpenAIBackend, decode_output_text


def _response_body(text: str) -> dict:
    return {
        "output": [
            {"type": "reasoning", "content": []},
            {"type": "message", "content": [{"type": "output_text", "text": text}]},
        ]
    }


class Recorder:
    """MockTransport handler returning a fixed response and keeping requests."""

    def __init__(self, status_code=200, body=None, text=None, exc=None):
        self.status_code = status_code
        self.body = body
        self.text = text
        self.exc = exc
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.exc is not None:
            raise self.exc
        if self.text is not None:
            return httpx.Response(self.status_code, text=self.text)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


def _backend(handler, key="sk-test") -> OpenAIBackend:
    return OpenAIBackend(key_provider=lambda: key, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_summary_posts_system_prompt_and_context():
    handler = Recorder(body=_response_body("  A short summary.\nSecond line.  "))
    backend = _backend(handler)

    text = await backend.generate_summary("Plants convert light.")

    assert text == "A short summary.\nSecond line."
    request = handler.requests[0]
    assert request.url.path.endswith("/responses")
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = handler.last_json
    assert body["input"][0]["role"] == "system"
    assert body["input"][1] == {"role": "user", "content": "Plants convert light."}


@pytest.mark.asyncio
async def test_answer_formats_content_and_question():
    handler = Recorder(body=_response_body("Because."))
    backend = _backend(handler)

    assert await backend.answer_question("Some notes", "  Why?  ") == "Because."
    assert handler.last_json["input"][1]["content"] == "CONTENT:\nSome notes\n\nQUESTION:\nWhy?"


@pytest.mark.asyncio
async def test_structured_kinds_decode_json():
    cards = {"cards": [{"front": "Q", "back": "A"}]}
    backend = _backend(Recorder(body=_response_body("```json\n" + json.dumps(cards) + "\n```")))
    (card,) = await backend.generate_flashcards("ctx")
    assert (card.front, card.back) == ("Q", "A")

    bad_quiz = {"questions": [{"question": "Q?", "options": ["a", "b"], "correctIndex": 0}]}
    backend = _backend(Recorder(body=_response_body(json.dumps(bad_quiz))))
    with pytest.raises(ValidationFailure):
        await backend.generate_quiz("ctx")


@pytest.mark.asyncio
async def test_missing_key_raises_before_any_request():
    handler = Recorder(body=_response_body("unused"))
    backend = _backend(handler, key="  ")
    with pytest.raises(MissingCredential):
        await backend.generate_summary("ctx")
    assert handler.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [401, 403])
async def test_auth_errors_are_invalid_credential(status_code):
    body = {"error": {"message": "Incorrect API key provided"}}
    backend = _backend(Recorder(status_code=status_code, body=body))
    with pytest.raises(InvalidCredential) as exc_info:
        await backend.generate_summary("ctx")
    assert exc_info.value.message == "Incorrect API key provided"


@pytest.mark.asyncio
async def test_other_http_errors_are_remote_errors():
    backend = _backend(Recorder(status_code=429, body={"error": {"message": "Rate limit reached"}}))
    with pytest.raises(RemoteAPIError) as exc_info:
        await backend.generate_summary("ctx")
    assert exc_info.value.message == "Rate limit reached"

    backend = _backend(Recorder(status_code=502, text="bad gateway"))
    with pytest.raises(RemoteAPIError) as exc_info:
        await backend.generate_summary("ctx")
    assert exc_info.value.message == "Bad Gateway"


@pytest.mark.asyncio
async def test_transport_failures_are_remote_errors():
    backend = _backend(Recorder(exc=httpx.ConnectError("connection refused")))
    with pytest.raises(RemoteAPIError) as exc_info:
        await backend.generate_summary("ctx")
    assert exc_info.value.message.startswith("Could not reach OpenAI")

    backend = _backend(Recorder(exc=httpx.ReadTimeout("slow")))
    with pytest.raises(RemoteAPIError) as exc_info:
        await backend.generate_summary("ctx")
    assert exc_info.value.message == "OpenAI request timed out."


@pytest.mark.asyncio
async def test_blank_or_invalid_body_is_empty_output():
    backend = _backend(Recorder(body=_response_body("   ")))
    with pytest.raises(EmptyOutput):
        await backend.generate_summary("ctx")

    backend = _backend(Recorder(text="<html>oops</html>"))
    with pytest.raises(EmptyOutput):
        await backend.generate_summary("ctx")


@pytest.mark.asyncio
async def test_validate_key():
    handler = Recorder(body=_response_body("OK"))
    backend = _backend(handler, key=None)
    result = await backend.validate_key("sk-candidate")
    assert result.valid is True
    assert handler.requests[0].headers["Authorization"] == "Bearer sk-candidate"
    assert handler.last_json["max_output_tokens"] == 16

    backend = _backend(Recorder(status_code=401, body={"error": {"message": "Bad key"}}), key=None)
    result = await backend.validate_key("sk-bad")
    assert result.valid is False
    assert result.message == "Bad key"

    backend = _backend(Recorder(status_code=500, body={}), key=None)
    with pytest.raises(RemoteAPIError):
        await backend.validate_key("sk-any")


def test_decode_output_text_prefers_output_text():
    data = {
        "output": [
            {"content": [{"type": "reasoning_text", "text": "thinking"}]},
            {"content": [{"type": "output_text", "text": "final"}]},
        ]
    }
    assert decode_output_text(data) == "final"
    assert decode_output_text({"output": [{"content": [{"type": "other", "text": "only"}]}]}) == "only"
    assert decode_output_text({"nothing": True}) == ""
