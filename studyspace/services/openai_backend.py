"""
Remote generation backend: OpenAI Responses API.

Every operation is a single POST to ``{OPENAI_BASE_URL}/responses`` with a
system prompt and the Space context as the user message.  Structured kinds
ask for strict JSON and are decoded by ``output_parser``'s lenient JSON path.

Public API
----------
OpenAIBackend(key_provider)                 satisfies GenerationBackend
OpenAIBackend.validate_key(key) -> KeyValidation
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from studyspace.config import settings
from studyspace.services.errors import (
    EmptyOutput,
    InvalidCredential,
    MissingCredential,
    RemoteAPIError,
)
from studyspace.services.generation_backend import (
    ANSWER_RULES,
    ARGUMENT_RULES,
    INSIGHTS_RULES,
    MAIN_QUESTION_RULES,
    OUTLINE_RULES,
    SUMMARY_RULES,
    Flashcard,
    KeyTerm,
    QuizQuestion,
)
from studyspace.services.output_parser import (
    decode_flashcards_json,
    decode_key_terms_json,
    decode_quiz_json,
)

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class KeyValidation:
    valid: bool
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------

_SUMMARY_PROMPT = f"""\
Write a concise summary based only on the provided content.

Output rules:
{SUMMARY_RULES}"""

_FLASHCARDS_PROMPT = """\
Create study flashcards from the content.
Return ONLY valid JSON with the exact shape:
{ "cards": [ { "front": "...", "back": "..." } ] }

Rules:
- 10 to 20 cards
- front: a single question or prompt, max 80 characters, no newlines
- back: a short answer, max 160 characters, no newlines
- Prefer concrete facts/definitions; avoid fluff
- No markdown, no extra keys, no surrounding text"""

_QUIZ_PROMPT = """\
Create a multiple-choice quiz from the content.
Return ONLY valid JSON with the exact shape:
{
  "questions": [
    { "question": "...", "options": ["..."], "correctIndex": 0 }
  ]
}

Rules:
- 6 to 12 questions
- Each question max 120 characters, no newlines
- options length must be 3 to 5
- each option max 60 characters
- correctIndex must be a valid index into options
- No markdown, no extra keys, no surrounding text"""

_KEY_TERMS_PROMPT = """\
Extract key terms and definitions from the content.
Return ONLY valid JSON with the exact shape:
{
  "terms": [
    { "term": "...", "definition": "..." }
  ]
}

Rules:
- 10 to 20 terms
- term max 32 characters, no newlines
- definition: 1-2 short sentences, max 160 characters, no newlines
- No markdown, no extra keys, no surrounding text"""

_MAIN_QUESTION_PROMPT = f"""\
Write the single most important question this content answers or raises.

Output rules:
{MAIN_QUESTION_RULES}"""

_INSIGHTS_PROMPT = f"""\
List the most useful insights from the content.

Output rules:
{INSIGHTS_RULES}"""

_ARGUMENT_PROMPT = f"""\
Identify the central argument of the content and the strongest counterargument.

Output exactly in this shape:
{ARGUMENT_RULES}"""

_OUTLINE_PROMPT = f"""\
Write a structured outline of the content.

Output rules:
{OUTLINE_RULES}"""

_ANSWER_PROMPT = f"""\
Answer the user's question using the provided content first.

Output rules (plain text, no markdown):
{ANSWER_RULES}"""

_ANSWER_INPUT = """\
CONTENT:
{context}

QUESTION:
{question}"""

_PING_PROMPT = "Reply with OK."
_PING_MAX_OUTPUT_TOKENS = 16


class OpenAIBackend:
    """
    Remote backend over the Responses API.

    *key_provider* is called on every request so a key changed at runtime
    takes effect immediately.  *transport* is handed to ``httpx.AsyncClient``
    and exists for tests.
    """

    def __init__(
        self,
        key_provider: Callable[[], Optional[str]],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = settings.OPENAI_BASE_URL.rstrip("/")
        self.model = settings.OPENAI_MODEL
        self.max_output_tokens = settings.OPENAI_MAX_OUTPUT_TOKENS
        self.timeout = httpx.Timeout(float(settings.OPENAI_TIMEOUT), connect=10.0)
        self._key_provider = key_provider
        self._transport = transport

    # ------------------------------------------------------------------
    # GenerationBackend
    # ------------------------------------------------------------------

    async def generate_summary(self, context: str) -> str:
        return await self._complete(_SUMMARY_PROMPT, context)

    async def generate_flashcards(self, context: str) -> List[Flashcard]:
        return decode_flashcards_json(await self._complete(_FLASHCARDS_PROMPT, context))

    async def generate_quiz(self, context: str) -> List[QuizQuestion]:
        return decode_quiz_json(await self._complete(_QUIZ_PROMPT, context))

    async def generate_key_terms(self, context: str) -> List[KeyTerm]:
        return decode_key_terms_json(await self._complete(_KEY_TERMS_PROMPT, context))

    async def generate_main_question(self, context: str) -> str:
        return await self._complete(_MAIN_QUESTION_PROMPT, context)

    async def generate_insights(self, context: str) -> str:
        return await self._complete(_INSIGHTS_PROMPT, context)

    async def generate_argument_counterargument(self, context: str) -> str:
        return await self._complete(_ARGUMENT_PROMPT, context)

    async def generate_content_outline(self, context: str) -> str:
        return await self._complete(_OUTLINE_PROMPT, context)

    async def answer_question(self, context: str, question: str) -> str:
        user = _ANSWER_INPUT.format(context=context, question=question.strip())
        return await self._complete(_ANSWER_PROMPT, user)

    # ------------------------------------------------------------------
    # Key validation
    # ------------------------------------------------------------------

    async def validate_key(self, key: str) -> KeyValidation:
        """
        Cheap authenticated ping.  A rejected key returns ``valid=False``;
        transport and server errors raise ``RemoteAPIError``.
        """
        try:
            await self._complete(
                _PING_PROMPT, "ping", api_key=key, max_output_tokens=_PING_MAX_OUTPUT_TOKENS,
                require_text=False,
            )
        except InvalidCredential as e:
            return KeyValidation(valid=False, message=e.message)
        except MissingCredential as e:
            return KeyValidation(valid=False, message=e.message)
        return KeyValidation(valid=True)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _complete(
        self,
        system_prompt: str,
        user_content: str,
        api_key: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        require_text: bool = True,
    ) -> str:
        """POST one Responses request and return the trimmed output text."""
        key = (api_key if api_key is not None else self._key_provider()) or ""
        key = key.strip()
        if not key:
            raise MissingCredential()

        body = {
            "model": self.model,
            "input": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            "max_output_tokens": max_output_tokens or self.max_output_tokens,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.base_url}/responses",
                    json=body,
                    headers={"Authorization": f"Bearer {key}"},
                )
        except httpx.TimeoutException:
            logger.error("OpenAI request timed out after %.0f s", self.timeout.read or 0)
            raise RemoteAPIError("OpenAI request timed out.")
        except httpx.HTTPError as exc:
            logger.error("OpenAI request failed: %s", exc)
            raise RemoteAPIError(f"Could not reach OpenAI: {exc}")

        if not 200 <= resp.status_code < 300:
            message = decode_error_message(resp) or resp.reason_phrase or f"HTTP {resp.status_code}"
            logger.error("OpenAI returned HTTP %d: %s", resp.status_code, message)
            if resp.status_code in (401, 403):
                raise InvalidCredential(message)
            raise RemoteAPIError(message)

        try:
            data = resp.json()
        except ValueError:
            logger.error("OpenAI returned a non-JSON body: %s", resp.text[:300])
            raise EmptyOutput("OpenAI returned an invalid response.")

        text = decode_output_text(data).strip()
        if not text and require_text:
            raise EmptyOutput()
        return text


def decode_output_text(data: Any) -> str:
    """
    Pull the generated text out of a Responses payload.

    Prefers the first non-empty ``output_text`` content item; falls back to
    the first non-empty ``text`` value of any content item.
    """
    if not isinstance(data, dict):
        return ""
    output = data.get("output")
    if not isinstance(output, list):
        return ""

    fallback = ""
    for item in output:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        if not isinstance(content, list):
            continue
        for part in content:
            if not isinstance(part, dict):
                continue
            text = part.get("text")
            if not isinstance(text, str) or not text.strip():
                continue
            if part.get("type") == "output_text":
                return text
            if not fallback:
                fallback = text
    return fallback


def decode_error_message(resp: httpx.Response) -> Optional[str]:
    """``error.message`` from the provider's JSON error envelope, if any."""
    try:
        data: Dict[str, Any] = resp.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return None
