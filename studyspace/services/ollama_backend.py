"""
Local generation backend: Ollama /api/generate.

Small local models handle JSON poorly, so structured kinds ask for simple
delimited text (``Front:``/``Back:``, ``Q:``/``A)``/``Correct:``,
``Term: Definition``) that ``output_parser`` reads back.  Flashcards and
quiz go through one bounded reformat retry (``repair.parse_with_repair``).

Overflow handling
-----------------
A local model has a small context window.  When a prompt is too large, or
the model errors or answers with nothing, the operation is retried once on
a compact bullet digest of the same context.  If the digest itself cannot be
produced, the raw context is hard-truncated instead.  An unreachable server
is never retried.

Public API
----------
OllamaBackend()                          satisfies GenerationBackend
OllamaBackend.compact_summarize(text)   -> str
OllamaBackend.digest_document(text)     -> str
OllamaBackend.check_health()            -> bool
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

import httpx

from studyspace.config import settings
from studyspace.services.errors import (
    BackendUnavailable,
    EmptyOutput,
    LocalModelError,
    ParseFailure,
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
from studyspace.services.output_parser import parse_flashcards, parse_key_terms, parse_quiz
from studyspace.services.repair import FLASHCARD_MIN, QUIZ_MIN, parse_with_repair

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

_SUMMARY_PROMPT = f"""\
Write a concise summary based only on the content below.

Output rules:
{SUMMARY_RULES}

Content:
{{context}}
"""

_FLASHCARD_FORMAT = """\
Front: <question or prompt, max 80 characters>
Back: <short answer, max 160 characters>
---"""

_FLASHCARDS_PROMPT = f"""\
Create 10 to 20 study flashcards from the content below.
Write every card in exactly this format, with a line of three dashes after each card:

{_FLASHCARD_FORMAT}

Rules:
- Prefer concrete facts and definitions
- No numbering, no markdown, no extra commentary

Content:
{{context}}
"""

_QUIZ_FORMAT = """\
Q: <question, max 120 characters>
A) <option>
B) <option>
C) <option>
D) <option>
Correct: <letter>
---"""

_QUIZ_PROMPT = f"""\
Create 6 to 12 multiple-choice questions from the content below.
Write every question in exactly this format, with a line of three dashes after each one:

{_QUIZ_FORMAT}

Rules:
- 3 to 5 options per question, exactly one correct
- Each option max 60 characters
- No markdown, no extra commentary

Content:
{{context}}
"""

_KEY_TERMS_PROMPT = """\
List 10 to 20 key terms from the content below with short definitions.
Write one term per line in exactly this format:

Photosynthesis: How plants turn light into chemical energy.

Rules:
- The term comes first, then a colon, then the definition
- Term max 32 characters; definition 1-2 short sentences, max 160 characters
- Do not write the words "Term" or "Definition"
- No comparisons, percentages or benchmark results
- No numbering, no markdown, no extra commentary

Content:
{context}
"""

_MAIN_QUESTION_PROMPT = f"""\
Write the single most important question the content below answers or raises.

Output rules:
{MAIN_QUESTION_RULES}

Content:
{{context}}
"""

_INSIGHTS_PROMPT = f"""\
List the most useful insights from the content below.

Output rules:
{INSIGHTS_RULES}

Content:
{{context}}
"""

_ARGUMENT_PROMPT = f"""\
Identify the central argument of the content below and the strongest counterargument.

Output exactly in this shape:
{ARGUMENT_RULES}

Content:
{{context}}
"""

_OUTLINE_PROMPT = f"""\
Write a structured outline of the content below.

Output rules:
{OUTLINE_RULES}

Content:
{{context}}
"""

_ANSWER_PROMPT = f"""\
Answer the question using the content below first.

Output rules (plain text, no markdown):
{ANSWER_RULES}

Content:
{{context}}

Question:
{{question}}
"""

_REFORMAT_PROMPT = """\
Rewrite the text below so that it follows this format exactly.
Keep the same information. Output only the rewritten text.

Format:
{format}

Text:
{raw}
"""

_COMPACT_PROMPT = """\
Condense the content below into 8 to 15 short bullet points.
Keep names, definitions, numbers and key claims. Each bullet starts with "- ".
Output only the bullets.

Content:
{context}
"""


class OllamaBackend:
    """
    Local backend via Ollama /api/generate.

    Limits concurrency to MAX_CONCURRENT simultaneous model calls; a local
    server processes one request at a time anyway.
    """

    MAX_CONCURRENT: int = 1
    LLM_TIMEOUT: float = float(settings.OLLAMA_TIMEOUT)
    TEMPERATURE: float = 0.2

    # num_predict per kind of call
    TEXT_TOKENS: int = 400
    STRUCTURED_TOKENS: int = 1800
    ANSWER_TOKENS: int = 500
    COMPACT_TOKENS: int = 600

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.base_url = settings.OLLAMA_BASE_URL.rstrip("/")
        self.model = settings.OLLAMA_LLM_MODEL
        self.num_ctx = settings.OLLAMA_NUM_CTX
        self.prompt_max_chars = settings.LOCAL_PROMPT_MAX_CHARS
        self.fallback_chars = settings.LOCAL_FALLBACK_CHARS
        self.digest_input_max_chars = settings.DIGEST_INPUT_MAX_CHARS
        self.timeout = httpx.Timeout(self.LLM_TIMEOUT, connect=10.0)
        self._transport = transport
        self._semaphore = asyncio.Semaphore(self.MAX_CONCURRENT)

    # ------------------------------------------------------------------
    # GenerationBackend: plain-text kinds
    # ------------------------------------------------------------------

    async def generate_summary(self, context: str) -> str:
        return await self._text_kind(_SUMMARY_PROMPT, context)

    async def generate_main_question(self, context: str) -> str:
        return await self._text_kind(_MAIN_QUESTION_PROMPT, context)

    async def generate_insights(self, context: str) -> str:
        return await self._text_kind(_INSIGHTS_PROMPT, context)

    async def generate_argument_counterargument(self, context: str) -> str:
        return await self._text_kind(_ARGUMENT_PROMPT, context)

    async def generate_content_outline(self, context: str) -> str:
        return await self._text_kind(_OUTLINE_PROMPT, context)

    async def answer_question(self, context: str, question: str) -> str:
        question = question.strip()

        async def run(ctx: str) -> str:
            prompt = _ANSWER_PROMPT.format(context=ctx, question=question)
            return await self._generate(prompt, self.ANSWER_TOKENS)

        overhead = len(_ANSWER_PROMPT) + len(question)
        return await self._with_degrade(context, overhead, run)

    # ------------------------------------------------------------------
    # GenerationBackend: structured kinds
    # ------------------------------------------------------------------

    async def generate_flashcards(self, context: str) -> List[Flashcard]:
        async def run(ctx: str) -> List[Flashcard]:
            raw = await self._generate(_FLASHCARDS_PROMPT.format(context=ctx), self.STRUCTURED_TOKENS)
            return await parse_with_repair(
                raw, parse_flashcards, FLASHCARD_MIN,
                reformat=lambda r: self._reformat(r, _FLASHCARD_FORMAT),
                label="flashcards",
            )

        return await self._with_degrade(context, len(_FLASHCARDS_PROMPT), run)

    async def generate_quiz(self, context: str) -> List[QuizQuestion]:
        async def run(ctx: str) -> List[QuizQuestion]:
            raw = await self._generate(_QUIZ_PROMPT.format(context=ctx), self.STRUCTURED_TOKENS)
            return await parse_with_repair(
                raw, parse_quiz, QUIZ_MIN,
                reformat=lambda r: self._reformat(r, _QUIZ_FORMAT),
                label="quiz questions",
            )

        return await self._with_degrade(context, len(_QUIZ_PROMPT), run)

    async def generate_key_terms(self, context: str) -> List[KeyTerm]:
        async def run(ctx: str) -> List[KeyTerm]:
            raw = await self._generate(_KEY_TERMS_PROMPT.format(context=ctx), self.STRUCTURED_TOKENS)
            terms = parse_key_terms(raw)
            if not terms:
                logger.warning("generate_key_terms: no terms parsed. Preview: %s", raw[:200])
                raise ParseFailure("Could not read any key terms from the model's response.")
            return terms

        return await self._with_degrade(context, len(_KEY_TERMS_PROMPT), run)

    # ------------------------------------------------------------------
    # Digests
    # ------------------------------------------------------------------

    async def compact_summarize(self, text: str) -> str:
        """Condense *text* into a short bullet digest."""
        text = text.strip()[: self.digest_input_max_chars]
        if not text:
            raise EmptyOutput("Nothing to summarize.")
        return await self._generate(_COMPACT_PROMPT.format(context=text), self.COMPACT_TOKENS)

    async def digest_document(self, text: str) -> str:
        """Per-document digest used to build the local generation context."""
        return await self.compact_summarize(text)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def check_health(self) -> bool:
        """True when the server answers and the configured model is pulled."""
        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
        except httpx.HTTPError as exc:
            logger.warning("Ollama health check failed: %s", exc)
            return False
        if resp.status_code != 200:
            return False
        try:
            models = resp.json().get("models", [])
        except ValueError:
            return False
        names = {m.get("name", "") for m in models if isinstance(m, dict)}
        return self.model in names or f"{self.model}:latest" in names

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _text_kind(self, template: str, context: str) -> str:
        async def run(ctx: str) -> str:
            return await self._generate(template.format(context=ctx), self.TEXT_TOKENS)

        return await self._with_degrade(context, len(template), run)

    async def _with_degrade(
        self,
        context: str,
        overhead: int,
        run: Callable[[str], Awaitable[T]],
    ) -> T:
        """
        Run *run(context)*; on overflow or a model failure, retry once on a
        compacted context.  BackendUnavailable always propagates.
        """
        if len(context) + overhead > self.prompt_max_chars:
            logger.info(
                "Prompt of %d chars exceeds %d; compacting context first",
                len(context) + overhead, self.prompt_max_chars,
            )
            return await run(await self._compact_context(context))

        try:
            return await run(context)
        except (LocalModelError, EmptyOutput) as e:
            logger.warning("Local model failed (%s); retrying on a compacted context", e.message)
            return await run(await self._compact_context(context))

    async def _compact_context(self, context: str) -> str:
        try:
            return await self.compact_summarize(context)
        except (LocalModelError, EmptyOutput) as e:
            logger.warning(
                "Could not compact context (%s); truncating to %d chars",
                e.message, self.fallback_chars,
            )
            return context[: self.fallback_chars].rstrip()

    async def _reformat(self, raw: str, fmt: str) -> str:
        prompt = _REFORMAT_PROMPT.format(format=fmt, raw=raw.strip()[: self.prompt_max_chars])
        return await self._generate(prompt, self.STRUCTURED_TOKENS)

    async def _generate(self, prompt: str, max_tokens: int) -> str:
        """
        POST to Ollama /api/generate and return the trimmed response text.

        Raises BackendUnavailable when the server cannot be reached,
        LocalModelError on timeouts and non-200 responses, and EmptyOutput
        when the model answers with nothing.
        """
        async with self._semaphore:
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    resp = await client.post(
                        f"{self.base_url}/api/generate",
                        json={
                            "model": self.model,
                            "prompt": prompt,
                            "stream": False,
                            "options": {
                                "num_predict": max_tokens,
                                "num_ctx": self.num_ctx,
                                "temperature": self.TEMPERATURE,
                            },
                        },
                    )
            except httpx.TimeoutException:
                logger.error("_generate: request timed out after %.0f s", self.LLM_TIMEOUT)
                raise LocalModelError("The local model timed out.")
            except httpx.ConnectError as exc:
                logger.error("_generate: connection error: %s", exc)
                raise BackendUnavailable()
            except httpx.HTTPError as exc:
                logger.error("_generate: transport error: %s", exc)
                raise LocalModelError(f"Local model request failed: {exc}")

        if resp.status_code != 200:
            logger.error("_generate: Ollama returned HTTP %d: %s", resp.status_code, resp.text[:300])
            raise LocalModelError(_ollama_error(resp) or f"The local model returned HTTP {resp.status_code}.")

        try:
            text = resp.json().get("response", "")
        except ValueError:
            logger.error("_generate: non-JSON body: %s", resp.text[:300])
            raise LocalModelError("The local model returned an unreadable response.")

        text = (text or "").strip()
        if not text:
            raise EmptyOutput()
        return text


def _ollama_error(resp: httpx.Response) -> Optional[str]:
    try:
        data = resp.json()
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"].strip() or None
    return None
