"""
Capability contract shared by the text-generation backends.

Two implementations exist: ``OllamaBackend`` (local) and ``OpenAIBackend``
(remote).  They satisfy ``GenerationBackend`` structurally; neither inherits
from it.  Each one owns its prompts and its response decoding, so every
operation returns domain values rather than raw model text.

Operations raise subclasses of ``studyspace.services.errors.GenerationError``.
"""
from __future__ import annotations

import dataclasses
from typing import List, Protocol, runtime_checkable


@dataclasses.dataclass(frozen=True)
class Flashcard:
    front: str
    back: str


@dataclasses.dataclass(frozen=True)
class QuizQuestion:
    question: str
    options: List[str]
    correct_index: int


@dataclasses.dataclass(frozen=True)
class KeyTerm:
    term: str
    definition: str


@runtime_checkable
class GenerationBackend(Protocol):
    """The nine operations every backend provides."""

    async def generate_summary(self, context: str) -> str: ...

    async def generate_flashcards(self, context: str) -> List[Flashcard]: ...

    async def generate_quiz(self, context: str) -> List[QuizQuestion]: ...

    async def generate_key_terms(self, context: str) -> List[KeyTerm]: ...

    async def generate_main_question(self, context: str) -> str: ...

    async def generate_insights(self, context: str) -> str: ...

    async def generate_argument_counterargument(self, context: str) -> str: ...

    async def generate_content_outline(self, context: str) -> str: ...

    async def answer_question(self, context: str, question: str) -> str: ...


# ---------------------------------------------------------------------------
# Output contracts shared by both backends' prompts
# ---------------------------------------------------------------------------

SUMMARY_RULES = """\
- Plain text only (no markdown)
- Exactly 2 or 3 lines
- About 18–28 words total
- No headings, no bullets, no quotes
- No extra commentary"""

MAIN_QUESTION_RULES = """\
- Plain text only (no markdown)
- One line only
- Max 120 characters
- Do not include a label like "Main Question:" (the UI already shows it)"""

INSIGHTS_RULES = """\
- 4 to 8 bullets
- Each bullet max 110 characters
- Each bullet must start with "- "
- Do not include a title like "Insights" (the UI already shows it)
- No extra sections"""

ARGUMENT_RULES = """\
Argument: (2–4 short sentences)
Counterargument: (2–4 short sentences)

Rules:
- Plain text only (no markdown)
- Keep total under ~900 characters"""

OUTLINE_RULES = """\
- 6 to 14 bullets total (including sub-bullets)
- Short phrases, no long paragraphs
- Use "- " for bullets and "  - " for sub-bullets
- Do not include a title like "Outline" (the UI already shows it)"""

ANSWER_RULES = """\
- Be direct and specific
- 1–3 short paragraphs OR up to 6 bullets (only if it helps clarity)
- If the content does not contain enough information, give a best-effort general answer BUT start with: "Not in files:" (keep it brief).
- Do NOT add extra sections, titles, benchmarks, or "Please let me know…" style lines
- Keep the entire answer under ~600 characters"""
