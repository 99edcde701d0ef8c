"""
Deterministic, size-bounded text context from a Space's documents.

Two modes:

* ``BALANCED`` gives every document the same character budget
  (``max(1000, max_chars // n)``) so one long document cannot crowd out
  the others.
* ``FULL`` concatenates documents in order until the overall cap is hit
  and drops whatever does not fit.

Pure functions only: no I/O, no clock, no randomness.  The same input
always produces byte-identical output.
"""
from __future__ import annotations

import dataclasses
import enum
import logging
from typing import List, Sequence

logger = logging.getLogger(__name__)

DOCUMENT_SEPARATOR = "\n\n---\n\n"
MIN_DOCUMENT_BUDGET = 1000


class ContextMode(str, enum.Enum):
    BALANCED = "balanced"
    FULL = "full"


@dataclasses.dataclass(frozen=True)
class SourceDocument:
    """A usable document: display name plus its text."""

    name: str
    text: str


@dataclasses.dataclass(frozen=True)
class ContextResult:
    text: str
    truncated: bool

    @property
    def is_empty(self) -> bool:
        return not self.text


def build_context(
    documents: Sequence[SourceDocument],
    mode: ContextMode,
    max_chars: int,
    include_headers: bool = False,
) -> ContextResult:
    """
    Assemble *documents* into one context string.

    Args:
        documents: Documents in creation order.
        mode: BALANCED (per-document budget) or FULL (overall cap).
        max_chars: Character budget for the document text.
        include_headers: Prefix each document with a ``# <name>`` line.

    Returns:
        ContextResult(text, truncated).  Empty input, or input whose texts
        are all blank, yields ``ContextResult("", False)``.
    """
    usable = [
        SourceDocument(name=d.name, text=d.text.strip())
        for d in documents
        if d.text and d.text.strip()
    ]
    if not usable:
        return ContextResult(text="", truncated=False)

    if mode == ContextMode.BALANCED:
        parts, truncated = _balanced_parts(usable, max_chars)
    else:
        parts, truncated = _full_parts(usable, max_chars)

    sections: List[str] = []
    for doc, body in parts:
        if include_headers:
            sections.append(f"# {doc.name.strip() or 'Untitled'}\n{body}")
        else:
            sections.append(body)

    text = DOCUMENT_SEPARATOR.join(sections).strip()
    if truncated:
        logger.debug(
            "build_context: %s mode truncated %d document(s) to %d chars",
            mode.value,
            len(usable),
            len(text),
        )
    return ContextResult(text=text, truncated=truncated)


def document_budget(max_chars: int, document_count: int) -> int:
    """Per-document character budget used by BALANCED mode."""
    if document_count <= 0:
        return max(MIN_DOCUMENT_BUDGET, max_chars)
    return max(MIN_DOCUMENT_BUDGET, max_chars // document_count)


def _balanced_parts(docs: List[SourceDocument], max_chars: int):
    budget = document_budget(max_chars, len(docs))
    truncated = False
    parts = []
    for doc in docs:
        body = doc.text
        if len(body) > budget:
            body = body[:budget].rstrip()
            truncated = True
        parts.append((doc, body))
    return parts, truncated


def _full_parts(docs: List[SourceDocument], max_chars: int):
    truncated = False
    parts = []
    used = 0
    for index, doc in enumerate(docs):
        if index > 0:
            used += len(DOCUMENT_SEPARATOR)
        remaining = max_chars - used
        if remaining <= 0:
            truncated = True
            break
        if len(doc.text) <= remaining:
            parts.append((doc, doc.text))
            used += len(doc.text)
            continue
        # Cut the tail of the document that crosses the cap; drop the rest.
        body = doc.text[:remaining].rstrip()
        if body:
            parts.append((doc, body))
        truncated = True
        break
    return parts, truncated
