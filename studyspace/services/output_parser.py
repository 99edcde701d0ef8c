"""
Parsers that turn free-form model output into validated study items.

Delimited text (local backend)
------------------------------
parse_flashcards(raw) -> List[Flashcard]      Front:/Back: records
parse_quiz(raw)       -> List[QuizQuestion]   Q:/A)-E)/Correct: records
parse_key_terms(raw)  -> List[KeyTerm]        "Term: Definition" lines

Bad records are dropped; good ones are kept.  Small models drift from the
requested format in predictable ways (bullets, numbering, bold labels,
blank lines, literal "Term"/"Definition" labels), and each parser absorbs
those.

JSON (remote backend)
---------------------
decode_flashcards_json / decode_quiz_json / decode_key_terms_json

Lenient about the wrapper (code fences, surrounding prose, trailing commas)
but strict about the values: one bad record fails the whole response with
``ValidationFailure``.

All functions here are synchronous and side-effect free.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from studyspace.services.errors import ParseFailure, ValidationFailure
from studyspace.services.generation_backend import Flashcard, KeyTerm, QuizQuestion
from studyspace.utils.helpers import normalize_whitespace, strip_list_marker, truncate_text

logger = logging.getLogger(__name__)

QUIZ_MIN_OPTIONS = 3
QUIZ_MAX_OPTIONS = 5
TERM_MAX_CHARS = 60
DEFINITION_MAX_CHARS = 160

_RECORD_DELIMITER_RE = re.compile(r"^(?:-{3,}|={3,}|\*{3,})$")
_EMPHASIS_RE = re.compile(r"(\*\*|__)")

_FRONT_RE = re.compile(r"^front\s*[:\-–]\s*(.*)$", re.IGNORECASE)
_BACK_RE = re.compile(r"^back\s*[:\-–]\s*(.*)$", re.IGNORECASE)

_QUESTION_RE = re.compile(r"^(?:q|question)\s*\d*\s*[:.)]\s*(.*)$", re.IGNORECASE)
_OPTION_RE = re.compile(r"^\(?([A-Fa-f])\s*[).:\]]\s*(.+)$")
_CORRECT_RE = re.compile(r"^(?:correct(?:\s+answer)?|answer)\s*[:\-–]\s*(.*)$", re.IGNORECASE)

_TERM_LABEL_RE = re.compile(r"^term\s*[:\-–]\s*(.*)$", re.IGNORECASE)
_DEFINITION_LABEL_RE = re.compile(r"^definition\s*[:\-–]\s*(.*)$", re.IGNORECASE)
_PAIR_DASH_RE = re.compile(r"\s+[-–—]\s+")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_BENCHMARK_RE = re.compile(
    r"\d+(?:\.\d+)?\s*%|\boutperform\w*|\bmatch(?:es|ed|ing)?\b|\bcompared (?:to|with)\b|\bbenchmark\w*",
    re.IGNORECASE,
)
_PERCENT_RE = re.compile(r"\d+(?:\.\d+)?\s*%")
_CLAUSE_BREAK_RE = re.compile(r"[,;:(–—]|\s-\s")


# ---------------------------------------------------------------------------
# Shared line handling
# ---------------------------------------------------------------------------

def _content_lines(raw: str) -> List[str]:
    """Non-blank, stripped lines with markdown emphasis removed."""
    lines: List[str] = []
    for line in (raw or "").splitlines():
        line = _EMPHASIS_RE.sub("", line).strip()
        if line:
            lines.append(line)
    return lines


def _is_delimiter(line: str) -> bool:
    return bool(_RECORD_DELIMITER_RE.match(line))


def _join(current: Optional[str], extra: str) -> str:
    if not current:
        return extra
    return f"{current} {extra}"


# ---------------------------------------------------------------------------
# Flashcards
# ---------------------------------------------------------------------------

def parse_flashcards(raw: str) -> List[Flashcard]:
    """
    Parse ``Front:`` / ``Back:`` records separated by ``---`` lines.

    A new ``Front:`` line also starts a new record.  Lines without a label
    continue the field above them.  Records missing either side are dropped.
    """
    cards: List[Flashcard] = []
    front: Optional[str] = None
    back: Optional[str] = None
    field: Optional[str] = None

    def flush() -> None:
        nonlocal front, back, field
        f = normalize_whitespace(front or "")
        b = normalize_whitespace(back or "")
        if f and b:
            cards.append(Flashcard(front=f, back=b))
        front, back, field = None, None, None

    for line in _content_lines(raw):
        if _is_delimiter(line):
            flush()
            continue
        line = strip_list_marker(line)
        if not line:
            continue

        m = _FRONT_RE.match(line)
        if m:
            if front is not None or back is not None:
                flush()
            front, field = m.group(1).strip(), "front"
            continue

        m = _BACK_RE.match(line)
        if m:
            if back is not None:
                flush()
            back, field = m.group(1).strip(), "back"
            continue

        if field == "front":
            front = _join(front, line)
        elif field == "back":
            back = _join(back, line)

    flush()
    logger.debug("parse_flashcards: %d card(s)", len(cards))
    return cards


# ---------------------------------------------------------------------------
# Quiz
# ---------------------------------------------------------------------------

class _QuizDraft:
    def __init__(self, question: str) -> None:
        self.question = question
        self.letters: List[str] = []
        self.options: List[str] = []
        self.correct: Optional[str] = None

    def build(self) -> Optional[QuizQuestion]:
        question = normalize_whitespace(self.question)
        options = [normalize_whitespace(o) for o in self.options]
        if not question or any(not o for o in options):
            return None
        if not QUIZ_MIN_OPTIONS <= len(options) <= QUIZ_MAX_OPTIONS:
            return None
        index = _resolve_correct_index(self.correct, self.letters, options)
        if index is None or not 0 <= index < len(options):
            return None
        return QuizQuestion(question=question, options=options, correct_index=index)


def _resolve_correct_index(value: Optional[str], letters: List[str], options: List[str]) -> Optional[int]:
    """Map a ``Correct:`` value (letter, 1-based number or option text) to an index."""
    if value is None:
        return None
    value = value.strip().rstrip(".")
    if not value:
        return None

    m = re.match(r"^\(?([A-Fa-f])\)?(?:[).:\s]|$)", value)
    if m:
        letter = m.group(1).upper()
        if letter in letters:
            return letters.index(letter)
        return ord(letter) - ord("A")

    m = re.match(r"^(\d+)\b", value)
    if m:
        return int(m.group(1)) - 1

    lowered = value.lower()
    for i, option in enumerate(options):
        if normalize_whitespace(option).lower() == lowered:
            return i
    return None


def parse_quiz(raw: str) -> List[QuizQuestion]:
    """
    Parse multiple-choice records::

        Q: What do plants convert light into?
        A) Water
        B) Chemical energy
        C) Soil
        D) Heat
        Correct: B
        ---

    Records are dropped when the question is missing, the option count is
    outside 3-5, or the correct option is missing or out of range.
    """
    questions: List[QuizQuestion] = []
    draft: Optional[_QuizDraft] = None

    def flush() -> None:
        nonlocal draft
        if draft is not None:
            built = draft.build()
            if built is not None:
                questions.append(built)
        draft = None

    for line in _content_lines(raw):
        if _is_delimiter(line):
            flush()
            continue
        line = strip_list_marker(line)
        if not line:
            continue

        m = _QUESTION_RE.match(line)
        if m:
            flush()
            draft = _QuizDraft(m.group(1).strip())
            continue

        if draft is None:
            continue

        m = _CORRECT_RE.match(line)
        if m:
            draft.correct = m.group(1)
            continue

        m = _OPTION_RE.match(line)
        if m and draft.correct is None:
            draft.letters.append(m.group(1).upper())
            draft.options.append(m.group(2).strip())
            continue

        # Continuation of the question text before any options appear
        if not draft.options:
            draft.question = _join(draft.question, line)

    flush()
    logger.debug("parse_quiz: %d question(s)", len(questions))
    return questions


# ---------------------------------------------------------------------------
# Key terms
# ---------------------------------------------------------------------------

def parse_key_terms(raw: str) -> List[KeyTerm]:
    """
    Parse one ``Term: Definition`` pair per line.

    Repairs the label-swap failure mode where the model writes the labels
    literally::

        Term: Photosynthesis
        Definition: Converts light to energy

    which becomes ``KeyTerm("Photosynthesis", "Converts light to energy")``.
    A bare ``Term: Definition`` header line is skipped.
    """
    lines = [
        strip_list_marker(line)
        for line in _content_lines(raw)
        if not _is_delimiter(line)
    ]
    terms: List[KeyTerm] = []
    seen: set = set()

    def add(term: str, definition: str) -> None:
        item = _clean_key_term(term, definition)
        if item is None:
            return
        key = item.term.lower()
        if key in seen:
            return
        seen.add(key)
        terms.append(item)

    i = 0
    while i < len(lines):
        line = lines[i]

        m = _TERM_LABEL_RE.match(line)
        if m:
            value = m.group(1).strip()
            if not value or value.lower().rstrip(".") == "definition":
                i += 1
                continue
            if i + 1 < len(lines):
                d = _DEFINITION_LABEL_RE.match(lines[i + 1])
                if d:
                    add(value, d.group(1))
                    i += 2
                    continue
            # "Term: X: Y" keeps the label but carries the pair inline
            pair = _split_pair(value)
            if pair:
                add(*pair)
            i += 1
            continue

        if _DEFINITION_LABEL_RE.match(line):
            # Orphan label with no preceding term
            i += 1
            continue

        pair = _split_pair(line)
        if pair:
            add(*pair)
        i += 1

    logger.debug("parse_key_terms: %d term(s)", len(terms))
    return terms


def _split_pair(line: str) -> Optional[Tuple[str, str]]:
    if ":" in line:
        term, definition = line.split(":", 1)
    else:
        parts = _PAIR_DASH_RE.split(line, maxsplit=1)
        if len(parts) != 2:
            return None
        term, definition = parts
    return term, definition


def _clean_key_term(term: str, definition: str) -> Optional[KeyTerm]:
    term = normalize_whitespace(term).strip("\"'`").rstrip(":.").strip()
    definition = strip_benchmark_language(normalize_whitespace(definition))
    if not term or not definition or len(term) > TERM_MAX_CHARS:
        return None
    return KeyTerm(term=term, definition=truncate_text(definition, DEFINITION_MAX_CHARS, "…"))


def strip_benchmark_language(definition: str) -> str:
    """
    Remove trailing comparison / benchmark claims from a definition.

    Sentences from the first one mentioning a percentage or phrases like
    "outperforms" / "matches" onward are dropped.  When the very first
    sentence carries the claim, it is cut back to the last clause break
    before the claim; a first sentence that is nothing but a percentage
    claim empties the definition.
    """
    definition = definition.strip()
    if not definition:
        return ""

    sentences = _SENTENCE_SPLIT_RE.split(definition)
    kept: List[str] = []
    for sentence in sentences:
        m = _BENCHMARK_RE.search(sentence)
        if not m:
            kept.append(sentence)
            continue
        if kept:
            break
        head = sentence[:m.start()]
        breaks = list(_CLAUSE_BREAK_RE.finditer(head))
        if breaks:
            kept.append(head[:breaks[-1].start()].rstrip(" ,;:-–—(") + ".")
        elif not _PERCENT_RE.search(sentence):
            kept.append(sentence)
        break

    return " ".join(kept).strip()


# ---------------------------------------------------------------------------
# Lenient JSON
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```[A-Za-z]*[ \t]*\n?(.*?)```", re.DOTALL)


def unwrap_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or *text* when unfenced."""
    m = _FENCE_RE.search(text)
    if m:
        return m.group(1).strip()
    return text.strip()


def extract_json_object(text: str) -> str:
    """
    Find the first complete, balanced ``{ … }`` object in *text*.
    String contents (and escaped quotes inside them) are skipped.
    Returns the matched fragment, or empty string if not found.
    """
    text = unwrap_code_fences(text or "")
    start = text.find("{")
    if start == -1:
        return ""

    depth = 0
    in_string = False
    escape_next = False

    for i, ch in enumerate(text[start:], start=start):
        if escape_next:
            escape_next = False
            continue
        if ch == "\\" and in_string:
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start: i + 1]
    return ""


def _fix_json_issues(text: str) -> str:
    """Repair the most common JSON mangling patterns from LLMs."""
    # Trailing commas before ] or }
    text = re.sub(r",(\s*[}\]])", r"\1", text)
    return text.strip()


def load_json_object(raw: str) -> Dict[str, Any]:
    """Decode the first JSON object in *raw*; raise ParseFailure otherwise."""
    fragment = extract_json_object(raw)
    if not fragment:
        logger.warning("load_json_object: no JSON object found. Preview: %s", (raw or "")[:200])
        raise ParseFailure("The model did not return the expected JSON.")

    for candidate in (fragment, _fix_json_issues(fragment)):
        try:
            value = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(value, dict):
            return value

    logger.warning("load_json_object: invalid JSON. Preview: %s", fragment[:200])
    raise ParseFailure("The model returned malformed JSON.")


def _required_list(obj: Dict[str, Any], key: str) -> List[Any]:
    items = obj.get(key)
    if not isinstance(items, list):
        raise ParseFailure(f'The model response is missing "{key}".')
    if not items:
        raise ValidationFailure(f'The model returned no {key}.')
    return items


def _required_text(item: Any, key: str) -> str:
    if not isinstance(item, dict):
        raise ParseFailure("The model returned an unexpected JSON shape.")
    value = item.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationFailure(f'The model returned an item with an empty "{key}".')
    return normalize_whitespace(value)


def decode_flashcards_json(raw: str) -> List[Flashcard]:
    """Decode ``{"cards": [{"front": …, "back": …}]}``."""
    obj = load_json_object(raw)
    return [
        Flashcard(front=_required_text(item, "front"), back=_required_text(item, "back"))
        for item in _required_list(obj, "cards")
    ]


def decode_quiz_json(raw: str) -> List[QuizQuestion]:
    """Decode ``{"questions": [{"question": …, "options": […], "correctIndex": n}]}``."""
    obj = load_json_object(raw)
    questions: List[QuizQuestion] = []
    for item in _required_list(obj, "questions"):
        question = _required_text(item, "question")

        raw_options = item.get("options")
        if not isinstance(raw_options, list):
            raise ValidationFailure("A quiz question has no options.")
        if any(not isinstance(o, str) or not o.strip() for o in raw_options):
            raise ValidationFailure("A quiz question has a blank option.")
        options = [normalize_whitespace(o) for o in raw_options]
        if not QUIZ_MIN_OPTIONS <= len(options) <= QUIZ_MAX_OPTIONS:
            raise ValidationFailure(
                f"A quiz question has {len(options)} options "
                f"(expected {QUIZ_MIN_OPTIONS}-{QUIZ_MAX_OPTIONS})."
            )

        index = item.get("correctIndex", item.get("correct_index"))
        if isinstance(index, bool) or not isinstance(index, int):
            raise ValidationFailure("A quiz question has no valid correct answer.")
        if not 0 <= index < len(options):
            raise ValidationFailure("A quiz question's correct answer is out of range.")

        questions.append(QuizQuestion(question=question, options=options, correct_index=index))
    return questions


def decode_key_terms_json(raw: str) -> List[KeyTerm]:
    """Decode ``{"terms": [{"term": …, "definition": …}]}``."""
    obj = load_json_object(raw)
    return [
        KeyTerm(
            term=_required_text(item, "term"),
            definition=truncate_text(_required_text(item, "definition"), DEFINITION_MAX_CHARS, "…"),
        )
        for item in _required_list(obj, "terms")
    ]
