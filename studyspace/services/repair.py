"""
Bounded parse-and-repair for delimited model output.

If the first parse yields too few records, the model is asked once to
rewrite its own output in the expected format.  There is never a second
reformat call.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, TypeVar

from studyspace.services.errors import ParseFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

FLASHCARD_MIN = 4
QUIZ_MIN = 3


async def parse_with_repair(
    raw: str,
    parse: Callable[[str], List[T]],
    minimum: int,
    reformat: Callable[[str], Awaitable[str]],
    label: str = "items",
) -> List[T]:
    """
    Parse *raw*; below *minimum* records, reformat once and parse again.

    Returns whichever attempt produced more records (the first wins ties).
    Raises ParseFailure when both attempts produce nothing.  Errors raised
    by *reformat* itself propagate only when the first attempt was empty;
    otherwise the first attempt's records are kept.
    """
    first = parse(raw)
    if len(first) >= minimum:
        return first

    logger.info(
        "parse_with_repair: %d %s parsed (minimum %d), requesting one reformat",
        len(first), label, minimum,
    )
    try:
        reformatted = await reformat(raw)
    except Exception:
        if first:
            logger.warning(
                "parse_with_repair: reformat failed, keeping %d %s", len(first), label,
                exc_info=True,
            )
            return first
        raise

    second = parse(reformatted)
    logger.info("parse_with_repair: reformat produced %d %s", len(second), label)

    best = second if len(second) > len(first) else first
    if not best:
        raise ParseFailure(f"Could not read any {label} from the model's response.")
    return best
