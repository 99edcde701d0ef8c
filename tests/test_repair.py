"""Tests for the single-shot reformat loop used by the local backend."""
import pytest

from studyspace.services.errors import LocalModelError, ParseFailure
from studyspace.services.output_parser import parse_flashcards
from studyspace.services.repair import FLASHCARD_MIN, parse_with_repair


def _cards(n: int) -> str:
    return "\n---\n".join(f"Front: Q{i}\nBack: A{i}" for i in range(n))


class Reformatter:
    def __init__(self, output="", error=None):
        self.output = output
        self.error = error
        self.calls = 0

    async def __call__(self, raw: str) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.output


@pytest.mark.asyncio
async def test_enough_records_skip_reformat():
    reformat = Reformatter()
    cards = await parse_with_repair(_cards(FLASHCARD_MIN), parse_flashcards, FLASHCARD_MIN, reformat)
    assert len(cards) == FLASHCARD_MIN
    assert reformat.calls == 0


@pytest.mark.asyncio
async def test_reformat_result_wins_when_better():
    reformat = Reformatter(output=_cards(5))
    cards = await parse_with_repair(_cards(1), parse_flashcards, FLASHCARD_MIN, reformat)
    assert len(cards) == 5
    assert reformat.calls == 1


@pytest.mark.asyncio
async def test_first_attempt_kept_when_reformat_is_not_better():
    reformat = Reformatter(output=_cards(2))
    cards = await parse_with_repair(_cards(2), parse_flashcards, FLASHCARD_MIN, reformat)
    assert [c.front for c in cards] == ["Q0", "Q1"]
    assert reformat.calls == 1


@pytest.mark.asyncio
async def test_both_attempts_empty_raise_parse_failure():
    reformat = Reformatter(output="still nothing")
    with pytest.raises(ParseFailure):
        await parse_with_repair("nothing", parse_flashcards, FLASHCARD_MIN, reformat, label="flashcards")
    assert reformat.calls == 1


@pytest.mark.asyncio
async def test_reformat_error_keeps_partial_first_attempt():
    reformat = Reformatter(error=LocalModelError("timed out"))
    cards = await parse_with_repair(_cards(2), parse_flashcards, FLASHCARD_MIN, reformat)
    assert len(cards) == 2


@pytest.mark.asyncio
async def test_reformat_error_propagates_when_nothing_parsed():
    reformat = Reformatter(error=LocalModelError("timed out"))
    with pytest.raises(LocalModelError):
        await parse_with_repair("nothing", parse_flashcards, FLASHCARD_MIN, reformat)
