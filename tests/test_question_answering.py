"""Tests for one-shot question answering and its recovery rules."""
import asyncio

import pytest
from sqlalchemy import update

from studyspace.models.database_models import BackendKind, QuestionStatus, SpaceQuestion
from studyspace.services.credentials import CredentialHealth
from studyspace.services.errors import InvalidCredential
from studyspace.services.question_answering import NO_CONTENT_MESSAGE, REMOTE_SWEEP_CONCURRENCY
from tests.conftest import make_space


async def _set_question(session_factory, question_id, **values):
    async with session_factory() as db:
        await db.execute(
            update(SpaceQuestion).where(SpaceQuestion.id == question_id).values(**values)
        )
        await db.commit()


@pytest.mark.asyncio
async def test_question_is_answered_from_space_content(session_factory, question_service, local_backend):
    space_id = await make_space(session_factory)
    question = await question_service.ask(space_id, "What do plants do?")
    assert question.status == QuestionStatus.PENDING

    answered = await question_service.answer_question(question.id)

    assert answered.status == QuestionStatus.ANSWERED
    assert answered.answer == "Answer from local."
    assert answered.error_message is None
    assert answered.claim_token == 1
    assert local_backend.contexts["answer"] == "# Notes\nPlants convert light into energy."


@pytest.mark.asyncio
async def test_blank_question_fails_without_calling_backend(session_factory, question_service, local_backend):
    space_id = await make_space(session_factory)
    question = await question_service.ask(space_id, "   ")

    failed = await question_service.answer_question(question.id)

    assert failed.status == QuestionStatus.FAILED
    assert failed.error_message == "Question is empty."
    assert local_backend.calls == []


@pytest.mark.asyncio
async def test_space_without_content_fails_question(session_factory, question_service, local_backend):
    space_id = await make_space(session_factory, documents=())
    question = await question_service.ask(space_id, "Anything?")

    failed = await question_service.answer_question(question.id)

    assert failed.status == QuestionStatus.FAILED
    assert failed.error_message == NO_CONTENT_MESSAGE
    assert local_backend.calls == []


@pytest.mark.asyncio
async def test_blank_answer_fails_question(session_factory, question_service, local_backend):
    local_backend.answer = "  \n "
    space_id = await make_space(session_factory)
    question = await question_service.ask(space_id, "Why?")

    failed = await question_service.answer_question(question.id)

    assert failed.status == QuestionStatus.FAILED
    assert failed.error_message == "The model returned an empty answer."
    assert failed.answer is None


@pytest.mark.asyncio
async def test_remote_space_uses_remote_backend(
    session_factory, question_service, monitor, local_backend, remote_backend
):
    monitor.set_key("sk-test")
    space_id = await make_space(session_factory, backend=BackendKind.REMOTE)
    question = await question_service.ask(space_id, "Why?")

    answered = await question_service.answer_question(question.id)

    assert answered.answer == "Answer from remote."
    assert local_backend.calls == []
    assert remote_backend.contexts["answer"] == "Plants convert light into energy."


@pytest.mark.asyncio
async def test_rejected_key_fails_question_and_invalidates_credential(
    session_factory, question_service, monitor, remote_backend
):
    monitor.set_key("sk-revoked")
    remote_backend.errors["answer"] = InvalidCredential("Incorrect API key provided")
    space_id = await make_space(session_factory, backend=BackendKind.REMOTE)
    question = await question_service.ask(space_id, "Why?")

    failed = await question_service.answer_question(question.id)

    assert failed.status == QuestionStatus.FAILED
    assert failed.error_message == "Incorrect API key provided"
    assert monitor.status == CredentialHealth.INVALID


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_interrupted_question_with_stored_answer_is_completed(
    session_factory, question_service, local_backend
):
    space_id = await make_space(session_factory)
    question = await question_service.ask(space_id, "Why?")
    await _set_question(
        session_factory, question.id,
        status=QuestionStatus.ANSWERING, answer="Stored answer.", claim_token=3,
    )

    answered = await question_service.answer_question(question.id)

    assert answered.status == QuestionStatus.ANSWERED
    assert answered.answer == "Stored answer."
    assert local_backend.calls == []


@pytest.mark.asyncio
async def test_interrupted_question_without_answer_is_reprocessed(
    session_factory, question_service, local_backend
):
    space_id = await make_space(session_factory)
    question = await question_service.ask(space_id, "Why?")
    await _set_question(session_factory, question.id, status=QuestionStatus.ANSWERING, claim_token=2)

    answered = await question_service.answer_question(question.id)

    assert answered.status == QuestionStatus.ANSWERED
    assert answered.claim_token == 3
    assert local_backend.calls == ["answer"]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [QuestionStatus.ANSWERED, QuestionStatus.FAILED])
async def test_terminal_questions_are_left_alone(session_factory, question_service, local_backend, status):
    space_id = await make_space(session_factory)
    question = await question_service.ask(space_id, "Why?")
    await _set_question(session_factory, question.id, status=status, answer="Kept.")

    result = await question_service.answer_question(question.id)

    assert result.status == status
    assert result.answer == "Kept."
    assert local_backend.calls == []


@pytest.mark.asyncio
async def test_missing_question_returns_none(question_service):
    assert await question_service.answer_question(999) is None


@pytest.mark.asyncio
async def test_concurrent_answers_call_backend_once(session_factory, question_service, local_backend):
    local_backend.delay = 0.02
    space_id = await make_space(session_factory)
    question = await question_service.ask(space_id, "Why?")

    await asyncio.gather(
        question_service.answer_question(question.id),
        question_service.answer_question(question.id),
    )

    assert local_backend.calls == ["answer"]


@pytest.mark.asyncio
async def test_answer_in_background(session_factory, question_service):
    space_id = await make_space(session_factory)
    question = await question_service.ask(space_id, "Why?")

    task = question_service.answer_in_background(question.id)
    answered = await task

    assert answered.status == QuestionStatus.ANSWERED


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_local_sweep_answers_pending_questions_in_order(
    session_factory, question_service, local_backend
):
    space_id = await make_space(session_factory)
    first = await question_service.ask(space_id, "One?")
    blank = await question_service.ask(space_id, " ")
    third = await question_service.ask(space_id, "Three?")
    done = await question_service.ask(space_id, "Done?")
    await _set_question(session_factory, done.id, status=QuestionStatus.ANSWERED, answer="Yes.")

    result = await question_service.answer_pending_questions(space_id)

    assert result.backend == BackendKind.LOCAL
    assert result.answered == [first.id, third.id]
    assert result.failed == [blank.id]
    assert local_backend.calls == ["answer", "answer"]
    assert local_backend.max_active == 1


@pytest.mark.asyncio
async def test_remote_sweep_runs_concurrently(session_factory, question_service, monitor, remote_backend):
    monitor.set_key("sk-test")
    remote_backend.delay = 0.2
    space_id = await make_space(session_factory, backend=BackendKind.REMOTE)
    ids = [(await question_service.ask(space_id, f"Q{i}?")).id for i in range(3)]

    result = await question_service.answer_pending_questions(space_id)

    assert result.backend == BackendKind.REMOTE
    assert sorted(result.answered) == sorted(ids)
    assert remote_backend.max_active == 3


@pytest.mark.asyncio
async def test_remote_sweep_concurrency_is_bounded(session_factory, question_service, monitor, remote_backend):
    monitor.set_key("sk-test")
    remote_backend.delay = 0.1
    space_id = await make_space(session_factory, backend=BackendKind.REMOTE)
    ids = [(await question_service.ask(space_id, f"Q{i}?")).id for i in range(6)]

    result = await question_service.answer_pending_questions(space_id)

    assert sorted(result.answered) == sorted(ids)
    assert remote_backend.max_active == REMOTE_SWEEP_CONCURRENCY


@pytest.mark.asyncio
async def test_sweep_with_nothing_pending(session_factory, question_service):
    space_id = await make_space(session_factory)
    result = await question_service.answer_pending_questions(space_id)
    assert result.answered == [] and result.failed == [] and result.backend is None
