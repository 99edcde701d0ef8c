"""
One-shot question answering over a Space's content.

    pending ──claim──▶ answering ──▶ answered | failed

A question is claimed with a compare-and-swap on ``(status, claim_token)``
and the token is bumped on every claim, so when two sweeps race on the same
row only the latest claimant can record the outcome.  A question found in
``answering`` with an answer already stored was interrupted between the
backend call and the final write; it is completed without calling the
backend again.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import List, Optional, Set

from sqlalchemy import select, update

from studyspace.database import AsyncSessionLocal
from studyspace.models.database_models import (
    BackendKind,
    QuestionStatus,
    Space,
    SpaceQuestion,
)
from studyspace.services.backend_resolver import resolve_backend
from studyspace.services.credentials import CredentialHealthMonitor, credential_monitor
from studyspace.services.errors import (
    EmptyAnswer,
    EmptyContext,
    EmptyQuestion,
    GenerationError,
    InvalidCredential,
    describe_failure,
)
from studyspace.services.space_context import SpaceContextService
from studyspace.utils.helpers import utcnow

logger = logging.getLogger(__name__)

NO_CONTENT_MESSAGE = "No content available to answer from. Add files or text to this Space."
# Concurrent remote answers per sweep
REMOTE_SWEEP_CONCURRENCY = 3


@dataclasses.dataclass
class AnswerSweepResult:
    space_id: int
    backend: Optional[BackendKind] = None
    answered: List[int] = dataclasses.field(default_factory=list)
    failed: List[int] = dataclasses.field(default_factory=list)
    skipped: List[int] = dataclasses.field(default_factory=list)


class QuestionAnsweringService:
    def __init__(
        self,
        local_backend,
        remote_backend,
        health_monitor: Optional[CredentialHealthMonitor] = None,
        session_factory=None,
    ):
        self.local_backend = local_backend
        self.remote_backend = remote_backend
        self.health_monitor = health_monitor or credential_monitor
        self._session_factory = session_factory or AsyncSessionLocal
        self.contexts = SpaceContextService(session_factory=self._session_factory)
        # Question ids being answered in this process
        self._in_flight: Set[int] = set()
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def ask(self, space_id: int, text: str) -> SpaceQuestion:
        """Store a new pending question."""
        now = utcnow()
        async with self._session_factory() as db:
            question = SpaceQuestion(
                space_id=space_id,
                question=text,
                status=QuestionStatus.PENDING,
                claim_token=0,
                created_at=now,
                updated_at=now,
            )
            db.add(question)
            await db.commit()
            await db.refresh(question)
        logger.info("Space %d: question %d created", space_id, question.id)
        return question

    async def answer_question(
        self, question_id: int, backend: Optional[BackendKind] = None
    ) -> Optional[SpaceQuestion]:
        """
        Drive one question to a terminal state.  Never raises.

        Returns the question as stored afterwards, or None if it does not
        exist.  A question already being answered in this process is
        returned as-is.
        """
        if question_id in self._in_flight:
            return await self._load(question_id)

        self._in_flight.add(question_id)
        try:
            return await self._answer(question_id, backend)
        except Exception:
            logger.error("Question %d: answering crashed", question_id, exc_info=True)
            return await self._load(question_id)
        finally:
            self._in_flight.discard(question_id)

    def answer_in_background(self, question_id: int) -> asyncio.Task:
        """Schedule ``answer_question`` on the running loop."""
        task = asyncio.create_task(self.answer_question(question_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def answer_pending_questions(self, space_id: int) -> AnswerSweepResult:
        """
        Answer every unfinished question of a Space, oldest first.

        Sequential on the local backend; on the remote one at most
        ``REMOTE_SWEEP_CONCURRENCY`` questions are answered at a time.
        """
        result = AnswerSweepResult(space_id=space_id)

        async with self._session_factory() as db:
            space = await db.get(Space, space_id)
            if space is None:
                return result
            preference = space.backend_preference
            rows = await db.execute(
                select(SpaceQuestion.id)
                .where(
                    SpaceQuestion.space_id == space_id,
                    SpaceQuestion.status.in_([QuestionStatus.PENDING, QuestionStatus.ANSWERING]),
                )
                .order_by(SpaceQuestion.created_at, SpaceQuestion.id)
            )
            question_ids = list(rows.scalars().all())

        if not question_ids:
            return result

        backend = resolve_backend(preference, self.health_monitor.status)
        result.backend = backend

        todo = []
        for qid in question_ids:
            if qid in self._in_flight:
                result.skipped.append(qid)
            else:
                todo.append(qid)

        logger.info(
            "Space %d: answering %d question(s) with %s backend",
            space_id, len(todo), backend.value,
        )

        if backend == BackendKind.LOCAL:
            outcomes = []
            for qid in todo:
                outcomes.append(await self.answer_question(qid, backend))
        else:
            limit = asyncio.Semaphore(REMOTE_SWEEP_CONCURRENCY)

            async def bounded(qid: int):
                async with limit:
                    return await self.answer_question(qid, backend)

            outcomes = await asyncio.gather(*(bounded(qid) for qid in todo))

        for qid, question in zip(todo, outcomes):
            if question is None:
                continue
            if question.status == QuestionStatus.ANSWERED:
                result.answered.append(qid)
            elif question.status == QuestionStatus.FAILED:
                result.failed.append(qid)
            else:
                result.skipped.append(qid)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _answer(
        self, question_id: int, backend: Optional[BackendKind]
    ) -> Optional[SpaceQuestion]:
        question = await self._load(question_id)
        if question is None:
            return None

        if question.status in (QuestionStatus.ANSWERED, QuestionStatus.FAILED):
            return question

        if question.status == QuestionStatus.ANSWERING and (question.answer or "").strip():
            await self._write(
                question_id,
                expected_status=QuestionStatus.ANSWERING,
                expected_token=question.claim_token,
                status=QuestionStatus.ANSWERED,
                answer=question.answer.strip(),
                error_message=None,
            )
            logger.info("Question %d: recovered stored answer", question_id)
            return await self._load(question_id)

        token = question.claim_token + 1
        claimed = await self._write(
            question_id,
            expected_status=question.status,
            expected_token=question.claim_token,
            status=QuestionStatus.ANSWERING,
            claim_token=token,
            answer=None,
            error_message=None,
        )
        if not claimed:
            logger.info("Question %d: claimed elsewhere", question_id)
            return await self._load(question_id)

        try:
            answer = await self._produce_answer(question, backend)
        except Exception as e:
            message = describe_failure(e)
            if isinstance(e, InvalidCredential):
                self.health_monitor.mark_invalid(e.message)
            if isinstance(e, GenerationError):
                logger.warning("Question %d failed: %s", question_id, message)
            else:
                logger.error("Question %d crashed: %s", question_id, e, exc_info=True)
            await self._write(
                question_id,
                expected_status=QuestionStatus.ANSWERING,
                expected_token=token,
                status=QuestionStatus.FAILED,
                error_message=message,
            )
        else:
            await self._write(
                question_id,
                expected_status=QuestionStatus.ANSWERING,
                expected_token=token,
                status=QuestionStatus.ANSWERED,
                answer=answer,
                error_message=None,
            )
            logger.info("Question %d answered", question_id)

        return await self._load(question_id)

    async def _produce_answer(self, question: SpaceQuestion, backend: Optional[BackendKind]) -> str:
        text = (question.question or "").strip()
        if not text:
            raise EmptyQuestion()

        if backend is None:
            async with self._session_factory() as db:
                space = await db.get(Space, question.space_id)
            preference = space.backend_preference if space is not None else BackendKind.LOCAL
            backend = resolve_backend(preference, self.health_monitor.status)

        context = await self.contexts.build_for_backend(question.space_id, backend)
        if context.is_empty:
            raise EmptyContext(NO_CONTENT_MESSAGE)

        impl = self.remote_backend if backend == BackendKind.REMOTE else self.local_backend
        answer = (await impl.answer_question(context.text, text) or "").strip()
        if not answer:
            raise EmptyAnswer()
        return answer

    async def _load(self, question_id: int) -> Optional[SpaceQuestion]:
        async with self._session_factory() as db:
            return await db.get(SpaceQuestion, question_id)

    async def _write(
        self,
        question_id: int,
        expected_status: QuestionStatus,
        expected_token: int,
        **values,
    ) -> bool:
        values["updated_at"] = utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                update(SpaceQuestion)
                .where(
                    SpaceQuestion.id == question_id,
                    SpaceQuestion.status == expected_status,
                    SpaceQuestion.claim_token == expected_token,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1


def _build_default_service() -> QuestionAnsweringService:
    from studyspace.services.orchestrator import orchestrator

    return QuestionAnsweringService(
        local_backend=orchestrator.local_backend,
        remote_backend=orchestrator.remote_backend,
        health_monitor=orchestrator.health_monitor,
    )


# Process-wide instance sharing the orchestrator's backends
question_service = _build_default_service()
