"""
Question endpoints.

Route summary
-------------
POST   /api/spaces/{space_id}/questions                — ask (answered in the background)
GET    /api/spaces/{space_id}/questions                — list questions, oldest first
POST   /api/spaces/{space_id}/questions/answer-pending — answer every unfinished question now
POST   /api/questions/{question_id}/answer             — answer one question now
DELETE /api/questions/{question_id}                    — delete question
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studyspace.config import settings
from studyspace.database import get_db
from studyspace.dependencies.spaces import get_question_service, get_space
from studyspace.models.database_models import Space, SpaceQuestion
from studyspace.models.schemas import AnswerSweepResponse, QuestionCreate, QuestionResponse
from studyspace.services.question_answering import QuestionAnsweringService

logger = logging.getLogger(__name__)

router = APIRouter()


def _not_found(question_id: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Question {question_id} not found.",
    )


@router.post(
    "/spaces/{space_id}/questions",
    response_model=QuestionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def ask_question(
    body: QuestionCreate,
    space: Space = Depends(get_space),
    service: QuestionAnsweringService = Depends(get_question_service),
) -> QuestionResponse:
    """Store the question as pending and start answering it."""
    question = await service.ask(space.id, body.question)
    if settings.AUTO_GENERATE:
        service.answer_in_background(question.id)
    return QuestionResponse.model_validate(question)


@router.get("/spaces/{space_id}/questions", response_model=List[QuestionResponse])
async def list_questions(
    space: Space = Depends(get_space),
    db: AsyncSession = Depends(get_db),
) -> List[QuestionResponse]:
    result = await db.execute(
        select(SpaceQuestion)
        .where(SpaceQuestion.space_id == space.id)
        .order_by(SpaceQuestion.created_at, SpaceQuestion.id)
    )
    return [QuestionResponse.model_validate(q) for q in result.scalars().all()]


@router.post("/spaces/{space_id}/questions/answer-pending", response_model=AnswerSweepResponse)
async def answer_pending(
    space: Space = Depends(get_space),
    service: QuestionAnsweringService = Depends(get_question_service),
) -> AnswerSweepResponse:
    sweep = await service.answer_pending_questions(space.id)
    return AnswerSweepResponse(
        space_id=sweep.space_id,
        backend=sweep.backend,
        answered=sweep.answered,
        failed=sweep.failed,
        skipped=sweep.skipped,
    )


@router.post("/questions/{question_id}/answer", response_model=QuestionResponse)
async def answer_one(
    question_id: int,
    service: QuestionAnsweringService = Depends(get_question_service),
) -> QuestionResponse:
    question = await service.answer_question(question_id)
    if question is None:
        raise _not_found(question_id)
    return QuestionResponse.model_validate(question)


@router.delete("/questions/{question_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
async def delete_question(
    question_id: int,
    db: AsyncSession = Depends(get_db),
) -> None:
    question = await db.get(SpaceQuestion, question_id)
    if question is None:
        raise _not_found(question_id)
    await db.delete(question)
    await db.commit()
    logger.info("Deleted question id=%d", question_id)
