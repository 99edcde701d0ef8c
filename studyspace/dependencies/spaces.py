"""
Lookup and service dependencies for FastAPI routes.

Service providers are plain functions so tests can swap them through
``app.dependency_overrides``.
"""
from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from studyspace.database import get_db
from studyspace.models.database_models import Space
from studyspace.services.credentials import CredentialHealthMonitor, credential_monitor
from studyspace.services.orchestrator import GenerationOrchestrator, orchestrator
from studyspace.services.question_answering import QuestionAnsweringService, question_service

logger = logging.getLogger(__name__)


async def get_space(
    space_id: int,
    db: AsyncSession = Depends(get_db),
) -> Space:
    """Return the Space ORM object or raise 404."""
    space = await db.get(Space, space_id)
    if space is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Space {space_id} not found.",
        )
    return space


def get_orchestrator() -> GenerationOrchestrator:
    return orchestrator


def get_question_service() -> QuestionAnsweringService:
    return question_service


def get_credential_monitor() -> CredentialHealthMonitor:
    return credential_monitor
