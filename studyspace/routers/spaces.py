"""
Space management endpoints.

Route summary
-------------
POST   /api/spaces               — create space (blocks seeded from its template)
GET    /api/spaces               — list spaces, newest first
GET    /api/spaces/{space_id}    — space detail
PATCH  /api/spaces/{space_id}    — rename, change template or backend preference
DELETE /api/spaces/{space_id}    — delete space (cascades)
"""
import logging
from typing import Dict, List

from fastapi import APIRouter, Depends, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from studyspace.database import get_db
from studyspace.dependencies.spaces import (
    get_credential_monitor,
    get_orchestrator,
    get_space,
)
from studyspace.models.database_models import Document, Space
from studyspace.models.schemas import SpaceCreate, SpaceResponse, SpaceUpdate
from studyspace.services.backend_resolver import resolve_backend
from studyspace.services.credentials import CredentialHealthMonitor
from studyspace.services.orchestrator import GenerationOrchestrator
from studyspace.utils.helpers import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_response(space: Space, document_count: int, monitor: CredentialHealthMonitor) -> SpaceResponse:
    return SpaceResponse(
        id=space.id,
        name=space.name,
        template=space.template,
        backend_preference=space.backend_preference,
        effective_backend=resolve_backend(space.backend_preference, monitor.status),
        document_count=document_count,
        created_at=space.created_at,
        updated_at=space.updated_at,
    )


async def _document_count(db: AsyncSession, space_id: int) -> int:
    result = await db.execute(select(func.count(Document.id)).where(Document.space_id == space_id))
    return result.scalar() or 0


@router.post("", response_model=SpaceResponse, status_code=status.HTTP_201_CREATED)
async def create_space(
    body: SpaceCreate,
    db: AsyncSession = Depends(get_db),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    monitor: CredentialHealthMonitor = Depends(get_credential_monitor),
) -> SpaceResponse:
    """Create a new space and seed one idle block per template kind."""
    now = utcnow()
    space = Space(
        name=body.name,
        template=body.template,
        backend_preference=body.backend_preference,
        created_at=now,
        updated_at=now,
    )
    db.add(space)
    await db.commit()

    await orchestrator.lifecycle.seed_blocks_if_needed(space.id)
    logger.info("Created space id=%d name=%r template=%s", space.id, space.name, space.template.value)
    return _to_response(space, 0, monitor)


@router.get("", response_model=List[SpaceResponse])
async def list_spaces(
    db: AsyncSession = Depends(get_db),
    monitor: CredentialHealthMonitor = Depends(get_credential_monitor),
) -> List[SpaceResponse]:
    """List all spaces, most recently updated first."""
    result = await db.execute(select(Space).order_by(Space.updated_at.desc(), Space.id.desc()))
    spaces = result.scalars().all()

    # Batch-fetch document counts
    space_ids = [s.id for s in spaces]
    doc_counts: Dict[int, int] = {}
    if space_ids:
        dc_result = await db.execute(
            select(Document.space_id, func.count(Document.id).label("cnt"))
            .where(Document.space_id.in_(space_ids))
            .group_by(Document.space_id)
        )
        doc_counts = {row.space_id: row.cnt for row in dc_result}

    return [_to_response(s, doc_counts.get(s.id, 0), monitor) for s in spaces]


@router.get("/{space_id}", response_model=SpaceResponse)
async def get_space_detail(
    space: Space = Depends(get_space),
    db: AsyncSession = Depends(get_db),
    monitor: CredentialHealthMonitor = Depends(get_credential_monitor),
) -> SpaceResponse:
    return _to_response(space, await _document_count(db, space.id), monitor)


@router.patch("/{space_id}", response_model=SpaceResponse)
async def update_space(
    body: SpaceUpdate,
    space: Space = Depends(get_space),
    db: AsyncSession = Depends(get_db),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    monitor: CredentialHealthMonitor = Depends(get_credential_monitor),
) -> SpaceResponse:
    """
    Update a space.  Changing the template seeds the blocks the new template
    needs; blocks of the old template are kept.
    """
    template_changed = body.template is not None and body.template != space.template

    if body.name is not None:
        space.name = body.name
    if body.template is not None:
        space.template = body.template
    if body.backend_preference is not None:
        space.backend_preference = body.backend_preference
    space.updated_at = utcnow()
    await db.commit()

    if template_changed:
        await orchestrator.lifecycle.seed_blocks_if_needed(space.id)
        logger.info("Space %d: template changed to %s", space.id, space.template.value)

    return _to_response(space, await _document_count(db, space.id), monitor)


@router.delete("/{space_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
async def delete_space(
    space: Space = Depends(get_space),
    db: AsyncSession = Depends(get_db),
) -> None:
    """Delete a space with its documents, blocks and questions."""
    await db.delete(space)
    await db.commit()
    logger.info("Deleted space id=%d name=%r", space.id, space.name)
