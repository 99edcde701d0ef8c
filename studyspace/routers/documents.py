"""
Document endpoints.

Text extraction itself happens outside this service; the ingestion
pipeline registers a file document and later writes the extraction result
through ``PUT /api/documents/{id}/extraction``.  Pasted text is usable as
soon as it is created.

Route summary
-------------
POST   /api/spaces/{space_id}/documents          — add pasted text or register a file
GET    /api/spaces/{space_id}/documents          — list documents, oldest first
PUT    /api/documents/{document_id}/extraction   — write extraction result
DELETE /api/documents/{document_id}              — delete document
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studyspace.config import settings
from studyspace.database import get_db
from studyspace.dependencies.spaces import get_orchestrator, get_space
from studyspace.models.database_models import (
    DigestStatus,
    Document,
    ExtractionStatus,
    SourceType,
    Space,
)
from studyspace.models.schemas import DocumentCreate, DocumentResponse, ExtractionUpdate
from studyspace.services.generation_manager import generation_manager, start_generation
from studyspace.services.orchestrator import GenerationOrchestrator
from studyspace.utils.helpers import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_response(doc: Document) -> DocumentResponse:
    return DocumentResponse(
        id=doc.id,
        space_id=doc.space_id,
        name=doc.name,
        source_type=doc.source_type,
        extraction_status=doc.extraction_status,
        extraction_error=doc.extraction_error,
        digest_status=doc.digest_status,
        text_length=len(doc.extracted_text or ""),
        created_at=doc.created_at,
    )


def _kick_generation(orchestrator: GenerationOrchestrator, space_id: int) -> None:
    """New content arrived: start a background pass unless one is running."""
    if not settings.AUTO_GENERATE:
        return
    if generation_manager.is_running(space_id) or orchestrator.is_running(space_id):
        logger.info("Space %d: generation already running; new content picked up next pass", space_id)
        return
    start_generation(orchestrator, space_id)


async def _get_document(db: AsyncSession, document_id: int) -> Document:
    doc = await db.get(Document, document_id)
    if doc is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Document {document_id} not found.",
        )
    return doc


@router.post(
    "/spaces/{space_id}/documents",
    response_model=DocumentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_document(
    body: DocumentCreate,
    space: Space = Depends(get_space),
    db: AsyncSession = Depends(get_db),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> DocumentResponse:
    """Add pasted text (usable immediately) or register a file awaiting extraction."""
    is_paste = body.source_type == SourceType.PASTE
    text = (body.text or "").strip()
    if is_paste and not text:
        raise HTTPException(status_code=400, detail="Pasted text is empty.")

    doc = Document(
        space_id=space.id,
        name=body.name.strip(),
        source_type=body.source_type,
        extracted_text=text if is_paste else None,
        extraction_status=ExtractionStatus.COMPLETED if is_paste else ExtractionStatus.PENDING,
        digest_status=DigestStatus.PENDING,
        created_at=utcnow(),
    )
    db.add(doc)
    space.updated_at = utcnow()
    await db.commit()

    logger.info(
        "Space %d: document id=%d name=%r (%s, %d chars)",
        space.id, doc.id, doc.name, doc.source_type.value, len(text),
    )

    if is_paste:
        _kick_generation(orchestrator, space.id)
    return _to_response(doc)


@router.get("/spaces/{space_id}/documents", response_model=List[DocumentResponse])
async def list_documents(
    space: Space = Depends(get_space),
    db: AsyncSession = Depends(get_db),
) -> List[DocumentResponse]:
    result = await db.execute(
        select(Document)
        .where(Document.space_id == space.id)
        .order_by(Document.created_at, Document.id)
    )
    return [_to_response(d) for d in result.scalars().all()]


@router.put("/documents/{document_id}/extraction", response_model=DocumentResponse)
async def write_extraction(
    document_id: int,
    body: ExtractionUpdate,
    db: AsyncSession = Depends(get_db),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> DocumentResponse:
    """
    Record an extraction result.  A completed extraction replaces the
    document text and invalidates its digest.
    """
    doc = await _get_document(db, document_id)

    doc.extraction_status = body.status
    if body.status == ExtractionStatus.COMPLETED:
        doc.extracted_text = (body.text or "").strip()
        doc.extraction_error = None
        doc.digest_status = DigestStatus.PENDING
        doc.digest_text = None
        doc.digest_error = None
    elif body.status == ExtractionStatus.FAILED:
        doc.extraction_error = (body.error or "").strip() or "Text extraction failed."
    await db.commit()

    logger.info("Document %d: extraction %s", doc.id, doc.extraction_status.value)

    if body.status == ExtractionStatus.COMPLETED and doc.extracted_text:
        _kick_generation(orchestrator, doc.space_id)
    return _to_response(doc)


@router.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
async def delete_document(
    document_id: int,
    db: AsyncSession = Depends(get_db),
) -> None:
    doc = await _get_document(db, document_id)
    await db.delete(doc)
    await db.commit()
    logger.info("Deleted document id=%d name=%r", doc.id, doc.name)
