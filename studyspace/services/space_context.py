"""
Space-level context assembly.

Remote backend: the raw extracted text of every usable document, FULL mode,
capped at CONTEXT_MAX_CHARS.

Local backend: each document's compact digest (its raw text when no digest
is available), BALANCED mode with name headers, capped at
LOCAL_CONTEXT_MAX_CHARS.  Digests are produced ahead of time by
``ensure_document_digests`` so every block kind reuses them.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import and_, or_, select, update

from studyspace.config import settings
from studyspace.database import AsyncSessionLocal
from studyspace.models.database_models import (
    BackendKind,
    DigestStatus,
    Document,
    ExtractionStatus,
)
from studyspace.services.context_builder import (
    ContextMode,
    ContextResult,
    SourceDocument,
    build_context,
)
from studyspace.services.errors import BackendUnavailable, GenerationError, describe_failure
from studyspace.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class SpaceContextService:
    def __init__(self, local_backend=None, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal
        self._local_backend = local_backend
        self.stale_after = timedelta(seconds=settings.GENERATING_STALE_AFTER_SECONDS)

    async def load_usable_documents(self, space_id: int) -> List[Document]:
        """Completed documents with non-blank text, oldest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Document)
                .where(
                    Document.space_id == space_id,
                    Document.extraction_status == ExtractionStatus.COMPLETED,
                    Document.extracted_text.is_not(None),
                )
                .order_by(Document.created_at, Document.id)
            )
            documents = result.scalars().all()
        return [d for d in documents if (d.extracted_text or "").strip()]

    async def has_usable_documents(self, space_id: int) -> bool:
        return bool(await self.load_usable_documents(space_id))

    async def build_for_backend(self, space_id: int, backend: BackendKind) -> ContextResult:
        documents = await self.load_usable_documents(space_id)

        if backend == BackendKind.REMOTE:
            sources = [SourceDocument(name=d.name, text=d.extracted_text) for d in documents]
            result = build_context(sources, ContextMode.FULL, settings.CONTEXT_MAX_CHARS)
        else:
            sources = [SourceDocument(name=d.name, text=_local_text(d)) for d in documents]
            result = build_context(
                sources,
                ContextMode.BALANCED,
                settings.LOCAL_CONTEXT_MAX_CHARS,
                include_headers=True,
            )

        logger.debug(
            "Space %d: %s context of %d chars from %d document(s)%s",
            space_id, backend.value, len(result.text), len(documents),
            " (truncated)" if result.truncated else "",
        )
        return result

    async def ensure_document_digests(self, space_id: int) -> int:
        """
        Produce a compact digest for every usable document that lacks one.

        Runs one document at a time.  Failures are stored on the document
        and never raised; if the local server is unreachable the remaining
        documents stay pending for a later pass.  Returns the number of
        digests written.
        """
        if self._local_backend is None:
            return 0

        written = 0
        for doc in await self.load_usable_documents(space_id):
            if doc.digest_status == DigestStatus.READY:
                continue
            if not await self._claim_digest(doc.id):
                continue

            text = (doc.extracted_text or "")[: settings.DIGEST_INPUT_MAX_CHARS]
            try:
                digest = await self._local_backend.digest_document(text)
            except BackendUnavailable:
                await self._finish_digest(doc.id, DigestStatus.PENDING, None, None)
                logger.warning("Space %d: local model unavailable, digests postponed", space_id)
                break
            except Exception as e:
                if not isinstance(e, GenerationError):
                    logger.error("Digest of document %d crashed", doc.id, exc_info=True)
                await self._finish_digest(doc.id, DigestStatus.FAILED, None, describe_failure(e))
                continue

            await self._finish_digest(doc.id, DigestStatus.READY, digest.strip(), None)
            written += 1

        if written:
            logger.info("Space %d: %d document digest(s) ready", space_id, written)
        return written

    async def _claim_digest(self, document_id: int) -> bool:
        now = utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    or_(
                        Document.digest_status == DigestStatus.PENDING,
                        and_(
                            Document.digest_status == DigestStatus.SUMMARIZING,
                            Document.digest_updated_at < now - self.stale_after,
                        ),
                    ),
                )
                .values(digest_status=DigestStatus.SUMMARIZING, digest_error=None, digest_updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1

    async def _finish_digest(
        self,
        document_id: int,
        status: DigestStatus,
        text: Optional[str],
        error: Optional[str],
    ) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.digest_status == DigestStatus.SUMMARIZING,
                )
                .values(digest_status=status, digest_text=text, digest_error=error, digest_updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()


def _local_text(doc: Document) -> str:
    if doc.digest_status == DigestStatus.READY and (doc.digest_text or "").strip():
        return doc.digest_text
    return doc.extracted_text or ""
