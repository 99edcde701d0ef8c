"""
Block lifecycle: seeding and compare-and-swap status transitions.

    idle ──claim──▶ generating ──mark_ready──▶ ready
                        │
                        └──mark_failed──▶ failed

Every transition is a single conditional UPDATE in its own short
transaction, so two workers (tasks or processes) racing on the same block
cannot both win a claim, and a stale writer cannot overwrite a result.
Only ``reset_space`` moves a block out of ``ready``.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError

from studyspace.config import settings
from studyspace.database import AsyncSessionLocal
from studyspace.models.database_models import (
    BlockStatus,
    BlockType,
    GeneratedBlock,
    Space,
    TemplateType,
)
from studyspace.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Template → block kinds (declared order is the sequential generation order)
# ---------------------------------------------------------------------------

TEMPLATE_BLOCKS: Dict[TemplateType, List[BlockType]] = {
    TemplateType.LANGUAGE_LEARNING: [
        BlockType.SUMMARY, BlockType.KEY_TERMS, BlockType.FLASHCARDS, BlockType.QUIZ,
    ],
    TemplateType.LECTURE_NOTES: [
        BlockType.SUMMARY, BlockType.MAIN_QUESTION, BlockType.INSIGHTS,
        BlockType.KEY_TERMS, BlockType.CONTENT_OUTLINE,
    ],
    TemplateType.EXAM_PREP: [
        BlockType.SUMMARY, BlockType.MAIN_QUESTION, BlockType.FLASHCARDS,
        BlockType.QUIZ, BlockType.KEY_TERMS,
    ],
    TemplateType.RESEARCH_REVIEW: [
        BlockType.SUMMARY, BlockType.ARGUMENT_COUNTERARGUMENT, BlockType.INSIGHTS,
        BlockType.CONTENT_OUTLINE, BlockType.KEY_TERMS,
    ],
    TemplateType.MEETING_MINUTES: [
        BlockType.SUMMARY, BlockType.INSIGHTS, BlockType.KEY_TERMS, BlockType.CONTENT_OUTLINE,
    ],
    TemplateType.PROJECT_BRIEF: [
        BlockType.SUMMARY, BlockType.MAIN_QUESTION, BlockType.INSIGHTS,
        BlockType.CONTENT_OUTLINE, BlockType.KEY_TERMS,
    ],
    TemplateType.WRITING_ASSISTANT: [
        BlockType.SUMMARY, BlockType.MAIN_QUESTION, BlockType.ARGUMENT_COUNTERARGUMENT,
        BlockType.CONTENT_OUTLINE, BlockType.KEY_TERMS,
    ],
    TemplateType.QUICK_STUDY: [
        BlockType.SUMMARY, BlockType.KEY_TERMS, BlockType.QUIZ,
    ],
}


def blocks_for_template(template: TemplateType) -> List[BlockType]:
    return list(TEMPLATE_BLOCKS[TemplateType(template)])


class BlockLifecycle:
    """Conditional writes for GeneratedBlock rows."""

    def __init__(self, session_factory=None, stale_after_seconds: Optional[int] = None):
        self._session_factory = session_factory or AsyncSessionLocal
        self.stale_after = timedelta(
            seconds=stale_after_seconds
            if stale_after_seconds is not None
            else settings.GENERATING_STALE_AFTER_SECONDS
        )

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    async def seed_blocks_if_needed(self, space_id: int) -> List[BlockType]:
        """
        Insert an idle block for every kind the Space's template needs and
        that does not exist yet.  Never deletes; safe to call repeatedly.

        Returns the kinds that were inserted.
        """
        async with self._session_factory() as db:
            space = await db.get(Space, space_id)
            if space is None:
                return []

            result = await db.execute(
                select(GeneratedBlock.block_type).where(GeneratedBlock.space_id == space_id)
            )
            existing = set(result.scalars().all())
            missing = [k for k in blocks_for_template(space.template) if k not in existing]
            if not missing:
                return []

            now = utcnow()
            for kind in missing:
                db.add(GeneratedBlock(
                    space_id=space_id,
                    block_type=kind,
                    status=BlockStatus.IDLE,
                    created_at=now,
                    updated_at=now,
                ))
            try:
                await db.commit()
            except IntegrityError:
                # A concurrent seeder inserted the same kinds first.
                await db.rollback()
                logger.info("Space %d: blocks already seeded concurrently", space_id)
                return []

        logger.info(
            "Space %d: seeded %d block(s): %s",
            space_id, len(missing), ", ".join(k.value for k in missing),
        )
        return missing

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_block(self, space_id: int, kind: BlockType) -> Optional[GeneratedBlock]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(GeneratedBlock).where(
                    GeneratedBlock.space_id == space_id,
                    GeneratedBlock.block_type == kind,
                )
            )
            return result.scalar_one_or_none()

    async def list_blocks(self, space_id: int) -> List[GeneratedBlock]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(GeneratedBlock)
                .where(GeneratedBlock.space_id == space_id)
                .order_by(GeneratedBlock.id)
            )
            return list(result.scalars().all())

    def is_claimable(self, block: GeneratedBlock, retry_failed: bool = False) -> bool:
        """In-memory mirror of the claim condition, for skipping early."""
        if block.status == BlockStatus.IDLE:
            return True
        if block.status == BlockStatus.FAILED:
            return retry_failed
        if block.status == BlockStatus.GENERATING:
            return block.updated_at is not None and block.updated_at < utcnow() - self.stale_after
        return False

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def claim(self, block_id: int, *, retry_failed: bool = False) -> bool:
        """
        Move a block to ``generating`` if it is idle, abandoned, or (with
        *retry_failed*) failed.  Returns True only for the caller that won.
        The previous payload is left in place until a result replaces it.
        """
        now = utcnow()
        claimable = or_(
            GeneratedBlock.status == BlockStatus.IDLE,
            and_(
                GeneratedBlock.status == BlockStatus.GENERATING,
                GeneratedBlock.updated_at < now - self.stale_after,
            ),
        )
        if retry_failed:
            claimable = or_(claimable, GeneratedBlock.status == BlockStatus.FAILED)

        won = await self._conditional_update(
            and_(GeneratedBlock.id == block_id, claimable),
            status=BlockStatus.GENERATING,
            error_message=None,
            updated_at=now,
        )
        if won:
            logger.info("Block %d claimed", block_id)
        else:
            logger.debug("Block %d not claimable", block_id)
        return won

    async def mark_ready(self, block_id: int, payload: Dict[str, Any]) -> bool:
        won = await self._conditional_update(
            and_(GeneratedBlock.id == block_id, GeneratedBlock.status == BlockStatus.GENERATING),
            status=BlockStatus.READY,
            payload=payload,
            error_message=None,
            updated_at=utcnow(),
        )
        if won:
            logger.info("Block %d ready", block_id)
        else:
            logger.warning("Block %d left generating before its result arrived; result dropped", block_id)
        return won

    async def mark_failed(self, block_id: int, message: str) -> bool:
        won = await self._conditional_update(
            and_(GeneratedBlock.id == block_id, GeneratedBlock.status == BlockStatus.GENERATING),
            status=BlockStatus.FAILED,
            payload=None,
            error_message=message,
            updated_at=utcnow(),
        )
        if won:
            logger.info("Block %d failed: %s", block_id, message)
        else:
            logger.warning("Block %d left generating before its failure was recorded", block_id)
        return won

    async def reset_space(self, space_id: int) -> int:
        """Put every block of the Space back to idle with no payload or error."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(GeneratedBlock)
                .where(GeneratedBlock.space_id == space_id)
                .values(status=BlockStatus.IDLE, payload=None, error_message=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        logger.info("Space %d: reset %d block(s) to idle", space_id, result.rowcount)
        return result.rowcount

    async def _conditional_update(self, condition, **values) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(GeneratedBlock)
                .where(condition)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1
