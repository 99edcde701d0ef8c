"""
Generation orchestrator: one pass over a Space's blocks.

A pass seeds missing blocks, resolves the effective backend, and then runs
one of two modes:

* sequential (local backend): kinds in template order, one at a time, with
  per-document digests prepared before each kind so a single small model is
  never asked to do two things at once;
* concurrent (remote backend): every claimable kind is claimed up front and
  generated in parallel against one shared context.

Every failure inside a kind ends in that block's ``failed`` state.  Nothing
escapes a pass.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any, Dict, List, Optional, Set

from studyspace.database import AsyncSessionLocal
from studyspace.models.database_models import BackendKind, BlockType, GeneratedBlock, Space
from studyspace.services.backend_resolver import resolve_backend
from studyspace.services.block_lifecycle import BlockLifecycle, blocks_for_template
from studyspace.services.credentials import CredentialHealthMonitor, credential_monitor
from studyspace.services.errors import (
    EmptyContext,
    EmptyOutput,
    GenerationError,
    InvalidCredential,
    describe_failure,
)
from studyspace.services.generation_backend import GenerationBackend
from studyspace.services.ollama_backend import OllamaBackend
from studyspace.services.openai_backend import OpenAIBackend
from studyspace.services.space_context import SpaceContextService

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class GenerationPassResult:
    """Returned by run_generation_pass to summarise what happened."""

    space_id: int
    backend: Optional[BackendKind] = None
    skipped: bool = False        # another pass for this Space was running
    no_content: bool = False     # no usable documents; blocks left idle
    ready: List[BlockType] = dataclasses.field(default_factory=list)
    failed: List[BlockType] = dataclasses.field(default_factory=list)
    errors: Dict[str, str] = dataclasses.field(default_factory=dict)


# ---------------------------------------------------------------------------
# Payload shapes
# ---------------------------------------------------------------------------

async def generate_payload(
    backend: GenerationBackend, kind: BlockType, context: str
) -> Dict[str, Any]:
    """Run the backend operation for *kind* and shape its result for storage."""
    if kind == BlockType.FLASHCARDS:
        cards = await backend.generate_flashcards(context)
        return {"cards": [{"front": c.front, "back": c.back} for c in cards]}

    if kind == BlockType.QUIZ:
        questions = await backend.generate_quiz(context)
        return {
            "questions": [
                {"question": q.question, "options": list(q.options), "correctIndex": q.correct_index}
                for q in questions
            ]
        }

    if kind == BlockType.KEY_TERMS:
        terms = await backend.generate_key_terms(context)
        return {"terms": [{"term": t.term, "definition": t.definition} for t in terms]}

    text_ops = {
        BlockType.SUMMARY: backend.generate_summary,
        BlockType.MAIN_QUESTION: backend.generate_main_question,
        BlockType.INSIGHTS: backend.generate_insights,
        BlockType.ARGUMENT_COUNTERARGUMENT: backend.generate_argument_counterargument,
        BlockType.CONTENT_OUTLINE: backend.generate_content_outline,
    }
    text = (await text_ops[kind](context)).strip()
    if not text:
        raise EmptyOutput()
    return {"text": text}


def _is_empty_payload(payload: Dict[str, Any]) -> bool:
    return not any(payload.values())


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class GenerationOrchestrator:
    """Runs generation passes; one instance per process."""

    def __init__(
        self,
        local_backend=None,
        remote_backend=None,
        health_monitor: Optional[CredentialHealthMonitor] = None,
        session_factory=None,
    ):
        self.health_monitor = health_monitor or credential_monitor
        self.local_backend = local_backend or OllamaBackend()
        self.remote_backend = remote_backend or OpenAIBackend(key_provider=self.health_monitor.get_key)
        self._session_factory = session_factory or AsyncSessionLocal
        self.lifecycle = BlockLifecycle(session_factory=self._session_factory)
        self.contexts = SpaceContextService(
            local_backend=self.local_backend, session_factory=self._session_factory
        )
        # Space ids with a pass in flight in this process
        self._running: Set[int] = set()

    def is_running(self, space_id: int) -> bool:
        return space_id in self._running

    def backend_for(self, kind: BackendKind) -> GenerationBackend:
        return self.remote_backend if kind == BackendKind.REMOTE else self.local_backend

    async def reset_artifacts(self, space_id: int) -> int:
        return await self.lifecycle.reset_space(space_id)

    async def run_generation_pass(
        self, space_id: int, *, retry_failed: bool = False
    ) -> GenerationPassResult:
        result = GenerationPassResult(space_id=space_id)
        if space_id in self._running:
            logger.info("Space %d: generation pass already running, skipping", space_id)
            result.skipped = True
            return result

        self._running.add(space_id)
        try:
            await self._run_pass(space_id, retry_failed, result)
        finally:
            self._running.discard(space_id)

        logger.info(
            "Space %d: pass finished (backend=%s, ready=%d, failed=%d)",
            space_id,
            result.backend.value if result.backend else "-",
            len(result.ready),
            len(result.failed),
        )
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_pass(self, space_id: int, retry_failed: bool, result: GenerationPassResult) -> None:
        async with self._session_factory() as db:
            space = await db.get(Space, space_id)
            if space is None:
                logger.warning("Space %d not found; nothing to generate", space_id)
                return
            template = space.template
            preference = space.backend_preference

        await self.lifecycle.seed_blocks_if_needed(space_id)

        if not await self.contexts.has_usable_documents(space_id):
            logger.info("Space %d: no usable documents; blocks left idle", space_id)
            result.no_content = True
            return

        backend_kind = resolve_backend(preference, self.health_monitor.status)
        result.backend = backend_kind
        logger.info(
            "Space %d: generating with %s backend (preference=%s)",
            space_id, backend_kind.value, preference.value,
        )

        blocks = {b.block_type: b for b in await self.lifecycle.list_blocks(space_id)}
        ordered = [blocks[k] for k in blocks_for_template(template) if k in blocks]

        if backend_kind == BackendKind.LOCAL:
            await self._run_sequential(space_id, ordered, retry_failed, result)
        else:
            await self._run_concurrent(space_id, ordered, retry_failed, result)

    async def _run_sequential(
        self,
        space_id: int,
        blocks: List[GeneratedBlock],
        retry_failed: bool,
        result: GenerationPassResult,
    ) -> None:
        backend = self.local_backend
        for block in blocks:
            if not self.lifecycle.is_claimable(block, retry_failed):
                continue
            try:
                await self.contexts.ensure_document_digests(space_id)
                context = await self.contexts.build_for_backend(space_id, BackendKind.LOCAL)
            except Exception as e:
                logger.error("Space %d: building context failed", space_id, exc_info=True)
                if await self.lifecycle.claim(block.id, retry_failed=retry_failed):
                    await self._record_failure(block, e, result)
                continue

            if not await self.lifecycle.claim(block.id, retry_failed=retry_failed):
                continue
            if context.is_empty:
                await self._record_failure(block, EmptyContext(), result)
                continue
            await self._generate_one(backend, block, context.text, result)

    async def _run_concurrent(
        self,
        space_id: int,
        blocks: List[GeneratedBlock],
        retry_failed: bool,
        result: GenerationPassResult,
    ) -> None:
        claimed: List[GeneratedBlock] = []
        for block in blocks:
            if await self.lifecycle.claim(block.id, retry_failed=retry_failed):
                claimed.append(block)
        if not claimed:
            return

        try:
            context = await self.contexts.build_for_backend(space_id, BackendKind.REMOTE)
        except Exception as e:
            logger.error("Space %d: building context failed", space_id, exc_info=True)
            for block in claimed:
                await self._record_failure(block, e, result)
            return

        if context.is_empty:
            for block in claimed:
                await self._record_failure(block, EmptyContext(), result)
            return

        backend = self.remote_backend
        await asyncio.gather(
            *(self._generate_one(backend, block, context.text, result) for block in claimed),
            return_exceptions=True,
        )

    async def _generate_one(
        self,
        backend: GenerationBackend,
        block: GeneratedBlock,
        context: str,
        result: GenerationPassResult,
    ) -> None:
        kind = block.block_type
        try:
            payload = await generate_payload(backend, kind, context)
            if _is_empty_payload(payload):
                raise EmptyOutput()
        except Exception as e:
            await self._record_failure(block, e, result)
            return

        try:
            if await self.lifecycle.mark_ready(block.id, payload):
                result.ready.append(kind)
        except Exception:
            logger.error("Block %d: storing result failed", block.id, exc_info=True)

    async def _record_failure(
        self, block: GeneratedBlock, exc: BaseException, result: GenerationPassResult
    ) -> None:
        kind = block.block_type
        message = describe_failure(exc)
        if isinstance(exc, GenerationError):
            logger.warning("Block %d (%s) failed: %s", block.id, kind.value, message)
        else:
            logger.error("Block %d (%s) crashed: %s", block.id, kind.value, exc, exc_info=exc)

        if isinstance(exc, InvalidCredential):
            self.health_monitor.mark_invalid(exc.message)

        try:
            if await self.lifecycle.mark_failed(block.id, message):
                result.failed.append(kind)
                result.errors[kind.value] = message
        except Exception:
            logger.error("Block %d: storing failure failed", block.id, exc_info=True)


# Process-wide instance used by the HTTP layer
orchestrator = GenerationOrchestrator()
