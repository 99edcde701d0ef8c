"""
Generated block endpoints.

Route summary
-------------
GET  /api/spaces/{space_id}/blocks                   — blocks in template order
POST /api/spaces/{space_id}/blocks/generate          — start a generation pass (?wait=true runs inline)
GET  /api/spaces/{space_id}/blocks/generate/status   — poll the background pass
POST /api/spaces/{space_id}/blocks/reset             — every block back to idle
POST /api/spaces/{space_id}/blocks/retry-failed      — pass that also re-claims failed blocks
"""
from __future__ import annotations

import logging
from typing import List, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from studyspace.config import settings
from studyspace.dependencies.spaces import get_orchestrator, get_space
from studyspace.models.database_models import GeneratedBlock, Space
from studyspace.models.schemas import (
    BlockResponse,
    GenerationPassResponse,
    GenerationStartResponse,
    GenerationStatusResponse,
    ResetResponse,
)
from studyspace.services.block_lifecycle import blocks_for_template
from studyspace.services.generation_manager import generation_manager, start_generation
from studyspace.services.orchestrator import GenerationOrchestrator, GenerationPassResult

logger = logging.getLogger(__name__)

router = APIRouter()


def _block_response(block: GeneratedBlock) -> BlockResponse:
    return BlockResponse(
        id=block.id,
        space_id=block.space_id,
        block_type=block.block_type,
        title=block.block_type.display_title,
        status=block.status,
        payload=block.payload,
        error_message=block.error_message,
        updated_at=block.updated_at,
    )


def _pass_response(result: GenerationPassResult) -> GenerationPassResponse:
    return GenerationPassResponse(
        space_id=result.space_id,
        backend=result.backend,
        skipped=result.skipped,
        no_content=result.no_content,
        ready=result.ready,
        failed=result.failed,
        errors=result.errors,
    )


async def _generate(
    space: Space,
    response: Response,
    orchestrator: GenerationOrchestrator,
    wait: bool,
    retry_failed: bool,
) -> Union[GenerationPassResponse, GenerationStartResponse]:
    if generation_manager.is_running(space.id) or orchestrator.is_running(space.id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Generation is already running for this space.",
        )

    if wait:
        response.status_code = status.HTTP_200_OK
        result = await orchestrator.run_generation_pass(space.id, retry_failed=retry_failed)
        return _pass_response(result)

    gs = start_generation(orchestrator, space.id, retry_failed=retry_failed)
    logger.info("Space %d: background generation started (retry_failed=%s)", space.id, retry_failed)
    return GenerationStartResponse(status="started", phase=gs.phase.value, space_id=space.id)


@router.get("/{space_id}/blocks", response_model=List[BlockResponse])
async def list_blocks(
    space: Space = Depends(get_space),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> List[BlockResponse]:
    """Blocks of the current template in declared order, then any others."""
    blocks = await orchestrator.lifecycle.list_blocks(space.id)
    order = {kind: i for i, kind in enumerate(blocks_for_template(space.template))}
    blocks.sort(key=lambda b: (order.get(b.block_type, len(order)), b.id))
    return [_block_response(b) for b in blocks]


@router.post(
    "/{space_id}/blocks/generate",
    response_model=Union[GenerationPassResponse, GenerationStartResponse],
    status_code=status.HTTP_202_ACCEPTED,
)
async def generate_blocks(
    response: Response,
    wait: bool = Query(False, description="Run the pass inline and return its result"),
    space: Space = Depends(get_space),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Generate every idle block of the space."""
    return await _generate(space, response, orchestrator, wait, retry_failed=False)


@router.post(
    "/{space_id}/blocks/retry-failed",
    response_model=Union[GenerationPassResponse, GenerationStartResponse],
    status_code=status.HTTP_202_ACCEPTED,
)
async def retry_failed_blocks(
    response: Response,
    wait: bool = Query(False),
    space: Space = Depends(get_space),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Like generate, but failed blocks are claimed again too."""
    return await _generate(space, response, orchestrator, wait, retry_failed=True)


@router.get("/{space_id}/blocks/generate/status", response_model=GenerationStatusResponse)
async def generation_status(space: Space = Depends(get_space)) -> GenerationStatusResponse:
    """Poll the most recent background pass for this space."""
    gs = generation_manager.get_status(space.id)
    if gs is None:
        return GenerationStatusResponse(phase="idle")

    return GenerationStatusResponse(
        phase=gs.phase.value,
        backend=gs.backend,
        blocks_ready=gs.blocks_ready,
        blocks_failed=gs.blocks_failed,
        no_content=gs.no_content,
        errors=gs.errors,
        elapsed_seconds=gs.elapsed_seconds,
    )


@router.post("/{space_id}/blocks/reset", response_model=ResetResponse)
async def reset_blocks(
    space: Space = Depends(get_space),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> ResetResponse:
    """Discard every generated result; the next pass regenerates all blocks."""
    count = await orchestrator.reset_artifacts(space.id)

    if settings.AUTO_GENERATE and not (
        generation_manager.is_running(space.id) or orchestrator.is_running(space.id)
    ):
        start_generation(orchestrator, space.id)

    return ResetResponse(space_id=space.id, blocks_reset=count)
