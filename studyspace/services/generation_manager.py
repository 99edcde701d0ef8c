"""
In-memory singleton that tracks background generation tasks per Space.

Usage
-----
    from studyspace.services.generation_manager import generation_manager, GenerationStatus

    status = GenerationStatus(space_id=space_id)
    generation_manager.start(space_id, run_pass(space_id, status), status)
    # ... later ...
    current = generation_manager.get_status(space_id)
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import time
from typing import Any, Coroutine, Dict, List, Optional

from studyspace.services.orchestrator import GenerationOrchestrator

logger = logging.getLogger(__name__)


class GenerationPhase(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclasses.dataclass
class GenerationStatus:
    """Mutable status shared between the background task and pollers."""

    space_id: int
    phase: GenerationPhase = GenerationPhase.QUEUED
    backend: Optional[str] = None
    blocks_ready: int = 0
    blocks_failed: int = 0
    no_content: bool = False
    errors: List[str] = dataclasses.field(default_factory=list)
    started_at: float = dataclasses.field(default_factory=time.monotonic)
    completed_at: Optional[float] = None

    @property
    def elapsed_seconds(self) -> float:
        end = self.completed_at if self.completed_at else time.monotonic()
        return round(end - self.started_at, 2)


async def run_generation(
    orchestrator: GenerationOrchestrator,
    space_id: int,
    status: GenerationStatus,
    retry_failed: bool = False,
) -> None:
    """Background body: one generation pass, reflected into *status*."""
    status.phase = GenerationPhase.RUNNING
    result = await orchestrator.run_generation_pass(space_id, retry_failed=retry_failed)
    status.backend = result.backend.value if result.backend else None
    status.blocks_ready = len(result.ready)
    status.blocks_failed = len(result.failed)
    status.no_content = result.no_content
    status.errors.extend(f"{kind}: {message}" for kind, message in result.errors.items())
    status.phase = GenerationPhase.COMPLETED


class GenerationManager:
    """Manages background generation asyncio.Tasks per Space."""

    _tasks: Dict[int, asyncio.Task] = {}
    _status: Dict[int, GenerationStatus] = {}

    @classmethod
    def is_running(cls, space_id: int) -> bool:
        task = cls._tasks.get(space_id)
        return task is not None and not task.done()

    @classmethod
    def get_status(cls, space_id: int) -> Optional[GenerationStatus]:
        return cls._status.get(space_id)

    @classmethod
    def start(
        cls,
        space_id: int,
        coro: Coroutine[Any, Any, Any],
        status: Optional[GenerationStatus] = None,
    ) -> GenerationStatus:
        """
        Launch a background generation task for *space_id*.

        Raises RuntimeError if one is already running for the Space; the
        coroutine is closed without being scheduled in that case.
        """
        if cls.is_running(space_id):
            coro.close()
            raise RuntimeError(f"Generation already running for space {space_id}")

        if status is None:
            status = GenerationStatus(space_id=space_id)
        cls._status[space_id] = status

        async def _wrapper() -> None:
            try:
                await coro
            except Exception as exc:
                logger.error(
                    "Generation task failed for space %d: %s", space_id, exc, exc_info=True
                )
                status.phase = GenerationPhase.FAILED
                status.errors.append(f"generation crash: {str(exc)[:200]}")
            finally:
                status.completed_at = time.monotonic()
                if status.phase not in (GenerationPhase.COMPLETED, GenerationPhase.FAILED):
                    status.phase = GenerationPhase.FAILED

        task = asyncio.create_task(_wrapper())
        cls._tasks[space_id] = task
        task.add_done_callback(lambda _t: cls._cleanup(space_id))

        logger.info("Generation task started for space %d", space_id)
        return status

    @classmethod
    def _cleanup(cls, space_id: int) -> None:
        """Remove the task reference (status is kept for polling)."""
        cls._tasks.pop(space_id, None)


# Module-level singleton instance
generation_manager = GenerationManager


def start_generation(
    orchestrator: GenerationOrchestrator,
    space_id: int,
    retry_failed: bool = False,
) -> GenerationStatus:
    """Start a background pass; raises RuntimeError if one is already running."""
    status = GenerationStatus(space_id=space_id)
    return generation_manager.start(
        space_id,
        run_generation(orchestrator, space_id, status, retry_failed=retry_failed),
        status=status,
    )
