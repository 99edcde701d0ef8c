"""
Health check endpoint.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
import logging

from studyspace.database import get_db
from studyspace.dependencies.spaces import get_credential_monitor, get_orchestrator
from studyspace.models.schemas import HealthCheckResponse
from studyspace.services.credentials import CredentialHealthMonitor
from studyspace.services.orchestrator import GenerationOrchestrator
from studyspace.utils.helpers import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    monitor: CredentialHealthMonitor = Depends(get_credential_monitor),
):
    """
    Health check endpoint to verify system status.

    Returns:
        HealthCheckResponse with status of the database, the local model
        server and the remote API key
    """
    # Check database connection
    db_status = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        db_status = "error"

    # Check Ollama connection
    ollama_status = "ok"
    try:
        if not await orchestrator.local_backend.check_health():
            ollama_status = "error"
    except Exception as e:
        logger.error("Ollama health check failed: %s", e)
        ollama_status = "error"

    # The remote backend is optional; only the database and the local model
    # decide the overall status.
    overall_status = "healthy" if db_status == "ok" and ollama_status == "ok" else "degraded"

    return HealthCheckResponse(
        status=overall_status,
        database=db_status,
        ollama=ollama_status,
        openai_credential=monitor.status.value,
        timestamp=utcnow(),
    )
