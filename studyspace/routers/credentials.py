"""
Remote API key endpoints.

The key lives in process memory only; persistent secure storage is the
host application's concern.

Route summary
-------------
GET    /api/credentials/openai         — key status (never the key itself)
PUT    /api/credentials/openai         — store a key and validate it in the background
DELETE /api/credentials/openai         — forget the key
POST   /api/credentials/openai/check   — validate the stored key now
"""
import logging

from fastapi import APIRouter, Depends, status

from studyspace.dependencies.spaces import get_credential_monitor
from studyspace.models.schemas import CredentialKeyRequest, CredentialStatusResponse
from studyspace.services.credentials import CredentialHealthMonitor

logger = logging.getLogger(__name__)

router = APIRouter()


def _status(monitor: CredentialHealthMonitor) -> CredentialStatusResponse:
    return CredentialStatusResponse(**monitor.snapshot())


@router.get("/openai", response_model=CredentialStatusResponse)
async def get_openai_status(
    monitor: CredentialHealthMonitor = Depends(get_credential_monitor),
) -> CredentialStatusResponse:
    return _status(monitor)


@router.put("/openai", response_model=CredentialStatusResponse)
async def set_openai_key(
    body: CredentialKeyRequest,
    monitor: CredentialHealthMonitor = Depends(get_credential_monitor),
) -> CredentialStatusResponse:
    """Store a key; blank keys are ignored.  Validation runs in the background."""
    if body.api_key.strip():
        monitor.set_key(body.api_key)
        monitor.start_background_check()
    return _status(monitor)


@router.delete("/openai", response_model=CredentialStatusResponse, status_code=status.HTTP_200_OK)
async def clear_openai_key(
    monitor: CredentialHealthMonitor = Depends(get_credential_monitor),
) -> CredentialStatusResponse:
    monitor.clear_key()
    return _status(monitor)


@router.post("/openai/check", response_model=CredentialStatusResponse)
async def check_openai_key(
    monitor: CredentialHealthMonitor = Depends(get_credential_monitor),
) -> CredentialStatusResponse:
    await monitor.check()
    return _status(monitor)
