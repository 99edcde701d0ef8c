"""
Pydantic schemas for request/response validation.
"""
from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from studyspace.models.database_models import (
    BackendKind,
    BlockStatus,
    BlockType,
    DigestStatus,
    ExtractionStatus,
    QuestionStatus,
    SourceType,
    TemplateType,
)


# Space Schemas
class SpaceCreate(BaseModel):
    """Schema for creating a new space."""

    name: str = Field(..., min_length=1, max_length=255)
    template: TemplateType = TemplateType.LANGUAGE_LEARNING
    backend_preference: BackendKind = BackendKind.LOCAL

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value):
        return value.strip() if isinstance(value, str) else value


class SpaceUpdate(BaseModel):
    """Partial update; omitted fields are left unchanged."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    template: Optional[TemplateType] = None
    backend_preference: Optional[BackendKind] = None

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value):
        return value.strip() if isinstance(value, str) else value


class SpaceResponse(BaseModel):
    """Schema for space responses."""

    id: int
    name: str
    template: TemplateType
    backend_preference: BackendKind
    effective_backend: Optional[BackendKind] = None
    document_count: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Document Schemas
class DocumentCreate(BaseModel):
    """
    A document added to a space.

    Pasted text is usable immediately; a file is registered with pending
    extraction and receives its text through the extraction endpoint.
    """

    name: str = Field(..., min_length=1, max_length=255)
    source_type: SourceType = SourceType.PASTE
    text: Optional[str] = None


class ExtractionUpdate(BaseModel):
    """Extraction result written by the ingestion pipeline."""

    status: ExtractionStatus
    text: Optional[str] = None
    error: Optional[str] = None


class DocumentResponse(BaseModel):
    """Schema for document responses."""

    id: int
    space_id: int
    name: str
    source_type: SourceType
    extraction_status: ExtractionStatus
    extraction_error: Optional[str] = None
    digest_status: DigestStatus
    text_length: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Block Schemas
class BlockResponse(BaseModel):
    """Schema for generated block responses."""

    id: int
    space_id: int
    block_type: BlockType
    title: str
    status: BlockStatus
    payload: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    updated_at: datetime


class GenerationPassResponse(BaseModel):
    """Outcome of an inline generation pass."""

    space_id: int
    backend: Optional[BackendKind] = None
    skipped: bool = False
    no_content: bool = False
    ready: List[BlockType] = []
    failed: List[BlockType] = []
    errors: Dict[str, str] = {}


class GenerationStartResponse(BaseModel):
    """Response for starting a background generation pass."""

    status: str
    phase: str
    space_id: int


class GenerationStatusResponse(BaseModel):
    """Polling response for a background generation pass."""

    phase: str
    backend: Optional[str] = None
    blocks_ready: int = 0
    blocks_failed: int = 0
    no_content: bool = False
    errors: List[str] = []
    elapsed_seconds: float = 0.0


class ResetResponse(BaseModel):
    space_id: int
    blocks_reset: int


# Question Schemas
class QuestionCreate(BaseModel):
    question: str = Field(..., max_length=4000)


class QuestionResponse(BaseModel):
    """Schema for question responses."""

    id: int
    space_id: int
    question: str
    answer: Optional[str] = None
    status: QuestionStatus
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AnswerSweepResponse(BaseModel):
    space_id: int
    backend: Optional[BackendKind] = None
    answered: List[int] = []
    failed: List[int] = []
    skipped: List[int] = []


# Credential Schemas
class CredentialKeyRequest(BaseModel):
    api_key: str


class CredentialStatusResponse(BaseModel):
    status: str
    has_key: bool
    last_error: Optional[str] = None


# Health Schemas
class HealthCheckResponse(BaseModel):
    """Schema for health check response."""

    status: str
    database: str
    ollama: str
    openai_credential: str
    timestamp: datetime
