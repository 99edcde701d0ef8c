"""Database and schema models for StudySpace."""
from studyspace.models.database_models import (
    Space,
    Document,
    GeneratedBlock,
    SpaceQuestion,
    BackendKind,
    BlockType,
    TemplateType,
    BlockStatus,
    QuestionStatus,
    SourceType,
    ExtractionStatus,
    DigestStatus,
)
from studyspace.models.schemas import (
    SpaceCreate,
    SpaceResponse,
    DocumentCreate,
    DocumentResponse,
    BlockResponse,
    QuestionResponse,
    HealthCheckResponse,
)

__all__ = [
    # Database models
    "Space",
    "Document",
    "GeneratedBlock",
    "SpaceQuestion",
    "BackendKind",
    "BlockType",
    "TemplateType",
    "BlockStatus",
    "QuestionStatus",
    "SourceType",
    "ExtractionStatus",
    "DigestStatus",
    # Pydantic schemas
    "SpaceCreate",
    "SpaceResponse",
    "DocumentCreate",
    "DocumentResponse",
    "BlockResponse",
    "QuestionResponse",
    "HealthCheckResponse",
]
