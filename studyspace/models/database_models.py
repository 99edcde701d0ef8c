"""
SQLAlchemy ORM models for the StudySpace database.
"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    Enum as SQLEnum,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
import enum

from studyspace.database import Base
from studyspace.utils.helpers import utcnow


# Enums
class BackendKind(str, enum.Enum):
    """Text-generation backends a Space can be configured to use."""

    LOCAL = "local"
    REMOTE = "remote"


class BlockType(str, enum.Enum):
    """Kinds of generated blocks."""

    SUMMARY = "summary"
    FLASHCARDS = "flashcards"
    QUIZ = "quiz"
    KEY_TERMS = "keyTerms"
    MAIN_QUESTION = "mainQuestion"
    INSIGHTS = "insights"
    ARGUMENT_COUNTERARGUMENT = "argumentCounterargument"
    CONTENT_OUTLINE = "contentOutline"

    @property
    def display_title(self) -> str:
        return _BLOCK_TITLES[self]


_BLOCK_TITLES = {
    BlockType.SUMMARY: "Summary",
    BlockType.FLASHCARDS: "Flashcards",
    BlockType.QUIZ: "Quiz",
    BlockType.KEY_TERMS: "Key Terms",
    BlockType.MAIN_QUESTION: "Main Question",
    BlockType.INSIGHTS: "Insights",
    BlockType.ARGUMENT_COUNTERARGUMENT: "Argument & Counterargument",
    BlockType.CONTENT_OUTLINE: "Content Outline",
}


class TemplateType(str, enum.Enum):
    """Space templates; each one determines which blocks are generated."""

    LANGUAGE_LEARNING = "languageLearning"
    LECTURE_NOTES = "lectureNotes"
    EXAM_PREP = "examPrep"
    RESEARCH_REVIEW = "researchReview"
    MEETING_MINUTES = "meetingMinutes"
    PROJECT_BRIEF = "projectBrief"
    WRITING_ASSISTANT = "writingAssistant"
    QUICK_STUDY = "quickStudy"

    @classmethod
    def _missing_(cls, value):
        # Legacy template names map onto the current catalog
        legacy = {
            "lectureDebrief": cls.LECTURE_NOTES,
            "testPreparation": cls.EXAM_PREP,
            "researchAnalysis": cls.RESEARCH_REVIEW,
        }
        return legacy.get(value)


class BlockStatus(str, enum.Enum):
    """Lifecycle of a generated block."""

    IDLE = "idle"
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"


class QuestionStatus(str, enum.Enum):
    """Lifecycle of a Space question."""

    PENDING = "pending"
    ANSWERING = "answering"
    ANSWERED = "answered"
    FAILED = "failed"


class SourceType(str, enum.Enum):
    """How a document entered the Space."""

    PASTE = "paste"
    FILE = "file"


class ExtractionStatus(str, enum.Enum):
    """Text extraction status, written by the ingestion pipeline."""

    PENDING = "pending"
    EXTRACTING = "extracting"
    COMPLETED = "completed"
    FAILED = "failed"


class DigestStatus(str, enum.Enum):
    """Per-document compact digest status (local backend preprocessing)."""

    PENDING = "pending"
    SUMMARIZING = "summarizing"
    READY = "ready"
    FAILED = "failed"


# Models
class Space(Base):
    """A workspace holding documents, generated blocks and questions."""

    __tablename__ = "spaces"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    template = Column(SQLEnum(TemplateType), nullable=False)
    backend_preference = Column(SQLEnum(BackendKind), nullable=False, default=BackendKind.LOCAL)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    documents = relationship("Document", back_populates="space", cascade="all, delete-orphan")
    blocks = relationship("GeneratedBlock", back_populates="space", cascade="all, delete-orphan")
    questions = relationship("SpaceQuestion", back_populates="space", cascade="all, delete-orphan")


class Document(Base):
    """Source document (imported file or pasted text) with its extracted text."""

    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, index=True)
    space_id = Column(Integer, ForeignKey("spaces.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    source_type = Column(SQLEnum(SourceType), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Extraction (written by the ingestion pipeline)
    extracted_text = Column(Text, nullable=True)
    extraction_status = Column(SQLEnum(ExtractionStatus), nullable=False, default=ExtractionStatus.PENDING)
    extraction_error = Column(Text, nullable=True)

    # Compact digest used by the local backend's context strategy
    digest_text = Column(Text, nullable=True)
    digest_status = Column(SQLEnum(DigestStatus), nullable=False, default=DigestStatus.PENDING)
    digest_error = Column(Text, nullable=True)
    digest_updated_at = Column(DateTime, nullable=True)

    # Relationships
    space = relationship("Space", back_populates="documents")


class GeneratedBlock(Base):
    """One generated artifact per (space, block type)."""

    __tablename__ = "generated_blocks"
    __table_args__ = (
        UniqueConstraint("space_id", "block_type", name="uq_generated_blocks_space_type"),
    )

    id = Column(Integer, primary_key=True, index=True)
    space_id = Column(Integer, ForeignKey("spaces.id", ondelete="CASCADE"), nullable=False, index=True)
    block_type = Column(SQLEnum(BlockType), nullable=False)
    status = Column(SQLEnum(BlockStatus), nullable=False, default=BlockStatus.IDLE, index=True)
    payload = Column(JSON(none_as_null=True), nullable=True)  # present only when ready
    error_message = Column(Text, nullable=True)  # present only when failed
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    space = relationship("Space", back_populates="blocks")


class SpaceQuestion(Base):
    """A one-shot question about a Space's content."""

    __tablename__ = "space_questions"

    id = Column(Integer, primary_key=True, index=True)
    space_id = Column(Integer, ForeignKey("spaces.id", ondelete="CASCADE"), nullable=False, index=True)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=True)
    status = Column(SQLEnum(QuestionStatus), nullable=False, default=QuestionStatus.PENDING, index=True)
    error_message = Column(Text, nullable=True)
    claim_token = Column(Integer, nullable=False, default=0)  # bumped on every claim
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    space = relationship("Space", back_populates="questions")
