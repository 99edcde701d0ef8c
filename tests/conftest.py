"""
Shared fixtures for StudySpace backend tests.

Tests run against a throw-away SQLite database (aiosqlite driver) so no
database server is needed; set TEST_DATABASE_URL to run against PostgreSQL
instead.  Tables are created before and dropped after every test.

Generation backends are replaced by ``FakeBackend``, which implements the
backend protocol in memory and records every call.
"""
from __future__ import annotations

import asyncio
import os
import tempfile
from typing import AsyncGenerator, Dict, List, Optional, Sequence, Tuple

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

# Override settings *before* any studyspace module is imported, so that
# settings.DATABASE_URL and the global engine point at the test DB.
_TMP_DIR = tempfile.mkdtemp(prefix="studyspace-tests-")
TEST_DATABASE_URL = os.environ.get(
    "TEST_DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'test.db')}",
)
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["AUTO_GENERATE"] = "false"
os.environ.pop("OPENAI_API_KEY", None)

from studyspace.database import Base, get_db  # noqa: E402
from studyspace.dependencies.spaces import (  # noqa: E402
    get_credential_monitor,
    get_orchestrator,
    get_question_service,
)
from studyspace.main import app  # noqa: E402
from studyspace.models.database_models import (  # noqa: E402
    BackendKind,
    Document,
    ExtractionStatus,
    SourceType,
    Space,
    TemplateType,
)
from studyspace.services.credentials import CredentialHealthMonitor  # noqa: E402
from studyspace.services.generation_manager import generation_manager  # noqa: E402
from studyspace.services.generation_backend import (  # noqa: E402
    Flashcard,
    KeyTerm,
    QuizQuestion,
)
from studyspace.services.openai_backend import KeyValidation  # noqa: E402
from studyspace.services.orchestrator import GenerationOrchestrator  # noqa: E402
from studyspace.services.question_answering import QuestionAnsweringService  # noqa: E402
from studyspace.utils.helpers import utcnow  # noqa: E402

_CONNECT_ARGS = {"timeout": 30} if TEST_DATABASE_URL.startswith("sqlite") else {}


# ---------------------------------------------------------------------------
# Fake backend
# ---------------------------------------------------------------------------

class FakeBackend:
    """
    In-memory GenerationBackend.

    ``errors`` maps an operation name (block type value, or "answer" /
    "digest") to the exception it should raise.  ``delay`` makes every call
    sleep so concurrency can be observed through ``max_active``.
    """

    def __init__(self, label: str = "fake") -> None:
        self.label = label
        self.calls: List[str] = []
        self.contexts: Dict[str, str] = {}
        self.errors: Dict[str, Exception] = {}
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self.answer = f"Answer from {label}."
        self.healthy = True

    async def _record(self, op: str, context: str) -> None:
        self.calls.append(op)
        self.contexts[op] = context
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        if op in self.errors:
            raise self.errors[op]

    async def generate_summary(self, context: str) -> str:
        await self._record("summary", context)
        return f"Summary by {self.label}."

    async def generate_flashcards(self, context: str) -> List[Flashcard]:
        await self._record("flashcards", context)
        return [Flashcard("What is X?", "X is a thing."), Flashcard("What is Y?", "Y is another.")]

    async def generate_quiz(self, context: str) -> List[QuizQuestion]:
        await self._record("quiz", context)
        return [QuizQuestion("Pick B", ["A", "B", "C"], 1)]

    async def generate_key_terms(self, context: str) -> List[KeyTerm]:
        await self._record("keyTerms", context)
        return [KeyTerm("Photosynthesis", "Turning light into chemical energy.")]

    async def generate_main_question(self, context: str) -> str:
        await self._record("mainQuestion", context)
        return "What is the main idea?"

    async def generate_insights(self, context: str) -> str:
        await self._record("insights", context)
        return "- One\n- Two\n- Three\n- Four"

    async def generate_argument_counterargument(self, context: str) -> str:
        await self._record("argumentCounterargument", context)
        return "Argument: Yes.\nCounterargument: No."

    async def generate_content_outline(self, context: str) -> str:
        await self._record("contentOutline", context)
        return "- Intro\n  - Detail"

    async def answer_question(self, context: str, question: str) -> str:
        await self._record("answer", context)
        return self.answer

    async def digest_document(self, text: str) -> str:
        await self._record("digest", text)
        return f"- digest: {text[:30]}"

    async def check_health(self) -> bool:
        return self.healthy


async def _accept_key(key: str) -> KeyValidation:
    return KeyValidation(valid=True)


# ---------------------------------------------------------------------------
# Per-test fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory bound to a freshly created schema; dropped afterwards."""
    engine = create_async_engine(
        TEST_DATABASE_URL, echo=False, poolclass=NullPool, connect_args=_CONNECT_ARGS
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def local_backend() -> FakeBackend:
    return FakeBackend("local")


@pytest_asyncio.fixture
async def remote_backend() -> FakeBackend:
    return FakeBackend("remote")


@pytest_asyncio.fixture
async def monitor() -> CredentialHealthMonitor:
    """No key stored; tests call set_key / check as needed."""
    return CredentialHealthMonitor(key=None, validator=_accept_key)


@pytest_asyncio.fixture
async def orchestrator(session_factory, local_backend, remote_backend, monitor) -> GenerationOrchestrator:
    return GenerationOrchestrator(
        local_backend=local_backend,
        remote_backend=remote_backend,
        health_monitor=monitor,
        session_factory=session_factory,
    )


@pytest_asyncio.fixture
async def question_service(session_factory, local_backend, remote_backend, monitor) -> QuestionAnsweringService:
    return QuestionAnsweringService(
        local_backend=local_backend,
        remote_backend=remote_backend,
        health_monitor=monitor,
        session_factory=session_factory,
    )


@pytest_asyncio.fixture
async def client(
    session_factory, orchestrator, question_service, monitor
) -> AsyncGenerator[AsyncClient, None]:
    """
    httpx AsyncClient wired to the FastAPI app with the DB session and the
    services overridden to use the per-test database and fake backends.
    """

    async def _override_get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_question_service] = lambda: question_service
    app.dependency_overrides[get_credential_monitor] = lambda: monitor

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    generation_manager._tasks.clear()
    generation_manager._status.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def make_space(
    session_factory,
    template: TemplateType = TemplateType.QUICK_STUDY,
    backend: BackendKind = BackendKind.LOCAL,
    documents: Sequence[Tuple[str, Optional[str]]] = (("Notes", "Plants convert light into energy."),),
) -> int:
    """
    Insert a Space with completed documents and return its id.
    A document whose text is None is stored with pending extraction.
    """
    now = utcnow()
    async with session_factory() as db:
        space = Space(
            name="Test Space",
            template=template,
            backend_preference=backend,
            created_at=now,
            updated_at=now,
        )
        db.add(space)
        await db.flush()
        for name, text in documents:
            db.add(Document(
                space_id=space.id,
                name=name,
                source_type=SourceType.PASTE if text is not None else SourceType.FILE,
                extracted_text=text,
                extraction_status=(
                    ExtractionStatus.COMPLETED if text is not None else ExtractionStatus.PENDING
                ),
                created_at=now,
            ))
        await db.commit()
        return space.id
