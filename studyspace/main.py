"""
Main FastAPI application for the StudySpace backend.
Handles CORS, request logging middleware, lifespan events, and router registration.
"""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from studyspace.config import settings
from studyspace.database import close_db, init_db
from studyspace.routers import blocks, credentials, documents, health, questions, spaces
from studyspace.services.credentials import credential_monitor
from studyspace.services.ollama_backend import OllamaBackend
from studyspace.utils.helpers import utcnow

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Startup / shutdown helpers
# ---------------------------------------------------------------------------

async def _check_database() -> bool:
    """Initialise DB tables and verify the connection.  Returns True on success."""
    try:
        await init_db()
        logger.info("✓ Database connection OK")
        return True
    except Exception as exc:
        logger.error("✗ Database connection failed: %s", exc)
        raise


async def _check_ollama() -> bool:
    """
    Verify Ollama is reachable and the configured model is pulled.
    Never raises; warnings are logged instead.
    """
    model = settings.OLLAMA_LLM_MODEL
    if await OllamaBackend().check_health():
        logger.info("✓ Ollama reachable, model '%s' available", model)
        return True
    logger.warning(
        "⚠ Ollama unreachable or model '%s' missing. Start it with: ollama serve && ollama pull %s",
        model,
        model,
    )
    return False


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown event handler."""
    logger.info("=" * 60)
    logger.info("  Starting StudySpace backend …")
    logger.info("=" * 60)

    # 1. Database (required; raises on failure)
    await _check_database()

    # 2. Ollama (optional; local generation fails until it is up)
    await _check_ollama()

    # 3. OpenAI key (optional; a configured key is trusted, then re-checked)
    if credential_monitor.has_key:
        credential_monitor.start_background_check()
        logger.info("✓ OpenAI key configured; validating in the background")
    else:
        logger.info("OpenAI key not set; spaces preferring remote will use the local model")

    logger.info("=" * 60)
    logger.info("  StudySpace backend ready on http://%s:%d", settings.HOST, settings.PORT)
    logger.info("  Swagger UI : http://%s:%d/docs", settings.HOST, settings.PORT)
    logger.info("  Health     : http://%s:%d/api/health", settings.HOST, settings.PORT)
    logger.info("=" * 60)

    yield  # ← server is running

    logger.info("Shutting down StudySpace backend …")
    await close_db()
    logger.info("✓ Shutdown complete.")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="StudySpace API",
    description=(
        "**StudySpace** turns the documents collected in a Space into study "
        "material: summaries, flashcards, quizzes, key terms and more, "
        "generated by a local model (Ollama) or OpenAI.\n\n"
        "Key endpoints:\n"
        "- `POST /api/spaces` — create a space from a template\n"
        "- `POST /api/spaces/{id}/documents` — add pasted text\n"
        "- `POST /api/spaces/{id}/blocks/generate` — generate the space's blocks\n"
        "- `GET  /api/spaces/{id}/blocks` — generated blocks\n"
        "- `POST /api/spaces/{id}/questions` — ask a question about the content\n"
        "- `PUT  /api/credentials/openai` — set the OpenAI API key\n"
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request / response logging middleware
# ---------------------------------------------------------------------------

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Log every request with method, path, status code, and elapsed time.
    Attaches an ``X-Process-Time`` header (milliseconds) to every response.
    """
    t0 = time.monotonic()
    response = await call_next(request)
    elapsed_ms = round((time.monotonic() - t0) * 1000, 2)

    # Skip noisy polling
    if request.url.path not in ("/api/health/", "/") and not request.url.path.endswith("/generate/status"):
        logger.info(
            "%s %s → %d  (%.2f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )

    response.headers["X-Process-Time"] = f"{elapsed_ms}ms"
    return response


# ---------------------------------------------------------------------------
# Global exception handler
# ---------------------------------------------------------------------------

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a structured JSON error for any unhandled exception."""
    logger.error(
        "Unhandled exception on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "error": str(exc),
            "path": str(request.url.path),
            "timestamp": utcnow().isoformat(),
        },
    )


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(health.router,      prefix="/api/health",      tags=["Health"])
app.include_router(spaces.router,      prefix="/api/spaces",      tags=["Spaces"])
app.include_router(blocks.router,      prefix="/api/spaces",      tags=["Blocks"])
app.include_router(documents.router,   prefix="/api",             tags=["Documents"])
app.include_router(questions.router,   prefix="/api",             tags=["Questions"])
app.include_router(credentials.router, prefix="/api/credentials", tags=["Credentials"])


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------

@app.get("/", tags=["Root"], include_in_schema=False)
async def root():
    """API root — returns basic service info."""
    return {
        "name": "StudySpace API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/api/health",
        "endpoints": {
            "spaces": "/api/spaces",
            "credentials": "/api/credentials/openai",
        },
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "studyspace.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=True,
        log_level="info",
    )
