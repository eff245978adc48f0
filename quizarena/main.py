"""FastAPI application: QuizArena session backend.

Start with::

    uvicorn quizarena.main:app --reload --port 8000

Or::

    python -m quizarena.main
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from quizarena.config import settings
from quizarena.database import init_db
from quizarena.errors import ArenaError
from quizarena.routers import sessions
from quizarena.services.cache import session_cache
from quizarena.services.circuit_breaker import breakers
from quizarena.services.mistral_client import get_client

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="QuizArena API",
    description=(
        "Backend API for QuizArena: AI-generated quiz and fact-check sessions "
        "with capacity-limited rosters, per-item scoring and ledger payouts. "
        "Content generation is powered by Mistral AI."
    ),
    version="1.0.0",
)

# ── CORS: allow the local frontend dev server ──────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Register route modules ──────────────────────────────────────────────
app.include_router(sessions.router)


# ── Error rendering ─────────────────────────────────────────────────────
@app.exception_handler(ArenaError)
async def _arena_error(request: Request, exc: ArenaError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "kind": type(exc).__name__},
    )


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "kind": "InternalError"},
    )


@app.on_event("startup")
async def _startup() -> None:
    init_db()
    if get_client() is None:
        logger.warning("MISTRAL_API_KEY not set, content generator running in demo mode")
    logger.info("Database initialised, server ready")


@app.get("/api/health")
async def health():
    """Simple health-check endpoint."""
    return {"status": "ok", "api_key_configured": bool(settings.mistral_api_key)}


@app.get("/api/stats")
async def stats():
    """Cache contents and per-collaborator circuit breaker state."""
    return {"cache": session_cache.stats(), "breakers": breakers.stats()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "quizarena.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
