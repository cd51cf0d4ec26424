"""FastAPI application entry point.

Startup sequence: init DB → embeddings → Qdrant → LLM → tools/history/outbox → orchestrator.
Every client is built once here and handed to the orchestrator.
"""

import os
import time
from collections import defaultdict
from contextlib import asynccontextmanager

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from backend.agent.orchestrator import ChatOrchestrator
from backend.agent.tools import ToolRegistry
from backend.api.auth import bearer_token, decode_token
from backend.api.routes import router
from backend.api.ws import ws_router
from backend.core.context_indexer import ContextIndexer
from backend.core.database import init_db
from backend.core.embeddings import EmbeddingProvider
from backend.core.history import ChatHistoryStore
from backend.core.llm_adapter import LLMAdapter
from backend.core.notifications import NotificationQueue
from backend.core.vector_index import VectorIndex

load_dotenv()

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("startup.begin")

    init_db()
    logger.info("startup.db_initialized")

    embedder = EmbeddingProvider()
    app.state.embedder = embedder
    logger.info("startup.embeddings_initialized", healthy=embedder.is_healthy())

    vector_index = VectorIndex()
    await vector_index.setup()
    app.state.vector_index = vector_index
    logger.info("startup.qdrant_initialized", healthy=vector_index.is_healthy())

    llm_adapter = LLMAdapter()
    app.state.llm_adapter = llm_adapter
    logger.info("startup.llm_initialized", healthy=llm_adapter.is_healthy())

    history = ChatHistoryStore()
    app.state.history = history

    app.state.orchestrator = ChatOrchestrator(
        llm=llm_adapter,
        indexer=ContextIndexer(embedder, vector_index),
        history=history,
        tools=ToolRegistry(),
        notifications=NotificationQueue(),
    )

    logger.info("startup.complete")
    yield
    logger.info("shutdown.complete")


app = FastAPI(
    title="Yacht Crew Center AI API",
    description="Retrieval-augmented customer service assistant for the Yacht Crew Center marketplace",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate limiter: per-caller request throttling on the chat endpoints
RATE_LIMIT_AUTHENTICATED = int(os.environ.get("RATE_LIMIT_AUTHENTICATED", "100"))
RATE_LIMIT_ANONYMOUS = int(os.environ.get("RATE_LIMIT_ANONYMOUS", "20"))
RATE_LIMIT_WINDOW = float(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "900"))
_rate_buckets: dict[str, list[float]] = defaultdict(list)
_last_sweep = float("-inf")


def _sweep_rate_buckets(now: float) -> None:
    """Forget callers with no request inside the current window."""
    stale = [key for key, stamps in _rate_buckets.items() if not stamps or now - stamps[-1] >= RATE_LIMIT_WINDOW]
    for key in stale:
        del _rate_buckets[key]


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    """Enforce a sliding-window request budget per user (or per IP when anonymous)."""
    global _last_sweep

    if not request.url.path.startswith("/ai/chat") or request.method != "POST":
        return await call_next(request)

    user_id = decode_token(bearer_token(request.headers.get("Authorization")))
    if user_id:
        key, limit = f"user:{user_id}", RATE_LIMIT_AUTHENTICATED
    else:
        host = request.client.host if request.client else "unknown"
        key, limit = f"ip:{host}", RATE_LIMIT_ANONYMOUS

    now = time.monotonic()
    if now - _last_sweep >= RATE_LIMIT_WINDOW:
        _sweep_rate_buckets(now)
        _last_sweep = now

    # Prune timestamps outside the window
    _rate_buckets[key] = [t for t in _rate_buckets[key] if now - t < RATE_LIMIT_WINDOW]
    window = _rate_buckets[key]

    if len(window) >= limit:
        logger.warning("rate_limit.exceeded", key=key)
        return JSONResponse(
            status_code=429,
            content={"detail": "Too many requests, please try again later"},
        )

    window.append(now)
    return await call_next(request)


app.include_router(router)
app.include_router(ws_router)
