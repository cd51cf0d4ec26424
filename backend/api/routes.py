"""FastAPI endpoints for the assistant.

POST /ai/chat - one chat turn, JSON response
POST /ai/chat/stream - one chat turn, Server-Sent Events
POST /ai/reindex - rebuild the knowledge-base index (admin)
GET /ai/history/{session_id} - the caller's conversation history
GET /health - component health check
"""

import json
from contextlib import aclosing

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from backend.agent.orchestrator import AuthenticatedCaller, Caller, ChatTurnError
from backend.api.auth import optional_caller, require_admin, require_caller
from backend.api.schemas import (
    ChatRequest,
    ChatResponse,
    ChatTurnData,
    HistoryResponse,
    ReindexResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter()


def sse(payload: dict) -> str:
    """One Server-Sent Events frame."""
    return f"data: {json.dumps(payload)}\n\n"


@router.post("/ai/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, req: Request, caller: Caller = Depends(optional_caller)):
    """Process a user message: retrieve -> model -> tools -> persist -> respond."""
    orchestrator = req.app.state.orchestrator

    try:
        result = await orchestrator.chat(request.message, caller, request.session_id)
    except ChatTurnError as e:
        logger.error("chat.failed", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to process chat request")

    return ChatResponse(
        data=ChatTurnData(response=result.response, session_id=result.session_id),
        authenticated=isinstance(caller, AuthenticatedCaller),
    )


@router.post("/ai/chat/stream")
async def chat_stream(request: ChatRequest, req: Request, caller: Caller = Depends(optional_caller)):
    """Process a user message and stream the answer token by token via SSE."""
    orchestrator = req.app.state.orchestrator

    async def generate_events():
        try:
            async with aclosing(orchestrator.stream(request.message, caller, request.session_id)) as events:
                async for event in events:
                    if await req.is_disconnected():
                        # Closing the stream here skips persisting the partial turn
                        logger.info("chat_stream.client_disconnected", session_id=event.session_id)
                        return
                    if event.done:
                        yield sse({"done": True, "sessionId": event.session_id})
                    else:
                        yield sse({"content": event.content, "sessionId": event.session_id})

        except ChatTurnError as e:
            logger.error("chat_stream.failed", error=str(e))
            yield sse({"error": "Failed to process message"})
        except Exception as e:
            logger.error("chat_stream.unexpected", error=str(e))
            yield sse({"error": "Failed to process message"})

    return StreamingResponse(
        generate_events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/ai/reindex", response_model=ReindexResponse)
async def reindex(req: Request, admin: AuthenticatedCaller = Depends(require_admin)):
    """Wipe and rebuild the knowledge-base vectors from ai-context.md."""
    logger.info("reindex.request", user_id=admin.user_id)

    try:
        chunks = await req.app.state.orchestrator.reindex(force=True)
    except Exception as e:
        logger.error("reindex.failed", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to reindex context")

    if chunks is None:
        raise HTTPException(status_code=500, detail="Failed to reindex context")

    return ReindexResponse(message="AI context reindexed successfully", chunks=chunks)


@router.get("/ai/history/{session_id}", response_model=HistoryResponse)
def history(session_id: str, req: Request, caller: AuthenticatedCaller = Depends(require_caller)):
    """Fetch the caller's conversation history for a session."""
    messages = req.app.state.history.find_session(caller.user_id, session_id)
    return HistoryResponse(session_id=session_id, messages=messages)


@router.get("/health")
def health(req: Request):
    """Check health of all backend components."""
    components = {}

    # LLM adapter
    llm = req.app.state.llm_adapter
    components["cerebras"] = "ok" if llm.cerebras_key else "error"
    components["groq"] = "ok" if llm.groq_key else "error"

    components["embeddings"] = "ok" if req.app.state.embedder.is_healthy() else "error"
    components["qdrant"] = "ok" if req.app.state.vector_index.is_healthy() else "error"

    try:
        from backend.core.database import get_session
        with get_session() as session:
            session.connection()
        components["database"] = "ok"
    except Exception:
        components["database"] = "error"

    # Overall status
    errors = [k for k, v in components.items() if v == "error"]
    if not errors:
        status = "healthy"
    elif len(errors) == len(components):
        status = "unhealthy"
    else:
        status = "degraded"

    return {"status": status, "components": components}


@router.get("/")
@router.head("/")
def root_health():
    """Basic root health check for deployment platforms."""
    return {"status": "ok", "service": "ycc-ai-api"}
