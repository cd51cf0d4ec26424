"""WebSocket transport for the assistant.

Client frames: {"event": "ai:chat", "message": str, "sessionId"?: str, "token"?: str}
Server frames:
  {"event": "ai:stream", "content": str, "sessionId": str}   per token chunk
  {"event": "ai:complete", "response": str, "sessionId": str} once per turn
  {"event": "ai:error", "error": str}

Incoming frames are read by a separate task so a disconnect is noticed while a
turn is running. The in-flight turn is then cancelled and nothing is persisted.
"""

import asyncio
import contextlib
import json
from contextlib import aclosing

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from backend.agent.orchestrator import AnonymousCaller, Caller, ChatOrchestrator, ChatTurnError
from backend.api.auth import decode_token, resolve_caller

logger = structlog.get_logger(__name__)

ws_router = APIRouter()


async def _read_frames(websocket: WebSocket, frames: asyncio.Queue, disconnected: asyncio.Event) -> None:
    """Pump client text frames into the queue until the client goes away."""
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            await frames.put(message.get("text") or "")
    finally:
        disconnected.set()
        frames.put_nowait(None)


async def _run_turn(
    websocket: WebSocket, orchestrator: ChatOrchestrator, message: str, caller: Caller, session_id: str | None,
) -> None:
    full_response = []

    try:
        async with aclosing(orchestrator.stream(message, caller, session_id)) as events:
            async for event in events:
                if event.done:
                    await websocket.send_json({
                        "event": "ai:complete",
                        "response": "".join(full_response),
                        "sessionId": event.session_id,
                    })
                else:
                    full_response.append(event.content)
                    await websocket.send_json({
                        "event": "ai:stream",
                        "content": event.content,
                        "sessionId": event.session_id,
                    })
    except ChatTurnError as e:
        logger.error("ws.chat_failed", error=str(e))
        await websocket.send_json({"event": "ai:error", "error": "Failed to process message"})


@ws_router.websocket("/ws/ai")
async def ai_socket(websocket: WebSocket):
    await websocket.accept()
    orchestrator = websocket.app.state.orchestrator

    frames: asyncio.Queue = asyncio.Queue()
    disconnected = asyncio.Event()
    reader = asyncio.create_task(_read_frames(websocket, frames, disconnected))

    try:
        while True:
            raw = await frames.get()
            if raw is None:
                break

            try:
                data = json.loads(raw)
            except ValueError:
                data = None
            if not isinstance(data, dict) or data.get("event") != "ai:chat":
                await websocket.send_json({"event": "ai:error", "error": "Unsupported event"})
                continue

            message = data.get("message")
            if not message or not isinstance(message, str):
                await websocket.send_json({"event": "ai:error", "error": "Message is required"})
                continue

            token = data.get("token")
            if token and decode_token(token) is None:
                await websocket.send_json({"event": "ai:error", "error": "Invalid token"})
                continue
            caller = await asyncio.to_thread(resolve_caller, token) if token else AnonymousCaller()

            turn = asyncio.create_task(
                _run_turn(websocket, orchestrator, message, caller, data.get("sessionId") or None)
            )
            gone = asyncio.create_task(disconnected.wait())
            await asyncio.wait({turn, gone}, return_when=asyncio.FIRST_COMPLETED)
            gone.cancel()

            if not turn.done():
                turn.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await turn
                logger.info("ws.turn_cancelled", reason="client_disconnected")
                break

            error = turn.exception()
            if isinstance(error, WebSocketDisconnect):
                logger.info("ws.disconnected")
                break
            if error is not None:
                logger.error("ws.turn_failed", error=str(error) or type(error).__name__)
                break

    except WebSocketDisconnect:
        logger.info("ws.disconnected")
    finally:
        reader.cancel()
        await asyncio.gather(reader, return_exceptions=True)
