"""Pydantic models for the API layer.

Defines request/response schemas for all endpoints. Wire names are camelCase
(sessionId); Python attributes are snake_case.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ChatRequest(BaseModel):
    """Incoming chat message from a client."""
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., min_length=1, max_length=2000, description="User question")
    session_id: str | None = Field(
        None, alias="sessionId", min_length=1, max_length=128,
        description="Existing session identifier; a new one is issued when omitted",
    )


class MessageRecord(BaseModel):
    """Single message in a conversation history."""
    role: Literal["human", "ai"]
    content: str
    tool_calls: list[dict] = Field(default_factory=list)
    timestamp: datetime


class ChatTurnData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    response: str
    session_id: str = Field(..., alias="sessionId")


class ChatResponse(BaseModel):
    """Outgoing response for a non-streaming chat turn."""
    success: bool = True
    data: ChatTurnData
    authenticated: bool = False


class ReindexResponse(BaseModel):
    success: bool = True
    message: str
    chunks: int = 0


class HistoryResponse(BaseModel):
    """Full conversation history for a session."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    messages: list[MessageRecord]
