"""One conversational turn of the Yacht Crew Center assistant.

embed query -> top-K context -> recent history -> model call (tools for
authenticated callers) -> tool dispatch + follow-up call per tool call ->
escalation when nothing grounded the answer -> persist -> respond.

Streaming runs the same pipeline. Tools stay available while streaming: the
first call is streamed, and if it ends in tool calls the final follow-up is
streamed instead. When no context was found, first-call tokens are held back
until it is known whether an escalation replaces them.

Database calls (history, tools, outbox) run in worker threads, off the event loop.
"""

import asyncio
import os
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from backend.agent.prompts import (
    ESCALATION_SUBJECT,
    build_system_prompt,
    escalation_email,
    escalation_message,
)
from backend.agent.tools import ToolOutcome, ToolRegistry
from backend.core.context_indexer import ContextIndexer
from backend.core.history import ChatHistoryStore
from backend.core.llm_adapter import LLMAdapter
from backend.core.notifications import NotificationQueue

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AnonymousCaller:
    """Unauthenticated visitor: no tools, no stored history."""


@dataclass(frozen=True)
class AuthenticatedCaller:
    user_id: str
    role: str = "user"


Caller = AnonymousCaller | AuthenticatedCaller


class ChatTurnError(Exception):
    """The language model could not produce an answer for this turn."""
    pass


@dataclass
class ChatResult:
    response: str
    session_id: str
    tool_calls: list[dict] = field(default_factory=list)


@dataclass
class StreamEvent:
    """A token chunk (content) or the terminal event (done=True)."""
    session_id: str
    content: str = ""
    done: bool = False


@dataclass
class _PreparedTurn:
    session_id: str
    context: str
    messages: list[BaseMessage]
    tools: list[dict] | None


@dataclass
class _ToolCall:
    id: str
    name: str
    args: dict
    parse_error: str | None = None

    def as_dict(self) -> dict:
        return {"name": self.name, "args": self.args, "id": self.id}


def _text(message) -> str:
    """Plain text of a message or chunk, whatever shape its content has."""
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _tool_calls(message) -> list[_ToolCall]:
    """Well-formed and malformed tool calls of a model reply, in order."""
    calls = [
        _ToolCall(id=tc.get("id") or f"call_{i}", name=tc["name"], args=tc.get("args") or {})
        for i, tc in enumerate(getattr(message, "tool_calls", None) or [])
    ]
    for tc in getattr(message, "invalid_tool_calls", None) or []:
        calls.append(_ToolCall(
            id=tc.get("id") or f"call_invalid_{len(calls)}",
            name=tc.get("name") or "unknown",
            args={},
            parse_error=tc.get("error") or "Malformed tool arguments",
        ))
    return calls


class ChatOrchestrator:
    """Drives chat turns over injected model, retrieval, history, tool and notification clients."""

    def __init__(
        self,
        llm: LLMAdapter,
        indexer: ContextIndexer,
        history: ChatHistoryStore,
        tools: ToolRegistry,
        notifications: NotificationQueue,
    ):
        self.llm = llm
        self.indexer = indexer
        self.history = history
        self.tools = tools
        self.notifications = notifications

        self.context_top_k = int(os.environ.get("CONTEXT_TOP_K", "3"))
        self.history_k = int(os.environ.get("HISTORY_RECENT_K", "10"))
        self.retention_days = int(os.environ.get("CHAT_RETENTION_DAYS", "30"))
        self.support_email = os.environ.get("SUPPORT_EMAIL", "support@yachtcrewcenter.com")
        self.timeout = float(os.environ.get("LLM_TIMEOUT", "30"))

    async def reindex(self, force: bool = True) -> int | None:
        """Rebuild the knowledge-base collection. Returns the number of chunks upserted."""
        return await self.indexer.index_context(force_reindex=force)

    async def chat(self, message: str, caller: Caller, session_id: str | None = None) -> ChatResult:
        """Run one non-streaming turn.

        Args:
            message: The user's question.
            caller: Who is asking; only authenticated callers get tools and history.
            session_id: Existing conversation id, or None to start a new one.

        Returns:
            ChatResult with the final answer and the session id.

        Raises:
            ChatTurnError: If a model call fails. Nothing is persisted in that case.
        """
        turn = await self._prepare(message, caller, session_id)

        if not turn.context and not turn.tools:
            response = await self._escalate(message, caller)
            await self._persist(caller, turn.session_id, message, response, [])
            return ChatResult(response=response, session_id=turn.session_id)

        first = await self._invoke(turn.messages, turn.tools)
        response = _text(first)
        calls = _tool_calls(first) if turn.tools else []

        for call in calls:
            outcome = await self._run_tool(call, caller)
            follow_up = await self._invoke(self._follow_up_messages(turn, first, call, outcome))
            response = _text(follow_up) or response

        if not turn.context and not calls:
            response = await self._escalate(message, caller)

        tool_calls = [c.as_dict() for c in calls]
        await self._persist(caller, turn.session_id, message, response, tool_calls)

        logger.info("chat.response", session_id=turn.session_id,
                    context=bool(turn.context), tools=[c.name for c in calls])
        return ChatResult(response=response, session_id=turn.session_id, tool_calls=tool_calls)

    async def stream(
        self, message: str, caller: Caller, session_id: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run one turn, yielding token chunks and then a single done event.

        History is written after the last token and before the done event.
        If the consumer stops iterating earlier (client disconnect, task
        cancellation) nothing is persisted.

        Raises:
            ChatTurnError: If a model call fails or stalls past LLM_TIMEOUT.
        """
        turn = await self._prepare(message, caller, session_id)
        sid = turn.session_id

        if not turn.context and not turn.tools:
            response = await self._escalate(message, caller)
            yield StreamEvent(sid, content=response)
            await self._persist(caller, sid, message, response, [])
            yield StreamEvent(sid, done=True)
            return

        hold_back = not turn.context
        sent: list[str] = []
        gathered = None

        async with aclosing(self._stream(turn.messages, turn.tools)) as chunks:
            async for chunk in chunks:
                gathered = chunk if gathered is None else gathered + chunk
                text = _text(chunk)
                if text and not hold_back:
                    sent.append(text)
                    yield StreamEvent(sid, content=text)

        calls = _tool_calls(gathered) if gathered is not None and turn.tools else []

        for i, call in enumerate(calls):
            outcome = await self._run_tool(call, caller)
            follow_messages = self._follow_up_messages(turn, gathered, call, outcome)

            if i < len(calls) - 1:
                # Superseded by the next follow-up; only the last one reaches the client
                await self._invoke(follow_messages)
                continue

            async with aclosing(self._stream(follow_messages)) as chunks:
                async for chunk in chunks:
                    text = _text(chunk)
                    if text:
                        sent.append(text)
                        yield StreamEvent(sid, content=text)

        if not turn.context and not calls:
            response = await self._escalate(message, caller)
            sent = [response]
            yield StreamEvent(sid, content=response)

        await self._persist(caller, sid, message, "".join(sent), [c.as_dict() for c in calls])
        logger.info("chat_stream.response", session_id=sid,
                    context=bool(turn.context), tools=[c.name for c in calls])
        yield StreamEvent(sid, done=True)

    async def _prepare(self, message: str, caller: Caller, session_id: str | None) -> _PreparedTurn:
        sid = session_id or str(uuid.uuid4())
        authenticated = isinstance(caller, AuthenticatedCaller)
        logger.info("chat.request", session_id=sid, authenticated=authenticated, msg_len=len(message))

        context = ""
        try:
            await self.indexer.index_context()
            context = await self.indexer.retrieve(message, self.context_top_k)
        except Exception as e:
            logger.error("chat.context_failed", error=str(e))

        messages: list[BaseMessage] = [SystemMessage(content=build_system_prompt(context))]

        if authenticated:
            try:
                recent = await asyncio.to_thread(
                    self.history.recent_messages, caller.user_id, sid, limit=self.history_k,
                )
                for record in recent:
                    if record.role == "human":
                        messages.append(HumanMessage(content=record.content))
                    else:
                        messages.append(AIMessage(content=record.content))
            except Exception as e:
                logger.error("chat.history_failed", session_id=sid, error=str(e))

        messages.append(HumanMessage(content=message))

        return _PreparedTurn(
            session_id=sid,
            context=context,
            messages=messages,
            tools=self.tools.specs() if authenticated else None,
        )

    async def _invoke(self, messages: list[BaseMessage], tools: list[dict] | None = None) -> AIMessage:
        try:
            return await asyncio.wait_for(self.llm.ainvoke(messages, tools), timeout=self.timeout)
        except Exception as e:
            logger.error("chat.llm_failed", error=str(e) or type(e).__name__)
            raise ChatTurnError("Failed to generate response") from e

    async def _stream(self, messages: list[BaseMessage], tools: list[dict] | None = None):
        upstream = self.llm.astream(messages, tools)
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(upstream.__anext__(), timeout=self.timeout)
                except StopAsyncIteration:
                    return
                except Exception as e:
                    logger.error("chat_stream.llm_failed", error=str(e) or type(e).__name__)
                    raise ChatTurnError("Failed to generate response") from e
                yield chunk
        finally:
            await upstream.aclose()

    async def _run_tool(self, call: _ToolCall, caller: Caller) -> ToolOutcome:
        if call.parse_error:
            logger.warning("tool.malformed_call", tool=call.name, error=call.parse_error)
            return ToolOutcome.failure(f"Could not parse arguments for {call.name}: {call.parse_error}")
        if not isinstance(caller, AuthenticatedCaller):
            return ToolOutcome.failure("Tools require a signed-in user")
        return await asyncio.to_thread(
            self.tools.dispatch, call.name, call.args, caller.user_id, caller.role,
        )

    @staticmethod
    def _follow_up_messages(
        turn: _PreparedTurn, reply, call: _ToolCall, outcome: ToolOutcome,
    ) -> list[BaseMessage]:
        """Original prompt + the assistant's request for this one tool + its result."""
        return [
            *turn.messages,
            AIMessage(content=_text(reply), tool_calls=[call.as_dict()]),
            ToolMessage(content=outcome.payload(), tool_call_id=call.id),
        ]

    async def _escalate(self, message: str, caller: Caller) -> str:
        user_id = caller.user_id if isinstance(caller, AuthenticatedCaller) else None
        await asyncio.to_thread(
            self.notifications.enqueue,
            self.support_email, ESCALATION_SUBJECT, escalation_email(message, user_id),
        )
        logger.info("chat.escalated", user_id=user_id)
        return escalation_message(self.support_email)

    async def _persist(
        self, caller: Caller, session_id: str, message: str, response: str, tool_calls: list[dict],
    ) -> None:
        if not isinstance(caller, AuthenticatedCaller):
            return

        try:
            await asyncio.to_thread(self._save_turn, caller.user_id, session_id, message, response, tool_calls)
        except Exception as e:
            logger.error("chat.persist_failed", session_id=session_id, error=str(e))

    def _save_turn(
        self, user_id: str, session_id: str, message: str, response: str, tool_calls: list[dict],
    ) -> None:
        self.history.upsert_append(user_id, session_id, [
            {"role": "human", "content": message},
            {"role": "ai", "content": response, "tool_calls": tool_calls},
        ])
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.retention_days)
        self.history.delete_older_than(user_id, cutoff)
