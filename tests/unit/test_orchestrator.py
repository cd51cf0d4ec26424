"""Unit tests for the chat turn pipeline (scripted model, in-memory SQLite)."""

import asyncio
import json
import time
from datetime import datetime, timedelta, timezone

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage, ToolMessage
from langchain_core.messages.tool import tool_call_chunk
from sqlalchemy import select

from backend.agent.orchestrator import (
    AnonymousCaller,
    AuthenticatedCaller,
    ChatOrchestrator,
    ChatTurnError,
)
from backend.agent.prompts import escalation_message
from backend.agent.tools import ToolRegistry
from backend.core.history import ChatHistoryStore, ChatSession
from backend.core.llm_adapter import LLMAdapter
from backend.core.notifications import NotificationQueue
from tests.fakes import FakeLLM, StubIndexer

CREW = AuthenticatedCaller(user_id="U1", role="user")
CONTEXT = "Orders can be cancelled free of charge until the supplier confirms them."


def _orchestrator(llm, context=""):
    return ChatOrchestrator(
        llm=llm,
        indexer=StubIndexer(context),
        history=ChatHistoryStore(),
        tools=ToolRegistry(),
        notifications=NotificationQueue(),
    )


def _orders_call(args=None, call_id="call_1"):
    return AIMessage(content="", tool_calls=[{"name": "get_orders", "args": args or {}, "id": call_id}])


async def _collect(events):
    return [e async for e in events]


class TestAnonymous:

    def test_no_context_escalates_without_model_call(self, catalog):
        llm = FakeLLM()
        orch = _orchestrator(llm)

        result = asyncio.run(orch.chat("hello", AnonymousCaller()))

        assert result.response == escalation_message(orch.support_email)
        assert llm.calls == []
        jobs = orch.notifications.pending()
        assert len(jobs) == 1
        assert jobs[0].to == orch.support_email
        assert "hello" in jobs[0].body
        assert "Anonymous" in jobs[0].body

    def test_answers_from_context_without_tools(self, catalog):
        llm = FakeLLM(replies=[AIMessage(content="Yes, until the supplier confirms.")])
        orch = _orchestrator(llm, CONTEXT)

        result = asyncio.run(orch.chat("Can I cancel an order?", AnonymousCaller()))

        assert result.response == "Yes, until the supplier confirms."
        assert llm.calls[0]["tools"] is None
        assert orch.notifications.pending() == []

    def test_nothing_is_stored(self, catalog):
        llm = FakeLLM(replies=[AIMessage(content="Sure.")])
        orch = _orchestrator(llm, CONTEXT)

        asyncio.run(orch.chat("Can I cancel?", AnonymousCaller(), session_id="anon"))

        with catalog() as s:
            assert s.execute(select(ChatSession)).scalars().all() == []

    def test_issues_session_id(self, catalog):
        result = asyncio.run(_orchestrator(FakeLLM()).chat("hello", AnonymousCaller()))
        assert result.session_id


class TestPromptAssembly:

    def test_system_prompt_leads_with_context(self, catalog):
        llm = FakeLLM(replies=[AIMessage(content="ok")])
        asyncio.run(_orchestrator(llm, CONTEXT).chat("Can I cancel?", CREW))

        messages = llm.calls[0]["messages"]
        assert isinstance(messages[0], SystemMessage)
        assert messages[0].content.startswith(CONTEXT)
        assert isinstance(messages[-1], HumanMessage)
        assert messages[-1].content == "Can I cancel?"

    def test_only_last_ten_history_messages(self, catalog):
        ChatHistoryStore().upsert_append("U1", "s1", [
            {"role": "human" if i % 2 == 0 else "ai", "content": f"old {i}"} for i in range(25)
        ])
        llm = FakeLLM(replies=[AIMessage(content="ok")])

        asyncio.run(_orchestrator(llm, CONTEXT).chat("next", CREW, session_id="s1"))

        messages = llm.calls[0]["messages"]
        assert len(messages) == 12
        assert [m.content for m in messages[1:11]] == [f"old {i}" for i in range(15, 25)]

    def test_authenticated_caller_gets_tools(self, catalog):
        llm = FakeLLM(replies=[AIMessage(content="ok")])
        asyncio.run(_orchestrator(llm, CONTEXT).chat("hi", CREW))
        names = [t["function"]["name"] for t in llm.calls[0]["tools"]]
        assert names == ["get_orders", "get_bookings", "get_products", "get_services"]


class TestToolCalls:

    def test_follow_up_answer_replaces_first_reply(self, catalog):
        llm = FakeLLM(replies=[
            _orders_call({"status": "pending"}),
            AIMessage(content="You have 2 pending orders."),
        ])
        orch = _orchestrator(llm)

        result = asyncio.run(orch.chat("Show my pending orders", CREW, session_id="s1"))

        assert result.response == "You have 2 pending orders."
        assert result.tool_calls == [{"name": "get_orders", "args": {"status": "pending"}, "id": "call_1"}]
        follow_up = llm.calls[1]["messages"]
        assert isinstance(follow_up[-1], ToolMessage)
        assert follow_up[-1].tool_call_id == "call_1"
        assert json.loads(follow_up[-1].content)["total"] == 2
        assert llm.calls[1]["tools"] is None

    def test_tool_answer_is_not_escalated(self, catalog):
        llm = FakeLLM(replies=[_orders_call(), AIMessage(content="Three orders.")])
        orch = _orchestrator(llm)

        asyncio.run(orch.chat("my orders", CREW))

        assert orch.notifications.pending() == []

    def test_tool_error_reaches_the_model(self, catalog):
        llm = FakeLLM(replies=[_orders_call({"status": "lost"}), AIMessage(content="That status is unknown.")])

        result = asyncio.run(_orchestrator(llm).chat("lost orders?", CREW))

        tool_message = llm.calls[1]["messages"][-1]
        assert "error" in json.loads(tool_message.content)
        assert result.response == "That status is unknown."

    def test_one_follow_up_per_tool_call(self, catalog):
        first = AIMessage(content="", tool_calls=[
            {"name": "get_orders", "args": {}, "id": "call_1"},
            {"name": "get_bookings", "args": {}, "id": "call_2"},
        ])
        llm = FakeLLM(replies=[first, AIMessage(content="orders"), AIMessage(content="orders and bookings")])

        result = asyncio.run(_orchestrator(llm).chat("everything", CREW))

        assert len(llm.calls) == 3
        assert llm.calls[2]["messages"][-1].tool_call_id == "call_2"
        assert llm.calls[2]["messages"][-2].tool_calls[0]["id"] == "call_2"
        assert result.response == "orders and bookings"

    def test_history_records_tool_calls(self, catalog):
        llm = FakeLLM(replies=[_orders_call(), AIMessage(content="Three orders.")])
        asyncio.run(_orchestrator(llm).chat("my orders", CREW, session_id="s1"))

        stored = ChatHistoryStore().find_session("U1", "s1")
        assert [m.role for m in stored] == ["human", "ai"]
        assert stored[1].content == "Three orders."
        assert stored[1].tool_calls[0]["name"] == "get_orders"


class TestEscalation:

    def test_authenticated_without_context_or_tools_escalates(self, catalog):
        llm = FakeLLM(replies=[AIMessage(content="I am not sure.")])
        orch = _orchestrator(llm)

        result = asyncio.run(orch.chat("What is the meaning of life?", CREW, session_id="s1"))

        assert result.response == escalation_message(orch.support_email)
        jobs = orch.notifications.pending()
        assert len(jobs) == 1
        assert "U1" in jobs[0].body
        assert ChatHistoryStore().find_session("U1", "s1")[1].content == result.response


class TestPersistence:

    def test_turn_appends_two_messages(self, catalog):
        llm = FakeLLM(replies=[AIMessage(content="one"), AIMessage(content="two")])
        orch = _orchestrator(llm, CONTEXT)

        asyncio.run(orch.chat("first", CREW, session_id="s1"))
        asyncio.run(orch.chat("second", CREW, session_id="s1"))

        stored = [m.content for m in ChatHistoryStore().find_session("U1", "s1")]
        assert stored == ["first", "one", "second", "two"]

    def test_expired_sessions_pruned_after_turn(self, catalog):
        store = ChatHistoryStore()
        store.upsert_append("U1", "stale", [{"role": "human", "content": "old"}])
        with catalog() as s:
            chat = s.execute(select(ChatSession).where(ChatSession.session_id == "stale")).scalar_one()
            chat.created_at = datetime.now(timezone.utc) - timedelta(days=31)
            s.commit()

        llm = FakeLLM(replies=[AIMessage(content="ok")])
        asyncio.run(_orchestrator(llm, CONTEXT).chat("hi", CREW, session_id="fresh"))

        assert store.find_session("U1", "stale") == []
        assert len(store.find_session("U1", "fresh")) == 2

    def test_model_failure_persists_nothing(self, catalog):
        llm = FakeLLM(error=RuntimeError("provider down"))
        orch = _orchestrator(llm, CONTEXT)

        with pytest.raises(ChatTurnError):
            asyncio.run(orch.chat("hi", CREW, session_id="s1"))

        assert ChatHistoryStore().find_session("U1", "s1") == []
        assert orch.notifications.pending() == []

    def test_follow_up_failure_aborts_turn(self, catalog):
        llm = FakeLLM(replies=[_orders_call(), RuntimeError("timeout")])
        orch = _orchestrator(llm, CONTEXT)

        with pytest.raises(ChatTurnError):
            asyncio.run(orch.chat("orders", CREW, session_id="s1"))

        assert len(llm.calls) == 2
        assert ChatHistoryStore().find_session("U1", "s1") == []


class TestStreaming:

    def test_tokens_then_done(self, catalog):
        llm = FakeLLM(streams=[[AIMessageChunk(content="Hel"), AIMessageChunk(content="lo")]])
        orch = _orchestrator(llm, CONTEXT)

        events = asyncio.run(_collect(orch.stream("hi", CREW, session_id="s1")))

        assert [e.content for e in events if not e.done] == ["Hel", "lo"]
        assert events[-1].done
        assert sum(e.done for e in events) == 1
        assert {e.session_id for e in events} == {"s1"}
        assert ChatHistoryStore().find_session("U1", "s1")[1].content == "Hello"

    def test_streams_follow_up_after_tool_call(self, catalog):
        first = [AIMessageChunk(content="", tool_call_chunks=[
            tool_call_chunk(name="get_orders", args='{"status": "pending"}', id="call_1", index=0),
        ])]
        llm = FakeLLM(streams=[first, [AIMessageChunk(content="Two "), AIMessageChunk(content="pending.")]])
        orch = _orchestrator(llm, CONTEXT)

        events = asyncio.run(_collect(orch.stream("pending orders?", CREW, session_id="s1")))

        assert [e.content for e in events if not e.done] == ["Two ", "pending."]
        assert json.loads(llm.calls[1]["messages"][-1].content)["total"] == 2
        stored = ChatHistoryStore().find_session("U1", "s1")
        assert stored[1].content == "Two pending."
        assert stored[1].tool_calls[0]["args"] == {"status": "pending"}

    def test_no_context_holds_back_tokens_and_escalates(self, catalog):
        llm = FakeLLM(streams=[[AIMessageChunk(content="I guess...")]])
        orch = _orchestrator(llm)

        events = asyncio.run(_collect(orch.stream("unknown topic", CREW)))

        assert [e.content for e in events if not e.done] == [escalation_message(orch.support_email)]
        assert len(orch.notifications.pending()) == 1

    def test_anonymous_no_context_streams_escalation(self, catalog):
        llm = FakeLLM()
        events = asyncio.run(_collect(_orchestrator(llm).stream("hello", AnonymousCaller())))

        assert llm.calls == []
        assert events[-1].done
        assert "escalated" in events[0].content

    def test_closed_stream_persists_nothing(self, catalog):
        llm = FakeLLM(streams=[[AIMessageChunk(content="a"), AIMessageChunk(content="b")]])
        orch = _orchestrator(llm, CONTEXT)

        async def run():
            events = orch.stream("hi", CREW, session_id="s1")
            first = await events.__anext__()
            await events.aclose()
            return first

        assert asyncio.run(run()).content == "a"
        assert ChatHistoryStore().find_session("U1", "s1") == []

    def test_model_failure_raises(self, catalog):
        llm = FakeLLM(error=RuntimeError("provider down"))
        orch = _orchestrator(llm, CONTEXT)

        with pytest.raises(ChatTurnError):
            asyncio.run(_collect(orch.stream("hi", CREW, session_id="s1")))
        assert ChatHistoryStore().find_session("U1", "s1") == []


class TestEventLoop:

    def test_slow_database_does_not_block_other_tasks(self, catalog):
        class SlowHistory(ChatHistoryStore):
            def recent_messages(self, *args, **kwargs):
                time.sleep(0.4)
                return super().recent_messages(*args, **kwargs)

        orch = ChatOrchestrator(
            llm=FakeLLM(replies=[AIMessage(content="ok")]),
            indexer=StubIndexer(CONTEXT),
            history=SlowHistory(),
            tools=ToolRegistry(),
            notifications=NotificationQueue(),
        )

        async def run():
            gaps = []
            finished = asyncio.Event()

            async def ticker():
                last = time.monotonic()
                while not finished.is_set():
                    await asyncio.sleep(0.01)
                    now = time.monotonic()
                    gaps.append(now - last)
                    last = now

            ticking = asyncio.create_task(ticker())
            await orch.chat("hi", CREW, session_id="s1")
            finished.set()
            await ticking
            return gaps

        gaps = asyncio.run(run())
        assert max(gaps) < 0.2


class TestUnconfiguredModel:

    def test_missing_llm_keys_fail_the_turn(self, catalog, monkeypatch):
        for name in ("CEREBRAS_API_KEY", "GROQ_API_KEY", "OPENAI_API_KEY"):
            monkeypatch.delenv(name, raising=False)
        orch = _orchestrator(LLMAdapter(), CONTEXT)

        with pytest.raises(ChatTurnError):
            asyncio.run(orch.chat("hi", CREW, session_id="s1"))
        assert ChatHistoryStore().find_session("U1", "s1") == []
