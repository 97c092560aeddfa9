"""Tests for the ordered response sink."""

from __future__ import annotations

import asyncio

import pytest

from llm_gateway.events.bus import EventBus
from llm_gateway.types import AgentEvent, EventType


@pytest.fixture
def bus():
    return EventBus()


def _text(value: str) -> AgentEvent:
    return AgentEvent(type=EventType.LLM_STREAMING, data={"text": value})


class TestDelivery:
    async def test_sync_and_async_handlers(self, bus: EventBus):
        received = []

        async def on_text(event: AgentEvent):
            received.append(("async", event.data["text"]))

        bus.subscribe(EventType.LLM_STREAMING, on_text)
        bus.subscribe(EventType.LLM_STREAMING, lambda e: received.append(("sync", e.data["text"])))
        await bus.emit(_text("hi"))

        assert received == [("async", "hi"), ("sync", "hi")]

    async def test_only_matching_type(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.TOOL_CALL, received.append)
        await bus.emit(_text("x"))
        assert received == []

    async def test_string_key_matches_enum(self, bus: EventBus):
        received = []
        bus.subscribe("llm.error", received.append)
        await bus.emit(AgentEvent(type=EventType.LLM_ERROR))
        assert len(received) == 1

    async def test_specific_handlers_before_wildcard(self, bus: EventBus):
        calls = []
        bus.subscribe("*", lambda e: calls.append("wildcard"))
        bus.subscribe(EventType.LLM_RESPONSE, lambda e: calls.append("specific"))
        await bus.emit(AgentEvent(type=EventType.LLM_RESPONSE))
        assert calls == ["specific", "wildcard"]


class TestOrdering:
    async def test_slow_handler_sees_fragments_in_arrival_order(self, bus: EventBus):
        seen = []

        async def slow(event: AgentEvent):
            # First fragment takes longest; it must still finish first
            await asyncio.sleep(0.03 if event.data["text"] == "a" else 0)
            seen.append(event.data["text"])

        bus.subscribe(EventType.LLM_STREAMING, slow)
        for value in "abc":
            await bus.emit(_text(value))
        assert seen == ["a", "b", "c"]

    async def test_handlers_run_one_at_a_time(self, bus: EventBus):
        log = []

        async def first(event: AgentEvent):
            log.append("first:start")
            await asyncio.sleep(0.01)
            log.append("first:end")

        async def second(event: AgentEvent):
            log.append("second")

        bus.subscribe(EventType.LLM_STREAMING, first)
        bus.subscribe(EventType.LLM_STREAMING, second)
        await bus.emit(_text("x"))
        assert log == ["first:start", "first:end", "second"]


class TestUnsubscribe:
    async def test_returned_callable_removes_handler(self, bus: EventBus):
        received = []
        unsubscribe = bus.subscribe(EventType.LLM_RESPONSE, received.append)
        await bus.emit(AgentEvent(type=EventType.LLM_RESPONSE))
        unsubscribe()
        unsubscribe()
        await bus.emit(AgentEvent(type=EventType.LLM_RESPONSE))
        assert len(received) == 1


class TestHistory:
    async def test_bounded_oldest_dropped(self):
        bus = EventBus(max_history=3)
        for value in "abcde":
            await bus.emit(_text(value))
        assert [e.data["text"] for e in bus.history] == ["c", "d", "e"]

    async def test_history_recorded_without_subscribers(self, bus: EventBus):
        await bus.emit(AgentEvent(type=EventType.LLM_CANCELLED))
        assert bus.history[-1].type is EventType.LLM_CANCELLED


class TestHandlerFailure:
    async def test_failure_does_not_stop_delivery(self, bus: EventBus):
        received = []

        async def broken(event: AgentEvent):
            raise ValueError("boom")

        bus.subscribe(EventType.LLM_STREAMING, broken)
        bus.subscribe(EventType.LLM_STREAMING, lambda e: received.append(e.data["text"]))
        await bus.emit(_text("a"))
        await bus.emit(_text("b"))
        assert received == ["a", "b"]
