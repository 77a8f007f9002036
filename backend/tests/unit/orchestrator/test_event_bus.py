"""
Unit Tests for the generation EventBus
"""
import asyncio

import pytest

from appforge.modules.orchestrator.event_bus import EventBus, EventType, GenerationEvent


class TestEventBus:

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        bus = EventBus()
        seen = []

        def sync_handler(event):
            seen.append(("sync", event.project_id))

        async def async_handler(event):
            seen.append(("async", event.project_id))

        bus.subscribe(EventType.AGENT_RUN, sync_handler)
        bus.subscribe("code-agent/run", async_handler)
        await bus.emit(EventType.AGENT_RUN, "p1")

        assert seen == [("sync", "p1"), ("async", "p1")]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_delivery(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(EventType.SANDBOX_READY, broken)
        bus.subscribe(EventType.SANDBOX_READY, lambda e: seen.append(e.type))
        await bus.emit(EventType.SANDBOX_READY, "p1")

        assert seen == [EventType.SANDBOX_READY]

    @pytest.mark.asyncio
    async def test_expect_registered_before_emit_catches_event(self):
        bus = EventBus()
        waiter = bus.expect(EventType.AGENT_FINISHED, lambda e: e.data.get("step_type") == "backend")

        await bus.emit(EventType.AGENT_FINISHED, "p1", data={"step_type": "frontend"})
        await bus.emit(EventType.AGENT_FINISHED, "p1", data={"step_type": "backend"})

        event = await waiter.wait(timeout=0.1)
        assert event.data["step_type"] == "backend"

    @pytest.mark.asyncio
    async def test_wait_for_times_out(self):
        bus = EventBus()

        with pytest.raises(asyncio.TimeoutError):
            await bus.wait_for(EventType.SANDBOX_READY, timeout=0.01)

    @pytest.mark.asyncio
    async def test_unsubscribed_after_wait(self):
        bus = EventBus()
        waiter = bus.expect(EventType.SANDBOX_READY)
        await bus.emit(EventType.SANDBOX_READY, "p1")
        await waiter.wait(timeout=0.1)

        assert bus._handlers[EventType.SANDBOX_READY] == []

    @pytest.mark.asyncio
    async def test_history_filters(self):
        bus = EventBus(max_history=3)
        for i in range(4):
            await bus.emit(EventType.AGENT_RUN, f"p{i % 2}")
        await bus.emit(EventType.SANDBOX_SETUP, "p1")

        assert len(bus.get_history()) == 3
        assert all(e.project_id == "p1" for e in bus.get_history(project_id="p1"))
        assert [e.type for e in bus.get_history(event_type=EventType.SANDBOX_SETUP)] == [EventType.SANDBOX_SETUP]

        bus.clear_history()
        assert bus.get_history() == []


def test_event_serialization():
    event = GenerationEvent(type=EventType.SANDBOX_SETUP, project_id="p1", correlation_id="g1")

    data = event.to_dict()

    assert data["type"] == "sandbox.setup"
    assert data["project_id"] == "p1"
    assert data["data"] == {}
    assert '"correlation_id": "g1"' in event.to_json()
