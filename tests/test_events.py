"""Tests for presentation events."""

from __future__ import annotations

import asyncio
import json
from typing import List

from flowrefine.api.events import Event, EventEmitter, EventType


class TestEvent:
    """Tests for Event."""

    def test_to_json(self) -> None:
        event = Event(type=EventType.MESSAGE_ADDED, data={"conversationId": "c1"})

        data = json.loads(event.to_json())

        assert data["type"] == "message_added"
        assert data["data"] == {"conversationId": "c1"}
        assert "timestamp" in data


class TestEventEmitter:
    """Tests for EventEmitter."""

    def test_sync_subscribers(self) -> None:
        """Test subscribers receive events and can unsubscribe."""
        emitter = EventEmitter()
        received: List[Event] = []
        emitter.subscribe(received.append)

        emitter.emit(EventType.ERROR, {"message": "x"})
        emitter.unsubscribe(received.append)
        emitter.emit(EventType.ERROR, {"message": "y"})

        assert [e.data["message"] for e in received] == ["x"]

    def test_failing_subscriber_does_not_block_others(self) -> None:
        emitter = EventEmitter()
        received: List[Event] = []

        def broken(event: Event) -> None:
            raise RuntimeError("subscriber bug")

        emitter.subscribe(broken)
        emitter.subscribe(received.append)
        emitter.emit(EventType.ERROR)

        assert len(received) == 1

    def test_conversation_state_tracking(self) -> None:
        """Test processing flags and counters follow the events."""
        emitter = EventEmitter()
        base = {"conversationId": "c1", "currentIteration": 3, "maxIterations": 20, "messageCount": 6}

        emitter.emit(EventType.PROCESSING_STARTED, {**base, "requestId": "req-1"})
        state = emitter.conversation_states()[0]
        assert state["isProcessing"] is True
        assert state["requestId"] == "req-1"
        assert state["currentIteration"] == 3

        emitter.emit(EventType.PROCESSING_FINISHED, base)
        assert emitter.conversation_states()[0]["isProcessing"] is False

        emitter.emit(EventType.CONVERSATION_CLEARED, {"conversationId": "c1"})
        state = emitter.conversation_states()[0]
        assert state["currentIteration"] == 0
        assert state["messageCount"] == 0

    def test_events_without_conversation_are_not_tracked(self) -> None:
        emitter = EventEmitter()

        emitter.emit(EventType.ERROR, {"message": "x"})

        assert emitter.conversation_states() == []

    def test_async_dispatch(self) -> None:
        """Test events emitted from the loop reach async subscribers."""
        emitter = EventEmitter()
        received: List[Event] = []

        async def on_event(event: Event) -> None:
            received.append(event)
            emitter.stop_async_dispatch()

        async def scenario() -> None:
            emitter.subscribe_async(on_event)
            task = asyncio.create_task(emitter.run_async_dispatch())
            await asyncio.sleep(0.05)
            emitter.emit(EventType.WORKFLOW_UPDATED, {"conversationId": "c1"})
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())

        assert [e.type for e in received] == [EventType.WORKFLOW_UPDATED]

    def test_closed_conversation_is_forgotten(self) -> None:
        emitter = EventEmitter()
        emitter.emit(EventType.CONVERSATION_OPENED, {"conversationId": "c1"})
        emitter.emit(EventType.CONVERSATION_OPENED, {"conversationId": "c2"})

        emitter.emit(EventType.CONVERSATION_CLOSED, {"conversationId": "c1"})

        assert [s["conversationId"] for s in emitter.conversation_states()] == ["c2"]
