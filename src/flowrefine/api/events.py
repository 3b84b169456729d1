"""Presentation events for conversation updates.

Session controllers emit events from whatever thread finishes a request.
Synchronous subscribers run inline; async subscribers (WebSocket
broadcasting) are fed through a queue owned by the server's event loop.
Events carry message content, flags and iteration counts only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events emitted by session controllers."""

    # Conversation lifecycle
    CONVERSATION_OPENED = "conversation_opened"
    CONVERSATION_CLEARED = "conversation_cleared"
    CONVERSATION_CLOSED = "conversation_closed"

    # Message log
    MESSAGE_ADDED = "message_added"
    MESSAGE_UPDATED = "message_updated"
    MESSAGE_REMOVED = "message_removed"

    # Request lifecycle
    PROCESSING_STARTED = "processing_started"
    PROCESSING_FINISHED = "processing_finished"

    # Document
    WORKFLOW_UPDATED = "workflow_updated"

    ERROR = "error"


@dataclass
class Event:
    """A single event to broadcast to clients."""

    type: EventType
    data: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps({
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
        })


@dataclass
class ConversationState:
    """Latest known status of one conversation, as seen through events."""

    conversation_id: str
    current_iteration: int = 0
    max_iterations: int = 0
    is_processing: bool = False
    request_id: Optional[str] = None
    message_count: int = 0

    def to_dict(self) -> dict:
        return {
            "conversationId": self.conversation_id,
            "currentIteration": self.current_iteration,
            "maxIterations": self.max_iterations,
            "isProcessing": self.is_processing,
            "requestId": self.request_id,
            "messageCount": self.message_count,
        }


class EventEmitter:
    """Event emitter for broadcasting to subscribers and WebSocket clients."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[Event], None]] = []
        self._async_subscribers: List[Callable[[Event], Any]] = []
        self._conversations: Dict[str, ConversationState] = {}
        self._event_queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False

    def conversation_states(self) -> List[dict]:
        with self._lock:
            return [state.to_dict() for state in self._conversations.values()]

    def subscribe(self, callback: Callable[[Event], None]) -> None:
        """Subscribe to events with a synchronous callback."""
        self._subscribers.append(callback)

    def subscribe_async(self, callback: Callable[[Event], Any]) -> None:
        """Subscribe to events with an async callback."""
        self._async_subscribers.append(callback)

    def unsubscribe(self, callback: Callable) -> None:
        """Remove a subscriber."""
        if callback in self._subscribers:
            self._subscribers.remove(callback)
        if callback in self._async_subscribers:
            self._async_subscribers.remove(callback)

    def emit(self, event_type: EventType, data: Optional[dict] = None) -> None:
        """Emit an event to all subscribers. Safe to call from any thread."""
        event = Event(type=event_type, data=data or {})

        with self._lock:
            self._update_state(event)

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in event subscriber: {e}")

        loop, queue = self._loop, self._event_queue
        if loop is not None and queue is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(queue.put_nowait, event)
            except RuntimeError as e:
                logger.debug(f"Event loop unavailable, dropping event: {e}")

    def _update_state(self, event: Event) -> None:
        """Update conversation state based on event."""
        data = event.data
        conversation_id = data.get("conversationId")
        if not conversation_id:
            return

        if event.type == EventType.CONVERSATION_CLOSED:
            self._conversations.pop(conversation_id, None)
            return

        state = self._conversations.get(conversation_id)
        if state is None:
            state = ConversationState(conversation_id=conversation_id)
            self._conversations[conversation_id] = state

        if "currentIteration" in data:
            state.current_iteration = data["currentIteration"]
        if "maxIterations" in data:
            state.max_iterations = data["maxIterations"]
        if "messageCount" in data:
            state.message_count = data["messageCount"]

        if event.type == EventType.PROCESSING_STARTED:
            state.is_processing = True
            state.request_id = data.get("requestId")

        elif event.type == EventType.PROCESSING_FINISHED:
            state.is_processing = False
            state.request_id = None

        elif event.type == EventType.CONVERSATION_CLEARED:
            state.current_iteration = 0
            state.message_count = 0

    async def run_async_dispatch(self) -> None:
        """Run async event dispatch loop."""
        self._event_queue = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._running = True

        while self._running:
            try:
                event = await asyncio.wait_for(
                    self._event_queue.get(),
                    timeout=1.0
                )
                for callback in self._async_subscribers:
                    try:
                        await callback(event)
                    except Exception as e:
                        logger.error(f"Error in async event subscriber: {e}")
            except asyncio.TimeoutError:
                continue

        self._loop = None
        self._event_queue = None

    def stop_async_dispatch(self) -> None:
        """Stop the async dispatch loop."""
        self._running = False


# Global emitter instance
_emitter: Optional[EventEmitter] = None


def get_emitter() -> EventEmitter:
    """Get the global event emitter instance."""
    global _emitter
    if _emitter is None:
        _emitter = EventEmitter()
    return _emitter
