"""Presentation events and the HTTP/WebSocket surface for refinement sessions."""

from .events import (
    ConversationState,
    Event,
    EventEmitter,
    EventType,
    get_emitter,
)

__all__ = [
    "ConversationState",
    "Event",
    "EventEmitter",
    "EventType",
    "get_emitter",
]
