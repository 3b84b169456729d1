"""HTTP and WebSocket server for refinement sessions.

REST endpoints drive the session operations; the ``/ws`` WebSocket streams
presentation events to connected clients.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from .. import __version__
from ..config import RefinerConfig
from ..conversation import ConversationHistory
from ..errors import ConversationNotFoundError, SessionError, WorkflowFormatError
from ..session import SessionController, SessionManager, build_coordinator
from ..workflow import Workflow
from .events import Event, EventEmitter, get_emitter

logger = logging.getLogger(__name__)


class OpenConversationRequest(BaseModel):
    """Request to open a conversation for a workflow."""

    workflow: Dict[str, Any] = Field(..., description="Workflow document")
    conversation_history: Optional[Dict[str, Any]] = Field(
        None, alias="conversationHistory", description="Previously saved history"
    )
    conversation_id: Optional[str] = Field(
        None, alias="conversationId", description="Conversation id (defaults to the workflow id)"
    )


class SubmitMessageRequest(BaseModel):
    """Request to send a refinement message."""

    text: str = Field(..., min_length=1, description="The user's refinement request")


class RequestAccepted(BaseModel):
    conversationId: str
    requestId: str


class CancelResponse(BaseModel):
    requestId: str
    cancelled: bool


class ConnectionManager:
    """Manages WebSocket connections."""

    def __init__(self, emitter: EventEmitter) -> None:
        self.emitter = emitter
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"Client connected. Total clients: {len(self.active_connections)}")

        # Send current state to new client
        await websocket.send_json({
            "type": "state_sync",
            "data": {"conversations": self.emitter.conversation_states()},
            "timestamp": "",
        })

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection."""
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info(f"Client disconnected. Total clients: {len(self.active_connections)}")

    async def broadcast(self, event: Event) -> None:
        """Broadcast an event to all connected clients."""
        if not self.active_connections:
            return

        message = event.to_json()
        disconnected = []

        for connection in self.active_connections:
            try:
                await connection.send_text(message)
            except Exception as e:
                logger.warning(f"Failed to send to client: {e}")
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn)


def conversation_view(session: SessionController) -> dict:
    """Public view of a session; never includes prompts or process handles."""
    history = session.history
    return {
        "conversationId": session.conversation_id,
        "workflow": session.workflow.to_dict(),
        "conversationHistory": history.to_dict(),
        "isProcessing": session.is_processing,
        "currentRequestId": session.current_request_id,
        "remainingIterations": history.remaining_iterations,
        "isApproachingLimit": history.is_approaching_limit,
    }


def create_app(
    sessions: SessionManager,
    emitter: Optional[EventEmitter] = None,
) -> FastAPI:
    """Create the FastAPI application around a session manager."""
    emitter = emitter or sessions.emitter
    manager = ConnectionManager(emitter)
    app = FastAPI(title="flowrefine", version=__version__)
    app.state.sessions = sessions
    app.state.connections = manager

    async def event_handler(event: Event) -> None:
        await manager.broadcast(event)

    @app.on_event("startup")
    async def startup_event() -> None:
        """Set up event handling on server startup."""
        emitter.subscribe_async(event_handler)
        # Start async dispatch in background
        app.state.dispatch_task = asyncio.create_task(emitter.run_async_dispatch())
        logger.info("Refinement server started")

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        """Cancel running requests and stop event dispatch."""
        await asyncio.to_thread(sessions.close_all)
        emitter.stop_async_dispatch()
        emitter.unsubscribe(event_handler)
        logger.info("Refinement server stopped")

    def _session(conversation_id: str) -> SessionController:
        try:
            return sessions.get(conversation_id)
        except ConversationNotFoundError as e:
            raise HTTPException(status_code=404, detail=e.message) from e

    def _session_error(e: SessionError) -> HTTPException:
        status = 404 if isinstance(e, ConversationNotFoundError) else 409
        return HTTPException(status_code=status, detail=e.message)

    @app.get("/api/state")
    async def get_state() -> dict:
        """Get status of all conversations."""
        return {"conversations": emitter.conversation_states()}

    @app.get("/api/conversations")
    async def list_conversations() -> dict:
        return {"conversations": [conversation_view(s) for s in sessions.sessions()]}

    @app.post("/api/conversations", status_code=201)
    async def open_conversation(body: OpenConversationRequest) -> dict:
        try:
            workflow = Workflow.from_dict(body.workflow)
        except WorkflowFormatError as e:
            raise HTTPException(status_code=422, detail=f"{e.message}: {e.details}") from e

        history = None
        if body.conversation_history is not None:
            try:
                history = ConversationHistory.from_dict(
                    body.conversation_history,
                    conversation_id=body.conversation_id or workflow.id,
                )
            except (KeyError, TypeError, ValueError) as e:
                raise HTTPException(status_code=422, detail=f"Invalid conversation history: {e}") from e

        try:
            session = sessions.open(workflow, history=history, conversation_id=body.conversation_id)
        except SessionError as e:
            raise _session_error(e) from e
        return conversation_view(session)

    @app.get("/api/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str) -> dict:
        return conversation_view(_session(conversation_id))

    @app.post("/api/conversations/{conversation_id}/messages", status_code=202)
    async def submit_message(conversation_id: str, body: SubmitMessageRequest) -> RequestAccepted:
        session = _session(conversation_id)
        try:
            request_id = session.submit(body.text)
        except SessionError as e:
            raise _session_error(e) from e
        return RequestAccepted(conversationId=conversation_id, requestId=request_id)

    @app.post(
        "/api/conversations/{conversation_id}/messages/{message_id}/retry",
        status_code=202,
    )
    async def retry_message(conversation_id: str, message_id: str) -> RequestAccepted:
        session = _session(conversation_id)
        try:
            request_id = session.retry(message_id)
        except SessionError as e:
            raise _session_error(e) from e
        return RequestAccepted(conversationId=conversation_id, requestId=request_id)

    @app.delete("/api/conversations/{conversation_id}/messages")
    async def clear_conversation(conversation_id: str) -> dict:
        session = _session(conversation_id)
        await asyncio.to_thread(session.clear)
        return conversation_view(session)

    @app.delete("/api/conversations/{conversation_id}")
    async def close_conversation(conversation_id: str) -> dict:
        _session(conversation_id)
        await asyncio.to_thread(sessions.close, conversation_id)
        return {"conversationId": conversation_id, "closed": True}

    @app.post("/api/requests/{request_id}/cancel")
    async def cancel_request(request_id: str) -> CancelResponse:
        cancelled = await asyncio.to_thread(sessions.cancel, request_id)
        return CancelResponse(requestId=request_id, cancelled=cancelled)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """WebSocket endpoint for real-time updates."""
        await manager.connect(websocket)
        try:
            while True:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
        except WebSocketDisconnect:
            manager.disconnect(websocket)
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
            manager.disconnect(websocket)

    return app


def run_server(
    config: Optional[RefinerConfig] = None,
    host: str = "127.0.0.1",
    port: int = 8765,
) -> None:
    """Run the refinement server.

    Raises:
        ValueError: If the configuration does not validate.
    """
    import uvicorn

    config = config or RefinerConfig.from_env()
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise ValueError(f"Invalid configuration: {'; '.join(errors)}")
    emitter = get_emitter()
    sessions = SessionManager(build_coordinator(config), config=config, emitter=emitter)
    uvicorn.run(create_app(sessions, emitter), host=host, port=port, log_level="warning")
