"""Session controllers: live state of open conversations.

A ``SessionController`` owns one conversation. It writes the user message
and a loading placeholder before any agent work starts, runs the request on
a worker thread, and folds the outcome back into the history:

* success: placeholder resolved, workflow replaced
* clarification: placeholder resolved, workflow untouched
* failure: placeholder marked as error (kept for retry)
* cancelled: placeholder removed

``SessionManager`` maps conversation ids to controllers and exposes the
submit/cancel/retry/clear operations used by the CLI and the HTTP server.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from .api.events import EventEmitter, EventType, get_emitter
from .config import RefinerConfig
from .conversation import SENDER_USER, ConversationHistory, Message, new_message_id
from .coordinator import (
    Cancelled,
    Clarification,
    Failed,
    RefinementCoordinator,
    RefinementOutcome,
    RefinementRequest,
    Success,
    new_request_id,
    outcome_name,
)
from .errors import ConversationNotFoundError, ErrorKind, SessionError
from .request_log import RefinementLog
from .schema import SchemaProvider
from .skills import FileSkillCatalog
from .supervisor import (
    AgentSupervisor,
    DefaultAgentLocator,
    MockProcessSupervisor,
    ProcessSupervisor,
)
from .workflow import Workflow

logger = logging.getLogger(__name__)

# Extra seconds to wait for a cancelled worker beyond the kill grace period
_JOIN_MARGIN = 5.0


@dataclass
class _PendingRequest:
    request: RefinementRequest
    thread: Optional[threading.Thread] = None
    cancel_requested: bool = False
    # The errored message a retry is resolving, restored if the retry is cancelled
    previous: Optional[Message] = None


class SessionController:
    """Live state of one conversation bound to one workflow."""

    def __init__(
        self,
        coordinator: RefinementCoordinator,
        workflow: Workflow,
        history: Optional[ConversationHistory] = None,
        config: Optional[RefinerConfig] = None,
        emitter: Optional[EventEmitter] = None,
    ):
        self.coordinator = coordinator
        self.config = config or coordinator.config
        self.emitter = emitter or get_emitter()
        self._lock = threading.RLock()
        self._workflow = workflow
        self._history = history or ConversationHistory.initialize(
            conversation_id=workflow.id,
            max_iterations=self.config.max_iterations,
        )
        self._pending: Optional[_PendingRequest] = None
        self.last_outcome: Optional[RefinementOutcome] = None
        self._idle = threading.Event()
        self._idle.set()
        self.is_open = True

        self._emit(EventType.CONVERSATION_OPENED)

    @property
    def conversation_id(self) -> str:
        return self._history.conversation_id

    @property
    def workflow(self) -> Workflow:
        with self._lock:
            return self._workflow

    @property
    def history(self) -> ConversationHistory:
        with self._lock:
            return self._history

    @property
    def is_processing(self) -> bool:
        with self._lock:
            return self._pending is not None

    @property
    def current_request_id(self) -> Optional[str]:
        with self._lock:
            return self._pending.request.request_id if self._pending else None

    def submit(self, user_text: str, wait: bool = False) -> str:
        """Send a new refinement request.

        Args:
            user_text: The user's request.
            wait: Block until the outcome has been applied.

        Returns:
            The request id, usable with ``cancel``.

        Raises:
            SessionError: If the text is empty, the session is closed or a
                request is already in flight.
        """
        text = user_text.strip()
        if not text:
            raise SessionError("Message text must not be empty")

        with self._lock:
            self._ensure_ready()

            user_message = Message.user(text)
            placeholder_id = new_message_id("agent")
            snapshot = self._history
            self._history = snapshot.append_message(user_message).append_loading_placeholder(
                placeholder_id, in_reply_to=user_message.id
            )
            request = RefinementRequest(
                request_id=new_request_id(),
                conversation_id=self.conversation_id,
                workflow=self._workflow,
                history=snapshot,
                user_text=text,
                user_message_id=user_message.id,
                agent_message_id=placeholder_id,
                timeout=self.config.timeout,
            )
            self._begin(request)
            self._emit(EventType.MESSAGE_ADDED, message=user_message)
            self._emit(EventType.MESSAGE_ADDED, message=self._history.get(placeholder_id))
            self._emit(EventType.PROCESSING_STARTED, requestId=request.request_id)

        self._dispatch(request, wait)
        return request.request_id

    def retry(self, message_id: str, wait: bool = False) -> str:
        """Resend the request behind a failed agent message.

        The same message is resolved in place under a fresh request id.
        ``message_id`` may name the errored agent message or the user
        message it answers.

        Raises:
            ConversationNotFoundError: If the message does not exist.
            SessionError: If it is not a retryable failure, or the session
                is busy or closed.
        """
        with self._lock:
            self._ensure_ready()

            failed = self._find_failed_reply(message_id)
            if not failed.error_kind.retryable:
                raise SessionError(
                    f"Message {failed.id} failed with {failed.error_kind.value}, "
                    "which cannot be retried",
                    kind=failed.error_kind,
                )
            user_message = self._request_for(failed)
            if user_message is None:
                raise SessionError(f"Cannot find the request that message {failed.id} answers")

            snapshot = self._history.without({user_message.id, failed.id})
            self._history = self._history.mark_loading(failed.id)
            request = RefinementRequest(
                request_id=new_request_id(),
                conversation_id=self.conversation_id,
                workflow=self._workflow,
                history=snapshot,
                user_text=user_message.content,
                user_message_id=user_message.id,
                agent_message_id=failed.id,
                timeout=self.config.timeout,
            )
            self._begin(request, previous=failed)
            logger.info(f"Retrying message {failed.id} as request {request.request_id}")
            self._emit(EventType.MESSAGE_UPDATED, message=self._history.get(failed.id))
            self._emit(EventType.PROCESSING_STARTED, requestId=request.request_id)

        self._dispatch(request, wait)
        return request.request_id

    def cancel(self) -> bool:
        """Cancel the in-flight request, if any.

        Returns:
            True if a request was in flight.
        """
        with self._lock:
            if self._pending is None:
                return False
            self._pending.cancel_requested = True
            request_id = self._pending.request.request_id

        self.coordinator.cancel(request_id)
        return True

    def clear(self) -> None:
        """Cancel any in-flight request, then drop all messages."""
        self._cancel_and_join()
        with self._lock:
            self._pending = None
            self._idle.set()
            self._history = self._history.clear()
            logger.info(f"Cleared conversation {self.conversation_id}")
            self._emit(EventType.CONVERSATION_CLEARED)

    def close(self) -> None:
        self._cancel_and_join()
        with self._lock:
            if not self.is_open:
                return
            self.is_open = False
            self._emit(EventType.CONVERSATION_CLOSED)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until no request is in flight. Returns False on timeout."""
        return self._idle.wait(timeout)

    def _ensure_ready(self) -> None:
        if not self.is_open:
            raise SessionError(f"Conversation {self.conversation_id} is closed")
        if self._pending is not None:
            raise SessionError(
                f"A refinement is already in progress for {self.conversation_id}",
                kind=ErrorKind.REQUEST_IN_PROGRESS,
            )

    def _find_failed_reply(self, message_id: str) -> Message:
        message = self._history.get(message_id)
        if message is None:
            raise ConversationNotFoundError(
                f"No message {message_id} in conversation {self.conversation_id}"
            )
        if message.sender == SENDER_USER:
            replies = [
                m for m in self._history.messages
                if m.in_reply_to == message.id and m.is_error
            ]
            if not replies:
                raise SessionError(f"Message {message_id} has no failed response to retry")
            message = replies[-1]
        if not message.is_error or message.error_kind is None:
            raise SessionError(f"Message {message_id} is not a failed response")
        return message

    def _request_for(self, reply: Message) -> Optional[Message]:
        """The user message an agent reply answers."""
        if reply.in_reply_to:
            return self._history.get(reply.in_reply_to)
        # Histories saved without reply links: nearest earlier user message
        earlier = None
        for message in self._history.messages:
            if message.id == reply.id:
                return earlier
            if message.sender == SENDER_USER:
                earlier = message
        return None

    def _begin(self, request: RefinementRequest, previous: Optional[Message] = None) -> None:
        self._pending = _PendingRequest(request=request, previous=previous)
        self._idle.clear()

    def _dispatch(self, request: RefinementRequest, wait: bool) -> None:
        rejected = self.coordinator.check(request)
        if rejected is not None:
            self._apply(request, rejected)
            return

        thread = threading.Thread(
            target=self._run,
            args=(request,),
            name=f"refine-{request.request_id}",
            daemon=True,
        )
        with self._lock:
            if self._pending is not None and self._pending.request is request:
                self._pending.thread = thread
        thread.start()
        if wait:
            thread.join()

    def _run(self, request: RefinementRequest) -> None:
        with self._lock:
            skip = self._pending is not None and self._pending.cancel_requested
        outcome = Cancelled() if skip else self.coordinator.refine(request)
        self._apply(request, outcome)

    def _apply(self, request: RefinementRequest, outcome: RefinementOutcome) -> None:
        with self._lock:
            pending = self._pending
            if pending is None or pending.request is not request:
                logger.info(
                    f"Ignoring {outcome_name(outcome)} for stale request {request.request_id}"
                )
                return

            if pending.cancel_requested and not isinstance(outcome, Cancelled):
                logger.info(f"Request {request.request_id} finished after cancellation; discarding")
                outcome = Cancelled(execution_time_ms=outcome.execution_time_ms)

            message_id = request.agent_message_id
            if isinstance(outcome, (Success, Clarification)):
                self._history = self._history.resolve_placeholder(
                    message_id, outcome.agent_message.content, count_iteration=True
                )
                if self._history.current_iteration != outcome.updated_history.current_iteration:
                    logger.warning(
                        f"Iteration mismatch for {self.conversation_id}: session has "
                        f"{self._history.current_iteration}, outcome has "
                        f"{outcome.updated_history.current_iteration}"
                    )
                if isinstance(outcome, Success):
                    self._workflow = outcome.refined_workflow
                    self._emit(EventType.WORKFLOW_UPDATED, workflow=self._workflow.to_dict())
                self._emit(EventType.MESSAGE_UPDATED, message=self._history.get(message_id))

            elif isinstance(outcome, Failed):
                self._history = self._history.mark_error(
                    message_id, outcome.error_kind, outcome.message
                )
                self._emit(
                    EventType.MESSAGE_UPDATED,
                    message=self._history.get(message_id),
                    retryable=outcome.retryable,
                )

            elif pending.previous is not None:
                previous = pending.previous
                self._history = self._history.mark_error(
                    message_id, previous.error_kind, previous.content
                )
                self._emit(EventType.MESSAGE_UPDATED, message=self._history.get(message_id))

            else:
                self._history = self._history.remove(message_id)
                self._emit(EventType.MESSAGE_REMOVED, messageId=message_id)

            self._pending = None
            self.last_outcome = outcome
            self._emit(
                EventType.PROCESSING_FINISHED,
                requestId=request.request_id,
                outcome=outcome_name(outcome),
                errorKind=outcome.error_kind.value if isinstance(outcome, Failed) else None,
                executionTimeMs=outcome.execution_time_ms,
            )
            self._idle.set()

    def _cancel_and_join(self) -> None:
        with self._lock:
            pending = self._pending
        if pending is None:
            return
        self.cancel()
        thread = pending.thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(self.config.kill_grace_period + _JOIN_MARGIN)
            if thread.is_alive():
                logger.warning(f"Request {pending.request.request_id} did not stop after cancellation")

    def _emit(self, event_type: EventType, message: Optional[Message] = None, **data) -> None:
        payload = {
            "conversationId": self.conversation_id,
            "currentIteration": self._history.current_iteration,
            "maxIterations": self._history.max_iterations,
            "remainingIterations": self._history.remaining_iterations,
            "messageCount": len(self._history.messages),
        }
        if message is not None:
            payload["message"] = message.to_dict()
        payload.update(data)
        self.emitter.emit(event_type, payload)


class SessionManager:
    """Registry of open sessions keyed by conversation id."""

    def __init__(
        self,
        coordinator: RefinementCoordinator,
        config: Optional[RefinerConfig] = None,
        emitter: Optional[EventEmitter] = None,
    ):
        self.coordinator = coordinator
        self.config = config or coordinator.config
        self.emitter = emitter or get_emitter()
        self._lock = threading.Lock()
        self._sessions: Dict[str, SessionController] = {}

    def open(
        self,
        workflow: Workflow,
        history: Optional[ConversationHistory] = None,
        conversation_id: Optional[str] = None,
    ) -> SessionController:
        """Open a conversation for a workflow.

        Raises:
            SessionError: If a conversation with the same id is already open.
        """
        if history is None:
            history = ConversationHistory.initialize(
                conversation_id=conversation_id or workflow.id or f"conv-{uuid.uuid4().hex}",
                max_iterations=self.config.max_iterations,
            )
        with self._lock:
            if history.conversation_id in self._sessions:
                raise SessionError(f"Conversation {history.conversation_id} is already open")
            session = SessionController(
                self.coordinator,
                workflow,
                history=history,
                config=self.config,
                emitter=self.emitter,
            )
            self._sessions[session.conversation_id] = session
        logger.info(f"Opened conversation {session.conversation_id}")
        return session

    def get(self, conversation_id: str) -> SessionController:
        with self._lock:
            session = self._sessions.get(conversation_id)
        if session is None:
            raise ConversationNotFoundError(f"Unknown conversation: {conversation_id}")
        return session

    def sessions(self) -> List[SessionController]:
        with self._lock:
            return list(self._sessions.values())

    def close(self, conversation_id: str) -> None:
        session = self.get(conversation_id)
        session.close()
        with self._lock:
            self._sessions.pop(conversation_id, None)
        logger.info(f"Closed conversation {conversation_id}")

    def close_all(self) -> None:
        for session in self.sessions():
            self.close(session.conversation_id)

    def submit(self, conversation_id: str, user_text: str) -> str:
        return self.get(conversation_id).submit(user_text)

    def cancel(self, request_id: str) -> bool:
        """Cancel a request by id. Unknown or finished requests are a no-op."""
        for session in self.sessions():
            if session.current_request_id == request_id:
                return session.cancel()
        return self.coordinator.cancel(request_id)

    def retry(self, conversation_id: str, message_id: str) -> str:
        return self.get(conversation_id).retry(message_id)

    def clear(self, conversation_id: str) -> None:
        self.get(conversation_id).clear()


def build_coordinator(
    config: RefinerConfig,
    supervisor: Optional[AgentSupervisor] = None,
) -> RefinementCoordinator:
    """Wire a coordinator from configuration.

    Mock mode swaps in ``MockProcessSupervisor``; otherwise the configured
    agent command runs in the configured working directory.
    """
    if supervisor is None:
        if config.mock_mode:
            supervisor = MockProcessSupervisor()
        else:
            supervisor = ProcessSupervisor(
                locator=DefaultAgentLocator(config.agent_command),
                kill_grace_period=config.kill_grace_period,
                working_directory=config.working_directory,
            )
    return RefinementCoordinator(
        supervisor=supervisor,
        schema_provider=SchemaProvider(config.schema_path),
        skill_catalog=FileSkillCatalog(project_dir=config.working_directory) if config.use_skills else None,
        config=config,
        request_log=RefinementLog(config.log_dir),
    )
