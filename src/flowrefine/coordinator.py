"""Refinement coordinator: one request in, exactly one outcome out.

Per-request state machine::

    RECEIVED -> ITERATION_CHECKED -> REJECTED
                                  -> PROMPTED -> DISPATCHED -> TIMED_OUT | CANCELLED | PROCESS_FAILED
                                                            -> CLASSIFIED -> CLARIFICATION_READY | PARSE_FAILED
                                                                          -> VALIDATED -> COMMITTED | VALIDATION_FAILED

Nothing raised below the coordinator reaches its caller. Parse, format and
process failures become ``Failed`` outcomes, and unexpected exceptions are
logged and reported as ``Failed(UNKNOWN)``.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple, Union

from .classifier import OutputKind, classify_output
from .config import DEFAULT_TIMEOUT, RefinerConfig
from .conversation import ConversationHistory, Message, new_message_id
from .errors import ErrorKind, OutputParseError, WorkflowFormatError
from .prompt_builder import build_refinement_prompt
from .schema import SchemaProvider, WorkflowSchemaSource
from .skills import (
    SkillCatalog,
    SkillReference,
    filter_skills_by_relevance,
    resolve_skill_references,
)
from .supervisor import AgentSupervisor
from .validation import validate_workflow
from .workflow import Workflow

logger = logging.getLogger(__name__)

WORKFLOW_UPDATED_MESSAGE = "Workflow has been updated."
DISPATCH_CANCEL_WAIT = 1.0


def new_request_id() -> str:
    return f"req-{uuid.uuid4().hex}"


class RequestState(str, Enum):
    RECEIVED = "received"
    ITERATION_CHECKED = "iteration_checked"
    REJECTED = "rejected"
    PROMPTED = "prompted"
    DISPATCHED = "dispatched"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    PROCESS_FAILED = "process_failed"
    CLASSIFIED = "classified"
    CLARIFICATION_READY = "clarification_ready"
    PARSE_FAILED = "parse_failed"
    VALIDATED = "validated"
    COMMITTED = "committed"
    VALIDATION_FAILED = "validation_failed"


@dataclass(frozen=True)
class RefinementRequest:
    """One attempt at refining a workflow.

    ``request_id`` is unique per attempt. The message ids are stable across
    retries of the same exchange.
    """

    request_id: str
    conversation_id: str
    workflow: Workflow
    history: ConversationHistory
    user_text: str
    user_message_id: str = field(default_factory=lambda: new_message_id("user"))
    agent_message_id: str = field(default_factory=lambda: new_message_id("agent"))
    timeout: float = DEFAULT_TIMEOUT


@dataclass
class Success:
    refined_workflow: Workflow
    agent_message: Message
    updated_history: ConversationHistory
    execution_time_ms: int = 0


@dataclass
class Clarification:
    agent_message: Message
    updated_history: ConversationHistory
    execution_time_ms: int = 0


@dataclass
class Failed:
    error_kind: ErrorKind
    message: str
    details: Optional[str] = None
    execution_time_ms: int = 0

    @property
    def retryable(self) -> bool:
        return self.error_kind.retryable


@dataclass
class Cancelled:
    execution_time_ms: int = 0


RefinementOutcome = Union[Success, Clarification, Failed, Cancelled]


def outcome_name(outcome: RefinementOutcome) -> str:
    return type(outcome).__name__.lower()


class RefinementCoordinator:
    """Runs refinement requests against the agent and validates the result."""

    def __init__(
        self,
        supervisor: AgentSupervisor,
        schema_provider: Optional[WorkflowSchemaSource] = None,
        skill_catalog: Optional[SkillCatalog] = None,
        config: Optional[RefinerConfig] = None,
        request_log=None,
    ):
        """Initialize the coordinator.

        Args:
            supervisor: Runs the agent process.
            schema_provider: Source of the structural schema.
            skill_catalog: Source of reusable steps; ignored if skills are off.
            config: Runtime settings. Defaults to ``RefinerConfig()``.
            request_log: Optional ``RefinementLog`` that records every outcome.
        """
        self.supervisor = supervisor
        self.config = config or RefinerConfig()
        self.schema_provider = schema_provider or SchemaProvider(self.config.schema_path)
        self.skill_catalog = skill_catalog
        self.request_log = request_log
        self._lock = threading.Lock()
        # request_id -> conversation_id
        self._active: Dict[str, str] = {}
        self._cancel_requested: Set[str] = set()
        self._dispatching: Set[str] = set()

    def is_active(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._active.values()

    def check(self, request: RefinementRequest) -> Optional[Failed]:
        """Run the synchronous preconditions without dispatching anything.

        Returns:
            A ``Failed`` outcome if the request must be rejected, else None.
        """
        problem = _request_problem(request)
        if problem:
            logger.error(f"Malformed refinement request {request.request_id!r}: {problem}")
            return Failed(
                ErrorKind.UNKNOWN,
                "An unexpected error occurred. Please try again.",
                details=problem,
            )

        history = request.history
        if history.limit_reached:
            return Failed(
                ErrorKind.ITERATION_LIMIT_REACHED,
                f"Iteration limit reached ({history.current_iteration}/{history.max_iterations}). "
                "Clear the conversation history to continue.",
            )

        if self.is_active(request.conversation_id):
            return Failed(
                ErrorKind.REQUEST_IN_PROGRESS,
                "A refinement is already in progress for this conversation.",
            )
        return None

    def refine(self, request: RefinementRequest) -> RefinementOutcome:
        """Process one request to completion.

        Blocks while the agent runs. Never raises.
        """
        started = time.monotonic()
        self._transition(request, RequestState.RECEIVED)

        rejected = self.check(request)
        if rejected is None:
            with self._lock:
                if request.conversation_id in self._active.values():
                    rejected = Failed(
                        ErrorKind.REQUEST_IN_PROGRESS,
                        "A refinement is already in progress for this conversation.",
                    )
                else:
                    self._active[request.request_id] = request.conversation_id
        if rejected is not None:
            self._transition(request, RequestState.REJECTED, rejected.error_kind.value)
            self._record(request, rejected)
            return rejected
        self._transition(request, RequestState.ITERATION_CHECKED)

        if request.history.is_approaching_limit:
            logger.info(
                f"Conversation {request.conversation_id} has "
                f"{request.history.remaining_iterations} iteration(s) left"
            )

        try:
            outcome = self._run(request)
        except Exception as e:
            logger.exception(f"Unexpected error while refining request {request.request_id}")
            outcome = Failed(
                ErrorKind.UNKNOWN,
                "An unexpected error occurred. Please try again.",
                details=str(e),
            )
        finally:
            with self._lock:
                self._active.pop(request.request_id, None)
                cancelled = request.request_id in self._cancel_requested
                self._cancel_requested.discard(request.request_id)

        if cancelled and not isinstance(outcome, Cancelled):
            logger.info(f"Request {request.request_id} was cancelled; discarding its result")
            outcome = Cancelled()

        if not outcome.execution_time_ms:
            outcome.execution_time_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Request {request.request_id} finished: {outcome_name(outcome)} "
            f"in {outcome.execution_time_ms}ms"
        )
        self._record(request, outcome)
        return outcome

    def cancel(self, request_id: str) -> bool:
        """Cancel an in-flight request.

        Works before the agent process starts as well as while it runs.
        Cancelling an unknown or finished request is a no-op.

        Returns:
            True if the request was still in flight.
        """
        with self._lock:
            if request_id not in self._active or request_id in self._cancel_requested:
                return False
            self._cancel_requested.add(request_id)

        logger.info(f"Cancellation requested for {request_id}")
        deadline = time.monotonic() + DISPATCH_CANCEL_WAIT
        # A dispatched request may not have reached the supervisor yet
        while not self.supervisor.cancel(request_id):
            with self._lock:
                dispatching = request_id in self._dispatching
            if not dispatching or time.monotonic() >= deadline:
                break
            time.sleep(0.01)
        return True

    def _run(self, request: RefinementRequest) -> RefinementOutcome:
        schema = self.schema_provider.load_schema()
        catalog, relevant = self._skills_for(request.user_text)

        prompt = build_refinement_prompt(
            workflow=request.workflow,
            history=request.history,
            user_text=request.user_text,
            schema=schema,
            skills=relevant,
            history_window=self.config.history_window,
        )
        self._transition(request, RequestState.PROMPTED)

        with self._lock:
            if request.request_id in self._cancel_requested:
                self._transition(request, RequestState.CANCELLED)
                return Cancelled()
            self._dispatching.add(request.request_id)

        self._transition(request, RequestState.DISPATCHED)
        try:
            result = self.supervisor.execute(
                prompt,
                request.timeout,
                request.request_id,
                working_directory=self.config.working_directory,
            )
        finally:
            with self._lock:
                self._dispatching.discard(request.request_id)
        elapsed = result.execution_time_ms

        if result.cancelled:
            self._transition(request, RequestState.CANCELLED)
            return Cancelled(execution_time_ms=elapsed)

        if not result.success:
            kind = result.error_kind or ErrorKind.UNKNOWN
            state = RequestState.TIMED_OUT if kind is ErrorKind.TIMEOUT else RequestState.PROCESS_FAILED
            self._transition(request, state, kind.value)
            return Failed(
                kind,
                result.error or "Refinement failed",
                details=result.details,
                execution_time_ms=elapsed,
            )

        try:
            classified = classify_output(result.output)
        except OutputParseError as e:
            self._transition(request, RequestState.PARSE_FAILED)
            return Failed(e.kind, e.message, details=e.details, execution_time_ms=elapsed)
        self._transition(request, RequestState.CLASSIFIED, classified.kind.value)

        user_message = Message.user(request.user_text, message_id=request.user_message_id)

        if classified.kind is OutputKind.CLARIFICATION:
            agent_message = Message.agent(
                classified.message,
                message_id=request.agent_message_id,
                in_reply_to=request.user_message_id,
            )
            self._transition(request, RequestState.CLARIFICATION_READY)
            return Clarification(
                agent_message=agent_message,
                updated_history=request.history.append(user_message, agent_message),
                execution_time_ms=elapsed,
            )

        try:
            refined = Workflow.from_dict(classified.payload)
        except WorkflowFormatError as e:
            self._transition(request, RequestState.PARSE_FAILED)
            return Failed(e.kind, e.message, details=e.details, execution_time_ms=elapsed)
        refined.extra.pop("conversationHistory", None)

        if catalog is not None:
            refined = resolve_skill_references(refined, catalog)

        validation = validate_workflow(refined, schema)
        if not validation.valid:
            summary = validation.summary()
            logger.warning(f"Request {request.request_id} produced an invalid workflow: {summary}")
            self._transition(request, RequestState.VALIDATION_FAILED)
            return Failed(
                ErrorKind.VALIDATION_ERROR,
                f"Refined workflow failed validation: {summary}",
                details=summary,
                execution_time_ms=elapsed,
            )
        self._transition(request, RequestState.VALIDATED)

        agent_message = Message.agent(
            WORKFLOW_UPDATED_MESSAGE,
            message_id=request.agent_message_id,
            in_reply_to=request.user_message_id,
        )
        self._transition(request, RequestState.COMMITTED)
        return Success(
            refined_workflow=refined,
            agent_message=agent_message,
            updated_history=request.history.append(user_message, agent_message),
            execution_time_ms=elapsed,
        )

    def _skills_for(
        self, user_text: str
    ) -> Tuple[Optional[List[SkillReference]], List[SkillReference]]:
        """Return the full catalog (None when skills are off) and the ranked subset."""
        if not self.config.use_skills or self.skill_catalog is None:
            return None, []
        try:
            catalog = self.skill_catalog.list_available()
        except OSError as e:
            logger.warning(f"Could not list skills, continuing without them: {e}")
            return None, []
        return catalog, filter_skills_by_relevance(user_text, catalog)

    def _transition(self, request: RefinementRequest, state: RequestState, note: str = "") -> None:
        suffix = f" ({note})" if note else ""
        logger.debug(f"Request {request.request_id}: {state.value}{suffix}")

    def _record(self, request: RefinementRequest, outcome: RefinementOutcome) -> None:
        if self.request_log is not None:
            self.request_log.record(request, outcome)


def _request_problem(request: RefinementRequest) -> Optional[str]:
    missing = [
        name for name in ("request_id", "conversation_id", "user_message_id", "agent_message_id")
        if not getattr(request, name)
    ]
    if missing:
        return f"Missing required request fields: {', '.join(missing)}"
    if not request.user_text or not request.user_text.strip():
        return "Request text is empty"
    if request.timeout <= 0:
        return f"Timeout must be positive, got {request.timeout}"
    if request.user_message_id == request.agent_message_id:
        return "User and agent message ids must differ"
    return None
