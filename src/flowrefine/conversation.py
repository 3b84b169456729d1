"""Conversation store: message log, iteration counter and limits.

``ConversationHistory`` is an immutable value. Every mutator returns a new
history, so a snapshot handed to an in-flight request can never be changed
underneath it.

Iteration accounting: an exchange counts once it completes (answer or
clarification). Failed and cancelled exchanges leave their messages in the
log but do not consume an iteration.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from .errors import ErrorKind
from .workflow import Workflow

logger = logging.getLogger(__name__)

HISTORY_SCHEMA_VERSION = "1.0.0"
DEFAULT_MAX_ITERATIONS = 20
APPROACHING_LIMIT_REMAINING = 2
LOADING_PLACEHOLDER = ""

SENDER_USER = "user"
SENDER_AGENT = "agent"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_message_id(prefix: str = "msg") -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Message:
    """One entry in the conversation log."""

    id: str
    sender: str  # user, agent
    content: str
    timestamp: str = field(default_factory=_now)
    is_loading: bool = False
    is_error: bool = False
    error_kind: Optional[ErrorKind] = None
    in_reply_to: Optional[str] = None

    def __post_init__(self) -> None:
        if self.sender not in (SENDER_USER, SENDER_AGENT):
            raise ValueError(f"Unknown message sender: {self.sender!r}")
        if self.is_loading and self.is_error:
            raise ValueError(f"Message {self.id} cannot be both loading and errored")
        if self.is_error and self.error_kind is None:
            raise ValueError(f"Errored message {self.id} needs an error kind")

    @classmethod
    def user(cls, content: str, message_id: Optional[str] = None) -> Message:
        return cls(id=message_id or new_message_id("user"), sender=SENDER_USER, content=content)

    @classmethod
    def agent(
        cls,
        content: str,
        message_id: Optional[str] = None,
        in_reply_to: Optional[str] = None,
    ) -> Message:
        return cls(
            id=message_id or new_message_id("agent"),
            sender=SENDER_AGENT,
            content=content,
            in_reply_to=in_reply_to,
        )

    @property
    def is_final(self) -> bool:
        """True for settled, non-error messages."""
        return not self.is_loading and not self.is_error

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "sender": self.sender,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.is_loading:
            d["isLoading"] = True
        if self.is_error:
            d["isError"] = True
            d["errorKind"] = self.error_kind.value if self.error_kind else None
        if self.in_reply_to is not None:
            d["inReplyTo"] = self.in_reply_to
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Message:
        error_kind = data.get("errorKind")
        sender = data.get("sender", SENDER_USER)
        return cls(
            id=data["id"],
            # Older documents use "ai" for agent messages
            sender=SENDER_AGENT if sender == "ai" else sender,
            content=data.get("content", ""),
            timestamp=data.get("timestamp") or _now(),
            is_loading=bool(data.get("isLoading", False)),
            is_error=bool(data.get("isError", False)),
            error_kind=ErrorKind(error_kind) if error_kind else None,
            in_reply_to=data.get("inReplyTo"),
        )


@dataclass(frozen=True)
class ConversationHistory:
    """The durable exchange of messages tied to one workflow."""

    conversation_id: str
    messages: Tuple[Message, ...] = ()
    current_iteration: int = 0
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    schema_version: str = HISTORY_SCHEMA_VERSION
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def __post_init__(self) -> None:
        if self.max_iterations < 0:
            raise ValueError("max_iterations must be >= 0")
        if not 0 <= self.current_iteration <= self.max_iterations:
            raise ValueError(
                f"current_iteration {self.current_iteration} outside 0..{self.max_iterations}"
            )
        ids = [m.id for m in self.messages]
        if len(ids) != len(set(ids)):
            raise ValueError("Message ids must be unique within a conversation")

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def initialize(
        cls,
        conversation_id: Optional[str] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> ConversationHistory:
        """Create an empty history."""
        now = _now()
        return cls(
            conversation_id=conversation_id or f"conv-{uuid.uuid4().hex}",
            max_iterations=max_iterations,
            created_at=now,
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def limit_reached(self) -> bool:
        return self.current_iteration >= self.max_iterations

    @property
    def remaining_iterations(self) -> int:
        return self.max_iterations - self.current_iteration

    @property
    def is_approaching_limit(self) -> bool:
        return self.remaining_iterations <= APPROACHING_LIMIT_REMAINING

    def get(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def recent(self, count: int, final_only: bool = True) -> Tuple[Message, ...]:
        """Last ``count`` messages, skipping placeholders and errors by default."""
        if count <= 0:
            return ()
        pool = [m for m in self.messages if m.is_final] if final_only else list(self.messages)
        return tuple(pool[-count:])

    # ------------------------------------------------------------------
    # Transformations
    # ------------------------------------------------------------------

    def append(self, user_message: Message, agent_message: Message) -> ConversationHistory:
        """Record a completed exchange and count one iteration.

        Raises:
            ValueError: If the iteration limit is already reached.
        """
        if self.limit_reached:
            raise ValueError(
                f"Iteration limit ({self.max_iterations}) reached for {self.conversation_id}"
            )
        return self._evolve(
            messages=self.messages + (user_message, agent_message),
            current_iteration=self.current_iteration + 1,
        )

    def append_message(self, message: Message) -> ConversationHistory:
        """Add a single message without counting an iteration."""
        return self._evolve(messages=self.messages + (message,))

    def append_loading_placeholder(
        self,
        message_id: str,
        in_reply_to: Optional[str] = None,
    ) -> ConversationHistory:
        """Add a provisional agent message shown while a request runs."""
        placeholder = Message(
            id=message_id,
            sender=SENDER_AGENT,
            content=LOADING_PLACEHOLDER,
            is_loading=True,
            in_reply_to=in_reply_to,
        )
        return self.append_message(placeholder)

    def resolve_placeholder(
        self,
        message_id: str,
        content: str,
        count_iteration: bool = False,
    ) -> ConversationHistory:
        """Replace a placeholder's content and clear its loading flag.

        Args:
            message_id: The placeholder to settle.
            content: Final message text.
            count_iteration: Count the exchange the placeholder belongs to.

        Raises:
            KeyError: If no message has this id.
            ValueError: If counting would exceed the iteration limit.
        """
        message = self._require(message_id)
        settled = replace(
            message,
            content=content,
            is_loading=False,
            is_error=False,
            error_kind=None,
            timestamp=_now(),
        )
        iteration = self.current_iteration
        if count_iteration:
            if self.limit_reached:
                raise ValueError(
                    f"Iteration limit ({self.max_iterations}) reached for {self.conversation_id}"
                )
            iteration += 1
        return self._evolve(
            messages=self._replace_message(settled),
            current_iteration=iteration,
        )

    def mark_error(
        self,
        message_id: str,
        error_kind: ErrorKind,
        content: Optional[str] = None,
    ) -> ConversationHistory:
        """Flag a message as failed, keeping its text unless a summary is given."""
        message = self._require(message_id)
        failed = replace(
            message,
            content=content if content is not None else message.content,
            is_loading=False,
            is_error=True,
            error_kind=error_kind,
        )
        return self._evolve(messages=self._replace_message(failed))

    def mark_loading(self, message_id: str) -> ConversationHistory:
        """Put an existing message back into the loading state (used by retry)."""
        message = self._require(message_id)
        loading = replace(
            message,
            content=LOADING_PLACEHOLDER,
            is_loading=True,
            is_error=False,
            error_kind=None,
        )
        return self._evolve(messages=self._replace_message(loading))

    def remove(self, message_id: str) -> ConversationHistory:
        """Erase a message without trace. Unknown ids are ignored."""
        if self.get(message_id) is None:
            return self
        return self._evolve(messages=tuple(m for m in self.messages if m.id != message_id))

    def without(self, message_ids: Iterable[str]) -> ConversationHistory:
        """Copy of this history with the given messages left out."""
        skip = set(message_ids)
        return replace(self, messages=tuple(m for m in self.messages if m.id not in skip))

    def clear(self) -> ConversationHistory:
        """Drop all messages and reset the iteration counter."""
        return self._evolve(messages=(), current_iteration=0)

    def _require(self, message_id: str) -> Message:
        message = self.get(message_id)
        if message is None:
            raise KeyError(f"No message {message_id} in conversation {self.conversation_id}")
        return message

    def _replace_message(self, updated: Message) -> Tuple[Message, ...]:
        return tuple(updated if m.id == updated.id else m for m in self.messages)

    def _evolve(self, **changes: Any) -> ConversationHistory:
        return replace(self, updated_at=_now(), **changes)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "schemaVersion": self.schema_version,
            "messages": [m.to_dict() for m in self.messages],
            "currentIteration": self.current_iteration,
            "maxIterations": self.max_iterations,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        conversation_id: Optional[str] = None,
    ) -> ConversationHistory:
        now = _now()
        return cls(
            conversation_id=data.get("conversationId") or conversation_id or f"conv-{uuid.uuid4().hex}",
            schema_version=data.get("schemaVersion", HISTORY_SCHEMA_VERSION),
            messages=tuple(Message.from_dict(m) for m in data.get("messages", [])),
            current_iteration=int(data.get("currentIteration", 0)),
            max_iterations=int(data.get("maxIterations", DEFAULT_MAX_ITERATIONS)),
            created_at=data.get("createdAt") or now,
            updated_at=data.get("updatedAt") or now,
        )


def load_workflow_file(path: Path) -> Tuple[Workflow, Optional[ConversationHistory]]:
    """Read a workflow JSON file and its embedded conversation history, if any."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    workflow = Workflow.from_dict(data)
    raw_history = workflow.extra.pop("conversationHistory", None)
    history = None
    if isinstance(raw_history, dict):
        history = ConversationHistory.from_dict(raw_history, conversation_id=workflow.id)
    return workflow, history


def save_workflow_file(
    path: Path,
    workflow: Workflow,
    history: Optional[ConversationHistory] = None,
) -> None:
    """Write a workflow JSON file, embedding the conversation history."""
    data = workflow.to_dict()
    if history is not None:
        data["conversationHistory"] = history.to_dict()
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    logger.debug(f"Saved workflow '{workflow.id}' to {path}")
