"""Conversational refinement of workflow documents by an external AI agent."""

__version__ = "0.1.0"

from .conversation import ConversationHistory, Message
from .coordinator import (
    Cancelled,
    Clarification,
    Failed,
    RefinementCoordinator,
    RefinementOutcome,
    RefinementRequest,
    Success,
)
from .errors import ErrorKind, RefinementError, SessionError
from .session import SessionController, SessionManager
from .supervisor import MockProcessSupervisor, ProcessSupervisor
from .workflow import Workflow

__all__ = [
    "Cancelled",
    "Clarification",
    "ConversationHistory",
    "ErrorKind",
    "Failed",
    "Message",
    "MockProcessSupervisor",
    "ProcessSupervisor",
    "RefinementCoordinator",
    "RefinementError",
    "RefinementOutcome",
    "RefinementRequest",
    "SessionController",
    "SessionError",
    "SessionManager",
    "Success",
    "Workflow",
    "__version__",
]
