"""Statistics and JSON-lines logging for refinement requests.

Records one entry per finished request. Prompts and agent output are never
written, only identifiers, outcome kinds and timings.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from .coordinator import (
    Cancelled,
    Clarification,
    Failed,
    RefinementOutcome,
    RefinementRequest,
    Success,
    outcome_name,
)

logger = logging.getLogger(__name__)

REQUEST_LOG_FILE = "refinements.jsonl"


@dataclass
class RefinementStats:
    """Counters for one engine session."""

    start_time: datetime = field(default_factory=datetime.now)
    requests: int = 0
    successes: int = 0
    clarifications: int = 0
    cancellations: int = 0
    failures: Counter = field(default_factory=Counter)
    total_agent_time_ms: int = 0

    @property
    def failure_count(self) -> int:
        return sum(self.failures.values())

    @property
    def duration_seconds(self) -> float:
        return (datetime.now() - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "start_time": self.start_time.isoformat(),
            "duration_seconds": self.duration_seconds,
            "requests": self.requests,
            "successes": self.successes,
            "clarifications": self.clarifications,
            "cancellations": self.cancellations,
            "failures": {
                "total": self.failure_count,
                "by_kind": dict(sorted(self.failures.items())),
            },
            "total_agent_time_ms": self.total_agent_time_ms,
        }


class RefinementLog:
    """Collects request outcomes and optionally appends them to a file."""

    def __init__(self, log_dir: Optional[Path] = None):
        """Initialize the request log.

        Args:
            log_dir: Directory for ``refinements.jsonl``. Nothing is written
                to disk when omitted.
        """
        self.log_dir = log_dir
        self.stats = RefinementStats()
        self._lock = threading.Lock()
        self.log_file: Optional[Path] = None

        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self.log_file = self.log_dir / REQUEST_LOG_FILE
            logger.info(f"Refinement log initialized: {self.log_file}")

    def record(self, request: RefinementRequest, outcome: RefinementOutcome) -> None:
        """Count an outcome and append it to the log file."""
        entry = {
            "timestamp": datetime.now().isoformat(),
            "request_id": request.request_id,
            "conversation_id": request.conversation_id,
            "message_id": request.agent_message_id,
            "iteration": request.history.current_iteration,
            "outcome": outcome_name(outcome),
            "execution_time_ms": outcome.execution_time_ms,
        }
        if isinstance(outcome, Failed):
            entry["error_kind"] = outcome.error_kind.value
            entry["error"] = outcome.message

        with self._lock:
            self.stats.requests += 1
            self.stats.total_agent_time_ms += outcome.execution_time_ms
            if isinstance(outcome, Success):
                self.stats.successes += 1
            elif isinstance(outcome, Clarification):
                self.stats.clarifications += 1
            elif isinstance(outcome, Cancelled):
                self.stats.cancellations += 1
            else:
                self.stats.failures[outcome.error_kind.value] += 1

            if self.log_file is not None:
                try:
                    with open(self.log_file, "a", encoding="utf-8") as f:
                        f.write(json.dumps(entry) + "\n")
                except OSError as e:
                    logger.error(f"Failed to write refinement log: {e}")

    def save_summary(self, path: Optional[Path] = None) -> Optional[Path]:
        """Write the statistics as JSON.

        Returns:
            The written path, or None when there is nowhere to write.
        """
        target = path or (self.log_dir / "summary.json" if self.log_dir else None)
        if target is None:
            return None
        with self._lock:
            data = self.stats.to_dict()
        target.write_text(json.dumps(data, indent=2), encoding="utf-8")
        logger.info(f"Refinement summary written to: {target}")
        return target
