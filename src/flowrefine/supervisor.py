"""Supervision of external agent processes.

One agent invocation runs per request. The prompt goes to the process on
standard input and the answer is read from standard output. Three things
can end an invocation: normal exit, the timeout, or an explicit
``cancel(request_id)``. Whichever claims the table entry first decides the
outcome; the others find the entry gone and do nothing.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Union

from .errors import ErrorKind

logger = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND = ("claude", "-p", "-")
DEFAULT_KILL_GRACE_PERIOD = 0.5
STDERR_DETAIL_LIMIT = 500
MOCK_DEFAULT_OUTPUT = "Mock agent: could you clarify which step of the workflow should change?"


@dataclass
class AgentCommand:
    """Executable plus arguments used to start the agent."""

    command: str
    args: List[str] = field(default_factory=list)

    def argv(self) -> List[str]:
        return [self.command, *self.args]


class ExecutableLocator(Protocol):
    def resolve_agent_command(self) -> AgentCommand:
        ...


class DefaultAgentLocator:
    """Resolves the agent command from a configured argv, searching PATH."""

    def __init__(self, command: Sequence[str] = DEFAULT_AGENT_COMMAND):
        if not command:
            raise ValueError("Agent command must not be empty")
        self.command = list(command)

    def resolve_agent_command(self) -> AgentCommand:
        executable = shutil.which(self.command[0]) or self.command[0]
        return AgentCommand(command=executable, args=self.command[1:])


@dataclass
class ExecutionResult:
    """Result of one agent invocation."""

    success: bool
    output: str = ""
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    details: Optional[str] = None
    exit_code: Optional[int] = None
    cancelled: bool = False
    execution_time_ms: int = 0


class AgentSupervisor(Protocol):
    def execute(
        self,
        prompt: str,
        timeout: float,
        request_id: str,
        working_directory: Optional[Path] = None,
    ) -> ExecutionResult:
        ...

    def cancel(self, request_id: str) -> bool:
        ...


class _Terminal(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class _RunningProcess:
    request_id: str
    process: subprocess.Popen
    started: float
    terminal: Optional[_Terminal] = None


class ProcessSupervisor:
    """Runs agent processes and enforces timeout and cancellation.

    The process table is private. Registration, lookup and removal all
    happen under one lock, and an entry is removed by whichever path claims
    its terminal state.
    """

    def __init__(
        self,
        locator: Optional[ExecutableLocator] = None,
        kill_grace_period: float = DEFAULT_KILL_GRACE_PERIOD,
        working_directory: Optional[Path] = None,
    ):
        """Initialize the supervisor.

        Args:
            locator: Resolves the agent executable. Defaults to ``claude -p -``.
            kill_grace_period: Seconds between the graceful termination
                signal and the forced kill.
            working_directory: Default working directory for agent processes.
        """
        self.locator = locator or DefaultAgentLocator()
        self.kill_grace_period = kill_grace_period
        self.working_directory = working_directory
        self._lock = threading.Lock()
        self._running: Dict[str, _RunningProcess] = {}
        # request_id -> cancel requested, for executions not yet registered
        self._starting: Dict[str, bool] = {}

    def active_requests(self) -> List[str]:
        with self._lock:
            return list(self._running)

    def is_running(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._running

    def execute(
        self,
        prompt: str,
        timeout: float,
        request_id: str,
        working_directory: Optional[Path] = None,
    ) -> ExecutionResult:
        """Run the agent on a prompt and wait for it to finish.

        Args:
            prompt: Text written to the agent's standard input.
            timeout: Seconds before the process is terminated.
            request_id: Identifier used by ``cancel``; must not be in use.
            working_directory: Overrides the supervisor's default.

        Returns:
            ExecutionResult; never raises for process-level failures.
        """
        started = time.monotonic()
        with self._lock:
            duplicate = request_id in self._running or request_id in self._starting
            if not duplicate:
                self._starting[request_id] = False
        if duplicate:
            logger.error(f"Request id {request_id} is already running; refusing to start another")
            return ExecutionResult(
                success=False,
                error_kind=ErrorKind.UNKNOWN,
                error="Request id already in use",
                details=request_id,
                execution_time_ms=_elapsed_ms(started),
            )

        try:
            return self._execute(prompt, timeout, request_id, working_directory, started)
        finally:
            with self._lock:
                self._starting.pop(request_id, None)

    def _execute(
        self,
        prompt: str,
        timeout: float,
        request_id: str,
        working_directory: Optional[Path],
        started: float,
    ) -> ExecutionResult:
        cwd = working_directory or self.working_directory
        command = self.locator.resolve_agent_command()

        with self._lock:
            cancelled = self._starting.get(request_id, False)
        if cancelled:
            logger.info(f"Request {request_id} was cancelled before its agent started")
            return ExecutionResult(
                success=False,
                cancelled=True,
                execution_time_ms=_elapsed_ms(started),
            )

        logger.info(
            f"Starting agent for request {request_id} "
            f"(prompt {len(prompt)} chars, timeout {timeout}s)"
        )

        try:
            process = subprocess.Popen(
                command.argv(),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=str(cwd) if cwd else None,
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError as e:
            logger.error(f"Agent executable not found: {command.command}")
            return ExecutionResult(
                success=False,
                error_kind=ErrorKind.EXECUTABLE_NOT_FOUND,
                error="Cannot start the AI agent - please ensure it is installed and on PATH",
                details=str(e),
                execution_time_ms=_elapsed_ms(started),
            )
        except OSError as e:
            logger.error(f"Failed to start agent for request {request_id}: {e}")
            return ExecutionResult(
                success=False,
                error_kind=ErrorKind.UNKNOWN,
                error="Failed to start the AI agent",
                details=str(e),
                execution_time_ms=_elapsed_ms(started),
            )

        entry = _RunningProcess(request_id=request_id, process=process, started=started)
        with self._lock:
            cancelled = self._starting.pop(request_id, False)
            if cancelled:
                entry.terminal = _Terminal.CANCELLED
            else:
                self._running[request_id] = entry
        if cancelled:
            logger.info(f"Request {request_id} was cancelled while its agent was starting")
            self._terminate(entry)
            stdout, stderr = process.communicate()
            return self._build_result(entry, stdout or "", stderr or "", timeout)
        logger.info(f"Registered agent process {process.pid} for request {request_id}")

        try:
            stdout, stderr = process.communicate(prompt, timeout=timeout)
        except subprocess.TimeoutExpired:
            if self._settle(entry, _Terminal.TIMED_OUT):
                logger.warning(f"Agent for request {request_id} timed out after {timeout}s")
                self._terminate(entry)
            stdout, stderr = process.communicate()
        except Exception:
            logger.exception(f"Unexpected error while waiting on request {request_id}")
            if self._settle(entry, _Terminal.COMPLETED):
                self._terminate(entry)
            process.communicate()
            return ExecutionResult(
                success=False,
                error_kind=ErrorKind.UNKNOWN,
                error="An unexpected error occurred while running the AI agent",
                execution_time_ms=_elapsed_ms(started),
            )
        else:
            self._settle(entry, _Terminal.COMPLETED)

        return self._build_result(entry, stdout or "", stderr or "", timeout)

    def cancel(self, request_id: str) -> bool:
        """Terminate an in-flight request.

        A request whose process is still being started is marked, and the
        process is terminated as soon as it exists. Idempotent: unknown,
        finished or already cancelled requests are a no-op.

        Returns:
            True if this call cancelled the request.
        """
        with self._lock:
            entry = self._running.get(request_id)
            if entry is None:
                if self._starting.get(request_id) is False:
                    self._starting[request_id] = True
                    logger.info(f"Cancelling request {request_id} before its agent is running")
                    return True
                logger.debug(f"No active agent process for request {request_id}")
                return False
            self._claim_locked(entry, _Terminal.CANCELLED)

        logger.info(
            f"Cancelling request {request_id} "
            f"(pid {entry.process.pid}, {_elapsed_ms(entry.started)}ms elapsed)"
        )
        self._terminate(entry)
        return True

    def cancel_all(self) -> int:
        """Cancel every in-flight request; returns how many were cancelled."""
        with self._lock:
            request_ids = [*self._running, *self._starting]
        return sum(1 for request_id in request_ids if self.cancel(request_id))

    def _settle(self, entry: _RunningProcess, state: _Terminal) -> bool:
        with self._lock:
            if entry.terminal is not None:
                return False
            self._claim_locked(entry, state)
            return True

    def _claim_locked(self, entry: _RunningProcess, state: _Terminal) -> None:
        entry.terminal = state
        if self._running.get(entry.request_id) is entry:
            del self._running[entry.request_id]
            logger.info(f"Removed agent process for request {entry.request_id} ({state.value})")

    def _terminate(self, entry: _RunningProcess) -> None:
        """Graceful termination, then a forced kill after the grace period."""
        process = entry.process
        if process.poll() is not None:
            return
        self._signal(process, force=False)
        try:
            process.wait(timeout=self.kill_grace_period)
        except subprocess.TimeoutExpired:
            logger.warning(f"Force killing agent process for request {entry.request_id}")
            self._signal(process, force=True)

    @staticmethod
    def _signal(process: subprocess.Popen, force: bool) -> None:
        try:
            if os.name == "posix":
                # The agent runs in its own session; signal the whole group
                os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
            elif force:
                process.kill()
            else:
                process.terminate()
        except OSError as e:
            logger.debug(f"Could not signal process {process.pid}: {e}")

    def _build_result(
        self,
        entry: _RunningProcess,
        stdout: str,
        stderr: str,
        timeout: float,
    ) -> ExecutionResult:
        elapsed = _elapsed_ms(entry.started)
        exit_code = entry.process.returncode

        if entry.terminal is _Terminal.CANCELLED:
            return ExecutionResult(
                success=False,
                cancelled=True,
                exit_code=exit_code,
                execution_time_ms=elapsed,
            )

        if entry.terminal is _Terminal.TIMED_OUT:
            return ExecutionResult(
                success=False,
                error_kind=ErrorKind.TIMEOUT,
                error=(
                    f"AI refinement timed out after {_format_seconds(timeout)} seconds. "
                    "Try simplifying your request."
                ),
                details=f"Timeout after {int(timeout * 1000)}ms",
                exit_code=exit_code,
                execution_time_ms=elapsed,
            )

        if exit_code != 0:
            logger.error(
                f"Agent for request {entry.request_id} exited with code {exit_code}: "
                f"{stderr[:200]}"
            )
            return ExecutionResult(
                success=False,
                error_kind=ErrorKind.PROCESS_FAILURE,
                error="Refinement failed - please try again or rephrase your request",
                details=f"Exit code: {exit_code}, stderr: {stderr[:STDERR_DETAIL_LIMIT] or 'none'}",
                output=stdout,
                exit_code=exit_code,
                execution_time_ms=elapsed,
            )

        logger.info(
            f"Agent for request {entry.request_id} succeeded in {elapsed}ms "
            f"({len(stdout)} chars of output)"
        )
        return ExecutionResult(
            success=True,
            output=stdout.strip(),
            exit_code=exit_code,
            execution_time_ms=elapsed,
        )


class MockProcessSupervisor:
    """Scripted supervisor for testing and ``--mock`` runs.

    Outputs are returned in order; the last one repeats. An entry may be an
    ``ExecutionResult`` to simulate failures. With ``delay`` set, each call
    waits that long and can be cancelled meanwhile.
    """

    def __init__(
        self,
        outputs: Optional[Sequence[Union[str, ExecutionResult]]] = None,
        delay: float = 0.0,
    ):
        self.outputs: List[Union[str, ExecutionResult]] = list(outputs or [])
        self.delay = delay
        self.call_count = 0
        self.prompts: List[str] = []
        self.timeouts: List[float] = []
        self.request_ids: List[str] = []
        self._lock = threading.Lock()
        self._pending: Dict[str, threading.Event] = {}

    def execute(
        self,
        prompt: str,
        timeout: float,
        request_id: str,
        working_directory: Optional[Path] = None,
    ) -> ExecutionResult:
        event = threading.Event()
        with self._lock:
            self.call_count += 1
            self.prompts.append(prompt)
            self.timeouts.append(timeout)
            self.request_ids.append(request_id)
            self._pending[request_id] = event
            index = min(self.call_count, len(self.outputs)) - 1

        if self.delay:
            event.wait(self.delay)

        with self._lock:
            owned = self._pending.pop(request_id, None) is event

        if not owned:
            return ExecutionResult(success=False, cancelled=True)

        output = self.outputs[index] if index >= 0 else MOCK_DEFAULT_OUTPUT
        if isinstance(output, ExecutionResult):
            return output
        return ExecutionResult(success=True, output=output.strip(), exit_code=0)

    def cancel(self, request_id: str) -> bool:
        with self._lock:
            event = self._pending.pop(request_id, None)
        if event is None:
            return False
        event.set()
        return True


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _format_seconds(seconds: float) -> str:
    return str(int(seconds)) if float(seconds).is_integer() else f"{seconds:g}"
