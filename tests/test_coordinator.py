"""Tests for the refinement coordinator."""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import List, Optional

import pytest

from conftest import SlowLocator, refined_output, workflow_dict
from flowrefine.conversation import ConversationHistory, Message
from flowrefine.coordinator import (
    WORKFLOW_UPDATED_MESSAGE,
    Cancelled,
    Clarification,
    Failed,
    RefinementCoordinator,
    RefinementRequest,
    Success,
    new_request_id,
)
from flowrefine.errors import ErrorKind
from flowrefine.request_log import RefinementLog
from flowrefine.schema import SchemaProvider
from flowrefine.skills import SkillReference
from flowrefine.supervisor import ExecutionResult, ProcessSupervisor
from flowrefine.workflow import Workflow


def _request(
    workflow: Workflow,
    history: Optional[ConversationHistory] = None,
    text: str = "add a review step",
    **kwargs,
) -> RefinementRequest:
    history = history or ConversationHistory.initialize("conv-1")
    return RefinementRequest(
        request_id=kwargs.pop("request_id", new_request_id()),
        conversation_id=history.conversation_id,
        workflow=workflow,
        history=history,
        user_text=text,
        **kwargs,
    )


def _full_history(iterations: int, max_iterations: int = 20) -> ConversationHistory:
    history = ConversationHistory.initialize("conv-1", max_iterations=max_iterations)
    for i in range(iterations):
        history = history.append(Message.user(f"u{i}"), Message.agent(f"a{i}"))
    return history


class TestRefineOutcomes:
    """One request in, one outcome out."""

    def test_success_commits_workflow_and_history(
        self, make_coordinator, sample_workflow: Workflow
    ) -> None:
        coordinator = make_coordinator([refined_output()])
        request = _request(sample_workflow)

        outcome = coordinator.refine(request)

        assert isinstance(outcome, Success)
        assert len(outcome.refined_workflow.nodes) == 4
        assert outcome.agent_message.content == WORKFLOW_UPDATED_MESSAGE
        assert outcome.agent_message.id == request.agent_message_id
        assert outcome.agent_message.in_reply_to == request.user_message_id
        assert outcome.updated_history.current_iteration == 1
        assert [m.id for m in outcome.updated_history.messages] == [
            request.user_message_id,
            request.agent_message_id,
        ]
        assert request.history.current_iteration == 0
        assert len(sample_workflow.nodes) == 3

    def test_fenced_output_is_accepted(self, make_coordinator, sample_workflow: Workflow) -> None:
        coordinator = make_coordinator([f"```json\n{refined_output()}\n```"])

        assert isinstance(coordinator.refine(_request(sample_workflow)), Success)

    def test_embedded_history_in_output_is_dropped(
        self, make_coordinator, sample_workflow: Workflow
    ) -> None:
        data = workflow_dict()
        data["conversationHistory"] = {"messages": []}
        coordinator = make_coordinator([json.dumps(data)])

        outcome = coordinator.refine(_request(sample_workflow))

        assert isinstance(outcome, Success)
        assert "conversationHistory" not in outcome.refined_workflow.extra

    def test_iteration_limit_spawns_nothing(
        self, make_coordinator, sample_workflow: Workflow
    ) -> None:
        coordinator = make_coordinator([refined_output()])
        history = _full_history(20)

        outcome = coordinator.refine(_request(sample_workflow, history, text="add logging"))

        assert isinstance(outcome, Failed)
        assert outcome.error_kind is ErrorKind.ITERATION_LIMIT_REACHED
        assert "20/20" in outcome.message
        assert not outcome.retryable
        assert coordinator.supervisor.call_count == 0

    def test_clarification_counts_an_iteration(
        self, make_coordinator, sample_workflow: Workflow
    ) -> None:
        coordinator = make_coordinator(["Could you clarify which branch should run first?"])

        outcome = coordinator.refine(_request(sample_workflow))

        assert isinstance(outcome, Clarification)
        assert outcome.agent_message.content == "Could you clarify which branch should run first?"
        assert outcome.updated_history.current_iteration == 1

    def test_validation_error_names_node_and_rule(
        self, make_coordinator, sample_workflow: Workflow
    ) -> None:
        data = workflow_dict()
        data["nodes"].append({
            "id": "n1",
            "type": "skill",
            "data": {"name": "pdf", "description": "d", "scope": "project", "outputPorts": 3},
        })
        coordinator = make_coordinator([json.dumps(data)])

        outcome = coordinator.refine(_request(sample_workflow))

        assert isinstance(outcome, Failed)
        assert outcome.error_kind is ErrorKind.VALIDATION_ERROR
        assert "'n1'" in outcome.message
        assert "exactly 1 output port" in outcome.message
        assert outcome.retryable

    def test_unparseable_output(self, make_coordinator, sample_workflow: Workflow) -> None:
        coordinator = make_coordinator(["Here you go: {broken"])

        outcome = coordinator.refine(_request(sample_workflow))

        assert isinstance(outcome, Failed)
        assert outcome.error_kind is ErrorKind.PARSE_ERROR

    def test_json_without_workflow_fields(
        self, make_coordinator, sample_workflow: Workflow
    ) -> None:
        coordinator = make_coordinator(['{"name": "no id"}'])

        outcome = coordinator.refine(_request(sample_workflow))

        assert isinstance(outcome, Failed)
        assert outcome.error_kind is ErrorKind.PARSE_ERROR
        assert "id" in outcome.details

    @pytest.mark.parametrize(
        "kind",
        [ErrorKind.TIMEOUT, ErrorKind.PROCESS_FAILURE, ErrorKind.EXECUTABLE_NOT_FOUND],
    )
    def test_process_failures_pass_through(
        self, make_coordinator, sample_workflow: Workflow, kind: ErrorKind
    ) -> None:
        failure = ExecutionResult(success=False, error_kind=kind, error="agent problem", details="d")
        coordinator = make_coordinator([failure])

        outcome = coordinator.refine(_request(sample_workflow))

        assert isinstance(outcome, Failed)
        assert outcome.error_kind is kind
        assert outcome.message == "agent problem"

    def test_request_timeout_reaches_supervisor(
        self, make_coordinator, sample_workflow: Workflow
    ) -> None:
        coordinator = make_coordinator([refined_output()])

        coordinator.refine(_request(sample_workflow, timeout=90.0))

        assert coordinator.supervisor.timeouts == [90.0]

    def test_malformed_request(self, make_coordinator, sample_workflow: Workflow) -> None:
        coordinator = make_coordinator()

        outcome = coordinator.refine(_request(sample_workflow, text="   "))

        assert isinstance(outcome, Failed)
        assert outcome.error_kind is ErrorKind.UNKNOWN
        assert coordinator.supervisor.call_count == 0

    def test_unexpected_exception_becomes_unknown(
        self, make_coordinator, sample_workflow: Workflow
    ) -> None:
        coordinator = make_coordinator()

        def explode(*args, **kwargs):
            raise RuntimeError("kaboom")

        coordinator.supervisor.execute = explode

        outcome = coordinator.refine(_request(sample_workflow))

        assert isinstance(outcome, Failed)
        assert outcome.error_kind is ErrorKind.UNKNOWN
        assert outcome.details == "kaboom"
        assert not coordinator.is_active("conv-1")


class TestSkills:
    """Skill catalog use during refinement."""

    def _skill_output(self, name: str) -> str:
        data = workflow_dict()
        data["nodes"].append({
            "id": "skill-1",
            "type": "skill",
            "data": {"name": name, "description": "d", "scope": "project", "outputPorts": 1},
        })
        return json.dumps(data)

    def test_relevant_skills_in_prompt_and_resolved(
        self, make_coordinator, sample_workflow: Workflow, sample_skills: List[SkillReference]
    ) -> None:
        coordinator = make_coordinator([self._skill_output("pdf-report")], skills=sample_skills)

        outcome = coordinator.refine(_request(sample_workflow, text="render a pdf report"))

        assert isinstance(outcome, Success)
        assert '"name": "pdf-report"' in coordinator.supervisor.prompts[0]
        data = outcome.refined_workflow.node("skill-1").data
        assert data["skillPath"] == "/proj/.claude/skills/pdf-report/SKILL.md"
        assert data["validationStatus"] == "valid"

    def test_unknown_skill_is_marked_missing(
        self, make_coordinator, sample_workflow: Workflow, sample_skills: List[SkillReference]
    ) -> None:
        coordinator = make_coordinator([self._skill_output("ghost")], skills=sample_skills)

        outcome = coordinator.refine(_request(sample_workflow))

        assert isinstance(outcome, Success)
        assert outcome.refined_workflow.node("skill-1").data["validationStatus"] == "missing"

    def test_skills_off_leaves_prompt_clean(
        self, make_coordinator, sample_workflow: Workflow
    ) -> None:
        coordinator = make_coordinator([refined_output()])

        coordinator.refine(_request(sample_workflow, text="render a pdf report"))

        assert "Available Skills" not in coordinator.supervisor.prompts[0]


class TestConcurrencyAndCancel:
    """Single flight per conversation and cancellation."""

    def _start(self, coordinator, request) -> tuple:
        results: list = []
        thread = threading.Thread(target=lambda: results.append(coordinator.refine(request)), daemon=True)
        thread.start()
        deadline = time.monotonic() + 5
        while coordinator.supervisor.call_count == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        return thread, results

    def test_second_request_for_same_conversation_rejected(
        self, make_coordinator, sample_workflow: Workflow
    ) -> None:
        coordinator = make_coordinator([refined_output()], delay=5)
        first = _request(sample_workflow)
        thread, results = self._start(coordinator, first)

        assert coordinator.is_active("conv-1")
        second = coordinator.refine(_request(sample_workflow))

        assert isinstance(second, Failed)
        assert second.error_kind is ErrorKind.REQUEST_IN_PROGRESS
        assert coordinator.supervisor.call_count == 1

        coordinator.cancel(first.request_id)
        thread.join(timeout=5)
        assert isinstance(results[0], Cancelled)

    def test_other_conversations_run_independently(
        self, make_coordinator, sample_workflow: Workflow
    ) -> None:
        coordinator = make_coordinator([refined_output()], delay=5)
        first = _request(sample_workflow)
        thread, _ = self._start(coordinator, first)

        other_history = ConversationHistory.initialize("conv-2")
        coordinator.supervisor.delay = 0
        outcome = coordinator.refine(_request(sample_workflow, other_history))

        assert isinstance(outcome, Success)
        coordinator.cancel(first.request_id)
        thread.join(timeout=5)

    def test_cancel_unknown_is_noop(self, make_coordinator) -> None:
        assert make_coordinator().cancel("req-unknown") is False

    def test_cancel_twice(self, make_coordinator, sample_workflow: Workflow) -> None:
        coordinator = make_coordinator([refined_output()], delay=5)
        request = _request(sample_workflow)
        thread, results = self._start(coordinator, request)

        assert coordinator.cancel(request.request_id) is True
        assert coordinator.cancel(request.request_id) is False
        thread.join(timeout=5)

        assert isinstance(results[0], Cancelled)
        assert not coordinator.is_active("conv-1")

    def test_late_result_after_cancel_is_discarded(
        self, make_coordinator, sample_workflow: Workflow
    ) -> None:
        coordinator = make_coordinator([refined_output()])
        request = _request(sample_workflow)
        release = threading.Event()
        original = coordinator.supervisor.execute

        def slow_execute(prompt, timeout, request_id, working_directory=None):
            release.wait(5)
            return original(prompt, timeout, request_id, working_directory)

        coordinator.supervisor.execute = slow_execute
        results: list = []
        thread = threading.Thread(target=lambda: results.append(coordinator.refine(request)), daemon=True)
        thread.start()
        deadline = time.monotonic() + 5
        while not coordinator.is_active("conv-1") and time.monotonic() < deadline:
            time.sleep(0.01)

        assert coordinator.cancel(request.request_id) is True
        release.set()
        thread.join(timeout=5)

        assert isinstance(results[0], Cancelled)

    def test_cancel_before_supervisor_sees_request(
        self, make_coordinator, sample_workflow: Workflow
    ) -> None:
        """Test a cancel issued after dispatch but before the supervisor registers it."""
        coordinator = make_coordinator([refined_output()], delay=30)
        request = _request(sample_workflow)
        entered = threading.Event()
        original = coordinator.supervisor.execute

        def late_execute(prompt, timeout, request_id, working_directory=None):
            entered.set()
            time.sleep(0.2)
            return original(prompt, timeout, request_id, working_directory)

        coordinator.supervisor.execute = late_execute
        results: list = []
        started = time.monotonic()
        thread = threading.Thread(target=lambda: results.append(coordinator.refine(request)), daemon=True)
        thread.start()
        assert entered.wait(5)

        assert coordinator.cancel(request.request_id) is True
        thread.join(timeout=10)

        assert time.monotonic() - started < 5
        assert isinstance(results[0], Cancelled)

    def test_cancel_while_agent_is_starting(self, config, sample_workflow: Workflow) -> None:
        """Test a cancel during executable resolution ends the request promptly."""
        locator = SlowLocator()
        coordinator = RefinementCoordinator(
            supervisor=ProcessSupervisor(locator=locator, kill_grace_period=0.2),
            schema_provider=SchemaProvider(),
            config=config,
        )
        request = _request(sample_workflow)
        results: list = []
        started = time.monotonic()
        thread = threading.Thread(target=lambda: results.append(coordinator.refine(request)), daemon=True)
        thread.start()
        assert locator.resolving.wait(5)

        assert coordinator.cancel(request.request_id) is True
        thread.join(timeout=10)

        assert time.monotonic() - started < 5
        assert isinstance(results[0], Cancelled)
        assert coordinator.supervisor.active_requests() == []
        assert not coordinator.is_active("conv-1")


class TestRequestLog:
    """Outcome recording."""

    def test_records_each_outcome(
        self, make_coordinator, sample_workflow: Workflow, tmp_path: Path
    ) -> None:
        log = RefinementLog(tmp_path / "logs")
        coordinator = make_coordinator(
            [refined_output(), "Which option do you prefer?", "{bad"],
            request_log=log,
        )
        history = ConversationHistory.initialize("conv-1")

        for _ in range(3):
            outcome = coordinator.refine(_request(sample_workflow, history))
            history = getattr(outcome, "updated_history", history)

        assert log.stats.requests == 3
        assert log.stats.successes == 1
        assert log.stats.clarifications == 1
        assert log.stats.failures["PARSE_ERROR"] == 1

        lines = log.log_file.read_text(encoding="utf-8").splitlines()
        entries = [json.loads(line) for line in lines]
        assert [e["outcome"] for e in entries] == ["success", "clarification", "failed"]
        assert entries[2]["error_kind"] == "PARSE_ERROR"
        assert all("prompt" not in e for e in entries)
