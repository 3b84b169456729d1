"""Tests for refinement prompt construction."""

from __future__ import annotations

import json

from flowrefine.conversation import ConversationHistory, Message
from flowrefine.prompt_builder import (
    STRUCTURAL_CONSTRAINTS,
    build_refinement_prompt,
    estimate_tokens,
    format_token_count,
)
from flowrefine.schema import DEFAULT_SCHEMA
from flowrefine.skills import SkillReference
from flowrefine.workflow import Workflow


def _history_with(n: int) -> ConversationHistory:
    history = ConversationHistory.initialize("conv-1")
    for i in range(n):
        history = history.append(
            Message.user(f"user message {i}", message_id=f"u{i}"),
            Message.agent(f"agent message {i}", message_id=f"a{i}"),
        )
    return history


class TestBuildRefinementPrompt:
    """Tests for build_refinement_prompt."""

    def test_first_message(self, sample_workflow: Workflow) -> None:
        prompt = build_refinement_prompt(
            sample_workflow, _history_with(0), "add a review step", DEFAULT_SCHEMA
        )

        assert "(This is the first message)" in prompt
        assert "add a review step" in prompt
        assert '"id": "wf-1"' in prompt

    def test_embeds_workflow_and_schema_verbatim(self, sample_workflow: Workflow) -> None:
        prompt = build_refinement_prompt(
            sample_workflow, _history_with(0), "x", DEFAULT_SCHEMA
        )

        assert json.dumps(sample_workflow.to_dict(), indent=2) in prompt
        assert json.dumps(DEFAULT_SCHEMA, indent=2) in prompt

    def test_includes_structural_constraints(self, sample_workflow: Workflow) -> None:
        prompt = build_refinement_prompt(sample_workflow, _history_with(0), "x", DEFAULT_SCHEMA)

        for constraint in STRUCTURAL_CONSTRAINTS:
            assert constraint in prompt

    def test_history_window_is_last_six_messages(self, sample_workflow: Workflow) -> None:
        prompt = build_refinement_prompt(
            sample_workflow, _history_with(5), "next change", DEFAULT_SCHEMA
        )

        assert "(last 6 messages)" in prompt
        assert "[USER]: user message 2" in prompt
        assert "[AGENT]: agent message 4" in prompt
        assert "user message 1" not in prompt
        assert "agent message 1" not in prompt

    def test_custom_window(self, sample_workflow: Workflow) -> None:
        prompt = build_refinement_prompt(
            sample_workflow, _history_with(5), "x", DEFAULT_SCHEMA, history_window=2
        )

        assert "(last 2 messages)" in prompt
        assert "user message 3" not in prompt
        assert "[USER]: user message 4" in prompt

    def test_skips_loading_and_errored_messages(self, sample_workflow: Workflow) -> None:
        history = _history_with(1).append_loading_placeholder("pending")

        prompt = build_refinement_prompt(sample_workflow, history, "x", DEFAULT_SCHEMA)

        assert "(last 2 messages)" in prompt

    def test_skills_section_only_when_given(self, sample_workflow: Workflow) -> None:
        without = build_refinement_prompt(sample_workflow, _history_with(0), "x", DEFAULT_SCHEMA)
        with_skills = build_refinement_prompt(
            sample_workflow,
            _history_with(0),
            "x",
            DEFAULT_SCHEMA,
            skills=[SkillReference(name="pdf-report", scope="project", description="Make PDFs")],
        )

        assert "Available Skills" not in without
        assert "Available Skills" in with_skills
        assert '"name": "pdf-report"' in with_skills
        assert "skillPath" not in with_skills.split("**Available Skills**")[1].split("**Instructions")[0]

    def test_deterministic(self, sample_workflow: Workflow) -> None:
        history = _history_with(3)

        first = build_refinement_prompt(sample_workflow, history, "add logging", DEFAULT_SCHEMA)
        second = build_refinement_prompt(sample_workflow, history, "add logging", DEFAULT_SCHEMA)

        assert first == second


class TestTokenEstimate:
    """Tests for token helpers."""

    def test_estimate_tokens(self) -> None:
        assert estimate_tokens("") == 0
        assert estimate_tokens("one two three") == 4

    def test_format_token_count(self) -> None:
        assert format_token_count(500) == "500 tokens"
        assert format_token_count(1500) == "1.5K tokens"
