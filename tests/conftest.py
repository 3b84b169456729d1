"""Shared test fixtures for flowrefine tests."""

from __future__ import annotations

import json
import sys
import threading
import time
from pathlib import Path
from typing import Callable, List

import pytest

from flowrefine.api.events import Event, EventEmitter
from flowrefine.config import RefinerConfig
from flowrefine.coordinator import RefinementCoordinator
from flowrefine.schema import SchemaProvider
from flowrefine.skills import SkillReference, StaticSkillCatalog
from flowrefine.supervisor import DefaultAgentLocator, MockProcessSupervisor
from flowrefine.workflow import Workflow


def workflow_dict(workflow_id: str = "wf-1", extra_nodes: int = 0) -> dict:
    """A small valid workflow: start -> draft prompt -> end."""
    nodes = [
        {"id": "start-1", "type": "start", "name": "Start", "position": {"x": 0, "y": 0}, "data": {}},
        {
            "id": "prompt-1",
            "type": "prompt",
            "name": "Draft",
            "position": {"x": 300, "y": 0},
            "data": {"prompt": "Draft the report", "outputPorts": 1},
        },
        {"id": "end-1", "type": "end", "name": "End", "position": {"x": 600, "y": 0}, "data": {}},
    ]
    for i in range(extra_nodes):
        nodes.append({
            "id": f"extra-{i}",
            "type": "prompt",
            "name": f"Extra {i}",
            "position": {"x": 300 * (i + 3), "y": 0},
            "data": {"prompt": f"Extra step {i}", "outputPorts": 1},
        })
    return {
        "id": workflow_id,
        "name": "Report",
        "version": "1.0.0",
        "nodes": nodes,
        "connections": [
            {"id": "c1", "from": "start-1", "to": "prompt-1", "fromPort": "out", "toPort": "in"},
            {"id": "c2", "from": "prompt-1", "to": "end-1", "fromPort": "out", "toPort": "in"},
        ],
    }


def refined_output(workflow_id: str = "wf-1") -> str:
    """Agent output for a valid refinement that adds one prompt step."""
    return json.dumps(workflow_dict(workflow_id, extra_nodes=1))


SLEEPING_AGENT = "import sys, time; sys.stdin.read(); time.sleep(30)"


class SlowLocator(DefaultAgentLocator):
    """Locator that takes a while to resolve and signals when it starts."""

    def __init__(self, code: str = SLEEPING_AGENT, delay: float = 0.5):
        super().__init__([sys.executable, "-c", code])
        self.delay = delay
        self.resolving = threading.Event()

    def resolve_agent_command(self):
        self.resolving.set()
        time.sleep(self.delay)
        return super().resolve_agent_command()


@pytest.fixture
def sample_workflow() -> Workflow:
    """Create a valid three-node workflow."""
    return Workflow.from_dict(workflow_dict())


@pytest.fixture
def workflow_file(tmp_path: Path) -> Path:
    """Write a sample workflow JSON file."""
    path = tmp_path / "workflow.json"
    path.write_text(json.dumps(workflow_dict(), indent=2), encoding="utf-8")
    return path


@pytest.fixture
def config(tmp_path: Path) -> RefinerConfig:
    """Config with a short timeout and skills off."""
    return RefinerConfig(
        timeout=5.0,
        kill_grace_period=0.2,
        working_directory=tmp_path,
        config_dir=tmp_path / "config",
        use_skills=False,
    )


@pytest.fixture
def events() -> List[Event]:
    return []


@pytest.fixture
def emitter(events: List[Event]) -> EventEmitter:
    """An emitter that records every event into ``events``."""
    em = EventEmitter()
    em.subscribe(events.append)
    return em


@pytest.fixture
def make_coordinator(config: RefinerConfig) -> Callable[..., RefinementCoordinator]:
    """Factory for coordinators backed by a scripted mock supervisor."""

    def _make(outputs=None, delay: float = 0.0, skills=None, **kwargs) -> RefinementCoordinator:
        catalog = StaticSkillCatalog(skills) if skills is not None else None
        if skills is not None:
            config.use_skills = True
        return RefinementCoordinator(
            supervisor=MockProcessSupervisor(outputs, delay=delay),
            schema_provider=SchemaProvider(),
            skill_catalog=catalog,
            config=config,
            **kwargs,
        )

    return _make


@pytest.fixture
def sample_skills() -> List[SkillReference]:
    return [
        SkillReference(
            name="pdf-report",
            scope="project",
            description="Render a PDF report from markdown",
            skill_path="/proj/.claude/skills/pdf-report/SKILL.md",
        ),
        SkillReference(
            name="slack-notify",
            scope="personal",
            description="Send a Slack notification",
            skill_path="/home/u/.claude/skills/slack-notify/SKILL.md",
        ),
    ]
