"""Tests for the skill catalog, ranking and reference resolution."""

from __future__ import annotations

from pathlib import Path
from typing import List

from conftest import workflow_dict
from flowrefine.skills import (
    FileSkillCatalog,
    SkillReference,
    filter_skills_by_relevance,
    resolve_skill_references,
)
from flowrefine.workflow import Workflow


def _write_skill(root: Path, folder: str, body: str) -> Path:
    skill_dir = root / folder
    skill_dir.mkdir(parents=True)
    path = skill_dir / "SKILL.md"
    path.write_text(body, encoding="utf-8")
    return path


def _skill_workflow(name: str, scope: str) -> Workflow:
    data = workflow_dict()
    data["nodes"].append({
        "id": "skill-1",
        "type": "skill",
        "name": name,
        "data": {"name": name, "description": "d", "scope": scope, "outputPorts": 1},
    })
    return Workflow.from_dict(data)


class TestFileSkillCatalog:
    """Tests for FileSkillCatalog scanning."""

    def test_scans_personal_and_project(self, tmp_path: Path) -> None:
        personal = tmp_path / "home-skills"
        project = tmp_path / "proj"
        _write_skill(personal, "notify", "---\nname: slack-notify\ndescription: Send a Slack message\n---\nBody\n")
        path = _write_skill(
            project / ".claude" / "skills",
            "pdf",
            "---\nname: pdf-report\ndescription: Render a PDF\n---\n",
        )

        catalog = FileSkillCatalog(project_dir=project, personal_dir=personal)
        skills = catalog.list_available()

        assert [(s.name, s.scope) for s in skills] == [
            ("slack-notify", "personal"),
            ("pdf-report", "project"),
        ]
        assert skills[1].skill_path == str(path)
        assert skills[1].description == "Render a PDF"

    def test_missing_front_matter_is_invalid(self, tmp_path: Path) -> None:
        _write_skill(tmp_path, "broken", "no front matter here\n")

        skills = FileSkillCatalog(personal_dir=tmp_path).list_available()

        assert len(skills) == 1
        assert skills[0].name == "broken"
        assert skills[0].validation_status == "invalid"

    def test_missing_directories(self, tmp_path: Path) -> None:
        catalog = FileSkillCatalog(project_dir=tmp_path / "none", personal_dir=tmp_path / "none")

        assert catalog.list_available() == []


class TestFilterSkills:
    """Tests for filter_skills_by_relevance."""

    def test_ranks_name_matches_first(self, sample_skills: List[SkillReference]) -> None:
        ranked = filter_skills_by_relevance("send a slack notification with the pdf", sample_skills)

        assert [s.name for s in ranked] == ["slack-notify", "pdf-report"]

    def test_drops_unrelated_and_invalid(self, sample_skills: List[SkillReference]) -> None:
        invalid = SkillReference(name="pdf-tool", scope="project", validation_status="invalid")

        ranked = filter_skills_by_relevance("make a pdf", sample_skills + [invalid])

        assert [s.name for s in ranked] == ["pdf-report"]

    def test_limit_and_empty_query(self, sample_skills: List[SkillReference]) -> None:
        assert filter_skills_by_relevance("pdf slack", sample_skills, limit=1)[0].name in {
            "pdf-report", "slack-notify"
        }
        assert len(filter_skills_by_relevance("pdf slack", sample_skills, limit=1)) == 1
        assert filter_skills_by_relevance("the and of", sample_skills) == []


class TestResolveSkillReferences:
    """Tests for resolve_skill_references."""

    def test_matching_skill_gets_path(self, sample_skills: List[SkillReference]) -> None:
        workflow = _skill_workflow("pdf-report", "project")

        resolved = resolve_skill_references(workflow, sample_skills)
        data = resolved.node("skill-1").data

        assert data["skillPath"] == "/proj/.claude/skills/pdf-report/SKILL.md"
        assert data["validationStatus"] == "valid"
        assert "skillPath" not in workflow.node("skill-1").data

    def test_scope_must_match(self, sample_skills: List[SkillReference]) -> None:
        workflow = _skill_workflow("pdf-report", "personal")

        data = resolve_skill_references(workflow, sample_skills).node("skill-1").data

        assert data["validationStatus"] == "missing"
        assert "skillPath" not in data

    def test_other_nodes_untouched(self, sample_skills: List[SkillReference]) -> None:
        workflow = _skill_workflow("unknown", "project")

        resolved = resolve_skill_references(workflow, sample_skills)

        assert resolved.node("prompt-1") == workflow.node("prompt-1")
        assert len(resolved.nodes) == len(workflow.nodes)
