"""Reusable-step (skill) catalog, relevance ranking and reference resolution.

Skills live in ``SKILL.md`` files with YAML front matter. Personal skills
are read from ``~/.claude/skills`` and project skills from
``<project>/.claude/skills``. A skill is identified by name plus scope.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Protocol

import yaml

from .workflow import NodeType, Workflow, WorkflowNode

logger = logging.getLogger(__name__)

SKILL_FILE = "SKILL.md"
DEFAULT_SKILL_LIMIT = 20

_FRONT_MATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)
_WORD = re.compile(r"[a-z0-9]+")
_STOP_WORDS = frozenset({
    "a", "an", "and", "the", "to", "of", "in", "on", "for", "with", "by",
    "it", "is", "be", "add", "use", "make", "please", "step", "node", "workflow",
})


@dataclass
class SkillReference:
    """A named, scoped pointer to a reusable workflow step."""

    name: str
    scope: str  # personal, project
    description: str = ""
    skill_path: Optional[str] = None
    validation_status: str = "valid"  # valid, invalid, missing

    def to_prompt_dict(self) -> dict:
        return {"name": self.name, "description": self.description, "scope": self.scope}


class SkillCatalog(Protocol):
    """Provider of available skills."""

    def list_available(self) -> List[SkillReference]:
        ...


class StaticSkillCatalog:
    """Catalog backed by a fixed list."""

    def __init__(self, skills: Optional[Iterable[SkillReference]] = None):
        self._skills = list(skills or [])

    def list_available(self) -> List[SkillReference]:
        return list(self._skills)


class FileSkillCatalog:
    """Catalog that scans personal and project skill directories."""

    def __init__(
        self,
        project_dir: Optional[Path] = None,
        personal_dir: Optional[Path] = None,
    ):
        """Initialize the catalog.

        Args:
            project_dir: Project root; skills are read from ``.claude/skills`` below it.
            personal_dir: Personal skills directory. Defaults to ``~/.claude/skills``.
        """
        self.project_skills_dir = (
            Path(project_dir) / ".claude" / "skills" if project_dir else None
        )
        self.personal_skills_dir = (
            Path(personal_dir) if personal_dir else Path.home() / ".claude" / "skills"
        )

    def list_available(self) -> List[SkillReference]:
        personal = self._scan(self.personal_skills_dir, "personal")
        project = self._scan(self.project_skills_dir, "project")
        logger.info(
            f"Scanned skills: {len(personal)} personal, {len(project)} project"
        )
        return personal + project

    def _scan(self, directory: Optional[Path], scope: str) -> List[SkillReference]:
        if directory is None or not directory.is_dir():
            return []

        skills = []
        for skill_file in sorted(directory.glob(f"*/{SKILL_FILE}")):
            skills.append(_read_skill(skill_file, scope))
        return skills


def _read_skill(skill_file: Path, scope: str) -> SkillReference:
    fallback_name = skill_file.parent.name
    try:
        content = skill_file.read_text(encoding="utf-8")
        match = _FRONT_MATTER.match(content)
        meta = yaml.safe_load(match.group(1)) if match else None
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        logger.warning(f"Could not read skill {skill_file}: {e}")
        return SkillReference(
            name=fallback_name,
            scope=scope,
            skill_path=str(skill_file),
            validation_status="invalid",
        )

    if not isinstance(meta, dict) or not meta.get("name"):
        return SkillReference(
            name=fallback_name,
            scope=scope,
            skill_path=str(skill_file),
            validation_status="invalid",
        )

    return SkillReference(
        name=str(meta["name"]),
        scope=scope,
        description=str(meta.get("description") or ""),
        skill_path=str(skill_file),
        validation_status="valid",
    )


def _keywords(text: str) -> set:
    return {w for w in _WORD.findall(text.lower()) if len(w) > 1 and w not in _STOP_WORDS}


def filter_skills_by_relevance(
    user_text: str,
    skills: Iterable[SkillReference],
    limit: int = DEFAULT_SKILL_LIMIT,
) -> List[SkillReference]:
    """Rank skills by keyword overlap with the user's request.

    Name matches weigh double. Skills with no overlap are dropped. Ties are
    broken project-before-personal, then by name, so the order is stable
    for identical inputs.

    Args:
        user_text: The user's refinement request.
        skills: Candidate skills.
        limit: Maximum number of skills to return.

    Returns:
        The most relevant skills, best first.
    """
    wanted = _keywords(user_text)
    if not wanted:
        return []

    scored = []
    for skill in skills:
        if skill.validation_status == "invalid":
            continue
        name_words = _keywords(skill.name.replace("-", " ").replace("_", " "))
        desc_words = _keywords(skill.description)
        score = 2 * len(wanted & name_words) + len(wanted & desc_words)
        if score > 0:
            scored.append((score, skill))

    scored.sort(key=lambda item: (-item[0], 0 if item[1].scope == "project" else 1, item[1].name))
    return [skill for _, skill in scored[:limit]]


def resolve_skill_references(
    workflow: Workflow,
    skills: Iterable[SkillReference],
) -> Workflow:
    """Attach catalog data to every skill node of a workflow.

    A skill node whose name and scope match a catalog entry gets the skill's
    path and validation status. Unmatched skill nodes are kept and marked
    ``missing`` so the gap stays visible.

    Returns:
        A new workflow; the input is not modified.
    """
    catalog = {(s.name, s.scope): s for s in skills}
    resolved: List[WorkflowNode] = []
    missing = 0

    for node in workflow.nodes:
        if node.type != NodeType.SKILL.value:
            resolved.append(node)
            continue

        data = dict(node.data)
        match = catalog.get((data.get("name"), data.get("scope")))
        if match is not None:
            data["skillPath"] = match.skill_path
            data["validationStatus"] = match.validation_status
        else:
            data["validationStatus"] = "missing"
            missing += 1
        resolved.append(WorkflowNode(
            id=node.id,
            type=node.type,
            name=node.name,
            position=dict(node.position),
            data=data,
            extra=dict(node.extra),
        ))

    if missing:
        logger.warning(f"{missing} skill reference(s) in workflow '{workflow.id}' are missing")
    return workflow.with_nodes(resolved)
