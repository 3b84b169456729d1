"""Refinement prompt construction.

The prompt carries the current workflow, a bounded window of recent
conversation, the user's request, structural constraints, optional skill
candidates and the schema. Rendering is deterministic: the same inputs always
produce byte-identical output.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, Optional, Sequence

from jinja2 import StrictUndefined, Template

from .conversation import ConversationHistory
from .skills import SkillReference
from .workflow import Workflow

logger = logging.getLogger(__name__)

# Three user/agent rounds
DEFAULT_HISTORY_WINDOW = 6

STRUCTURAL_CONSTRAINTS = (
    "Skill nodes MUST have exactly 1 output port (outputPorts: 1); never change it.",
    "If branching is needed after a Skill node, add an ifElse or switch node after it.",
    "Use ifElse for 2-way branching (true/false) and switch for 3 or more branches.",
    "A branching node's outputPorts must equal its number of branches.",
    "Each branch output connects to exactly one downstream node, and different "
    "outputs of the same branching node target different nodes. Never chain the "
    "outputs of one branch serially.",
    "End nodes have no outgoing connections; a workflow has at most one Start node.",
    "Only use node types defined in the schema below.",
)

REFINEMENT_GUIDELINES = (
    "Preserve existing nodes unless the user explicitly asks to remove them.",
    "Add new nodes only when the user asks for new functionality.",
    "Modify node properties (labels, descriptions, prompts) based on the feedback.",
    "Keep the workflow connected and valid.",
    "Keep the ids of unchanged nodes; do not regenerate them.",
    "Change only what the user requested.",
    "Preserve existing node positions; place new nodes 300px apart horizontally "
    "and offset branches by 150px vertically.",
)

REFINEMENT_TEMPLATE = """\
You are an expert workflow designer.

**Task**: Refine the existing workflow based on the user's feedback.

**Current Workflow**:
{{ workflow_json }}

{% if messages -%}
**Conversation History** (last {{ messages | length }} messages):
{% for message in messages -%}
[{{ message.sender | upper }}]: {{ message.content }}
{% endfor %}
{%- else -%}
**Conversation History**: (This is the first message)
{% endif %}
**User's Refinement Request**:
{{ user_text }}

**Refinement Guidelines**:
{% for line in guidelines -%}
{{ loop.index }}. {{ line }}
{% endfor %}
**Structural Constraints**:
{% for line in constraints -%}
- {{ line }}
{% endfor %}
{%- if skills_json %}
**Available Skills** (use when the request matches their purpose):
{{ skills_json }}

**Instructions for Using Skills**:
- Use a Skill node when the request matches a Skill's documented purpose.
- Copy name, description and scope exactly from the list above.
- Set validationStatus to "valid" and outputPorts to 1.
- Do NOT include skillPath; it is resolved automatically.
- If a personal and a project Skill both match, prefer the project Skill.
{% endif %}
**Workflow Schema** (valid node types and structure):
{{ schema_json }}

**Output Format**: Output ONLY valid JSON matching the workflow structure above. \
If the request is ambiguous, ask one clarifying question in plain text instead of \
returning JSON.
"""

_template = Template(REFINEMENT_TEMPLATE, undefined=StrictUndefined)


def _to_json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


def build_refinement_prompt(
    workflow: Workflow,
    history: ConversationHistory,
    user_text: str,
    schema: Dict[str, Any],
    skills: Optional[Sequence[SkillReference]] = None,
    history_window: int = DEFAULT_HISTORY_WINDOW,
) -> str:
    """Render the refinement prompt.

    Args:
        workflow: The current workflow document.
        history: Conversation so far; only settled messages are included.
        user_text: The new request.
        schema: Structural schema, embedded verbatim.
        skills: Ranked skill candidates, best first.
        history_window: Maximum number of recent messages to include.

    Returns:
        The prompt string.
    """
    messages = history.recent(history_window)
    skills_json = _to_json([s.to_prompt_dict() for s in skills]) if skills else ""

    prompt = _template.render(
        workflow_json=_to_json(workflow.to_dict()),
        messages=messages,
        user_text=user_text,
        guidelines=REFINEMENT_GUIDELINES,
        constraints=STRUCTURAL_CONSTRAINTS,
        skills_json=skills_json,
        schema_json=_to_json(schema),
    )

    logger.debug(
        f"Built refinement prompt: {len(messages)} history messages, "
        f"{len(skills or [])} skills, ~{estimate_tokens(prompt)} tokens"
    )
    return prompt


def estimate_tokens(text: str) -> int:
    """Rough token count (about 1.3 tokens per whitespace-separated word)."""
    if not text:
        return 0
    return int(math.ceil(len(text.split()) * 1.3))


def format_token_count(tokens: int) -> str:
    if tokens >= 1000:
        return f"{tokens / 1000:.1f}K tokens"
    return f"{tokens} tokens"
