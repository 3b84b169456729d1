"""Agent output classification.

Raw agent output is either a clarification question, a workflow document,
or garbage. Classification is two-stage: clarification phrasing is checked
first (with JSON code blocks removed so an example payload inside a question
does not count), then the text is parsed as a workflow document.

The clarification check is a heuristic. A workflow whose step text contains
one of the phrasings below, returned as bare JSON, would still be treated as
a clarification; there is no confidence score.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .errors import OutputParseError

logger = logging.getLogger(__name__)


class OutputKind(str, Enum):
    CLARIFICATION = "clarification"
    WORKFLOW = "workflow"


# (name, pattern) pairs; any match means the agent is asking a question
CLARIFICATION_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    ("need_to_understand", re.compile(r"I need to understand", re.IGNORECASE)),
    ("could_you_clarify", re.compile(
        r"could you (?:please\s+)?(?:clarify|specify|tell me more)", re.IGNORECASE)),
    ("ambiguous", re.compile(r"ambiguous", re.IGNORECASE)),
    ("unclear", re.compile(r"unclear", re.IGNORECASE)),
    ("could_mean", re.compile(r"could mean", re.IGNORECASE)),
    ("which_choice", re.compile(r"which (?:one|approach|option|method)", re.IGNORECASE)),
    ("would_you_like", re.compile(r"would you like me to", re.IGNORECASE)),
    ("please_clarify", re.compile(r"please (?:clarify|specify)", re.IGNORECASE)),
    ("not_sure", re.compile(r"not sure (?:what|which|how)", re.IGNORECASE)),
    ("more_details", re.compile(
        r"can you provide more (?:details|information)", re.IGNORECASE)),
)

_JSON_CODE_BLOCK = re.compile(r"```json[\s\S]*?```")
_TRAILING_JSON = re.compile(r"\n\s*\{[\s\S]*\}\s*$")
_FENCE_OPEN = re.compile(r"\A```[A-Za-z0-9_-]*[ \t]*\n?")


@dataclass
class ClassifiedOutput:
    """Result of classifying agent output."""

    kind: OutputKind
    message: str = ""
    payload: Optional[Any] = None
    matched_pattern: Optional[str] = None


def match_clarification(output: str) -> Optional[str]:
    """Return the name of the first clarification pattern that matches, if any."""
    text = _JSON_CODE_BLOCK.sub("", output)
    for name, pattern in CLARIFICATION_PATTERNS:
        if pattern.search(text):
            return name
    return None


def extract_clarification(output: str) -> str:
    """Strip structured blocks from a clarification and return the prose."""
    text = _JSON_CODE_BLOCK.sub("", output)
    text = _TRAILING_JSON.sub("", text)
    return text.strip()


def strip_code_fence(output: str) -> str:
    """Remove one layer of a fenced code wrapper, if the whole text is fenced."""
    text = output.strip()
    if text.startswith("```") and text.endswith("```") and len(text) >= 6:
        text = _FENCE_OPEN.sub("", text, count=1)
        text = text[:-3]
    return text.strip()


def parse_workflow_output(output: str) -> Any:
    """Parse agent output as a JSON document.

    Raises:
        OutputParseError: If the text (after unwrapping a fence) is not JSON.
    """
    text = strip_code_fence(output)
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise OutputParseError(
            "Failed to parse AI response. Please try again or rephrase your request",
            details=f"Invalid JSON at line {e.lineno} column {e.colno}: {e.msg}",
        ) from e


def classify_output(output: str) -> ClassifiedOutput:
    """Decide whether output is a clarification or a workflow document.

    Raises:
        OutputParseError: If the output is neither.
    """
    pattern = match_clarification(output)
    if pattern is not None:
        message = extract_clarification(output) or output.strip()
        logger.debug(f"Output classified as clarification (pattern={pattern})")
        return ClassifiedOutput(
            kind=OutputKind.CLARIFICATION,
            message=message,
            matched_pattern=pattern,
        )

    payload = parse_workflow_output(output)
    return ClassifiedOutput(kind=OutputKind.WORKFLOW, payload=payload)
