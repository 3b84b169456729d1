"""Workflow schema provider.

The schema is the structural description of valid workflows: the step kinds
an agent may use, their required data fields and their output-port rules.
It is embedded verbatim in prompts and drives structural validation.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import yaml

from .errors import SchemaLoadError

logger = logging.getLogger(__name__)


DEFAULT_SCHEMA: Dict[str, Any] = {
    "schemaVersion": "1.1.0",
    "workflow": {
        "requiredFields": ["id", "name", "version", "nodes", "connections"],
        "maxNodes": 50,
    },
    "nodeTypes": {
        "start": {
            "description": "Entry point of the workflow. At most one per workflow.",
            "requiredData": [],
            "outputPorts": {"exact": 1, "required": False},
        },
        "end": {
            "description": "Terminal step. Has no outgoing connections.",
            "requiredData": [],
            "outputPorts": {"exact": 0, "required": False},
        },
        "prompt": {
            "description": "Fixed prompt text sent to the agent, with optional variables.",
            "requiredData": ["prompt"],
            "outputPorts": {"exact": 1, "required": False},
        },
        "subAgent": {
            "description": "Delegates a task to a sub-agent.",
            "requiredData": ["description", "prompt"],
            "outputPorts": {"exact": 1, "required": True},
        },
        "askUserQuestion": {
            "description": (
                "Asks the user a question. Single select uses 2-4 options and one "
                "port per option; multi-select or AI-suggested options use 1 port."
            ),
            "requiredData": ["questionText", "options"],
            "outputPorts": {"min": 1, "max": 4, "required": True},
        },
        "branch": {
            "description": "Conditional (2-way) or switch (multi-way) branching.",
            "requiredData": ["branchType", "branches"],
            "outputPorts": {"min": 2, "max": 10, "required": True},
        },
        "ifElse": {
            "description": "Two-way conditional branching (true/false).",
            "requiredData": ["branches"],
            "outputPorts": {"exact": 2, "required": True},
        },
        "switch": {
            "description": "Multi-way branching on 3 or more conditions.",
            "requiredData": ["branches"],
            "outputPorts": {"min": 2, "max": 10, "required": True},
        },
        "skill": {
            "description": "Runs a reusable skill identified by name and scope.",
            "requiredData": ["name", "description", "scope"],
            "outputPorts": {"exact": 1, "required": True},
        },
        "mcp": {
            "description": "Calls a tool exposed by an MCP server.",
            "requiredData": ["serverId", "toolName"],
            "outputPorts": {"exact": 1, "required": False},
        },
    },
}


class WorkflowSchemaSource(Protocol):
    """Anything that can supply the workflow schema."""

    def load_schema(self) -> Dict[str, Any]:
        ...


class SchemaProvider:
    """Loads the workflow schema from a file, or falls back to the bundled default."""

    def __init__(self, schema_path: Optional[Path] = None):
        """Initialize the provider.

        Args:
            schema_path: Optional YAML or JSON schema file. When None the
                bundled default schema is used.
        """
        self.schema_path = Path(schema_path) if schema_path else None
        self._schema: Optional[Dict[str, Any]] = None

    def load_schema(self) -> Dict[str, Any]:
        """Return the schema, loading and caching it on first use.

        Raises:
            SchemaLoadError: If the configured file is missing or malformed.
        """
        if self._schema is None:
            self._schema = self._load()
        return copy.deepcopy(self._schema)

    def _load(self) -> Dict[str, Any]:
        if self.schema_path is None:
            logger.debug("Using bundled workflow schema")
            return copy.deepcopy(DEFAULT_SCHEMA)

        if not self.schema_path.exists():
            raise SchemaLoadError(
                "Failed to load workflow schema",
                details=f"Schema file not found: {self.schema_path}",
            )

        try:
            # JSON is a subset of YAML, so one loader covers both formats
            with open(self.schema_path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise SchemaLoadError(
                "Failed to load workflow schema",
                details=str(e),
            ) from e

        if not isinstance(data, dict) or not isinstance(data.get("nodeTypes"), dict):
            raise SchemaLoadError(
                "Failed to load workflow schema",
                details=f"{self.schema_path} has no 'nodeTypes' mapping",
            )

        logger.info(f"Loaded workflow schema from {self.schema_path}")
        return data
