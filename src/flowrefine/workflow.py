"""Workflow document model.

A workflow is a graph of typed steps (nodes) joined by connections between
their ports. Agent output is parsed into this model before it is resolved
and validated; anything the model does not know about is carried through
``extra`` so documents round-trip without loss.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import WorkflowFormatError


class NodeType(str, Enum):
    """Step kinds a workflow may contain."""

    START = "start"
    END = "end"
    PROMPT = "prompt"
    SUB_AGENT = "subAgent"
    ASK_USER_QUESTION = "askUserQuestion"
    BRANCH = "branch"
    IF_ELSE = "ifElse"
    SWITCH = "switch"
    SKILL = "skill"
    MCP = "mcp"


_NODE_KEYS = ("id", "type", "name", "position", "data")
_CONNECTION_KEYS = ("id", "from", "to", "fromPort", "toPort", "condition")
_WORKFLOW_KEYS = (
    "id", "name", "version", "description", "schemaVersion",
    "nodes", "connections", "metadata",
)


@dataclass
class WorkflowNode:
    """A single step in the workflow graph."""

    id: str
    type: str
    name: str = ""
    position: Dict[str, Any] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def output_ports(self) -> Optional[int]:
        value = self.data.get("outputPorts")
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        return None

    def to_dict(self) -> Dict[str, Any]:
        d = dict(self.extra)
        d.update({
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "position": copy.deepcopy(self.position),
            "data": copy.deepcopy(self.data),
        })
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> WorkflowNode:
        if not isinstance(data, dict):
            raise WorkflowFormatError(
                "Workflow node must be an object",
                details=f"Got {type(data).__name__}",
            )
        return cls(
            id=str(data.get("id") or ""),
            type=str(data.get("type") or ""),
            name=str(data.get("name") or ""),
            position=copy.deepcopy(data.get("position") or {}),
            data=copy.deepcopy(data.get("data") or {}),
            extra={k: copy.deepcopy(v) for k, v in data.items() if k not in _NODE_KEYS},
        )


@dataclass
class Connection:
    """Directed edge from one node's output port to another node's input port."""

    id: str
    source: str
    target: str
    source_port: str = ""
    target_port: str = ""
    condition: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d = dict(self.extra)
        d.update({
            "id": self.id,
            "from": self.source,
            "to": self.target,
            "fromPort": self.source_port,
            "toPort": self.target_port,
        })
        if self.condition is not None:
            d["condition"] = self.condition
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Connection:
        if not isinstance(data, dict):
            raise WorkflowFormatError(
                "Workflow connection must be an object",
                details=f"Got {type(data).__name__}",
            )
        return cls(
            id=str(data.get("id") or ""),
            source=str(data.get("from") or ""),
            target=str(data.get("to") or ""),
            source_port=str(data.get("fromPort") or ""),
            target_port=str(data.get("toPort") or ""),
            condition=data.get("condition"),
            extra={k: copy.deepcopy(v) for k, v in data.items() if k not in _CONNECTION_KEYS},
        )


@dataclass
class Workflow:
    """A workflow document."""

    id: str
    name: str = ""
    version: str = "1.0.0"
    nodes: List[WorkflowNode] = field(default_factory=list)
    connections: List[Connection] = field(default_factory=list)
    description: Optional[str] = None
    schema_version: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def node(self, node_id: str) -> Optional[WorkflowNode]:
        """Look up a node by id."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def with_nodes(self, nodes: List[WorkflowNode]) -> Workflow:
        """Return a copy of this workflow with its node list replaced."""
        return replace(self, nodes=list(nodes))

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = dict(copy.deepcopy(self.extra))
        d.update({
            "id": self.id,
            "name": self.name,
            "version": self.version,
        })
        if self.description is not None:
            d["description"] = self.description
        if self.schema_version is not None:
            d["schemaVersion"] = self.schema_version
        d["nodes"] = [n.to_dict() for n in self.nodes]
        d["connections"] = [c.to_dict() for c in self.connections]
        if self.metadata is not None:
            d["metadata"] = copy.deepcopy(self.metadata)
        return d

    @classmethod
    def from_dict(cls, data: Any) -> Workflow:
        """Build a workflow from parsed JSON.

        Raises:
            WorkflowFormatError: If required fields (id, nodes, connections)
                are missing or of the wrong shape.
        """
        if not isinstance(data, dict):
            raise WorkflowFormatError(
                "Output does not match workflow format",
                details=f"Expected a JSON object, got {type(data).__name__}",
            )

        missing = [
            key for key in ("id", "nodes", "connections")
            if data.get(key) is None or data.get(key) == ""
        ]
        if missing:
            raise WorkflowFormatError(
                "Output does not match workflow format",
                details=f"Missing required workflow fields: {', '.join(missing)}",
            )
        if not isinstance(data["nodes"], list) or not isinstance(data["connections"], list):
            raise WorkflowFormatError(
                "Output does not match workflow format",
                details="Fields 'nodes' and 'connections' must be lists",
            )

        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            version=str(data.get("version") or "1.0.0"),
            nodes=[WorkflowNode.from_dict(n) for n in data["nodes"]],
            connections=[Connection.from_dict(c) for c in data["connections"]],
            description=data.get("description"),
            schema_version=data.get("schemaVersion"),
            metadata=copy.deepcopy(data.get("metadata")),
            extra={k: copy.deepcopy(v) for k, v in data.items() if k not in _WORKFLOW_KEYS},
        )
