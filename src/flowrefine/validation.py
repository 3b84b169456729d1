"""Structural validation for agent-generated workflows.

Validation runs after parsing and skill resolution and before anything is
committed. Each rule violation is reported as a ``ValidationIssue`` naming
the offending node so the message can be shown to the user verbatim.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .schema import DEFAULT_SCHEMA
from .workflow import NodeType, Workflow, WorkflowNode

logger = logging.getLogger(__name__)

# Branching kinds whose distinct outputs must lead to distinct steps
_DISTINCT_TARGET_TYPES = frozenset({
    NodeType.BRANCH.value,
    NodeType.IF_ELSE.value,
    NodeType.SWITCH.value,
})
_SINGLE_USE_PORT_TYPES = _DISTINCT_TARGET_TYPES | {NodeType.ASK_USER_QUESTION.value}


@dataclass
class ValidationIssue:
    """A single rule violation."""

    code: str
    message: str
    node_id: Optional[str] = None


@dataclass
class ValidationResult:
    """Outcome of validating a workflow."""

    errors: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def add(self, code: str, message: str, node_id: Optional[str] = None) -> None:
        self.errors.append(ValidationIssue(code=code, message=message, node_id=node_id))

    def summary(self) -> str:
        """All error messages joined for display."""
        return "; ".join(e.message for e in self.errors)


def validate_workflow(
    workflow: Workflow,
    schema: Optional[Dict[str, Any]] = None,
) -> ValidationResult:
    """Validate a workflow against the structural rules of a schema.

    Args:
        workflow: The workflow to check.
        schema: Schema description; defaults to the bundled schema.

    Returns:
        ValidationResult listing every violation found.
    """
    schema = schema or DEFAULT_SCHEMA
    node_types: Dict[str, Any] = schema.get("nodeTypes", {})
    max_nodes = schema.get("workflow", {}).get("maxNodes", 50)
    result = ValidationResult()

    if not workflow.id.strip():
        result.add("WORKFLOW_ID", "Workflow id must not be empty")

    if len(workflow.nodes) > max_nodes:
        result.add(
            "TOO_MANY_NODES",
            f"Workflow has {len(workflow.nodes)} nodes, maximum is {max_nodes}",
        )

    seen_ids: set[str] = set()
    start_count = 0
    for node in workflow.nodes:
        if not node.id.strip():
            result.add("NODE_ID", f"Node '{node.name or '?'}' has an empty id")
            continue
        if node.id in seen_ids:
            result.add("DUPLICATE_NODE_ID", f"Node id '{node.id}' is used more than once", node.id)
        seen_ids.add(node.id)

        if node.type == NodeType.START.value:
            start_count += 1

        rule = node_types.get(node.type)
        if rule is None:
            result.add(
                "UNKNOWN_NODE_TYPE",
                f"Node '{node.id}' has unknown type '{node.type}'",
                node.id,
            )
            continue

        _check_required_data(node, rule, result)
        _check_output_ports(node, rule, result)

    if start_count > 1:
        result.add("MULTIPLE_START", f"Workflow has {start_count} start nodes, at most 1 allowed")

    _check_connections(workflow, result)

    if not result.valid:
        logger.debug(f"Workflow '{workflow.id}' failed validation: {result.summary()}")
    return result


def _check_required_data(node: WorkflowNode, rule: Dict[str, Any], result: ValidationResult) -> None:
    for key in rule.get("requiredData", []):
        value = node.data.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            result.add(
                "MISSING_FIELD",
                f"Node '{node.id}' ({node.type}) is missing required field '{key}'",
                node.id,
            )


def _check_output_ports(node: WorkflowNode, rule: Dict[str, Any], result: ValidationResult) -> None:
    port_rule = rule.get("outputPorts", {})
    ports = node.output_ports

    if ports is None:
        if "outputPorts" in node.data:
            result.add(
                "PORT_COUNT",
                f"Node '{node.id}' ({node.type}) has a non-integer outputPorts value",
                node.id,
            )
        elif port_rule.get("required"):
            result.add(
                "PORT_COUNT",
                f"Node '{node.id}' ({node.type}) must declare outputPorts",
                node.id,
            )
        return

    exact = port_rule.get("exact")
    if exact is not None and ports != exact:
        noun = "port" if exact == 1 else "ports"
        result.add(
            "PORT_COUNT",
            f"Node '{node.id}' ({node.type}) must have exactly {exact} output {noun}, found {ports}",
            node.id,
        )
        return

    low, high = port_rule.get("min"), port_rule.get("max")
    if (low is not None and ports < low) or (high is not None and ports > high):
        result.add(
            "PORT_COUNT",
            f"Node '{node.id}' ({node.type}) must have between {low} and {high} output ports, found {ports}",
            node.id,
        )
        return

    if node.type in (NodeType.BRANCH.value, NodeType.IF_ELSE.value, NodeType.SWITCH.value):
        branches = node.data.get("branches")
        if isinstance(branches, list) and len(branches) != ports:
            result.add(
                "PORT_COUNT",
                f"Node '{node.id}' ({node.type}) declares {ports} output ports "
                f"but has {len(branches)} branches",
                node.id,
            )
        if node.data.get("branchType") == "conditional" and ports != 2:
            result.add(
                "PORT_COUNT",
                f"Node '{node.id}' (conditional branch) must have exactly 2 output ports, found {ports}",
                node.id,
            )

    elif node.type == NodeType.ASK_USER_QUESTION.value:
        single_port = bool(node.data.get("multiSelect")) or bool(node.data.get("useAiSuggestions"))
        options = node.data.get("options")
        if single_port and ports != 1:
            result.add(
                "PORT_COUNT",
                f"Node '{node.id}' (askUserQuestion with multi-select or AI suggestions) "
                f"must have exactly 1 output port, found {ports}",
                node.id,
            )
        elif not single_port:
            if ports < 2:
                result.add(
                    "PORT_COUNT",
                    f"Node '{node.id}' (askUserQuestion) must have 2-4 output ports, found {ports}",
                    node.id,
                )
            elif isinstance(options, list) and len(options) != ports:
                result.add(
                    "PORT_COUNT",
                    f"Node '{node.id}' (askUserQuestion) declares {ports} output ports "
                    f"but has {len(options)} options",
                    node.id,
                )


def _check_connections(workflow: Workflow, result: ValidationResult) -> None:
    nodes_by_id = {n.id: n for n in workflow.nodes if n.id}
    by_port: Dict[tuple[str, str], List[str]] = defaultdict(list)

    for conn in workflow.connections:
        label = conn.id or f"{conn.source}->{conn.target}"
        source = nodes_by_id.get(conn.source)
        if source is None:
            result.add(
                "DANGLING_CONNECTION",
                f"Connection '{label}' starts at unknown node '{conn.source}'",
            )
        if conn.target not in nodes_by_id:
            result.add(
                "DANGLING_CONNECTION",
                f"Connection '{label}' ends at unknown node '{conn.target}'",
            )
        if source is None:
            continue

        if source.type == NodeType.END.value:
            result.add(
                "END_HAS_OUTPUT",
                f"End node '{source.id}' must not have outgoing connections",
                source.id,
            )
        if source.type in _SINGLE_USE_PORT_TYPES:
            by_port[(source.id, conn.source_port)].append(conn.target)

    targets_by_node: Dict[str, Dict[str, str]] = defaultdict(dict)
    for (node_id, port), targets in by_port.items():
        if len(targets) > 1:
            result.add(
                "BRANCH_PORT_REUSED",
                f"Output port '{port}' of node '{node_id}' connects to {len(targets)} steps; "
                "each branch output must connect to exactly one downstream step",
                node_id,
            )
        if nodes_by_id[node_id].type not in _DISTINCT_TARGET_TYPES:
            continue
        for target in targets:
            other_port = targets_by_node[node_id].get(target)
            if other_port is not None and other_port != port:
                result.add(
                    "BRANCH_TARGET_SHARED",
                    f"Outputs '{other_port}' and '{port}' of node '{node_id}' both lead to "
                    f"'{target}'; each branch must target a distinct downstream step",
                    node_id,
                )
            targets_by_node[node_id].setdefault(target, port)
