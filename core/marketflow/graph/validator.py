"""Structural validation for workflow definitions.

Runs before any execution: a definition with ERROR-level issues never
starts. Each rule has a stable issue code so callers (and the CLI) can
filter or explain them.

    WF001  missing required top-level fields / no nodes
    WF002  duplicate node or edge id
    WF003  edge references an unknown node, or is a self-loop
    WF004  orphan node (non-trigger without incoming edges)
    WF005  LINEAR mode fan-out / fan-in
    WF006  cycle outside debate iteration
    WF007  unknown node type
    WF008  no enabled trigger node
    WF009  workflow status is not ACTIVE (warning)
    WF101  DEBATE mode missing a required node type
    WF202  malformed binding/template, or reference to an unknown node
    WF203  binding references a node that is not upstream (warning)
    WF301  node config rejected by its executor
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum

from marketflow.errors import ConfigurationError, ExpressionError
from marketflow.executors.registry import NodeExecutorRegistry
from marketflow.graph.expressions import collect_references, parse_template
from marketflow.graph.model import CycleError, WorkflowGraph
from marketflow.schemas.workflow import WorkflowDefinition, WorkflowMode, WorkflowStatus

logger = logging.getLogger(__name__)

DEBATE_REQUIRED_TYPES = ("context-builder", "debate-round", "judge-agent")
TEMPLATE_CONFIG_KEYS = ("template", "contextTemplate")


class Severity(StrEnum):
    ERROR = "ERROR"
    WARNING = "WARNING"


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    severity: Severity
    message: str
    node_id: str | None = None
    edge_id: str | None = None

    def __str__(self) -> str:
        where = ""
        if self.node_id:
            where = f" [node {self.node_id}]"
        elif self.edge_id:
            where = f" [edge {self.edge_id}]"
        return f"{self.code}{where}: {self.message}"

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "severity": str(self.severity),
            "message": self.message,
            "nodeId": self.node_id,
            "edgeId": self.edge_id,
        }


@dataclass
class ValidationReport:
    """Result of validating a definition."""

    workflow_id: str
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]

    @property
    def valid(self) -> bool:
        return not self.errors

    def codes(self) -> list[str]:
        return [i.code for i in self.issues]

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ConfigurationError(
                f"Workflow '{self.workflow_id}' failed validation", issues=self.errors
            )


class WorkflowValidator:
    """
    Validates a WorkflowDefinition against the graph rules and the registry.

    Usage:
        report = WorkflowValidator(registry).validate(definition)
        report.raise_for_errors()
    """

    def __init__(self, registry: NodeExecutorRegistry | None = None):
        self.registry = registry

    def validate(self, definition: WorkflowDefinition) -> ValidationReport:
        report = ValidationReport(workflow_id=definition.workflow_id)
        issues = report.issues

        def error(code: str, message: str, **where) -> None:
            issues.append(ValidationIssue(code, Severity.ERROR, message, **where))

        def warning(code: str, message: str, **where) -> None:
            issues.append(ValidationIssue(code, Severity.WARNING, message, **where))

        if not definition.workflow_id:
            error("WF001", "workflowId is required")
        if not definition.nodes:
            error("WF001", "workflow must declare at least one node")
            return report
        if definition.status != WorkflowStatus.ACTIVE:
            warning("WF009", f"workflow status is {definition.status}")

        for node_id, count in Counter(n.id for n in definition.nodes).items():
            if count > 1:
                error("WF002", f"duplicate node id '{node_id}'", node_id=node_id)
        for edge_id, count in Counter(e.id for e in definition.edges).items():
            if count > 1:
                error("WF002", f"duplicate edge id '{edge_id}'", edge_id=edge_id)

        graph = WorkflowGraph(definition)
        for edge in graph.dangling_edges:
            missing = [ref for ref in (edge.source, edge.target) if ref not in graph.nodes]
            error(
                "WF003",
                f"edge references unknown node(s): {', '.join(missing)}",
                edge_id=edge.id,
            )
        for edge in graph.edges:
            if edge.source == edge.target:
                error("WF003", f"edge is a self-loop on '{edge.source}'", edge_id=edge.id)

        self._check_types(graph, error)
        self._check_triggers_and_orphans(graph, error)

        if definition.mode == WorkflowMode.LINEAR:
            for node_id, targets in graph.detect_fan_out_nodes().items():
                error(
                    "WF005",
                    f"LINEAR mode forbids fan-out ({node_id} -> {', '.join(targets)})",
                    node_id=node_id,
                )
            for node_id, sources in graph.detect_fan_in_nodes().items():
                error(
                    "WF005",
                    f"LINEAR mode forbids fan-in ({', '.join(sources)} -> {node_id})",
                    node_id=node_id,
                )

        if definition.mode == WorkflowMode.DEBATE:
            present = {n.type for n in definition.nodes if n.enabled}
            for required in DEBATE_REQUIRED_TYPES:
                if required not in present:
                    error("WF101", f"DEBATE mode requires a '{required}' node")

        try:
            graph.topological_layers()
        except CycleError as e:
            error("WF006", str(e))

        self._check_expressions(graph, error, warning)

        if report.errors:
            logger.debug(f"Workflow {definition.workflow_id}: {len(report.errors)} validation error(s)")
        return report

    def validate_or_raise(self, definition: WorkflowDefinition) -> WorkflowGraph:
        """Validate and return the built graph, raising ConfigurationError on errors."""
        self.validate(definition).raise_for_errors()
        return WorkflowGraph(definition)

    # === RULES ===

    def _check_types(self, graph: WorkflowGraph, error) -> None:
        if self.registry is None:
            return
        for node in graph.nodes.values():
            if not self.registry.supports(node.type):
                error("WF007", f"unknown node type '{node.type}'", node_id=node.id)
                continue
            for problem in self.registry.get(node.type).validate_config(node):
                error("WF301", problem, node_id=node.id)

    def _check_triggers_and_orphans(self, graph: WorkflowGraph, error) -> None:
        triggers = [nid for nid in graph.triggers() if graph.nodes[nid].enabled]
        if not triggers:
            error("WF008", "workflow has no enabled trigger node")
        incoming_targets = {e.target for e in graph.edges}
        for node in graph.nodes.values():
            if node.is_trigger:
                continue
            if node.id not in incoming_targets:
                error("WF004", f"node '{node.id}' has no incoming edge", node_id=node.id)

    def _check_expressions(self, graph: WorkflowGraph, error, warning) -> None:
        for node in graph.nodes.values():
            upstream = graph.ancestors(node.id)
            for name, expression in node.input_bindings.items():
                try:
                    refs = collect_references(expression)
                except ExpressionError as e:
                    error("WF202", f"binding '{name}' is malformed: {e}", node_id=node.id)
                    continue
                for ref in refs:
                    if ref.node_id not in graph.nodes:
                        error(
                            "WF202",
                            f"binding '{name}' references unknown node '{ref.node_id}'",
                            node_id=node.id,
                        )
                    elif ref.node_id not in upstream:
                        warning(
                            "WF203",
                            f"binding '{name}' references '{ref.node_id}', which is not upstream",
                            node_id=node.id,
                        )

            for key in TEMPLATE_CONFIG_KEYS:
                text = node.config.get(key)
                if not isinstance(text, str):
                    continue
                try:
                    refs = parse_template(text).references
                except ExpressionError as e:
                    error("WF202", f"config.{key} is malformed: {e}", node_id=node.id)
                    continue
                for ref in refs:
                    if ref.node_id not in graph.nodes:
                        error(
                            "WF202",
                            f"config.{key} references unknown node '{ref.node_id}'",
                            node_id=node.id,
                        )
