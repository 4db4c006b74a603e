"""
Workflow DSL schema - the declarative graph a run interprets.

The JSON form uses camelCase keys (``workflowId``, ``edgeType``,
``inputBindings`` ...) and ``from``/``to`` on edges. The models accept both
the JSON aliases and the Python field names, and dump back to the aliases.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class WorkflowMode(StrEnum):
    """Execution mode of a workflow."""

    LINEAR = "LINEAR"
    DAG = "DAG"
    DEBATE = "DEBATE"


class WorkflowStatus(StrEnum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class EdgeType(StrEnum):
    """
    Edge semantics.

    CONTROL only orders execution. DATA orders execution and makes the
    source's output addressable by the target's bindings.
    """

    CONTROL = "control-edge"
    DATA = "data-edge"


class ErrorPolicy(StrEnum):
    CONTINUE = "CONTINUE"
    FAIL_FAST = "FAIL_FAST"


class RuntimePolicy(BaseModel):
    """Per-node execution policy. Unset fields fall back to workflow defaults."""

    timeout_seconds: float | None = Field(default=None, alias="timeoutSeconds")
    retry_count: int | None = Field(default=None, alias="retryCount", ge=0)
    retry_backoff_seconds: float | None = Field(
        default=None, alias="retryBackoffSeconds", ge=0
    )
    on_error: ErrorPolicy | None = Field(default=None, alias="onError")
    allow_partial_input: bool | None = Field(default=None, alias="allowPartialInput")

    model_config = {"populate_by_name": True, "frozen": True}

    def merged_over(self, defaults: "RuntimePolicy | None") -> "RuntimePolicy":
        """Return a policy where unset fields are taken from ``defaults``."""
        if defaults is None:
            return self
        merged = defaults.model_dump(exclude_none=True)
        merged.update(self.model_dump(exclude_none=True))
        return RuntimePolicy.model_validate(merged)


class RunPolicy(BaseModel):
    """Workflow-level run policy."""

    node_defaults: RuntimePolicy = Field(default_factory=RuntimePolicy, alias="nodeDefaults")
    timeout_seconds: float | None = Field(default=None, alias="timeoutSeconds")
    max_concurrency: int | None = Field(default=None, alias="maxConcurrency", ge=1)

    model_config = {"populate_by_name": True, "frozen": True, "extra": "allow"}


class WorkflowNode(BaseModel):
    """
    A typed step in the workflow graph.

    ``type`` is an open string dispatched through the executor registry,
    ``config`` is type-specific and ``input_bindings`` maps a logical input
    name to a ``${node.output...}`` expression.
    """

    id: str
    type: str
    name: str = ""
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)
    input_bindings: dict[str, Any] = Field(default_factory=dict, alias="inputBindings")
    runtime_policy: RuntimePolicy | None = Field(default=None, alias="runtimePolicy")
    critical: bool = False

    model_config = {"populate_by_name": True, "frozen": True, "extra": "allow"}

    @property
    def is_trigger(self) -> bool:
        return is_trigger_type(self.type)

    @property
    def label(self) -> str:
        return self.name or self.id


class WorkflowEdge(BaseModel):
    """A directed edge between two nodes."""

    id: str
    source: str = Field(alias="from")
    target: str = Field(alias="to")
    edge_type: EdgeType = Field(default=EdgeType.CONTROL, alias="edgeType")

    model_config = {"populate_by_name": True, "frozen": True}

    @property
    def is_data(self) -> bool:
        return self.edge_type == EdgeType.DATA


class WorkflowDefinition(BaseModel):
    """
    A complete workflow: nodes, edges and the mode they are interpreted in.

    Instances are frozen. Loading a definition does not validate its graph
    structure; use ``marketflow.graph.validator.WorkflowValidator`` for that.
    """

    workflow_id: str = Field(alias="workflowId")
    name: str = ""
    mode: WorkflowMode = WorkflowMode.DAG
    usage_method: str | None = Field(default=None, alias="usageMethod")
    version: str = "1.0.0"
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)
    run_policy: RunPolicy = Field(default_factory=RunPolicy, alias="runPolicy")

    model_config = {"populate_by_name": True, "frozen": True, "extra": "allow"}

    def get_node(self, node_id: str) -> WorkflowNode | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def to_dsl(self) -> dict[str, Any]:
        """Dump back to the JSON DSL shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def is_trigger_type(node_type: str) -> bool:
    """Trigger nodes are ``trigger`` itself or any ``*-trigger`` type."""
    return node_type == "trigger" or node_type.endswith("-trigger")


def load_workflow(source: str | bytes | dict[str, Any]) -> WorkflowDefinition:
    """Parse a workflow from a JSON string/bytes or an already-decoded dict."""
    if isinstance(source, dict):
        return WorkflowDefinition.model_validate(source)
    return WorkflowDefinition.model_validate_json(source)
