"""Executor contract shared by every node type."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from marketflow.runtime.context import RunContext
from marketflow.schemas.workflow import WorkflowNode


@dataclass
class NodeInputs:
    """
    Everything a node sees of the run before it executes.

    Attributes:
        bindings: ``inputBindings`` resolved against the run snapshot
        upstream: output of the single data-edge producer, or
            ``{"branches": {node_id: output}}`` when there are several,
            or None when the node has no data-edge producers
        payload: the run's trigger payload
        failed_upstream: data producers that FAILED (partial input only)
    """

    bindings: dict[str, Any] = field(default_factory=dict)
    upstream: Any = None
    payload: dict[str, Any] = field(default_factory=dict)
    failed_upstream: list[str] = field(default_factory=list)

    def branches(self) -> dict[str, Any]:
        """Producer outputs keyed by node id (empty when unknown)."""
        if isinstance(self.upstream, dict) and set(self.upstream) == {"branches"}:
            return dict(self.upstream["branches"])
        return {}

    def merged(self) -> dict[str, Any]:
        """Upstream output (when a dict) overlaid with resolved bindings."""
        merged: dict[str, Any] = {}
        if isinstance(self.upstream, dict):
            merged.update(self.upstream)
        elif self.upstream is not None:
            merged["input"] = self.upstream
        merged.update(self.bindings)
        return merged


@dataclass
class ExecutionOutcome:
    """What an executor hands back to the scheduler on success."""

    output: Any = None
    blocking: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


class NodeExecutor(ABC):
    """
    Executes one family of node types.

    Subclasses declare the ``node_types`` they handle. Failures are raised,
    never returned: ``TransientExecutionError`` for retryable conditions,
    ``FatalExecutionError`` for everything else.
    """

    node_types: ClassVar[tuple[str, ...]] = ()
    default_retry_count: ClassVar[int] = 0
    tolerates_partial_input: ClassVar[bool] = False

    @property
    def name(self) -> str:
        return type(self).__name__

    def validate_config(self, node: WorkflowNode) -> list[str]:
        """Return human-readable problems with ``node.config`` (empty if fine)."""
        return []

    @abstractmethod
    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        """Run the node and return its outcome."""


def require(config: dict[str, Any], *keys: str) -> list[str]:
    """Problems for each of ``keys`` missing or empty in ``config``."""
    return [f"config.{key} is required" for key in keys if config.get(key) in (None, "", [], {})]
