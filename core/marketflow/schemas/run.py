"""
Run Schema - per-node results and the outcome of a complete workflow run.

A RunResult always carries the full per-node status map so a caller can
tell a node that was blocked by a risk gate from one that crashed.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, computed_field


def utc_now() -> datetime:
    return datetime.now(UTC)


class NodeStatus(StrEnum):
    """Lifecycle status of a single node within a run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED)


class SkipReason(StrEnum):
    """Why a node ended SKIPPED."""

    DISABLED = "DISABLED"
    UPSTREAM_FAILED = "UPSTREAM_FAILED"
    UPSTREAM_HALTED = "UPSTREAM_HALTED"
    GATE_BLOCKED = "GATE_BLOCKED"
    CANCELLED = "CANCELLED"


class RunStatus(StrEnum):
    """Status of a run."""

    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    PARTIALLY_SUCCEEDED = "PARTIALLY_SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class NodeResult(BaseModel):
    """
    Result slot for one node in the RunContext.

    ``blocking`` is set by nodes that succeeded but intentionally halt their
    control-edge dependents (risk gates). ``diagnostics`` keeps whatever an
    executor attached to a failure, e.g. the raw text of an agent response
    that did not match its schema.
    """

    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    skip_reason: SkipReason | None = None
    blocking: bool = False
    attempts: int = 0
    diagnostics: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @computed_field
    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def succeeded(self) -> bool:
        return self.status == NodeStatus.SUCCEEDED

    @classmethod
    def skipped(cls, node_id: str, reason: SkipReason, message: str | None = None) -> "NodeResult":
        now = utc_now()
        return cls(
            node_id=node_id,
            status=NodeStatus.SKIPPED,
            skip_reason=reason,
            error=message,
            finished_at=now,
        )


class RunResult(BaseModel):
    """
    Outcome of one end-to-end execution of a workflow definition.
    """

    run_id: str
    workflow_id: str
    status: RunStatus
    nodes: dict[str, NodeResult] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    critical_nodes: list[str] = Field(default_factory=list)
    error: str | None = None

    @computed_field
    @property
    def status_map(self) -> dict[str, str]:
        """Node id -> status, with skip reasons folded in (``SKIPPED:GATE_BLOCKED``)."""
        summary = {}
        for node_id, result in self.nodes.items():
            if result.status == NodeStatus.SKIPPED and result.skip_reason:
                summary[node_id] = f"{result.status}:{result.skip_reason}"
            else:
                summary[node_id] = str(result.status)
        return summary

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def output_of(self, node_id: str) -> Any:
        result = self.nodes.get(node_id)
        return result.output if result else None

    def failed_nodes(self) -> list[str]:
        return [nid for nid, r in self.nodes.items() if r.status == NodeStatus.FAILED]

    def blocked_by_gate(self) -> list[str]:
        return [nid for nid, r in self.nodes.items() if r.blocking]
