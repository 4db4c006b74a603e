"""
RunContext - the per-run map of node id -> NodeResult.

Owned by the scheduler for the lifetime of one run and passed explicitly
into every executor call. Each slot is written by the task executing that
node; other nodes only read. A single lock guards the map, and a slot that
reached SUCCEEDED can never be overwritten.
"""

import asyncio
import threading
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from marketflow.errors import RunContextError
from marketflow.schemas.run import NodeResult, NodeStatus, utc_now


class RunContext:
    """Shared, write-once-per-node execution state for one run."""

    def __init__(
        self,
        run_id: str,
        workflow_id: str,
        node_ids: Iterable[str],
        trigger_payload: dict[str, Any] | None = None,
    ):
        self.run_id = run_id
        self.workflow_id = workflow_id
        self.trigger_payload = dict(trigger_payload or {})
        self.started_at = utc_now()
        self._results: dict[str, NodeResult] = {nid: NodeResult(node_id=nid) for nid in node_ids}
        self._lock = threading.Lock()
        self._cancelled = asyncio.Event()
        self.cancel_reason: str | None = None

    @classmethod
    def from_results(
        cls, run_id: str, workflow_id: str, results: Iterable[NodeResult]
    ) -> "RunContext":
        """Rebuild a context from persisted results, e.g. to resume a run."""
        results = list(results)
        context = cls(run_id, workflow_id, [r.node_id for r in results])
        context._results.update({r.node_id: r for r in results})
        return context

    # === READS ===

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._results

    def get(self, node_id: str) -> NodeResult | None:
        with self._lock:
            return self._results.get(node_id)

    def status(self, node_id: str) -> NodeStatus:
        result = self.get(node_id)
        if result is None:
            raise KeyError(node_id)
        return result.status

    def output(self, node_id: str) -> Any:
        """Output of a SUCCEEDED node, else None."""
        result = self.get(node_id)
        if result is None or result.status != NodeStatus.SUCCEEDED:
            return None
        return result.output

    def outputs(self) -> dict[str, Any]:
        """Snapshot of every SUCCEEDED node's output, keyed by node id."""
        with self._lock:
            return {
                nid: r.output for nid, r in self._results.items() if r.status == NodeStatus.SUCCEEDED
            }

    def results(self) -> dict[str, NodeResult]:
        with self._lock:
            return dict(self._results)

    def is_terminal(self, node_id: str) -> bool:
        return self.status(node_id).is_terminal

    # === WRITES ===

    def mark_running(self, node_id: str, started_at: datetime | None = None) -> NodeResult:
        with self._lock:
            current = self._require(node_id)
            if current.status.is_terminal:
                raise RunContextError(f"Node '{node_id}' already finished as {current.status}")
            running = NodeResult(
                node_id=node_id,
                status=NodeStatus.RUNNING,
                started_at=started_at or utc_now(),
            )
            self._results[node_id] = running
            return running

    def write(self, result: NodeResult) -> None:
        """
        Store a terminal result for a node.

        Last writer wins on the node's own slot, except that a SUCCEEDED
        result is final.

        Raises:
            RunContextError: if the slot already holds SUCCEEDED, or the
                result is not terminal.
        """
        if not result.status.is_terminal:
            raise RunContextError(f"Cannot write non-terminal status {result.status}")
        with self._lock:
            current = self._require(result.node_id)
            if current.status == NodeStatus.SUCCEEDED:
                raise RunContextError(f"Node '{result.node_id}' already SUCCEEDED")
            if result.started_at is None and current.started_at is not None:
                result = result.model_copy(update={"started_at": current.started_at})
            self._results[result.node_id] = result

    def restore(self, results: Iterable[NodeResult]) -> list[str]:
        """Seed SUCCEEDED results from a previous run; returns restored node ids."""
        restored = []
        with self._lock:
            for result in results:
                if result.node_id in self._results and result.status == NodeStatus.SUCCEEDED:
                    self._results[result.node_id] = result
                    restored.append(result.node_id)
        return restored

    def _require(self, node_id: str) -> NodeResult:
        if node_id not in self._results:
            raise RunContextError(f"Unknown node '{node_id}'")
        return self._results[node_id]

    # === CANCELLATION ===

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled.is_set():
            self.cancel_reason = reason
            self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()
