"""
Run Scheduler - event-driven asyncio execution of one workflow run.

Every node gets its own task. A task waits until all of its scheduling
predecessors are terminal, then decides from their results whether the node
runs or is skipped:

- a data producer that FAILED skips the node (UPSTREAM_FAILED) unless the
  node tolerates partial input;
- the node runs when at least one incoming edge is live:
    * data edge: source SUCCEEDED (a blocking gate still passes data)
    * control edge: source SUCCEEDED and not blocking, or source FAILED
      (outside LINEAR mode, where failures propagate along control edges)
    * any edge from a disabled node, which is a transparent pass-through
- otherwise the node is skipped as GATE_BLOCKED, UPSTREAM_FAILED or
  UPSTREAM_HALTED depending on why its edges were halted.

Execution is capped by a semaphore. Transient errors are retried with
exponential backoff; fatal and unexpected errors fail the node at once.
"""

import asyncio
import logging
import time
from typing import Any

from marketflow.config import EngineConfig
from marketflow.errors import (
    ExpressionError,
    FatalExecutionError,
    NodeExecutionError,
    TransientExecutionError,
)
from marketflow.executors.base import ExecutionOutcome, NodeExecutor, NodeInputs
from marketflow.executors.registry import NodeExecutorRegistry
from marketflow.graph.expressions import ExpressionResolver, ResolutionTrace
from marketflow.graph.model import WorkflowGraph
from marketflow.observability import set_trace_context
from marketflow.runtime.context import RunContext
from marketflow.runtime.event_bus import EventBus, EventType
from marketflow.schemas.run import NodeResult, NodeStatus, RunStatus, SkipReason, utc_now
from marketflow.schemas.workflow import (
    ErrorPolicy,
    RuntimePolicy,
    WorkflowEdge,
    WorkflowMode,
    WorkflowNode,
)
from marketflow.storage.run_store import RunStateStore

logger = logging.getLogger(__name__)

RUN_CANCELLED_MESSAGE = "run cancelled"


class RunScheduler:
    """
    Drives one RunContext to completion.

    Example:
        scheduler = RunScheduler(graph, registry, context, config)
        status = await scheduler.run()
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        registry: NodeExecutorRegistry,
        context: RunContext,
        config: EngineConfig | None = None,
        event_bus: EventBus | None = None,
        state_store: RunStateStore | None = None,
        timeout: float | None = None,
    ):
        self.graph = graph
        self.registry = registry
        self.context = context
        self.config = config or EngineConfig()
        self.event_bus = event_bus
        self.state_store = state_store

        run_policy = graph.definition.run_policy
        self.timeout = timeout if timeout is not None else run_policy.timeout_seconds
        if self.timeout is None:
            self.timeout = self.config.run_timeout_seconds
        self.max_concurrency = run_policy.max_concurrency or self.config.max_concurrency

        self.critical_nodes = graph.critical_nodes()
        self.fail_fast_node: str | None = None
        self.timed_out = False

        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._done: dict[str, asyncio.Event] = {nid: asyncio.Event() for nid in graph.nodes}

    # === RUN ===

    async def run(self) -> RunStatus:
        """Execute every node; returns the final run status."""
        logger.info(
            f"🚀 Run {self.context.run_id} of {self.graph.definition.workflow_id} "
            f"({self.graph.mode}, {len(self.graph.nodes)} nodes, "
            f"max_concurrency={self.max_concurrency})"
        )
        await self._emit(EventType.RUN_STARTED, None, workflow_id=self.context.workflow_id)

        tasks = [
            asyncio.create_task(self._node_task(node_id), name=f"node:{node_id}")
            for node_id in self.graph.topological_order()
        ]
        all_done = asyncio.ensure_future(asyncio.gather(*tasks, return_exceptions=True))
        cancel_waiter = asyncio.create_task(self.context.wait_cancelled())
        try:
            done, _ = await asyncio.wait(
                {all_done, cancel_waiter},
                timeout=self.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not done:
                self.timed_out = True
                self.context.cancel(f"run timed out after {self.timeout}s")
            if all_done not in done:
                logger.warning(f"⏹ Cancelling run {self.context.run_id}: {self.context.cancel_reason}")
                for task in tasks:
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            self.context.cancel(RUN_CANCELLED_MESSAGE)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            cancel_waiter.cancel()
            await self._finalize_unfinished()

        status = self.compute_status()
        if status == RunStatus.CANCELLED:
            await self._emit(EventType.RUN_CANCELLED, None, reason=self.context.cancel_reason)
        await self._emit(EventType.RUN_COMPLETED, None, status=str(status))
        logger.info(f"🏁 Run {self.context.run_id} finished: {status}")
        return status

    def compute_status(self) -> RunStatus:
        results = self.context.results()
        if self.fail_fast_node is not None:
            return RunStatus.FAILED
        if self.context.cancelled:
            return RunStatus.CANCELLED
        failed = [nid for nid, r in results.items() if r.status == NodeStatus.FAILED]
        if any(nid in self.critical_nodes for nid in failed):
            return RunStatus.FAILED
        if failed:
            return RunStatus.PARTIALLY_SUCCEEDED
        return RunStatus.SUCCEEDED

    async def _finalize_unfinished(self) -> None:
        """Settle slots left open by cancellation: pending -> SKIPPED, running -> FAILED."""
        for node_id, result in self.context.results().items():
            if result.status.is_terminal:
                continue
            if result.status == NodeStatus.RUNNING:
                final = result.model_copy(
                    update={
                        "status": NodeStatus.FAILED,
                        "error": RUN_CANCELLED_MESSAGE,
                        "finished_at": utc_now(),
                    }
                )
            else:
                final = NodeResult.skipped(node_id, SkipReason.CANCELLED, self.context.cancel_reason)
            self.context.write(final)
            await self._persist(final)

    # === PER NODE ===

    async def _node_task(self, node_id: str) -> None:
        try:
            predecessors = self.graph.predecessors(node_id)
            if predecessors:
                await asyncio.gather(*(self._done[p].wait() for p in predecessors))

            if self.context.status(node_id) == NodeStatus.SUCCEEDED:
                logger.info(f"↩ {node_id}: reusing result from resumed run")
                return

            node = self.graph.nodes[node_id]
            skip = self.decide_skip(node)
            if skip is not None:
                await self._finish(skip)
                return
            await self._execute(node)
        except Exception as e:
            logger.exception(f"✗ {node_id}: scheduler error")
            if not self.context.is_terminal(node_id):
                await self._finish(
                    NodeResult(
                        node_id=node_id,
                        status=NodeStatus.FAILED,
                        error=f"{type(e).__name__}: {e}",
                        finished_at=utc_now(),
                    )
                )
        finally:
            self._done[node_id].set()

    def decide_skip(self, node: WorkflowNode) -> NodeResult | None:
        """A SKIPPED result when ``node`` must not run, else None."""
        incoming = self.graph.get_incoming_edges(node.id)
        executor = self.registry.get(node.type)
        tolerant = self.policy_for(node, executor).allow_partial_input or False

        failed_producers = [
            e.source
            for e in incoming
            if e.is_data and self.context.status(e.source) == NodeStatus.FAILED
        ]
        if failed_producers and not tolerant:
            return self._skipped(
                node,
                SkipReason.UPSTREAM_FAILED,
                f"data producer(s) failed: {', '.join(sorted(set(failed_producers)))}",
            )

        if incoming:
            halts = [self._halt_reason(edge, tolerant) for edge in incoming]
            if all(h is not None for h in halts):
                if SkipReason.GATE_BLOCKED in halts:
                    reason = SkipReason.GATE_BLOCKED
                elif SkipReason.UPSTREAM_FAILED in halts:
                    reason = SkipReason.UPSTREAM_FAILED
                else:
                    reason = SkipReason.UPSTREAM_HALTED
                sources = ", ".join(sorted({e.source for e in incoming}))
                return self._skipped(node, reason, f"no live incoming edge from {sources}")

        if not node.enabled:
            return self._skipped(node, SkipReason.DISABLED, "node is disabled")
        return None

    def _halt_reason(self, edge: WorkflowEdge, tolerant: bool) -> SkipReason | None:
        """Why ``edge`` does not enable its target, or None when it is live."""
        source = self.context.get(edge.source)
        if source.status == NodeStatus.SUCCEEDED:
            if source.blocking and not edge.is_data:
                return SkipReason.GATE_BLOCKED
            return None
        if source.status == NodeStatus.FAILED:
            if edge.is_data:
                return None if tolerant else SkipReason.UPSTREAM_FAILED
            if self.graph.mode == WorkflowMode.LINEAR:
                return SkipReason.UPSTREAM_FAILED
            return None
        if source.skip_reason == SkipReason.DISABLED:
            return None
        if source.skip_reason in (SkipReason.GATE_BLOCKED, SkipReason.UPSTREAM_FAILED):
            return source.skip_reason
        return SkipReason.UPSTREAM_HALTED

    def policy_for(self, node: WorkflowNode, executor: NodeExecutor) -> RuntimePolicy:
        """Node policy over workflow defaults over executor and engine defaults."""
        base = RuntimePolicy(
            timeout_seconds=self.config.node_timeout_seconds,
            retry_count=executor.default_retry_count or self.config.default_retry_count,
            retry_backoff_seconds=self.config.default_retry_backoff_seconds,
            on_error=ErrorPolicy.CONTINUE,
            allow_partial_input=executor.tolerates_partial_input,
        )
        workflow = self.graph.definition.run_policy.node_defaults.merged_over(base)
        if node.runtime_policy is None:
            return workflow
        return node.runtime_policy.merged_over(workflow)

    def build_inputs(self, node: WorkflowNode, trace: ResolutionTrace) -> NodeInputs:
        """Resolve bindings and gather producer outputs from the current snapshot."""
        outputs = self.context.outputs()
        bindings = ExpressionResolver(outputs, trace).resolve_bindings(node.input_bindings)

        producers = self.graph.data_predecessors(node.id)
        available = {p: outputs[p] for p in producers if p in outputs}
        if len(producers) == 1:
            upstream: Any = available.get(producers[0])
        elif producers:
            upstream = {"branches": available}
        else:
            upstream = None

        failed = [p for p in producers if self.context.status(p) == NodeStatus.FAILED]
        return NodeInputs(
            bindings=bindings,
            upstream=upstream,
            payload=dict(self.context.trigger_payload),
            failed_upstream=failed,
        )

    async def _execute(self, node: WorkflowNode) -> None:
        executor = self.registry.get(node.type)
        policy = self.policy_for(node, executor)
        max_attempts = (policy.retry_count or 0) + 1
        backoff = policy.retry_backoff_seconds or 0.0

        set_trace_context(node_id=node.id, node_type=node.type)
        started = self.context.mark_running(node.id)
        await self._emit(EventType.NODE_STARTED, node.id, type=node.type)
        logger.info(f"▶ {node.id} ({node.type})")

        trace = ResolutionTrace()
        try:
            inputs = self.build_inputs(node, trace)
        except ExpressionError as e:
            await self._fail(node, policy, started, FatalExecutionError(f"Bad binding: {e}"), 0, trace)
            return

        attempt = 0
        while True:
            attempt += 1
            set_trace_context(attempt=attempt)
            began = time.monotonic()
            try:
                async with self._semaphore:
                    outcome = await asyncio.wait_for(
                        executor.execute(node, inputs, self.context), timeout=policy.timeout_seconds
                    )
            except TimeoutError:
                error: NodeExecutionError = TransientExecutionError(
                    f"timed out after {policy.timeout_seconds}s"
                )
            except NodeExecutionError as e:
                error = e
            except Exception as e:
                logger.exception(f"✗ {node.id}: unexpected error in {executor.name}")
                error = FatalExecutionError(
                    f"{type(e).__name__}: {e}", diagnostics={"errorType": type(e).__name__}
                )
            else:
                await self._succeed(node, started, outcome, attempt, trace, began)
                return

            if not error.retryable or attempt >= max_attempts:
                await self._fail(node, policy, started, error, attempt, trace)
                return

            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                f"↻ {node.id}: attempt {attempt}/{max_attempts} failed ({error}), "
                f"retrying in {delay}s",
                extra={"attempt": attempt},
            )
            await self._emit(
                EventType.NODE_RETRY, node.id, attempt=attempt, delay=delay, error=str(error)
            )
            await asyncio.sleep(delay)

    async def _succeed(
        self,
        node: WorkflowNode,
        started: NodeResult,
        outcome: ExecutionOutcome,
        attempts: int,
        trace: ResolutionTrace,
        began: float,
    ) -> None:
        result = NodeResult(
            node_id=node.id,
            status=NodeStatus.SUCCEEDED,
            output=outcome.output,
            started_at=started.started_at,
            finished_at=utc_now(),
            blocking=outcome.blocking,
            attempts=attempts,
            metadata={**outcome.metadata, "bindings": trace.to_dict()},
        )
        await self._finish(result)
        latency_ms = int((time.monotonic() - began) * 1000)
        logger.info(f"✓ {node.id} succeeded", extra={"latency_ms": latency_ms})
        await self._emit(EventType.NODE_SUCCEEDED, node.id, attempts=attempts)
        if outcome.blocking:
            logger.warning(f"🚧 {node.id} is blocking its control-edge dependents")
            await self._emit(EventType.GATE_BLOCKED, node.id, output=outcome.output)

    async def _fail(
        self,
        node: WorkflowNode,
        policy: RuntimePolicy,
        started: NodeResult,
        error: NodeExecutionError,
        attempts: int,
        trace: ResolutionTrace,
    ) -> None:
        result = NodeResult(
            node_id=node.id,
            status=NodeStatus.FAILED,
            started_at=started.started_at,
            finished_at=utc_now(),
            error=str(error),
            attempts=attempts,
            diagnostics=dict(error.diagnostics),
            metadata={"bindings": trace.to_dict(), "errorClass": type(error).__name__},
        )
        await self._finish(result)
        logger.error(f"✗ {node.id} failed after {attempts} attempt(s): {error}")
        await self._emit(EventType.NODE_FAILED, node.id, error=str(error), attempts=attempts)

        if policy.on_error == ErrorPolicy.FAIL_FAST and not self.context.cancelled:
            self.fail_fast_node = node.id
            self.context.cancel(f"node {node.id} failed with onError=FAIL_FAST")

    def _skipped(self, node: WorkflowNode, reason: SkipReason, message: str) -> NodeResult:
        return NodeResult.skipped(node.id, reason, message)

    async def _finish(self, result: NodeResult) -> None:
        self.context.write(result)
        await self._persist(result)
        if result.status == NodeStatus.SKIPPED:
            logger.info(f"⏭ {result.node_id} skipped ({result.skip_reason}): {result.error}")
            await self._emit(
                EventType.NODE_SKIPPED, result.node_id, reason=str(result.skip_reason)
            )

    async def _persist(self, result: NodeResult) -> None:
        if self.state_store is None:
            return
        try:
            await self.state_store.persist(self.context.run_id, result.node_id, result)
        except OSError as e:
            logger.error(f"Failed to persist {result.node_id} for run {self.context.run_id}: {e}")

    async def _emit(self, event_type: EventType, node_id: str | None, **data: Any) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event_type, self.context.run_id, node_id, **data)
