"""
Workflow Engine - entry point for validating and running workflows.

    engine = WorkflowEngine(collaborators=Collaborators(agent_invoker=...))
    result = await engine.run(definition, trigger_payload={"symbol": "ETH"})
    result.status_map   # {"fetch-spot": "SUCCEEDED", "notify": "SKIPPED:GATE_BLOCKED", ...}

``start`` returns a RunHandle immediately so the caller can cancel a run
that is still in flight.
"""

import asyncio
import logging
import uuid
from typing import Any

from marketflow.collaborators import Collaborators
from marketflow.config import EngineConfig
from marketflow.executors.builtin import build_default_registry
from marketflow.executors.registry import NodeExecutorRegistry
from marketflow.graph.validator import ValidationReport, WorkflowValidator
from marketflow.observability import set_trace_context
from marketflow.runtime.context import RunContext
from marketflow.runtime.event_bus import EventBus
from marketflow.runtime.scheduler import RunScheduler
from marketflow.schemas.run import NodeStatus, RunResult, utc_now
from marketflow.schemas.workflow import WorkflowDefinition, load_workflow
from marketflow.storage.run_store import InMemoryRunStateStore, RunStateStore

logger = logging.getLogger(__name__)


class RunHandle:
    """A run in flight."""

    def __init__(self, run_id: str, context: RunContext, task: "asyncio.Task[RunResult]"):
        self.run_id = run_id
        self.context = context
        self.task = task

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Signal cancellation; in-flight nodes observe it at their next await."""
        self.context.cancel(reason)

    async def wait(self) -> RunResult:
        return await asyncio.shield(self.task)

    def done(self) -> bool:
        return self.task.done()


class WorkflowEngine:
    """
    Validates workflow definitions and executes them.

    All collaborators are optional: the default registry is built from
    ``collaborators`` and results go to an in-memory store unless a
    ``state_store`` is given.
    """

    def __init__(
        self,
        registry: NodeExecutorRegistry | None = None,
        collaborators: Collaborators | None = None,
        config: EngineConfig | None = None,
        state_store: RunStateStore | None = None,
        event_bus: EventBus | None = None,
    ):
        self.config = config or EngineConfig()
        self.event_bus = event_bus or EventBus()
        self.collaborators = collaborators or Collaborators()
        self.registry = registry or build_default_registry(self.collaborators, self.event_bus)
        self.state_store = state_store or InMemoryRunStateStore()
        self.validator = WorkflowValidator(self.registry)

    def validate(self, definition: WorkflowDefinition | dict[str, Any] | str) -> ValidationReport:
        return self.validator.validate(_as_definition(definition))

    def start(
        self,
        definition: WorkflowDefinition | dict[str, Any] | str,
        run_id: str | None = None,
        trigger_payload: dict[str, Any] | None = None,
        resume_from: str | None = None,
        timeout: float | None = None,
    ) -> RunHandle:
        """
        Validate ``definition`` and schedule a run on the current event loop.

        Raises:
            ConfigurationError: if the definition has validation errors; the
                run never starts.
        """
        definition = _as_definition(definition)
        graph = self.validator.validate_or_raise(definition)

        run_id = run_id or f"run_{uuid.uuid4().hex[:12]}"
        context = RunContext(run_id, definition.workflow_id, graph.nodes, trigger_payload)
        scheduler = RunScheduler(
            graph,
            self.registry,
            context,
            config=self.config,
            event_bus=self.event_bus,
            state_store=self.state_store,
            timeout=timeout,
        )
        task = asyncio.create_task(
            self._execute(scheduler, resume_from), name=f"run:{run_id}"
        )
        return RunHandle(run_id, context, task)

    async def run(
        self,
        definition: WorkflowDefinition | dict[str, Any] | str,
        run_id: str | None = None,
        trigger_payload: dict[str, Any] | None = None,
        resume_from: str | None = None,
        timeout: float | None = None,
    ) -> RunResult:
        """Start a run and wait for its RunResult."""
        handle = self.start(
            definition,
            run_id=run_id,
            trigger_payload=trigger_payload,
            resume_from=resume_from,
            timeout=timeout,
        )
        return await handle.wait()

    async def _execute(self, scheduler: RunScheduler, resume_from: str | None) -> RunResult:
        context = scheduler.context
        set_trace_context(run_id=context.run_id, workflow_id=context.workflow_id)

        if resume_from:
            await self._restore(context, resume_from)

        try:
            status = await scheduler.run()
        except asyncio.CancelledError:
            logger.warning(f"Run task {context.run_id} was cancelled")
            raise

        failed = [nid for nid, r in context.results().items() if r.status == NodeStatus.FAILED]
        if context.cancelled:
            error = context.cancel_reason
        elif failed:
            error = f"failed node(s): {', '.join(failed)}"
        else:
            error = None

        result = RunResult(
            run_id=context.run_id,
            workflow_id=context.workflow_id,
            status=status,
            nodes=context.results(),
            started_at=context.started_at,
            finished_at=utc_now(),
            critical_nodes=list(scheduler.critical_nodes),
            error=error,
        )
        await self.state_store.save_run(result)
        return result

    async def _restore(self, context: RunContext, resume_from: str) -> None:
        previous = await self.state_store.load(resume_from)
        if previous is None:
            logger.warning(f"Nothing stored for run {resume_from}; starting from scratch")
            return
        restored = context.restore(previous.results().values())
        for node_id in restored:
            await self.state_store.persist(context.run_id, node_id, context.get(node_id))
        logger.info(
            f"↩ Resuming {resume_from} as {context.run_id}: "
            f"reusing {len(restored)} succeeded node(s)"
        )


def _as_definition(definition: WorkflowDefinition | dict[str, Any] | str) -> WorkflowDefinition:
    if isinstance(definition, WorkflowDefinition):
        return definition
    return load_workflow(definition)
