"""Trigger nodes: the entry points of a run."""

import logging
from typing import Any

from croniter import croniter

from marketflow.errors import FatalExecutionError
from marketflow.executors.base import ExecutionOutcome, NodeExecutor, NodeInputs
from marketflow.runtime.context import RunContext
from marketflow.schemas.run import utc_now
from marketflow.schemas.workflow import WorkflowNode

logger = logging.getLogger(__name__)

_TRIGGER_KINDS = {
    "trigger": "MANUAL",
    "manual-trigger": "MANUAL",
    "cron-trigger": "SCHEDULED",
    "api-trigger": "ON_DEMAND",
    "event-trigger": "EVENT",
}


class TriggerExecutor(NodeExecutor):
    """
    Fires the run.

    The output carries the firing timestamp and the run's trigger payload,
    merged over ``config.defaultValues``. ``config.requiredFields`` lists
    payload fields that must be present (api/event triggers).
    """

    node_types = tuple(_TRIGGER_KINDS)

    def validate_config(self, node: WorkflowNode) -> list[str]:
        problems = []
        cron = node.config.get("cronExpression")
        if node.type == "cron-trigger" and cron is not None:
            if not isinstance(cron, str) or not croniter.is_valid(cron):
                problems.append(f"config.cronExpression '{cron}' is not a valid cron expression")
        return problems

    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        config = node.config
        payload: dict[str, Any] = dict(config.get("defaultValues") or {})
        payload.update(inputs.payload)

        missing = [f for f in config.get("requiredFields", []) if payload.get(f) is None]
        if missing:
            raise FatalExecutionError(
                f"Trigger payload is missing required field(s): {', '.join(missing)}",
                diagnostics={"missing": missing},
            )

        output = {
            "triggerType": _TRIGGER_KINDS.get(node.type, "MANUAL"),
            "triggerNodeId": node.id,
            "firedAt": utc_now().isoformat(),
            "payload": payload,
        }
        if node.type == "cron-trigger":
            output["cronExpression"] = config.get("cronExpression")
        logger.info(f"⏱ Trigger {node.id} fired ({output['triggerType']})")
        return ExecutionOutcome(output=output)
