"""``risk-gate``: halt downstream control paths when risk exceeds the limit."""

import logging

from marketflow.collaborators import RiskAssessor
from marketflow.errors import FatalExecutionError
from marketflow.executors.base import ExecutionOutcome, NodeExecutor, NodeInputs
from marketflow.risk import RiskGateEvaluator
from marketflow.runtime.context import RunContext
from marketflow.schemas.workflow import WorkflowNode

logger = logging.getLogger(__name__)


class RiskGateExecutor(NodeExecutor):
    """
    A gate that did not error always SUCCEEDS. When the decision is a block
    the outcome is flagged ``blocking`` and the scheduler skips every node
    that is reachable from the gate only through control edges. With
    ``hardBlock`` the block is a node failure instead.
    """

    node_types = ("risk-gate",)

    def __init__(self, risk_assessor: RiskAssessor | None):
        self.evaluator = RiskGateEvaluator(risk_assessor)

    def validate_config(self, node: WorkflowNode) -> list[str]:
        return RiskGateEvaluator.config_problems(node.config)

    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        gate_input = inputs.merged()
        decision = await self.evaluator.evaluate(node.config, gate_input, context)
        output = {**gate_input, **decision.to_output()}

        if decision.blocked and decision.hard_block:
            raise FatalExecutionError(
                f"Risk gate hard block: {decision.block_reason}",
                diagnostics=decision.to_output(),
            )
        if decision.blocked:
            logger.warning(f"🚧 {node.id}: blocking downstream ({decision.block_reason})")
        else:
            logger.info(
                f"✅ {node.id}: passed at {decision.risk_level} (max {decision.max_risk_level})"
            )
        return ExecutionOutcome(output=output, blocking=decision.blocked)
