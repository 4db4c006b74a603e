"""``debate-round``: a bounded multi-round debate run by the DebateCoordinator."""

import json
import logging

from marketflow.collaborators import AgentInvoker
from marketflow.debate import (
    DEFAULT_CONVERGENCE_THRESHOLD,
    DEFAULT_MAX_ROUNDS,
    SCORERS,
    DebateCoordinator,
    DebateParticipant,
    DebateSession,
    JudgePolicy,
    get_scorer,
)
from marketflow.errors import FatalExecutionError
from marketflow.executors.base import ExecutionOutcome, NodeExecutor, NodeInputs
from marketflow.runtime.context import RunContext
from marketflow.runtime.event_bus import EventBus
from marketflow.schemas.workflow import WorkflowNode

logger = logging.getLogger(__name__)


class DebateRoundExecutor(NodeExecutor):
    """
    Builds a DebateSession from the node config and drives it to DONE.

    The upstream ``context`` (normally a context-builder output) becomes the
    debate's shared context. The node output is the session summary: topic,
    per-round transcript, scores, convergence flag and verdict.
    """

    node_types = ("debate-round",)

    def __init__(self, agent_invoker: AgentInvoker | None, event_bus: EventBus | None = None):
        self.agent_invoker = agent_invoker
        self.event_bus = event_bus

    def validate_config(self, node: WorkflowNode) -> list[str]:
        config = node.config
        problems = []
        participants = config.get("participants")
        if not isinstance(participants, list) or len(participants) < 2:
            problems.append("config.participants must list at least 2 participants")
        else:
            codes = []
            for i, p in enumerate(participants):
                if not isinstance(p, dict) or not (p.get("agentProfileCode") or p.get("code")):
                    problems.append(f"config.participants[{i}] needs an agentProfileCode")
                    continue
                codes.append(p.get("code") or p.get("agentProfileCode"))
            if len(codes) != len(set(codes)):
                problems.append("config.participants codes must be unique")

        rounds = config.get("maxRounds")
        if rounds is not None and (isinstance(rounds, bool) or not isinstance(rounds, int) or rounds < 1):
            problems.append("config.maxRounds must be a positive integer")
        threshold = config.get("convergenceThreshold", config.get("threshold"))
        if threshold is not None and (
            isinstance(threshold, bool) or not isinstance(threshold, int | float) or not 0 <= threshold <= 1
        ):
            problems.append("config.convergenceThreshold must be between 0 and 1")
        scorer = config.get("convergenceScoring")
        if scorer is not None and str(scorer).lower() not in SCORERS:
            problems.append(f"config.convergenceScoring '{scorer}' is not one of {sorted(SCORERS)}")
        policy = config.get("judgePolicy")
        if policy is not None and policy not in JudgePolicy.__members__:
            problems.append(f"config.judgePolicy '{policy}' is not one of {list(JudgePolicy.__members__)}")
        return problems

    def build_session(self, node: WorkflowNode, inputs: NodeInputs) -> DebateSession:
        config = node.config
        judge_code = config.get("judgeAgentProfileCode") or config.get("judgeAgentCode")
        default_policy = JudgePolicy.JUDGE_AGENT if judge_code else JudgePolicy.WEIGHTED
        upstream = inputs.merged()
        return DebateSession(
            topic=str(config.get("topic") or upstream.get("topic") or node.name or node.id),
            participants=[DebateParticipant.from_config(p) for p in config["participants"]],
            max_rounds=int(config.get("maxRounds", DEFAULT_MAX_ROUNDS)),
            convergence_threshold=float(
                config.get("convergenceThreshold", config.get("threshold", DEFAULT_CONVERGENCE_THRESHOLD))
            ),
            judge_policy=JudgePolicy(config.get("judgePolicy", default_policy)),
            judge_agent_profile_code=judge_code,
        )

    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        if self.agent_invoker is None:
            raise FatalExecutionError("No agent invoker collaborator configured")

        try:
            scorer = get_scorer(node.config.get("convergenceScoring"))
        except ValueError as e:
            raise FatalExecutionError(str(e)) from e

        session = self.build_session(node, inputs)
        coordinator = DebateCoordinator(
            self.agent_invoker,
            scorer=scorer,
            event_bus=self.event_bus,
            run_id=context.run_id,
            node_id=node.id,
        )
        output = await coordinator.run(session, shared_context=_shared_context(inputs))
        output["scorer"] = scorer.name

        logger.info(
            f"🏁 {node.id}: debate finished after {output['roundCount']} round(s), "
            f"converged={output['converged']}"
        )
        return ExecutionOutcome(
            output=output,
            metadata={"debateStates": [str(s) for s in session.history]},
        )


def _shared_context(inputs: NodeInputs) -> str:
    merged = inputs.merged()
    text = merged.get("context")
    if isinstance(text, str):
        return text
    if not merged:
        return ""
    return json.dumps(merged, ensure_ascii=False, default=str)

