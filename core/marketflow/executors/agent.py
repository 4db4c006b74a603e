"""
Agent nodes: ``agent-call`` and ``judge-agent``.

Both delegate inference to the AgentInvoker collaborator. ``agent-call``
holds the response to the node's output contract and fails fatally on a
mismatch, keeping the raw response in the error diagnostics. ``judge-agent``
reads a finished debate from its data producers and returns a verdict,
falling back to a rule-based verdict when the judge cannot be reached.
"""

import asyncio
import json
import logging
import time
from typing import Any

from marketflow.collaborators import AgentInvoker
from marketflow.debate import DebateSession, normalize_unit, weighted_verdict
from marketflow.errors import FatalExecutionError, TransientExecutionError
from marketflow.executors.base import ExecutionOutcome, NodeExecutor, NodeInputs, require
from marketflow.executors.output import OutputValidator, parse_structured_response
from marketflow.runtime.context import RunContext
from marketflow.schemas.workflow import WorkflowNode

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONFIDENCE_FOR_ACTION = 0.6
DEFAULT_SCORING_DIMENSIONS = ["logic", "evidence", "risk awareness"]


def _raw_text(raw: Any) -> str:
    return raw if isinstance(raw, str) else json.dumps(raw, ensure_ascii=False, default=str)


class AgentCallExecutor(NodeExecutor):
    """
    ``agent-call``: one call to an agent profile.

    The agent receives ``config.systemPrompt`` and the node's merged input
    (upstream output overlaid with resolved bindings) as context. The
    response must decode to JSON; when ``config.outputSchema`` or
    ``config.requiredKeys`` is set it must also satisfy them.
    """

    node_types = ("agent-call",)

    def __init__(self, agent_invoker: AgentInvoker | None):
        self.agent_invoker = agent_invoker
        self.validator = OutputValidator()

    def validate_config(self, node: WorkflowNode) -> list[str]:
        config = node.config
        problems = require(config, "agentProfileCode")
        schema = config.get("outputSchema")
        if schema is not None:
            if not isinstance(schema, dict):
                problems.append("config.outputSchema must be a JSON Schema object")
            else:
                problems.extend(OutputValidator.check_schema(schema))
        keys = config.get("requiredKeys")
        if keys is not None and not isinstance(keys, list):
            problems.append("config.requiredKeys must be a list")
        return problems

    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        if self.agent_invoker is None:
            raise FatalExecutionError("No agent invoker collaborator configured")

        config = node.config
        profile = str(config["agentProfileCode"])
        agent_context = inputs.merged()

        started = time.monotonic()
        raw = await self._invoke(profile, str(config.get("systemPrompt", "")), agent_context)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        parsed = parse_structured_response(raw)
        if parsed is None:
            raise FatalExecutionError(
                f"Agent {profile} did not return JSON",
                diagnostics={"raw": _raw_text(raw), "agentProfileCode": profile},
            )

        errors: list[str] = []
        schema = config.get("outputSchema")
        if schema:
            errors.extend(self.validator.validate_schema(parsed, schema).errors)
        if config.get("requiredKeys"):
            errors.extend(self.validator.validate_required_keys(parsed, config["requiredKeys"]).errors)
        if errors:
            raise FatalExecutionError(
                f"Agent {profile} output does not match its schema: {'; '.join(errors)}",
                diagnostics={"raw": _raw_text(raw), "errors": errors, "agentProfileCode": profile},
            )

        logger.info(f"🤖 {node.id}: agent {profile} answered in {elapsed_ms}ms")
        return ExecutionOutcome(
            output=parsed,
            metadata={"agentProfileCode": profile, "durationMs": elapsed_ms},
        )

    async def _invoke(self, profile: str, prompt: str, agent_context: dict[str, Any]) -> Any:
        try:
            return await self.agent_invoker.invoke(profile, prompt, agent_context)
        except (TransientExecutionError, FatalExecutionError, asyncio.CancelledError):
            raise
        except Exception as e:
            raise FatalExecutionError(
                f"Agent {profile} call failed: {e}",
                diagnostics={"agentProfileCode": profile, "errorType": type(e).__name__},
            ) from e


class JudgeAgentExecutor(NodeExecutor):
    """
    ``judge-agent``: final verdict over a debate held upstream.

    Config:
        agentProfileCode / judgeAgentCode: the judge profile (optional; the
            rule-based verdict is used without one)
        scoringDimensions: dimensions the judge is asked to score
        minConfidenceForAction: below this confidence (0-1 or 0-100) the
            recommended action is downgraded to REVIEW_ONLY
        verdictFormat: "structured" (default), "narrative", or a free-form
            description of the verdict shape passed through to the judge
    """

    node_types = ("judge-agent",)
    tolerates_partial_input = True

    def __init__(self, agent_invoker: AgentInvoker | None):
        self.agent_invoker = agent_invoker

    def validate_config(self, node: WorkflowNode) -> list[str]:
        problems = []
        threshold = node.config.get("minConfidenceForAction")
        if threshold is not None and normalize_unit(threshold) is None:
            problems.append("config.minConfidenceForAction must be a number")
        fmt = node.config.get("verdictFormat")
        if fmt is not None and not isinstance(fmt, str):
            problems.append("config.verdictFormat must be a string")
        return problems

    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        config = node.config
        debate = self.extract_debate(inputs)
        if debate is None:
            raise FatalExecutionError(
                f"judge-agent {node.id} received no debate data",
                diagnostics={"failedUpstream": inputs.failed_upstream},
            )

        profile = config.get("agentProfileCode") or config.get("judgeAgentCode")
        dimensions = config.get("scoringDimensions") or DEFAULT_SCORING_DIMENSIONS
        verdict_format = config.get("verdictFormat", "structured")
        threshold = normalize_unit(
            config.get("minConfidenceForAction", DEFAULT_MIN_CONFIDENCE_FOR_ACTION)
        )

        fallback = False
        verdict: dict[str, Any] | None = None
        if profile and self.agent_invoker is not None:
            verdict = await self._ask_judge(node, str(profile), debate, dimensions, verdict_format)
        if verdict is None:
            fallback = True
            verdict = weighted_verdict(DebateSession.from_output(debate))
            verdict["method"] = "RULE_BASED"

        confidence = normalize_unit(verdict.get("confidence")) or 0.0
        verdict["confidence"] = confidence
        if threshold is not None and confidence < threshold:
            verdict["action"] = "REVIEW_ONLY"
            verdict["actionOverridden"] = True
            verdict["actionOverrideReason"] = (
                f"confidence {confidence:.2f} below threshold {threshold:.2f}"
            )

        output = {
            "verdict": verdict,
            "judgeAgentCode": profile if not fallback else "rule-based-fallback",
            "scoringDimensions": dimensions,
            "verdictFormat": verdict_format,
            "fallback": fallback,
            "debateSummary": {
                "topic": debate.get("topic", ""),
                "roundCount": len(debate.get("transcript") or []),
                "participantCount": len(debate.get("participants") or []),
                "converged": bool(debate.get("converged")),
                "finalScore": debate.get("finalScore"),
            },
        }
        if verdict_format == "narrative":
            output["verdictText"] = str(verdict.get("conclusion") or "")
        logger.info(
            f"⚖ {node.id}: verdict action={verdict.get('action')} "
            f"confidence={confidence:.2f}{' (fallback)' if fallback else ''}"
        )
        return ExecutionOutcome(output=output)

    @staticmethod
    def extract_debate(inputs: NodeInputs) -> dict[str, Any] | None:
        """The debate-round output among the node's inputs, if any."""
        candidates = list(inputs.branches().values()) or [inputs.upstream]
        candidates.append(inputs.bindings.get("debate"))
        for candidate in candidates:
            if isinstance(candidate, dict) and isinstance(candidate.get("transcript"), list):
                return candidate
        for candidate in candidates:
            if isinstance(candidate, dict) and ("verdict" in candidate or "topic" in candidate):
                return candidate
        return None

    async def _ask_judge(
        self,
        node: WorkflowNode,
        profile: str,
        debate: dict[str, Any],
        dimensions: list[str],
        verdict_format: str,
    ) -> dict[str, Any] | None:
        prompt = "\n".join(
            [
                "You are the judge of a completed multi-party market debate.",
                f"Score every argument on: {', '.join(dimensions)}.",
                f"Verdict format: {verdict_format}.",
                "",
                "Respond with JSON:",
                '{"conclusion": "...", "confidence": 0-1, '
                '"action": "BUY|SELL|HOLD|REDUCE|REVIEW_ONLY", '
                '"scores": {"<dimension>": 0-100}, "keyFindings": ["..."], "dissent": ["..."]}',
            ]
        )
        judge_context = {
            "topic": debate.get("topic"),
            "converged": debate.get("converged"),
            "scores": debate.get("scores"),
            "transcript": debate.get("transcript"),
            "priorVerdict": debate.get("verdict"),
        }
        try:
            raw = await self.agent_invoker.invoke(profile, prompt, judge_context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"{node.id}: judge {profile} failed, using rule-based verdict: {e}")
            return None

        parsed = parse_structured_response(raw)
        if not isinstance(parsed, dict):
            logger.warning(f"{node.id}: judge {profile} returned no JSON, using rule-based verdict")
            return None
        parsed.setdefault("method", "JUDGE_AGENT")
        return parsed
