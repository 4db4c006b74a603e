"""
Terminal side-effecting nodes: ``notify`` and ``report-generate``.

Neither can undo anything upstream: once a node has SUCCEEDED its effect is
final, so a failed delivery only fails the terminal node itself. Errors
raised by the Notifier are treated as transient and retried under the
node's runtime policy.
"""

import asyncio
import json
import logging
from typing import Any

from marketflow.collaborators import Notifier
from marketflow.errors import ExpressionError, FatalExecutionError, TransientExecutionError
from marketflow.executors.base import ExecutionOutcome, NodeExecutor, NodeInputs
from marketflow.graph.expressions import ExpressionResolver, ResolutionTrace, parse_template
from marketflow.runtime.context import RunContext
from marketflow.schemas.run import utc_now
from marketflow.schemas.workflow import WorkflowNode

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS = ["LOG"]


def _channels(config: dict[str, Any], default: list[str] | None) -> list[str]:
    channels = config.get("channels")
    if channels is None:
        return list(default or [])
    if isinstance(channels, str):
        return [channels]
    return [str(c) for c in channels]


def _channel_problems(config: dict[str, Any]) -> list[str]:
    channels = config.get("channels")
    if channels is None or isinstance(channels, str):
        return []
    if not isinstance(channels, list) or not all(isinstance(c, str) and c for c in channels):
        return ["config.channels must be a list of channel names"]
    return []


async def _deliver(notifier: Notifier, channels: list[str], message: str) -> dict[str, Any] | None:
    try:
        return await notifier.send(channels, message)
    except (TransientExecutionError, FatalExecutionError, asyncio.CancelledError):
        raise
    except Exception as e:
        raise TransientExecutionError(
            f"Delivery to {', '.join(channels)} failed: {e}",
            diagnostics={"channels": channels, "errorType": type(e).__name__},
        ) from e


class NotifyExecutor(NodeExecutor):
    """
    ``notify``: render ``config.template`` against the run and send it.

    Placeholders use the ``{{node.output.path}}`` grammar; unresolved ones
    render empty. Without a template the message is a JSON summary of the
    node's input.
    """

    node_types = ("notify",)

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    def validate_config(self, node: WorkflowNode) -> list[str]:
        return _channel_problems(node.config)

    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        config = node.config
        channels = _channels(config, DEFAULT_CHANNELS)
        template = config.get("template")

        trace = ResolutionTrace()
        if template:
            try:
                parse_template(str(template))
            except ExpressionError as e:
                raise FatalExecutionError(f"Malformed notification template: {e}") from e
            message = ExpressionResolver(context.outputs(), trace).render(str(template))
        else:
            message = json.dumps(inputs.merged(), ensure_ascii=False, default=str)

        delivery = await _deliver(self.notifier, channels, message)
        logger.info(f"📨 {node.id}: sent to {', '.join(channels)}")
        return ExecutionOutcome(
            output={
                "channels": channels,
                "message": message,
                "sentAt": utc_now().isoformat(),
                "delivery": delivery,
            },
            metadata={"template": trace.to_dict()} if template else {},
        )


class ReportGenerateExecutor(NodeExecutor):
    """
    ``report-generate``: a markdown report over the verdict and, with
    ``includeDebateTimeline``, the rounds of any debate held in the run.

    Tolerates failed producers; a missing verdict yields a report that says
    so. The report is delivered through the notifier when ``channels`` is
    configured.
    """

    node_types = ("report-generate",)
    tolerates_partial_input = True

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    def validate_config(self, node: WorkflowNode) -> list[str]:
        return _channel_problems(node.config)

    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        config = node.config
        title = str(config.get("title") or node.name or "Workflow report")
        report_type = str(config.get("reportType", "GENERAL"))
        generated_at = utc_now().isoformat()

        verdict = _find_verdict(inputs)
        sections = ["summary", "verdict"]
        lines = [
            f"# {title}",
            "",
            f"- Report type: {report_type}",
            f"- Workflow: {context.workflow_id}",
            f"- Run: {context.run_id}",
            f"- Generated at: {generated_at}",
            "",
            "## Verdict",
            "",
        ]
        lines += _verdict_lines(verdict)

        if config.get("includeDebateTimeline"):
            sections.append("debateTimeline")
            lines += ["", "## Debate timeline", ""]
            debates = [o for o in context.outputs().values() if _is_debate(o)]
            if not debates:
                lines.append("_No debate was held in this run._")
            for debate in debates:
                lines += _timeline_lines(debate)

        if inputs.failed_upstream:
            sections.append("missingSources")
            lines += ["", "## Missing sources", ""]
            lines += [f"- {node_id}" for node_id in inputs.failed_upstream]

        content = "\n".join(lines).rstrip() + "\n"
        output: dict[str, Any] = {
            "title": title,
            "reportType": report_type,
            "format": "markdown",
            "content": content,
            "sections": sections,
            "verdict": verdict,
            "generatedAt": generated_at,
        }

        channels = _channels(config, None)
        if channels:
            output["channels"] = channels
            output["delivery"] = await _deliver(self.notifier, channels, content)
        logger.info(f"📝 {node.id}: report '{title}' ({len(content)} chars)")
        return ExecutionOutcome(output=output)


def _is_debate(output: Any) -> bool:
    return isinstance(output, dict) and isinstance(output.get("transcript"), list)


def _find_verdict(inputs: NodeInputs) -> Any:
    candidates = list(inputs.branches().values()) or [inputs.upstream]
    candidates.append(inputs.bindings)
    for candidate in candidates:
        if isinstance(candidate, dict) and candidate.get("verdict") is not None:
            return candidate["verdict"]
    return None


def _verdict_lines(verdict: Any) -> list[str]:
    if verdict is None:
        return ["_No verdict was available._"]
    if not isinstance(verdict, dict):
        return [str(verdict)]

    lines = []
    if verdict.get("conclusion"):
        lines.append(str(verdict["conclusion"]))
        lines.append("")
    for key, label in (("action", "Action"), ("confidence", "Confidence"), ("method", "Method")):
        if verdict.get(key) is not None:
            lines.append(f"- {label}: {verdict[key]}")
    findings = verdict.get("keyFindings") or []
    if findings:
        lines += ["", "### Key findings", ""]
        lines += [f"- {f}" for f in findings]
    dissent = verdict.get("dissent") or []
    if dissent:
        lines += ["", "### Dissent", ""]
        lines += [f"- {d}" for d in dissent]
    return lines


def _timeline_lines(debate: dict[str, Any]) -> list[str]:
    lines = [f"**{debate.get('topic', '')}** (converged: {debate.get('converged')})", ""]
    for entry in debate["transcript"]:
        score = entry.get("score")
        suffix = f", agreement {score:.2f}" if isinstance(score, int | float) else ""
        lines.append(f"### Round {entry.get('round')}{suffix}")
        lines.append("")
        for s in entry.get("statements") or []:
            who = s.get("stance") or s.get("participant")
            lines.append(f"- {who}: {s.get('argument', '')}")
        lines.append("")
    return lines
