"""``context-builder``: assemble a text context from earlier outputs, no external calls."""

import json
import logging
from typing import Any

from marketflow.errors import ExpressionError, FatalExecutionError
from marketflow.executors.base import ExecutionOutcome, NodeExecutor, NodeInputs
from marketflow.graph.expressions import ExpressionResolver, parse_template
from marketflow.runtime.context import RunContext
from marketflow.schemas.workflow import WorkflowNode

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTEXT_SIZE = 10_000


class ContextBuilderExecutor(NodeExecutor):
    """
    Renders ``config.contextTemplate`` (``{{node.output...}}`` placeholders)
    against the run, or dumps the node's merged input as JSON when no
    template is configured.

    The only failure is an input binding that resolved to nothing and is
    not listed in ``config.optionalBindings``. Failed data producers are
    tolerated: their placeholders render empty.
    """

    node_types = ("context-builder",)
    tolerates_partial_input = True

    def validate_config(self, node: WorkflowNode) -> list[str]:
        problems = []
        size = node.config.get("maxContextSize")
        if size is not None and (isinstance(size, bool) or not isinstance(size, int) or size < 1):
            problems.append("config.maxContextSize must be a positive integer")
        optional = node.config.get("optionalBindings")
        if optional is not None and not isinstance(optional, list):
            problems.append("config.optionalBindings must be a list")
        return problems

    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        config = node.config
        optional = set(config.get("optionalBindings") or [])
        unresolved = [k for k, v in inputs.bindings.items() if v is None and k not in optional]
        if unresolved:
            raise FatalExecutionError(
                f"Required binding(s) unresolved: {', '.join(sorted(unresolved))}",
                diagnostics={"unresolved": sorted(unresolved), "bindings": node.input_bindings},
            )

        template = config.get("contextTemplate") or config.get("template")
        sources: list[str] = sorted(inputs.branches())
        if template:
            try:
                parsed = parse_template(str(template))
            except ExpressionError as e:
                raise FatalExecutionError(f"Malformed context template: {e}") from e
            text = ExpressionResolver(context.outputs()).render(str(template))
            for ref in parsed.references:
                if ref.node_id not in sources:
                    sources.append(ref.node_id)
        else:
            text = json.dumps(inputs.merged(), ensure_ascii=False, indent=2, default=str)

        limit = int(config.get("maxContextSize", DEFAULT_MAX_CONTEXT_SIZE))
        truncated = len(text) > limit
        if truncated:
            logger.warning(f"{node.id}: context truncated from {len(text)} to {limit} characters")
            text = text[:limit]

        output: dict[str, Any] = {
            "context": text,
            "bindings": inputs.bindings,
            "sources": sources,
            "length": len(text),
            "truncated": truncated,
        }
        if inputs.failed_upstream:
            output["missingSources"] = list(inputs.failed_upstream)
        return ExecutionOutcome(output=output)
