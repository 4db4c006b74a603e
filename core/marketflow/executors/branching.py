"""
Branching nodes: ``if-else`` / ``switch`` pick a branch label, ``decision-merge``
fuses several upstream recommendations into one.

Edges are not conditional, so a selected branch is data: downstream nodes
read ``selectedBranch`` through bindings (typically feeding a risk gate's
``blockWhen`` flags).
"""

import logging
from collections import defaultdict
from typing import Any

from marketflow.errors import FatalExecutionError
from marketflow.executors.base import ExecutionOutcome, NodeExecutor, NodeInputs, require
from marketflow.executors.compute import to_number
from marketflow.graph.expressions import MISSING, KeySegment, walk_path
from marketflow.risk import RiskLevel, parse_risk_level
from marketflow.runtime.context import RunContext
from marketflow.schemas.workflow import WorkflowNode

logger = logging.getLogger(__name__)


def _numbers(actual: Any, expected: Any) -> tuple[float, float] | None:
    a, b = to_number(actual), to_number(expected)
    if a is None or b is None or isinstance(actual, str) or isinstance(expected, str):
        return None
    return a, b


def _compare(actual: Any, expected: Any, op) -> bool:
    pair = _numbers(actual, expected)
    return pair is not None and op(*pair)


CONDITION_OPERATORS = {
    "eq": lambda a, e: a == e,
    "neq": lambda a, e: a != e,
    "gt": lambda a, e: _compare(a, e, lambda x, y: x > y),
    "gte": lambda a, e: _compare(a, e, lambda x, y: x >= y),
    "lt": lambda a, e: _compare(a, e, lambda x, y: x < y),
    "lte": lambda a, e: _compare(a, e, lambda x, y: x <= y),
    "in": lambda a, e: isinstance(e, list) and a in e,
    "not_in": lambda a, e: isinstance(e, list) and a not in e,
    "contains": lambda a, e: isinstance(a, str) and isinstance(e, str) and e in a,
    "exists": lambda a, e: a is not None,
    "not_exists": lambda a, e: a is None,
    "truthy": lambda a, e: bool(a),
    "falsy": lambda a, e: not a,
}


def read_field(data: Any, path: str) -> Any:
    """Dotted-path lookup; None when any step is missing."""
    value = walk_path(data, [KeySegment(part) for part in str(path).split(".") if part])
    return None if value is MISSING else value


def switch_matches(value: Any, case: Any) -> bool:
    """Loose equality: ``5 == "5"``, otherwise compared as strings."""
    if value == case and isinstance(value, bool) == isinstance(case, bool):
        return True
    number, case_number = to_number(value), to_number(case)
    if number is not None and case_number is not None:
        return number == case_number
    return str(value) == str(case)


class ConditionBranchExecutor(NodeExecutor):
    """
    ``if-else``: the first of ``config.conditions`` (``field``, ``operator``,
    ``value``, ``branchId``) that holds selects its branch, else
    ``config.defaultBranch`` (``"false"``).

    ``switch``: ``config.switchField`` is compared against each of
    ``config.cases`` (``value``, ``branchId``), else ``config.defaultBranch``
    (``"default"``).

    Fields are dotted paths into the node's merged input.
    """

    node_types = ("if-else", "switch")

    def validate_config(self, node: WorkflowNode) -> list[str]:
        config = node.config
        if node.type == "switch":
            problems = require(config, "switchField")
            cases = config.get("cases", [])
            if not isinstance(cases, list) or not all(
                isinstance(c, dict) and "value" in c and c.get("branchId") for c in cases
            ):
                problems.append("config.cases must be a list of {value, branchId}")
            return problems

        problems = []
        conditions = config.get("conditions", [])
        if not isinstance(conditions, list):
            return ["config.conditions must be a list"]
        for i, condition in enumerate(conditions):
            if not isinstance(condition, dict) or not condition.get("field"):
                problems.append(f"config.conditions[{i}].field is required")
                continue
            if condition.get("operator") not in CONDITION_OPERATORS:
                problems.append(
                    f"config.conditions[{i}].operator '{condition.get('operator')}' "
                    f"must be one of {', '.join(CONDITION_OPERATORS)}"
                )
            if not condition.get("branchId"):
                problems.append(f"config.conditions[{i}].branchId is required")
        return problems

    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        data = inputs.merged()
        if node.type == "switch":
            output = self._switch(node, data)
        else:
            output = self._if_else(node, data)
        logger.info(f"🔀 {node.id}: branch '{output['selectedBranch']}'")
        return ExecutionOutcome(output=output)

    def _if_else(self, node: WorkflowNode, data: dict[str, Any]) -> dict[str, Any]:
        default_branch = node.config.get("defaultBranch") or "false"
        conditions = node.config.get("conditions") or []
        if not conditions:
            logger.warning(f"{node.id}: if-else has no conditions, taking '{default_branch}'")
            return {
                "selectedBranch": default_branch,
                "evaluationResult": False,
                "reason": "no conditions configured",
            }

        for condition in conditions:
            actual = read_field(data, condition["field"])
            operator = CONDITION_OPERATORS.get(condition.get("operator"))
            if operator is None:
                raise FatalExecutionError(f"Unknown condition operator {condition.get('operator')!r}")
            if operator(actual, condition.get("value")):
                return {
                    "selectedBranch": condition["branchId"],
                    "evaluationResult": True,
                    "matchedCondition": {
                        "field": condition["field"],
                        "operator": condition["operator"],
                        "expectedValue": condition.get("value"),
                        "actualValue": actual,
                    },
                }
        return {
            "selectedBranch": default_branch,
            "evaluationResult": False,
            "reason": "no condition matched",
        }

    def _switch(self, node: WorkflowNode, data: dict[str, Any]) -> dict[str, Any]:
        field = node.config.get("switchField")
        if not field:
            raise FatalExecutionError(f"switch node {node.id} has no config.switchField")
        value = read_field(data, field)
        for case in node.config.get("cases") or []:
            if switch_matches(value, case.get("value")):
                return {
                    "selectedBranch": case["branchId"],
                    "switchField": field,
                    "switchValue": value,
                    "matchedCase": case.get("value"),
                }
        return {
            "selectedBranch": node.config.get("defaultBranch") or "default",
            "switchField": field,
            "switchValue": value,
            "reason": "no case matched",
        }


MERGE_STRATEGIES = ("weighted-vote", "highest-confidence", "unanimous")
DEFAULT_MIN_CONFIDENCE = 0.5


class DecisionMergeExecutor(NodeExecutor):
    """
    Fuses two or more upstream recommendations (``action``/``signal``,
    ``confidence``, ``riskLevel``, ``evidenceSummary``) into one decision.

    Strategies:
        weighted-vote: sum ``confidence * weight`` per action, pick the top
            action, report the weighted mean confidence of its supporters
        highest-confidence: take the single most confident branch
        unanimous: agree only if every branch names the same action,
            otherwise HOLD at HIGH risk

    Any decision below ``config.minConfidence`` degrades to HOLD. The merged
    risk level is the highest one reported, ranked by
    ``config.riskLevelPriority`` when given. Failed producers are tolerated
    as long as two branches remain.
    """

    node_types = ("decision-merge",)
    tolerates_partial_input = True

    def validate_config(self, node: WorkflowNode) -> list[str]:
        config = node.config
        problems = []
        strategy = config.get("mergeStrategy", "weighted-vote")
        if strategy not in MERGE_STRATEGIES:
            problems.append(
                f"config.mergeStrategy '{strategy}' must be one of {', '.join(MERGE_STRATEGIES)}"
            )
        weights = config.get("weights", {})
        if not isinstance(weights, dict) or any(to_number(w) is None for w in weights.values()):
            problems.append("config.weights must map branch ids to numbers")
        threshold = config.get("minConfidence")
        if threshold is not None and to_number(threshold) is None:
            problems.append("config.minConfidence must be a number")
        priority = config.get("riskLevelPriority")
        if priority is not None and not isinstance(priority, list):
            problems.append("config.riskLevelPriority must be a list")
        return problems

    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        branches = {k: v for k, v in inputs.branches().items() if isinstance(v, dict)}
        if len(branches) < 2:
            raise FatalExecutionError(
                f"decision-merge needs at least 2 upstream branches, got {len(branches)}",
                diagnostics={"branches": sorted(branches), "failed": inputs.failed_upstream},
            )

        strategy = node.config.get("mergeStrategy", "weighted-vote")
        votes = [self._vote(node, branch_id, output) for branch_id, output in branches.items()]
        logger.info(f"🗳️ {node.id}: merging {len(votes)} branches by {strategy}")

        if strategy == "highest-confidence":
            output = self._highest_confidence(node, votes)
        elif strategy == "unanimous":
            output = self._unanimous(node, votes)
        else:
            output = self._weighted_vote(node, votes)
        output["mergeStrategy"] = strategy
        output["branchCount"] = len(votes)
        if inputs.failed_upstream:
            output["missingSources"] = list(inputs.failed_upstream)
        return ExecutionOutcome(output=output)

    @staticmethod
    def _vote(node: WorkflowNode, branch_id: str, output: dict[str, Any]) -> dict[str, Any]:
        weight = to_number((node.config.get("weights") or {}).get(branch_id, 1.0))
        return {
            "branchId": branch_id,
            "action": str(output.get("action") or output.get("signal") or "HOLD"),
            "confidence": to_number(output.get("confidence")) or 0.0,
            "riskLevel": output.get("riskLevel") or "MEDIUM",
            "weight": 1.0 if weight is None else weight,
            "evidence": output.get("evidenceSummary") or output.get("evidence"),
        }

    def _min_confidence(self, node: WorkflowNode) -> float:
        threshold = to_number(node.config.get("minConfidence"))
        return DEFAULT_MIN_CONFIDENCE if threshold is None else threshold

    def _highest_risk(self, node: WorkflowNode, levels: list[Any]) -> str:
        priority = node.config.get("riskLevelPriority")
        if priority:
            for level in priority:
                if level in levels:
                    return level
            return str(levels[0]) if levels else RiskLevel.MEDIUM.value
        parsed = [parse_risk_level(level) for level in levels]
        known = [level for level in parsed if level is not None]
        return max(known).value if known else RiskLevel.MEDIUM.value

    def _weighted_vote(self, node: WorkflowNode, votes: list[dict[str, Any]]) -> dict[str, Any]:
        scores: dict[str, float] = defaultdict(float)
        for vote in votes:
            scores[vote["action"]] += vote["confidence"] * vote["weight"]
        best_action = max(scores, key=scores.__getitem__)

        supporters = [v for v in votes if v["action"] == best_action]
        support_weight = sum(v["weight"] for v in supporters)
        confidence = (
            sum(v["confidence"] * v["weight"] for v in supporters) / support_weight
            if support_weight > 0
            else 0.0
        )
        threshold = self._min_confidence(node)
        below = confidence < threshold
        return {
            "action": "HOLD" if below else best_action,
            "confidence": confidence,
            "riskLevel": self._highest_risk(node, [v["riskLevel"] for v in votes]),
            "evidenceBundle": [
                {"source": v["branchId"], "evidence": v["evidence"]} for v in votes if v["evidence"]
            ],
            "voting": {
                "actionScores": dict(scores),
                "totalWeight": sum(v["weight"] for v in votes),
                "supportingVoteCount": len(supporters),
                "totalVoteCount": len(votes),
            },
            "isBelowThreshold": below,
            "minConfidence": threshold,
        }

    def _highest_confidence(self, node: WorkflowNode, votes: list[dict[str, Any]]) -> dict[str, Any]:
        best = max(votes, key=lambda v: v["confidence"])
        threshold = self._min_confidence(node)
        below = best["confidence"] < threshold
        return {
            "action": "HOLD" if below else best["action"],
            "confidence": best["confidence"],
            "riskLevel": best["riskLevel"],
            "selectedBranch": best["branchId"],
            "evidenceBundle": [{"source": best["branchId"], "evidence": best["evidence"]}],
            "isBelowThreshold": below,
            "minConfidence": threshold,
        }

    def _unanimous(self, node: WorkflowNode, votes: list[dict[str, Any]]) -> dict[str, Any]:
        by_action: dict[str, list[str]] = defaultdict(list)
        for vote in votes:
            by_action[vote["action"]].append(vote["branchId"])

        if len(by_action) == 1:
            return {
                "action": votes[0]["action"],
                "confidence": sum(v["confidence"] for v in votes) / len(votes),
                "riskLevel": self._highest_risk(node, [v["riskLevel"] for v in votes]),
                "isUnanimous": True,
                "evidenceBundle": [
                    {"source": v["branchId"], "evidence": v["evidence"]} for v in votes
                ],
            }

        logger.warning(f"{node.id}: branches disagree ({', '.join(by_action)}), holding")
        return {
            "action": "HOLD",
            "confidence": 0.0,
            "riskLevel": RiskLevel.HIGH.value,
            "isUnanimous": False,
            "disagreement": {"actions": list(by_action), "votesByAction": dict(by_action)},
        }
