"""Tests for the if-else / switch branch selector and decision-merge."""

import pytest
from conftest import ScriptedExecutor, edge, node, workflow

from marketflow.config import EngineConfig
from marketflow.errors import FatalExecutionError
from marketflow.executors.base import NodeInputs
from marketflow.executors.branching import ConditionBranchExecutor, DecisionMergeExecutor
from marketflow.executors.builtin import build_default_registry
from marketflow.executors.registry import NodeExecutorRegistry
from marketflow.executors.triggers import TriggerExecutor
from marketflow.runtime.context import RunContext
from marketflow.runtime.engine import WorkflowEngine
from marketflow.schemas.run import NodeStatus
from marketflow.schemas.workflow import WorkflowNode


def make_node(node_id: str, node_type: str, **config) -> WorkflowNode:
    return WorkflowNode(id=node_id, type=node_type, config=config)


def context() -> RunContext:
    return RunContext("run-1", "wf_test", ["node"])


def recommendations(**branches) -> NodeInputs:
    return NodeInputs(upstream={"branches": branches})


SPREAD_CONDITIONS = [
    {"field": "spread.zScore", "operator": "gt", "value": 2, "branchId": "sell"},
    {"field": "spread.zScore", "operator": "lt", "value": -2, "branchId": "buy"},
]


# === IF-ELSE / SWITCH ===


class TestConditionBranch:
    @pytest.mark.asyncio
    async def test_first_matching_condition_wins(self):
        n = make_node("branch", "if-else", conditions=SPREAD_CONDITIONS)

        outcome = await ConditionBranchExecutor().execute(
            n, NodeInputs(upstream={"spread": {"zScore": -2.6}}), context()
        )

        assert outcome.output["selectedBranch"] == "buy"
        assert outcome.output["evaluationResult"] is True
        assert outcome.output["matchedCondition"]["actualValue"] == -2.6

    @pytest.mark.asyncio
    async def test_default_branch_when_nothing_matches(self):
        n = make_node("branch", "if-else", conditions=SPREAD_CONDITIONS, defaultBranch="hold")

        outcome = await ConditionBranchExecutor().execute(
            n, NodeInputs(bindings={"spread": {"zScore": 0.4}}), context()
        )

        assert outcome.output["selectedBranch"] == "hold"
        assert outcome.output["evaluationResult"] is False

    @pytest.mark.asyncio
    async def test_numeric_operators_ignore_strings(self):
        n = make_node(
            "branch",
            "if-else",
            conditions=[{"field": "z", "operator": "gt", "value": 1, "branchId": "hot"}],
        )

        outcome = await ConditionBranchExecutor().execute(
            n, NodeInputs(bindings={"z": "5"}), context()
        )

        assert outcome.output["selectedBranch"] == "false"

    @pytest.mark.parametrize(
        "operator,actual,expected,matches",
        [
            ("in", "NE", ["NE", "N"], True),
            ("not_in", "S", ["NE", "N"], True),
            ("contains", "basis widening", "widen", True),
            ("exists", None, None, False),
            ("falsy", 0, None, True),
            ("neq", "HOLD", "HOLD", False),
        ],
    )
    @pytest.mark.asyncio
    async def test_operators(self, operator, actual, expected, matches):
        n = make_node(
            "branch",
            "if-else",
            conditions=[{"field": "x", "operator": operator, "value": expected, "branchId": "yes"}],
        )

        outcome = await ConditionBranchExecutor().execute(
            n, NodeInputs(bindings={"x": actual}), context()
        )

        assert (outcome.output["selectedBranch"] == "yes") is matches

    @pytest.mark.asyncio
    async def test_switch_matches_loosely(self):
        n = make_node(
            "route",
            "switch",
            switchField="signal.level",
            cases=[{"value": 1, "branchId": "watch"}, {"value": "2", "branchId": "act"}],
        )

        outcome = await ConditionBranchExecutor().execute(
            n, NodeInputs(bindings={"signal": {"level": 2}}), context()
        )

        assert outcome.output["selectedBranch"] == "act"
        assert outcome.output["switchValue"] == 2

    @pytest.mark.asyncio
    async def test_switch_default(self):
        n = make_node("route", "switch", switchField="signal", cases=[{"value": "BUY", "branchId": "b"}])

        outcome = await ConditionBranchExecutor().execute(
            n, NodeInputs(bindings={"signal": "HOLD"}), context()
        )

        assert outcome.output["selectedBranch"] == "default"

    def test_config_problems(self):
        executor = ConditionBranchExecutor()

        assert executor.validate_config(make_node("b", "if-else", conditions=SPREAD_CONDITIONS)) == []
        problems = executor.validate_config(
            make_node("b", "if-else", conditions=[{"field": "x", "operator": "approx"}])
        )
        assert len(problems) == 2
        assert executor.validate_config(make_node("s", "switch")) == ["config.switchField is required"]


# === DECISION MERGE ===


class TestDecisionMerge:
    @pytest.mark.asyncio
    async def test_weighted_vote(self):
        n = make_node("merge", "decision-merge", weights={"quant": 2})
        inputs = recommendations(
            quant={"action": "BUY", "confidence": 0.8, "riskLevel": "MEDIUM", "evidenceSummary": "z<-2"},
            news={"action": "SELL", "confidence": 0.9, "riskLevel": "HIGH"},
            macro={"action": "BUY", "confidence": 0.5, "riskLevel": "LOW"},
        )

        outcome = await DecisionMergeExecutor().execute(n, inputs, context())
        output = outcome.output

        assert output["action"] == "BUY"
        assert output["confidence"] == pytest.approx((0.8 * 2 + 0.5) / 3)
        assert output["riskLevel"] == "HIGH"
        assert output["voting"]["actionScores"] == pytest.approx({"BUY": 2.1, "SELL": 0.9})
        assert output["evidenceBundle"] == [{"source": "quant", "evidence": "z<-2"}]
        assert output["branchCount"] == 3

    @pytest.mark.asyncio
    async def test_low_confidence_degrades_to_hold(self):
        n = make_node("merge", "decision-merge", minConfidence=0.7)
        inputs = recommendations(
            a={"signal": "SELL_SPREAD", "confidence": 0.6},
            b={"signal": "SELL_SPREAD", "confidence": 0.65},
        )

        output = (await DecisionMergeExecutor().execute(n, inputs, context())).output

        assert output["action"] == "HOLD"
        assert output["isBelowThreshold"] is True

    @pytest.mark.asyncio
    async def test_highest_confidence(self):
        n = make_node("merge", "decision-merge", mergeStrategy="highest-confidence")
        inputs = recommendations(
            a={"action": "BUY", "confidence": 0.6, "riskLevel": "LOW"},
            b={"action": "SELL", "confidence": 0.75, "riskLevel": "MEDIUM"},
        )

        output = (await DecisionMergeExecutor().execute(n, inputs, context())).output

        assert output["selectedBranch"] == "b"
        assert output["action"] == "SELL"
        assert output["riskLevel"] == "MEDIUM"

    @pytest.mark.asyncio
    async def test_unanimous_agreement_and_disagreement(self):
        n = make_node("merge", "decision-merge", mergeStrategy="unanimous")
        agree = recommendations(
            a={"action": "BUY", "confidence": 0.6, "riskLevel": "LOW"},
            b={"action": "BUY", "confidence": 0.8, "riskLevel": "EXTREME"},
        )
        split = recommendations(a={"action": "BUY"}, b={"action": "SELL"}, c={"action": "BUY"})

        agreed = (await DecisionMergeExecutor().execute(n, agree, context())).output
        disputed = (await DecisionMergeExecutor().execute(n, split, context())).output

        assert agreed["isUnanimous"] is True
        assert agreed["confidence"] == pytest.approx(0.7)
        assert agreed["riskLevel"] == "EXTREME"
        assert disputed["action"] == "HOLD"
        assert disputed["riskLevel"] == "HIGH"
        assert disputed["disagreement"]["votesByAction"] == {"BUY": ["a", "c"], "SELL": ["b"]}

    @pytest.mark.asyncio
    async def test_custom_risk_priority(self):
        n = make_node("merge", "decision-merge", riskLevelPriority=["MEDIUM", "HIGH", "LOW"])
        inputs = recommendations(
            a={"action": "BUY", "confidence": 0.9, "riskLevel": "HIGH"},
            b={"action": "BUY", "confidence": 0.9, "riskLevel": "MEDIUM"},
        )

        output = (await DecisionMergeExecutor().execute(n, inputs, context())).output

        assert output["riskLevel"] == "MEDIUM"

    @pytest.mark.asyncio
    async def test_needs_two_branches(self):
        n = make_node("merge", "decision-merge")

        with pytest.raises(FatalExecutionError, match="at least 2"):
            await DecisionMergeExecutor().execute(
                n, NodeInputs(upstream={"action": "BUY", "confidence": 0.9}), context()
            )

    def test_config_problems(self):
        executor = DecisionMergeExecutor()

        assert executor.validate_config(make_node("m", "decision-merge")) == []
        problems = executor.validate_config(
            make_node("m", "decision-merge", mergeStrategy="average", weights={"a": "heavy"})
        )
        assert len(problems) == 2


@pytest.mark.asyncio
async def test_merge_tolerates_a_failed_branch_in_a_run():
    steps = ScriptedExecutor(
        {
            "quant": {"action": "BUY", "confidence": 0.8},
            "news": FatalExecutionError("feed parse error"),
            "macro": {"action": "BUY", "confidence": 0.6},
        }
    )
    registry = NodeExecutorRegistry()
    registry.register(TriggerExecutor())
    registry.register(steps)
    registry.register(DecisionMergeExecutor())
    engine = WorkflowEngine(registry=registry, config=EngineConfig(default_retry_backoff_seconds=0.0))

    result = await engine.run(
        workflow(
            [node("t", "trigger"), node("quant"), node("news"), node("macro"), node("merge", "decision-merge")],
            [
                edge("t", "quant"),
                edge("t", "news"),
                edge("t", "macro"),
                edge("quant", "merge", "data"),
                edge("news", "merge", "data"),
                edge("macro", "merge", "data"),
            ],
        )
    )

    assert result.nodes["merge"].status == NodeStatus.SUCCEEDED
    assert result.output_of("merge")["action"] == "BUY"
    assert result.output_of("merge")["missingSources"] == ["news"]


def test_default_registry_serves_branching_types():
    registry = build_default_registry()

    for node_type in ("if-else", "switch", "decision-merge"):
        assert node_type in registry
