"""Tests for risk levels, the RiskGateEvaluator and gate blocking in a run."""

import pytest
from conftest import FakeRiskAssessor, RecordingNotifier, ScriptedExecutor, edge, node, workflow

from marketflow.collaborators import Collaborators
from marketflow.config import EngineConfig
from marketflow.executors.builtin import build_default_registry
from marketflow.risk import RiskGateEvaluator, RiskLevel, parse_risk_level
from marketflow.runtime.context import RunContext
from marketflow.runtime.engine import WorkflowEngine
from marketflow.schemas.run import NodeStatus, RunStatus, SkipReason


class FailingAssessor(FakeRiskAssessor):
    async def assess(self, check_item, run_context):
        if check_item == "margin_ratio":
            raise ConnectionError("risk service down")
        return await super().assess(check_item, run_context)


@pytest.fixture
def run_context() -> RunContext:
    return RunContext("run-1", "wf_test", ["gate"])


# === LEVELS ===


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("high", RiskLevel.HIGH),
        (" Medium ", RiskLevel.MEDIUM),
        ("L", RiskLevel.LOW),
        ("e", RiskLevel.EXTREME),
        (3, RiskLevel.HIGH),
        ("2", RiskLevel.MEDIUM),
        (RiskLevel.LOW, RiskLevel.LOW),
        ("severe", None),
        (7, None),
        (True, None),
        (None, None),
    ],
)
def test_parse_risk_level(raw, expected):
    assert parse_risk_level(raw) is expected


def test_levels_are_ordinal():
    assert RiskLevel.LOW < RiskLevel.MEDIUM < RiskLevel.HIGH < RiskLevel.EXTREME
    assert max([RiskLevel.MEDIUM, RiskLevel.EXTREME, RiskLevel.LOW]) is RiskLevel.EXTREME


# === EVALUATOR ===


@pytest.mark.asyncio
async def test_aggregate_is_the_maximum_check(run_context):
    evaluator = RiskGateEvaluator(FakeRiskAssessor({"position_limit": "HIGH", "margin_ratio": "LOW"}))

    decision = await evaluator.evaluate(
        {"maxRiskLevel": "MEDIUM", "checkItems": ["position_limit", "margin_ratio"]},
        {},
        run_context,
    )

    assert decision.risk_level is RiskLevel.HIGH
    assert decision.blocked
    assert decision.block_reason == "riskLevel=HIGH exceeds maxRiskLevel=MEDIUM"
    output = decision.to_output()
    assert output["passed"] is False
    assert output["degradeAction"] == "HOLD"
    assert output["checks"] == [
        {"name": "position_limit", "level": "HIGH"},
        {"name": "margin_ratio", "level": "LOW"},
    ]


@pytest.mark.asyncio
async def test_passes_at_or_below_the_limit(run_context):
    evaluator = RiskGateEvaluator(FakeRiskAssessor(default="MEDIUM"))

    decision = await evaluator.evaluate(
        {"maxRiskLevel": "MEDIUM", "checkItems": ["storage_capacity"]}, {}, run_context
    )

    assert decision.passed
    assert decision.to_output()["degradeAction"] is None


@pytest.mark.asyncio
async def test_failed_or_unknown_checks_fail_closed(run_context):
    evaluator = RiskGateEvaluator(FailingAssessor({"capital_utilization": "so-so"}))

    decision = await evaluator.evaluate(
        {"maxRiskLevel": "HIGH", "checkItems": ["margin_ratio", "capital_utilization"]},
        {},
        run_context,
    )

    assert [c.level for c in decision.checks] == [RiskLevel.EXTREME, RiskLevel.EXTREME]
    assert decision.checks[0].error == "risk service down"
    assert decision.blocked


@pytest.mark.asyncio
async def test_missing_assessor_fails_closed(run_context):
    decision = await RiskGateEvaluator(None).evaluate({"checkItems": ["x"]}, {}, run_context)

    assert decision.risk_level is RiskLevel.EXTREME


@pytest.mark.asyncio
async def test_default_collaborators_leave_the_gate_closed(run_context):
    collaborators = Collaborators()

    decision = await RiskGateEvaluator(collaborators.risk_assessor).evaluate(
        {"checkItems": ["position_limit"]}, {}, run_context
    )

    assert collaborators.risk_assessor is None
    assert decision.checks[0].error == "no risk assessor configured"
    assert decision.blocked


@pytest.mark.asyncio
async def test_blocker_rules_and_reported_level(run_context):
    evaluator = RiskGateEvaluator(FakeRiskAssessor())

    decision = await evaluator.evaluate(
        {
            "maxRiskLevel": "EXTREME",
            "blockerRules": ["flags.limitBreached", "flags.marketClosed"],
            "degradeAction": "reduce",
        },
        {"riskLevel": "H", "flags": {"limitBreached": "yes", "marketClosed": "false"}},
        run_context,
    )

    assert decision.blockers == ["flags.limitBreached"]
    assert decision.checks[-1].name == "input.riskLevel"
    assert decision.risk_level is RiskLevel.HIGH
    assert decision.to_output()["degradeAction"] == "REDUCE"


def test_config_problems():
    problems = RiskGateEvaluator.config_problems(
        {"maxRiskLevel": "CATASTROPHIC", "checkItems": "margin_ratio", "degradeAction": "PANIC"}
    )

    assert len(problems) == 3


# === IN A RUN ===


def gated_workflow(**gate_config) -> dict:
    """
    t -> fetch -(data)-> gate -> execute -> alert
                  \\-(data)-> report        (bypasses the gate)
         gate -(data)-> audit
    """
    config = {"maxRiskLevel": "MEDIUM", "checkItems": ["position_limit", "margin_ratio"]}
    config.update(gate_config)
    return workflow(
        [
            node("t", "trigger"),
            node("fetch"),
            node("gate", "risk-gate", config=config),
            node("execute"),
            node("alert", "notify", config={"template": "executed {{execute.output.node}}"}),
            node("report", "notify"),
            node("audit"),
        ],
        [
            edge("t", "fetch"),
            edge("fetch", "gate", "data"),
            edge("gate", "execute"),
            edge("execute", "alert"),
            edge("fetch", "report", "data"),
            edge("gate", "audit", "data"),
        ],
    )


def make_engine(assessor, notifier) -> tuple[WorkflowEngine, ScriptedExecutor]:
    collaborators = Collaborators(risk_assessor=assessor, notifier=notifier)
    registry = build_default_registry(collaborators)
    steps = ScriptedExecutor({"fetch": {"position": 120}})
    registry.register(steps)
    engine = WorkflowEngine(
        registry=registry,
        collaborators=collaborators,
        config=EngineConfig(default_retry_backoff_seconds=0.0),
    )
    return engine, steps


@pytest.mark.asyncio
async def test_blocking_gate_skips_control_only_paths():
    notifier = RecordingNotifier()
    engine, steps = make_engine(FakeRiskAssessor({"position_limit": "HIGH"}), notifier)

    result = await engine.run(gated_workflow())

    gate = result.nodes["gate"]
    assert gate.status == NodeStatus.SUCCEEDED
    assert gate.blocking is True
    assert gate.output["riskLevel"] == "HIGH"
    assert gate.output["position"] == 120

    assert result.status_map["execute"] == "SKIPPED:GATE_BLOCKED"
    assert result.status_map["alert"] == "SKIPPED:GATE_BLOCKED"
    assert result.nodes["report"].status == NodeStatus.SUCCEEDED
    assert result.nodes["audit"].status == NodeStatus.SUCCEEDED
    assert steps.inputs["audit"].upstream["blocked"] is True

    assert "execute" not in steps.started
    assert len(notifier.sent) == 1
    assert result.blocked_by_gate() == ["gate"]
    # a deliberate halt is not a failure
    assert result.failed_nodes() == []
    assert result.status == RunStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_passing_gate_lets_everything_run():
    notifier = RecordingNotifier()
    engine, steps = make_engine(FakeRiskAssessor(default="LOW"), notifier)

    result = await engine.run(gated_workflow())

    assert all(r.status == NodeStatus.SUCCEEDED for r in result.nodes.values())
    assert "executed execute" in [m for _, m in notifier.sent]


@pytest.mark.asyncio
async def test_hard_block_fails_the_gate():
    engine, _ = make_engine(FakeRiskAssessor(default="EXTREME"), RecordingNotifier())

    result = await engine.run(gated_workflow(hardBlock=True))

    gate = result.nodes["gate"]
    assert gate.status == NodeStatus.FAILED
    assert gate.error.startswith("Risk gate hard block")
    assert gate.diagnostics["riskLevel"] == "EXTREME"
    assert result.nodes["audit"].skip_reason == SkipReason.UPSTREAM_FAILED
