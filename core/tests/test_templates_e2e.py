"""
End-to-end runs of the built-in templates against fake collaborators.
"""

import pytest
from conftest import (
    FakeAgentInvoker,
    FakeDataSource,
    FakeRiskAssessor,
    RecordingNotifier,
    agent_json,
    price_bars,
)

from marketflow.collaborators import Collaborators
from marketflow.config import EngineConfig
from marketflow.runtime.engine import WorkflowEngine
from marketflow.schemas.run import NodeStatus, RunStatus, SkipReason
from marketflow.templates import TEMPLATES, get_template, list_templates, load_template

ARB_SIGNAL = agent_json(signal="BUY_SPREAD", confidence=0.85, reason="spread above carry")


def arb_engine(invoker=None, risk=None, data=None, notifier=None, config=None):
    data = data or FakeDataSource(
        {"DCE:c2501": price_bars(2790, 2800), "DCE:c2505": price_bars(2815, 2830)}
    )
    collaborators = Collaborators(
        agent_invoker=invoker or FakeAgentInvoker({"arb_signal_analyst": ARB_SIGNAL}),
        data_source=data,
        risk_assessor=risk or FakeRiskAssessor(),
        notifier=notifier or RecordingNotifier(),
    )
    return WorkflowEngine(collaborators=collaborators, config=config or EngineConfig())


# === CATALOGUE ===


def test_every_template_validates():
    engine = WorkflowEngine()

    for workflow_id in TEMPLATES:
        report = engine.validate(load_template(workflow_id))
        assert report.valid, f"{workflow_id}: {[str(i) for i in report.errors]}"


def test_list_and_copy_templates():
    modes = {t["workflowId"]: t["mode"] for t in list_templates()}

    assert modes == {
        "tpl_arb_hunter_v1": "DAG",
        "tpl_sentiment_analyst_v1": "DEBATE",
        "tpl_inventory_optimizer_v1": "LINEAR",
    }
    copy = get_template("tpl_arb_hunter_v1")
    copy["nodes"].clear()
    assert TEMPLATES["tpl_arb_hunter_v1"]["nodes"]
    with pytest.raises(KeyError):
        get_template("tpl_unknown")


# === ARBITRAGE HUNTER ===


@pytest.mark.asyncio
async def test_arbitrage_hunter_happy_path():
    invoker = FakeAgentInvoker({"arb_signal_analyst": ARB_SIGNAL})
    notifier = RecordingNotifier()
    data = FakeDataSource({"DCE:c2501": price_bars(2790, 2800), "DCE:c2505": price_bars(2815, 2830)})
    engine = arb_engine(invoker=invoker, notifier=notifier, data=data)

    result = await engine.run(load_template("tpl_arb_hunter_v1"))

    assert result.status == RunStatus.SUCCEEDED
    assert set(result.status_map.values()) == {"SUCCEEDED"}
    assert {s.code for s in data.fetched} == {"DCE:c2501", "DCE:c2505"}

    spread = result.output_of("spread-calc")
    assert spread["spread"] == 30.0
    assert spread["variables"] == {"futures_close": 2830.0, "spot_close": 2800.0}

    agent_context = invoker.calls_for("arb_signal_analyst")[0]
    assert agent_context["spread"] == 30.0

    assert notifier.sent == [
        (
            ["WEBHOOK"],
            "Arbitrage signal: BUY_SPREAD | confidence: 0.85 | reason: spread above carry",
        )
    ]
    assert result.nodes["spread-calc"].metadata["bindings"]["unresolved"] == []


@pytest.mark.asyncio
async def test_arbitrage_hunter_blocked_by_risk():
    notifier = RecordingNotifier()
    engine = arb_engine(risk=FakeRiskAssessor({"margin_ratio": "HIGH"}), notifier=notifier)

    result = await engine.run(load_template("tpl_arb_hunter_v1"))

    assert result.nodes["risk-gate"].blocking is True
    assert result.nodes["notify-output"].skip_reason == SkipReason.GATE_BLOCKED
    assert notifier.sent == []
    assert result.status == RunStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_agent_schema_mismatch_keeps_raw_response():
    raw = agent_json(signal="BUY_SPREAD", confidence=0.9)
    notifier = RecordingNotifier()
    engine = arb_engine(invoker=FakeAgentInvoker({"arb_signal_analyst": raw}), notifier=notifier)

    result = await engine.run(load_template("tpl_arb_hunter_v1"))

    agent = result.nodes["arb-signal-agent"]
    assert agent.status == NodeStatus.FAILED
    assert agent.attempts == 1
    assert agent.diagnostics["raw"] == raw
    assert "reason" in agent.error
    assert result.status_map["risk-gate"] == "SKIPPED:UPSTREAM_FAILED"
    assert result.status_map["notify-output"] == "SKIPPED:UPSTREAM_FAILED"
    assert notifier.sent == []
    assert result.status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_transient_fetch_failure_is_retried(fast_sleep):
    data = FakeDataSource({"DCE:c2501": price_bars(2800), "DCE:c2505": price_bars(2830)})
    data.failures["DCE:c2505"] = 1
    engine = arb_engine(data=data)

    result = await engine.run(load_template("tpl_arb_hunter_v1"))

    assert result.nodes["fetch-futures"].attempts == 2
    assert fast_sleep == [1.0]
    assert result.status == RunStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_failed_fetch_skips_the_spread_join(fast_sleep):
    data = FakeDataSource({"DCE:c2501": price_bars(2800)})
    data.failures["DCE:c2505"] = 10
    engine = arb_engine(data=data)

    result = await engine.run(load_template("tpl_arb_hunter_v1"))

    assert result.nodes["fetch-futures"].status == NodeStatus.FAILED
    assert result.nodes["fetch-futures"].attempts == 3
    assert result.nodes["fetch-spot"].status == NodeStatus.SUCCEEDED
    assert result.status_map["spread-calc"] == "SKIPPED:UPSTREAM_FAILED"
    assert result.status == RunStatus.FAILED


# === SENTIMENT ANALYST ===


@pytest.mark.asyncio
async def test_sentiment_debate_produces_a_report():
    def analyst(stance):
        return lambda ctx: agent_json(
            argument=f"{stance} case",
            confidence=0.7,
            keyPoints=["exports"],
            agreement=0.9,
            position="HOLD",
        )

    invoker = FakeAgentInvoker(
        {
            "sentiment_bull": analyst("bull"),
            "sentiment_bear": analyst("bear"),
            "sentiment_neutral": analyst("neutral"),
            "sentiment_judge": agent_json(
                conclusion="Neutral outlook", confidence=0.75, action="HOLD"
            ),
        }
    )
    data = FakeDataSource({"MARKET_INTEL_INTERNAL_DB": [{"title": "Corn exports up"}]})
    collaborators = Collaborators(agent_invoker=invoker, data_source=data)
    engine = WorkflowEngine(collaborators=collaborators)

    result = await engine.run(load_template("tpl_sentiment_analyst_v1"))

    assert result.status == RunStatus.SUCCEEDED
    assert data.fetched[0].code == "MARKET_INTEL_INTERNAL_DB"

    debate = result.output_of("debate-round-1")
    assert debate["roundCount"] == 1
    assert debate["converged"] is True
    assert "Corn exports up" in invoker.calls_for("sentiment_bull")[0]["sharedContext"]
    assert result.nodes["debate-round-1"].metadata["debateStates"][-2:] == ["JUDGING", "DONE"]

    verdict = result.output_of("judge")["verdict"]
    assert verdict["action"] == "HOLD"
    assert verdict["method"] == "JUDGE_AGENT"

    report = result.output_of("report-gen")
    assert report["title"] == "Corn market sentiment debate report"
    assert "Neutral outlook" in report["content"]
    assert "## Debate timeline" in report["content"]
    assert "### Round 1, agreement 0.90" in report["content"]


@pytest.mark.asyncio
async def test_low_confidence_verdict_is_downgraded():
    def analyst(ctx):
        return agent_json(argument="unclear", confidence=0.3, agreement=0.95, position="BUY")

    invoker = FakeAgentInvoker(
        {
            "sentiment_bull": analyst,
            "sentiment_bear": analyst,
            "sentiment_neutral": analyst,
            "sentiment_judge": ConnectionError("judge offline"),
        }
    )
    data = FakeDataSource({"MARKET_INTEL_INTERNAL_DB": []})
    engine = WorkflowEngine(collaborators=Collaborators(agent_invoker=invoker, data_source=data))

    result = await engine.run(load_template("tpl_sentiment_analyst_v1"))

    judge = result.output_of("judge")
    assert judge["fallback"] is True
    assert judge["verdict"]["action"] == "REVIEW_ONLY"
    assert judge["verdict"]["actionOverridden"] is True


# === INVENTORY OPTIMIZER ===


@pytest.mark.asyncio
async def test_inventory_optimizer_linear_run():
    invoker = FakeAgentInvoker(
        {
            "demand_forecaster": agent_json(forecast="INCREASE", magnitude=0.4, reason="feed demand"),
            "inventory_optimizer": agent_json(
                action="BUILD", targetDays=45, urgency="MEDIUM", details="restock"
            ),
        }
    )
    data = FakeDataSource(
        {
            "MARKET_EVENT_INTERNAL_DB": [{"warehouse": "DL-1", "tons": 1200}],
            "DCE:c2505": price_bars(*(2700 + i for i in range(25))),
        }
    )
    notifier = RecordingNotifier()
    collaborators = Collaborators(
        agent_invoker=invoker,
        data_source=data,
        risk_assessor=FakeRiskAssessor(default="MEDIUM"),
        notifier=notifier,
    )
    engine = WorkflowEngine(collaborators=collaborators)

    result = await engine.run(load_template("tpl_inventory_optimizer_v1"))

    assert result.status == RunStatus.SUCCEEDED
    assert result.output_of("feature-calc")["result"] == 2714.5
    assert invoker.calls_for("demand_forecaster")[0]["window"] == 20
    assert invoker.calls_for("inventory_optimizer")[0]["forecast"] == "INCREASE"
    assert notifier.sent == [
        (
            ["WEBHOOK", "EMAIL"],
            "Inventory recommendation: BUILD | target days: 45 | urgency: MEDIUM",
        )
    ]
