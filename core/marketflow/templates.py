"""
Built-in scenario templates.

Three ready-made workflows, one per execution mode:

- ``tpl_arb_hunter_v1`` (DAG): spot and futures prices fetched in parallel,
  spread computed, an agent reads the spread, a risk gate guards the
  notification.
- ``tpl_sentiment_analyst_v1`` (DEBATE): market intel is gathered, bull,
  bear and neutral analysts debate it, a judge rules and a report is written.
- ``tpl_inventory_optimizer_v1`` (LINEAR): inventory and price history feed
  a forecasting agent and an optimisation agent behind a risk check.
"""

import copy
from typing import Any

from marketflow.schemas.workflow import WorkflowDefinition

ARB_HUNTER = {
    "workflowId": "tpl_arb_hunter_v1",
    "name": "Arbitrage Hunter",
    "mode": "DAG",
    "usageMethod": "HEADLESS",
    "version": "1.0.0",
    "status": "ACTIVE",
    "nodes": [
        {
            "id": "trigger",
            "type": "cron-trigger",
            "name": "Every 5 minutes",
            "enabled": True,
            "config": {"cronExpression": "*/5 * * * *"},
        },
        {
            "id": "fetch-spot",
            "type": "futures-data-fetch",
            "name": "Fetch spot prices",
            "enabled": True,
            "config": {
                "exchange": "DCE",
                "symbol": "c2501",
                "contractType": "SPOT",
                "dataType": "KLINE",
                "interval": "1h",
                "lookbackDays": 3,
            },
        },
        {
            "id": "fetch-futures",
            "type": "futures-data-fetch",
            "name": "Fetch futures prices",
            "enabled": True,
            "config": {
                "exchange": "DCE",
                "symbol": "c2505",
                "contractType": "FUTURES",
                "dataType": "KLINE",
                "interval": "1h",
                "lookbackDays": 3,
            },
        },
        {
            "id": "spread-calc",
            "type": "formula-calc",
            "name": "Basis spread",
            "enabled": True,
            "config": {
                "expression": "futures_close - spot_close",
                "description": "spread = futures close - spot close",
                "outputKey": "spread",
            },
            "inputBindings": {
                "futures_close": "${fetch-futures.output.data[-1].close}",
                "spot_close": "${fetch-spot.output.data[-1].close}",
            },
        },
        {
            "id": "arb-signal-agent",
            "type": "agent-call",
            "name": "Arbitrage signal analyst",
            "enabled": True,
            "config": {
                "agentProfileCode": "arb_signal_analyst",
                "systemPrompt": (
                    "You are an arbitrage analyst. Decide from the spot/futures spread "
                    "whether an arbitrage opportunity exists.\n"
                    'Reply as { "signal": "BUY_SPREAD" | "SELL_SPREAD" | "NO_SIGNAL", '
                    '"confidence": 0-1, "reason": "..." }'
                ),
                "requiredKeys": ["signal", "confidence", "reason"],
            },
        },
        {
            "id": "risk-gate",
            "type": "risk-gate",
            "name": "Risk check",
            "enabled": True,
            "config": {
                "maxRiskLevel": "MEDIUM",
                "checkItems": ["position_limit", "margin_ratio"],
            },
        },
        {
            "id": "notify-output",
            "type": "notify",
            "name": "Send arbitrage signal",
            "enabled": True,
            "config": {
                "channels": ["WEBHOOK"],
                "template": (
                    "Arbitrage signal: {{arb-signal-agent.output.signal}} | "
                    "confidence: {{arb-signal-agent.output.confidence}} | "
                    "reason: {{arb-signal-agent.output.reason}}"
                ),
            },
        },
    ],
    "edges": [
        {"id": "e1", "from": "trigger", "to": "fetch-spot", "edgeType": "control-edge"},
        {"id": "e2", "from": "trigger", "to": "fetch-futures", "edgeType": "control-edge"},
        {"id": "e3", "from": "fetch-spot", "to": "spread-calc", "edgeType": "data-edge"},
        {"id": "e4", "from": "fetch-futures", "to": "spread-calc", "edgeType": "data-edge"},
        {"id": "e5", "from": "spread-calc", "to": "arb-signal-agent", "edgeType": "data-edge"},
        {"id": "e6", "from": "arb-signal-agent", "to": "risk-gate", "edgeType": "data-edge"},
        {"id": "e7", "from": "risk-gate", "to": "notify-output", "edgeType": "control-edge"},
    ],
}

SENTIMENT_ANALYST = {
    "workflowId": "tpl_sentiment_analyst_v1",
    "name": "Sentiment Analyst",
    "mode": "DEBATE",
    "usageMethod": "ON_DEMAND",
    "version": "1.0.0",
    "status": "ACTIVE",
    "nodes": [
        {"id": "trigger", "type": "manual-trigger", "name": "Manual trigger", "enabled": True, "config": {}},
        {
            "id": "intel-fetch",
            "type": "data-fetch",
            "name": "Collect market intel",
            "enabled": True,
            "config": {
                "dataSourceCode": "market_intel_db",
                "timeRangeType": "LAST_N_DAYS",
                "lookbackDays": 7,
                "filters": {"status": "APPROVED"},
            },
        },
        {
            "id": "context-build",
            "type": "context-builder",
            "name": "Build analysis context",
            "enabled": True,
            "config": {
                "contextTemplate": "Market intel for the past week:\n{{intel-fetch.output.data}}",
            },
        },
        {
            "id": "debate-round-1",
            "type": "debate-round",
            "name": "Bull vs bear debate",
            "enabled": True,
            "config": {
                "roundNumber": 1,
                "maxRounds": 3,
                "participants": [
                    {"code": "bull_analyst", "role": "DEBATER", "agentProfileCode": "sentiment_bull", "stance": "BULLISH"},
                    {"code": "bear_analyst", "role": "DEBATER", "agentProfileCode": "sentiment_bear", "stance": "BEARISH"},
                    {"code": "neutral_analyst", "role": "DEBATER", "agentProfileCode": "sentiment_neutral", "stance": "NEUTRAL"},
                ],
                "convergenceThreshold": 0.8,
            },
        },
        {
            "id": "judge",
            "type": "judge-agent",
            "name": "Judge",
            "enabled": True,
            "config": {
                "agentProfileCode": "sentiment_judge",
                "verdictFormat": (
                    '{ "direction": "BULLISH" | "BEARISH" | "NEUTRAL", "confidence": 0-1, '
                    '"summary": "...", "keyFactors": [...] }'
                ),
            },
        },
        {
            "id": "report-gen",
            "type": "report-generate",
            "name": "Sentiment report",
            "enabled": True,
            "config": {
                "reportType": "SENTIMENT_ANALYSIS",
                "title": "Corn market sentiment debate report",
                "includeDebateTimeline": True,
            },
        },
    ],
    "edges": [
        {"id": "e1", "from": "trigger", "to": "intel-fetch", "edgeType": "control-edge"},
        {"id": "e2", "from": "intel-fetch", "to": "context-build", "edgeType": "data-edge"},
        {"id": "e3", "from": "context-build", "to": "debate-round-1", "edgeType": "data-edge"},
        {"id": "e4", "from": "debate-round-1", "to": "judge", "edgeType": "data-edge"},
        {"id": "e5", "from": "judge", "to": "report-gen", "edgeType": "data-edge"},
    ],
}

INVENTORY_OPTIMIZER = {
    "workflowId": "tpl_inventory_optimizer_v1",
    "name": "Inventory Optimizer",
    "mode": "LINEAR",
    "usageMethod": "COPILOT",
    "version": "1.0.0",
    "status": "ACTIVE",
    "nodes": [
        {"id": "trigger", "type": "manual-trigger", "name": "Manual or API trigger", "enabled": True, "config": {}},
        {
            "id": "inventory-fetch",
            "type": "data-fetch",
            "name": "Collect inventory data",
            "enabled": True,
            "config": {
                "dataSourceCode": "inventory_db",
                "timeRangeType": "LAST_N_DAYS",
                "lookbackDays": 90,
            },
        },
        {
            "id": "price-fetch",
            "type": "futures-data-fetch",
            "name": "Collect price data",
            "enabled": True,
            "config": {
                "exchange": "DCE",
                "symbol": "c2505",
                "contractType": "FUTURES",
                "dataType": "KLINE",
                "interval": "1d",
                "lookbackDays": 90,
            },
        },
        {
            "id": "feature-calc",
            "type": "feature-calc",
            "name": "Price features",
            "enabled": True,
            "config": {
                "featureType": "moving_avg",
                "window": 20,
                "valueField": "close",
            },
        },
        {
            "id": "forecast-agent",
            "type": "agent-call",
            "name": "Demand forecaster",
            "enabled": True,
            "config": {
                "agentProfileCode": "demand_forecaster",
                "systemPrompt": (
                    "You forecast corn demand for the next 30 days from inventory history, "
                    "price trend and the computed features.\n"
                    'Reply as { "forecast": "INCREASE" | "STABLE" | "DECREASE", '
                    '"magnitude": 0-1, "reason": "..." }'
                ),
            },
        },
        {
            "id": "optimize-agent",
            "type": "agent-call",
            "name": "Inventory optimiser",
            "enabled": True,
            "config": {
                "agentProfileCode": "inventory_optimizer",
                "systemPrompt": (
                    "You recommend restocking or destocking from the demand forecast and "
                    "current inventory, weighing capital cost, storage cost, lead time and "
                    "seasonality.\n"
                    'Reply as { "action": "BUILD" | "HOLD" | "REDUCE", "targetDays": number, '
                    '"urgency": "HIGH" | "MEDIUM" | "LOW", "details": "..." }'
                ),
            },
        },
        {
            "id": "risk-check",
            "type": "risk-gate",
            "name": "Risk review",
            "enabled": True,
            "config": {
                "maxRiskLevel": "HIGH",
                "checkItems": ["capital_utilization", "storage_capacity"],
            },
        },
        {
            "id": "output-notify",
            "type": "notify",
            "name": "Send recommendation",
            "enabled": True,
            "config": {
                "channels": ["WEBHOOK", "EMAIL"],
                "template": (
                    "Inventory recommendation: {{optimize-agent.output.action}} | "
                    "target days: {{optimize-agent.output.targetDays}} | "
                    "urgency: {{optimize-agent.output.urgency}}"
                ),
            },
        },
    ],
    "edges": [
        {"id": "e1", "from": "trigger", "to": "inventory-fetch", "edgeType": "control-edge"},
        {"id": "e2", "from": "inventory-fetch", "to": "price-fetch", "edgeType": "control-edge"},
        {"id": "e3", "from": "price-fetch", "to": "feature-calc", "edgeType": "data-edge"},
        {"id": "e4", "from": "feature-calc", "to": "forecast-agent", "edgeType": "data-edge"},
        {"id": "e5", "from": "forecast-agent", "to": "optimize-agent", "edgeType": "data-edge"},
        {"id": "e6", "from": "optimize-agent", "to": "risk-check", "edgeType": "data-edge"},
        {"id": "e7", "from": "risk-check", "to": "output-notify", "edgeType": "control-edge"},
    ],
}

TEMPLATES: dict[str, dict[str, Any]] = {
    t["workflowId"]: t for t in (ARB_HUNTER, SENTIMENT_ANALYST, INVENTORY_OPTIMIZER)
}


def list_templates() -> list[dict[str, str]]:
    """Summaries of the built-in templates."""
    return [
        {"workflowId": wid, "name": t["name"], "mode": t["mode"]} for wid, t in TEMPLATES.items()
    ]


def get_template(workflow_id: str) -> dict[str, Any]:
    """A fresh copy of a template's DSL, safe to modify."""
    if workflow_id not in TEMPLATES:
        raise KeyError(f"Unknown template '{workflow_id}'. Available: {', '.join(TEMPLATES)}")
    return copy.deepcopy(TEMPLATES[workflow_id])


def load_template(workflow_id: str) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(get_template(workflow_id))
