"""The built-in node types and the registry that serves them."""

from marketflow.collaborators import Collaborators
from marketflow.executors.agent import AgentCallExecutor, JudgeAgentExecutor
from marketflow.executors.branching import ConditionBranchExecutor, DecisionMergeExecutor
from marketflow.executors.compute import (
    FeatureCalcExecutor,
    FormulaCalcExecutor,
    QuantileCalcExecutor,
)
from marketflow.executors.context_builder import ContextBuilderExecutor
from marketflow.executors.data_fetch import DataFetchExecutor, FuturesDataFetchExecutor
from marketflow.executors.debate_round import DebateRoundExecutor
from marketflow.executors.notify import NotifyExecutor, ReportGenerateExecutor
from marketflow.executors.registry import NodeExecutorRegistry
from marketflow.executors.risk_gate import RiskGateExecutor
from marketflow.executors.triggers import TriggerExecutor
from marketflow.runtime.event_bus import EventBus


def build_default_registry(
    collaborators: Collaborators | None = None,
    event_bus: EventBus | None = None,
) -> NodeExecutorRegistry:
    """
    Registry with every built-in executor wired to ``collaborators``.

    Executors whose collaborator is missing still register, so workflows
    validate without one; they fail fatally if actually executed.
    """
    c = collaborators or Collaborators()
    registry = NodeExecutorRegistry()
    for executor in (
        TriggerExecutor(),
        DataFetchExecutor(c.data_source),
        FuturesDataFetchExecutor(c.data_source),
        FormulaCalcExecutor(),
        FeatureCalcExecutor(),
        QuantileCalcExecutor(),
        AgentCallExecutor(c.agent_invoker),
        JudgeAgentExecutor(c.agent_invoker),
        ContextBuilderExecutor(),
        ConditionBranchExecutor(),
        DecisionMergeExecutor(),
        DebateRoundExecutor(c.agent_invoker, event_bus),
        RiskGateExecutor(c.risk_assessor),
        NotifyExecutor(c.notifier),
        ReportGenerateExecutor(c.notifier),
    ):
        registry.register(executor)
    return registry
