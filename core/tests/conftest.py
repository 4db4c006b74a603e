"""Shared fakes and fixtures for the MarketFlow test-suite."""

import asyncio
import json
from typing import Any

import pytest

from marketflow.collaborators import (
    AgentInvoker,
    DataSource,
    Notifier,
    RiskAssessor,
    SourceDescriptor,
    TimeRange,
)
from marketflow.executors.base import ExecutionOutcome, NodeExecutor, NodeInputs
from marketflow.observability import clear_trace_context

# ---- Fake collaborators ----


class FakeAgentInvoker(AgentInvoker):
    """Answers per agent profile from a dict, or through a callable."""

    def __init__(self, responses: dict[str, Any] | None = None):
        self.responses = dict(responses or {})
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    async def invoke(self, agent_profile_code, system_prompt, context):
        self.calls.append((agent_profile_code, system_prompt, context))
        response = self.responses[agent_profile_code]
        if callable(response):
            response = response(context)
        if isinstance(response, BaseException):
            raise response
        return response

    def calls_for(self, profile: str) -> list[dict[str, Any]]:
        return [ctx for code, _, ctx in self.calls if code == profile]


class FakeDataSource(DataSource):
    """Returns canned records keyed by SourceDescriptor.code."""

    def __init__(self, records: dict[str, list[dict[str, Any]]] | None = None):
        self.records = dict(records or {})
        self.fetched: list[SourceDescriptor] = []
        self.failures: dict[str, int] = {}

    async def fetch(self, source: SourceDescriptor, time_range: TimeRange, filters):
        self.fetched.append(source)
        if self.failures.get(source.code, 0) > 0:
            self.failures[source.code] -= 1
            raise ConnectionError(f"{source.code} unavailable")
        return list(self.records.get(source.code, []))


class FakeRiskAssessor(RiskAssessor):
    def __init__(self, levels: dict[str, Any] | None = None, default: Any = "LOW"):
        self.levels = dict(levels or {})
        self.default = default

    async def assess(self, check_item, run_context):
        return self.levels.get(check_item, self.default)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: list[tuple[list[str], str]] = []

    async def send(self, channels, message):
        self.sent.append((list(channels), message))
        return {"delivered": list(channels)}


# ---- Scriptable executor for scheduler tests ----


class ScriptedExecutor(NodeExecutor):
    """
    Runs a per-node script: a callable ``(node, inputs) -> output`` (sync or
    async), an exception instance to raise, or a plain output value.
    """

    node_types = ("step",)

    def __init__(self, scripts: dict[str, Any] | None = None, delay: float = 0.0):
        self.scripts = dict(scripts or {})
        self.delay = delay
        self.started: list[str] = []
        self.finished: list[str] = []
        self.inputs: dict[str, NodeInputs] = {}
        self.attempts: dict[str, int] = {}
        self.running = 0
        self.max_running = 0

    async def execute(self, node, inputs, context):
        self.started.append(node.id)
        self.inputs[node.id] = inputs
        self.attempts[node.id] = self.attempts.get(node.id, 0) + 1
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            script = self.scripts.get(node.id, {"node": node.id})
            if isinstance(script, BaseException):
                raise script
            if callable(script):
                script = script(node, inputs)
                if asyncio.iscoroutine(script):
                    script = await script
            if isinstance(script, ExecutionOutcome):
                return script
            return ExecutionOutcome(output=script)
        finally:
            self.running -= 1
            self.finished.append(node.id)


# ---- DSL helpers ----


def node(node_id: str, node_type: str = "step", **extra) -> dict[str, Any]:
    return {"id": node_id, "type": node_type, "config": extra.pop("config", {}), **extra}


def edge(source: str, target: str, kind: str = "control") -> dict[str, Any]:
    return {
        "id": f"{source}->{target}",
        "from": source,
        "to": target,
        "edgeType": f"{kind}-edge",
    }


def workflow(nodes, edges, mode: str = "DAG", **extra) -> dict[str, Any]:
    return {"workflowId": "wf_test", "name": "test", "mode": mode, "nodes": nodes, "edges": edges, **extra}


def price_bars(*closes: float) -> list[dict[str, Any]]:
    return [{"ts": f"2025-01-0{i + 1}T00:00:00Z", "close": c} for i, c in enumerate(closes)]


def agent_json(**fields) -> str:
    return json.dumps(fields)


# ---- Fixtures ----


@pytest.fixture(autouse=True)
def _reset_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture
def fast_sleep(monkeypatch) -> list[float]:
    """Replace asyncio.sleep so retry backoff does not slow the suite; records delays."""
    delays: list[float] = []
    real_sleep = asyncio.sleep

    async def _sleep(delay: float, result=None):
        delays.append(delay)
        await real_sleep(0)
        return result

    monkeypatch.setattr(asyncio, "sleep", _sleep)
    return delays


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
