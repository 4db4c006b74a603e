"""Tests for the event bus and the trace-context log formatters."""

import asyncio
import json
import logging

import pytest
from conftest import ScriptedExecutor, edge, node, workflow

from marketflow.executors.registry import NodeExecutorRegistry
from marketflow.executors.triggers import TriggerExecutor
from marketflow.observability import clear_trace_context, get_trace_context, set_trace_context
from marketflow.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    strip_ansi_codes,
)
from marketflow.runtime.engine import WorkflowEngine
from marketflow.runtime.event_bus import EventBus, EventType


def make_record(message: str, level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord("marketflow.test", level, __file__, 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# === EVENT BUS ===


@pytest.mark.asyncio
async def test_subscribers_receive_matching_events():
    bus = EventBus()
    received = []

    async def handler(event):
        received.append((event.type, event.node_id))

    bus.subscribe([EventType.NODE_FAILED], handler, filter_run="run-1")
    await bus.emit(EventType.NODE_FAILED, "run-1", "fetch", error="timeout")
    await bus.emit(EventType.NODE_FAILED, "run-2", "fetch")
    await bus.emit(EventType.NODE_SUCCEEDED, "run-1", "calc")

    assert received == [(EventType.NODE_FAILED, "fetch")]
    assert bus.get_stats()["total_events"] == 3


@pytest.mark.asyncio
async def test_handler_errors_do_not_reach_the_publisher():
    bus = EventBus()

    async def broken(event):
        raise RuntimeError("subscriber bug")

    bus.subscribe([EventType.RUN_STARTED], broken)

    await bus.emit(EventType.RUN_STARTED, "run-1")

    assert len(bus.get_history()) == 1


@pytest.mark.asyncio
async def test_history_is_newest_first_and_bounded():
    bus = EventBus(max_history=2)
    for node_id in ("a", "b", "c"):
        await bus.emit(EventType.NODE_STARTED, "run-1", node_id)

    history = bus.get_history(event_type=EventType.NODE_STARTED)

    assert [e.node_id for e in history] == ["c", "b"]
    assert history[0].to_dict()["type"] == "node_started"


@pytest.mark.asyncio
async def test_wait_for_an_event():
    bus = EventBus()

    async def later():
        await asyncio.sleep(0)
        await bus.emit(EventType.GATE_BLOCKED, "run-1", "gate", riskLevel="HIGH")

    task = asyncio.create_task(later())
    event = await bus.wait_for(EventType.GATE_BLOCKED, run_id="run-1", timeout=1.0)
    await task

    assert event.data == {"riskLevel": "HIGH"}
    assert bus.get_stats()["subscriptions"] == 0
    assert await bus.wait_for(EventType.RUN_COMPLETED, timeout=0.01) is None


# === TRACE CONTEXT AND FORMATTERS ===


def test_trace_context_merges_and_clears():
    set_trace_context(run_id="run-1", workflow_id="wf_test")
    set_trace_context(node_id="fetch")

    assert get_trace_context() == {"run_id": "run-1", "workflow_id": "wf_test", "node_id": "fetch"}
    clear_trace_context()
    assert get_trace_context() == {}


def test_structured_formatter_includes_context_and_extras():
    set_trace_context(run_id="run-1", node_id="fetch")

    entry = json.loads(
        StructuredFormatter().format(make_record("\033[32mretrying\033[0m", attempt=2, event="retry"))
    )

    assert entry["message"] == "retrying"
    assert entry["level"] == "info"
    assert entry["run_id"] == "run-1"
    assert entry["node_id"] == "fetch"
    assert entry["attempt"] == 2
    assert entry["event"] == "retry"
    assert "status" not in entry


def test_human_formatter_prefix():
    set_trace_context(run_id="run-0123456789", workflow_id="wf_test", node_id="calc")

    line = strip_ansi_codes(HumanReadableFormatter().format(make_record("done", event="node_succeeded")))

    assert line == "[INFO    ] [wf:wf_test | run:23456789 | node:calc] done [node_succeeded]"


@pytest.mark.asyncio
async def test_each_node_task_sees_its_own_trace_context():
    def snapshot(n, i):
        return dict(get_trace_context())

    registry = NodeExecutorRegistry()
    registry.register(TriggerExecutor())
    registry.register(ScriptedExecutor({"a": snapshot, "b": snapshot}))

    result = await WorkflowEngine(registry=registry).run(
        workflow([node("t", "trigger"), node("a"), node("b")], [edge("t", "a"), edge("t", "b")])
    )

    for node_id in ("a", "b"):
        seen = result.output_of(node_id)
        assert seen["node_id"] == node_id
        assert seen["node_type"] == "step"
        assert seen["attempt"] == 1
        assert seen["run_id"] == result.run_id
        assert seen["workflow_id"] == "wf_test"
