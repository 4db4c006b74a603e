"""Tests for the run state stores - InMemoryRunStateStore and FileRunStateStore."""

import json
from pathlib import Path

import pytest
from conftest import ScriptedExecutor, edge, node, workflow

from marketflow.config import EngineConfig
from marketflow.errors import FatalExecutionError
from marketflow.executors.registry import NodeExecutorRegistry
from marketflow.executors.triggers import TriggerExecutor
from marketflow.runtime.engine import WorkflowEngine
from marketflow.schemas.run import NodeResult, NodeStatus, RunResult, RunStatus, SkipReason
from marketflow.storage.run_store import FileRunStateStore, InMemoryRunStateStore

# === HELPER FUNCTIONS ===


def succeeded(node_id: str, output=None) -> NodeResult:
    return NodeResult(node_id=node_id, status=NodeStatus.SUCCEEDED, output=output, attempts=1)


def finished_run(run_id: str = "run_1", **nodes: NodeResult) -> RunResult:
    return RunResult(
        run_id=run_id, workflow_id="wf_test", status=RunStatus.SUCCEEDED, nodes=dict(nodes)
    )


# === IN-MEMORY STORE ===


class TestInMemoryRunStateStore:
    @pytest.mark.asyncio
    async def test_unknown_run_loads_as_none(self):
        store = InMemoryRunStateStore()

        assert await store.load("nope") is None
        assert await store.load_run("nope") is None

    @pytest.mark.asyncio
    async def test_persist_and_load_context(self):
        store = InMemoryRunStateStore()
        await store.persist("run_1", "fetch", succeeded("fetch", {"data": [1]}))
        await store.persist("run_1", "calc", NodeResult.skipped("calc", SkipReason.UPSTREAM_FAILED))
        await store.save_run(finished_run())

        context = await store.load("run_1")

        assert context.workflow_id == "wf_test"
        assert context.output("fetch") == {"data": [1]}
        assert context.status("calc") == NodeStatus.SKIPPED
        assert store.run_ids() == ["run_1"]

    @pytest.mark.asyncio
    async def test_stored_results_are_isolated_copies(self):
        store = InMemoryRunStateStore()
        result = succeeded("fetch", {"data": [1]})
        await store.persist("run_1", "fetch", result)
        result.output["data"].append(2)

        context = await store.load("run_1")

        assert context.output("fetch") == {"data": [1]}


# === FILE STORE ===


class TestFileRunStateStore:
    @pytest.mark.asyncio
    async def test_persist_writes_one_file_per_node(self, tmp_path: Path):
        store = FileRunStateStore(tmp_path)

        await store.persist("run_1", "fetch", succeeded("fetch", {"close": 2830.0}))

        path = tmp_path / "run_1" / "nodes" / "fetch.json"
        assert path.exists()
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["status"] == "SUCCEEDED"
        assert data["output"] == {"close": 2830.0}
        assert not list(path.parent.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_round_trip_through_disk(self, tmp_path: Path):
        store = FileRunStateStore(tmp_path)
        await store.persist("run_1", "fetch", succeeded("fetch", {"close": 1}))
        await store.persist("run_1", "agent", NodeResult(node_id="agent", status=NodeStatus.FAILED, error="schema"))
        await store.save_run(finished_run(fetch=succeeded("fetch")))

        context = await FileRunStateStore(tmp_path).load("run_1")
        run = await store.load_run("run_1")

        assert context.workflow_id == "wf_test"
        assert context.get("agent").error == "schema"
        assert run.status == RunStatus.SUCCEEDED
        assert await store.list_runs() == ["run_1"]

    @pytest.mark.asyncio
    async def test_unknown_run(self, tmp_path: Path):
        store = FileRunStateStore(tmp_path / "missing")

        assert await store.load("run_1") is None
        assert await store.load_run("run_1") is None
        assert await store.list_runs() == []

    @pytest.mark.asyncio
    async def test_unsafe_ids_are_sanitised(self, tmp_path: Path):
        store = FileRunStateStore(tmp_path)

        await store.persist("../escape", "a/b", succeeded("a/b"))

        path = store.get_node_path("../escape", "a/b")
        assert path.exists()
        assert path.parent.parent.parent == tmp_path
        assert path.name.startswith("a_b-")
        assert store.get_run_path("..").parent == tmp_path
        assert store.get_run_path("run_1") == tmp_path / "run_1"

    @pytest.mark.asyncio
    async def test_sanitised_ids_do_not_collide(self, tmp_path: Path):
        store = FileRunStateStore(tmp_path)

        await store.persist("run_1", "a/b", succeeded("a/b"))
        await store.persist("run_1", "a_b", succeeded("a_b"))

        context = await store.load("run_1")

        assert store.get_node_path("run_1", "a/b") != store.get_node_path("run_1", "a_b")
        assert "a/b" in context
        assert "a_b" in context

    @pytest.mark.asyncio
    async def test_corrupt_node_file_is_skipped(self, tmp_path: Path):
        store = FileRunStateStore(tmp_path)
        await store.persist("run_1", "good", succeeded("good"))
        (tmp_path / "run_1" / "nodes" / "bad.json").write_text("{not json", encoding="utf-8")

        context = await store.load("run_1")

        assert "good" in context
        assert "bad" not in context

    @pytest.mark.asyncio
    async def test_engine_resumes_from_disk(self, tmp_path: Path):
        store = FileRunStateStore(tmp_path)
        steps = ScriptedExecutor({"b": FatalExecutionError("rate limited")})
        registry = NodeExecutorRegistry()
        registry.register(TriggerExecutor())
        registry.register(steps)
        engine = WorkflowEngine(registry=registry, state_store=store, config=EngineConfig())
        definition = workflow(
            [node("t", "trigger"), node("a"), node("b")],
            [edge("t", "a"), edge("a", "b")],
        )

        await engine.run(definition, run_id="first")
        steps.scripts["b"] = {"ok": True}
        steps.started.clear()
        result = await engine.run(definition, run_id="second", resume_from="first")

        assert result.status == RunStatus.SUCCEEDED
        assert steps.started == ["b"]
        assert (tmp_path / "second" / "run.json").exists()
        assert (tmp_path / "second" / "nodes" / "a.json").exists()
