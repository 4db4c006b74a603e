"""
Run State Store - persistence of per-node results so runs can be inspected
and resumed.

File layout of ``FileRunStateStore``:

  {base_path}/{run_id}/
    ├── run.json             # RunResult, written when the run finishes
    └── nodes/
        └── {node_id}.json   # NodeResult, written as each node finishes
"""

import asyncio
import hashlib
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from marketflow.runtime.context import RunContext
from marketflow.schemas.run import NodeResult, RunResult

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_.\-]")


class RunStateStore(ABC):
    """Where the scheduler persists results. ``persist`` is called once per finished node."""

    @abstractmethod
    async def persist(self, run_id: str, node_id: str, result: NodeResult) -> None:
        ...

    @abstractmethod
    async def load(self, run_id: str) -> RunContext | None:
        """The stored RunContext of ``run_id``, or None when the run is unknown."""

    async def save_run(self, result: RunResult) -> None:
        """Store the finished run summary. Optional for implementations."""

    async def load_run(self, run_id: str) -> RunResult | None:
        return None


class InMemoryRunStateStore(RunStateStore):
    """Process-local store, used by default and in tests."""

    def __init__(self):
        self._nodes: dict[str, dict[str, NodeResult]] = {}
        self._runs: dict[str, RunResult] = {}

    async def persist(self, run_id: str, node_id: str, result: NodeResult) -> None:
        self._nodes.setdefault(run_id, {})[node_id] = result.model_copy(deep=True)

    async def load(self, run_id: str) -> RunContext | None:
        nodes = self._nodes.get(run_id)
        if nodes is None:
            return None
        run = self._runs.get(run_id)
        return RunContext.from_results(
            run_id,
            run.workflow_id if run else "",
            [r.model_copy(deep=True) for r in nodes.values()],
        )

    async def save_run(self, result: RunResult) -> None:
        self._runs[result.run_id] = result.model_copy(deep=True)

    async def load_run(self, run_id: str) -> RunResult | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    def run_ids(self) -> list[str]:
        return sorted(set(self._nodes) | set(self._runs))


class FileRunStateStore(RunStateStore):
    """JSON files on disk; writes are atomic (temp file + rename)."""

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)

    def get_run_path(self, run_id: str) -> Path:
        return self.base_path / _safe_name(run_id)

    def get_node_path(self, run_id: str, node_id: str) -> Path:
        return self.get_run_path(run_id) / "nodes" / f"{_safe_name(node_id)}.json"

    async def persist(self, run_id: str, node_id: str, result: NodeResult) -> None:
        path = self.get_node_path(run_id, node_id)
        payload = result.model_dump_json(indent=2)
        await asyncio.to_thread(_atomic_write, path, payload)
        logger.debug(f"Persisted {node_id} ({result.status}) for run {run_id}")

    async def load(self, run_id: str) -> RunContext | None:
        def _read() -> list[NodeResult] | None:
            nodes_dir = self.get_run_path(run_id) / "nodes"
            if not nodes_dir.exists():
                return None
            results = []
            for path in sorted(nodes_dir.glob("*.json")):
                try:
                    results.append(NodeResult.model_validate_json(path.read_text(encoding="utf-8")))
                except (OSError, ValueError) as e:
                    logger.warning(f"Failed to load {path}: {e}")
            return results

        results = await asyncio.to_thread(_read)
        if results is None:
            return None
        run = await self.load_run(run_id)
        return RunContext.from_results(run_id, run.workflow_id if run else "", results)

    async def save_run(self, result: RunResult) -> None:
        path = self.get_run_path(result.run_id) / "run.json"
        await asyncio.to_thread(_atomic_write, path, result.model_dump_json(indent=2))

    async def load_run(self, run_id: str) -> RunResult | None:
        def _read() -> RunResult | None:
            path = self.get_run_path(run_id) / "run.json"
            if not path.exists():
                return None
            return RunResult.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def list_runs(self) -> list[str]:
        def _scan() -> list[str]:
            if not self.base_path.exists():
                return []
            return sorted(p.name for p in self.base_path.iterdir() if p.is_dir())

        return await asyncio.to_thread(_scan)


def _safe_name(name: str) -> str:
    """Filesystem-safe form of an id; rewritten ids get a hash suffix so they stay distinct."""
    safe = _UNSAFE_NAME.sub("_", name)
    if safe == name and safe.strip("."):
        return safe
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
    return f"{safe}-{digest}"


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
