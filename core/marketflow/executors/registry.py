"""Node Executor Registry - maps a node ``type`` string to its executor."""

import logging

from marketflow.errors import ConfigurationError
from marketflow.executors.base import NodeExecutor

logger = logging.getLogger(__name__)


class NodeExecutorRegistry:
    """
    Registry of executors keyed by node type.

    Populated once at startup; lookups for unregistered types raise
    ConfigurationError so unknown types are rejected, never skipped.
    """

    def __init__(self):
        self._executors: dict[str, NodeExecutor] = {}

    def register(
        self,
        executor: NodeExecutor,
        node_types: list[str] | tuple[str, ...] | None = None,
        replace: bool = False,
    ) -> None:
        """
        Register an executor for its declared node types (or ``node_types``).

        Raises:
            ValueError: if a type is already registered and ``replace`` is False
        """
        types = tuple(node_types or executor.node_types)
        if not types:
            raise ValueError(f"{executor.name} declares no node types")
        for node_type in types:
            if node_type in self._executors and not replace:
                raise ValueError(f"Node type '{node_type}' is already registered")
            self._executors[node_type] = executor
            logger.debug(f"Registered {executor.name} for '{node_type}'")

    def get(self, node_type: str) -> NodeExecutor:
        executor = self._executors.get(node_type)
        if executor is None:
            raise ConfigurationError(f"Unknown node type '{node_type}'")
        return executor

    def supports(self, node_type: str) -> bool:
        return node_type in self._executors

    def types(self) -> list[str]:
        return sorted(self._executors)

    def __contains__(self, node_type: str) -> bool:
        return self.supports(node_type)

    def __len__(self) -> int:
        return len(self._executors)
