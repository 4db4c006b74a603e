"""
Graph Model - adjacency views over a workflow definition.

Edges are indexed by direction and by edge type. In DEBATE mode an edge
that loops back into a ``debate-round`` node represents the debate's own
bounded iteration; such edges are kept apart as ``iteration_edges`` and are
ignored for ordering and acyclicity, since the Debate Coordinator bounds
those rounds with ``maxRounds``.
"""

from __future__ import annotations

from collections import deque

from marketflow.schemas.workflow import (
    EdgeType,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowMode,
    WorkflowNode,
)

DEBATE_ROUND_TYPE = "debate-round"
TERMINAL_TYPES = frozenset({"notify", "report-generate"})


class CycleError(ValueError):
    """The scheduling graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        super().__init__("Workflow graph contains a cycle: " + " -> ".join(cycle))
        self.cycle = cycle


class WorkflowGraph:
    """
    In-memory graph built from a ``WorkflowDefinition``.

    Edges whose endpoints do not exist are recorded in ``dangling_edges``
    and otherwise ignored, so a graph can be built for a definition that is
    still being validated.
    """

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition
        self.nodes: dict[str, WorkflowNode] = {}
        for node in definition.nodes:
            self.nodes.setdefault(node.id, node)

        self.dangling_edges: list[WorkflowEdge] = []
        self.edges: list[WorkflowEdge] = []
        for edge in definition.edges:
            if edge.source in self.nodes and edge.target in self.nodes:
                self.edges.append(edge)
            else:
                self.dangling_edges.append(edge)

        self.iteration_edges: list[WorkflowEdge] = self._find_iteration_edges()
        iteration_ids = {e.id for e in self.iteration_edges}
        self.scheduling_edges: list[WorkflowEdge] = [
            e for e in self.edges if e.id not in iteration_ids
        ]

        self._outgoing: dict[str, list[WorkflowEdge]] = {nid: [] for nid in self.nodes}
        self._incoming: dict[str, list[WorkflowEdge]] = {nid: [] for nid in self.nodes}
        for edge in self.scheduling_edges:
            self._outgoing[edge.source].append(edge)
            self._incoming[edge.target].append(edge)

    @property
    def mode(self) -> WorkflowMode:
        return self.definition.mode

    # === ADJACENCY ===

    def get_node(self, node_id: str) -> WorkflowNode | None:
        return self.nodes.get(node_id)

    def get_outgoing_edges(
        self, node_id: str, edge_type: EdgeType | None = None
    ) -> list[WorkflowEdge]:
        """Scheduling edges leaving a node, optionally of one type."""
        edges = self._outgoing.get(node_id, [])
        if edge_type is None:
            return list(edges)
        return [e for e in edges if e.edge_type == edge_type]

    def get_incoming_edges(
        self, node_id: str, edge_type: EdgeType | None = None
    ) -> list[WorkflowEdge]:
        """Scheduling edges entering a node, optionally of one type."""
        edges = self._incoming.get(node_id, [])
        if edge_type is None:
            return list(edges)
        return [e for e in edges if e.edge_type == edge_type]

    def predecessors(self, node_id: str, edge_type: EdgeType | None = None) -> list[str]:
        return _unique(e.source for e in self.get_incoming_edges(node_id, edge_type))

    def successors(self, node_id: str, edge_type: EdgeType | None = None) -> list[str]:
        return _unique(e.target for e in self.get_outgoing_edges(node_id, edge_type))

    def data_predecessors(self, node_id: str) -> list[str]:
        return self.predecessors(node_id, EdgeType.DATA)

    def triggers(self) -> list[str]:
        return [nid for nid, node in self.nodes.items() if node.is_trigger]

    def roots(self) -> list[str]:
        return [nid for nid in self.nodes if not self._incoming[nid]]

    def sinks(self) -> list[str]:
        return [nid for nid in self.nodes if not self._outgoing[nid]]

    def detect_fan_out_nodes(self) -> dict[str, list[str]]:
        """Nodes with more than one successor -> their successors."""
        fan_outs: dict[str, list[str]] = {}
        for node_id in self.nodes:
            targets = self.successors(node_id)
            if len(targets) > 1:
                fan_outs[node_id] = targets
        return fan_outs

    def detect_fan_in_nodes(self) -> dict[str, list[str]]:
        """Nodes with more than one predecessor -> their predecessors (join points)."""
        fan_ins: dict[str, list[str]] = {}
        for node_id in self.nodes:
            sources = self.predecessors(node_id)
            if len(sources) > 1:
                fan_ins[node_id] = sources
        return fan_ins

    # === ORDERING ===

    def topological_layers(self) -> list[list[str]]:
        """
        Kahn layering over scheduling edges.

        Each layer holds the nodes whose predecessors all sit in earlier
        layers; nodes within a layer are sorted for stable output.

        Raises:
            CycleError: if the scheduling graph is cyclic.
        """
        in_degree = {nid: len(self.predecessors(nid)) for nid in self.nodes}
        layer = sorted(nid for nid, degree in in_degree.items() if degree == 0)
        layers: list[list[str]] = []
        seen = 0
        while layer:
            layers.append(layer)
            seen += len(layer)
            next_layer: set[str] = set()
            for node_id in layer:
                for target in self.successors(node_id):
                    in_degree[target] -= 1
                    if in_degree[target] == 0:
                        next_layer.add(target)
            layer = sorted(next_layer)
        if seen != len(self.nodes):
            raise CycleError(self.find_cycle() or sorted(n for n, d in in_degree.items() if d))
        return layers

    def topological_order(self) -> list[str]:
        return [node_id for layer in self.topological_layers() for node_id in layer]

    def find_cycle(self) -> list[str] | None:
        """Return one cycle (first node repeated at the end), or None."""
        white, grey, black = 0, 1, 2
        color = {nid: white for nid in self.nodes}
        stack: list[str] = []

        def visit(node_id: str) -> list[str] | None:
            color[node_id] = grey
            stack.append(node_id)
            for target in self.successors(node_id):
                if color[target] == grey:
                    return stack[stack.index(target) :] + [target]
                if color[target] == white:
                    found = visit(target)
                    if found:
                        return found
            stack.pop()
            color[node_id] = black
            return None

        for node_id in self.nodes:
            if color[node_id] == white:
                cycle = visit(node_id)
                if cycle:
                    return cycle
        return None

    def has_path(self, source: str, target: str, excluded: str | None = None) -> bool:
        """BFS reachability over scheduling edges, optionally avoiding one node."""
        if source == excluded or source not in self.nodes:
            return False
        queue = deque([source])
        visited: set[str] = set()
        while queue:
            current = queue.popleft()
            if current == target:
                return True
            if current in visited:
                continue
            visited.add(current)
            for nxt in self.successors(current):
                if nxt != excluded and nxt not in visited:
                    queue.append(nxt)
        return False

    def ancestors(self, node_id: str) -> set[str]:
        found: set[str] = set()
        queue = deque(self.predecessors(node_id))
        while queue:
            current = queue.popleft()
            if current in found:
                continue
            found.add(current)
            queue.extend(self.predecessors(current))
        return found

    # === CRITICALITY ===

    def critical_nodes(self) -> list[str]:
        """
        Nodes whose failure fails the whole run.

        Explicitly ``critical`` nodes, every terminal notify/report-generate
        node, every node lying on all paths from the triggers to such a
        terminal node, and the data producers a critical join depends on.
        """
        critical = {nid for nid, node in self.nodes.items() if node.critical}
        starts = self.triggers() or self.roots()
        for terminal_id, node in self.nodes.items():
            if node.type not in TERMINAL_TYPES:
                continue
            critical.add(terminal_id)
            for candidate in self.ancestors(terminal_id):
                if not any(
                    self.has_path(start, terminal_id, excluded=candidate) for start in starts
                ):
                    critical.add(candidate)

        queue = deque(critical)
        while queue:
            for producer in self.data_predecessors(queue.popleft()):
                if producer not in critical:
                    critical.add(producer)
                    queue.append(producer)

        order = list(self.nodes)
        return sorted(critical, key=order.index)

    # === INTERNAL ===

    def _find_iteration_edges(self) -> list[WorkflowEdge]:
        if self.definition.mode != WorkflowMode.DEBATE:
            return []
        adjacency: dict[str, list[str]] = {nid: [] for nid in self.nodes}
        for edge in self.edges:
            adjacency[edge.source].append(edge.target)

        def reaches(source: str, target: str) -> bool:
            queue, visited = deque([source]), set()
            while queue:
                current = queue.popleft()
                if current == target:
                    return True
                if current in visited:
                    continue
                visited.add(current)
                queue.extend(adjacency[current])
            return False

        loops = []
        for edge in self.edges:
            target = self.nodes[edge.target]
            if target.type == DEBATE_ROUND_TYPE and reaches(edge.target, edge.source):
                loops.append(edge)
        return loops


def _unique(items) -> list[str]:
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return list(seen)
