"""
Graph Scheduler for the Workflow Engine.

The scheduler is the stateless part of orchestration: it validates a
workflow graph, finds its entry points, decides which of the current nodes
may run, and resolves where execution goes after a node produces a result.
"""

from typing import Any, Dict, List, Optional, Sequence, Set
from dataclasses import dataclass, field
from collections import deque
import logging

from checkflow.engine.conditions import evaluate_condition
from checkflow.engine.errors import GraphValidationError
from checkflow.engine.graph import (
    ENTRY_NODE_TYPES,
    EdgeDefinition,
    NodeDefinition,
    WorkflowDefinition,
)


logger = logging.getLogger(__name__)

# DFS node colors
_WHITE, _GREY, _BLACK = 0, 1, 2


@dataclass
class CycleReport:
    """Result of cycle detection."""
    has_cycle: bool = False
    cycle_node_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"has_cycle": self.has_cycle, "cycle_node_ids": self.cycle_node_ids}


class GraphScheduler:
    """
    Dependency scheduler over a workflow graph.

    Usage:
        scheduler = GraphScheduler()
        start_nodes = scheduler.validate(definition)
        ready = scheduler.get_executable_nodes(definition, current, completed)
        next_nodes = scheduler.get_next_nodes(node_id, result, definition, state.data)
    """

    # ============================================================
    # Validation
    # ============================================================

    def detect_cycles(
        self,
        nodes: Sequence[NodeDefinition],
        edges: Sequence[EdgeDefinition],
        allow_cycles: bool = False,
    ) -> CycleReport:
        """
        Detect cycles with a depth-first traversal and three-color marking.

        A back-edge (an edge into a node still on the DFS stack) closes a
        cycle; every node on the stack from that target onwards is part of it.

        Args:
            nodes: Workflow nodes
            edges: Workflow edges
            allow_cycles: Report cycles instead of rejecting them

        Returns:
            CycleReport with the nodes involved in cycles

        Raises:
            GraphValidationError: If a cycle exists and allow_cycles is False
        """
        adjacency: Dict[str, List[str]] = {node.id: [] for node in nodes}
        for edge in edges:
            if edge.source in adjacency and edge.target in adjacency:
                adjacency[edge.source].append(edge.target)

        color = {node_id: _WHITE for node_id in adjacency}
        in_cycle: List[str] = []
        seen_in_cycle: Set[str] = set()

        for root in adjacency:
            if color[root] != _WHITE:
                continue

            # Iterative DFS: stack of (node, iterator over its neighbours)
            path: List[str] = [root]
            stack = [(root, iter(adjacency[root]))]
            color[root] = _GREY

            while stack:
                node_id, neighbours = stack[-1]
                advanced = False
                for neighbour in neighbours:
                    if color[neighbour] == _WHITE:
                        color[neighbour] = _GREY
                        path.append(neighbour)
                        stack.append((neighbour, iter(adjacency[neighbour])))
                        advanced = True
                        break
                    if color[neighbour] == _GREY:
                        for cycle_node in path[path.index(neighbour):]:
                            if cycle_node not in seen_in_cycle:
                                seen_in_cycle.add(cycle_node)
                                in_cycle.append(cycle_node)
                if not advanced:
                    color[node_id] = _BLACK
                    stack.pop()
                    path.pop()

        report = CycleReport(has_cycle=bool(in_cycle), cycle_node_ids=in_cycle)

        if report.has_cycle:
            if not allow_cycles:
                raise GraphValidationError(
                    f"Workflow contains cycles involving nodes: {', '.join(in_cycle)}",
                    details=report.to_dict(),
                )
            logger.info(f"Cycles allowed, loop nodes: {in_cycle}")

        return report

    def validate(self, definition: WorkflowDefinition) -> List[str]:
        """
        Validate a workflow definition before a run starts.

        Checks node id uniqueness, edge endpoints, the cycle policy and the
        presence of start nodes.

        Returns:
            The start node ids

        Raises:
            GraphValidationError: On the first structural problem found
        """
        if not definition.nodes:
            raise GraphValidationError("Workflow must have at least one node")

        seen: Set[str] = set()
        duplicates = []
        for node in definition.nodes:
            if node.id in seen:
                duplicates.append(node.id)
            seen.add(node.id)
        if duplicates:
            raise GraphValidationError(f"Duplicate node ids: {duplicates}")

        for edge in definition.edges:
            missing = [end for end in (edge.source, edge.target) if end not in seen]
            if missing:
                raise GraphValidationError(
                    f"Edge {edge.source} -> {edge.target} references unknown nodes: {missing}"
                )

        self.detect_cycles(
            definition.nodes,
            definition.edges,
            allow_cycles=definition.config.allow_cycles,
        )
        return self.find_start_nodes(definition)

    # ============================================================
    # Graph queries
    # ============================================================

    def find_start_nodes(self, definition: WorkflowDefinition) -> List[str]:
        """
        Find entry nodes: nodes without incoming edges, or of an entry type.

        Raises:
            GraphValidationError: If there are none
        """
        targets = {edge.target for edge in definition.edges}
        start_nodes = [
            node.id
            for node in definition.nodes
            if node.id not in targets or node.type in ENTRY_NODE_TYPES
        ]

        if not start_nodes:
            raise GraphValidationError("Workflow has no start nodes")

        logger.debug(f"Start nodes for '{definition.id}': {start_nodes}")
        return start_nodes

    def find_end_nodes(self, definition: WorkflowDefinition) -> List[str]:
        """Find nodes without outgoing edges."""
        sources = {edge.source for edge in definition.edges}
        return [node.id for node in definition.nodes if node.id not in sources]

    def topological_sort(self, definition: WorkflowDefinition) -> List[str]:
        """
        Order nodes so that every node comes after its dependencies (Kahn).

        Raises:
            GraphValidationError: If the graph contains cycles
        """
        self.detect_cycles(definition.nodes, definition.edges, allow_cycles=False)

        in_degree = {node.id: 0 for node in definition.nodes}
        adjacency: Dict[str, List[str]] = {node.id: [] for node in definition.nodes}
        for edge in definition.edges:
            adjacency[edge.source].append(edge.target)
            in_degree[edge.target] += 1

        queue = deque(node_id for node_id, degree in in_degree.items() if degree == 0)
        ordered = []
        while queue:
            node_id = queue.popleft()
            ordered.append(node_id)
            for neighbour in adjacency[node_id]:
                in_degree[neighbour] -= 1
                if in_degree[neighbour] == 0:
                    queue.append(neighbour)
        return ordered

    # ============================================================
    # Runtime scheduling
    # ============================================================

    def get_executable_nodes(
        self,
        definition: WorkflowDefinition,
        current_nodes: Sequence[str],
        completed_nodes: Sequence[str],
    ) -> List[str]:
        """
        Determine which current nodes may run now.

        In acyclic mode a node is ready once every upstream source is in
        ``completed_nodes``. In cyclic mode every current node is ready; the
        per-node iteration cap bounds the loop instead.

        Returns:
            Ready node ids, in current_nodes order
        """
        if not current_nodes:
            return []

        if definition.config.allow_cycles:
            return list(dict.fromkeys(current_nodes))

        completed = set(completed_nodes)
        ready = []
        for node_id in dict.fromkeys(current_nodes):
            upstream = [edge.source for edge in definition.incoming_edges(node_id)]
            if all(source in completed for source in upstream):
                ready.append(node_id)
            else:
                logger.debug(
                    f"Node '{node_id}' waiting on {[s for s in upstream if s not in completed]}"
                )
        return ready

    def get_next_nodes(
        self,
        node_id: str,
        result: Any,
        definition: WorkflowDefinition,
        state_data: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        """
        Resolve the nodes to run after ``node_id`` produced ``result``.

        Edges without a condition are always followed; conditional edges
        only when their condition matches. An empty list means this path
        ends here.
        """
        next_nodes = []
        for edge in definition.outgoing_edges(node_id):
            if evaluate_condition(edge.condition, result, state_data):
                if edge.target not in next_nodes:
                    next_nodes.append(edge.target)
                logger.debug(f"Following edge {node_id} -> {edge.target}")

        if not next_nodes:
            logger.debug(f"No outgoing edges followed from '{node_id}'")
        return next_nodes
