"""Agent graph construction and validation.

Builds the read-only ``Graph`` view from agent and connection records:
per-node inputs/outputs, cycle detection and topological levels.
"""

import logging
from collections.abc import Iterable

import networkx as nx

from refinery.core.errors import GraphCycleError, NoRootAgentError, WorkflowError
from refinery.core.models import Agent, Connection, Graph, GraphEdge, GraphNode

logger = logging.getLogger(__name__)

CYCLE_ERROR = "Graph contains a cycle"
NO_ROOT_ERROR = "No root agent found (every agent has inputs)"
NO_TERMINAL_ERROR = "No terminal agent found (every agent has outputs)"

_WHITE, _GRAY, _BLACK = 0, 1, 2


def detect_cycle(node_ids: Iterable[str], outgoing: dict[str, list[str]]) -> bool:
    """Three-colour depth-first search for a back edge.

    Runs with an explicit stack so deep chains never hit the recursion limit.
    An edge into a node that is still in progress (gray) closes a cycle.
    """
    color = {node_id: _WHITE for node_id in node_ids}

    for start in color:
        if color[start] != _WHITE:
            continue
        color[start] = _GRAY
        stack = [(start, iter(outgoing.get(start, [])))]
        while stack:
            node, neighbors = stack[-1]
            for neighbor in neighbors:
                state = color.get(neighbor)
                if state == _GRAY:
                    return True
                if state == _WHITE:
                    color[neighbor] = _GRAY
                    stack.append((neighbor, iter(outgoing.get(neighbor, []))))
                    break
            else:
                color[node] = _BLACK
                stack.pop()
    return False


class GraphValidator:
    """Validates an agent graph and computes its derived view.

    Usage:
        graph = GraphValidator(agents, connections, active_only=True).build()
        if not graph.is_valid:
            ...
    """

    def __init__(
        self,
        agents: Iterable[Agent],
        connections: Iterable[Connection],
        active_only: bool = False,
        excluded_names: Iterable[str] = (),
    ):
        excluded = set(excluded_names)
        self.agents = sorted(
            (
                a
                for a in agents
                if (a.is_active or not active_only) and a.name not in excluded
            ),
            key=lambda a: (a.order, a.name),
        )
        node_ids = {a.id for a in self.agents}
        # Inactive connections and connections touching a filtered-out agent
        # are not part of the graph.
        self.connections = sorted(
            (
                c
                for c in connections
                if c.is_active
                and c.source_agent_id in node_ids
                and c.target_agent_id in node_ids
            ),
            key=lambda c: (c.order, c.created_at),
        )

    def _adjacency(self) -> tuple[dict[str, list[str]], dict[str, list[str]]]:
        inputs: dict[str, list[str]] = {a.id: [] for a in self.agents}
        outputs: dict[str, list[str]] = {a.id: [] for a in self.agents}
        for conn in self.connections:
            if conn.target_agent_id not in outputs[conn.source_agent_id]:
                outputs[conn.source_agent_id].append(conn.target_agent_id)
            if conn.source_agent_id not in inputs[conn.target_agent_id]:
                inputs[conn.target_agent_id].append(conn.source_agent_id)
        return inputs, outputs

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for agent in self.agents:
            G.add_node(agent.id)
        for conn in self.connections:
            G.add_edge(conn.source_agent_id, conn.target_agent_id)
        return G

    def has_cycle(self) -> bool:
        if any(c.source_agent_id == c.target_agent_id for c in self.connections):
            return True
        _, outputs = self._adjacency()
        return detect_cycle(outputs.keys(), outputs)

    def compute_levels(self) -> dict[str, int]:
        """Level of every node: 0 for roots, else 1 + max(level of inputs).

        Only meaningful on an acyclic graph; callers check ``has_cycle`` first.
        """
        levels: dict[str, int] = {}
        for depth, generation in enumerate(nx.topological_generations(self._to_networkx())):
            for node_id in generation:
                levels[node_id] = depth
        return levels

    def validate(self) -> list[str]:
        """Return the list of validation errors (empty when valid)."""
        if not self.agents:
            return []

        if self.has_cycle():
            return [CYCLE_ERROR]

        errors = []
        inputs, outputs = self._adjacency()
        if not any(not ins for ins in inputs.values()):
            errors.append(NO_ROOT_ERROR)
        if not any(not outs for outs in outputs.values()):
            errors.append(NO_TERMINAL_ERROR)
        return errors

    def build(self) -> Graph:
        """Build the graph view, computing levels only when acyclic."""
        errors = self.validate()
        inputs, outputs = self._adjacency()
        levels = self.compute_levels() if CYCLE_ERROR not in errors else {}
        if errors:
            logger.debug(f"Graph validation failed: {errors}")

        nodes = [
            GraphNode(
                id=agent.id,
                name=agent.name,
                display_name=agent.display_name,
                is_active=agent.is_active,
                order=agent.order,
                level=levels.get(agent.id, 0),
                inputs=inputs[agent.id],
                outputs=outputs[agent.id],
            )
            for agent in self.agents
        ]
        edges = [
            GraphEdge(
                id=conn.id,
                source=conn.source_agent_id,
                target=conn.target_agent_id,
                is_active=conn.is_active,
            )
            for conn in self.connections
        ]
        return Graph(nodes=nodes, edges=edges, is_valid=not errors, validation_errors=errors)


def require_valid(graph: Graph) -> Graph:
    """Raise the matching error if ``graph`` cannot be scheduled."""
    if CYCLE_ERROR in graph.validation_errors:
        raise GraphCycleError(CYCLE_ERROR)
    if graph.nodes and not graph.roots:
        raise NoRootAgentError()
    if not graph.is_valid:
        raise WorkflowError("; ".join(graph.validation_errors))
    return graph
