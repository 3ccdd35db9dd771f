"""Tests for agent graph construction and validation.

Tests cover:
- Node inputs/outputs and topological levels
- Cycle detection (including deep chains)
- Filtering: inactive agents, inactive connections, excluded agents
- require_valid error mapping
- API shape of the graph view
"""

from __future__ import annotations

import pytest

from refinery.core.errors import GraphCycleError
from refinery.core.graph import CYCLE_ERROR, GraphValidator, detect_cycle, require_valid
from refinery.core.models import Agent, Connection


def agent(name: str, order: int = 0, is_active: bool = True) -> Agent:
    return Agent(id=name, name=name, display_name=name.upper(), order=order, is_active=is_active)


def edge(source: str, target: str, is_active: bool = True) -> Connection:
    return Connection(
        id=f"{source}->{target}",
        source_agent_id=source,
        target_agent_id=target,
        is_active=is_active,
    )


def build(agents, connections, **kwargs):
    return GraphValidator(agents, connections, **kwargs).build()


# =============================================================================
# Structure and Levels
# =============================================================================


class TestGraphStructure:
    """Tests for the derived graph view."""

    def test_empty_graph_is_valid(self):
        """No agents means an empty but valid graph."""
        graph = build([], [])
        assert graph.nodes == []
        assert graph.is_valid
        assert graph.validation_errors == []

    def test_single_agent_is_root_and_leaf(self):
        """A lone agent is level 0, a root and a leaf."""
        graph = build([agent("a")], [])
        node = graph.nodes[0]
        assert node.level == 0
        assert node.is_root and node.is_leaf
        assert graph.is_valid

    def test_chain_levels(self):
        """Levels increase along a chain."""
        graph = build(
            [agent("a"), agent("b"), agent("c")],
            [edge("a", "b"), edge("b", "c")],
        )
        levels = {n.id: n.level for n in graph.nodes}
        assert levels == {"a": 0, "b": 1, "c": 2}

    def test_level_uses_longest_path(self):
        """A node's level is one more than the deepest of its inputs."""
        graph = build(
            [agent("a"), agent("b"), agent("c")],
            [edge("a", "b"), edge("b", "c"), edge("a", "c")],
        )
        assert graph.node_map()["c"].level == 2

    def test_diamond_inputs_and_outputs(self):
        """Inputs and outputs mirror the active connections."""
        graph = build(
            [agent("a"), agent("b"), agent("c"), agent("d")],
            [edge("a", "b"), edge("a", "c"), edge("b", "d"), edge("c", "d")],
        )
        nodes = graph.node_map()
        assert sorted(nodes["a"].outputs) == ["b", "c"]
        assert sorted(nodes["d"].inputs) == ["b", "c"]
        assert nodes["d"].level == 2
        assert [n.id for n in graph.roots] == ["a"]
        assert [n.id for n in graph.leaves] == ["d"]

    def test_fan_in_level(self):
        """A node fed by two inputs sits one level below the deeper of them."""
        graph = build(
            [agent("x"), agent("a"), agent("b"), agent("c")],
            [edge("x", "a"), edge("a", "c"), edge("b", "c")],
        )
        nodes = graph.node_map()
        assert sorted(nodes["c"].inputs) == ["a", "b"]
        assert nodes["a"].level == 1
        assert nodes["b"].level == 0
        assert nodes["c"].level == 2

    def test_isolated_agents_all_level_zero(self):
        """Agents without connections are all roots and leaves at level 0."""
        graph = build([agent("a"), agent("b"), agent("c")], [])
        assert graph.is_valid
        assert [n.level for n in graph.nodes] == [0, 0, 0]
        assert len(graph.roots) == len(graph.leaves) == 3

    def test_disjoint_components_valid(self):
        """Separate acyclic components form one valid graph."""
        graph = build(
            [agent("a"), agent("b"), agent("c"), agent("d")],
            [edge("a", "b"), edge("c", "d")],
        )
        assert graph.is_valid
        assert {n.id: n.level for n in graph.nodes} == {"a": 0, "b": 1, "c": 0, "d": 1}

    def test_nodes_sorted_by_order_then_name(self):
        """Node order follows agent order, then name."""
        graph = build([agent("z", order=0), agent("b", order=1), agent("a", order=1)], [])
        assert [n.id for n in graph.nodes] == ["z", "a", "b"]

    def test_every_edge_respects_levels(self):
        """For every edge source.level < target.level."""
        graph = build(
            [agent(n) for n in "abcdef"],
            [edge("a", "b"), edge("b", "c"), edge("a", "d"), edge("d", "e"), edge("c", "f"),
             edge("e", "f")],
        )
        nodes = graph.node_map()
        for e in graph.edges:
            assert nodes[e.source].level < nodes[e.target].level


# =============================================================================
# Filtering
# =============================================================================


class TestGraphFiltering:
    """Tests for inactive and excluded agents and connections."""

    def test_inactive_connection_ignored(self):
        """Inactive connections do not count as inputs or outputs."""
        graph = build([agent("a"), agent("b")], [edge("a", "b", is_active=False)])
        assert graph.edges == []
        assert all(n.is_root and n.is_leaf for n in graph.nodes)

    def test_active_only_drops_inactive_agents_and_their_edges(self):
        """With active_only, inactive agents and edges touching them disappear."""
        graph = build(
            [agent("a"), agent("b", is_active=False), agent("c")],
            [edge("a", "b"), edge("b", "c")],
            active_only=True,
        )
        assert [n.id for n in graph.nodes] == ["a", "c"]
        assert graph.edges == []

    def test_inactive_agents_kept_without_active_only(self):
        """The editing view shows inactive agents too."""
        graph = build([agent("a"), agent("b", is_active=False)], [edge("a", "b")])
        assert len(graph.nodes) == 2
        assert not graph.node_map()["b"].is_active

    def test_excluded_names(self):
        """Excluded agents never appear in the graph."""
        graph = build(
            [agent("extraction"), agent("a"), agent("b")],
            [edge("extraction", "a"), edge("a", "b")],
            excluded_names=["extraction"],
        )
        nodes = graph.node_map()
        assert "extraction" not in nodes
        assert nodes["a"].is_root


# =============================================================================
# Cycle Detection
# =============================================================================


class TestCycleDetection:
    """Tests for cycle detection and validation errors."""

    def test_two_node_cycle(self):
        """a -> b -> a is reported as a cycle and nothing else."""
        graph = build([agent("a"), agent("b")], [edge("a", "b"), edge("b", "a")])
        assert not graph.is_valid
        assert graph.validation_errors == [CYCLE_ERROR]
        assert all(n.level == 0 for n in graph.nodes)

    def test_self_edge_is_cycle(self):
        """u -> u is a one-node cycle."""
        graph = build([agent("a"), agent("b")], [edge("a", "b"), edge("b", "b")])
        assert not graph.is_valid
        assert graph.validation_errors == [CYCLE_ERROR]
        with pytest.raises(GraphCycleError):
            require_valid(graph)

    def test_cycle_in_one_component_invalidates_graph(self):
        """A cycle in any disjoint component makes the whole graph invalid."""
        graph = build(
            [agent("a"), agent("b"), agent("x"), agent("y")],
            [edge("a", "b"), edge("x", "y"), edge("y", "x")],
        )
        assert not graph.is_valid
        assert graph.validation_errors == [CYCLE_ERROR]

    def test_cycle_below_a_root(self):
        """A cycle not touching the root is still found."""
        graph = build(
            [agent("a"), agent("b"), agent("c")],
            [edge("a", "b"), edge("b", "c"), edge("c", "b")],
        )
        assert graph.validation_errors == [CYCLE_ERROR]

    def test_inactive_edge_does_not_close_cycle(self):
        """Only active connections can form a cycle."""
        graph = build(
            [agent("a"), agent("b")],
            [edge("a", "b"), edge("b", "a", is_active=False)],
        )
        assert graph.is_valid

    def test_detect_cycle_deep_chain(self):
        """Deep chains do not hit the recursion limit."""
        ids = [f"n{i}" for i in range(5000)]
        outgoing = {ids[i]: [ids[i + 1]] for i in range(len(ids) - 1)}
        assert detect_cycle(ids, outgoing) is False
        outgoing[ids[-1]] = [ids[0]]
        assert detect_cycle(ids, outgoing) is True

    def test_detect_cycle_shared_descendant_is_not_cycle(self):
        """Reaching a finished node twice is not a back edge."""
        outgoing = {"a": ["b", "c"], "b": ["d"], "c": ["d"], "d": []}
        assert detect_cycle(outgoing.keys(), outgoing) is False


# =============================================================================
# Validation Helpers
# =============================================================================


class TestRequireValid:
    """Tests for require_valid and the API view."""

    def test_require_valid_raises_on_cycle(self):
        graph = build([agent("a"), agent("b")], [edge("a", "b"), edge("b", "a")])
        with pytest.raises(GraphCycleError, match="Graph contains a cycle"):
            require_valid(graph)

    def test_require_valid_returns_graph(self):
        graph = build([agent("a"), agent("b")], [edge("a", "b")])
        assert require_valid(graph) is graph

    def test_to_api_shape(self):
        """API view uses camelCase keys."""
        api = build([agent("a"), agent("b")], [edge("a", "b")]).to_api()
        assert api["isValid"] is True
        assert api["validationErrors"] == []
        assert api["nodes"][0]["displayName"] == "A"
        assert api["nodes"][1]["inputs"] == ["a"]
        assert api["edges"] == [
            {"id": "a->b", "source": "a", "target": "b", "isActive": True}
        ]
