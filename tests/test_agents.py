"""Tests for agent definition loading and seeding."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from refinery.core.agents import BUILTIN_AGENTS, AgentDefinitions, AgentLoader, seed_agents
from refinery.core.errors import AgentValidationError


def write_yaml(path: Path, data) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def agent_def(name: str, **overrides) -> dict:
    data = {
        "name": name,
        "display_name": name.title(),
        "system_prompt": f"You are {name}.",
        "user_prompt_template": "{{ markdown }}",
    }
    data.update(overrides)
    return data


class TestAgentLoader:
    """Tests for AgentLoader.load."""

    def test_builtin_agents_load(self):
        definitions = AgentLoader().load(BUILTIN_AGENTS)
        names = [a["name"] for a in definitions.agents]
        assert names == ["enricher", "contextualizer", "bio", "adapter", "extraction"]
        assert {"source": "bio", "target": "adapter"} in definitions.connections

    def test_missing_file(self, tmp_path):
        with pytest.raises(AgentValidationError, match="not found"):
            AgentLoader().load(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "agents.yaml"
        path.write_text("agents: [unclosed", encoding="utf-8")
        with pytest.raises(AgentValidationError, match="Invalid YAML"):
            AgentLoader().load(path)

    def test_not_a_mapping(self, tmp_path):
        path = write_yaml(tmp_path / "agents.yaml", ["a", "b"])
        with pytest.raises(AgentValidationError, match="must be a dict"):
            AgentLoader().load(path)

    def test_schema_violation_reports_location(self, tmp_path):
        bad = agent_def("a")
        del bad["system_prompt"]
        path = write_yaml(tmp_path / "agents.yaml", {"agents": [bad]})
        with pytest.raises(AgentValidationError, match="agents/0"):
            AgentLoader().load(path)

    def test_unknown_key_rejected(self, tmp_path):
        path = write_yaml(tmp_path / "agents.yaml", {"agents": [agent_def("a", color="red")]})
        with pytest.raises(AgentValidationError, match="Schema validation failed"):
            AgentLoader().load(path)

    def test_duplicate_names(self, tmp_path):
        path = write_yaml(tmp_path / "agents.yaml", {"agents": [agent_def("a"), agent_def("a")]})
        with pytest.raises(AgentValidationError, match="Duplicate agent name"):
            AgentLoader().load(path)

    def test_bad_template_syntax(self, tmp_path):
        path = write_yaml(
            tmp_path / "agents.yaml",
            {"agents": [agent_def("a", user_prompt_template="{% if context %}open")]},
        )
        with pytest.raises(AgentValidationError, match="Agent 'a'"):
            AgentLoader().load(path)


class TestSeedAgents:
    """Tests for seed_agents."""

    def test_seed_builtin(self, repo):
        result = seed_agents(repo, AgentLoader().load(BUILTIN_AGENTS))

        assert len(result.agents) == 5
        assert result.connections_created == 5
        assert result.connections_skipped == []
        assert len(repo.list_connections()) == 5

    def test_reseed_updates_in_place(self, repo):
        definitions = AgentLoader().load(BUILTIN_AGENTS)
        seed_agents(repo, definitions)
        original_id = repo.get_agent_by_name("bio").id

        result = seed_agents(repo, definitions)

        assert repo.get_agent_by_name("bio").id == original_id
        assert result.connections_created == 0
        assert len(result.connections_skipped) == 5
        assert all("already exists" in s for s in result.connections_skipped)

    def test_unknown_and_cyclic_connections_skipped(self, repo):
        definitions = AgentDefinitions(
            agents=[agent_def("a"), agent_def("b")],
            connections=[
                {"source": "a", "target": "b"},
                {"source": "b", "target": "a"},
                {"source": "a", "target": "ghost"},
            ],
        )
        result = seed_agents(repo, definitions)

        assert result.connections_created == 1
        assert result.connections_skipped == [
            "b -> a: This connection would create a cycle in the graph",
            "a -> ghost: unknown agent",
        ]
