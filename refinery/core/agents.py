"""Agent definitions loaded from YAML and seeded into the database.

A definitions file lists agents and, optionally, connections between them
by agent name. Files are validated against ``config/agent_schema.json``
before anything is written.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from refinery.core.errors import AgentValidationError, InvalidConnectionError, WorkflowError
from refinery.core.models import Agent
from refinery.core.prompts import PromptBuilder
from refinery.core.state import Repository

logger = logging.getLogger(__name__)

PACKAGE_CONFIG_DIR = Path(__file__).parent.parent / "config"
BUILTIN_AGENTS = PACKAGE_CONFIG_DIR / "agents.yaml"


@dataclass
class AgentDefinitions:
    agents: list[dict[str, Any]]
    connections: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class SeedResult:
    agents: list[str] = field(default_factory=list)
    connections_created: int = 0
    connections_skipped: list[str] = field(default_factory=list)


class AgentLoader:
    """Load and validate agent definition files."""

    def __init__(self) -> None:
        self._schema = self._load_schema()
        self._prompts = PromptBuilder()

    def _load_schema(self) -> dict:
        """Load JSON schema for agent validation.

        Raises AgentValidationError with actionable message on failure.
        """
        schema_path = PACKAGE_CONFIG_DIR / "agent_schema.json"
        try:
            with open(schema_path, encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError as e:
            raise AgentValidationError(
                f"Agent schema not found at {schema_path}. "
                f"Ensure refinery package is properly installed."
            ) from e
        except json.JSONDecodeError as e:
            raise AgentValidationError(f"Invalid JSON in agent schema at {schema_path}: {e}") from e

    def load(self, path: Path = BUILTIN_AGENTS) -> AgentDefinitions:
        config = self._load_yaml(path)
        try:
            jsonschema.validate(config, self._schema)
        except jsonschema.ValidationError as e:
            location = "/".join(str(part) for part in e.absolute_path)
            raise AgentValidationError(
                f"Schema validation failed in {path} at '{location}': {e.message}"
            ) from e
        except jsonschema.SchemaError as e:
            # Invalid schema definition (developer error, not user error)
            raise AgentValidationError(
                f"Invalid agent schema definition (bug in agent_schema.json): {e.message}"
            ) from e

        names = [a["name"] for a in config["agents"]]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise AgentValidationError(f"Duplicate agent name(s) in {path}: {duplicates}")

        for agent in config["agents"]:
            try:
                self._prompts.validate_template(agent["user_prompt_template"])
            except WorkflowError as e:
                raise AgentValidationError(f"Agent '{agent['name']}': {e.message}") from e

        return AgentDefinitions(
            agents=config["agents"], connections=config.get("connections", [])
        )

    def _load_yaml(self, path: Path) -> dict[str, Any]:
        """Load YAML file with proper error handling."""
        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise AgentValidationError(f"Agent file not found: {path}") from e
        except yaml.YAMLError as e:
            raise AgentValidationError(f"Invalid YAML in {path}: {e}") from e

        if config is None:
            raise AgentValidationError(f"Empty or invalid YAML file: {path}")

        if not isinstance(config, dict):
            raise AgentValidationError(
                f"Agent file must be a dict, got {type(config).__name__} in {path}"
            )
        return config


def seed_agents(repo: Repository, definitions: AgentDefinitions) -> SeedResult:
    """Upsert agents by name, then create the listed connections.

    Existing connections are left alone; ones that would be rejected
    (duplicate, cycle, unknown agent) are reported rather than raised.
    """
    result = SeedResult()
    stored: dict[str, Agent] = {}
    for entry in definitions.agents:
        existing = repo.get_agent_by_name(entry["name"])
        agent = Agent(
            id=existing.id if existing else str(uuid.uuid4()),
            name=entry["name"],
            display_name=entry["display_name"],
            description=entry.get("description"),
            system_prompt=entry["system_prompt"],
            user_prompt_template=entry["user_prompt_template"],
            order=entry.get("order", 0),
            is_active=entry.get("is_active", True),
        )
        stored[agent.name] = repo.upsert_agent(agent)
        result.agents.append(agent.name)

    for entry in definitions.connections:
        label = f"{entry['source']} -> {entry['target']}"
        source = stored.get(entry["source"]) or repo.get_agent_by_name(entry["source"])
        target = stored.get(entry["target"]) or repo.get_agent_by_name(entry["target"])
        if source is None or target is None:
            result.connections_skipped.append(f"{label}: unknown agent")
            continue
        try:
            repo.create_connection(
                source.id,
                target.id,
                order=entry.get("order", 0),
                is_active=entry.get("is_active", True),
            )
            result.connections_created += 1
        except InvalidConnectionError as e:
            result.connections_skipped.append(f"{label}: {e.message}")

    logger.info(
        f"Seeded {len(result.agents)} agent(s), {result.connections_created} connection(s)"
    )
    return result
