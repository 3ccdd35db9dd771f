"""Project configuration loaded from ``.refinery/config.yaml``.

Missing file or missing keys fall back to defaults. Anything present must
validate, otherwise ``ConfigError`` is raised with the offending field.
"""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from refinery.core.errors import ConfigError
from refinery.core.queue import RetryPolicy

CONFIG_DIR = ".refinery"
CONFIG_FILE = "config.yaml"

AGENT_QUEUE = "agent-execution"
ORCHESTRATION_QUEUE = "workflow-orchestration"


class QueuePolicy(BaseModel):
    """Retry settings for one queue."""

    attempts: int = Field(default=1, ge=1)
    backoff: Literal["fixed", "exponential"] = "exponential"
    delay: float = Field(default=2.0, ge=0)  # seconds

    def to_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.attempts, backoff=self.backoff, delay=self.delay)


class ProcessorSettings(BaseModel):
    """External agent processor command."""

    command: list[str] = Field(default_factory=lambda: ["claude", "-p"])
    timeout: float = Field(default=300.0, gt=0)


class WorkerSettings(BaseModel):
    concurrency: int = Field(default=4, ge=1)
    poll_interval: float = Field(default=1.0, gt=0)


class Settings(BaseModel):
    """Top-level configuration model."""

    database: Path = Path(CONFIG_DIR) / "state.db"
    documents_dir: Path = Path(CONFIG_DIR) / "documents"
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    agent_queue: QueuePolicy = Field(
        default_factory=lambda: QueuePolicy(attempts=3, backoff="exponential", delay=2.0)
    )
    orchestration_queue: QueuePolicy = Field(default_factory=QueuePolicy)
    excluded_agents: list[str] = Field(default_factory=lambda: ["extraction"])
    fail_parent_on_failure: bool = True
    stale_timeout_minutes: int = Field(default=30, ge=1)
    processor: ProcessorSettings = Field(default_factory=ProcessorSettings)

    def resolve_paths(self, base: Path) -> "Settings":
        """Make relative paths absolute against the project root."""
        updates: dict[str, Any] = {}
        if not self.database.is_absolute():
            updates["database"] = base / self.database
        if not self.documents_dir.is_absolute():
            updates["documents_dir"] = base / self.documents_dir
        return self.model_copy(update=updates)


def load_settings(repo_path: Path | None = None) -> Settings:
    """Load settings for the project rooted at ``repo_path`` (default: cwd)."""
    base = (repo_path or Path.cwd()).resolve()
    config_path = base / CONFIG_DIR / CONFIG_FILE
    if not config_path.exists():
        return Settings().resolve_paths(base)

    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Config must be a mapping, got {type(data).__name__} in {config_path}"
        )

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise ConfigError(
            f"Invalid config value for '{location}': {first['msg']}",
            details={"path": str(config_path)},
        ) from e
    return settings.resolve_paths(base)


DEFAULT_CONFIG_YAML = """# Refinery configuration for this project

# SQLite file holding agents, executions and the job queue
database: .refinery/state.db

# Markdown documents, one file per document id: <documents_dir>/<id>.md
documents_dir: .refinery/documents

worker:
  concurrency: 4
  poll_interval: 1.0

# Per-agent jobs are retried; the one-shot launch job is not
agent_queue:
  attempts: 3
  backoff: exponential
  delay: 2.0
orchestration_queue:
  attempts: 1

# Agents that never take part in a graph run
excluded_agents:
  - extraction

fail_parent_on_failure: true
stale_timeout_minutes: 30

processor:
  command: ["claude", "-p"]
  timeout: 300
"""
