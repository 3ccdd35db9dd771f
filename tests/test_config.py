"""Tests for project configuration loading."""

from __future__ import annotations

import pytest
import yaml

from refinery.core.config import (
    CONFIG_DIR,
    CONFIG_FILE,
    DEFAULT_CONFIG_YAML,
    QueuePolicy,
    Settings,
    load_settings,
)
from refinery.core.errors import ConfigError


def write_config(root, text: str) -> None:
    config_dir = root / CONFIG_DIR
    config_dir.mkdir(exist_ok=True)
    (config_dir / CONFIG_FILE).write_text(text, encoding="utf-8")


class TestLoadSettings:
    """Tests for load_settings."""

    def test_defaults_without_file(self, tmp_path):
        settings = load_settings(tmp_path)

        assert settings.database == tmp_path.resolve() / ".refinery" / "state.db"
        assert settings.documents_dir == tmp_path.resolve() / ".refinery" / "documents"
        assert settings.agent_queue.attempts == 3
        assert settings.orchestration_queue.attempts == 1
        assert settings.excluded_agents == ["extraction"]
        assert settings.processor.command == ["claude", "-p"]

    def test_default_file_matches_defaults(self, tmp_path):
        write_config(tmp_path, DEFAULT_CONFIG_YAML)
        assert load_settings(tmp_path) == Settings().resolve_paths(tmp_path.resolve())

    def test_overrides(self, tmp_path):
        write_config(
            tmp_path,
            yaml.safe_dump(
                {
                    "worker": {"concurrency": 8},
                    "agent_queue": {"attempts": 5, "backoff": "fixed", "delay": 1},
                    "excluded_agents": [],
                    "processor": {"command": ["codex", "exec"], "timeout": 60},
                }
            ),
        )
        settings = load_settings(tmp_path)

        assert settings.worker.concurrency == 8
        assert settings.agent_queue == QueuePolicy(attempts=5, backoff="fixed", delay=1)
        assert settings.excluded_agents == []
        assert settings.processor.command == ["codex", "exec"]

    def test_absolute_paths_kept(self, tmp_path):
        db_path = tmp_path / "elsewhere" / "db.sqlite"
        write_config(tmp_path, yaml.safe_dump({"database": str(db_path)}))
        assert load_settings(tmp_path).database == db_path

    def test_empty_file_uses_defaults(self, tmp_path):
        write_config(tmp_path, "")
        assert load_settings(tmp_path).stale_timeout_minutes == 30

    def test_invalid_value(self, tmp_path):
        write_config(tmp_path, yaml.safe_dump({"worker": {"concurrency": 0}}))
        with pytest.raises(ConfigError, match="Invalid config value for 'worker.concurrency'"):
            load_settings(tmp_path)

    def test_invalid_backoff(self, tmp_path):
        write_config(tmp_path, yaml.safe_dump({"agent_queue": {"backoff": "random"}}))
        with pytest.raises(ConfigError, match="agent_queue.backoff"):
            load_settings(tmp_path)

    def test_invalid_yaml(self, tmp_path):
        write_config(tmp_path, "worker: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_settings(tmp_path)

    def test_not_a_mapping(self, tmp_path):
        write_config(tmp_path, "- a\n- b\n")
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_settings(tmp_path)


class TestQueuePolicy:
    def test_to_retry_policy(self):
        policy = QueuePolicy(attempts=3, backoff="exponential", delay=2.0).to_retry_policy()
        assert policy.max_attempts == 3
        assert policy.get_delay(2) == 4.0
