# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Refinery test suite.

This module provides foundational fixtures used across all test modules:
- Temporary databases and repositories
- Agent factories and small sample graphs (chain, diamond)
- A recording fake agent processor
- A fully wired engine with zero retry delay

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from refinery.core.config import QueuePolicy, Settings, WorkerSettings
from refinery.core.errors import AgentProcessorError
from refinery.core.models import Agent
from refinery.core.service import Engine, build_engine
from refinery.core.state import Database, Repository

DEFAULT_TEMPLATE = "{{ markdown }}\n{% if context %}\nNotes: {{ context }}\n{% endif %}"


# =============================================================================
# Database and State Management Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a fresh SQLite database in a temporary directory.

    Returns:
        Initialized Database instance.
    """
    return Database(tmp_path / "test.db")


@pytest.fixture
def repo(test_db: Database) -> Repository:
    """Repository over the temporary test database."""
    return Repository(test_db)


def _agent_factory(repository: Repository) -> Callable[..., Agent]:
    def make(name: str, order: int = 0, **overrides) -> Agent:
        fields = {
            "display_name": name.title(),
            "system_prompt": f"You are {name}.",
            "user_prompt_template": DEFAULT_TEMPLATE,
            "order": order,
            "agent_id": f"agent-{name}",
        }
        fields.update(overrides)
        return repository.create_agent(name=name, **fields)

    return make


@pytest.fixture
def make_agent(repo: Repository) -> Callable[..., Agent]:
    """Factory creating agents with predictable ids (``agent-<name>``).

    Example:
        def test_something(make_agent, repo):
            a = make_agent("a")
            b = make_agent("b", order=1)
            repo.create_connection(a.id, b.id)
    """
    return _agent_factory(repo)


# =============================================================================
# Agent Processor Fixtures
# =============================================================================


class FakeProcessor:
    """Records every call and appends ``<name>`` to the user prompt.

    The agent name is read back from the ``You are <name>.`` system prompt
    used by the agent factory. ``failures`` maps an agent name to how many
    calls should raise before succeeding (-1 raises forever).
    """

    def __init__(self, failures: dict[str, int] | None = None):
        self.failures = dict(failures or {})
        self.calls: list[tuple[str, str]] = []

    @staticmethod
    def agent_name(system_prompt: str) -> str:
        return system_prompt.removeprefix("You are ").rstrip(".")

    def calls_for(self, name: str) -> list[str]:
        return [user for system, user in self.calls if self.agent_name(system) == name]

    def __call__(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        name = self.agent_name(system_prompt)
        remaining = self.failures.get(name, 0)
        if remaining:
            if remaining > 0:
                self.failures[name] = remaining - 1
            raise AgentProcessorError(f"processor failed for {name}", agent_name=name)
        return f"{user_prompt.strip()}\n<{name}>"


@pytest.fixture
def fake_processor() -> FakeProcessor:
    return FakeProcessor()


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings for a throwaway project: no retry delay, fast polling."""
    return Settings(
        database=tmp_path / "state.db",
        documents_dir=tmp_path / "documents",
        worker=WorkerSettings(concurrency=2, poll_interval=0.01),
        agent_queue=QueuePolicy(attempts=3, backoff="fixed", delay=0),
    )


@pytest.fixture
def engine(settings: Settings, fake_processor: FakeProcessor) -> Engine:
    """Fully wired engine using the fake processor, with document ``doc-1`` stored."""
    eng = build_engine(settings, processor=fake_processor)
    eng.documents.save("doc-1", "# CV\n\nJane Doe")
    return eng


@pytest.fixture
def engine_agent(engine: Engine) -> Callable[..., Agent]:
    """Agent factory bound to the engine's repository."""
    return _agent_factory(engine.repo)


@pytest.fixture
def chain(engine: Engine, engine_agent) -> list[Agent]:
    """a -> b -> c"""
    a, b, c = engine_agent("a"), engine_agent("b", order=1), engine_agent("c", order=2)
    engine.repo.create_connection(a.id, b.id)
    engine.repo.create_connection(b.id, c.id)
    return [a, b, c]


@pytest.fixture
def diamond(engine: Engine, engine_agent) -> list[Agent]:
    """a -> b, a -> c, b -> d, c -> d"""
    a = engine_agent("a")
    b = engine_agent("b", order=1)
    c = engine_agent("c", order=2)
    d = engine_agent("d", order=3)
    for source, target in ((a, b), (a, c), (b, d), (c, d)):
        engine.repo.create_connection(source.id, target.id)
    return [a, b, c, d]
