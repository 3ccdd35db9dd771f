"""Tests for the launch handler and the per-agent execution coordinator.

Tests cover:
- Input resolution from finished children
- Step lifecycle around one processor call (input summary, output, audit log)
- Skipping work for cancelled executions
- Failure recording and retry re-entry
- Launch: step snapshot, job flow submission, launch failures
"""

from __future__ import annotations

import asyncio

import pytest

from refinery.core.coordinator import ExecutionCoordinator, LaunchHandler, resolve_input
from refinery.core.errors import AgentProcessorError
from refinery.core.models import ExecutionStatus, LaunchJobData, StepStatus
from refinery.core.queue import JobStatus

ORIGINAL = "# CV\n\nJane Doe"


def launch(engine, context=None) -> str:
    """Start an execution and run only its orchestration job."""
    execution_id = engine.service.start("doc-1", context=context)
    assert asyncio.run(engine.worker.pools[0].run_once()) == 1
    return execution_id


def step_for(engine, execution_id, agent):
    return next(s for s in engine.repo.list_steps(execution_id) if s.agent_id == agent.id)


@pytest.fixture
def coordinator(engine, fake_processor) -> ExecutionCoordinator:
    return ExecutionCoordinator(engine.repo, engine.agent_queue, fake_processor)


# =============================================================================
# Input Resolution
# =============================================================================


class TestResolveInput:
    """Tests for picking the working document."""

    def test_no_children_uses_original(self):
        assert resolve_input({}, "original") == "original"

    def test_last_successful_child_wins(self):
        children = {
            "exec-1-agent-b": {"success": True, "output": "from b"},
            "exec-1-agent-c": {"success": True, "output": "from c"},
        }
        assert resolve_input(children, "original") == "from c"

    def test_order_is_by_job_id_not_insertion(self):
        children = {
            "exec-1-agent-z": {"success": True, "output": "from z"},
            "exec-1-agent-a": {"success": True, "output": "from a"},
        }
        assert resolve_input(children, "original") == "from z"

    def test_unusable_children_ignored(self):
        children = {
            "exec-1-agent-a": {"success": True, "output": "from a"},
            "exec-1-agent-b": {"success": False, "skipped": True, "output": None},
            "exec-1-agent-c": {"success": True, "output": ""},
            "exec-1-agent-d": None,
        }
        assert resolve_input(children, "original") == "from a"

    def test_all_children_unusable_falls_back(self):
        children = {"exec-1-agent-a": {"success": False, "output": None}}
        assert resolve_input(children, "original") == "original"


# =============================================================================
# ExecutionCoordinator
# =============================================================================


class TestExecutionCoordinator:
    """Tests for processing one agent job."""

    def test_root_step_runs_on_original_document(self, engine, chain, coordinator, fake_processor):
        execution_id = launch(engine)
        job = engine.agent_queue.claim()

        result = asyncio.run(coordinator.process(job))

        assert result["success"] is True
        assert result["skipped"] is False
        assert result["output"] == f"{ORIGINAL}\n<a>"
        assert fake_processor.calls_for("a") == [f"{ORIGINAL}\n"]

        step = step_for(engine, execution_id, chain[0])
        assert step.status == StepStatus.COMPLETED
        assert step.job_id == job.id
        assert step.output_markdown == f"{ORIGINAL}\n<a>"
        assert step.output_data == {"markdown_length": len(result["output"]), "agent_name": "a"}
        assert step.input_data == {
            "markdown_length": len(ORIGINAL),
            "has_context": False,
            "children_count": 0,
        }

    def test_audit_log_written(self, engine, chain, coordinator):
        execution_id = launch(engine)
        asyncio.run(coordinator.process(engine.agent_queue.claim()))

        logs = engine.repo.get_execution_logs(execution_id=execution_id)
        assert len(logs) == 1
        assert logs[0].agent_id == chain[0].id
        assert logs[0].system_prompt == "You are a."
        assert logs[0].input_markdown == ORIGINAL
        assert logs[0].output_markdown == f"{ORIGINAL}\n<a>"
        assert logs[0].success is True
        assert logs[0].duration_ms >= 0

    def test_context_reaches_prompt(self, engine, chain, coordinator, fake_processor):
        launch(engine, context="Banking mission")
        asyncio.run(coordinator.process(engine.agent_queue.claim()))

        assert "Notes: Banking mission" in fake_processor.calls_for("a")[0]

    def test_child_output_feeds_parent(self, engine, chain, coordinator, fake_processor):
        execution_id = launch(engine)
        job_a = engine.agent_queue.claim()
        engine.agent_queue.complete(job_a.id, asyncio.run(coordinator.process(job_a)))

        job_b = engine.agent_queue.claim()
        asyncio.run(coordinator.process(job_b))

        assert fake_processor.calls_for("b") == [f"{ORIGINAL}\n<a>\n"]
        step_b = step_for(engine, execution_id, chain[1])
        assert step_b.input_data["children_count"] == 1

    def test_cancelled_execution_skips_processor(self, engine, chain, coordinator, fake_processor):
        execution_id = launch(engine)
        job = engine.agent_queue.claim()
        engine.service.cancel(execution_id)

        result = asyncio.run(coordinator.process(job))

        assert result["skipped"] is True
        assert result["success"] is False
        assert fake_processor.calls == []
        assert step_for(engine, execution_id, chain[0]).status == StepStatus.SKIPPED

    def test_processor_failure_marks_step_failed(self, engine, chain, coordinator, fake_processor):
        fake_processor.failures["a"] = -1
        execution_id = launch(engine)

        with pytest.raises(AgentProcessorError, match="processor failed for a"):
            asyncio.run(coordinator.process(engine.agent_queue.claim()))

        step = step_for(engine, execution_id, chain[0])
        assert step.status == StepStatus.FAILED
        assert step.error == "processor failed for a"
        logs = engine.repo.get_execution_logs(execution_id=execution_id)
        assert [log.success for log in logs] == [False]

    def test_missing_agent_fails_step(self, engine, chain, coordinator):
        execution_id = launch(engine)
        engine.repo.delete_agent(chain[0].id, force=True)

        with pytest.raises(AgentProcessorError, match="Agent not found"):
            asyncio.run(coordinator.process(engine.agent_queue.claim()))
        assert step_for(engine, execution_id, chain[0]).status == StepStatus.FAILED

    def test_retry_reenters_failed_step(self, engine, chain, fake_processor):
        """A failed attempt leaves the step FAILED; the retry runs it again."""
        fake_processor.failures["a"] = 1
        execution_id = launch(engine)
        agent_pool = engine.worker.pools[1]

        asyncio.run(agent_pool.run_once())
        step = step_for(engine, execution_id, chain[0])
        assert step.status == StepStatus.FAILED
        assert engine.agent_queue.get_job(step.job_id).status == JobStatus.DELAYED

        asyncio.run(agent_pool.run_once())
        assert step_for(engine, execution_id, chain[0]).status == StepStatus.COMPLETED
        assert len(fake_processor.calls_for("a")) == 2


# =============================================================================
# LaunchHandler
# =============================================================================


class TestLaunchHandler:
    """Tests for the orchestration job."""

    def test_launch_snapshots_steps_and_submits_flow(self, engine, chain):
        execution_id = launch(engine)

        assert engine.repo.get_execution(execution_id).status == ExecutionStatus.RUNNING
        steps = {s.agent_id: s for s in engine.repo.list_steps(execution_id)}
        assert steps[chain[0].id].status == StepStatus.PENDING
        assert steps[chain[1].id].status == StepStatus.WAITING_INPUTS
        assert steps[chain[2].id].status == StepStatus.WAITING_INPUTS
        assert steps[chain[2].id].job_id == f"exec-{execution_id}-agent-{chain[2].id}"

        counts = engine.agent_queue.counts()
        assert counts[JobStatus.WAITING.value] == 1
        assert counts[JobStatus.WAITING_CHILDREN.value] == 2

        launch_job = engine.orchestration_queue.get_job(f"workflow-{execution_id}")
        assert launch_job.status == JobStatus.COMPLETED
        assert launch_job.result == {
            "execution_id": execution_id,
            "status": "JOBS_CREATED",
            "jobs": 3,
        }

    def test_excluded_agent_not_snapshotted(self, engine, engine_agent, chain):
        extraction = engine_agent("extraction", order=9)
        engine.repo.create_connection(extraction.id, chain[0].id)

        execution_id = launch(engine)
        agent_ids = {s.agent_id for s in engine.repo.list_steps(execution_id)}
        assert extraction.id not in agent_ids
        assert len(agent_ids) == 3

    def test_missing_document_fails_execution(self, engine, chain):
        execution_id = engine.service.start("doc-1")
        engine.documents.path_for("doc-1").unlink()

        asyncio.run(engine.worker.pools[0].run_once())

        execution = engine.repo.get_execution(execution_id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == "Document not found or has no content: doc-1"
        assert engine.repo.list_steps(execution_id) == []

    def test_launch_skipped_when_not_pending(self, engine, chain):
        execution = engine.repo.create_execution("doc-1")
        with engine.repo.db.transaction() as conn:
            engine.repo.transition_execution(
                conn, execution.id, ExecutionStatus.CANCELLED, [ExecutionStatus.PENDING]
            )
        handler = LaunchHandler(engine.repo, engine.agent_queue, engine.documents)

        result = handler.launch(LaunchJobData(execution_id=execution.id, document_id="doc-1"))

        assert result == {"execution_id": execution.id, "status": "SKIPPED"}
        assert engine.repo.list_steps(execution.id) == []
