"""Job handlers run by the worker pools.

``LaunchHandler`` processes the one-shot orchestration job: it moves the
execution to RUNNING, snapshots the participating agents as steps, compiles
the graph and submits the flow. ``ExecutionCoordinator`` processes one agent
job: it claims the step, resolves the input document from finished children,
calls the agent processor and records the outcome.

Both run blocking repository and processor calls through
``asyncio.to_thread`` so a pool slot never blocks the event loop.
"""

import asyncio
import logging
import time
from collections.abc import Iterable
from typing import Any

from refinery.core.compiler import WorkflowCompiler, job_id_for
from refinery.core.documents import DocumentLoader
from refinery.core.errors import (
    AgentNotFoundError,
    AgentProcessorError,
    DocumentNotFoundError,
    WorkflowError,
)
from refinery.core.graph import GraphValidator, require_valid
from refinery.core.models import (
    ACTIVE_EXECUTION_STATUSES,
    AgentExecutionLog,
    AgentJobData,
    AgentJobResult,
    ExecutionStatus,
    LaunchJobData,
    StepStatus,
    utc_now,
)
from refinery.core.processor import AgentProcessor
from refinery.core.prompts import PromptBuilder
from refinery.core.queue import Job, JobQueue
from refinery.core.state import Repository

logger = logging.getLogger(__name__)


def resolve_input(children_values: dict[str, Any], original: str) -> str:
    """Pick the working document from finished children.

    Children are ordered by job id and the last successful one with output
    wins; sibling outputs are not merged. No usable child means the
    original document.
    """
    usable = [
        value["output"]
        for _, value in sorted(children_values.items())
        if isinstance(value, dict) and value.get("success") and value.get("output")
    ]
    return usable[-1] if usable else original


class ExecutionCoordinator:
    """Runs one agent step per agent job."""

    def __init__(
        self,
        repo: Repository,
        queue: JobQueue,
        processor: AgentProcessor,
        prompts: PromptBuilder | None = None,
    ):
        self.repo = repo
        self.queue = queue
        self.processor = processor
        self.prompts = prompts or PromptBuilder()

    async def process(self, job: Job) -> dict[str, Any]:
        data = AgentJobData.model_validate(job.data)

        started = await asyncio.to_thread(self._mark_running, job, data)
        if not started:
            # Execution terminal or step already finished (e.g. cancelled)
            logger.info(f"Job {job.id}: step {data.step_id} not runnable, skipping")
            return AgentJobResult(
                step_id=data.step_id, agent_id=data.agent_id, success=False, skipped=True
            ).model_dump()

        try:
            return await self._run_step(job, data)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Job {job.id} failed: {message}")
            await asyncio.to_thread(self._mark_failed, data.step_id, message)
            if isinstance(e, AgentProcessorError):
                raise
            raise AgentProcessorError(message) from e

    def _mark_running(self, job: Job, data: AgentJobData) -> bool:
        expected = [StepStatus.PENDING, StepStatus.WAITING_INPUTS]
        if job.attempts_made > 1:
            expected.append(StepStatus.FAILED)
        return self.repo.transition_step(
            data.step_id,
            StepStatus.RUNNING,
            expected,
            require_active_execution=True,
            job_id=job.id,
            started_at=utc_now(),
            completed_at=None,
            error=None,
        )

    def _mark_failed(self, step_id: str, message: str) -> None:
        applied = self.repo.transition_step(
            step_id,
            StepStatus.FAILED,
            [StepStatus.RUNNING],
            completed_at=utc_now(),
            error=message,
        )
        if not applied:
            logger.info(f"Step {step_id} no longer RUNNING; failure not recorded on step")

    async def _run_step(self, job: Job, data: AgentJobData) -> dict[str, Any]:
        children = await asyncio.to_thread(self.queue.get_children_values, job.id)
        markdown = resolve_input(children, data.markdown)
        if len(children) > 1:
            logger.info(f"Job {job.id}: {len(children)} inputs, using last in job id order")

        agent = await asyncio.to_thread(self.repo.get_agent, data.agent_id)
        if agent is None:
            raise AgentNotFoundError(data.agent_id)
        prompts = self.prompts.build(agent, markdown, data.context)

        await asyncio.to_thread(
            self.repo.update_step_fields,
            data.step_id,
            input_data={
                "markdown_length": len(markdown),
                "has_context": bool(data.context),
                "children_count": len(children),
            },
        )

        log = AgentExecutionLog(
            agent_id=agent.id,
            document_id=data.document_id,
            execution_id=data.execution_id,
            step_id=data.step_id,
            system_prompt=prompts.system,
            user_prompt=prompts.user,
            input_markdown=markdown,
            context=data.context,
        )
        start = time.monotonic()
        try:
            output = await asyncio.to_thread(self.processor, prompts.system, prompts.user)
        except Exception as e:
            log.duration_ms = int((time.monotonic() - start) * 1000)
            log.success = False
            log.error = str(e) or type(e).__name__
            await asyncio.to_thread(self.repo.append_execution_log, log)
            if isinstance(e, AgentProcessorError):
                raise
            raise AgentProcessorError(log.error, agent_name=agent.name) from e

        log.duration_ms = int((time.monotonic() - start) * 1000)
        log.output_markdown = output
        await asyncio.to_thread(self.repo.append_execution_log, log)

        completed = await asyncio.to_thread(
            self.repo.transition_step,
            data.step_id,
            StepStatus.COMPLETED,
            [StepStatus.RUNNING],
            completed_at=utc_now(),
            output_data={"markdown_length": len(output), "agent_name": agent.name},
            output_markdown=output,
        )
        if not completed:
            logger.info(f"Job {job.id}: step {data.step_id} left RUNNING meanwhile, output discarded")

        logger.info(f"Job {job.id} ({agent.name}) completed in {log.duration_ms}ms")
        return AgentJobResult(
            step_id=data.step_id,
            agent_id=data.agent_id,
            output=output,
            success=True,
            skipped=not completed,
        ).model_dump()


class LaunchHandler:
    """Processes orchestration jobs: snapshot steps, compile and submit."""

    def __init__(
        self,
        repo: Repository,
        agent_queue: JobQueue,
        load_document: DocumentLoader,
        compiler: WorkflowCompiler | None = None,
        excluded_agents: Iterable[str] = ("extraction",),
    ):
        self.repo = repo
        self.agent_queue = agent_queue
        self.load_document = load_document
        self.compiler = compiler or WorkflowCompiler()
        self.excluded_agents = list(excluded_agents)

    async def process(self, job: Job) -> dict[str, Any]:
        data = LaunchJobData.model_validate(job.data)
        logger.info(f"Starting workflow {data.execution_id} for document {data.document_id}")
        try:
            return await asyncio.to_thread(self.launch, data)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Workflow {data.execution_id} failed to launch: {message}")
            await asyncio.to_thread(self._fail_execution, data.execution_id, message)
            raise

    def launch(self, data: LaunchJobData) -> dict[str, Any]:
        with self.repo.db.transaction() as conn:
            started = self.repo.transition_execution(
                conn, data.execution_id, ExecutionStatus.RUNNING, [ExecutionStatus.PENDING]
            )
        if not started:
            logger.info(f"Workflow {data.execution_id} is no longer PENDING, not launching")
            return {"execution_id": data.execution_id, "status": "SKIPPED"}

        markdown = self.load_document(data.document_id)
        if not markdown:
            raise DocumentNotFoundError(data.document_id)

        graph = GraphValidator(
            self.repo.list_agents(active_only=True),
            self.repo.list_connections(active_only=True),
            active_only=True,
            excluded_names=self.excluded_agents,
        ).build()
        require_valid(graph)
        if not graph.nodes:
            raise WorkflowError("No active agents found")

        initial = {
            node.id: StepStatus.PENDING if node.is_root else StepStatus.WAITING_INPUTS
            for node in graph.nodes
        }
        job_ids = {node.id: job_id_for(data.execution_id, node.id) for node in graph.nodes}
        with self.repo.db.transaction() as conn:
            execution = self.repo.get_execution_in_txn(conn, data.execution_id)
            if execution is None or execution.status != ExecutionStatus.RUNNING:
                logger.info(f"Workflow {data.execution_id} left RUNNING during launch")
                return {"execution_id": data.execution_id, "status": "SKIPPED"}
            step_ids = self.repo.create_steps(conn, data.execution_id, initial, job_ids)

        plan = self.compiler.compile(
            graph,
            execution_id=data.execution_id,
            document_id=data.document_id,
            markdown=markdown,
            step_ids=step_ids,
            context=data.context,
        )
        self.agent_queue.add_flow(plan.roots)

        logger.info(f"Workflow {data.execution_id}: {len(plan.jobs)} job(s) created")
        return {
            "execution_id": data.execution_id,
            "status": "JOBS_CREATED",
            "jobs": len(plan.jobs),
        }

    def _fail_execution(self, execution_id: str, message: str) -> None:
        with self.repo.db.transaction() as conn:
            self.repo.transition_execution(
                conn,
                execution_id,
                ExecutionStatus.FAILED,
                ACTIVE_EXECUTION_STATUSES,
                completed_at=utc_now(),
                error=message,
            )
