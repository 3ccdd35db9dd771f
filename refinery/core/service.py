"""Graph read API and execution control API.

``WorkflowService`` is the surface used by the CLI (and any other front
end). ``build_engine`` wires the database, queues, tracker, handlers and
worker pools from ``Settings``.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from refinery.core.compiler import WorkflowCompiler, launch_job_id_for
from refinery.core.config import AGENT_QUEUE, ORCHESTRATION_QUEUE, Settings
from refinery.core.coordinator import ExecutionCoordinator, LaunchHandler
from refinery.core.documents import DocumentLoader, FileDocumentStore
from refinery.core.errors import (
    AgentNotFoundError,
    DocumentNotFoundError,
    ExecutionNotFoundError,
    InvalidConnectionError,
    WorkflowError,
)
from refinery.core.graph import GraphValidator, require_valid
from refinery.core.models import (
    Agent,
    AgentExecutionLog,
    CancelResult,
    Connection,
    ExecutionStatus,
    Graph,
    LaunchJobData,
    WorkflowExecution,
)
from refinery.core.processor import AgentProcessor, CommandAgentProcessor
from refinery.core.queue import JobQueue
from refinery.core.state import Database, Repository
from refinery.core.tracker import ProgressTracker, progress_of, summarize_steps
from refinery.core.worker import WorkerPool, WorkflowWorker

logger = logging.getLogger(__name__)

LAUNCH_JOB_NAME = "orchestrate-workflow"


class WorkflowService:
    """Graph reads, connection management and execution control."""

    def __init__(
        self,
        repo: Repository,
        orchestration_queue: JobQueue,
        tracker: ProgressTracker,
        load_document: DocumentLoader,
        excluded_agents: list[str] | None = None,
    ):
        self.repo = repo
        self.orchestration_queue = orchestration_queue
        self.tracker = tracker
        self.load_document = load_document
        self.excluded_agents = ["extraction"] if excluded_agents is None else excluded_agents

    # ========== Graph ==========

    def get_graph(self, active_only: bool = False) -> Graph:
        """Current agent graph. Recomputed on every call, never cached."""
        return GraphValidator(
            self.repo.list_agents(active_only=active_only),
            self.repo.list_connections(active_only=True),
            active_only=active_only,
        ).build()

    def get_execution_graph(self) -> Graph:
        """The graph a run started now would use: active agents minus excluded."""
        return GraphValidator(
            self.repo.list_agents(active_only=True),
            self.repo.list_connections(active_only=True),
            active_only=True,
            excluded_names=self.excluded_agents,
        ).build()

    def resolve_agent(self, ref: str) -> Agent:
        """Look an agent up by id, falling back to its name."""
        agent = self.repo.get_agent(ref) or self.repo.get_agent_by_name(ref)
        if agent is None:
            raise AgentNotFoundError(ref)
        return agent

    def connect(self, source_ref: str, target_ref: str, order: int = 0) -> Connection:
        source = self.resolve_agent(source_ref)
        target = self.resolve_agent(target_ref)
        connection = self.repo.create_connection(source.id, target.id, order=order)
        logger.info(f"Connected {source.name} -> {target.name}")
        return connection

    def disconnect(self, source_ref: str, target_ref: str) -> None:
        source = self.resolve_agent(source_ref)
        target = self.resolve_agent(target_ref)
        for conn in self.repo.list_connections(active_only=False):
            if conn.source_agent_id == source.id and conn.target_agent_id == target.id:
                self.repo.delete_connection(conn.id)
                logger.info(f"Disconnected {source.name} -> {target.name}")
                return
        raise InvalidConnectionError(f"No connection from {source.name} to {target.name}")

    # ========== Executions ==========

    def start(self, document_id: str, context: str | None = None) -> str:
        """Validate, create the execution and queue its launch job.

        Everything that can be checked up front raises here, before any
        job is submitted.
        """
        if not self.load_document(document_id):
            raise DocumentNotFoundError(document_id)

        graph = require_valid(self.get_execution_graph())
        if not graph.nodes:
            raise WorkflowError("No active agents configured")

        execution = self.repo.create_execution(
            document_id, input_data={"context": context} if context else None
        )
        payload = LaunchJobData(
            execution_id=execution.id, document_id=document_id, context=context
        )
        self.orchestration_queue.add(
            LAUNCH_JOB_NAME, payload.model_dump(), job_id=launch_job_id_for(execution.id)
        )
        logger.info(f"Queued workflow {execution.id} for document {document_id}")
        return execution.id

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = self.repo.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def get_status(self, execution_id: str) -> dict[str, Any]:
        """Status view built from one read snapshot of the execution and its steps."""
        with self.repo.db.snapshot() as conn:
            execution = self.repo.get_execution_in_txn(conn, execution_id)
            steps = self.repo.list_steps_in_txn(conn, execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        agents = {a.id: a for a in self.repo.list_agents()}
        return {
            "id": execution.id,
            "documentId": execution.document_id,
            "status": execution.status.value,
            "error": execution.error,
            "startedAt": execution.started_at.isoformat(),
            "completedAt": execution.completed_at.isoformat() if execution.completed_at else None,
            "progress": progress_of(steps).model_dump(),
            "summary": summarize_steps(steps),
            "steps": [
                {
                    "id": step.id,
                    "agentId": step.agent_id,
                    "agentName": agents[step.agent_id].name if step.agent_id in agents else None,
                    "agentDisplayName": (
                        agents[step.agent_id].display_name if step.agent_id in agents else None
                    ),
                    "status": step.status.value,
                    "startedAt": step.started_at.isoformat() if step.started_at else None,
                    "completedAt": step.completed_at.isoformat() if step.completed_at else None,
                    "error": step.error,
                }
                for step in steps
            ],
        }

    def cancel(self, execution_id: str) -> CancelResult:
        return self.tracker.cancel(execution_id)

    def list_executions(
        self,
        document_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        return self.repo.list_executions(
            document_id=document_id, status=status, limit=limit, offset=offset
        )

    def get_logs(self, execution_id: str) -> list[AgentExecutionLog]:
        self.get_execution(execution_id)
        return self.repo.get_execution_logs(execution_id=execution_id)

    def cleanup_stale(self, max_age: timedelta) -> list[str]:
        return self.tracker.cleanup_stale(max_age)


@dataclass
class Engine:
    """Everything one process needs to run workflows."""

    repo: Repository
    documents: FileDocumentStore
    orchestration_queue: JobQueue
    agent_queue: JobQueue
    tracker: ProgressTracker
    service: WorkflowService
    worker: WorkflowWorker


def build_engine(
    settings: Settings,
    processor: AgentProcessor | None = None,
    documents: FileDocumentStore | None = None,
) -> Engine:
    db = Database(settings.database)
    repo = Repository(db)
    documents = documents or FileDocumentStore(settings.documents_dir)

    orchestration_queue = JobQueue(
        db, ORCHESTRATION_QUEUE, settings.orchestration_queue.to_retry_policy()
    )
    agent_queue = JobQueue(db, AGENT_QUEUE, settings.agent_queue.to_retry_policy())

    tracker = ProgressTracker(repo, agent_queue, orchestration_queue)
    tracker.attach()

    processor = processor or CommandAgentProcessor(
        settings.processor.command, timeout=settings.processor.timeout
    )
    launcher = LaunchHandler(
        repo,
        agent_queue,
        documents,
        compiler=WorkflowCompiler(fail_parent_on_failure=settings.fail_parent_on_failure),
        excluded_agents=settings.excluded_agents,
    )
    coordinator = ExecutionCoordinator(repo, agent_queue, processor)

    poll = settings.worker.poll_interval
    pools = [
        WorkerPool(orchestration_queue, launcher.process, concurrency=2, poll_interval=poll),
        WorkerPool(
            agent_queue,
            coordinator.process,
            concurrency=settings.worker.concurrency,
            poll_interval=poll,
        ),
    ]
    worker = WorkflowWorker(
        repo,
        pools,
        poll_interval=poll,
        cleanup=tracker.cleanup_stale,
        stale_after=timedelta(minutes=settings.stale_timeout_minutes),
    )
    service = WorkflowService(
        repo,
        orchestration_queue,
        tracker,
        documents,
        excluded_agents=settings.excluded_agents,
    )
    return Engine(
        repo=repo,
        documents=documents,
        orchestration_queue=orchestration_queue,
        agent_queue=agent_queue,
        tracker=tracker,
        service=service,
        worker=worker,
    )
