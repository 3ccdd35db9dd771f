"""Execution status tracking driven by queue lifecycle events.

Every terminal write here is a guarded update that only applies while the
execution is still PENDING or RUNNING. A late ``completed`` or ``failed``
event for a cancelled (or already finalized) execution therefore changes
nothing, and two near-simultaneous completions cannot both finalize.
"""

import logging
from datetime import timedelta
from typing import Any

from refinery.core.compiler import launch_job_id_for
from refinery.core.errors import CancellationConflictError, ExecutionNotFoundError
from refinery.core.models import (
    ACTIVE_EXECUTION_STATUSES,
    CANCELLABLE_STEP_STATUSES,
    FINISHED_STEP_STATUSES,
    CancelResult,
    ExecutionStatus,
    Progress,
    StepStatus,
    WorkflowStep,
    utc_now,
)
from refinery.core.queue import JobQueue
from refinery.core.state import Repository

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"


def progress_of(steps: list[WorkflowStep]) -> Progress:
    completed = sum(1 for s in steps if s.status == StepStatus.COMPLETED)
    return Progress.from_counts(completed, len(steps))


def summarize_steps(steps: list[WorkflowStep]) -> dict[str, int]:
    """Number of steps per status (every status present, zero included)."""
    counts = {status.value: 0 for status in StepStatus}
    for step in steps:
        counts[step.status.value] += 1
    return counts


class ProgressTracker:
    """Maintains execution state from agent job events.

    Usage:
        tracker = ProgressTracker(repo, agent_queue, orchestration_queue)
        tracker.attach()  # subscribe to the agent queue's events
    """

    def __init__(
        self,
        repo: Repository,
        agent_queue: JobQueue | None = None,
        orchestration_queue: JobQueue | None = None,
    ):
        self.repo = repo
        self.agent_queue = agent_queue
        self.orchestration_queue = orchestration_queue

    def attach(self) -> None:
        if self.agent_queue is None:
            raise ValueError("ProgressTracker.attach() needs an agent queue")
        self.agent_queue.on("completed", self.on_job_completed)
        self.agent_queue.on("failed", self.on_job_failed)

    # ========== Event handlers ==========

    def _find_step(self, job_id: str, result: Any = None) -> WorkflowStep | None:
        step = self.repo.get_step_by_job_id(job_id)
        if step is None and isinstance(result, dict) and result.get("step_id"):
            step = self.repo.get_step(result["step_id"])
        return step

    def on_job_completed(self, job_id: str, result: Any = None) -> bool:
        """Finalize the execution if this completion was the last step.

        Returns True only for the call that actually moved it to COMPLETED.
        """
        step = self._find_step(job_id, result)
        if step is None:
            logger.debug(f"Completed job {job_id} has no step, ignoring")
            return False
        return self.finalize(step.execution_id)

    def finalize(self, execution_id: str) -> bool:
        with self.repo.db.transaction() as conn:
            execution = self.repo.get_execution_in_txn(conn, execution_id)
            if execution is None or execution.is_terminal:
                return False

            steps = self.repo.list_steps_in_txn(conn, execution_id)
            if not steps or any(s.status not in FINISHED_STEP_STATUSES for s in steps):
                return False

            finished_with_output = [
                s
                for s in steps
                if s.status == StepStatus.COMPLETED and s.output_markdown and s.completed_at
            ]
            last = max(finished_with_output, key=lambda s: s.completed_at, default=None)
            applied = self.repo.transition_execution(
                conn,
                execution_id,
                ExecutionStatus.COMPLETED,
                ACTIVE_EXECUTION_STATUSES,
                completed_at=utc_now(),
                output_data=last.output_markdown if last else None,
            )

        if applied:
            logger.info(f"Workflow {execution_id} completed")
        return applied

    def on_job_failed(self, job_id: str, reason: Any = None) -> bool:
        """Fail the execution owning this job. No-op once it is terminal."""
        step = self._find_step(job_id)
        if step is None:
            logger.debug(f"Failed job {job_id} has no step, ignoring")
            return False

        with self.repo.db.transaction() as conn:
            applied = self.repo.transition_execution(
                conn,
                step.execution_id,
                ExecutionStatus.FAILED,
                ACTIVE_EXECUTION_STATUSES,
                completed_at=utc_now(),
                error=f"Agent job failed: {reason}",
            )
        if applied:
            logger.warning(f"Workflow {step.execution_id} failed: job {job_id}: {reason}")
        return applied

    # ========== Reporting ==========

    def progress(self, execution_id: str) -> Progress:
        return progress_of(self.repo.list_steps(execution_id))

    def summary(self, execution_id: str) -> dict[str, int]:
        return summarize_steps(self.repo.list_steps(execution_id))

    # ========== Control ==========

    def cancel(self, execution_id: str) -> CancelResult:
        """Cancel a PENDING or RUNNING execution.

        State changes commit first; queue removal is best effort afterwards
        and only ever produces warnings.
        """
        now = utc_now()
        with self.repo.db.transaction() as conn:
            execution = self.repo.get_execution_in_txn(conn, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)
            if execution.is_terminal:
                raise CancellationConflictError(execution_id, execution.status.value)

            self.repo.transition_execution(
                conn,
                execution_id,
                ExecutionStatus.CANCELLED,
                ACTIVE_EXECUTION_STATUSES,
                completed_at=now,
                error=CANCELLED_BY_USER,
            )
            # A FAILED step may still have its job delayed for a retry; remove()
            # only deletes jobs that have not started, so finished ones are kept
            pending_jobs = [
                s.job_id
                for s in self.repo.list_steps_in_txn(conn, execution_id)
                if s.job_id
                and (s.status in CANCELLABLE_STEP_STATUSES or s.status == StepStatus.FAILED)
            ]
            skipped = self.repo.transition_execution_steps(
                conn,
                execution_id,
                StepStatus.SKIPPED,
                CANCELLABLE_STEP_STATUSES,
                completed_at=now,
            )

        result = CancelResult(execution_id=execution_id, skipped_steps=skipped)
        targets = [(self.agent_queue, job_id) for job_id in pending_jobs]
        targets.append((self.orchestration_queue, launch_job_id_for(execution_id)))
        for queue, job_id in targets:
            if queue is None:
                continue
            try:
                if queue.remove(job_id):
                    result.removed_jobs.append(job_id)
            except Exception as e:
                logger.error(f"Failed to remove job {job_id}: {e}")
                result.warnings.append(f"Failed to remove job: {job_id}")

        logger.info(
            f"Workflow {execution_id} cancelled: {skipped} step(s) skipped, "
            f"{len(result.removed_jobs)} job(s) removed"
        )
        return result

    def cleanup_stale(self, max_age: timedelta = timedelta(minutes=30)) -> list[str]:
        """Fail PENDING/RUNNING executions started more than ``max_age`` ago.

        Returns the ids of the executions that were failed.
        """
        cutoff = utc_now() - max_age
        minutes = int(max_age.total_seconds() // 60)
        cleaned = []
        for execution in self.repo.list_stale_executions(cutoff):
            now = utc_now()
            with self.repo.db.transaction() as conn:
                applied = self.repo.transition_execution(
                    conn,
                    execution.id,
                    ExecutionStatus.FAILED,
                    ACTIVE_EXECUTION_STATUSES,
                    completed_at=now,
                    error=f"Workflow marked as failed after {minutes} minutes (timeout)",
                )
                if applied:
                    self.repo.transition_execution_steps(
                        conn,
                        execution.id,
                        StepStatus.FAILED,
                        [StepStatus.PENDING, StepStatus.RUNNING],
                        completed_at=now,
                        error="Step marked as failed (timeout)",
                    )
            if applied:
                cleaned.append(execution.id)
        if cleaned:
            logger.warning(f"Cleaned up {len(cleaned)} stale workflow(s)")
        return cleaned
