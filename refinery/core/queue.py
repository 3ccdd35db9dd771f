"""Durable SQLite job queue with parent/child flows.

Jobs live in the same database file as the workflow state. A parent job is
held in ``waiting-children`` until every child has completed, so workers never
see it early. Dependencies are stored as edges (``job_dependencies``), which
lets one child feed several parents: a shared job runs once and each parent
reads its result through ``get_children_values``.

Lifecycle events go through an outbox table written in the same transaction as
the state change and are delivered to listeners after commit. Delivery is
at-least-once; listeners must be idempotent.
"""

import json
import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from refinery.core.models import utc_now
from refinery.core.state import Database, safe_json_dumps

logger = logging.getLogger(__name__)

CompletedListener = Callable[[str, Any], None]
FailedListener = Callable[[str, str], None]


class JobStatus(str, Enum):
    WAITING_CHILDREN = "waiting-children"
    WAITING = "waiting"
    DELAYED = "delayed"  # Retry scheduled after a backoff
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# Outbox deliveries tried per event before it is left undelivered
MAX_EVENT_ATTEMPTS = 10

REMOVABLE_JOB_STATUSES = frozenset(
    {JobStatus.WAITING_CHILDREN, JobStatus.WAITING, JobStatus.DELAYED}
)


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 1
    backoff: str = "exponential"  # "fixed" or "exponential"
    delay: float = 2.0
    max_delay: float = 300.0

    def get_delay(self, attempts_made: int) -> float:
        """Delay before the next attempt, given how many attempts already ran."""
        if self.backoff == "fixed":
            return self.delay
        return min(self.delay * (2 ** max(attempts_made - 1, 0)), self.max_delay)


@dataclass
class JobNode:
    """One node of a job tree submitted with ``add_flow``.

    Children must complete before this job is dispatched.
    """

    job_id: str
    name: str
    data: dict[str, Any]
    children: list["JobNode"] = field(default_factory=list)
    fail_parent_on_failure: bool = True
    queue_name: str | None = None


@dataclass
class Job:
    id: str
    queue: str
    name: str
    data: dict[str, Any]
    status: JobStatus
    attempts_made: int = 0
    max_attempts: int = 1
    fail_parent_on_failure: bool = True
    result: Any = None
    failed_reason: str | None = None
    run_at: float = 0.0


class JobQueue:
    """A named queue backed by the shared SQLite database."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        queue TEXT NOT NULL,
        name TEXT NOT NULL,
        data JSON NOT NULL,
        status TEXT NOT NULL,
        attempts_made INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 1,
        backoff TEXT NOT NULL DEFAULT 'exponential',
        backoff_delay REAL NOT NULL DEFAULT 0,
        fail_parent_on_failure INTEGER NOT NULL DEFAULT 1,
        result JSON,
        failed_reason TEXT,
        run_at REAL NOT NULL,
        created_at TEXT NOT NULL,
        started_at TEXT,
        finished_at TEXT
    );

    CREATE TABLE IF NOT EXISTS job_dependencies (
        parent_id TEXT NOT NULL,
        child_id TEXT NOT NULL,
        PRIMARY KEY (parent_id, child_id)
    );

    CREATE TABLE IF NOT EXISTS job_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        queue TEXT NOT NULL,
        job_id TEXT NOT NULL,
        event TEXT NOT NULL,
        payload JSON,
        created_at TEXT NOT NULL,
        delivered_at TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(queue, status, run_at);
    CREATE INDEX IF NOT EXISTS idx_job_deps_child ON job_dependencies(child_id);
    CREATE INDEX IF NOT EXISTS idx_job_events_pending ON job_events(queue, delivered_at);
    """

    def __init__(self, db: Database, name: str, retry_policy: RetryPolicy | None = None):
        self.db = db
        self.name = name
        self.retry_policy = retry_policy or RetryPolicy()
        self._listeners: dict[str, list[Callable[..., None]]] = {"completed": [], "failed": []}
        db.ensure_schema(self.SCHEMA)

    # ========== Events ==========

    def on(self, event: str, listener: Callable[..., None]) -> None:
        """Register a ``completed`` (job_id, result) or ``failed`` (job_id, reason) listener."""
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(listener)

    def dispatch_events(self, limit: int = 100) -> int:
        """Deliver pending outbox events for this queue. Returns the number delivered.

        An event is marked delivered only when every listener returned. If one
        raised, the event stays pending and all its listeners run again on the
        next dispatch, up to ``MAX_EVENT_ATTEMPTS``; after that it is kept
        undelivered with its last error for inspection.

        A queue instance without listeners leaves events in place for one
        that has them.
        """
        if not any(self._listeners.values()):
            return 0
        with self.db._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, job_id, event, payload, attempts FROM job_events
                WHERE queue = ? AND delivered_at IS NULL AND attempts < ?
                ORDER BY id LIMIT ?
                """,
                (self.name, MAX_EVENT_ATTEMPTS, limit),
            ).fetchall()

        delivered = 0
        for row in rows:
            payload = json.loads(row["payload"]) if row["payload"] else None
            error = None
            for listener in self._listeners.get(row["event"], []):
                try:
                    listener(row["job_id"], payload)
                except Exception as e:
                    error = str(e) or type(e).__name__
                    logger.error(
                        f"Listener for {row['event']} on job {row['job_id']} raised: {error}"
                    )

            with self.db._connect() as conn:
                if error is None:
                    conn.execute(
                        "UPDATE job_events SET delivered_at = ?, attempts = attempts + 1 "
                        "WHERE id = ?",
                        (utc_now().isoformat(), row["id"]),
                    )
                    delivered += 1
                    continue
                conn.execute(
                    "UPDATE job_events SET attempts = attempts + 1, last_error = ? WHERE id = ?",
                    (error, row["id"]),
                )
            if row["attempts"] + 1 >= MAX_EVENT_ATTEMPTS:
                logger.error(
                    f"Giving up on {row['event']} event for job {row['job_id']} "
                    f"after {MAX_EVENT_ATTEMPTS} attempts"
                )
        return delivered

    def _record_event(
        self, conn: sqlite3.Connection, queue: str, job_id: str, event: str, payload: Any
    ) -> None:
        conn.execute(
            """
            INSERT INTO job_events (queue, job_id, event, payload, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (queue, job_id, event, safe_json_dumps(payload), utc_now().isoformat()),
        )

    # ========== Submission ==========

    def add(
        self,
        name: str,
        data: dict[str, Any],
        job_id: str | None = None,
        fail_parent_on_failure: bool = False,
    ) -> str:
        """Add a single job with no children."""
        node = JobNode(
            job_id=job_id or f"{self.name}-{time.time_ns()}",
            name=name,
            data=data,
            fail_parent_on_failure=fail_parent_on_failure,
        )
        return self.add_flow([node])[0]

    def add_flow(self, roots: list[JobNode]) -> list[str]:
        """Submit job trees in one transaction. Returns the root job ids.

        A job id that already exists is reused rather than duplicated, so a
        node reachable from several roots is created once and gains one
        dependency edge per parent.
        """
        now = time.time()
        with self.db.transaction() as conn:
            visited: set[str] = set()
            parents_to_check: set[str] = set()
            stack: list[tuple[JobNode, str | None]] = [(root, None) for root in reversed(roots)]
            while stack:
                node, parent_id = stack.pop()
                self._insert_job(conn, node, now)
                if parent_id is not None:
                    conn.execute(
                        "INSERT OR IGNORE INTO job_dependencies (parent_id, child_id) VALUES (?, ?)",
                        (parent_id, node.job_id),
                    )
                # A shared node links to every parent but its subtree is walked once
                if node.job_id in visited:
                    continue
                visited.add(node.job_id)
                if node.children:
                    parents_to_check.add(node.job_id)
                stack.extend((child, node.job_id) for child in reversed(node.children))

            for parent_id in parents_to_check:
                self._release_if_ready(conn, parent_id, now)

        logger.debug(f"Queue {self.name}: added flow with roots {[r.job_id for r in roots]}")
        return [root.job_id for root in roots]

    def _insert_job(self, conn: sqlite3.Connection, node: JobNode, now: float) -> bool:
        status = JobStatus.WAITING_CHILDREN if node.children else JobStatus.WAITING
        result = conn.execute(
            """
            INSERT OR IGNORE INTO jobs (id, queue, name, data, status, max_attempts, backoff,
                backoff_delay, fail_parent_on_failure, run_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                node.job_id,
                node.queue_name or self.name,
                node.name,
                safe_json_dumps(node.data),
                status.value,
                self.retry_policy.max_attempts,
                self.retry_policy.backoff,
                self.retry_policy.delay,
                int(node.fail_parent_on_failure),
                now,
                utc_now().isoformat(),
            ),
        )
        return result.rowcount > 0

    def _release_if_ready(self, conn: sqlite3.Connection, parent_id: str, now: float) -> bool:
        """Move a parent to ``waiting`` once no child is left unfinished."""
        pending = conn.execute(
            """
            SELECT COUNT(*) FROM job_dependencies d
            JOIN jobs c ON c.id = d.child_id
            WHERE d.parent_id = ? AND c.status != ?
            """,
            (parent_id, JobStatus.COMPLETED.value),
        ).fetchone()[0]
        if pending:
            return False
        result = conn.execute(
            "UPDATE jobs SET status = ?, run_at = ? WHERE id = ? AND status = ?",
            (JobStatus.WAITING.value, now, parent_id, JobStatus.WAITING_CHILDREN.value),
        )
        return result.rowcount > 0

    # ========== Worker side ==========

    def claim(self, now: float | None = None) -> Job | None:
        """Atomically claim the next runnable job of this queue."""
        now = time.time() if now is None else now
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT id FROM jobs
                WHERE queue = ? AND status IN (?, ?) AND run_at <= ?
                ORDER BY run_at, created_at LIMIT 1
                """,
                (self.name, JobStatus.WAITING.value, JobStatus.DELAYED.value, now),
            ).fetchone()
            if not row:
                return None
            result = conn.execute(
                """
                UPDATE jobs SET status = ?, attempts_made = attempts_made + 1, started_at = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (
                    JobStatus.ACTIVE.value,
                    utc_now().isoformat(),
                    row["id"],
                    JobStatus.WAITING.value,
                    JobStatus.DELAYED.value,
                ),
            )
            if result.rowcount == 0:
                return None
            return self._get_job_in_txn(conn, row["id"])

    def complete(self, job_id: str, result: Any) -> bool:
        """Mark an active job completed and release parents whose children are all done."""
        now = time.time()
        with self.db.transaction() as conn:
            updated = conn.execute(
                """
                UPDATE jobs SET status = ?, result = ?, finished_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    JobStatus.COMPLETED.value,
                    safe_json_dumps(result),
                    utc_now().isoformat(),
                    job_id,
                    JobStatus.ACTIVE.value,
                ),
            )
            if updated.rowcount == 0:
                logger.warning(f"Job {job_id} was not active; completion ignored")
                return False
            queue = self._queue_of(conn, job_id)
            for parent_id in self._parents_of(conn, job_id):
                self._release_if_ready(conn, parent_id, now)
            self._record_event(conn, queue, job_id, "completed", result)

        self.dispatch_events()
        return True

    def fail(self, job_id: str, reason: str) -> JobStatus | None:
        """Record a failed attempt.

        Schedules a retry with backoff while attempts remain; otherwise the job
        fails for good and, when it carries ``fail_parent_on_failure``, its
        waiting parents fail with it, transitively. Returns the job's new status.
        """
        now = time.time()
        with self.db.transaction() as conn:
            job = self._get_job_in_txn(conn, job_id)
            if job is None or job.status != JobStatus.ACTIVE:
                logger.warning(f"Job {job_id} was not active; failure ignored")
                return None

            if job.attempts_made < job.max_attempts:
                policy = self._policy_of(conn, job_id)
                delay = policy.get_delay(job.attempts_made)
                conn.execute(
                    "UPDATE jobs SET status = ?, failed_reason = ?, run_at = ? WHERE id = ?",
                    (JobStatus.DELAYED.value, reason, now + delay, job_id),
                )
                logger.info(
                    f"Job {job_id} attempt {job.attempts_made}/{job.max_attempts} failed, "
                    f"retrying in {delay:.1f}s: {reason}"
                )
                return JobStatus.DELAYED

            self._fail_in_txn(conn, job, reason)
            self._cascade_failure(conn, job)

        self.dispatch_events()
        return JobStatus.FAILED

    def _fail_in_txn(self, conn: sqlite3.Connection, job: Job, reason: str) -> None:
        conn.execute(
            "UPDATE jobs SET status = ?, failed_reason = ?, finished_at = ? WHERE id = ?",
            (JobStatus.FAILED.value, reason, utc_now().isoformat(), job.id),
        )
        self._record_event(conn, job.queue, job.id, "failed", reason)

    def _cascade_failure(self, conn: sqlite3.Connection, job: Job) -> None:
        stack = [job]
        while stack:
            child = stack.pop()
            if not child.fail_parent_on_failure:
                continue
            for parent_id in self._parents_of(conn, child.id):
                parent = self._get_job_in_txn(conn, parent_id)
                if parent is None or parent.status != JobStatus.WAITING_CHILDREN:
                    continue
                self._fail_in_txn(conn, parent, f"child job {child.id} failed")
                parent.status = JobStatus.FAILED
                stack.append(parent)

    def get_children_values(self, job_id: str) -> dict[str, Any]:
        """Results of the completed children of ``job_id``, keyed by child job id."""
        with self.db._connect() as conn:
            rows = conn.execute(
                """
                SELECT c.id, c.result FROM job_dependencies d
                JOIN jobs c ON c.id = d.child_id
                WHERE d.parent_id = ? AND c.status = ?
                """,
                (job_id, JobStatus.COMPLETED.value),
            ).fetchall()
            return {row["id"]: json.loads(row["result"]) if row["result"] else None for row in rows}

    # ========== Management ==========

    def remove(self, job_id: str) -> bool:
        """Remove a job that has not started. Active or finished jobs are kept."""
        statuses = [s.value for s in REMOVABLE_JOB_STATUSES]
        with self.db.transaction() as conn:
            result = conn.execute(
                f"DELETE FROM jobs WHERE id = ? AND status IN ({','.join('?' * len(statuses))})",
                (job_id, *statuses),
            )
            if result.rowcount == 0:
                return False
            conn.execute(
                "DELETE FROM job_dependencies WHERE parent_id = ? OR child_id = ?",
                (job_id, job_id),
            )
        return True

    def get_job(self, job_id: str) -> Job | None:
        with self.db._connect() as conn:
            return self._get_job_in_txn(conn, job_id)

    def counts(self) -> dict[str, int]:
        """Number of jobs of this queue per status."""
        with self.db._connect() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM jobs WHERE queue = ? GROUP BY status",
                (self.name,),
            ).fetchall()
        counts = {status.value: 0 for status in JobStatus}
        counts.update({row["status"]: row["n"] for row in rows})
        return counts

    def _get_job_in_txn(self, conn: sqlite3.Connection, job_id: str) -> Job | None:
        row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            return None
        return Job(
            id=row["id"],
            queue=row["queue"],
            name=row["name"],
            data=json.loads(row["data"]),
            status=JobStatus(row["status"]),
            attempts_made=row["attempts_made"],
            max_attempts=row["max_attempts"],
            fail_parent_on_failure=bool(row["fail_parent_on_failure"]),
            result=json.loads(row["result"]) if row["result"] else None,
            failed_reason=row["failed_reason"],
            run_at=row["run_at"],
        )

    def _policy_of(self, conn: sqlite3.Connection, job_id: str) -> RetryPolicy:
        row = conn.execute(
            "SELECT max_attempts, backoff, backoff_delay FROM jobs WHERE id = ?", (job_id,)
        ).fetchone()
        return RetryPolicy(
            max_attempts=row["max_attempts"],
            backoff=row["backoff"],
            delay=row["backoff_delay"],
            max_delay=self.retry_policy.max_delay,
        )

    def _queue_of(self, conn: sqlite3.Connection, job_id: str) -> str:
        return conn.execute("SELECT queue FROM jobs WHERE id = ?", (job_id,)).fetchone()[0]

    def _parents_of(self, conn: sqlite3.Connection, job_id: str) -> list[str]:
        rows = conn.execute(
            "SELECT parent_id FROM job_dependencies WHERE child_id = ?", (job_id,)
        ).fetchall()
        return [row[0] for row in rows]
