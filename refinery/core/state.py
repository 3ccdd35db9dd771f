"""SQLite persistence for agents, connections, executions and steps.

``Database`` owns the connection handling and schema. ``Repository`` is the
thin CRUD layer on top of it. Every status write on a step or execution is a
guarded update (``... WHERE status IN (expected)``) so concurrent workers and
late queue events can never move a record backwards or out of a terminal
state.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections import deque
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from refinery.core.errors import (
    AgentNotFoundError,
    InvalidConnectionError,
    StepPersistenceError,
    WorkflowError,
)
from refinery.core.models import (
    ACTIVE_EXECUTION_STATUSES,
    Agent,
    AgentExecutionLog,
    Connection,
    ExecutionStatus,
    StepStatus,
    WorkflowExecution,
    WorkflowStep,
    utc_now,
)

logger = logging.getLogger(__name__)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Path and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


def _ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _placeholders(values: Iterable[Any]) -> str:
    return ",".join("?" for _ in values)


class Database:
    """SQLite database holding workflow state and the job queue tables."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS agents (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL,
        description TEXT,
        system_prompt TEXT NOT NULL DEFAULT '',
        user_prompt_template TEXT NOT NULL DEFAULT '',
        sort_order INTEGER NOT NULL DEFAULT 0,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS connections (
        id TEXT PRIMARY KEY,
        source_agent_id TEXT NOT NULL,
        target_agent_id TEXT NOT NULL,
        sort_order INTEGER NOT NULL DEFAULT 0,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        UNIQUE(source_agent_id, target_agent_id),
        CHECK(source_agent_id != target_agent_id),
        FOREIGN KEY (source_agent_id) REFERENCES agents(id),
        FOREIGN KEY (target_agent_id) REFERENCES agents(id)
    );

    CREATE TABLE IF NOT EXISTS workflow_executions (
        id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN
            ('PENDING', 'RUNNING', 'COMPLETED', 'FAILED', 'CANCELLED')),
        started_at TEXT NOT NULL,
        completed_at TEXT,
        error TEXT,
        input_data JSON,
        output_data TEXT
    );

    -- Steps snapshot the participating agents at launch; agent_id is
    -- deliberately not a foreign key so agent edits never touch history.
    CREATE TABLE IF NOT EXISTS workflow_steps (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN
            ('PENDING', 'WAITING_INPUTS', 'RUNNING', 'COMPLETED', 'FAILED', 'SKIPPED')),
        started_at TEXT,
        completed_at TEXT,
        job_id TEXT,
        input_data JSON,
        output_data JSON,
        output_markdown TEXT,
        error TEXT,
        version INTEGER NOT NULL DEFAULT 0,
        UNIQUE(execution_id, agent_id),
        FOREIGN KEY (execution_id) REFERENCES workflow_executions(id)
    );

    CREATE TABLE IF NOT EXISTS agent_execution_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        agent_id TEXT NOT NULL,
        document_id TEXT NOT NULL,
        execution_id TEXT NOT NULL,
        step_id TEXT NOT NULL,
        system_prompt TEXT NOT NULL,
        user_prompt TEXT NOT NULL,
        input_markdown TEXT NOT NULL,
        context TEXT,
        output_markdown TEXT,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        success INTEGER NOT NULL,
        error TEXT,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_steps_execution ON workflow_steps(execution_id, status);
    CREATE INDEX IF NOT EXISTS idx_steps_job ON workflow_steps(job_id);
    CREATE INDEX IF NOT EXISTS idx_exec_document ON workflow_executions(document_id);
    CREATE INDEX IF NOT EXISTS idx_exec_status ON workflow_executions(status, started_at);
    CREATE INDEX IF NOT EXISTS idx_logs_execution ON agent_execution_logs(execution_id);
    """

    def __init__(self, db_path: str | Path = ".refinery/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    def ensure_schema(self, schema: str) -> None:
        """Apply an additional CREATE ... IF NOT EXISTS script (used by the queue)."""
        with self._connect() as conn:
            conn.executescript(schema)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Write transaction taken with BEGIN IMMEDIATE.

        Read-modify-write sequences inside the block are serialized against
        every other writer on the same database file.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    @contextmanager
    def snapshot(self) -> Generator[sqlite3.Connection, None, None]:
        """Read transaction: every query in the block sees the same committed state."""
        with self._connect() as conn:
            conn.execute("BEGIN")
            yield conn


class Repository:
    """CRUD access to agents, connections, executions, steps and audit logs."""

    _STEP_COLUMNS = {
        "started_at",
        "completed_at",
        "job_id",
        "input_data",
        "output_data",
        "output_markdown",
        "error",
    }
    _EXECUTION_COLUMNS = {"completed_at", "error", "output_data"}

    def __init__(self, db: Database):
        self.db = db

    # ========== Agents ==========

    def create_agent(
        self,
        name: str,
        display_name: str,
        description: str | None = None,
        system_prompt: str = "",
        user_prompt_template: str = "",
        order: int = 0,
        is_active: bool = True,
        agent_id: str | None = None,
    ) -> Agent:
        agent = Agent(
            id=agent_id or str(uuid.uuid4()),
            name=name,
            display_name=display_name,
            description=description,
            system_prompt=system_prompt,
            user_prompt_template=user_prompt_template,
            order=order,
            is_active=is_active,
        )
        try:
            with self.db._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO agents (id, name, display_name, description, system_prompt,
                        user_prompt_template, sort_order, is_active, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        agent.id,
                        agent.name,
                        agent.display_name,
                        agent.description,
                        agent.system_prompt,
                        agent.user_prompt_template,
                        agent.order,
                        int(agent.is_active),
                        agent.created_at.isoformat(),
                        agent.updated_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise WorkflowError(f"Agent '{name}' already exists") from e
        return agent

    def upsert_agent(self, agent: Agent) -> Agent:
        """Insert an agent or update the existing one with the same name.

        The stored id is preserved on update so existing connections and
        step history keep pointing at the same agent.
        """
        with self.db._connect() as conn:
            conn.execute(
                """
                INSERT INTO agents (id, name, display_name, description, system_prompt,
                    user_prompt_template, sort_order, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    display_name = excluded.display_name,
                    description = excluded.description,
                    system_prompt = excluded.system_prompt,
                    user_prompt_template = excluded.user_prompt_template,
                    sort_order = excluded.sort_order,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (
                    agent.id,
                    agent.name,
                    agent.display_name,
                    agent.description,
                    agent.system_prompt,
                    agent.user_prompt_template,
                    agent.order,
                    int(agent.is_active),
                    agent.created_at.isoformat(),
                    utc_now().isoformat(),
                ),
            )
        stored = self.get_agent_by_name(agent.name)
        if stored is None:
            # Deleted by another process right after the upsert
            raise AgentNotFoundError(agent.name)
        return stored

    def get_agent(self, agent_id: str) -> Agent | None:
        with self.db._connect() as conn:
            row = conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
            return self._row_to_agent(row) if row else None

    def get_agent_by_name(self, name: str) -> Agent | None:
        with self.db._connect() as conn:
            row = conn.execute("SELECT * FROM agents WHERE name = ?", (name,)).fetchone()
            return self._row_to_agent(row) if row else None

    def list_agents(self, active_only: bool = False) -> list[Agent]:
        query = "SELECT * FROM agents"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY sort_order, name"
        with self.db._connect() as conn:
            return [self._row_to_agent(row) for row in conn.execute(query).fetchall()]

    def set_agent_active(self, agent_id: str, is_active: bool) -> Agent:
        with self.db._connect() as conn:
            result = conn.execute(
                "UPDATE agents SET is_active = ?, updated_at = ? WHERE id = ?",
                (int(is_active), utc_now().isoformat(), agent_id),
            )
            if result.rowcount == 0:
                raise AgentNotFoundError(agent_id)
        agent = self.get_agent(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def delete_agent(self, agent_id: str, force: bool = False) -> None:
        """Delete an agent.

        Refuses while connections reference the agent unless ``force`` is set,
        in which case those connections are removed in the same transaction.
        """
        with self.db.transaction() as conn:
            if not conn.execute("SELECT 1 FROM agents WHERE id = ?", (agent_id,)).fetchone():
                raise AgentNotFoundError(agent_id)
            referencing = conn.execute(
                "SELECT COUNT(*) FROM connections WHERE source_agent_id = ? OR target_agent_id = ?",
                (agent_id, agent_id),
            ).fetchone()[0]
            if referencing and not force:
                raise WorkflowError(
                    f"Agent {agent_id} is referenced by {referencing} connection(s)",
                    details={"agent_id": agent_id, "connections": referencing},
                )
            conn.execute(
                "DELETE FROM connections WHERE source_agent_id = ? OR target_agent_id = ?",
                (agent_id, agent_id),
            )
            conn.execute("DELETE FROM agents WHERE id = ?", (agent_id,))

    def _row_to_agent(self, row: sqlite3.Row) -> Agent:
        return Agent(
            id=row["id"],
            name=row["name"],
            display_name=row["display_name"],
            description=row["description"],
            system_prompt=row["system_prompt"],
            user_prompt_template=row["user_prompt_template"],
            order=row["sort_order"],
            is_active=bool(row["is_active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # ========== Connections ==========

    def create_connection(
        self,
        source_agent_id: str,
        target_agent_id: str,
        order: int = 0,
        is_active: bool = True,
    ) -> Connection:
        """Create a connection, rejecting self-edges, duplicates and cycles.

        The cycle check and the insert share one write transaction so two
        concurrent requests cannot each close half of a cycle.
        """
        if source_agent_id == target_agent_id:
            raise InvalidConnectionError("An agent cannot be connected to itself")

        connection = Connection(
            id=str(uuid.uuid4()),
            source_agent_id=source_agent_id,
            target_agent_id=target_agent_id,
            order=order,
            is_active=is_active,
        )
        with self.db.transaction() as conn:
            for agent_id in (source_agent_id, target_agent_id):
                if not conn.execute("SELECT 1 FROM agents WHERE id = ?", (agent_id,)).fetchone():
                    raise AgentNotFoundError(agent_id)

            duplicate = conn.execute(
                "SELECT 1 FROM connections WHERE source_agent_id = ? AND target_agent_id = ?",
                (source_agent_id, target_agent_id),
            ).fetchone()
            if duplicate:
                raise InvalidConnectionError("This connection already exists")

            if is_active and self._would_create_cycle(conn, source_agent_id, target_agent_id):
                raise InvalidConnectionError("This connection would create a cycle in the graph")

            conn.execute(
                """
                INSERT INTO connections (id, source_agent_id, target_agent_id, sort_order,
                    is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    connection.id,
                    connection.source_agent_id,
                    connection.target_agent_id,
                    connection.order,
                    int(connection.is_active),
                    connection.created_at.isoformat(),
                ),
            )
        return connection

    def _would_create_cycle(self, conn: sqlite3.Connection, source_id: str, target_id: str) -> bool:
        """BFS from target along active edges; reaching source means a cycle."""
        visited: set[str] = set()
        queue: deque[str] = deque([target_id])
        while queue:
            current = queue.popleft()
            if current == source_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            rows = conn.execute(
                "SELECT target_agent_id FROM connections WHERE source_agent_id = ? AND is_active = 1",
                (current,),
            ).fetchall()
            queue.extend(row[0] for row in rows if row[0] not in visited)
        return False

    def get_connection(self, connection_id: str) -> Connection | None:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT * FROM connections WHERE id = ?", (connection_id,)
            ).fetchone()
            return self._row_to_connection(row) if row else None

    def list_connections(self, active_only: bool = True) -> list[Connection]:
        query = "SELECT * FROM connections"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY sort_order, created_at"
        with self.db._connect() as conn:
            return [self._row_to_connection(row) for row in conn.execute(query).fetchall()]

    def set_connection_active(self, connection_id: str, is_active: bool) -> Connection:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM connections WHERE id = ?", (connection_id,)
            ).fetchone()
            if not row:
                raise InvalidConnectionError(f"Connection not found: {connection_id}")
            if (
                is_active
                and not row["is_active"]
                and self._would_create_cycle(conn, row["source_agent_id"], row["target_agent_id"])
            ):
                raise InvalidConnectionError("This connection would create a cycle in the graph")
            conn.execute(
                "UPDATE connections SET is_active = ? WHERE id = ?",
                (int(is_active), connection_id),
            )
        updated = self.get_connection(connection_id)
        if updated is None:
            raise InvalidConnectionError(f"Connection not found: {connection_id}")
        return updated

    def delete_connection(self, connection_id: str) -> None:
        with self.db._connect() as conn:
            result = conn.execute("DELETE FROM connections WHERE id = ?", (connection_id,))
            if result.rowcount == 0:
                raise InvalidConnectionError(f"Connection not found: {connection_id}")

    def _row_to_connection(self, row: sqlite3.Row) -> Connection:
        return Connection(
            id=row["id"],
            source_agent_id=row["source_agent_id"],
            target_agent_id=row["target_agent_id"],
            order=row["sort_order"],
            is_active=bool(row["is_active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ========== Executions ==========

    def create_execution(
        self, document_id: str, input_data: dict[str, Any] | None = None
    ) -> WorkflowExecution:
        execution = WorkflowExecution(
            id=str(uuid.uuid4()), document_id=document_id, input_data=input_data
        )
        with self.db._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflow_executions (id, document_id, status, started_at, input_data)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    execution.id,
                    execution.document_id,
                    execution.status.value,
                    execution.started_at.isoformat(),
                    safe_json_dumps(input_data) if input_data is not None else None,
                ),
            )
        return execution

    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        with self.db._connect() as conn:
            return self.get_execution_in_txn(conn, execution_id)

    def get_execution_in_txn(
        self, conn: sqlite3.Connection, execution_id: str
    ) -> WorkflowExecution | None:
        row = conn.execute(
            "SELECT * FROM workflow_executions WHERE id = ?", (execution_id,)
        ).fetchone()
        return self._row_to_execution(row) if row else None

    def list_executions(
        self,
        document_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        query = "SELECT * FROM workflow_executions WHERE 1 = 1"
        params: list[Any] = []
        if document_id:
            query += " AND document_id = ?"
            params.append(document_id)
        if status:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY started_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self.db._connect() as conn:
            return [self._row_to_execution(row) for row in conn.execute(query, params).fetchall()]

    def list_stale_executions(self, cutoff: datetime) -> list[WorkflowExecution]:
        statuses = [s.value for s in ACTIVE_EXECUTION_STATUSES]
        with self.db._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM workflow_executions
                WHERE status IN ({_placeholders(statuses)}) AND started_at < ?
                """,
                (*statuses, cutoff.isoformat()),
            ).fetchall()
            return [self._row_to_execution(row) for row in rows]

    def transition_execution(
        self,
        conn: sqlite3.Connection,
        execution_id: str,
        new_status: ExecutionStatus,
        expected: Iterable[ExecutionStatus],
        **fields: Any,
    ) -> bool:
        """Set execution status only if the current status is one of ``expected``.

        Returns True if the update was applied, False if another writer got
        there first (or the execution is already terminal).
        """
        unknown = set(fields) - self._EXECUTION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown execution columns: {sorted(unknown)}")
        expected_values = [s.value for s in expected]
        assignments = ["status = ?"] + [f"{col} = ?" for col in fields]
        values = [new_status.value] + [self._encode(v) for v in fields.values()]
        result = conn.execute(
            f"""
            UPDATE workflow_executions SET {", ".join(assignments)}
            WHERE id = ? AND status IN ({_placeholders(expected_values)})
            """,
            (*values, execution_id, *expected_values),
        )
        return result.rowcount > 0

    def _row_to_execution(self, row: sqlite3.Row) -> WorkflowExecution:
        return WorkflowExecution(
            id=row["id"],
            document_id=row["document_id"],
            status=ExecutionStatus(row["status"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=_ts(row["completed_at"]),
            error=row["error"],
            input_data=_loads(row["input_data"]),
            output_data=row["output_data"],
        )

    # ========== Steps ==========

    def create_steps(
        self,
        conn: sqlite3.Connection,
        execution_id: str,
        initial_statuses: dict[str, StepStatus],
        job_ids: dict[str, str] | None = None,
    ) -> dict[str, str]:
        """Snapshot one step per participating agent. Returns agent_id -> step_id."""
        job_ids = job_ids or {}
        step_ids: dict[str, str] = {}
        for agent_id, status in initial_statuses.items():
            step_id = str(uuid.uuid4())
            conn.execute(
                """
                INSERT INTO workflow_steps (id, execution_id, agent_id, status, job_id)
                VALUES (?, ?, ?, ?, ?)
                """,
                (step_id, execution_id, agent_id, status.value, job_ids.get(agent_id)),
            )
            step_ids[agent_id] = step_id
        return step_ids

    def get_step(self, step_id: str) -> WorkflowStep | None:
        with self.db._connect() as conn:
            row = conn.execute("SELECT * FROM workflow_steps WHERE id = ?", (step_id,)).fetchone()
            return self._row_to_step(row) if row else None

    def get_step_by_job_id(self, job_id: str) -> WorkflowStep | None:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_steps WHERE job_id = ?", (job_id,)
            ).fetchone()
            return self._row_to_step(row) if row else None

    def list_steps(self, execution_id: str) -> list[WorkflowStep]:
        with self.db._connect() as conn:
            return self.list_steps_in_txn(conn, execution_id)

    def list_steps_in_txn(self, conn: sqlite3.Connection, execution_id: str) -> list[WorkflowStep]:
        rows = conn.execute(
            """
            SELECT * FROM workflow_steps WHERE execution_id = ?
            ORDER BY started_at IS NULL, started_at, rowid
            """,
            (execution_id,),
        ).fetchall()
        return [self._row_to_step(row) for row in rows]

    def transition_step(
        self,
        step_id: str,
        new_status: StepStatus,
        expected: Iterable[StepStatus],
        require_active_execution: bool = False,
        **fields: Any,
    ) -> bool:
        """Guarded step status update in its own transaction.

        Raises StepPersistenceError when the database write itself fails; a
        rejected guard is not an error and returns False.
        """
        try:
            with self.db.transaction() as conn:
                return self.transition_step_in_txn(
                    conn,
                    step_id,
                    new_status,
                    expected,
                    require_active_execution=require_active_execution,
                    **fields,
                )
        except sqlite3.Error as e:
            logger.error(f"Failed to persist step {step_id} -> {new_status.value}: {e}")
            raise StepPersistenceError(step_id, str(e)) from e

    def transition_step_in_txn(
        self,
        conn: sqlite3.Connection,
        step_id: str,
        new_status: StepStatus,
        expected: Iterable[StepStatus],
        require_active_execution: bool = False,
        **fields: Any,
    ) -> bool:
        unknown = set(fields) - self._STEP_COLUMNS
        if unknown:
            raise ValueError(f"Unknown step columns: {sorted(unknown)}")
        expected_values = [s.value for s in expected]
        assignments = ["status = ?", "version = version + 1"] + [f"{col} = ?" for col in fields]
        values = [new_status.value] + [self._encode(v) for v in fields.values()]
        query = f"""
            UPDATE workflow_steps SET {", ".join(assignments)}
            WHERE id = ? AND status IN ({_placeholders(expected_values)})
        """
        params: list[Any] = [*values, step_id, *expected_values]
        if require_active_execution:
            active = [s.value for s in ACTIVE_EXECUTION_STATUSES]
            query += f"""
            AND EXISTS (
                SELECT 1 FROM workflow_executions e
                WHERE e.id = workflow_steps.execution_id AND e.status IN ({_placeholders(active)})
            )
            """
            params.extend(active)
        return conn.execute(query, params).rowcount > 0

    def transition_execution_steps(
        self,
        conn: sqlite3.Connection,
        execution_id: str,
        new_status: StepStatus,
        expected: Iterable[StepStatus],
        **fields: Any,
    ) -> int:
        """Bulk guarded update of every matching step of one execution."""
        unknown = set(fields) - self._STEP_COLUMNS
        if unknown:
            raise ValueError(f"Unknown step columns: {sorted(unknown)}")
        expected_values = [s.value for s in expected]
        assignments = ["status = ?", "version = version + 1"] + [f"{col} = ?" for col in fields]
        values = [new_status.value] + [self._encode(v) for v in fields.values()]
        result = conn.execute(
            f"""
            UPDATE workflow_steps SET {", ".join(assignments)}
            WHERE execution_id = ? AND status IN ({_placeholders(expected_values)})
            """,
            (*values, execution_id, *expected_values),
        )
        return result.rowcount

    def update_step_fields(self, step_id: str, **fields: Any) -> None:
        """Write non-status fields (e.g. the resolved input summary)."""
        unknown = set(fields) - self._STEP_COLUMNS
        if unknown:
            raise ValueError(f"Unknown step columns: {sorted(unknown)}")
        if not fields:
            return
        assignments = [f"{col} = ?" for col in fields]
        values = [self._encode(v) for v in fields.values()]
        try:
            with self.db._connect() as conn:
                conn.execute(
                    f"UPDATE workflow_steps SET {', '.join(assignments)} WHERE id = ?",
                    (*values, step_id),
                )
        except sqlite3.Error as e:
            raise StepPersistenceError(step_id, str(e)) from e

    def _row_to_step(self, row: sqlite3.Row) -> WorkflowStep:
        return WorkflowStep(
            id=row["id"],
            execution_id=row["execution_id"],
            agent_id=row["agent_id"],
            status=StepStatus(row["status"]),
            started_at=_ts(row["started_at"]),
            completed_at=_ts(row["completed_at"]),
            job_id=row["job_id"],
            input_data=_loads(row["input_data"]),
            output_data=_loads(row["output_data"]),
            output_markdown=row["output_markdown"],
            error=row["error"],
        )

    # ========== Audit log ==========

    def append_execution_log(self, log: AgentExecutionLog) -> int:
        with self.db._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO agent_execution_logs (agent_id, document_id, execution_id, step_id,
                    system_prompt, user_prompt, input_markdown, context, output_markdown,
                    duration_ms, success, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log.agent_id,
                    log.document_id,
                    log.execution_id,
                    log.step_id,
                    log.system_prompt,
                    log.user_prompt,
                    log.input_markdown,
                    log.context,
                    log.output_markdown,
                    log.duration_ms,
                    int(log.success),
                    log.error,
                    log.created_at.isoformat(),
                ),
            )
            return cursor.lastrowid  # type: ignore

    def get_execution_logs(
        self, execution_id: str | None = None, agent_id: str | None = None
    ) -> list[AgentExecutionLog]:
        query = "SELECT * FROM agent_execution_logs WHERE 1 = 1"
        params: list[Any] = []
        if execution_id:
            query += " AND execution_id = ?"
            params.append(execution_id)
        if agent_id:
            query += " AND agent_id = ?"
            params.append(agent_id)
        query += " ORDER BY id"
        with self.db._connect() as conn:
            return [
                AgentExecutionLog(
                    id=row["id"],
                    agent_id=row["agent_id"],
                    document_id=row["document_id"],
                    execution_id=row["execution_id"],
                    step_id=row["step_id"],
                    system_prompt=row["system_prompt"],
                    user_prompt=row["user_prompt"],
                    input_markdown=row["input_markdown"],
                    context=row["context"],
                    output_markdown=row["output_markdown"],
                    duration_ms=row["duration_ms"],
                    success=bool(row["success"]),
                    error=row["error"],
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
                for row in conn.execute(query, params).fetchall()
            ]

    @staticmethod
    def _encode(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, (dict, list)):
            return safe_json_dumps(value)
        return value
