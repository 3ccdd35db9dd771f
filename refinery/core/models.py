"""Data models for the workflow engine.

Uses Pydantic for records, derived graph views and job payloads.
"""

import math
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class ExecutionStatus(str, Enum):
    """Status of a workflow execution."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class StepStatus(str, Enum):
    """Status of one agent step inside an execution."""

    PENDING = "PENDING"
    WAITING_INPUTS = "WAITING_INPUTS"  # Has upstream agents still running
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"  # Only reached through cancellation


TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)
ACTIVE_EXECUTION_STATUSES = frozenset({ExecutionStatus.PENDING, ExecutionStatus.RUNNING})
CANCELLABLE_STEP_STATUSES = frozenset(
    {StepStatus.PENDING, StepStatus.WAITING_INPUTS, StepStatus.RUNNING}
)
FINISHED_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})


# --- Persisted records ---


class Agent(BaseModel):
    """A named processing step that transforms a document given a prompt."""

    id: str
    name: str  # Stable key, unique
    display_name: str
    description: str | None = None
    system_prompt: str = ""
    user_prompt_template: str = ""
    order: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Connection(BaseModel):
    """Directed dependency from one agent to another."""

    id: str
    source_agent_id: str
    target_agent_id: str
    order: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)


class WorkflowExecution(BaseModel):
    """One end-to-end run of the compiled workflow over one document."""

    id: str
    document_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    error: str | None = None
    input_data: dict[str, Any] | None = None
    output_data: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES


class WorkflowStep(BaseModel):
    """Per-execution record of one agent's run."""

    id: str
    execution_id: str
    agent_id: str
    status: StepStatus = StepStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    job_id: str | None = None
    input_data: dict[str, Any] | None = None
    output_data: dict[str, Any] | None = None
    output_markdown: str | None = None
    error: str | None = None


class AgentExecutionLog(BaseModel):
    """Audit record written for every processor call."""

    id: int | None = None
    agent_id: str
    document_id: str
    execution_id: str
    step_id: str
    system_prompt: str
    user_prompt: str
    input_markdown: str
    context: str | None = None
    output_markdown: str | None = None
    duration_ms: int = 0
    success: bool = True
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


# --- Derived graph view (never persisted) ---


class GraphNode(BaseModel):
    """Agent plus its computed position in the graph."""

    id: str
    name: str
    display_name: str
    is_active: bool
    order: int
    level: int = 0
    inputs: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)

    @property
    def is_root(self) -> bool:
        return not self.inputs

    @property
    def is_leaf(self) -> bool:
        return not self.outputs


class GraphEdge(BaseModel):
    """Active connection as seen by the graph view."""

    id: str
    source: str
    target: str
    is_active: bool = True


class Graph(BaseModel):
    """Read-only agent graph, recomputed on every read."""

    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)
    is_valid: bool = True
    validation_errors: list[str] = Field(default_factory=list)

    def node_map(self) -> dict[str, GraphNode]:
        return {n.id: n for n in self.nodes}

    @property
    def roots(self) -> list[GraphNode]:
        return [n for n in self.nodes if n.is_root]

    @property
    def leaves(self) -> list[GraphNode]:
        return [n for n in self.nodes if n.is_leaf]

    def to_api(self) -> dict[str, Any]:
        """Shape exposed to UI/API consumers."""
        return {
            "nodes": [
                {
                    "id": n.id,
                    "name": n.name,
                    "displayName": n.display_name,
                    "isActive": n.is_active,
                    "order": n.order,
                    "level": n.level,
                    "inputs": list(n.inputs),
                    "outputs": list(n.outputs),
                }
                for n in self.nodes
            ],
            "edges": [
                {"id": e.id, "source": e.source, "target": e.target, "isActive": e.is_active}
                for e in self.edges
            ],
            "isValid": self.is_valid,
            "validationErrors": list(self.validation_errors),
        }


# --- Job payloads ---


class AgentJobData(BaseModel):
    """Data carried by every agent job."""

    execution_id: str
    step_id: str
    agent_id: str
    document_id: str
    markdown: str
    context: str | None = None


class AgentJobResult(BaseModel):
    """Return value of an agent job, consumed by parent jobs."""

    step_id: str
    agent_id: str
    output: str | None = None
    success: bool = True
    skipped: bool = False
    error: str | None = None


class LaunchJobData(BaseModel):
    """Data carried by the one-shot orchestration job."""

    execution_id: str
    document_id: str
    context: str | None = None


# --- Status reporting ---


class Progress(BaseModel):
    """Completion summary for an execution."""

    completed: int = 0
    total: int = 0
    percentage: int = 0

    @classmethod
    def from_counts(cls, completed: int, total: int) -> "Progress":
        # Half-up rounding: 1/8 reports 13, not the banker's-rounded 12
        percentage = math.floor(completed * 100 / total + 0.5) if total > 0 else 0
        return cls(completed=completed, total=total, percentage=percentage)


class CancelResult(BaseModel):
    """Outcome of a cancellation request."""

    execution_id: str
    cancelled: bool = True
    skipped_steps: int = 0
    removed_jobs: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
