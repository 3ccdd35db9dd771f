"""Exception taxonomy for the workflow engine.

Every error carries a human-readable message that is safe to persist on a
step or execution record, plus a small ``details`` dict for callers.
"""

from typing import Any


class WorkflowError(Exception):
    """Base exception for all workflow engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigError(WorkflowError):
    """Configuration file is missing required structure or is invalid."""

    pass


class GraphCycleError(WorkflowError):
    """The agent graph contains a cycle and cannot be scheduled."""

    def __init__(self, message: str = "Graph contains a cycle") -> None:
        super().__init__(message)


class NoRootAgentError(WorkflowError):
    """Every agent has inputs, so there is nowhere to seed the document."""

    def __init__(self) -> None:
        super().__init__("No root agent found (every agent has inputs)")


class AgentNotFoundError(WorkflowError):
    """A referenced agent does not exist (or vanished between compile and run)."""

    def __init__(self, agent_ref: str) -> None:
        super().__init__(
            message=f"Agent not found: {agent_ref}",
            details={"agent": agent_ref},
        )
        self.agent_ref = agent_ref


class AgentConfigError(WorkflowError):
    """An agent exists but cannot be used (inactive, empty prompts)."""

    pass


class AgentValidationError(WorkflowError):
    """Agent definition file failed schema validation."""

    pass


class InvalidConnectionError(WorkflowError):
    """A connection would be a self-edge, a duplicate or would close a cycle."""

    pass


class ExecutionNotFoundError(WorkflowError):
    """Raised when an execution record is not found."""

    def __init__(self, execution_id: str) -> None:
        super().__init__(
            message=f"Execution not found: {execution_id}",
            details={"execution_id": execution_id},
        )
        self.execution_id = execution_id


class DocumentNotFoundError(WorkflowError):
    """The document to refine does not exist or has no content."""

    def __init__(self, document_id: str) -> None:
        super().__init__(
            message=f"Document not found or has no content: {document_id}",
            details={"document_id": document_id},
        )
        self.document_id = document_id


class StepPersistenceError(WorkflowError):
    """A step record could not be written."""

    def __init__(self, step_id: str, reason: str) -> None:
        super().__init__(
            message=f"Could not persist step {step_id}: {reason}",
            details={"step_id": step_id},
        )
        self.step_id = step_id


class AgentProcessorError(WorkflowError):
    """The external agent processor failed for one step."""

    def __init__(self, message: str, agent_name: str | None = None) -> None:
        super().__init__(message, details={"agent": agent_name} if agent_name else {})
        self.agent_name = agent_name


class CancellationConflictError(WorkflowError):
    """Attempted to cancel an execution that is already terminal."""

    def __init__(self, execution_id: str, status: str) -> None:
        super().__init__(
            message=f"Execution {execution_id} is already terminal ({status})",
            details={"execution_id": execution_id, "status": status},
        )
        self.execution_id = execution_id
        self.status = status
