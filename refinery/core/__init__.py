"""Core modules for the Refinery workflow engine."""

from refinery.core.compiler import FlowPlan, WorkflowCompiler
from refinery.core.coordinator import ExecutionCoordinator, LaunchHandler
from refinery.core.graph import GraphValidator
from refinery.core.models import (
    Agent,
    Connection,
    ExecutionStatus,
    Graph,
    StepStatus,
    WorkflowExecution,
    WorkflowStep,
)
from refinery.core.queue import JobQueue, RetryPolicy
from refinery.core.service import WorkflowService, build_engine
from refinery.core.state import Database, Repository
from refinery.core.tracker import ProgressTracker

__all__ = [
    "Agent",
    "Connection",
    "Database",
    "ExecutionCoordinator",
    "ExecutionStatus",
    "FlowPlan",
    "Graph",
    "GraphValidator",
    "JobQueue",
    "LaunchHandler",
    "ProgressTracker",
    "Repository",
    "RetryPolicy",
    "StepStatus",
    "WorkflowCompiler",
    "WorkflowExecution",
    "WorkflowService",
    "WorkflowStep",
    "build_engine",
]
