"""Compile a validated agent graph into a job flow for the agent queue.

In queue terms a job's children are its upstream dependencies, so the walk
starts at the graph's leaves (agents with no outputs) and follows ``inputs``
back to the roots. Every agent becomes exactly one job; an agent feeding
several consumers is the same ``JobNode`` under each of them, and the queue
runs it once and hands its result to every parent.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field

from refinery.core.errors import WorkflowError
from refinery.core.graph import require_valid
from refinery.core.models import AgentJobData, Graph
from refinery.core.queue import JobNode

logger = logging.getLogger(__name__)


def job_id_for(execution_id: str, agent_id: str) -> str:
    """Deterministic job id of one agent inside one execution."""
    return f"exec-{execution_id}-agent-{agent_id}"


def launch_job_id_for(execution_id: str) -> str:
    """Id of the orchestration job that launches one execution."""
    return f"workflow-{execution_id}"


@dataclass
class FlowPlan:
    """Compiled flow: top-level jobs plus every job keyed by agent id."""

    execution_id: str
    roots: list[JobNode] = field(default_factory=list)
    jobs: dict[str, JobNode] = field(default_factory=dict)

    @property
    def job_ids(self) -> list[str]:
        return [job.job_id for job in self.jobs.values()]

    def walk(self) -> Iterator[tuple[int, JobNode, bool]]:
        """Depth-first view of the flow as a tree.

        Yields ``(depth, node, is_reference)``; a job already shown higher up
        is yielded once more as a reference and its subtree is not repeated.
        """
        seen: set[str] = set()
        stack = [(0, root) for root in reversed(self.roots)]
        while stack:
            depth, node = stack.pop()
            if node.job_id in seen:
                yield depth, node, True
                continue
            seen.add(node.job_id)
            yield depth, node, False
            stack.extend((depth + 1, child) for child in reversed(node.children))


class WorkflowCompiler:
    """Turns a graph plus a document payload into a ``FlowPlan``."""

    def __init__(self, fail_parent_on_failure: bool = True, queue_name: str | None = None):
        self.fail_parent_on_failure = fail_parent_on_failure
        self.queue_name = queue_name

    def compile(
        self,
        graph: Graph,
        execution_id: str,
        document_id: str,
        markdown: str,
        step_ids: dict[str, str],
        context: str | None = None,
    ) -> FlowPlan:
        require_valid(graph)
        if not graph.nodes:
            raise WorkflowError("No active agents found")

        nodes = graph.node_map()
        missing = [node_id for node_id in nodes if node_id not in step_ids]
        if missing:
            raise WorkflowError(
                f"No step recorded for agent(s): {', '.join(missing)}",
                details={"agents": missing},
            )

        plan = FlowPlan(execution_id=execution_id)

        def job_for(agent_id: str) -> JobNode:
            if agent_id not in plan.jobs:
                node = nodes[agent_id]
                data = AgentJobData(
                    execution_id=execution_id,
                    step_id=step_ids[agent_id],
                    agent_id=agent_id,
                    document_id=document_id,
                    markdown=markdown,
                    context=context,
                )
                plan.jobs[agent_id] = JobNode(
                    job_id=job_id_for(execution_id, agent_id),
                    name=f"agent-{node.name}",
                    data=data.model_dump(),
                    fail_parent_on_failure=self.fail_parent_on_failure,
                    queue_name=self.queue_name,
                )
            return plan.jobs[agent_id]

        plan.roots = [job_for(leaf.id) for leaf in graph.leaves]

        stack = [leaf.id for leaf in graph.leaves]
        expanded: set[str] = set()
        while stack:
            agent_id = stack.pop()
            if agent_id in expanded:
                continue
            expanded.add(agent_id)
            job = job_for(agent_id)
            for input_id in nodes[agent_id].inputs:
                job.children.append(job_for(input_id))
                stack.append(input_id)

        logger.info(
            f"Compiled execution {execution_id}: {len(plan.jobs)} job(s), "
            f"{len(plan.roots)} top-level"
        )
        return plan
