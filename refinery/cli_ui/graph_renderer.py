"""Terminal rendering of agent graphs and execution status.

SECURITY: Agent names, prompts and errors are operator-controlled, so every
string passed into Rich markup is escaped first.
"""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from refinery.core.compiler import FlowPlan
from refinery.core.models import Graph, GraphNode, WorkflowExecution


class TerminalGraphRenderer:
    """
    Renders agent graphs in the terminal.

    NOTE: render_graph() shows topological levels only, not exact edges.
    Use render_as_tree() for the actual connections.
    """

    # Status colors keyed by the uppercase status strings used in records
    STATUS_COLORS = {
        "PENDING": "dim",
        "WAITING_INPUTS": "yellow",
        "RUNNING": "blue bold",
        "COMPLETED": "green",
        "FAILED": "red bold",
        "SKIPPED": "dim strikethrough",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def _label(self, node: GraphNode, statuses: dict[str, str] | None) -> str:
        safe_label = escape(node.display_name or node.name)
        style = "cyan" if node.is_active else "dim"
        status = statuses.get(node.id) if statuses else None
        if status and status != "PENDING":
            style = self.STATUS_COLORS.get(status, "white")
        return f"[{style}]{safe_label}[/]"

    def render_graph(self, graph: Graph, statuses: dict[str, str] | None = None) -> str:
        """Render the graph as one line per level."""
        if not graph.nodes:
            return "[dim](no agents)[/]"

        by_level: dict[int, list[GraphNode]] = {}
        for node in graph.nodes:
            by_level.setdefault(node.level, []).append(node)

        lines = []
        levels = sorted(by_level)
        for idx, level in enumerate(levels):
            labels = [self._label(node, statuses) for node in by_level[level]]
            lines.append(f"[bold]L{level}[/]  " + "  |  ".join(labels))
            if idx < len(levels) - 1:
                lines.append("     v")
        if not graph.is_valid:
            for error in graph.validation_errors:
                lines.append(f"[red]! {escape(error)}[/]")
        return "\n".join(lines)

    def render_as_tree(
        self,
        graph: Graph,
        statuses: dict[str, str] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """Render the graph as a Rich Tree from the roots along outputs.

        An agent reachable along several paths is expanded once; later
        occurrences are shown as references.
        """
        tree = Tree("[bold]Agent graph[/]")
        if not graph.nodes:
            tree.add("[dim](no agents)[/]")
            return tree

        node_map = graph.node_map()
        roots = graph.roots or graph.nodes
        expanded: set[str] = set()
        stack: list[tuple[Tree, GraphNode, int]] = [(tree, n, 0) for n in reversed(roots)]
        while stack:
            parent, node, depth = stack.pop()
            if depth >= max_depth:
                parent.add("[dim]... (max depth reached)[/]")
                continue
            if node.id in expanded:
                parent.add(f"[dim]↩ {escape(node.name)}[/]")
                continue
            expanded.add(node.id)
            branch = parent.add(self._label(node, statuses))
            for output_id in reversed(node.outputs):
                child = node_map.get(output_id)
                if child:
                    stack.append((branch, child, depth + 1))
        return tree

    def render_plan(self, plan: FlowPlan) -> Tree:
        """Render a compiled flow: each job lists the jobs it waits for."""
        tree = Tree(f"[bold]Flow {escape(plan.execution_id[:8])}[/]")
        branches: dict[int, Tree] = {-1: tree}
        for depth, node, is_reference in plan.walk():
            parent = branches[depth - 1]
            if is_reference:
                parent.add(f"[dim]↩ {escape(node.name)} (shared)[/]")
                continue
            branches[depth] = parent.add(f"[cyan]{escape(node.name)}[/] [dim]{escape(node.job_id)}[/]")
        return tree


class StatusTableRenderer:
    """Renders execution status as Rich tables.

    SECURITY: All user-controlled strings are escaped to prevent Rich markup injection.
    """

    STATUS_TEXT = {
        "COMPLETED": "[green]✓ Completed[/]",
        "FAILED": "[red]✗ Failed[/]",
        "RUNNING": "[blue]⟳ Running[/]",
        "WAITING_INPUTS": "[yellow]○ Waiting[/]",
        "SKIPPED": "[dim]⊘ Skipped[/]",
        "CANCELLED": "[dim]⊘ Cancelled[/]",
        "PENDING": "[dim]○ Pending[/]",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def status_text(self, status: str) -> str:
        return self.STATUS_TEXT.get(status, escape(status))

    def render_status_table(self, status: dict[str, Any]) -> Table:
        """Table of steps for the dict returned by ``WorkflowService.get_status``."""
        progress = status["progress"]
        safe_exec_id = escape(status["id"][:8])
        table = Table(
            title=(
                f"Execution: {safe_exec_id}... {self.status_text(status['status'])} "
                f"({progress['completed']}/{progress['total']}, {progress['percentage']}%)"
            )
        )
        table.add_column("Agent", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Started")
        table.add_column("Error", max_width=40)

        for step in status["steps"]:
            label = step["agentDisplayName"] or step["agentName"] or step["agentId"]
            error = escape(step["error"] or "")
            if len(error) > 40:
                error = error[:37] + "..."
            table.add_row(
                escape(label),
                self.status_text(step["status"]),
                (step["startedAt"] or "")[:19],
                error,
            )
        return table

    def render_executions_table(self, executions: list[WorkflowExecution]) -> Table:
        table = Table(title="Executions")
        table.add_column("ID", style="cyan")
        table.add_column("Document")
        table.add_column("Status", justify="center")
        table.add_column("Started")
        table.add_column("Error", max_width=40)
        for execution in executions:
            table.add_row(
                escape(execution.id),
                escape(execution.document_id),
                self.status_text(execution.status.value),
                execution.started_at.isoformat()[:19],
                escape((execution.error or "")[:40]),
            )
        return table
