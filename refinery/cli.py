"""CLI entry point for the Refinery workflow engine.

Commands:
- refinery init: Initialize project for refinery
- refinery seed: Load agent definitions from YAML
- refinery agents: List agents, activate or deactivate one
- refinery graph: Show the agent graph (levels, tree, flow or JSON)
- refinery connect / disconnect: Edit connections between agents
- refinery documents: List stored documents
- refinery run: Start a workflow over a document
- refinery status: Show execution status and progress
- refinery logs: Show processor audit records for an execution
- refinery cancel: Cancel a running execution
- refinery executions: List recent executions
- refinery worker: Run the queue worker daemon
- refinery cleanup: Fail executions stuck past the timeout
"""

import asyncio
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from refinery import __version__
from refinery.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from refinery.core.agents import BUILTIN_AGENTS, AgentLoader, seed_agents
from refinery.core.compiler import WorkflowCompiler
from refinery.core.config import CONFIG_DIR, CONFIG_FILE, DEFAULT_CONFIG_YAML, load_settings
from refinery.core.errors import WorkflowError
from refinery.core.models import ExecutionStatus
from refinery.core.service import Engine, build_engine
from refinery.core.state import Database, Repository

console = Console()


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


def _engine() -> Engine:
    return build_engine(load_settings(get_repo_path()))


def _fail(e: Exception) -> NoReturn:
    console.print(f"[red]Error:[/red] {escape(str(e))}")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log engine activity to stderr")
def main(verbose: bool) -> None:
    """Refinery - document refinement through a graph of agents.

    Each agent rewrites a markdown document with its own prompt; connections
    decide which agent's output feeds which.
    """
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )


@main.command()
@click.option("--no-seed", is_flag=True, help="Do not load the built-in agent set")
def init(no_seed: bool) -> None:
    """Initialize project for refinery."""
    repo_path = get_repo_path()
    refinery_dir = repo_path / CONFIG_DIR

    if refinery_dir.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    (refinery_dir / "documents").mkdir(parents=True)
    (refinery_dir / CONFIG_FILE).write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")

    try:
        settings = load_settings(repo_path)
        repo = Repository(Database(settings.database))
        seeded = ""
        if not no_seed:
            result = seed_agents(repo, AgentLoader().load(BUILTIN_AGENTS))
            seeded = (
                f"\n- {len(result.agents)} built-in agent(s), "
                f"{result.connections_created} connection(s)"
            )
    except WorkflowError as e:
        _fail(e)

    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {refinery_dir}\n"
            "- config.yaml: Project configuration\n"
            "- documents/: Markdown documents (<id>.md)\n"
            "- state.db: Agents, executions and job queue" + seeded,
            title="Refinery Initialized",
        )
    )


@main.command()
@click.option(
    "--file",
    "-f",
    "file_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Agent definitions YAML (defaults to the built-in set)",
)
def seed(file_path: Path | None) -> None:
    """Load agents and connections from a definitions file.

    Agents are matched by name and updated in place; existing connections
    are kept.
    """
    try:
        engine = _engine()
        result = seed_agents(engine.repo, AgentLoader().load(file_path or BUILTIN_AGENTS))
    except WorkflowError as e:
        _fail(e)

    console.print(
        f"[green]Seeded {len(result.agents)} agent(s), "
        f"{result.connections_created} new connection(s)[/green]"
    )
    for skipped in result.connections_skipped:
        console.print(f"  [dim]skipped {escape(skipped)}[/dim]")


@main.command()
@click.option("--activate", metavar="AGENT", help="Activate an agent (id or name)")
@click.option("--deactivate", metavar="AGENT", help="Deactivate an agent (id or name)")
def agents(activate: str | None, deactivate: str | None) -> None:
    """List agents."""
    try:
        engine = _engine()
        for ref, active in ((activate, True), (deactivate, False)):
            if ref:
                agent = engine.service.resolve_agent(ref)
                engine.repo.set_agent_active(agent.id, active)
                state = "activated" if active else "deactivated"
                console.print(f"[green]Agent {escape(agent.name)} {state}[/green]")
        all_agents = engine.repo.list_agents()
    except WorkflowError as e:
        _fail(e)

    excluded = set(engine.service.excluded_agents)
    table = Table(title="Agents")
    table.add_column("Name", style="cyan")
    table.add_column("Display Name")
    table.add_column("Order", justify="right")
    table.add_column("Active", justify="center")
    table.add_column("Description")

    for agent in all_agents:
        active = "[green]yes[/green]" if agent.is_active else "[dim]no[/dim]"
        if agent.name in excluded:
            active += " [dim](excluded)[/dim]"
        table.add_row(
            escape(agent.name),
            escape(agent.display_name),
            str(agent.order),
            active,
            escape(agent.description or "-"),
        )

    console.print(table)


@main.command()
@click.option("--all", "include_inactive", is_flag=True, help="Include inactive agents")
@click.option("--tree", is_flag=True, help="Show connections as a tree")
@click.option("--flow", is_flag=True, help="Show the job flow a run would create")
@click.option("--json", "as_json", is_flag=True, help="Print the graph as JSON")
def graph(include_inactive: bool, tree: bool, flow: bool, as_json: bool) -> None:
    """Show the agent graph and its validation result."""
    try:
        engine = _engine()
        if flow:
            execution_graph = engine.service.get_execution_graph()
            plan = WorkflowCompiler().compile(
                execution_graph,
                execution_id="preview",
                document_id="preview",
                markdown="",
                step_ids={node.id: node.id for node in execution_graph.nodes},
            )
            console.print(TerminalGraphRenderer(console).render_plan(plan))
            return
        agent_graph = engine.service.get_graph(active_only=not include_inactive)
    except WorkflowError as e:
        _fail(e)

    if as_json:
        click.echo(json.dumps(agent_graph.to_api(), indent=2))
        return

    renderer = TerminalGraphRenderer(console)
    if tree:
        console.print(renderer.render_as_tree(agent_graph))
    else:
        console.print(renderer.render_graph(agent_graph))

    if agent_graph.is_valid:
        console.print(
            f"\n[green]Graph valid[/green]: {len(agent_graph.nodes)} agent(s), "
            f"{len(agent_graph.edges)} connection(s)"
        )
    else:
        console.print("\n[red]Graph invalid[/red]")


@main.command()
@click.argument("source")
@click.argument("target")
@click.option("--order", type=int, default=0, help="Ordering hint for display")
def connect(source: str, target: str, order: int) -> None:
    """Connect SOURCE's output to TARGET's input (ids or names)."""
    try:
        _engine().service.connect(source, target, order=order)
    except WorkflowError as e:
        _fail(e)
    console.print(f"[green]Connected {escape(source)} -> {escape(target)}[/green]")


@main.command()
@click.argument("source")
@click.argument("target")
def disconnect(source: str, target: str) -> None:
    """Remove the connection from SOURCE to TARGET."""
    try:
        _engine().service.disconnect(source, target)
    except WorkflowError as e:
        _fail(e)
    console.print(f"[green]Disconnected {escape(source)} -> {escape(target)}[/green]")


@main.command()
def documents() -> None:
    """List stored documents."""
    try:
        engine = _engine()
    except WorkflowError as e:
        _fail(e)

    ids = engine.documents.list_ids()
    if not ids:
        console.print(f"[yellow]No documents in {engine.documents.root}[/yellow]")
        return
    for document_id in ids:
        console.print(f"  - {escape(document_id)}")


@main.command()
@click.argument("document_id")
@click.option(
    "--file",
    "-f",
    "file_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Import this markdown file as the document before running",
)
@click.option("--context", "-c", help="Free-text context passed to every agent")
@click.option("--wait", is_flag=True, help="Process jobs in this process until the run ends")
@click.option("--timeout", type=float, default=None, help="Seconds to wait with --wait")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="With --wait, write the final markdown here",
)
def run(
    document_id: str,
    file_path: Path | None,
    context: str | None,
    wait: bool,
    timeout: float | None,
    output: Path | None,
) -> None:
    """Run the agent workflow over DOCUMENT_ID.

    Without --wait the execution is queued for a running `refinery worker`.

    Example:
        refinery run cv-42 -f cv.md -c "Senior data engineer, banking" --wait
    """
    try:
        engine = _engine()
        if file_path:
            engine.documents.save(document_id, file_path.read_text(encoding="utf-8"))
        execution_id = engine.service.start(document_id, context=context)
    except WorkflowError as e:
        _fail(e)

    console.print(f"[blue]Started execution: {execution_id}[/blue]")
    if not wait:
        console.print("[dim]Queued; run `refinery worker` to process it[/dim]")
        return

    final_status = asyncio.run(engine.worker.run_until_complete(execution_id, timeout=timeout))
    console.print(
        StatusTableRenderer(console).render_status_table(engine.service.get_status(execution_id))
    )

    if final_status != ExecutionStatus.COMPLETED:
        execution = engine.service.get_execution(execution_id)
        label = final_status.value if final_status else "missing"
        console.print(f"[red]Workflow {label}[/red]")
        if execution.error:
            console.print(f"  {escape(execution.error)}")
        sys.exit(1)

    console.print("[green]Workflow completed successfully[/green]")
    if output:
        markdown = engine.service.get_execution(execution_id).output_data or ""
        output.write_text(markdown, encoding="utf-8")
        console.print(f"[dim]Output written to {output}[/dim]")


@main.command()
@click.argument("execution_id")
@click.option("--json", "as_json", is_flag=True, help="Print status as JSON")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write the final markdown here (completed executions only)",
)
def status(execution_id: str, as_json: bool, output: Path | None) -> None:
    """Show status and progress of an execution."""
    try:
        engine = _engine()
        report = engine.service.get_status(execution_id)
        execution = engine.service.get_execution(execution_id)
    except WorkflowError as e:
        _fail(e)

    if as_json:
        click.echo(json.dumps(report, indent=2))
    else:
        console.print(StatusTableRenderer(console).render_status_table(report))
        if report["error"]:
            console.print(f"[red]Error:[/red] {escape(report['error'])}")

    if output:
        if execution.status != ExecutionStatus.COMPLETED or execution.output_data is None:
            console.print(f"[yellow]No output: execution is {execution.status.value}[/yellow]")
            sys.exit(1)
        output.write_text(execution.output_data, encoding="utf-8")
        console.print(f"[dim]Output written to {output}[/dim]")


@main.command()
@click.argument("execution_id")
def logs(execution_id: str) -> None:
    """Show processor calls recorded for an execution."""
    try:
        engine = _engine()
        records = engine.service.get_logs(execution_id)
    except WorkflowError as e:
        _fail(e)

    names = {a.id: a.name for a in engine.repo.list_agents()}
    table = Table(title=f"Agent calls: {escape(execution_id[:8])}...")
    table.add_column("Agent", style="cyan")
    table.add_column("Result", justify="center")
    table.add_column("Duration", justify="right")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Error", max_width=40)

    for record in records:
        table.add_row(
            escape(names.get(record.agent_id, record.agent_id)),
            "[green]ok[/green]" if record.success else "[red]failed[/red]",
            f"{record.duration_ms} ms",
            str(len(record.input_markdown)),
            str(len(record.output_markdown or "")),
            escape((record.error or "")[:40]),
        )

    console.print(table)


@main.command()
@click.argument("execution_id")
def cancel(execution_id: str) -> None:
    """Cancel a pending or running execution."""
    try:
        result = _engine().service.cancel(execution_id)
    except WorkflowError as e:
        _fail(e)

    console.print(
        f"[green]Cancelled {escape(execution_id)}[/green]: "
        f"{result.skipped_steps} step(s) skipped, {len(result.removed_jobs)} job(s) removed"
    )
    for warning in result.warnings:
        console.print(f"  [yellow]{escape(warning)}[/yellow]")


@main.command()
@click.option("--document", "-d", "document_id", help="Filter by document ID")
@click.option(
    "--status",
    "-s",
    "status_filter",
    type=click.Choice([s.value for s in ExecutionStatus], case_sensitive=False),
    help="Filter by status",
)
@click.option("--limit", "-n", type=int, default=20, help="Maximum rows")
def executions(document_id: str | None, status_filter: str | None, limit: int) -> None:
    """List recent executions, newest first."""
    try:
        engine = _engine()
        rows = engine.service.list_executions(
            document_id=document_id,
            status=ExecutionStatus(status_filter.upper()) if status_filter else None,
            limit=limit,
        )
    except WorkflowError as e:
        _fail(e)

    if not rows:
        console.print("[yellow]No executions found[/yellow]")
        return
    console.print(StatusTableRenderer(console).render_executions_table(rows))


@main.command()
def worker() -> None:
    """Run the worker daemon until interrupted."""
    try:
        engine = _engine()
    except WorkflowError as e:
        _fail(e)

    console.print("[blue]Worker started[/blue] [dim](Ctrl+C to stop)[/dim]")
    try:
        asyncio.run(engine.worker.start_daemon())
    except KeyboardInterrupt:
        engine.worker.stop()
    console.print("[dim]Worker stopped[/dim]")


@main.command()
@click.option(
    "--minutes",
    type=int,
    default=None,
    help="Age after which an active execution is failed (default from config)",
)
def cleanup(minutes: int | None) -> None:
    """Fail executions that have been active for too long."""
    try:
        settings = load_settings(get_repo_path())
        engine = build_engine(settings)
        max_age = timedelta(minutes=minutes or settings.stale_timeout_minutes)
        failed = engine.service.cleanup_stale(max_age)
    except WorkflowError as e:
        _fail(e)

    if not failed:
        console.print("[green]No stale executions[/green]")
        return
    console.print(f"[yellow]Marked {len(failed)} execution(s) as failed:[/yellow]")
    for execution_id in failed:
        console.print(f"  - {escape(execution_id)}")


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"Refinery v{__version__}")
    console.print("Agent graph workflow engine")


if __name__ == "__main__":
    main()
